"""
DTOs -- immutable data transfer objects returned by kernel services.

Responsibility:
    Services accept plain values and return these frozen dataclasses, never
    ORM instances, so callers cannot mutate ledger rows behind the service's
    back and results stay valid after the session closes.

Architecture position:
    Kernel > Domain -- zero I/O.  from_model() class methods are boundary
    converters invoked only from the service layer.

Invariants enforced:
    - EntrySpec amounts are strictly positive Decimals (validated in
      __post_init__).
    - Every DTO is frozen; collections are tuples.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID

from ledger_kernel.db.types import to_money
from ledger_kernel.exceptions import ValidationError
from ledger_kernel.models.account import NormalBalance
from ledger_kernel.models.accounting_period import PeriodStatus, PeriodType
from ledger_kernel.models.admin_override import OverrideType
from ledger_kernel.models.ledger import EntryDirection, TransactionStatus
from ledger_kernel.models.ledger_lock import LockStatus, LockType
from ledger_kernel.models.reconciliation import (
    BatchStatus,
    MatchStatus,
    ReconciliationType,
    ResolutionStatus,
)
from ledger_kernel.models.settlement import SettlementState

if TYPE_CHECKING:
    from ledger_kernel.models.accounting_period import AccountingPeriod
    from ledger_kernel.models.admin_override import AdminOverrideLog
    from ledger_kernel.models.ledger import LedgerTransaction
    from ledger_kernel.models.ledger_lock import LedgerLock
    from ledger_kernel.models.reconciliation import ReconciliationBatch, ReconciliationItem
    from ledger_kernel.models.settlement import Settlement


# =============================================================================
# Ledger
# =============================================================================


@dataclass(frozen=True)
class EntrySpec:
    """
    One requested ledger line.

    ``account`` is an account code (str) or an account id (UUID).
    Amount is always positive; direction decides the side.
    """

    account: str | UUID
    direction: EntryDirection
    amount: Decimal
    currency: str = "INR"
    description: str | None = None

    def __post_init__(self) -> None:
        try:
            direction = EntryDirection(self.direction)
        except ValueError as exc:
            raise ValidationError(
                f"Invalid entry direction: {self.direction!r}", field="direction"
            ) from exc
        object.__setattr__(self, "direction", direction)
        amount = to_money(self.amount, field="amount")
        if amount <= 0:
            raise ValidationError(
                f"Entry amount must be strictly positive, got {amount}", field="amount"
            )
        object.__setattr__(self, "amount", amount)
        if not self.account:
            raise ValidationError("Entry account is required", field="account")

    @classmethod
    def debit(cls, account: str | UUID, amount: Decimal | int | str, **kwargs) -> EntrySpec:
        return cls(account=account, direction=EntryDirection.DEBIT, amount=amount, **kwargs)

    @classmethod
    def credit(cls, account: str | UUID, amount: Decimal | int | str, **kwargs) -> EntrySpec:
        return cls(account=account, direction=EntryDirection.CREDIT, amount=amount, **kwargs)


@dataclass(frozen=True)
class PeriodOverride:
    """Caller's request to post into a SOFT_CLOSED period."""

    justification: str
    actor_role: str


@dataclass(frozen=True)
class EntryInfo:
    account_id: UUID
    account_code: str
    direction: EntryDirection
    amount: Decimal
    currency: str
    line_seq: int
    description: str | None = None


@dataclass(frozen=True)
class TransactionInfo:
    """
    Read-only view of a ledger transaction and its entries.

    ``idempotent_replay`` is True when post_transaction returned an existing
    transaction for a repeated idempotency key instead of writing a new one.
    """

    id: UUID
    tenant_id: str
    reference: str
    idempotency_key: str | None
    event_type: str
    status: TransactionStatus
    effective_at: datetime
    posted_at: datetime | None
    currency: str
    amount: Decimal
    description: str | None
    metadata: dict[str, Any]
    entries: tuple[EntryInfo, ...]
    reverses_id: UUID | None = None
    reversed_by_id: UUID | None = None
    override_log_id: UUID | None = None
    idempotent_replay: bool = False

    @property
    def total_debits(self) -> Decimal:
        return sum(
            (e.amount for e in self.entries if e.direction == EntryDirection.DEBIT),
            Decimal("0"),
        )

    @property
    def total_credits(self) -> Decimal:
        return sum(
            (e.amount for e in self.entries if e.direction == EntryDirection.CREDIT),
            Decimal("0"),
        )

    @classmethod
    def from_model(cls, model: LedgerTransaction, idempotent_replay: bool = False) -> TransactionInfo:
        entries = tuple(
            EntryInfo(
                account_id=entry.account_id,
                account_code=entry.account.code,
                direction=EntryDirection(entry.direction),
                amount=entry.amount,
                currency=entry.currency,
                line_seq=entry.line_seq,
                description=entry.description,
            )
            for entry in sorted(model.entries, key=lambda e: e.line_seq)
        )
        return cls(
            id=model.id,
            tenant_id=model.tenant_id,
            reference=model.reference,
            idempotency_key=model.idempotency_key,
            event_type=model.event_type,
            status=TransactionStatus(model.status),
            effective_at=model.effective_at,
            posted_at=model.posted_at,
            currency=model.currency,
            amount=model.amount,
            description=model.description,
            metadata=dict(model.details or {}),
            entries=entries,
            reverses_id=model.reverses_id,
            reversed_by_id=model.reversed_by_id,
            override_log_id=model.override_log_id,
            idempotent_replay=idempotent_replay,
        )


@dataclass(frozen=True)
class AccountBalance:
    """
    Derived balance of one account.

    balance is signed in the account's normal direction: positive means the
    account holds value on its normal side.
    """

    account_id: UUID
    account_code: str
    account_name: str
    normal_balance: NormalBalance
    currency: str
    total_debits: Decimal
    total_credits: Decimal
    balance: Decimal
    entry_count: int


@dataclass(frozen=True)
class TrialBalance:
    rows: tuple[AccountBalance, ...]
    total_debits: Decimal
    total_credits: Decimal

    @property
    def is_balanced(self) -> bool:
        return self.total_debits == self.total_credits

    def row_for(self, account_code: str) -> AccountBalance | None:
        for row in self.rows:
            if row.account_code == account_code:
                return row
        return None


# =============================================================================
# Periods and locks
# =============================================================================


class PeriodDecision(str, Enum):
    ALLOWED = "ALLOWED"
    OVERRIDE_REQUIRED = "OVERRIDE_REQUIRED"
    BLOCKED = "BLOCKED"


@dataclass(frozen=True)
class PeriodInfo:
    id: UUID
    tenant_id: str
    period_type: PeriodType
    start_date: date
    end_date: date
    status: PeriodStatus
    soft_closed_at: datetime | None = None
    soft_closed_by_id: UUID | None = None
    hard_closed_at: datetime | None = None
    hard_closed_by_id: UUID | None = None
    closing_notes: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status == PeriodStatus.OPEN

    def contains_date(self, check_date: date) -> bool:
        return self.start_date <= check_date <= self.end_date

    @classmethod
    def from_model(cls, model: AccountingPeriod) -> PeriodInfo:
        return cls(
            id=model.id,
            tenant_id=model.tenant_id,
            period_type=PeriodType(model.period_type),
            start_date=model.start_date,
            end_date=model.end_date,
            status=PeriodStatus(model.status),
            soft_closed_at=model.soft_closed_at,
            soft_closed_by_id=model.soft_closed_by_id,
            hard_closed_at=model.hard_closed_at,
            hard_closed_by_id=model.hard_closed_by_id,
            closing_notes=model.closing_notes,
        )


@dataclass(frozen=True)
class PeriodCheck:
    """Outcome of checking whether a date accepts postings."""

    decision: PeriodDecision
    on_date: date
    period_type: PeriodType
    period_id: UUID | None = None
    period_status: PeriodStatus | None = None
    reason: str | None = None

    @property
    def allowed(self) -> bool:
        return self.decision == PeriodDecision.ALLOWED

    @property
    def override_required(self) -> bool:
        return self.decision == PeriodDecision.OVERRIDE_REQUIRED

    @property
    def blocked(self) -> bool:
        return self.decision == PeriodDecision.BLOCKED


@dataclass(frozen=True)
class LockInfo:
    id: UUID
    tenant_id: str
    lock_type: LockType
    start_date: date
    end_date: date
    status: LockStatus
    reason: str
    locked_by_id: UUID
    locked_at: datetime
    period_id: UUID | None = None
    released_by_id: UUID | None = None
    released_at: datetime | None = None
    release_notes: str | None = None

    @classmethod
    def from_model(cls, model: LedgerLock) -> LockInfo:
        return cls(
            id=model.id,
            tenant_id=model.tenant_id,
            lock_type=LockType(model.lock_type),
            start_date=model.start_date,
            end_date=model.end_date,
            status=LockStatus(model.status),
            reason=model.reason,
            locked_by_id=model.locked_by_id,
            locked_at=model.locked_at,
            period_id=model.period_id,
            released_by_id=model.released_by_id,
            released_at=model.released_at,
            release_notes=model.release_notes,
        )


@dataclass(frozen=True)
class LockCheck:
    is_locked: bool
    on_date: date
    lock_id: UUID | None = None
    lock_type: LockType | None = None
    reason: str | None = None


# =============================================================================
# Admin overrides
# =============================================================================


@dataclass(frozen=True)
class OverrideDecision:
    """Persisted outcome of one override attempt."""

    log_id: UUID
    override_type: OverrideType
    granted: bool
    actor_id: UUID
    actor_role: str
    occurred_at: datetime
    denial_reason: str | None = None
    entity_ref: str | None = None

    @classmethod
    def from_model(cls, model: AdminOverrideLog) -> OverrideDecision:
        return cls(
            log_id=model.id,
            override_type=OverrideType(model.override_type),
            granted=model.granted,
            actor_id=model.actor_id,
            actor_role=model.actor_role,
            occurred_at=model.occurred_at,
            denial_reason=model.denial_reason,
            entity_ref=model.entity_ref,
        )


# =============================================================================
# Settlements
# =============================================================================


@dataclass(frozen=True)
class SettlementInfo:
    id: UUID
    tenant_id: str
    settlement_ref: str
    merchant_id: str
    gross_amount: Decimal
    fees_amount: Decimal
    net_amount: Decimal
    currency: str
    state: SettlementState
    retry_count: int
    max_retries: int
    bank_reference: str | None = None
    failure_reason: str | None = None
    next_retry_at: datetime | None = None
    settled_at: datetime | None = None
    reservation_transaction_id: UUID | None = None
    confirmation_transaction_id: UUID | None = None
    state_transitions: tuple[dict, ...] = field(default_factory=tuple)
    retry_history: tuple[dict, ...] = field(default_factory=tuple)

    @property
    def is_terminal(self) -> bool:
        from ledger_kernel.domain.settlement_state import is_terminal

        return is_terminal(self.state, self.retry_count, self.max_retries)

    @classmethod
    def from_model(cls, model: Settlement) -> SettlementInfo:
        return cls(
            id=model.id,
            tenant_id=model.tenant_id,
            settlement_ref=model.settlement_ref,
            merchant_id=model.merchant_id,
            gross_amount=model.gross_amount,
            fees_amount=model.fees_amount,
            net_amount=model.net_amount,
            currency=model.currency,
            state=SettlementState(model.state),
            retry_count=model.retry_count,
            max_retries=model.max_retries,
            bank_reference=model.bank_reference,
            failure_reason=model.failure_reason,
            next_retry_at=model.next_retry_at,
            settled_at=model.settled_at,
            reservation_transaction_id=model.reservation_transaction_id,
            confirmation_transaction_id=model.confirmation_transaction_id,
            state_transitions=tuple(dict(t) for t in model.state_transitions or ()),
            retry_history=tuple(dict(r) for r in model.retry_history or ()),
        )


# =============================================================================
# Reconciliation
# =============================================================================


@dataclass(frozen=True)
class ExternalRecord:
    """One line of an external statement (gateway report, bank statement)."""

    external_reference: str
    amount: Decimal
    currency: str | None = None
    data: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        if not self.external_reference or not str(self.external_reference).strip():
            raise ValidationError(
                "external_reference is required", field="external_reference"
            )
        object.__setattr__(self, "amount", to_money(self.amount, field="amount"))


@dataclass(frozen=True)
class ReconciliationItemInfo:
    id: UUID
    batch_id: UUID
    item_seq: int
    external_reference: str | None
    transaction_id: UUID | None
    expected_amount: Decimal | None
    actual_amount: Decimal | None
    difference: Decimal
    match_status: MatchStatus
    resolution_status: ResolutionStatus
    resolution_notes: str | None = None
    resolved_by_id: UUID | None = None
    resolved_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ReconciliationItem) -> ReconciliationItemInfo:
        return cls(
            id=model.id,
            batch_id=model.batch_id,
            item_seq=model.item_seq,
            external_reference=model.external_reference,
            transaction_id=model.transaction_id,
            expected_amount=model.expected_amount,
            actual_amount=model.actual_amount,
            difference=model.difference,
            match_status=MatchStatus(model.match_status),
            resolution_status=ResolutionStatus(model.resolution_status),
            resolution_notes=model.resolution_notes,
            resolved_by_id=model.resolved_by_id,
            resolved_at=model.resolved_at,
        )


@dataclass(frozen=True)
class ReconciliationBatchInfo:
    id: UUID
    tenant_id: str
    batch_ref: str
    reconciliation_type: ReconciliationType
    period_start: date
    period_end: date
    source: str
    status: BatchStatus
    total_items: int
    matched_items: int
    mismatched_items: int
    missing_items: int
    duplicate_items: int
    expected_amount: Decimal
    actual_amount: Decimal
    difference_amount: Decimal
    completed_at: datetime | None = None
    items: tuple[ReconciliationItemInfo, ...] = field(default_factory=tuple)

    def items_with_status(self, match_status: MatchStatus) -> tuple[ReconciliationItemInfo, ...]:
        return tuple(i for i in self.items if i.match_status == match_status)

    @classmethod
    def from_model(cls, model: ReconciliationBatch) -> ReconciliationBatchInfo:
        return cls(
            id=model.id,
            tenant_id=model.tenant_id,
            batch_ref=model.batch_ref,
            reconciliation_type=ReconciliationType(model.reconciliation_type),
            period_start=model.period_start,
            period_end=model.period_end,
            source=model.source,
            status=BatchStatus(model.status),
            total_items=model.total_items,
            matched_items=model.matched_items,
            mismatched_items=model.mismatched_items,
            missing_items=model.missing_items,
            duplicate_items=model.duplicate_items,
            expected_amount=model.expected_amount,
            actual_amount=model.actual_amount,
            difference_amount=model.difference_amount,
            completed_at=model.completed_at,
            items=tuple(ReconciliationItemInfo.from_model(i) for i in model.items),
        )


@dataclass(frozen=True)
class EscrowReconciliation:
    """Derived escrow bank balance compared with the bank statement."""

    tenant_id: str
    as_of: date
    ledger_balance: Decimal
    statement_balance: Decimal
    difference: Decimal
    tolerance: Decimal

    @property
    def is_reconciled(self) -> bool:
        return abs(self.difference) <= self.tolerance
