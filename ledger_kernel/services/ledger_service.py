"""
LedgerService -- balanced, idempotent, gated postings and reversals.

Responsibility:
    The single write path into the ledger.  Validates a set of entries,
    enforces double-entry balance and idempotency, runs the posting gate
    (ledger locks, then accounting period status and admin overrides) and
    writes the transaction and its entries atomically.

Architecture position:
    Kernel > Services -- imperative shell.  Orchestrates LedgerLockService,
    PeriodService, AdminOverrideService and AuditorService within the
    caller's transaction.  Balance reads are delegated to LedgerSelector.

Invariants enforced:
    - Σdebits = Σcredits within the configured tolerance.
    - One currency per transaction; every account exists and is active.
    - At most one transaction per idempotency key; a replay with the same
      payload returns the original, a different payload is a conflict.
    - An ACTIVE lock blocks the posting whatever the period status.
    - A SOFT_CLOSED period needs a granted, logged override; a HARD_CLOSED
      period (or no period) cannot be posted into.
    - Entries are never changed; a correction is a mirrored reversal.
    - Flush-only: never commits or rolls back the session.

Failure modes:
    - ValidationError, UnbalancedTransactionError, AccountNotFoundError,
      AccountInactiveError: malformed request.
    - IdempotencyConflictError: key reused with a different payload.
    - LockActiveError, PeriodClosedError, OverrideRequiredError: gate denial.
    - TransactionNotFoundError, TransactionNotReversibleError: reversal.

Audit relevance:
    Every posting and reversal emits a hash-chained audit event.  Postings
    that went through an override carry the override log id.
"""

from collections.abc import Iterable, Sequence
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_kernel.db.types import validate_currency
from ledger_kernel.domain.clock import Clock
from ledger_kernel.domain.dtos import (
    AccountBalance,
    EntrySpec,
    PeriodDecision,
    PeriodOverride,
    TransactionInfo,
)
from ledger_kernel.exceptions import (
    AccountInactiveError,
    AccountNotFoundError,
    IdempotencyConflictError,
    LockActiveError,
    OverrideRequiredError,
    PeriodClosedError,
    TransactionNotFoundError,
    TransactionNotReversibleError,
    UnbalancedTransactionError,
    ValidationError,
)
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.models.account import Account, AccountStatus
from ledger_kernel.models.accounting_period import PeriodType
from ledger_kernel.models.admin_override import OverrideType
from ledger_kernel.models.ledger import (
    EntryDirection,
    LedgerEntry,
    LedgerTransaction,
    TransactionStatus,
)
from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_kernel.services.auditor_service import AuditorService
from ledger_kernel.services.base import BaseService
from ledger_kernel.services.lock_service import LedgerLockService
from ledger_kernel.services.override_service import AdminOverrideService
from ledger_kernel.services.period_service import PeriodService
from ledger_kernel.utils.hashing import hash_payload, json_safe
from ledger_kernel.utils.idempotency import generate_idempotency_key

logger = get_logger("services.ledger")

REVERSAL_EVENT_TYPE = "reversal"
DEFAULT_TOLERANCE = Decimal("0.01")


class LedgerService(BaseService[LedgerTransaction]):
    """
    Posts and reverses balanced ledger transactions.

    Contract:
        ``post_transaction`` and ``reverse_transaction`` return a frozen
        ``TransactionInfo``.  The transaction row, its entries, any override
        log row and the audit event share the caller's database transaction.

    Guarantees:
        - A concurrent insert under the same idempotency key resolves to the
          winner inside a savepoint instead of failing the caller.
        - ``idempotent_replay`` is True only for a returned existing posting.

    Non-goals:
        - Does NOT create accounts; the chart of accounts is provisioned
          separately.
        - Does NOT commit.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
        lock_service: LedgerLockService | None = None,
        period_service: PeriodService | None = None,
        override_service: AdminOverrideService | None = None,
        tolerance: Decimal = DEFAULT_TOLERANCE,
        posting_period_type: PeriodType | str = PeriodType.DAILY,
    ):
        super().__init__(session, clock)
        self._auditor = auditor or AuditorService(session, self.clock)
        self._lock_service = lock_service or LedgerLockService(session, self.clock, self._auditor)
        self._period_service = period_service or PeriodService(
            session, self.clock, self._auditor, self._lock_service
        )
        self._override_service = override_service or AdminOverrideService(
            session, self.clock, self._auditor
        )
        self._selector = LedgerSelector(session)
        self._tolerance = tolerance
        self._posting_period_type = PeriodType(posting_period_type)

    # =========================================================================
    # Posting
    # =========================================================================

    def post_transaction(
        self,
        entries: Sequence[EntrySpec],
        idempotency_key: str | None,
        event_type: str,
        *,
        tenant_id: str,
        actor_id: UUID,
        effective_at: datetime | None = None,
        reference: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        period_override: PeriodOverride | None = None,
    ) -> TransactionInfo:
        """
        Post a balanced set of entries as one transaction.

        Args:
            entries: Debit and credit lines; at least one of each side.
            idempotency_key: Deduplication key, usually ``<event>:<source id>``.
            event_type: Business event name stored on the transaction.
            tenant_id: Tenant that owns the posting.
            actor_id: Who is posting.
            effective_at: Posting instant; its date drives the period and
                lock checks.  Defaults to the clock.
            reference: Business reference, unique.  Defaults to ``TXN-<hex>``.
            description: Free text.
            metadata: Extra context (e.g. ``external_reference`` used by
                reconciliation).
            period_override: Justification and role for a SOFT_CLOSED period.

        Returns:
            TransactionInfo of the new posting, or of the original posting
            when the idempotency key was already used with the same payload.
        """
        if not tenant_id:
            raise ValidationError("tenant_id is required", field="tenant_id")
        if not event_type:
            raise ValidationError("event_type is required", field="event_type")

        currency = self._validate_entries(entries)
        total_debits, total_credits = self._check_balance(entries)

        accounts = self._resolve_accounts(entries)
        payload_hash = self._payload_hash(tenant_id, event_type, entries, accounts, effective_at, reference)

        if idempotency_key:
            existing = self._get_by_idempotency_key(idempotency_key)
            if existing is not None:
                return self._replay(existing, idempotency_key, payload_hash)

        self._require_active(accounts.values())

        effective_at = effective_at or self.clock.now()
        reference = reference or f"TXN-{uuid4().hex}"

        with LogContext.bind(tenant_id=tenant_id, actor_id=str(actor_id)):
            override_log_id = self._check_posting_gate(
                tenant_id,
                effective_at.date(),
                actor_id,
                period_override,
                OverrideType.SOFT_CLOSED_PERIOD_POSTING,
                entity_ref=idempotency_key or reference,
            )

            transaction = LedgerTransaction(
                tenant_id=tenant_id,
                reference=reference,
                idempotency_key=idempotency_key,
                payload_hash=payload_hash,
                event_type=event_type,
                status=TransactionStatus.POSTED.value,
                effective_at=effective_at,
                posted_at=self.clock.now(),
                description=description,
                currency=currency,
                amount=total_debits,
                details=json_safe(metadata) if metadata else None,
                override_log_id=override_log_id,
                created_by_id=actor_id,
            )
            self._attach_entries(transaction, entries, accounts, currency)

            savepoint = self.session.begin_nested()
            try:
                self.session.add(transaction)
                self.session.flush()
                savepoint.commit()
            except IntegrityError:
                savepoint.rollback()
                if idempotency_key:
                    winner = self._get_by_idempotency_key(idempotency_key)
                    if winner is not None:
                        logger.warning(
                            "concurrent_insert_conflict",
                            extra={"idempotency_key": idempotency_key},
                        )
                        return self._replay(winner, idempotency_key, payload_hash)
                raise ValidationError(
                    f"Transaction reference already exists: {reference}",
                    field="reference",
                )

            self._auditor.record_posting(
                transaction.id,
                reference,
                event_type,
                total_debits,
                actor_id,
                len(entries),
                override_log_id=override_log_id,
            )
            logger.info(
                "transaction_posted",
                extra={
                    "transaction_id": str(transaction.id),
                    "reference": reference,
                    "event_type": event_type,
                    "amount": str(total_debits),
                    "currency": currency,
                    "entry_count": len(entries),
                    "override_log_id": str(override_log_id) if override_log_id else None,
                },
            )
        return TransactionInfo.from_model(transaction)

    def reverse_transaction(
        self,
        transaction_id: UUID,
        reason: str,
        actor_id: UUID,
        *,
        effective_at: datetime | None = None,
        period_override: PeriodOverride | None = None,
    ) -> TransactionInfo:
        """
        Post the mirror image of a posted transaction and link the two.

        The reversal is dated ``effective_at`` (default: now) and goes
        through the same lock and period gate as any posting.

        Raises:
            TransactionNotFoundError: Unknown transaction.
            TransactionNotReversibleError: Not posted, or already reversed.
            ValidationError: Empty reason.
        """
        if not reason or not reason.strip():
            raise ValidationError("A reversal reason is required", field="reason")

        original = self.session.execute(
            select(LedgerTransaction)
            .where(LedgerTransaction.id == transaction_id)
            .with_for_update()
        ).scalar_one_or_none()
        if original is None:
            raise TransactionNotFoundError(str(transaction_id))

        status = TransactionStatus(original.status)
        if status != TransactionStatus.POSTED or original.reversed_by_id is not None:
            logger.warning(
                "reversal_rejected",
                extra={"transaction_id": str(transaction_id), "status": status.value},
            )
            raise TransactionNotReversibleError(str(transaction_id), status.value)

        effective_at = effective_at or self.clock.now()
        reference = f"{original.reference}-REV"
        idempotency_key = generate_idempotency_key(REVERSAL_EVENT_TYPE, str(original.id))

        with LogContext.bind(tenant_id=original.tenant_id, actor_id=str(actor_id)):
            override_log_id = self._check_posting_gate(
                original.tenant_id,
                effective_at.date(),
                actor_id,
                period_override,
                OverrideType.SOFT_CLOSED_PERIOD_REVERSAL,
                entity_ref=reference,
            )

            mirrored = [
                EntrySpec(
                    account=entry.account_id,
                    direction=EntryDirection(entry.direction).flipped(),
                    amount=entry.amount,
                    currency=entry.currency,
                    description=f"Reversal of line {entry.line_seq}",
                )
                for entry in sorted(original.entries, key=lambda e: e.line_seq)
            ]
            accounts = {entry.account_id: entry.account for entry in original.entries}

            reversal = LedgerTransaction(
                tenant_id=original.tenant_id,
                reference=reference,
                idempotency_key=idempotency_key,
                payload_hash=hash_payload(
                    {"reverses": original.id, "payload_hash": original.payload_hash}
                ),
                event_type=REVERSAL_EVENT_TYPE,
                status=TransactionStatus.POSTED.value,
                effective_at=effective_at,
                posted_at=self.clock.now(),
                description=f"Reversal of {original.reference}: {reason.strip()}",
                currency=original.currency,
                amount=original.amount,
                details={"reason": reason.strip(), "original_reference": original.reference},
                reverses_id=original.id,
                override_log_id=override_log_id,
                created_by_id=actor_id,
            )
            self._attach_entries(reversal, mirrored, accounts, original.currency)

            savepoint = self.session.begin_nested()
            try:
                self.session.add(reversal)
                self.session.flush()
                savepoint.commit()
            except IntegrityError:
                savepoint.rollback()
                logger.warning(
                    "concurrent_reversal_conflict",
                    extra={"transaction_id": str(transaction_id)},
                )
                raise TransactionNotReversibleError(str(transaction_id), TransactionStatus.REVERSED.value)

            original.status = TransactionStatus.REVERSED.value
            original.reversed_by_id = reversal.id
            original.updated_by_id = actor_id
            self.session.flush()

            self._auditor.record_posting(
                reversal.id,
                reference,
                REVERSAL_EVENT_TYPE,
                reversal.amount,
                actor_id,
                len(mirrored),
                override_log_id=override_log_id,
            )
            self._auditor.record_reversal(original.id, reversal.id, reason.strip(), actor_id)
            logger.info(
                "transaction_reversed",
                extra={
                    "transaction_id": str(original.id),
                    "reversal_id": str(reversal.id),
                    "reference": reference,
                },
            )
        return TransactionInfo.from_model(reversal)

    # =========================================================================
    # Reads
    # =========================================================================

    def get_account_balance(self, account_id: UUID, tenant_id: str | None = None) -> AccountBalance:
        """Derived balance of one account over posted and reversed transactions."""
        return self._selector.account_balance(account_id, tenant_id=tenant_id)

    def get_account_balance_by_code(self, code: str, tenant_id: str | None = None) -> AccountBalance:
        return self._selector.account_balance_by_code(code, tenant_id=tenant_id)

    def get_transaction(self, transaction_id: UUID) -> TransactionInfo:
        transaction = self.session.get(LedgerTransaction, transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(str(transaction_id))
        return TransactionInfo.from_model(transaction)

    def get_transaction_by_reference(self, reference: str) -> TransactionInfo:
        transaction = self.session.execute(
            select(LedgerTransaction).where(LedgerTransaction.reference == reference)
        ).scalar_one_or_none()
        if transaction is None:
            raise TransactionNotFoundError(reference)
        return TransactionInfo.from_model(transaction)

    def get_transaction_by_idempotency_key(self, idempotency_key: str) -> TransactionInfo | None:
        transaction = self._get_by_idempotency_key(idempotency_key)
        return TransactionInfo.from_model(transaction) if transaction else None

    # =========================================================================
    # Posting gate
    # =========================================================================

    def _check_posting_gate(
        self,
        tenant_id: str,
        posting_date: date,
        actor_id: UUID,
        period_override: PeriodOverride | None,
        override_type: OverrideType,
        entity_ref: str,
    ) -> UUID | None:
        """
        Locks first, then the period.

        Returns the override log id when the posting proceeds through a
        SOFT_CLOSED period, else None.
        """
        lock = self._lock_service.check_locks(tenant_id, posting_date)
        if lock.is_locked:
            logger.warning(
                "posting_blocked_by_lock",
                extra={
                    "posting_date": str(posting_date),
                    "lock_id": str(lock.lock_id),
                    "lock_type": lock.lock_type.value,
                },
            )
            raise LockActiveError(posting_date, str(lock.lock_id), lock.lock_type.value, lock.reason)

        check = self._period_service.check_period_for_posting(
            tenant_id, posting_date, self._posting_period_type
        )
        if check.decision == PeriodDecision.ALLOWED:
            return None

        period_id = str(check.period_id) if check.period_id else None
        if check.decision == PeriodDecision.BLOCKED:
            logger.warning(
                "posting_blocked_by_period",
                extra={"posting_date": str(posting_date), "period_id": period_id, "reason": check.reason},
            )
            raise PeriodClosedError(posting_date, period_id, check.reason)

        if period_override is None:
            logger.warning(
                "posting_requires_override",
                extra={"posting_date": str(posting_date), "period_id": period_id},
            )
            raise OverrideRequiredError(posting_date, period_id)

        decision = self._override_service.require_override(
            override_type,
            period_override.justification,
            entity_ref,
            actor_id,
            period_override.actor_role,
            tenant_id=tenant_id,
            posting_date=posting_date,
            period_id=check.period_id,
            entity_type="LedgerTransaction",
        )
        return decision.log_id

    # =========================================================================
    # Internals
    # =========================================================================

    def _validate_entries(self, entries: Sequence[EntrySpec]) -> str:
        """Returns the single currency of the entries."""
        if not entries:
            raise ValidationError("A transaction needs at least one entry", field="entries")
        for entry in entries:
            if not isinstance(entry, EntrySpec):
                raise ValidationError(
                    f"Entries must be EntrySpec instances, got {type(entry).__name__}",
                    field="entries",
                )

        currencies = {validate_currency(entry.currency) for entry in entries}
        if len(currencies) > 1:
            raise ValidationError(
                f"All entries must share one currency, got {sorted(currencies)}",
                field="currency",
            )
        directions = {entry.direction for entry in entries}
        if directions != {EntryDirection.DEBIT, EntryDirection.CREDIT}:
            raise ValidationError(
                "A transaction needs at least one debit and one credit entry",
                field="entries",
            )
        return currencies.pop()

    def _check_balance(self, entries: Sequence[EntrySpec]) -> tuple[Decimal, Decimal]:
        total_debits = sum(
            (e.amount for e in entries if e.direction == EntryDirection.DEBIT), Decimal("0")
        )
        total_credits = sum(
            (e.amount for e in entries if e.direction == EntryDirection.CREDIT), Decimal("0")
        )
        if abs(total_debits - total_credits) > self._tolerance:
            logger.warning(
                "unbalanced_transaction",
                extra={
                    "sum_debit": str(total_debits),
                    "sum_credit": str(total_credits),
                    "imbalance": str(total_debits - total_credits),
                },
            )
            raise UnbalancedTransactionError(total_debits, total_credits, self._tolerance)
        return total_debits, total_credits

    def _resolve_accounts(self, entries: Sequence[EntrySpec]) -> dict[str | UUID, Account]:
        accounts: dict[str | UUID, Account] = {}
        for entry in entries:
            if entry.account in accounts:
                continue
            if isinstance(entry.account, UUID):
                account = self.session.get(Account, entry.account)
            else:
                account = self.session.execute(
                    select(Account).where(Account.code == entry.account)
                ).scalar_one_or_none()
            if account is None:
                raise AccountNotFoundError(str(entry.account))
            accounts[entry.account] = account
        return accounts

    def _require_active(self, accounts: Iterable[Account]) -> None:
        for account in accounts:
            if AccountStatus(account.status) != AccountStatus.ACTIVE:
                logger.warning(
                    "posting_to_inactive_account",
                    extra={"account_code": account.code, "status": account.status},
                )
                raise AccountInactiveError(account.code, AccountStatus(account.status).value)

    def _attach_entries(
        self,
        transaction: LedgerTransaction,
        entries: Sequence[EntrySpec],
        accounts: dict[str | UUID, Account],
        currency: str,
    ) -> None:
        transaction.entries = [
            LedgerEntry(
                account=accounts[entry.account],
                direction=EntryDirection(entry.direction).value,
                amount=entry.amount,
                currency=currency,
                description=entry.description,
                line_seq=line_seq,
            )
            for line_seq, entry in enumerate(entries, start=1)
        ]

    def _payload_hash(
        self,
        tenant_id: str,
        event_type: str,
        entries: Sequence[EntrySpec],
        accounts: dict[str | UUID, Account],
        effective_at: datetime | None,
        reference: str | None,
    ) -> str:
        # Defaults filled in by the service are left out so a retried request
        # hashes the same as the original. Accounts hash by id, whether the
        # caller named them by code or by id.
        return hash_payload(
            {
                "tenant_id": tenant_id,
                "event_type": event_type,
                "effective_at": effective_at,
                "reference": reference,
                "entries": [
                    {
                        "account": accounts[entry.account].id,
                        "direction": entry.direction,
                        "amount": entry.amount,
                        "currency": validate_currency(entry.currency),
                    }
                    for entry in entries
                ],
            }
        )

    def _get_by_idempotency_key(self, idempotency_key: str) -> LedgerTransaction | None:
        return self.session.execute(
            select(LedgerTransaction).where(LedgerTransaction.idempotency_key == idempotency_key)
        ).scalar_one_or_none()

    def _replay(
        self,
        existing: LedgerTransaction,
        idempotency_key: str,
        payload_hash: str,
    ) -> TransactionInfo:
        if existing.payload_hash != payload_hash:
            logger.warning(
                "idempotency_conflict",
                extra={
                    "idempotency_key": idempotency_key,
                    "existing_transaction_id": str(existing.id),
                },
            )
            raise IdempotencyConflictError(idempotency_key, str(existing.id))
        logger.info(
            "transaction_idempotent_replay",
            extra={"idempotency_key": idempotency_key, "transaction_id": str(existing.id)},
        )
        return TransactionInfo.from_model(existing, idempotent_replay=True)
