"""
SettlementService -- merchant payouts tracked to bank-confirmed finality.

Responsibility:
    Drives a settlement through its state machine, posts the ledger entries
    that belong to creation (funds reservation) and bank confirmation
    (payable to paid), and schedules failed settlements for retry with
    capped exponential backoff.

Architecture position:
    Kernel > Services -- imperative shell.  Legal edges and backoff come
    from ``ledger_kernel.domain.settlement_state``; ledger postings go
    through LedgerService.  Retry execution is driven from outside by
    ``ledger_services.settlement_scheduler``.

Invariants enforced:
    - Only edges of the settlement graph are taken; the row is locked
      FOR UPDATE while it changes.
    - BANK_CONFIRMED requires a bank reference (UTR).
    - retry_count never exceeds max_retries; at the limit FAILED is terminal.
    - retry() never executes inline: it only sets RETRIED and next_retry_at.
    - Every transition appends to state_transitions and emits an audit event.
    - Flush-only: never commits or rolls back the session.

Failure modes:
    - SettlementNotFoundError, InvalidStateTransitionError,
      MaxRetriesExceededError.
    - ValidationError: bad amounts, missing UTR or failure reason,
      duplicate settlement_ref.
    - Any posting-gate error from LedgerService (locks, closed periods).

Audit relevance:
    state_transitions and retry_history on the row, plus settlement_created,
    settlement_transition and settlement_retry_scheduled audit events.
"""

import random
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_kernel.db.types import to_money, validate_currency
from ledger_kernel.domain.clock import Clock
from ledger_kernel.domain.dtos import EntrySpec, SettlementInfo
from ledger_kernel.domain.settlement_state import RetryBackoff, allowed_transitions, can_transition
from ledger_kernel.exceptions import (
    InvalidStateTransitionError,
    MaxRetriesExceededError,
    SettlementNotFoundError,
    ValidationError,
)
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.models.settlement import Settlement, SettlementState
from ledger_kernel.services.auditor_service import AuditorService
from ledger_kernel.services.base import BaseService
from ledger_kernel.services.ledger_service import LedgerService
from ledger_kernel.utils.hashing import json_safe
from ledger_kernel.utils.idempotency import generate_idempotency_key

logger = get_logger("services.settlement")

# Actor recorded for transitions driven by the retry scheduler
SYSTEM_ACTOR_ID = UUID("00000000-0000-0000-0000-000000000000")

# Chart of accounts codes used by settlement postings
MERCHANT_RECEIVABLE = "MER-001"
MERCHANT_PAYABLE = "MER-002"
MERCHANT_SETTLEMENT = "MER-003"
ESCROW_BANK = "ESC-001"
ESCROW_LIABILITY = "ESC-002"

RESERVATION_EVENT = "settlement_reservation"
CONFIRMATION_EVENT = "settlement_confirmation"

_TIMESTAMP_FIELDS = {
    SettlementState.FUNDS_RESERVED: "funds_reserved_at",
    SettlementState.SENT_TO_BANK: "sent_to_bank_at",
    SettlementState.BANK_CONFIRMED: "bank_confirmed_at",
    SettlementState.SETTLED: "settled_at",
    SettlementState.FAILED: "failed_at",
}


class SettlementService(BaseService[Settlement]):
    """
    Settlement lifecycle with ledger postings and retry scheduling.

    Contract:
        Every public mutator returns a frozen ``SettlementInfo`` reflecting
        the flushed row.  Ledger postings share the caller's transaction, so
        a failed posting leaves the settlement unchanged once the caller
        rolls back.

    Non-goals:
        - Does NOT talk to banks.  Callers report bank outcomes through
          send_to_bank, confirm_by_bank and mark_failed.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
        ledger_service: LedgerService | None = None,
        backoff: RetryBackoff | None = None,
        max_retries: int = 3,
        rng: Callable[[], float] = random.random,
    ):
        super().__init__(session, clock)
        self._auditor = auditor or AuditorService(session, self.clock)
        self._ledger = ledger_service or LedgerService(session, self.clock, self._auditor)
        self._backoff = backoff or RetryBackoff()
        self._max_retries = max_retries
        self._rng = rng

    # =========================================================================
    # Creation
    # =========================================================================

    def create_settlement(
        self,
        tenant_id: str,
        merchant_id: str,
        gross_amount: Decimal | int | str,
        fees_amount: Decimal | int | str,
        actor_id: UUID,
        *,
        net_amount: Decimal | int | str | None = None,
        currency: str = "INR",
        settlement_ref: str | None = None,
        bank_account_number: str | None = None,
        bank_ifsc: str | None = None,
        bank_account_holder: str | None = None,
        max_retries: int | None = None,
    ) -> SettlementInfo:
        """
        Create a settlement in CREATED and reserve its net amount.

        Posts debit MER-002 (merchant payable) / credit MER-003 (merchant
        settlement) for the net amount in the same transaction.

        Raises:
            ValidationError: Negative amounts, net not positive, net not
                equal to gross - fees, or duplicate settlement_ref.
        """
        if not tenant_id or not merchant_id:
            raise ValidationError("tenant_id and merchant_id are required", field="merchant_id")
        gross = to_money(gross_amount, field="gross_amount")
        fees = to_money(fees_amount, field="fees_amount")
        net = gross - fees if net_amount is None else to_money(net_amount, field="net_amount")
        if gross < 0 or fees < 0:
            raise ValidationError("Settlement amounts must be non-negative", field="gross_amount")
        if net <= 0:
            raise ValidationError(f"Net settlement amount must be positive, got {net}", field="net_amount")
        if net != gross - fees:
            raise ValidationError(
                f"net_amount {net} does not equal gross {gross} - fees {fees}",
                field="net_amount",
            )
        currency = validate_currency(currency)
        now = self.clock.now()
        settlement_ref = settlement_ref or f"SETL-{now:%Y%m%d}-{uuid4().hex[:8].upper()}"

        settlement = Settlement(
            tenant_id=tenant_id,
            settlement_ref=settlement_ref,
            merchant_id=merchant_id,
            gross_amount=gross,
            fees_amount=fees,
            net_amount=net,
            currency=currency,
            bank_account_number=bank_account_number,
            bank_ifsc=bank_ifsc,
            bank_account_holder=bank_account_holder,
            state=SettlementState.CREATED.value,
            retry_count=0,
            max_retries=self._max_retries if max_retries is None else max_retries,
            state_transitions=[self._transition_record(None, SettlementState.CREATED, actor_id, now)],
            retry_history=[],
            created_by_id=actor_id,
        )

        savepoint = self.session.begin_nested()
        try:
            self.session.add(settlement)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            raise ValidationError(
                f"Settlement reference already exists: {settlement_ref}",
                field="settlement_ref",
            )

        with LogContext.bind(settlement_id=str(settlement.id)):
            reservation = self._ledger.post_transaction(
                [
                    EntrySpec.debit(MERCHANT_PAYABLE, net, currency=currency),
                    EntrySpec.credit(MERCHANT_SETTLEMENT, net, currency=currency),
                ],
                generate_idempotency_key(RESERVATION_EVENT, settlement_ref),
                RESERVATION_EVENT,
                tenant_id=tenant_id,
                actor_id=actor_id,
                description=f"Funds reservation for settlement {settlement_ref}",
                metadata={
                    "settlement_id": settlement.id,
                    "settlement_ref": settlement_ref,
                    "merchant_id": merchant_id,
                    "amount": net,
                },
            )
            settlement.reservation_transaction_id = reservation.id
            self.session.flush()

            self._auditor.record_settlement_created(
                settlement.id,
                {
                    "settlement_ref": settlement_ref,
                    "merchant_id": merchant_id,
                    "gross_amount": gross,
                    "fees_amount": fees,
                    "net_amount": net,
                    "currency": currency,
                    "reservation_transaction_id": reservation.id,
                },
                actor_id,
            )
            logger.info(
                "settlement_created",
                extra={
                    "settlement_ref": settlement_ref,
                    "merchant_id": merchant_id,
                    "net_amount": str(net),
                    "currency": currency,
                },
            )
        return SettlementInfo.from_model(settlement)

    # =========================================================================
    # Forward transitions
    # =========================================================================

    def reserve_funds(self, settlement_id: UUID, actor_id: UUID) -> SettlementInfo:
        """CREATED -> FUNDS_RESERVED."""
        settlement = self._get_for_update(settlement_id)
        self._transition(settlement, SettlementState.FUNDS_RESERVED, actor_id)
        return SettlementInfo.from_model(settlement)

    def send_to_bank(
        self,
        settlement_id: UUID,
        actor_id: UUID,
        bank_batch_id: str | None = None,
    ) -> SettlementInfo:
        """FUNDS_RESERVED -> SENT_TO_BANK."""
        settlement = self._get_for_update(settlement_id)
        details = {"bank_batch_id": bank_batch_id} if bank_batch_id else None
        self._transition(settlement, SettlementState.SENT_TO_BANK, actor_id, details)
        return SettlementInfo.from_model(settlement)

    def confirm_by_bank(
        self,
        settlement_id: UUID,
        bank_reference: str,
        actor_id: UUID,
    ) -> SettlementInfo:
        """
        SENT_TO_BANK -> BANK_CONFIRMED, the point of finality.

        Posts the payable-to-paid recognition: debit MER-003 / credit
        ESC-001 and debit ESC-002 / credit MER-001, each for the net amount.

        Raises:
            ValidationError: Missing bank reference (UTR).
            InvalidStateTransitionError: Not SENT_TO_BANK.
        """
        if not bank_reference or not bank_reference.strip():
            raise ValidationError("A bank reference (UTR) is required to confirm", field="bank_reference")
        bank_reference = bank_reference.strip()

        settlement = self._get_for_update(settlement_id)
        self._require_edge(settlement, SettlementState.BANK_CONFIRMED)

        net = settlement.net_amount
        currency = settlement.currency
        with LogContext.bind(settlement_id=str(settlement.id)):
            confirmation = self._ledger.post_transaction(
                [
                    EntrySpec.debit(MERCHANT_SETTLEMENT, net, currency=currency),
                    EntrySpec.credit(ESCROW_BANK, net, currency=currency),
                    EntrySpec.debit(ESCROW_LIABILITY, net, currency=currency),
                    EntrySpec.credit(MERCHANT_RECEIVABLE, net, currency=currency),
                ],
                generate_idempotency_key(CONFIRMATION_EVENT, settlement.settlement_ref),
                CONFIRMATION_EVENT,
                tenant_id=settlement.tenant_id,
                actor_id=actor_id,
                description=f"Bank confirmation for settlement {settlement.settlement_ref}",
                metadata={
                    "settlement_id": settlement.id,
                    "settlement_ref": settlement.settlement_ref,
                    "merchant_id": settlement.merchant_id,
                    "external_reference": bank_reference,
                    "amount": net,
                },
            )

            settlement.bank_reference = bank_reference
            settlement.confirmation_transaction_id = confirmation.id
            self._transition(
                settlement,
                SettlementState.BANK_CONFIRMED,
                actor_id,
                {"bank_reference": bank_reference, "confirmation_transaction_id": confirmation.id},
            )
        return SettlementInfo.from_model(settlement)

    def mark_settled(self, settlement_id: UUID, actor_id: UUID) -> SettlementInfo:
        """BANK_CONFIRMED -> SETTLED (terminal)."""
        settlement = self._get_for_update(settlement_id)
        self._transition(settlement, SettlementState.SETTLED, actor_id)
        return SettlementInfo.from_model(settlement)

    # =========================================================================
    # Failure and retry
    # =========================================================================

    def mark_failed(self, settlement_id: UUID, reason: str, actor_id: UUID) -> SettlementInfo:
        """Any non-terminal, non-FAILED state -> FAILED.  A reason is required."""
        if not reason or not reason.strip():
            raise ValidationError("A failure reason is required", field="reason")
        settlement = self._get_for_update(settlement_id)
        self._require_edge(settlement, SettlementState.FAILED)
        settlement.failure_reason = reason.strip()
        settlement.next_retry_at = None
        self._transition(settlement, SettlementState.FAILED, actor_id, {"reason": reason.strip()})
        return SettlementInfo.from_model(settlement)

    def retry(self, settlement_id: UUID, actor_id: UUID) -> SettlementInfo:
        """
        Schedule a FAILED settlement for another attempt.

        Sets RETRIED, increments retry_count and sets next_retry_at from the
        jittered backoff.  The attempt itself runs later through
        resume_retry.

        Raises:
            InvalidStateTransitionError: Not FAILED.
            MaxRetriesExceededError: retry_count already at max_retries.
        """
        settlement = self._get_for_update(settlement_id)
        self._require_edge(settlement, SettlementState.RETRIED)

        if settlement.retry_count >= settlement.max_retries:
            logger.warning(
                "settlement_retries_exhausted",
                extra={
                    "settlement_id": str(settlement.id),
                    "retry_count": settlement.retry_count,
                    "max_retries": settlement.max_retries,
                },
            )
            raise MaxRetriesExceededError(
                str(settlement.id), settlement.retry_count, settlement.max_retries
            )

        now = self.clock.now()
        delay_seconds = self._backoff.delay_seconds(settlement.retry_count, self._rng)
        next_retry_at = now + timedelta(seconds=delay_seconds)
        attempt = settlement.retry_count + 1

        settlement.retry_count = attempt
        settlement.next_retry_at = next_retry_at
        settlement.retry_history = [
            *(settlement.retry_history or []),
            json_safe({
                "attempt": attempt,
                "delay_seconds": round(delay_seconds, 3),
                "scheduled_at": now,
                "next_retry_at": next_retry_at,
                "previous_failure_reason": settlement.failure_reason,
                "actor_id": actor_id,
            }),
        ]
        self._transition(settlement, SettlementState.RETRIED, actor_id, {"attempt": attempt})

        self._auditor.record_retry_scheduled(settlement.id, attempt, delay_seconds, next_retry_at, actor_id)
        logger.info(
            "settlement_retry_scheduled",
            extra={
                "settlement_id": str(settlement.id),
                "attempt": attempt,
                "delay_seconds": round(delay_seconds, 3),
                "next_retry_at": next_retry_at.isoformat(),
            },
        )
        return SettlementInfo.from_model(settlement)

    def resume_retry(self, settlement_id: UUID, actor_id: UUID = SYSTEM_ACTOR_ID) -> SettlementInfo:
        """RETRIED -> FUNDS_RESERVED; the reservation posting from creation still stands."""
        settlement = self._get_for_update(settlement_id)
        self._require_edge(settlement, SettlementState.FUNDS_RESERVED)
        settlement.next_retry_at = None
        self._transition(
            settlement,
            SettlementState.FUNDS_RESERVED,
            actor_id,
            {"attempt": settlement.retry_count},
        )
        return SettlementInfo.from_model(settlement)

    def get_settlements_due_for_retry(
        self,
        now: datetime | None = None,
        tenant_id: str | None = None,
        limit: int | None = None,
    ) -> list[SettlementInfo]:
        """RETRIED settlements whose next_retry_at is at or before now, earliest first."""
        now = now or self.clock.now()
        query = select(Settlement).where(
            Settlement.state == SettlementState.RETRIED.value,
            Settlement.next_retry_at.is_not(None),
            Settlement.next_retry_at <= now,
        )
        if tenant_id is not None:
            query = query.where(Settlement.tenant_id == tenant_id)
        query = query.order_by(Settlement.next_retry_at)
        if limit is not None:
            query = query.limit(limit)
        return [SettlementInfo.from_model(s) for s in self.session.execute(query).scalars().all()]

    # =========================================================================
    # Queries
    # =========================================================================

    def get_settlement(self, settlement_id: UUID) -> SettlementInfo:
        settlement = self.session.get(Settlement, settlement_id)
        if settlement is None:
            raise SettlementNotFoundError(str(settlement_id))
        return SettlementInfo.from_model(settlement)

    def list_settlements(
        self,
        tenant_id: str,
        state: SettlementState | str | None = None,
    ) -> list[SettlementInfo]:
        query = select(Settlement).where(Settlement.tenant_id == tenant_id)
        if state is not None:
            query = query.where(Settlement.state == SettlementState(state).value)
        settlements = self.session.execute(query.order_by(Settlement.created_at)).scalars().all()
        return [SettlementInfo.from_model(s) for s in settlements]

    # =========================================================================
    # Internals
    # =========================================================================

    def _get_for_update(self, settlement_id: UUID) -> Settlement:
        settlement = self.session.execute(
            select(Settlement)
            .where(Settlement.id == settlement_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if settlement is None:
            raise SettlementNotFoundError(str(settlement_id))
        return settlement

    def _require_edge(self, settlement: Settlement, to_state: SettlementState) -> None:
        from_state = SettlementState(settlement.state)
        if not can_transition(from_state, to_state):
            allowed = sorted(s.value for s in allowed_transitions(from_state))
            logger.warning(
                "invalid_settlement_transition",
                extra={
                    "settlement_id": str(settlement.id),
                    "from_state": from_state.value,
                    "to_state": to_state.value,
                },
            )
            raise InvalidStateTransitionError(
                str(settlement.id), from_state.value, to_state.value, allowed
            )

    def _transition(
        self,
        settlement: Settlement,
        to_state: SettlementState,
        actor_id: UUID,
        details: dict[str, Any] | None = None,
    ) -> None:
        self._require_edge(settlement, to_state)
        from_state = SettlementState(settlement.state)
        now = self.clock.now()

        settlement.state = to_state.value
        settlement.updated_by_id = actor_id
        timestamp_field = _TIMESTAMP_FIELDS.get(to_state)
        if timestamp_field:
            setattr(settlement, timestamp_field, now)
        # JSON columns are replaced, never mutated in place
        settlement.state_transitions = [
            *(settlement.state_transitions or []),
            self._transition_record(from_state, to_state, actor_id, now, details),
        ]
        self.session.flush()

        self._auditor.record_settlement_transition(
            settlement.id, from_state.value, to_state.value, actor_id, json_safe(details or {})
        )
        logger.info(
            "settlement_transition",
            extra={
                "settlement_id": str(settlement.id),
                "settlement_ref": settlement.settlement_ref,
                "from_state": from_state.value,
                "to_state": to_state.value,
                "actor_id": str(actor_id),
            },
        )

    @staticmethod
    def _transition_record(
        from_state: SettlementState | None,
        to_state: SettlementState,
        actor_id: UUID,
        at: datetime,
        details: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        record = {
            "from": from_state.value if from_state else None,
            "to": to_state.value,
            "at": at,
            "actor_id": actor_id,
        }
        if details:
            record["details"] = details
        return json_safe(record)
