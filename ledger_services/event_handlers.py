"""
Business Event Handlers (``ledger_services.event_handlers``).

Responsibility
--------------
Turns payment back-office events into balanced ledger postings.  Each event
maps to exactly one ``LedgerService.post_transaction`` call whose
idempotency key is ``<event_type>:<source id>``, so a redelivered event
returns the original posting instead of writing a second one.

Architecture position
---------------------
**Services layer** -- thin glue over the kernel.  Handlers decide accounts
and amounts; validation, the posting gate and auditing stay in
``LedgerService``.  Handlers flush only; the caller owns the transaction.

Posting map
-----------
* payment_success: D ESC-001 / C ESC-002 (gross); D MER-001 / C MER-002
  (net of fees); D REV-REC-001 / C REV-001 (platform fee);
  D GTW-FEE-xxx / C GTW-PAY-001 (gateway fee).
* refund: D ESC-002 / C ESC-001 (refund); D MER-002 / C MER-001 (refund net
  of refunded fees); D REV-001 / C REV-REC-001 (platform fee refunded).
* chargeback: D CHB-001 / C MER-001; D ESC-002 / C ESC-001.
* chargeback_reversal: mirrored reversal of the chargeback posting.
* manual_adjustment: D to_account / C from_account, approver required.

Every posting carries ``amount`` and ``external_reference`` in its metadata
so reconciliation compares the business amount rather than the sum of legs.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from ledger_kernel.db.types import to_money
from ledger_kernel.domain.dtos import EntrySpec, PeriodOverride, TransactionInfo
from ledger_kernel.exceptions import TransactionNotFoundError, ValidationError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.services.ledger_service import LedgerService
from ledger_kernel.services.settlement_service import SYSTEM_ACTOR_ID
from ledger_kernel.utils.idempotency import generate_idempotency_key
from ledger_services.chart_of_accounts import (
    CHARGEBACK_LIABILITY,
    ESCROW_BANK,
    ESCROW_LIABILITY,
    GATEWAY_PAYABLE,
    MERCHANT_PAYABLE,
    MERCHANT_RECEIVABLE,
    PLATFORM_MDR_REVENUE,
    PLATFORM_RECEIVABLE,
    gateway_fee_account,
)

logger = get_logger("services.event_handlers")

PAYMENT_SUCCESS = "payment_success"
REFUND = "refund"
CHARGEBACK = "chargeback"
CHARGEBACK_REVERSAL = "chargeback_reversal"
MANUAL_ADJUSTMENT = "manual_adjustment"

_ZERO = Decimal("0")


def _non_negative(value: Any, field: str) -> Decimal:
    amount = to_money(value, field=field)
    if amount < 0:
        raise ValidationError(f"{field} cannot be negative, got {amount}", field=field)
    return amount


def _positive(value: Any, field: str) -> Decimal:
    amount = to_money(value, field=field)
    if amount <= 0:
        raise ValidationError(f"{field} must be strictly positive, got {amount}", field=field)
    return amount


def _require(value: Any, field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required", field=field)
    return str(value).strip()


class LedgerEventHandlers:
    """
    One method per business event.

    Contract:
        Every method returns the ``TransactionInfo`` of the posting; a
        repeated event returns the original with ``idempotent_replay=True``.
        Gate denials (locks, closed periods, overrides) propagate from
        ``LedgerService`` unchanged.
    """

    def __init__(self, ledger_service: LedgerService, currency: str = "INR"):
        self._ledger = ledger_service
        self._currency = currency
        self._dispatch: dict[str, Callable[..., TransactionInfo]] = {
            PAYMENT_SUCCESS: self.handle_payment_success,
            REFUND: self.handle_refund,
            CHARGEBACK: self.handle_chargeback,
            CHARGEBACK_REVERSAL: self.handle_chargeback_reversal,
            MANUAL_ADJUSTMENT: self.handle_manual_adjustment,
        }

    @property
    def event_types(self) -> tuple[str, ...]:
        return tuple(self._dispatch)

    def handle(self, event_type: str, **params: Any) -> TransactionInfo:
        """Route an event by name to its handler."""
        handler = self._dispatch.get(event_type)
        if handler is None:
            raise ValidationError(f"Unknown event type: {event_type}", field="event_type")
        return handler(**params)

    # =========================================================================
    # Payments
    # =========================================================================

    def handle_payment_success(
        self,
        *,
        tenant_id: str,
        payment_id: str,
        merchant_id: str,
        amount: Decimal | int | str,
        order_id: str | None = None,
        gateway: str | None = None,
        platform_fee: Decimal | int | str = _ZERO,
        gateway_fee: Decimal | int | str = _ZERO,
        actor_id: UUID = SYSTEM_ACTOR_ID,
        effective_at: datetime | None = None,
        period_override: PeriodOverride | None = None,
    ) -> TransactionInfo:
        payment_id = _require(payment_id, "payment_id")
        merchant_id = _require(merchant_id, "merchant_id")
        gross = _positive(amount, "amount")
        platform_fee = _non_negative(platform_fee, "platform_fee")
        gateway_fee = _non_negative(gateway_fee, "gateway_fee")
        merchant_amount = gross - platform_fee - gateway_fee
        if merchant_amount <= 0:
            raise ValidationError(
                f"Fees ({platform_fee + gateway_fee}) leave nothing for the merchant "
                f"out of {gross}",
                field="amount",
            )

        entries = [
            EntrySpec.debit(ESCROW_BANK, gross, currency=self._currency,
                            description="Payment received in escrow"),
            EntrySpec.credit(ESCROW_LIABILITY, gross, currency=self._currency,
                             description="Customer deposit liability"),
            EntrySpec.debit(MERCHANT_RECEIVABLE, merchant_amount, currency=self._currency,
                            description="Receivable for merchant share"),
            EntrySpec.credit(MERCHANT_PAYABLE, merchant_amount, currency=self._currency,
                             description="Payable to merchant"),
        ]
        if platform_fee > 0:
            entries += [
                EntrySpec.debit(PLATFORM_RECEIVABLE, platform_fee, currency=self._currency,
                                description="Platform fee receivable"),
                EntrySpec.credit(PLATFORM_MDR_REVENUE, platform_fee, currency=self._currency,
                                 description="Platform MDR revenue"),
            ]
        if gateway_fee > 0:
            entries += [
                EntrySpec.debit(gateway_fee_account(gateway), gateway_fee, currency=self._currency,
                                description="Gateway fee expense"),
                EntrySpec.credit(GATEWAY_PAYABLE, gateway_fee, currency=self._currency,
                                 description="Gateway fee payable"),
            ]

        return self._post(
            PAYMENT_SUCCESS,
            payment_id,
            entries,
            tenant_id=tenant_id,
            actor_id=actor_id,
            reference=f"PAY-{payment_id}",
            description=f"Payment {payment_id} for merchant {merchant_id}",
            metadata={
                "external_reference": payment_id,
                "amount": gross,
                "merchant_id": merchant_id,
                "order_id": order_id,
                "gateway": gateway,
                "platform_fee": platform_fee,
                "gateway_fee": gateway_fee,
                "merchant_amount": merchant_amount,
            },
            effective_at=effective_at,
            period_override=period_override,
        )

    def handle_refund(
        self,
        *,
        tenant_id: str,
        refund_id: str,
        merchant_id: str,
        refund_amount: Decimal | int | str,
        payment_id: str | None = None,
        platform_fee_refund: Decimal | int | str = _ZERO,
        gateway_fee_refund: Decimal | int | str = _ZERO,
        reason: str | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
        effective_at: datetime | None = None,
        period_override: PeriodOverride | None = None,
    ) -> TransactionInfo:
        refund_id = _require(refund_id, "refund_id")
        merchant_id = _require(merchant_id, "merchant_id")
        refund_amount = _positive(refund_amount, "refund_amount")
        platform_fee_refund = _non_negative(platform_fee_refund, "platform_fee_refund")
        gateway_fee_refund = _non_negative(gateway_fee_refund, "gateway_fee_refund")
        merchant_share = refund_amount - platform_fee_refund - gateway_fee_refund
        if merchant_share < 0:
            raise ValidationError(
                "Refunded fees exceed the refund amount", field="refund_amount"
            )

        entries = [
            EntrySpec.debit(ESCROW_LIABILITY, refund_amount, currency=self._currency,
                            description="Customer deposit returned"),
            EntrySpec.credit(ESCROW_BANK, refund_amount, currency=self._currency,
                             description="Refund paid from escrow"),
        ]
        if merchant_share > 0:
            entries += [
                EntrySpec.debit(MERCHANT_PAYABLE, merchant_share, currency=self._currency,
                                description="Merchant payable reduced"),
                EntrySpec.credit(MERCHANT_RECEIVABLE, merchant_share, currency=self._currency,
                                 description="Merchant receivable reduced"),
            ]
        if platform_fee_refund > 0:
            entries += [
                EntrySpec.debit(PLATFORM_MDR_REVENUE, platform_fee_refund, currency=self._currency,
                                description="Platform fee refunded"),
                EntrySpec.credit(PLATFORM_RECEIVABLE, platform_fee_refund, currency=self._currency,
                                 description="Platform fee receivable reversed"),
            ]

        return self._post(
            REFUND,
            refund_id,
            entries,
            tenant_id=tenant_id,
            actor_id=actor_id,
            reference=f"RFD-{refund_id}",
            description=reason or f"Refund {refund_id} for merchant {merchant_id}",
            metadata={
                "external_reference": refund_id,
                "amount": refund_amount,
                "merchant_id": merchant_id,
                "payment_id": payment_id,
                "platform_fee_refund": platform_fee_refund,
                "gateway_fee_refund": gateway_fee_refund,
                "reason": reason,
            },
            effective_at=effective_at,
            period_override=period_override,
        )

    # =========================================================================
    # Chargebacks
    # =========================================================================

    def handle_chargeback(
        self,
        *,
        tenant_id: str,
        chargeback_id: str,
        merchant_id: str,
        amount: Decimal | int | str,
        reason: str,
        payment_id: str | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
        effective_at: datetime | None = None,
        period_override: PeriodOverride | None = None,
    ) -> TransactionInfo:
        chargeback_id = _require(chargeback_id, "chargeback_id")
        merchant_id = _require(merchant_id, "merchant_id")
        reason = _require(reason, "reason")
        amount = _positive(amount, "amount")

        entries = [
            EntrySpec.debit(CHARGEBACK_LIABILITY, amount, currency=self._currency,
                            description="Chargeback raised against merchant"),
            EntrySpec.credit(MERCHANT_RECEIVABLE, amount, currency=self._currency,
                             description="Merchant receivable reduced"),
            EntrySpec.debit(ESCROW_LIABILITY, amount, currency=self._currency,
                            description="Customer deposit returned"),
            EntrySpec.credit(ESCROW_BANK, amount, currency=self._currency,
                             description="Chargeback paid from escrow"),
        ]
        return self._post(
            CHARGEBACK,
            chargeback_id,
            entries,
            tenant_id=tenant_id,
            actor_id=actor_id,
            reference=f"CHB-{chargeback_id}",
            description=f"Chargeback {chargeback_id}: {reason}",
            metadata={
                "external_reference": chargeback_id,
                "amount": amount,
                "merchant_id": merchant_id,
                "payment_id": payment_id,
                "reason": reason,
            },
            effective_at=effective_at,
            period_override=period_override,
        )

    def handle_chargeback_reversal(
        self,
        *,
        chargeback_id: str,
        reason: str,
        actor_id: UUID = SYSTEM_ACTOR_ID,
        effective_at: datetime | None = None,
        period_override: PeriodOverride | None = None,
        tenant_id: str | None = None,
    ) -> TransactionInfo:
        """
        Reverse a chargeback the merchant won.

        A second call for the same chargeback returns the existing reversal
        marked as a replay.
        """
        chargeback_id = _require(chargeback_id, "chargeback_id")
        reason = _require(reason, "reason")
        key = generate_idempotency_key(CHARGEBACK, chargeback_id)
        original = self._ledger.get_transaction_by_idempotency_key(key)
        if original is None or (tenant_id is not None and original.tenant_id != tenant_id):
            raise TransactionNotFoundError(key)

        if original.reversed_by_id is not None:
            logger.info(
                "chargeback_reversal_replayed",
                extra={"chargeback_id": chargeback_id, "reversal_id": str(original.reversed_by_id)},
            )
            return replace(self._ledger.get_transaction(original.reversed_by_id), idempotent_replay=True)

        reversal = self._ledger.reverse_transaction(
            original.id,
            f"Chargeback won by merchant: {reason}",
            actor_id,
            effective_at=effective_at,
            period_override=period_override,
        )
        logger.info(
            "chargeback_reversed",
            extra={"chargeback_id": chargeback_id, "reversal_id": str(reversal.id)},
        )
        return reversal

    # =========================================================================
    # Adjustments
    # =========================================================================

    def handle_manual_adjustment(
        self,
        *,
        tenant_id: str,
        adjustment_id: str,
        amount: Decimal | int | str,
        from_account: str,
        to_account: str,
        reason: str,
        approved_by: UUID | str | None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
        effective_at: datetime | None = None,
        period_override: PeriodOverride | None = None,
    ) -> TransactionInfo:
        """Move ``amount`` from ``from_account`` (credited) to ``to_account`` (debited)."""
        adjustment_id = _require(adjustment_id, "adjustment_id")
        reason = _require(reason, "reason")
        approver = _require(approved_by, "approved_by")
        from_account = _require(from_account, "from_account")
        to_account = _require(to_account, "to_account")
        if from_account == to_account:
            raise ValidationError("Adjustment accounts must differ", field="to_account")
        amount = _positive(amount, "amount")

        entries = [
            EntrySpec.debit(to_account, amount, currency=self._currency, description=reason),
            EntrySpec.credit(from_account, amount, currency=self._currency, description=reason),
        ]
        return self._post(
            MANUAL_ADJUSTMENT,
            adjustment_id,
            entries,
            tenant_id=tenant_id,
            actor_id=actor_id,
            reference=f"ADJ-{adjustment_id}",
            description=f"Manual adjustment: {reason}",
            metadata={
                "external_reference": adjustment_id,
                "amount": amount,
                "approved_by": approver,
                "reason": reason,
                "from_account": from_account,
                "to_account": to_account,
            },
            effective_at=effective_at,
            period_override=period_override,
        )

    # =========================================================================
    # Internal
    # =========================================================================

    def _post(
        self,
        event_type: str,
        source_id: str,
        entries: list[EntrySpec],
        *,
        tenant_id: str,
        actor_id: UUID,
        reference: str,
        description: str,
        metadata: dict[str, Any],
        effective_at: datetime | None,
        period_override: PeriodOverride | None,
    ) -> TransactionInfo:
        logger.info(
            "ledger_event_received",
            extra={"event_type": event_type, "source_id": source_id, "tenant_id": tenant_id},
        )
        result = self._ledger.post_transaction(
            entries,
            generate_idempotency_key(event_type, source_id),
            event_type,
            tenant_id=tenant_id,
            actor_id=actor_id,
            effective_at=effective_at,
            reference=reference,
            description=description,
            metadata={k: v for k, v in metadata.items() if v is not None},
            period_override=period_override,
        )
        if result.idempotent_replay:
            logger.info(
                "ledger_event_replayed",
                extra={"event_type": event_type, "transaction_id": str(result.id)},
            )
        return result
