"""
Module: ledger_kernel.models.settlement
Responsibility: ORM persistence for merchant settlements tracked to
    bank-confirmed finality.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - state only changes along the edges in domain/settlement_state.py
      (enforced by SettlementService).
    - bank_reference (UTR) is set exactly when the settlement reaches
      BANK_CONFIRMED; after that the settlement is irrevocable.
    - retry_count never exceeds max_retries.

Audit relevance:
    state_transitions keeps the full ordered history of the state machine;
    retry_history records every scheduled retry with its computed delay.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import TrackedBase, UTCDateTime, UUIDString


class SettlementState(str, Enum):
    CREATED = "CREATED"
    FUNDS_RESERVED = "FUNDS_RESERVED"
    SENT_TO_BANK = "SENT_TO_BANK"
    BANK_CONFIRMED = "BANK_CONFIRMED"
    SETTLED = "SETTLED"
    FAILED = "FAILED"
    RETRIED = "RETRIED"


class Settlement(TrackedBase):
    """
    Payout of collected funds to a merchant.

    Contract:
        Created in CREATED state together with a funds-reservation posting;
        bank confirmation posts the payable-to-paid recognition.
    """

    __tablename__ = "settlements"

    __table_args__ = (
        UniqueConstraint("settlement_ref", name="uq_settlement_ref"),
        Index("idx_settlement_tenant_state", "tenant_id", "state"),
        Index("idx_settlement_next_retry", "state", "next_retry_at"),
        Index("idx_settlement_merchant", "merchant_id"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    settlement_ref: Mapped[str] = mapped_column(String(100), nullable=False)

    merchant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    gross_amount: Mapped[Decimal] = mapped_column(nullable=False)

    fees_amount: Mapped[Decimal] = mapped_column(nullable=False)

    net_amount: Mapped[Decimal] = mapped_column(nullable=False)

    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    bank_account_number: Mapped[str | None] = mapped_column(String(64), nullable=True)

    bank_ifsc: Mapped[str | None] = mapped_column(String(20), nullable=True)

    bank_account_holder: Mapped[str | None] = mapped_column(String(255), nullable=True)

    state: Mapped[SettlementState] = mapped_column(
        String(20),
        default=SettlementState.CREATED,
        nullable=False,
    )

    # UTR from the bank; the finality marker
    bank_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    failure_reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    max_retries: Mapped[int] = mapped_column(Integer, nullable=False)

    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    funds_reserved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    sent_to_bank_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    bank_confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # [{"from": ..., "to": ..., "at": ..., "actor_id": ..., "reason": ...}, ...]
    state_transitions: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    # [{"attempt": ..., "delay_seconds": ..., "next_retry_at": ..., ...}, ...]
    retry_history: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    reservation_transaction_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("ledger_transactions.id"),
        nullable=True,
    )

    confirmation_transaction_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("ledger_transactions.id"),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Settlement {self.settlement_ref}: {self.state}>"
