"""
Module: ledger_kernel.models.reconciliation
Responsibility: ORM persistence for reconciliation batches and their items --
    the comparison of internal ledger postings with external statements.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Discrepancies are recorded, never auto-corrected: nothing in this
      module (or ReconciliationService) writes ledger rows.
    - An item's match_status is fixed at classification time; only its
      resolution fields change afterwards.

Audit relevance:
    Every item keeps the expected (internal) and actual (external) amounts
    and the resolution trail (status, notes, actor, time).
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, Date, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_kernel.db.base import TrackedBase, UTCDateTime, UUIDString


class ReconciliationType(str, Enum):
    GATEWAY_SETTLEMENT = "gateway_settlement"
    BANK_ESCROW_STATEMENT = "bank_escrow_statement"
    MERCHANT_PAYOUT = "merchant_payout"


class BatchStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DISCREPANCY_FOUND = "discrepancy_found"
    RESOLVED = "resolved"


class MatchStatus(str, Enum):
    MATCHED = "matched"
    # External statement has it, the ledger does not
    MISSING_INTERNAL = "missing_internal"
    # Ledger has it, the external statement does not
    MISSING_EXTERNAL = "missing_external"
    AMOUNT_MISMATCH = "amount_mismatch"
    DUPLICATE = "duplicate"


class ResolutionStatus(str, Enum):
    PENDING = "pending"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    WRITTEN_OFF = "written_off"


class ReconciliationBatch(TrackedBase):
    """A reconciliation run over one period and one external source."""

    __tablename__ = "reconciliation_batches"

    __table_args__ = (
        UniqueConstraint("batch_ref", name="uq_reconciliation_batch_ref"),
        Index("idx_recon_batch_tenant_type", "tenant_id", "reconciliation_type"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    batch_ref: Mapped[str] = mapped_column(String(50), nullable=False)

    reconciliation_type: Mapped[ReconciliationType] = mapped_column(String(30), nullable=False)

    period_start: Mapped[date] = mapped_column(Date, nullable=False)

    period_end: Mapped[date] = mapped_column(Date, nullable=False)

    # External source name (gateway, bank, statement file)
    source: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[BatchStatus] = mapped_column(
        String(20),
        default=BatchStatus.IN_PROGRESS,
        nullable=False,
    )

    total_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    matched_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    mismatched_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    missing_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duplicate_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    expected_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    actual_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    difference_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    items: Mapped[list["ReconciliationItem"]] = relationship(
        back_populates="batch",
        order_by="ReconciliationItem.item_seq",
    )

    def __repr__(self) -> str:
        return f"<ReconciliationBatch {self.batch_ref}: {self.status}>"


class ReconciliationItem(TrackedBase):
    """One classified comparison between an external record and the ledger."""

    __tablename__ = "reconciliation_items"

    __table_args__ = (
        Index("idx_recon_item_batch", "batch_id"),
        Index("idx_recon_item_match_status", "match_status"),
        Index("idx_recon_item_external_ref", "external_reference"),
    )

    batch_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("reconciliation_batches.id"),
        nullable=False,
    )

    item_seq: Mapped[int] = mapped_column(Integer, nullable=False)

    external_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    transaction_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("ledger_transactions.id"),
        nullable=True,
    )

    # Ledger amount
    expected_amount: Mapped[Decimal | None] = mapped_column(nullable=True)

    # Statement amount
    actual_amount: Mapped[Decimal | None] = mapped_column(nullable=True)

    difference: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    match_status: Mapped[MatchStatus] = mapped_column(String(20), nullable=False)

    resolution_status: Mapped[ResolutionStatus] = mapped_column(
        String(20),
        default=ResolutionStatus.PENDING,
        nullable=False,
    )

    resolution_notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    resolved_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    external_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    batch: Mapped[ReconciliationBatch] = relationship(back_populates="items")

    def __repr__(self) -> str:
        return f"<ReconciliationItem {self.external_reference}: {self.match_status}>"

    @property
    def is_discrepancy(self) -> bool:
        return self.match_status != MatchStatus.MATCHED
