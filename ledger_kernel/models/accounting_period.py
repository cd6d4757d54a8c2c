"""
Module: ledger_kernel.models.accounting_period
Responsibility: ORM persistence for accounting periods -- the graduated
    posting gate (OPEN -> SOFT_CLOSED -> HARD_CLOSED).
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - One OPEN period per (tenant_id, period_type): partial unique index
      ``uq_one_open_period_per_type`` is the storage-level guarantee.
    - start_date <= end_date; no overlap between periods of the same type
      (enforced by PeriodService at creation time).
    - HARD_CLOSED is terminal (ORM listener rejects any change afterwards).

Failure modes:
    - IntegrityError when a second OPEN period slips past the service check
      under concurrency.
    - ImmutabilityViolationError when a HARD_CLOSED period is modified.

Audit relevance:
    Soft and hard close are privileged operations recorded with actor and
    timestamp on the row and as audit events.
"""

from datetime import date, datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import Date, Index, String, text
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import TrackedBase, UTCDateTime, UUIDString


class PeriodType(str, Enum):
    DAILY = "DAILY"
    MONTHLY = "MONTHLY"


class PeriodStatus(str, Enum):
    """Lifecycle status of an accounting period.

    Contract: Transitions are OPEN -> SOFT_CLOSED -> HARD_CLOSED only.
    HARD_CLOSED never reopens.
    """

    OPEN = "OPEN"
    SOFT_CLOSED = "SOFT_CLOSED"
    HARD_CLOSED = "HARD_CLOSED"


class AccountingPeriod(TrackedBase):
    """
    Accounting period for posting control.

    Contract:
        OPEN accepts postings; SOFT_CLOSED accepts postings only with a
        logged admin override; HARD_CLOSED rejects all postings and is
        covered by an automatic PERIOD_LOCK.

    Non-goals:
        - Contiguity is checked by PeriodService, not here.  Overlap is
          checked there too and guarded in storage by 07_overlap_guards.sql.
    """

    __tablename__ = "accounting_periods"

    __table_args__ = (
        Index("idx_period_tenant_type_dates", "tenant_id", "period_type", "start_date", "end_date"),
        Index("idx_period_status", "status"),
        Index(
            "uq_one_open_period_per_type",
            "tenant_id",
            "period_type",
            unique=True,
            postgresql_where=text("status = 'OPEN'"),
            sqlite_where=text("status = 'OPEN'"),
        ),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    period_type: Mapped[PeriodType] = mapped_column(String(10), nullable=False)

    # Period boundaries (inclusive)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)

    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[PeriodStatus] = mapped_column(
        String(20),
        default=PeriodStatus.OPEN,
        nullable=False,
    )

    soft_closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    soft_closed_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    hard_closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    hard_closed_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    closing_notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    def __repr__(self) -> str:
        return f"<AccountingPeriod {self.period_type} {self.start_date}..{self.end_date}: {self.status}>"

    def contains_date(self, check_date: date) -> bool:
        """Check if a date falls within this period."""
        return self.start_date <= check_date <= self.end_date
