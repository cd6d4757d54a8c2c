"""
Module: ledger_kernel.models.ledger_lock
Responsibility: ORM persistence for ledger locks -- date-range freeze windows
    that block postings regardless of period status.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - No two ACTIVE AUDIT_LOCK or RECONCILIATION_LOCK rows of the same type
      (per tenant) overlap: LedgerLockService checks under FOR UPDATE and
      the storage overlap guard rejects a racing insert.
    - PERIOD_LOCK rows are system-generated on HARD_CLOSE and are never
      released.
    - RELEASED is terminal.

Audit relevance:
    Lock and release carry actor, timestamp, reason and release notes.
"""

from datetime import date, datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import TrackedBase, UTCDateTime, UUIDString


class LockType(str, Enum):
    PERIOD_LOCK = "PERIOD_LOCK"
    AUDIT_LOCK = "AUDIT_LOCK"
    RECONCILIATION_LOCK = "RECONCILIATION_LOCK"


class LockStatus(str, Enum):
    ACTIVE = "ACTIVE"
    RELEASED = "RELEASED"


class LedgerLock(TrackedBase):
    """Freeze window over [start_date, end_date] (inclusive) for one tenant."""

    __tablename__ = "ledger_locks"

    __table_args__ = (
        Index("idx_lock_tenant_status_dates", "tenant_id", "status", "start_date", "end_date"),
        Index("idx_lock_type", "lock_type"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    lock_type: Mapped[LockType] = mapped_column(String(30), nullable=False)

    start_date: Mapped[date] = mapped_column(Date, nullable=False)

    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[LockStatus] = mapped_column(
        String(20),
        default=LockStatus.ACTIVE,
        nullable=False,
    )

    reason: Mapped[str] = mapped_column(String(1000), nullable=False)

    # Period that produced a PERIOD_LOCK
    period_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("accounting_periods.id"),
        nullable=True,
    )

    locked_by_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    locked_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    released_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    release_notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    def __repr__(self) -> str:
        return f"<LedgerLock {self.lock_type} {self.start_date}..{self.end_date}: {self.status}>"

    @property
    def is_active(self) -> bool:
        return self.status == LockStatus.ACTIVE

    def covers(self, check_date: date) -> bool:
        return self.start_date <= check_date <= self.end_date
