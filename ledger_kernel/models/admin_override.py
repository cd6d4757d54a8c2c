"""
Module: ledger_kernel.models.admin_override
Responsibility: ORM persistence for the admin override log -- every attempt
    to bypass a posting restriction, granted or denied.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Append-only: no UPDATE, no DELETE (ORM listeners + storage triggers).
    - The row is written before the gated action runs; a granted row without
      a matching posting means the posting itself failed afterwards.

Audit relevance:
    The override log answers "who bypassed which control, why, and when".
    Denied attempts are kept as evidence of attempted circumvention.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import Base, UTCDateTime, UUIDString


class OverrideType(str, Enum):
    SOFT_CLOSED_PERIOD_POSTING = "SOFT_CLOSED_PERIOD_POSTING"
    SOFT_CLOSED_PERIOD_REVERSAL = "SOFT_CLOSED_PERIOD_REVERSAL"


class OverrideOutcome(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"


class AdminOverrideLog(Base):
    """One override attempt."""

    __tablename__ = "admin_override_logs"

    __table_args__ = (
        Index("idx_override_tenant_time", "tenant_id", "occurred_at"),
        Index("idx_override_actor", "actor_id"),
        Index("idx_override_entity", "entity_type", "entity_id"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    override_type: Mapped[OverrideType] = mapped_column(String(50), nullable=False)

    justification: Mapped[str] = mapped_column(String(4000), nullable=False)

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # Pre-validated role claim supplied by the caller
    actor_role: Mapped[str] = mapped_column(String(50), nullable=False)

    outcome: Mapped[OverrideOutcome] = mapped_column(String(10), nullable=False)

    denial_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    entity_type: Mapped[str | None] = mapped_column(String(50), nullable=True)

    entity_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # Business reference of the gated operation (idempotency key, txn ref...)
    entity_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    period_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    details: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return f"<AdminOverrideLog {self.override_type} by {self.actor_id}: {self.outcome}>"

    @property
    def granted(self) -> bool:
        return self.outcome == OverrideOutcome.GRANTED
