"""
Module: ledger_kernel.models.audit_event
Responsibility: ORM persistence for the hash-chained audit trail consumed by
    external audit/reporting collaborators.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Append-only: never updated or deleted (ORM listeners + triggers).
    - hash = H(entity_type | entity_id | action | payload_hash | prev_hash);
      prev_hash is None only for the genesis event.
    - seq is unique and strictly increasing.

Failure modes:
    - AuditChainBrokenError from AuditorService.validate_chain() when any
      stored hash or link does not match its recomputation.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import Base, UTCDateTime, UUIDString


class AuditAction(str, Enum):
    """Every state-changing ledger operation has one action."""

    # Ledger
    TRANSACTION_POSTED = "transaction_posted"
    TRANSACTION_REVERSED = "transaction_reversed"

    # Periods
    PERIOD_CREATED = "period_created"
    PERIOD_SOFT_CLOSED = "period_soft_closed"
    PERIOD_HARD_CLOSED = "period_hard_closed"

    # Locks
    LOCK_APPLIED = "lock_applied"
    LOCK_RELEASED = "lock_released"

    # Overrides
    OVERRIDE_GRANTED = "override_granted"
    OVERRIDE_DENIED = "override_denied"

    # Settlements
    SETTLEMENT_CREATED = "settlement_created"
    SETTLEMENT_TRANSITION = "settlement_transition"
    SETTLEMENT_RETRY_SCHEDULED = "settlement_retry_scheduled"

    # Reconciliation
    RECONCILIATION_BATCH_CREATED = "reconciliation_batch_created"
    RECONCILIATION_COMPLETED = "reconciliation_completed"
    RECONCILIATION_ITEM_RESOLVED = "reconciliation_item_resolved"


class AuditEvent(Base):
    """
    Audit event with hash chain for tamper evidence.

    Non-goals:
        - Hash correctness is not checked at INSERT time; that is
          AuditorService's responsibility.
    """

    __tablename__ = "audit_events"

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_action", "action"),
        Index("idx_audit_seq", "seq", unique=True),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # e.g. "LedgerTransaction", "AccountingPeriod", "Settlement"
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)

    entity_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    action: Mapped[AuditAction] = mapped_column(String(50), nullable=False)

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEvent {self.action} on {self.entity_type}:{self.entity_id}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None
