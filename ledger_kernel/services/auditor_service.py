"""
AuditorService -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Creates immutable, hash-chained audit events for every state change in
    the ledger: postings, reversals, period and lock changes, override
    attempts, settlement transitions and reconciliation results.  Provides
    chain validation for tamper detection and trace queries for review.

Architecture position:
    Kernel > Services -- called by every other kernel service.

Invariants enforced:
    - Sequence monotonicity via SequenceService (locked counter row).
    - Chain integrity: ``hash = H(entity_type, entity_id, action,
      payload_hash, prev_hash)``; every event links to its predecessor.
    - Append-only: audit events are never modified or deleted (ORM
      listeners + storage triggers on the AuditEvent model).

Failure modes:
    - AuditChainBrokenError: a recomputed hash does not match the stored
      hash, or prev_hash does not match the predecessor's hash.

Audit relevance:
    This IS the audit service.  External reporting collaborators read the
    audit_events table; this service is its only writer.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.exceptions import AuditChainBrokenError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.audit_event import AuditAction, AuditEvent
from ledger_kernel.services.sequence_service import SequenceService
from ledger_kernel.utils.hashing import hash_audit_event, hash_payload, json_safe

logger = get_logger("services.auditor")


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    seq: int
    action: AuditAction
    occurred_at: datetime
    actor_id: UUID
    payload: dict[str, Any]
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """All audit events for one entity, in sequence order."""

    entity_type: str
    entity_id: UUID
    entries: tuple[AuditTraceEntry, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.entries) == 0

    @property
    def actions(self) -> tuple[AuditAction, ...]:
        return tuple(entry.action for entry in self.entries)

    @property
    def last_action(self) -> AuditAction | None:
        return self.entries[-1].action if self.entries else None


class AuditorService:
    """
    Service for creating and validating tamper-evident audit events.

    Guarantees:
        - Every event's ``hash`` is a deterministic function of
          ``(entity_type, entity_id, action, payload_hash, prev_hash)``;
          tampering with any field is detectable by ``validate_chain()``.
        - Sequence numbers come from SequenceService.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        last_event = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq.desc()).limit(1)
        ).scalar_one_or_none()
        return last_event.hash if last_event else None

    def _create_audit_event(
        self,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        actor_id: UUID,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """
        Create a new audit event with hash chain linkage.

        The sequence allocation locks the counter row, so reading the last
        hash afterwards sees the true predecessor.
        """
        seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._get_last_hash()

        payload_data = json_safe(payload or {})
        computed_payload_hash = hash_payload(payload_data)

        event_hash = hash_audit_event(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=AuditAction(action).value,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
        )

        audit_event = AuditEvent(
            seq=seq,
            entity_type=entity_type,
            entity_id=entity_id,
            action=AuditAction(action).value,
            actor_id=actor_id,
            occurred_at=self._clock.now(),
            payload=payload_data,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
            hash=event_hash,
        )
        self._session.add(audit_event)
        self._session.flush()

        logger.info(
            "audit_event_created",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": AuditAction(action).value,
                "seq": seq,
            },
        )
        return audit_event

    # =========================================================================
    # Ledger
    # =========================================================================

    def record_posting(
        self,
        transaction_id: UUID,
        reference: str,
        event_type: str,
        amount: Decimal,
        actor_id: UUID,
        entry_count: int,
        override_log_id: UUID | None = None,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="LedgerTransaction",
            entity_id=transaction_id,
            action=AuditAction.TRANSACTION_POSTED,
            actor_id=actor_id,
            payload={
                "reference": reference,
                "event_type": event_type,
                "amount": amount,
                "entry_count": entry_count,
                "override_log_id": override_log_id,
            },
        )

    def record_reversal(
        self,
        original_transaction_id: UUID,
        reversal_id: UUID,
        reason: str,
        actor_id: UUID,
    ) -> AuditEvent:
        """
        Record on the original transaction's trail that reversal_id reversed it.

        The reversal row itself gets its own TRANSACTION_POSTED event through
        record_posting.
        """
        return self._create_audit_event(
            entity_type="LedgerTransaction",
            entity_id=original_transaction_id,
            action=AuditAction.TRANSACTION_REVERSED,
            actor_id=actor_id,
            payload={
                "reversal_id": reversal_id,
                "reason": reason,
            },
        )

    # =========================================================================
    # Periods and locks
    # =========================================================================

    def record_period_created(self, period_id: UUID, payload: dict, actor_id: UUID) -> AuditEvent:
        return self._create_audit_event(
            entity_type="AccountingPeriod",
            entity_id=period_id,
            action=AuditAction.PERIOD_CREATED,
            actor_id=actor_id,
            payload=payload,
        )

    def record_period_closed(
        self,
        period_id: UUID,
        action: AuditAction,
        from_status: str,
        notes: str | None,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="AccountingPeriod",
            entity_id=period_id,
            action=action,
            actor_id=actor_id,
            payload={"from_status": from_status, "notes": notes},
        )

    def record_lock_applied(self, lock_id: UUID, payload: dict, actor_id: UUID) -> AuditEvent:
        return self._create_audit_event(
            entity_type="LedgerLock",
            entity_id=lock_id,
            action=AuditAction.LOCK_APPLIED,
            actor_id=actor_id,
            payload=payload,
        )

    def record_lock_released(self, lock_id: UUID, notes: str, actor_id: UUID) -> AuditEvent:
        return self._create_audit_event(
            entity_type="LedgerLock",
            entity_id=lock_id,
            action=AuditAction.LOCK_RELEASED,
            actor_id=actor_id,
            payload={"notes": notes},
        )

    # =========================================================================
    # Overrides
    # =========================================================================

    def record_override(
        self,
        log_id: UUID,
        granted: bool,
        override_type: str,
        entity_ref: str | None,
        denial_reason: str | None,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="AdminOverrideLog",
            entity_id=log_id,
            action=AuditAction.OVERRIDE_GRANTED if granted else AuditAction.OVERRIDE_DENIED,
            actor_id=actor_id,
            payload={
                "override_type": override_type,
                "entity_ref": entity_ref,
                "denial_reason": denial_reason,
            },
        )

    # =========================================================================
    # Settlements
    # =========================================================================

    def record_settlement_created(self, settlement_id: UUID, payload: dict, actor_id: UUID) -> AuditEvent:
        return self._create_audit_event(
            entity_type="Settlement",
            entity_id=settlement_id,
            action=AuditAction.SETTLEMENT_CREATED,
            actor_id=actor_id,
            payload=payload,
        )

    def record_settlement_transition(
        self,
        settlement_id: UUID,
        from_state: str,
        to_state: str,
        actor_id: UUID,
        details: dict | None = None,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="Settlement",
            entity_id=settlement_id,
            action=AuditAction.SETTLEMENT_TRANSITION,
            actor_id=actor_id,
            payload={"from_state": from_state, "to_state": to_state, **(details or {})},
        )

    def record_retry_scheduled(
        self,
        settlement_id: UUID,
        retry_count: int,
        delay_seconds: float,
        next_retry_at: datetime,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="Settlement",
            entity_id=settlement_id,
            action=AuditAction.SETTLEMENT_RETRY_SCHEDULED,
            actor_id=actor_id,
            payload={
                "retry_count": retry_count,
                "delay_seconds": round(delay_seconds, 3),
                "next_retry_at": next_retry_at,
            },
        )

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def record_reconciliation(
        self,
        batch_id: UUID,
        action: AuditAction,
        payload: dict,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="ReconciliationBatch",
            entity_id=batch_id,
            action=action,
            actor_id=actor_id,
            payload=payload,
        )

    def record_item_resolved(
        self,
        item_id: UUID,
        resolution_status: str,
        notes: str,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="ReconciliationItem",
            entity_id=item_id,
            action=AuditAction.RECONCILIATION_ITEM_RESOLVED,
            actor_id=actor_id,
            payload={"resolution_status": resolution_status, "notes": notes},
        )

    # =========================================================================
    # Verification and queries
    # =========================================================================

    def validate_chain(self) -> bool:
        """
        Validate the entire audit chain.

        Returns True only if every stored hash matches its recomputation and
        every prev_hash matches the predecessor's hash.

        Raises:
            AuditChainBrokenError: If chain validation fails at any point.
        """
        events = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq)
        ).scalars().all()

        if not events:
            return True

        if events[0].prev_hash is not None:
            logger.critical("audit_chain_broken", extra={"audit_event_id": str(events[0].id)})
            raise AuditChainBrokenError(str(events[0].id), "None", events[0].prev_hash)

        for i, event in enumerate(events):
            expected_hash = hash_audit_event(
                entity_type=event.entity_type,
                entity_id=str(event.entity_id),
                action=AuditAction(event.action).value,
                payload_hash=hash_payload(event.payload or {}),
                prev_hash=event.prev_hash,
            )
            if event.hash != expected_hash or event.payload_hash != hash_payload(event.payload or {}):
                logger.critical("audit_chain_broken", extra={"audit_event_id": str(event.id)})
                raise AuditChainBrokenError(str(event.id), expected_hash, event.hash)

            if i > 0:
                expected_prev = events[i - 1].hash
                if event.prev_hash != expected_prev:
                    logger.critical("audit_chain_broken", extra={"audit_event_id": str(event.id)})
                    raise AuditChainBrokenError(str(event.id), expected_prev, event.prev_hash or "None")

        logger.info("audit_chain_validated", extra={"event_count": len(events)})
        return True

    def get_trace(self, entity_type: str, entity_id: UUID) -> AuditTrace:
        """Complete audit trace for an entity, in sequence order."""
        events = self._session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.entity_type == entity_type,
                AuditEvent.entity_id == entity_id,
            )
            .order_by(AuditEvent.seq)
        ).scalars().all()

        entries = tuple(
            AuditTraceEntry(
                seq=event.seq,
                action=AuditAction(event.action),
                occurred_at=event.occurred_at,
                actor_id=event.actor_id,
                payload=event.payload or {},
                hash=event.hash,
            )
            for event in events
        )
        return AuditTrace(entity_type=entity_type, entity_id=entity_id, entries=entries)

    def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        """Most recent audit events, newest first."""
        result = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq.desc()).limit(limit)
        )
        return list(result.scalars().all())
