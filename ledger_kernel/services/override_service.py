"""
AdminOverrideService -- role-gated, justified bypass of posting restrictions.

Responsibility:
    Decides whether an actor may bypass a SOFT_CLOSED period and writes the
    decision, granted or denied, to the append-only override log before the
    gated action runs.

Architecture position:
    Kernel > Services -- imperative shell.  Called by LedgerService when a
    posting or reversal lands in a SOFT_CLOSED period.

Invariants enforced:
    - Only the configured authority role (FINANCE_ADMIN by default) is granted.
    - The stripped justification must meet the minimum length.
    - Every attempt is persisted and audited; denials are never dropped.
    - Flush-only: never commits or rolls back the session.  The caller
      decides whether a denied row survives the failing operation.

Failure modes:
    - record_override never raises for a denial; it returns the decision.
    - require_override raises OverrideRequiredError for a denial, carrying
      the persisted log id.

Audit relevance:
    Override log rows plus OVERRIDE_GRANTED / OVERRIDE_DENIED audit events.
"""

from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_kernel.domain.clock import Clock
from ledger_kernel.domain.dtos import OverrideDecision
from ledger_kernel.exceptions import OverrideRequiredError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.admin_override import AdminOverrideLog, OverrideOutcome, OverrideType
from ledger_kernel.services.auditor_service import AuditorService
from ledger_kernel.services.base import BaseService

logger = get_logger("services.override")

FINANCE_ADMIN = "FINANCE_ADMIN"
MAX_JUSTIFICATION_LENGTH = 4000


class AdminOverrideService(BaseService[AdminOverrideLog]):
    """
    Evaluates and records admin override attempts.

    Contract:
        ``record_override`` always inserts one AdminOverrideLog row and
        returns an ``OverrideDecision``; ``granted`` tells the caller
        whether to proceed.

    Non-goals:
        - Does NOT authenticate the actor.  ``actor_role`` is a claim the
          caller has already verified.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
        authority_role: str = FINANCE_ADMIN,
        min_justification_length: int = 10,
    ):
        super().__init__(session, clock)
        self._auditor = auditor or AuditorService(session, self.clock)
        self._authority_role = authority_role
        self._min_justification_length = min_justification_length

    def evaluate(self, justification: str | None, actor_role: str | None) -> str | None:
        """Return the denial reason for an attempt, or None when it would be granted."""
        if actor_role != self._authority_role:
            return f"Role {actor_role!r} is not authorized; {self._authority_role} is required"
        text = (justification or "").strip()
        if len(text) < self._min_justification_length:
            return (
                f"Justification must be at least {self._min_justification_length} "
                f"characters, got {len(text)}"
            )
        if len(text) > MAX_JUSTIFICATION_LENGTH:
            return f"Justification must be at most {MAX_JUSTIFICATION_LENGTH} characters"
        return None

    def record_override(
        self,
        override_type: OverrideType | str,
        justification: str | None,
        entity_ref: str | None,
        actor_id: UUID,
        actor_role: str | None,
        *,
        tenant_id: str,
        entity_type: str | None = None,
        entity_id: UUID | None = None,
        period_id: UUID | None = None,
        details: dict | None = None,
    ) -> OverrideDecision:
        """
        Evaluate an override attempt and persist it.

        Args:
            override_type: What is being bypassed.
            justification: Free-text reason from the actor.
            entity_ref: Business reference of the gated operation.
            actor_id: Who is attempting the override.
            actor_role: Verified role claim of the actor.
            tenant_id: Tenant of the gated operation.
            entity_type: Kind of entity the operation targets, if known.
            entity_id: Id of that entity, if known.
            period_id: The SOFT_CLOSED period being bypassed.
            details: Extra string-valued context stored with the row.

        Returns:
            OverrideDecision for the persisted row.
        """
        override_type = OverrideType(override_type)
        denial_reason = self.evaluate(justification, actor_role)
        outcome = OverrideOutcome.DENIED if denial_reason else OverrideOutcome.GRANTED

        # Oversized justifications are kept as evidence up to the column width
        stored_justification = (justification or "").strip()[:MAX_JUSTIFICATION_LENGTH]

        log = AdminOverrideLog(
            tenant_id=tenant_id,
            override_type=override_type.value,
            justification=stored_justification,
            actor_id=actor_id,
            actor_role=actor_role or "",
            outcome=outcome.value,
            denial_reason=denial_reason,
            entity_type=entity_type,
            entity_id=entity_id,
            entity_ref=entity_ref,
            period_id=period_id,
            details=details,
            occurred_at=self.clock.now(),
        )
        self.session.add(log)
        self.session.flush()

        self._auditor.record_override(
            log.id,
            outcome == OverrideOutcome.GRANTED,
            override_type.value,
            entity_ref,
            denial_reason,
            actor_id,
        )

        log_extra = {
            "override_log_id": str(log.id),
            "override_type": override_type.value,
            "tenant_id": tenant_id,
            "actor_id": str(actor_id),
            "actor_role": actor_role,
            "entity_ref": entity_ref,
        }
        if denial_reason:
            logger.warning("override_denied", extra={**log_extra, "denial_reason": denial_reason})
        else:
            logger.info("override_granted", extra=log_extra)

        return OverrideDecision.from_model(log)

    def require_override(
        self,
        override_type: OverrideType | str,
        justification: str | None,
        entity_ref: str | None,
        actor_id: UUID,
        actor_role: str | None,
        *,
        tenant_id: str,
        posting_date: date,
        period_id: UUID,
        entity_type: str | None = None,
        entity_id: UUID | None = None,
    ) -> OverrideDecision:
        """
        Record an override attempt and raise if it was denied.

        The log row is flushed before the raise, so a caller that commits
        after catching the error keeps the evidence.

        Raises:
            OverrideRequiredError: carrying denial_reason and override_log_id.
        """
        decision = self.record_override(
            override_type,
            justification,
            entity_ref,
            actor_id,
            actor_role,
            tenant_id=tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            period_id=period_id,
        )
        if not decision.granted:
            raise OverrideRequiredError(
                posting_date,
                str(period_id),
                denial_reason=decision.denial_reason,
                override_log_id=str(decision.log_id),
            )
        return decision

    def get_override(self, log_id: UUID) -> OverrideDecision | None:
        log = self.session.get(AdminOverrideLog, log_id)
        return OverrideDecision.from_model(log) if log else None

    def list_overrides(
        self,
        tenant_id: str,
        actor_id: UUID | None = None,
        outcome: OverrideOutcome | str | None = None,
    ) -> list[OverrideDecision]:
        """Override attempts for a tenant, oldest first."""
        query = select(AdminOverrideLog).where(AdminOverrideLog.tenant_id == tenant_id)
        if actor_id is not None:
            query = query.where(AdminOverrideLog.actor_id == actor_id)
        if outcome is not None:
            query = query.where(AdminOverrideLog.outcome == OverrideOutcome(outcome).value)
        logs = self.session.execute(
            query.order_by(AdminOverrideLog.occurred_at, AdminOverrideLog.id)
        ).scalars().all()
        return [OverrideDecision.from_model(log) for log in logs]
