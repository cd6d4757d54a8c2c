"""
PeriodService -- accounting period lifecycle and posting-date gate.

Responsibility:
    Manages the accounting period lifecycle (OPEN -> SOFT_CLOSED ->
    HARD_CLOSED) per tenant and period type, and decides whether a posting
    date is ALLOWED, needs an admin override, or is BLOCKED.

Architecture position:
    Kernel > Services -- imperative shell.  Called by LedgerService on every
    posting (check_period_for_posting) and by operators to open and close
    periods.

Invariants enforced:
    - One OPEN period per (tenant, period_type): service check plus the
      partial unique index ``uq_one_open_period_per_type``.
    - Periods of the same type never overlap: service check plus the
      storage overlap guard (07_overlap_guards.sql).
    - Contiguity: a new period may not start more than ``max_gap_days``
      after the previous period of its type ends (None disables).
    - Transitions are OPEN -> SOFT_CLOSED -> HARD_CLOSED only; the period
      row is locked FOR UPDATE while it changes.
    - HARD_CLOSED creates exactly one ACTIVE PERIOD_LOCK over the period's
      range in the same transaction.
    - Flush-only: never commits or rolls back the session.

Failure modes:
    - ValidationError: start_date after end_date.
    - PeriodOverlapError, OpenPeriodExistsError, PeriodGapError on create.
    - InvalidPeriodTransitionError on any other transition.
    - PeriodNotFoundError: unknown period id.

Audit relevance:
    Creation, soft close and hard close are audit events carrying actor and
    closing notes; the row itself keeps who closed it and when.
"""

from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_kernel.domain.clock import Clock
from ledger_kernel.domain.dtos import PeriodCheck, PeriodDecision, PeriodInfo
from ledger_kernel.exceptions import (
    InvalidPeriodTransitionError,
    OpenPeriodExistsError,
    PeriodGapError,
    PeriodNotFoundError,
    PeriodOverlapError,
    ValidationError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.accounting_period import AccountingPeriod, PeriodStatus, PeriodType
from ledger_kernel.models.audit_event import AuditAction
from ledger_kernel.services.auditor_service import AuditorService
from ledger_kernel.services.base import BaseService
from ledger_kernel.services.lock_service import LedgerLockService

logger = get_logger("services.period")

_ALLOWED_CLOSES = {
    PeriodStatus.OPEN: PeriodStatus.SOFT_CLOSED,
    PeriodStatus.SOFT_CLOSED: PeriodStatus.HARD_CLOSED,
}


class PeriodService(BaseService[AccountingPeriod]):
    """
    Service for managing accounting period lifecycle.

    Contract:
        Accepts tenant ids, period types and dates; returns frozen
        ``PeriodInfo`` / ``PeriodCheck`` DTOs.  Lifecycle methods flush
        within the caller's transaction.

    Guarantees:
        - Concurrent closes of one period serialize on ``SELECT ... FOR
          UPDATE`` of the period row.
        - A period never leaves HARD_CLOSED.

    Non-goals:
        - Does NOT check ledger locks; LedgerService consults
          LedgerLockService before calling check_period_for_posting.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
        lock_service: LedgerLockService | None = None,
        max_gap_days: int | None = 2,
    ):
        super().__init__(session, clock)
        self._auditor = auditor or AuditorService(session, self.clock)
        self._lock_service = lock_service or LedgerLockService(session, self.clock, self._auditor)
        self._max_gap_days = max_gap_days

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def create_period(
        self,
        tenant_id: str,
        period_type: PeriodType | str,
        start_date: date,
        end_date: date,
        actor_id: UUID,
    ) -> PeriodInfo:
        """
        Open a new accounting period.

        Args:
            tenant_id: Tenant the period belongs to.
            period_type: DAILY or MONTHLY.
            start_date: First day of the period (inclusive).
            end_date: Last day of the period (inclusive).
            actor_id: Who is creating the period.

        Raises:
            ValidationError: start_date > end_date or unknown period type.
            PeriodOverlapError: Range overlaps a period of the same type.
            OpenPeriodExistsError: An OPEN period of that type already exists.
            PeriodGapError: Range starts too long after the previous period.
        """
        try:
            period_type = PeriodType(period_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown period type: {period_type!r}", field="period_type") from exc
        if start_date > end_date:
            raise ValidationError(
                f"start_date ({start_date}) cannot be after end_date ({end_date})",
                field="start_date",
            )

        self._validate_no_overlap(tenant_id, period_type, start_date, end_date)

        open_period = self._find_open(tenant_id, period_type)
        if open_period is not None:
            logger.warning(
                "open_period_exists",
                extra={
                    "tenant_id": tenant_id,
                    "period_type": period_type.value,
                    "open_period_id": str(open_period.id),
                },
            )
            raise OpenPeriodExistsError(tenant_id, period_type.value, str(open_period.id))

        self._validate_contiguity(tenant_id, period_type, start_date)

        period = AccountingPeriod(
            tenant_id=tenant_id,
            period_type=period_type.value,
            start_date=start_date,
            end_date=end_date,
            status=PeriodStatus.OPEN.value,
            created_by_id=actor_id,
        )

        # The partial unique index and the overlap guard are the last word on
        # "one OPEN period" and "no overlap" when two creates race
        savepoint = self.session.begin_nested()
        try:
            self.session.add(period)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            self._validate_no_overlap(tenant_id, period_type, start_date, end_date)
            winner = self._find_open(tenant_id, period_type)
            logger.warning(
                "open_period_race_lost",
                extra={"tenant_id": tenant_id, "period_type": period_type.value},
            )
            raise OpenPeriodExistsError(
                tenant_id, period_type.value, str(winner.id) if winner else "unknown"
            )

        self._auditor.record_period_created(
            period.id,
            {
                "tenant_id": tenant_id,
                "period_type": period_type.value,
                "start_date": start_date,
                "end_date": end_date,
            },
            actor_id,
        )
        logger.info(
            "period_created",
            extra={
                "period_id": str(period.id),
                "tenant_id": tenant_id,
                "period_type": period_type.value,
                "start_date": str(start_date),
                "end_date": str(end_date),
            },
        )
        return PeriodInfo.from_model(period)

    def close_period(
        self,
        period_id: UUID,
        target_status: PeriodStatus | str,
        actor_id: UUID,
        notes: str | None = None,
    ) -> PeriodInfo:
        """
        Advance a period one step: OPEN -> SOFT_CLOSED or SOFT_CLOSED -> HARD_CLOSED.

        HARD_CLOSED also creates the ACTIVE PERIOD_LOCK over the period.

        Raises:
            PeriodNotFoundError: Unknown period.
            InvalidPeriodTransitionError: Any other transition, including
                skipping SOFT_CLOSED or touching a HARD_CLOSED period.
        """
        period = self._get_period_for_update(period_id)
        if period is None:
            raise PeriodNotFoundError(str(period_id))

        current = PeriodStatus(period.status)
        try:
            target = PeriodStatus(target_status)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown period status: {target_status!r}", field="target_status"
            ) from exc

        if _ALLOWED_CLOSES.get(current) != target:
            logger.warning(
                "invalid_period_transition",
                extra={
                    "period_id": str(period_id),
                    "from_status": current.value,
                    "to_status": target.value,
                },
            )
            raise InvalidPeriodTransitionError(str(period_id), current.value, target.value)

        now = self.clock.now()
        period.status = target.value
        period.updated_by_id = actor_id
        if notes:
            period.closing_notes = notes
        if target == PeriodStatus.SOFT_CLOSED:
            period.soft_closed_at = now
            period.soft_closed_by_id = actor_id
            action = AuditAction.PERIOD_SOFT_CLOSED
        else:
            period.hard_closed_at = now
            period.hard_closed_by_id = actor_id
            action = AuditAction.PERIOD_HARD_CLOSED
        self.session.flush()

        self._auditor.record_period_closed(period.id, action, current.value, notes, actor_id)

        if target == PeriodStatus.HARD_CLOSED:
            self._lock_service.create_period_lock(period, actor_id)

        logger.info(
            "period_closed",
            extra={
                "period_id": str(period.id),
                "tenant_id": period.tenant_id,
                "from_status": current.value,
                "to_status": target.value,
                "actor_id": str(actor_id),
            },
        )
        return PeriodInfo.from_model(period)

    # =========================================================================
    # Posting gate
    # =========================================================================

    def check_period_for_posting(
        self,
        tenant_id: str,
        on_date: date,
        period_type: PeriodType | str = PeriodType.DAILY,
    ) -> PeriodCheck:
        """
        Decide whether a posting dated on_date may proceed.

        ALLOWED for an OPEN period, OVERRIDE_REQUIRED for SOFT_CLOSED,
        BLOCKED for HARD_CLOSED or when no period of the type covers the date.
        """
        period_type = PeriodType(period_type)
        period = self._get_period_for_date(tenant_id, period_type, on_date)

        if period is None:
            return PeriodCheck(
                decision=PeriodDecision.BLOCKED,
                on_date=on_date,
                period_type=period_type,
                reason=f"No {period_type.value} accounting period covers {on_date}",
            )

        status = PeriodStatus(period.status)
        if status == PeriodStatus.OPEN:
            decision, reason = PeriodDecision.ALLOWED, None
        elif status == PeriodStatus.SOFT_CLOSED:
            decision, reason = (
                PeriodDecision.OVERRIDE_REQUIRED,
                "Period is SOFT_CLOSED; an admin override is required",
            )
        else:
            decision, reason = PeriodDecision.BLOCKED, "Period is HARD_CLOSED"

        return PeriodCheck(
            decision=decision,
            on_date=on_date,
            period_type=period_type,
            period_id=period.id,
            period_status=status,
            reason=reason,
        )

    # =========================================================================
    # Queries
    # =========================================================================

    def get_period(self, period_id: UUID) -> PeriodInfo:
        period = self.session.get(AccountingPeriod, period_id)
        if period is None:
            raise PeriodNotFoundError(str(period_id))
        return PeriodInfo.from_model(period)

    def get_open_period(
        self,
        tenant_id: str,
        period_type: PeriodType | str = PeriodType.DAILY,
    ) -> PeriodInfo | None:
        period = self._find_open(tenant_id, PeriodType(period_type))
        return PeriodInfo.from_model(period) if period else None

    def get_period_for_date(
        self,
        tenant_id: str,
        on_date: date,
        period_type: PeriodType | str = PeriodType.DAILY,
    ) -> PeriodInfo | None:
        period = self._get_period_for_date(tenant_id, PeriodType(period_type), on_date)
        return PeriodInfo.from_model(period) if period else None

    def list_periods(
        self,
        tenant_id: str,
        period_type: PeriodType | str | None = None,
    ) -> list[PeriodInfo]:
        query = select(AccountingPeriod).where(AccountingPeriod.tenant_id == tenant_id)
        if period_type is not None:
            query = query.where(AccountingPeriod.period_type == PeriodType(period_type).value)
        periods = self.session.execute(
            query.order_by(AccountingPeriod.period_type, AccountingPeriod.start_date)
        ).scalars().all()
        return [PeriodInfo.from_model(p) for p in periods]

    # =========================================================================
    # Internals
    # =========================================================================

    def _validate_no_overlap(
        self,
        tenant_id: str,
        period_type: PeriodType,
        start_date: date,
        end_date: date,
    ) -> None:
        # Two ranges overlap iff start1 <= end2 AND start2 <= end1
        overlapping = self.session.execute(
            select(AccountingPeriod)
            .where(
                AccountingPeriod.tenant_id == tenant_id,
                AccountingPeriod.period_type == period_type.value,
                AccountingPeriod.start_date <= end_date,
                AccountingPeriod.end_date >= start_date,
            )
            .limit(1)
        ).scalar_one_or_none()

        if overlapping is not None:
            logger.warning(
                "period_overlap_rejected",
                extra={
                    "tenant_id": tenant_id,
                    "period_type": period_type.value,
                    "existing_period_id": str(overlapping.id),
                },
            )
            raise PeriodOverlapError(period_type.value, start_date, end_date, str(overlapping.id))

    def _validate_contiguity(self, tenant_id: str, period_type: PeriodType, start_date: date) -> None:
        if self._max_gap_days is None:
            return
        previous = self.session.execute(
            select(AccountingPeriod)
            .where(
                AccountingPeriod.tenant_id == tenant_id,
                AccountingPeriod.period_type == period_type.value,
                AccountingPeriod.end_date < start_date,
            )
            .order_by(AccountingPeriod.end_date.desc())
            .limit(1)
        ).scalar_one_or_none()

        if previous is not None and (start_date - previous.end_date).days > self._max_gap_days:
            logger.warning(
                "period_gap_rejected",
                extra={
                    "tenant_id": tenant_id,
                    "period_type": period_type.value,
                    "last_period_end": str(previous.end_date),
                    "new_period_start": str(start_date),
                    "max_gap_days": self._max_gap_days,
                },
            )
            raise PeriodGapError(period_type.value, previous.end_date, start_date)

    def _find_open(self, tenant_id: str, period_type: PeriodType) -> AccountingPeriod | None:
        return self.session.execute(
            select(AccountingPeriod).where(
                AccountingPeriod.tenant_id == tenant_id,
                AccountingPeriod.period_type == period_type.value,
                AccountingPeriod.status == PeriodStatus.OPEN.value,
            )
        ).scalar_one_or_none()

    def _get_period_for_update(self, period_id: UUID) -> AccountingPeriod | None:
        """Period row locked for concurrent mutation."""
        return self.session.execute(
            select(AccountingPeriod)
            .where(AccountingPeriod.id == period_id)
            .with_for_update()
        ).scalar_one_or_none()

    def _get_period_for_date(
        self,
        tenant_id: str,
        period_type: PeriodType,
        on_date: date,
    ) -> AccountingPeriod | None:
        return self.session.execute(
            select(AccountingPeriod)
            .where(
                AccountingPeriod.tenant_id == tenant_id,
                AccountingPeriod.period_type == period_type.value,
                AccountingPeriod.start_date <= on_date,
                AccountingPeriod.end_date >= on_date,
            )
            .limit(1)
        ).scalar_one_or_none()
