"""
LedgerLockService -- date-range freeze windows over the ledger.

Responsibility:
    Applies and releases AUDIT_LOCK and RECONCILIATION_LOCK windows, creates
    the system PERIOD_LOCK when a period is hard-closed, and answers "is
    this date locked?" for the posting gate.

Architecture position:
    Kernel > Services -- imperative shell.  Called by LedgerService on every
    posting and by PeriodService on HARD_CLOSE.

Invariants enforced:
    - An ACTIVE lock blocks postings on every date in [start_date, end_date]
      whatever the period status and whatever override is supplied.
    - No two ACTIVE locks of the same type overlap for one tenant
      (checked with the candidate rows locked FOR UPDATE, and held by an
      overlap guard in storage against concurrent inserts).
    - PERIOD_LOCK is created only by the period manager and is never
      released.  RELEASED is terminal.
    - Flush-only: never commits or rolls back the session.

Failure modes:
    - ValidationError: bad date range, missing reason or notes, or a manual
      attempt to apply a PERIOD_LOCK.
    - LockOverlapError: overlapping ACTIVE lock of the same type.
    - LockReleaseNotAllowedError: PERIOD_LOCK or already released.
    - LockNotFoundError: unknown lock id.

Audit relevance:
    Apply and release are audit events carrying actor, reason and notes.
"""

from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_kernel.domain.clock import Clock
from ledger_kernel.domain.dtos import LockCheck, LockInfo
from ledger_kernel.exceptions import (
    LockNotFoundError,
    LockOverlapError,
    LockReleaseNotAllowedError,
    ValidationError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.accounting_period import AccountingPeriod, PeriodType
from ledger_kernel.models.ledger_lock import LedgerLock, LockStatus, LockType
from ledger_kernel.services.auditor_service import AuditorService
from ledger_kernel.services.base import BaseService

logger = get_logger("services.lock")

MANUAL_LOCK_TYPES = frozenset({LockType.AUDIT_LOCK, LockType.RECONCILIATION_LOCK})


class LedgerLockService(BaseService[LedgerLock]):
    """
    Service for ledger lock windows.

    Contract:
        Lifecycle methods flush within the caller's transaction and return
        frozen ``LockInfo`` DTOs; ``check_locks`` returns a ``LockCheck``.

    Non-goals:
        - Does NOT decide period status; PeriodService does.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
    ):
        super().__init__(session, clock)
        self._auditor = auditor or AuditorService(session, self.clock)

    def apply_lock(
        self,
        lock_type: LockType | str,
        tenant_id: str,
        start_date: date,
        end_date: date,
        reason: str,
        actor_id: UUID,
    ) -> LockInfo:
        """
        Freeze [start_date, end_date] for one tenant.

        Raises:
            ValidationError: PERIOD_LOCK requested, bad range, or empty reason.
            LockOverlapError: An ACTIVE lock of the same type overlaps.
        """
        try:
            lock_type = LockType(lock_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown lock type: {lock_type!r}", field="lock_type") from exc
        if lock_type not in MANUAL_LOCK_TYPES:
            raise ValidationError(
                f"{lock_type.value} is created automatically on HARD_CLOSE and cannot be applied manually",
                field="lock_type",
            )
        if start_date > end_date:
            raise ValidationError(
                f"start_date ({start_date}) cannot be after end_date ({end_date})",
                field="start_date",
            )
        if not reason or not reason.strip():
            raise ValidationError("A lock reason is required", field="reason")

        overlapping = self._find_overlapping_active(tenant_id, lock_type, start_date, end_date)
        if overlapping is not None:
            logger.warning(
                "lock_overlap_rejected",
                extra={
                    "tenant_id": tenant_id,
                    "lock_type": lock_type.value,
                    "existing_lock_id": str(overlapping.id),
                },
            )
            raise LockOverlapError(lock_type.value, str(overlapping.id))

        lock = self._insert_lock(tenant_id, lock_type, start_date, end_date, reason.strip(), actor_id)
        return LockInfo.from_model(lock)

    def create_period_lock(self, period: AccountingPeriod, actor_id: UUID) -> LedgerLock:
        """
        Create the ACTIVE PERIOD_LOCK covering a hard-closed period.

        Called by PeriodService inside the same transaction as the status
        change.  Not subject to the same-type overlap rule: DAILY and MONTHLY
        periods legitimately cover the same dates.
        """
        reason = f"Auto-lock for HARD_CLOSED {PeriodType(period.period_type).value} period"
        return self._insert_lock(
            period.tenant_id,
            LockType.PERIOD_LOCK,
            period.start_date,
            period.end_date,
            reason,
            actor_id,
            period_id=period.id,
        )

    def release_lock(self, lock_id: UUID, actor_id: UUID, notes: str) -> LockInfo:
        """
        Release an AUDIT_LOCK or RECONCILIATION_LOCK.

        Raises:
            LockNotFoundError: Unknown lock.
            LockReleaseNotAllowedError: PERIOD_LOCK, or already released.
            ValidationError: Empty release notes.
        """
        lock = self.session.execute(
            select(LedgerLock).where(LedgerLock.id == lock_id).with_for_update()
        ).scalar_one_or_none()
        if lock is None:
            raise LockNotFoundError(str(lock_id))

        if LockType(lock.lock_type) == LockType.PERIOD_LOCK:
            logger.warning(
                "period_lock_release_rejected",
                extra={"lock_id": str(lock_id), "actor_id": str(actor_id)},
            )
            raise LockReleaseNotAllowedError(
                str(lock_id), "PERIOD_LOCK is permanent for a HARD_CLOSED period"
            )
        if LockStatus(lock.status) != LockStatus.ACTIVE:
            raise LockReleaseNotAllowedError(str(lock_id), "lock is already released")
        if not notes or not notes.strip():
            raise ValidationError("Release notes are required", field="notes")

        lock.status = LockStatus.RELEASED.value
        lock.released_by_id = actor_id
        lock.released_at = self.clock.now()
        lock.release_notes = notes.strip()
        lock.updated_by_id = actor_id
        self.session.flush()

        self._auditor.record_lock_released(lock.id, lock.release_notes, actor_id)
        logger.info(
            "lock_released",
            extra={
                "lock_id": str(lock.id),
                "lock_type": lock.lock_type,
                "actor_id": str(actor_id),
            },
        )
        return LockInfo.from_model(lock)

    def check_locks(self, tenant_id: str, on_date: date) -> LockCheck:
        """First ACTIVE lock covering on_date, if any."""
        lock = self.session.execute(
            select(LedgerLock)
            .where(
                LedgerLock.tenant_id == tenant_id,
                LedgerLock.status == LockStatus.ACTIVE.value,
                LedgerLock.start_date <= on_date,
                LedgerLock.end_date >= on_date,
            )
            .order_by(LedgerLock.locked_at)
            .limit(1)
        ).scalar_one_or_none()

        if lock is None:
            return LockCheck(is_locked=False, on_date=on_date)
        return LockCheck(
            is_locked=True,
            on_date=on_date,
            lock_id=lock.id,
            lock_type=LockType(lock.lock_type),
            reason=lock.reason,
        )

    def get_lock(self, lock_id: UUID) -> LockInfo:
        lock = self.session.get(LedgerLock, lock_id)
        if lock is None:
            raise LockNotFoundError(str(lock_id))
        return LockInfo.from_model(lock)

    def get_active_locks(self, tenant_id: str) -> list[LockInfo]:
        locks = self.session.execute(
            select(LedgerLock)
            .where(
                LedgerLock.tenant_id == tenant_id,
                LedgerLock.status == LockStatus.ACTIVE.value,
            )
            .order_by(LedgerLock.start_date, LedgerLock.locked_at)
        ).scalars().all()
        return [LockInfo.from_model(lock) for lock in locks]

    def get_lock_history(self, tenant_id: str) -> list[LockInfo]:
        """Every lock of the tenant, active and released, newest first."""
        locks = self.session.execute(
            select(LedgerLock)
            .where(LedgerLock.tenant_id == tenant_id)
            .order_by(LedgerLock.locked_at.desc())
        ).scalars().all()
        return [LockInfo.from_model(lock) for lock in locks]

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _find_overlapping_active(
        self,
        tenant_id: str,
        lock_type: LockType,
        start_date: date,
        end_date: date,
    ) -> LedgerLock | None:
        # Two ranges overlap iff start1 <= end2 AND start2 <= end1
        return self.session.execute(
            select(LedgerLock)
            .where(
                LedgerLock.tenant_id == tenant_id,
                LedgerLock.lock_type == lock_type.value,
                LedgerLock.status == LockStatus.ACTIVE.value,
                LedgerLock.start_date <= end_date,
                LedgerLock.end_date >= start_date,
            )
            .with_for_update()
            .limit(1)
        ).scalar_one_or_none()

    def _insert_lock(
        self,
        tenant_id: str,
        lock_type: LockType,
        start_date: date,
        end_date: date,
        reason: str,
        actor_id: UUID,
        period_id: UUID | None = None,
    ) -> LedgerLock:
        lock = LedgerLock(
            tenant_id=tenant_id,
            lock_type=lock_type.value,
            start_date=start_date,
            end_date=end_date,
            status=LockStatus.ACTIVE.value,
            reason=reason,
            period_id=period_id,
            locked_by_id=actor_id,
            locked_at=self.clock.now(),
            created_by_id=actor_id,
        )

        # Storage overlap guard: catches a racing insert that the FOR UPDATE
        # check in apply_lock could not see yet
        savepoint = self.session.begin_nested()
        try:
            self.session.add(lock)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            if lock_type not in MANUAL_LOCK_TYPES:
                raise
            winner = self._find_overlapping_active(tenant_id, lock_type, start_date, end_date)
            if winner is None:
                raise
            logger.warning(
                "lock_overlap_race_lost",
                extra={
                    "tenant_id": tenant_id,
                    "lock_type": lock_type.value,
                    "existing_lock_id": str(winner.id),
                },
            )
            raise LockOverlapError(lock_type.value, str(winner.id))

        self._auditor.record_lock_applied(
            lock.id,
            {
                "lock_type": lock_type.value,
                "start_date": start_date,
                "end_date": end_date,
                "reason": reason,
                "period_id": period_id,
            },
            actor_id,
        )
        logger.info(
            "lock_applied",
            extra={
                "lock_id": str(lock.id),
                "tenant_id": tenant_id,
                "lock_type": lock_type.value,
                "start_date": str(start_date),
                "end_date": str(end_date),
            },
        )
        return lock
