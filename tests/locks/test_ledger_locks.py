"""
Ledger lock tests.

An ACTIVE lock freezes a date range for one tenant whatever the period
status.  AUDIT_LOCK and RECONCILIATION_LOCK are applied and released by
operators; PERIOD_LOCK only comes from a hard close and is permanent.
"""

import pytest
from datetime import date, timedelta
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

from ledger_kernel.exceptions import (
    LockActiveError,
    LockNotFoundError,
    LockOverlapError,
    LockReleaseNotAllowedError,
    ValidationError,
)
from ledger_kernel.models.accounting_period import PeriodType
from ledger_kernel.models.audit_event import AuditAction
from ledger_kernel.models.ledger_lock import LockStatus, LockType

DAY = date(2024, 1, 15)


class TestApplyLock:

    def test_apply_audit_lock(self, lock_service, tenant_id, test_actor_id):
        lock = lock_service.apply_lock(
            LockType.AUDIT_LOCK, tenant_id, DAY, DAY, "Statutory audit", test_actor_id
        )

        assert lock.status == LockStatus.ACTIVE
        assert lock.lock_type == LockType.AUDIT_LOCK
        assert lock.locked_by_id == test_actor_id
        assert lock.period_id is None

    def test_period_lock_cannot_be_applied_manually(self, lock_service, tenant_id, test_actor_id):
        with pytest.raises(ValidationError):
            lock_service.apply_lock("PERIOD_LOCK", tenant_id, DAY, DAY, "Manual", test_actor_id)

    def test_reason_required(self, lock_service, tenant_id, test_actor_id):
        with pytest.raises(ValidationError):
            lock_service.apply_lock("AUDIT_LOCK", tenant_id, DAY, DAY, "  ", test_actor_id)

    def test_bad_range_rejected(self, lock_service, tenant_id, test_actor_id):
        with pytest.raises(ValidationError):
            lock_service.apply_lock(
                "AUDIT_LOCK", tenant_id, DAY, DAY - timedelta(days=1), "Backwards", test_actor_id
            )

    def test_same_type_overlap_rejected(self, lock_service, tenant_id, test_actor_id):
        lock_service.apply_lock("AUDIT_LOCK", tenant_id, DAY, DAY + timedelta(days=5), "First", test_actor_id)

        with pytest.raises(LockOverlapError):
            lock_service.apply_lock(
                "AUDIT_LOCK", tenant_id, DAY + timedelta(days=3), DAY + timedelta(days=9), "Second", test_actor_id
            )

    def test_different_types_may_overlap(self, lock_service, tenant_id, test_actor_id):
        lock_service.apply_lock("AUDIT_LOCK", tenant_id, DAY, DAY, "Audit", test_actor_id)
        recon = lock_service.apply_lock("RECONCILIATION_LOCK", tenant_id, DAY, DAY, "Recon", test_actor_id)

        assert recon.status == LockStatus.ACTIVE
        assert len(lock_service.get_active_locks(tenant_id)) == 2

    def test_apply_is_audited(self, lock_service, auditor_service, tenant_id, test_actor_id):
        lock = lock_service.apply_lock("AUDIT_LOCK", tenant_id, DAY, DAY, "Audit", test_actor_id)

        trace = auditor_service.get_trace("LedgerLock", lock.id)
        assert trace.actions == (AuditAction.LOCK_APPLIED,)


class TestLockBlocksPosting:

    def test_lock_blocks_posting_in_open_period(self, open_period, lock_service, post_simple, tenant_id, test_actor_id):
        lock = lock_service.apply_lock("RECONCILIATION_LOCK", tenant_id, DAY, DAY, "Bank recon", test_actor_id)

        with pytest.raises(LockActiveError) as exc_info:
            post_simple()

        assert exc_info.value.lock_id == str(lock.id)
        assert exc_info.value.code == "LOCK_ACTIVE"

    def test_lock_beats_override(
        self, open_period, lock_service, period_service, post_simple, admin_override, tenant_id, test_actor_id
    ):
        """An override opens a SOFT_CLOSED period, never a lock."""
        period_service.close_period(open_period.id, "SOFT_CLOSED", test_actor_id)
        lock_service.apply_lock("AUDIT_LOCK", tenant_id, DAY, DAY, "Audit", test_actor_id)

        with pytest.raises(LockActiveError):
            post_simple(period_override=admin_override)

    def test_lock_is_tenant_scoped(self, open_period, lock_service, post_simple, test_actor_id):
        lock_service.apply_lock("AUDIT_LOCK", "tenant-other", DAY, DAY, "Other tenant", test_actor_id)

        assert post_simple().status.value == "posted"

    def test_released_lock_no_longer_blocks(self, open_period, lock_service, post_simple, tenant_id, test_actor_id):
        lock = lock_service.apply_lock("AUDIT_LOCK", tenant_id, DAY, DAY, "Audit", test_actor_id)
        lock_service.release_lock(lock.id, test_actor_id, "Audit finished")

        assert post_simple().status.value == "posted"

    def test_check_locks(self, lock_service, tenant_id, test_actor_id):
        lock_service.apply_lock("AUDIT_LOCK", tenant_id, DAY, DAY + timedelta(days=1), "Audit", test_actor_id)

        assert lock_service.check_locks(tenant_id, DAY + timedelta(days=1)).is_locked
        assert not lock_service.check_locks(tenant_id, DAY + timedelta(days=2)).is_locked


class TestReleaseLock:

    def test_release(self, lock_service, tenant_id, test_actor_id, deterministic_clock):
        lock = lock_service.apply_lock("AUDIT_LOCK", tenant_id, DAY, DAY, "Audit", test_actor_id)

        released = lock_service.release_lock(lock.id, test_actor_id, "Done")

        assert released.status == LockStatus.RELEASED
        assert released.released_by_id == test_actor_id
        assert released.released_at == deterministic_clock.now()
        assert released.release_notes == "Done"

    def test_release_notes_required(self, lock_service, tenant_id, test_actor_id):
        lock = lock_service.apply_lock("AUDIT_LOCK", tenant_id, DAY, DAY, "Audit", test_actor_id)

        with pytest.raises(ValidationError):
            lock_service.release_lock(lock.id, test_actor_id, "")

    def test_double_release_rejected(self, lock_service, tenant_id, test_actor_id):
        lock = lock_service.apply_lock("AUDIT_LOCK", tenant_id, DAY, DAY, "Audit", test_actor_id)
        lock_service.release_lock(lock.id, test_actor_id, "Done")

        with pytest.raises(LockReleaseNotAllowedError):
            lock_service.release_lock(lock.id, test_actor_id, "Again")

    def test_period_lock_is_permanent(self, open_period, period_service, lock_service, tenant_id, test_actor_id):
        period_service.close_period(open_period.id, "SOFT_CLOSED", test_actor_id)
        period_service.close_period(open_period.id, "HARD_CLOSED", test_actor_id)
        period_lock = lock_service.get_active_locks(tenant_id)[0]

        with pytest.raises(LockReleaseNotAllowedError):
            lock_service.release_lock(period_lock.id, test_actor_id, "Reopen the day")

        assert lock_service.get_lock(period_lock.id).status == LockStatus.ACTIVE

    def test_unknown_lock(self, lock_service, test_actor_id):
        with pytest.raises(LockNotFoundError):
            lock_service.release_lock(uuid4(), test_actor_id, "Nothing")

    def test_released_lock_allows_new_overlap(self, lock_service, tenant_id, test_actor_id):
        lock = lock_service.apply_lock("AUDIT_LOCK", tenant_id, DAY, DAY, "First", test_actor_id)
        lock_service.release_lock(lock.id, test_actor_id, "Done")

        again = lock_service.apply_lock("AUDIT_LOCK", tenant_id, DAY, DAY, "Second", test_actor_id)

        history = lock_service.get_lock_history(tenant_id)
        assert {h.id for h in history} == {lock.id, again.id}


class TestStorageOverlapGuard:
    """Storage rejects overlapping ACTIVE locks even when the service check misses."""

    def test_racing_apply_reported_as_overlap(self, lock_service, tenant_id, test_actor_id, monkeypatch):
        first = lock_service.apply_lock("AUDIT_LOCK", tenant_id, DAY, DAY + timedelta(days=5), "First", test_actor_id)
        lookup = lock_service._find_overlapping_active
        calls = []

        def first_check_misses(*args):
            calls.append(args)
            return None if len(calls) == 1 else lookup(*args)

        monkeypatch.setattr(lock_service, "_find_overlapping_active", first_check_misses)

        with pytest.raises(LockOverlapError) as exc_info:
            lock_service.apply_lock(
                "AUDIT_LOCK", tenant_id, DAY + timedelta(days=3), DAY + timedelta(days=9), "Second", test_actor_id
            )

        assert exc_info.value.existing_lock_id == str(first.id)
        assert [lock.id for lock in lock_service.get_active_locks(tenant_id)] == [first.id]

    def test_raw_overlapping_insert_rejected(self, lock_service, session, tenant_id, test_actor_id):
        lock_service.apply_lock("RECONCILIATION_LOCK", tenant_id, DAY, DAY, "Bank recon", test_actor_id)

        with pytest.raises(DBAPIError, match="overlapping ACTIVE lock"):
            with session.begin_nested():
                session.execute(
                    text(
                        "INSERT INTO ledger_locks (id, created_by_id, tenant_id, lock_type, start_date,"
                        " end_date, status, reason, locked_by_id, locked_at)"
                        " SELECT :id, created_by_id, tenant_id, lock_type, start_date, end_date, status,"
                        " 'Copied by hand', locked_by_id, locked_at FROM ledger_locks"
                    ),
                    {"id": str(uuid4())},
                )

    def test_period_locks_may_overlap(self, open_period, period_service, lock_service, tenant_id, test_actor_id):
        monthly = period_service.create_period(
            tenant_id, PeriodType.MONTHLY, date(2024, 1, 1), date(2024, 1, 31), test_actor_id
        )
        for period in (open_period, monthly):
            period_service.close_period(period.id, "SOFT_CLOSED", test_actor_id)
            period_service.close_period(period.id, "HARD_CLOSED", test_actor_id)

        period_locks = [
            lock for lock in lock_service.get_active_locks(tenant_id) if lock.lock_type == LockType.PERIOD_LOCK
        ]
        assert len(period_locks) == 2
