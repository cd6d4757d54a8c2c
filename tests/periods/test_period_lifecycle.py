"""
Accounting period lifecycle tests.

Verifies:
- Creation rules: no overlap per type, one OPEN period per type, bounded gaps
- Close transitions: OPEN -> SOFT_CLOSED -> HARD_CLOSED only
- HARD_CLOSED creates the permanent PERIOD_LOCK
- Posting decisions per period status
"""

import pytest
from datetime import date, timedelta
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

from ledger_kernel.domain.dtos import PeriodDecision
from ledger_kernel.exceptions import (
    InvalidPeriodTransitionError,
    LockActiveError,
    OpenPeriodExistsError,
    PeriodGapError,
    PeriodNotFoundError,
    PeriodOverlapError,
    ValidationError,
)
from ledger_kernel.models.accounting_period import PeriodStatus, PeriodType
from ledger_kernel.models.audit_event import AuditAction
from ledger_kernel.models.ledger_lock import LockType

DAY = date(2024, 1, 15)


class TestCreatePeriod:

    def test_create_daily_period(self, period_service, tenant_id, test_actor_id):
        period = period_service.create_period(tenant_id, PeriodType.DAILY, DAY, DAY, test_actor_id)

        assert period.status == PeriodStatus.OPEN
        assert period.period_type == PeriodType.DAILY
        assert period.is_open
        assert period.contains_date(DAY)
        assert not period.contains_date(DAY + timedelta(days=1))

    def test_period_type_accepts_string(self, period_service, tenant_id, test_actor_id):
        period = period_service.create_period(tenant_id, "MONTHLY", date(2024, 1, 1), date(2024, 1, 31), test_actor_id)

        assert period.period_type == PeriodType.MONTHLY

    def test_daily_and_monthly_coexist(self, open_period, period_service, tenant_id, test_actor_id):
        monthly = period_service.create_period(
            tenant_id, PeriodType.MONTHLY, date(2024, 1, 1), date(2024, 1, 31), test_actor_id
        )

        assert monthly.is_open
        assert period_service.get_open_period(tenant_id, PeriodType.DAILY).id == open_period.id

    def test_start_after_end_rejected(self, period_service, tenant_id, test_actor_id):
        with pytest.raises(ValidationError):
            period_service.create_period(tenant_id, "DAILY", DAY, DAY - timedelta(days=1), test_actor_id)

    def test_unknown_type_rejected(self, period_service, tenant_id, test_actor_id):
        with pytest.raises(ValidationError):
            period_service.create_period(tenant_id, "WEEKLY", DAY, DAY, test_actor_id)

    def test_overlap_rejected(self, open_period, period_service, tenant_id, test_actor_id):
        with pytest.raises(PeriodOverlapError):
            period_service.create_period(tenant_id, "DAILY", DAY, DAY, test_actor_id)

    def test_second_open_period_rejected(self, open_period, period_service, tenant_id, test_actor_id):
        next_day = DAY + timedelta(days=1)

        with pytest.raises(OpenPeriodExistsError) as exc_info:
            period_service.create_period(tenant_id, "DAILY", next_day, next_day, test_actor_id)

        assert exc_info.value.code == "OPEN_PERIOD_EXISTS"

    def test_next_day_after_soft_close(self, open_period, period_service, tenant_id, test_actor_id):
        period_service.close_period(open_period.id, PeriodStatus.SOFT_CLOSED, test_actor_id)
        next_day = DAY + timedelta(days=1)

        period = period_service.create_period(tenant_id, "DAILY", next_day, next_day, test_actor_id)

        assert period.is_open

    def test_gap_up_to_two_days_allowed(self, open_period, period_service, tenant_id, test_actor_id):
        period_service.close_period(open_period.id, PeriodStatus.SOFT_CLOSED, test_actor_id)
        later = DAY + timedelta(days=2)

        assert period_service.create_period(tenant_id, "DAILY", later, later, test_actor_id).is_open

    def test_gap_over_two_days_rejected(self, open_period, period_service, tenant_id, test_actor_id):
        period_service.close_period(open_period.id, PeriodStatus.SOFT_CLOSED, test_actor_id)
        later = DAY + timedelta(days=4)

        with pytest.raises(PeriodGapError):
            period_service.create_period(tenant_id, "DAILY", later, later, test_actor_id)

    def test_tenants_are_independent(self, open_period, period_service, test_actor_id):
        other = period_service.create_period("tenant-other", "DAILY", DAY, DAY, test_actor_id)

        assert other.id != open_period.id

    def test_creation_is_audited(self, open_period, auditor_service):
        trace = auditor_service.get_trace("AccountingPeriod", open_period.id)

        assert trace.actions == (AuditAction.PERIOD_CREATED,)


class TestClosePeriod:

    def test_soft_close(self, open_period, period_service, test_actor_id, deterministic_clock):
        closed = period_service.close_period(
            open_period.id, PeriodStatus.SOFT_CLOSED, test_actor_id, notes="EOD"
        )

        assert closed.status == PeriodStatus.SOFT_CLOSED
        assert closed.soft_closed_by_id == test_actor_id
        assert closed.soft_closed_at == deterministic_clock.now()
        assert closed.closing_notes == "EOD"

    def test_hard_close_creates_period_lock(self, open_period, period_service, lock_service, tenant_id, test_actor_id):
        period_service.close_period(open_period.id, "SOFT_CLOSED", test_actor_id)
        hard = period_service.close_period(open_period.id, "HARD_CLOSED", test_actor_id)

        assert hard.status == PeriodStatus.HARD_CLOSED
        locks = lock_service.get_active_locks(tenant_id)
        assert len(locks) == 1
        assert locks[0].lock_type == LockType.PERIOD_LOCK
        assert locks[0].period_id == open_period.id
        assert (locks[0].start_date, locks[0].end_date) == (DAY, DAY)

    def test_cannot_skip_soft_close(self, open_period, period_service, test_actor_id):
        with pytest.raises(InvalidPeriodTransitionError):
            period_service.close_period(open_period.id, "HARD_CLOSED", test_actor_id)

    def test_hard_closed_is_terminal(self, open_period, period_service, test_actor_id):
        period_service.close_period(open_period.id, "SOFT_CLOSED", test_actor_id)
        period_service.close_period(open_period.id, "HARD_CLOSED", test_actor_id)

        for target in ("OPEN", "SOFT_CLOSED", "HARD_CLOSED"):
            with pytest.raises(InvalidPeriodTransitionError):
                period_service.close_period(open_period.id, target, test_actor_id)

    def test_reopen_rejected(self, open_period, period_service, test_actor_id):
        period_service.close_period(open_period.id, "SOFT_CLOSED", test_actor_id)

        with pytest.raises(InvalidPeriodTransitionError):
            period_service.close_period(open_period.id, "OPEN", test_actor_id)

    def test_unknown_period(self, period_service, test_actor_id):
        with pytest.raises(PeriodNotFoundError):
            period_service.close_period(uuid4(), "SOFT_CLOSED", test_actor_id)

    def test_close_sequence_is_audited(self, open_period, period_service, auditor_service, test_actor_id):
        period_service.close_period(open_period.id, "SOFT_CLOSED", test_actor_id)
        period_service.close_period(open_period.id, "HARD_CLOSED", test_actor_id)

        trace = auditor_service.get_trace("AccountingPeriod", open_period.id)
        assert trace.actions == (
            AuditAction.PERIOD_CREATED,
            AuditAction.PERIOD_SOFT_CLOSED,
            AuditAction.PERIOD_HARD_CLOSED,
        )


class TestPostingDecision:

    def test_open_allows(self, open_period, period_service, tenant_id):
        check = period_service.check_period_for_posting(tenant_id, DAY)

        assert check.decision == PeriodDecision.ALLOWED
        assert check.period_id == open_period.id

    def test_soft_closed_requires_override(self, open_period, period_service, tenant_id, test_actor_id):
        period_service.close_period(open_period.id, "SOFT_CLOSED", test_actor_id)

        check = period_service.check_period_for_posting(tenant_id, DAY)

        assert check.override_required
        assert check.period_status == PeriodStatus.SOFT_CLOSED

    def test_hard_closed_blocks(self, open_period, period_service, tenant_id, test_actor_id):
        period_service.close_period(open_period.id, "SOFT_CLOSED", test_actor_id)
        period_service.close_period(open_period.id, "HARD_CLOSED", test_actor_id)

        assert period_service.check_period_for_posting(tenant_id, DAY).blocked

    def test_no_period_blocks(self, period_service, tenant_id):
        check = period_service.check_period_for_posting(tenant_id, DAY)

        assert check.blocked
        assert check.period_id is None
        assert "No DAILY accounting period covers" in check.reason

    def test_posting_into_hard_closed_day_hits_period_lock(
        self, open_period, period_service, post_simple, test_actor_id
    ):
        period_service.close_period(open_period.id, "SOFT_CLOSED", test_actor_id)
        period_service.close_period(open_period.id, "HARD_CLOSED", test_actor_id)

        with pytest.raises(LockActiveError) as exc_info:
            post_simple()

        assert exc_info.value.lock_type == LockType.PERIOD_LOCK.value


class TestPeriodQueries:

    def test_get_period_for_date(self, open_period, period_service, tenant_id):
        assert period_service.get_period_for_date(tenant_id, DAY).id == open_period.id
        assert period_service.get_period_for_date(tenant_id, DAY + timedelta(days=1)) is None

    def test_list_periods_in_date_order(self, open_period, period_service, tenant_id, test_actor_id):
        period_service.close_period(open_period.id, "SOFT_CLOSED", test_actor_id)
        next_day = DAY + timedelta(days=1)
        period_service.create_period(tenant_id, "DAILY", next_day, next_day, test_actor_id)

        periods = period_service.list_periods(tenant_id, "DAILY")

        assert [p.start_date for p in periods] == [DAY, next_day]


class TestStorageOverlapGuard:
    """Storage rejects same-type overlap even when the service check misses."""

    def test_racing_create_reported_as_overlap(self, open_period, period_service, tenant_id, test_actor_id, monkeypatch):
        period_service.close_period(open_period.id, "SOFT_CLOSED", test_actor_id)
        check = period_service._validate_no_overlap
        calls = []

        def first_check_misses(*args):
            calls.append(args)
            if len(calls) > 1:
                check(*args)

        monkeypatch.setattr(period_service, "_validate_no_overlap", first_check_misses)

        with pytest.raises(PeriodOverlapError) as exc_info:
            period_service.create_period(tenant_id, PeriodType.DAILY, DAY, DAY + timedelta(days=1), test_actor_id)

        assert exc_info.value.existing_period_id == str(open_period.id)
        assert len(period_service.list_periods(tenant_id)) == 1

    def test_raw_overlapping_insert_rejected(self, open_period, session):
        with pytest.raises(DBAPIError, match="overlapping accounting period"):
            with session.begin_nested():
                session.execute(
                    text(
                        "INSERT INTO accounting_periods (id, created_by_id, tenant_id, period_type,"
                        " start_date, end_date, status)"
                        " SELECT :id, created_by_id, tenant_id, period_type, start_date, end_date,"
                        " 'SOFT_CLOSED' FROM accounting_periods"
                    ),
                    {"id": str(uuid4())},
                )
