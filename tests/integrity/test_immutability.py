"""
Immutability enforcement at both layers.

ORM listeners reject edits to append-only rows before SQL is emitted;
storage triggers reject the same edits when the ORM is bypassed.
"""

import pytest
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

from ledger_kernel.db.triggers import (
    ALL_TRIGGER_NAMES,
    OVERLAP_GUARD_NAMES,
    get_installed_overlap_guards,
    get_installed_triggers,
    get_missing_triggers,
    triggers_installed,
)
from ledger_kernel.exceptions import ImmutabilityViolationError
from ledger_kernel.models.account import Account
from ledger_kernel.models.accounting_period import AccountingPeriod
from ledger_kernel.models.admin_override import AdminOverrideLog
from ledger_kernel.models.audit_event import AuditEvent
from ledger_kernel.models.ledger import LedgerTransaction


@pytest.fixture
def posted(open_period, post_simple, session):
    txn = post_simple("40.00")
    return session.get(LedgerTransaction, txn.id)


@pytest.fixture
def hard_closed(open_period, period_service, session, test_actor_id):
    period_service.close_period(open_period.id, "SOFT_CLOSED", test_actor_id)
    period_service.close_period(open_period.id, "HARD_CLOSED", test_actor_id, notes="Month end")
    return session.get(AccountingPeriod, open_period.id)


class TestOrmListeners:

    def test_entry_update_blocked(self, posted, session):
        posted.entries[0].description = "edited"

        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()

        assert exc_info.value.entity_type == "LedgerEntry"

    def test_entry_delete_blocked(self, posted, session):
        session.delete(posted.entries[0])

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_posted_transaction_frozen(self, posted, session):
        posted.description = "Rewritten history"

        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()

        assert exc_info.value.entity_type == "LedgerTransaction"
        assert "description" in exc_info.value.reason

    def test_posted_transaction_delete_blocked(self, posted, session):
        session.delete(posted)

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_reversal_link_allowed(self, posted, ledger_service, session, test_actor_id):
        reversal = ledger_service.reverse_transaction(posted.id, "Posted twice", test_actor_id)

        session.refresh(posted)
        assert posted.reversed_by_id == reversal.id

    def test_audit_event_update_blocked(self, posted, session):
        event = session.query(AuditEvent).order_by(AuditEvent.seq).first()
        event.payload = {"forged": True}

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_override_log_update_blocked(self, open_period, override_service, session, tenant_id, test_actor_id):
        decision = override_service.record_override(
            "SOFT_CLOSED_PERIOD_POSTING",
            "Late gateway file for the closed day",
            "PAY-late",
            test_actor_id,
            "FINANCE_ADMIN",
            tenant_id=tenant_id,
            period_id=open_period.id,
        )
        log = session.get(AdminOverrideLog, decision.log_id)
        log.justification = "Something else entirely"

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_hard_closed_period_terminal(self, hard_closed, session):
        hard_closed.closing_notes = "Reopened quietly"

        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()

        assert exc_info.value.entity_type == "AccountingPeriod"

    def test_period_delete_blocked(self, open_period, session):
        session.delete(session.get(AccountingPeriod, open_period.id))

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_account_delete_blocked(self, chart_of_accounts, session):
        account = session.query(Account).filter(Account.code == "ESC-001").one()
        session.delete(account)

        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestStorageTriggers:
    """Raw SQL skips the ORM listeners; the triggers still hold."""

    def test_all_triggers_installed(self, db_tables, db_engine):
        assert triggers_installed(db_engine)
        assert get_installed_triggers(db_engine) == sorted(ALL_TRIGGER_NAMES)
        assert get_installed_overlap_guards(db_engine) == sorted(OVERLAP_GUARD_NAMES[db_engine.dialect.name])
        assert get_missing_triggers(db_engine) == []

    @pytest.mark.parametrize(
        "statement",
        [
            "UPDATE ledger_entries SET amount = amount + 1",
            "DELETE FROM ledger_entries",
            "UPDATE ledger_transactions SET amount = amount + 1",
            "DELETE FROM ledger_transactions",
            "UPDATE audit_events SET payload_hash = 'x'",
            "DELETE FROM audit_events",
        ],
    )
    def test_raw_sql_rejected(self, posted, session, statement):
        with pytest.raises(DBAPIError):
            with session.begin_nested():
                session.execute(text(statement))

    def test_raw_sql_on_hard_closed_period_rejected(self, hard_closed, session):
        with pytest.raises(DBAPIError):
            with session.begin_nested():
                session.execute(text("UPDATE accounting_periods SET closing_notes = 'edited'"))

    def test_open_period_still_editable(self, open_period, session):
        with session.begin_nested():
            result = session.execute(text("UPDATE accounting_periods SET closing_notes = 'draft'"))

        assert result.rowcount == 1
