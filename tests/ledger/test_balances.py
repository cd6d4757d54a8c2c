"""
Derived balance tests for LedgerSelector.

Balances are never stored; they are folded from posted entries and signed in
the account's normal direction.
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from ledger_kernel.exceptions import AccountNotFoundError
from ledger_kernel.models.account import NormalBalance
from ledger_services.chart_of_accounts import CHART_OF_ACCOUNTS


class TestAccountBalance:

    def test_normal_direction_signs(self, open_period, post_simple, ledger_selector):
        post_simple("300.00", debit="ESC-001", credit="ESC-002")

        asset = ledger_selector.account_balance_by_code("ESC-001")
        liability = ledger_selector.account_balance_by_code("ESC-002")

        assert asset.normal_balance == NormalBalance.DEBIT
        assert asset.balance == Decimal("300.00")
        assert liability.normal_balance == NormalBalance.CREDIT
        assert liability.balance == Decimal("300.00")

    def test_contra_movement_reduces_balance(self, open_period, post_simple, ledger_selector):
        post_simple("300.00", debit="ESC-001", credit="ESC-002")
        post_simple("120.00", debit="ESC-002", credit="ESC-001")

        escrow = ledger_selector.account_balance_by_code("ESC-001")
        assert escrow.total_debits == Decimal("300.00")
        assert escrow.total_credits == Decimal("120.00")
        assert escrow.balance == Decimal("180.00")

    def test_untouched_account_is_zero(self, chart_of_accounts, ledger_selector):
        balance = ledger_selector.account_balance_by_code("REV-004")

        assert balance.balance == Decimal("0")
        assert balance.entry_count == 0

    def test_tenant_filter(self, open_period, post_simple, period_service, ledger_selector, test_actor_id):
        period_service.create_period("tenant-other", "DAILY", open_period.start_date, open_period.end_date, test_actor_id)
        post_simple("10.00")
        post_simple("25.00", tenant_id="tenant-other")

        assert ledger_selector.account_balance_by_code("ESC-001", tenant_id="tenant-other").balance == Decimal("25.00")
        assert ledger_selector.account_balance_by_code("ESC-001").balance == Decimal("35.00")

    def test_as_of_excludes_later_postings(self, open_period, post_simple, ledger_selector, deterministic_clock):
        now = deterministic_clock.now()
        post_simple("10.00", effective_at=now - timedelta(hours=2))
        post_simple("20.00", effective_at=now)

        balance = ledger_selector.account_balance_by_code("ESC-001", as_of=now - timedelta(hours=1))
        assert balance.balance == Decimal("10.00")

    def test_unknown_code(self, chart_of_accounts, ledger_selector):
        with pytest.raises(AccountNotFoundError):
            ledger_selector.account_balance_by_code("MISSING")


class TestTrialBalance:

    def test_trial_balance_always_balances(self, open_period, post_simple, ledger_selector):
        post_simple("100.00", debit="ESC-001", credit="ESC-002")
        post_simple("97.00", debit="MER-001", credit="MER-002")
        post_simple("3.00", debit="REV-REC-001", credit="REV-001")

        trial = ledger_selector.trial_balance()

        assert trial.is_balanced
        assert trial.total_debits == Decimal("200.00")
        assert trial.row_for("REV-001").balance == Decimal("3.00")

    def test_lists_every_account(self, chart_of_accounts, ledger_selector):
        trial = ledger_selector.trial_balance()

        assert {row.account_code for row in trial.rows} == {d.code for d in CHART_OF_ACCOUNTS}
        assert trial.total_debits == Decimal("0")

    def test_ledger_summary_skips_empty_accounts(self, open_period, post_simple, ledger_selector):
        post_simple()

        summary = ledger_selector.ledger_summary()

        assert {row.account_code for row in summary.rows} == {"ESC-001", "ESC-002"}

    def test_account_entries_in_order(self, open_period, post_simple, ledger_selector, deterministic_clock):
        now = deterministic_clock.now()
        post_simple("2.00", effective_at=now)
        post_simple("1.00", effective_at=now - timedelta(minutes=5))

        escrow = ledger_selector.account_balance_by_code("ESC-001")
        entries = ledger_selector.account_entries(escrow.account_id)

        assert [e.amount for e in entries] == [Decimal("1.00"), Decimal("2.00")]
