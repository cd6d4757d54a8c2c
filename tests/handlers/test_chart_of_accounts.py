"""Chart of accounts seeding."""

from uuid import uuid5

from sqlalchemy import func, select

from ledger_kernel.models.account import Account, AccountCategory, NormalBalance
from ledger_services.chart_of_accounts import (
    CHART_OF_ACCOUNTS,
    COA_UUID_NS,
    gateway_fee_account,
    seed_chart_of_accounts,
)


class TestSeedChartOfAccounts:

    def test_seeds_every_account(self, session, test_actor_id):
        created = seed_chart_of_accounts(session, test_actor_id)

        assert created == len(CHART_OF_ACCOUNTS)
        count = session.execute(select(func.count()).select_from(Account)).scalar_one()
        assert count == len(CHART_OF_ACCOUNTS)

    def test_reseeding_adds_nothing(self, session, test_actor_id):
        seed_chart_of_accounts(session, test_actor_id)

        assert seed_chart_of_accounts(session, test_actor_id) == 0

    def test_deterministic_ids(self, session, test_actor_id):
        seed_chart_of_accounts(session, test_actor_id)

        escrow = session.execute(select(Account).where(Account.code == "ESC-001")).scalar_one()
        assert escrow.id == uuid5(COA_UUID_NS, "ESC-001")

    def test_normal_balance_follows_category(self):
        for definition in CHART_OF_ACCOUNTS:
            debit_normal = definition.category in (AccountCategory.ASSET, AccountCategory.EXPENSE)
            expected = NormalBalance.DEBIT if debit_normal else NormalBalance.CREDIT
            assert definition.normal_balance == expected, definition.code

    def test_codes_unique(self):
        codes = [d.code for d in CHART_OF_ACCOUNTS]

        assert len(codes) == len(set(codes))


class TestGatewayFeeAccount:

    def test_known_gateways(self):
        assert gateway_fee_account("razorpay") == "GTW-FEE-001"
        assert gateway_fee_account("PayU") == "GTW-FEE-002"
        assert gateway_fee_account("ccavenue") == "GTW-FEE-003"

    def test_unknown_or_missing_gateway(self):
        assert gateway_fee_account(None) == "GTW-FEE-001"
        assert gateway_fee_account("stripe") == "GTW-FEE-001"


class TestSeedLogging:

    def test_seed_logged_with_count(self, session, test_actor_id, captured_logs):
        seed_chart_of_accounts(session, test_actor_id)

        [record] = [r for r in captured_logs() if r["message"] == "chart_of_accounts_seeded"]
        assert record["accounts_created"] == len(CHART_OF_ACCOUNTS)
        assert record["total"] == len(CHART_OF_ACCOUNTS)
