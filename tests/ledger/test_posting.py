"""
Posting tests for LedgerService.

Verifies:
- Balanced postings are written with ordered entries and derived totals
- Unbalanced, one-sided, mixed-currency and malformed requests are rejected
  and leave nothing behind
- Idempotency: same key and payload replays, a different payload conflicts,
  also when two sessions race on the key
- Unknown and inactive accounts are refused
"""

import pytest
from decimal import Decimal

from sqlalchemy import func, select

from ledger_config.bridges import build_service_stack
from ledger_kernel.domain.dtos import EntrySpec
from ledger_kernel.exceptions import (
    AccountInactiveError,
    AccountNotFoundError,
    IdempotencyConflictError,
    PeriodClosedError,
    UnbalancedTransactionError,
    ValidationError,
)
from ledger_kernel.models.account import Account, AccountStatus
from ledger_kernel.models.accounting_period import PeriodType
from ledger_kernel.models.ledger import EntryDirection, LedgerTransaction, TransactionStatus
from ledger_services.chart_of_accounts import seed_chart_of_accounts


def _transaction_count(session) -> int:
    return session.execute(select(func.count()).select_from(LedgerTransaction)).scalar_one()


class TestBalancedPosting:
    """Happy-path postings."""

    def test_two_line_posting(self, open_period, post_simple):
        txn = post_simple("250.00")

        assert txn.status == TransactionStatus.POSTED
        assert txn.amount == Decimal("250.00")
        assert txn.total_debits == txn.total_credits == Decimal("250.00")
        assert txn.currency == "INR"
        assert txn.idempotent_replay is False
        assert [e.account_code for e in txn.entries] == ["ESC-001", "ESC-002"]
        assert [e.direction for e in txn.entries] == [EntryDirection.DEBIT, EntryDirection.CREDIT]
        assert [e.line_seq for e in txn.entries] == [1, 2]

    def test_multi_leg_posting(self, open_period, ledger_service, tenant_id, test_actor_id):
        entries = [
            EntrySpec.debit("ESC-001", "1000.00"),
            EntrySpec.credit("ESC-002", "1000.00"),
            EntrySpec.debit("MER-001", "970.00"),
            EntrySpec.credit("MER-002", "970.00"),
        ]
        txn = ledger_service.post_transaction(
            entries,
            "multi-leg:1",
            "payment_success",
            tenant_id=tenant_id,
            actor_id=test_actor_id,
        )

        assert len(txn.entries) == 4
        assert txn.total_debits == Decimal("1970.00")
        assert txn.total_credits == Decimal("1970.00")

    def test_defaults_from_clock_and_reference(self, open_period, post_simple, deterministic_clock):
        txn = post_simple()

        assert txn.effective_at == deterministic_clock.now()
        assert txn.reference.startswith("TXN-")

    def test_metadata_and_description_stored(self, open_period, post_simple):
        txn = post_simple(
            reference="PAY-abc",
            description="Payment abc",
            metadata={"external_reference": "abc", "amount": Decimal("100.00")},
        )

        assert txn.reference == "PAY-abc"
        assert txn.description == "Payment abc"
        assert txn.metadata["external_reference"] == "abc"

    def test_imbalance_within_tolerance_is_accepted(
        self, open_period, ledger_service, tenant_id, test_actor_id
    ):
        txn = ledger_service.post_transaction(
            [EntrySpec.debit("ESC-001", "100.00"), EntrySpec.credit("ESC-002", "99.99")],
            None,
            "fx_rounding",
            tenant_id=tenant_id,
            actor_id=test_actor_id,
        )

        assert txn.amount == Decimal("100.00")

    def test_posting_logged_with_tenant_context(self, open_period, post_simple, captured_logs, tenant_id):
        txn = post_simple()

        posted = [r for r in captured_logs() if r["message"] == "transaction_posted"]
        assert len(posted) == 1
        assert posted[0]["transaction_id"] == str(txn.id)
        assert posted[0]["tenant_id"] == tenant_id


class TestRejectedPostings:
    """Malformed requests never reach the database."""

    def test_unbalanced_rejected(self, open_period, ledger_service, tenant_id, test_actor_id, session):
        with pytest.raises(UnbalancedTransactionError) as exc_info:
            ledger_service.post_transaction(
                [EntrySpec.debit("ESC-001", "100.00"), EntrySpec.credit("ESC-002", "90.00")],
                "unbalanced:1",
                "test_posting",
                tenant_id=tenant_id,
                actor_id=test_actor_id,
            )

        assert exc_info.value.code == "UNBALANCED_TRANSACTION"
        assert _transaction_count(session) == 0

    def test_one_sided_rejected(self, open_period, ledger_service, tenant_id, test_actor_id):
        with pytest.raises(ValidationError):
            ledger_service.post_transaction(
                [EntrySpec.debit("ESC-001", "100.00"), EntrySpec.debit("MER-001", "100.00")],
                None,
                "test_posting",
                tenant_id=tenant_id,
                actor_id=test_actor_id,
            )

    def test_empty_entries_rejected(self, open_period, ledger_service, tenant_id, test_actor_id):
        with pytest.raises(ValidationError):
            ledger_service.post_transaction(
                [], None, "test_posting", tenant_id=tenant_id, actor_id=test_actor_id
            )

    def test_mixed_currencies_rejected(self, open_period, ledger_service, tenant_id, test_actor_id):
        with pytest.raises(ValidationError) as exc_info:
            ledger_service.post_transaction(
                [
                    EntrySpec.debit("ESC-001", "100.00", currency="INR"),
                    EntrySpec.credit("ESC-002", "100.00", currency="USD"),
                ],
                None,
                "test_posting",
                tenant_id=tenant_id,
                actor_id=test_actor_id,
            )

        assert exc_info.value.field == "currency"

    def test_unknown_currency_rejected(self, open_period, ledger_service, tenant_id, test_actor_id):
        with pytest.raises(ValidationError):
            ledger_service.post_transaction(
                [
                    EntrySpec.debit("ESC-001", "100.00", currency="XYZ"),
                    EntrySpec.credit("ESC-002", "100.00", currency="XYZ"),
                ],
                None,
                "test_posting",
                tenant_id=tenant_id,
                actor_id=test_actor_id,
            )

    def test_missing_tenant_rejected(self, open_period, post_simple):
        with pytest.raises(ValidationError) as exc_info:
            post_simple(tenant_id="")

        assert exc_info.value.field == "tenant_id"

    @pytest.mark.parametrize("amount", ["0", "-5.00", "abc", 10.5])
    def test_bad_entry_amounts_rejected(self, amount):
        with pytest.raises(ValidationError):
            EntrySpec.debit("ESC-001", amount)

    def test_unknown_account_rejected(self, open_period, post_simple):
        with pytest.raises(AccountNotFoundError):
            post_simple(debit="NOPE-999")

    def test_inactive_account_rejected(self, open_period, post_simple, session):
        account = session.execute(select(Account).where(Account.code == "REV-002")).scalar_one()
        account.status = AccountStatus.INACTIVE.value
        session.flush()

        with pytest.raises(AccountInactiveError) as exc_info:
            post_simple(credit="REV-002")

        assert exc_info.value.code == "ACCOUNT_INACTIVE"

    def test_no_period_blocks_posting(self, chart_of_accounts, post_simple, session):
        with pytest.raises(PeriodClosedError) as exc_info:
            post_simple()

        assert "No DAILY accounting period covers" in str(exc_info.value)
        assert _transaction_count(session) == 0


class TestIdempotency:
    """At most one transaction per idempotency key."""

    def test_same_key_same_payload_replays(self, open_period, post_simple, session):
        first = post_simple("100.00", idempotency_key="payment_success:pay_1")
        second = post_simple("100.00", idempotency_key="payment_success:pay_1")

        assert second.id == first.id
        assert second.idempotent_replay is True
        assert first.idempotent_replay is False
        assert _transaction_count(session) == 1

    def test_same_key_different_payload_conflicts(self, open_period, post_simple):
        original = post_simple("100.00", idempotency_key="payment_success:pay_2")

        with pytest.raises(IdempotencyConflictError) as exc_info:
            post_simple("101.00", idempotency_key="payment_success:pay_2")

        assert exc_info.value.code == "IDEMPOTENCY_CONFLICT"
        assert str(original.id) in str(exc_info.value)

    def test_replay_is_logged(self, open_period, post_simple, captured_logs):
        post_simple(idempotency_key="payment_success:pay_3")
        post_simple(idempotency_key="payment_success:pay_3")

        messages = [r["message"] for r in captured_logs()]
        assert "transaction_idempotent_replay" in messages

    def test_replay_skips_the_posting_gate(self, open_period, post_simple, period_service, test_actor_id):
        """A replay returns the stored posting even after the day closed."""
        original = post_simple(idempotency_key="payment_success:pay_4")
        period_service.close_period(open_period.id, "SOFT_CLOSED", test_actor_id)

        replay = post_simple(idempotency_key="payment_success:pay_4")

        assert replay.id == original.id
        assert replay.idempotent_replay is True

    def test_no_key_posts_every_time(self, open_period, ledger_service, tenant_id, test_actor_id, session):
        for _ in range(2):
            ledger_service.post_transaction(
                [EntrySpec.debit("ESC-001", "5.00"), EntrySpec.credit("ESC-002", "5.00")],
                None,
                "test_posting",
                tenant_id=tenant_id,
                actor_id=test_actor_id,
            )

        assert _transaction_count(session) == 2

    def test_account_code_and_id_hash_alike(self, open_period, ledger_service, tenant_id, test_actor_id, session):
        escrow = session.execute(select(Account).where(Account.code == "ESC-001")).scalar_one()

        def post(debit_account):
            return ledger_service.post_transaction(
                [EntrySpec.debit(debit_account, "75.00"), EntrySpec.credit("ESC-002", "75.00")],
                "payment_success:pay_5",
                "payment_success",
                tenant_id=tenant_id,
                actor_id=test_actor_id,
            )

        by_code = post("ESC-001")
        by_id = post(escrow.id)

        assert by_id.id == by_code.id
        assert by_id.idempotent_replay is True

    def test_replay_after_account_deactivated(self, open_period, post_simple, session):
        original = post_simple(credit="REV-002", idempotency_key="payment_success:pay_6")
        account = session.execute(select(Account).where(Account.code == "REV-002")).scalar_one()
        account.status = AccountStatus.INACTIVE.value
        session.flush()

        replay = post_simple(credit="REV-002", idempotency_key="payment_success:pay_6")

        assert replay.id == original.id
        assert replay.idempotent_replay is True


class TestConcurrentIdempotency:
    """
    Two sessions posting under one key.

    The second session's key lookup runs before the first session commits,
    so it only learns about the winner from the unique constraint.
    """

    @pytest.fixture
    def ledger_db(self, file_session_factory, policy, deterministic_clock, tenant_id, test_actor_id):
        with file_session_factory() as session:
            seed_chart_of_accounts(session, test_actor_id)
            today = deterministic_clock.today()
            build_service_stack(session, policy, deterministic_clock).periods.create_period(
                tenant_id, PeriodType.DAILY, today, today, test_actor_id
            )
            session.commit()
        return file_session_factory

    @pytest.fixture
    def post(self, ledger_db, policy, deterministic_clock, tenant_id, test_actor_id, monkeypatch):
        def _post(session, amount, *, stale_lookup=False):
            ledger = build_service_stack(session, policy, deterministic_clock).ledger
            if stale_lookup:
                lookup = ledger._get_by_idempotency_key
                calls = []

                def first_lookup_misses(key):
                    calls.append(key)
                    return None if len(calls) == 1 else lookup(key)

                monkeypatch.setattr(ledger, "_get_by_idempotency_key", first_lookup_misses)
            return ledger.post_transaction(
                [EntrySpec.debit("ESC-001", amount), EntrySpec.credit("ESC-002", amount)],
                "payment_success:pay_race",
                "payment_success",
                tenant_id=tenant_id,
                actor_id=test_actor_id,
            )

        return _post

    def test_loser_with_same_payload_replays(self, ledger_db, post, captured_logs):
        with ledger_db() as session:
            winner = post(session, "40.00")
            session.commit()

        with ledger_db() as session:
            loser = post(session, "40.00", stale_lookup=True)
            session.commit()

            assert loser.id == winner.id
            assert loser.idempotent_replay is True
            assert _transaction_count(session) == 1

        assert any(r["message"] == "concurrent_insert_conflict" for r in captured_logs())

    def test_loser_with_different_payload_conflicts(self, ledger_db, post):
        with ledger_db() as session:
            winner = post(session, "40.00")
            session.commit()

        with ledger_db() as session:
            with pytest.raises(IdempotencyConflictError) as exc_info:
                post(session, "41.00", stale_lookup=True)

            assert exc_info.value.existing_transaction_id == str(winner.id)
            session.rollback()
            assert _transaction_count(session) == 1
