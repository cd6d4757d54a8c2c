"""
Property-based checks of the ledger's core guarantees.

Hypothesis generates postings, statements and retry counts; every example
must keep the books balanced, reversals exact, matching total and backoff
bounded.
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from ledger_kernel.domain.dtos import EntrySpec, ExternalRecord
from ledger_kernel.domain.matching import InternalRecord, classify, summarize
from ledger_kernel.domain.settlement_state import VALID_TRANSITIONS, RetryBackoff, is_terminal
from ledger_kernel.exceptions import UnbalancedTransactionError
from ledger_kernel.models.reconciliation import MatchStatus
from ledger_kernel.models.settlement import SettlementState

DEBIT_SIDE = ["ESC-001", "MER-001", "REV-REC-001", "ADJ-001"]
CREDIT_SIDE = ["ESC-002", "MER-002", "REV-001", "ADJ-002"]

db_settings = settings(
    max_examples=25,
    deadline=None,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)

amounts = st.decimals(
    min_value=Decimal("0.01"),
    max_value=Decimal("1000000"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)

legs = st.lists(
    st.tuples(st.sampled_from(DEBIT_SIDE), st.sampled_from(CREDIT_SIDE), amounts),
    min_size=1,
    max_size=5,
)


def to_entries(pairs):
    entries = []
    for debit, credit, amount in pairs:
        entries.append(EntrySpec.debit(debit, amount))
        entries.append(EntrySpec.credit(credit, amount))
    return entries


def balances(selector):
    return {row.account_code: row.balance for row in selector.trial_balance().rows}


@pytest.fixture
def post(open_period, ledger_service, tenant_id, test_actor_id):
    def _post(entries):
        return ledger_service.post_transaction(
            entries, f"prop:{uuid4()}", "test_posting", tenant_id=tenant_id, actor_id=test_actor_id
        )

    return _post


class TestPostingProperties:

    @db_settings
    @given(pairs=legs)
    def test_posted_transactions_balance(self, post, ledger_selector, pairs):
        txn = post(to_entries(pairs))

        assert txn.total_debits == txn.total_credits == sum(a for _, _, a in pairs)
        assert ledger_selector.trial_balance().is_balanced

    @db_settings
    @given(pairs=legs, skew=st.decimals(min_value=Decimal("0.02"), max_value=Decimal("100"), places=2))
    def test_unbalanced_rejected(self, post, ledger_selector, pairs, skew):
        entries = to_entries(pairs)
        entries.append(EntrySpec.debit(DEBIT_SIDE[0], skew))
        before = ledger_selector.trial_balance()

        with pytest.raises(UnbalancedTransactionError):
            post(entries)

        assert ledger_selector.trial_balance() == before

    @db_settings
    @given(pairs=legs)
    def test_reversal_restores_every_balance(self, post, ledger_service, ledger_selector, test_actor_id, pairs):
        before = balances(ledger_selector)
        txn = post(to_entries(pairs))

        ledger_service.reverse_transaction(txn.id, "Property check", test_actor_id)

        after = balances(ledger_selector)
        for code in set(before) | set(after):
            assert after.get(code, Decimal("0")) == before.get(code, Decimal("0")), code


class TestMatchingProperties:

    @given(
        statement=st.dictionaries(st.text("abcdef", min_size=1, max_size=4), amounts, max_size=8),
        ledger=st.dictionaries(st.text("abcdef", min_size=1, max_size=4), amounts, max_size=8),
    )
    def test_every_reference_classified_once(self, statement, ledger):
        external = [ExternalRecord(external_reference=k, amount=v) for k, v in statement.items()]
        internal = [InternalRecord(transaction_id=uuid4(), match_key=k, amount=v) for k, v in ledger.items()]

        results = classify(external, internal)

        assert sorted(r.external_reference for r in results) == sorted(set(statement) | set(ledger))
        assert sum(summarize(results).values()) == len(results)
        assert MatchStatus.DUPLICATE not in {r.match_status for r in results}

    @given(amount=amounts, delta=st.decimals(min_value=Decimal("-5"), max_value=Decimal("5"), places=2))
    def test_tolerance_boundary(self, amount, delta):
        [result] = classify(
            [ExternalRecord(external_reference="p", amount=amount + delta)],
            [InternalRecord(transaction_id=uuid4(), match_key="p", amount=amount)],
        )

        expected = MatchStatus.MATCHED if abs(delta) <= Decimal("0.01") else MatchStatus.AMOUNT_MISMATCH
        assert result.match_status == expected
        assert result.difference == delta


class TestRetryProperties:

    @given(
        retry_count=st.integers(min_value=0, max_value=200),
        draw=st.floats(min_value=0, max_value=1, exclude_max=True),
    )
    def test_delay_within_jitter_band(self, retry_count, draw):
        backoff = RetryBackoff()
        base = backoff.base_delay_seconds(retry_count)

        delay = backoff.delay_seconds(retry_count, rng=lambda: draw)

        assert base <= backoff.max_delay_seconds
        assert base * 0.9 - 1e-6 <= delay <= base * 1.1 + 1e-6

    @given(retry_count=st.integers(min_value=0, max_value=50))
    def test_base_delay_never_decreases(self, retry_count):
        backoff = RetryBackoff()

        assert backoff.base_delay_seconds(retry_count + 1) >= backoff.base_delay_seconds(retry_count)

    @given(
        state=st.sampled_from(list(SettlementState)),
        retry_count=st.integers(min_value=0, max_value=5),
        max_retries=st.integers(min_value=0, max_value=5),
    )
    def test_only_settled_and_exhausted_failures_are_terminal(self, state, retry_count, max_retries):
        exhausted = state == SettlementState.FAILED and retry_count >= max_retries

        assert is_terminal(state, retry_count, max_retries) == (state == SettlementState.SETTLED or exhausted)
        if state != SettlementState.SETTLED:
            assert VALID_TRANSITIONS[state]
