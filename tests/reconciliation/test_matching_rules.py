"""
Pure matching rules: external statement lines against internal records.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from ledger_kernel.domain.dtos import ExternalRecord
from ledger_kernel.domain.matching import InternalRecord, classify, summarize
from ledger_kernel.exceptions import ValidationError
from ledger_kernel.models.reconciliation import MatchStatus


def ext(reference, amount):
    return ExternalRecord(external_reference=reference, amount=Decimal(amount))


def internal(key, amount):
    return InternalRecord(transaction_id=uuid4(), match_key=key, amount=Decimal(amount))


class TestClassify:

    def test_exact_match(self):
        record = internal("pay_1", "100.00")

        [result] = classify([ext("pay_1", "100.00")], [record])

        assert result.match_status == MatchStatus.MATCHED
        assert result.transaction_id == record.transaction_id
        assert result.difference == Decimal("0")
        assert not result.is_discrepancy

    def test_within_tolerance_matches(self):
        [result] = classify([ext("pay_1", "100.01")], [internal("pay_1", "100.00")])

        assert result.match_status == MatchStatus.MATCHED
        assert result.difference == Decimal("0.01")

    def test_amount_mismatch(self):
        [result] = classify([ext("pay_1", "98.50")], [internal("pay_1", "100.00")])

        assert result.match_status == MatchStatus.AMOUNT_MISMATCH
        assert result.difference == Decimal("-1.50")

    def test_custom_tolerance(self):
        [result] = classify([ext("pay_1", "98.50")], [internal("pay_1", "100.00")], tolerance=Decimal("2"))

        assert result.match_status == MatchStatus.MATCHED

    def test_missing_internal(self):
        [result] = classify([ext("pay_x", "10.00")], [])

        assert result.match_status == MatchStatus.MISSING_INTERNAL
        assert result.transaction_id is None
        assert result.expected_amount is None
        assert result.difference == Decimal("10.00")

    def test_missing_external(self):
        record = internal("pay_1", "40.00")

        [result] = classify([], [record])

        assert result.match_status == MatchStatus.MISSING_EXTERNAL
        assert result.actual_amount is None
        assert result.difference == Decimal("-40.00")

    def test_repeated_statement_line_is_duplicate(self):
        results = classify(
            [ext("pay_1", "100.00"), ext("pay_1", "100.00")],
            [internal("pay_1", "100.00")],
        )

        assert [r.match_status for r in results] == [MatchStatus.MATCHED, MatchStatus.DUPLICATE]
        assert results[1].transaction_id == results[0].transaction_id

    def test_shared_internal_key_is_duplicate(self):
        first, second = internal("pay_1", "100.00"), internal("pay_1", "100.00")

        results = classify([ext("pay_1", "100.00")], [first, second])

        assert [r.match_status for r in results] == [MatchStatus.DUPLICATE, MatchStatus.DUPLICATE]
        assert {r.transaction_id for r in results} == {first.transaction_id, second.transaction_id}

    def test_unreferenced_shared_key_is_duplicate(self):
        results = classify([], [internal("pay_1", "5.00"), internal("pay_1", "5.00")])

        assert [r.match_status for r in results] == [MatchStatus.DUPLICATE, MatchStatus.DUPLICATE]

    def test_every_record_classified_once(self):
        records = [internal("a", "1.00"), internal("b", "2.00"), internal("c", "3.00")]
        statement = [ext("a", "1.00"), ext("b", "2.50"), ext("z", "9.00")]

        results = classify(statement, records)

        assert [(r.external_reference, r.match_status) for r in results] == [
            ("a", MatchStatus.MATCHED),
            ("b", MatchStatus.AMOUNT_MISMATCH),
            ("z", MatchStatus.MISSING_INTERNAL),
            ("c", MatchStatus.MISSING_EXTERNAL),
        ]


class TestSummarize:

    def test_counts_every_status(self):
        results = classify(
            [ext("a", "1.00"), ext("a", "1.00"), ext("z", "2.00")],
            [internal("a", "1.00"), internal("b", "3.00")],
        )

        counts = summarize(results)

        assert set(counts) == set(MatchStatus)
        assert counts[MatchStatus.MATCHED] == 1
        assert counts[MatchStatus.DUPLICATE] == 1
        assert counts[MatchStatus.MISSING_INTERNAL] == 1
        assert counts[MatchStatus.MISSING_EXTERNAL] == 1
        assert counts[MatchStatus.AMOUNT_MISMATCH] == 0


class TestExternalRecord:

    def test_reference_required(self):
        with pytest.raises(ValidationError):
            ExternalRecord(external_reference=" ", amount=Decimal("1.00"))

    def test_amount_parsed(self):
        assert ExternalRecord(external_reference="x", amount="12.30").amount == Decimal("12.30")

    def test_float_amount_rejected(self):
        with pytest.raises(ValidationError):
            ExternalRecord(external_reference="x", amount=12.3)
