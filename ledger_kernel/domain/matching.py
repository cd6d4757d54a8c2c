"""
Reconciliation matching -- pure classification of external statement lines
against internal ledger transactions.

Responsibility:
    Decide, for every external record and every internal candidate, which
    MatchStatus applies.  ReconciliationService loads the candidates,
    calls classify(), and persists the results; this module never touches
    the database and never corrects anything.

Architecture position:
    Kernel > Domain -- pure, zero I/O.

Rules:
    - Records are joined on match key: the external record's
      external_reference against the internal transaction's match_key
      (its metadata external_reference, else its ledger reference).
    - One internal match, |actual - expected| <= tolerance  -> MATCHED
    - One internal match, difference beyond tolerance       -> AMOUNT_MISMATCH
    - No internal match                                     -> MISSING_INTERNAL
    - Internal candidate never referenced by the statement  -> MISSING_EXTERNAL
    - Key repeated in the statement (second and later lines),
      or shared by more than one internal transaction       -> DUPLICATE
    - difference is always actual (external) minus expected (internal).
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable
from uuid import UUID

from ledger_kernel.domain.dtos import ExternalRecord
from ledger_kernel.models.reconciliation import MatchStatus


@dataclass(frozen=True)
class InternalRecord:
    """A posted ledger transaction eligible for matching."""

    transaction_id: UUID
    match_key: str
    amount: Decimal


@dataclass(frozen=True)
class MatchResult:
    match_status: MatchStatus
    external_reference: str | None
    transaction_id: UUID | None
    expected_amount: Decimal | None
    actual_amount: Decimal | None
    external_data: dict[str, Any] | None = field(default=None, compare=False)

    @property
    def difference(self) -> Decimal:
        return (self.actual_amount or Decimal("0")) - (self.expected_amount or Decimal("0"))

    @property
    def is_discrepancy(self) -> bool:
        return self.match_status != MatchStatus.MATCHED


def classify(
    external_records: Iterable[ExternalRecord],
    internal_records: Iterable[InternalRecord],
    tolerance: Decimal = Decimal("0.01"),
) -> list[MatchResult]:
    """
    Classify every external and internal record exactly once.

    Output order: one or more results per external record in statement
    order, then results for unreferenced internal records in input order.
    """
    internal_by_key: dict[str, list[InternalRecord]] = {}
    for record in internal_records:
        internal_by_key.setdefault(record.match_key, []).append(record)

    results: list[MatchResult] = []
    seen_keys: set[str] = set()

    for ext in external_records:
        key = ext.external_reference
        candidates = internal_by_key.get(key, [])

        if key in seen_keys:
            single = candidates[0].transaction_id if len(candidates) == 1 else None
            results.append(
                MatchResult(
                    match_status=MatchStatus.DUPLICATE,
                    external_reference=key,
                    transaction_id=single,
                    expected_amount=None,
                    actual_amount=ext.amount,
                    external_data=ext.data,
                )
            )
            continue
        seen_keys.add(key)

        if not candidates:
            results.append(
                MatchResult(
                    match_status=MatchStatus.MISSING_INTERNAL,
                    external_reference=key,
                    transaction_id=None,
                    expected_amount=None,
                    actual_amount=ext.amount,
                    external_data=ext.data,
                )
            )
        elif len(candidates) > 1:
            for internal in candidates:
                results.append(
                    MatchResult(
                        match_status=MatchStatus.DUPLICATE,
                        external_reference=key,
                        transaction_id=internal.transaction_id,
                        expected_amount=internal.amount,
                        actual_amount=ext.amount,
                        external_data=ext.data,
                    )
                )
        else:
            internal = candidates[0]
            within = abs(ext.amount - internal.amount) <= tolerance
            results.append(
                MatchResult(
                    match_status=MatchStatus.MATCHED if within else MatchStatus.AMOUNT_MISMATCH,
                    external_reference=key,
                    transaction_id=internal.transaction_id,
                    expected_amount=internal.amount,
                    actual_amount=ext.amount,
                    external_data=ext.data,
                )
            )

    for key, candidates in internal_by_key.items():
        if key in seen_keys:
            continue
        status = MatchStatus.DUPLICATE if len(candidates) > 1 else MatchStatus.MISSING_EXTERNAL
        for internal in candidates:
            results.append(
                MatchResult(
                    match_status=status,
                    external_reference=key,
                    transaction_id=internal.transaction_id,
                    expected_amount=internal.amount,
                    actual_amount=None,
                )
            )

    return results


def summarize(results: Iterable[MatchResult]) -> dict[MatchStatus, int]:
    """Count results per MatchStatus (every status present, zero if absent)."""
    counts = {status: 0 for status in MatchStatus}
    for result in results:
        counts[result.match_status] += 1
    return counts
