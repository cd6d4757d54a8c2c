"""
ReconciliationService -- compare external statements with the ledger.

Responsibility:
    Creates reconciliation batches, loads the posted transactions a batch
    covers, classifies them against external statement records with
    ``ledger_kernel.domain.matching`` and persists one item per result.
    Discrepancies are resolved by operators; the ledger itself is never
    touched.

Architecture position:
    Kernel > Services -- imperative shell around the pure matcher.

Invariants enforced:
    - A batch is reconciled once: only IN_PROGRESS batches accept records.
    - Every external record and every internal candidate yields an item.
    - Resolving an item requires notes and never modifies ledger rows.
    - A batch becomes RESOLVED once every discrepancy is resolved or
      written off.
    - Flush-only: never commits or rolls back the session.

Failure modes:
    - ReconciliationBatchNotFoundError, ReconciliationItemNotFoundError.
    - ValidationError: bad range, empty source, batch not in progress,
      missing notes, invalid resolution status.

Audit relevance:
    Batch creation, completion and each item resolution are audit events.
"""

from collections.abc import Iterable, Mapping
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_kernel.domain.clock import Clock
from ledger_kernel.domain.dtos import (
    EscrowReconciliation,
    ExternalRecord,
    ReconciliationBatchInfo,
    ReconciliationItemInfo,
)
from ledger_kernel.domain.matching import InternalRecord, MatchResult, classify, summarize
from ledger_kernel.exceptions import (
    ReconciliationBatchNotFoundError,
    ReconciliationItemNotFoundError,
    ValidationError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.audit_event import AuditAction
from ledger_kernel.models.ledger import LedgerTransaction, TransactionStatus
from ledger_kernel.models.reconciliation import (
    BatchStatus,
    MatchStatus,
    ReconciliationBatch,
    ReconciliationItem,
    ReconciliationType,
    ResolutionStatus,
)
from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_kernel.services.auditor_service import AuditorService
from ledger_kernel.services.base import BaseService
from ledger_kernel.utils.hashing import json_safe

logger = get_logger("services.reconciliation")

ESCROW_BANK_ACCOUNT = "ESC-001"

# Ledger event types whose transactions each statement source reports
RECONCILABLE_EVENT_TYPES: dict[ReconciliationType, frozenset[str]] = {
    ReconciliationType.GATEWAY_SETTLEMENT: frozenset({"payment_success", "refund", "chargeback"}),
    ReconciliationType.BANK_ESCROW_STATEMENT: frozenset(
        {"payment_success", "refund", "chargeback", "settlement_confirmation"}
    ),
    ReconciliationType.MERCHANT_PAYOUT: frozenset({"settlement_confirmation"}),
}

_OPERATOR_RESOLUTIONS = frozenset(
    {ResolutionStatus.INVESTIGATING, ResolutionStatus.RESOLVED, ResolutionStatus.WRITTEN_OFF}
)
_CLOSED_RESOLUTIONS = frozenset({ResolutionStatus.RESOLVED, ResolutionStatus.WRITTEN_OFF})


def _day_bounds(start: date, end: date) -> tuple[datetime, datetime]:
    """[start 00:00 UTC, end + 1 day 00:00 UTC)."""
    return (
        datetime.combine(start, time.min, tzinfo=timezone.utc),
        datetime.combine(end + timedelta(days=1), time.min, tzinfo=timezone.utc),
    )


class ReconciliationService(BaseService[ReconciliationBatch]):
    """
    Reconciliation batches and discrepancy resolution.

    Contract:
        Returns ``ReconciliationBatchInfo`` / ``ReconciliationItemInfo``
        DTOs.  ``tolerance`` is the largest absolute amount difference still
        counted as MATCHED.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
        tolerance: Decimal = Decimal("0.01"),
    ):
        super().__init__(session, clock)
        self._auditor = auditor or AuditorService(session, self.clock)
        self._selector = LedgerSelector(session)
        self._tolerance = tolerance

    # =========================================================================
    # Batches
    # =========================================================================

    def create_batch(
        self,
        reconciliation_type: ReconciliationType | str,
        tenant_id: str,
        period_start: date,
        period_end: date,
        source: str,
        actor_id: UUID,
    ) -> ReconciliationBatchInfo:
        try:
            reconciliation_type = ReconciliationType(reconciliation_type)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown reconciliation type: {reconciliation_type!r}",
                field="reconciliation_type",
            ) from exc
        if period_start > period_end:
            raise ValidationError(
                f"period_start ({period_start}) cannot be after period_end ({period_end})",
                field="period_start",
            )
        if not source or not source.strip():
            raise ValidationError("A statement source is required", field="source")

        batch_ref = f"RECON-{self.clock.today():%Y%m%d}-{uuid4().hex[:4].upper()}"
        batch = ReconciliationBatch(
            tenant_id=tenant_id,
            batch_ref=batch_ref,
            reconciliation_type=reconciliation_type.value,
            period_start=period_start,
            period_end=period_end,
            source=source.strip(),
            status=BatchStatus.IN_PROGRESS.value,
            created_by_id=actor_id,
        )
        self.session.add(batch)
        self.session.flush()

        self._auditor.record_reconciliation(
            batch.id,
            AuditAction.RECONCILIATION_BATCH_CREATED,
            {
                "batch_ref": batch_ref,
                "reconciliation_type": reconciliation_type.value,
                "period_start": period_start,
                "period_end": period_end,
                "source": batch.source,
            },
            actor_id,
        )
        logger.info(
            "reconciliation_batch_created",
            extra={
                "batch_id": str(batch.id),
                "batch_ref": batch_ref,
                "tenant_id": tenant_id,
                "reconciliation_type": reconciliation_type.value,
            },
        )
        return ReconciliationBatchInfo.from_model(batch)

    def reconcile(
        self,
        batch_id: UUID,
        external_records: Iterable[ExternalRecord | Mapping],
        actor_id: UUID,
    ) -> ReconciliationBatchInfo:
        """
        Classify a statement against the ledger and persist the items.

        ``external_records`` are ExternalRecord instances or mappings with
        ``external_reference`` and ``amount`` keys (plus optional
        ``currency`` and ``data``).

        Raises:
            ReconciliationBatchNotFoundError: Unknown batch.
            ValidationError: Batch is not IN_PROGRESS or a record is malformed.
        """
        batch = self._get_batch_for_update(batch_id)
        if BatchStatus(batch.status) != BatchStatus.IN_PROGRESS:
            raise ValidationError(
                f"Batch {batch.batch_ref} is {batch.status}; only in_progress batches can be reconciled",
                field="batch_id",
            )

        records = [r if isinstance(r, ExternalRecord) else ExternalRecord(**r) for r in external_records]
        internal = self._load_internal_records(batch)
        results = classify(records, internal, self._tolerance)
        counts = summarize(results)

        batch.items = [
            self._build_item(batch, seq, result, actor_id)
            for seq, result in enumerate(results, start=1)
        ]

        expected = sum((r.amount for r in internal), Decimal("0"))
        actual = sum((r.amount for r in records), Decimal("0"))
        discrepancies = sum(1 for r in results if r.is_discrepancy)

        batch.total_items = len(results)
        batch.matched_items = counts[MatchStatus.MATCHED]
        batch.mismatched_items = counts[MatchStatus.AMOUNT_MISMATCH]
        batch.missing_items = counts[MatchStatus.MISSING_INTERNAL] + counts[MatchStatus.MISSING_EXTERNAL]
        batch.duplicate_items = counts[MatchStatus.DUPLICATE]
        batch.expected_amount = expected
        batch.actual_amount = actual
        batch.difference_amount = actual - expected
        batch.status = (BatchStatus.DISCREPANCY_FOUND if discrepancies else BatchStatus.COMPLETED).value
        batch.completed_at = self.clock.now()
        batch.updated_by_id = actor_id
        self.session.flush()

        summary = {status.value: count for status, count in counts.items()}
        self._auditor.record_reconciliation(
            batch.id,
            AuditAction.RECONCILIATION_COMPLETED,
            {
                "status": batch.status,
                "counts": summary,
                "expected_amount": expected,
                "actual_amount": actual,
            },
            actor_id,
        )
        log = logger.warning if discrepancies else logger.info
        log(
            "reconciliation_completed",
            extra={
                "batch_id": str(batch.id),
                "batch_ref": batch.batch_ref,
                "status": batch.status,
                "discrepancies": discrepancies,
                **summary,
            },
        )
        return ReconciliationBatchInfo.from_model(batch)

    # =========================================================================
    # Items
    # =========================================================================

    def resolve_item(
        self,
        item_id: UUID,
        resolution_status: ResolutionStatus | str,
        notes: str,
        actor_id: UUID,
    ) -> ReconciliationItemInfo:
        """
        Record an operator's resolution of one discrepancy.

        Raises:
            ReconciliationItemNotFoundError: Unknown item.
            ValidationError: Missing notes, a status other than investigating
                / resolved / written_off, or an item already closed.
        """
        try:
            resolution_status = ResolutionStatus(resolution_status)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown resolution status: {resolution_status!r}", field="resolution_status"
            ) from exc
        if resolution_status not in _OPERATOR_RESOLUTIONS:
            raise ValidationError(
                f"Items cannot be set back to {resolution_status.value}", field="resolution_status"
            )
        if not notes or not notes.strip():
            raise ValidationError("Resolution notes are required", field="notes")

        item = self.session.execute(
            select(ReconciliationItem).where(ReconciliationItem.id == item_id).with_for_update()
        ).scalar_one_or_none()
        if item is None:
            raise ReconciliationItemNotFoundError(str(item_id))
        if ResolutionStatus(item.resolution_status) in _CLOSED_RESOLUTIONS:
            raise ValidationError(
                f"Item {item_id} is already {item.resolution_status}", field="resolution_status"
            )

        item.resolution_status = resolution_status.value
        item.resolution_notes = notes.strip()
        item.updated_by_id = actor_id
        if resolution_status in _CLOSED_RESOLUTIONS:
            item.resolved_by_id = actor_id
            item.resolved_at = self.clock.now()
        self.session.flush()

        self._auditor.record_item_resolved(item.id, resolution_status.value, item.resolution_notes, actor_id)
        logger.info(
            "reconciliation_item_resolved",
            extra={
                "item_id": str(item.id),
                "batch_id": str(item.batch_id),
                "resolution_status": resolution_status.value,
            },
        )

        self._maybe_resolve_batch(item.batch, actor_id)
        return ReconciliationItemInfo.from_model(item)

    # =========================================================================
    # Escrow balance
    # =========================================================================

    def reconcile_escrow_balance(
        self,
        tenant_id: str,
        statement_balance: Decimal | int | str,
        as_of: date,
    ) -> EscrowReconciliation:
        """Compare the derived escrow bank (ESC-001) balance with the bank statement."""
        try:
            statement = Decimal(str(statement_balance))
        except InvalidOperation as exc:
            raise ValidationError(
                f"statement_balance is not a number: {statement_balance!r}", field="statement_balance"
            ) from exc

        _, end_exclusive = _day_bounds(as_of, as_of)
        ledger = self._selector.account_balance_by_code(
            ESCROW_BANK_ACCOUNT,
            tenant_id=tenant_id,
            as_of=end_exclusive - timedelta(microseconds=1),
        )
        result = EscrowReconciliation(
            tenant_id=tenant_id,
            as_of=as_of,
            ledger_balance=ledger.balance,
            statement_balance=statement,
            difference=statement - ledger.balance,
            tolerance=self._tolerance,
        )
        log = logger.info if result.is_reconciled else logger.warning
        log(
            "escrow_balance_reconciled",
            extra={
                "tenant_id": tenant_id,
                "as_of": str(as_of),
                "ledger_balance": str(result.ledger_balance),
                "statement_balance": str(statement),
                "difference": str(result.difference),
                "is_reconciled": result.is_reconciled,
            },
        )
        return result

    # =========================================================================
    # Queries
    # =========================================================================

    def get_batch(self, batch_id: UUID) -> ReconciliationBatchInfo:
        batch = self.session.get(ReconciliationBatch, batch_id)
        if batch is None:
            raise ReconciliationBatchNotFoundError(str(batch_id))
        return ReconciliationBatchInfo.from_model(batch)

    def list_batches(
        self,
        tenant_id: str,
        status: BatchStatus | str | None = None,
    ) -> list[ReconciliationBatchInfo]:
        query = select(ReconciliationBatch).where(ReconciliationBatch.tenant_id == tenant_id)
        if status is not None:
            query = query.where(ReconciliationBatch.status == BatchStatus(status).value)
        batches = self.session.execute(query.order_by(ReconciliationBatch.created_at)).scalars().all()
        return [ReconciliationBatchInfo.from_model(b) for b in batches]

    def get_open_discrepancies(self, batch_id: UUID) -> list[ReconciliationItemInfo]:
        """Discrepancy items not yet resolved or written off."""
        items = self.session.execute(
            select(ReconciliationItem)
            .where(
                ReconciliationItem.batch_id == batch_id,
                ReconciliationItem.match_status != MatchStatus.MATCHED.value,
                ReconciliationItem.resolution_status.not_in(
                    [s.value for s in _CLOSED_RESOLUTIONS]
                ),
            )
            .order_by(ReconciliationItem.item_seq)
        ).scalars().all()
        return [ReconciliationItemInfo.from_model(i) for i in items]

    # =========================================================================
    # Internals
    # =========================================================================

    def _get_batch_for_update(self, batch_id: UUID) -> ReconciliationBatch:
        batch = self.session.execute(
            select(ReconciliationBatch).where(ReconciliationBatch.id == batch_id).with_for_update()
        ).scalar_one_or_none()
        if batch is None:
            raise ReconciliationBatchNotFoundError(str(batch_id))
        return batch

    def _load_internal_records(self, batch: ReconciliationBatch) -> list[InternalRecord]:
        start, end = _day_bounds(batch.period_start, batch.period_end)
        event_types = RECONCILABLE_EVENT_TYPES[ReconciliationType(batch.reconciliation_type)]
        transactions = self.session.execute(
            select(LedgerTransaction)
            .where(
                LedgerTransaction.tenant_id == batch.tenant_id,
                LedgerTransaction.status == TransactionStatus.POSTED.value,
                LedgerTransaction.event_type.in_(sorted(event_types)),
                LedgerTransaction.effective_at >= start,
                LedgerTransaction.effective_at < end,
            )
            .order_by(LedgerTransaction.effective_at, LedgerTransaction.reference)
        ).scalars().all()
        return [self._to_internal(t) for t in transactions]

    @staticmethod
    def _to_internal(transaction: LedgerTransaction) -> InternalRecord:
        details = transaction.details or {}
        # The business amount, when recorded, is what statements report;
        # the debit total double-counts multi-leg postings.
        amount = Decimal(str(details["amount"])) if details.get("amount") is not None else transaction.amount
        return InternalRecord(
            transaction_id=transaction.id,
            match_key=details.get("external_reference") or transaction.reference,
            amount=amount,
        )

    def _build_item(
        self,
        batch: ReconciliationBatch,
        seq: int,
        result: MatchResult,
        actor_id: UUID,
    ) -> ReconciliationItem:
        now = self.clock.now()
        matched = result.match_status == MatchStatus.MATCHED
        return ReconciliationItem(
            batch=batch,
            item_seq=seq,
            external_reference=result.external_reference,
            transaction_id=result.transaction_id,
            expected_amount=result.expected_amount,
            actual_amount=result.actual_amount,
            difference=result.difference,
            match_status=result.match_status.value,
            resolution_status=(ResolutionStatus.RESOLVED if matched else ResolutionStatus.PENDING).value,
            resolved_at=now if matched else None,
            resolved_by_id=actor_id if matched else None,
            external_data=json_safe(result.external_data) if result.external_data else None,
            created_by_id=actor_id,
        )

    def _maybe_resolve_batch(self, batch: ReconciliationBatch, actor_id: UUID) -> None:
        if BatchStatus(batch.status) != BatchStatus.DISCREPANCY_FOUND:
            return
        open_items = [
            i for i in batch.items
            if i.match_status != MatchStatus.MATCHED.value
            and ResolutionStatus(i.resolution_status) not in _CLOSED_RESOLUTIONS
        ]
        if open_items:
            return
        batch.status = BatchStatus.RESOLVED.value
        batch.updated_by_id = actor_id
        self.session.flush()
        logger.info(
            "reconciliation_batch_resolved",
            extra={"batch_id": str(batch.id), "batch_ref": batch.batch_ref},
        )
