"""
Operator facade -- one unit of work per operation.

``LedgerOperations`` is the entry point for back-office callers (CLI,
jobs, an HTTP layer living elsewhere).  Each public method opens a
``session_scope()``, wires the kernel services from the active policy,
runs one operation and commits.  Any error rolls the whole unit back.

The one exception to all-or-nothing: an override that was supplied and
denied has already been written to the append-only override log when
``OverrideRequiredError`` is raised.  Nothing else has been written at that
point, so the facade commits the denied log row before re-raising and the
failed attempt stays on record.
"""

from __future__ import annotations

import random
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import date, datetime
from decimal import Decimal
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from ledger_config import get_active_policy
from ledger_config.bridges import ServiceStack, build_service_stack
from ledger_config.schema import LedgerPolicy
from ledger_kernel.db.engine import session_scope
from ledger_kernel.domain.clock import Clock
from ledger_kernel.domain.dtos import (
    AccountBalance,
    EntrySpec,
    EscrowReconciliation,
    ExternalRecord,
    LockInfo,
    OverrideDecision,
    PeriodInfo,
    PeriodOverride,
    ReconciliationBatchInfo,
    ReconciliationItemInfo,
    SettlementInfo,
    TransactionInfo,
    TrialBalance,
)
from ledger_kernel.exceptions import OverrideRequiredError
from ledger_kernel.logging_config import get_logger
from ledger_services.chart_of_accounts import seed_chart_of_accounts
from ledger_services.event_handlers import LedgerEventHandlers

logger = get_logger("services.operations")

T = TypeVar("T")


class LedgerOperations:
    """Operator-facing operations, each committed on its own."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        policy: LedgerPolicy | None = None,
        clock: Clock | None = None,
        rng: Callable[[], float] = random.random,
    ):
        self._session_factory = session_factory
        self._policy = policy or get_active_policy()
        self._clock = clock
        self._rng = rng

    @property
    def policy(self) -> LedgerPolicy:
        return self._policy

    # -------------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------------

    def seed_chart_of_accounts(self, actor_id: UUID) -> int:
        with session_scope(self._session_factory) as session:
            return seed_chart_of_accounts(session, actor_id, currency=self._policy.ledger.default_currency)

    # -------------------------------------------------------------------------
    # Ledger
    # -------------------------------------------------------------------------

    def post_transaction(
        self,
        entries: Sequence[EntrySpec],
        idempotency_key: str | None,
        event_type: str,
        **kwargs: Any,
    ) -> TransactionInfo:
        return self._run(
            "post_transaction",
            lambda s: s.ledger.post_transaction(entries, idempotency_key, event_type, **kwargs),
        )

    def reverse_transaction(
        self,
        transaction_id: UUID,
        reason: str,
        actor_id: UUID,
        *,
        effective_at: datetime | None = None,
        period_override: PeriodOverride | None = None,
    ) -> TransactionInfo:
        return self._run(
            "reverse_transaction",
            lambda s: s.ledger.reverse_transaction(
                transaction_id,
                reason,
                actor_id,
                effective_at=effective_at,
                period_override=period_override,
            ),
        )

    def handle_event(self, event_type: str, **params: Any) -> TransactionInfo:
        """Post a business event (payment_success, refund, chargeback, ...)."""
        currency = self._policy.ledger.default_currency
        return self._run(
            f"event:{event_type}",
            lambda s: LedgerEventHandlers(s.ledger, currency=currency).handle(event_type, **params),
        )

    def get_transaction(self, transaction_id: UUID) -> TransactionInfo:
        return self._run("get_transaction", lambda s: s.ledger.get_transaction(transaction_id))

    def account_balance(
        self,
        account_code: str,
        tenant_id: str | None = None,
        as_of: datetime | None = None,
    ) -> AccountBalance:
        return self._run(
            "account_balance",
            lambda s: s.selector.account_balance_by_code(account_code, tenant_id=tenant_id, as_of=as_of),
        )

    def trial_balance(self, tenant_id: str | None = None, as_of: datetime | None = None) -> TrialBalance:
        return self._run("trial_balance", lambda s: s.selector.trial_balance(tenant_id, as_of))

    # -------------------------------------------------------------------------
    # Periods and locks
    # -------------------------------------------------------------------------

    def create_period(
        self,
        tenant_id: str,
        period_type: str,
        start_date: date,
        end_date: date,
        actor_id: UUID,
    ) -> PeriodInfo:
        return self._run(
            "create_period",
            lambda s: s.periods.create_period(tenant_id, period_type, start_date, end_date, actor_id),
        )

    def close_period(
        self,
        period_id: UUID,
        target_status: str,
        actor_id: UUID,
        notes: str | None = None,
    ) -> PeriodInfo:
        return self._run(
            "close_period",
            lambda s: s.periods.close_period(period_id, target_status, actor_id, notes),
        )

    def apply_lock(
        self,
        lock_type: str,
        tenant_id: str,
        start_date: date,
        end_date: date,
        reason: str,
        actor_id: UUID,
    ) -> LockInfo:
        return self._run(
            "apply_lock",
            lambda s: s.locks.apply_lock(lock_type, tenant_id, start_date, end_date, reason, actor_id),
        )

    def release_lock(self, lock_id: UUID, actor_id: UUID, notes: str) -> LockInfo:
        return self._run("release_lock", lambda s: s.locks.release_lock(lock_id, actor_id, notes))

    def list_overrides(self, tenant_id: str, **filters: Any) -> list[OverrideDecision]:
        return self._run("list_overrides", lambda s: s.overrides.list_overrides(tenant_id, **filters))

    # -------------------------------------------------------------------------
    # Settlements
    # -------------------------------------------------------------------------

    def create_settlement(
        self,
        tenant_id: str,
        merchant_id: str,
        gross_amount: Decimal | int | str,
        fees_amount: Decimal | int | str,
        actor_id: UUID,
        **kwargs: Any,
    ) -> SettlementInfo:
        return self._run(
            "create_settlement",
            lambda s: s.settlements.create_settlement(
                tenant_id, merchant_id, gross_amount, fees_amount, actor_id, **kwargs
            ),
        )

    def advance_settlement(self, action: str, settlement_id: UUID, actor_id: UUID, **kwargs: Any) -> SettlementInfo:
        """
        Run one settlement lifecycle step by name.

        ``action`` is one of reserve_funds, send_to_bank, confirm_by_bank,
        mark_settled, mark_failed, retry, resume_retry.
        """
        if action not in _SETTLEMENT_ACTIONS:
            raise ValueError(f"Unknown settlement action: {action}")
        return self._run(
            f"settlement:{action}",
            lambda s: getattr(s.settlements, action)(settlement_id, actor_id=actor_id, **kwargs),
        )

    def get_settlement(self, settlement_id: UUID) -> SettlementInfo:
        return self._run("get_settlement", lambda s: s.settlements.get_settlement(settlement_id))

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    def reconcile_statement(
        self,
        reconciliation_type: str,
        tenant_id: str,
        period_start: date,
        period_end: date,
        source: str,
        external_records: Iterable[ExternalRecord | Mapping[str, Any]],
        actor_id: UUID,
    ) -> ReconciliationBatchInfo:
        """Create a batch and reconcile a statement against it in one unit of work."""

        def work(s: ServiceStack) -> ReconciliationBatchInfo:
            batch = s.reconciliation.create_batch(
                reconciliation_type, tenant_id, period_start, period_end, source, actor_id
            )
            return s.reconciliation.reconcile(batch.id, list(external_records), actor_id)

        return self._run("reconcile_statement", work)

    def resolve_item(self, item_id: UUID, status: str, notes: str, actor_id: UUID) -> ReconciliationItemInfo:
        return self._run(
            "resolve_item",
            lambda s: s.reconciliation.resolve_item(item_id, status, notes, actor_id),
        )

    def reconcile_escrow_balance(
        self,
        tenant_id: str,
        statement_balance: Decimal | int | str,
        as_of: date,
    ) -> EscrowReconciliation:
        return self._run(
            "reconcile_escrow_balance",
            lambda s: s.reconciliation.reconcile_escrow_balance(tenant_id, statement_balance, as_of),
        )

    # -------------------------------------------------------------------------
    # Audit
    # -------------------------------------------------------------------------

    def validate_audit_chain(self) -> bool:
        return self._run("validate_audit_chain", lambda s: s.auditor.validate_chain())

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run(self, operation: str, work: Callable[[ServiceStack], T]) -> T:
        with session_scope(self._session_factory) as session:
            stack = build_service_stack(session, self._policy, self._clock, self._rng)
            try:
                return work(stack)
            except OverrideRequiredError as exc:
                if exc.override_log_id is not None:
                    session.commit()
                    logger.warning(
                        "override_denial_recorded",
                        extra={"operation": operation, "override_log_id": exc.override_log_id},
                    )
                raise


_SETTLEMENT_ACTIONS = frozenset(
    {
        "reserve_funds",
        "send_to_bank",
        "confirm_by_bank",
        "mark_settled",
        "mark_failed",
        "retry",
        "resume_retry",
    }
)
