"""
Config -> Kernel Bridges.

Functions that convert a ``LedgerPolicy`` into kernel-compatible inputs.
These live in ledger_config (the producer) because the kernel must NEVER
import ledger_config.

Usage:
    from ledger_config import get_active_policy
    from ledger_config.bridges import build_service_stack

    policy = get_active_policy()
    services = build_service_stack(session, policy)
    services.ledger.post_transaction(...)
"""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.orm import Session

from ledger_config.schema import LedgerPolicy
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.settlement_state import RetryBackoff
from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_kernel.services.auditor_service import AuditorService
from ledger_kernel.services.ledger_service import LedgerService
from ledger_kernel.services.lock_service import LedgerLockService
from ledger_kernel.services.override_service import AdminOverrideService
from ledger_kernel.services.period_service import PeriodService
from ledger_kernel.services.reconciliation_service import ReconciliationService
from ledger_kernel.services.settlement_service import SettlementService


def build_retry_backoff(policy: LedgerPolicy) -> RetryBackoff:
    """Settlement retry backoff from the ``settlement`` section."""
    s = policy.settlement
    return RetryBackoff(
        initial_delay_seconds=s.initial_delay_seconds,
        multiplier=s.multiplier,
        max_delay_seconds=s.max_delay_seconds,
        jitter_ratio=s.jitter_ratio,
    )


@dataclass(frozen=True)
class ServiceStack:
    """Kernel services sharing one session, clock and audit chain writer."""

    session: Session
    clock: Clock
    auditor: AuditorService
    locks: LedgerLockService
    periods: PeriodService
    overrides: AdminOverrideService
    ledger: LedgerService
    settlements: SettlementService
    reconciliation: ReconciliationService
    selector: LedgerSelector


def build_service_stack(
    session: Session,
    policy: LedgerPolicy,
    clock: Clock | None = None,
    rng: Callable[[], float] = random.random,
) -> ServiceStack:
    """
    Wire every kernel service for one unit of work.

    All services share ``session`` so a posting, its gate checks, override
    log and audit events commit or roll back together.
    """
    clock = clock or SystemClock()
    auditor = AuditorService(session, clock)
    locks = LedgerLockService(session, clock, auditor)
    periods = PeriodService(
        session,
        clock,
        auditor,
        locks,
        max_gap_days=policy.periods.max_gap_days,
    )
    overrides = AdminOverrideService(
        session,
        clock,
        auditor,
        authority_role=policy.overrides.authority_role,
        min_justification_length=policy.overrides.min_justification_length,
    )
    ledger = LedgerService(
        session,
        clock,
        auditor,
        lock_service=locks,
        period_service=periods,
        override_service=overrides,
        tolerance=policy.ledger.balance_tolerance,
        posting_period_type=policy.ledger.posting_period_type,
    )
    settlements = SettlementService(
        session,
        clock,
        auditor,
        ledger_service=ledger,
        backoff=build_retry_backoff(policy),
        max_retries=policy.settlement.max_retries,
        rng=rng,
    )
    reconciliation = ReconciliationService(
        session,
        clock,
        auditor,
        tolerance=policy.reconciliation.amount_tolerance,
    )
    return ServiceStack(
        session=session,
        clock=clock,
        auditor=auditor,
        locks=locks,
        periods=periods,
        overrides=overrides,
        ledger=ledger,
        settlements=settlements,
        reconciliation=reconciliation,
        selector=LedgerSelector(session),
    )
