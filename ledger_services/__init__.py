"""
ledger_services -- Package init and public API.

Responsibility:
    Outer layer over the ledger kernel: business event handlers, the
    settlement retry scheduler and workers, the standard chart of accounts
    and the operator facade that owns transaction boundaries.

Architecture position:
    Services -- composes ledger_kernel services through ledger_config.

    Dependency direction:
        ledger_services/ -> ledger_config/  (allowed)
        ledger_services/ -> ledger_kernel/  (allowed)
        ledger_kernel/   -> ledger_services/ (FORBIDDEN)
"""

from ledger_services.chart_of_accounts import (
    CHART_OF_ACCOUNTS,
    AccountDefinition,
    gateway_fee_account,
    seed_chart_of_accounts,
)
from ledger_services.event_handlers import LedgerEventHandlers
from ledger_services.operations import LedgerOperations
from ledger_services.settlement_scheduler import (
    SettlementRetryScheduler,
    SettlementRetryWorker,
    build_retry_pipeline,
    resume_settlement,
)

__all__ = [
    "AccountDefinition",
    "CHART_OF_ACCOUNTS",
    "LedgerEventHandlers",
    "LedgerOperations",
    "SettlementRetryScheduler",
    "SettlementRetryWorker",
    "build_retry_pipeline",
    "gateway_fee_account",
    "resume_settlement",
    "seed_chart_of_accounts",
]
