"""Services for the ledger kernel (write side)."""

from ledger_kernel.services.auditor_service import AuditorService, AuditTrace, AuditTraceEntry
from ledger_kernel.services.ledger_service import LedgerService
from ledger_kernel.services.lock_service import LedgerLockService
from ledger_kernel.services.override_service import FINANCE_ADMIN, AdminOverrideService
from ledger_kernel.services.period_service import PeriodService
from ledger_kernel.services.reconciliation_service import ReconciliationService
from ledger_kernel.services.sequence_service import SequenceService
from ledger_kernel.services.settlement_service import SYSTEM_ACTOR_ID, SettlementService

__all__ = [
    "AdminOverrideService",
    "AuditTrace",
    "AuditTraceEntry",
    "AuditorService",
    "FINANCE_ADMIN",
    "LedgerLockService",
    "LedgerService",
    "PeriodService",
    "ReconciliationService",
    "SYSTEM_ACTOR_ID",
    "SequenceService",
    "SettlementService",
]
