"""Domain models for the ledger kernel."""

from ledger_kernel.models.account import (
    Account,
    AccountCategory,
    AccountStatus,
    AccountType,
    NormalBalance,
)
from ledger_kernel.models.accounting_period import AccountingPeriod, PeriodStatus, PeriodType
from ledger_kernel.models.admin_override import AdminOverrideLog, OverrideOutcome, OverrideType
from ledger_kernel.models.audit_event import AuditAction, AuditEvent
from ledger_kernel.models.ledger import (
    EntryDirection,
    LedgerEntry,
    LedgerTransaction,
    TransactionStatus,
)
from ledger_kernel.models.ledger_lock import LedgerLock, LockStatus, LockType
from ledger_kernel.models.reconciliation import (
    BatchStatus,
    MatchStatus,
    ReconciliationBatch,
    ReconciliationItem,
    ReconciliationType,
    ResolutionStatus,
)
from ledger_kernel.models.sequence import SequenceCounter
from ledger_kernel.models.settlement import Settlement, SettlementState

__all__ = [
    "Account",
    "AccountCategory",
    "AccountStatus",
    "AccountType",
    "AccountingPeriod",
    "AdminOverrideLog",
    "AuditAction",
    "AuditEvent",
    "BatchStatus",
    "EntryDirection",
    "LedgerEntry",
    "LedgerLock",
    "LedgerTransaction",
    "LockStatus",
    "LockType",
    "MatchStatus",
    "NormalBalance",
    "OverrideOutcome",
    "OverrideType",
    "PeriodStatus",
    "PeriodType",
    "ReconciliationBatch",
    "ReconciliationItem",
    "ReconciliationType",
    "ResolutionStatus",
    "SequenceCounter",
    "Settlement",
    "SettlementState",
    "TransactionStatus",
]
