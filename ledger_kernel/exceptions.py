"""
Typed Exception Hierarchy for the Ledger Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers (operator APIs, event handlers, the settlement scheduler) must react
to ledger failures precisely.  Matching on message text is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE class attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        ledger.post_transaction(entries, key, "payment_success", ...)
    except OverrideRequiredError as e:
        # Recoverable: resubmit with a justified override
        prompt_for_override(e.period_id)
    except LockActiveError as e:
        api_response(code=e.code, lock_type=e.lock_type, reason=e.reason)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    LedgerKernelError (base)
    |
    +-- ValidationError
    |   +-- TransactionNotReversibleError
    |
    +-- PostingError
    |   +-- UnbalancedTransactionError
    |   +-- IdempotencyConflictError
    |   +-- TransactionNotFoundError
    |
    +-- AccountError
    |   +-- AccountNotFoundError
    |   +-- AccountInactiveError
    |
    +-- PeriodError
    |   +-- PeriodNotFoundError
    |   +-- PeriodOverlapError
    |   +-- PeriodGapError
    |   +-- PeriodNotOpenError
    |   |   +-- OpenPeriodExistsError
    |   |   +-- InvalidPeriodTransitionError
    |   +-- PeriodClosedError
    |   +-- OverrideRequiredError
    |
    +-- LockError
    |   +-- LockActiveError
    |   +-- LockOverlapError
    |   +-- LockNotFoundError
    |   +-- LockReleaseNotAllowedError
    |
    +-- SettlementError
    |   +-- SettlementNotFoundError
    |   +-- InvalidStateTransitionError
    |   +-- MaxRetriesExceededError
    |
    +-- ReconciliationError
    |   +-- ReconciliationBatchNotFoundError
    |   +-- ReconciliationItemNotFoundError
    |
    +-- AuditError
    |   +-- AuditChainBrokenError
    |
    +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                          | When Raised
----------------|-------------------------------|---------------------------------------
Validation      | VALIDATION_ERROR              | Malformed input
                | TRANSACTION_NOT_REVERSIBLE    | Not posted, or already reversed
----------------|-------------------------------|---------------------------------------
Posting         | UNBALANCED_TRANSACTION        | Debits != Credits beyond tolerance
                | IDEMPOTENCY_CONFLICT          | Same key, different payload
                | TRANSACTION_NOT_FOUND         | Transaction ID doesn't exist
----------------|-------------------------------|---------------------------------------
Account         | ACCOUNT_NOT_FOUND             | Account code/ID doesn't exist
                | ACCOUNT_INACTIVE              | Account is inactive or closed
----------------|-------------------------------|---------------------------------------
Period          | PERIOD_NOT_FOUND              | Period ID doesn't exist
                | PERIOD_OVERLAP                | Date range conflicts
                | PERIOD_GAP                    | Non-contiguous period
                | PERIOD_NOT_OPEN               | Period status forbids the operation
                | OPEN_PERIOD_EXISTS            | Second OPEN period of a type
                | INVALID_PERIOD_TRANSITION     | e.g. OPEN -> HARD_CLOSED
                | PERIOD_CLOSED                 | Posting into HARD_CLOSED / no period
                | OVERRIDE_REQUIRED             | Posting into SOFT_CLOSED period
----------------|-------------------------------|---------------------------------------
Lock            | LOCK_ACTIVE                   | Posting date covered by ACTIVE lock
                | LOCK_OVERLAP                  | Overlapping ACTIVE lock, same type
                | LOCK_NOT_FOUND                | Lock ID doesn't exist
                | LOCK_RELEASE_NOT_ALLOWED      | PERIOD_LOCK or already released
----------------|-------------------------------|---------------------------------------
Settlement      | SETTLEMENT_NOT_FOUND          | Settlement ID doesn't exist
                | INVALID_STATE_TRANSITION      | Edge not in the settlement graph
                | MAX_RETRIES_EXCEEDED          | Settlement terminally FAILED
----------------|-------------------------------|---------------------------------------
Reconciliation  | RECONCILIATION_BATCH_NOT_FOUND| Batch ID doesn't exist
                | RECONCILIATION_ITEM_NOT_FOUND | Item ID doesn't exist
----------------|-------------------------------|---------------------------------------
Audit           | AUDIT_CHAIN_BROKEN            | Hash chain validation failed
Immutability    | IMMUTABILITY_VIOLATION        | Update/delete of append-only row

===============================================================================
DESIGN DECISIONS
===============================================================================

1. Domain exceptions inherit from LedgerKernelError, never from ValueError,
   so ledger failures can be caught as a group without swallowing
   programming errors.

2. ``code`` is a class attribute: available without instantiation for API
   documentation and static analysis.

3. OverrideRequiredError is the only recoverable posting failure; every
   other posting error is final for the request that raised it.

===============================================================================
"""

from datetime import date
from decimal import Decimal


class LedgerKernelError(Exception):
    """
    Base exception for all ledger kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "LEDGER_KERNEL_ERROR"


# Validation


class ValidationError(LedgerKernelError):
    """Malformed input to a ledger operation."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class TransactionNotReversibleError(ValidationError):
    """Only posted, not-yet-reversed transactions can be reversed."""

    code: str = "TRANSACTION_NOT_REVERSIBLE"

    def __init__(self, transaction_id: str, status: str):
        self.transaction_id = transaction_id
        self.status = status
        super().__init__(
            f"Transaction {transaction_id} cannot be reversed (status: {status})",
            field="transaction_id",
        )


# Posting


class PostingError(LedgerKernelError):
    """Base exception for posting failures."""

    code: str = "POSTING_ERROR"


class UnbalancedTransactionError(PostingError):
    """Sum of debits does not equal sum of credits within tolerance."""

    code: str = "UNBALANCED_TRANSACTION"

    def __init__(self, debits: Decimal, credits: Decimal, tolerance: Decimal):
        self.debits = debits
        self.credits = credits
        self.difference = debits - credits
        self.tolerance = tolerance
        super().__init__(
            f"Transaction is unbalanced: debits={debits}, credits={credits}, "
            f"difference={self.difference} (tolerance {tolerance})"
        )


class IdempotencyConflictError(PostingError):
    """
    Idempotency key reused with a different payload.

    Fatal: the caller sent two different requests under one key.
    Requires investigation, never an automatic retry.
    """

    code: str = "IDEMPOTENCY_CONFLICT"

    def __init__(self, idempotency_key: str, existing_transaction_id: str):
        self.idempotency_key = idempotency_key
        self.existing_transaction_id = existing_transaction_id
        super().__init__(
            f"Idempotency key {idempotency_key!r} already used for transaction "
            f"{existing_transaction_id} with a different payload"
        )


class TransactionNotFoundError(PostingError):
    """Transaction with given ID was not found."""

    code: str = "TRANSACTION_NOT_FOUND"

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction not found: {transaction_id}")


# Accounts


class AccountError(LedgerKernelError):
    """Base exception for account errors."""

    code: str = "ACCOUNT_ERROR"


class AccountNotFoundError(AccountError):
    """Account with given code or ID was not found."""

    code: str = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_ref: str):
        self.account_ref = account_ref
        super().__init__(f"Account not found: {account_ref}")


class AccountInactiveError(AccountError):
    """Account exists but does not accept postings."""

    code: str = "ACCOUNT_INACTIVE"

    def __init__(self, account_code: str, status: str):
        self.account_code = account_code
        self.status = status
        super().__init__(f"Account {account_code} is {status}")


# Periods


class PeriodError(LedgerKernelError):
    """Base exception for accounting period errors."""

    code: str = "PERIOD_ERROR"


class PeriodNotFoundError(PeriodError):
    """Accounting period with given ID was not found."""

    code: str = "PERIOD_NOT_FOUND"

    def __init__(self, period_id: str):
        self.period_id = period_id
        super().__init__(f"Accounting period not found: {period_id}")


class PeriodOverlapError(PeriodError):
    """New period date range overlaps with an existing period of the same type."""

    code: str = "PERIOD_OVERLAP"

    def __init__(
        self,
        period_type: str,
        start_date: date,
        end_date: date,
        existing_period_id: str,
    ):
        self.period_type = period_type
        self.start_date = start_date
        self.end_date = end_date
        self.existing_period_id = existing_period_id
        super().__init__(
            f"{period_type} period {start_date}..{end_date} overlaps "
            f"existing period {existing_period_id}"
        )


class PeriodGapError(PeriodError):
    """New period would leave a gap after the previous period of its type."""

    code: str = "PERIOD_GAP"

    def __init__(self, period_type: str, last_period_end: date, new_period_start: date):
        self.period_type = period_type
        self.last_period_end = last_period_end
        self.new_period_start = new_period_start
        super().__init__(
            f"Cannot create non-contiguous {period_type} period: gap between "
            f"{last_period_end} and {new_period_start}"
        )


class PeriodNotOpenError(PeriodError):
    """Period status does not permit the requested operation."""

    code: str = "PERIOD_NOT_OPEN"

    def __init__(self, message: str, period_id: str | None = None, status: str | None = None):
        self.period_id = period_id
        self.status = status
        super().__init__(message)


class OpenPeriodExistsError(PeriodNotOpenError):
    """Only one OPEN period per (tenant, type) may exist."""

    code: str = "OPEN_PERIOD_EXISTS"

    def __init__(self, tenant_id: str, period_type: str, open_period_id: str):
        self.tenant_id = tenant_id
        self.period_type = period_type
        super().__init__(
            f"An OPEN {period_type} period already exists for tenant {tenant_id}",
            period_id=open_period_id,
            status="OPEN",
        )


class InvalidPeriodTransitionError(PeriodNotOpenError):
    """Period status change outside OPEN -> SOFT_CLOSED -> HARD_CLOSED."""

    code: str = "INVALID_PERIOD_TRANSITION"

    def __init__(self, period_id: str, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid period transition {from_status} -> {to_status}",
            period_id=period_id,
            status=from_status,
        )


class PeriodClosedError(PeriodError):
    """
    Posting date falls in a HARD_CLOSED period, or in no period at all.

    Fatal: no override can bypass it.
    """

    code: str = "PERIOD_CLOSED"

    def __init__(self, posting_date: date, period_id: str | None, reason: str):
        self.posting_date = posting_date
        self.period_id = period_id
        self.reason = reason
        super().__init__(f"Cannot post on {posting_date}: {reason}")


class OverrideRequiredError(PeriodError):
    """
    Posting date falls in a SOFT_CLOSED period.

    Recoverable: resubmit with a valid admin override.  When an override was
    supplied but denied, ``denial_reason`` and ``override_log_id`` identify
    the logged attempt.
    """

    code: str = "OVERRIDE_REQUIRED"

    def __init__(
        self,
        posting_date: date,
        period_id: str,
        denial_reason: str | None = None,
        override_log_id: str | None = None,
    ):
        self.posting_date = posting_date
        self.period_id = period_id
        self.denial_reason = denial_reason
        self.override_log_id = override_log_id
        message = f"Period {period_id} is SOFT_CLOSED; posting on {posting_date} requires an override"
        if denial_reason:
            message = f"{message} (override denied: {denial_reason})"
        super().__init__(message)


# Locks


class LockError(LedgerKernelError):
    """Base exception for ledger lock errors."""

    code: str = "LOCK_ERROR"


class LockActiveError(LockError):
    """An ACTIVE ledger lock covers the posting date. Reads remain allowed."""

    code: str = "LOCK_ACTIVE"

    def __init__(self, posting_date: date, lock_id: str, lock_type: str, reason: str):
        self.posting_date = posting_date
        self.lock_id = lock_id
        self.lock_type = lock_type
        self.reason = reason
        super().__init__(f"Ledger locked on {posting_date} ({lock_type}): {reason}")


class LockOverlapError(LockError):
    """An ACTIVE lock of the same type already covers part of the range."""

    code: str = "LOCK_OVERLAP"

    def __init__(self, lock_type: str, existing_lock_id: str):
        self.lock_type = lock_type
        self.existing_lock_id = existing_lock_id
        super().__init__(
            f"Active {lock_type} {existing_lock_id} overlaps the requested range"
        )


class LockNotFoundError(LockError):
    """Lock with given ID was not found."""

    code: str = "LOCK_NOT_FOUND"

    def __init__(self, lock_id: str):
        self.lock_id = lock_id
        super().__init__(f"Ledger lock not found: {lock_id}")


class LockReleaseNotAllowedError(LockError):
    """PERIOD_LOCKs and released locks cannot be released."""

    code: str = "LOCK_RELEASE_NOT_ALLOWED"

    def __init__(self, lock_id: str, reason: str):
        self.lock_id = lock_id
        self.reason = reason
        super().__init__(f"Cannot release lock {lock_id}: {reason}")


# Settlements


class SettlementError(LedgerKernelError):
    """Base exception for settlement errors."""

    code: str = "SETTLEMENT_ERROR"


class SettlementNotFoundError(SettlementError):
    """Settlement with given ID was not found."""

    code: str = "SETTLEMENT_NOT_FOUND"

    def __init__(self, settlement_id: str):
        self.settlement_id = settlement_id
        super().__init__(f"Settlement not found: {settlement_id}")


class InvalidStateTransitionError(SettlementError):
    """Requested settlement transition is not an edge of the state graph."""

    code: str = "INVALID_STATE_TRANSITION"

    def __init__(
        self,
        settlement_id: str,
        from_state: str,
        to_state: str,
        allowed: list[str] | None = None,
    ):
        self.settlement_id = settlement_id
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed or []
        super().__init__(
            f"Invalid settlement transition {from_state} -> {to_state} "
            f"(allowed: {', '.join(self.allowed) or 'none'})"
        )


class MaxRetriesExceededError(SettlementError):
    """Settlement exhausted its retries and is terminally FAILED."""

    code: str = "MAX_RETRIES_EXCEEDED"

    def __init__(self, settlement_id: str, retry_count: int, max_retries: int):
        self.settlement_id = settlement_id
        self.retry_count = retry_count
        self.max_retries = max_retries
        super().__init__(
            f"Settlement {settlement_id} exceeded max retries "
            f"({retry_count}/{max_retries})"
        )


# Reconciliation


class ReconciliationError(LedgerKernelError):
    """Base exception for reconciliation errors."""

    code: str = "RECONCILIATION_ERROR"


class ReconciliationBatchNotFoundError(ReconciliationError):
    """Reconciliation batch with given ID was not found."""

    code: str = "RECONCILIATION_BATCH_NOT_FOUND"

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Reconciliation batch not found: {batch_id}")


class ReconciliationItemNotFoundError(ReconciliationError):
    """Reconciliation item with given ID was not found."""

    code: str = "RECONCILIATION_ITEM_NOT_FOUND"

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Reconciliation item not found: {item_id}")


# Audit


class AuditError(LedgerKernelError):
    """Base exception for audit trail errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """
    Audit hash chain validation failed.

    Critical: indicates tampering or corruption of the audit trail.
    """

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_event_id: str, expected_hash: str, actual_hash: str):
        self.audit_event_id = audit_event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at event {audit_event_id}: "
            f"expected {expected_hash}, got {actual_hash}"
        )


# Immutability


class ImmutabilityViolationError(LedgerKernelError):
    """Attempted update or delete of an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
