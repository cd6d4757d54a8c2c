"""
ORM-Level Immutability Enforcement (Layer 1 of 2).

===============================================================================
WHY THIS EXISTS
===============================================================================

Ledger entries must be tamper-proof.  Posted amounts can never be edited,
only cancelled by a new reversing transaction that leaves a visible trail.

  Layer 1: THIS FILE (ORM event listeners)
    - Catches modifications made through SQLAlchemy sessions
    - Fires BEFORE the SQL is sent to the database

  Layer 2: db/sql/<dialect>/*.sql (database triggers)
    - Catches raw SQL, bulk UPDATE/DELETE statements, direct console access
    - Installed by db/triggers.py for PostgreSQL and SQLite

Both layers enforce the SAME rules.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity              | When Immutable                     | Allowed change
--------------------|------------------------------------|------------------------------
LedgerEntry         | ALWAYS (from creation)             | none
LedgerTransaction   | Once status is posted              | posted -> reversed link, once
AdminOverrideLog    | ALWAYS (from creation)             | none
AuditEvent          | ALWAYS (from creation)             | none
AccountingPeriod    | Once status is HARD_CLOSED         | none
Account             | Never deleted                      | close via status

updated_at / updated_by_id are audit metadata and may always change on
TrackedBase rows.

===============================================================================
USAGE
===============================================================================

    from ledger_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()

===============================================================================
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from ledger_kernel.exceptions import ImmutabilityViolationError
from ledger_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_METADATA_FIELDS = frozenset({"updated_at", "updated_by_id"})

# Fields that may change exactly once when a posted transaction is reversed
_REVERSAL_LINK_FIELDS = frozenset({"status", "reversed_by_id"})


def _block(entity_type: str, target, operation: str, reason: str, **fields) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
            **fields,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _changed_fields(target) -> list[str]:
    """Names of column attributes with pending changes."""
    state = inspect(target)
    return [
        column_attr.key
        for column_attr in state.mapper.column_attrs
        if column_attr.key not in _AUDIT_METADATA_FIELDS
        and state.attrs[column_attr.key].history.has_changes()
    ]


def _previous_value(target, key: str):
    """Value the attribute had before the pending change."""
    history = get_history(target, key)
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    return getattr(target, key)


# -----------------------------------------------------------------------------
# Always-immutable rows
# -----------------------------------------------------------------------------


def _check_append_only_update(mapper, connection, target):
    changed = _changed_fields(target)
    if changed:
        _block(
            type(target).__name__,
            target,
            "UPDATE",
            f"{type(target).__name__} rows are append-only",
            field=changed[0],
        )


def _check_append_only_delete(mapper, connection, target):
    _block(
        type(target).__name__,
        target,
        "DELETE",
        f"{type(target).__name__} rows cannot be deleted",
    )


# -----------------------------------------------------------------------------
# LedgerTransaction
# -----------------------------------------------------------------------------


def _check_transaction_immutability(mapper, connection, target):
    """
    Block changes to posted transactions except the reversal link.

    Allowed exactly once: status posted -> reversed together with
    reversed_by_id going from NULL to the reversing transaction.
    """
    from ledger_kernel.models.ledger import TransactionStatus

    old_status = _previous_value(target, "status")
    if old_status == TransactionStatus.PENDING:
        return

    changed = set(_changed_fields(target))
    if not changed:
        return

    is_reversal_link = (
        changed <= _REVERSAL_LINK_FIELDS
        and old_status == TransactionStatus.POSTED
        and target.status == TransactionStatus.REVERSED
        and _previous_value(target, "reversed_by_id") is None
        and target.reversed_by_id is not None
    )
    if not is_reversal_link:
        _block(
            "LedgerTransaction",
            target,
            "UPDATE",
            f"Cannot modify {sorted(changed)} on a {old_status} transaction",
            field=sorted(changed)[0],
        )


def _check_transaction_delete(mapper, connection, target):
    from ledger_kernel.models.ledger import TransactionStatus

    if target.status != TransactionStatus.PENDING:
        _block("LedgerTransaction", target, "DELETE", "Posted transactions cannot be deleted")


# -----------------------------------------------------------------------------
# AccountingPeriod
# -----------------------------------------------------------------------------


def _check_period_immutability(mapper, connection, target):
    from ledger_kernel.models.accounting_period import PeriodStatus

    if _previous_value(target, "status") != PeriodStatus.HARD_CLOSED:
        return
    changed = _changed_fields(target)
    if changed:
        _block(
            "AccountingPeriod",
            target,
            "UPDATE",
            "HARD_CLOSED periods are terminal",
            field=changed[0],
        )


def _check_period_delete(mapper, connection, target):
    _block("AccountingPeriod", target, "DELETE", "Accounting periods cannot be deleted")


# -----------------------------------------------------------------------------
# Account
# -----------------------------------------------------------------------------


def _check_account_delete(mapper, connection, target):
    _block("Account", target, "DELETE", "Accounts are never deleted, only closed")


def _listener_table():
    from ledger_kernel.models.account import Account
    from ledger_kernel.models.accounting_period import AccountingPeriod
    from ledger_kernel.models.admin_override import AdminOverrideLog
    from ledger_kernel.models.audit_event import AuditEvent
    from ledger_kernel.models.ledger import LedgerEntry, LedgerTransaction

    return [
        (LedgerEntry, "before_update", _check_append_only_update),
        (LedgerEntry, "before_delete", _check_append_only_delete),
        (AdminOverrideLog, "before_update", _check_append_only_update),
        (AdminOverrideLog, "before_delete", _check_append_only_delete),
        (AuditEvent, "before_update", _check_append_only_update),
        (AuditEvent, "before_delete", _check_append_only_delete),
        (LedgerTransaction, "before_update", _check_transaction_immutability),
        (LedgerTransaction, "before_delete", _check_transaction_delete),
        (AccountingPeriod, "before_update", _check_period_immutability),
        (AccountingPeriod, "before_delete", _check_period_delete),
        (Account, "before_delete", _check_account_delete),
    ]


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Call after models are imported and before any database work.
    Registering twice is a no-op.
    """
    for target, event_name, listener_fn in _listener_table():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that need to exercise the database
    trigger layer on its own.
    """
    for target, event_name, listener_fn in _listener_table():
        if event.contains(target, event_name, listener_fn):
            event.remove(target, event_name, listener_fn)
