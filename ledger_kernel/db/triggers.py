"""
Module: ledger_kernel.db.triggers
Responsibility: Loading, installing, and verifying storage-level immutability
    triggers (Layer 2 of 2).  This is the database-level complement to the
    ORM listeners in db/immutability.py.
Architecture position: Kernel > DB.  May import from db/ only (pathlib for
    SQL file loading, sqlalchemy for execution).  MUST NOT import from
    models/, services/, selectors/, domain/, or outer layers.

Invariants enforced (one SQL file set per dialect under sql/<dialect>/):
    - LedgerEntry rows: no UPDATE, no DELETE, ever.
    - Posted LedgerTransaction rows: no UPDATE except the single reversal
      link, no DELETE.
    - AdminOverrideLog rows: no UPDATE, no DELETE.
    - AuditEvent rows: no UPDATE, no DELETE.
    - HARD_CLOSED AccountingPeriod rows: no UPDATE; no period is deleted.
    - account_balances view: the derived-balance read path.
    - Overlap guards: no two ACTIVE manual locks of one type, and no two
      periods of one type, cover the same date for a tenant.  Exclusion
      constraints on PostgreSQL, BEFORE INSERT/UPDATE triggers on SQLite.

Failure modes:
    - PostgreSQL RAISE EXCEPTION / SQLite RAISE(ABORT) on any violation
      (surfaced by SQLAlchemy as a DBAPIError subclass).
    - FileNotFoundError if SQL files are missing from the sql/ directory.
    - ValueError for a dialect without a trigger set.

Audit relevance:
    Even if the ORM layer is bypassed (raw SQL, bulk operations, direct
    console access), the database refuses to modify financial records.
"""

from pathlib import Path

from sqlalchemy import text
from sqlalchemy.engine import Engine

from ledger_kernel.logging_config import get_logger

logger = get_logger("db.triggers")

# Directory containing per-dialect SQL files
SQL_DIR = Path(__file__).parent / "sql"

SUPPORTED_DIALECTS = ("postgresql", "sqlite")

# Installed in this order
TRIGGER_FILES = [
    "01_ledger_entry.sql",
    "02_ledger_transaction.sql",
    "03_admin_override_log.sql",
    "04_audit_event.sql",
    "05_accounting_period.sql",
    "06_account_balances_view.sql",
    "07_overlap_guards.sql",
]

DROP_FILE = "99_drop_all.sql"

ALL_TRIGGER_NAMES = [
    "trg_ledger_entry_immutability_update",
    "trg_ledger_entry_immutability_delete",
    "trg_ledger_transaction_immutability_update",
    "trg_ledger_transaction_immutability_delete",
    "trg_admin_override_log_immutability_update",
    "trg_admin_override_log_immutability_delete",
    "trg_audit_event_immutability_update",
    "trg_audit_event_immutability_delete",
    "trg_accounting_period_immutability_update",
    "trg_accounting_period_immutability_delete",
]

# Constraint names on PostgreSQL, trigger names on SQLite
OVERLAP_GUARD_NAMES = {
    "postgresql": [
        "excl_accounting_period_overlap",
        "excl_ledger_lock_active_overlap",
    ],
    "sqlite": [
        "trg_accounting_period_overlap_insert",
        "trg_accounting_period_overlap_update",
        "trg_ledger_lock_overlap_insert",
        "trg_ledger_lock_overlap_update",
    ],
}


def _dialect_dir(dialect_name: str) -> Path:
    if dialect_name not in SUPPORTED_DIALECTS:
        raise ValueError(f"No immutability triggers for dialect {dialect_name!r}")
    return SQL_DIR / dialect_name


def _load_sql_file(dialect_name: str, filename: str) -> str:
    """
    Load SQL content from a file in the dialect's sql/ directory.

    Raises:
        FileNotFoundError: If the file doesn't exist.
    """
    filepath = _dialect_dir(dialect_name) / filename
    if not filepath.exists():
        raise FileNotFoundError(f"SQL file not found: {filepath}")
    return filepath.read_text(encoding="utf-8")


def _execute_script(engine: Engine, sql_content: str) -> None:
    """Run a multi-statement SQL script in its own transaction."""
    if engine.dialect.name == "sqlite":
        # The sqlite3 driver executes one statement per execute() call
        raw = engine.raw_connection()
        try:
            raw.driver_connection.executescript(sql_content)
            raw.commit()
        finally:
            raw.close()
        return

    with engine.connect() as conn:
        conn.execute(text(sql_content))
        conn.commit()


def install_immutability_triggers(engine: Engine) -> None:
    """
    Install database-level immutability triggers and the balance view.

    Preconditions: Tables must exist (call after Base.metadata.create_all()).
    Postconditions: All triggers in ALL_TRIGGER_NAMES are installed.
        Every file drops before it creates, so reinstalling is idempotent.
    """
    dialect_name = engine.dialect.name
    for filename in TRIGGER_FILES:
        _execute_script(engine, _load_sql_file(dialect_name, filename))
    logger.info(
        "immutability_triggers_installed",
        extra={
            "dialect": dialect_name,
            "trigger_count": len(ALL_TRIGGER_NAMES),
            "overlap_guard_count": len(OVERLAP_GUARD_NAMES[dialect_name]),
        },
    )


def uninstall_immutability_triggers(engine: Engine) -> None:
    """
    Remove database-level immutability triggers.

    WARNING: Only for teardown and controlled data repair.  Re-install
    IMMEDIATELY afterwards.
    """
    dialect_name = engine.dialect.name
    _execute_script(engine, _load_sql_file(dialect_name, DROP_FILE))
    logger.warning("immutability_triggers_uninstalled", extra={"dialect": dialect_name})


def get_installed_triggers(engine: Engine) -> list[str]:
    """Names of installed immutability triggers, sorted."""
    if engine.dialect.name == "postgresql":
        query = text(
            "SELECT DISTINCT tgname FROM pg_trigger "
            "WHERE tgname LIKE 'trg_%_immutability_%' ORDER BY tgname"
        )
    else:
        query = text(
            "SELECT name FROM sqlite_master "
            "WHERE type = 'trigger' AND name LIKE 'trg_%_immutability_%' ORDER BY name"
        )
    with engine.connect() as conn:
        installed = {row[0] for row in conn.execute(query)}
    return sorted(installed & set(ALL_TRIGGER_NAMES))


def get_installed_overlap_guards(engine: Engine) -> list[str]:
    """Names of installed overlap guards, sorted."""
    dialect_name = engine.dialect.name
    if dialect_name == "postgresql":
        query = text("SELECT conname FROM pg_constraint WHERE contype = 'x'")
    else:
        query = text("SELECT name FROM sqlite_master WHERE type = 'trigger'")
    with engine.connect() as conn:
        installed = {row[0] for row in conn.execute(query)}
    return sorted(installed & set(OVERLAP_GUARD_NAMES.get(dialect_name, [])))


def get_missing_triggers(engine: Engine) -> list[str]:
    """Immutability triggers and overlap guards that should be installed but aren't."""
    expected = set(ALL_TRIGGER_NAMES) | set(OVERLAP_GUARD_NAMES.get(engine.dialect.name, []))
    installed = set(get_installed_triggers(engine)) | set(get_installed_overlap_guards(engine))
    return sorted(expected - installed)


def triggers_installed(engine: Engine) -> bool:
    """True iff every immutability trigger and overlap guard is installed."""
    return not get_missing_triggers(engine)
