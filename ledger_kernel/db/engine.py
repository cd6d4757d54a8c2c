"""
Module: ledger_kernel.db.engine
Responsibility: SQLAlchemy engine initialization, session factory management,
    and transactional scope utilities.  Single point of database connection
    configuration for the ledger.
Architecture position: Kernel > DB.  May import from db/base.py and
    db/triggers.py.  MUST NOT import from services/, selectors/, domain/, or
    outer layers (create_tables/drop_tables import models to populate the
    metadata).

Invariants enforced:
    - PostgreSQL is the production backend: READ COMMITTED isolation with
      explicit row locking (FOR UPDATE) where stronger isolation is needed,
      QueuePool with pre-ping.
    - SQLite (tests, local tooling) runs with foreign keys ON and explicit
      BEGIN so SAVEPOINTs behave like PostgreSQL's.
    - Immutability listeners are registered whenever an engine is built.

Failure modes:
    - RuntimeError if get_engine/get_session/get_session_factory is called
      before init_engine_from_url().
    - OperationalError on deadlock during trigger installation (retried up to 3x).

Audit relevance:
    All database work flows through sessions created here.  session_scope()
    is the commit-or-rollback boundary for every operator-facing operation.
"""

import atexit
import time
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from ledger_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

# Module-level engine and session factory
_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


def _install_sqlite_hooks(engine: Engine) -> None:
    """Foreign keys on, and let SQLAlchemy own BEGIN so savepoints work."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_engine_for_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
) -> Engine:
    """
    Build an engine for a database URL without touching module state.

    PostgreSQL URLs get the pooled READ COMMITTED configuration; SQLite URLs
    get the connection hooks above (in-memory databases share one
    connection through StaticPool).
    """
    from ledger_kernel.db.immutability import register_immutability_listeners

    if database_url.startswith("sqlite"):
        kwargs: dict = {"echo": echo, "connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **kwargs)
        _install_sqlite_hooks(engine)
    else:
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            isolation_level="READ COMMITTED",
        )

    register_immutability_listeners()
    return engine


def init_engine_from_url(database_url: str, echo: bool = False, **pool_options) -> Engine:
    """
    Initialize the module-level engine and session factory.

    Postconditions: get_engine/get_session/session_scope use this engine.
        A second call replaces the first.

    Args:
        database_url: SQLAlchemy URL (postgresql://... or sqlite:///...).
        echo: If True, log all SQL statements.
        **pool_options: pool_size, max_overflow, pool_pre_ping, pool_timeout,
            pool_recycle (PostgreSQL only).
    """
    global _engine, _SessionFactory

    _engine = create_engine_for_url(database_url, echo=echo, **pool_options)
    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"dialect": _engine.dialect.name, "echo": echo},
    )
    return _engine


def get_engine() -> Engine:
    """
    Get the current engine instance.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session() -> Session:
    """
    Get a new session instance.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory()


def get_session_factory() -> sessionmaker[Session]:
    """
    Get the session factory.

    Used by the settlement scheduler and workers, where each thread needs
    its own session.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory


@contextmanager
def session_scope(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.

    On normal exit the session is committed and closed.  On exception it is
    rolled back and closed, and the exception is re-raised.

    Usage:
        with session_scope() as session:
            service = LedgerService(session, ...)
            service.post_transaction(...)
    """
    session = session_factory() if session_factory is not None else get_session()
    logger.debug("transaction_started")
    try:
        yield session
        session.commit()
        logger.debug("transaction_committed")
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def _import_models() -> None:
    # Populates Base.metadata
    import ledger_kernel.models  # noqa: F401


def create_tables(install_triggers: bool = True, engine: Engine | None = None) -> None:
    """
    Create all tables and optionally install storage-level triggers.

    Args:
        install_triggers: Install the immutability triggers and the
            account_balances view.
        engine: Engine to use; defaults to the module-level engine.

    Raises:
        RuntimeError: If no engine is given and none is initialized.
        OperationalError: If trigger installation fails after 3 retries.
    """
    from ledger_kernel.db.base import Base

    engine = engine or get_engine()
    _import_models()
    Base.metadata.create_all(engine)

    if not install_triggers:
        return

    from ledger_kernel.db.triggers import install_immutability_triggers

    max_retries = 3
    for attempt in range(max_retries):
        try:
            install_immutability_triggers(engine)
            break
        except OperationalError as exc:
            if "deadlock" in str(exc).lower() and attempt < max_retries - 1:
                logger.warning(
                    "trigger_install_deadlock_retry",
                    extra={"attempt": attempt + 1, "max_retries": max_retries},
                )
                engine.dispose()
                time.sleep(0.5 * (attempt + 1))
            else:
                raise


def drop_tables(engine: Engine | None = None) -> None:
    """
    Drop all tables. Use with caution - primarily for testing.
    """
    from ledger_kernel.db.base import Base
    from ledger_kernel.db.triggers import uninstall_immutability_triggers

    engine = engine or get_engine()
    _import_models()
    uninstall_immutability_triggers(engine)
    Base.metadata.drop_all(engine)


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
        _engine = None

    _SessionFactory = None


def _atexit_dispose():
    """Dispose the engine on process exit to release pooled connections."""
    if _engine is not None:
        _engine.dispose()


atexit.register(_atexit_dispose)


def is_postgres() -> bool:
    """Check if the current engine is PostgreSQL."""
    if _engine is None:
        return False
    return _engine.dialect.name == "postgresql"
