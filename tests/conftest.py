"""
Pytest fixtures for the ledger test suite.

Provides:
- One engine and one schema per test session, per-test rollback isolation
- File-backed SQLite engines for tests that need real commits across sessions
- Kernel service fixtures sharing a deterministic clock
- The standard chart of accounts and an OPEN daily period for posting

Environment Variables:
- DATABASE_URL: SQLAlchemy URL of the database under test.  Defaults to an
  in-memory SQLite database; set a postgresql:// URL to run against
  PostgreSQL (install the ``postgres`` extra).
"""

import json
import logging
import os
from collections.abc import Callable
from datetime import date
from decimal import Decimal
from io import StringIO
from typing import Generator
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import Session, sessionmaker

from ledger_config import get_active_policy
from ledger_config.bridges import build_service_stack
from ledger_kernel.db.engine import (
    create_engine_for_url,
    create_tables,
    drop_tables,
    init_engine_from_url,
    reset_engine,
)
from ledger_kernel.db.immutability import register_immutability_listeners
from ledger_kernel.domain.clock import DeterministicClock
from ledger_kernel.domain.dtos import EntrySpec, PeriodOverride
from ledger_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from ledger_kernel.models.accounting_period import PeriodType
from ledger_kernel.services.override_service import FINANCE_ADMIN
from ledger_services.chart_of_accounts import seed_chart_of_accounts

DEFAULT_DATABASE_URL = "sqlite:///:memory:"

TEST_ACTOR_ID = uuid4()
TEST_TENANT = "tenant-test"

# DeterministicClock default: 2024-01-15 12:00 UTC
TEST_DAY = date(2024, 1, 15)


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)


def pytest_configure(config):
    config.addinivalue_line("markers", "postgres: mark test as requiring PostgreSQL")


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture ledger_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, ledger_service):
            ledger_service.post_transaction(...)
            logs = captured_logs()
            assert any(r["message"] == "transaction_posted" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("ledger_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Session-scoped DB infrastructure (engine + tables ONCE per suite)
# =============================================================================


@pytest.fixture(scope="session")
def db_engine():
    eng = init_engine_from_url(get_database_url(), echo=False)
    yield eng
    reset_engine()


@pytest.fixture(scope="session")
def db_tables(db_engine):
    """Create all tables and storage triggers once per session."""
    drop_tables(engine=db_engine)
    create_tables(engine=db_engine)
    register_immutability_listeners()
    yield
    drop_tables(engine=db_engine)


@pytest.fixture
def session(db_tables, db_engine) -> Generator[Session, None, None]:
    """Database session that is rolled back after each test.

    The session joins an outer transaction on a dedicated connection; a
    ``session.commit()`` inside the test only releases a savepoint, and the
    outer transaction is rolled back at teardown.
    """
    conn = db_engine.connect()
    trans = conn.begin()
    sess = Session(bind=conn, join_transaction_mode="create_savepoint", expire_on_commit=False)
    yield sess
    try:
        sess.close()
    finally:
        try:
            trans.rollback()
        finally:
            conn.close()


@pytest.fixture
def file_engine(tmp_path):
    """Engine on a fresh file-backed SQLite database with the full schema.

    For scheduler, worker and facade tests that commit from several
    sessions or threads.
    """
    eng = create_engine_for_url(f"sqlite:///{tmp_path / 'ledger.db'}")
    create_tables(engine=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def file_session_factory(file_engine) -> sessionmaker[Session]:
    return sessionmaker(bind=file_engine, expire_on_commit=False)


# =============================================================================
# Actors, clock, policy
# =============================================================================


@pytest.fixture
def test_actor_id() -> UUID:
    return TEST_ACTOR_ID


@pytest.fixture
def tenant_id() -> str:
    return TEST_TENANT


@pytest.fixture
def deterministic_clock():
    return DeterministicClock()


@pytest.fixture
def policy():
    return get_active_policy()


@pytest.fixture
def fixed_rng() -> Callable[[], float]:
    """rng returning 0.5, i.e. zero jitter."""
    return lambda: 0.5


# =============================================================================
# Service fixtures
# =============================================================================


@pytest.fixture
def services(session, policy, deterministic_clock, fixed_rng):
    """Every kernel service wired on the test session."""
    return build_service_stack(session, policy, deterministic_clock, rng=fixed_rng)


@pytest.fixture
def auditor_service(services):
    return services.auditor


@pytest.fixture
def lock_service(services):
    return services.locks


@pytest.fixture
def period_service(services):
    return services.periods


@pytest.fixture
def override_service(services):
    return services.overrides


@pytest.fixture
def ledger_service(services):
    return services.ledger


@pytest.fixture
def settlement_service(services):
    return services.settlements


@pytest.fixture
def reconciliation_service(services):
    return services.reconciliation


@pytest.fixture
def ledger_selector(services):
    return services.selector


# =============================================================================
# Data fixtures
# =============================================================================


@pytest.fixture
def chart_of_accounts(session, test_actor_id):
    """Standard chart of accounts."""
    seed_chart_of_accounts(session, test_actor_id)
    return session


@pytest.fixture
def open_period(chart_of_accounts, period_service, tenant_id, test_actor_id):
    """OPEN daily period covering the clock's date."""
    return period_service.create_period(
        tenant_id, PeriodType.DAILY, TEST_DAY, TEST_DAY, test_actor_id
    )


@pytest.fixture
def admin_override() -> PeriodOverride:
    return PeriodOverride(
        justification="Late gateway file for the closed day, approved by finance lead",
        actor_role=FINANCE_ADMIN,
    )


@pytest.fixture
def post_simple(ledger_service, tenant_id, test_actor_id):
    """
    Post a two-line transaction: debit ``debit`` / credit ``credit``.

    Returns the TransactionInfo.
    """

    def _post(
        amount: Decimal | str = "100.00",
        debit: str = "ESC-001",
        credit: str = "ESC-002",
        idempotency_key: str | None = None,
        **kwargs,
    ):
        return ledger_service.post_transaction(
            [EntrySpec.debit(debit, amount), EntrySpec.credit(credit, amount)],
            idempotency_key if idempotency_key is not None else f"test:{uuid4()}",
            kwargs.pop("event_type", "test_posting"),
            tenant_id=kwargs.pop("tenant_id", tenant_id),
            actor_id=kwargs.pop("actor_id", test_actor_id),
            **kwargs,
        )

    return _post

