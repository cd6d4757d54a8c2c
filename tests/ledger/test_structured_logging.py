"""Tests for the structured logging system (ledger_kernel/logging_config.py)."""

import json
import logging
from datetime import date
from io import StringIO
from uuid import uuid4

import pytest

from ledger_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture
def clean_logging():
    """Start from unconfigured logging; restore the suite's DEBUG setup afterwards."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG)


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


def _parse_log(stream: StringIO) -> dict:
    return _parse_all_logs(stream)[0]


@pytest.mark.usefixtures("clean_logging")
class TestStructuredFormatter:

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "ledger_kernel.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("posted", extra={"entry_count": 4, "currency": "INR"})

        record = _parse_log(stream)
        assert record["entry_count"] == 4
        assert record["currency"] == "INR"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(correlation_id="abc-123", tenant_id="tenant-1")
        get_logger("test").info("test_msg")

        record = _parse_log(stream)
        assert record["correlation_id"] == "abc-123"
        assert record["tenant_id"] == "tenant-1"

    def test_no_context_fields_when_empty(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("bare_message")

        record = _parse_log(stream)
        assert "correlation_id" not in record
        assert "settlement_id" not in record

    def test_kernel_error_fields_extracted(self):
        """Kernel exceptions carry a code and structured attributes."""
        from ledger_kernel.exceptions import LockActiveError

        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise LockActiveError(date(2024, 1, 15), "lock-1", "AUDIT_LOCK", "Statutory audit")
        except LockActiveError:
            get_logger("test").error("posting_failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "LOCK_ACTIVE"
        assert record["exc_type"] == "LockActiveError"
        assert record["exc_lock_type"] == "AUDIT_LOCK"
        assert record["exc_posting_date"] == "2024-01-15"
        assert "traceback" in record

    def test_uuid_and_decimal_serialized(self):
        from decimal import Decimal

        handler, stream = _make_handler()
        configure_logging(handler=handler)
        uid = uuid4()
        get_logger("test").info("with_values", extra={"transaction_id": uid, "amount": Decimal("10.50")})

        record = _parse_log(stream)
        assert record["transaction_id"] == str(uid)
        assert record["amount"] == "10.50"

    def test_debug_suppressed_at_info(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        assert [r["message"] for r in _parse_all_logs(stream)] == ["first", "second"]


@pytest.mark.usefixtures("clean_logging")
class TestLogContext:

    def test_set_and_get(self):
        LogContext.set(correlation_id="x", settlement_id="y")

        assert LogContext.get_all() == {"correlation_id": "x", "settlement_id": "y"}

    def test_clear(self):
        LogContext.set(correlation_id="x")
        LogContext.clear()

        assert LogContext.get_all() == {}

    def test_bind_restores_previous_value(self):
        LogContext.set(tenant_id="outer")
        with LogContext.bind(tenant_id="inner"):
            assert LogContext.get_all()["tenant_id"] == "inner"
        assert LogContext.get_all()["tenant_id"] == "outer"

    def test_bind_restores_none(self):
        with LogContext.bind(actor_id="temp"):
            assert LogContext.get_all()["actor_id"] == "temp"
        assert "actor_id" not in LogContext.get_all()

    def test_bind_ignores_unknown_fields(self):
        with LogContext.bind(payment_id="p-1", tenant_id="t"):
            assert LogContext.get_all() == {"tenant_id": "t"}


@pytest.mark.usefixtures("clean_logging")
class TestConfigureLogging:

    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)

        structured = [
            h for h in logging.getLogger("ledger_kernel").handlers if isinstance(h.formatter, StructuredFormatter)
        ]
        assert structured == [h1]

    def test_reset_keeps_foreign_handlers(self):
        foreign = logging.NullHandler()
        logger = logging.getLogger("ledger_kernel")
        logger.addHandler(foreign)
        try:
            configure_logging(handler=_make_handler()[0])
            reset_logging()

            assert foreign in logger.handlers
            assert not any(isinstance(h.formatter, StructuredFormatter) for h in logger.handlers)
        finally:
            logger.removeHandler(foreign)

    def test_get_logger_returns_child(self):
        assert get_logger("services.ledger").name == "ledger_kernel.services.ledger"


class TestServiceLogging:
    """Service log lines carry the bound request context."""

    def test_posting_logged_with_tenant_and_actor(self, open_period, post_simple, captured_logs, tenant_id, test_actor_id):
        txn = post_simple("25.00")

        [record] = [r for r in captured_logs() if r["message"] == "transaction_posted"]
        assert record["transaction_id"] == str(txn.id)
        assert record["tenant_id"] == tenant_id
        assert record["actor_id"] == str(test_actor_id)
        assert record["amount"] == "25.00"

    def test_blocked_posting_logged(self, chart_of_accounts, post_simple, captured_logs):
        from ledger_kernel.exceptions import PeriodClosedError

        with pytest.raises(PeriodClosedError):
            post_simple("25.00")

        assert any(r["message"] == "posting_blocked_by_period" for r in captured_logs())
