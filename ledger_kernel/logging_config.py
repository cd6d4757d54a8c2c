"""
Structured JSON logging for the ledger kernel.

Every line is one JSON object: timestamp, level, logger and message, the
request fields bound through LogContext (tenant, actor, transaction,
settlement), any ``extra`` values, and for kernel errors their code and
structured attributes.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Iterator
from uuid import UUID

LOGGER_NAME = "ledger_kernel"

CONTEXT_FIELDS = ("correlation_id", "tenant_id", "actor_id", "transaction_id", "settlement_id")

_context: ContextVar[dict[str, str]] = ContextVar("ledger_log_context", default={})

# Attributes every LogRecord carries; anything else on a record came from ``extra``.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


class LogContext:
    """Request-scoped log fields, isolated per thread and per task."""

    @staticmethod
    def _known(fields: dict[str, Any]) -> dict[str, str]:
        return {k: str(v) for k, v in fields.items() if k in CONTEXT_FIELDS and v is not None}

    @classmethod
    def set(cls, **fields: Any) -> None:
        _context.set({**_context.get(), **cls._known(fields)})

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return dict(_context.get())

    @classmethod
    def clear(cls) -> None:
        _context.set({})

    @classmethod
    @contextmanager
    def bind(cls, **fields: Any) -> Iterator[None]:
        """Bind fields for the duration of a block; unknown names are ignored."""
        token = _context.set({**_context.get(), **cls._known(fields)})
        try:
            yield
        finally:
            _context.reset(token)


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (UUID, Decimal)):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    return str(obj)


class StructuredFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS:
                payload.setdefault(key, value)

        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            payload["exc_type"] = type(exc).__name__
            payload["exc_message"] = str(exc)
            if hasattr(exc, "code"):
                payload["exc_code"] = exc.code
            for key, value in vars(exc).items():
                if not key.startswith("_"):
                    payload[f"exc_{key}"] = value
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def configure_logging(*, level: int = logging.INFO, handler: logging.Handler | None = None) -> None:
    """Attach a JSON handler to the ledger_kernel logger once; later calls are no-ops."""
    logger = logging.getLogger(LOGGER_NAME)
    if any(isinstance(h.formatter, StructuredFormatter) for h in logger.handlers):
        return

    logger.setLevel(level)
    logger.propagate = False
    handler = handler if handler is not None else logging.StreamHandler(sys.stderr)
    handler.setFormatter(StructuredFormatter())
    logger.addHandler(handler)


def reset_logging() -> None:
    """Detach the JSON handler so the next configure_logging starts fresh (tests)."""
    logger = logging.getLogger(LOGGER_NAME)
    for handler in [h for h in logger.handlers if isinstance(h.formatter, StructuredFormatter)]:
        logger.removeHandler(handler)
    logger.setLevel(logging.WARNING)
