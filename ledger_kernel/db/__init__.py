"""Database layer - engine, base classes, types, and storage-level immutability."""

from ledger_kernel.db.base import UUID, Base, TrackedBase, UTCDateTime, UUIDString
from ledger_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    init_engine_from_url,
    session_scope,
)
from ledger_kernel.db.types import Currency, Money, PayloadHash

__all__ = [
    "get_engine",
    "get_session",
    "init_engine_from_url",
    "session_scope",
    "create_tables",
    "Base",
    "TrackedBase",
    "UTCDateTime",
    "UUIDString",
    "UUID",
    "Money",
    "Currency",
    "PayloadHash",
]
