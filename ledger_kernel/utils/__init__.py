"""Utility functions for the ledger kernel."""

from ledger_kernel.utils.hashing import canonicalize_json, hash_audit_event, hash_payload, json_safe
from ledger_kernel.utils.idempotency import generate_idempotency_key, parse_idempotency_key

__all__ = [
    "canonicalize_json",
    "hash_payload",
    "hash_audit_event",
    "json_safe",
    "generate_idempotency_key",
    "parse_idempotency_key",
]
