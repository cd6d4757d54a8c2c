"""
Idempotency key generation utilities.

The same business event must always produce the same ledger transaction,
even when the event is delivered twice or processed concurrently.  The key
is stored on LedgerTransaction under a unique constraint.
"""

from uuid import UUID


def generate_idempotency_key(event_type: str, source_id: UUID | str) -> str:
    """
    Generate the idempotency key for a business event.

    Format: event_type:source_id

    Example:
        >>> generate_idempotency_key("payment_success", "pay_123")
        'payment_success:pay_123'
    """
    if not event_type or not str(source_id):
        raise ValueError("event_type and source_id are required for an idempotency key")
    return f"{event_type}:{source_id}"


def parse_idempotency_key(key: str) -> tuple[str, str]:
    """
    Split an idempotency key into (event_type, source_id).

    Raises:
        ValueError: If key format is invalid.
    """
    parts = key.split(":", 1)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValueError(f"Invalid idempotency key format: {key}")
    return parts[0], parts[1]
