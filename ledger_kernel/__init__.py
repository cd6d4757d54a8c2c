"""
Ledger Kernel

The double-entry core of the payment back-office:
- Balanced, idempotent posting with immutable entries
- Derived (never stored) account balances
- Graduated accounting-period control and ledger locks
- Settlement finality state machine with scheduled retries
- Reconciliation against external statements
- Append-only admin override log and hash-chained audit trail
"""

__version__ = "0.1.0"
