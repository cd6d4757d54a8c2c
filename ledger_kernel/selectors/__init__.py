"""Selectors for the ledger kernel (read side)."""

from ledger_kernel.selectors.ledger_selector import LedgerSelector, fold_balance, signed_amount

__all__ = [
    "LedgerSelector",
    "fold_balance",
    "signed_amount",
]
