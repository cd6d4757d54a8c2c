"""
Ledger policy schema.

Frozen dataclasses parsed from a policy YAML file by ``ledger_config.loader``.
The defaults here match ``sets/default.yaml`` so a partially specified file
still yields a complete policy.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal


@dataclass(frozen=True)
class PostingPolicy:
    """Posting-time rules for LedgerService."""

    balance_tolerance: Decimal = Decimal("0.01")
    default_currency: str = "INR"
    posting_period_type: str = "DAILY"


@dataclass(frozen=True)
class PeriodPolicy:
    max_gap_days: int | None = 2


@dataclass(frozen=True)
class OverridePolicy:
    authority_role: str = "FINANCE_ADMIN"
    min_justification_length: int = 10


@dataclass(frozen=True)
class SettlementPolicy:
    """Retry backoff and scheduler sizing for settlements."""

    max_retries: int = 3
    initial_delay_seconds: int = 900
    multiplier: int = 4
    max_delay_seconds: int = 14400
    jitter_ratio: float = 0.1
    poll_interval_seconds: float = 60
    worker_count: int = 2


@dataclass(frozen=True)
class ReconciliationPolicy:
    amount_tolerance: Decimal = Decimal("0.01")


@dataclass(frozen=True)
class LedgerPolicy:
    """
    The complete runtime policy.

    checksum is the SHA-256 of the source document, so a log line or audit
    record can name exactly which policy governed an operation.
    """

    config_id: str
    version: int
    ledger: PostingPolicy = field(default_factory=PostingPolicy)
    periods: PeriodPolicy = field(default_factory=PeriodPolicy)
    overrides: OverridePolicy = field(default_factory=OverridePolicy)
    settlement: SettlementPolicy = field(default_factory=SettlementPolicy)
    reconciliation: ReconciliationPolicy = field(default_factory=ReconciliationPolicy)
    description: str | None = None
    checksum: str = ""
