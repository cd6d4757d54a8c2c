"""
ledger_config -- single public entrypoint for ledger policy.

Responsibility:
    Provides the ONLY way to obtain policy at runtime through
    ``get_active_policy()``.  Returns a frozen ``LedgerPolicy``; YAML loading
    is internal to this package.

Architecture position:
    Configuration -- sits above ``ledger_kernel`` and below
    ``ledger_services``.  The kernel MUST NEVER import from
    ``ledger_config``; ``ledger_config.bridges`` translates a policy into
    kernel constructor arguments.

Invariants enforced:
    - Single entrypoint: runtime policy flows through ``get_active_policy()``.
    - Deterministic: the same YAML always yields the same checksum.

Failure modes:
    - ``FileNotFoundError`` -- the policy file does not exist.
    - ``ValueError`` -- unknown keys or out-of-range values.

Audit relevance:
    Every successful ``get_active_policy()`` call emits a
    ``LEDGER_CONFIG_TRACE`` log entry with config_id, version and checksum.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from ledger_config.loader import load_policy
from ledger_config.schema import (
    LedgerPolicy,
    OverridePolicy,
    PeriodPolicy,
    PostingPolicy,
    ReconciliationPolicy,
    SettlementPolicy,
)

_logger = logging.getLogger("ledger_kernel.config")

_DEFAULT_POLICY = Path(__file__).parent / "sets" / "default.yaml"

CONFIG_PATH_ENV = "LEDGER_CONFIG_PATH"


def get_active_policy(config_path: Path | str | None = None) -> LedgerPolicy:
    """
    The ONLY public configuration entrypoint.

    Resolution order: explicit ``config_path``, then the
    ``LEDGER_CONFIG_PATH`` environment variable, then
    ``ledger_config/sets/default.yaml``.

    Raises:
        FileNotFoundError: If the resolved file does not exist.
        ValueError: If the policy fails validation.
    """
    path = Path(config_path or os.environ.get(CONFIG_PATH_ENV) or _DEFAULT_POLICY)
    policy = load_policy(path)

    _logger.info(
        "LEDGER_CONFIG_TRACE",
        extra={
            "trace_type": "LEDGER_CONFIG_TRACE",
            "config_id": policy.config_id,
            "config_version": policy.version,
            "checksum": policy.checksum,
            "source": str(path),
        },
    )
    return policy


__all__ = [
    "CONFIG_PATH_ENV",
    "LedgerPolicy",
    "OverridePolicy",
    "PeriodPolicy",
    "PostingPolicy",
    "ReconciliationPolicy",
    "SettlementPolicy",
    "get_active_policy",
]
