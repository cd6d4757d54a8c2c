"""
Policy Loader (``ledger_config.loader``).

Responsibility
--------------
Loads a policy YAML file and parses it into the frozen dataclasses of
``ledger_config.schema``.  Runtime callers go through
``ledger_config.get_active_policy()``.

Invariants enforced
-------------------
* Monetary tolerances are parsed as ``Decimal`` from their string form;
  a float in the YAML is rejected.
* Unknown top-level sections and unknown keys raise ``ValueError``; a typo
  never silently falls back to a default.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing ``config_id`` / ``version``  -> ``KeyError`` propagates.
* Out-of-range values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import fields
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from ledger_config.schema import (
    LedgerPolicy,
    OverridePolicy,
    PeriodPolicy,
    PostingPolicy,
    ReconciliationPolicy,
    SettlementPolicy,
)

_SECTIONS = {
    "ledger": PostingPolicy,
    "periods": PeriodPolicy,
    "overrides": OverridePolicy,
    "settlement": SettlementPolicy,
    "reconciliation": ReconciliationPolicy,
}

_TOP_LEVEL_KEYS = {"config_id", "version", "description", *_SECTIONS}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, key: str) -> Decimal:
    """Parse a Decimal from a YAML string or int; floats are refused."""
    if isinstance(value, float) or isinstance(value, bool):
        raise ValueError(f"{key} must be written as a quoted decimal string, got {value!r}")
    try:
        parsed = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"{key} is not a decimal: {value!r}") from exc
    if parsed < 0:
        raise ValueError(f"{key} must be non-negative, got {parsed}")
    return parsed


def _parse_section(name: str, data: dict[str, Any] | None):
    section_cls = _SECTIONS[name]
    data = data or {}
    known = {f.name: f for f in fields(section_cls)}
    unknown = set(data) - set(known)
    if unknown:
        raise ValueError(f"Unknown keys in '{name}': {sorted(unknown)}")

    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        default = known[key].default
        if isinstance(default, Decimal):
            kwargs[key] = parse_decimal(value, f"{name}.{key}")
        else:
            kwargs[key] = value
    return section_cls(**kwargs)


def _validate(policy: LedgerPolicy) -> None:
    if policy.overrides.min_justification_length < 1:
        raise ValueError("overrides.min_justification_length must be >= 1")
    if not policy.overrides.authority_role:
        raise ValueError("overrides.authority_role is required")
    gap = policy.periods.max_gap_days
    if gap is not None and (not isinstance(gap, int) or gap < 0):
        raise ValueError(f"periods.max_gap_days must be a non-negative int or null, got {gap!r}")
    if policy.ledger.posting_period_type not in ("DAILY", "MONTHLY"):
        raise ValueError(
            f"ledger.posting_period_type must be DAILY or MONTHLY, "
            f"got {policy.ledger.posting_period_type!r}"
        )

    s = policy.settlement
    if s.max_retries < 0:
        raise ValueError("settlement.max_retries must be >= 0")
    if s.initial_delay_seconds < 0 or s.max_delay_seconds < 0:
        raise ValueError("settlement delays must be non-negative")
    if s.multiplier < 1:
        raise ValueError("settlement.multiplier must be >= 1")
    if not 0 <= s.jitter_ratio < 1:
        raise ValueError("settlement.jitter_ratio must be in [0, 1)")
    if s.worker_count < 1:
        raise ValueError("settlement.worker_count must be >= 1")
    if s.poll_interval_seconds <= 0:
        raise ValueError("settlement.poll_interval_seconds must be > 0")


def parse_policy(data: dict[str, Any]) -> LedgerPolicy:
    """
    Parse a ``LedgerPolicy`` from the dict form of a policy file.

    Raises:
        KeyError: if config_id or version is missing.
        ValueError: on unknown keys or invalid values.
    """
    unknown = set(data) - _TOP_LEVEL_KEYS
    if unknown:
        raise ValueError(f"Unknown policy sections: {sorted(unknown)}")

    policy = LedgerPolicy(
        config_id=data["config_id"],
        version=int(data["version"]),
        description=data.get("description"),
        checksum=compute_checksum(data),
        **{name: _parse_section(name, data.get(name)) for name in _SECTIONS},
    )
    _validate(policy)
    return policy


def load_policy(path: Path) -> LedgerPolicy:
    """Load and parse a policy YAML file."""
    return parse_policy(load_yaml_file(path))


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
