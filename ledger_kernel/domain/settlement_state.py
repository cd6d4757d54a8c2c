"""
Settlement state machine and retry backoff -- pure functions.

Responsibility:
    The legal edges of the settlement lifecycle and the retry delay policy.
    SettlementService consults this module before every transition; nothing
    here touches the database.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  Randomness for jitter is injected.

Invariants enforced:
    - Only edges listed in VALID_TRANSITIONS are legal.
    - BANK_CONFIRMED can only move on to SETTLED: once the bank has confirmed,
      the payout can no longer fail or be sent again.
    - SETTLED is terminal; FAILED is terminal once retry_count has reached
      max_retries.
    - Retry delay = min(max_delay, initial_delay * multiplier ** retry_count),
      then spread by +/- jitter_ratio.

Lifecycle:

    CREATED -> FUNDS_RESERVED -> SENT_TO_BANK -> BANK_CONFIRMED -> SETTLED
       |             |                |
       +-------------+--------+-------+
                              v
                           FAILED --(retry_count < max)--> RETRIED -> FUNDS_RESERVED
                                                              |
                                                              +--> FAILED
"""

import random
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

from ledger_kernel.models.settlement import SettlementState

VALID_TRANSITIONS: dict[SettlementState, frozenset[SettlementState]] = {
    SettlementState.CREATED: frozenset({SettlementState.FUNDS_RESERVED, SettlementState.FAILED}),
    SettlementState.FUNDS_RESERVED: frozenset({SettlementState.SENT_TO_BANK, SettlementState.FAILED}),
    SettlementState.SENT_TO_BANK: frozenset({SettlementState.BANK_CONFIRMED, SettlementState.FAILED}),
    SettlementState.BANK_CONFIRMED: frozenset({SettlementState.SETTLED}),
    SettlementState.SETTLED: frozenset(),
    SettlementState.FAILED: frozenset({SettlementState.RETRIED}),
    SettlementState.RETRIED: frozenset({SettlementState.FUNDS_RESERVED, SettlementState.FAILED}),
}


def allowed_transitions(state: SettlementState | str) -> frozenset[SettlementState]:
    return VALID_TRANSITIONS[SettlementState(state)]


def can_transition(from_state: SettlementState | str, to_state: SettlementState | str) -> bool:
    return SettlementState(to_state) in allowed_transitions(from_state)


def is_terminal(state: SettlementState | str, retry_count: int, max_retries: int) -> bool:
    """SETTLED always; FAILED once no retries remain."""
    state = SettlementState(state)
    if state == SettlementState.SETTLED:
        return True
    return state == SettlementState.FAILED and retry_count >= max_retries


@dataclass(frozen=True)
class RetryBackoff:
    """
    Exponential backoff with a cap and proportional jitter.

    With the default policy (900 s, x4, cap 14400 s) successive retries wait
    15 minutes, 1 hour, then 4 hours.
    """

    initial_delay_seconds: float = 900
    multiplier: float = 4
    max_delay_seconds: float = 14400
    jitter_ratio: float = 0.1

    def __post_init__(self) -> None:
        if self.initial_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("Retry delays must be non-negative")
        if self.multiplier < 1:
            raise ValueError("Retry multiplier must be >= 1")
        if not 0 <= self.jitter_ratio < 1:
            raise ValueError("jitter_ratio must be in [0, 1)")

    def base_delay_seconds(self, retry_count: int) -> float:
        """Capped delay before jitter for the retry following retry_count failures."""
        if retry_count < 0:
            raise ValueError("retry_count must be non-negative")
        # Cap before exponentiating far enough to overflow
        delay = float(self.initial_delay_seconds)
        for _ in range(retry_count):
            delay *= self.multiplier
            if delay >= self.max_delay_seconds:
                return float(self.max_delay_seconds)
        return min(delay, float(self.max_delay_seconds))

    def delay_seconds(
        self,
        retry_count: int,
        rng: Callable[[], float] = random.random,
    ) -> float:
        """
        Jittered delay.

        rng returns a float in [0, 1); the result lies in
        base * [1 - jitter_ratio, 1 + jitter_ratio].
        """
        base = self.base_delay_seconds(retry_count)
        spread = (rng() * 2 - 1) * self.jitter_ratio
        return max(0.0, base * (1 + spread))

    def delay(self, retry_count: int, rng: Callable[[], float] = random.random) -> timedelta:
        return timedelta(seconds=self.delay_seconds(retry_count, rng))
