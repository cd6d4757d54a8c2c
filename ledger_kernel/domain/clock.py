"""
Clock -- injectable time source.

Responsibility:
    Services, the settlement scheduler and the retry policy never call
    ``datetime.now()`` directly; they receive a Clock.

Architecture position:
    Kernel > Domain -- pure, zero I/O except SystemClock, which is the one
    sanctioned I/O boundary for time.

Audit relevance:
    Every timestamp recorded on transactions, settlements, locks, override
    logs and audit events comes from an injected Clock, so tests can pin
    retry windows and period boundaries exactly.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone


class Clock(ABC):
    """
    Abstract clock interface.

    Guarantees:
        - ``now()`` returns a timezone-aware UTC ``datetime``.
        - ``today()`` is the UTC calendar date of ``now()``.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current UTC time."""
        ...

    def today(self) -> date:
        return self.now().date()


class SystemClock(Clock):
    """Production clock returning the real UTC time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    ``now()`` returns the same value on repeated calls until ``advance()``
    or ``set_time()`` is called.  Safe to share with scheduler threads:
    reads and writes are single attribute assignments.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._current = fixed_time or datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._current

    def set_time(self, time: datetime) -> None:
        """Set the clock to a specific time."""
        self._current = time

    def advance(self, seconds: float = 0, **delta) -> datetime:
        """Advance by seconds (and/or timedelta keyword args); return the new time."""
        self._current = self._current + timedelta(seconds=seconds, **delta)
        return self._current

    def tick(self) -> datetime:
        """Advance by 1 second and return new time."""
        return self.advance(1)
