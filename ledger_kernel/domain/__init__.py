"""
Pure domain layer: clock, DTOs, settlement lifecycle, reconciliation matching.

Nothing here performs I/O apart from SystemClock reading the system time.
"""

from ledger_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = ["Clock", "DeterministicClock", "SystemClock"]
