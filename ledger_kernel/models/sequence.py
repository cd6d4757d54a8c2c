"""
Module: ledger_kernel.models.sequence
Responsibility: Named counters for strictly monotonic sequence numbers
    (audit event seq).
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - One row per sequence name; the row is locked FOR UPDATE while a value
      is allocated, so concurrent allocations serialize.
"""

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import Base


class SequenceCounter(Base):
    """Current value of one named sequence."""

    __tablename__ = "sequence_counters"

    # e.g. "audit_event"
    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
