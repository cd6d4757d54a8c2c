"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Strictly increasing sequence numbers for audit events.  A dedicated
    counter row is locked with ``SELECT ... FOR UPDATE`` so concurrent
    allocations serialize instead of racing on max(seq) + 1.

Architecture position:
    Kernel > Services -- called by AuditorService.

Invariants enforced:
    - Monotonicity: the locked counter row is the sole source of the next
      value.
    - Transactional: the increment is only visible after the caller's
      transaction commits; a rollback returns the value.

Failure modes:
    - IntegrityError on a concurrent first-use race, resolved inside a
      savepoint by re-reading the winner's row.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.sequence import SequenceCounter

logger = get_logger("services.sequence")


class SequenceService:
    """
    Transactional named sequences.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    AUDIT_EVENT = "audit_event"

    def __init__(self, session: Session):
        self._session = session

    def _locked_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """
        Allocate the next value (always > 0) for a named sequence.

        The counter row stays locked until the caller's transaction ends.
        """
        counter = self._locked_counter(sequence_name)

        if counter is None:
            # First use; another session may be creating the row right now
            savepoint = self._session.begin_nested()
            try:
                self._session.add(SequenceCounter(name=sequence_name, current_value=1))
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                savepoint.rollback()
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                counter = self._locked_counter(sequence_name)
                if counter is None:
                    raise

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int:
        """Last allocated value, 0 if the sequence was never used."""
        counter = self._session.execute(
            select(SequenceCounter).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()
        return counter.current_value if counter else 0
