"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Common constructor and session-handling contract for every kernel
    service.  Services receive a SQLAlchemy ``Session`` and use
    ``session.flush()`` -- never ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Transaction boundaries: services flush within the caller's transaction
      and never commit or rollback themselves.  The caller (the operator
      facade, a scheduler worker, or a test harness) owns commit/rollback,
      so a posting, its lock/period checks, its override log row and its
      audit event are one atomic unit.

Failure modes:
    - A subclass that commits breaks the atomicity of multi-step operations
      such as settlement confirmation (state change + ledger posting).
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from ledger_kernel.db.base import Base
from ledger_kernel.domain.clock import Clock, SystemClock

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for all kernel services.

    Contract:
        Accepts a ``Session`` from the caller and an optional ``Clock``.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT provide read-model queries -- those belong in
          ``ledger_kernel/selectors/``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
