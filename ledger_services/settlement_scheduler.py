"""
Settlement retry scheduling -- in-process poller plus queue workers.

Contract:
    ``SettlementRetryScheduler.tick()`` finds RETRIED settlements whose
    ``next_retry_at`` has passed and puts their ids on a ``queue.Queue``.
    ``SettlementRetryWorker`` threads take ids off the queue and run the
    retry handler (default: ``SettlementService.resume_retry``), each in its
    own session transaction.

    ``SettlementService.retry()`` never executes a retry inline; this module
    is the only place a scheduled retry is picked up again.

Invariants enforced:
    - All timestamps from the injected Clock.
    - An id is enqueued at most once until a worker reports it done.
    - One session per tick and per settlement; commit on success, rollback
      on any failure.
    - Graceful shutdown: the stop signal is honoured between items and the
      item in progress is completed.

Non-goals:
    - NOT a distributed scheduler; run one poller per database.
"""

from __future__ import annotations

import queue
import threading
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from ledger_config.bridges import build_service_stack
from ledger_config.schema import LedgerPolicy
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.dtos import SettlementInfo
from ledger_kernel.exceptions import LedgerKernelError
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.services.settlement_service import SYSTEM_ACTOR_ID, SettlementService

logger = get_logger("services.settlement_scheduler")

RetryHandler = Callable[[SettlementService, UUID, UUID], SettlementInfo]


def resume_settlement(service: SettlementService, settlement_id: UUID, actor_id: UUID) -> SettlementInfo:
    return service.resume_retry(settlement_id, actor_id)


class SettlementRetryScheduler:
    """Polls for settlements due for retry and enqueues them."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        service_factory: Callable[[Session], SettlementService],
        clock: Clock | None = None,
        work_queue: queue.Queue | None = None,
        tenant_id: str | None = None,
        tick_interval_seconds: float = 60,
        batch_size: int = 100,
    ):
        self._session_factory = session_factory
        self._service_factory = service_factory
        self._clock = clock or SystemClock()
        self._queue: queue.Queue = work_queue if work_queue is not None else queue.Queue()
        self._tenant_id = tenant_id
        self._tick_interval = tick_interval_seconds
        self._batch_size = batch_size
        self._pending: set[UUID] = set()
        self._pending_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def queue(self) -> queue.Queue:
        return self._queue

    @property
    def pending(self) -> frozenset[UUID]:
        with self._pending_lock:
            return frozenset(self._pending)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> int:
        """Enqueue due settlements (public for testing).

        Returns the number of ids put on the queue.
        """
        session = self._session_factory()
        try:
            service = self._service_factory(session)
            due = service.get_settlements_due_for_retry(
                now=self._clock.now(),
                tenant_id=self._tenant_id,
                limit=self._batch_size,
            )
            session.commit()
        except Exception:
            session.rollback()
            logger.exception("settlement_retry_tick_failed")
            return 0
        finally:
            session.close()

        enqueued = 0
        for settlement in due:
            if self._stop_event.is_set():
                break
            with self._pending_lock:
                if settlement.id in self._pending:
                    continue
                self._pending.add(settlement.id)
            self._queue.put(settlement.id)
            enqueued += 1
            logger.info(
                "settlement_retry_enqueued",
                extra={
                    "settlement_id": str(settlement.id),
                    "retry_count": settlement.retry_count,
                    "next_retry_at": settlement.next_retry_at.isoformat()
                    if settlement.next_retry_at else None,
                },
            )
        return enqueued

    def mark_done(self, settlement_id: UUID) -> None:
        """Release an id so a later tick may enqueue it again."""
        with self._pending_lock:
            self._pending.discard(settlement_id)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="settlement-retry-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("settlement_scheduler_started", extra={"tick_interval": self._tick_interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the polling thread to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("settlement_scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("settlement_scheduler_tick_exception")
            self._stop_event.wait(timeout=self._tick_interval)


class SettlementRetryWorker:
    """
    Consumes settlement ids from the retry queue.

    Each id runs ``handler(service, settlement_id, actor_id)`` in a fresh
    session.  A kernel error (the settlement moved on, was not found, ...)
    is logged and the item is dropped; the worker keeps running.
    """

    def __init__(
        self,
        work_queue: queue.Queue,
        session_factory: Callable[[], Session],
        service_factory: Callable[[Session], SettlementService],
        handler: RetryHandler = resume_settlement,
        actor_id: UUID = SYSTEM_ACTOR_ID,
        on_done: Callable[[UUID], None] | None = None,
        poll_timeout_seconds: float = 0.5,
        name: str = "settlement-retry-worker",
    ):
        self._queue = work_queue
        self._session_factory = session_factory
        self._service_factory = service_factory
        self._handler = handler
        self._actor_id = actor_id
        self._on_done = on_done
        self._poll_timeout = poll_timeout_seconds
        self._name = name
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.processed = 0
        self.failed = 0

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def process(self, settlement_id: UUID) -> bool:
        """Run the handler for one settlement. Returns True on commit."""
        session = self._session_factory()
        try:
            with LogContext.bind(settlement_id=str(settlement_id)):
                service = self._service_factory(session)
                result = self._handler(service, settlement_id, self._actor_id)
                session.commit()
                self.processed += 1
                logger.info(
                    "settlement_retry_processed",
                    extra={"settlement_id": str(settlement_id), "state": result.state.value},
                )
                return True
        except LedgerKernelError as exc:
            session.rollback()
            self.failed += 1
            logger.warning(
                "settlement_retry_skipped",
                extra={"settlement_id": str(settlement_id), "error_code": exc.code, "error": str(exc)},
            )
            return False
        except Exception:
            session.rollback()
            self.failed += 1
            logger.exception("settlement_retry_failed", extra={"settlement_id": str(settlement_id)})
            return False
        finally:
            session.close()

    def run_once(self, timeout: float | None = None) -> bool:
        """Take one id off the queue and process it. False when the queue stayed empty."""
        try:
            settlement_id = self._queue.get(timeout=self._poll_timeout if timeout is None else timeout)
        except queue.Empty:
            return False
        try:
            self.process(settlement_id)
        finally:
            self._queue.task_done()
            if self._on_done is not None:
                self._on_done(settlement_id)
        return True

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name=self._name, daemon=True)
        self._thread.start()
        logger.info("settlement_worker_started", extra={"worker": self._name})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop; the settlement in progress is finished first."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info(
            "settlement_worker_stopped",
            extra={"worker": self._name, "processed": self.processed, "failed": self.failed},
        )

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("settlement_worker_exception", extra={"worker": self._name})


def build_retry_pipeline(
    session_factory: Callable[[], Session],
    policy: LedgerPolicy,
    clock: Clock | None = None,
    handler: RetryHandler = resume_settlement,
    tenant_id: str | None = None,
) -> tuple[SettlementRetryScheduler, list[SettlementRetryWorker]]:
    """
    Scheduler plus ``policy.settlement.worker_count`` workers sharing one queue.

    Start the workers, then the scheduler; stop in the reverse order.
    """
    clock = clock or SystemClock()

    def service_factory(session: Session) -> SettlementService:
        return build_service_stack(session, policy, clock).settlements

    scheduler = SettlementRetryScheduler(
        session_factory,
        service_factory,
        clock=clock,
        tenant_id=tenant_id,
        tick_interval_seconds=policy.settlement.poll_interval_seconds,
    )
    workers = [
        SettlementRetryWorker(
            scheduler.queue,
            session_factory,
            service_factory,
            handler=handler,
            on_done=scheduler.mark_done,
            name=f"settlement-retry-worker-{n}",
        )
        for n in range(1, policy.settlement.worker_count + 1)
    ]
    return scheduler, workers
