"""Bounded single-flight job queue.

Each JobQueue runs its items one at a time on a background worker thread.
Work is looked up in an explicit handler table keyed by operation kind, and
every handler receives the job id plus a CancellationToken it is expected to
poll. The queue knows nothing about what the jobs do.

Item lifecycle::

    queued -> processing -> completed | failed

Cancelling a queued item removes it; cancelling the processing item only sets
its token, and the handler decides how to stop.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import threading
import time
from collections import OrderedDict, deque
from datetime import datetime
from typing import Callable, Deque, Hashable, Iterable, List, Mapping, Optional, Tuple

from .logging_config import get_logger
from .utils import utc_now


class QueueFullError(Exception):
    """Raised by enqueue when the queue is at capacity."""


class QueueItemStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class CancelOutcome(str, enum.Enum):
    REQUESTED = "requested"  # token set on the running item
    REMOVED = "removed"      # queued item dropped before it started
    NOT_FOUND = "not_found"


@dataclasses.dataclass
class CancellationToken:
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


@dataclasses.dataclass
class QueueItem:
    job_id: str
    operation: Hashable
    status: QueueItemStatus = QueueItemStatus.QUEUED
    queued_at: datetime = dataclasses.field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    token: CancellationToken = dataclasses.field(default_factory=CancellationToken, repr=False)

    def to_dict(self) -> dict:
        operation = getattr(self.operation, "value", self.operation)
        return {
            "job_id": self.job_id,
            "operation": operation,
            "status": self.status.value,
            "queued_at": self.queued_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
        }


Handler = Callable[[str, CancellationToken], None]


class JobQueue:
    """Sequential executor with a capacity limit and idempotent enqueue.

    Capacity counts the queued items plus the one being processed. Finished
    items are kept in a short history so their outcome can still be looked up.
    """

    def __init__(
        self,
        name: str,
        handlers: Mapping[Hashable, Handler],
        max_size: int = 20,
        logger: Optional[logging.Logger] = None,
        history_size: int = 100,
    ):
        if max_size < 1:
            raise ValueError(f"max_size must be positive, got {max_size}")
        self.name = name
        self._handlers = dict(handlers)
        self._max_size = max_size
        self._logger = logger or get_logger(__name__)
        self._history_size = history_size

        self._cond = threading.Condition()
        self._queued: Deque[QueueItem] = deque()
        self._current: Optional[QueueItem] = None
        self._history: "OrderedDict[Tuple[str, Hashable], QueueItem]" = OrderedDict()
        self._worker: Optional[threading.Thread] = None
        self._stopping = False

    # --- introspection ---

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def length(self) -> int:
        with self._cond:
            return len(self._queued) + (1 if self._current else 0)

    def status(self, job_id: str) -> Optional[QueueItem]:
        """Latest item for job_id: processing, queued, or recently finished."""
        with self._cond:
            if self._current and self._current.job_id == job_id:
                return self._current
            for item in self._queued:
                if item.job_id == job_id:
                    return item
            for (hist_job_id, _), item in reversed(self._history.items()):
                if hist_job_id == job_id:
                    return item
        return None

    def snapshot(self) -> dict:
        with self._cond:
            return {
                "name": self.name,
                "length": len(self._queued) + (1 if self._current else 0),
                "max_size": self._max_size,
                "processing": self._current.to_dict() if self._current else None,
                "queued": [item.to_dict() for item in self._queued],
            }

    # --- submission ---

    def _find_active(self, job_id: str, operation: Hashable) -> Optional[QueueItem]:
        current = self._current
        if current and current.job_id == job_id and current.operation == operation:
            return current
        for item in self._queued:
            if item.job_id == job_id and item.operation == operation:
                return item
        return None

    def enqueue(self, job_id: str, operation: Hashable) -> QueueItem:
        """Queue a job, or return the existing entry if it is already queued or running.

        Raises QueueFullError at capacity.
        """
        if operation not in self._handlers:
            raise ValueError(f"[{self.name}] no handler for operation {operation!r}")

        with self._cond:
            if self._stopping:
                raise RuntimeError(f"[{self.name}] queue is shut down")

            existing = self._find_active(job_id, operation)
            if existing is not None:
                return existing

            length = len(self._queued) + (1 if self._current else 0)
            if length >= self._max_size:
                raise QueueFullError(
                    f"{self.name} queue is full ({length}/{self._max_size}); try again later"
                )

            item = QueueItem(job_id=job_id, operation=operation)
            self._queued.append(item)
            position = len(self._queued)
            self._ensure_worker()
            self._cond.notify_all()

        self._logger.info(f"[{self.name}] queued {job_id} ({_op_name(operation)}), position {position}")
        return item

    def recover(self, candidates: Iterable[Tuple[str, Hashable]]) -> List[QueueItem]:
        """Re-submit jobs found interrupted at startup. Jobs that do not fit are skipped."""
        recovered = []
        for job_id, operation in candidates:
            try:
                recovered.append(self.enqueue(job_id, operation))
            except QueueFullError as exc:
                self._logger.warning(f"[{self.name}] could not recover {job_id}: {exc}")
        if recovered:
            self._logger.info(f"[{self.name}] recovered {len(recovered)} interrupted job(s)")
        return recovered

    def cancel(self, job_id: str) -> CancelOutcome:
        with self._cond:
            if self._current and self._current.job_id == job_id:
                self._current.token.cancel()
                outcome = CancelOutcome.REQUESTED
            else:
                outcome = CancelOutcome.NOT_FOUND
                for item in list(self._queued):
                    if item.job_id == job_id:
                        self._queued.remove(item)
                        outcome = CancelOutcome.REMOVED
                if outcome is CancelOutcome.REMOVED:
                    self._cond.notify_all()

        if outcome is not CancelOutcome.NOT_FOUND:
            self._logger.info(f"[{self.name}] cancel {job_id}: {outcome.value}")
        return outcome

    # --- lifecycle ---

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is queued or running. False on timeout."""
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._queued and self._current is None, timeout
            )

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop after the running item; queued items are left for recovery."""
        with self._cond:
            self._stopping = True
            worker = self._worker
            self._cond.notify_all()
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout)

    def _ensure_worker(self) -> None:
        # Caller holds the lock
        if self._worker is None or not self._worker.is_alive():
            self._worker = threading.Thread(
                target=self._run, name=f"{self.name}-worker", daemon=True
            )
            self._worker.start()

    def _run(self) -> None:
        while True:
            with self._cond:
                if self._stopping or not self._queued:
                    self._worker = None
                    self._cond.notify_all()
                    return
                item = self._queued.popleft()
                item.status = QueueItemStatus.PROCESSING
                item.started_at = utc_now()
                self._current = item

            try:
                self._execute(item)
            finally:
                with self._cond:
                    self._current = None
                    self._remember(item)
                    self._cond.notify_all()

            # Let other threads run between items
            time.sleep(0)

    def _execute(self, item: QueueItem) -> None:
        handler = self._handlers[item.operation]
        self._logger.debug(f"[{self.name}] starting {item.job_id} ({_op_name(item.operation)})")
        try:
            handler(item.job_id, item.token)
        except Exception as exc:
            item.status = QueueItemStatus.FAILED
            item.error = str(exc) or type(exc).__name__
            self._logger.error(f"✗ [{self.name}] {item.job_id} failed: {item.error}")
        else:
            item.status = QueueItemStatus.COMPLETED
            self._logger.debug(f"✓ [{self.name}] {item.job_id} finished")
        finally:
            item.completed_at = utc_now()

    def _remember(self, item: QueueItem) -> None:
        key = (item.job_id, item.operation)
        self._history.pop(key, None)
        self._history[key] = item
        while len(self._history) > self._history_size:
            self._history.popitem(last=False)


def _op_name(operation: Hashable) -> str:
    return str(getattr(operation, "value", operation))
