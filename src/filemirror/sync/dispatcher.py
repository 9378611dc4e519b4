"""Ordered dispatch of intents to a pool of workers.

This module provides:
- Dispatcher: Per-path FIFO worker pool with retry and dead-lettering
- DispatcherState: Lifecycle of the pool

Ordering rules:
- At most one operation per relative path is admitted at a time (queued
  for execution, in flight or waiting for a retry). Later intents for a
  busy path wait; waiting intents that have not started collapse into the
  newest one.
- A DELETE of a directory, or an UPLOAD that absorbed one, also orders
  against its subtree: it waits for admitted operations below it, and
  operations below it wait for it.
- Unrelated paths run in parallel on ``worker_count`` threads.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import replace
from enum import Enum, auto
from typing import TYPE_CHECKING

from filemirror.core.types import ConnectionState
from filemirror.sync.observability import OperationEvent, OperationOutcome
from filemirror.sync.retry import Retry
from filemirror.sync.types import (
    DispatcherStats,
    FailureKind,
    IntentOp,
    OperationState,
    PendingOperation,
)
from filemirror.sync.workers import WorkerResult, create_worker

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Mapping
    from pathlib import Path

    from filemirror.sync.observability import Sink
    from filemirror.sync.retry import RetryPolicy
    from filemirror.sync.session import Session
    from filemirror.sync.types import Intent
    from filemirror.sync.workers import BaseWorker

logger = logging.getLogger(__name__)


class DispatcherState(Enum):
    """State of the dispatcher."""

    STOPPED = auto()
    RUNNING = auto()
    DRAINING = auto()
    CLOSED = auto()


def _ancestors(path: str) -> Iterator[str]:
    parts = path.split("/")
    for i in range(1, len(parts)):
        yield "/".join(parts[:i])


def _clears_subtree(op: PendingOperation) -> bool:
    return op.op == IntentOp.DELETE or op.intent.replaces_remote


def _blocked_by(op: PendingOperation, busy: Mapping[str, PendingOperation]) -> bool:
    """Check whether an operation must wait for one of ``busy``."""
    path = op.path
    if path in busy:
        return True
    for ancestor in _ancestors(path):
        other = busy.get(ancestor)
        if other is not None and _clears_subtree(other):
            return True
    if _clears_subtree(op):
        prefix = path + "/"
        return any(p.startswith(prefix) for p in busy)
    return False


def _collapse(older: Intent, newer: Intent) -> Intent:
    """Fold a waiting intent into a newer one for the same path.

    One level of history is kept so repeated collapses stay bounded. An
    absorbed DELETE survives the fold because the worker acts on it.
    """
    if newer.replaces_remote:
        return newer
    if newer.op == IntentOp.UPLOAD and older.replaces_remote:
        older = older.supersedes
    return replace(newer, supersedes=replace(older, supersedes=None))


class Dispatcher:
    """Executes intents with per-path ordering, retries and dead letters.

    Usage:
        dispatcher = Dispatcher(session, RetryPolicy(), base_path, worker_count=4)
        dispatcher.start()
        dispatcher.enqueue(Intent("a.txt", IntentOp.UPLOAD))
        dispatcher.wait_idle(timeout=10)
        abandoned = dispatcher.shutdown(grace_period=10)
    """

    def __init__(
        self,
        session: Session,
        retry_policy: RetryPolicy,
        base_path: Path,
        worker_count: int = 4,
        sink: Sink | None = None,
        worker_factory: Callable[[Intent, Session, Path], BaseWorker] = create_worker,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            session: Remote session shared by all workers.
            retry_policy: Decides between retry and dead-letter.
            base_path: Watch root local files are read from.
            worker_count: Number of worker threads.
            sink: Receives an OperationEvent per completion, retry or dead letter.
            worker_factory: Builds the worker for an intent.
        """
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self._session = session
        self._retry_policy = retry_policy
        self._base_path = base_path
        self._worker_count = worker_count
        self._sink = sink
        self._worker_factory = worker_factory

        self._state = DispatcherState.STOPPED
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)

        # Admitted operations, one per path
        self._active: dict[str, PendingOperation] = {}
        # Not yet admitted, in arrival order, one per path
        self._waiting: dict[str, PendingOperation] = {}
        # Paths whose admitted operation may run now
        self._ready: deque[str] = deque()
        # (next_eligible_at, seq, path) for operations waiting to retry
        self._retry_heap: list[tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._in_flight = 0

        self._dead_letters: list[PendingOperation] = []
        self._stats = DispatcherStats()
        self._workers: list[threading.Thread] = []

    # =========================================================================
    # Inspection
    # =========================================================================

    @property
    def state(self) -> DispatcherState:
        """Get the dispatcher state."""
        return self._state

    @property
    def stats(self) -> DispatcherStats:
        """Snapshot of the counters."""
        with self._lock:
            return replace(self._stats)

    @property
    def dead_letters(self) -> list[PendingOperation]:
        """Operations that failed permanently or ran out of attempts."""
        with self._lock:
            return list(self._dead_letters)

    @property
    def dead_letter_count(self) -> int:
        """Number of dead-lettered operations."""
        with self._lock:
            return len(self._dead_letters)

    def dead_letter_paths(self) -> list[str]:
        """Relative paths of the dead-lettered operations, in order."""
        with self._lock:
            return [op.path for op in self._dead_letters]

    @property
    def pending_count(self) -> int:
        """Operations admitted or waiting."""
        with self._lock:
            return len(self._active) + len(self._waiting)

    def is_path_busy(self, path: str) -> bool:
        """Check if an operation for ``path`` is admitted or waiting."""
        with self._lock:
            return path in self._active or path in self._waiting

    def operation(self, path: str) -> PendingOperation | None:
        """Get the admitted operation for a path, if any."""
        with self._lock:
            return self._active.get(path)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the worker threads."""
        with self._lock:
            if self._state != DispatcherState.STOPPED:
                logger.warning("Dispatcher already started")
                return
            self._state = DispatcherState.RUNNING
            for i in range(self._worker_count):
                thread = threading.Thread(
                    target=self._worker_loop,
                    name=f"Dispatcher-{i}",
                    daemon=True,
                )
                thread.start()
                self._workers.append(thread)
        logger.info("Dispatcher started with %d workers", self._worker_count)

    def shutdown(self, grace_period: float = 10.0) -> int:
        """Stop accepting work and drain within the grace period.

        Operations queued or in flight get until the deadline to finish.
        Whatever is left (including operations waiting for a retry that
        falls after the deadline) is abandoned and logged.

        Args:
            grace_period: Seconds to wait for outstanding operations.

        Returns:
            Number of abandoned operations.
        """
        deadline = time.monotonic() + grace_period
        with self._changed:
            if self._state == DispatcherState.CLOSED:
                return 0
            self._state = DispatcherState.DRAINING
            self._changed.notify_all()
            logger.info("Dispatcher draining (grace period %.1fs)", grace_period)

            while self._workers and (self._active or self._waiting):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._changed.wait(timeout=remaining)

            abandoned = list(self._active.values()) + list(self._waiting.values())
            self._active.clear()
            self._waiting.clear()
            self._ready.clear()
            self._retry_heap.clear()
            self._stats.abandoned += len(abandoned)
            self._state = DispatcherState.CLOSED
            self._changed.notify_all()
            workers, self._workers = self._workers, []

        for op in abandoned:
            logger.warning("Abandoned %s %s (%s)", op.op.name, op.path, op.state.name)
        for worker in workers:
            # In-flight transfers past the deadline are not waited for
            worker.join(timeout=max(0.1, deadline - time.monotonic()))
        logger.info("Dispatcher stopped (%d abandoned)", len(abandoned))
        return len(abandoned)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until nothing is admitted, waiting or in flight.

        Returns:
            True if idle, False on timeout.
        """
        with self._changed:
            return self._changed.wait_for(
                lambda: not self._active and not self._waiting and self._in_flight == 0,
                timeout=timeout,
            )

    # =========================================================================
    # Admission
    # =========================================================================

    def enqueue(self, intent: Intent) -> bool:
        """Accept an intent released by the coalescer.

        Args:
            intent: The intent to execute.

        Returns:
            True if accepted, False if the dispatcher is closed.
        """
        path = intent.relative_path
        with self._changed:
            if self._state == DispatcherState.CLOSED:
                logger.warning("Dispatcher closed, dropping %r", intent)
                return False
            self._stats.enqueued += 1

            waiting = self._waiting.get(path)
            if waiting is not None:
                # Not started yet: only the newest local state matters
                waiting.intent = _collapse(waiting.intent, intent)
                self._stats.superseded += 1
                logger.debug("Superseded waiting %r", waiting.intent.supersedes)
                return True

            op = PendingOperation(intent=intent)
            if _blocked_by(op, self._active) or _blocked_by(op, self._waiting):
                self._waiting[path] = op
                logger.debug("Waiting: %r", intent)
            else:
                self._admit(op)
            return True

    def _admit(self, op: PendingOperation) -> None:
        op.state = OperationState.QUEUED
        self._active[op.path] = op
        self._ready.append(op.path)
        self._changed.notify_all()

    def _admit_waiting(self) -> None:
        """Admit waiting operations no longer blocked, in arrival order."""
        skipped: dict[str, PendingOperation] = {}
        for path, op in list(self._waiting.items()):
            if _blocked_by(op, self._active) or _blocked_by(op, skipped):
                skipped[path] = op
                continue
            del self._waiting[path]
            self._admit(op)

    # =========================================================================
    # Workers
    # =========================================================================

    def _worker_loop(self) -> None:
        """Main loop for worker threads."""
        while True:
            with self._changed:
                op = self._next_operation()
            if op is None:
                return
            try:
                self._execute(op)
            except Exception:
                logger.exception("Unexpected error in dispatcher worker")

    def _next_operation(self) -> PendingOperation | None:
        """Wait for a runnable operation (lock held)."""
        while True:
            if self._state == DispatcherState.CLOSED:
                return None

            now = time.monotonic()
            self._promote_due_retries(now)
            if self._ready:
                path = self._ready.popleft()
                op = self._active[path]
                op.state = OperationState.IN_FLIGHT
                op.attempts += 1
                self._in_flight += 1
                return op

            timeout = None
            if self._retry_heap:
                timeout = max(0.0, self._retry_heap[0][0] - now)
            self._changed.wait(timeout=timeout)

    def _promote_due_retries(self, now: float) -> None:
        while self._retry_heap and self._retry_heap[0][0] <= now:
            eligible_at, _, path = heapq.heappop(self._retry_heap)
            op = self._active.get(path)
            if op is not None and op.state == OperationState.RETRYING and op.next_eligible_at == eligible_at:
                op.state = OperationState.QUEUED
                self._ready.append(path)

    def _execute(self, op: PendingOperation) -> None:
        """Run one attempt outside the lock and record the outcome."""
        if self._session.state == ConnectionState.DEGRADED:
            # Backpressure: give the session a chance to recover first
            self._session.wait_ready(timeout=self._retry_policy.backoff_base)

        try:
            worker = self._worker_factory(op.intent, self._session, self._base_path)
            result = worker.execute(op.intent)
        except Exception as e:
            logger.exception("Worker for %s crashed", op.path)
            result = WorkerResult(
                success=False,
                error=f"{type(e).__name__}: {e}",
                failure_kind=FailureKind.PERMANENT,
            )

        with self._changed:
            event = self._resolve(op, result)
        if event is not None:
            self._emit(event)

    def _resolve(self, op: PendingOperation, result: WorkerResult) -> OperationEvent | None:
        """Apply a worker result (lock held)."""
        self._in_flight -= 1
        self._changed.notify_all()
        if self._active.get(op.path) is not op:
            # Abandoned at shutdown while in flight
            return None

        now = time.monotonic()
        latency = now - op.enqueued_at

        if result.success:
            del self._active[op.path]
            if op.op == IntentOp.UPLOAD:
                self._stats.uploads_completed += 1
            else:
                self._stats.deletes_completed += 1
            self._admit_waiting()
            return OperationEvent(op.path, op.op, OperationOutcome.COMPLETED, op.attempts, latency)

        op.last_error = result.error
        op.failure_kind = result.failure_kind or FailureKind.TRANSIENT
        decision = self._retry_policy.decide(op.attempts, op.failure_kind)

        if isinstance(decision, Retry):
            op.state = OperationState.RETRYING
            op.next_eligible_at = now + decision.delay
            heapq.heappush(self._retry_heap, (op.next_eligible_at, next(self._seq), op.path))
            self._stats.retries += 1
            return OperationEvent(
                op.path,
                op.op,
                OperationOutcome.RETRIED,
                op.attempts,
                latency,
                error=op.last_error,
                retry_in=decision.delay,
            )

        op.state = OperationState.DEAD_LETTERED
        del self._active[op.path]
        self._dead_letters.append(op)
        self._stats.dead_lettered += 1
        self._admit_waiting()
        logger.debug("Dead-lettered %r: %s", op, decision.reason)
        return OperationEvent(
            op.path,
            op.op,
            OperationOutcome.DEAD_LETTERED,
            op.attempts,
            latency,
            error=op.last_error,
        )

    def _emit(self, event: OperationEvent) -> None:
        if self._sink is None:
            return
        try:
            self._sink.emit(event)
        except Exception:
            logger.exception("Observability sink failed for %s", event.path)
