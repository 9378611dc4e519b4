"""Operation events and the sinks that consume them.

This module provides:
- OperationOutcome: Closed set of terminal and retry outcomes
- OperationEvent: One record per executed attempt that completed, retried or gave up
- Sink: Protocol for event consumers
- LoggingSink: Writes events to the standard logger
- BackgroundSink: Fire-and-forget wrapper running a sink on its own thread
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from filemirror.sync.types import IntentOp

logger = logging.getLogger(__name__)


class OperationOutcome(Enum):
    """What happened to an operation attempt."""

    COMPLETED = "completed"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class OperationEvent:
    """Observable record of one dispatcher decision.

    Attributes:
        path: Relative path of the operation.
        operation: UPLOAD or DELETE.
        outcome: COMPLETED, RETRIED or DEAD_LETTERED.
        attempts: Attempts made so far.
        latency: Seconds since the dispatcher accepted the intent.
        error: Failure message, if the attempt failed.
        retry_in: Delay before the next attempt, for RETRIED events.
    """

    path: str
    operation: IntentOp
    outcome: OperationOutcome
    attempts: int
    latency: float
    error: str | None = None
    retry_in: float | None = None


class Sink(Protocol):
    """Consumer of operation events."""

    def emit(self, event: OperationEvent) -> None:
        """Record one event; must not block for long."""
        ...

    def close(self) -> None:
        """Release resources."""
        ...


class LoggingSink:
    """Sink writing one log line per event.

    Completed operations log at INFO, retries at WARNING and dead letters
    at ERROR.
    """

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def emit(self, event: OperationEvent) -> None:
        """Log the event."""
        op = event.operation.name.lower()
        if event.outcome == OperationOutcome.COMPLETED:
            self._log.info(
                "%s %s completed (attempts=%d, %.3fs)", op, event.path, event.attempts, event.latency
            )
        elif event.outcome == OperationOutcome.RETRIED:
            self._log.warning(
                "%s %s failed (attempt %d), retrying in %.2fs: %s",
                op,
                event.path,
                event.attempts,
                event.retry_in or 0.0,
                event.error,
            )
        else:
            self._log.error(
                "%s %s dead-lettered after %d attempts: %s", op, event.path, event.attempts, event.error
            )

    def close(self) -> None:
        """Nothing to release."""


# Sentinel ending the background thread
_STOP = object()


class BackgroundSink:
    """Runs another sink on a dedicated thread.

    ``emit`` never blocks the caller: when the bounded queue is full the
    event is dropped and counted, with a warning.

    Usage:
        sink = BackgroundSink(LoggingSink())
        sink.start()
        sink.emit(event)
        sink.close()
    """

    def __init__(self, sink: Sink, max_queue: int = 1000) -> None:
        """Initialize the wrapper.

        Args:
            sink: The sink receiving events on the background thread.
            max_queue: Events buffered before new ones are dropped.
        """
        self._sink = sink
        self._queue: queue.Queue[object] = queue.Queue(maxsize=max_queue)
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._dropped = 0

    @property
    def dropped(self) -> int:
        """Number of events dropped because the queue was full."""
        return self._dropped

    def start(self) -> None:
        """Start the delivery thread."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="SinkWorker", daemon=True)
        self._thread.start()

    def emit(self, event: OperationEvent) -> None:
        """Queue the event, dropping it if the queue is full."""
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            with self._lock:
                self._dropped += 1
                dropped = self._dropped
            # Warn on the first drop and then every 100
            if dropped == 1 or dropped % 100 == 0:
                logger.warning("Observability queue full, %d events dropped so far", dropped)

    def close(self, timeout: float = 5.0) -> None:
        """Deliver queued events, stop the thread and close the wrapped sink."""
        thread, self._thread = self._thread, None
        if thread is not None:
            self._queue.put(_STOP)
            thread.join(timeout=timeout)
        self._sink.close()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            try:
                self._sink.emit(item)  # type: ignore[arg-type]
            except Exception:
                logger.exception("Observability sink failed")
