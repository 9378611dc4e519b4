"""Debouncing coalescer turning raw events into minimal intents.

This module provides:
- Coalescer: Per-path debounce timers plus the intent merge table
- merge_intent: The merge table as a pure function

Every event for a path (re)starts that path's timer. When a path's timer
expires with no further events, its merged intent is released to the
dispatcher. Merge table:

    | Pending | Event            | Result                          |
    |---------|------------------|---------------------------------|
    | none    | CREATED/MODIFIED | UPLOAD                          |
    | none    | REMOVED          | DELETE                          |
    | UPLOAD  | CREATED/MODIFIED | UPLOAD (timer refreshed only)   |
    | UPLOAD  | REMOVED          | DELETE, supersedes the UPLOAD   |
    | DELETE  | CREATED/MODIFIED | UPLOAD, supersedes the DELETE   |
    | DELETE  | REMOVED          | DELETE                          |

A rename is a REMOVED of the source plus a CREATED of the destination,
each merged independently. A path deleted and recreated within one window
collapses to a single UPLOAD that keeps the DELETE in ``supersedes``, so
the worker can clear a remote entry of the other type first.
"""

from __future__ import annotations

import heapq
import logging
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING

from filemirror.sync.types import EventKind, Intent, IntentOp, RawEvent

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

logger = logging.getLogger(__name__)

_EVENT_OPS = {
    EventKind.CREATED: IntentOp.UPLOAD,
    EventKind.MODIFIED: IntentOp.UPLOAD,
    EventKind.REMOVED: IntentOp.DELETE,
}


def merge_intent(pending: Intent | None, relative_path: str, kind: EventKind) -> Intent:
    """Apply one event to the pending intent of a path.

    Args:
        pending: The path's current intent, if any.
        relative_path: Path the event refers to.
        kind: CREATED, MODIFIED or REMOVED.

    Returns:
        The merged intent (``pending`` itself when nothing changes).
    """
    op = _EVENT_OPS[kind]
    if pending is None:
        return Intent(relative_path, op)
    if pending.op == op:
        return pending
    if pending.supersedes is not None:
        pending = replace(pending, supersedes=None)
    return Intent(relative_path, op, supersedes=pending)


class Coalescer:
    """Batches raw events per path over a debounce window.

    At most one intent per relative path is pending at any time. The pure
    part (``add``, ``release_due``, ``flush``) takes explicit timestamps so
    it can be driven deterministically; ``start()`` runs a timer thread
    that releases due intents to the ``release`` callback.

    Usage:
        coalescer = Coalescer(root, window=0.5, release=dispatcher.enqueue)
        coalescer.start()
        for event in watcher.subscribe():
            coalescer.add(event)
        coalescer.stop(flush=True)
    """

    def __init__(
        self,
        root: Path,
        window: float,
        release: Callable[[Intent], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the coalescer.

        Args:
            root: Watch root relative paths are computed against.
            window: Debounce window in seconds.
            release: Callback receiving released intents (timer thread only).
            clock: Monotonic time source.
        """
        if window <= 0:
            raise ValueError("Debounce window must be positive")
        self._root = Path(root)
        self._window = window
        self._release = release
        self._clock = clock

        self._lock = threading.Lock()
        self._wakeup = threading.Condition(self._lock)
        self._pending: dict[str, Intent] = {}
        self._deadlines: dict[str, float] = {}
        # Lazy-deletion heap of (deadline, path); stale entries are skipped
        self._heap: list[tuple[float, str]] = []

        self._thread: threading.Thread | None = None
        self._running = False
        self._error: Exception | None = None

    @property
    def window(self) -> float:
        """Get the debounce window in seconds."""
        return self._window

    @property
    def pending_count(self) -> int:
        """Number of paths with a pending intent."""
        with self._lock:
            return len(self._pending)

    @property
    def error(self) -> Exception | None:
        """Exception that stopped the timer thread, if any."""
        return self._error

    def pending(self, relative_path: str) -> Intent | None:
        """Get the pending intent for a path, if any."""
        with self._lock:
            return self._pending.get(relative_path)

    def relative(self, path: Path) -> str | None:
        """Posix path relative to the root, or None if outside it."""
        try:
            rel = path.relative_to(self._root)
        except ValueError:
            return None
        rel_str = rel.as_posix()
        return None if rel_str in ("", ".") else rel_str

    def add(self, event: RawEvent, now: float | None = None) -> None:
        """Merge a raw event into the pending set and restart its timer.

        Args:
            event: The raw event.
            now: Timestamp to use instead of the clock.
        """
        now = self._clock() if now is None else now
        if event.kind == EventKind.RENAMED:
            if event.dest_path is None:
                raise ValueError(f"Rename event without destination: {event.path}")
            self._merge(event.path, EventKind.REMOVED, now)
            self._merge(event.dest_path, EventKind.CREATED, now)
        else:
            self._merge(event.path, event.kind, now)

    def add_all(self, events: Iterable[RawEvent], now: float | None = None) -> int:
        """Merge a batch of events; returns how many were merged."""
        count = 0
        for event in events:
            self.add(event, now)
            count += 1
        return count

    def _merge(self, path: Path, kind: EventKind, now: float) -> None:
        rel = self.relative(path)
        if rel is None:
            logger.warning("Ignoring event outside watch root %s: %s", self._root, path)
            return

        deadline = now + self._window
        with self._lock:
            old = self._pending.get(rel)
            merged = merge_intent(old, rel, kind)
            self._pending[rel] = merged
            self._deadlines[rel] = deadline
            heapq.heappush(self._heap, (deadline, rel))
            self._wakeup.notify()

        if old is not None and merged is not old:
            logger.debug("Coalesced %s: %s -> %s", rel, old.op.name, merged.op.name)

    def next_deadline(self) -> float | None:
        """Earliest pending deadline, or None if nothing is pending."""
        with self._lock:
            return self._peek_deadline()

    def _peek_deadline(self) -> float | None:
        while self._heap:
            deadline, rel = self._heap[0]
            if self._deadlines.get(rel) == deadline:
                return deadline
            heapq.heappop(self._heap)
        return None

    def release_due(self, now: float | None = None) -> list[Intent]:
        """Remove and return intents whose timers have expired.

        Args:
            now: Timestamp to use instead of the clock.

        Returns:
            Due intents, in deadline order.
        """
        now = self._clock() if now is None else now
        released = []
        with self._lock:
            while True:
                deadline = self._peek_deadline()
                if deadline is None or deadline > now:
                    break
                _, rel = heapq.heappop(self._heap)
                del self._deadlines[rel]
                released.append(self._pending.pop(rel))
        return released

    def flush(self) -> list[Intent]:
        """Remove and return every pending intent regardless of timers."""
        with self._lock:
            intents = sorted(self._pending.values(), key=lambda i: self._deadlines[i.relative_path])
            self._pending.clear()
            self._deadlines.clear()
            self._heap.clear()
        return intents

    def discard(self) -> int:
        """Drop every pending intent; returns how many were dropped."""
        with self._lock:
            count = len(self._pending)
            self._pending.clear()
            self._deadlines.clear()
            self._heap.clear()
        if count:
            logger.warning("Discarded %d pending intents", count)
        return count

    # =========================================================================
    # Timer thread
    # =========================================================================

    def start(self) -> None:
        """Start the timer thread releasing due intents."""
        if self._release is None:
            raise RuntimeError("Coalescer has no release callback")
        with self._lock:
            if self._running:
                logger.warning("Coalescer already running")
                return
            self._running = True
        self._thread = threading.Thread(target=self._run, name="Coalescer", daemon=True)
        self._thread.start()
        logger.debug("Coalescer started (window=%.3fs)", self._window)

    def stop(self, flush: bool = True, timeout: float = 5.0) -> int:
        """Stop the timer thread and resolve remaining intents.

        Args:
            flush: Release remaining intents (True) or discard them (False).
            timeout: Maximum time to wait for the thread.

        Returns:
            Number of intents released or discarded at stop.
        """
        with self._lock:
            self._running = False
            self._wakeup.notify_all()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None

        if not flush:
            return self.discard()

        intents = self.flush()
        for intent in intents:
            self._deliver(intent)
        if intents:
            logger.info("Flushed %d pending intents at shutdown", len(intents))
        return len(intents)

    def _run(self) -> None:
        """Timer loop: sleep until the earliest deadline, release, repeat."""
        while True:
            with self._lock:
                if not self._running:
                    return
                deadline = self._peek_deadline()
                timeout = None if deadline is None else max(0.0, deadline - self._clock())
                if timeout is None or timeout > 0:
                    self._wakeup.wait(timeout=timeout)
                    continue

            try:
                for intent in self.release_due():
                    self._deliver(intent)
            except Exception as e:
                logger.exception("Coalescer stopped: could not release intents")
                with self._lock:
                    self._error = e
                    self._running = False
                return

    def _deliver(self, intent: Intent) -> None:
        logger.debug("Releasing %r", intent)
        self._release(intent)  # type: ignore[misc]
