"""File system watcher producing a normalized RawEvent stream.

This module provides:
- WatcherAdapter: Wraps a recursive watchdog observer for one watch root
- scan_tree: Walk an existing tree as CREATED events (initial sync, new dirs)

The adapter filters ignored paths and directory noise before emission and
turns a broken watch into a terminal WatchFailure instead of stopping
silently. The observer is only running while a subscription is being
consumed; it is stopped and joined when the subscription ends.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from filemirror.sync.ignore import IGNORE_FILE_NAME, IgnorePatterns
from filemirror.sync.types import EventKind, RawEvent, WatchFailure

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from watchdog.observers.api import BaseObserver

logger = logging.getLogger(__name__)

# Sentinel pushed by close() to end the subscription
_STOP = object()


def _decode(raw: str | bytes) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return raw


def scan_tree(root: Path, ignore: IgnorePatterns, start: Path | None = None) -> Iterator[RawEvent]:
    """Yield CREATED events for everything below ``start`` (default: root).

    Ignored directories are pruned and not descended into.

    Args:
        root: Watch root the ignore patterns are relative to.
        ignore: Ignore policy.
        start: Directory to walk; must be inside root.
    """
    for dirpath, dirnames, filenames in os.walk(start or root):
        current = Path(dirpath)
        kept = []
        for name in sorted(dirnames):
            child = current / name
            if ignore.should_ignore(child, root):
                continue
            kept.append(name)
            yield RawEvent(path=child, kind=EventKind.CREATED, is_directory=True)
        dirnames[:] = kept
        for name in sorted(filenames):
            child = current / name
            if not ignore.should_ignore(child, root):
                yield RawEvent(path=child, kind=EventKind.CREATED)


class _ForwardingHandler(FileSystemEventHandler):
    """Watchdog handler forwarding every event to the adapter."""

    def __init__(self, adapter: WatcherAdapter) -> None:
        super().__init__()
        self._adapter = adapter

    def on_created(self, event: FileSystemEvent) -> None:
        """Handle created event."""
        self._adapter._handle_event(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        """Handle modified event."""
        self._adapter._handle_event(event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        """Handle deleted event."""
        self._adapter._handle_event(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        """Handle moved event."""
        self._adapter._handle_event(event)


class WatcherAdapter:
    """Recursive watch on one root, exposed as a lazy RawEvent iterator.

    Usage:
        with WatcherAdapter(root, IgnorePatterns()) as watcher:
            for event in watcher.subscribe():
                coalescer.add(event)

    The subscription can be consumed once. ``close()`` may be called from
    any thread and ends the iteration; the observer is released by the
    consuming thread.
    """

    def __init__(
        self,
        root: Path,
        ignore: IgnorePatterns | None = None,
        max_pending: int = 10000,
        poll_interval: float = 0.5,
        observer_factory: Callable[[], BaseObserver] = Observer,
    ) -> None:
        """Initialize the adapter.

        Args:
            root: Directory to watch.
            ignore: Ignore policy; a .mirrorignore file at the root is loaded into it.
            max_pending: Bound on events buffered between OS and consumer.
            poll_interval: Seconds between liveness checks while idle.
            observer_factory: Watchdog observer class (e.g. PollingObserver).
        """
        self._root = Path(root).resolve()
        if not self._root.is_dir():
            raise ValueError(f"Watch path must be a directory: {root}")

        self._ignore = ignore or IgnorePatterns()
        self._ignore.load_from_file(self._root / IGNORE_FILE_NAME)

        self._events: queue.Queue[object] = queue.Queue(maxsize=max_pending)
        self._poll_interval = poll_interval
        self._observer_factory = observer_factory
        self._handler = _ForwardingHandler(self)

        self._lock = threading.Lock()
        self._subscribed = False
        self._closed = False
        self._started = threading.Event()
        self._observer: BaseObserver | None = None

    @property
    def root(self) -> Path:
        """Get the watched directory path."""
        return self._root

    @property
    def ignore(self) -> IgnorePatterns:
        """Get the ignore policy."""
        return self._ignore

    @property
    def is_running(self) -> bool:
        """Check if the OS watch is currently active."""
        observer = self._observer
        return observer is not None and observer.is_alive()

    def wait_started(self, timeout: float | None = None) -> bool:
        """Block until the OS watch is attached.

        Returns:
            True once events are being captured, False on timeout or if
            the subscription ended before the watch started.
        """
        return self._started.wait(timeout) and not self._closed

    def subscribe(self) -> Iterator[RawEvent]:
        """Start watching and return the event stream.

        Returns:
            Infinite iterator of RawEvent; ends when close() is called.

        Raises:
            RuntimeError: If the adapter was already subscribed or closed.
        """
        with self._lock:
            if self._subscribed:
                raise RuntimeError("Watch subscription cannot be restarted; create a new adapter")
            if self._closed:
                raise RuntimeError("Watcher is closed")
            self._subscribed = True
        return self._iterate()

    def close(self) -> None:
        """End the subscription; safe to call from any thread, idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._started.set()
        try:
            self._events.put_nowait(_STOP)
        except queue.Full:
            # The consumer notices _closed on its next poll
            pass

    def _iterate(self) -> Iterator[RawEvent]:
        observer = self._observer_factory()
        try:
            observer.schedule(self._handler, str(self._root), recursive=True)
            observer.start()
        except OSError as e:
            self._closed = True
            self._started.set()
            raise WatchFailure(self._root, str(e)) from e
        self._observer = observer
        self._started.set()
        logger.info("Watching %s", self._root)

        try:
            while True:
                try:
                    item = self._events.get(timeout=self._poll_interval)
                except queue.Empty:
                    if self._closed:
                        return
                    self._check_alive(observer)
                    continue

                if item is _STOP:
                    return
                if isinstance(item, WatchFailure):
                    raise item
                yield item  # type: ignore[misc]
        finally:
            self._closed = True
            self._started.set()
            observer.stop()
            if observer.is_alive():
                observer.join(timeout=5.0)
            self._observer = None
            logger.info("Stopped watching %s", self._root)

    def _check_alive(self, observer: BaseObserver) -> None:
        if not observer.is_alive():
            raise WatchFailure(self._root, "observer thread stopped")
        if not self._root.is_dir():
            raise WatchFailure(self._root, "watch root no longer exists")

    def _emit(self, item: RawEvent | WatchFailure) -> None:
        # Blocks the observer thread while the consumer is behind
        while not self._closed:
            try:
                self._events.put(item, timeout=self._poll_interval)
                return
            except queue.Full:
                logger.warning("Watcher event buffer full, waiting for consumer")

    def _emit_tree(self, directory: Path) -> None:
        """Emit the current contents of a newly appeared directory."""
        try:
            for event in scan_tree(self._root, self._ignore, start=directory):
                self._emit(event)
        except OSError as e:
            logger.debug("Could not scan new directory %s: %s", directory, e)

    def _normalize(self, raw: str | bytes) -> Path:
        return Path(os.path.abspath(_decode(raw)))

    def _is_relevant(self, path: Path) -> bool:
        if path == self._root or self._root not in path.parents:
            return False
        return not self._ignore.should_ignore(path, self._root)

    def _handle_event(self, event: FileSystemEvent) -> None:
        """Normalize, filter and forward one watchdog event."""
        if self._closed:
            return

        path = self._normalize(event.src_path)
        is_directory = event.is_directory
        now = time.monotonic()

        if path == self._root and isinstance(event, DirDeletedEvent | DirMovedEvent):
            self._emit(WatchFailure(self._root, "watch root was removed"))
            return

        if isinstance(event, FileMovedEvent | DirMovedEvent):
            dest = self._normalize(event.dest_path)
            src_ok = self._is_relevant(path)
            dest_ok = self._is_relevant(dest)
            if src_ok and dest_ok:
                self._emit(RawEvent(path, EventKind.RENAMED, now, is_directory, dest))
            elif src_ok:
                self._emit(RawEvent(path, EventKind.REMOVED, now, is_directory))
            elif dest_ok:
                self._emit(RawEvent(dest, EventKind.CREATED, now, is_directory))
            if dest_ok and is_directory:
                self._emit_tree(dest)
            return

        if not self._is_relevant(path):
            return

        if isinstance(event, FileCreatedEvent | DirCreatedEvent):
            self._emit(RawEvent(path, EventKind.CREATED, now, is_directory))
            if is_directory:
                self._emit_tree(path)
        elif isinstance(event, FileModifiedEvent):
            self._emit(RawEvent(path, EventKind.MODIFIED, now))
        elif isinstance(event, DirModifiedEvent):
            # Directory mtime changes carry no content
            return
        elif isinstance(event, FileDeletedEvent | DirDeletedEvent):
            self._emit(RawEvent(path, EventKind.REMOVED, now, is_directory))

    def __enter__(self) -> WatcherAdapter:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()
