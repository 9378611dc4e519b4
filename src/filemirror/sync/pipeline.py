"""Lifecycle host wiring watcher, coalescer, dispatcher and session.

This module provides:
- MirrorPipeline: Builds the pipeline from a config, starts and stops it

Threads while running:
- MirrorWatcher: consumes the watch subscription into the coalescer
- Coalescer: releases settled intents into the dispatcher
- Dispatcher-N: execute intents against the session
- SinkWorker: delivers operation events
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.observers import Observer

from filemirror.credentials import resolve_credentials
from filemirror.sync.coalescer import Coalescer
from filemirror.sync.dispatcher import Dispatcher
from filemirror.sync.ignore import IgnorePatterns
from filemirror.sync.observability import BackgroundSink, LoggingSink
from filemirror.sync.retry import RetryPolicy
from filemirror.sync.session import Session
from filemirror.sync.transports import create_transport
from filemirror.sync.types import PermanentTransferFailure, TransientTransferFailure, WatchFailure
from filemirror.sync.watcher import WatcherAdapter, scan_tree

if TYPE_CHECKING:
    from collections.abc import Callable

    from watchdog.observers.api import BaseObserver

    from filemirror.core.config import MirrorConfig
    from filemirror.credentials import Credentials
    from filemirror.sync.observability import Sink
    from filemirror.sync.transports import Transport

logger = logging.getLogger(__name__)

# Seconds to wait for the OS watch to attach at startup
WATCH_START_TIMEOUT = 10.0


class MirrorPipeline:
    """Mirror one local directory to a remote store.

    Usage:
        pipeline = MirrorPipeline(config)
        pipeline.start()
        failure = pipeline.wait()  # until shutdown or a watch failure
        pipeline.shutdown()
    """

    def __init__(
        self,
        config: MirrorConfig,
        transport: Transport | None = None,
        credentials: Credentials | None = None,
        sink: Sink | None = None,
        observer_factory: Callable[[], BaseObserver] = Observer,
    ) -> None:
        """Build every component from the config.

        Args:
            config: Validated configuration.
            transport: Remote transport (default: from ``config.protocol``).
            credentials: Login data (default: config or keyring).
            sink: Event sink, run in the background (default: LoggingSink).
            observer_factory: Watchdog observer class.

        Raises:
            ConfigurationError: If credentials cannot be resolved.
        """
        self._config = config

        ignore = IgnorePatterns(list(config.ignore_patterns))
        if config.log_file:
            # Our own log writes must not be mirrored
            ignore.add_path(Path(config.log_file))
        self._ignore = ignore
        self._watcher = WatcherAdapter(config.local_path, ignore, observer_factory=observer_factory)
        root = self._watcher.root

        self._session = Session(
            transport or create_transport(config),
            credentials or resolve_credentials(config),
            remote_root=config.remote_path,
        )
        self._sink = BackgroundSink(sink or LoggingSink())
        self._dispatcher = Dispatcher(
            self._session,
            RetryPolicy.from_config(config),
            root,
            worker_count=config.worker_count,
            sink=self._sink,
        )
        self._coalescer = Coalescer(root, config.debounce_window, release=self._dispatcher.enqueue)

        self._lock = threading.Lock()
        self._consumer: threading.Thread | None = None
        self._done = threading.Event()
        self._failure: BaseException | None = None
        self._started = False
        self._stopped = False

    @property
    def config(self) -> MirrorConfig:
        """Get the configuration."""
        return self._config

    @property
    def session(self) -> Session:
        """Get the remote session."""
        return self._session

    @property
    def dispatcher(self) -> Dispatcher:
        """Get the dispatcher."""
        return self._dispatcher

    @property
    def coalescer(self) -> Coalescer:
        """Get the coalescer."""
        return self._coalescer

    @property
    def watcher(self) -> WatcherAdapter:
        """Get the watcher adapter."""
        return self._watcher

    @property
    def failure(self) -> BaseException | None:
        """Error that stopped change detection, if any."""
        return self._failure or self._coalescer.error

    @property
    def is_running(self) -> bool:
        """Check if the pipeline is started and not stopped."""
        return self._started and not self._stopped

    def start(self, initial_sync: bool | None = None) -> None:
        """Connect, start every stage and optionally upload the existing tree.

        A transient connection failure is not fatal: operations retry until
        the remote comes back. Anything else aborts startup with nothing
        left running.

        Args:
            initial_sync: Override ``config.initial_sync``.

        Raises:
            PermanentTransferFailure: If the remote rejects the connection.
            WatchFailure: If the watch cannot be attached.
        """
        with self._lock:
            if self._started:
                raise RuntimeError("Pipeline already started")
            self._started = True

        logger.info("Mirroring %s -> %s", self._config.local_path, self._config.remote_url)
        try:
            self._session.connect()
        except TransientTransferFailure as e:
            logger.warning("Remote unavailable, will keep retrying: %s", e)
        except PermanentTransferFailure:
            self._stopped = True
            self._session.close()
            raise

        self._sink.start()
        self._dispatcher.start()
        self._coalescer.start()
        self._consumer = threading.Thread(target=self._consume, name="MirrorWatcher", daemon=True)
        self._consumer.start()

        if not self._watcher.wait_started(timeout=WATCH_START_TIMEOUT):
            self._consumer.join(timeout=1.0)
            failure = self._failure or WatchFailure(self._config.local_path, "watch did not start")
            self.shutdown(grace_period=0)
            raise failure

        if self._config.initial_sync if initial_sync is None else initial_sync:
            self._initial_sync()

    def _initial_sync(self) -> None:
        """Feed the existing tree to the coalescer as CREATED events."""
        count = self._coalescer.add_all(scan_tree(self._watcher.root, self._ignore))
        logger.info("Initial sync: %d paths scheduled", count)

    def _consume(self) -> None:
        """Consume the watch subscription until it ends or fails."""
        try:
            for event in self._watcher.subscribe():
                self._coalescer.add(event)
        except WatchFailure as e:
            logger.error("%s", e)
            self._failure = e
        except Exception as e:
            logger.exception("Watcher consumer crashed")
            self._failure = e
        finally:
            self._done.set()

    def wait(self, timeout: float | None = None) -> BaseException | None:
        """Block until change detection stops (failure or shutdown).

        Args:
            timeout: Maximum seconds to wait.

        Returns:
            The failure that stopped the pipeline, or None.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._done.is_set() and self._coalescer.error is None:
            remaining = 0.5 if deadline is None else min(0.5, deadline - time.monotonic())
            if remaining <= 0:
                break
            self._done.wait(remaining)
        return self.failure

    def shutdown(self, grace_period: float | None = None) -> int:
        """Stop in order: watcher, coalescer, dispatcher, session and sink.

        Args:
            grace_period: Seconds for outstanding operations (default from config).

        Returns:
            Number of operations abandoned at the deadline.
        """
        with self._lock:
            if self._stopped or not self._started:
                return 0
            self._stopped = True
        grace = self._config.grace_period if grace_period is None else grace_period
        logger.info("Shutting down")

        self._watcher.close()
        if self._consumer is not None:
            self._consumer.join(timeout=5.0)

        self._coalescer.stop(flush=self._config.flush_on_shutdown)
        abandoned = self._dispatcher.shutdown(grace)
        self._session.close()
        self._sink.close()

        stats = self._dispatcher.stats
        logger.info(
            "Stopped: %d completed, %d dead-lettered, %d abandoned",
            stats.completed,
            stats.dead_lettered,
            abandoned,
        )
        return abandoned

    def __enter__(self) -> MirrorPipeline:
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.shutdown()

