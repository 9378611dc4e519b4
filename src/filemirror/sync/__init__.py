"""Change detection and reliable dispatch to the remote store.

Architecture:
    WatcherAdapter → Coalescer → Dispatcher → Session → Transport

Components:
- **WatcherAdapter**: Recursive watchdog subscription producing RawEvents
- **Coalescer**: Debounces events per path and merges them into Intents
- **Dispatcher**: Per-path ordered worker pool with retry and dead letters
- **Session**: Owns the remote connection, reconnects, atomic primitives
- **RetryPolicy**: Pure retry / dead-letter decision
- **MirrorPipeline**: Wires the stages together and runs their lifecycle
"""

from filemirror.sync.coalescer import Coalescer, merge_intent
from filemirror.sync.dispatcher import Dispatcher, DispatcherState
from filemirror.sync.ignore import DEFAULT_IGNORE_PATTERNS, IgnorePatterns
from filemirror.sync.observability import (
    BackgroundSink,
    LoggingSink,
    OperationEvent,
    OperationOutcome,
    Sink,
)
from filemirror.sync.pipeline import MirrorPipeline
from filemirror.sync.retry import DeadLetter, Retry, RetryDecision, RetryPolicy
from filemirror.sync.session import Session
from filemirror.sync.types import (
    DispatcherStats,
    EventKind,
    FailureKind,
    Intent,
    IntentOp,
    OperationState,
    PendingOperation,
    PermanentTransferFailure,
    RawEvent,
    TransferFailure,
    TransientTransferFailure,
    WatchFailure,
)
from filemirror.sync.watcher import WatcherAdapter, scan_tree

__all__ = [
    # Stages
    "Coalescer",
    "Dispatcher",
    "DispatcherState",
    "MirrorPipeline",
    "Session",
    "WatcherAdapter",
    "merge_intent",
    "scan_tree",
    # Ignore
    "DEFAULT_IGNORE_PATTERNS",
    "IgnorePatterns",
    # Retry
    "DeadLetter",
    "Retry",
    "RetryDecision",
    "RetryPolicy",
    # Observability
    "BackgroundSink",
    "LoggingSink",
    "OperationEvent",
    "OperationOutcome",
    "Sink",
    # Types
    "DispatcherStats",
    "EventKind",
    "FailureKind",
    "Intent",
    "IntentOp",
    "OperationState",
    "PendingOperation",
    "PermanentTransferFailure",
    "RawEvent",
    "TransferFailure",
    "TransientTransferFailure",
    "WatchFailure",
]
