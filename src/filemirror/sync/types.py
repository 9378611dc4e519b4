"""Shared types and dataclasses for the mirror pipeline.

This module provides:
- EventKind, RawEvent: Normalized filesystem notifications
- IntentOp, Intent: Minimal remote mutations released by the coalescer
- OperationState, PendingOperation: Dispatcher bookkeeping per intent
- FailureKind: Classification of transfer failures
- WatchFailure, TransferFailure (Transient/Permanent): Exception taxonomy
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum, auto
from pathlib import Path

from filemirror.core.types import MirrorError

# =============================================================================
# Errors
# =============================================================================


class FailureKind(IntEnum):
    """How a failed remote operation should be treated."""

    TRANSIENT = auto()  # Connection/timeout, retried with backoff
    PERMANENT = auto()  # Rejected or irrecoverable, dead-lettered


class WatchFailure(MirrorError):
    """The OS-level watch subscription for a root broke.

    Fatal to that root; the lifecycle host decides whether to restart the
    whole watch or abort.
    """

    def __init__(self, root: Path, message: str) -> None:
        self.root = root
        super().__init__(f"Watch on {root} failed: {message}")


class TransferFailure(MirrorError):
    """A remote operation failed.

    Attributes:
        kind: TRANSIENT or PERMANENT.
        path: Remote or relative path the operation targeted, if known.
    """

    kind: FailureKind = FailureKind.TRANSIENT

    def __init__(self, message: str, path: str | None = None) -> None:
        self.path = path
        super().__init__(message)


class TransientTransferFailure(TransferFailure):
    """Network or timeout failure; the operation may succeed if retried."""

    kind = FailureKind.TRANSIENT


class PermanentTransferFailure(TransferFailure):
    """The remote rejected the operation or the local source vanished."""

    kind = FailureKind.PERMANENT


# =============================================================================
# Watcher / Coalescer Types
# =============================================================================


class EventKind(Enum):
    """Kind of raw filesystem notification."""

    CREATED = "created"
    MODIFIED = "modified"
    REMOVED = "removed"
    RENAMED = "renamed"


@dataclass(frozen=True)
class RawEvent:
    """A normalized filesystem notification.

    Attributes:
        path: Absolute path the event refers to (source path for renames).
        kind: What happened.
        observed_at: Monotonic timestamp when the event was observed.
        is_directory: Whether the path is a directory.
        dest_path: Destination path, for RENAMED events only.
    """

    path: Path
    kind: EventKind
    observed_at: float = field(default_factory=time.monotonic)
    is_directory: bool = False
    dest_path: Path | None = None


class IntentOp(Enum):
    """Remote mutation an intent resolves to."""

    UPLOAD = "upload"
    DELETE = "delete"


@dataclass(frozen=True)
class Intent:
    """The minimal remote mutation for one relative path.

    Attributes:
        relative_path: Posix-style path relative to the watch root.
        op: UPLOAD or DELETE.
        supersedes: The intent this one replaced, if it was merged.
    """

    relative_path: str
    op: IntentOp
    supersedes: Intent | None = field(default=None, compare=False)

    @property
    def replaces_remote(self) -> bool:
        """Whether this is an UPLOAD that absorbed a DELETE of the same path.

        The path was removed and recreated locally, possibly as the other
        type (file vs directory), so the remote entry cannot be trusted.
        """
        return (
            self.op == IntentOp.UPLOAD
            and self.supersedes is not None
            and self.supersedes.op == IntentOp.DELETE
        )

    def __repr__(self) -> str:
        return f"Intent({self.op.name}, {self.relative_path!r})"


# =============================================================================
# Dispatcher Types
# =============================================================================


class OperationState(IntEnum):
    """Lifecycle state of a pending operation."""

    QUEUED = auto()
    IN_FLIGHT = auto()
    RETRYING = auto()
    DEAD_LETTERED = auto()


@dataclass
class PendingOperation:
    """Tracks one intent while the dispatcher owns it.

    Attributes:
        intent: The intent being executed.
        attempts: Number of executions started so far.
        next_eligible_at: Monotonic time before which it must not run.
        state: Current lifecycle state.
        enqueued_at: Monotonic time the dispatcher accepted the intent.
        last_error: Message of the most recent failure.
        failure_kind: Classification of the most recent failure.
    """

    intent: Intent
    attempts: int = 0
    next_eligible_at: float = 0.0
    state: OperationState = OperationState.QUEUED
    enqueued_at: float = field(default_factory=time.monotonic)
    last_error: str | None = None
    failure_kind: FailureKind | None = None

    @property
    def path(self) -> str:
        """Relative path of the underlying intent."""
        return self.intent.relative_path

    @property
    def op(self) -> IntentOp:
        """Operation of the underlying intent."""
        return self.intent.op

    def __repr__(self) -> str:
        return (
            f"PendingOperation({self.op.name}, path={self.path!r}, "
            f"state={self.state.name}, attempts={self.attempts})"
        )


@dataclass
class DispatcherStats:
    """Statistics for the dispatcher."""

    enqueued: int = 0
    superseded: int = 0
    uploads_completed: int = 0
    deletes_completed: int = 0
    retries: int = 0
    dead_lettered: int = 0
    abandoned: int = 0

    @property
    def completed(self) -> int:
        """Total successful operations."""
        return self.uploads_completed + self.deletes_completed
