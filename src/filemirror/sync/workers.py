"""Workers executing one intent against the remote session.

This module provides:
- WorkerResult: Outcome of one execution attempt
- BaseWorker: Abstract base turning exceptions into results
- UploadWorker: Streams a local file (or creates a directory) remotely
- DeleteWorker: Removes a remote path
- create_worker: Pick the worker for an intent
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

from filemirror.sync.types import (
    FailureKind,
    IntentOp,
    PermanentTransferFailure,
    TransferFailure,
)

if TYPE_CHECKING:
    from pathlib import Path

    from filemirror.sync.session import Session
    from filemirror.sync.types import Intent

logger = logging.getLogger(__name__)


@dataclass
class WorkerResult:
    """Result of one execution attempt.

    Attributes:
        success: Whether the remote mutation was applied.
        error: Error message if failed.
        failure_kind: TRANSIENT or PERMANENT if failed.
        elapsed_time: Time taken in seconds.
    """

    success: bool
    error: str | None = None
    failure_kind: FailureKind | None = None
    elapsed_time: float = 0.0


class BaseWorker(ABC):
    """Abstract base class for intent workers.

    Subclasses implement ``_do_work`` and raise TransferFailure on error.
    ``execute`` never raises: it reports every outcome as a WorkerResult so
    the dispatcher can consult the retry policy.

    Usage:
        worker = create_worker(intent, session, base_path)
        result = worker.execute(intent)
    """

    def __init__(self, session: Session, base_path: Path) -> None:
        """Initialize the worker.

        Args:
            session: Remote session to act on.
            base_path: Watch root relative paths are resolved against.
        """
        self._session = session
        self._base_path = base_path

    @property
    @abstractmethod
    def worker_type(self) -> str:
        """Return the worker type name (e.g., 'upload', 'delete')."""
        ...

    def execute(self, intent: Intent) -> WorkerResult:
        """Execute the intent once.

        Args:
            intent: The intent to apply.

        Returns:
            WorkerResult describing success or the classified failure.
        """
        start_time = time.monotonic()
        try:
            self._do_work(intent)
        except TransferFailure as e:
            elapsed = time.monotonic() - start_time
            logger.warning(f"{self.worker_type} {intent.relative_path} failed ({e.kind.name.lower()}): {e}")
            return WorkerResult(
                success=False,
                error=str(e),
                failure_kind=e.kind,
                elapsed_time=elapsed,
            )
        except Exception as e:
            # A bug, not a remote condition: retrying cannot help
            elapsed = time.monotonic() - start_time
            logger.exception(f"{self.worker_type} {intent.relative_path}: unexpected error")
            return WorkerResult(
                success=False,
                error=f"{type(e).__name__}: {e}",
                failure_kind=FailureKind.PERMANENT,
                elapsed_time=elapsed,
            )

        elapsed = time.monotonic() - start_time
        logger.debug(f"{self.worker_type} {intent.relative_path} done in {elapsed:.3f}s")
        return WorkerResult(success=True, elapsed_time=elapsed)

    @abstractmethod
    def _do_work(self, intent: Intent) -> None:
        """Apply the intent.

        Raises:
            TransferFailure: If the remote mutation failed.
        """
        ...


class UploadWorker(BaseWorker):
    """Mirror the current local content of a path.

    Directories become ``mkdir_all``; files are streamed to ``Session.put``.
    A source that vanished before it could be read is a permanent failure:
    its removal produces a DELETE intent of its own.

    When the intent absorbed a DELETE, the remote entry may be of the other
    type. A recreated directory replaces the remote entry outright. A
    recreated file first tries the atomic put and only clears the remote
    entry when the put is rejected.
    """

    @property
    def worker_type(self) -> str:
        """Return worker type name."""
        return "upload"

    def _do_work(self, intent: Intent) -> None:
        local_path = self._base_path / intent.relative_path

        if local_path.is_dir():
            if intent.replaces_remote:
                self._session.remove(intent.relative_path)
            self._session.mkdir_all(intent.relative_path)
            logger.info(f"Created directory: {intent.relative_path}")
            return

        try:
            f = open(local_path, "rb")
        except FileNotFoundError as e:
            raise PermanentTransferFailure(
                f"local file vanished: {intent.relative_path}", intent.relative_path
            ) from e
        except OSError as e:
            raise PermanentTransferFailure(
                f"cannot read {intent.relative_path}: {e.strerror or e}", intent.relative_path
            ) from e

        with f:
            try:
                self._session.put(intent.relative_path, f)
            except PermanentTransferFailure as e:
                if not intent.replaces_remote:
                    raise
                logger.info(f"Replacing remote entry at {intent.relative_path}: {e}")
                self._session.remove(intent.relative_path)
                f.seek(0)
                self._session.put(intent.relative_path, f)
        logger.info(f"Uploaded: {intent.relative_path}")


class DeleteWorker(BaseWorker):
    """Remove a path (file or directory tree) from the remote."""

    @property
    def worker_type(self) -> str:
        """Return worker type name."""
        return "delete"

    def _do_work(self, intent: Intent) -> None:
        self._session.remove(intent.relative_path)
        logger.info(f"Deleted on remote: {intent.relative_path}")


def create_worker(intent: Intent, session: Session, base_path: Path) -> BaseWorker:
    """Create the worker for an intent.

    Args:
        intent: The intent to execute.
        session: Remote session.
        base_path: Watch root.

    Returns:
        An UploadWorker or DeleteWorker.
    """
    if intent.op == IntentOp.UPLOAD:
        return UploadWorker(session, base_path)
    if intent.op == IntentOp.DELETE:
        return DeleteWorker(session, base_path)
    raise ValueError(f"Unknown intent operation: {intent.op}")
