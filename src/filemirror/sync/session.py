"""Remote session with reconnect and idempotent primitives.

This module provides:
- Session: Owns the connection to the remote store and its state machine

State machine:

    DISCONNECTED --connect()--> CONNECTING --ok--> READY
                                     |
                                     +--failure--> DEGRADED
    READY --transient failure--> DEGRADED --reconnect ok--> READY
    any --close()--> DISCONNECTED

Only the Session transitions its state. Workers observe it through
``state`` and ``wait_ready()``.
"""

from __future__ import annotations

import logging
import posixpath
import threading
import uuid
from typing import TYPE_CHECKING, BinaryIO

from filemirror.core.types import ConnectionState
from filemirror.sync.types import (
    PermanentTransferFailure,
    TransferFailure,
    TransientTransferFailure,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from filemirror.credentials import Credentials
    from filemirror.sync.transports import Transport

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".filemirror.tmp"


def temp_name(remote_path: str) -> str:
    """Name of the hidden temporary sibling used while uploading."""
    directory, name = posixpath.split(remote_path)
    return posixpath.join(directory, f".{name}.{uuid.uuid4().hex[:8]}{TEMP_SUFFIX}")


class Session:
    """The single owner of the remote connection.

    Every primitive is idempotent: ``put`` twice with the same content, or
    ``remove`` twice, leaves the same remote state as doing it once.

    Usage:
        session = Session(transport, credentials, remote_root="/srv/mirror")
        session.connect()
        with open(local, "rb") as f:
            session.put("docs/a.txt", f)
        session.remove("docs/old.txt")
        session.close()
    """

    def __init__(
        self,
        transport: Transport,
        credentials: Credentials,
        remote_root: str = "",
    ) -> None:
        """Initialize the session.

        Args:
            transport: Protocol implementation for the remote store.
            credentials: Login data passed to the transport on connect.
            remote_root: Remote directory relative paths are resolved against.
        """
        self._transport = transport
        self._credentials = credentials
        self._remote_root = remote_root.rstrip("/") or ("/" if remote_root.startswith("/") else "")

        self._state = ConnectionState.DISCONNECTED
        self._last_error: str | None = None
        self._state_lock = threading.Lock()
        self._state_changed = threading.Condition(self._state_lock)
        # Serializes connection attempts; other callers wait here
        self._connect_lock = threading.Lock()
        # Bumped on every successful connect
        self._generation = 0
        # Remote directories known to exist on the current connection
        self._known_dirs: set[str] = set()
        self._closed = False

    @property
    def state(self) -> ConnectionState:
        """Get the connection state."""
        return self._state

    @property
    def last_error(self) -> str | None:
        """Message of the most recent failure."""
        return self._last_error

    @property
    def remote_root(self) -> str:
        """Get the remote directory mirrored into."""
        return self._remote_root

    def remote_path(self, relative_path: str) -> str:
        """Resolve a relative path against the remote root."""
        relative_path = relative_path.strip("/")
        if not relative_path:
            return self._remote_root
        if not self._remote_root:
            return relative_path
        return posixpath.join(self._remote_root, relative_path)

    def _set_state(self, state: ConnectionState, error: str | None = None) -> None:
        with self._state_changed:
            if error is not None:
                self._last_error = error
            if self._state != state:
                logger.info("Session %s -> %s", self._state.value, state.value)
                self._state = state
            self._state_changed.notify_all()

    def wait_ready(self, timeout: float | None = None) -> bool:
        """Block until the session is READY.

        Args:
            timeout: Maximum seconds to wait.

        Returns:
            True if READY, False on timeout.
        """
        with self._state_changed:
            return self._state_changed.wait_for(
                lambda: self._state == ConnectionState.READY, timeout=timeout
            )

    # =========================================================================
    # Connection management
    # =========================================================================

    def connect(self) -> None:
        """Open the connection if it is not READY.

        Concurrent callers are serialized; a caller that waited while
        another thread connected returns without reconnecting.

        Raises:
            TransferFailure: If the transport cannot connect.
        """
        self._connect(expected_generation=None)

    def _connect(self, expected_generation: int | None) -> None:
        with self._connect_lock:
            if self._closed:
                raise PermanentTransferFailure("Session is closed")
            if expected_generation is None:
                if self._state == ConnectionState.READY:
                    return
            elif self._generation != expected_generation:
                # Someone reconnected after our failure
                return

            self._set_state(ConnectionState.CONNECTING)
            try:
                self._transport.close()
                self._transport.open(self._credentials)
            except TransferFailure as e:
                self._set_state(ConnectionState.DEGRADED, str(e))
                logger.warning("Connection failed: %s", e)
                raise
            self._generation += 1
            self._known_dirs.clear()
            self._set_state(ConnectionState.READY)

    def close(self) -> None:
        """Close the connection; further calls fail permanently."""
        with self._connect_lock:
            self._closed = True
            self._transport.close()
            self._known_dirs.clear()
            self._set_state(ConnectionState.DISCONNECTED)

    def _call(self, action: Callable[[], None]) -> None:
        """Run one primitive with connect-on-demand and a single reconnect."""
        if self._state != ConnectionState.READY:
            self._connect(expected_generation=None)
        generation = self._generation
        try:
            action()
        except TransientTransferFailure as e:
            self._set_state(ConnectionState.DEGRADED, str(e))
            logger.warning("Transient failure, reconnecting: %s", e)
            try:
                self._connect(expected_generation=generation)
            except TransferFailure as reconnect_error:
                logger.debug("Reconnect failed: %s", reconnect_error)
            raise
        except PermanentTransferFailure as e:
            self._last_error = str(e)
            raise

    # =========================================================================
    # Primitives
    # =========================================================================

    def put(self, relative_path: str, content: BinaryIO) -> None:
        """Upload ``content`` to the remote path, atomically.

        The data is written to a hidden temporary sibling which is then
        renamed over the target, so readers never see a partial file.
        Missing parent directories are created.

        Raises:
            TransferFailure: If any step fails.
        """
        target = self.remote_path(relative_path)
        parent = posixpath.dirname(target)

        def upload() -> None:
            cached = parent in self._known_dirs
            try:
                self._put_via_temp(content, target)
            except PermanentTransferFailure:
                if not cached:
                    raise
                # The parent may have been removed remotely since we created it
                logger.debug("Retrying %s with fresh parent directories", target)
                self._known_dirs.clear()
                content.seek(0)
                self._put_via_temp(content, target)

        self._call(upload)
        logger.debug("Put %s", target)

    def _put_via_temp(self, content: BinaryIO, target: str) -> None:
        self._ensure_dir(posixpath.dirname(target))
        temp = temp_name(target)
        try:
            self._transport.put(temp, content)
            self._transport.rename(temp, target)
        except TransferFailure:
            self._discard_temp(temp)
            raise

    def remove(self, relative_path: str) -> None:
        """Remove a remote file or directory tree; absent is success."""
        target = self.remote_path(relative_path)
        if target == self._remote_root:
            raise PermanentTransferFailure("Refusing to remove the remote root", relative_path)

        def delete() -> None:
            self._transport.remove(target)
            prefix = target + "/"
            self._known_dirs = {d for d in self._known_dirs if d != target and not d.startswith(prefix)}

        self._call(delete)
        logger.debug("Removed %s", target)

    def mkdir_all(self, relative_dir: str) -> None:
        """Create a remote directory and its missing parents."""
        target = self.remote_path(relative_dir)
        self._call(lambda: self._ensure_dir(target))

    def _ensure_dir(self, remote_dir: str) -> None:
        if not remote_dir or remote_dir in self._known_dirs:
            return
        self._transport.mkdir_all(remote_dir)
        self._known_dirs.add(remote_dir)

    def _discard_temp(self, temp: str) -> None:
        try:
            self._transport.remove(temp)
        except TransferFailure as e:
            logger.debug("Could not remove temporary file %s: %s", temp, e)

    def __enter__(self) -> Session:
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()
