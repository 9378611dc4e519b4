"""Transport protocol shared by all remote stores.

A transport speaks one wire protocol and maps its native errors onto
TransientTransferFailure / PermanentTransferFailure. It works on absolute
remote paths; the Session decides where files go and how they are made
atomic.
"""

from __future__ import annotations

import posixpath
from typing import TYPE_CHECKING, BinaryIO, Protocol

if TYPE_CHECKING:
    from collections.abc import Iterator

    from filemirror.credentials import Credentials

# Read size when streaming local files
CHUNK_SIZE = 64 * 1024


class Transport(Protocol):
    """Primitive operations against a remote store."""

    def open(self, credentials: Credentials) -> None:
        """Establish the connection (may be called again after close)."""
        ...

    def close(self) -> None:
        """Release the connection; idempotent."""
        ...

    def put(self, remote_path: str, stream: BinaryIO) -> None:
        """Write the stream's content to ``remote_path``, replacing it."""
        ...

    def remove(self, remote_path: str) -> None:
        """Remove a file or a directory tree; absent paths are success."""
        ...

    def mkdir_all(self, remote_dir: str) -> None:
        """Create a directory and its missing parents."""
        ...

    def rename(self, src: str, dst: str) -> None:
        """Move ``src`` over ``dst``, replacing an existing file."""
        ...


def iter_chunks(stream: BinaryIO, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Read a binary stream in chunks until EOF."""
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            return
        yield chunk


def parent_dirs(remote_dir: str) -> list[str]:
    """List a directory and its ancestors, outermost first.

    >>> parent_dirs("/srv/mirror/a")
    ['/srv', '/srv/mirror', '/srv/mirror/a']
    """
    normalized = posixpath.normpath(remote_dir)
    if normalized in ("/", "."):
        return []
    parts = normalized.split("/")
    dirs = []
    for i in range(1, len(parts) + 1):
        # A leading "/" yields an empty first part; join keeps it in the prefix
        prefix = "/".join(parts[:i])
        if prefix:
            dirs.append(prefix)
    return dirs
