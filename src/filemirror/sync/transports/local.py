"""Transport writing into a local directory (e.g. a mounted network share)."""

from __future__ import annotations

import errno
import logging
import os
import shutil
import stat
from typing import TYPE_CHECKING, BinaryIO

from filemirror.sync.transports.base import iter_chunks
from filemirror.sync.types import (
    PermanentTransferFailure,
    TransferFailure,
    TransientTransferFailure,
)

if TYPE_CHECKING:
    from filemirror.credentials import Credentials

logger = logging.getLogger(__name__)

# Errors retrying cannot fix
PERMANENT_ERRNOS = frozenset(
    {
        errno.EACCES,
        errno.EPERM,
        errno.EROFS,
        errno.ENOTDIR,
        errno.EISDIR,
        errno.EEXIST,
        errno.ENAMETOOLONG,
    }
)


def classify_os_error(e: OSError, path: str) -> TransferFailure:
    """Map an OSError onto the transfer failure taxonomy."""
    message = f"{path}: {e.strerror or e}"
    if e.errno in PERMANENT_ERRNOS:
        return PermanentTransferFailure(message, path)
    return TransientTransferFailure(message, path)


class LocalTransport:
    """Mirror into a directory reachable through the local filesystem.

    Paths are absolute local paths. Unavailable mounts surface as transient
    failures (ENOENT, EIO, ESTALE, ...), permission problems as permanent.
    """

    def __init__(self) -> None:
        self._open = False

    def open(self, credentials: Credentials) -> None:
        """Mark the transport usable; no connection is needed."""
        self._open = True

    def close(self) -> None:
        """Mark the transport closed."""
        self._open = False

    def put(self, remote_path: str, stream: BinaryIO) -> None:
        """Copy the stream into ``remote_path``."""
        try:
            with open(remote_path, "wb") as f:
                for chunk in iter_chunks(stream):
                    f.write(chunk)
        except OSError as e:
            raise classify_os_error(e, remote_path) from e

    def remove(self, remote_path: str) -> None:
        """Remove a file or directory tree; missing paths are ignored."""
        try:
            st = os.lstat(remote_path)
            if stat.S_ISDIR(st.st_mode):
                shutil.rmtree(remote_path)
            else:
                os.unlink(remote_path)
        except FileNotFoundError:
            logger.debug("Already absent: %s", remote_path)
        except OSError as e:
            raise classify_os_error(e, remote_path) from e

    def mkdir_all(self, remote_dir: str) -> None:
        """Create ``remote_dir`` and its parents."""
        try:
            os.makedirs(remote_dir, exist_ok=True)
        except OSError as e:
            raise classify_os_error(e, remote_dir) from e

    def rename(self, src: str, dst: str) -> None:
        """Atomically replace ``dst`` with ``src``."""
        try:
            os.replace(src, dst)
        except OSError as e:
            raise classify_os_error(e, dst) from e
