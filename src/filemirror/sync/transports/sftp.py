"""SFTP transport built on paramiko.

One SSH connection is shared by all workers; each worker thread gets its
own SFTP channel on that connection so transfers on different paths run
in parallel.
"""

from __future__ import annotations

import errno
import logging
import socket
import stat
import threading
from typing import TYPE_CHECKING, BinaryIO

import paramiko
from paramiko.ssh_exception import NoValidConnectionsError

from filemirror.sync.transports.base import parent_dirs
from filemirror.sync.types import (
    PermanentTransferFailure,
    TransferFailure,
    TransientTransferFailure,
)

if TYPE_CHECKING:
    from filemirror.credentials import Credentials

logger = logging.getLogger(__name__)

KEEPALIVE_INTERVAL = 30  # seconds

# SFTP status codes arrive as OSError; these cannot succeed on retry
PERMANENT_ERRNOS = frozenset({errno.EACCES, errno.EPERM, errno.ENOENT, errno.ENOTDIR, errno.EISDIR})

# Exceptions raised by paramiko and the socket layer
SFTP_EXCEPTIONS = (paramiko.SSHException, EOFError, OSError)


def classify_error(e: BaseException, path: str) -> TransferFailure:
    """Map a paramiko/socket exception onto the transfer failure taxonomy.

    Args:
        e: The exception raised by paramiko.
        path: Remote path of the failed operation.

    Returns:
        A TransientTransferFailure or PermanentTransferFailure.
    """
    message = f"{path}: {e}"
    if isinstance(e, paramiko.AuthenticationException | paramiko.BadHostKeyException):
        return PermanentTransferFailure(message, path)
    # NoValidConnectionsError is an OSError without errno (connection refused)
    if isinstance(e, paramiko.SSHException | NoValidConnectionsError | socket.gaierror | EOFError):
        return TransientTransferFailure(message, path)
    if isinstance(e, TimeoutError | ConnectionError):
        return TransientTransferFailure(message, path)
    if isinstance(e, OSError):
        # SFTP_FAILURE and friends carry no errno
        if e.errno is None or e.errno in PERMANENT_ERRNOS:
            return PermanentTransferFailure(message, path)
    return TransientTransferFailure(message, path)


class SFTPTransport:
    """Remote store reached over SSH/SFTP.

    Usage:
        transport = SFTPTransport("example.com", 22)
        transport.open(Credentials("alice", "secret"))
        with open("a.txt", "rb") as f:
            transport.put("/srv/mirror/a.txt", f)
        transport.close()
    """

    def __init__(
        self,
        host: str,
        port: int = 22,
        timeout: float = 30.0,
        client_factory: type[paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        """Initialize the transport.

        Args:
            host: SSH server host name.
            port: SSH server port.
            timeout: Connect and channel timeout in seconds.
            client_factory: SSH client class (replaceable in tests).
        """
        self._host = host
        self._port = port
        self._timeout = timeout
        self._client_factory = client_factory

        self._lock = threading.Lock()
        self._client: paramiko.SSHClient | None = None
        self._channels: list[paramiko.SFTPClient] = []
        self._local = threading.local()
        self._generation = 0

    @property
    def is_connected(self) -> bool:
        """Check if the SSH transport is active."""
        client = self._client
        if client is None:
            return False
        transport = client.get_transport()
        return transport is not None and transport.is_active()

    def open(self, credentials: Credentials) -> None:
        """Connect and authenticate.

        Raises:
            PermanentTransferFailure: Authentication or host key rejected.
            TransientTransferFailure: Network errors.
        """
        self.close()
        logger.info("Connecting to %s@%s:%d", credentials, self._host, self._port)

        client = self._client_factory()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        kwargs: dict = {
            "hostname": self._host,
            "port": self._port,
            "username": credentials.username,
            "timeout": self._timeout,
            "banner_timeout": self._timeout,
            "auth_timeout": self._timeout,
        }
        if credentials.password:
            kwargs["password"] = credentials.password
        if credentials.key_filename:
            kwargs["key_filename"] = credentials.key_filename

        try:
            client.connect(**kwargs)
            transport = client.get_transport()
            if transport is not None:
                transport.set_keepalive(KEEPALIVE_INTERVAL)
        except SFTP_EXCEPTIONS as e:
            client.close()
            raise classify_error(e, f"{self._host}:{self._port}") from e

        with self._lock:
            self._client = client
            self._generation += 1
        logger.info("Connected to %s:%d", self._host, self._port)

    def close(self) -> None:
        """Close every SFTP channel and the SSH connection."""
        with self._lock:
            client, self._client = self._client, None
            channels, self._channels = self._channels, []
            self._generation += 1
        for channel in channels:
            try:
                channel.close()
            except SFTP_EXCEPTIONS as e:
                logger.debug("Error closing SFTP channel: %s", e)
        if client is not None:
            client.close()
            logger.debug("SSH connection to %s closed", self._host)

    def _sftp(self) -> paramiko.SFTPClient:
        """Get this thread's SFTP channel, opening it on first use."""
        generation = getattr(self._local, "generation", None)
        channel = getattr(self._local, "channel", None)
        if channel is not None and generation == self._generation:
            return channel

        with self._lock:
            client = self._client
            current = self._generation
        if client is None:
            raise TransientTransferFailure("SFTP session is not connected")
        try:
            channel = client.open_sftp()
        except SFTP_EXCEPTIONS as e:
            raise classify_error(e, self._host) from e
        channel.get_channel().settimeout(self._timeout)

        with self._lock:
            self._channels.append(channel)
        self._local.channel = channel
        self._local.generation = current
        return channel

    def put(self, remote_path: str, stream: BinaryIO) -> None:
        """Upload the stream to ``remote_path``."""
        sftp = self._sftp()
        try:
            sftp.putfo(stream, remote_path, confirm=True)
        except SFTP_EXCEPTIONS as e:
            raise classify_error(e, remote_path) from e

    def remove(self, remote_path: str) -> None:
        """Remove a file or directory tree; missing paths are success."""
        sftp = self._sftp()
        try:
            self._remove_tree(sftp, remote_path)
        except FileNotFoundError:
            logger.debug("Already absent on remote: %s", remote_path)
        except SFTP_EXCEPTIONS as e:
            raise classify_error(e, remote_path) from e

    def _remove_tree(self, sftp: paramiko.SFTPClient, path: str) -> None:
        attrs = sftp.lstat(path)
        if attrs.st_mode is not None and stat.S_ISDIR(attrs.st_mode):
            for entry in sftp.listdir_attr(path):
                child = f"{path.rstrip('/')}/{entry.filename}"
                try:
                    self._remove_tree(sftp, child)
                except FileNotFoundError:
                    continue
            sftp.rmdir(path)
        else:
            sftp.remove(path)

    def mkdir_all(self, remote_dir: str) -> None:
        """Create ``remote_dir`` and its missing parents."""
        sftp = self._sftp()
        for directory in parent_dirs(remote_dir):
            try:
                attrs = sftp.stat(directory)
            except FileNotFoundError:
                attrs = None
            except SFTP_EXCEPTIONS as e:
                raise classify_error(e, directory) from e

            if attrs is not None:
                if attrs.st_mode is not None and not stat.S_ISDIR(attrs.st_mode):
                    raise PermanentTransferFailure(f"{directory}: not a directory", directory)
                continue

            try:
                sftp.mkdir(directory)
            except SFTP_EXCEPTIONS as e:
                # Another worker may have created it meanwhile
                try:
                    attrs = sftp.stat(directory)
                except SFTP_EXCEPTIONS:
                    raise classify_error(e, directory) from e
                if attrs.st_mode is not None and not stat.S_ISDIR(attrs.st_mode):
                    raise PermanentTransferFailure(f"{directory}: not a directory", directory) from e

    def rename(self, src: str, dst: str) -> None:
        """Move ``src`` over ``dst``.

        Uses the posix-rename extension when the server supports it, and
        falls back to remove + rename otherwise.
        """
        sftp = self._sftp()
        try:
            sftp.posix_rename(src, dst)
            return
        except (paramiko.SSHException, EOFError) as e:
            raise classify_error(e, dst) from e
        except OSError as e:
            logger.debug("posix_rename failed for %s (%s), falling back", dst, e)

        try:
            try:
                sftp.remove(dst)
            except FileNotFoundError:
                pass
            sftp.rename(src, dst)
        except SFTP_EXCEPTIONS as e:
            raise classify_error(e, dst) from e
