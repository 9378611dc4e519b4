"""WebDAV transport built on httpx."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, BinaryIO
from urllib.parse import quote

import httpx

from filemirror.sync.transports.base import iter_chunks, parent_dirs
from filemirror.sync.types import (
    PermanentTransferFailure,
    TransferFailure,
    TransientTransferFailure,
)

if TYPE_CHECKING:
    from filemirror.credentials import Credentials

logger = logging.getLogger(__name__)

# Client errors that mean "try again later"
TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


def classify_status(response: httpx.Response, path: str) -> TransferFailure:
    """Map an HTTP error status onto the transfer failure taxonomy."""
    message = f"{path}: HTTP {response.status_code} {response.reason_phrase}".rstrip()
    if response.status_code >= 500 or response.status_code in TRANSIENT_STATUS_CODES:
        return TransientTransferFailure(message, path)
    return PermanentTransferFailure(message, path)


class WebDAVTransport:
    """Remote store reached over WebDAV (HTTP PUT/DELETE/MKCOL/MOVE).

    Usage:
        transport = WebDAVTransport("https://dav.example.com")
        transport.open(Credentials("alice", "secret"))
        transport.mkdir_all("/mirror/docs")
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        http_transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            base_url: Server URL, e.g. "https://dav.example.com:443".
            timeout: Request timeout in seconds.
            http_transport: Custom httpx transport (e.g. httpx.MockTransport).
        """
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._http_transport = http_transport
        self._client: httpx.Client | None = None

    @property
    def base_url(self) -> str:
        """Get the server URL."""
        return self._base_url

    def open(self, credentials: Credentials) -> None:
        """Create the HTTP client and check the server answers.

        Raises:
            PermanentTransferFailure: Credentials rejected.
            TransientTransferFailure: Server unreachable.
        """
        self.close()
        auth = (credentials.username, credentials.password) if credentials.username else None
        client = httpx.Client(
            base_url=self._base_url,
            auth=auth,
            timeout=self._timeout,
            transport=self._http_transport,
        )
        try:
            self._check(self._send(client, "OPTIONS", "/"), "/")
        except TransferFailure:
            client.close()
            raise
        self._client = client
        logger.info("Connected to %s", self._base_url)

    def close(self) -> None:
        """Close the HTTP client."""
        client, self._client = self._client, None
        if client is not None:
            client.close()

    def _url(self, path: str) -> str:
        return quote("/" + path.lstrip("/"))

    def _send(self, client: httpx.Client, method: str, path: str, **kwargs: object) -> httpx.Response:
        try:
            return client.request(method, self._url(path), **kwargs)  # type: ignore[arg-type]
        except httpx.RequestError as e:
            raise TransientTransferFailure(f"{path}: {e}", path) from e

    def _request(self, method: str, path: str, **kwargs: object) -> httpx.Response:
        if self._client is None:
            raise TransientTransferFailure("WebDAV session is not connected", path)
        return self._send(self._client, method, path, **kwargs)

    def _check(self, response: httpx.Response, path: str) -> httpx.Response:
        if response.is_error:
            raise classify_status(response, path)
        return response

    def put(self, remote_path: str, stream: BinaryIO) -> None:
        """Upload the stream with PUT."""
        self._check(self._request("PUT", remote_path, content=iter_chunks(stream)), remote_path)

    def remove(self, remote_path: str) -> None:
        """DELETE a file or collection; 404 is success."""
        response = self._request("DELETE", remote_path)
        if response.status_code == 404:
            logger.debug("Already absent on remote: %s", remote_path)
            return
        self._check(response, remote_path)

    def mkdir_all(self, remote_dir: str) -> None:
        """MKCOL each missing level; 405 means the collection exists."""
        for directory in parent_dirs(remote_dir):
            response = self._request("MKCOL", directory + "/")
            if response.status_code == 405:
                continue
            self._check(response, directory)

    def rename(self, src: str, dst: str) -> None:
        """MOVE ``src`` over ``dst``."""
        headers = {"Destination": f"{self._base_url}{self._url(dst)}", "Overwrite": "T"}
        self._check(self._request("MOVE", src, headers=headers), dst)
