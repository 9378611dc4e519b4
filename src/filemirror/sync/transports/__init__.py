"""Remote store transports.

This package provides:
- Transport: Protocol every remote store implements
- SFTPTransport: SSH/SFTP via paramiko (default)
- WebDAVTransport: WebDAV via httpx
- LocalTransport: A directory on a local or mounted filesystem
- create_transport: Build the transport a config asks for
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from filemirror.core.config import ConfigurationError
from filemirror.sync.transports.base import Transport
from filemirror.sync.transports.local import LocalTransport
from filemirror.sync.transports.sftp import SFTPTransport
from filemirror.sync.transports.webdav import WebDAVTransport

if TYPE_CHECKING:
    from filemirror.core.config import MirrorConfig


def create_transport(config: MirrorConfig) -> Transport:
    """Create the transport for ``config.protocol``.

    Raises:
        ConfigurationError: If the protocol is unknown.
    """
    if config.protocol == "sftp":
        return SFTPTransport(config.host, config.port, timeout=config.timeout)
    if config.protocol == "webdav":
        if "://" in config.host:
            base_url = config.host.rstrip("/")
        else:
            scheme = "http" if config.port == 80 else "https"
            base_url = f"{scheme}://{config.host}:{config.port}"
        return WebDAVTransport(base_url, timeout=config.timeout)
    if config.protocol == "local":
        return LocalTransport()
    raise ConfigurationError(f"unknown protocol: {config.protocol}")


__all__ = [
    "LocalTransport",
    "SFTPTransport",
    "Transport",
    "WebDAVTransport",
    "create_transport",
]
