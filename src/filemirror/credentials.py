"""Credential lookup for remote sessions.

This module provides:
- Credentials: Login data handed to a transport (password hidden from repr)
- resolve_credentials: Password from the config or from the OS keyring
- store_password: Save a password in the OS keyring
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import keyring
from keyring.errors import KeyringError

from filemirror.core.config import ConfigurationError

if TYPE_CHECKING:
    from filemirror.core.config import MirrorConfig

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "filemirror"


@dataclass(frozen=True)
class Credentials:
    """Login data for a remote store.

    Attributes:
        username: Login name (may be empty for anonymous/local stores).
        password: Password or key passphrase; never shown in repr.
        key_filename: Optional private key file (SFTP).
    """

    username: str = ""
    password: str = field(default="", repr=False)
    key_filename: str | None = None

    def __str__(self) -> str:
        return self.username or "<anonymous>"


def resolve_credentials(config: MirrorConfig) -> Credentials:
    """Build credentials for a config.

    When ``use_keyring`` is set the password is read from the OS keyring
    (service "filemirror", account = username), otherwise it is taken from
    the config file.

    Raises:
        ConfigurationError: If the keyring is unavailable or has no entry.
    """
    password = config.password
    if config.use_keyring:
        try:
            stored = keyring.get_password(KEYRING_SERVICE, config.username)
        except KeyringError as e:
            raise ConfigurationError(f"cannot read password from keyring: {e}") from e
        if stored is None:
            raise ConfigurationError(
                f"no password stored in keyring for {config.username!r} "
                f"(service {KEYRING_SERVICE!r})"
            )
        password = stored
        logger.debug("Using keyring password for %s", config.username)

    return Credentials(
        username=config.username,
        password=password,
        key_filename=config.key_filename,
    )


def store_password(username: str, password: str) -> None:
    """Save a password in the OS keyring.

    Raises:
        ConfigurationError: If the keyring backend rejects the write.
    """
    try:
        keyring.set_password(KEYRING_SERVICE, username, password)
    except KeyringError as e:
        raise ConfigurationError(f"cannot store password in keyring: {e}") from e
