"""Tests for credential resolution."""

from pathlib import Path
from unittest.mock import patch

import pytest
from keyring.errors import KeyringError, PasswordSetError

from filemirror.core.config import ConfigurationError, MirrorConfig
from filemirror.credentials import (
    KEYRING_SERVICE,
    Credentials,
    resolve_credentials,
    store_password,
)


def make_config(tmp_path: Path, **overrides: object) -> MirrorConfig:
    values: dict = {
        "local_path": tmp_path,
        "remote_path": "/srv/mirror",
        "host": "example.com",
        "port": 22,
        "username": "alice",
    }
    values.update(overrides)
    return MirrorConfig(**values)


class TestCredentials:
    """Tests for the Credentials dataclass."""

    def test_password_hidden(self) -> None:
        """Should never show the password in repr."""
        credentials = Credentials("alice", "hunter2")
        assert "hunter2" not in repr(credentials)
        assert str(credentials) == "alice"

    def test_anonymous(self) -> None:
        """Should describe empty credentials."""
        assert str(Credentials()) == "<anonymous>"


class TestResolveCredentials:
    """Tests for resolve_credentials."""

    def test_password_from_config(self, tmp_path: Path) -> None:
        """Should use the config password without touching the keyring."""
        config = make_config(tmp_path, password="secret", key_filename="~/.ssh/id_ed25519")
        with patch("filemirror.credentials.keyring.get_password") as get_password:
            credentials = resolve_credentials(config)
        get_password.assert_not_called()
        assert credentials == Credentials("alice", "secret", "~/.ssh/id_ed25519")

    def test_password_from_keyring(self, tmp_path: Path) -> None:
        """Should read the password from the keyring."""
        config = make_config(tmp_path, use_keyring=True)
        with patch(
            "filemirror.credentials.keyring.get_password", return_value="from-keyring"
        ) as get_password:
            credentials = resolve_credentials(config)
        get_password.assert_called_once_with(KEYRING_SERVICE, "alice")
        assert credentials.password == "from-keyring"

    def test_missing_keyring_entry(self, tmp_path: Path) -> None:
        """Should fail clearly when nothing is stored."""
        config = make_config(tmp_path, use_keyring=True)
        with patch("filemirror.credentials.keyring.get_password", return_value=None):
            with pytest.raises(ConfigurationError, match="no password stored"):
                resolve_credentials(config)

    def test_keyring_unavailable(self, tmp_path: Path) -> None:
        """Should wrap keyring backend errors."""
        config = make_config(tmp_path, use_keyring=True)
        with patch("filemirror.credentials.keyring.get_password", side_effect=KeyringError("no backend")):
            with pytest.raises(ConfigurationError, match="cannot read password"):
                resolve_credentials(config)


class TestStorePassword:
    """Tests for store_password."""

    def test_store(self) -> None:
        """Should write to the filemirror keyring service."""
        with patch("filemirror.credentials.keyring.set_password") as set_password:
            store_password("alice", "secret")
        set_password.assert_called_once_with(KEYRING_SERVICE, "alice", "secret")

    def test_store_failure(self) -> None:
        """Should wrap keyring write errors."""
        with patch("filemirror.credentials.keyring.set_password", side_effect=PasswordSetError("locked")):
            with pytest.raises(ConfigurationError, match="cannot store password"):
                store_password("alice", "secret")
