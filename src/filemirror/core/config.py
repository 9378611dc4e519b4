"""Configuration for filemirror.

This module provides:
- MirrorConfig: Immutable settings consumed by the pipeline
- ConfigurationError: Raised for invalid paths or parameters
- load_config: Load and validate a JSON config file
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from filemirror.core.types import MirrorError

PROTOCOLS = ("sftp", "webdav", "local")
DEFAULT_PORTS = {"sftp": 22, "webdav": 443, "local": 0}
MAX_WORKERS = 64


class ConfigurationError(MirrorError):
    """Invalid configuration; fatal at startup."""


@dataclass(frozen=True)
class MirrorConfig:
    """Settings for mirroring one local directory to a remote store.

    Field names follow the JSON config file. The config is frozen: the
    pipeline treats it as immutable for its whole lifetime.

    Attributes:
        local_path: Local directory to watch (the watch root).
        remote_path: Remote directory the tree is mirrored into.
        protocol: Remote transport, one of "sftp", "webdav", "local".
        host: Remote host name (sftp/webdav).
        port: Remote port (defaults per protocol).
        username: Login name for the remote.
        password: Password when not stored in the keyring.
        use_keyring: Look the password up in the OS keyring.
        key_filename: Optional SSH private key (sftp).
        debounce_window: Seconds without events before a path is released.
        max_attempts: Attempts before an operation is dead-lettered.
        backoff_base: Base retry delay in seconds.
        backoff_cap: Maximum retry delay in seconds.
        worker_count: Number of concurrent dispatcher workers.
        ignore_patterns: Extra gitignore-style patterns to skip.
        flush_on_shutdown: Release pending coalesced intents at shutdown.
        initial_sync: Upload the existing tree when the pipeline starts.
        grace_period: Seconds in-flight operations get at shutdown.
        timeout: Network timeout in seconds.
        log_level: Log level name.
        log_file: Optional log file path.
    """

    local_path: Path
    remote_path: str
    protocol: str = "sftp"
    host: str = ""
    port: int = 0
    username: str = ""
    password: str = field(default="", repr=False)
    use_keyring: bool = False
    key_filename: str | None = None
    debounce_window: float = 0.5
    max_attempts: int = 5
    backoff_base: float = 1.0
    backoff_cap: float = 60.0
    worker_count: int = 4
    ignore_patterns: tuple[str, ...] = ()
    flush_on_shutdown: bool = True
    initial_sync: bool = True
    grace_period: float = 10.0
    timeout: float = 30.0
    log_level: str = "info"
    log_file: str | None = None

    def __post_init__(self) -> None:
        """Validate all fields; nothing is partially applied on error."""
        errors = list(self._validate())
        if errors:
            raise ConfigurationError("; ".join(errors))

    def _validate(self) -> list[str]:
        errors = []
        if not self.local_path.is_absolute():
            errors.append(f"local_path must be absolute: {self.local_path}")
        if not self.local_path.is_dir():
            errors.append(f"local_path must be an existing directory: {self.local_path}")
        if not self.remote_path:
            errors.append("remote_path is required")
        if self.protocol not in PROTOCOLS:
            errors.append(f"unknown protocol {self.protocol!r} (expected one of {', '.join(PROTOCOLS)})")
        elif self.protocol != "local":
            if not self.host:
                errors.append(f"host is required for {self.protocol}")
            if not 0 < self.port < 65536:
                errors.append(f"invalid port: {self.port}")
        if self.protocol == "sftp" and not self.username:
            errors.append("username is required for sftp")
        if self.use_keyring and not self.username:
            errors.append("use_keyring requires a username")
        if self.debounce_window <= 0:
            errors.append("debounce_window must be positive")
        if self.max_attempts < 1:
            errors.append("max_attempts must be at least 1")
        if self.backoff_base <= 0:
            errors.append("backoff_base must be positive")
        if self.backoff_cap < self.backoff_base:
            errors.append("backoff_cap must be >= backoff_base")
        if not 1 <= self.worker_count <= MAX_WORKERS:
            errors.append(f"worker_count must be between 1 and {MAX_WORKERS}")
        if self.grace_period < 0:
            errors.append("grace_period must not be negative")
        if not isinstance(self.ignore_patterns, tuple) or not all(
            isinstance(p, str) for p in self.ignore_patterns
        ):
            errors.append("ignore_patterns must be a list of strings")
        if self.timeout <= 0:
            errors.append("timeout must be positive")
        return errors

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: Path | None = None) -> MirrorConfig:
        """Build a config from a parsed JSON document.

        Args:
            data: Mapping using the config file keys.
            base_dir: Directory relative local paths are resolved against.

        Returns:
            A validated MirrorConfig.

        Raises:
            ConfigurationError: If keys are missing, unknown or invalid.
        """
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"unknown config keys: {', '.join(unknown)}")
        if not data.get("local_path"):
            raise ConfigurationError("local_path is required")

        values = dict(data)
        local = Path(str(values["local_path"])).expanduser()
        if not local.is_absolute():
            local = (base_dir or Path.cwd()) / local
        values["local_path"] = local.resolve()

        protocol = str(values.get("protocol", "sftp")).lower()
        values["protocol"] = protocol
        if not values.get("port"):
            values["port"] = DEFAULT_PORTS.get(protocol, 0)
        patterns = values.get("ignore_patterns") or ()
        values["ignore_patterns"] = tuple(patterns) if isinstance(patterns, list) else patterns

        try:
            for name in ("port", "max_attempts", "worker_count"):
                if name in values:
                    values[name] = int(values[name])
            for name in ("debounce_window", "backoff_base", "backoff_cap", "grace_period", "timeout"):
                if name in values:
                    values[name] = float(values[name])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"invalid numeric value: {e}") from e

        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        """Return the settings as a JSON-friendly dict, without the password."""
        data = asdict(self)
        data.pop("password")
        data["local_path"] = str(self.local_path)
        data["ignore_patterns"] = list(self.ignore_patterns)
        return data

    @property
    def remote_url(self) -> str:
        """Human-readable location of the remote root."""
        if self.protocol == "local":
            return self.remote_path
        user = f"{self.username}@" if self.username else ""
        return f"{self.protocol}://{user}{self.host}:{self.port}/{self.remote_path.lstrip('/')}"


def load_config(path: Path) -> MirrorConfig:
    """Load and validate a JSON config file.

    Relative ``local_path`` values are resolved against the file's directory.

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigurationError(f"config file not found: {path}") from e
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"cannot read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"config file must contain a JSON object: {path}")
    return MirrorConfig.from_dict(data, base_dir=path.parent)
