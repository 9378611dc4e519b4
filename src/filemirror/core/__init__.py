"""Core module - Shared configuration and types."""

from filemirror.core.config import ConfigurationError, MirrorConfig, load_config
from filemirror.core.types import ConnectionState, MirrorError

__all__ = [
    # Config
    "ConfigurationError",
    "MirrorConfig",
    "load_config",
    # Types
    "ConnectionState",
    "MirrorError",
]
