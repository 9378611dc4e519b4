"""Configuration utilities for the filemirror CLI.

This module provides config file discovery and logging setup shared by
the commands.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from filemirror.core.config import ConfigurationError

CONFIG_FILE_NAME = "config.json"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Rotation settings for the log file
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 3

# No TRACE level in logging; it maps to DEBUG
LOG_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def get_config_dir() -> Path:
    """Get the configuration directory for filemirror.

    Returns:
        Path to ~/.filemirror.
    """
    return Path.home() / ".filemirror"


def find_config_file(explicit: Path | None = None) -> Path:
    """Locate the config file.

    Lookup order: the explicit path, ./config.json, ~/.filemirror/config.json.

    Raises:
        ConfigurationError: If no config file exists.
    """
    if explicit is not None:
        if not explicit.is_file():
            raise ConfigurationError(f"config file not found: {explicit}")
        return explicit

    candidates = [Path.cwd() / CONFIG_FILE_NAME, get_config_dir() / CONFIG_FILE_NAME]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    searched = ", ".join(str(c) for c in candidates)
    raise ConfigurationError(f"no config file found (searched {searched})")


def setup_logging(level: str = "info", log_file: str | Path | None = None) -> logging.Logger:
    """Configure the filemirror logger to write to stdout and optionally a file.

    Calling it again replaces the handlers installed by a previous call.

    Args:
        level: Level name; unknown names fall back to info.
        log_file: Optional log file, rotated at 10 MB with 3 backups.

    Returns:
        The configured "filemirror" logger.
    """
    formatter = logging.Formatter(LOG_FORMAT)

    root_logger = logging.getLogger("filemirror")
    root_logger.setLevel(LOG_LEVELS.get(level.lower(), logging.INFO))
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    # Stdout handler
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    # File handler
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    return root_logger
