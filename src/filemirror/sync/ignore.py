"""Ignore patterns for the watcher.

This module provides:
- IgnorePatterns: Handles gitignore-style pattern matching
- DEFAULT_IGNORE_PATTERNS: Hidden, temporary and self-generated files
"""

from __future__ import annotations

import fnmatch
from pathlib import Path

IGNORE_FILE_NAME = ".mirrorignore"

# Default ignore patterns (editor temp files, VCS metadata, our own files)
DEFAULT_IGNORE_PATTERNS = [
    ".git",
    ".git/**",
    ".hg",
    ".hg/**",
    ".svn",
    ".svn/**",
    ".DS_Store",
    "Thumbs.db",
    "desktop.ini",
    "*.tmp",
    "*.temp",
    "~*",
    "*~",
    ".#*",
    "*.swp",
    "*.swo",
    "*.swx",
    "4913",  # vim writability check file
    ".filemirror*",
    ".filemirror/**",
]


class IgnorePatterns:
    """Handles ignore pattern matching for file paths."""

    def __init__(self, patterns: list[str] | tuple[str, ...] | None = None) -> None:
        """Initialize with patterns.

        Args:
            patterns: List of gitignore-style patterns added to the defaults.
        """
        self._patterns = list(DEFAULT_IGNORE_PATTERNS)
        if patterns:
            self._patterns.extend(patterns)
        self._exact: set[Path] = set()

    @property
    def patterns(self) -> list[str]:
        """Get the active patterns."""
        return list(self._patterns)

    def add_pattern(self, pattern: str) -> None:
        """Add an ignore pattern."""
        self._patterns.append(pattern)

    def add_path(self, path: Path) -> None:
        """Ignore one exact absolute path (e.g. our own log file)."""
        self._exact.add(path.resolve())

    def load_from_file(self, path: Path) -> None:
        """Load patterns from a .mirrorignore file."""
        if path.exists():
            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    # Skip comments and empty lines
                    if line and not line.startswith("#"):
                        self._patterns.append(line)

    def should_ignore(self, path: Path, base_path: Path) -> bool:
        """Check if a path should be ignored.

        Args:
            path: Absolute path to check.
            base_path: Watch root.

        Returns:
            True if the path should be ignored.
        """
        if path in self._exact:
            return True

        # Symlinks are never followed or mirrored
        if path.is_symlink():
            return True

        try:
            rel_path = path.relative_to(base_path)
        except ValueError:
            return False

        rel_str = rel_path.as_posix()
        if rel_str == ".":
            return False
        parts = rel_str.split("/")

        for pattern in self._patterns:
            # Directory-only patterns (ending with /) match the dir and its contents
            if pattern.endswith("/"):
                dir_pattern = pattern[:-1]
                if any(fnmatch.fnmatch(part, dir_pattern) for part in parts[:-1]):
                    return True
                if path.is_dir() and fnmatch.fnmatch(parts[-1], dir_pattern):
                    return True
            elif "**" in pattern:
                if fnmatch.fnmatch(rel_str, pattern):
                    return True
            elif "/" in pattern:
                if fnmatch.fnmatch(rel_str, pattern.lstrip("/")):
                    return True
            # Plain name patterns apply to every path component
            elif any(fnmatch.fnmatch(part, pattern) for part in parts):
                return True

        return False
