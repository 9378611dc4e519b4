"""Shared types for filemirror.

This module defines enums used by both the session layer and the
pipeline host.
"""

from __future__ import annotations

from enum import Enum


class ConnectionState(str, Enum):
    """Connection state of a remote session.

    Only the Session transitions between these states; workers and the
    lifecycle host observe them.
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    DEGRADED = "degraded"


class MirrorError(Exception):
    """Base exception for filemirror errors."""
