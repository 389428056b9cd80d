"""Persistent shell sessions and the manager that owns them."""

from .manager import DEFAULT_SESSION_ID, ShellSessionManager
from .models import CommandRecord, SessionInfo, SessionStats, ShellConfig, ShellResult, ShellStatus
from .session import ShellSession

__all__ = [
    "DEFAULT_SESSION_ID",
    "CommandRecord",
    "SessionInfo",
    "SessionStats",
    "ShellConfig",
    "ShellResult",
    "ShellSession",
    "ShellSessionManager",
    "ShellStatus",
]
