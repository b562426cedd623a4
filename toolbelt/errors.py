"""
Error taxonomy for the toolbelt.

Only ``ProcessRunner`` raises these across its boundary (spawn failure and
timeouts). Every higher layer converts them into structured results tagged
with an ``ErrorKind`` so callers check a ``success`` flag instead of catching.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .process_runner import CommandResult


class ErrorKind(str, Enum):
    SPAWN = "spawn"
    TIMEOUT = "timeout"
    COMPILE = "compile"
    UPLOAD = "upload"
    PORT_NOT_FOUND = "port_not_found"


class ToolbeltError(Exception):
    """Base class for all toolbelt errors."""

    kind: Optional[ErrorKind] = None


class ProcessSpawnError(ToolbeltError):
    """The tool binary is missing or not executable. Never auto-retried."""

    kind = ErrorKind.SPAWN

    def __init__(self, command: str, reason: str):
        super().__init__(f"Failed to start {command!r}: {reason}")
        self.command = command
        self.reason = reason


class CommandTimeoutError(ToolbeltError):
    """A command exceeded its timeout and was killed.

    ``partial`` holds whatever output had been captured before the kill.
    """

    kind = ErrorKind.TIMEOUT

    def __init__(self, command: str, timeout_s: float, partial: "CommandResult"):
        super().__init__(f"{command!r} timed out after {timeout_s:g}s")
        self.command = command
        self.timeout_s = timeout_s
        self.partial = partial

