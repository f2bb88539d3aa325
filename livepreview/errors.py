"""Exception types shared by the watch/compile/notify pipeline."""
from __future__ import annotations

from typing import Optional


class StartupFailure(Exception):
    """Fatal problem detected before serving (bad watch root, port in use)."""


class CompileError(Exception):
    """Raised by a compiler when the document could not be rendered.

    ``stderr`` keeps the raw diagnostic output of the engine, if any.
    """

    def __init__(self, message: str, stderr: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.stderr = stderr or ""

    def __str__(self) -> str:
        if self.stderr:
            return f"{self.message}\n{self.stderr.rstrip()}"
        return self.message


class ConnectionFailure(Exception):
    """A single viewer connection could not be delivered to."""

    def __init__(self, conn_id: str, reason: str) -> None:
        super().__init__(f"{conn_id}: {reason}")
        self.conn_id = conn_id
        self.reason = reason


class RegistryClosed(Exception):
    """Raised when registering a viewer after the server began shutting down."""


class PathBlockedError(Exception):
    """Raised when a requested asset path escapes the watch root."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


__all__ = [
    "StartupFailure",
    "CompileError",
    "ConnectionFailure",
    "RegistryClosed",
    "PathBlockedError",
]
