"""Exceptions raised by the tunnel subsystem.

Every exception carries a ``kind`` so callers (web handlers, status
observers) can branch on the failure class without parsing messages.
"""
from __future__ import annotations

from enum import Enum


class ResolutionErrorKind(Enum):
    DOWNLOAD = "download"
    VERIFICATION = "verification"
    UNSUPPORTED_PLATFORM = "unsupported_platform"


class ProcessErrorKind(Enum):
    INVALID_CONFIG = "invalid_config"
    AUTH_FAILED = "auth_failed"
    EXITED_EARLY = "exited_early"
    TIMEOUT = "timeout"
    SPAWN_FAILED = "spawn_failed"


class OrchestratorErrorKind(Enum):
    SERVER_NOT_RUNNING = "server_not_running"
    ALREADY_RUNNING = "already_running"


class TunnelError(Exception):
    """Base exception for all tunnel-related errors."""

    kind: Enum

    def __init__(self, kind: Enum, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class ResolutionError(TunnelError):
    """Raised when no runnable cloudflared binary could be produced."""

    def __init__(self, kind: ResolutionErrorKind, message: str) -> None:
        super().__init__(kind, message)


class ProcessError(TunnelError):
    """Raised when the tunnel process could not start or yield a URL."""

    def __init__(
        self,
        kind: ProcessErrorKind,
        message: str,
        *,
        exit_code: int | None = None,
        output: str = "",
        not_runnable: bool = False,
    ) -> None:
        super().__init__(kind, message)
        self.exit_code = exit_code
        self.output = output
        # Set when the binary itself could not be executed (wrong arch,
        # missing file, permissions); the cached path should be re-resolved.
        self.not_runnable = not_runnable


class OrchestratorError(TunnelError):
    """Raised when a start request violates a precondition."""

    def __init__(self, kind: OrchestratorErrorKind, message: str) -> None:
        super().__init__(kind, message)
