"""Shared types for the tunnel capability."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Protocol, runtime_checkable


class TunnelMode(Enum):
    QUICK = "quick"
    NAMED = "named"


class TunnelState(Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(frozen=True)
class TunnelConfig:
    """Input to a start request."""

    local_port: int
    tunnel_name: str | None = None  # non-empty -> named mode
    auth_token: str | None = None
    binary_path: str | None = None  # override; normally set after resolution
    # Reserved, not consumed by the process layer.
    subdomain: str | None = None
    host: str | None = None

    @property
    def mode(self) -> TunnelMode:
        return TunnelMode.QUICK if self.tunnel_name is None else TunnelMode.NAMED


@dataclass(frozen=True)
class TunnelStatus:
    """Immutable snapshot of the primary tunnel, handed to observers."""

    running: bool = False
    state: TunnelState = TunnelState.IDLE
    mode: TunnelMode | None = None
    public_url: str | None = None
    pid: int | None = None
    last_error: str | None = None
    started_at: datetime | None = None
    local_port: int | None = None

    def to_dict(self) -> dict:
        return {
            "running": self.running,
            "state": self.state.value,
            "mode": self.mode.value if self.mode else None,
            "publicUrl": self.public_url,
            "pid": self.pid,
            "lastError": self.last_error,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "localPort": self.local_port,
        }


@dataclass(frozen=True)
class BinaryAsset:
    """One downloadable cloudflared artifact."""

    os: str    # "linux", "darwin", "windows"
    arch: str  # "amd64", "arm64", "arm", "386"
    url: str
    is_archive: bool = False
    member_name: str = "cloudflared"  # executable entry inside the archive
    min_size: int = 100 * 1024
    magic: bytes | None = None  # required leading bytes, e.g. b"MZ"

    @property
    def filename(self) -> str:
        return self.url.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class ResolvedBinary:
    """A verified, runnable cloudflared executable."""

    path: str
    os: str
    arch: str
    verified: bool = True
    source: str = "path"  # "path", "cache" or "download"


@runtime_checkable
class TunnelProcessProtocol(Protocol):
    """Interface the orchestrator needs from a tunnel process."""

    @property
    def pid(self) -> int | None: ...

    @property
    def public_url(self) -> str | None: ...

    @property
    def is_alive(self) -> bool: ...

    async def start(self, config: TunnelConfig, deadline: float = ...) -> str: ...

    async def stop(self) -> None: ...


@dataclass
class CapturedOutput:
    """Bounded tail of process output kept for diagnostics."""

    limit: int = 200
    lines: list[str] = field(default_factory=list)

    def append(self, line: str) -> None:
        self.lines.append(line)
        if len(self.lines) > self.limit:
            del self.lines[: len(self.lines) - self.limit]

    def text(self) -> str:
        return "\n".join(self.lines)
