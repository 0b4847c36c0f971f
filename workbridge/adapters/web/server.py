"""Host HTTP server — tunnel control REST API and SSE status stream.

The browser client drives the tunnel through these endpoints and watches
``/api/events`` for status snapshots.
"""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from aiohttp import web

from workbridge.capabilities.tunnel.base import TunnelConfig
from workbridge.capabilities.tunnel.errors import (
    OrchestratorErrorKind,
    ProcessErrorKind,
    TunnelError,
)
from workbridge.core.events import EventBus, ServerStateEvent, TunnelStatusEvent

if TYPE_CHECKING:
    from workbridge.capabilities.tunnel.orchestrator import TunnelOrchestrator

logger = logging.getLogger(__name__)

_SSE_EVENT_TYPES: list[type] = [TunnelStatusEvent, ServerStateEvent]

_ERROR_STATUS = {
    OrchestratorErrorKind.SERVER_NOT_RUNNING: 503,
    OrchestratorErrorKind.ALREADY_RUNNING: 409,
    ProcessErrorKind.INVALID_CONFIG: 400,
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _serialize_event(ev: object) -> dict:
    """Convert a typed event to a JSON-serializable dict for SSE."""
    data: dict = {"type": type(ev).__name__}
    if isinstance(ev, TunnelStatusEvent):
        data["status"] = ev.status.to_dict()
    elif isinstance(ev, ServerStateEvent):
        data["running"] = ev.running
        data["url"] = ev.url
    return data


def _error_response(e: TunnelError) -> web.Response:
    status = _ERROR_STATUS.get(e.kind, 502)
    return web.json_response({"error": str(e), "kind": e.kind.value}, status=status)


def _optional_str(body: dict, key: str) -> str | None:
    value = body.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------

async def _handle_health(request: web.Request) -> web.Response:
    return web.json_response({"ok": True})


async def _handle_tunnel_status(request: web.Request) -> web.Response:
    """GET /api/tunnel"""
    orch: TunnelOrchestrator = request.app["orchestrator"]
    return web.json_response(orch.get_status().to_dict())


async def _handle_tunnel_start(request: web.Request) -> web.Response:
    """POST /api/tunnel/start — body: {tunnelName?, authToken?, localPort?}"""
    orch: TunnelOrchestrator = request.app["orchestrator"]
    default = orch.default_config
    try:
        body = await request.json() if request.can_read_body else {}
    except json.JSONDecodeError:
        return web.json_response({"error": "invalid JSON body"}, status=400)
    if not isinstance(body, dict):
        return web.json_response({"error": "body must be an object"}, status=400)

    try:
        local_port = body.get("localPort", default.local_port if default else None)
        if local_port is None:
            return web.json_response({"error": "localPort is required"}, status=400)
        config = TunnelConfig(
            local_port=int(local_port),
            tunnel_name=_optional_str(body, "tunnelName"),
            auth_token=_optional_str(body, "authToken"),
        )
    except (TypeError, ValueError) as e:
        return web.json_response({"error": str(e)}, status=400)

    try:
        status = await orch.start_tunnel(config)
    except TunnelError as e:
        return _error_response(e)
    return web.json_response(status.to_dict())


async def _handle_tunnel_stop(request: web.Request) -> web.Response:
    """POST /api/tunnel/stop"""
    orch: TunnelOrchestrator = request.app["orchestrator"]
    await orch.stop_tunnel()
    return web.json_response(orch.get_status().to_dict())


async def _handle_tunnel_install(request: web.Request) -> web.Response:
    """POST /api/tunnel/install — resolve or download cloudflared."""
    orch: TunnelOrchestrator = request.app["orchestrator"]
    try:
        resolved = await orch.install()
    except TunnelError as e:
        return _error_response(e)
    return web.json_response({"path": resolved.path, "source": resolved.source})


async def _handle_sse(request: web.Request) -> web.StreamResponse:
    """GET /api/events — Server-Sent Events stream of status changes."""
    event_bus = request.app["event_bus"]
    orch: TunnelOrchestrator = request.app["orchestrator"]

    response = web.StreamResponse(
        status=200,
        reason="OK",
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
    await response.prepare(request)

    queue = event_bus.subscribe_many(_SSE_EVENT_TYPES)
    try:
        # Current snapshot first so a fresh client needs no extra request.
        initial = TunnelStatusEvent(status=orch.get_status())
        await response.write(_format_sse(initial))
        while True:
            ev = await queue.get()
            await response.write(_format_sse(ev))
    except (asyncio.CancelledError, ConnectionResetError):
        pass
    finally:
        event_bus.unsubscribe_all(queue)

    return response


def _format_sse(ev: object) -> bytes:
    payload = json.dumps(_serialize_event(ev), ensure_ascii=False)
    return f"data: {payload}\n\n".encode("utf-8")


async def _handle_logs(request: web.Request) -> web.Response:
    """GET /api/logs — tail of the host log file."""
    try:
        lines_count = int(request.query.get("lines", "200"))
    except (ValueError, TypeError):
        lines_count = 200
    lines_count = max(1, min(lines_count, 1000))
    path = Path(request.app["log_file"])
    if not path.exists():
        return web.json_response({"lines": []})
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning("Failed to read log file: %s", e)
        return web.json_response({"lines": ["Error reading log file"]})
    return web.json_response({"lines": text.splitlines()[-lines_count:]})


# ---------------------------------------------------------------------------
# App factory & server class
# ---------------------------------------------------------------------------

def build_app(
    orchestrator: TunnelOrchestrator,
    event_bus: EventBus,
    log_file: str,
) -> web.Application:
    app = web.Application()
    app["orchestrator"] = orchestrator
    app["event_bus"] = event_bus
    app["log_file"] = log_file

    app.router.add_get("/api/health", _handle_health)

    # Tunnel
    app.router.add_get("/api/tunnel", _handle_tunnel_status)
    app.router.add_post("/api/tunnel/start", _handle_tunnel_start)
    app.router.add_post("/api/tunnel/stop", _handle_tunnel_stop)
    app.router.add_post("/api/tunnel/install", _handle_tunnel_install)

    # SSE + logs
    app.router.add_get("/api/events", _handle_sse)
    app.router.add_get("/api/logs", _handle_logs)

    return app


class HostServer:
    """aiohttp server hosting the workspace API on localhost."""

    def __init__(self, event_bus: EventBus, log_file: str, host: str = "127.0.0.1", port: int = 3900) -> None:
        self._event_bus = event_bus
        self._log_file = log_file
        self._host = host
        self._port = port
        self._runner: web.AppRunner | None = None

    @property
    def is_running(self) -> bool:
        """Readiness query consumed by the tunnel orchestrator."""
        return self._runner is not None

    @property
    def url(self) -> str:
        return f"http://{self._host}:{self._port}"

    async def start(self, orchestrator: TunnelOrchestrator) -> None:
        app = build_app(orchestrator, self._event_bus, self._log_file)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        self._event_bus.publish(ServerStateEvent(running=True, url=self.url))
        logger.info("Host server running at %s", self.url)

    async def stop(self) -> None:
        if self._runner:
            runner = self._runner
            self._runner = None
            await runner.cleanup()
            self._event_bus.publish(ServerStateEvent(running=False))
            logger.info("Host server stopped")
