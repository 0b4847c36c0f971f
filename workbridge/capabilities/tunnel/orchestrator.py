"""Primary tunnel coordinator — the start/stop state machine and its status events.

One ``TunnelOrchestrator`` is built by the composition root and handed to
every caller; it owns the resolver and at most one live ``TunnelProcess``.

States::

    IDLE -> RESOLVING -> STARTING -> RUNNING -> STOPPING -> IDLE
               \\____________\\___ error ___________________/

Every failure returns to IDLE with ``last_error`` set, so a later
``start_tunnel()`` is always possible.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable

from workbridge.capabilities.tunnel.base import (
    ResolvedBinary,
    TunnelConfig,
    TunnelProcessProtocol,
    TunnelState,
    TunnelStatus,
)
from workbridge.capabilities.tunnel.errors import (
    OrchestratorError,
    OrchestratorErrorKind,
    ProcessError,
    ProcessErrorKind,
)
from workbridge.capabilities.tunnel.process import DEFAULT_DEADLINE, TunnelProcess, build_args
from workbridge.capabilities.tunnel.resolver import BinaryResolver

logger = logging.getLogger(__name__)

StatusListener = Callable[[TunnelStatus], Any]
ProcessFactory = Callable[[str], TunnelProcessProtocol]


class TunnelOrchestrator:
    """Single-slot tunnel manager with ordered, synchronous status events."""

    def __init__(
        self,
        resolver: BinaryResolver,
        *,
        server_ready: Callable[[], bool],
        default_config: TunnelConfig | None = None,
        process_factory: ProcessFactory | None = None,
        start_timeout: float = DEFAULT_DEADLINE,
    ) -> None:
        self._resolver = resolver
        self._server_ready = server_ready
        self._default_config = default_config
        self._process_factory: ProcessFactory = process_factory or TunnelProcess
        self._start_timeout = start_timeout

        self._status = TunnelStatus()
        self._listeners: list[StatusListener] = []
        self._process: TunnelProcessProtocol | None = None
        self._start_task: asyncio.Task | None = None
        # Start task cancelled by stop_tunnel() before anything was spawned.
        self._stop_cancelled: asyncio.Task | None = None
        # Bumped by every start and stop; a start whose generation is stale
        # was overtaken by a stop and must not publish RUNNING.
        self._generation = 0

    # -- Queries -----------------------------------------------------------

    @property
    def state(self) -> TunnelState:
        return self._status.state

    @property
    def is_active(self) -> bool:
        return (
            self._start_task is not None
            or self._process is not None
            or self.state is not TunnelState.IDLE
        )

    @property
    def default_config(self) -> TunnelConfig | None:
        return self._default_config

    def get_status(self) -> TunnelStatus:
        return self._status

    # -- Observers -----------------------------------------------------------

    def on_status_changed(self, listener: StatusListener) -> Callable[[], None]:
        """Register *listener* for every transition.  Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self) -> None:
        snapshot = self._status
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Tunnel status listener %r failed", listener)

    def _transition(self, **changes: Any) -> None:
        self._status = replace(self._status, **changes)
        logger.debug("Tunnel state -> %s", self._status.state.value)
        self._emit()

    # -- Commands ------------------------------------------------------------

    async def start_tunnel(self, config: TunnelConfig | None = None) -> TunnelStatus:
        """Start the primary tunnel.  Returns the RUNNING status snapshot.

        Every rejection is also delivered to observers: either a new
        snapshot with ``last_error`` set, or the unchanged snapshot when a
        live tunnel must keep its status.

        Raises OrchestratorError, ResolutionError or ProcessError.
        """
        if not self._server_ready():
            err = OrchestratorError(
                OrchestratorErrorKind.SERVER_NOT_RUNNING, "Host server is not running",
            )
            if self.state is TunnelState.IDLE:
                self._transition(last_error=str(err))
            else:
                self._emit()
            raise err

        # Checked and set with no await in between: concurrent callers are
        # rejected, never queued.
        if self.is_active:
            self._emit()
            raise OrchestratorError(
                OrchestratorErrorKind.ALREADY_RUNNING, "A tunnel is already running",
            )

        config = config or self._default_config
        if config is None:
            err = ProcessError(ProcessErrorKind.INVALID_CONFIG, "No tunnel configuration given")
            self._transition(last_error=str(err))
            raise err
        try:
            build_args(config)
        except ProcessError as e:
            self._transition(last_error=str(e))
            raise

        self._generation += 1
        generation = self._generation
        task = asyncio.ensure_future(self._start(config, generation))
        self._start_task = task
        try:
            return await task
        except asyncio.CancelledError:
            if self._stop_cancelled is task:
                self._stop_cancelled = None
                raise self._cancelled_by_stop() from None
            raise
        finally:
            if self._start_task is task:
                self._start_task = None

    async def stop_tunnel(self) -> None:
        """Stop the primary tunnel.  No-op when idle; never raises."""
        if self.state is TunnelState.STOPPING:
            return
        start_task = self._start_task
        if self.state is TunnelState.IDLE and self._process is None and start_task is None:
            return

        self._generation += 1
        self._start_task = None
        process = self._process
        self._process = None

        # Nothing spawned yet: abandon the resolve or download outright.
        cancelled: asyncio.Task | None = None
        if start_task is not None and process is None and not start_task.done():
            start_task.cancel()
            self._stop_cancelled = cancelled = start_task

        self._transition(state=TunnelState.STOPPING)
        if process is not None:
            await process.stop()
        if cancelled is not None:
            # Let the resolver remove partial downloads before reporting IDLE.
            await asyncio.wait({cancelled})
        self._transition(
            state=TunnelState.IDLE,
            running=False,
            public_url=None,
            pid=None,
            started_at=None,
            last_error=None,
        )
        logger.info("Tunnel stopped")

    async def auto_start(self) -> TunnelStatus | None:
        """Start with the default config on host startup.

        Failures are logged and reach observers through ``last_error``;
        nothing is raised into the host.
        """
        if self._default_config is None:
            logger.warning("Tunnel auto-start requested without a default config")
            return None
        try:
            return await self.start_tunnel(self._default_config)
        except Exception as e:
            logger.warning("Tunnel auto-start failed: %s", e)
            return None

    async def install(self) -> ResolvedBinary:
        """Resolve (and if necessary download) cloudflared without starting it."""
        return await self._resolver.resolve()

    # ------------------------------------------------------------------

    def _is_stale(self, generation: int) -> bool:
        return generation != self._generation

    def _cancelled_by_stop(self) -> ProcessError:
        return ProcessError(
            ProcessErrorKind.EXITED_EARLY, "Tunnel start was cancelled by stop_tunnel()",
        )

    async def _start(self, config: TunnelConfig, generation: int) -> TunnelStatus:
        self._transition(
            state=TunnelState.RESOLVING,
            running=False,
            mode=config.mode,
            public_url=None,
            pid=None,
            last_error=None,
            started_at=None,
            local_port=config.local_port,
        )
        try:
            binary = config.binary_path or (await self._resolver.resolve()).path
            if self._is_stale(generation):
                raise self._cancelled_by_stop()

            self._transition(state=TunnelState.STARTING)
            process, url = await self._launch(config, binary, generation)
        except asyncio.CancelledError:
            # An abandoned start keeps its process reachable by stop_tunnel().
            if self._process is None and not self._is_stale(generation):
                self._transition(
                    state=TunnelState.IDLE, last_error="Tunnel start was cancelled",
                )
            raise
        except Exception as e:
            if not self._is_stale(generation):
                await self._discard_process()
            self._fail(e, generation)
            raise

        if self._is_stale(generation):
            # stop_tunnel() may have found nothing to signal yet; this process
            # must not outlive the abandoned start.
            await process.stop()
            raise self._cancelled_by_stop()

        self._transition(
            state=TunnelState.RUNNING,
            running=True,
            public_url=url,
            pid=process.pid,
            started_at=datetime.now(timezone.utc),
            last_error=None,
        )
        logger.info("Tunnel running at %s (pid %s)", url, process.pid)
        return self._status

    async def _launch(
        self, config: TunnelConfig, binary: str, generation: int,
    ) -> tuple[TunnelProcessProtocol, str]:
        """Start a process; re-resolve once if the cached binary will not execute."""
        retried = False
        while True:
            process = self._process_factory(binary)
            self._process = process
            try:
                url = await process.start(config, deadline=self._start_timeout)
                return process, url
            except ProcessError as e:
                retryable = (
                    e.kind is ProcessErrorKind.SPAWN_FAILED
                    and e.not_runnable
                    and not config.binary_path
                    and not retried
                    and not self._is_stale(generation)
                )
                if not retryable:
                    raise
                logger.warning("cloudflared at %s is not runnable (%s); re-resolving", binary, e)
                retried = True
                self._process = None
                self._resolver.invalidate()
                binary = (await self._resolver.resolve()).path
                if self._is_stale(generation):
                    await process.stop()
                    raise self._cancelled_by_stop() from e

    async def _discard_process(self) -> None:
        process = self._process
        self._process = None
        if process is not None:
            await process.stop()

    def _fail(self, error: Exception, generation: int) -> None:
        logger.warning("Tunnel start failed: %s", error)
        if self._is_stale(generation):
            # stop_tunnel() already published IDLE for this attempt.
            return
        self._transition(
            state=TunnelState.IDLE,
            running=False,
            public_url=None,
            pid=None,
            started_at=None,
            last_error=str(error) or type(error).__name__,
        )
