"""cloudflared tunnel process — one supervised child per tunnel."""
from __future__ import annotations

import asyncio
import errno
import logging
import os
from typing import Any, Awaitable, Callable

from workbridge.capabilities.tunnel.base import CapturedOutput, TunnelConfig
from workbridge.capabilities.tunnel.errors import ProcessError, ProcessErrorKind
from workbridge.capabilities.tunnel.patterns import extract_url
from workbridge.capabilities.tunnel.resolver import no_window_flags
from workbridge.core.subprocess_tracker import track, untrack

logger = logging.getLogger(__name__)

DEFAULT_DEADLINE = 60.0
GRACE_PERIOD = 5.0
KILL_WAIT = 5.0

# ERROR_BAD_EXE_FORMAT: wrong-architecture executable on Windows.
_WIN_BAD_EXE_FORMAT = 193

Spawner = Callable[..., Awaitable[Any]]


def build_args(config: TunnelConfig) -> list[str]:
    """Return the cloudflared argument vector (without the binary) for *config*.

    Raises ProcessError(INVALID_CONFIG) for a non-positive port or a blank
    tunnel name, before anything is spawned.
    """
    port = config.local_port
    if isinstance(port, bool) or not isinstance(port, int) or port <= 0:
        raise ProcessError(
            ProcessErrorKind.INVALID_CONFIG,
            f"local_port must be a positive integer, got {port!r}",
        )

    if config.tunnel_name is None:
        return ["--no-autoupdate", "tunnel", "--url", f"http://localhost:{port}"]

    name = config.tunnel_name.strip()
    if not name:
        raise ProcessError(
            ProcessErrorKind.INVALID_CONFIG, "Tunnel name must not be empty",
        )
    return ["--no-autoupdate", "tunnel", "run", name]


def _is_not_runnable(e: OSError) -> bool:
    if isinstance(e, (FileNotFoundError, PermissionError)):
        return True
    if getattr(e, "winerror", None) == _WIN_BAD_EXE_FORMAT:
        return True
    return e.errno in (errno.ENOEXEC, errno.EACCES, errno.ENOENT)


class TunnelProcess:
    """One cloudflared process for the lifetime of a tunnel.

    ``start()`` resolves once a public URL shows up in the combined
    stdout/stderr stream.  A background reader keeps draining output until
    the process exits so the child never blocks on a full pipe.
    """

    def __init__(
        self,
        binary_path: str,
        *,
        spawn: Spawner | None = None,
        grace_period: float = GRACE_PERIOD,
        kill_wait: float = KILL_WAIT,
    ) -> None:
        self._binary = binary_path
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._grace = grace_period
        self._kill_wait = kill_wait
        self._proc: Any = None
        self._reader: asyncio.Task | None = None
        self._url_future: asyncio.Future[str] | None = None
        self._public_url: str | None = None
        self._output = CapturedOutput()
        self._stopped = False

    @property
    def binary_path(self) -> str:
        return self._binary

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def public_url(self) -> str | None:
        return self._public_url

    @property
    def is_alive(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def exit_code(self) -> int | None:
        return self._proc.returncode if self._proc is not None else None

    @property
    def output(self) -> list[str]:
        return list(self._output.lines)

    async def start(self, config: TunnelConfig, deadline: float = DEFAULT_DEADLINE) -> str:
        """Spawn cloudflared and wait for its public URL.  Returns the URL.

        Raises ProcessError.
        """
        if self._proc is not None:
            raise RuntimeError("TunnelProcess can only be started once")

        args = build_args(config)

        if config.auth_token:
            await self._authenticate(config.auth_token, timeout=deadline)
            if self._stopped:
                raise self._stopped_during_start()

        logger.info("Starting cloudflared: %s %s", self._binary, " ".join(args))
        try:
            self._proc = await self._spawn(
                self._binary, *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                creationflags=no_window_flags(),
            )
        except OSError as e:
            raise ProcessError(
                ProcessErrorKind.SPAWN_FAILED,
                f"Failed to launch {self._binary}: {e}",
                not_runnable=_is_not_runnable(e),
            ) from e

        if self._stopped:
            # stop() ran while the spawn was in flight and had nothing to signal.
            await self._force_kill(self._proc)
            raise self._stopped_during_start()

        track(self._proc.pid, "cloudflared")

        loop = asyncio.get_running_loop()
        self._url_future = loop.create_future()
        # Consume the outcome even if nobody awaits it (abandoned start).
        self._url_future.add_done_callback(
            lambda f: None if f.cancelled() else f.exception()
        )
        self._reader = asyncio.create_task(self._drain(self._proc, self._url_future))

        try:
            url = await asyncio.wait_for(asyncio.shield(self._url_future), timeout=deadline)
        except asyncio.TimeoutError:
            logger.warning(
                "No tunnel URL from cloudflared (pid %d) after %.1fs, killing it",
                self._proc.pid, deadline,
            )
            self._url_future.cancel()
            await self._force_kill(self._proc)
            await self._finish_reader()
            raise ProcessError(
                ProcessErrorKind.TIMEOUT,
                f"Timed out after {deadline:g}s waiting for tunnel URL",
                output=self._output.text(),
            ) from None

        return url

    async def stop(self) -> None:
        """Terminate gracefully, then force.  Idempotent; never raises."""
        self._stopped = True
        proc = self._proc
        if proc is None:
            return
        # A start() still waiting for its URL fails with EXITED_EARLY once the
        # reader observes the exit.
        try:
            if proc.returncode is None:
                try:
                    proc.terminate()
                except ProcessLookupError:
                    logger.debug("cloudflared (pid %d) already gone", proc.pid)
                try:
                    await asyncio.wait_for(proc.wait(), timeout=self._grace)
                except asyncio.TimeoutError:
                    logger.warning(
                        "cloudflared (pid %d) ignored SIGTERM for %.1fs, killing",
                        proc.pid, self._grace,
                    )
                    await self._force_kill(proc)
                else:
                    logger.info("Stopped cloudflared (pid %d)", proc.pid)

            await self._finish_reader()
        except Exception:
            logger.warning("Error while stopping cloudflared (pid %s)", proc.pid, exc_info=True)
        finally:
            untrack(proc.pid)
            self._public_url = None

    # ------------------------------------------------------------------

    def _stopped_during_start(self) -> ProcessError:
        return ProcessError(
            ProcessErrorKind.EXITED_EARLY,
            "cloudflared was stopped before it published a URL",
            output=self._output.text(),
        )

    async def _authenticate(self, token: str, timeout: float) -> None:
        """Run ``cloudflared tunnel token <token>`` and require a clean exit."""
        logger.info("Authenticating cloudflared tunnel")
        try:
            proc = await self._spawn(
                self._binary, "tunnel", "token", token,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                creationflags=no_window_flags(),
            )
        except OSError as e:
            raise ProcessError(
                ProcessErrorKind.SPAWN_FAILED,
                f"Failed to launch {self._binary}: {e}",
                not_runnable=_is_not_runnable(e),
            ) from e

        try:
            out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            raise ProcessError(
                ProcessErrorKind.AUTH_FAILED,
                f"Tunnel authentication timed out after {timeout:g}s",
            ) from None

        if proc.returncode != 0:
            text = out.decode("utf-8", errors="replace").strip() if out else ""
            raise ProcessError(
                ProcessErrorKind.AUTH_FAILED,
                f"Tunnel authentication failed (exit code {proc.returncode})",
                exit_code=proc.returncode,
                output=text,
            )

    async def _drain(self, proc: Any, url_future: asyncio.Future[str]) -> None:
        """Read output until EOF; resolve *url_future* on the first URL."""
        stream = proc.stdout
        while stream is not None:
            try:
                raw = await stream.readline()
            except ValueError:
                # Over-long line; the reader already discarded it.
                continue
            if not raw:
                break
            text = raw.decode("utf-8", errors="replace").rstrip()
            if not text:
                continue
            self._output.append(text)
            logger.debug("cloudflared: %s", text)

            if url_future.done():
                continue
            url = extract_url(text)
            if url:
                self._public_url = url
                logger.info("Tunnel URL: %s", url)
                url_future.set_result(url)

        code = await proc.wait()
        untrack(proc.pid)
        if not url_future.done():
            url_future.set_exception(ProcessError(
                ProcessErrorKind.EXITED_EARLY,
                f"cloudflared exited with code {code} before publishing a URL",
                exit_code=code,
                output=self._output.text(),
            ))
        else:
            logger.info("cloudflared (pid %d) exited with code %s", proc.pid, code)

    async def _force_kill(self, proc: Any) -> None:
        if proc.returncode is None:
            if os.name == "nt":
                await self._taskkill(proc)
            else:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._kill_wait)
        except asyncio.TimeoutError:
            logger.error("cloudflared (pid %d) still running after kill", proc.pid)

    async def _taskkill(self, proc: Any) -> None:
        """Kill the whole process tree on Windows; falls back to kill()."""
        try:
            killer = await self._spawn(
                "taskkill", "/PID", str(proc.pid), "/T", "/F",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                creationflags=no_window_flags(),
            )
            await asyncio.wait_for(killer.wait(), timeout=self._kill_wait)
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug("taskkill for pid %d failed: %s", proc.pid, e)
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    async def _finish_reader(self) -> None:
        if self._reader is None or self._reader.done():
            return
        try:
            await asyncio.wait_for(self._reader, timeout=self._kill_wait)
        except asyncio.TimeoutError:
            logger.warning("Output reader did not finish; abandoned")
