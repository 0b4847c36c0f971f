from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from workbridge.core import subprocess_tracker


@pytest.fixture(autouse=True)
def isolated_tracker(monkeypatch):
    """Keep fake PIDs out of the real tracker and its atexit hook."""
    monkeypatch.setattr(subprocess_tracker, "_tracked", {})
    monkeypatch.setattr(subprocess_tracker, "_pid_file", None)


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    """Provide an isolated binary cache directory."""
    d = tmp_path / "cache"
    d.mkdir()
    return d


class FakeProcess:
    """Scripted stand-in for an ``asyncio.subprocess.Process``.

    Emits *lines* on stdout (one every *line_delay* seconds), then exits with
    *exit_code*.  With ``exit_code=None`` it keeps running until terminated
    or killed.
    """

    _next_pid = 40000

    def __init__(
        self,
        lines: list[str] | tuple[str, ...] = (),
        *,
        exit_code: int | None = None,
        line_delay: float = 0.0,
        ignore_terminate: bool = False,
        output: bytes = b"",
    ) -> None:
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.returncode: int | None = None
        self.stdout = asyncio.StreamReader()
        self.terminated = False
        self.killed = False
        self._ignore_terminate = ignore_terminate
        self._output = output
        self._exited = asyncio.Event()
        self._feeder = asyncio.get_running_loop().create_task(
            self._feed(list(lines), line_delay, exit_code)
        )

    async def _feed(self, lines: list[str], delay: float, exit_code: int | None) -> None:
        for line in lines:
            if delay:
                await asyncio.sleep(delay)
            if self.returncode is not None:
                return
            self.stdout.feed_data(f"{line}\n".encode())
        if exit_code is not None:
            self._exit(exit_code)

    def _exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self._exited.set()
        if self._feeder is not asyncio.current_task():
            self._feeder.cancel()

    def terminate(self) -> None:
        self.terminated = True
        if not self._ignore_terminate:
            self._exit(-15)

    def kill(self) -> None:
        self.killed = True
        self._exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    async def communicate(self) -> tuple[bytes, None]:
        await self.wait()
        return self._output, None


class FakeSpawner:
    """Replaces ``asyncio.create_subprocess_exec``; hands out queued fakes.

    With *gate* set, every spawn is recorded and then held until the gate
    opens.
    """

    def __init__(
        self, *results: FakeProcess | BaseException, gate: asyncio.Event | None = None,
    ) -> None:
        self._results = list(results)
        self._gate = gate
        self.calls: list[tuple[str, ...]] = []

    async def __call__(self, *args: str, **kwargs) -> FakeProcess:
        self.calls.append(args)
        if self._gate is not None:
            await self._gate.wait()
        result = self._results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

