"""cloudflared binary resolution — find, fetch and verify the client executable."""
from __future__ import annotations

import asyncio
import logging
import os
import platform
import shutil
import stat
import subprocess
import tarfile
import tempfile
from pathlib import Path
from typing import Callable

import aiohttp

from workbridge.capabilities.tunnel.base import BinaryAsset, ResolvedBinary
from workbridge.capabilities.tunnel.errors import ResolutionError, ResolutionErrorKind
from workbridge.capabilities.tunnel.platforms import (
    BINARY_NAME,
    alternate_asset,
    detect_platform,
    executable_name,
    select_asset,
)

logger = logging.getLogger(__name__)

USER_AGENT = "workbridge/0.1 (cloudflared-resolver)"
PROBE_TIMEOUT = 15.0
CHUNK_SIZE = 64 * 1024


def no_window_flags() -> int:
    """``creationflags`` that keep a console window from flashing on Windows."""
    return getattr(subprocess, "CREATE_NO_WINDOW", 0) if os.name == "nt" else 0


async def probe_binary(path: str, timeout: float = PROBE_TIMEOUT) -> bool:
    """Run ``<path> version`` and return True if it looks like cloudflared."""
    try:
        proc = await asyncio.create_subprocess_exec(
            path, "version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            creationflags=no_window_flags(),
        )
    except OSError as e:
        logger.debug("Probe of %s failed to spawn: %s", path, e)
        return False

    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.debug("Probe of %s timed out", path)
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        return False

    text = out.decode("utf-8", errors="replace").strip() if out else ""
    if proc.returncode != 0:
        logger.debug("Probe of %s exited with %s: %s", path, proc.returncode, text[:200])
        return False
    return BINARY_NAME in text.lower()


def static_check(asset: BinaryAsset, path: Path) -> str | None:
    """Cheap sanity checks before executing a download.

    Returns a failure reason, or None if the file looks plausible.  Catches
    the common case of an HTML error page saved in place of the binary.
    """
    try:
        size = path.stat().st_size
        with open(path, "rb") as f:
            head = f.read(2)
    except OSError as e:
        return f"unreadable: {e}"
    if size < asset.min_size:
        return f"too small ({size} bytes, expected at least {asset.min_size})"
    if asset.magic is not None and head != asset.magic:
        return f"bad header {head!r}, expected {asset.magic!r}"
    return None


def _discard(path: Path | str) -> None:
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Failed to remove %s: %s", path, e)


def _make_executable(path: Path) -> None:
    if os.name == "nt":
        return
    mode = path.stat().st_mode
    os.chmod(path, mode | stat.S_IRUSR | stat.S_IWUSR | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def _extract_member(archive: Path, member_name: str, dest_dir: Path, suffix: str) -> Path:
    """Copy the executable entry of a .tgz into a fresh temp file in *dest_dir*."""
    try:
        with tarfile.open(archive, "r:gz") as tar:
            files = [m for m in tar.getmembers() if m.isfile()]
            matches = [m for m in files if Path(m.name).name == member_name]
            if not matches and len(files) == 1:
                matches = files
            if not matches:
                raise ResolutionError(
                    ResolutionErrorKind.VERIFICATION,
                    f"Archive {archive.name} has no {member_name!r} entry",
                )
            src = tar.extractfile(matches[0])
            if src is None:
                raise ResolutionError(
                    ResolutionErrorKind.VERIFICATION,
                    f"Archive entry {matches[0].name!r} is not a regular file",
                )
            fd, tmp = tempfile.mkstemp(prefix=".extract-", suffix=suffix, dir=dest_dir)
            try:
                with os.fdopen(fd, "wb") as out, src:
                    shutil.copyfileobj(src, out)
            except BaseException:
                _discard(tmp)
                raise
            return Path(tmp)
    except tarfile.TarError as e:
        raise ResolutionError(
            ResolutionErrorKind.VERIFICATION, f"Corrupt archive {archive.name}: {e}",
        ) from e
    except OSError as e:
        raise ResolutionError(
            ResolutionErrorKind.DOWNLOAD, f"Failed to extract {archive.name}: {e}",
        ) from e


class BinaryResolver:
    """Finds or provisions a runnable cloudflared executable.

    Resolution order: search path, cache directory, download.  Downloads are
    staged as temp files inside the cache directory and only renamed into
    place once they pass verification, so a concurrent resolver sharing the
    directory never sees a half-written binary.
    """

    def __init__(
        self,
        cache_dir: str | Path,
        *,
        user_agent: str = USER_AGENT,
        connect_timeout: float = 30.0,
        read_timeout: float = 60.0,
        platform_info: tuple[str, str] | None = None,
        session_factory: Callable[[], aiohttp.ClientSession] | None = None,
    ) -> None:
        self._cache_dir = Path(cache_dir)
        self._user_agent = user_agent
        self._timeout = aiohttp.ClientTimeout(
            total=None, connect=connect_timeout, sock_read=read_timeout,
        )
        self._platform_info = platform_info
        self._session_factory = session_factory or self._default_session
        self._resolved: ResolvedBinary | None = None
        self._lock = asyncio.Lock()

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    @property
    def cached_path(self) -> Path:
        """Location of a previously downloaded binary."""
        os_name = self._platform_info[0] if self._platform_info else platform.system().lower()
        return self._cache_dir / executable_name(os_name)

    @property
    def resolved(self) -> ResolvedBinary | None:
        return self._resolved

    def invalidate(self) -> None:
        """Forget the memoised binary; the next resolve() starts over."""
        if self._resolved:
            logger.info("Invalidating resolved cloudflared at %s", self._resolved.path)
        self._resolved = None

    async def is_installed(self) -> bool:
        if await self._probe(BINARY_NAME):
            return True
        cached = self.cached_path
        return cached.exists() and await self._probe(str(cached))

    async def resolve(self) -> ResolvedBinary:
        """Return a verified binary, downloading one if needed.

        Raises ResolutionError.
        """
        async with self._lock:
            if self._resolved is None:
                self._resolved = await self._resolve()
                logger.info(
                    "Using cloudflared at %s (%s)",
                    self._resolved.path, self._resolved.source,
                )
            return self._resolved

    # ------------------------------------------------------------------

    async def _resolve(self) -> ResolvedBinary:
        os_name, arch = self._host_platform(strict=False)

        # 1. Operator-managed install on PATH always wins.
        if await self._probe(BINARY_NAME):
            path = shutil.which(BINARY_NAME) or BINARY_NAME
            return ResolvedBinary(path=path, os=os_name, arch=arch, source="path")

        # 2. Previously downloaded copy.
        cached = self.cached_path
        if cached.exists():
            if await self._probe(str(cached)):
                return ResolvedBinary(path=str(cached), os=os_name, arch=arch, source="cache")
            logger.warning("Cached cloudflared at %s is not runnable, removing", cached)
            _discard(cached)

        # 3. Download, trying the alternate architecture at most once.
        os_name, arch = self._host_platform(strict=True)
        primary = select_asset(os_name, arch)
        candidates = [primary]
        alternate = alternate_asset(primary)
        if alternate is not None:
            candidates.append(alternate)

        failures: list[str] = []
        for asset in candidates:
            reason = await self._try_asset(asset)
            if reason is None:
                return ResolvedBinary(
                    path=str(cached), os=asset.os, arch=asset.arch, source="download",
                )
            failures.append(f"{asset.filename}: {reason}")
            logger.warning("cloudflared asset %s rejected: %s", asset.filename, reason)

        raise ResolutionError(
            ResolutionErrorKind.VERIFICATION,
            "Downloaded cloudflared binary cannot run on this system ("
            + "; ".join(failures) + ")",
        )

    def _host_platform(self, strict: bool) -> tuple[str, str]:
        if self._platform_info:
            return self._platform_info
        try:
            return detect_platform()
        except ResolutionError:
            if strict:
                raise
            return platform.system().lower(), platform.machine().lower()

    async def _try_asset(self, asset: BinaryAsset) -> str | None:
        """Download, verify and install *asset*.  Returns a failure reason or None.

        Download errors propagate as ResolutionError(DOWNLOAD); verification
        problems are reported so the caller can fall back.
        """
        try:
            staged = await self._materialize(asset)
        except ResolutionError as e:
            if e.kind is ResolutionErrorKind.VERIFICATION:
                return str(e)
            raise

        try:
            reason = static_check(asset, staged)
            if reason is None and not await self._probe(str(staged)):
                reason = "version probe failed (wrong architecture or corrupted download)"
            if reason is not None:
                return reason
            try:
                os.replace(staged, self.cached_path)
            except OSError as e:
                raise ResolutionError(
                    ResolutionErrorKind.DOWNLOAD,
                    f"Failed to install cloudflared to {self.cached_path}: {e}",
                ) from e
            return None
        finally:
            _discard(staged)

    async def _materialize(self, asset: BinaryAsset) -> Path:
        """Download *asset* into the cache dir and return the staged executable."""
        try:
            self._cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ResolutionError(
                ResolutionErrorKind.DOWNLOAD,
                f"Cannot create cache directory {self._cache_dir}: {e}",
            ) from e

        download_suffix = Path(asset.filename).suffix
        fd, tmp_name = tempfile.mkstemp(
            prefix=".download-", suffix=download_suffix, dir=self._cache_dir,
        )
        os.close(fd)
        tmp = Path(tmp_name)

        try:
            logger.info("Downloading cloudflared %s-%s from %s", asset.os, asset.arch, asset.url)
            await self._download(asset.url, tmp)

            if asset.is_archive:
                exe_suffix = Path(executable_name(asset.os)).suffix
                staged = await asyncio.to_thread(
                    _extract_member, tmp, asset.member_name, self._cache_dir, exe_suffix,
                )
                _discard(tmp)
            else:
                staged = tmp
        except BaseException:
            _discard(tmp)
            raise

        try:
            _make_executable(staged)
        except OSError as e:
            _discard(staged)
            raise ResolutionError(
                ResolutionErrorKind.DOWNLOAD,
                f"Failed to set executable permissions on {staged}: {e}",
            ) from e
        return staged

    def _default_session(self) -> aiohttp.ClientSession:
        # Some release mirrors reject requests without a user agent.
        return aiohttp.ClientSession(
            headers={"User-Agent": self._user_agent}, timeout=self._timeout,
        )

    async def _download(self, url: str, dest: Path) -> None:
        """Stream *url* to *dest*, removing *dest* on any failure."""
        try:
            async with self._session_factory() as session:
                async with session.get(url, allow_redirects=True) as resp:
                    resp.raise_for_status()
                    with open(dest, "wb") as f:
                        async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                            f.write(chunk)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            _discard(dest)
            raise ResolutionError(
                ResolutionErrorKind.DOWNLOAD, f"Failed to download {url}: {e}",
            ) from e
        except OSError as e:
            _discard(dest)
            raise ResolutionError(
                ResolutionErrorKind.DOWNLOAD, f"Failed to write {dest}: {e}",
            ) from e
        except asyncio.CancelledError:
            _discard(dest)
            raise

    async def _probe(self, path: str) -> bool:
        return await probe_binary(path)
