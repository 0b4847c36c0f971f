"""Platform detection and cloudflared release asset mapping.

Everything here is pure: callers pass the raw ``platform`` values and
environment so every OS/arch combination can be tested on any host.
"""
from __future__ import annotations

import os
import platform
from typing import Mapping

from workbridge.capabilities.tunnel.base import BinaryAsset
from workbridge.capabilities.tunnel.errors import ResolutionError, ResolutionErrorKind

DOWNLOAD_BASE = "https://github.com/cloudflare/cloudflared/releases/latest/download"

BINARY_NAME = "cloudflared"

WINDOWS_MAGIC = b"MZ"
MIN_BINARY_SIZE = 100 * 1024

_OS_MAP = {
    "linux": "linux",
    "darwin": "darwin",
    "windows": "windows",
}

_ARCH_MAP = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "x64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
    "arm": "arm",
    "i386": "386",
    "i686": "386",
    "x86": "386",
}

# Supported (os, arch) pairs.  32-bit x86 Windows has no cloudflared build
# we can rely on; darwin only ships amd64/arm64.
_SUPPORTED: set[tuple[str, str]] = {
    ("linux", "amd64"),
    ("linux", "arm64"),
    ("linux", "arm"),
    ("linux", "386"),
    ("darwin", "amd64"),
    ("darwin", "arm64"),
    ("windows", "amd64"),
    ("windows", "arm64"),
}

# The single fallback candidate tried when the primary asset fails
# verification.  Only the 64-bit pair is ambiguous in practice.
_ALTERNATE_ARCH = {
    "amd64": "arm64",
    "arm64": "amd64",
}


def executable_name(os_name: str) -> str:
    """File name of the cloudflared executable on *os_name*."""
    return f"{BINARY_NAME}.exe" if os_name == "windows" else BINARY_NAME


def normalize_arch(machine: str) -> str | None:
    return _ARCH_MAP.get(machine.strip().lower())


def detect_platform(
    system: str | None = None,
    machine: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> tuple[str, str]:
    """Return ``(os, arch)`` of the host in cloudflared naming.

    On Windows a 32-bit interpreter running under WOW64 reports ``x86``;
    ``PROCESSOR_ARCHITEW6432`` then holds the real architecture, so it is
    consulted before ``PROCESSOR_ARCHITECTURE`` and ``platform.machine()``.

    Raises ``ResolutionError(UNSUPPORTED_PLATFORM)``.
    """
    system = (system if system is not None else platform.system()).lower()
    machine = machine if machine is not None else platform.machine()
    environ = environ if environ is not None else os.environ

    os_name = _OS_MAP.get(system)
    if os_name is None:
        raise ResolutionError(
            ResolutionErrorKind.UNSUPPORTED_PLATFORM,
            f"Unsupported platform: {system} {machine}",
        )

    if os_name == "windows":
        raw = (
            environ.get("PROCESSOR_ARCHITEW6432")
            or environ.get("PROCESSOR_ARCHITECTURE")
            or machine
        )
    else:
        raw = machine

    arch = normalize_arch(raw or "")
    if arch is None:
        raise ResolutionError(
            ResolutionErrorKind.UNSUPPORTED_PLATFORM,
            f"Unsupported architecture: {system} {raw}",
        )
    return os_name, arch


def select_asset(os_name: str, arch: str) -> BinaryAsset:
    """Map ``(os, arch)`` to exactly one release asset.

    Raises ``ResolutionError(UNSUPPORTED_PLATFORM)``.
    """
    if (os_name, arch) not in _SUPPORTED:
        if os_name == "windows" and arch == "386":
            msg = "Windows 32-bit is not supported by cloudflared"
        else:
            msg = f"Unsupported platform: {os_name}-{arch}"
        raise ResolutionError(ResolutionErrorKind.UNSUPPORTED_PLATFORM, msg)

    if os_name == "windows":
        return BinaryAsset(
            os=os_name,
            arch=arch,
            url=f"{DOWNLOAD_BASE}/cloudflared-windows-{arch}.exe",
            min_size=MIN_BINARY_SIZE,
            magic=WINDOWS_MAGIC,
        )
    if os_name == "darwin":
        return BinaryAsset(
            os=os_name,
            arch=arch,
            url=f"{DOWNLOAD_BASE}/cloudflared-darwin-{arch}.tgz",
            is_archive=True,
            member_name=BINARY_NAME,
            min_size=MIN_BINARY_SIZE,
        )
    return BinaryAsset(
        os=os_name,
        arch=arch,
        url=f"{DOWNLOAD_BASE}/cloudflared-linux-{arch}",
        min_size=MIN_BINARY_SIZE,
    )


def alternate_asset(asset: BinaryAsset) -> BinaryAsset | None:
    """Return the other-architecture asset for the same OS, if any."""
    alt_arch = _ALTERNATE_ARCH.get(asset.arch)
    if alt_arch is None or (asset.os, alt_arch) not in _SUPPORTED:
        return None
    return select_asset(asset.os, alt_arch)
