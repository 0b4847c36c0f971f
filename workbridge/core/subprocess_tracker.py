"""Child process tracker: makes sure tunnel clients die with the host.

Long-running children (the cloudflared tunnel client) are registered here
with a label.  An ``atexit`` hook sends SIGTERM to every registered PID, and
the registry is mirrored to a JSON file so that orphans left behind by a
crashed host can be reaped on the next start.
"""
from __future__ import annotations

import atexit
import json
import logging
import os
import signal
from pathlib import Path

logger = logging.getLogger(__name__)

_tracked: dict[int, str] = {}
_pid_file: Path | None = None


def set_pid_file(path: str | Path) -> None:
    """Set where tracked PIDs are persisted (call once at startup)."""
    global _pid_file
    _pid_file = Path(path)


def track(pid: int, label: str = "child") -> None:
    """Register a long-running subprocess."""
    _tracked[pid] = label
    _save()


def untrack(pid: int) -> None:
    """Forget a subprocess that exited or was stopped normally."""
    if _tracked.pop(pid, None) is not None:
        _save()


def tracked() -> dict[int, str]:
    return dict(_tracked)


def _signal(pid: int, label: str) -> bool:
    try:
        os.kill(pid, signal.SIGTERM)
        return True
    except ProcessLookupError:
        return False
    except OSError as e:
        logger.debug("Failed to signal %s (pid %d): %s", label, pid, e)
        return False


def terminate_all() -> None:
    """SIGTERM every tracked PID.  Registered with ``atexit``."""
    for pid, label in list(_tracked.items()):
        if _signal(pid, label):
            logger.debug("Sent SIGTERM to %s (pid %d)", label, pid)
    _tracked.clear()
    _save()


def reap_stale() -> int:
    """Terminate orphans recorded by a previous run.  Returns the count."""
    if not _pid_file or not _pid_file.exists():
        return 0
    try:
        stale = json.loads(_pid_file.read_text() or "{}")
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Ignoring unreadable PID file %s: %s", _pid_file, e)
        stale = {}

    killed = 0
    for raw_pid, label in stale.items():
        try:
            pid = int(raw_pid)
        except ValueError:
            continue
        if pid in _tracked:
            continue
        if _signal(pid, label):
            killed += 1
            logger.info("Killed stale %s (pid %d)", label, pid)
    if killed:
        logger.info("Cleaned up %d stale subprocess(es)", killed)
    _save()
    return killed


def _save() -> None:
    if not _pid_file:
        return
    try:
        _pid_file.parent.mkdir(parents=True, exist_ok=True)
        _pid_file.write_text(json.dumps({str(p): l for p, l in _tracked.items()}))
    except OSError as e:
        logger.debug("Could not persist PID file %s: %s", _pid_file, e)


# Covers normal exits and unhandled exceptions.  SIGKILL of the host cannot be
# caught; reap_stale() on the next start handles that case.
atexit.register(terminate_all)
