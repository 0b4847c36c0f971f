"""Public URL extraction from cloudflared output lines.

cloudflared has no machine-readable "ready" signal; the public hostname is
printed inside its log banner.  The patterns below are the compatibility
contract with the client's output phrasing.
"""
from __future__ import annotations

import re

_HOST = r"[a-z0-9](?:[a-z0-9-]*[a-z0-9])?(?:\.[a-z0-9](?:[a-z0-9-]*[a-z0-9])?)*"

# Tried in order; the first pattern with a usable match wins.
URL_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(rf"(https://{_HOST}\.trycloudflare\.com)\b", re.IGNORECASE),
    re.compile(rf"(https://{_HOST}\.cloudflaretunnel\.com)\b", re.IGNORECASE),
    re.compile(rf"(https://{_HOST}\.cfargotunnel\.com)\b", re.IGNORECASE),
    re.compile(rf"(https://{_HOST}\.tunnel\.cloudflare\.com)\b", re.IGNORECASE),
    re.compile(r"tunnel\b.*?\bstarted\b.*?(https://[^\s\"'|<>]+)", re.IGNORECASE),
)

# Provider control-plane endpoints that show up in error lines
# ("failed to request quick Tunnel: Post https://api.trycloudflare.com/tunnel").
_EXCLUDED_HOSTS = frozenset({"api.trycloudflare.com"})


def _host_of(url: str) -> str:
    return url.split("://", 1)[-1].split("/", 1)[0].split(":", 1)[0].lower()


def extract_url(line: str) -> str | None:
    """Return the public tunnel URL printed on *line*, or None."""
    for pattern in URL_PATTERNS:
        for match in pattern.finditer(line):
            url = match.group(1).rstrip(".,;:)/")
            if _host_of(url) in _EXCLUDED_HOSTS:
                continue
            return url
    return None
