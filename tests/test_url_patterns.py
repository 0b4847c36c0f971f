"""Tests for public URL extraction from cloudflared output."""
from __future__ import annotations

import pytest

from workbridge.capabilities.tunnel.patterns import extract_url


class TestExtractUrl:
    @pytest.mark.parametrize(
        "line,expected",
        [
            (
                "2024-05-01T10:00:00Z INF |  https://quiet-river-1234.trycloudflare.com                              |",
                "https://quiet-river-1234.trycloudflare.com",
            ),
            (
                "your tunnel is available at https://abc123.trycloudflare.com",
                "https://abc123.trycloudflare.com",
            ),
            (
                "INF Connection registered https://my-app.cfargotunnel.com",
                "https://my-app.cfargotunnel.com",
            ),
            (
                "INF Route ready at https://demo.cloudflaretunnel.com.",
                "https://demo.cloudflaretunnel.com",
            ),
            (
                "INF https://ws-1.tunnel.cloudflare.com/ registered",
                "https://ws-1.tunnel.cloudflare.com",
            ),
        ],
    )
    def test_known_hosts(self, line, expected):
        assert extract_url(line) == expected

    def test_case_insensitive(self):
        assert extract_url("HTTPS://ABC.TRYCLOUDFLARE.COM") == "HTTPS://ABC.TRYCLOUDFLARE.COM"

    def test_generic_started_phrase(self):
        line = "Tunnel workspace started at https://dev.example.org/app"
        assert extract_url(line) == "https://dev.example.org/app"

    def test_control_plane_endpoint_ignored(self):
        line = (
            'ERR failed to request quick Tunnel: Post "https://api.trycloudflare.com/tunnel": '
            "dial tcp: lookup api.trycloudflare.com: no such host"
        )
        assert extract_url(line) is None

    def test_unrelated_lines(self):
        assert extract_url("INF Starting tunnel tunnelID=abc") is None
        assert extract_url("INF Version 2024.4.1") is None
        assert extract_url("") is None

    def test_plain_http_not_matched(self):
        assert extract_url("http://abc.trycloudflare.com") is None

    def test_first_known_host_wins(self):
        line = "https://one.trycloudflare.com and https://two.cfargotunnel.com"
        assert extract_url(line) == "https://one.trycloudflare.com"
