from __future__ import annotations

import json
import logging
import os
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

from workbridge.capabilities.tunnel.base import TunnelConfig

logger = logging.getLogger(__name__)

APP_NAME = "workbridge"
CONFIG_FILENAME = f".{APP_NAME}/config.json"


def default_cache_dir() -> Path:
    """Per-user cache root for downloaded binaries."""
    if sys.platform == "win32":
        root = os.environ.get("LOCALAPPDATA") or str(Path.home() / "AppData" / "Local")
        return Path(root) / APP_NAME / "cache"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Caches" / APP_NAME
    root = os.environ.get("XDG_CACHE_HOME") or str(Path.home() / ".cache")
    return Path(root) / APP_NAME


def default_log_file() -> Path:
    return Path(tempfile.gettempdir()) / f"{APP_NAME}.log"


def find_config_file(explicit: str | Path | None = None) -> Path | None:
    """Explicit path, else ``./.workbridge/config.json``, else the home one."""
    if explicit:
        return Path(explicit).expanduser().resolve()
    for base in (Path.cwd(), Path.home()):
        candidate = base / CONFIG_FILENAME
        if candidate.exists():
            return candidate
    return None


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    host: str = "127.0.0.1"
    port: int = 3900
    auto_start_tunnel: bool = False
    tunnel_name: str | None = None
    tunnel_token: str | None = None
    tunnel_timeout: float = 60.0
    cache_dir: Path = field(default_factory=default_cache_dir)
    log_file: Path = field(default_factory=default_log_file)

    @property
    def server_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def tunnel_config(self) -> TunnelConfig:
        """Default tunnel request: quick mode unless a name is configured."""
        return TunnelConfig(
            local_port=self.port,
            tunnel_name=self.tunnel_name or None,
            auth_token=self.tunnel_token or None,
        )

    @classmethod
    def from_dict(cls, data: dict) -> Config:
        server = data.get("server", {}) or {}
        tunnel = data.get("tunnel", {}) or {}
        cfg = cls()
        cfg.host = server.get("host", cfg.host)
        cfg.port = int(server.get("httpPort", cfg.port))
        cfg.auto_start_tunnel = bool(tunnel.get("autoStartTunnel", cfg.auto_start_tunnel))
        cfg.tunnel_name = tunnel.get("defaultTunnelName") or None
        cfg.tunnel_token = tunnel.get("cloudflareToken") or None
        cfg.tunnel_timeout = float(tunnel.get("timeout", cfg.tunnel_timeout))
        if tunnel.get("cacheDir"):
            cfg.cache_dir = Path(tunnel["cacheDir"]).expanduser()
        return cfg

    @classmethod
    def load(cls, path: str | Path | None = None) -> Config:
        """Load ``.env``, then the JSON config file, then ``WORKBRIDGE_*`` overrides."""
        load_dotenv(find_dotenv(usecwd=True))

        cfg = cls()
        config_path = find_config_file(path or os.environ.get("WORKBRIDGE_CONFIG"))
        if config_path and config_path.exists():
            try:
                cfg = cls.from_dict(json.loads(config_path.read_text()))
                logger.info("Loaded configuration from %s", config_path)
            except (json.JSONDecodeError, ValueError, TypeError, AttributeError) as e:
                logger.warning("Failed to parse %s, using defaults: %s", config_path, e)
                cfg = cls()

        env = os.environ
        if env.get("WORKBRIDGE_HOST"):
            cfg.host = env["WORKBRIDGE_HOST"]
        if env.get("WORKBRIDGE_PORT"):
            cfg.port = int(env["WORKBRIDGE_PORT"])
        if env.get("WORKBRIDGE_AUTO_START_TUNNEL"):
            cfg.auto_start_tunnel = _env_bool(env["WORKBRIDGE_AUTO_START_TUNNEL"])
        if env.get("WORKBRIDGE_TUNNEL_NAME"):
            cfg.tunnel_name = env["WORKBRIDGE_TUNNEL_NAME"]
        if env.get("WORKBRIDGE_TUNNEL_TOKEN"):
            cfg.tunnel_token = env["WORKBRIDGE_TUNNEL_TOKEN"]
        if env.get("WORKBRIDGE_TUNNEL_TIMEOUT"):
            cfg.tunnel_timeout = float(env["WORKBRIDGE_TUNNEL_TIMEOUT"])
        if env.get("WORKBRIDGE_CACHE_DIR"):
            cfg.cache_dir = Path(env["WORKBRIDGE_CACHE_DIR"]).expanduser()
        if env.get("WORKBRIDGE_LOG_FILE"):
            cfg.log_file = Path(env["WORKBRIDGE_LOG_FILE"]).expanduser()

        if not 1 <= cfg.port <= 65535:
            raise ValueError(f"WORKBRIDGE_PORT must be between 1 and 65535, got {cfg.port}")
        return cfg
