from __future__ import annotations

import asyncio
import logging
import signal
import sys

from workbridge.adapters.web.server import HostServer
from workbridge.capabilities.tunnel.orchestrator import TunnelOrchestrator
from workbridge.capabilities.tunnel.resolver import BinaryResolver
from workbridge.config import Config
from workbridge.core import subprocess_tracker
from workbridge.core.events import EventBus, TunnelStatusEvent

logger = logging.getLogger("workbridge")


def setup_logging(log_file: str) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_file),
        ],
    )


async def main(config: Config) -> None:
    logger.info("workbridge starting...")

    # Orphaned tunnel clients from a crashed previous run
    subprocess_tracker.set_pid_file(config.cache_dir / "children.json")
    subprocess_tracker.reap_stale()

    event_bus = EventBus()
    server = HostServer(event_bus, str(config.log_file), host=config.host, port=config.port)

    resolver = BinaryResolver(config.cache_dir)
    orchestrator = TunnelOrchestrator(
        resolver,
        server_ready=lambda: server.is_running,
        default_config=config.tunnel_config(),
        start_timeout=config.tunnel_timeout,
    )
    # Status broadcast sink: non-blocking hand-off to SSE subscribers
    orchestrator.on_status_changed(
        lambda status: event_bus.publish(TunnelStatusEvent(status=status))
    )

    # Handle shutdown signals
    stop_event = asyncio.Event()

    def handle_signal() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handle_signal)
        except NotImplementedError:
            # Windows event loops; Ctrl+C still raises KeyboardInterrupt
            pass

    await server.start(orchestrator)
    logger.info("workbridge is running at %s. Press Ctrl+C to stop.", server.url)

    auto_start: asyncio.Task | None = None
    if config.auto_start_tunnel:
        auto_start = asyncio.create_task(orchestrator.auto_start())

    await stop_event.wait()

    logger.info("Shutting down...")
    if auto_start and not auto_start.done():
        auto_start.cancel()
        try:
            await auto_start
        except asyncio.CancelledError:
            pass
    await orchestrator.stop_tunnel()
    await server.stop()
    logger.info("workbridge stopped.")


def run() -> None:
    try:
        config = Config.load()
    except ValueError as e:
        print(f"workbridge: {e}", file=sys.stderr)
        sys.exit(2)
    setup_logging(str(config.log_file))
    try:
        asyncio.run(main(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
