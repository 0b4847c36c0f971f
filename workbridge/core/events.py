"""In-process event bus and the event types broadcast to web clients.

The tunnel orchestrator notifies its observers synchronously; the host wires
one observer that republishes each snapshot here, and SSE clients consume the
bus without ever blocking the state machine.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, TypeVar

from workbridge.capabilities.tunnel.base import TunnelStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_QUEUE_SIZE = 256


class EventBus:
    """Asyncio pub/sub keyed by event type.

    ``publish()`` never blocks: each subscriber owns a bounded queue and a
    slow subscriber loses its oldest pending event instead of stalling the
    publisher.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: dict[type, list[asyncio.Queue]] = {}

    def subscribe(self, event_type: type[T]) -> asyncio.Queue[T]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.setdefault(event_type, []).append(queue)
        return queue

    def subscribe_many(self, event_types: list[type]) -> asyncio.Queue:
        """Subscribe one queue to several event types (publish order kept)."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        for event_type in event_types:
            self._subscribers.setdefault(event_type, []).append(queue)
        return queue

    def unsubscribe(self, event_type: type, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(event_type, [])
        if queue in queues:
            queues.remove(queue)

    def unsubscribe_all(self, queue: asyncio.Queue) -> None:
        for queues in self._subscribers.values():
            if queue in queues:
                queues.remove(queue)

    def subscriber_count(self, event_type: type) -> int:
        return len(self._subscribers.get(event_type, []))

    def publish(self, event: object) -> None:
        """Deliver *event* to every subscriber of its type."""
        for queue in self._subscribers.get(type(event), []):
            if queue.full():
                try:
                    dropped = queue.get_nowait()
                    logger.warning(
                        "Event queue full, dropping oldest %s", type(dropped).__name__,
                    )
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(event)

    async def iter_events(self, event_type: type[T]) -> AsyncIterator[T]:
        queue = self.subscribe(event_type)
        try:
            while True:
                yield await queue.get()
        finally:
            self.unsubscribe(event_type, queue)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TunnelStatusEvent:
    """The primary tunnel changed state."""
    status: TunnelStatus


@dataclass(frozen=True)
class ServerStateEvent:
    """The host HTTP server started or stopped."""
    running: bool
    url: str | None = None
