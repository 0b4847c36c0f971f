from __future__ import annotations

import asyncio
import logging

import pytest

from workbridge.capabilities.tunnel.base import TunnelState, TunnelStatus
from workbridge.core.events import EventBus, ServerStateEvent, TunnelStatusEvent


def _status(state: TunnelState) -> TunnelStatusEvent:
    return TunnelStatusEvent(status=TunnelStatus(state=state))


class TestEventBus:
    def test_subscribe_and_publish(self):
        bus = EventBus()
        queue = bus.subscribe(TunnelStatusEvent)
        bus.publish(_status(TunnelState.RESOLVING))
        assert not queue.empty()
        assert queue.get_nowait().status.state is TunnelState.RESOLVING

    def test_multiple_subscribers(self):
        bus = EventBus()
        q1 = bus.subscribe(TunnelStatusEvent)
        q2 = bus.subscribe(TunnelStatusEvent)
        bus.publish(_status(TunnelState.RUNNING))
        assert q1.get_nowait().status.state is TunnelState.RUNNING
        assert q2.get_nowait().status.state is TunnelState.RUNNING
        assert bus.subscriber_count(TunnelStatusEvent) == 2

    def test_publish_no_subscribers(self):
        bus = EventBus()
        # Should not raise
        bus.publish(_status(TunnelState.IDLE))

    def test_publish_different_types_isolated(self):
        bus = EventBus()
        q_status = bus.subscribe(TunnelStatusEvent)
        q_server = bus.subscribe(ServerStateEvent)
        bus.publish(_status(TunnelState.IDLE))
        assert not q_status.empty()
        assert q_server.empty()

    def test_unsubscribe(self):
        bus = EventBus()
        queue = bus.subscribe(TunnelStatusEvent)
        bus.unsubscribe(TunnelStatusEvent, queue)
        bus.publish(_status(TunnelState.IDLE))
        assert queue.empty()

    def test_unsubscribe_unknown_queue(self):
        bus = EventBus()
        other_queue: asyncio.Queue = asyncio.Queue()
        # Should not raise
        bus.unsubscribe(TunnelStatusEvent, other_queue)

    def test_subscribe_many_keeps_publish_order(self):
        bus = EventBus()
        queue = bus.subscribe_many([TunnelStatusEvent, ServerStateEvent])
        bus.publish(ServerStateEvent(running=True, url="http://127.0.0.1:3900"))
        bus.publish(_status(TunnelState.RESOLVING))
        assert isinstance(queue.get_nowait(), ServerStateEvent)
        assert isinstance(queue.get_nowait(), TunnelStatusEvent)

        bus.unsubscribe_all(queue)
        assert bus.subscriber_count(TunnelStatusEvent) == 0
        assert bus.subscriber_count(ServerStateEvent) == 0

    def test_queue_full_drops_oldest(self, caplog):
        bus = EventBus(queue_size=2)
        queue = bus.subscribe(TunnelStatusEvent)
        bus.publish(_status(TunnelState.RESOLVING))
        bus.publish(_status(TunnelState.STARTING))
        with caplog.at_level(logging.WARNING):
            bus.publish(_status(TunnelState.RUNNING))  # Should warn, not raise
        assert "queue full" in caplog.text.lower()
        states = [queue.get_nowait().status.state for _ in range(queue.qsize())]
        assert states == [TunnelState.STARTING, TunnelState.RUNNING]

    async def test_iter_events(self):
        bus = EventBus()
        received = []

        async def consumer():
            async for ev in bus.iter_events(TunnelStatusEvent):
                received.append(ev.status.state)
                if ev.status.state is TunnelState.RUNNING:
                    break

        task = asyncio.create_task(consumer())
        await asyncio.sleep(0.01)

        bus.publish(_status(TunnelState.STARTING))
        bus.publish(_status(TunnelState.RUNNING))
        await task

        assert received == [TunnelState.STARTING, TunnelState.RUNNING]

    async def test_iter_events_cleanup_on_cancel(self):
        bus = EventBus()

        async def consumer():
            async for _ in bus.iter_events(TunnelStatusEvent):
                pass

        task = asyncio.create_task(consumer())
        await asyncio.sleep(0.01)

        # There should be 1 subscriber
        assert bus.subscriber_count(TunnelStatusEvent) == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        # After cancel, the subscription should be cleaned up
        assert bus.subscriber_count(TunnelStatusEvent) == 0
