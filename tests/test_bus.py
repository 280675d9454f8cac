"""
ServerSync Bus Tests

Covers:
- Delivery between clients sharing a broker
- Malformed payloads and failing handlers never stop the consumer
- Publish failures during an outage (BusUnavailable)
- Reconnection, re-subscription and reconnect callbacks
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from serversync.bus import BusClient, MemoryBroker, MemoryBusTransport
from serversync.config import BusConfig
from serversync.errors import BusUnavailable
from serversync.types import ChangeEvent, EventType

TOPIC = "serversync:servers"


def _bus_config():
    return BusConfig(
        backend="memory",
        publish_timeout_seconds=0.2,
        max_publish_attempts=2,
        retry_backoff_base_seconds=0.001,
        retry_backoff_max_seconds=0.005,
        reconnect_backoff_max_seconds=0.02,
        poll_timeout_seconds=0.01,
    )


def _status_event(seq: int, status: str = "draining") -> ChangeEvent:
    return ChangeEvent(EventType.STATUS, "lobby-1", seq, "node-a", {"status": status})


class TestBusDelivery:
    """Test publish/subscribe between two clients."""

    @pytest.fixture
    def broker(self):
        return MemoryBroker()

    @pytest.fixture
    def publisher(self, broker):
        return BusClient(MemoryBusTransport(broker), _bus_config())

    @pytest.fixture
    def subscriber(self, broker):
        return BusClient(MemoryBusTransport(broker), _bus_config())

    @pytest.mark.asyncio
    async def test_event_delivered(self, publisher, subscriber, eventually):
        received = []
        subscriber.subscribe(TOPIC, received.append)
        await subscriber.start()
        await publisher.start()
        try:
            receivers = await publisher.publish(TOPIC, _status_event(1))
            assert receivers == 1

            await eventually(lambda: len(received) == 1)
            assert received[0].sequence == 1
            assert received[0].payload == {"status": "draining"}
            assert publisher.stats.published == 1
        finally:
            await publisher.close()
            await subscriber.close()

    @pytest.mark.asyncio
    async def test_async_handler(self, publisher, subscriber, eventually):
        received = []

        async def handler(event):
            received.append(event.sequence)

        subscriber.subscribe(TOPIC, handler)
        await subscriber.start()
        await publisher.start()
        try:
            await publisher.publish(TOPIC, _status_event(1))
            await publisher.publish(TOPIC, _status_event(2))
            await eventually(lambda: received == [1, 2])
        finally:
            await publisher.close()
            await subscriber.close()

    @pytest.mark.asyncio
    async def test_malformed_payload_dropped(self, broker, publisher, subscriber, eventually):
        received = []
        subscriber.subscribe(TOPIC, received.append)
        await subscriber.start()
        await publisher.start()
        try:
            broker.deliver(TOPIC, "not json")
            broker.deliver(TOPIC, '{"v": 99}')
            await publisher.publish(TOPIC, _status_event(1))

            await eventually(lambda: len(received) == 1)
            assert subscriber.stats.malformed == 2
        finally:
            await publisher.close()
            await subscriber.close()

    @pytest.mark.asyncio
    async def test_failing_handler_isolated(self, publisher, subscriber, eventually):
        received = []

        def broken(event):
            raise RuntimeError("handler bug")

        subscriber.subscribe(TOPIC, broken)
        subscriber.subscribe(TOPIC, received.append)
        await subscriber.start()
        await publisher.start()
        try:
            await publisher.publish(TOPIC, _status_event(1))
            await publisher.publish(TOPIC, _status_event(2))

            await eventually(lambda: len(received) == 2)
            assert subscriber.stats.handler_errors == 2
        finally:
            await publisher.close()
            await subscriber.close()

    @pytest.mark.asyncio
    async def test_unsubscribe(self, publisher, subscriber, eventually):
        received = []
        subscriber.subscribe(TOPIC, received.append)
        await subscriber.start()
        await publisher.start()
        try:
            subscriber.unsubscribe(TOPIC, received.append)
            assert subscriber.topics == []
            await eventually(lambda: publisher.connected)
        finally:
            await publisher.close()
            await subscriber.close()

    @pytest.mark.asyncio
    async def test_background_subscription_tasks_tracked(self, subscriber, eventually):
        await subscriber.start()
        try:
            subscriber.subscribe("other-topic", lambda event: None)
            assert len(subscriber._background) == 1
            await eventually(lambda: not subscriber._background)
        finally:
            await subscriber.close()

    @pytest.mark.asyncio
    async def test_failed_background_unsubscribe_logged(self, subscriber, eventually):
        def handler(event):
            pass

        subscriber.subscribe(TOPIC, handler)
        await subscriber.start()
        subscriber.transport.unsubscribe = AsyncMock(side_effect=ConnectionError("gone"))
        try:
            subscriber.unsubscribe(TOPIC, handler)
            await eventually(lambda: subscriber.transport.unsubscribe.await_count == 1)
            await eventually(lambda: not subscriber._background)
            assert subscriber.connected
        finally:
            await subscriber.close()

    @pytest.mark.asyncio
    async def test_close_disconnects(self, publisher):
        await publisher.start()
        await publisher.close()
        assert not publisher.connected
        with pytest.raises(BusUnavailable):
            await publisher.publish(TOPIC, _status_event(1))


class TestBusOutage:
    """Connection loss and recovery."""

    @pytest.mark.asyncio
    async def test_start_fails_when_broker_down(self):
        broker = MemoryBroker()
        broker.sever()
        client = BusClient(MemoryBusTransport(broker), _bus_config())

        with pytest.raises(BusUnavailable):
            await client.start()

    @pytest.mark.asyncio
    async def test_publish_during_outage_then_recovery(self, eventually):
        broker = MemoryBroker()
        publisher = BusClient(MemoryBusTransport(broker), _bus_config())
        subscriber = BusClient(MemoryBusTransport(broker), _bus_config())
        received = []
        reconnects = []

        async def on_reconnect():
            reconnects.append(True)

        subscriber.subscribe(TOPIC, received.append)
        subscriber.on_reconnect(on_reconnect)
        await subscriber.start()
        await publisher.start()
        try:
            broker.sever()
            with pytest.raises(BusUnavailable) as exc_info:
                await publisher.publish(TOPIC, _status_event(1))
            assert exc_info.value.topic == TOPIC
            assert publisher.stats.publish_failures == 1

            broker.restore()
            await eventually(lambda: reconnects and publisher.connected)
            assert subscriber.stats.reconnects >= 1

            # Subscriptions come back without the caller re-registering.
            await publisher.publish(TOPIC, _status_event(2))
            await eventually(lambda: [e.sequence for e in received] == [2])
        finally:
            await publisher.close()
            await subscriber.close()
