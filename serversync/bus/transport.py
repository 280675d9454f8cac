"""
ServerSync Bus Transports

Publish/subscribe transports behind the bus client:

- ``RedisBusTransport``: Redis pub/sub channels
- ``MemoryBusTransport``: attaches to a process-local ``MemoryBroker``;
  several transports on one broker behave like a fleet sharing a Redis
  server, including connection loss via ``MemoryBroker.sever()``

Transports move opaque strings and surface connection loss as transport
exceptions. Reconnection and re-subscription belong to the bus client.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, Iterable, Optional, Set, Tuple

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger(__name__)

Delivery = Tuple[str, str]


class BusTransport(ABC):
    """Abstract pub/sub connection."""

    @abstractmethod
    async def connect(self) -> None:
        """Open a fresh connection. Prior subscriptions are not kept."""

    @abstractmethod
    async def close(self) -> None:
        pass

    @abstractmethod
    async def publish(self, topic: str, data: str) -> int:
        """Publish *data* and return the number of receivers."""

    @abstractmethod
    async def subscribe(self, topics: Iterable[str]) -> None:
        pass

    @abstractmethod
    async def unsubscribe(self, topics: Iterable[str]) -> None:
        pass

    @abstractmethod
    async def get_message(self, timeout: float) -> Optional[Delivery]:
        """
        Wait up to *timeout* seconds for a delivery.

        Returns ``(topic, data)`` or ``None`` when nothing arrived. Raises a
        connection error when the connection is gone.
        """


# ---------------------------------------------------------------------------
# In-memory transport
# ---------------------------------------------------------------------------


_LOST = object()


class MemoryBroker:
    """Process-local broker shared by ``MemoryBusTransport`` instances."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, Set["MemoryBusTransport"]] = defaultdict(set)
        self._connections: Set["MemoryBusTransport"] = set()
        self.online = True
        self.published = 0

    def attach(self, transport: "MemoryBusTransport") -> None:
        if not self.online:
            raise ConnectionError("memory broker is offline")
        self._connections.add(transport)

    def detach(self, transport: "MemoryBusTransport") -> None:
        self._connections.discard(transport)
        for subscribers in self._subscribers.values():
            subscribers.discard(transport)

    def add_subscription(self, topic: str, transport: "MemoryBusTransport") -> None:
        self._subscribers[topic].add(transport)

    def remove_subscription(self, topic: str, transport: "MemoryBusTransport") -> None:
        self._subscribers[topic].discard(transport)

    def deliver(self, topic: str, data: str) -> int:
        if not self.online:
            raise ConnectionError("memory broker is offline")
        receivers = list(self._subscribers.get(topic, ()))
        for transport in receivers:
            transport.enqueue((topic, data))
        self.published += 1
        return len(receivers)

    def sever(self) -> None:
        """Drop every connection, as a broker restart would."""
        self.online = False
        for transport in list(self._connections):
            transport.connection_lost()
        self._connections.clear()
        self._subscribers.clear()
        logger.info("bus.memory.severed")

    def restore(self) -> None:
        self.online = True
        logger.info("bus.memory.restored")


class MemoryBusTransport(BusTransport):
    """Transport attached to a ``MemoryBroker``."""

    def __init__(self, broker: MemoryBroker) -> None:
        self.broker = broker
        self._queue: "asyncio.Queue[object]" = asyncio.Queue()
        self._connected = False

    def enqueue(self, delivery: Delivery) -> None:
        self._queue.put_nowait(delivery)

    def connection_lost(self) -> None:
        self._connected = False
        self._queue.put_nowait(_LOST)

    def _require_connection(self) -> None:
        if not self._connected:
            raise ConnectionError("memory transport is not connected")

    async def connect(self) -> None:
        self.broker.attach(self)
        self._queue = asyncio.Queue()
        self._connected = True

    async def close(self) -> None:
        self._connected = False
        self.broker.detach(self)

    async def publish(self, topic: str, data: str) -> int:
        self._require_connection()
        return self.broker.deliver(topic, data)

    async def subscribe(self, topics: Iterable[str]) -> None:
        self._require_connection()
        for topic in topics:
            self.broker.add_subscription(topic, self)

    async def unsubscribe(self, topics: Iterable[str]) -> None:
        for topic in topics:
            self.broker.remove_subscription(topic, self)

    async def get_message(self, timeout: float) -> Optional[Delivery]:
        self._require_connection()
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if item is _LOST:
            raise ConnectionError("memory transport lost its connection")
        return item  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Redis transport
# ---------------------------------------------------------------------------


class RedisBusTransport(BusTransport):
    """Redis pub/sub transport."""

    def __init__(self, url: str, *, socket_timeout: Optional[float] = None) -> None:
        self.url = url
        self._socket_timeout = socket_timeout
        self._client: Optional[aioredis.Redis] = None
        self._pubsub: Optional[aioredis.client.PubSub] = None
        self._topics: Set[str] = set()

    async def connect(self) -> None:
        await self.close()
        self._client = aioredis.from_url(
            self.url,
            decode_responses=True,
            socket_connect_timeout=self._socket_timeout,
        )
        await self._client.ping()
        self._pubsub = self._client.pubsub()
        logger.info("bus.redis.connected", url=self.url)

    async def close(self) -> None:
        pubsub, client = self._pubsub, self._client
        self._pubsub = None
        self._client = None
        self._topics.clear()
        if pubsub is not None:
            await pubsub.aclose()
        if client is not None:
            await client.aclose()

    def _require_client(self) -> aioredis.Redis:
        if self._client is None:
            raise ConnectionError("redis bus transport is not connected")
        return self._client

    async def publish(self, topic: str, data: str) -> int:
        return int(await self._require_client().publish(topic, data))

    async def subscribe(self, topics: Iterable[str]) -> None:
        self._require_client()
        new = [t for t in topics if t not in self._topics]
        if new and self._pubsub is not None:
            await self._pubsub.subscribe(*new)
            self._topics.update(new)

    async def unsubscribe(self, topics: Iterable[str]) -> None:
        gone = [t for t in topics if t in self._topics]
        if gone and self._pubsub is not None:
            await self._pubsub.unsubscribe(*gone)
            self._topics.difference_update(gone)

    async def get_message(self, timeout: float) -> Optional[Delivery]:
        self._require_client()
        if self._pubsub is None or not self._topics:
            await asyncio.sleep(timeout)
            return None
        message = await self._pubsub.get_message(
            ignore_subscribe_messages=True, timeout=timeout,
        )
        if message is None or message.get("type") != "message":
            return None
        return message["channel"], message["data"]
