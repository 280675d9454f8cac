"""
ServerSync Bus Client

Typed publish/subscribe over a bus transport.

* ``publish`` encodes a ``ChangeEvent`` and retries transient failures
  with bounded backoff, then raises ``BusUnavailable``
* ``subscribe`` registers a handler invoked once per decoded delivery
* A single consumer task reads deliveries; malformed payloads and
  failing handlers are logged and dropped, never fatal
* On connection loss the consumer reconnects with exponential backoff,
  re-subscribes every registered topic and runs the reconnect callbacks

Delivery is at-least-once and only ordered per publisher connection, so
handlers must be idempotent.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_never,
    wait_exponential,
)

from serversync.bus.codec import decode_event, encode_event
from serversync.bus.transport import BusTransport
from serversync.cache.backends import TRANSIENT_ERRORS
from serversync.config import BusConfig
from serversync.errors import BusUnavailable, MalformedEvent
from serversync.types import ChangeEvent

logger = structlog.get_logger(__name__)

Handler = Union[Callable[[ChangeEvent], None], Callable[[ChangeEvent], Awaitable[None]]]
ReconnectCallback = Callable[[], Awaitable[None]]


@dataclass
class BusStats:
    published: int = 0
    publish_failures: int = 0
    delivered: int = 0
    malformed: int = 0
    handler_errors: int = 0
    reconnects: int = 0


class BusClient:
    """
    Reconnecting pub/sub client.

    Usage::

        bus = BusClient(RedisBusTransport(url), config.bus)
        bus.subscribe(config.bus.topic, on_event)
        await bus.start()
        await bus.publish(config.bus.topic, event)
    """

    def __init__(self, transport: BusTransport, config: Optional[BusConfig] = None) -> None:
        self.transport = transport
        self.config = config or BusConfig()
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._reconnect_callbacks: List[ReconnectCallback] = []
        self._connected = False
        self._closing = False
        self._consumer: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._stats = BusStats()

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def stats(self) -> BusStats:
        return self._stats

    @property
    def topics(self) -> List[str]:
        return [t for t, handlers in self._handlers.items() if handlers]

    # -- Lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Connect, subscribe registered topics and start consuming."""
        if self._consumer is not None:
            return
        self._closing = False
        try:
            await self._open(self.config.max_publish_attempts)
        except TRANSIENT_ERRORS as exc:
            logger.error("bus.connect_failed", error=str(exc) or type(exc).__name__)
            raise BusUnavailable("connect") from exc
        self._consumer = asyncio.create_task(self._consume_loop(), name="serversync-bus-consumer")
        logger.info("bus.started", topics=self.topics)

    async def close(self) -> None:
        """Stop consuming and release the connection."""
        self._closing = True
        task, self._consumer = self._consumer, None
        if task is not None:
            if self._connected:
                # Let the in-flight delivery finish; the loop exits on its next poll.
                done, _ = await asyncio.wait({task}, timeout=self.config.poll_timeout_seconds * 2)
                if not done:
                    task.cancel()
            else:
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        self._connected = False
        try:
            await self.transport.close()
        except TRANSIENT_ERRORS as exc:
            logger.warning("bus.close_failed", error=str(exc))
        logger.info("bus.closed", **self._stats.__dict__)

    def on_reconnect(self, callback: ReconnectCallback) -> None:
        """Run *callback* after every successful reconnect."""
        self._reconnect_callbacks.append(callback)

    # -- Subscribe / publish -------------------------------------------------

    def subscribe(self, topic: str, handler: Handler) -> None:
        """
        Register *handler* for *topic*.

        Registration is remembered across reconnects. When the client is
        already running the transport subscription is issued in the
        background.
        """
        if handler in self._handlers[topic]:
            return
        first = not self._handlers[topic]
        self._handlers[topic].append(handler)
        if first and self._connected:
            self._spawn(self._subscribe_now(topic))
        logger.debug("bus.subscribed", topic=topic)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        handlers = self._handlers.get(topic, [])
        if handler in handlers:
            handlers.remove(handler)
        if not handlers and self._connected:
            self._spawn(self._unsubscribe_now(topic))

    async def publish(self, topic: str, event: ChangeEvent) -> int:
        """
        Publish *event* on *topic* and return the number of receivers.

        Raises ``BusUnavailable`` once the retry budget is spent.
        """
        data = encode_event(event)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.max_publish_attempts),
                wait=wait_exponential(
                    multiplier=self.config.retry_backoff_base_seconds,
                    max=self.config.retry_backoff_max_seconds,
                ),
                retry=retry_if_exception_type(TRANSIENT_ERRORS),
                reraise=True,
            ):
                with attempt:
                    if not self._connected:
                        raise ConnectionError("bus is disconnected")
                    receivers = await asyncio.wait_for(
                        self.transport.publish(topic, data),
                        self.config.publish_timeout_seconds,
                    )
        except TRANSIENT_ERRORS as exc:
            self._stats.publish_failures += 1
            logger.warning(
                "bus.publish_failed",
                topic=topic,
                server_id=event.server_id,
                sequence=event.sequence,
                error=str(exc) or type(exc).__name__,
            )
            raise BusUnavailable("publish", topic) from exc

        self._stats.published += 1
        return receivers

    # -- Internal ------------------------------------------------------------

    async def _open(self, attempts: Optional[int]) -> None:
        """(Re)connect and re-subscribe; ``attempts=None`` retries forever."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts) if attempts else stop_never,
            wait=wait_exponential(
                multiplier=self.config.retry_backoff_base_seconds,
                max=self.config.reconnect_backoff_max_seconds,
            ),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                await asyncio.wait_for(
                    self.transport.connect(), self.config.publish_timeout_seconds,
                )
                if self.topics:
                    await self.transport.subscribe(self.topics)
        self._connected = True

    async def _subscribe_now(self, topic: str) -> None:
        try:
            await self.transport.subscribe([topic])
        except TRANSIENT_ERRORS as exc:
            # The consumer notices the loss and re-subscribes on reconnect.
            logger.warning("bus.subscribe_failed", topic=topic, error=str(exc))

    async def _unsubscribe_now(self, topic: str) -> None:
        try:
            await self.transport.unsubscribe([topic])
        except TRANSIENT_ERRORS as exc:
            logger.warning("bus.unsubscribe_failed", topic=topic, error=str(exc))

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("bus.background_task_failed", error=str(exc), error_type=type(exc).__name__)

    async def _reconnect(self) -> None:
        logger.warning("bus.reconnecting", topics=self.topics)
        await self._open(None)
        self._stats.reconnects += 1
        logger.info("bus.reconnected", topics=self.topics, reconnects=self._stats.reconnects)
        for callback in list(self._reconnect_callbacks):
            try:
                await callback()
            except Exception:
                logger.exception("bus.reconnect_callback_failed")

    async def _consume_loop(self) -> None:
        while not self._closing:
            try:
                if not self._connected:
                    await self._reconnect()
                    continue
                try:
                    delivery = await self.transport.get_message(self.config.poll_timeout_seconds)
                except TRANSIENT_ERRORS as exc:
                    self._connected = False
                    logger.warning("bus.connection_lost", error=str(exc) or type(exc).__name__)
                    continue
                if delivery is None:
                    continue
                topic, data = delivery
                await self._dispatch(topic, data)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("bus.consumer_error")
                await asyncio.sleep(self.config.poll_timeout_seconds)

    async def _dispatch(self, topic: str, data: Any) -> None:
        try:
            event = decode_event(data)
        except MalformedEvent as exc:
            self._stats.malformed += 1
            logger.warning("bus.malformed_event", topic=topic, reason=str(exc))
            return

        self._stats.delivered += 1
        for handler in list(self._handlers.get(topic, ())):
            try:
                result = handler(event)
                if asyncio.iscoroutine(result) or asyncio.isfuture(result):
                    await result
            except Exception:
                self._stats.handler_errors += 1
                logger.exception(
                    "bus.handler_error",
                    topic=topic,
                    server_id=event.server_id,
                    sequence=event.sequence,
                )
