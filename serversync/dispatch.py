"""
ServerSync Partitioned Dispatcher

Runs received events through a handler sequentially per server id while
different server ids proceed concurrently. Each partition gets its own
queue and worker task; idle workers retire and are recreated on demand.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, Optional

import structlog

from serversync.types import ChangeEvent

logger = structlog.get_logger(__name__)

EventHandler = Callable[[ChangeEvent], Awaitable[None]]


class PartitionedDispatcher:
    """Per-server-id work queues."""

    def __init__(self, handler: EventHandler, *, idle_timeout: float = 30.0) -> None:
        self._handler = handler
        self._idle_timeout = idle_timeout
        self._queues: Dict[str, "asyncio.Queue[ChangeEvent]"] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._closing = False
        self.processed = 0
        self.failed = 0

    @property
    def partitions(self) -> int:
        return len(self._workers)

    @property
    def pending(self) -> int:
        return sum(q.qsize() for q in self._queues.values())

    def submit(self, event: ChangeEvent) -> bool:
        """Queue *event* behind earlier events for the same server."""
        if self._closing:
            logger.debug("dispatch.rejected", server_id=event.server_id, sequence=event.sequence)
            return False
        key = event.server_id
        queue = self._queues.get(key)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[key] = queue
            self._workers[key] = asyncio.create_task(
                self._worker_loop(key, queue),
                name=f"serversync-partition-{key}",
            )
        queue.put_nowait(event)
        return True

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued event was handled. Returns False on timeout."""
        queues = list(self._queues.values())
        if not queues:
            return True
        try:
            await asyncio.wait_for(
                asyncio.gather(*(q.join() for q in queues)), timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("dispatch.drain_timeout", pending=self.pending)
            return False
        return True

    async def close(self, timeout: Optional[float] = None) -> None:
        """Stop accepting events, finish in-flight work, then stop workers."""
        self._closing = True
        await self.drain(timeout)
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
        logger.info("dispatch.closed", processed=self.processed, failed=self.failed)

    async def _worker_loop(self, key: str, queue: "asyncio.Queue[ChangeEvent]") -> None:
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), self._idle_timeout)
            except asyncio.TimeoutError:
                if queue.empty():
                    # No await between the check and removal, so submit()
                    # cannot slip an event into a retiring queue.
                    self._queues.pop(key, None)
                    self._workers.pop(key, None)
                    return
                continue
            try:
                await self._handler(event)
                self.processed += 1
            except Exception:
                self.failed += 1
                logger.exception(
                    "dispatch.handler_error",
                    server_id=event.server_id,
                    sequence=event.sequence,
                )
            finally:
                queue.task_done()
