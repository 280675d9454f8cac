"""
ServerSync Heartbeat and Liveness

Two independent periodic tasks:

1. ``HeartbeatPublisher`` re-publishes a heartbeat for every server this
   instance owns, refreshing ``last_heartbeat`` fleet-wide.
2. ``LivenessMonitor`` sweeps the local registry. Records silent for
   longer than the liveness timeout are marked OFFLINE locally; only
   records owned by this instance are written back through the protocol.
   Records left OFFLINE past the eviction timeout are dropped locally.

The local OFFLINE mark is an inference. The owner's next heartbeat or its
explicit status change overrides it.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, List, Optional

import structlog

from serversync.config import HeartbeatConfig
from serversync.errors import ServerSyncError
from serversync.protocol import SyncProtocol
from serversync.registry import ServerRegistry
from serversync.types import ServerStatus

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Shared periodic task plumbing
# ---------------------------------------------------------------------------


class _PeriodicTask:
    """Runs ``run_once`` every ``interval`` seconds until stopped."""

    name = "periodic"

    def __init__(self, interval: float) -> None:
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._shutdown = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._shutdown = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=f"serversync-{self.name}")
        logger.debug(f"{self.name}.started", interval=self.interval)

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Let the current round finish, then stop."""
        task, self._task = self._task, None
        if task is None:
            return
        self._shutdown.set()
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.debug(f"{self.name}.stopped")

    async def run_once(self) -> None:
        raise NotImplementedError

    async def _loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(self._shutdown.wait(), self.interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"{self.name}.round_failed")


# ---------------------------------------------------------------------------
# Heartbeat publication
# ---------------------------------------------------------------------------


class HeartbeatPublisher(_PeriodicTask):
    """Periodic heartbeats for the servers owned by one protocol."""

    name = "heartbeat"

    def __init__(self, protocol: SyncProtocol, config: Optional[HeartbeatConfig] = None) -> None:
        config = config or HeartbeatConfig()
        super().__init__(config.interval_seconds)
        self._protocol = protocol
        self.beats = 0
        self.failures = 0

    async def run_once(self) -> int:
        """Heartbeat every owned, non-OFFLINE server. Returns the count sent."""
        sent = 0
        for server_id in self._protocol.owned_servers:
            record = self._protocol.registry.lookup(server_id)
            if record is None or record.status == ServerStatus.OFFLINE:
                continue
            try:
                await self._protocol.heartbeat(server_id)
            except ServerSyncError as exc:
                # The protocol already reports DEGRADED; retry next round.
                self.failures += 1
                logger.warning("heartbeat.failed", server_id=server_id, error=str(exc))
                continue
            sent += 1
        self.beats += sent
        return sent


# ---------------------------------------------------------------------------
# Liveness sweeping
# ---------------------------------------------------------------------------


class LivenessMonitor(_PeriodicTask):
    """Marks silent servers OFFLINE and evicts long-dead ones locally."""

    name = "liveness"

    def __init__(
        self,
        registry: ServerRegistry,
        protocol: Optional[SyncProtocol] = None,
        config: Optional[HeartbeatConfig] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or HeartbeatConfig()
        super().__init__(self.config.sweep_interval_seconds)
        self._registry = registry
        self._protocol = protocol
        self._clock = clock

    async def run_once(self) -> Dict[str, List[str]]:
        return await self.sweep()

    async def sweep(self, now: Optional[float] = None) -> Dict[str, List[str]]:
        """
        Run one sweep at *now* (defaults to the clock).

        Returns the ids marked offline and evicted in this round.
        """
        now = now if now is not None else self._clock()
        marked: List[str] = []
        evicted: List[str] = []

        for record in self._registry.stale(self.config.liveness_timeout_seconds, now):
            if self._protocol is not None and self._protocol.owns(record.server_id):
                try:
                    await self._protocol.set_status(record.server_id, ServerStatus.OFFLINE)
                except ServerSyncError as exc:
                    logger.warning(
                        "liveness.owned_offline_failed",
                        server_id=record.server_id,
                        error=str(exc),
                    )
                    continue
            elif not self._registry.mark_offline(record.server_id):
                continue
            marked.append(record.server_id)
            logger.info(
                "liveness.marked_offline",
                server_id=record.server_id,
                heartbeat_age=round(record.heartbeat_age(now), 3),
            )

        for record in self._registry.evictable(self.config.eviction_timeout_seconds, now):
            if self._protocol is not None and self._protocol.owns(record.server_id):
                continue
            if self._registry.evict(record.server_id):
                evicted.append(record.server_id)
                logger.info("liveness.evicted", server_id=record.server_id)

        return {"offline": marked, "evicted": evicted}
