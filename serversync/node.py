"""
ServerSync Node

One synchronization participant per process: cache client, bus client,
registry, protocol and the heartbeat/liveness tasks, wired together and
started and stopped in order.

Startup:   cache → subscribe → bus → bootstrap → periodic tasks
Shutdown:  periodic tasks → owned servers OFFLINE → bus → partition
           workers → cache
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from serversync.bus.client import BusClient
from serversync.bus.transport import (
    BusTransport,
    MemoryBroker,
    MemoryBusTransport,
    RedisBusTransport,
)
from serversync.cache.backends import CacheBackend, MemoryCacheBackend, RedisCacheBackend
from serversync.cache.client import CacheClient
from serversync.config import SyncConfig, get_default_config
from serversync.errors import ServerSyncError
from serversync.heartbeat import HeartbeatPublisher, LivenessMonitor
from serversync.protocol import SyncProtocol, SyncState
from serversync.registry import RegistryListener, ServerRegistry
from serversync.types import ServerRecord, ServerStatus, SyncPlayer

logger = structlog.get_logger(__name__)


def create_cache_backend(config: SyncConfig) -> CacheBackend:
    if config.cache.backend == "memory":
        return MemoryCacheBackend()
    return RedisCacheBackend(
        config.cache.url, socket_timeout=config.cache.operation_timeout_seconds,
    )


def create_bus_transport(config: SyncConfig, broker: Optional[MemoryBroker] = None) -> BusTransport:
    if config.bus.backend == "memory":
        return MemoryBusTransport(broker or MemoryBroker())
    return RedisBusTransport(
        config.bus.url, socket_timeout=config.bus.publish_timeout_seconds,
    )


class ServerSyncNode:
    """
    Composition root for one instance.

    Backends default to what the configuration names. Tests and
    single-process fleets inject shared in-memory ones::

        broker, store = MemoryBroker(), MemoryCacheBackend()
        node = ServerSyncNode(config, cache_backend=store,
                              bus_transport=MemoryBusTransport(broker))
        async with node:
            await node.announce("lobby-1", "10.0.0.5", max_players=100)
    """

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        *,
        cache_backend: Optional[CacheBackend] = None,
        bus_transport: Optional[BusTransport] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or get_default_config()
        self.instance_id = self.config.instance_id

        self.cache = CacheClient(cache_backend or create_cache_backend(self.config), self.config.cache)
        self.bus = BusClient(bus_transport or create_bus_transport(self.config), self.config.bus)
        self.registry = ServerRegistry(
            self.cache, shards=self.config.registry_shards, clock=clock,
        )
        self.protocol = SyncProtocol(
            self.instance_id, self.cache, self.bus, self.registry, self.config, clock=clock,
        )
        self.heartbeats = HeartbeatPublisher(self.protocol, self.config.heartbeat)
        self.liveness = LivenessMonitor(
            self.registry, self.protocol, self.config.heartbeat, clock=clock,
        )
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def state(self) -> SyncState:
        return self.protocol.state

    # -- Lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        logger.info("node.starting", **self.config.to_flat_dict())
        if not self.config.instance_id_pinned:
            logger.warning(
                "node.instance_id_not_pinned",
                instance_id=self.instance_id,
                hint="set SERVERSYNC_INSTANCE_ID so restarts can reclaim owned servers",
            )
        await self.cache.connect()
        self.protocol.attach()
        await self.bus.start()
        await self.registry.bootstrap()
        self.heartbeats.start()
        self.liveness.start()
        self._started = True
        logger.info("node.started", instance_id=self.instance_id, servers=len(self.registry))

    async def stop(self, *, offline: bool = True) -> None:
        """
        Shut down gracefully.

        With ``offline`` every owned server still up is moved to OFFLINE
        first so the rest of the fleet stops routing to it immediately.
        """
        if not self._started:
            return
        self._started = False
        timeout = self.config.shutdown_timeout_seconds
        logger.info("node.stopping", instance_id=self.instance_id)

        await self.heartbeats.stop(timeout)
        await self.liveness.stop(timeout)

        if offline:
            for server_id in self.protocol.owned_servers:
                record = self.registry.lookup(server_id)
                if record is None or record.status == ServerStatus.OFFLINE:
                    continue
                try:
                    await self.protocol.set_status(server_id, ServerStatus.OFFLINE)
                except ServerSyncError as exc:
                    logger.warning("node.offline_failed", server_id=server_id, error=str(exc))

        await self.bus.close()
        await self.protocol.close(timeout)
        await self.cache.close()
        logger.info("node.stopped", instance_id=self.instance_id)

    async def __aenter__(self) -> "ServerSyncNode":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # -- Backend server API --------------------------------------------------

    async def announce(
        self,
        server_id: str,
        host: str,
        port: int = 25565,
        max_players: int = 0,
        players: Iterable[SyncPlayer] = (),
        status: ServerStatus = ServerStatus.ONLINE,
    ) -> ServerRecord:
        """Announce an owned server; heartbeats for it start with the next round."""
        return await self.protocol.announce(
            server_id, host, port, max_players, players=players, status=status,
        )

    async def set_status(self, server_id: str, status: ServerStatus) -> ServerRecord:
        return await self.protocol.set_status(server_id, status)

    async def deregister(self, server_id: str) -> None:
        await self.protocol.deregister(server_id)

    # -- Proxy API -----------------------------------------------------------

    def lookup(self, server_id: str) -> Optional[ServerRecord]:
        return self.registry.lookup(server_id)

    def list_by_status(self, status: ServerStatus) -> List[ServerRecord]:
        return self.registry.list_by_status(status)

    def routable(self) -> List[ServerRecord]:
        """ONLINE servers ordered by load, least loaded first."""
        return sorted(self.registry.list_by_status(ServerStatus.ONLINE), key=lambda r: (r.load, r.server_id))

    def add_listener(self, listener: RegistryListener) -> None:
        self.registry.add_listener(listener)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "state": self.state.value,
            "owned": self.protocol.owned_servers,
            "servers": self.registry.get_stats(),
            "sync": dict(self.protocol.stats.__dict__),
            "bus": dict(self.bus.stats.__dict__),
            "cache": dict(self.cache.stats.__dict__),
            "heartbeats": self.heartbeats.beats,
        }
