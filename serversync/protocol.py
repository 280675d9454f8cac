"""
ServerSync Protocol

Keeps the shared cache (source of truth) and every registry (local mirror)
convergent over a bus with weak delivery guarantees.

Owner side, for every mutation of a server this instance owns:

1. Allocate the next per-server sequence from the cache counter
2. Write the updated record (or delete it for REMOVE)
3. Apply the event to the local registry
4. Publish the ChangeEvent

Receiving side, per server id and in arrival order:

- ``seq <= last``      ignored (duplicate or stale)
- ``seq == last + 1``  applied
- ``seq >  last + 1``  desync; the record is re-read from the cache and
                       the cache's value and sequence are adopted

Each owned server is guarded by a lease in the cache. It is claimed on
announce, renewed by every later mutation and released when the server
goes OFFLINE or is removed, so two live instances never write the same
record. An instance that sees another owner on its record stops treating
the server as its own.

Cache and bus failures put the protocol in ``SyncState.DEGRADED`` until
the next fully successful operation. The registry keeps serving its last
known state meanwhile.
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set, TypeVar

import structlog

from serversync.bus.client import BusClient
from serversync.bus.codec import validate_payload
from serversync.cache.client import CacheClient
from serversync.config import SyncConfig
from serversync.dispatch import PartitionedDispatcher
from serversync.errors import (
    BusUnavailable,
    CacheUnavailable,
    DesyncDetected,
    DuplicateServerId,
    InvalidTransition,
    UnknownServer,
)
from serversync.registry import ApplyOutcome, ServerRegistry
from serversync.types import (
    ChangeEvent,
    EventType,
    ServerRecord,
    ServerStatus,
    SyncPlayer,
    apply_event_to_record,
    players_payload,
    validate_server_id,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_TRANSPORT_ERRORS = (CacheUnavailable, BusUnavailable)


class SyncState(str, Enum):
    """Aggregated health of the cache and bus connections."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"


@dataclass
class SyncStats:
    published: int = 0
    received: int = 0
    own_skipped: int = 0
    applied: int = 0
    stale: int = 0
    gaps: int = 0
    resyncs: int = 0


StateListener = Callable[[SyncState], None]


class SyncProtocol:
    """
    Publish/apply rules for one instance.

    Usage::

        protocol = SyncProtocol(config.instance_id, cache, bus, registry, config)
        protocol.attach()
        await protocol.announce("lobby-1", "10.0.0.5", 25565, max_players=100)
        await protocol.set_status("lobby-1", ServerStatus.DRAINING)
    """

    def __init__(
        self,
        instance_id: str,
        cache: CacheClient,
        bus: BusClient,
        registry: ServerRegistry,
        config: Optional[SyncConfig] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.instance_id = instance_id
        self.config = config or SyncConfig(instance_id=instance_id)
        self._cache = cache
        self._bus = bus
        self._registry = registry
        self._clock = clock
        self._topic = self.config.bus.topic
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._owned: Set[str] = set()
        self._dispatcher = PartitionedDispatcher(self._apply_received)
        self._state = SyncState.HEALTHY
        self._state_listeners: List[StateListener] = []
        self._stats = SyncStats()

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def stats(self) -> SyncStats:
        return self._stats

    @property
    def registry(self) -> ServerRegistry:
        return self._registry

    @property
    def dispatcher(self) -> PartitionedDispatcher:
        return self._dispatcher

    @property
    def owned_servers(self) -> List[str]:
        return sorted(self._owned)

    def owns(self, server_id: str) -> bool:
        return server_id in self._owned

    def on_state_change(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    # -- Wiring --------------------------------------------------------------

    def attach(self) -> None:
        """Subscribe to the fleet topic and resync after every bus reconnect."""
        self._bus.subscribe(self._topic, self.handle_message)
        self._bus.on_reconnect(self.resync_all)

    def detach(self) -> None:
        self._bus.unsubscribe(self._topic, self.handle_message)

    async def close(self, timeout: Optional[float] = None) -> None:
        """Finish queued deliveries and stop the partition workers."""
        await self._dispatcher.close(timeout)

    # -- Owner-side mutations ------------------------------------------------

    async def announce(
        self,
        server_id: str,
        host: str,
        port: int = 25565,
        max_players: int = 0,
        players: Iterable[SyncPlayer] = (),
        status: ServerStatus = ServerStatus.ONLINE,
    ) -> ServerRecord:
        """
        Register *server_id* as owned by this instance.

        Re-announcing a server this instance already owns, or one whose
        previous lifecycle ended (OFFLINE or silent past the liveness
        timeout), starts a fresh lifecycle.

        Raises:
            DuplicateServerId: another live instance owns the id or holds
                its lease.
        """
        validate_server_id(server_id)
        payload = {
            "host": host,
            "port": port,
            "max_players": max_players,
            "players": players_payload(players),
            "status": ServerStatus(status).value,
        }

        async def run() -> ServerRecord:
            existing = await self._cache.read_record(server_id)
            if existing is not None and self._is_foreign_live(existing):
                logger.warning(
                    "sync.duplicate_server_id",
                    server_id=server_id,
                    owner=existing.owner,
                )
                raise DuplicateServerId(server_id, existing.owner)
            await self._claim(server_id)
            record = await self._commit(EventType.ANNOUNCE, server_id, payload, None)
            logger.info(
                "sync.announced",
                server_id=server_id,
                address=record.address,
                sequence=record.sequence,
            )
            return record

        return await self._locked(server_id, run)

    async def set_status(self, server_id: str, status: ServerStatus) -> ServerRecord:
        """
        Move an owned server along its lifecycle.

        Raises:
            InvalidTransition: the lifecycle does not allow the move.
        """
        target = ServerStatus(status)

        async def run() -> ServerRecord:
            record = self._owned_record(server_id)
            if record.status == target:
                return record
            if not record.status.can_transition_to(target):
                raise InvalidTransition(server_id, record.status.value, target.value)
            await self._claim(server_id)
            return await self._commit(
                EventType.STATUS, server_id, {"status": target.value}, record,
            )

        return await self._locked(server_id, run)

    async def heartbeat(
        self,
        server_id: str,
        players: Optional[Iterable[SyncPlayer]] = None,
    ) -> ServerRecord:
        """
        Refresh ``last_heartbeat`` of an owned server.

        The heartbeat carries the full record so receivers that missed the
        announcement can rebuild it. *players*, when given, replaces the
        player list.
        """
        async def run() -> ServerRecord:
            record = await self._hold(server_id)
            current = list(players) if players is not None else list(record.players.values())
            payload = {
                "host": record.host,
                "port": record.port,
                "max_players": record.max_players,
                "players": players_payload(current),
                "status": record.status.value,
            }
            return await self._commit(EventType.HEARTBEAT, server_id, payload, record)

        return await self._locked(server_id, run)

    async def player_join(self, server_id: str, player: SyncPlayer) -> ServerRecord:
        async def run() -> ServerRecord:
            record = await self._hold(server_id)
            return await self._commit(EventType.PLAYER_JOIN, server_id, player.to_dict(), record)

        return await self._locked(server_id, run)

    async def player_leave(self, server_id: str, player_uuid: str) -> ServerRecord:
        async def run() -> ServerRecord:
            record = await self._hold(server_id)
            return await self._commit(
                EventType.PLAYER_LEAVE, server_id, {"uuid": player_uuid}, record,
            )

        return await self._locked(server_id, run)

    async def set_capacity(self, server_id: str, max_players: int) -> ServerRecord:
        async def run() -> ServerRecord:
            record = await self._hold(server_id)
            return await self._commit(
                EventType.CAPACITY, server_id, {"max_players": max_players}, record,
            )

        return await self._locked(server_id, run)

    async def deregister(self, server_id: str) -> None:
        """Remove an owned server from the fleet."""
        async def run() -> None:
            record = await self._hold(server_id)
            await self._commit(EventType.REMOVE, server_id, {}, record)
            logger.info("sync.deregistered", server_id=server_id)

        await self._locked(server_id, run)

    # -- Receiving side ------------------------------------------------------

    def handle_message(self, event: ChangeEvent) -> None:
        """Bus handler: queue *event* on its server's partition."""
        self._stats.received += 1
        if (
            event.origin == self.instance_id
            and event.sequence <= self._registry.last_sequence(event.server_id)
        ):
            self._stats.own_skipped += 1
            return
        self._dispatcher.submit(event)

    async def resync_all(self) -> None:
        """Reload the whole registry from the cache."""
        try:
            await self._registry.bootstrap()
        except CacheUnavailable as exc:
            self._degrade(exc)
            return
        self._stats.resyncs += 1
        self._recover()
        for server_id in list(self._owned):
            self._check_ownership(server_id)

    async def _apply_received(self, event: ChangeEvent) -> None:
        await self._offer(event)
        self._check_ownership(event.server_id)

    async def _offer(self, event: ChangeEvent) -> None:
        outcome = self._registry.apply(event, allow_gap=not self.config.bootstrap_on_gap)
        if outcome is ApplyOutcome.APPLIED:
            self._stats.applied += 1
            return
        if outcome is ApplyOutcome.STALE:
            self._stats.stale += 1
            logger.debug(
                "sync.stale_event",
                server_id=event.server_id,
                sequence=event.sequence,
                last_sequence=self._registry.last_sequence(event.server_id),
            )
            return

        self._stats.gaps += 1
        desync = DesyncDetected(
            event.server_id,
            self._registry.last_sequence(event.server_id) + 1,
            event.sequence,
        )
        logger.info(
            "sync.desync_detected",
            server_id=desync.server_id,
            expected=desync.expected,
            received=desync.received,
        )
        try:
            await self._registry.bootstrap_server(event.server_id, trigger=event)
        except CacheUnavailable as exc:
            # A later event for this server triggers another attempt.
            self._degrade(exc)
            return
        self._stats.resyncs += 1
        self._recover()

        # The cache normally already reflects the trigger, making it stale.
        if self._registry.apply(event, allow_gap=True) is ApplyOutcome.APPLIED:
            self._stats.applied += 1

    # -- Internal ------------------------------------------------------------

    async def _locked(self, server_id: str, fn: Callable[[], Awaitable[T]]) -> T:
        async with self._locks[server_id]:
            try:
                result = await fn()
            except _TRANSPORT_ERRORS as exc:
                self._degrade(exc)
                raise
        self._recover()
        return result

    async def _commit(
        self,
        event_type: EventType,
        server_id: str,
        payload: Mapping[str, Any],
        base: Optional[ServerRecord],
    ) -> Optional[ServerRecord]:
        """Run the write-then-notify sequence for one owned mutation."""
        normalized = validate_payload(event_type, payload)
        sequence = await self._cache.next_sequence(server_id)
        event = ChangeEvent(
            type=event_type,
            server_id=server_id,
            sequence=sequence,
            origin=self.instance_id,
            payload=normalized,
            timestamp=self._clock(),
        )
        record, _ = apply_event_to_record(base, event)
        if record is None:
            await self._cache.delete_record(server_id)
        else:
            await self._cache.write_record(record)
        if record is None or record.status == ServerStatus.OFFLINE:
            # The lifecycle ended; another instance may announce the id now.
            await self._cache.release_owner(server_id, self.instance_id)

        # A counter allocated by a failed earlier attempt may leave a gap.
        self._registry.apply(event, allow_gap=True)
        if event_type is EventType.ANNOUNCE:
            self._owned.add(server_id)
        elif event_type is EventType.REMOVE:
            self._owned.discard(server_id)

        await self._bus.publish(self._topic, event)
        self._stats.published += 1
        logger.debug(
            "sync.published",
            type=event_type.value,
            server_id=server_id,
            sequence=sequence,
        )
        return record

    def _owned_record(self, server_id: str) -> ServerRecord:
        if server_id not in self._owned:
            raise UnknownServer(server_id)
        record = self._registry.lookup(server_id)
        if record is None:
            raise UnknownServer(server_id)
        if record.owner != self.instance_id:
            self._lose_ownership(server_id, record.owner)
            raise UnknownServer(server_id)
        return record

    async def _hold(self, server_id: str) -> ServerRecord:
        record = self._owned_record(server_id)
        await self._claim(server_id)
        return record

    async def _claim(self, server_id: str) -> None:
        """Take or renew the lease; raises DuplicateServerId when refused."""
        holder = await self._cache.claim_owner(
            server_id, self.instance_id, self.config.heartbeat.liveness_timeout_seconds,
        )
        if holder != self.instance_id:
            self._lose_ownership(server_id, holder)
            logger.warning("sync.claim_refused", server_id=server_id, holder=holder)
            raise DuplicateServerId(server_id, holder)

    def _check_ownership(self, server_id: str) -> None:
        if server_id not in self._owned:
            return
        record = self._registry.lookup(server_id)
        if record is not None and record.owner != self.instance_id:
            self._lose_ownership(server_id, record.owner)

    def _lose_ownership(self, server_id: str, owner: str) -> None:
        if server_id not in self._owned:
            return
        self._owned.discard(server_id)
        logger.warning("sync.ownership_lost", server_id=server_id, owner=owner)

    def _is_foreign_live(self, record: ServerRecord) -> bool:
        if record.owner == self.instance_id or record.status == ServerStatus.OFFLINE:
            return False
        age = record.heartbeat_age(self._clock())
        return age <= self.config.heartbeat.liveness_timeout_seconds

    def _degrade(self, exc: Exception) -> None:
        if self._state is SyncState.DEGRADED:
            return
        self._state = SyncState.DEGRADED
        logger.warning("sync.degraded", reason=str(exc), error_type=type(exc).__name__)
        self._notify_state()

    def _recover(self) -> None:
        if self._state is SyncState.HEALTHY:
            return
        self._state = SyncState.HEALTHY
        logger.info("sync.recovered")
        self._notify_state()

    def _notify_state(self) -> None:
        for listener in list(self._state_listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("sync.state_listener_error")
