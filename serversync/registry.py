"""
ServerSync Server Registry

Per-process mirror of the fleet snapshot.

The registry is built from the shared cache at startup and kept current by
applying change events. ``apply`` is a pure in-memory transition guarded
by the per-server sequence rule:

* ``seq <= last``      stale or duplicate, ignored
* ``seq == last + 1``  applied, ``last`` advances
* ``seq >  last + 1``  gap, reported to the caller for a targeted resync

State is split across lock stripes keyed by server id, so an update to one
server never blocks lookups of the others. Cache reads in ``bootstrap``
complete before any stripe is locked. Listeners are notified outside the
locks.
"""

from __future__ import annotations

import threading
import time
import zlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from serversync.cache.client import CacheClient
from serversync.types import (
    ChangeEvent,
    FleetSnapshot,
    ServerRecord,
    ServerStatus,
    apply_event_to_record,
)

logger = structlog.get_logger(__name__)


class ApplyOutcome(str, Enum):
    """Result of offering an event to the registry."""
    APPLIED = "applied"
    STALE = "stale"
    GAP = "gap"


class RegistryListener:
    """
    Receives registry changes, e.g. to maintain a proxy's server list.

    Every method is optional. Callbacks run outside the registry locks on
    the thread that made the change; exceptions are logged and swallowed.
    """

    def server_added(self, record: ServerRecord) -> None:
        pass

    def server_updated(self, previous: ServerRecord, record: ServerRecord) -> None:
        pass

    def server_removed(self, record: ServerRecord) -> None:
        pass


# (previous, current); either side may be None
_Change = Tuple[Optional[ServerRecord], Optional[ServerRecord]]


@dataclass
class _Shard:
    lock: threading.Lock = field(default_factory=threading.Lock)
    records: Dict[str, ServerRecord] = field(default_factory=dict)
    sequences: Dict[str, int] = field(default_factory=dict)


class ServerRegistry:
    """
    Local mirror of ``FleetSnapshot``.

    Usage::

        registry = ServerRegistry(cache)
        await registry.bootstrap()
        outcome = registry.apply(event)
        lobby = registry.lookup("lobby-1")
    """

    def __init__(
        self,
        cache: CacheClient,
        *,
        shards: int = 16,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache = cache
        self._shards = [_Shard() for _ in range(max(1, shards))]
        self._clock = clock
        self._listeners: List[RegistryListener] = []

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: RegistryListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: RegistryListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    async def bootstrap(self) -> int:
        """
        Reload the whole mirror from the cache.

        Records missing from the cache are dropped. A cached record older
        than what this registry already applied is not installed, and
        sequence numbers never move backwards. Returns the number of
        records held afterwards.
        """
        snapshot = await self._cache.read_snapshot()
        changes: List[_Change] = []
        for shard in self._shards:
            with shard.lock:
                for server_id in list(shard.records):
                    if server_id not in snapshot:
                        changes.append((shard.records.pop(server_id), None))
                for server_id, record in snapshot.items():
                    if self._shards[self._index(server_id)] is not shard:
                        continue
                    changes.extend(self._install(shard, record))
        self._notify(changes)
        logger.info("registry.bootstrapped", servers=len(self), snapshot=len(snapshot))
        return len(self)

    async def bootstrap_server(
        self,
        server_id: str,
        trigger: Optional[ChangeEvent] = None,
    ) -> Optional[ServerRecord]:
        """
        Reload a single server from the cache.

        *trigger* is the event whose sequence gap caused the reload. When
        the cache no longer holds the record the server was removed, so
        the local copy is dropped and ``last`` advances to the trigger's
        sequence. Returns the record held afterwards.
        """
        cached = await self._cache.read_record(server_id)
        shard = self._shard(server_id)
        changes: List[_Change] = []
        with shard.lock:
            if cached is None:
                previous = shard.records.pop(server_id, None)
                if previous is not None:
                    changes.append((previous, None))
                if trigger is not None:
                    self._advance(shard, server_id, trigger.sequence)
            else:
                changes.extend(self._install(shard, cached))
            current = shard.records.get(server_id)
            current = current.copy() if current else None
        self._notify(changes)
        logger.debug(
            "registry.server_bootstrapped",
            server_id=server_id,
            present=current is not None,
            last_sequence=self.last_sequence(server_id),
        )
        return current

    # ------------------------------------------------------------------
    # Event application
    # ------------------------------------------------------------------

    def apply(self, event: ChangeEvent, *, allow_gap: bool = False) -> ApplyOutcome:
        """
        Apply *event* to the mirror.

        With ``allow_gap`` a gapped event is applied anyway and ``last``
        jumps to its sequence; otherwise ``GAP`` is returned untouched.
        """
        shard = self._shard(event.server_id)
        with shard.lock:
            last = shard.sequences.get(event.server_id, 0)
            if event.sequence <= last:
                return ApplyOutcome.STALE
            if event.sequence > last + 1 and not allow_gap:
                return ApplyOutcome.GAP

            previous = shard.records.get(event.server_id)
            updated, changed = apply_event_to_record(previous, event)
            shard.sequences[event.server_id] = event.sequence
            if updated is None:
                shard.records.pop(event.server_id, None)
            else:
                shard.records[event.server_id] = updated

        if changed:
            self._notify([(previous, updated)])
        return ApplyOutcome.APPLIED

    # ------------------------------------------------------------------
    # Local-only mutations (liveness inference)
    # ------------------------------------------------------------------

    def mark_offline(self, server_id: str) -> bool:
        """Mark a record OFFLINE locally without touching its sequence."""
        shard = self._shard(server_id)
        with shard.lock:
            previous = shard.records.get(server_id)
            if previous is None or previous.status == ServerStatus.OFFLINE:
                return False
            updated = previous.copy()
            updated.status = ServerStatus.OFFLINE
            shard.records[server_id] = updated
        self._notify([(previous, updated)])
        return True

    def evict(self, server_id: str) -> bool:
        """Drop a record locally; its last sequence is kept."""
        shard = self._shard(server_id)
        with shard.lock:
            previous = shard.records.pop(server_id, None)
        if previous is None:
            return False
        self._notify([(previous, None)])
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def lookup(self, server_id: str) -> Optional[ServerRecord]:
        shard = self._shard(server_id)
        with shard.lock:
            record = shard.records.get(server_id)
            return record.copy() if record else None

    def list_by_status(self, status: ServerStatus) -> List[ServerRecord]:
        return [r for r in self.all() if r.status == status]

    def all(self) -> List[ServerRecord]:
        records: List[ServerRecord] = []
        for shard in self._shards:
            with shard.lock:
                records.extend(r.copy() for r in shard.records.values())
        records.sort(key=lambda r: r.server_id)
        return records

    def snapshot(self) -> FleetSnapshot:
        return {r.server_id: r for r in self.all()}

    def last_sequence(self, server_id: str) -> int:
        shard = self._shard(server_id)
        with shard.lock:
            return shard.sequences.get(server_id, 0)

    def stale(self, timeout: float, now: Optional[float] = None) -> List[ServerRecord]:
        """Non-OFFLINE records whose heartbeat is older than *timeout*."""
        now = now if now is not None else self._clock()
        return [
            r for r in self.all()
            if r.status != ServerStatus.OFFLINE and r.heartbeat_age(now) > timeout
        ]

    def evictable(self, timeout: float, now: Optional[float] = None) -> List[ServerRecord]:
        """OFFLINE records silent for longer than *timeout*."""
        now = now if now is not None else self._clock()
        return [
            r for r in self.all()
            if r.status == ServerStatus.OFFLINE and r.heartbeat_age(now) > timeout
        ]

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.records)
        return total

    def __contains__(self, server_id: object) -> bool:
        return isinstance(server_id, str) and self.lookup(server_id) is not None

    def get_stats(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in ServerStatus}
        for record in self.all():
            counts[record.status.value] += 1
        counts["total"] = sum(counts.values())
        return counts

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _index(self, server_id: str) -> int:
        return zlib.crc32(server_id.encode()) % len(self._shards)

    def _shard(self, server_id: str) -> _Shard:
        return self._shards[self._index(server_id)]

    @staticmethod
    def _advance(shard: _Shard, server_id: str, sequence: int) -> None:
        if sequence > shard.sequences.get(server_id, 0):
            shard.sequences[server_id] = sequence

    def _install(self, shard: _Shard, record: ServerRecord) -> List[_Change]:
        """Adopt a cached record unless this shard already holds newer state."""
        last = shard.sequences.get(record.server_id, 0)
        if record.sequence < last:
            return []
        previous = shard.records.get(record.server_id)
        shard.records[record.server_id] = record.copy()
        self._advance(shard, record.server_id, record.sequence)
        return [(previous, record.copy())]

    def _notify(self, changes: List[_Change]) -> None:
        if not self._listeners:
            return
        for previous, current in changes:
            for listener in list(self._listeners):
                try:
                    if previous is None and current is not None:
                        listener.server_added(current.copy())
                    elif previous is not None and current is None:
                        listener.server_removed(previous.copy())
                    elif previous is not None and current is not None:
                        listener.server_updated(previous.copy(), current.copy())
                except Exception:
                    logger.exception(
                        "registry.listener_error",
                        listener=type(listener).__name__,
                    )
