"""
ServerSync Fleet Types

Type definitions shared by every part of the synchronization core:

- Server lifecycle status and its allowed transitions
- Player presence (``SyncPlayer``)
- The per-server record mirrored by every registry (``ServerRecord``)
- The sequenced change event carried on the bus (``ChangeEvent``)
"""

from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

SCHEMA_VERSION = 1

_SERVER_ID_RE = re.compile(r"^[A-Za-z0-9_.\-]{1,64}$")


def validate_server_id(server_id: str) -> str:
    """Return *server_id* if it is usable as a cache key segment."""
    if not isinstance(server_id, str) or not _SERVER_ID_RE.match(server_id):
        raise ValueError(f"invalid server id: {server_id!r}")
    return server_id


# =============================================================================
# Status
# =============================================================================


class ServerStatus(str, Enum):
    """Lifecycle status of a backend server."""
    ONLINE = "online"
    DRAINING = "draining"   # Still reachable, no new players routed
    OFFLINE = "offline"

    def can_transition_to(self, target: "ServerStatus") -> bool:
        if target is self:
            return True
        return target in _TRANSITIONS[self]


_TRANSITIONS: Dict[ServerStatus, FrozenSet[ServerStatus]] = {
    ServerStatus.ONLINE: frozenset({ServerStatus.DRAINING, ServerStatus.OFFLINE}),
    ServerStatus.DRAINING: frozenset({ServerStatus.OFFLINE}),
    # OFFLINE -> ONLINE only through a fresh announcement
    ServerStatus.OFFLINE: frozenset(),
}


class EventType(str, Enum):
    """Closed set of change event variants."""
    ANNOUNCE = "announce"
    HEARTBEAT = "heartbeat"
    STATUS = "status"
    PLAYER_JOIN = "player_join"
    PLAYER_LEAVE = "player_leave"
    CAPACITY = "capacity"
    REMOVE = "remove"


# =============================================================================
# Players
# =============================================================================


@dataclass(frozen=True)
class SyncPlayer:
    """A player connected to one of the fleet's servers."""
    uuid: str
    username: str

    def to_dict(self) -> Dict[str, str]:
        return {"uuid": self.uuid, "username": self.username}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SyncPlayer":
        return cls(uuid=str(data["uuid"]), username=str(data["username"]))


# =============================================================================
# Server record
# =============================================================================


@dataclass
class ServerRecord:
    """
    Best-known state of one backend server.

    The copy stored in the shared cache is the source of truth; the copy
    held by a registry is a disposable mirror rebuilt from the cache and
    bus events.
    """
    server_id: str
    host: str = "127.0.0.1"
    port: int = 25565
    max_players: int = 0
    players: Dict[str, SyncPlayer] = field(default_factory=dict)
    status: ServerStatus = ServerStatus.ONLINE
    last_heartbeat: float = field(default_factory=time.time)
    sequence: int = 0
    owner: str = ""
    announced_at: float = field(default_factory=time.time)

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def online_count(self) -> int:
        return len(self.players)

    @property
    def load(self) -> float:
        """Fraction of capacity in use (0.0 when capacity is unknown)."""
        if self.max_players <= 0:
            return 0.0
        return min(1.0, self.online_count / self.max_players)

    @property
    def is_routable(self) -> bool:
        return self.status == ServerStatus.ONLINE

    def heartbeat_age(self, now: Optional[float] = None) -> float:
        now = now if now is not None else time.time()
        return max(0.0, now - self.last_heartbeat)

    def copy(self) -> "ServerRecord":
        return replace(self, players=dict(self.players))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "server_id": self.server_id,
            "host": self.host,
            "port": self.port,
            "max_players": self.max_players,
            "players": [p.to_dict() for p in self.players.values()],
            "status": self.status.value,
            "last_heartbeat": self.last_heartbeat,
            "sequence": self.sequence,
            "owner": self.owner,
            "announced_at": self.announced_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ServerRecord":
        players = [SyncPlayer.from_dict(p) for p in data.get("players", [])]
        return cls(
            server_id=validate_server_id(data["server_id"]),
            host=str(data.get("host", "127.0.0.1")),
            port=int(data.get("port", 25565)),
            max_players=int(data.get("max_players", 0)),
            players={p.uuid: p for p in players},
            status=ServerStatus(data.get("status", ServerStatus.ONLINE.value)),
            last_heartbeat=float(data.get("last_heartbeat", 0.0)),
            sequence=int(data.get("sequence", 0)),
            owner=str(data.get("owner", "")),
            announced_at=float(data.get("announced_at", 0.0)),
        )


FleetSnapshot = Dict[str, ServerRecord]


# =============================================================================
# Change events
# =============================================================================


@dataclass(frozen=True)
class ChangeEvent:
    """
    Immutable, sequenced notification of a server state mutation.

    ``payload`` holds the variant-specific fields for ``type``; the codec
    validates its shape before an event is built from wire data.
    """
    type: EventType
    server_id: str
    sequence: int
    origin: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    schema_version: int = SCHEMA_VERSION

    @property
    def is_full_state(self) -> bool:
        """Whether the payload alone is enough to rebuild the record."""
        return self.type in (EventType.ANNOUNCE, EventType.HEARTBEAT)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "v": self.schema_version,
            "id": self.event_id,
            "type": self.type.value,
            "server": self.server_id,
            "seq": self.sequence,
            "origin": self.origin,
            "ts": self.timestamp,
            "payload": dict(self.payload),
        }


def players_payload(players: Iterable[SyncPlayer]) -> List[Dict[str, str]]:
    return [p.to_dict() for p in players]


def players_from_payload(items: Iterable[Mapping[str, Any]]) -> Dict[str, SyncPlayer]:
    parsed = (SyncPlayer.from_dict(item) for item in items)
    return {p.uuid: p for p in parsed}


def record_from_announce(event: ChangeEvent) -> ServerRecord:
    """Build a fresh record from an ANNOUNCE event."""
    payload = event.payload
    return ServerRecord(
        server_id=event.server_id,
        host=payload["host"],
        port=payload["port"],
        max_players=payload["max_players"],
        players=players_from_payload(payload.get("players", ())),
        status=ServerStatus(payload.get("status", ServerStatus.ONLINE.value)),
        last_heartbeat=event.timestamp,
        sequence=event.sequence,
        owner=event.origin,
        announced_at=event.timestamp,
    )


def apply_event_to_record(
    record: Optional[ServerRecord],
    event: ChangeEvent,
) -> Tuple[Optional[ServerRecord], bool]:
    """
    Compute the record that results from applying *event* to *record*.

    Returns ``(new_record, changed)``. ``new_record`` is ``None`` when the
    server was removed or when a delta event arrives for an unknown record.
    The input record is never mutated.
    """
    if event.type == EventType.ANNOUNCE:
        return record_from_announce(event), True

    if event.type == EventType.REMOVE:
        return None, record is not None

    if record is None:
        if event.type == EventType.HEARTBEAT and "host" in event.payload:
            return record_from_announce(event), True
        return None, False

    updated = record.copy()
    updated.sequence = event.sequence
    payload = event.payload

    if event.type == EventType.HEARTBEAT:
        updated.last_heartbeat = event.timestamp
        updated.status = ServerStatus(payload.get("status", updated.status.value))
        if "max_players" in payload:
            updated.max_players = payload["max_players"]
        if "players" in payload:
            updated.players = players_from_payload(payload["players"])
    elif event.type == EventType.STATUS:
        updated.status = ServerStatus(payload["status"])
    elif event.type == EventType.PLAYER_JOIN:
        player = SyncPlayer.from_dict(payload)
        updated.players[player.uuid] = player
    elif event.type == EventType.PLAYER_LEAVE:
        updated.players.pop(str(payload["uuid"]), None)
    elif event.type == EventType.CAPACITY:
        updated.max_players = payload["max_players"]

    return updated, True
