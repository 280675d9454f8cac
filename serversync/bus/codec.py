"""
ServerSync Event Codec

JSON wire format for change events. Each event travels in a versioned
envelope::

    {"v": 1, "id": "...", "type": "heartbeat", "server": "lobby-1",
     "seq": 42, "origin": "proxy-a1b2", "ts": 1700000000.0,
     "payload": {...}}

The payload shape depends on ``type`` and is validated against a pydantic
model per variant, so handlers only ever see well-formed events.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from serversync.errors import MalformedEvent
from serversync.types import (
    SCHEMA_VERSION,
    ChangeEvent,
    EventType,
    ServerStatus,
    validate_server_id,
)


# ---------------------------------------------------------------------------
# Payload variants
# ---------------------------------------------------------------------------


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class PlayerPayload(_Payload):
    uuid: str = Field(min_length=1)
    username: str = Field(min_length=1, max_length=64)


class AnnouncePayload(_Payload):
    host: str = Field(min_length=1)
    port: int = Field(ge=1, le=65535)
    max_players: int = Field(ge=0)
    players: List[PlayerPayload] = Field(default_factory=list)
    status: ServerStatus = ServerStatus.ONLINE


class HeartbeatPayload(_Payload):
    host: Optional[str] = Field(default=None, min_length=1)
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    max_players: Optional[int] = Field(default=None, ge=0)
    players: Optional[List[PlayerPayload]] = None
    status: ServerStatus = ServerStatus.ONLINE

    @model_validator(mode="after")
    def validate_address(self) -> "HeartbeatPayload":
        # A heartbeat with an address must be able to rebuild a missing record.
        if self.host is not None and (self.port is None or self.max_players is None):
            raise ValueError("host requires port and max_players")
        if self.port is not None and self.host is None:
            raise ValueError("port requires host")
        return self


class StatusPayload(_Payload):
    status: ServerStatus


class PlayerLeavePayload(_Payload):
    uuid: str = Field(min_length=1)


class CapacityPayload(_Payload):
    max_players: int = Field(ge=0)


class RemovePayload(_Payload):
    pass


PAYLOAD_MODELS: Dict[EventType, Type[_Payload]] = {
    EventType.ANNOUNCE: AnnouncePayload,
    EventType.HEARTBEAT: HeartbeatPayload,
    EventType.STATUS: StatusPayload,
    EventType.PLAYER_JOIN: PlayerPayload,
    EventType.PLAYER_LEAVE: PlayerLeavePayload,
    EventType.CAPACITY: CapacityPayload,
    EventType.REMOVE: RemovePayload,
}


class _Envelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    v: int
    id: str = Field(min_length=1)
    type: EventType
    server: str
    seq: int = Field(ge=1)
    origin: str = Field(min_length=1)
    ts: float = Field(ge=0)
    payload: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate_payload(event_type: EventType, payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate *payload* for *event_type* and return its normalized form."""
    model = PAYLOAD_MODELS[event_type]
    try:
        parsed = model.model_validate(dict(payload))
    except ValidationError as exc:
        raise MalformedEvent(f"invalid {event_type.value} payload: {exc.error_count()} error(s)") from exc
    return parsed.model_dump(mode="json", exclude_none=True)


def encode_event(event: ChangeEvent) -> str:
    """Serialize *event* for the bus."""
    data = event.to_dict()
    data["payload"] = validate_payload(event.type, event.payload)
    return json.dumps(data, separators=(",", ":"))


def decode_event(raw: Union[str, bytes]) -> ChangeEvent:
    """
    Parse a bus payload into a ``ChangeEvent``.

    Raises ``MalformedEvent`` for anything that is not a well-formed event
    of a supported schema version.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedEvent("payload is not valid JSON") from exc
    if not isinstance(data, dict):
        raise MalformedEvent("payload is not a JSON object")

    version = data.get("v")
    if version != SCHEMA_VERSION:
        raise MalformedEvent(f"unsupported schema version: {version!r}")

    try:
        envelope = _Envelope.model_validate(data)
    except ValidationError as exc:
        raise MalformedEvent(f"invalid envelope: {exc.error_count()} error(s)") from exc

    try:
        server_id = validate_server_id(envelope.server)
    except ValueError as exc:
        raise MalformedEvent(str(exc)) from exc

    return ChangeEvent(
        type=envelope.type,
        server_id=server_id,
        sequence=envelope.seq,
        origin=envelope.origin,
        payload=validate_payload(envelope.type, envelope.payload),
        timestamp=envelope.ts,
        event_id=envelope.id,
        schema_version=envelope.v,
    )
