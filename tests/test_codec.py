"""
ServerSync Event Codec Tests
"""

from __future__ import annotations

import json

import pytest

from serversync.bus.codec import decode_event, encode_event, validate_payload
from serversync.errors import MalformedEvent
from serversync.types import EventType, ServerStatus


def _envelope(**overrides):
    data = {
        "v": 1,
        "id": "evt-1",
        "type": "status",
        "server": "lobby-1",
        "seq": 3,
        "origin": "node-a",
        "ts": 1000.0,
        "payload": {"status": "draining"},
    }
    data.update(overrides)
    return json.dumps(data)


class TestEncodeDecode:
    """Test envelope encoding."""

    def test_decoded_event_matches(self, make_event):
        event = make_event(EventType.ANNOUNCE, 1, origin="node-a")
        decoded = decode_event(encode_event(event))

        assert decoded.type == EventType.ANNOUNCE
        assert decoded.server_id == "lobby-1"
        assert decoded.sequence == 1
        assert decoded.origin == "node-a"
        assert decoded.event_id == event.event_id
        assert decoded.timestamp == event.timestamp
        assert decoded.payload["host"] == "10.0.0.5"

    def test_accepts_bytes(self):
        event = decode_event(_envelope().encode())
        assert event.payload == {"status": "draining"}

    def test_unknown_payload_fields_ignored(self):
        event = decode_event(_envelope(payload={"status": "offline", "reason": "restart"}))
        assert event.payload == {"status": "offline"}

    def test_encode_rejects_invalid_payload(self, make_event):
        event = make_event(EventType.CAPACITY, 1, payload={"max_players": -1})
        with pytest.raises(MalformedEvent):
            encode_event(event)


class TestMalformed:
    """Everything that is not a well-formed event raises MalformedEvent."""

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", "42", ""])
    def test_not_an_object(self, raw):
        with pytest.raises(MalformedEvent):
            decode_event(raw)

    def test_unsupported_version(self):
        with pytest.raises(MalformedEvent, match="schema version"):
            decode_event(_envelope(v=2))

    def test_unknown_type(self):
        with pytest.raises(MalformedEvent):
            decode_event(_envelope(type="explode"))

    def test_sequence_must_be_positive(self):
        with pytest.raises(MalformedEvent):
            decode_event(_envelope(seq=0))

    def test_bad_server_id(self):
        with pytest.raises(MalformedEvent):
            decode_event(_envelope(server="lobby 1"))

    def test_payload_shape_checked_per_type(self):
        with pytest.raises(MalformedEvent):
            decode_event(_envelope(type="announce", payload={"port": 25565}))

    def test_out_of_range_port(self):
        payload = {"host": "h", "port": 70000, "max_players": 1}
        with pytest.raises(MalformedEvent):
            decode_event(_envelope(type="announce", payload=payload))


class TestValidatePayload:
    """Test payload normalization."""

    def test_defaults_filled(self):
        payload = validate_payload(EventType.ANNOUNCE, {"host": "h", "port": 1, "max_players": 0})
        assert payload["players"] == []
        assert payload["status"] == ServerStatus.ONLINE.value

    def test_optional_heartbeat_fields_dropped(self):
        payload = validate_payload(EventType.HEARTBEAT, {"status": "draining"})
        assert payload == {"status": "draining"}

    def test_heartbeat_capacity_without_address(self):
        payload = validate_payload(EventType.HEARTBEAT, {"max_players": 5})
        assert payload["max_players"] == 5

    def test_heartbeat_host_requires_port_and_capacity(self):
        with pytest.raises(MalformedEvent):
            validate_payload(EventType.HEARTBEAT, {"host": "10.0.0.9"})
        with pytest.raises(MalformedEvent):
            validate_payload(EventType.HEARTBEAT, {"host": "10.0.0.9", "port": 25565})

    def test_heartbeat_port_requires_host(self):
        with pytest.raises(MalformedEvent):
            validate_payload(EventType.HEARTBEAT, {"port": 25565, "max_players": 1})

    def test_partial_heartbeat_address_rejected_on_decode(self):
        with pytest.raises(MalformedEvent):
            decode_event(_envelope(type="heartbeat", payload={"host": "10.0.0.9"}))
