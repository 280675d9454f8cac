"""Shared fixtures for the ServerSync test suite."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Optional

import pytest

from serversync.config import BusConfig, CacheConfig, HeartbeatConfig, SyncConfig
from serversync.types import ChangeEvent, EventType

DEFAULT_PAYLOADS: Dict[EventType, Dict[str, Any]] = {
    EventType.ANNOUNCE: {
        "host": "10.0.0.5",
        "port": 25565,
        "max_players": 100,
        "players": [],
        "status": "online",
    },
    EventType.HEARTBEAT: {"status": "online"},
    EventType.STATUS: {"status": "draining"},
    EventType.PLAYER_JOIN: {"uuid": "u-1", "username": "Steve"},
    EventType.PLAYER_LEAVE: {"uuid": "u-1"},
    EventType.CAPACITY: {"max_players": 50},
    EventType.REMOVE: {},
}


@pytest.fixture
def fast_config():
    """Memory backends with timeouts and backoffs small enough for tests."""
    return SyncConfig(
        instance_id="node-a",
        cache=CacheConfig(
            backend="memory",
            operation_timeout_seconds=0.5,
            max_attempts=2,
            retry_backoff_base_seconds=0.001,
            retry_backoff_max_seconds=0.01,
        ),
        bus=BusConfig(
            backend="memory",
            publish_timeout_seconds=0.5,
            max_publish_attempts=2,
            retry_backoff_base_seconds=0.001,
            retry_backoff_max_seconds=0.01,
            reconnect_backoff_max_seconds=0.05,
            poll_timeout_seconds=0.02,
        ),
        heartbeat=HeartbeatConfig(
            interval_seconds=0.05,
            liveness_timeout_seconds=0.5,
            sweep_interval_seconds=0.05,
            eviction_timeout_seconds=1.0,
        ),
    )


@pytest.fixture
def make_event():
    """Build a ChangeEvent with a valid default payload for its type."""
    def _make(
        event_type: EventType,
        seq: int,
        server_id: str = "lobby-1",
        origin: str = "node-x",
        payload: Optional[Dict[str, Any]] = None,
        ts: float = 1000.0,
    ) -> ChangeEvent:
        return ChangeEvent(
            type=event_type,
            server_id=server_id,
            sequence=seq,
            origin=origin,
            payload=dict(DEFAULT_PAYLOADS[event_type] if payload is None else payload),
            timestamp=ts,
        )
    return _make


@pytest.fixture
def eventually():
    """Poll *predicate* until it holds or the timeout expires."""
    async def _eventually(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)
    return _eventually
