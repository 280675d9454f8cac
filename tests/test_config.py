"""
ServerSync Configuration Tests
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from serversync.config import (
    HeartbeatConfig,
    SyncConfig,
    get_default_config,
    get_development_config,
    get_production_config,
)


class TestSyncConfig:
    """Test SyncConfig."""

    def test_defaults(self):
        config = SyncConfig()
        assert config.bootstrap_on_gap is True
        assert config.cache.key_prefix == "fleet:server:"
        assert config.bus.topic == "serversync:servers"
        assert config.heartbeat.interval_seconds == 5.0
        assert config.heartbeat.liveness_timeout_seconds == 30.0
        assert config.instance_id

    def test_instance_ids_are_unique(self):
        assert SyncConfig().instance_id != SyncConfig().instance_id

    def test_generated_instance_id_not_pinned(self):
        assert SyncConfig().instance_id_pinned is False

    def test_explicit_instance_id_pinned(self, monkeypatch):
        assert SyncConfig(instance_id="lobby-host-1").instance_id_pinned is True

        monkeypatch.setenv("SERVERSYNC_INSTANCE_ID", "lobby-host-2")
        assert get_default_config().instance_id_pinned is True

    def test_liveness_must_exceed_interval(self):
        with pytest.raises(ValidationError):
            HeartbeatConfig(interval_seconds=10.0, liveness_timeout_seconds=10.0)

    def test_eviction_not_below_liveness(self):
        with pytest.raises(ValidationError):
            SyncConfig(heartbeat=HeartbeatConfig(
                liveness_timeout_seconds=30.0, eviction_timeout_seconds=10.0,
            ))

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("SERVERSYNC_INSTANCE_ID", "proxy-1")
        monkeypatch.setenv("SERVERSYNC_BOOTSTRAP_ON_GAP", "false")
        monkeypatch.setenv("SERVERSYNC_CACHE__URL", "redis://cache:6379/1")
        monkeypatch.setenv("SERVERSYNC_HEARTBEAT__INTERVAL_SECONDS", "2")

        config = get_default_config()
        assert config.instance_id == "proxy-1"
        assert config.bootstrap_on_gap is False
        assert config.cache.url == "redis://cache:6379/1"
        assert config.heartbeat.interval_seconds == 2.0

    def test_flat_dict(self):
        flat = SyncConfig(instance_id="proxy-1").to_flat_dict()
        assert flat["instance_id"] == "proxy-1"
        assert flat["topic"] == "serversync:servers"


class TestPresets:
    """Test configuration presets."""

    def test_development_uses_memory_backends(self):
        config = get_development_config()
        assert config.cache.backend == "memory"
        assert config.bus.backend == "memory"
        assert config.log_level == "DEBUG"

    def test_production_expires_records(self):
        config = get_production_config()
        assert config.cache.record_ttl_seconds == 300
        assert config.cache.max_attempts == 5
