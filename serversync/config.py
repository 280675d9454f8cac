"""
ServerSync Configuration

Pydantic models for every subsystem of the synchronization core. The root
``SyncConfig`` is a settings object, so each option can be supplied from
the environment (``SERVERSYNC_INSTANCE_ID``, ``SERVERSYNC_CACHE__URL``,
``SERVERSYNC_HEARTBEAT__INTERVAL_SECONDS`` ...).
"""

from __future__ import annotations

import socket
import uuid
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_instance_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


class CacheConfig(BaseModel):
    """Shared cache connection settings."""
    backend: Literal["redis", "memory"] = "redis"
    url: str = Field(default="redis://localhost:6379/0", description="Cache endpoint")
    key_prefix: str = Field(default="fleet:server:", min_length=1)
    operation_timeout_seconds: float = Field(default=2.0, gt=0)
    max_attempts: int = Field(default=3, ge=1, description="Attempts for idempotent calls")
    retry_backoff_base_seconds: float = Field(default=0.1, gt=0)
    retry_backoff_max_seconds: float = Field(default=2.0, gt=0)
    record_ttl_seconds: Optional[int] = Field(
        default=None, ge=1, description="Expiry for record keys; None keeps them",
    )


class BusConfig(BaseModel):
    """Pub/sub transport settings."""
    backend: Literal["redis", "memory"] = "redis"
    url: str = Field(default="redis://localhost:6379/0", description="Bus endpoint")
    topic: str = Field(default="serversync:servers", min_length=1)
    publish_timeout_seconds: float = Field(default=2.0, gt=0)
    max_publish_attempts: int = Field(default=3, ge=1)
    retry_backoff_base_seconds: float = Field(default=0.1, gt=0)
    retry_backoff_max_seconds: float = Field(default=2.0, gt=0)
    reconnect_backoff_max_seconds: float = Field(default=30.0, gt=0)
    poll_timeout_seconds: float = Field(default=1.0, gt=0)


class HeartbeatConfig(BaseModel):
    """Heartbeat publication and liveness sweeping."""
    interval_seconds: float = Field(default=5.0, gt=0)
    liveness_timeout_seconds: float = Field(default=30.0, gt=0)
    sweep_interval_seconds: float = Field(default=5.0, gt=0)
    eviction_timeout_seconds: float = Field(
        default=120.0, gt=0, description="Drop local OFFLINE records after this age",
    )

    @field_validator("liveness_timeout_seconds")
    @classmethod
    def validate_liveness_timeout(cls, v: float, info) -> float:
        interval = info.data.get("interval_seconds", 5.0)
        if v <= interval:
            raise ValueError("liveness_timeout_seconds must be greater than interval_seconds")
        return v


class SyncConfig(BaseSettings):
    """
    Master configuration for a ServerSync instance.

    All sub-configurations are accessible via dot notation.

    ``instance_id`` identifies the owner of every announced server. The
    default is random per process, so a backend restarted after a crash
    cannot re-announce its servers until the previous record goes silent
    past the liveness timeout. Deployments should pin it through
    ``SERVERSYNC_INSTANCE_ID`` to a value that is stable across restarts
    and unique per process.
    """
    instance_id: str = Field(default_factory=_default_instance_id, min_length=1)
    bootstrap_on_gap: bool = True
    registry_shards: int = Field(default=16, ge=1, le=1024)
    shutdown_timeout_seconds: float = Field(default=10.0, gt=0)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    cache: CacheConfig = Field(default_factory=CacheConfig)
    bus: BusConfig = Field(default_factory=BusConfig)
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)

    model_config = SettingsConfigDict(
        env_prefix="SERVERSYNC_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_eviction(self) -> "SyncConfig":
        hb = self.heartbeat
        if hb.eviction_timeout_seconds < hb.liveness_timeout_seconds:
            raise ValueError("eviction_timeout_seconds must not be below liveness_timeout_seconds")
        return self

    @property
    def instance_id_pinned(self) -> bool:
        """Whether ``instance_id`` was set explicitly rather than generated."""
        return "instance_id" in self.model_fields_set

    def to_flat_dict(self) -> Dict[str, Any]:
        """Flatten the options worth logging at startup."""
        return {
            "instance_id": self.instance_id,
            "cache_backend": self.cache.backend,
            "cache_url": self.cache.url,
            "bus_backend": self.bus.backend,
            "bus_url": self.bus.url,
            "topic": self.bus.topic,
            "heartbeat_interval": self.heartbeat.interval_seconds,
            "liveness_timeout": self.heartbeat.liveness_timeout_seconds,
            "bootstrap_on_gap": self.bootstrap_on_gap,
        }


def get_default_config() -> SyncConfig:
    """Get default configuration (environment overrides apply)."""
    return SyncConfig()


def get_development_config() -> SyncConfig:
    """Get single-process configuration backed by in-memory transports."""
    return SyncConfig(
        cache=CacheConfig(backend="memory"),
        bus=BusConfig(backend="memory"),
        heartbeat=HeartbeatConfig(
            interval_seconds=1.0,
            liveness_timeout_seconds=5.0,
            sweep_interval_seconds=1.0,
            eviction_timeout_seconds=15.0,
        ),
        log_level="DEBUG",
    )


def get_production_config() -> SyncConfig:
    """Get fleet configuration with record expiry and longer retry budgets."""
    return SyncConfig(
        cache=CacheConfig(
            max_attempts=5,
            record_ttl_seconds=300,
        ),
        bus=BusConfig(
            max_publish_attempts=5,
        ),
    )
