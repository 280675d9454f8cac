"""
ServerSync Cache Client

Typed wrapper over a cache backend holding the authoritative fleet
snapshot.

Key layout::

    fleet:server:<id>       JSON-encoded ServerRecord
    fleet:server:<id>:seq   per-server sequence counter
    fleet:server:<id>:owner ownership lease, JSON-encoded instance id

Every call is bounded by the configured timeout. Idempotent operations
(get, set, delete) retry transient failures with exponential backoff;
``scan_prefix``, ``incr`` and the lease calls run once. Exhausting the
budget raises ``CacheUnavailable`` instead of returning stale or empty
data.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Tuple, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from serversync.cache.backends import TRANSIENT_ERRORS, CacheBackend
from serversync.config import CacheConfig
from serversync.errors import CacheUnavailable
from serversync.types import FleetSnapshot, ServerRecord, validate_server_id

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_SEQ_SUFFIX = ":seq"
_OWNER_SUFFIX = ":owner"


@dataclass
class CacheStats:
    """Cache statistics."""
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


class CacheClient:
    """
    Shared-cache access for the synchronization core.

    Usage::

        cache = CacheClient(RedisCacheBackend(url), config.cache)
        await cache.connect()
        seq = await cache.next_sequence("lobby-1")
        await cache.write_record(record)
    """

    def __init__(self, backend: CacheBackend, config: Optional[CacheConfig] = None) -> None:
        self.backend = backend
        self.config = config or CacheConfig()
        self._stats = CacheStats()

    @property
    def stats(self) -> CacheStats:
        return self._stats

    # -- Lifecycle -----------------------------------------------------------

    async def connect(self) -> None:
        await self._call("connect", None, self.backend.connect, retry=True)
        logger.info("cache.connected", backend=type(self.backend).__name__)

    async def close(self) -> None:
        try:
            await asyncio.wait_for(
                self.backend.close(), self.config.operation_timeout_seconds,
            )
        except TRANSIENT_ERRORS as exc:
            logger.warning("cache.close_failed", error=str(exc))

    # -- Generic key/value API -----------------------------------------------

    async def get(self, key: str) -> Optional[Any]:
        """Return the decoded value for *key*, or ``None`` when absent."""
        raw = await self._call("get", key, self.backend.get, key, retry=True)
        if raw is None:
            self._stats.misses += 1
            return None
        self._stats.hits += 1
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("cache.undecodable_value", key=key)
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        serialized = json.dumps(value, separators=(",", ":"))
        await self._call("set", key, self.backend.set, key, serialized, ttl, retry=True)
        self._stats.sets += 1

    async def delete(self, key: str) -> bool:
        deleted = await self._call("delete", key, self.backend.delete, key, retry=True)
        self._stats.deletes += 1
        return deleted

    async def incr(self, key: str) -> int:
        return await self._call("incr", key, self.backend.incr, key, retry=False)

    async def scan_prefix(self, prefix: str) -> List[Tuple[str, Any]]:
        """
        Return all ``(key, value)`` pairs under *prefix*.

        Not retried: a partially observed scan could mislead the caller.
        Undecodable values are skipped with a warning.
        """
        rows = await self._call("scan_prefix", prefix, self.backend.scan_prefix, prefix, retry=False)
        result: List[Tuple[str, Any]] = []
        for key, raw in rows:
            try:
                result.append((key, json.loads(raw)))
            except ValueError:
                logger.warning("cache.undecodable_value", key=key)
        return result

    # -- Fleet helpers -------------------------------------------------------

    def record_key(self, server_id: str) -> str:
        return f"{self.config.key_prefix}{validate_server_id(server_id)}"

    def sequence_key(self, server_id: str) -> str:
        return self.record_key(server_id) + _SEQ_SUFFIX

    async def next_sequence(self, server_id: str) -> int:
        """Allocate the next sequence number for *server_id*."""
        return await self.incr(self.sequence_key(server_id))

    async def write_record(self, record: ServerRecord) -> None:
        await self.set(
            self.record_key(record.server_id),
            record.to_dict(),
            ttl=self.config.record_ttl_seconds,
        )

    async def read_record(self, server_id: str) -> Optional[ServerRecord]:
        data = await self.get(self.record_key(server_id))
        if data is None:
            return None
        try:
            return ServerRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("cache.corrupt_record", server_id=server_id, error=str(exc))
            return None

    async def delete_record(self, server_id: str) -> bool:
        return await self.delete(self.record_key(server_id))

    def owner_key(self, server_id: str) -> str:
        return self.record_key(server_id) + _OWNER_SUFFIX

    async def claim_owner(self, server_id: str, instance_id: str, ttl: float) -> str:
        """
        Take or renew the ownership lease of *server_id*.

        Returns the instance holding the lease afterwards; the claim
        succeeded only when that is *instance_id*.
        """
        key = self.owner_key(server_id)
        holder = await self._call(
            "claim", key, self.backend.claim, key, json.dumps(instance_id), ttl, retry=False,
        )
        try:
            return json.loads(holder)
        except ValueError:
            logger.warning("cache.undecodable_value", key=key)
            return holder

    async def release_owner(self, server_id: str, instance_id: str) -> bool:
        key = self.owner_key(server_id)
        return await self._call(
            "release", key, self.backend.release, key, json.dumps(instance_id), retry=False,
        )

    async def read_snapshot(self) -> FleetSnapshot:
        """Read every server record, skipping counters and leases."""
        prefix = self.config.key_prefix
        snapshot: FleetSnapshot = {}

        for key, value in await self.scan_prefix(prefix):
            if key.endswith((_SEQ_SUFFIX, _OWNER_SUFFIX)):
                continue
            try:
                record = ServerRecord.from_dict(value)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("cache.corrupt_record", key=key, error=str(exc))
                continue
            snapshot[record.server_id] = record

        return snapshot

    # -- Internal ------------------------------------------------------------

    async def _call(
        self,
        operation: str,
        key: Optional[str],
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        retry: bool,
    ) -> T:
        attempts = self.config.max_attempts if retry else 1
        timeout = self.config.operation_timeout_seconds
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=wait_exponential(
                    multiplier=self.config.retry_backoff_base_seconds,
                    max=self.config.retry_backoff_max_seconds,
                ),
                retry=retry_if_exception_type(TRANSIENT_ERRORS),
                reraise=True,
            ):
                with attempt:
                    result = await asyncio.wait_for(fn(*args), timeout)
        except TRANSIENT_ERRORS as exc:
            self._stats.errors += 1
            logger.warning(
                "cache.unavailable",
                operation=operation,
                key=key,
                attempts=attempts,
                error=str(exc) or type(exc).__name__,
            )
            raise CacheUnavailable(operation, key) from exc
        return result
