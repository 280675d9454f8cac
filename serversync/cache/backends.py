"""
ServerSync Cache Backends

Raw key-value stores behind the cache client:

- ``RedisCacheBackend``: async Redis, the deployment default
- ``MemoryCacheBackend``: process-local store with per-key expiry, used
  for single-process setups and tests

Backends store plain strings and raise transport exceptions as-is; the
cache client owns serialization, timeouts and retries.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

logger = structlog.get_logger(__name__)

TRANSIENT_ERRORS: Tuple[type, ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    RedisConnectionError,
    RedisTimeoutError,
)


class CacheBackend(ABC):
    """Abstract string key-value store."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection and verify it."""

    @abstractmethod
    async def close(self) -> None:
        """Release the connection."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    async def incr(self, key: str) -> int:
        """Atomically increment an integer counter and return the new value."""

    @abstractmethod
    async def scan_prefix(self, prefix: str) -> List[Tuple[str, str]]:
        """Return every ``(key, value)`` whose key starts with *prefix*."""

    @abstractmethod
    async def claim(self, key: str, holder: str, ttl: float) -> str:
        """
        Atomically hold *key* for *holder* during *ttl* seconds.

        Succeeds when the key is free or already held by *holder*, in which
        case the expiry is renewed. Returns the holder after the call, so
        anything other than *holder* means the claim was refused.
        """

    @abstractmethod
    async def release(self, key: str, holder: str) -> bool:
        """Delete *key* only while it is held by *holder*."""


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


@dataclass
class _Entry:
    value: str
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class MemoryCacheBackend(CacheBackend):
    """
    Process-local backend.

    Several clients may share one instance to emulate a fleet inside a
    single process.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._data: Dict[str, _Entry] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def connect(self) -> None:
        logger.debug("cache.memory.connected")

    async def close(self) -> None:
        logger.debug("cache.memory.closed")

    def _live(self, key: str, now: float) -> Optional[_Entry]:
        entry = self._data.get(key)
        if entry is not None and entry.is_expired(now):
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._live(key, self._clock())
            return entry.value if entry else None

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        async with self._lock:
            expires_at = self._clock() + ttl if ttl else None
            self._data[key] = _Entry(value=value, expires_at=expires_at)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._data.pop(key, None) is not None

    async def incr(self, key: str) -> int:
        async with self._lock:
            entry = self._live(key, self._clock())
            current = int(entry.value) if entry else 0
            current += 1
            self._data[key] = _Entry(value=str(current))
            return current

    async def scan_prefix(self, prefix: str) -> List[Tuple[str, str]]:
        async with self._lock:
            now = self._clock()
            keys = sorted(k for k in self._data if k.startswith(prefix))
            result = []
            for key in keys:
                entry = self._live(key, now)
                if entry is not None:
                    result.append((key, entry.value))
            return result

    async def claim(self, key: str, holder: str, ttl: float) -> str:
        async with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is not None and entry.value != holder:
                return entry.value
            self._data[key] = _Entry(value=holder, expires_at=now + ttl)
            return holder

    async def release(self, key: str, holder: str) -> bool:
        async with self._lock:
            entry = self._live(key, self._clock())
            if entry is None or entry.value != holder:
                return False
            del self._data[key]
            return True


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


_CLAIM_SCRIPT = """
local current = redis.call("get", KEYS[1])
if current == false or current == ARGV[1] then
    redis.call("set", KEYS[1], ARGV[1], "px", ARGV[2])
    return ARGV[1]
end
return current
"""

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


def _escape_glob(text: str) -> str:
    for ch in ("\\", "*", "?", "[", "]"):
        text = text.replace(ch, "\\" + ch)
    return text


class RedisCacheBackend(CacheBackend):
    """Redis-backed shared store."""

    def __init__(self, url: str, *, socket_timeout: Optional[float] = None) -> None:
        self.url = url
        self._socket_timeout = socket_timeout
        self._client: Optional[aioredis.Redis] = None

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            raise ConnectionError("redis cache backend is not connected")
        return self._client

    async def connect(self) -> None:
        if self._client is None:
            self._client = aioredis.from_url(
                self.url,
                decode_responses=True,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_timeout,
            )
        await self._client.ping()
        logger.info("cache.redis.connected", url=self.url)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("cache.redis.closed")

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        if ttl:
            await self.client.set(key, value, ex=ttl)
        else:
            await self.client.set(key, value)

    async def delete(self, key: str) -> bool:
        return await self.client.delete(key) > 0

    async def incr(self, key: str) -> int:
        return int(await self.client.incr(key))

    async def scan_prefix(self, prefix: str) -> List[Tuple[str, str]]:
        keys = [
            key async for key in self.client.scan_iter(match=_escape_glob(prefix) + "*")
        ]
        if not keys:
            return []
        keys.sort()
        values = await self.client.mget(keys)
        # Keys may expire between SCAN and MGET
        return [(k, v) for k, v in zip(keys, values) if v is not None]

    async def claim(self, key: str, holder: str, ttl: float) -> str:
        ttl_ms = max(1, int(ttl * 1000))
        return await self.client.eval(_CLAIM_SCRIPT, 1, key, holder, ttl_ms)

    async def release(self, key: str, holder: str) -> bool:
        return await self.client.eval(_RELEASE_SCRIPT, 1, key, holder) == 1
