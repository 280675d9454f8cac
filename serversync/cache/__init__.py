"""
ServerSync Shared Cache

Authoritative fleet snapshot storage.
"""

from serversync.cache.backends import (
    CacheBackend,
    MemoryCacheBackend,
    RedisCacheBackend,
)
from serversync.cache.client import CacheClient, CacheStats

__all__ = [
    "CacheBackend",
    "CacheClient",
    "CacheStats",
    "MemoryCacheBackend",
    "RedisCacheBackend",
]
