"""
Key-value cache stores with sliding expiration.

The conversation history is the only mutable state shared between
requests, so it lives behind this small interface and is injected into the
ChatService instead of being a module-level singleton.

  MemoryCacheStore -- in-process dict, for the CLI and tests
  RedisCacheStore  -- redis.asyncio, shared between processes

Both refresh an entry's TTL whenever it is read (sliding expiration).
"""
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

import redis.asyncio as redis
from loguru import logger


class CacheStore(ABC):
    """Async key-value store with per-entry sliding TTL."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the value and restart its expiration window, or None."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl: timedelta) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...


@dataclass
class _Entry:
    value: str
    ttl: float
    expires_at: float


class MemoryCacheStore(CacheStore):
    """
    In-process store.

    Expired entries are evicted lazily on access, and `set()` sweeps the
    whole store at most once every `purge_interval` seconds so entries that
    are never read again do not accumulate.  `clock` is injectable so tests
    can move time forward.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        purge_interval: float = 60.0,
    ) -> None:
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self.purge_interval = purge_interval
        self._next_purge = clock() + purge_interval

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._clock()
        if entry.expires_at <= now:
            del self._entries[key]
            logger.debug(f"[MemoryCache] Evicted expired entry {key}")
            return None
        entry.expires_at = now + entry.ttl
        return entry.value

    async def set(self, key: str, value: str, ttl: timedelta) -> None:
        now = self._clock()
        if now >= self._next_purge:
            self.purge_expired()
            self._next_purge = now + self.purge_interval
        seconds = ttl.total_seconds()
        self._entries[key] = _Entry(value=value, ttl=seconds, expires_at=now + seconds)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"[MemoryCache] Purged {len(expired)} expired entries")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RedisCacheStore(CacheStore):
    """
    Redis-backed store.

    Reads use GETEX so the key's TTL is reset to `sliding_expiration` on
    every access, matching the in-memory behaviour.
    """

    def __init__(
        self,
        sliding_expiration: timedelta,
        url: str = "redis://localhost:6379/0",
        key_prefix: str = "conversation",
        client: Optional[redis.Redis] = None,
    ) -> None:
        self.sliding_expiration = sliding_expiration
        self.key_prefix = key_prefix
        self._client = client or redis.Redis.from_url(url, decode_responses=True)

    def _get_key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    async def get(self, key: str) -> Optional[str]:
        value = await self._client.getex(self._get_key(key), ex=self.sliding_expiration)
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl: timedelta) -> None:
        await self._client.set(self._get_key(key), value, ex=ttl)

    async def delete(self, key: str) -> None:
        await self._client.delete(self._get_key(key))

    async def close(self) -> None:
        await self._client.aclose()
