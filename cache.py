"""Lookaside cache used by the Ad Library service."""

from __future__ import annotations

import copy
import json
import logging
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300


class CacheService(Protocol):
    """Async key-value cache with per-entry expiry.

    Values must be JSON-compatible so that a networked backend can be
    substituted for the in-memory one.
    """

    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...


class InMemoryCache:
    """Process-local cache; entries are evicted lazily when read after expiry."""

    def __init__(
        self,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            logger.debug("Cache entry expired: %s", key)
            return None
        return copy.deepcopy(value)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        self._entries[key] = (self._clock() + ttl, copy.deepcopy(value))

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def clear(self) -> None:
        self._entries.clear()


class RedisCache:
    """Redis-backed cache shared between worker processes.

    Values are stored as JSON with ``SETEX``. Redis failures are logged and
    read as misses, so searches keep working while Redis is unreachable.
    """

    def __init__(
        self,
        url: str = "",
        *,
        client: Optional[redis.Redis] = None,
        default_ttl: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        self.url = url
        self.default_ttl = default_ttl
        self.redis: Optional[redis.Redis] = client

    async def connect(self) -> None:
        """Connect to Redis; on failure the cache stays disabled."""
        if self.redis is not None or not self.url:
            return

        client = redis.from_url(self.url, encoding="utf-8", decode_responses=True)
        try:
            await client.ping()
        except (RedisError, OSError) as exc:
            logger.warning("Failed to connect to Redis: %s. Continuing without cache.", exc)
            await client.aclose()
            return
        self.redis = client
        logger.info("Connected to Redis")

    async def aclose(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
            logger.info("Disconnected from Redis")

    async def get(self, key: str) -> Optional[Any]:
        if self.redis is None:
            return None
        try:
            value = await self.redis.get(key)
            return json.loads(value) if value is not None else None
        except (RedisError, ValueError) as exc:
            logger.error("Error getting cache key %s: %s", key, exc)
            return None

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        if self.redis is None:
            return
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        try:
            await self.redis.setex(key, ttl, json.dumps(value))
        except RedisError as exc:
            logger.error("Error setting cache key %s: %s", key, exc)

    async def delete(self, key: str) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.delete(key)
        except RedisError as exc:
            logger.error("Error deleting cache key %s: %s", key, exc)
