# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Key/value cache with per-entry TTL.

Recovery strategies use it to publish short-lived state such as
``rate_limit:{user_id}:{provider}`` markers that callers consult before
hitting the provider again.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Union

import redis.asyncio as redis

from ..common.utils import get_current_time, to_seconds

logger = logging.getLogger(__name__)


class Cache(ABC):
    """Abstract TTL cache."""

    @abstractmethod
    async def write(self, key: str, value: Any, ttl: Union[int, float, timedelta]) -> None:
        """Store ``value`` under ``key`` for ``ttl`` (seconds or timedelta)."""
        pass

    @abstractmethod
    async def read(self, key: str) -> Optional[Any]:
        """Return the live value for ``key`` or None."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    async def close(self) -> None:
        pass


@dataclass
class _Entry:
    value: Any
    expires_at: datetime


class MemoryCache(Cache):
    """In-process cache; expired entries are dropped lazily on read."""

    def __init__(self, clock: Callable[[], datetime] = get_current_time):
        self._entries: Dict[str, _Entry] = {}
        self._clock = clock
        self._lock = asyncio.Lock()

    async def write(self, key, value, ttl) -> None:
        seconds = to_seconds(ttl)
        if seconds is None or seconds <= 0:
            return
        async with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + timedelta(seconds=seconds))

    async def read(self, key) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            return entry.value

    async def delete(self, key) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    def __len__(self) -> int:
        return len(self._entries)


class RedisCache(Cache):
    """Redis-backed cache; values are stored as JSON with SETEX."""

    def __init__(self, redis_url: str = "redis://localhost:6379/0", key_prefix: str = "",
                 redis_client: Any = None):
        self.key_prefix = key_prefix
        self._redis = redis_client or redis.from_url(redis_url, decode_responses=True)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def write(self, key, value, ttl) -> None:
        seconds = to_seconds(ttl)
        if seconds is None or seconds <= 0:
            return
        await self._redis.setex(self._key(key), max(1, int(round(seconds))), json.dumps(value, default=str))

    async def read(self, key) -> Optional[Any]:
        raw = await self._redis.get(self._key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"Discarding malformed cache entry for {key}")
            return None

    async def delete(self, key) -> bool:
        return bool(await self._redis.delete(self._key(key)))

    async def close(self) -> None:
        await self._redis.aclose()


def create_cache(config=None, **kwargs) -> Cache:
    """
    Build a cache from a CacheConfig.

    Args:
        config: CacheConfig; defaults to an in-memory cache
        **kwargs: Passed to the cache constructor

    Returns:
        Cache instance
    """
    backend = config.backend if config else "memory"
    if backend == "memory":
        return MemoryCache(**kwargs)
    elif backend == "redis":
        return RedisCache(redis_url=config.redis_url, key_prefix=config.key_prefix, **kwargs)
    else:
        raise ValueError(f"Unknown cache backend: {backend}")
