"""Shared key-value cache (Redis) with a no-op fallback.

When ``REDIS_URL`` is unset (local development) every gate backed by the
cache degrades to allow-everything semantics. A single warning is logged
the first time the fallback is selected.
"""
from __future__ import annotations

import logging
from typing import Any, Protocol

import redis.asyncio as redis

from snapshotter.config import settings

logger = logging.getLogger(__name__)

_cache_client: "Cache | None" = None


class Cache(Protocol):
    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: Any, ex: int | None = None) -> Any: ...

    async def incr(self, key: str) -> int | None: ...

    async def expire(self, key: str, seconds: int) -> Any: ...


class NullCache:
    """Stand-in used when no cache backend is configured."""

    async def get(self, key: str) -> None:
        return None

    async def set(self, key: str, value: Any, ex: int | None = None) -> None:
        return None

    async def incr(self, key: str) -> None:
        return None

    async def expire(self, key: str, seconds: int) -> None:
        return None


def get_cache() -> Cache:
    global _cache_client
    if _cache_client is not None:
        return _cache_client
    if not settings.REDIS_URL:
        logger.warning("REDIS_URL not configured - politeness and quota gates are disabled")
        _cache_client = NullCache()
        return _cache_client
    _cache_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _cache_client


def reset_cache() -> None:
    """Drop the memoised client (settings changed, or between tests)."""
    global _cache_client
    _cache_client = None
