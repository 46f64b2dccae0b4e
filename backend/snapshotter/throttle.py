"""Per-domain politeness gate and per-user snapshot quota.

Both live in the shared cache. The quota is a fixed-window counter built on
atomic ``INCR`` with the expiry set on the increment that creates the key.
The politeness gate is read-then-write and therefore approximate: two
workers racing on the same domain can both be allowed.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from snapshotter.cache import Cache, get_cache
from snapshotter.config import settings
from snapshotter.metrics import SNAPSHOT_QUOTA_REJECTIONS_TOTAL

logger = logging.getLogger(__name__)


def domain_last_fetch_key(domain: str) -> str:
    return f"snapshots:domain:{domain}:last"


def user_rate_limit_key(user_id: str) -> str:
    return f"snapshots:user:{user_id}:count"


@dataclass(frozen=True)
class PolitenessDecision:
    allowed: bool
    wait_ms: int


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    remaining: int


@dataclass(frozen=True)
class QuotaUsage:
    used: int
    remaining: int
    limit: int


class PolitenessGate:
    """At most one fetch per domain per politeness window."""

    def __init__(
        self,
        cache: Cache | None = None,
        *,
        window_ms: int | None = None,
        ttl_s: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache = cache
        self.window_ms = window_ms if window_ms is not None else settings.SNAPSHOT_POLITENESS_WINDOW_MS
        self.ttl_s = ttl_s if ttl_s is not None else settings.SNAPSHOT_POLITENESS_TTL_S
        self._clock = clock

    @property
    def cache(self) -> Cache:
        return self._cache if self._cache is not None else get_cache()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def check_politeness(self, domain: str) -> PolitenessDecision:
        key = domain_last_fetch_key(domain)
        now = self._now_ms()
        try:
            raw = await self.cache.get(key)
            if raw is None:
                await self.cache.set(key, now, ex=self.ttl_s)
                return PolitenessDecision(allowed=True, wait_ms=0)

            elapsed = now - int(float(raw))
            if elapsed >= self.window_ms:
                await self.cache.set(key, now, ex=self.ttl_s)
                return PolitenessDecision(allowed=True, wait_ms=0)
        except Exception as exc:
            logger.warning("Politeness check failed for %s: %s", domain, exc)
            return PolitenessDecision(allowed=True, wait_ms=0)

        return PolitenessDecision(allowed=False, wait_ms=self.window_ms - elapsed)

    async def mark_fetched(self, domain: str) -> None:
        try:
            await self.cache.set(domain_last_fetch_key(domain), self._now_ms(), ex=self.ttl_s)
        except Exception as exc:
            logger.warning("Politeness mark failed for %s: %s", domain, exc)


class UserQuotaGate:
    """Fixed-window count of snapshot requests per user."""

    def __init__(
        self,
        cache: Cache | None = None,
        *,
        limit: int | None = None,
        window_s: int | None = None,
    ) -> None:
        self._cache = cache
        self.limit = limit if limit is not None else settings.SNAPSHOT_USER_RATE_LIMIT
        self.window_s = window_s if window_s is not None else settings.SNAPSHOT_USER_RATE_WINDOW_S

    @property
    def cache(self) -> Cache:
        return self._cache if self._cache is not None else get_cache()

    async def check_user_rate_limit(self, user_id: str) -> QuotaDecision:
        key = user_rate_limit_key(user_id)
        try:
            count = await self.cache.incr(key)
            if count == 1:
                await self.cache.expire(key, self.window_s)
        except Exception as exc:
            logger.warning("Quota check failed for user %s: %s", user_id, exc)
            count = None

        if count is None:
            return QuotaDecision(allowed=True, remaining=self.limit)

        count = int(count)
        decision = QuotaDecision(allowed=count <= self.limit, remaining=max(0, self.limit - count))
        if not decision.allowed:
            SNAPSHOT_QUOTA_REJECTIONS_TOTAL.inc()
        return decision

    async def get_user_quota(self, user_id: str) -> QuotaUsage:
        try:
            raw = await self.cache.get(user_rate_limit_key(user_id))
        except Exception as exc:
            logger.warning("Quota read failed for user %s: %s", user_id, exc)
            raw = None
        used = int(raw or 0)
        return QuotaUsage(used=used, remaining=max(0, self.limit - used), limit=self.limit)
