from __future__ import annotations

import asyncio

from snapshotter.cache import NullCache, get_cache, reset_cache
from snapshotter.config import settings
from snapshotter.throttle import (
    PolitenessGate,
    UserQuotaGate,
    domain_last_fetch_key,
    user_rate_limit_key,
)

from conftest import BrokenCache, FakeCache, FakeClock


def test_cache_keys() -> None:
    assert domain_last_fetch_key("example.com") == "snapshots:domain:example.com:last"
    assert user_rate_limit_key("u1") == "snapshots:user:u1:count"


def test_politeness_allows_then_defers_then_allows_after_window() -> None:
    clock = FakeClock()
    gate = PolitenessGate(FakeCache(clock), window_ms=1000, ttl_s=60, clock=clock)

    first = asyncio.run(gate.check_politeness("example.com"))
    assert first.allowed is True
    assert first.wait_ms == 0

    clock.advance(0.001)
    second = asyncio.run(gate.check_politeness("example.com"))
    assert second.allowed is False
    assert 990 <= second.wait_ms <= 1000

    clock.advance(1.5)
    third = asyncio.run(gate.check_politeness("example.com"))
    assert third.allowed is True


def test_politeness_is_per_domain() -> None:
    clock = FakeClock()
    gate = PolitenessGate(FakeCache(clock), window_ms=1000, clock=clock)

    assert asyncio.run(gate.check_politeness("a.example")).allowed
    assert asyncio.run(gate.check_politeness("b.example")).allowed
    assert not asyncio.run(gate.check_politeness("a.example")).allowed


def test_mark_fetched_restarts_the_window() -> None:
    clock = FakeClock()
    gate = PolitenessGate(FakeCache(clock), window_ms=1000, clock=clock)

    asyncio.run(gate.check_politeness("example.com"))
    clock.advance(0.75)
    asyncio.run(gate.mark_fetched("example.com"))
    clock.advance(0.5)

    decision = asyncio.run(gate.check_politeness("example.com"))
    assert decision.allowed is False
    assert decision.wait_ms == 500


def test_politeness_fails_open_without_a_cache() -> None:
    gate = PolitenessGate(NullCache(), window_ms=1000)
    assert asyncio.run(gate.check_politeness("example.com")).allowed
    assert asyncio.run(gate.check_politeness("example.com")).allowed

    broken = PolitenessGate(BrokenCache(), window_ms=1000)
    assert asyncio.run(broken.check_politeness("example.com")).allowed
    asyncio.run(broken.mark_fetched("example.com"))


def test_quota_rejects_the_call_after_the_limit() -> None:
    gate = UserQuotaGate(FakeCache(), limit=3, window_s=86400)

    decisions = [asyncio.run(gate.check_user_rate_limit("u1")) for _ in range(4)]

    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert [d.remaining for d in decisions] == [2, 1, 0, 0]


def test_quota_resets_in_a_new_window() -> None:
    clock = FakeClock()
    gate = UserQuotaGate(FakeCache(clock), limit=2, window_s=60)

    for _ in range(3):
        asyncio.run(gate.check_user_rate_limit("u1"))
    assert not asyncio.run(gate.check_user_rate_limit("u1")).allowed

    clock.advance(61)
    decision = asyncio.run(gate.check_user_rate_limit("u1"))
    assert decision.allowed is True
    assert decision.remaining == 1


def test_quota_is_per_user() -> None:
    gate = UserQuotaGate(FakeCache(), limit=1, window_s=60)
    assert asyncio.run(gate.check_user_rate_limit("u1")).allowed
    assert not asyncio.run(gate.check_user_rate_limit("u1")).allowed
    assert asyncio.run(gate.check_user_rate_limit("u2")).allowed


def test_quota_usage_reads_without_incrementing() -> None:
    cache = FakeCache()
    gate = UserQuotaGate(cache, limit=5, window_s=60)
    asyncio.run(gate.check_user_rate_limit("u1"))
    asyncio.run(gate.check_user_rate_limit("u1"))

    usage = asyncio.run(gate.get_user_quota("u1"))
    again = asyncio.run(gate.get_user_quota("u1"))

    assert (usage.used, usage.remaining, usage.limit) == (2, 3, 5)
    assert again == usage


def test_quota_allows_everything_without_a_cache() -> None:
    gate = UserQuotaGate(NullCache(), limit=1, window_s=60)
    for _ in range(3):
        decision = asyncio.run(gate.check_user_rate_limit("u1"))
        assert decision.allowed is True
        assert decision.remaining == 1

    broken = UserQuotaGate(BrokenCache(), limit=1, window_s=60)
    assert asyncio.run(broken.check_user_rate_limit("u1")).allowed
    assert asyncio.run(broken.get_user_quota("u1")).used == 0


def test_gates_use_a_null_cache_when_redis_is_not_configured(monkeypatch) -> None:
    monkeypatch.setattr(settings, "REDIS_URL", None)
    reset_cache()
    try:
        cache = get_cache()
        gate = PolitenessGate(window_ms=1000)

        assert isinstance(cache, NullCache)
        assert get_cache() is cache
        assert gate.cache is cache
        assert asyncio.run(gate.check_politeness("example.com")).allowed
        assert asyncio.run(gate.check_politeness("example.com")).allowed
    finally:
        reset_cache()
