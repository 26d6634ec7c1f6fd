# tests/unit/test_dashboard_cache.py
"""Tests del cache del dashboard (estados, single-flight, refresh y pre-warm).

Se usa un reloj falso para mover la edad de las entradas y ``asyncio.run``
dentro de tests síncronos.
"""
import asyncio

import pytest

from leadboard.dashboard.cache import CacheKey, CacheState, DashboardCache
from leadboard.observability.bus_eventos import EventBus
from leadboard.observability.logging_context import get_correlation_id


class FakeClock:
    def __init__(self, t: float = 1000.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


KEY = CacheKey("dashboard", 24)


def _cache(clock=None, bus=None):
    return DashboardCache(300, 3600, clock=clock or FakeClock(), bus=bus or EventBus())


def test_six_minute_old_entry_is_stale():
    clock = FakeClock()
    cache = _cache(clock)
    cache.set(KEY, {"v": 1})

    clock.advance(6 * 60)

    stale = cache.get_stale(KEY)
    assert stale is not None
    assert stale.is_stale is True
    assert stale.data == {"v": 1}
    assert cache.get(KEY) is None
    assert cache.state(KEY) is CacheState.STALE


def test_state_transitions_and_eviction():
    clock = FakeClock()
    cache = _cache(clock)
    assert cache.state(KEY) is CacheState.EMPTY

    cache.set(KEY, "x")
    assert cache.state(KEY) is CacheState.FRESH
    assert cache.get(KEY) == "x"

    clock.advance(300)
    assert cache.state(KEY) is CacheState.FRESH

    clock.advance(1)
    assert cache.state(KEY) is CacheState.STALE

    clock.advance(3600)
    assert cache.get_stale(KEY) is None
    assert cache.state(KEY) is CacheState.EMPTY


def test_max_stale_must_not_be_smaller_than_ttl():
    with pytest.raises(ValueError):
        DashboardCache(600, 60)


def test_key_string_form():
    assert str(CacheKey("dashboard", 168)) == "dashboard_168"


def test_two_requests_within_ttl_compute_once():
    cache = _cache()
    calls = []

    async def factory():
        calls.append(1)
        return {"n": len(calls)}

    async def scenario():
        first = await cache.get_or_compute(KEY, factory)
        second = await cache.get_or_compute(KEY, factory)
        return first, second

    first, second = asyncio.run(scenario())
    assert first == second == {"n": 1}
    assert cache.computations(KEY) == 1


def test_concurrent_cold_requests_share_one_computation():
    cache = _cache()

    async def scenario():
        gate = asyncio.Event()

        async def factory():
            await gate.wait()
            return object()

        tasks = [asyncio.create_task(cache.get_or_compute(KEY, factory)) for _ in range(5)]
        await asyncio.sleep(0)
        assert cache.is_refreshing(KEY)
        gate.set()
        return await asyncio.gather(*tasks)

    results = asyncio.run(scenario())
    assert all(r is results[0] for r in results)
    assert cache.computations(KEY) == 1
    assert not cache.is_refreshing(KEY)


def test_stale_hit_serves_old_data_and_refreshes_in_background():
    clock = FakeClock()
    bus = EventBus()
    cache = _cache(clock, bus)
    values = iter(["v1", "v2"])
    seen_cids = []

    async def factory():
        seen_cids.append(get_correlation_id())
        return next(values)

    async def scenario():
        first = await cache.get_or_compute(KEY, factory)
        clock.advance(6 * 60)
        second = await cache.get_or_compute(KEY, factory)
        assert cache.is_refreshing(KEY)
        await cache.wait_background()
        third = await cache.get_or_compute(KEY, factory)
        return first, second, third

    assert asyncio.run(scenario()) == ("v1", "v1", "v2")
    assert cache.state(KEY) is CacheState.FRESH
    assert seen_cids[-1] == "refresh:dashboard:24"
    assert bus.counts()["cache.refresh_completed"] == 2


def test_stale_hit_does_not_start_second_refresh():
    clock = FakeClock()
    cache = _cache(clock)
    cache.set(KEY, "old")
    clock.advance(400)

    async def scenario():
        gate = asyncio.Event()

        async def factory():
            await gate.wait()
            return "new"

        await cache.get_or_compute(KEY, factory)
        await cache.get_or_compute(KEY, factory)
        assert cache.schedule_refresh(KEY, factory) is None
        gate.set()
        await cache.wait_background()

    asyncio.run(scenario())
    assert cache.computations(KEY) == 1
    assert cache.get(KEY) == "new"


def test_failed_refresh_keeps_stale_data_and_clears_marker():
    clock = FakeClock()
    bus = EventBus()
    cache = _cache(clock, bus)
    cache.set(KEY, "old")
    clock.advance(400)

    async def failing():
        raise RuntimeError("store down")

    async def scenario():
        served = await cache.get_or_compute(KEY, failing)
        await cache.wait_background()
        return served

    assert asyncio.run(scenario()) == "old"
    assert not cache.is_refreshing(KEY)
    assert cache.state(KEY) is CacheState.STALE
    assert bus.counts()["cache.refresh_failed"] == 1


def test_cold_failure_propagates_and_allows_retry():
    cache = _cache()

    async def failing():
        raise RuntimeError("boom")

    async def ok():
        return "ok"

    async def scenario():
        with pytest.raises(RuntimeError):
            await cache.get_or_compute(KEY, failing)
        assert not cache.is_refreshing(KEY)
        return await cache.get_or_compute(KEY, ok)

    assert asyncio.run(scenario()) == "ok"
    assert cache.computations(KEY) == 2


def test_prewarm_skips_cached_keys_and_survives_failures():
    cache = _cache()
    cached = CacheKey("dashboard", 0)
    broken = CacheKey("dashboard", 1)
    cold = CacheKey("dashboard", 6)
    cache.set(cached, "already")

    def factory_for(key):
        async def _build():
            if key == broken:
                raise RuntimeError("nope")
            return f"built:{key}"

        return _build

    done = asyncio.run(cache.prewarm([cached, broken, cold], factory_for))
    assert done == [cold]
    assert cache.get(cached) == "already"
    assert cache.get(cold) == "built:dashboard_6"
    assert cache.state(broken) is CacheState.EMPTY


def test_schedule_prewarm_runs_once():
    cache = _cache()
    keys = [CacheKey("dashboard", h) for h in (1, 6)]

    def factory_for(key):
        async def _build():
            return key.window

        return _build

    async def scenario():
        first = cache.schedule_prewarm(keys, factory_for)
        second = cache.schedule_prewarm(keys, factory_for)
        await cache.wait_background()
        return first, second

    first, second = asyncio.run(scenario())
    assert first is not None
    assert second is None
    assert cache.prewarm_started
    assert [cache.get(k) for k in keys] == [1, 6]


def test_aclose_cancels_pending_refresh():
    clock = FakeClock()
    cache = _cache(clock)
    cache.set(KEY, "old")
    clock.advance(400)

    async def scenario():
        async def never():
            await asyncio.Event().wait()

        cache.schedule_refresh(KEY, never)
        await asyncio.sleep(0)
        await cache.aclose()

    asyncio.run(scenario())
    assert not cache.is_refreshing(KEY)
    assert cache.stats()["background"] == []


def test_clear_resets_entries_and_prewarm_flag():
    cache = _cache()
    cache.set(KEY, "x")
    cache._prewarm_started = True
    cache.clear()
    assert cache.state(KEY) is CacheState.EMPTY
    assert not cache.prewarm_started
    assert cache.computations(KEY) == 0


def test_stats_reports_entries_and_hits():
    clock = FakeClock()
    cache = _cache(clock)

    async def factory():
        return 1

    async def scenario():
        await cache.get_or_compute(KEY, factory)
        await cache.get_or_compute(KEY, factory)

    asyncio.run(scenario())
    stats = cache.stats()
    assert stats["entries"]["dashboard_24"]["state"] == "FRESH"
    assert stats["hits"] == {"miss": 1, "fresh": 1}
