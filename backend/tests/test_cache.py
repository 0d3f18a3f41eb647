from __future__ import annotations

import asyncio

import pytest

from searchhub.services.cache import ResultCache


class _Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_entries_expire_after_ttl():
    clock = _Clock()
    cache = ResultCache(default_ttl=10, clock=clock)
    cache.set("k", [1, 2])

    clock.now += 9
    assert cache.get("k").value == [1, 2]
    clock.now += 1
    assert cache.get("k") is None
    assert cache.stats().size == 0


def test_non_positive_ttl_is_rejected():
    cache = ResultCache()
    with pytest.raises(ValueError):
        cache.set("k", [], ttl=0)
    with pytest.raises(ValueError):
        ResultCache(default_ttl=-1)


def test_capacity_evicts_oldest_entry():
    clock = _Clock()
    cache = ResultCache(max_size=2, clock=clock)
    cache.set("a", [1])
    clock.now += 1
    cache.set("b", [2])
    clock.now += 1
    # reading does not refresh an entry's age
    assert cache.get("a") is not None
    cache.set("c", [3])

    assert cache.get("a") is None
    assert cache.get("b") is not None
    assert cache.get("c") is not None


def test_stats_track_hit_rate():
    cache = ResultCache()
    cache.set("k", ["x", "y", "z"])
    cache.get("k")
    cache.get("k")
    cache.get("other")

    stats = cache.stats()
    assert (stats.hits, stats.misses) == (2, 1)
    assert stats.hit_rate == pytest.approx(2 / 3)
    assert stats.entries[0].result_count == 3

    cache.reset_metrics()
    assert cache.stats().hit_rate == 0.0


def test_invalidate_by_originating_request():
    cache = ResultCache()
    cache.set("a", [], request={"accounts": ["acc1"]})
    cache.set("b", [], request={"accounts": ["acc2"]})

    dropped = cache.invalidate(lambda request: "acc1" in request["accounts"])

    assert dropped == 1
    assert cache.get("a") is None
    assert cache.get("b") is not None
    assert cache.clear() == 1


def test_concurrent_fetches_are_coalesced():
    cache = ResultCache()
    calls = 0

    async def fetch():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        return ["result"]

    async def run():
        return await asyncio.gather(*(cache.get_or_fetch("k", fetch) for _ in range(5)))

    outcomes = asyncio.run(run())

    assert calls == 1
    assert sorted(from_cache for _value, from_cache in outcomes) == [False, True, True, True, True]
    assert all(value == ["result"] for value, _from_cache in outcomes)
    stats = cache.stats()
    assert (stats.hits, stats.misses) == (4, 1)


def test_failed_fetch_is_shared_but_not_cached():
    cache = ResultCache()
    calls = 0

    async def fetch():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        raise RuntimeError("upstream down")

    async def run():
        return await asyncio.gather(cache.get_or_fetch("k", fetch), cache.get_or_fetch("k", fetch), return_exceptions=True)

    outcomes = asyncio.run(run())

    assert calls == 1
    assert all(isinstance(outcome, RuntimeError) for outcome in outcomes)
    assert cache.stats().size == 0


def test_should_store_can_veto_caching():
    cache = ResultCache()

    async def fetch():
        return []

    value, from_cache = asyncio.run(cache.get_or_fetch("k", fetch, should_store=lambda v: bool(v)))

    assert (value, from_cache) == ([], False)
    assert cache.stats().size == 0
