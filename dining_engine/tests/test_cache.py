from __future__ import annotations

import asyncio
import json

from dining_engine.caching.config import CacheConfig
from dining_engine.caching.manager import CacheManager, search_key
from dining_engine.errors import ExternalServiceError
from dining_engine.recommendations.models import GeoPoint


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _manager(tmp_path=None, clock=None, **overrides) -> CacheManager:
    config = CacheConfig(persistent_dir=tmp_path, **overrides)
    return CacheManager(config, clock=clock or FakeClock())


def _counting_fetcher(payload, delay: float = 0.0):
    calls = {"n": 0}

    async def fetch():
        calls["n"] += 1
        if delay:
            await asyncio.sleep(delay)
        return payload

    return fetch, calls


# ── Keys ─────────────────────────────────────────────────────────────────


def test_search_key_rounds_location_and_sorts_filters():
    a = search_key(GeoPoint(lat=12.97161, lng=77.59461), 1500, ["Vegan", "cheap"])
    b = search_key(GeoPoint(lat=12.97209, lng=77.59538), 1500, ["cheap", "vegan "])
    assert a == b
    assert a != search_key(GeoPoint(lat=12.97161, lng=77.59461), 2000, ["vegan", "cheap"])


def test_search_key_folds_negative_zero():
    assert search_key(GeoPoint(lat=-0.0001, lng=0.0), 500) == search_key(GeoPoint(lat=0.0, lng=0.0), 500)


# ── Single-flight ────────────────────────────────────────────────────────


def test_concurrent_requests_coalesce_into_one_fetch():
    cache = _manager()
    fetch, calls = _counting_fetcher({"ids": [1, 2]}, delay=0.05)

    async def run():
        return await asyncio.gather(*(cache.get_or_fetch("k", fetch) for _ in range(10)))

    results = asyncio.run(run())
    assert calls["n"] == 1
    assert all(r.value == {"ids": [1, 2]} for r in results)
    assert cache.stats()["coalesced"] == 9


def test_sequential_requests_within_ttl_fetch_once():
    cache = _manager()
    fetch, calls = _counting_fetcher(["a"])

    async def run():
        first = await cache.get_or_fetch("k", fetch)
        second = await cache.get_or_fetch("k", fetch)
        return first, second

    first, second = asyncio.run(run())
    assert calls["n"] == 1
    assert (first.hit, second.hit) == (False, True)
    assert second.layer == "memory"


def test_fetch_error_reaches_every_waiter_and_is_not_cached():
    cache = _manager()
    calls = {"n": 0}

    async def failing():
        calls["n"] += 1
        await asyncio.sleep(0.02)
        raise ExternalServiceError("catalog down", retryable=True)

    async def run():
        return await asyncio.gather(
            *(cache.get_or_fetch("k", failing) for _ in range(3)), return_exceptions=True,
        )

    results = asyncio.run(run())
    assert calls["n"] == 1
    assert all(isinstance(r, ExternalServiceError) for r in results)
    assert asyncio.run(cache.get("k")) is None


def test_cancelled_leader_gives_waiters_a_retryable_error():
    cache = _manager()
    fetch, _ = _counting_fetcher(["slow"], delay=0.3)

    async def run():
        leader = asyncio.ensure_future(cache.get_or_fetch("k", fetch))
        await asyncio.sleep(0.01)
        follower = asyncio.ensure_future(cache.get_or_fetch("k", fetch))
        await asyncio.sleep(0.01)
        leader.cancel()
        return await asyncio.gather(leader, follower, return_exceptions=True)

    leader_result, follower_result = asyncio.run(run())
    assert isinstance(leader_result, asyncio.CancelledError)
    assert isinstance(follower_result, ExternalServiceError)
    assert follower_result.retryable


# ── TTL / LRU ────────────────────────────────────────────────────────────


def test_memory_entries_expire():
    clock = FakeClock()
    cache = _manager(clock=clock, memory_ttl_seconds=10)
    fetch, calls = _counting_fetcher("v")

    asyncio.run(cache.get_or_fetch("k", fetch))
    clock.advance(9.9)
    assert cache.memory.get("k") is not None
    clock.advance(0.2)
    assert cache.memory.get("k") is None
    asyncio.run(cache.get_or_fetch("k", fetch))
    assert calls["n"] == 2


def test_memory_lru_eviction():
    cache = _manager(memory_capacity=2)
    cache.memory.set("a", 1)
    cache.memory.set("b", 2)
    cache.memory.get("a")
    cache.memory.set("c", 3)
    assert cache.memory.get("b") is None
    assert cache.memory.get("a") is not None
    assert cache.memory.evictions == 1


def test_persistent_hit_is_promoted_to_memory(tmp_path):
    clock = FakeClock()
    cache = _manager(tmp_path, clock=clock, memory_ttl_seconds=5)
    asyncio.run(cache.set("k", {"x": 1}))
    clock.advance(6)  # memory expired, persistent still valid
    entry = asyncio.run(cache.get("k"))
    assert entry.layer == "persistent"
    assert cache.memory.get("k").payload == {"x": 1}


def test_persistent_entries_expire(tmp_path):
    clock = FakeClock()
    cache = _manager(tmp_path, clock=clock, memory_ttl_seconds=5, persistent_ttl_seconds=60)
    asyncio.run(cache.set("k", "v"))
    clock.advance(61)
    assert asyncio.run(cache.get("k")) is None
    assert len(cache.persistent) == 0


def test_corrupt_persistent_entry_is_evicted_and_refetched(tmp_path):
    cache = _manager(tmp_path)
    fetch, calls = _counting_fetcher({"fresh": True})
    asyncio.run(cache.set("k", {"old": True}))
    cache.memory.clear()
    for path in tmp_path.glob("*.json"):
        path.write_text("{not json", encoding="utf-8")

    result = asyncio.run(cache.get_or_fetch("k", fetch))
    assert result.value == {"fresh": True}
    assert calls["n"] == 1
    assert cache.stats()["corrupt"] == 1
    stored = [json.loads(p.read_text()) for p in tmp_path.glob("*.json")]
    assert stored[0]["payload"] == {"fresh": True}


def test_undecodable_payload_is_refetched_once():
    cache = _manager()
    cache.memory.set("k", {"wrong": "shape"})
    fetch, calls = _counting_fetcher({"value": 3})

    def decode(payload):
        return payload["value"]

    result = asyncio.run(cache.get_or_fetch("k", fetch, decode=decode))
    assert result.value == 3
    assert calls["n"] == 1


# ── Predictive layer ─────────────────────────────────────────────────────


def test_warm_refreshes_popular_keys_into_predictive_layer():
    cache = _manager(predictive_top_n=1)
    hot, hot_calls = _counting_fetcher(["hot"])
    cold, cold_calls = _counting_fetcher(["cold"])
    for _ in range(3):
        cache.track("hot", hot, user_id="u1")
    cache.track("cold", cold, user_id="u2")

    assert asyncio.run(cache.warm()) == 1
    assert (hot_calls["n"], cold_calls["n"]) == (1, 0)
    entry = asyncio.run(cache.get("hot"))
    assert entry.layer == "predictive"
    assert entry.payload == ["hot"]


def test_profile_write_invalidates_user_predictive_entries():
    cache = _manager()
    fetch, _ = _counting_fetcher(["x"])
    cache.track("mine", fetch, user_id="u1")
    cache.track("theirs", fetch, user_id="u2")
    asyncio.run(cache.warm())

    assert cache.invalidate_user("u1") == 1
    assert cache.predictive.get("mine") is None
    assert cache.predictive.get("theirs") is not None


def test_idle_detection():
    clock = FakeClock()
    cache = _manager(clock=clock, idle_after_seconds=30)
    asyncio.run(cache.get("anything"))
    assert not cache.is_idle()
    clock.advance(31)
    assert cache.is_idle()


def test_stats_on_empty_cache():
    stats = _manager().stats()
    assert (stats["hits"], stats["misses"], stats["hit_rate"]) == (0, 0, 0.0)


def test_popularity_tracking_stays_bounded():
    cache = _manager(predictive_top_n=2, tracked_keys_limit=5)
    hot, hot_calls = _counting_fetcher(["hot"])
    for _ in range(3):
        cache.track("hot", hot)
    for i in range(100):
        fetch, _ = _counting_fetcher([i])
        cache.track(f"cold-{i}", fetch)

    assert cache.stats()["tracked_keys"] <= 10
    assert asyncio.run(cache.warm(top_n=1)) == 1
    assert hot_calls["n"] == 1
