"""
Unit tests for the Result Cache, cache keys and single-flight registry.
"""
import asyncio
import fnmatch
from datetime import date, datetime, timezone

import pytest
import redis

from hvac_reports.domain.models import ExecutionMetadata, ExecutionParams, ExecutionResult, ReportDefinition
from hvac_reports.reports.cache import InFlightRegistry, ResultCache, canonical_form, compute_cache_key

FIXED_TIME = datetime(2024, 7, 1, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeRedis:
    """Dict-backed stand-in for the handful of redis commands the cache uses."""

    def __init__(self, fail=False):
        self.store = {}
        self.ttls = {}
        self.fail = fail

    def _check(self):
        if self.fail:
            raise redis.ConnectionError("connection refused")

    def setex(self, key, ttl, value):
        self._check()
        self.store[key] = value
        self.ttls[key] = ttl

    def get(self, key):
        self._check()
        return self.store.get(key)

    def ttl(self, key):
        self._check()
        return self.ttls.get(key, -2)

    def delete(self, *keys):
        self._check()
        for key in keys:
            self.store.pop(key, None)
            self.ttls.pop(key, None)

    def scan_iter(self, match):
        self._check()
        return [k for k in list(self.store) if fnmatch.fnmatch(k, match)]


def result(rows=1, report_id="r1"):
    return ExecutionResult(
        data=[{"n": i} for i in range(rows)],
        metadata=ExecutionMetadata(report_id=report_id, total_rows=rows, generated_at=FIXED_TIME),
    )


def payload_size(res):
    return len(res.model_dump_json(by_alias=True).encode("utf-8"))


class TestResultCache:
    """Tests for TTL, LRU and size bounds."""

    def test_roundtrip(self):
        cache = ResultCache(max_entries=10, max_bytes=1_000_000, default_ttl=60)
        cache.put("r1:abc", result(3))
        cached = cache.get("r1:abc")
        assert cached == result(3)
        assert cache.stats()["hits"] == 1

    def test_miss(self):
        cache = ResultCache()
        assert cache.get("nope") is None
        assert cache.stats()["misses"] == 1

    def test_ttl_expiry(self):
        """Should stop returning an entry once now reaches its expiry."""
        clock = FakeClock()
        cache = ResultCache(default_ttl=10, clock=clock)
        cache.put("r1:a", result())
        clock.advance(9)
        assert cache.get("r1:a") is not None
        clock.advance(1)
        assert cache.get("r1:a") is None
        stats = cache.stats()
        assert stats["expirations"] == 1
        assert stats["entries"] == 0

    def test_per_put_ttl(self):
        clock = FakeClock()
        cache = ResultCache(default_ttl=300, clock=clock)
        cache.put("r1:a", result(), ttl=5)
        clock.advance(5)
        assert cache.get("r1:a") is None

    def test_lru_eviction_by_count(self):
        """Should evict the least recently used entry first."""
        cache = ResultCache(max_entries=2)
        cache.put("r:a", result())
        cache.put("r:b", result())
        cache.get("r:a")
        cache.put("r:c", result())
        assert cache.entry("r:a") is not None
        assert cache.entry("r:b") is None
        assert cache.entry("r:c") is not None
        assert cache.stats()["evictions"] == 1

    def test_eviction_by_bytes(self):
        """Should keep total payload bytes within the bound."""
        size = payload_size(result())
        cache = ResultCache(max_entries=100, max_bytes=size * 2)
        for key in ("r:a", "r:b", "r:c"):
            cache.put(key, result())
        stats = cache.stats()
        assert stats["entries"] == 2
        assert stats["total_bytes"] <= size * 2
        assert cache.entry("r:a") is None

    def test_oversized_result_not_cached(self):
        cache = ResultCache(max_bytes=10)
        assert cache.put("r:a", result()) is None
        assert cache.stats()["entries"] == 0

    def test_corrupt_entry_is_a_miss(self):
        """Should evict undecodable payloads and report a miss."""
        cache = ResultCache()
        cache.put("r:a", result())
        cache.entry("r:a").payload = b"{not json"
        assert cache.get("r:a") is None
        stats = cache.stats()
        assert stats["corruptions"] == 1
        assert stats["hits"] == 0
        assert stats["entries"] == 0

    def test_evict_report(self):
        cache = ResultCache()
        cache.put("r1:a", result())
        cache.put("r1:b", result())
        cache.put("r10:a", result())
        assert cache.evict_report("r1") == 2
        assert cache.entry("r10:a") is not None

    def test_purge_expired(self):
        clock = FakeClock()
        cache = ResultCache(default_ttl=10, clock=clock)
        cache.put("r:a", result())
        cache.put("r:b", result(), ttl=100)
        clock.advance(20)
        assert cache.purge_expired() == 1
        assert cache.entry("r:b") is not None

    def test_access_counts(self):
        cache = ResultCache()
        cache.put("r:a", result())
        cache.get("r:a")
        cache.get("r:a")
        assert cache.entry("r:a").access_count == 2
        assert cache.stats()["total_accesses"] == 2


class TestRedisWriteThrough:
    """Tests for the optional Redis layer."""

    def setup_method(self):
        self.fake = FakeRedis()

    def test_put_persists_with_ttl(self):
        cache = ResultCache(default_ttl=30.5, redis_client=self.fake, redis_prefix="t:")
        cache.put("r1:a", result())
        assert "t:r1:a" in self.fake.store
        assert self.fake.ttls["t:r1:a"] == 31

    def test_memory_miss_falls_back_to_redis(self):
        """Should load entries written by another process."""
        ResultCache(redis_client=self.fake, redis_prefix="t:").put("r1:a", result(2))
        fresh = ResultCache(redis_client=self.fake, redis_prefix="t:")
        assert fresh.get("r1:a") == result(2)
        assert fresh.entry("r1:a") is not None

    def test_evict_report_clears_redis(self):
        cache = ResultCache(redis_client=self.fake, redis_prefix="t:")
        cache.put("r1:a", result())
        cache.put("r2:a", result())
        cache.evict_report("r1")
        assert list(self.fake.store) == ["t:r2:a"]

    def test_redis_read_happens_outside_the_lock(self):
        """Should not hold the cache lock across Redis round-trips."""
        ResultCache(redis_client=self.fake, redis_prefix="t:").put("r1:a", result())
        fresh = ResultCache(redis_client=self.fake, redis_prefix="t:")
        seen = []
        original_get = self.fake.get

        def watching_get(key):
            seen.append(fresh._lock.locked())
            return original_get(key)

        self.fake.get = watching_get
        assert fresh.get("r1:a") == result()
        assert seen == [False]
        assert fresh.remote is True

    def test_redis_failures_degrade_to_memory(self):
        cache = ResultCache(redis_client=FakeRedis(fail=True))
        cache.put("r1:a", result())
        assert cache.get("r1:a") == result()
        assert cache.get("r1:b") is None


class TestCacheKey:
    """Tests for canonical key computation."""

    def _definition(self, **overrides):
        data = {
            "id": "r1",
            "name": "jobs",
            "dataSources": [{"id": "jobs", "type": "operational", "table": "jobs",
                             "filters": [{"field": "status", "operator": "equals", "value": "completed"}]}],
            "calculatedFields": [{"name": "double", "formula": "totalCost*2"}],
            "visualization": {"type": "bar_chart", "groupBy": "district", "aggregation": "count"},
        }
        data.update(overrides)
        return ReportDefinition.model_validate(data)

    def test_type_tags_prevent_collisions(self):
        assert canonical_form("1") != canonical_form(1)
        assert canonical_form(1) != canonical_form(1.0)
        assert canonical_form(True) != canonical_form(1)

    def test_dict_order_does_not_matter(self):
        assert canonical_form({"a": 1, "b": 2}) == canonical_form({"b": 2, "a": 1})

    def test_same_request_same_key(self):
        """Should hash identical requests identically."""
        params = ExecutionParams(district="Wola")
        assert compute_cache_key("r1", self._definition(), params) == \
            compute_cache_key("r1", self._definition(), ExecutionParams(district="Wola"))

    def test_key_is_prefixed_with_report_id(self):
        key = compute_cache_key("r1", self._definition(), ExecutionParams())
        assert key.startswith("r1:")
        assert len(key.split(":", 1)[1]) == 64

    def test_display_settings_do_not_change_key(self):
        base = compute_cache_key("r1", self._definition(), ExecutionParams())
        restyled = self._definition(
            name="renamed",
            visualization={"type": "pie_chart", "groupBy": "district", "aggregation": "count", "colors": ["#f00"]},
        )
        assert compute_cache_key("r1", restyled, ExecutionParams()) == base

    def test_formula_whitespace_does_not_change_key(self):
        base = compute_cache_key("r1", self._definition(), ExecutionParams())
        spaced = self._definition(calculatedFields=[{"name": "double", "formula": " totalCost * 2 "}])
        assert compute_cache_key("r1", spaced, ExecutionParams()) == base

    def test_parameters_change_key(self):
        definition = self._definition()
        assert compute_cache_key("r1", definition, ExecutionParams(district="Wola")) != \
            compute_cache_key("r1", definition, ExecutionParams(district="Mokotów"))

    def test_month_only_matters_with_seasonal_adjustment(self):
        plain = self._definition()
        assert compute_cache_key("r1", plain, ExecutionParams(), date(2024, 1, 1)) == \
            compute_cache_key("r1", plain, ExecutionParams(), date(2024, 7, 1))
        seasonal = self._definition(warsawSettings={"seasonalAdjustment": True})
        assert compute_cache_key("r1", seasonal, ExecutionParams(), date(2024, 1, 1)) != \
            compute_cache_key("r1", seasonal, ExecutionParams(), date(2024, 7, 1))


class TestInFlightRegistry:
    """Tests for single-flight execution."""

    def test_concurrent_callers_share_one_computation(self):
        async def scenario():
            registry = InFlightRegistry()
            calls = []

            async def factory():
                calls.append(1)
                await asyncio.sleep(0.01)
                return "rows"

            results = await asyncio.gather(*(registry.run("k", factory) for _ in range(3)))
            return calls, results

        calls, results = asyncio.run(scenario())
        assert len(calls) == 1
        assert [r[0] for r in results] == ["rows"] * 3
        assert sorted(r[1] for r in results) == [False, True, True]

    def test_leader_failure_reaches_followers(self):
        async def scenario():
            registry = InFlightRegistry()

            async def factory():
                await asyncio.sleep(0.01)
                raise RuntimeError("backend exploded")

            return await asyncio.gather(
                registry.run("k", factory), registry.run("k", factory), return_exceptions=True,
            )

        outcomes = asyncio.run(scenario())
        assert all(isinstance(o, RuntimeError) for o in outcomes)

    def test_cancelled_leader_lets_follower_recompute(self):
        """Should let a waiting caller run the computation itself."""
        async def scenario():
            registry = InFlightRegistry()
            gate = asyncio.Event()
            calls = []

            async def factory():
                calls.append(1)
                await gate.wait()
                return len(calls)

            leader = asyncio.create_task(registry.run("k", factory))
            await asyncio.sleep(0)
            follower = asyncio.create_task(registry.run("k", factory))
            await asyncio.sleep(0)
            leader.cancel()
            with pytest.raises(asyncio.CancelledError):
                await leader
            await asyncio.sleep(0)
            gate.set()
            return await follower, calls

        outcome, calls = asyncio.run(scenario())
        assert outcome == (2, False)
        assert len(calls) == 2

    def test_key_released_after_completion(self):
        async def scenario():
            registry = InFlightRegistry()

            async def factory():
                return 1

            await registry.run("k", factory)
            return "k" in registry

        assert asyncio.run(scenario()) is False
