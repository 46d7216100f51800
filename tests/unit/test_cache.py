"""Tests for MultiLevelCache: TTL, tiers, prefix invalidation and statistics."""
from unittest.mock import MagicMock

import pytest

from dashboard.cache.durable import SqlCacheTier
from dashboard.cache.entry import CacheEntry, CacheTier
from dashboard.cache.multilevel import MultiLevelCache, cache_key


@pytest.fixture(name="durable")
def durable_fixture(engine):
    return SqlCacheTier(engine)


@pytest.fixture(name="cache")
def cache_fixture(durable, clock):
    return MultiLevelCache(durable=durable, default_ttl=3600, clock=clock)


class TestCacheKey:
    def test_joins_with_colon(self):
        assert cache_key("hours", "2025-01-01", 5) == "hours:2025-01-01:5"


class TestFastTier:
    def test_set_then_get(self, clock):
        cache = MultiLevelCache(clock=clock)
        cache.set("employees:1", {"name": "Jane"})
        assert cache.get("employees:1") == {"name": "Jane"}

    def test_missing_key_returns_default(self, clock):
        cache = MultiLevelCache(clock=clock)
        assert cache.get("nope") is None
        assert cache.get("nope", default=[]) == []

    def test_ttl_expiry_is_lazy_and_counts_a_miss(self, clock):
        cache = MultiLevelCache(clock=clock)
        cache.set("k", "v", ttl=10)

        clock.advance(9)
        assert cache.get("k") == "v"

        clock.advance(1)
        assert cache.get("k") is None
        stats = cache.get_stats()
        assert stats.hits == 1
        assert stats.misses == 1

    def test_has_does_not_touch_counters(self, clock):
        cache = MultiLevelCache(clock=clock)
        cache.set("k", 1, ttl=5)
        assert cache.has("k")
        clock.advance(5)
        assert not cache.has("k")
        stats = cache.get_stats()
        assert stats.hits == 0 and stats.misses == 0

    def test_get_ttl_and_metadata(self, clock):
        cache = MultiLevelCache(clock=clock)
        cache.set("k", 1, ttl=100, metadata={"source": "sync"})
        clock.advance(40)
        assert cache.get_ttl("k") == 60
        assert cache.get_metadata("k") == {"source": "sync"}
        assert cache.get_ttl("missing") is None
        assert cache.get_metadata("missing") is None

    def test_default_ttl_applies(self, clock):
        cache = MultiLevelCache(default_ttl=30, clock=clock)
        cache.set("k", 1)
        assert cache.get_ttl("k") == 30


class TestDurableTier:
    def test_durable_write_survives_fast_tier_loss(self, durable, clock):
        first = MultiLevelCache(durable=durable, clock=clock)
        first.set("hours:2025-01", [{"id": 1}], ttl=100, tier=CacheTier.DURABLE)

        # A new process: empty fast tier, same database.
        second = MultiLevelCache(durable=durable, clock=clock)
        assert second.get("hours:2025-01") == [{"id": 1}]

    def test_durable_hit_is_mirrored_with_remaining_ttl(self, durable, clock):
        MultiLevelCache(durable=durable, clock=clock).set("k", "v", ttl=100, tier=CacheTier.DURABLE)
        clock.advance(30)

        cache = MultiLevelCache(durable=durable, clock=clock)
        assert cache.get("k") == "v"
        assert cache.keys(CacheTier.FAST) == ["k"]
        assert cache.get_ttl("k") == 70

        stats = cache.get_stats()
        assert stats.by_tier["durable"]["hits"] == 1
        # The second read is served by the fast tier.
        cache.get("k")
        assert cache.get_stats().by_tier["fast"]["hits"] == 1

    def test_expired_durable_entry_is_deleted_and_counted(self, durable, clock):
        MultiLevelCache(durable=durable, clock=clock).set("k", "v", ttl=10, tier=CacheTier.DURABLE)
        clock.advance(10)

        cache = MultiLevelCache(durable=durable, clock=clock)
        assert cache.get("k") is None
        assert durable.read("k") is None

        stats = cache.get_stats()
        assert stats.deletes == 1
        assert stats.misses == 1

    def test_fast_only_set_does_not_reach_durable(self, cache, durable):
        cache.set("k", 1)
        assert durable.keys() == []

    def test_fast_set_replaces_older_durable_copy(self, cache, durable, clock):
        cache.set("projects:1", "old", ttl=100, tier=CacheTier.DURABLE)
        cache.set("projects:1", "new", ttl=10)
        assert durable.read("projects:1") is None

        clock.advance(20)
        assert cache.get("projects:1") is None

    def test_durable_failure_is_swallowed(self, clock):
        durable = MagicMock()
        durable.write.side_effect = RuntimeError("disk full")
        durable.read.side_effect = RuntimeError("disk gone")
        durable.keys.side_effect = RuntimeError("disk gone")
        cache = MultiLevelCache(durable=durable, clock=clock)

        cache.set("k", "v", tier=CacheTier.DURABLE)
        assert cache.get("k") == "v"
        assert cache.get("other") is None
        assert cache.keys() == ["k"]


class TestInvalidation:
    def test_delete_by_prefix_removes_only_matching(self, cache):
        cache.set("hours:2025-01", 1)
        cache.set("hours:2025-02", 2, tier=CacheTier.DURABLE)
        cache.set("employees:1", 3)

        assert cache.delete_by_prefix("hours:") == 2

        assert cache.get("hours:2025-01") is None
        assert cache.get("hours:2025-02") is None
        assert cache.get("employees:1") == 3

    def test_key_in_both_tiers_counts_once(self, cache, durable):
        cache.set("hours:1", "x", tier=CacheTier.DURABLE)
        assert "hours:1" in durable.keys()
        assert cache.delete_by_prefix("hours:") == 1
        assert durable.keys() == []

    def test_delete_and_delete_many(self, cache):
        cache.set("a:1", 1)
        cache.set("a:2", 2)
        cache.set("a:3", 3)
        assert cache.delete("a:1") is True
        assert cache.delete("a:1") is False
        assert cache.delete_many(["a:2", "a:3", "a:4"]) == 2

    def test_clear_all_tiers(self, cache, durable):
        cache.set("a:1", 1)
        cache.set("b:1", 2, tier=CacheTier.DURABLE)
        assert cache.clear() == 2
        assert cache.keys() == []
        assert durable.count() == 0
        assert cache.get_stats().flushes == 1

    def test_clear_fast_tier_only(self, cache, durable):
        cache.set("b:1", 2, tier=CacheTier.DURABLE)
        cache.clear(CacheTier.FAST)
        assert cache.keys(CacheTier.FAST) == []
        assert durable.keys() == ["b:1"]


class TestUpdates:
    def test_update_ttl_rewrites_both_tiers(self, cache, durable, clock):
        cache.set("hours:1", [1], ttl=10, tier=CacheTier.DURABLE)
        clock.advance(5)

        assert cache.update_ttl("hours:1", 100) is True

        assert cache.get_ttl("hours:1") == 100
        assert durable.read("hours:1").expires_at == clock() + 100
        clock.advance(50)
        assert cache.get("hours:1") == [1]

    def test_update_ttl_of_durable_only_entry(self, durable, clock):
        MultiLevelCache(durable=durable, clock=clock).set("k:1", "v", ttl=10, tier=CacheTier.DURABLE)
        cache = MultiLevelCache(durable=durable, clock=clock)

        assert cache.update_ttl("k:1", 60) is True

        assert cache.keys(CacheTier.FAST) == ["k:1"]
        assert durable.read("k:1").expires_at == clock() + 60

    def test_update_ttl_missing_or_expired(self, cache, clock):
        assert cache.update_ttl("nope", 10) is False
        cache.set("k:1", 1, ttl=5)
        clock.advance(5)
        assert cache.update_ttl("k:1", 10) is False

    def test_update_metadata_merges_and_keeps_expiry(self, cache, durable, clock):
        cache.set("k:1", 1, ttl=100, tier=CacheTier.DURABLE, metadata={"source": "sync"})
        clock.advance(40)

        assert cache.update_metadata("k:1", {"rows": 3}) is True

        assert cache.get_metadata("k:1") == {"source": "sync", "rows": 3}
        assert durable.read("k:1").metadata == {"source": "sync", "rows": 3}
        assert cache.get_ttl("k:1") == 60

    def test_update_metadata_missing(self, cache):
        assert cache.update_metadata("nope", {"a": 1}) is False


class TestCapacity:
    def test_expired_entries_are_evicted_first(self, clock):
        cache = MultiLevelCache(max_items=2, clock=clock)
        cache.set("a:1", 1, ttl=5)
        cache.set("a:2", 2, ttl=100)
        clock.advance(10)

        cache.set("a:3", 3)

        assert sorted(cache.keys()) == ["a:2", "a:3"]
        assert cache.get_stats().evictions == 1

    def test_oldest_live_entry_is_evicted_when_full(self, clock):
        cache = MultiLevelCache(max_items=2, clock=clock)
        cache.set("a:1", 1)
        clock.advance(1)
        cache.set("a:2", 2)
        clock.advance(1)

        cache.set("a:3", 3)

        assert cache.get("a:1") is None
        assert cache.get("a:2") == 2
        assert cache.get("a:3") == 3

    def test_overwriting_a_key_does_not_evict(self, clock):
        cache = MultiLevelCache(max_items=2, clock=clock)
        cache.set("a:1", 1)
        cache.set("a:2", 2)
        cache.set("a:2", 22)
        assert sorted(cache.keys()) == ["a:1", "a:2"]
        assert cache.get_stats().evictions == 0

    def test_evicted_durable_entry_is_still_readable(self, durable, clock):
        cache = MultiLevelCache(durable=durable, max_items=1, clock=clock)
        cache.set("a:1", 1, tier=CacheTier.DURABLE)
        clock.advance(1)
        cache.set("a:2", 2)

        assert cache.keys(CacheTier.FAST) == ["a:2"]
        assert cache.get("a:1") == 1


class TestGetOrSet:
    async def test_calls_factory_once_on_miss(self, cache):
        calls = []

        def factory():
            calls.append(1)
            return {"total": 40}

        assert await cache.get_or_set("dashboard:summary", factory, ttl=300) == {"total": 40}
        assert await cache.get_or_set("dashboard:summary", factory, ttl=300) == {"total": 40}
        assert len(calls) == 1

    async def test_async_factory(self, cache):
        async def factory():
            return [1, 2, 3]

        assert await cache.get_or_set("projects:list", factory) == [1, 2, 3]
        assert cache.get("projects:list") == [1, 2, 3]

    async def test_factory_error_propagates_and_caches_nothing(self, cache):
        def factory():
            raise RuntimeError("db down")

        with pytest.raises(RuntimeError):
            await cache.get_or_set("k:1", factory)
        assert not cache.has("k:1")


class TestStats:
    def test_per_prefix_counters_and_hit_ratio(self, cache):
        cache.set("hours:1", 1)
        cache.get("hours:1")
        cache.get("hours:2")
        cache.get("employees:1")

        stats = cache.get_stats()
        assert stats.sets == 1
        assert stats.hits == 1
        assert stats.misses == 2
        assert stats.hit_ratio == pytest.approx(1 / 3)
        assert stats.by_prefix["hours"]["hits"] == 1
        assert stats.by_prefix["hours"]["misses"] == 1
        assert stats.by_prefix["hours"]["size"] == 1
        assert stats.by_prefix["employees"]["misses"] == 1

    def test_size_and_memory_are_computed_from_live_entries(self, cache, clock):
        cache.set("a:1", "x" * 100, ttl=10)
        cache.set("a:2", "y" * 50, ttl=100)
        assert cache.get_stats().size == 2

        clock.advance(20)
        stats = cache.get_stats()
        assert stats.size == 1
        assert stats.memory_usage == len("a:2") + 50

    def test_hit_ratio_without_traffic_is_zero(self, cache):
        assert cache.get_stats().hit_ratio == 0.0

    def test_to_dict_has_derived_fields(self, cache):
        data = cache.get_stats().to_dict()
        assert {"hit_ratio", "size", "memory_usage", "by_tier", "by_prefix"} <= set(data)


class TestCacheEntry:
    def test_expiry_boundary(self):
        entry = CacheEntry(value=1, created_at=0, expires_at=10)
        assert not entry.is_expired(9.99)
        assert entry.is_expired(10)
        assert entry.remaining(4) == 6
        assert entry.remaining(20) == 0.0
