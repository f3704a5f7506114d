"""Tests for the TTL/LRU cache, prefetch queue and memory manager."""

import asyncio

import pytest

from blobwiki.cache import ConfigCache, FileCache, MemoryManager, PageCache, PrefetchQueue, TTLCache


class TestTTLCache:

    def test_get_set(self, clock):
        cache = TTLCache(clock=clock)
        cache.set("k", 1)
        assert cache.get("k") == 1
        assert cache.has("k")

    def test_expires_without_delete(self, clock):
        cache = TTLCache(default_ttl=10, clock=clock)
        cache.set("k", "v")
        clock.advance(9)
        assert cache.get("k") == "v"
        clock.advance(1)
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_per_entry_ttl(self, clock):
        cache = TTLCache(default_ttl=100, clock=clock)
        cache.set("short", 1, ttl=1)
        cache.set("long", 2)
        clock.advance(5)
        assert cache.get("short") is None
        assert cache.get("long") == 2

    def test_capacity_plus_one_evicts_exactly_one_lru(self, clock):
        cache = TTLCache(max_size=3, clock=clock)
        for k in ("a", "b", "c"):
            cache.set(k, k)
        cache.get("a")
        cache.set("d", "d")
        assert len(cache) == 3
        assert not cache.has("b")
        assert all(cache.has(k) for k in ("a", "c", "d"))
        assert cache.stats()["evictions"] == 1

    def test_full_cache_drops_expired_before_evicting_live(self, clock):
        cache = TTLCache(max_size=3, default_ttl=100, clock=clock)
        cache.set("stale", 0, ttl=1)
        cache.set("a", 1)
        cache.set("b", 2)
        clock.advance(5)
        cache.set("c", 3)
        assert [cache.get(k) for k in ("a", "b", "c")] == [1, 2, 3]
        assert cache.stats()["evictions"] == 0

    def test_overwrite_does_not_evict(self, clock):
        cache = TTLCache(max_size=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 3)
        assert len(cache) == 2
        assert cache.get("a") == 3
        assert cache.has("b")

    def test_sweep(self, clock):
        cache = TTLCache(default_ttl=10, clock=clock)
        cache.set("old", 1)
        clock.advance(5)
        cache.set("new", 2)
        clock.advance(6)
        assert cache.sweep() == 1
        assert cache.has("new")

    def test_stats_and_hit_ratio(self, clock):
        cache = TTLCache(clock=clock)
        assert cache.hit_ratio() == 0.0
        cache.set("k", 1)
        cache.get("k")
        cache.get("missing")
        stats = cache.stats()
        assert (stats["hits"], stats["misses"]) == (1, 1)
        assert cache.hit_ratio() == 0.5

    def test_delete_and_clear(self, clock):
        cache = TTLCache(clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.delete("a")
        assert not cache.delete("a")
        cache.clear()
        assert len(cache) == 0

    def test_rejects_zero_size(self):
        with pytest.raises(ValueError):
            TTLCache(max_size=0)

    @pytest.mark.asyncio
    async def test_periodic_sweep_task(self, clock):
        cache = TTLCache(default_ttl=1, sweep_interval=0.01, clock=clock)
        cache.set("k", 1)
        clock.advance(2)
        cache.start()
        await asyncio.sleep(0.05)
        assert len(cache) == 0
        await cache.close()


class TestEntityCaches:

    def test_page_cache_ttls(self, clock):
        cache = PageCache(page_ttl=300, list_ttl=60, hierarchy_ttl=120, clock=clock)
        cache.set_page("a.md", "doc")
        cache.set_list("", ["a.md"])
        cache.set_hierarchy(["tree"])
        clock.advance(61)
        assert cache.get_list("") is None
        assert cache.get_hierarchy() == ["tree"]
        assert cache.get_page("a.md") == "doc"

    def test_invalidate_page_drops_listings(self, clock):
        cache = PageCache(clock=clock)
        cache.set_page("a.md", "doc")
        cache.set_page("b.md", "doc")
        cache.set_list("", [])
        cache.set_list("x/", [])
        cache.set_hierarchy([])
        cache.invalidate_page("a.md")
        assert cache.get_page("a.md") is None
        assert cache.get_page("b.md") == "doc"
        assert cache.get_list("") is None
        assert cache.get_list("x/") is None
        assert cache.get_hierarchy() is None

    def test_file_cache_urls_live_longer(self, clock):
        cache = FileCache(file_ttl=600, url_ttl=3600, clock=clock)
        cache.set_files(["f"])
        cache.set_url("1-x", "https://x")
        clock.advance(601)
        assert cache.get_files() is None
        assert cache.get_url("1-x") == "https://x"

    def test_entity_caches_hand_out_copies(self, clock):
        cache = PageCache(clock=clock)
        pages = ["a.md"]
        cache.set_list("", pages)
        pages.append("b.md")
        cache.get_list("").append("c.md")
        assert cache.get_list("") == ["a.md"]

    def test_plain_cache_stores_references(self, clock):
        cache = TTLCache(clock=clock)
        value = []
        cache.set("k", value)
        assert cache.get("k") is value

    def test_config_cache(self, clock):
        cache = ConfigCache(ttl=300, clock=clock)
        cache.set("site", {"title": "t"})
        clock.advance(300)
        assert cache.get("site") is None


class TestPrefetchQueue:

    @pytest.mark.asyncio
    async def test_caps_concurrency(self):
        queue = PrefetchQueue(concurrency=2)
        running = 0
        peak = 0

        async def loader():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        for i in range(6):
            assert queue.prefetch(f"k{i}", loader)
        await queue.drain()
        assert peak == 2
        assert queue.status()["completed"] == 6
        assert queue.status()["queued"] == 0

    @pytest.mark.asyncio
    async def test_duplicate_key_not_queued_twice(self):
        queue = PrefetchQueue()
        gate = asyncio.Event()

        async def loader():
            await gate.wait()

        assert queue.prefetch("k", loader)
        assert not queue.prefetch("k", loader)
        gate.set()
        await queue.drain()

    @pytest.mark.asyncio
    async def test_failures_swallowed(self, caplog):
        queue = PrefetchQueue()

        async def broken():
            raise RuntimeError("nope")

        queue.prefetch("k", broken)
        await queue.drain()
        assert queue.status()["failed"] == 1
        assert "Prefetch of k failed" in caplog.text


class TestMemoryManager:

    def test_estimate(self, clock):
        cache = TTLCache(clock=clock)
        for i in range(5):
            cache.set(str(i), i)
        manager = MemoryManager([cache], entry_size=100, threshold=1000)
        assert manager.estimated_usage() == 500
        assert not manager.under_pressure()
        assert not manager.check()

    def test_clears_large_caches_under_pressure(self, clock):
        big = TTLCache("big", max_size=100, clock=clock)
        small = TTLCache("small", clock=clock)
        for i in range(30):
            big.set(str(i), i)
        for i in range(5):
            small.set(str(i), i)
        manager = MemoryManager([big, small], entry_size=1024, threshold=10 * 1024)
        assert manager.under_pressure()
        assert manager.check()
        assert len(big) == 0
        assert len(small) == 5

    @pytest.mark.asyncio
    async def test_periodic_check(self, clock):
        big = TTLCache("big", max_size=100, clock=clock)
        for i in range(30):
            big.set(str(i), i)
        manager = MemoryManager([big], entry_size=1024, threshold=1, check_interval=0.01)
        manager.start()
        await asyncio.sleep(0.05)
        await manager.close()
        assert len(big) == 0
