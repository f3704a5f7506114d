"""
In-process caching for wiki reads.

``TTLCache`` is a bounded LRU map whose entries expire ``ttl`` seconds
after insertion. Expiry is checked lazily on access; a periodic sweep
(``start``) purges expired entries that nobody asks for. Entity caches
assign TTLs per kind of value: listings and the hierarchy go stale fastest,
resolved file URLs last longest.

``PrefetchQueue`` warms caches in the background with a cap on concurrent
fetches; its failures are only logged. ``MemoryManager`` estimates the
footprint of a set of caches and clears the large ones wholesale when the
estimate crosses a threshold.

Clocks are injectable so tests can move time without sleeping.
"""

import asyncio
import copy
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class CacheEntry:
    """Cached payload with insertion and access bookkeeping."""
    key: str
    payload: Any
    inserted_at: float
    ttl: float
    access_count: int = 0
    last_accessed_at: float = 0.0

    def expired(self, now: float) -> bool:
        return now - self.inserted_at >= self.ttl


class _PeriodicTask:
    """Runs an async callback every ``interval`` seconds until closed."""

    def __init__(self, name: str, interval: float, callback: Callable[[], Awaitable[Any]]):
        self.name = name
        self.interval = interval
        self._callback = callback
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running or self.interval <= 0:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self._callback()
            except Exception as e:
                logger.warning("Periodic task %s failed: %s", self.name, e)

    async def close(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


class TTLCache:
    """
    Bounded LRU cache with per-entry time-to-live.

    At capacity, expired entries are dropped before any live one is evicted.
    With ``copy_values`` set, payloads are deep-copied in and out so callers
    cannot mutate what is cached.
    """

    copy_values = False

    def __init__(
        self,
        name: str = "cache",
        *,
        max_size: int = 100,
        default_ttl: float = 300.0,
        sweep_interval: float = 60.0,
        clock: Clock = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError(f"max_size must be at least 1, got {max_size}")
        self.name = name
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._sweeper = _PeriodicTask(f"{name}-sweep", sweep_interval, self._sweep_async)

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str, default: Any = None) -> Any:
        """Payload for ``key``, or ``default`` if missing or expired."""
        entry = self._entries.get(key)
        now = self._clock()
        if entry is None or entry.expired(now):
            if entry is not None:
                del self._entries[key]
            self._misses += 1
            return default
        entry.access_count += 1
        entry.last_accessed_at = now
        self._entries.move_to_end(key)
        self._hits += 1
        return copy.deepcopy(entry.payload) if self.copy_values else entry.payload

    def has(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.expired(self._clock())

    def set(self, key: str, payload: Any, ttl: Optional[float] = None) -> None:
        now = self._clock()
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_size and not self.sweep():
            evicted, _ = self._entries.popitem(last=False)
            self._evictions += 1
            logger.debug("%s evicted %s", self.name, evicted)
        self._entries[key] = CacheEntry(
            key=key,
            payload=copy.deepcopy(payload) if self.copy_values else payload,
            inserted_at=now,
            ttl=self.default_ttl if ttl is None else ttl,
            last_accessed_at=now,
        )

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        keys = [k for k in self._entries if k.startswith(prefix)]
        for k in keys:
            del self._entries[k]
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()

    def sweep(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.expired(now)]
        for k in expired:
            del self._entries[k]
        if expired:
            logger.debug("%s swept %d expired entries", self.name, len(expired))
        return len(expired)

    async def _sweep_async(self) -> None:
        self.sweep()

    def hit_ratio(self) -> float:
        total = self._hits + self._misses
        return self._hits / total if total else 0.0

    def stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "hit_ratio": self.hit_ratio(),
        }

    def start(self) -> None:
        """Begin periodic sweeping. Needs a running event loop."""
        self._sweeper.start()

    async def close(self) -> None:
        await self._sweeper.close()


class PageCache(TTLCache):
    """Documents, page listings and the hierarchy."""

    copy_values = True

    def __init__(
        self,
        *,
        max_size: int = 100,
        page_ttl: float = 300.0,
        list_ttl: float = 60.0,
        hierarchy_ttl: float = 120.0,
        **kwargs,
    ):
        super().__init__("pages", max_size=max_size, default_ttl=page_ttl, **kwargs)
        self.list_ttl = list_ttl
        self.hierarchy_ttl = hierarchy_ttl

    def get_page(self, path: str):
        return self.get(f"page:{path}")

    def set_page(self, path: str, document) -> None:
        self.set(f"page:{path}", document)

    def get_list(self, prefix: str = ""):
        return self.get(f"list:{prefix}")

    def set_list(self, prefix: str, pages) -> None:
        self.set(f"list:{prefix}", pages, ttl=self.list_ttl)

    def get_hierarchy(self):
        return self.get("hierarchy")

    def set_hierarchy(self, tree) -> None:
        self.set("hierarchy", tree, ttl=self.hierarchy_ttl)

    def invalidate_page(self, path: str) -> None:
        """Forget a page along with every listing that could include it."""
        self.delete(f"page:{path}")
        self.invalidate_listings()

    def invalidate_listings(self) -> None:
        self.delete_prefix("list:")
        self.delete("hierarchy")


class FileCache(TTLCache):
    """Attachment listing and resolved URLs."""

    copy_values = True

    def __init__(self, *, max_size: int = 200, file_ttl: float = 600.0, url_ttl: float = 3600.0, **kwargs):
        super().__init__("files", max_size=max_size, default_ttl=file_ttl, **kwargs)
        self.url_ttl = url_ttl

    def get_files(self):
        return self.get("files")

    def set_files(self, files) -> None:
        self.set("files", files)

    def get_url(self, file_id: str) -> Optional[str]:
        return self.get(f"url:{file_id}")

    def set_url(self, file_id: str, url: str) -> None:
        self.set(f"url:{file_id}", url, ttl=self.url_ttl)

    def invalidate_file(self, file_id: str) -> None:
        self.delete(f"url:{file_id}")
        self.delete("files")


class ConfigCache(TTLCache):
    """Site configuration."""

    copy_values = True

    def __init__(self, *, max_size: int = 10, ttl: float = 300.0, **kwargs):
        super().__init__("config", max_size=max_size, default_ttl=ttl, **kwargs)


class PrefetchQueue:
    """
    Background warm-up with bounded concurrency.

    Prefetching is advisory: a failing loader is logged and forgotten, and
    a key already in flight is not scheduled twice.
    """

    def __init__(self, concurrency: int = 3):
        self.concurrency = max(1, concurrency)
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._tasks: dict[str, asyncio.Task] = {}
        self._active = 0
        self.completed = 0
        self.failed = 0

    def prefetch(self, key: str, loader: Callable[[], Awaitable[Any]]) -> bool:
        """Schedule ``loader``. Returns False if ``key`` is already queued."""
        task = self._tasks.get(key)
        if task is not None and not task.done():
            return False
        self._tasks[key] = asyncio.create_task(self._run(key, loader), name=f"prefetch:{key}")
        return True

    async def _run(self, key: str, loader: Callable[[], Awaitable[Any]]) -> None:
        async with self._semaphore:
            self._active += 1
            try:
                await loader()
                self.completed += 1
            except Exception as e:
                self.failed += 1
                logger.warning("Prefetch of %s failed: %s", key, e)
            finally:
                self._active -= 1
                self._tasks.pop(key, None)

    async def drain(self) -> None:
        """Wait for everything currently queued."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    def status(self) -> dict[str, int]:
        return {
            "queued": len(self._tasks),
            "active": self._active,
            "completed": self.completed,
            "failed": self.failed,
            "concurrency": self.concurrency,
        }

    async def close(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
        self._tasks.clear()


class MemoryManager:
    """
    Coarse memory pressure relief for a group of caches.

    Usage is estimated as entries times a fixed per-entry size. Under
    pressure every cache holding more than ``clear_above`` entries is
    cleared outright.
    """

    def __init__(
        self,
        caches: Iterable[TTLCache],
        *,
        threshold: int = 50 * 1024 * 1024,
        entry_size: int = 1024,
        clear_above: int = 20,
        check_interval: float = 300.0,
    ):
        self.caches = list(caches)
        self.threshold = threshold
        self.entry_size = entry_size
        self.clear_above = clear_above
        self._checker = _PeriodicTask("memory-check", check_interval, self._check_async)

    def estimated_usage(self) -> int:
        return sum(len(c) for c in self.caches) * self.entry_size

    def under_pressure(self) -> bool:
        return self.estimated_usage() > self.threshold

    def check(self) -> bool:
        """Clear large caches if under pressure. Returns True if anything was cleared."""
        if not self.under_pressure():
            return False
        cleared = False
        for cache in self.caches:
            if len(cache) > self.clear_above:
                logger.info("Memory pressure: clearing %s (%d entries)", cache.name, len(cache))
                cache.clear()
                cleared = True
        return cleared

    async def _check_async(self) -> None:
        self.check()

    def start(self) -> None:
        self._checker.start()

    async def close(self) -> None:
        await self._checker.close()
