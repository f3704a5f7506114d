"""
Shared pytest fixtures for blobwiki tests.

Everything runs against the in-process object store with a retry policy
that never sleeps, so no test waits on wall-clock time.
"""

from typing import Optional

import pytest

from blobwiki.protocol import StoreError
from blobwiki.retry import RetryPolicy
from blobwiki.stores.memory import MemoryObjectStore
from blobwiki.wiki import Wiki


class SleepRecorder:
    """Awaitable stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakyStore:
    """
    Wraps a store and makes selected operations fail.

    ``fail(op, times, code)`` makes the next ``times`` calls of ``op`` raise
    ``StoreError(code)`` before reaching the wrapped store.
    ``lose_put_response(prefix)`` lets the next put under ``prefix`` commit,
    then raises as if the response never arrived.
    """

    def __init__(self, inner: MemoryObjectStore):
        self.inner = inner
        self._failures: dict[str, list[StoreError]] = {}
        self._lost_responses: list[str] = []

    def fail(self, op: str, times: int = 1, code: str = "ServiceUnavailable", status: Optional[int] = 503):
        self._failures.setdefault(op, []).extend(
            StoreError(code, f"injected {code}", status=status) for _ in range(times)
        )

    def lose_put_response(self, prefix: str = "", times: int = 1):
        self._lost_responses.extend([prefix] * times)

    def _maybe_fail(self, op: str) -> None:
        pending = self._failures.get(op)
        if pending:
            raise pending.pop(0)

    async def get(self, key):
        self._maybe_fail("get")
        return await self.inner.get(key)

    async def put(self, key, body, **kwargs):
        self._maybe_fail("put")
        for i, prefix in enumerate(self._lost_responses):
            if key.startswith(prefix):
                del self._lost_responses[i]
                await self.inner.put(key, body, **kwargs)
                raise StoreError("RequestTimeout", "response lost", status=None)
        return await self.inner.put(key, body, **kwargs)

    async def delete(self, key):
        self._maybe_fail("delete")
        return await self.inner.delete(key)

    async def list(self, prefix="", delimiter=None):
        self._maybe_fail("list")
        return await self.inner.list(prefix, delimiter)

    async def head(self, key):
        self._maybe_fail("head")
        return await self.inner.head(key)

    async def close(self):
        await self.inner.close()

    def url_for(self, key):
        return self.inner.url_for(key)


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policy(sleeps):
    """Fast retry policy: three attempts, no delay, no timeout."""
    return RetryPolicy(max_attempts=3, base_delay=0.0, jitter=0.0, timeout=None, sleep=sleeps)


@pytest.fixture
def store():
    return MemoryObjectStore()


@pytest.fixture
def flaky_store(store):
    return FlakyStore(store)


@pytest.fixture
def wiki(store, policy, clock):
    """Wiki on a fresh in-memory store."""
    return Wiki(store=store, policy=policy, clock=clock)
