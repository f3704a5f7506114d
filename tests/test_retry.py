"""Tests for error classification and the retry policy."""

import asyncio

import pytest

from blobwiki.errors import (
    AccessDenied,
    AuthenticationFailed,
    EditConflict,
    InvalidInput,
    NetworkError,
    NotFound,
    Unknown,
)
from blobwiki.config import RetryConfig
from blobwiki.protocol import StoreError
from blobwiki.retry import WRITE_ID_KEY, RetryPolicy, classify_error, put_conditional


class TestClassifyError:

    @pytest.mark.parametrize("code,cls", [
        ("NoSuchKey", NotFound),
        ("PreconditionFailed", EditConflict),
        ("AccessDenied", AccessDenied),
        ("ExpiredToken", AuthenticationFailed),
        ("InvalidArgument", InvalidInput),
        ("SlowDown", NetworkError),
        ("ServiceUnavailable", NetworkError),
        ("TimeoutError", NetworkError),
    ])
    def test_code_table(self, code, cls):
        err = classify_error(StoreError(code, "boom"))
        assert type(err) is cls
        assert err.details["code"] == code

    @pytest.mark.parametrize("status,cls", [
        (404, NotFound),
        (412, EditConflict),
        (401, AuthenticationFailed),
        (403, AccessDenied),
        (429, NetworkError),
        (502, NetworkError),
        (418, InvalidInput),
    ])
    def test_status_fallback(self, status, cls):
        assert type(classify_error(StoreError("Weird", status=status))) is cls

    def test_unknown_code(self):
        assert type(classify_error(StoreError("Weird"))) is Unknown

    def test_os_errors_are_network(self):
        assert isinstance(classify_error(ConnectionResetError("reset")), NetworkError)
        assert isinstance(classify_error(TimeoutError()), NetworkError)

    def test_arbitrary_exception(self):
        assert isinstance(classify_error(KeyError("x")), Unknown)

    def test_domain_error_passes_through(self):
        err = NotFound("gone")
        assert classify_error(err) is err

    def test_auth_is_access_denied(self):
        assert isinstance(classify_error(StoreError("ExpiredToken")), AccessDenied)


class TestRetryPolicy:

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self, sleeps):
        policy = RetryPolicy(max_attempts=4, base_delay=1.0, multiplier=2.0, jitter=0.0, timeout=None, sleep=sleeps)
        calls = []

        async def op():
            calls.append(1)
            if len(calls) < 3:
                raise StoreError("SlowDown", status=503)
            return "ok"

        assert await policy.run(op) == "ok"
        assert len(calls) == 3
        assert sleeps.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_terminal_error_not_retried(self, policy, sleeps):
        calls = []

        async def op():
            calls.append(1)
            raise StoreError("AccessDenied", status=403)

        with pytest.raises(AccessDenied):
            await policy.run(op)
        assert len(calls) == 1
        assert sleeps.delays == []

    @pytest.mark.asyncio
    async def test_conflict_not_retried(self, policy):
        calls = []

        async def op():
            calls.append(1)
            raise StoreError("PreconditionFailed", status=412)

        with pytest.raises(EditConflict):
            await policy.run(op)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_error(self, policy):
        async def op():
            raise StoreError("InternalError", status=500)

        with pytest.raises(NetworkError) as exc_info:
            await policy.run(op)
        assert isinstance(exc_info.value.__cause__, StoreError)

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, sleeps):
        policy = RetryPolicy(max_attempts=2, base_delay=0.0, jitter=0.0, timeout=0.01, sleep=sleeps)
        calls = []

        async def op():
            calls.append(1)
            if len(calls) == 1:
                await asyncio.sleep(1)
            return "late ok"

        assert await policy.run(op) == "late ok"
        assert len(calls) == 2

    def test_delay_capped(self):
        policy = RetryPolicy(base_delay=1.0, multiplier=10.0, max_delay=5.0, jitter=0.0)
        assert policy.delay_for(0) == 1.0
        assert policy.delay_for(3) == 5.0

    def test_jitter_bounded(self):
        policy = RetryPolicy(base_delay=1.0, jitter=0.5)
        for _ in range(50):
            assert 1.0 <= policy.delay_for(0) <= 1.5

    def test_from_config(self):
        policy = RetryPolicy.from_config(RetryConfig(max_attempts=7, timeout=0), jitter=0.0)
        assert policy.max_attempts == 7
        assert policy.timeout is None
        assert policy.jitter == 0.0

    def test_custom_predicate(self):
        policy = RetryPolicy().replace(should_retry=lambda e: isinstance(e, NotFound))
        assert policy.should_retry(NotFound("x"))


class TestPutConditional:

    @pytest.mark.asyncio
    async def test_first_attempt_conflict_is_not_read_back(self, store, policy):
        await store.put("k", b"theirs")
        with pytest.raises(EditConflict):
            await put_conditional(policy, store, "k", b"mine", if_none_match=True)
        assert store.calls["head"] == 0

    @pytest.mark.asyncio
    async def test_own_commit_recognised_after_lost_response(self, flaky_store, policy):
        flaky_store.lose_put_response("k")
        token = await put_conditional(
            policy, flaky_store, "k", b"mine", metadata={"a": "1"}, if_none_match=True,
        )
        head = await flaky_store.inner.head("k")
        assert token == head.version_token
        assert head.metadata["a"] == "1"
        assert WRITE_ID_KEY in head.metadata

    @pytest.mark.asyncio
    async def test_stale_token_still_conflicts_after_lost_response(self, flaky_store, policy):
        old = await flaky_store.put("k", b"v1")
        await flaky_store.put("k", b"v2")
        flaky_store.fail("put", times=1)
        with pytest.raises(EditConflict):
            await put_conditional(policy, flaky_store, "k", b"mine", if_match=old)
        assert (await flaky_store.inner.get("k")).body == b"v2"
