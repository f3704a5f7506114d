"""
Retry and error classification for store calls.

Every call into the object store goes through a ``RetryPolicy``. The
policy applies a per-call timeout, translates whatever the store raised
into a ``WikiError`` via ``classify_error``, retries the retryable ones
with exponential backoff plus jitter, and re-raises terminal ones
immediately.
"""

import asyncio
import dataclasses
import logging
import random
import uuid
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from .errors import (
    AccessDenied,
    AuthenticationFailed,
    EditConflict,
    InvalidInput,
    NetworkError,
    NotFound,
    Unknown,
    WikiError,
)
from .protocol import ObjectStoreProtocol, StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Classification table: store error code -> domain error class
_CODE_TABLE: dict[str, type[WikiError]] = {
    # Missing resources
    "NoSuchKey": NotFound,
    "NotFound": NotFound,
    "NoSuchBucket": NotFound,
    # Conditional write lost
    "PreconditionFailed": EditConflict,
    # Authorization
    "AccessDenied": AccessDenied,
    "AllAccessDisabled": AccessDenied,
    "InvalidAccessKeyId": AuthenticationFailed,
    "SignatureDoesNotMatch": AuthenticationFailed,
    "ExpiredToken": AuthenticationFailed,
    "TokenRefreshRequired": AuthenticationFailed,
    # Bad requests
    "InvalidRequest": InvalidInput,
    "InvalidArgument": InvalidInput,
    "EntityTooLarge": InvalidInput,
    "MalformedXML": InvalidInput,
    "InvalidBucketName": InvalidInput,
    "RequestTimeTooSkewed": InvalidInput,
    # Transient
    "ServiceUnavailable": NetworkError,
    "SlowDown": NetworkError,
    "Throttling": NetworkError,
    "InternalError": NetworkError,
    "RequestTimeout": NetworkError,
    "NetworkingError": NetworkError,
    "TimeoutError": NetworkError,
}


def _status_class(status: Optional[int]) -> Optional[type[WikiError]]:
    if status is None:
        return None
    if status == 404:
        return NotFound
    if status == 412:
        return EditConflict
    if status == 401:
        return AuthenticationFailed
    if status == 403:
        return AccessDenied
    if status in (408, 429) or status >= 500:
        return NetworkError
    if 400 <= status < 500:
        return InvalidInput
    return None


def classify_error(exc: BaseException) -> WikiError:
    """
    Translate a raw store or transport exception into a domain error.

    ``WikiError`` instances pass through unchanged.
    """
    if isinstance(exc, WikiError):
        return exc
    if isinstance(exc, StoreError):
        cls = _CODE_TABLE.get(exc.code) or _status_class(exc.status) or Unknown
        return cls(f"{exc.code}: {exc.message}", details={"code": exc.code, "status": exc.status})
    # TimeoutError and ConnectionError are OSError subclasses
    if isinstance(exc, OSError):
        return NetworkError(f"{type(exc).__name__}: {exc}", details={"code": type(exc).__name__})
    return Unknown(f"{type(exc).__name__}: {exc}", details={"code": type(exc).__name__})


def is_retryable(error: WikiError) -> bool:
    return error.retryable


@dataclass
class RetryPolicy:
    """
    Reusable retry policy for store calls.

    Delay before retry n (0-based) is
    ``min(base_delay * multiplier**n, max_delay) + uniform(0, jitter)``.

    Attributes:
        max_attempts: Total attempts including the first
        timeout: Per-attempt timeout in seconds (None disables); a timeout
            surfaces as a retryable NetworkError
        classifier: Maps raw exceptions to domain errors
        should_retry: Decides from the domain error whether to try again
        sleep: Awaitable sleep, replaceable in tests
    """
    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 1.0
    timeout: Optional[float] = 30.0
    classifier: Callable[[BaseException], WikiError] = classify_error
    should_retry: Callable[[WikiError], bool] = is_retryable
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    @classmethod
    def from_config(cls, config, **overrides) -> "RetryPolicy":
        """Build from a ``config.RetryConfig``."""
        values = dict(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            multiplier=config.multiplier,
            jitter=config.jitter,
            timeout=config.timeout or None,
        )
        values.update(overrides)
        return cls(**values)

    def replace(self, **changes) -> "RetryPolicy":
        return dataclasses.replace(self, **changes)

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter > 0:
            delay += random.uniform(0, self.jitter)
        return delay

    async def _attempt(self, operation: Callable[[], Awaitable[T]]) -> T:
        if self.timeout:
            return await asyncio.wait_for(operation(), self.timeout)
        return await operation()

    async def run(self, operation: Callable[[], Awaitable[T]], *, description: str = "store call") -> T:
        """
        Run ``operation`` (a zero-argument coroutine factory) under this policy.

        Raises:
            WikiError: the classified error of the last attempt
        """
        attempts = max(1, self.max_attempts)
        for attempt in range(attempts):
            try:
                return await self._attempt(operation)
            except WikiError as exc:
                error = exc
            except Exception as exc:
                error = self.classifier(exc)
                error.__cause__ = exc

            if not self.should_retry(error) or attempt == attempts - 1:
                raise error

            delay = self.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                description, attempt + 1, attempts, delay, error,
            )
            await self.sleep(delay)

        raise AssertionError("unreachable")  # pragma: no cover


# Metadata key carrying a per-write nonce, used to recognise our own commit
WRITE_ID_KEY = "write-id"


async def put_conditional(
    policy: RetryPolicy,
    store: ObjectStoreProtocol,
    key: str,
    body: Union[bytes, str],
    *,
    metadata: Optional[dict[str, str]] = None,
    description: str = "conditional put",
    **conditions: Any,
) -> str:
    """
    Conditional put under ``policy`` that survives a lost response.

    A put can commit and still fail on the way back (timeout, dropped
    connection). Its retry then trips its own precondition. When that
    happens after more than one attempt, the key is read back and a
    matching ``write-id`` means the earlier attempt committed: its token
    is returned instead of the conflict.

    Args:
        conditions: ``if_match`` / ``if_none_match`` passed to the store

    Raises:
        EditConflict: the precondition failed against someone else's write
    """
    write_id = uuid.uuid4().hex
    stamped = dict(metadata or {})
    stamped[WRITE_ID_KEY] = write_id
    attempts = 0

    async def attempt() -> str:
        nonlocal attempts
        attempts += 1
        return await store.put(key, body, metadata=stamped, **conditions)

    try:
        return await policy.run(attempt, description=description)
    except EditConflict as conflict:
        if attempts < 2:
            raise
        try:
            head = await policy.run(partial(store.head, key), description=f"head {key}")
        except NotFound:
            raise conflict from None
        if head.metadata.get(WRITE_ID_KEY) != write_id:
            raise conflict
        logger.info("%s committed before its response was lost", description)
        return head.version_token
