"""
Protocol definitions for the object store blobwiki runs on.

The store is the only durable dependency: a flat, strongly consistent blob
store offering get, conditional put, delete, list-by-prefix and head, with
an opaque version token per object. Implementations:

- MemoryObjectStore (in-process, used for tests and local experiments)
- HttpObjectStore (S3-compatible REST endpoint over httpx)
- third-party backends registered under the ``blobwiki.stores`` entry point

Implementations raise ``StoreError`` with S3-style string codes (or let
transport exceptions escape). They never raise ``WikiError``; translation
happens in ``retry.classify_error``.
"""

from dataclasses import dataclass, field
from typing import Optional, Protocol, Union, runtime_checkable


@dataclass
class StoredObject:
    """An object body with its version token and user metadata."""
    key: str
    body: bytes
    version_token: str
    metadata: dict[str, str] = field(default_factory=dict)
    content_type: Optional[str] = None
    last_modified: Optional[str] = None

    def text(self, encoding: str = "utf-8") -> str:
        return self.body.decode(encoding)


@dataclass
class ObjectHead:
    """Object metadata without the body."""
    key: str
    version_token: str
    metadata: dict[str, str] = field(default_factory=dict)
    content_type: Optional[str] = None
    size: int = 0
    last_modified: Optional[str] = None


class StoreError(Exception):
    """
    Raw error reported by a store implementation.

    ``code`` follows S3 naming (NoSuchKey, PreconditionFailed, AccessDenied,
    SlowDown, ...). ``status`` is the HTTP status when there is one.
    """

    def __init__(self, code: str, message: str = "", *, status: Optional[int] = None):
        super().__init__(message or code)
        self.code = code
        self.message = message or code
        self.status = status

    def __repr__(self) -> str:
        return f"StoreError({self.code!r}, {self.message!r}, status={self.status})"


@runtime_checkable
class ObjectStoreProtocol(Protocol):
    """
    Primitive blob store contract.

    Requires read-after-write consistency and a version token that changes
    on every committed write.
    """

    async def get(self, key: str) -> StoredObject:
        """Fetch an object. Raises StoreError('NoSuchKey') if absent."""
        ...

    async def put(
        self,
        key: str,
        body: Union[bytes, str],
        *,
        metadata: Optional[dict[str, str]] = None,
        content_type: Optional[str] = None,
        if_match: Optional[str] = None,
        if_none_match: bool = False,
    ) -> str:
        """
        Write an object and return its new version token.

        Args:
            if_match: Commit only if the current token equals this value
            if_none_match: Commit only if the key does not exist yet

        Raises StoreError('PreconditionFailed') when a precondition fails.
        """
        ...

    async def delete(self, key: str) -> None:
        """Delete an object. Deleting a missing key is not an error."""
        ...

    async def list(self, prefix: str = "", delimiter: Optional[str] = None) -> list[str]:
        """
        List keys under a prefix, sorted.

        With a delimiter, keys containing the delimiter after the prefix
        are omitted (one "directory" level only).
        """
        ...

    async def head(self, key: str) -> ObjectHead:
        """Fetch metadata and version token. Raises StoreError('NoSuchKey') if absent."""
        ...

    async def close(self) -> None:
        """Release connections."""
        ...
