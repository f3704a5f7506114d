"""
In-process object store.

Strongly consistent, version token per write, S3-style error codes. Each
operation yields to the event loop once so concurrent coroutines
interleave the way they would against a remote store.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Optional, Union

from ..protocol import ObjectHead, StoreError, StoredObject
from ..types import utc_now


@dataclass
class _Entry:
    body: bytes
    version_token: str
    metadata: dict[str, str] = field(default_factory=dict)
    content_type: Optional[str] = None
    last_modified: str = ""


class MemoryObjectStore:
    """Dictionary-backed implementation of ``ObjectStoreProtocol``."""

    def __init__(self, base_url: str = "memory://blobwiki"):
        self.base_url = base_url
        self._objects: dict[str, _Entry] = {}
        self.calls: dict[str, int] = {"get": 0, "put": 0, "delete": 0, "list": 0, "head": 0}

    def _missing(self, key: str) -> StoreError:
        return StoreError("NoSuchKey", f"The specified key does not exist: {key}", status=404)

    async def get(self, key: str) -> StoredObject:
        self.calls["get"] += 1
        await asyncio.sleep(0)
        entry = self._objects.get(key)
        if entry is None:
            raise self._missing(key)
        return StoredObject(
            key=key,
            body=entry.body,
            version_token=entry.version_token,
            metadata=dict(entry.metadata),
            content_type=entry.content_type,
            last_modified=entry.last_modified,
        )

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
        self.calls["put"] += 1
        await asyncio.sleep(0)
        if isinstance(body, str):
            body = body.encode("utf-8")
        current = self._objects.get(key)
        if if_none_match and current is not None:
            raise StoreError("PreconditionFailed", f"Object already exists: {key}", status=412)
        if if_match is not None and (current is None or current.version_token != if_match):
            raise StoreError("PreconditionFailed", f"Version token mismatch: {key}", status=412)
        token = uuid.uuid4().hex
        self._objects[key] = _Entry(
            body=bytes(body),
            version_token=token,
            metadata=dict(metadata or {}),
            content_type=content_type,
            last_modified=utc_now(),
        )
        return token

    async def delete(self, key: str) -> None:
        self.calls["delete"] += 1
        await asyncio.sleep(0)
        self._objects.pop(key, None)

    async def list(self, prefix: str = "", delimiter: Optional[str] = None) -> list[str]:
        self.calls["list"] += 1
        await asyncio.sleep(0)
        keys = []
        for key in sorted(self._objects):
            if not key.startswith(prefix):
                continue
            if delimiter and delimiter in key[len(prefix):]:
                continue
            keys.append(key)
        return keys

    async def head(self, key: str) -> ObjectHead:
        self.calls["head"] += 1
        await asyncio.sleep(0)
        entry = self._objects.get(key)
        if entry is None:
            raise self._missing(key)
        return ObjectHead(
            key=key,
            version_token=entry.version_token,
            metadata=dict(entry.metadata),
            content_type=entry.content_type,
            size=len(entry.body),
            last_modified=entry.last_modified,
        )

    async def close(self) -> None:
        pass

    def url_for(self, key: str) -> str:
        return f"{self.base_url.rstrip('/')}/{key}"

    def __contains__(self, key: str) -> bool:
        return key in self._objects

    def __len__(self) -> int:
        return len(self._objects)
