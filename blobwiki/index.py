"""
Aggregated JSON indexes kept in the object store.

An index is a single object ``{<collection>: [...], "version": n}``. Every
mutation is a read-modify-write cycle: read the object and its version
token, apply the change keyed by one field (last value wins), bump the
integer version, and write back conditionally on the token. When another
writer got there first the cycle starts over, a bounded number of times,
with linearly increasing backoff. Concurrent changes to *different* keys
therefore merge; only exhaustion surfaces, as ``IndexConflict``.

The page index lives at ``<metadata-prefix>/pages.json``; attachments use
the same machinery at ``<metadata-prefix>/files.json``.
"""

import json
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Iterable, Optional

from .errors import EditConflict, IndexConflict, IndexUnreadable, InvalidInput, NotFound
from .protocol import ObjectStoreProtocol
from .retry import RetryPolicy
from .types import MetadataIndex, PageMeta

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"

ADD = "add"
UPDATE = "update"
DELETE = "delete"


@dataclass
class IndexOp:
    """
    A single index mutation.

    ``entry`` is required for add/update; delete only needs ``key``.
    """
    kind: str
    key: str
    entry: Optional[dict[str, Any]] = None


class JsonIndex:
    """Versioned JSON collection stored as one object."""

    def __init__(
        self,
        store: ObjectStoreProtocol,
        key: str,
        *,
        collection: str,
        key_field: str,
        policy: RetryPolicy,
        max_attempts: int = 3,
        backoff: float = 0.1,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self._store = store
        self.key = key
        self.collection = collection
        self.key_field = key_field
        self._policy = policy
        self.max_attempts = max(1, max_attempts)
        self.backoff = backoff
        self._sleep = sleep or policy.sleep

    def _empty(self) -> dict[str, Any]:
        return {self.collection: [], "version": 0}

    async def read_raw(self) -> tuple[dict[str, Any], Optional[str]]:
        """
        Current index contents and version token.

        An absent index reads as empty with token None.

        Raises:
            IndexUnreadable: the object exists but does not parse; its token
                is in ``details["token"]``
        """
        try:
            obj = await self._policy.run(
                partial(self._store.get, self.key), description=f"read {self.key}"
            )
        except NotFound:
            return self._empty(), None

        try:
            data = json.loads(obj.body)
            if not isinstance(data, dict) or not isinstance(data.get(self.collection, []), list):
                raise ValueError("unexpected index shape")
        except ValueError as e:
            logger.warning("Index %s is unreadable: %s", self.key, e)
            raise IndexUnreadable(
                f"Index {self.key} is unreadable: {e}",
                details={"key": self.key, "token": obj.version_token},
            ) from None

        data.setdefault(self.collection, [])
        try:
            data["version"] = int(data.get("version", 0))
        except (TypeError, ValueError):
            data["version"] = 0
        return data, obj.version_token

    async def load(self) -> Optional[list[dict[str, Any]]]:
        """Collection items, or None when the index is absent or unreadable."""
        try:
            obj = await self._policy.run(
                partial(self._store.get, self.key), description=f"read {self.key}"
            )
        except NotFound:
            return None
        try:
            items = json.loads(obj.body)[self.collection]
            if not isinstance(items, list):
                raise ValueError("unexpected index shape")
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Index %s is unreadable: %s", self.key, e)
            return None
        return items

    def _apply(self, data: dict[str, Any], op: IndexOp) -> None:
        items: list[dict[str, Any]] = data[self.collection]
        if op.kind == DELETE:
            data[self.collection] = [i for i in items if i.get(self.key_field) != op.key]
            return
        if op.kind not in (ADD, UPDATE):
            raise InvalidInput(f"Unknown index operation: {op.kind!r}")
        if op.entry is None:
            raise InvalidInput(f"Index {op.kind} requires an entry")
        for i, item in enumerate(items):
            if item.get(self.key_field) == op.key:
                items[i] = op.entry
                return
        items.append(op.entry)

    async def _write(self, data: dict[str, Any], token: Optional[str]) -> str:
        body = json.dumps(data, indent=2)
        put = partial(
            self._store.put,
            self.key,
            body,
            content_type=JSON_CONTENT_TYPE,
            if_match=token,
            if_none_match=token is None,
        )
        return await self._policy.run(put, description=f"write {self.key}")

    async def mutate(
        self,
        ops: Iterable[IndexOp],
        *,
        expected_version: Optional[int] = None,
    ) -> int:
        """
        Apply ``ops`` in one read-modify-write cycle, retrying on contention.

        Args:
            expected_version: If given and the stored version differs, fail
                at once instead of retrying

        Returns:
            The committed index version.

        Raises:
            IndexConflict: version precondition failed, or retries exhausted
            IndexUnreadable: the stored index does not parse; nothing is written
        """
        ops = list(ops)
        for attempt in range(1, self.max_attempts + 1):
            data, token = await self.read_raw()
            if expected_version is not None and data["version"] != expected_version:
                raise IndexConflict(
                    f"Index {self.key} is at version {data['version']}, expected {expected_version}",
                    details={"expected": expected_version, "actual": data["version"]},
                )
            for op in ops:
                self._apply(data, op)
            data["version"] += 1
            try:
                await self._write(data, token)
            except EditConflict:
                if attempt == self.max_attempts:
                    break
                delay = self.backoff * attempt
                logger.info(
                    "Index %s changed underneath us (attempt %d/%d), retrying in %.2fs",
                    self.key, attempt, self.max_attempts, delay,
                )
                await self._sleep(delay)
                continue
            logger.debug("Index %s committed version %d", self.key, data["version"])
            return data["version"]

        raise IndexConflict(
            f"Failed to update {self.key} after {self.max_attempts} attempts",
            details={"attempts": self.max_attempts},
        )

    async def replace(self, items: list[dict[str, Any]]) -> int:
        """
        Overwrite the whole collection, keeping the version sequence.

        An unreadable index is replaced too; the sequence restarts at 1.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                data, token = await self.read_raw()
            except IndexUnreadable as e:
                data, token = self._empty(), e.details["token"]
            new = {self.collection: items, "version": data["version"] + 1}
            try:
                await self._write(new, token)
            except EditConflict:
                if attempt < self.max_attempts:
                    await self._sleep(self.backoff * attempt)
                continue
            return new["version"]
        raise IndexConflict(f"Failed to replace {self.key} after {self.max_attempts} attempts")

    async def exists(self) -> bool:
        try:
            await self._policy.run(partial(self._store.head, self.key), description=f"head {self.key}")
        except NotFound:
            return False
        return True

    async def create_empty(self) -> bool:
        """Write an empty index if none exists. Returns False if one already did."""
        try:
            await self._write(self._empty(), None)
        except EditConflict:
            return False
        return True


class MetadataIndexManager:
    """
    The page metadata index: one entry per document, keyed by path.

    Writers call ``add``/``update``/``remove`` after a document commit;
    readers use ``read``/``list_pages`` to browse without listing the bucket.
    """

    def __init__(self, index: JsonIndex):
        self._index = index

    @classmethod
    def for_store(
        cls,
        store: ObjectStoreProtocol,
        key: str,
        policy: RetryPolicy,
        *,
        max_attempts: int = 3,
        backoff: float = 0.1,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> "MetadataIndexManager":
        index = JsonIndex(
            store, key,
            collection="pages", key_field="path",
            policy=policy, max_attempts=max_attempts, backoff=backoff, sleep=sleep,
        )
        return cls(index)

    @property
    def key(self) -> str:
        return self._index.key

    async def read(self) -> tuple[MetadataIndex, Optional[str]]:
        """
        Decoded index and its version token (None when absent).

        Raises:
            IndexUnreadable: the stored index does not parse
        """
        data, token = await self._index.read_raw()
        pages = []
        for raw in data["pages"]:
            try:
                pages.append(PageMeta.from_dict(raw))
            except (KeyError, TypeError):
                logger.warning("Skipping malformed index entry in %s: %r", self.key, raw)
        return MetadataIndex(pages=pages, version=data["version"], version_token=token), token

    async def apply(self, op: IndexOp, *, expected_version: Optional[int] = None) -> int:
        return await self._index.mutate([op], expected_version=expected_version)

    async def add(self, meta: PageMeta, *, expected_version: Optional[int] = None) -> int:
        return await self.apply(IndexOp(ADD, meta.path, meta.to_dict()), expected_version=expected_version)

    async def update(self, meta: PageMeta, *, expected_version: Optional[int] = None) -> int:
        return await self.apply(IndexOp(UPDATE, meta.path, meta.to_dict()), expected_version=expected_version)

    async def remove(self, path: str, *, expected_version: Optional[int] = None) -> int:
        return await self.apply(IndexOp(DELETE, path), expected_version=expected_version)

    async def list_pages(self, prefix: str = "") -> list[PageMeta]:
        index, _ = await self.read()
        return [p for p in index.pages if p.path.startswith(prefix)]

    async def rebuild(self, entries: Iterable[PageMeta]) -> int:
        """Overwrite the index with ``entries`` (used after drift)."""
        items = [e.to_dict() for e in sorted(entries, key=lambda e: e.path)]
        version = await self._index.replace(items)
        logger.info("Rebuilt %s with %d pages (version %d)", self.key, len(items), version)
        return version

    async def exists(self) -> bool:
        return await self._index.exists()

    async def ensure(self) -> None:
        """Create an empty index object if none exists."""
        if not await self.exists():
            await self._index.create_empty()
