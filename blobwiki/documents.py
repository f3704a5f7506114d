"""
Document repository: markdown pages keyed by hierarchical path.

Each page is one object at ``<pages-prefix><path>``. Title, timestamps,
author, version counter and tags travel in the object's metadata so a
``head`` is enough to describe a page without fetching its body.

Updates are optimistic: the caller passes the version token it read, and
the write is conditional on it. A mismatch surfaces as ``EditConflict``
carrying the document that won, for the caller to merge. Conflicts are
never retried here.

Index maintenance is a secondary effect. After a document write commits,
the matching index mutation is attempted; if it fails the failure is
logged and the document operation still succeeds.
"""

import asyncio
import logging
from functools import partial
from typing import TYPE_CHECKING, Optional

from .errors import AlreadyExists, EditConflict, InvalidInput, NotFound, WikiError
from .index import MetadataIndexManager
from .protocol import ObjectStoreProtocol
from .retry import RetryPolicy, put_conditional
from .types import (
    CONTENT_EXTENSION,
    DeletionResult,
    Document,
    PageMeta,
    PageMetadata,
    extract_tags,
    extract_title,
    title_from_path,
    utc_now,
    validate_page_path,
)

if TYPE_CHECKING:
    from .references import ReferenceTracker

logger = logging.getLogger(__name__)

MARKDOWN_CONTENT_TYPE = "text/markdown; charset=utf-8"


class DocumentRepository:
    """CRUD for markdown documents with optimistic locking."""

    def __init__(
        self,
        store: ObjectStoreProtocol,
        policy: RetryPolicy,
        *,
        index: Optional[MetadataIndexManager] = None,
        prefix: str = "pages/",
        extension: str = CONTENT_EXTENSION,
        author: str = "anonymous",
    ):
        self._store = store
        self._policy = policy
        self._index = index
        self.prefix = prefix
        self.extension = extension
        self.author = author
        # Set by the Wiki once the tracker exists (the tracker reads documents too)
        self.reference_tracker: Optional["ReferenceTracker"] = None

    def _key(self, path: str) -> str:
        return f"{self.prefix}{path}"

    def _validate(self, path: str) -> None:
        validate_page_path(path, self.extension)

    def _to_document(self, path: str, content: str, meta: dict[str, str], token: str) -> Document:
        metadata = PageMetadata.from_object_metadata(meta)
        title = meta.get("title") or extract_title(content) or title_from_path(path, self.extension)
        return Document(path=path, title=title, content=content, metadata=metadata, version_token=token)

    # -- reads ------------------------------------------------------------

    async def get(self, path: str) -> Document:
        """
        Fetch a document with its current version token.

        Raises:
            InvalidInput: malformed path
            NotFound: no such page
        """
        self._validate(path)
        try:
            obj = await self._policy.run(
                partial(self._store.get, self._key(path)), description=f"get {path}"
            )
        except NotFound:
            raise NotFound(f"Page not found: {path}", details={"path": path}) from None
        return self._to_document(path, obj.text(), obj.metadata, obj.version_token)

    async def exists(self, path: str) -> bool:
        return await self.current_token(path) is not None

    async def current_token(self, path: str) -> Optional[str]:
        """Current version token, or None if the page does not exist."""
        self._validate(path)
        try:
            head = await self._policy.run(
                partial(self._store.head, self._key(path)), description=f"head {path}"
            )
        except NotFound:
            return None
        return head.version_token

    async def has_conflict(self, path: str, version_token: str) -> bool:
        """True if the page changed (or vanished) since ``version_token`` was read."""
        return await self.current_token(path) != version_token

    async def list_paths(self, prefix: str = "") -> list[str]:
        """Every page path under ``prefix``, from a live store listing."""
        keys = await self._policy.run(
            partial(self._store.list, f"{self.prefix}{prefix}"), description="list pages"
        )
        paths = []
        for key in keys:
            path = key[len(self.prefix):]
            if path.endswith(self.extension):
                paths.append(path)
        return paths

    async def _head_meta(self, path: str) -> Optional[PageMeta]:
        try:
            head = await self._policy.run(
                partial(self._store.head, self._key(path)), description=f"head {path}"
            )
        except NotFound:
            # Deleted between list and head
            return None
        metadata = PageMetadata.from_object_metadata(head.metadata)
        return PageMeta(
            path=path,
            title=head.metadata.get("title") or title_from_path(path, self.extension),
            created_at=metadata.created_at,
            updated_at=metadata.updated_at,
            author=metadata.author,
            tags=metadata.tags,
        )

    async def scan(self, prefix: str = "") -> list[PageMeta]:
        """Page summaries from a live listing plus one ``head`` per page."""
        paths = await self.list_paths(prefix)
        metas = await asyncio.gather(*(self._head_meta(p) for p in paths))
        return [m for m in metas if m is not None]

    # -- writes -----------------------------------------------------------

    async def create(self, path: str, content: str, *, author: Optional[str] = None) -> Document:
        """
        Create a new page.

        Raises:
            InvalidInput: malformed path
            AlreadyExists: a page already lives at ``path``
        """
        self._validate(path)
        if await self.exists(path):
            raise AlreadyExists(f"Page already exists: {path}", details={"path": path})

        now = utc_now()
        metadata = PageMetadata(
            created_at=now,
            updated_at=now,
            author=author or self.author,
            version=1,
            tags=extract_tags(content),
        )
        title = extract_title(content) or title_from_path(path, self.extension)
        try:
            token = await put_conditional(
                self._policy, self._store, self._key(path), content,
                metadata=metadata.to_object_metadata(title),
                content_type=MARKDOWN_CONTENT_TYPE,
                if_none_match=True,
                description=f"create {path}",
            )
        except EditConflict:
            # Lost a creation race
            raise AlreadyExists(f"Page already exists: {path}", details={"path": path}) from None

        doc = Document(path=path, title=title, content=content, metadata=metadata, version_token=token)
        logger.info("Created page %s", path)
        await self._index_secondary("add", doc.to_meta())
        return doc

    async def update(
        self,
        path: str,
        content: str,
        expected_version_token: str,
        *,
        author: Optional[str] = None,
    ) -> Document:
        """
        Replace a page's content if it is still at ``expected_version_token``.

        Raises:
            InvalidInput: malformed path or missing token
            NotFound: the page no longer exists
            EditConflict: someone else committed first; ``conflict_data``
                holds their version when it could be read
        """
        self._validate(path)
        if not expected_version_token:
            raise InvalidInput("A version token is required to update a page")

        current = await self.get(path)
        if current.version_token != expected_version_token:
            raise EditConflict(
                f"Page was modified by another user: {path}",
                conflict_data=current,
                details={"path": path},
            )

        metadata = PageMetadata(
            created_at=current.metadata.created_at,
            updated_at=utc_now(),
            author=author or self.author,
            version=current.metadata.version + 1,
            tags=extract_tags(content),
        )
        title = extract_title(content) or current.title
        try:
            token = await put_conditional(
                self._policy, self._store, self._key(path), content,
                metadata=metadata.to_object_metadata(title),
                content_type=MARKDOWN_CONTENT_TYPE,
                if_match=expected_version_token,
                description=f"update {path}",
            )
        except EditConflict:
            winner = await self._read_winner(path)
            raise EditConflict(
                f"Page was modified by another user: {path}",
                conflict_data=winner,
                details={"path": path},
            ) from None

        doc = Document(path=path, title=title, content=content, metadata=metadata, version_token=token)
        logger.info("Updated page %s to version %d", path, metadata.version)
        await self._index_secondary("update", doc.to_meta())
        return doc

    async def _read_winner(self, path: str) -> Optional[Document]:
        try:
            return await self.get(path)
        except WikiError as e:
            logger.warning("Could not read conflicting version of %s: %s", path, e)
            return None

    async def delete(self, path: str) -> DeletionResult:
        """
        Delete a page and report attachments it leaves unreferenced.

        Orphans are computed before the delete against every other page;
        a failing scan degrades to an empty list.

        Raises:
            NotFound: no such page
        """
        await self.get(path)

        orphans = []
        if self.reference_tracker is not None:
            try:
                orphans = await self.reference_tracker.find_orphans_for_document(path)
            except WikiError as e:
                logger.warning("Orphan scan for %s failed: %s", path, e)

        await self._policy.run(partial(self._store.delete, self._key(path)), description=f"delete {path}")
        logger.info("Deleted page %s (%d orphan candidates)", path, len(orphans))
        await self._index_secondary("remove", path)
        return DeletionResult(deleted_page=path, orphaned_files=orphans)

    async def _index_secondary(self, action: str, arg) -> None:
        """Apply an index mutation, logging instead of raising on failure."""
        if self._index is None:
            return
        try:
            await getattr(self._index, action)(arg)
        except WikiError as e:
            logger.warning("Index %s failed after document write (%s): %s", action, e.code, e)
