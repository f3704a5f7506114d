"""
Attachment repository: uploaded binary files.

Files live at ``<files-prefix><id>`` where the id is
``<upload-ms>-<sanitized-filename>``. Attachments are immutable; they are
only created or deleted. A secondary JSON index at
``<metadata-prefix>/files.json`` makes listing cheap; when it is missing or
unreadable the repository lists the bucket instead and rewrites the index.
"""

import asyncio
import logging
import mimetypes
import time
from functools import partial
from typing import TYPE_CHECKING, Callable, Optional

from .errors import EditConflict, InvalidInput, NotFound, WikiError
from .index import ADD, DELETE, IndexOp, JsonIndex
from .protocol import ObjectHead, ObjectStoreProtocol
from .retry import RetryPolicy, put_conditional
from .types import (
    Attachment,
    FileUsageStats,
    sanitize_filename,
    utc_now,
    validate_upload,
)

if TYPE_CHECKING:
    from .references import ReferenceTracker

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"

# Uploads in the same millisecond with the same name bump the timestamp
MAX_ID_ATTEMPTS = 5


class AttachmentRepository:
    """Upload, list and delete binary attachments."""

    def __init__(
        self,
        store: ObjectStoreProtocol,
        policy: RetryPolicy,
        *,
        index: Optional[JsonIndex] = None,
        prefix: str = "files/",
        max_file_size: int = 10 * 1024 * 1024,
        url_for: Optional[Callable[[str], str]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._policy = policy
        self._index = index
        self.prefix = prefix
        self.max_file_size = max_file_size
        self._url_for = url_for or getattr(store, "url_for", None) or (lambda key: key)
        self._clock = clock
        self.reference_tracker: Optional["ReferenceTracker"] = None

    def _key(self, file_id: str) -> str:
        return f"{self.prefix}{file_id}"

    def get_url(self, file_id: str) -> str:
        """Resolved access URL for a stored attachment."""
        return self._url_for(self._key(file_id))

    def _from_head(self, file_id: str, head: ObjectHead) -> Attachment:
        meta = head.metadata
        try:
            size = int(meta.get("size") or head.size)
        except ValueError:
            size = head.size
        return Attachment(
            id=file_id,
            original_filename=meta.get("original-name") or file_id,
            size=size,
            content_type=meta.get("content-type") or head.content_type or DEFAULT_CONTENT_TYPE,
            uploaded_at=meta.get("uploaded-at") or head.last_modified or "",
            url=self.get_url(file_id),
        )

    async def upload(
        self,
        filename: str,
        data: bytes,
        content_type: Optional[str] = None,
    ) -> Attachment:
        """
        Validate and store a file.

        Raises:
            InvalidInput: oversize, nameless or dangerous file
        """
        validate_upload(filename, len(data), self.max_file_size)
        sanitized = sanitize_filename(filename) or "file"
        if content_type is None:
            content_type = mimetypes.guess_type(filename)[0] or DEFAULT_CONTENT_TYPE

        uploaded_at = utc_now()
        metadata = {
            "original-name": filename,
            "uploaded-at": uploaded_at,
            "size": str(len(data)),
            "content-type": content_type,
        }
        stamp = int(self._clock() * 1000)
        for _ in range(MAX_ID_ATTEMPTS):
            file_id = f"{stamp}-{sanitized}"
            try:
                await put_conditional(
                    self._policy, self._store, self._key(file_id), data,
                    metadata=metadata,
                    content_type=content_type,
                    if_none_match=True,
                    description=f"upload {file_id}",
                )
                break
            except EditConflict:
                stamp += 1
        else:
            raise InvalidInput(f"Could not allocate a unique id for {filename!r}")

        attachment = Attachment(
            id=file_id,
            original_filename=filename,
            size=len(data),
            content_type=content_type,
            uploaded_at=uploaded_at,
            url=self.get_url(file_id),
        )
        logger.info("Uploaded %s as %s (%d bytes)", filename, file_id, len(data))
        await self._index_secondary(IndexOp(ADD, file_id, attachment.to_dict()))
        return attachment

    async def get_info(self, file_id: str) -> Attachment:
        """
        Raises:
            NotFound: no such attachment
        """
        try:
            head = await self._policy.run(
                partial(self._store.head, self._key(file_id)), description=f"head {file_id}"
            )
        except NotFound:
            raise NotFound(f"File not found: {file_id}", details={"id": file_id}) from None
        return self._from_head(file_id, head)

    async def _live_list(self) -> list[Attachment]:
        keys = await self._policy.run(partial(self._store.list, self.prefix), description="list files")

        async def info(key: str) -> Optional[Attachment]:
            try:
                return await self.get_info(key[len(self.prefix):])
            except NotFound:
                return None

        found = await asyncio.gather(*(info(k) for k in keys if k != self.prefix))
        return [a for a in found if a is not None]

    async def list(self) -> list[Attachment]:
        """All attachments, from the index when it is usable."""
        if self._index is not None:
            items = await self._index.load()
            if items is not None:
                attachments = []
                for item in items:
                    try:
                        attachments.append(Attachment.from_dict(item))
                    except (KeyError, TypeError, ValueError):
                        logger.warning("Skipping malformed file index entry: %r", item)
                return attachments

        attachments = await self._live_list()
        if self._index is not None:
            logger.info("Rebuilding %s from live listing (%d files)", self._index.key, len(attachments))
            try:
                await self._index.replace([a.to_dict() for a in attachments])
            except WikiError as e:
                logger.warning("Could not rewrite %s: %s", self._index.key, e)
        return attachments

    async def delete(self, file_id: str) -> None:
        """
        Raises:
            NotFound: the id is not in the listing
        """
        attachments = await self.list()
        if not any(a.id == file_id for a in attachments):
            raise NotFound(f"File not found: {file_id}", details={"id": file_id})
        await self._policy.run(
            partial(self._store.delete, self._key(file_id)), description=f"delete {file_id}"
        )
        logger.info("Deleted file %s", file_id)
        await self._index_secondary(IndexOp(DELETE, file_id))

    async def usage_stats(self) -> FileUsageStats:
        attachments = await self.list()
        stats = FileUsageStats(
            total_files=len(attachments),
            total_size=sum(a.size for a in attachments),
        )
        for a in attachments:
            if a.is_image:
                stats.image_files += 1
            else:
                stats.document_files += 1
        if self.reference_tracker is not None:
            stats.orphaned_files = len(await self.reference_tracker.find_all_orphans(attachments))
        return stats

    async def _index_secondary(self, op: IndexOp) -> None:
        if self._index is None:
            return
        try:
            await self._index.mutate([op])
        except WikiError as e:
            logger.warning("File index %s for %s failed: %s", op.kind, op.key, e)
