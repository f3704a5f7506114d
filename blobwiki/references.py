"""
Attachment reference tracking and orphan detection.

Whether a page references an attachment is decided by regular expressions
over the page's markdown: a link or image whose target mentions the
attachment's original filename or storage id, or any occurrence of its
resolved URL. This is a heuristic. Non-standard link syntax (reference
style links, raw HTML) is not recognized, so a file can be reported as an
orphan while something still points at it.

Orphan scans read the live page listing, not the metadata index, and fetch
every other page once per call. A scan can race with an edit that has not
been saved yet: a file the editor is about to re-reference can still show
up as an orphan. Callers confirm before deleting anything.
"""

import asyncio
import logging
import re
from typing import Iterable, Optional

from .attachments import AttachmentRepository
from .documents import DocumentRepository
from .errors import WikiError
from .types import Attachment, DeletionCheck, Document, PageMeta

logger = logging.getLogger(__name__)


def _reference_patterns(attachment: Attachment) -> list[re.Pattern]:
    patterns = []
    name = re.escape(attachment.original_filename)
    patterns.append(re.compile(rf"!\[.*?\]\(.*?{name}.*?\)", re.IGNORECASE))
    patterns.append(re.compile(rf"\[.*?\]\(.*?{name}.*?\)", re.IGNORECASE))
    patterns.append(re.compile(rf"\[.*?\]\(.*?{re.escape(attachment.id)}.*?\)", re.IGNORECASE))
    if attachment.url:
        patterns.append(re.compile(re.escape(attachment.url), re.IGNORECASE))
    return patterns


def is_referenced(attachment: Attachment, content: str) -> bool:
    """True if ``content`` links to or embeds ``attachment``."""
    return any(p.search(content) for p in _reference_patterns(attachment))


def links_to_page(content: str, path: str, extension: str = ".md") -> bool:
    """True if ``content`` links to the page at ``path`` (with or without extension)."""
    bare = path[: -len(extension)] if path.endswith(extension) else path
    patterns = (
        rf"\[[^\]]*\]\({re.escape(path)}\)",
        rf"\[[^\]]*\]\({re.escape(bare)}\)",
        rf"\[\[{re.escape(bare)}\]\]",
    )
    return any(re.search(p, content) for p in patterns)


class ReferenceTracker:
    """Corpus-wide reference queries over pages and attachments."""

    def __init__(self, documents: DocumentRepository, attachments: AttachmentRepository):
        self._documents = documents
        self._attachments = attachments

    def is_referenced(self, attachment: Attachment, content: str) -> bool:
        return is_referenced(attachment, content)

    async def _fetch_all(self, paths: Iterable[str]) -> list[Document]:
        async def fetch(path: str) -> Optional[Document]:
            try:
                return await self._documents.get(path)
            except WikiError as e:
                logger.warning("Skipping %s during reference scan: %s", path, e)
                return None

        docs = await asyncio.gather(*(fetch(p) for p in paths))
        return [d for d in docs if d is not None]

    async def _attachment_list(self, attachments: Optional[list[Attachment]]) -> list[Attachment]:
        if attachments is not None:
            return attachments
        return await self._attachments.list()

    async def find_orphans_for_document(
        self,
        path: str,
        attachments: Optional[list[Attachment]] = None,
    ) -> list[Attachment]:
        """
        Attachments referenced by ``path`` and by no other existing page.

        Raises:
            NotFound: no such page
        """
        doc = await self._documents.get(path)
        candidates = [a for a in await self._attachment_list(attachments) if is_referenced(a, doc.content)]
        if not candidates:
            return []

        others = [p for p in await self._documents.list_paths() if p != path]
        contents = [d.content for d in await self._fetch_all(others)]
        orphans = [a for a in candidates if not any(is_referenced(a, c) for c in contents)]
        logger.debug("%s references %d files, %d would be orphaned", path, len(candidates), len(orphans))
        return orphans

    async def find_all_orphans(self, attachments: Optional[list[Attachment]] = None) -> list[Attachment]:
        """Attachments referenced by no existing page."""
        attachments = await self._attachment_list(attachments)
        if not attachments:
            return []
        contents = [d.content for d in await self._fetch_all(await self._documents.list_paths())]
        return [a for a in attachments if not any(is_referenced(a, c) for c in contents)]

    async def pages_referencing(self, attachment_id: str) -> list[PageMeta]:
        """Pages whose content references the attachment."""
        attachment = await self._attachments.get_info(attachment_id)
        docs = await self._fetch_all(await self._documents.list_paths())
        return [d.to_meta() for d in docs if is_referenced(attachment, d.content)]

    async def attachments_for_page(self, path: str) -> list[Attachment]:
        doc = await self._documents.get(path)
        return [a for a in await self._attachments.list() if is_referenced(a, doc.content)]

    async def delete_orphans(self, file_ids: Iterable[str]) -> list[str]:
        """
        Delete attachments concurrently. Returns the ids actually deleted;
        individual failures are logged.
        """
        file_ids = list(file_ids)
        results = await asyncio.gather(
            *(self._attachments.delete(fid) for fid in file_ids), return_exceptions=True
        )
        deleted = []
        for fid, result in zip(file_ids, results):
            if isinstance(result, WikiError):
                logger.warning("Could not delete orphan %s: %s", fid, result)
            elif isinstance(result, BaseException):
                raise result
            else:
                deleted.append(fid)
        return deleted

    async def check_page_deletion(self, path: str) -> DeletionCheck:
        """
        Report what deleting ``path`` would affect, without deleting it.

        Raises:
            NotFound: no such page
        """
        orphans = await self.find_orphans_for_document(path)
        others = [p for p in await self._documents.list_paths() if p != path]
        referencing = [
            d.to_meta() for d in await self._fetch_all(others)
            if links_to_page(d.content, path, self._documents.extension)
        ]

        warnings = []
        if referencing:
            warnings.append(f"{len(referencing)} page(s) link to this page and will have broken links")
        if orphans:
            warnings.append(f"{len(orphans)} file(s) will no longer be referenced by any page")
        return DeletionCheck(
            can_delete=True,
            orphaned_files=orphans,
            referencing_pages=referencing,
            warnings=warnings,
        )
