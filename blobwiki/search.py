"""
Search over the page corpus.

There is no persistent full-text index: every search scans the page
summaries from the metadata index and, for the content pass, fetches each
remaining page. Results are ranked by which pass matched (title, then path
segment, then tag, then content), then by shallower path, then by most
recently updated.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .documents import DocumentRepository
from .errors import WikiError
from .types import PageMeta, timestamp_sort_key

logger = logging.getLogger(__name__)

TITLE, PATH, TAG, CONTENT = range(4)

PageLister = Callable[[], Awaitable[list[PageMeta]]]


class SearchEngine:
    """Ranked live search."""

    def __init__(self, documents: DocumentRepository, list_pages: PageLister):
        self._documents = documents
        self._list_pages = list_pages

    async def _content_matches(self, pages: list[PageMeta], needle: str) -> list[PageMeta]:
        async def check(page: PageMeta) -> Optional[PageMeta]:
            try:
                doc = await self._documents.get(page.path)
            except WikiError as e:
                logger.warning("Skipping %s in content search: %s", page.path, e)
                return None
            return page if needle in doc.content.lower() else None

        found = await asyncio.gather(*(check(p) for p in pages))
        return [p for p in found if p is not None]

    async def search(self, query: str) -> list[PageMeta]:
        """Pages matching ``query`` (case-insensitive), best first."""
        needle = query.strip().lower()
        if not needle:
            return []

        pages = await self._list_pages()
        ranked: dict[str, tuple[int, PageMeta]] = {}

        def take(bucket: int, predicate) -> None:
            for page in pages:
                if page.path not in ranked and predicate(page):
                    ranked[page.path] = (bucket, page)

        take(TITLE, lambda p: needle in p.title.lower())
        take(PATH, lambda p: any(needle in seg.lower() for seg in p.path.split("/")))
        take(TAG, lambda p: any(needle in t.lower() for t in p.tags))

        remaining = [p for p in pages if p.path not in ranked]
        for page in await self._content_matches(remaining, needle):
            ranked[page.path] = (CONTENT, page)

        ordered = sorted(
            ranked.values(),
            key=lambda bp: (bp[0], bp[1].depth, -timestamp_sort_key(bp[1].updated_at)),
        )
        return [page for _, page in ordered]

    async def search_in_folder(self, query: str, folder: str) -> list[PageMeta]:
        """
        Title, tag or content matches under ``folder``. Exact title matches
        come first, then most recently updated.
        """
        needle = query.strip().lower()
        if not needle:
            return []
        prefix = folder.rstrip("/") + "/" if folder else ""
        pages = [p for p in await self._list_pages() if p.path.startswith(prefix)]

        hits = [
            p for p in pages
            if needle in p.title.lower() or any(needle in t.lower() for t in p.tags)
        ]
        seen = {p.path for p in hits}
        hits.extend(await self._content_matches([p for p in pages if p.path not in seen], needle))

        return sorted(
            hits,
            key=lambda p: (p.title.lower() != needle, -timestamp_sort_key(p.updated_at)),
        )

    async def pages_by_tag(self, tag: str) -> list[PageMeta]:
        wanted = tag.strip().lower()
        pages = [p for p in await self._list_pages() if any(t.lower() == wanted for t in p.tags)]
        return sorted(pages, key=lambda p: -timestamp_sort_key(p.updated_at))

    async def all_tags(self) -> list[str]:
        tags = set()
        for page in await self._list_pages():
            tags.update(page.tags)
        return sorted(tags)
