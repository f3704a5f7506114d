"""
The Wiki facade.

Wires one object store, one retry policy and one set of caches into the
repositories, index, reference tracker and search engine. Nothing here is
global: two ``Wiki`` instances on two stores share no state.

Reads go through the caches; every write invalidates what it could have
made stale. Cached results are handed out as copies. Use as an async
context manager to start and stop the
background cache maintenance::

    async with Wiki(settings) as wiki:
        doc = await wiki.create_page("guide/intro.md", "# Intro\\n")
"""

import logging
import time
from pathlib import Path
from typing import Callable, Optional

from .attachments import AttachmentRepository
from .backend import create_store
from .cache import ConfigCache, FileCache, MemoryManager, PageCache, PrefetchQueue
from .config import WikiSettings
from .documents import DocumentRepository
from .errors import IndexUnreadable, WikiError
from .hierarchy import build_hierarchy
from .index import JsonIndex, MetadataIndexManager
from .logging_config import configure_ops_log
from .protocol import ObjectStoreProtocol
from .references import ReferenceTracker
from .retry import RetryPolicy
from .search import SearchEngine
from .site_config import SiteConfig, SiteConfigService
from .types import (
    Attachment,
    DeletionCheck,
    DeletionResult,
    Document,
    FileUsageStats,
    PageMeta,
    PageNode,
)

logger = logging.getLogger(__name__)


class Wiki:
    """A markdown wiki on an object store."""

    def __init__(
        self,
        settings: Optional[WikiSettings] = None,
        *,
        store: Optional[ObjectStoreProtocol] = None,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
        ops_log_dir: Optional[str | Path] = None,
    ):
        """
        Args:
            settings: Client settings; defaults to an in-memory store
            store: Injected object store (skips backend creation)
            policy: Injected retry policy (tests pass one with a no-op sleep)
            clock: Monotonic clock for cache expiry
            ops_log_dir: Directory for the rotating operations log
        """
        self.settings = settings or WikiSettings()
        self.store = store if store is not None else create_store(self.settings)
        self.policy = policy or RetryPolicy.from_config(self.settings.retry)

        layout = self.settings.layout
        idx = self.settings.index
        self.index = MetadataIndexManager.for_store(
            self.store, layout.index_key, self.policy,
            max_attempts=idx.max_attempts, backoff=idx.backoff,
        )
        files_index = JsonIndex(
            self.store, layout.files_index_key,
            collection="files", key_field="id",
            policy=self.policy, max_attempts=idx.max_attempts, backoff=idx.backoff,
        )
        self.documents = DocumentRepository(
            self.store, self.policy,
            index=self.index,
            prefix=layout.pages_prefix,
            extension=layout.content_extension,
            author=self.settings.author,
        )
        self.attachments = AttachmentRepository(
            self.store, self.policy,
            index=files_index,
            prefix=layout.files_prefix,
            max_file_size=self.settings.limits.max_file_size,
        )
        self.references = ReferenceTracker(self.documents, self.attachments)
        self.documents.reference_tracker = self.references
        self.attachments.reference_tracker = self.references
        self.search_engine = SearchEngine(self.documents, self.list_pages)

        c = self.settings.cache
        self.page_cache = PageCache(
            max_size=c.page_max_size, page_ttl=c.page_ttl, list_ttl=c.list_ttl,
            hierarchy_ttl=c.hierarchy_ttl, sweep_interval=c.sweep_interval, clock=clock,
        )
        self.file_cache = FileCache(
            max_size=c.file_max_size, file_ttl=c.file_ttl, url_ttl=c.url_ttl,
            sweep_interval=c.sweep_interval, clock=clock,
        )
        self.config_cache = ConfigCache(
            max_size=c.config_max_size, ttl=c.config_ttl,
            sweep_interval=c.sweep_interval, clock=clock,
        )
        self.site = SiteConfigService(
            self.store, self.policy, key=layout.site_config_key, cache=self.config_cache,
        )
        self.prefetcher = PrefetchQueue(c.prefetch_concurrency)
        self.memory = MemoryManager(
            [self.page_cache, self.file_cache, self.config_cache],
            threshold=c.memory_threshold,
            check_interval=c.memory_check_interval,
        )

        self._ops_log_handler = configure_ops_log(ops_log_dir) if ops_log_dir else None

    # -- pages ------------------------------------------------------------

    async def get_page(self, path: str) -> Document:
        cached = self.page_cache.get_page(path)
        if cached is not None:
            return cached
        doc = await self.documents.get(path)
        self.page_cache.set_page(path, doc)
        return doc

    async def create_page(self, path: str, content: str, *, author: Optional[str] = None) -> Document:
        doc = await self.documents.create(path, content, author=author)
        self.page_cache.invalidate_page(path)
        self.page_cache.set_page(path, doc)
        return doc

    async def update_page(
        self,
        path: str,
        content: str,
        expected_version_token: str,
        *,
        author: Optional[str] = None,
    ) -> Document:
        self.page_cache.invalidate_page(path)
        doc = await self.documents.update(path, content, expected_version_token, author=author)
        self.page_cache.set_page(path, doc)
        return doc

    async def delete_page(self, path: str) -> DeletionResult:
        result = await self.documents.delete(path)
        self.page_cache.invalidate_page(path)
        return result

    async def validate_page_deletion(self, path: str) -> DeletionCheck:
        return await self.references.check_page_deletion(path)

    async def list_pages(self, prefix: str = "") -> list[PageMeta]:
        """
        Page summaries under ``prefix``: from the cache, else the metadata
        index, else a live scan of the store. An unreadable index is rebuilt
        from the scan.
        """
        cached = self.page_cache.get_list(prefix)
        if cached is not None:
            return cached
        try:
            index, token = await self.index.read()
        except IndexUnreadable:
            logger.warning("Metadata index unreadable, rebuilding from a page scan")
            pages = await self.documents.scan()
            try:
                await self.index.rebuild(pages)
            except WikiError as e:
                logger.warning("Could not rebuild %s: %s", self.index.key, e)
            pages = [p for p in pages if p.path.startswith(prefix)]
        else:
            if token is None:
                logger.info("No metadata index, scanning pages")
                pages = await self.documents.scan(prefix)
            else:
                pages = [p for p in index.pages if p.path.startswith(prefix)]
        self.page_cache.set_list(prefix, pages)
        return pages

    async def get_hierarchy(self) -> list[PageNode]:
        cached = self.page_cache.get_hierarchy()
        if cached is not None:
            return cached
        tree = build_hierarchy(await self.list_pages(), self.documents.extension)
        self.page_cache.set_hierarchy(tree)
        return tree

    def prefetch_page(self, path: str) -> bool:
        """Warm the page cache in the background. Returns False if already queued."""
        if self.page_cache.get_page(path) is not None:
            return False
        return self.prefetcher.prefetch(f"page:{path}", lambda: self.get_page(path))

    # -- search -----------------------------------------------------------

    async def search(self, query: str) -> list[PageMeta]:
        return await self.search_engine.search(query)

    async def search_in_folder(self, query: str, folder: str) -> list[PageMeta]:
        return await self.search_engine.search_in_folder(query, folder)

    async def pages_by_tag(self, tag: str) -> list[PageMeta]:
        return await self.search_engine.pages_by_tag(tag)

    async def all_tags(self) -> list[str]:
        return await self.search_engine.all_tags()

    # -- files ------------------------------------------------------------

    async def upload_file(self, filename: str, data: bytes, content_type: Optional[str] = None) -> Attachment:
        attachment = await self.attachments.upload(filename, data, content_type)
        self.file_cache.invalidate_file(attachment.id)
        return attachment

    async def list_files(self) -> list[Attachment]:
        cached = self.file_cache.get_files()
        if cached is not None:
            return cached
        files = await self.attachments.list()
        self.file_cache.set_files(files)
        return files

    async def file_info(self, file_id: str) -> Attachment:
        return await self.attachments.get_info(file_id)

    def file_url(self, file_id: str) -> str:
        url = self.file_cache.get_url(file_id)
        if url is None:
            url = self.attachments.get_url(file_id)
            self.file_cache.set_url(file_id, url)
        return url

    async def delete_file(self, file_id: str) -> None:
        await self.attachments.delete(file_id)
        self.file_cache.invalidate_file(file_id)

    async def page_attachments(self, path: str) -> list[Attachment]:
        return await self.references.attachments_for_page(path)

    async def pages_referencing_file(self, file_id: str) -> list[PageMeta]:
        return await self.references.pages_referencing(file_id)

    async def find_orphaned_files(self) -> list[Attachment]:
        return await self.references.find_all_orphans()

    async def delete_orphaned_files(self, file_ids: list[str]) -> list[str]:
        deleted = await self.references.delete_orphans(file_ids)
        for file_id in deleted:
            self.file_cache.invalidate_file(file_id)
        return deleted

    async def file_usage_stats(self) -> FileUsageStats:
        return await self.attachments.usage_stats()

    # -- site -------------------------------------------------------------

    async def get_site_config(self) -> SiteConfig:
        return await self.site.load()

    async def initialize(self) -> None:
        """Write default site config and an empty index if they are missing."""
        if not await self.site.exists():
            await self.site.save(SiteConfig())
            logger.info("Wrote default site config")
        await self.index.ensure()

    async def rebuild_index(self) -> int:
        """Replace the metadata index with a live scan. Returns the new index version."""
        pages = await self.documents.scan()
        version = await self.index.rebuild(pages)
        self.page_cache.invalidate_listings()
        return version

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        """Start periodic cache sweeps and memory checks. Needs a running loop."""
        for cache in (self.page_cache, self.file_cache, self.config_cache):
            cache.start()
        self.memory.start()

    def cache_stats(self) -> dict:
        return {
            "pages": self.page_cache.stats(),
            "files": self.file_cache.stats(),
            "config": self.config_cache.stats(),
            "prefetch": self.prefetcher.status(),
            "estimated_memory": self.memory.estimated_usage(),
        }

    async def close(self) -> None:
        """Stop background tasks and release the store."""
        await self.prefetcher.close()
        await self.memory.close()
        for cache in (self.page_cache, self.file_cache, self.config_cache):
            await cache.close()
        await self.store.close()

        # Remove ops log handler to avoid handler accumulation
        if self._ops_log_handler is not None:
            logging.getLogger("blobwiki").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False
