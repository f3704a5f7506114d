"""Tests for the Wiki facade: caching, index fallback and lifecycle."""

import logging

import pytest

from blobwiki import Wiki, WikiSettings
from blobwiki.errors import EditConflict, NotFound
from blobwiki.logging_config import OPS_LOG_FILENAME


class TestScenario:

    @pytest.mark.asyncio
    async def test_page_lifecycle_with_attachment(self, wiki):
        img = await wiki.upload_file("img.png", b"\x89PNG....")

        doc = await wiki.create_page("a/b.md", "# Hello\ntext")
        assert doc.title == "Hello"
        assert doc.version == 1
        v1_token = doc.version_token

        updated = await wiki.update_page("a/b.md", "# Hello\n![x](img.png)", v1_token)
        assert updated.version == 2
        assert updated.version_token != v1_token

        with pytest.raises(EditConflict) as exc:
            await wiki.update_page("a/b.md", "# Other", v1_token)
        assert exc.value.conflict_data.title == "Hello"
        assert exc.value.conflict_data.version == 2

        check = await wiki.validate_page_deletion("a/b.md")
        assert check.can_delete
        assert [f.id for f in check.orphaned_files] == [img.id]

        result = await wiki.delete_page("a/b.md")
        assert [f.original_filename for f in result.orphaned_files] == ["img.png"]
        assert result.confirmation_required

        with pytest.raises(NotFound):
            await wiki.get_page("a/b.md")
        assert await wiki.list_pages() == []
        assert [f.id for f in await wiki.find_orphaned_files()] == [img.id]
        assert await wiki.delete_orphaned_files([img.id]) == [img.id]
        assert await wiki.list_files() == []


class TestCaching:

    @pytest.mark.asyncio
    async def test_page_reads_cached(self, wiki, store):
        await wiki.create_page("a.md", "# A")
        before = store.calls["get"]
        await wiki.get_page("a.md")
        await wiki.get_page("a.md")
        assert store.calls["get"] == before

    @pytest.mark.asyncio
    async def test_cached_page_expires(self, wiki, store, clock):
        await wiki.create_page("a.md", "# A")
        clock.advance(wiki.settings.cache.page_ttl)
        before = store.calls["get"]
        await wiki.get_page("a.md")
        assert store.calls["get"] == before + 1

    @pytest.mark.asyncio
    async def test_write_invalidates_listing(self, wiki):
        await wiki.create_page("a.md", "# A")
        assert [p.path for p in await wiki.list_pages()] == ["a.md"]
        await wiki.create_page("b.md", "# B")
        assert [p.path for p in await wiki.list_pages()] == ["a.md", "b.md"]
        tree = await wiki.get_hierarchy()
        assert [n.path for n in tree] == ["a.md", "b.md"]

    @pytest.mark.asyncio
    async def test_mutating_results_does_not_touch_cache(self, wiki):
        await wiki.create_page("a.md", "# A\nbody")
        page = await wiki.get_page("a.md")
        page.content = "changed"
        page.metadata.tags.append("x")
        (await wiki.list_pages()).clear()
        (await wiki.get_hierarchy()).clear()
        again = await wiki.get_page("a.md")
        assert again.content == "# A\nbody"
        assert again.metadata.tags == []
        assert [p.path for p in await wiki.list_pages()] == ["a.md"]
        assert [n.path for n in await wiki.get_hierarchy()] == ["a.md"]

    @pytest.mark.asyncio
    async def test_file_listing_invalidated_by_upload(self, wiki):
        assert await wiki.list_files() == []
        att = await wiki.upload_file("notes.txt", b"hi")
        assert [f.id for f in await wiki.list_files()] == [att.id]
        assert wiki.file_url(att.id).endswith(att.id)
        await wiki.delete_file(att.id)
        assert await wiki.list_files() == []

    @pytest.mark.asyncio
    async def test_prefetch_warms_cache(self, wiki, store):
        await wiki.create_page("a.md", "# A")
        wiki.page_cache.invalidate_page("a.md")
        assert wiki.prefetch_page("a.md")
        await wiki.prefetcher.drain()
        before = store.calls["get"]
        await wiki.get_page("a.md")
        assert store.calls["get"] == before
        assert not wiki.prefetch_page("a.md")

    @pytest.mark.asyncio
    async def test_cache_stats(self, wiki):
        await wiki.create_page("a.md", "# A")
        await wiki.get_page("a.md")
        stats = wiki.cache_stats()
        assert stats["pages"]["hits"] == 1
        assert stats["prefetch"]["queued"] == 0
        assert stats["estimated_memory"] > 0


class TestIndexMaintenance:

    @pytest.mark.asyncio
    async def test_missing_index_falls_back_to_scan(self, store, policy, clock):
        first = Wiki(store=store, policy=policy, clock=clock)
        await first.create_page("x/y.md", "# Y")
        await store.delete(first.settings.layout.index_key)

        second = Wiki(store=store, policy=policy, clock=clock)
        pages = await second.list_pages()
        assert [(p.path, p.title) for p in pages] == [("x/y.md", "Y")]

    @pytest.mark.asyncio
    async def test_corrupt_index_keeps_every_page_listed(self, store, policy, clock):
        first = Wiki(store=store, policy=policy, clock=clock)
        for name in ("a.md", "b.md", "c.md"):
            await first.create_page(name, f"# {name}")
        index_key = first.settings.layout.index_key
        await store.put(index_key, b"{not json")

        second = Wiki(store=store, policy=policy, clock=clock)
        doc = await second.create_page("d.md", "# D")
        assert doc.version == 1
        assert (await store.get(index_key)).body == b"{not json"

        pages = await second.list_pages()
        assert [p.path for p in pages] == ["a.md", "b.md", "c.md", "d.md"]
        index, _ = await second.index.read()
        assert [p.path for p in index.pages] == ["a.md", "b.md", "c.md", "d.md"]

        await second.create_page("e.md", "# E")
        assert len(await second.list_pages()) == 5

    @pytest.mark.asyncio
    async def test_rebuild_index(self, wiki, store):
        await wiki.create_page("a.md", "# A")
        await wiki.create_page("b.md", "# B")
        await store.delete(wiki.settings.layout.index_key)
        assert await wiki.rebuild_index() == 1
        index, _ = await wiki.index.read()
        assert [p.path for p in index.pages] == ["a.md", "b.md"]

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, wiki, store):
        await wiki.initialize()
        await wiki.initialize()
        assert wiki.settings.layout.site_config_key in store
        assert wiki.settings.layout.index_key in store
        config = await wiki.get_site_config()
        assert config.title == "blobwiki"

    @pytest.mark.asyncio
    async def test_search_through_facade(self, wiki):
        await wiki.create_page("guide/deploy.md", "# Deploy\ntags: ops\nnotes")
        await wiki.create_page("other.md", "# Other\nmentions deploy")
        assert [p.path for p in await wiki.search("deploy")] == ["guide/deploy.md", "other.md"]
        assert [p.path for p in await wiki.pages_by_tag("OPS")] == ["guide/deploy.md"]
        assert await wiki.all_tags() == ["ops"]


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_context_manager(self, store, policy):
        async with Wiki(store=store, policy=policy) as wiki:
            await wiki.create_page("a.md", "# A")
            assert wiki.page_cache._sweeper.running
        assert not wiki.page_cache._sweeper.running

    @pytest.mark.asyncio
    async def test_two_wikis_share_nothing(self, policy):
        one = Wiki(policy=policy)
        two = Wiki(policy=policy)
        await one.create_page("a.md", "# A")
        assert await two.list_pages() == []
        await one.close()
        await two.close()

    @pytest.mark.asyncio
    async def test_ops_log(self, tmp_path, store, policy):
        wiki = Wiki(WikiSettings(author="ann"), store=store, policy=policy, ops_log_dir=tmp_path)
        await wiki.create_page("a.md", "# A")
        await wiki.close()
        assert "a.md" in (tmp_path / OPS_LOG_FILENAME).read_text()
        assert wiki._ops_log_handler is None
        assert not any(
            getattr(h, "baseFilename", "").endswith(OPS_LOG_FILENAME)
            for h in logging.getLogger("blobwiki").handlers
        )
