"""Tests for the index lifecycle: builds, cache restore, updates, embeddings, search."""
from __future__ import annotations

import asyncio

import pytest

from vaultrecall.indexer.cache import CACHE_KEY
from vaultrecall.indexer.idle import ActivityMonitor
from vaultrecall.indexer.manager import IndexManager
from vaultrecall.store.vector_store import METADATA_KEY

from conftest import SAMPLE_VAULT, FakeEmbedder, InMemorySource, SlowEmbedder


def chunk_set(manager: IndexManager):
    return sorted((c.id, c.content, c.start_line, c.end_line, c.heading) for c in manager.chunks.values())


@pytest.fixture
def manager(cfg, source, store, embedder) -> IndexManager:
    return IndexManager(cfg, source, store, embedder=embedder)


class TestBuild:
    """Tests for full builds."""

    @pytest.mark.asyncio
    async def test_build_indexes_eligible_files(self, manager):
        progress = []
        stats = await manager.build_index(on_progress=lambda d, t: progress.append((d, t)))
        assert manager.is_built
        assert not manager.is_indexing
        assert stats.files_indexed == 4
        assert "Archive/Old.md" not in manager.file_hashes
        assert all(not c.file_path.startswith("Archive/") for c in manager.chunks.values())
        assert progress[-1] == (4, 4)
        assert manager.lexical.document_count == len(manager.chunks)

    @pytest.mark.asyncio
    async def test_search_before_build_is_empty(self, manager):
        assert await manager.search("retrieval") == []

    @pytest.mark.asyncio
    async def test_concurrent_build_is_rejected(self, manager):
        manager._indexing = True
        assert await manager.build_index() is None
        assert not manager.is_built

    @pytest.mark.asyncio
    async def test_failed_build_keeps_previous_index(self, manager, source, monkeypatch):
        await manager.build_index()
        before = chunk_set(manager)

        def boom(*args, **kwargs):
            raise RuntimeError("chunker exploded")

        monkeypatch.setattr(manager._chunker, "chunk", boom)
        with pytest.raises(RuntimeError):
            await manager.build_index()
        assert chunk_set(manager) == before
        assert not manager.is_indexing

    @pytest.mark.asyncio
    async def test_unreadable_file_is_skipped(self, manager, source, monkeypatch):
        real = source.read_cached

        def flaky(path):
            if path == "Projects/Beta.md":
                raise OSError("permission denied")
            return real(path)

        monkeypatch.setattr(source, "read_cached", flaky)
        stats = await manager.build_index()
        assert stats.files_indexed == 3
        assert "Projects/Beta.md" not in manager.file_hashes

    @pytest.mark.asyncio
    async def test_clear_index(self, manager):
        await manager.build_index()
        manager.clear_index()
        assert not manager.is_built
        assert manager.lexical.document_count == 0
        assert await manager.search("alpha") == []


class TestCacheRestore:
    """Tests for restoring from the persisted index cache."""

    @pytest.mark.asyncio
    async def test_no_cache(self, manager):
        assert await manager.build_index_from_cache() == -1

    @pytest.mark.asyncio
    async def test_restore_matches_full_build(self, cfg, source, store, manager):
        await manager.build_index()
        manager.save_index_cache()
        expected = chunk_set(manager)

        restored = IndexManager(cfg, source, store)
        source.fresh_reads.clear()
        assert await restored.build_index_from_cache() == 0
        assert chunk_set(restored) == expected
        assert restored.is_built
        assert source.fresh_reads == []

    @pytest.mark.asyncio
    async def test_changed_and_deleted_files(self, cfg, source, store, manager):
        await manager.build_index()
        manager.save_index_cache()

        source.write("Projects/Beta.md", "# Beta\n\nRewritten completely.\n")
        source.delete("Journal/2024-01-01.md")
        source.write("New.md", "# New\n\nBrand new note.\n")

        restored = IndexManager(cfg, source, store)
        assert await restored.build_index_from_cache() == 3
        assert "Journal/2024-01-01.md" not in restored.file_hashes
        assert "Projects/Beta.md" in source.fresh_reads
        assert "New.md" in source.fresh_reads

        full = IndexManager(cfg, source, store)
        await full.build_index()
        assert chunk_set(restored) == chunk_set(full)

    @pytest.mark.asyncio
    async def test_settings_mismatch(self, cfg, source, store, manager):
        await manager.build_index()
        manager.save_index_cache()
        other = IndexManager(cfg.update(chunk_max_tokens=256), source, store)
        assert await other.build_index_from_cache() == -1

    @pytest.mark.asyncio
    async def test_corrupt_cache(self, manager, store):
        store.write_json(CACHE_KEY, {"version": 1, "files": "nope"})
        assert manager.load_index_cache() is None
        assert await manager.build_index_from_cache() == -1

    @pytest.mark.asyncio
    async def test_restore_drops_vectors_of_changed_files(self, cfg, source, store, manager):
        await manager.build_index()
        await manager.initialize_embedding()
        await manager.build_embedding_index()
        manager.save_index_cache()
        beta_ids = [c for c in manager.chunks if c.startswith("Projects/Beta.md::")]

        source.write("Projects/Beta.md", "# Beta\n\nDifferent now.\n")
        restored = IndexManager(cfg, source, store, embedder=FakeEmbedder())
        await restored.initialize_embedding()
        await restored.load_vector_store()
        await restored.build_index_from_cache()
        assert beta_ids
        assert not any(restored.vector_store.has(c) for c in beta_ids)
        assert restored.vector_store.has("Projects/Alpha.md::0")

    @pytest.mark.asyncio
    async def test_restore_before_initialize_still_drops_vectors(self, cfg, source, store, manager):
        await manager.build_index()
        await manager.initialize_embedding()
        await manager.build_embedding_index()
        await manager.close()

        source.write("Projects/Beta.md", "# Beta\n\nDifferent now.\n")
        restored = IndexManager(cfg, source, store, embedder=FakeEmbedder())
        assert await restored.build_index_from_cache() == 1
        await restored.initialize_embedding()
        await restored.load_vector_store()
        assert not restored.vector_store.has("Projects/Beta.md::0")
        assert restored.vector_store.has("Projects/Alpha.md::0")

        assert await restored.build_embedding_index() == 1
        assert restored.embedder.batches == [["# Beta\n\nDifferent now."]]

    @pytest.mark.asyncio
    async def test_full_rebuild_drops_vectors_of_files_changed_offline(self, cfg, source, store, manager):
        await manager.build_index()
        await manager.initialize_embedding()
        await manager.build_embedding_index()
        await manager.close()

        source.write("Projects/Beta.md", "# Beta\n\nDifferent now.\n")
        rebuilt = IndexManager(cfg, source, store, embedder=FakeEmbedder())
        await rebuilt.build_index()
        assert not rebuilt.vector_store.has("Projects/Beta.md::0")
        assert rebuilt.vector_store.has("Projects/Alpha.md::0")

    @pytest.mark.asyncio
    async def test_new_chunk_settings_drop_all_vectors(self, cfg, source, store, manager):
        await manager.build_index()
        await manager.initialize_embedding()
        await manager.build_embedding_index()
        await manager.close()

        rebuilt = IndexManager(cfg.update(chunk_strategy="paragraph"), source, store, embedder=FakeEmbedder())
        await rebuilt.build_index()
        assert len(rebuilt.vector_store) == 0


class TestIncrementalUpdates:
    """Tests for per-file updates and removals."""

    @pytest.mark.asyncio
    async def test_unchanged_file_is_noop(self, manager):
        await manager.build_index()
        await manager.initialize_embedding()
        await manager.build_embedding_index()
        docs, vectors = manager.lexical.document_count, len(manager.vector_store)
        assert await manager.update_file("Projects/Alpha.md") is False
        assert manager.lexical.document_count == docs
        assert len(manager.vector_store) == vectors

    @pytest.mark.asyncio
    async def test_changed_file_replaces_chunks_and_vectors(self, manager, source):
        await manager.build_index()
        await manager.initialize_embedding()
        await manager.build_embedding_index()
        source.write("Projects/Alpha.md", "# Alpha\n\nNow about compilers.\n")
        assert await manager.update_file("Projects/Alpha.md") is True
        alpha = [c for c in manager.chunks.values() if c.file_path == "Projects/Alpha.md"]
        assert [c.content for c in alpha] == ["# Alpha\n\nNow about compilers."]
        assert not manager.vector_store.has("Projects/Alpha.md::0")
        results = await manager.search("compilers", min_score=0.01)
        assert results[0].chunk.file_path == "Projects/Alpha.md"

    @pytest.mark.asyncio
    async def test_update_ignored_when_excluded_or_unbuilt(self, manager, source):
        assert await manager.update_file("Projects/Alpha.md") is False
        await manager.build_index()
        source.write("Archive/Old.md", "changed")
        assert await manager.update_file("Archive/Old.md") is False
        assert await manager.update_file("Missing.md") is False

    @pytest.mark.asyncio
    async def test_remove_file(self, manager):
        await manager.build_index()
        manager.remove_file("Projects/Beta.md")
        assert "Projects/Beta.md" not in manager.file_hashes
        assert all(c.file_path != "Projects/Beta.md" for c in manager.chunks.values())
        assert manager.proximity.link_score("Projects/Alpha.md", "Projects/Beta.md") == 0.0
        manager.remove_file("never-indexed.md")

    @pytest.mark.asyncio
    async def test_debounce_coalesces(self, manager, source, monkeypatch):
        await manager.build_index()
        calls = []
        real = manager.update_file

        async def counting(path):
            calls.append(path)
            return await real(path)

        monkeypatch.setattr(manager, "update_file", counting)
        source.write("Projects/Beta.md", "# Beta\n\nfirst\n")
        manager.debounced_update("Projects/Beta.md")
        source.write("Projects/Beta.md", "# Beta\n\nsecond edit\n")
        manager.debounced_update("Projects/Beta.md")
        await asyncio.sleep(0.1)

        assert calls == ["Projects/Beta.md"]
        beta = [c.content for c in manager.chunks.values() if c.file_path == "Projects/Beta.md"]
        assert beta == ["# Beta\n\nsecond edit"]

    @pytest.mark.asyncio
    async def test_debounce_is_per_path(self, manager, source, monkeypatch):
        await manager.build_index()
        calls = []
        real = manager.update_file

        async def counting(path):
            calls.append(path)
            return await real(path)

        monkeypatch.setattr(manager, "update_file", counting)
        source.write("Projects/Alpha.md", "# Alpha\n\nAbout compilers now.\n")
        source.write("Projects/Beta.md", "# Beta\n\nAbout gardens now.\n")
        manager.debounced_update("Projects/Alpha.md")
        manager.debounced_update("Projects/Beta.md")
        await asyncio.sleep(0.1)

        assert sorted(calls) == ["Projects/Alpha.md", "Projects/Beta.md"]
        contents = {c.file_path: c.content for c in manager.chunks.values()}
        assert contents["Projects/Alpha.md"] == "# Alpha\n\nAbout compilers now."
        assert contents["Projects/Beta.md"] == "# Beta\n\nAbout gardens now."

    @pytest.mark.asyncio
    async def test_debounce_waits_for_running_build(self, manager, source):
        await manager.build_index()
        source.write("Projects/Beta.md", "# Beta\n\nEdited during a build.\n")
        manager._indexing = True
        manager.debounced_update("Projects/Beta.md")
        await asyncio.sleep(0.05)

        assert "Projects/Beta.md" in manager._update_tasks
        beta = [c.content for c in manager.chunks.values() if c.file_path == "Projects/Beta.md"]
        assert beta != ["# Beta\n\nEdited during a build."]

        manager._indexing = False
        await asyncio.sleep(0.1)
        beta = [c.content for c in manager.chunks.values() if c.file_path == "Projects/Beta.md"]
        assert beta == ["# Beta\n\nEdited during a build."]
        assert manager._update_tasks == {}

    @pytest.mark.asyncio
    async def test_debounce_swallows_errors(self, manager, monkeypatch):
        await manager.build_index()

        async def broken(path):
            raise RuntimeError("disk gone")

        monkeypatch.setattr(manager, "update_file", broken)
        manager.debounced_update("Projects/Beta.md")
        await asyncio.sleep(0.05)
        assert manager._update_tasks == {}


class TestEmbeddings:
    """Tests for the foreground embedding pass."""

    @pytest.mark.asyncio
    async def test_embeds_all_pending_and_persists(self, manager, store, embedder):
        await manager.build_index()
        assert await manager.initialize_embedding()
        progress = []
        n = await manager.build_embedding_index(on_progress=lambda d, t: progress.append((d, t)))
        assert n == len(manager.chunks)
        assert progress[-1] == (n, n)
        assert store.exists(METADATA_KEY)
        assert manager.get_stats().embedding_indexed == n
        assert manager.get_stats().embedding_total_tokens_used == n * 3

        progress.clear()
        assert await manager.build_embedding_index(on_progress=lambda d, t: progress.append((d, t))) == 0
        assert progress == [(0, 0)]

    @pytest.mark.asyncio
    async def test_failed_batches_are_skipped(self, cfg, source, store):
        emb = FakeEmbedder()
        mgr = IndexManager(cfg.update(embedding_batch_size=1), source, store, embedder=emb)
        await mgr.build_index()
        await mgr.initialize_embedding()

        real = emb.embed
        calls = {"n": 0}

        async def every_other(texts, *args, **kwargs):
            calls["n"] += 1
            if calls["n"] % 2 == 0:
                raise RuntimeError("flaky")
            return await real(texts, *args, **kwargs)

        emb.embed = every_other
        n = await mgr.build_embedding_index()
        assert 0 < n < len(mgr.chunks)
        assert not mgr.is_indexing

    @pytest.mark.asyncio
    async def test_model_change_clears_vectors(self, cfg, source, store, manager):
        await manager.build_index()
        await manager.initialize_embedding()
        await manager.build_embedding_index()

        other = IndexManager(cfg.update(embedding_model="other-model"), source, store, embedder=FakeEmbedder())
        await other.build_index()
        await other.initialize_embedding()
        await other.load_vector_store()
        # Old vectors are not mixed into searches before the rebuild
        results = await other.search("retrieval project", min_score=0.01)
        assert all(r.match_type == "lexical" for r in results)

        await other.build_embedding_index()
        assert other.vector_store.metadata.model == "other-model"
        assert len(other.vector_store) == len(other.chunks)

    @pytest.mark.asyncio
    async def test_file_removed_mid_batch_gets_no_vectors(self, cfg, source, store):
        emb = SlowEmbedder(delay=0.05)
        mgr = IndexManager(cfg, source, store, embedder=emb)
        await mgr.build_index()
        await mgr.initialize_embedding()

        task = asyncio.create_task(mgr.build_embedding_index())
        await asyncio.sleep(0.01)
        mgr.remove_file("Projects/Beta.md")
        n = await task

        ids = list(mgr.vector_store.metadata.chunk_to_shard)
        assert not any(cid.startswith("Projects/Beta.md::") for cid in ids)
        assert all(cid in mgr.chunks for cid in ids)
        assert n == len(mgr.chunks)
        assert mgr.get_stats().embedding_indexed == len(mgr.chunks)

    @pytest.mark.asyncio
    async def test_disabled_without_provider(self, cfg, source, store):
        mgr = IndexManager(cfg, source, store)
        assert await mgr.initialize_embedding() is False
        await mgr.build_index()
        assert await mgr.build_embedding_index() == 0


class TestAutoEmbedding:
    """Tests for background embedding on idle."""

    @pytest.mark.asyncio
    async def test_priority_files_first(self, cfg, source, store):
        mgr = IndexManager(cfg.update(auto_backlog_cap=0), source, store, embedder=FakeEmbedder())
        await mgr.build_index()
        await mgr.initialize_embedding()
        mgr._auto_enabled = True
        source.write("Journal/2024-01-01.md", "# New year\n\nComposting.\n")
        await mgr.update_file("Journal/2024-01-01.md")

        n = await mgr.run_auto_embed_batch()
        assert n == 1
        assert mgr.vector_store.has("Journal/2024-01-01.md::0")
        assert await mgr.run_auto_embed_batch() == 0

    @pytest.mark.asyncio
    async def test_backlog_cap(self, cfg, source, store):
        mgr = IndexManager(cfg.update(auto_backlog_cap=2), source, store, embedder=FakeEmbedder())
        await mgr.build_index()
        await mgr.initialize_embedding()
        mgr._auto_enabled = True
        assert await mgr.run_auto_embed_batch() == 2

    @pytest.mark.asyncio
    async def test_stops_at_first_failure(self, cfg, source, store):
        emb = FakeEmbedder()
        mgr = IndexManager(cfg, source, store, embedder=emb)
        await mgr.build_index()
        await mgr.initialize_embedding()
        mgr._auto_enabled = True
        emb.fail = True
        assert await mgr.run_auto_embed_batch() == 0
        assert len(emb.batches) == 0
        assert not mgr.is_indexing

    @pytest.mark.asyncio
    async def test_idle_timer_triggers_and_resets(self, cfg, source, store):
        activity = ActivityMonitor()
        emb = FakeEmbedder()
        mgr = IndexManager(cfg.update(idle_seconds=0.1), source, store, embedder=emb, idle_source=activity)
        await mgr.build_index()
        await mgr.initialize_embedding()
        mgr.start_auto_embedding()
        assert activity.listener_count == 1

        for _ in range(3):
            await asyncio.sleep(0.05)
            activity.notify()
        assert emb.batches == []

        await asyncio.sleep(0.3)
        assert emb.batches
        mgr.stop_auto_embedding()
        assert activity.listener_count == 0

    @pytest.mark.asyncio
    async def test_not_while_indexing(self, manager):
        await manager.build_index()
        await manager.initialize_embedding()
        manager._auto_enabled = True
        manager._indexing = True
        assert await manager.run_auto_embed_batch() == 0


class TestSearchAndFormatting:
    """Tests for search routing and the text formatters."""

    @pytest.mark.asyncio
    async def test_lexical_only_without_embeddings(self, cfg, source, store):
        mgr = IndexManager(cfg, source, store)
        await mgr.build_index()
        results = await mgr.search("tomato seedlings", min_score=0.01)
        assert results[0].chunk.file_path == "Journal/2024-01-01.md"
        assert results[0].match_type == "lexical"

    @pytest.mark.asyncio
    async def test_hybrid_with_embeddings(self, manager):
        await manager.build_index()
        await manager.initialize_embedding()
        await manager.build_embedding_index()
        results = await manager.search("tomato seedlings", min_score=0.01)
        assert results[0].chunk.file_path == "Journal/2024-01-01.md"
        assert results[0].match_type == "hybrid"

    @pytest.mark.asyncio
    async def test_embedder_failure_falls_back(self, manager, embedder):
        await manager.build_index()
        await manager.initialize_embedding()
        await manager.build_embedding_index()
        embedder.fail = True
        results = await manager.search("tomato seedlings", min_score=0.01)
        assert results and all(r.match_type == "lexical" for r in results)

    @pytest.mark.asyncio
    async def test_anchor_boosts_linked_notes(self, cfg, source, store):
        mgr = IndexManager(cfg, source, store)
        await mgr.build_index()
        anchor = source.get_document("Projects/Beta.md")
        results = await mgr.search("retrieval", min_score=0.0, anchor=anchor)
        assert results[0].chunk.file_path == "Projects/Alpha.md"
        assert "proximity_score" in results[0].metadata

    @pytest.mark.asyncio
    async def test_cjk_search(self, cfg, source, store):
        mgr = IndexManager(cfg, source, store)
        await mgr.build_index()
        results = await mgr.search("日本", min_score=0.01)
        assert [r.chunk.file_path for r in results] == ["日本語.md"]

    @pytest.mark.asyncio
    async def test_tool_output(self, cfg, source, store):
        mgr = IndexManager(cfg, source, store)
        await mgr.build_index()
        text = await mgr.execute_tool_search("tomato seedlings", top_k=1)
        lines = text.split("\n")
        assert lines[0] == 'Found 1 relevant sections for "tomato seedlings":'
        assert "### [[2024-01-01]] > New year" in text
        assert "Path: Journal/2024-01-01.md | Score: " in text
        assert "| Lines: 0-2" in text

        assert await mgr.execute_tool_search("zzzqqq") == "No relevant notes found for: zzzqqq"

    @pytest.mark.asyncio
    async def test_tool_caps_results(self, cfg, store):
        files = {f"n{i}.md": f"# N{i}\n\nshared topic words\n" for i in range(15)}
        mgr = IndexManager(cfg.update(top_k=50), InMemorySource(files), store)
        await mgr.build_index()
        text = await mgr.execute_tool_search("shared topic", top_k=50)
        assert text.startswith('Found 10 relevant sections')
        assert text.count("\n\n---\n\n") == 10

    @pytest.mark.asyncio
    async def test_build_context(self, cfg, source, store):
        mgr = IndexManager(cfg, source, store)
        await mgr.build_index()
        assert mgr.build_context([]) == ""
        results = await mgr.search("tomato seedlings", top_k=1, min_score=0.01)
        text = mgr.build_context(results)
        assert text.startswith("Relevant notes from vault (auto-retrieved by RAG):\n\n")
        assert "--- [[2024-01-01]] > New year (Journal/2024-01-01.md, score: " in text


class TestStatsAndClose:
    @pytest.mark.asyncio
    async def test_stats(self, manager):
        await manager.build_index()
        stats = manager.get_stats()
        assert stats.total_files == len(SAMPLE_VAULT)
        assert stats.indexed_files == 4
        assert stats.total_chunks == len(manager.chunks)
        assert stats.embedding_indexed == 0

    @pytest.mark.asyncio
    async def test_close_persists(self, manager, store):
        await manager.build_index()
        await manager.initialize_embedding()
        manager.debounced_update("Projects/Alpha.md")
        await manager.close()
        assert store.exists(CACHE_KEY)
        assert store.exists(METADATA_KEY)
        assert manager._update_tasks == {}

    @pytest.mark.asyncio
    async def test_close_never_raises(self, manager, monkeypatch):
        await manager.build_index()

        def broken():
            raise OSError("read-only")

        monkeypatch.setattr(manager, "save_index_cache", broken)
        await manager.close()

    @pytest.mark.asyncio
    async def test_update_settings_validates(self, manager):
        with pytest.raises(ValueError):
            manager.update_settings(chunk_strategy="sentences")
        cfg = manager.update_settings(top_k=3)
        assert cfg.top_k == 3
        assert manager.cfg.top_k == 3
