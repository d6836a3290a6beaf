"""Index lifecycle: build, restore, incremental updates, embeddings, search.

All state lives on one asyncio loop. Long loops hand control back with
`await asyncio.sleep(0)`; `_indexing` keeps rebuilds, per-file updates and
embedding passes from overlapping.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from ..chunking.markdown_chunker import MarkdownChunker
from ..config import VaultConfig
from ..embeddings.base import EmbeddingProvider
from ..errors import CacheFormatError, EmbeddingError
from ..hashing import content_hash
from ..models import Chunk, DocumentInfo, IndexStats, SearchResult
from ..retrieval.hybrid import HybridSearcher
from ..retrieval.lexical import LexicalIndex
from ..retrieval.proximity import ProximityConfig, ProximityScorer
from ..store.kv import KeyValueStore
from ..store.vector_store import VectorStore
from ..utils import is_excluded
from .cache import CACHE_KEY, CachedFile, IndexCache
from .idle import IdleSignalSource
from .source import DocumentSource

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

FILES_PER_YIELD = 50
MAX_TOOL_RESULTS = 10

CONTEXT_HEADER = "Relevant notes from vault (auto-retrieved by RAG):"
TOOL_HEADER = 'Found {count} relevant sections for "{query}":'
NO_RESULTS = "No relevant notes found for: {query}"


@dataclass(frozen=True)
class ScanStats:
    files_indexed: int
    chunks_created: int
    elapsed_seconds: float
    files_changed: int = 0


class IndexManager:
    """Owns the lexical index, the vector store and the link graph for one vault."""

    def __init__(
        self,
        cfg: VaultConfig,
        source: DocumentSource,
        kv: KeyValueStore,
        embedder: Optional[EmbeddingProvider] = None,
        idle_source: Optional[IdleSignalSource] = None,
    ):
        self.cfg = cfg
        self.source = source
        self.kv = kv
        self.embedder = embedder
        self.idle_source = idle_source

        self.lexical = LexicalIndex()
        self.vector_store = VectorStore(kv)
        self.hybrid = HybridSearcher(self.lexical, self.vector_store, embedder)
        self.proximity = ProximityScorer(source)
        self._chunker = MarkdownChunker(strategy=cfg.chunk_strategy, max_tokens=cfg.chunk_max_tokens)

        self._chunks: dict[str, Chunk] = {}
        self._file_hashes: dict[str, str] = {}
        self._built = False
        self._indexing = False
        self._last_updated = 0.0
        self._built_with: Optional[tuple[str, int]] = None

        self._embedding_enabled = False
        self._model = cfg.embedding_model
        self._dimensions = 0
        self._api_key = cfg.api_key()

        self._update_tasks: dict[str, asyncio.Task] = {}

        self._auto_enabled = False
        self._auto_api_key: Optional[str] = None
        self._priority_files: dict[str, None] = {}
        self._idle_task: Optional[asyncio.Task] = None
        self._unsubscribe_idle: Optional[Callable[[], None]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @classmethod
    def from_config(cls, cfg: VaultConfig, idle_source: Optional[IdleSignalSource] = None) -> "IndexManager":
        """Wire a manager over the vault directory and a JSON index directory."""
        from ..embeddings import create_embedding_provider
        from ..store.kv import JsonFileStore
        from .source import VaultSource

        embedder = create_embedding_provider(cfg) if cfg.embedding_enabled else None
        return cls(
            cfg,
            VaultSource(cfg.vault_root, cfg.extensions),
            JsonFileStore(cfg.index_dir),
            embedder=embedder,
            idle_source=idle_source,
        )

    # --- state ---

    @property
    def is_built(self) -> bool:
        return self._built

    @property
    def is_indexing(self) -> bool:
        return self._indexing

    @property
    def embedding_enabled(self) -> bool:
        return self._embedding_enabled

    @property
    def auto_embedding_enabled(self) -> bool:
        return self._auto_enabled

    @property
    def chunks(self) -> Mapping[str, Chunk]:
        return MappingProxyType(self._chunks)

    @property
    def file_hashes(self) -> Mapping[str, str]:
        return MappingProxyType(self._file_hashes)

    @property
    def model(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def is_excluded(self, path: str) -> bool:
        return is_excluded(path, self.cfg.exclude_folders)

    def _eligible_documents(self) -> list[DocumentInfo]:
        return [d for d in self.source.list_documents() if not self.is_excluded(d.path)]

    def _install(self, lexical: LexicalIndex, chunks: dict[str, Chunk], hashes: dict[str, str]) -> None:
        """Swap freshly built state in as one step."""
        self.lexical = lexical
        self.hybrid.lexical = lexical
        self._chunks = chunks
        self._file_hashes = hashes
        self._built = True
        self._built_with = (self.cfg.chunk_strategy, self.cfg.chunk_max_tokens)
        self._last_updated = time.time()

    def _drop_file_chunks(self, path: str) -> None:
        for chunk_id in [cid for cid, c in self._chunks.items() if c.file_path == path]:
            del self._chunks[chunk_id]

    # --- building ---

    async def build_index(self, on_progress: Optional[ProgressCallback] = None) -> Optional[ScanStats]:
        """Re-chunk every eligible document and replace the index.

        Returns None without doing anything if another build is running. The
        previous index stays in place until the new one is complete.
        """
        if self._indexing:
            logger.debug("build_index skipped: indexing in progress")
            return None
        self._indexing = True
        start = time.time()
        try:
            await self._ensure_vector_metadata()
            previous = self._previous_hashes()
            docs = self._eligible_documents()
            total = len(docs)
            hashes: dict[str, str] = {}
            all_chunks: list[Chunk] = []

            for i, doc in enumerate(docs):
                try:
                    text = self.source.read_cached(doc.path)
                except (OSError, ValueError) as e:
                    logger.warning(f"Skipping unreadable {doc.path}: {e}")
                    continue
                hashes[doc.path] = content_hash(text)
                all_chunks.extend(self._chunker.chunk(doc.path, doc.basename, text))

                if on_progress:
                    on_progress(i + 1, total)
                if (i + 1) % FILES_PER_YIELD == 0:
                    await asyncio.sleep(0)

            lexical = LexicalIndex()
            await lexical.add_chunks_async(all_chunks)
            chunks = {c.id: c for c in all_chunks}

            self._install(lexical, chunks, hashes)
            self._prune_vectors(previous)
            self.proximity.build_graph()

            stats = ScanStats(
                files_indexed=len(hashes),
                chunks_created=len(all_chunks),
                elapsed_seconds=time.time() - start,
            )
            logger.info(
                f"Index built: {stats.files_indexed} files, {stats.chunks_created} chunks "
                f"in {stats.elapsed_seconds:.2f}s"
            )
            return stats
        finally:
            self._indexing = False

    def _prune_vectors(self, previous_hashes: Mapping[str, str]) -> None:
        """Forget vectors of files whose content changed or whose chunks are gone."""
        if len(self.vector_store) == 0:
            return
        for path, old in previous_hashes.items():
            if self._file_hashes.get(path) != old:
                self.vector_store.remove_by_file(path)
        orphans = [cid for cid in self.vector_store.metadata.chunk_to_shard if cid not in self._chunks]
        for chunk_id in orphans:
            self.vector_store.remove(chunk_id)
        if orphans:
            logger.debug(f"Dropped {len(orphans)} vectors without a chunk")

    async def _ensure_vector_metadata(self) -> None:
        # Pruning works on the persisted id map
        if self.embedder is not None and not self.vector_store.metadata_loaded:
            await self.vector_store.load_metadata()

    def _previous_hashes(self) -> dict[str, str]:
        """File hashes the stored vectors were embedded from.

        Before the first build of a session these come from the saved index
        cache. An empty hash marks a file whose chunk boundaries may have
        moved, so none of its vectors can be trusted.
        """
        current = (self.cfg.chunk_strategy, self.cfg.chunk_max_tokens)
        if self._built:
            if self._built_with != current:
                return {path: "" for path in self._file_hashes}
            return dict(self._file_hashes)
        if len(self.vector_store) == 0:
            return {}
        cache = self.load_index_cache()
        if cache is None:
            return {}
        if (cache.chunk_strategy, cache.chunk_max_tokens) != current:
            return {path: "" for path in cache.files}
        return {path: f.hash for path, f in cache.files.items()}

    async def build_index_from_cache(self, cache: Optional[IndexCache] = None) -> int:
        """Restore from a saved cache, re-chunking only files whose content changed.

        Returns the number of changed plus deleted files, or -1 when there is
        no usable cache (absent, unreadable, or written with different
        chunking settings) and a full build is needed.
        """
        if self._indexing:
            return -1
        if cache is None:
            cache = self.load_index_cache()
        if cache is None:
            return -1
        if not cache.matches(self.cfg.chunk_strategy, self.cfg.chunk_max_tokens, self.cfg.exclude_folders):
            logger.info("Index cache was written with different chunking settings; full rebuild needed")
            return -1

        self._indexing = True
        start = time.time()
        try:
            await self._ensure_vector_metadata()
            docs = self._eligible_documents()
            current = {d.path for d in docs}
            per_doc: list[list[Chunk]] = []
            hashes: dict[str, str] = {}
            changed: list[tuple[int, DocumentInfo]] = []

            for i, doc in enumerate(docs):
                if i and i % FILES_PER_YIELD == 0:
                    await asyncio.sleep(0)
                cached = cache.files.get(doc.path)
                per_doc.append([])
                if cached is not None:
                    try:
                        text = self.source.read_cached(doc.path)
                    except (OSError, ValueError) as e:
                        logger.warning(f"Skipping unreadable {doc.path}: {e}")
                        continue
                    h = content_hash(text)
                    if h == cached.hash:
                        hashes[doc.path] = h
                        per_doc[i] = list(cached.chunks)
                        continue
                changed.append((i, doc))

            for i, doc in changed:
                try:
                    text = self.source.read_fresh(doc.path)
                except (OSError, ValueError) as e:
                    logger.warning(f"Skipping unreadable {doc.path}: {e}")
                    continue
                hashes[doc.path] = content_hash(text)
                per_doc[i] = self._chunker.chunk(doc.path, doc.basename, text)
                self.vector_store.remove_by_file(doc.path)

            deleted = [p for p in cache.files if p not in current]
            for path in deleted:
                self.vector_store.remove_by_file(path)

            all_chunks = [c for chunks in per_doc for c in chunks]
            lexical = LexicalIndex()
            await lexical.add_chunks_async(all_chunks)
            self._install(lexical, {c.id: c for c in all_chunks}, hashes)
            self.proximity.build_graph()

            n_changed = len(changed) + len(deleted)
            logger.info(
                f"Index restored from cache: {len(hashes)} files, {len(all_chunks)} chunks, "
                f"{len(changed)} changed, {len(deleted)} deleted in {time.time() - start:.2f}s"
            )
            return n_changed
        finally:
            self._indexing = False

    async def update_file(self, path: str) -> bool:
        """Re-index one file if its content changed. Returns True when it was re-indexed.

        No-op before the first build, during a build, for excluded paths and
        for files that no longer exist.
        """
        if not self._built or self._indexing:
            return False
        if self.is_excluded(path):
            return False
        doc = self.source.get_document(path)
        if doc is None:
            return False
        try:
            text = self.source.read_fresh(path)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read {path}: {e}")
            return False

        new_hash = content_hash(text)
        if self._file_hashes.get(path) == new_hash:
            return False

        self.lexical.remove_by_file(path)
        self._drop_file_chunks(path)
        self.vector_store.remove_by_file(path)
        self._file_hashes[path] = new_hash
        if self._auto_enabled:
            self._priority_files[path] = None

        chunks = self._chunker.chunk(path, doc.basename, text)
        for chunk in chunks:
            self._chunks[chunk.id] = chunk
        self.lexical.add_chunks(chunks)
        self.proximity.update_file(path)
        self._last_updated = time.time()
        logger.debug(f"Re-indexed {path}: {len(chunks)} chunks")
        return True

    def remove_file(self, path: str) -> None:
        """Forget everything indexed for path. Unknown paths are fine."""
        self.lexical.remove_by_file(path)
        self._file_hashes.pop(path, None)
        self._drop_file_chunks(path)
        self.vector_store.remove_by_file(path)
        self.proximity.remove_file(path)
        self._priority_files.pop(path, None)
        self._last_updated = time.time()

    def debounced_update(self, path: str) -> None:
        """Coalesce change notifications for path into one update after a quiet period.

        Must be called on the loop thread.
        """
        pending = self._update_tasks.pop(path, None)
        if pending is not None:
            pending.cancel()
        self._update_tasks[path] = asyncio.get_running_loop().create_task(self._debounced(path))

    async def _debounced(self, path: str) -> None:
        delay = self.cfg.debounce_ms / 1000
        await asyncio.sleep(delay)
        # A build owns the index; try again once it has finished
        while self._indexing:
            await asyncio.sleep(delay or 0.05)
        if self._update_tasks.get(path) is asyncio.current_task():
            del self._update_tasks[path]
        try:
            await self.update_file(path)
        except Exception as e:
            logger.error(f"Debounced update of {path} failed: {e}")

    def clear_index(self) -> None:
        self.lexical.clear()
        self._chunks = {}
        self._file_hashes = {}
        self._built = False
        self.proximity.clear()

    def update_settings(self, **changes: Any) -> VaultConfig:
        """Apply config changes. Chunking changes take effect on the next build."""
        self.cfg = self.cfg.update(**changes)
        self._chunker = MarkdownChunker(strategy=self.cfg.chunk_strategy, max_tokens=self.cfg.chunk_max_tokens)
        return self.cfg

    # --- index cache ---

    def save_index_cache(self) -> None:
        by_file: dict[str, list[Chunk]] = {}
        for chunk in self._chunks.values():
            by_file.setdefault(chunk.file_path, []).append(chunk)
        cache = IndexCache(
            chunk_strategy=self.cfg.chunk_strategy,
            chunk_max_tokens=self.cfg.chunk_max_tokens,
            exclude_folders=list(self.cfg.exclude_folders),
            files={path: CachedFile(hash=h, chunks=by_file.get(path, [])) for path, h in self._file_hashes.items()},
        )
        self.kv.mkdir()
        self.kv.write_json(CACHE_KEY, cache.to_dict())
        logger.debug(f"Saved index cache for {len(cache.files)} files")

    def load_index_cache(self) -> Optional[IndexCache]:
        if not self.kv.exists(CACHE_KEY):
            return None
        try:
            return IndexCache.from_dict(self.kv.read_json(CACHE_KEY))
        except (OSError, json.JSONDecodeError, CacheFormatError) as e:
            logger.warning(f"Ignoring unusable index cache: {e}")
            return None

    # --- embeddings ---

    async def initialize_embedding(self) -> bool:
        """Resolve model and dimensions, read vector metadata, enable vector search."""
        if self.embedder is None:
            logger.warning("No embedding provider configured")
            return False

        await self.vector_store.load_metadata()
        model = self.cfg.embedding_model
        dims = self.cfg.embedding_dimensions
        stored = self.vector_store.metadata
        if not dims and stored.model == model and stored.provider == self.embedder.id:
            dims = stored.dimensions
        if not dims:
            dims = self.embedder.default_dimensions(model, self.cfg.embedding_compact)

        self._model = model
        self._dimensions = dims
        if self.vector_store.is_model_changed(self.embedder.id, model, dims):
            logger.warning(
                f"Embedding model changed ({stored.provider}/{stored.model}/{stored.dimensions} -> "
                f"{self.embedder.id}/{model}/{dims}); embedding index must be rebuilt"
            )
        else:
            self.vector_store.set_model_info(self.embedder.id, model, dims)
        self._embedding_enabled = True
        return True

    async def load_vector_store(self) -> None:
        await self.vector_store.load_all_shards_progressive()

    def _model_mismatch(self) -> bool:
        if self.embedder is None:
            return False
        return self.vector_store.is_model_changed(self.embedder.id, self._model, self._dimensions)

    def _pending_chunks(self) -> list[Chunk]:
        return [c for cid, c in self._chunks.items() if not self.vector_store.has(cid)]

    async def _embed_batch(self, batch: list[Chunk], api_key: Optional[str]) -> int:
        result = await self.embedder.embed(
            [c.content for c in batch], api_key, self._model, self._dimensions or None
        )
        if len(result.embeddings) != len(batch):
            raise EmbeddingError(f"Asked for {len(batch)} embeddings, got {len(result.embeddings)}")
        if not self._dimensions and result.embeddings:
            self._dimensions = len(result.embeddings[0])
            self.vector_store.set_model_info(self.embedder.id, self._model, self._dimensions)
        stored = 0
        for chunk, vec in zip(batch, result.embeddings):
            # Removed or re-chunked while the provider was working
            if self._chunks.get(chunk.id) is not chunk:
                continue
            self.vector_store.set(chunk.id, vec)
            stored += 1
        self.vector_store.add_tokens_used(result.total_tokens)
        return stored

    async def build_embedding_index(
        self,
        api_key: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Embed every chunk that has no vector yet. Returns the number embedded.

        A failed batch is logged and skipped. Vectors from a different
        provider, model or width are discarded first.
        """
        if not self._embedding_enabled or self.embedder is None:
            return 0
        if self._indexing:
            logger.debug("build_embedding_index skipped: indexing in progress")
            return 0
        api_key = api_key or self._api_key

        self._indexing = True
        try:
            if self._model_mismatch():
                logger.warning("Clearing vectors from a different embedding model")
                await self.vector_store.clear()
            self.vector_store.set_model_info(self.embedder.id, self._model, self._dimensions)

            pending = self._pending_chunks()
            total = len(pending)
            if not pending:
                if on_progress:
                    on_progress(0, 0)
                return 0

            batch_size = self.cfg.embedding_batch_size
            embedded = 0
            failed = 0
            for i in range(0, total, batch_size):
                batch = pending[i:i + batch_size]
                try:
                    embedded += await self._embed_batch(batch, api_key)
                except Exception as e:
                    failed += len(batch)
                    logger.warning(f"Embedding batch {i}-{i + len(batch)} failed, skipping: {e}")
                if on_progress:
                    on_progress(min(i + len(batch), total), total)
                await asyncio.sleep(0)

            await self.vector_store.save()
            logger.info(f"Embedding pass complete: {embedded} embedded, {failed} failed")
            return embedded
        finally:
            self._indexing = False

    async def clear_embedding_index(self) -> None:
        await self.vector_store.clear()
        if self.embedder is not None and self._embedding_enabled:
            self.vector_store.set_model_info(self.embedder.id, self._model, self._dimensions)

    # --- background embedding ---

    def start_auto_embedding(self, api_key: Optional[str] = None) -> None:
        """Embed a few pending chunks each time the user goes idle. Call on the loop thread."""
        self._loop = asyncio.get_running_loop()
        self._auto_enabled = True
        self._auto_api_key = api_key or self._api_key
        if self.idle_source is not None and self._unsubscribe_idle is None:
            self._unsubscribe_idle = self.idle_source.add_listener(self._reset_idle_timer)
        self._reset_idle_timer()

    def stop_auto_embedding(self) -> None:
        self._auto_enabled = False
        if self._idle_task is not None:
            self._idle_task.cancel()
            self._idle_task = None
        if self._unsubscribe_idle is not None:
            self._unsubscribe_idle()
            self._unsubscribe_idle = None

    def _reset_idle_timer(self) -> None:
        if self._idle_task is not None:
            self._idle_task.cancel()
            self._idle_task = None
        if not self._auto_enabled or self._loop is None:
            return
        self._idle_task = self._loop.create_task(self._idle_then_embed())

    async def _idle_then_embed(self) -> None:
        await asyncio.sleep(self.cfg.idle_seconds)
        self._idle_task = None
        try:
            await self.run_auto_embed_batch()
        except Exception as e:
            logger.error(f"Background embedding failed: {e}")

    async def run_auto_embed_batch(self) -> int:
        """One background pass: edited files first, then the backlog up to a cap.

        Stops at the first failure or as soon as auto-embedding is switched
        off. Returns the number of chunks embedded.
        """
        if not self._auto_enabled or not self._embedding_enabled or self.embedder is None:
            return 0
        if self._indexing:
            return 0
        if self._model_mismatch():
            logger.info("Background embedding paused until the embedding index is rebuilt")
            return 0

        pending: dict[str, Chunk] = {}
        for path in self._priority_files:
            for cid, chunk in self._chunks.items():
                if chunk.file_path == path and not self.vector_store.has(cid):
                    pending[cid] = chunk
        self._priority_files.clear()

        cap = self.cfg.auto_backlog_cap
        for cid, chunk in self._chunks.items():
            if len(pending) >= cap:
                break
            if cid not in pending and not self.vector_store.has(cid):
                pending[cid] = chunk

        if not pending:
            return 0

        queue = list(pending.values())
        batch_size = self.cfg.auto_batch_size
        embedded = 0
        self._indexing = True
        try:
            for i in range(0, len(queue), batch_size):
                if not self._auto_enabled:
                    logger.debug("Background embedding stopped")
                    break
                try:
                    embedded += await self._embed_batch(queue[i:i + batch_size], self._auto_api_key)
                except Exception as e:
                    logger.warning(f"Background embedding batch failed: {e}")
                    break
                await asyncio.sleep(0)
            if embedded:
                await self.vector_store.save()
            logger.debug(f"Background embedding: {embedded}/{len(queue)} chunks")
            return embedded
        finally:
            self._indexing = False

    # --- search ---

    def _vector_search_ready(self, api_key: Optional[str]) -> bool:
        if not self._embedding_enabled or self._model_mismatch():
            return False
        return self.hybrid.vector_search_available(api_key)

    async def search(
        self,
        query: str,
        top_k: Optional[int] = None,
        min_score: Optional[float] = None,
        api_key: Optional[str] = None,
        anchor: Optional[DocumentInfo] = None,
    ) -> list[SearchResult]:
        """Hybrid search when vectors are usable, lexical otherwise.

        Empty before the first build. With an anchor document, results are
        re-ranked by proximity to it.
        """
        if not self._built:
            return []
        k = self.cfg.top_k if top_k is None else top_k
        threshold = self.cfg.min_score if min_score is None else min_score
        api_key = api_key or self._api_key

        results: Optional[list[SearchResult]] = None
        if self._vector_search_ready(api_key):
            try:
                results = await self.hybrid.search(
                    query, api_key, self._model, k, threshold, self._chunks, self._dimensions or None
                )
            except Exception as e:
                logger.warning(f"Hybrid search failed, falling back to lexical: {e}")
        if results is None:
            results = self.lexical.search(query, k, threshold)

        if anchor is not None and self.cfg.proximity_enabled:
            results = self.proximity.apply_boost(
                results,
                anchor,
                ProximityConfig(enabled=True, boost_factor=self.cfg.proximity_boost_factor),
            )
        return results

    async def execute_tool_search(
        self, query: str, top_k: Optional[int] = None, api_key: Optional[str] = None
    ) -> str:
        k = min(self.cfg.top_k if top_k is None else top_k, MAX_TOOL_RESULTS)
        results = await self.search(query, k, None, api_key)
        if not results:
            return NO_RESULTS.format(query=query)

        parts = [TOOL_HEADER.format(count=len(results), query=query)]
        for r in results:
            c = r.chunk
            heading = f" > {c.heading}" if c.heading else ""
            parts.append(
                f"### [[{c.file_name}]]{heading}\n"
                f"Path: {c.file_path} | Score: {r.score:.2f} | Lines: {c.start_line}-{c.end_line}\n\n"
                f"{c.content}"
            )
        return "\n\n---\n\n".join(parts)

    def build_context(self, results: list[SearchResult]) -> str:
        if not results:
            return ""
        parts = [CONTEXT_HEADER]
        for r in results:
            c = r.chunk
            heading = f" > {c.heading}" if c.heading else ""
            parts.append(f"--- [[{c.file_name}]]{heading} ({c.file_path}, score: {r.score:.2f}) ---\n{c.content}")
        return "\n\n".join(parts)

    # --- stats & teardown ---

    def get_stats(self) -> IndexStats:
        vs = self.vector_store.get_stats()
        return IndexStats(
            total_files=len(self.source.list_documents()),
            total_chunks=self.lexical.document_count,
            indexed_files=len(self._file_hashes),
            last_updated=self._last_updated,
            embedding_indexed=vs.vector_count,
            embedding_model=vs.model or None,
            embedding_storage_bytes=vs.storage_size_bytes,
            embedding_total_tokens_used=vs.total_tokens_used,
        )

    async def close(self) -> None:
        """Cancel timers and persist the index cache and unsaved vectors. Never raises."""
        for task in self._update_tasks.values():
            task.cancel()
        self._update_tasks.clear()
        self.stop_auto_embedding()

        if self._built:
            try:
                self.save_index_cache()
            except Exception as e:
                logger.warning(f"Index cache save failed: {e}")

        if self._embedding_enabled or self.vector_store.dirty_shards:
            try:
                await self.vector_store.save()
            except Exception as e:
                logger.warning(f"Vector store save on close failed: {e}")
