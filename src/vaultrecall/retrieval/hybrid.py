from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from ..embeddings.base import EmbeddingProvider
from ..models import Chunk, MatchType, SearchResult
from ..store.vector_store import VectorHit, VectorStore
from .lexical import LexicalIndex

logger = logging.getLogger(__name__)

RRF_K = 60


@dataclass
class HybridSearcher:
    """Fuse lexical and vector candidates with Reciprocal Rank Fusion.

    Each list contributes 1 / (rrf_k + rank + 1) per item (rank 0-based).
    Items found by both retrievers are tagged "hybrid", lexical-only items
    stay "lexical" and vector-only items become "semantic".

    Vector search is best effort: a missing key, an empty store or a
    provider failure degrades to the lexical ranking.
    """

    lexical: LexicalIndex
    vector_store: VectorStore
    embedder: Optional[EmbeddingProvider] = None
    rrf_k: int = RRF_K

    def vector_search_available(self, api_key: Optional[str]) -> bool:
        if self.embedder is None or len(self.vector_store) == 0:
            return False
        return bool(api_key) or not self.embedder.requires_api_key

    async def search(
        self,
        query: str,
        api_key: Optional[str],
        model: str,
        top_k: int,
        min_score: float,
        chunk_lookup: Mapping[str, Chunk],
        dimensions: Optional[int] = None,
    ) -> list[SearchResult]:
        expanded_k = top_k * 2
        lexical = self.lexical.search(query, expanded_k, min_score)

        hits: list[VectorHit] = []
        if self.vector_search_available(api_key):
            try:
                query_vec = await self.embedder.embed_single(query, api_key, model, dimensions)
                hits = await self.vector_store.search(query_vec, expanded_k)
            except Exception as e:
                logger.warning(f"Vector search failed, using lexical results only: {e}")
                hits = []

        if not hits:
            return lexical[:top_k]
        return self._merge_rrf(lexical, hits, top_k, chunk_lookup)

    def _merge_rrf(
        self,
        lexical: Sequence[SearchResult],
        hits: Sequence[VectorHit],
        top_k: int,
        chunk_lookup: Mapping[str, Chunk],
    ) -> list[SearchResult]:
        scores: dict[str, float] = {}
        kinds: dict[str, MatchType] = {}

        for rank, r in enumerate(lexical):
            scores[r.chunk.id] = scores.get(r.chunk.id, 0.0) + 1 / (self.rrf_k + rank + 1)
            kinds[r.chunk.id] = "lexical"

        for rank, h in enumerate(hits):
            scores[h.chunk_id] = scores.get(h.chunk_id, 0.0) + 1 / (self.rrf_k + rank + 1)
            kinds[h.chunk_id] = "hybrid" if h.chunk_id in kinds else "semantic"

        ranked = sorted(scores, key=lambda cid: scores[cid], reverse=True)

        out: list[SearchResult] = []
        for chunk_id in ranked:
            chunk = chunk_lookup.get(chunk_id)
            if chunk is None:
                # Stale vector for a chunk that no longer exists
                continue
            out.append(SearchResult(chunk=chunk, score=scores[chunk_id], match_type=kinds[chunk_id]))
            if len(out) == top_k:
                break
        return out
