from __future__ import annotations

import dataclasses
from typing import Any

from ..indexer.manager import IndexManager
from ..models import SearchResult


def _result_dict(r: SearchResult) -> dict[str, Any]:
    c = r.chunk
    return {
        "chunk_id": c.id,
        "score": r.score,
        "match_type": r.match_type,
        "file_path": c.file_path,
        "file_name": c.file_name,
        "heading": c.heading,
        "start_line": c.start_line,
        "end_line": c.end_line,
        "content": c.content,
        "metadata": r.metadata,
    }


async def _search(manager: IndexManager, params: dict[str, Any]) -> list[SearchResult]:
    query = str(params.get("query", ""))
    k = int(params.get("k", manager.cfg.top_k))
    min_score = params.get("min_score")
    anchor_path = params.get("anchor")
    anchor = manager.source.get_document(anchor_path) if anchor_path else None
    return await manager.search(
        query,
        top_k=k,
        min_score=float(min_score) if min_score is not None else None,
        anchor=anchor,
    )


async def tool_search(manager: IndexManager, params: dict[str, Any]) -> dict[str, Any]:
    """Search the vault.

    Params:
        query: Search query string
        k: Number of results (optional)
        min_score: Lexical score threshold (optional)
        anchor: Vault path of the note being edited, for proximity boosting (optional)
    """
    results = await _search(manager, params)
    return {"results": [_result_dict(r) for r in results]}


async def tool_notes(manager: IndexManager, params: dict[str, Any]) -> dict[str, Any]:
    """Search and format the hits as a markdown block for an assistant tool call."""
    query = str(params.get("query", ""))
    k = params.get("k")
    text = await manager.execute_tool_search(query, int(k) if k is not None else None)
    return {"content": text}


async def tool_context(manager: IndexManager, params: dict[str, Any]) -> dict[str, Any]:
    """Search and format the hits as a context preamble."""
    results = await _search(manager, params)
    return {"content": manager.build_context(results)}


async def tool_status(manager: IndexManager, params: dict[str, Any]) -> dict[str, Any]:
    stats = dataclasses.asdict(manager.get_stats())
    stats["is_built"] = manager.is_built
    stats["is_indexing"] = manager.is_indexing
    stats["embedding_enabled"] = manager.embedding_enabled
    return stats
