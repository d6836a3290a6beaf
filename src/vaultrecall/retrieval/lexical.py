"""In-memory TF-IDF search over chunks.

Tokenization is script aware:
- CJK runs become overlapping character bigrams; a lone CJK character
  produces no token
- other runs become lower-cased words, dropping stop words and
  single characters

Queries that produce no tokens (e.g. one CJK character) fall back to a
case-insensitive substring count.
"""
from __future__ import annotations

import asyncio
import logging
import math
import unicodedata
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable

from ..models import Chunk, SearchResult
from ..tokens import is_cjk

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset({
    "a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "is", "are", "was", "were", "be", "been",
    "being", "have", "has", "had", "do", "does", "did", "will", "would",
    "could", "should", "may", "might", "shall", "can", "need", "must",
    "it", "its", "this", "that", "these", "those", "i", "you", "he", "she",
    "we", "they", "me", "him", "her", "us", "them", "my", "your", "his",
    "our", "their", "not", "no", "so", "if", "as", "just", "about",
})

YIELD_EVERY = 50


def _is_separator(ch: str) -> bool:
    return ch.isspace() or unicodedata.category(ch).startswith("P")


def tokenize(text: str) -> list[str]:
    tokens: list[str] = []
    word: list[str] = []
    cjk: list[str] = []

    def flush_word() -> None:
        if word:
            w = "".join(word).lower()
            if len(w) > 1 and w not in STOP_WORDS:
                tokens.append(w)
            word.clear()

    def flush_cjk() -> None:
        for i in range(len(cjk) - 1):
            tokens.append(cjk[i] + cjk[i + 1])
        cjk.clear()

    for ch in text:
        if is_cjk(ch):
            flush_word()
            cjk.append(ch)
        elif _is_separator(ch):
            flush_cjk()
            flush_word()
        else:
            flush_cjk()
            word.append(ch)

    flush_cjk()
    flush_word()
    return tokens


def term_frequencies(tokens: Iterable[str]) -> dict[str, float]:
    """Raw counts normalised by the most frequent term."""
    counts = Counter(tokens)
    if not counts:
        return {}
    top = max(counts.values())
    return {t: c / top for t, c in counts.items()}


@dataclass
class _Entry:
    chunk: Chunk
    tokens: list[str]
    tf: dict[str, float]
    tfidf: dict[str, float] = field(default_factory=dict)
    norm: float = 0.0


class LexicalIndex:
    """TF-IDF model over every chunk currently indexed.

    IDF is recomputed over the whole corpus after each add or removal.
    """

    def __init__(self) -> None:
        self._entries: list[_Entry] = []
        self._idf: dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def document_count(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries = []
        self._idf = {}

    def add_chunks(self, chunks: Iterable[Chunk]) -> None:
        for chunk in chunks:
            self._entries.append(self._make_entry(chunk))
        self._rebuild_idf()

    async def add_chunks_async(self, chunks: list[Chunk], yield_every: int = YIELD_EVERY) -> None:
        """Like add_chunks, handing control back to the loop every `yield_every` chunks."""
        for i, chunk in enumerate(chunks):
            self._entries.append(self._make_entry(chunk))
            if (i + 1) % yield_every == 0:
                await asyncio.sleep(0)
        self._rebuild_idf()

    def remove_by_file(self, file_path: str) -> None:
        before = len(self._entries)
        self._entries = [e for e in self._entries if e.chunk.file_path != file_path]
        if len(self._entries) == before:
            return
        if self._entries:
            self._rebuild_idf()
        else:
            self._idf = {}

    def search(self, query: str, top_k: int, min_score: float) -> list[SearchResult]:
        if not self._entries:
            return []

        q_tokens = tokenize(query)
        stripped = query.strip()
        if not q_tokens:
            if stripped:
                return self._substring_search(stripped, top_k)
            return []

        q_vec = self._weigh(term_frequencies(q_tokens))
        q_norm = math.sqrt(sum(v * v for v in q_vec.values()))
        if q_norm == 0:
            return []

        scored: list[tuple[float, int]] = []
        for i, entry in enumerate(self._entries):
            if entry.norm == 0:
                score = 0.0
            else:
                dot = 0.0
                for term, qv in q_vec.items():
                    dv = entry.tfidf.get(term)
                    if dv is not None:
                        dot += qv * dv
                score = dot / (q_norm * entry.norm)
            if score >= min_score:
                scored.append((score, i))

        # Stable on ties: earlier-indexed chunks first
        scored.sort(key=lambda s: (-s[0], s[1]))
        return [
            SearchResult(chunk=self._entries[i].chunk, score=score, match_type="lexical")
            for score, i in scored[:top_k]
        ]

    def _substring_search(self, query: str, top_k: int) -> list[SearchResult]:
        needle = query.lower()
        scored: list[tuple[float, int]] = []
        for i, entry in enumerate(self._entries):
            content = entry.chunk.content.lower()
            count = content.count(needle)
            if count > 0:
                scored.append((min(1.0, count / (len(content) / 100)), i))
        scored.sort(key=lambda s: (-s[0], s[1]))
        return [
            SearchResult(chunk=self._entries[i].chunk, score=score, match_type="lexical")
            for score, i in scored[:top_k]
        ]

    def _make_entry(self, chunk: Chunk) -> _Entry:
        tokens = tokenize(chunk.content)
        return _Entry(chunk=chunk, tokens=tokens, tf=term_frequencies(tokens))

    def _rebuild_idf(self) -> None:
        n = len(self._entries)
        df: Counter[str] = Counter()
        for entry in self._entries:
            df.update(set(entry.tokens))
        self._idf = {t: math.log((n + 1) / (d + 1)) + 1 for t, d in df.items()}

        for entry in self._entries:
            entry.tfidf = self._weigh(entry.tf)
            entry.norm = math.sqrt(sum(v * v for v in entry.tfidf.values()))
        logger.debug(f"Rebuilt IDF over {n} chunks, {len(self._idf)} terms")

    def _weigh(self, tf: dict[str, float]) -> dict[str, float]:
        unseen = math.log(len(self._entries) + 1)
        return {t: v * self._idf.get(t, unseen) for t, v in tf.items()}
