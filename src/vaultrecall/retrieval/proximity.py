"""Re-rank results by closeness to the note the user is working in.

Four fixed-weight signals relative to an anchor document:
- link (0.4): same note 1.0, linked 0.8, two links away 0.4
- folder (0.3): shared leading folder segments / longer folder depth
- name (0.15): Jaccard similarity of file name character bigrams
- time (0.15): exp(-|days between modifications| / 7)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional

from ..indexer.source import DocumentSource
from ..models import DocumentInfo, SearchResult
from ..utils import basename_of

logger = logging.getLogger(__name__)

LINK_WEIGHT = 0.4
FOLDER_WEIGHT = 0.3
NAME_WEIGHT = 0.15
TIME_WEIGHT = 0.15
TIME_DECAY_DAYS = 7.0
SECONDS_PER_DAY = 86400.0


@dataclass
class ProximityConfig:
    enabled: bool = True
    boost_factor: float = 0.5  # 0.0-1.0


def folder_segments(path: str) -> list[str]:
    head, sep, _ = path.rpartition("/")
    return head.split("/") if sep else []


def name_bigrams(name: str) -> set[str]:
    s = name.lower()
    return {s[i:i + 2] for i in range(len(s) - 1)}


def folder_score(anchor_path: str, target_path: str) -> float:
    a = folder_segments(anchor_path)
    t = folder_segments(target_path)
    longest = max(len(a), len(t))
    if longest == 0:
        return 1.0
    common = 0
    for x, y in zip(a, t):
        if x != y:
            break
        common += 1
    return common / longest


def name_score(anchor_name: str, target_name: str) -> float:
    a = name_bigrams(anchor_name)
    t = name_bigrams(target_name)
    if not a and not t:
        return 1.0
    if not a or not t:
        return 0.0
    return len(a & t) / len(a | t)


def time_score(anchor_mtime: float, target_mtime: float) -> float:
    days = abs(anchor_mtime - target_mtime) / SECONDS_PER_DAY
    return math.exp(-days / TIME_DECAY_DAYS)


class ProximityScorer:
    """Link graph plus scoring against an anchor document.

    Edges are kept per source document and read back in both directions, so
    a link A -> B makes A and B neighbours of each other.
    """

    def __init__(self, source: DocumentSource):
        self.source = source
        self._outbound: dict[str, set[str]] = {}
        self._inbound: dict[str, set[str]] = {}

    def build_graph(self) -> None:
        self._outbound.clear()
        self._inbound.clear()
        docs = self.source.list_documents()
        for doc in docs:
            self._add_edges(doc.path, self.source.outbound_links(doc.path))
        logger.debug(f"Link graph built over {len(docs)} documents")

    def update_file(self, path: str) -> None:
        self._drop_outbound(path)
        self._add_edges(path, self.source.outbound_links(path))

    def remove_file(self, path: str) -> None:
        self._drop_outbound(path)
        for src in self._inbound.pop(path, set()):
            targets = self._outbound.get(src)
            if targets is not None:
                targets.discard(path)

    def clear(self) -> None:
        self._outbound.clear()
        self._inbound.clear()

    def neighbors(self, path: str) -> set[str]:
        return self._outbound.get(path, set()) | self._inbound.get(path, set())

    def _add_edges(self, path: str, targets: list[str]) -> None:
        out = {t for t in targets if t != path}
        if not out:
            return
        self._outbound[path] = out
        for target in out:
            self._inbound.setdefault(target, set()).add(path)

    def _drop_outbound(self, path: str) -> None:
        for target in self._outbound.pop(path, set()):
            sources = self._inbound.get(target)
            if sources is not None:
                sources.discard(path)
                if not sources:
                    del self._inbound[target]

    def link_score(self, anchor_path: str, target_path: str) -> float:
        if anchor_path == target_path:
            return 1.0
        first = self.neighbors(anchor_path)
        if target_path in first:
            return 0.8
        for mid in first:
            if target_path in self.neighbors(mid):
                return 0.4
        return 0.0

    def proximity_score(self, anchor: DocumentInfo, target_path: str) -> float:
        link = self.link_score(anchor.path, target_path)
        folder = folder_score(anchor.path, target_path)
        name = name_score(anchor.basename, basename_of(target_path))
        target = self.source.get_document(target_path)
        recency = time_score(anchor.mtime, target.mtime) if target is not None else 0.0
        return LINK_WEIGHT * link + FOLDER_WEIGHT * folder + NAME_WEIGHT * name + TIME_WEIGHT * recency

    def apply_boost(
        self,
        results: list[SearchResult],
        anchor: Optional[DocumentInfo],
        config: ProximityConfig,
    ) -> list[SearchResult]:
        """Scale scores by (1 + boost_factor * proximity) and re-sort.

        Results pass through untouched when there is no anchor or boosting is off.
        """
        if anchor is None or not config.enabled:
            return results

        boosted = []
        for r in results:
            ps = self.proximity_score(anchor, r.chunk.file_path)
            boosted.append(SearchResult(
                chunk=r.chunk,
                score=r.score * (1 + config.boost_factor * ps),
                match_type=r.match_type,
                metadata={**r.metadata, "original_score": r.score, "proximity_score": ps},
            ))

        boosted.sort(key=lambda x: x.score, reverse=True)
        return boosted
