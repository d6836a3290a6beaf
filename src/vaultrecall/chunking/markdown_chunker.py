from __future__ import annotations

import datetime as dt
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

import yaml
from frontmatter.default_handlers import YAMLHandler

from ..models import Chunk
from ..tokens import estimate_tokens, token_weight

logger = logging.getLogger(__name__)

HEADING_RE = re.compile(r"^#{1,6}\s")
HEADING_PREFIX_RE = re.compile(r"^#+\s*")
FENCE = "```"
NEWLINE_WEIGHT = token_weight("\n")

# Oversized units are re-split by paragraphs, then by lines; never deeper.
MAX_SPLIT_DEPTH = 2


@dataclass(frozen=True)
class _Span:
    """Inclusive range of body lines."""
    start: int
    end: int
    heading: Optional[str] = None


def _heading_text(line: str) -> str:
    return HEADING_PREFIX_RE.sub("", line).strip()


def _is_fence(line: str) -> bool:
    return line.lstrip().startswith(FENCE)


def _json_safe(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, (dt.date, dt.datetime, dt.time)):
        return value.isoformat()
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def split_front_matter(text: str) -> tuple[dict[str, Any], list[str], int]:
    """Separate a leading `---` block from the body.

    Returns (metadata, body_lines, body_offset) where body_offset is the number
    of file lines consumed by the block. A missing closing delimiter means
    there is no block; a block that is not a YAML mapping yields empty
    metadata but is still removed from the body.
    """
    lines = text.split("\n")
    if not lines or lines[0].rstrip() != "---":
        return {}, lines, 0

    for i in range(1, len(lines)):
        if lines[i].startswith("---"):
            block = "\n".join(lines[1:i])
            try:
                loaded = YAMLHandler().load(block)
            except yaml.YAMLError as e:
                logger.debug(f"Ignoring malformed front matter: {e}")
                loaded = None
            metadata = _json_safe(loaded) if isinstance(loaded, dict) else {}
            return metadata, lines[i + 1:], i + 1

    return {}, lines, 0


class _Weights:
    """Prefix sums of per-line token weights for O(1) range weights."""

    def __init__(self, lines: list[str]):
        self._prefix = [0.0]
        for line in lines:
            self._prefix.append(self._prefix[-1] + token_weight(line))

    def span(self, start: int, end: int) -> float:
        # Lines plus the newlines joining them
        return self._prefix[end + 1] - self._prefix[start] + NEWLINE_WEIGHT * (end - start)


@dataclass
class MarkdownChunker:
    """Split markdown notes into retrieval chunks.

    Strategies:
    - section: a new chunk at every heading outside code fences
    - paragraph: a new chunk after every blank line outside code fences
    - fixed: pack lines up to `max_tokens`, never breaking inside a fence

    Any unit over `max_tokens` is re-split on paragraph boundaries and, if a
    paragraph alone is still too large, on line boundaries. A single line over
    the budget is emitted as is.
    """
    strategy: str = "section"
    max_tokens: int = 512

    def chunk(self, path: str, display_name: str, text: str) -> list[Chunk]:
        metadata, lines, offset = split_front_matter(text)
        if not "\n".join(lines).strip():
            return []

        weights = _Weights(lines)
        if self.strategy == "paragraph":
            spans = self._split_paragraphs(lines)
        elif self.strategy == "fixed":
            spans = self._split_fixed(lines, weights)
        else:
            spans = self._split_sections(lines)

        final: list[_Span] = []
        for span in spans:
            trimmed = _trim(lines, span)
            if trimmed is None:
                continue
            if weights.span(trimmed.start, trimmed.end) <= self.max_tokens:
                final.append(trimmed)
            else:
                final.extend(self._split_large(lines, weights, trimmed, depth=1))

        chunks: list[Chunk] = []
        for i, span in enumerate(final):
            content = "\n".join(lines[span.start:span.end + 1]).strip()
            chunks.append(Chunk(
                id=f"{path}::{i}",
                file_path=path,
                file_name=display_name,
                content=content,
                heading=span.heading,
                start_line=offset + span.start,
                end_line=offset + span.end,
                token_count=estimate_tokens(content),
                metadata=dict(metadata) if metadata else None,
            ))
        return chunks

    def _split_sections(self, lines: list[str]) -> list[_Span]:
        spans: list[_Span] = []
        start = 0
        heading: Optional[str] = None
        in_fence = False
        for i, line in enumerate(lines):
            if _is_fence(line):
                in_fence = not in_fence
                continue
            if not in_fence and HEADING_RE.match(line):
                if i > start:
                    spans.append(_Span(start, i - 1, heading))
                start = i
                heading = _heading_text(line)
        spans.append(_Span(start, len(lines) - 1, heading))
        return spans

    def _split_paragraphs(self, lines: list[str]) -> list[_Span]:
        spans: list[_Span] = []
        start: Optional[int] = None
        heading: Optional[str] = None
        in_fence = False
        for i, line in enumerate(lines):
            if _is_fence(line):
                in_fence = not in_fence
            elif not in_fence and HEADING_RE.match(line):
                heading = _heading_text(line)

            if not in_fence and not line.strip():
                if start is not None:
                    spans.append(_Span(start, i - 1, heading))
                    start = None
                continue
            if start is None:
                start = i
        if start is not None:
            spans.append(_Span(start, len(lines) - 1, heading))
        return spans

    def _split_fixed(self, lines: list[str], weights: _Weights) -> list[_Span]:
        spans: list[_Span] = []
        start = 0
        heading: Optional[str] = None
        span_heading: Optional[str] = None
        in_fence = False
        for i, line in enumerate(lines):
            # Only break where the fence state before this line is closed
            if i > start and not in_fence and weights.span(start, i) > self.max_tokens:
                spans.append(_Span(start, i - 1, span_heading))
                start = i
                span_heading = heading

            if _is_fence(line):
                in_fence = not in_fence
            elif not in_fence and HEADING_RE.match(line):
                heading = _heading_text(line)
                if i == start or span_heading is None:
                    span_heading = heading
        spans.append(_Span(start, len(lines) - 1, span_heading))
        return spans

    def _split_large(self, lines: list[str], weights: _Weights, span: _Span, depth: int) -> list[_Span]:
        if depth == 1:
            pieces = _paragraph_blocks(lines, span)
        else:
            pieces = [_Span(i, i, span.heading) for i in range(span.start, span.end + 1)]

        packed: list[_Span] = []
        cur_start = pieces[0].start
        cur_end = pieces[0].end
        for piece in pieces[1:]:
            if weights.span(cur_start, piece.end) <= self.max_tokens:
                cur_end = piece.end
            else:
                packed.append(_Span(cur_start, cur_end, span.heading))
                cur_start, cur_end = piece.start, piece.end
        packed.append(_Span(cur_start, cur_end, span.heading))

        out: list[_Span] = []
        for p in packed:
            trimmed = _trim(lines, p)
            if trimmed is None:
                continue
            too_big = weights.span(trimmed.start, trimmed.end) > self.max_tokens
            if too_big and depth < MAX_SPLIT_DEPTH and trimmed.start < trimmed.end:
                out.extend(self._split_large(lines, weights, trimmed, depth + 1))
            else:
                out.append(trimmed)
        return out


def _trim(lines: list[str], span: _Span) -> Optional[_Span]:
    start, end = span.start, span.end
    while start <= end and not lines[start].strip():
        start += 1
    while end >= start and not lines[end].strip():
        end -= 1
    if start > end:
        return None
    return _Span(start, end, span.heading)


def _paragraph_blocks(lines: list[str], span: _Span) -> list[_Span]:
    """Cut a span at blank lines outside code fences."""
    blocks: list[_Span] = []
    start = span.start
    in_fence = False
    for i in range(span.start, span.end + 1):
        line = lines[i]
        if _is_fence(line):
            in_fence = not in_fence
        elif not in_fence and not line.strip() and i > start:
            blocks.append(_Span(start, i - 1, span.heading))
            start = i
    blocks.append(_Span(start, span.end, span.heading))
    return blocks


def chunk_document(path: str, display_name: str, text: str,
                   strategy: str = "section", max_tokens: int = 512) -> list[Chunk]:
    return MarkdownChunker(strategy=strategy, max_tokens=max_tokens).chunk(path, display_name, text)
