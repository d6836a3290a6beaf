from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Optional

MatchType = Literal["lexical", "semantic", "hybrid"]


@dataclass(frozen=True)
class DocumentInfo:
    """A document as listed by a document source.

    `path` is vault-relative with forward slashes, `basename` is the file
    name without extension, `mtime` is seconds since the epoch.
    """
    path: str
    basename: str
    mtime: float


@dataclass(frozen=True)
class Chunk:
    """Retrieval unit cut from one version of one document.

    id is "<file_path>::<ordinal>"; the ordinal restarts at 0 for every file.
    Line numbers are 0-based and refer to the original file, front matter
    included.
    """
    id: str
    file_path: str
    file_name: str
    content: str
    start_line: int
    end_line: int
    token_count: int
    heading: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filePath": self.file_path,
            "fileName": self.file_name,
            "content": self.content,
            "heading": self.heading,
            "startLine": self.start_line,
            "endLine": self.end_line,
            "tokens": self.token_count,
            "metadata": self.metadata,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Chunk":
        """Strict decode of a persisted chunk. Raises ValueError on bad shape."""
        if not isinstance(data, dict):
            raise ValueError(f"chunk must be an object, got {type(data).__name__}")
        try:
            chunk_id = data["id"]
            file_path = data["filePath"]
            file_name = data["fileName"]
            content = data["content"]
            start_line = data["startLine"]
            end_line = data["endLine"]
            tokens = data["tokens"]
        except KeyError as e:
            raise ValueError(f"chunk is missing field {e}") from e

        for name, value in (("id", chunk_id), ("filePath", file_path),
                            ("fileName", file_name), ("content", content)):
            if not isinstance(value, str):
                raise ValueError(f"chunk field {name} must be a string")
        for name, value in (("startLine", start_line), ("endLine", end_line), ("tokens", tokens)):
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValueError(f"chunk field {name} must be an integer")

        heading = data.get("heading")
        if heading is not None and not isinstance(heading, str):
            raise ValueError("chunk field heading must be a string")
        metadata = data.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValueError("chunk field metadata must be an object")

        return Chunk(
            id=chunk_id,
            file_path=file_path,
            file_name=file_name,
            content=content,
            start_line=start_line,
            end_line=end_line,
            token_count=tokens,
            heading=heading,
            metadata=metadata,
        )


@dataclass(frozen=True)
class SearchResult:
    chunk: Chunk
    score: float
    match_type: MatchType
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IndexStats:
    total_files: int
    total_chunks: int
    indexed_files: int
    last_updated: float
    embedding_indexed: int = 0
    embedding_model: Optional[str] = None
    embedding_storage_bytes: int = 0
    embedding_total_tokens_used: int = 0
