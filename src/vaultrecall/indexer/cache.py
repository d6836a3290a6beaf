from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ..errors import CacheFormatError
from ..models import Chunk

CACHE_VERSION = 1
CACHE_KEY = "rag-index.json"


@dataclass
class CachedFile:
    hash: str
    chunks: list[Chunk] = field(default_factory=list)


@dataclass
class IndexCache:
    """Per-file content hashes and chunks from a previous indexing pass.

    Only valid for the chunking configuration it was written with.
    """
    chunk_strategy: str
    chunk_max_tokens: int
    exclude_folders: list[str]
    files: dict[str, CachedFile] = field(default_factory=dict)
    version: int = CACHE_VERSION

    def matches(self, chunk_strategy: str, chunk_max_tokens: int, exclude_folders: list[str]) -> bool:
        return (
            self.chunk_strategy == chunk_strategy
            and self.chunk_max_tokens == chunk_max_tokens
            and sorted(self.exclude_folders) == sorted(exclude_folders)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "chunkStrategy": self.chunk_strategy,
            "chunkMaxTokens": self.chunk_max_tokens,
            "excludeFolders": list(self.exclude_folders),
            "files": {
                path: {"hash": f.hash, "chunks": [c.to_dict() for c in f.chunks]}
                for path, f in self.files.items()
            },
        }

    @staticmethod
    def from_dict(data: Any) -> "IndexCache":
        """Validated decode. Raises CacheFormatError on any bad field."""
        if not isinstance(data, dict):
            raise CacheFormatError("index cache must be an object")
        version = data.get("version")
        if version != CACHE_VERSION:
            raise CacheFormatError(f"unsupported index cache version {version!r}")

        strategy = data.get("chunkStrategy")
        max_tokens = data.get("chunkMaxTokens")
        excludes = data.get("excludeFolders")
        files = data.get("files")
        if not isinstance(strategy, str):
            raise CacheFormatError("chunkStrategy must be a string")
        if isinstance(max_tokens, bool) or not isinstance(max_tokens, int):
            raise CacheFormatError("chunkMaxTokens must be an integer")
        if not isinstance(excludes, list) or not all(isinstance(f, str) for f in excludes):
            raise CacheFormatError("excludeFolders must be a list of strings")
        if not isinstance(files, dict):
            raise CacheFormatError("files must be an object")

        decoded: dict[str, CachedFile] = {}
        for path, entry in files.items():
            if not isinstance(entry, dict) or not isinstance(entry.get("hash"), str):
                raise CacheFormatError(f"bad cache entry for {path!r}")
            raw_chunks = entry.get("chunks")
            if not isinstance(raw_chunks, list):
                raise CacheFormatError(f"chunks for {path!r} must be a list")
            try:
                chunks = [Chunk.from_dict(c) for c in raw_chunks]
            except ValueError as e:
                raise CacheFormatError(f"bad chunk in {path!r}: {e}") from e
            if any(c.file_path != path for c in chunks):
                raise CacheFormatError(f"chunk filePath does not match entry {path!r}")
            decoded[path] = CachedFile(hash=entry["hash"], chunks=chunks)

        return IndexCache(
            chunk_strategy=strategy,
            chunk_max_tokens=max_tokens,
            exclude_folders=list(excludes),
            files=decoded,
            version=version,
        )
