"""Shared fixtures: an in-memory vault and a deterministic embedder."""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional, Sequence

import pytest

from vaultrecall.config import VaultConfig
from vaultrecall.embeddings.base import EmbedResult
from vaultrecall.errors import EmbeddingError
from vaultrecall.hashing import stable_string_hash
from vaultrecall.models import DocumentInfo
from vaultrecall.retrieval.lexical import tokenize
from vaultrecall.store.kv import JsonFileStore
from vaultrecall.utils import basename_of, parse_wikilinks

DAY = 86400.0


class InMemorySource:
    """DocumentSource over a dict of path -> text."""

    def __init__(self, files: Optional[dict[str, str]] = None, mtime: float = 1_700_000_000.0):
        self.files: dict[str, str] = dict(files or {})
        self.mtimes: dict[str, float] = {p: mtime for p in self.files}
        self.fresh_reads: list[str] = []
        self.cached_reads: list[str] = []

    def write(self, path: str, text: str, mtime: Optional[float] = None) -> None:
        self.files[path] = text
        self.mtimes[path] = mtime if mtime is not None else self.mtimes.get(path, 1_700_000_000.0) + 1

    def delete(self, path: str) -> None:
        self.files.pop(path, None)
        self.mtimes.pop(path, None)

    def list_documents(self) -> list[DocumentInfo]:
        return [self.get_document(p) for p in sorted(self.files)]

    def get_document(self, path: str) -> Optional[DocumentInfo]:
        if path not in self.files:
            return None
        return DocumentInfo(path=path, basename=basename_of(path), mtime=self.mtimes[path])

    def read_cached(self, path: str) -> str:
        self.cached_reads.append(path)
        return self.files[path]

    def read_fresh(self, path: str) -> str:
        self.fresh_reads.append(path)
        return self.files[path]

    def outbound_links(self, path: str) -> list[str]:
        by_name = {basename_of(p).lower(): p for p in self.files}
        out = []
        for target in parse_wikilinks(self.files.get(path, "")):
            resolved = by_name.get(basename_of(target).lower())
            if resolved and resolved not in out:
                out.append(resolved)
        return out


class FakeEmbedder:
    """Bag-of-words hashing embedder; no network, no key."""

    id = "fake"
    requires_api_key = False

    def __init__(self, dims: int = 32):
        self.dims = dims
        self.fail = False
        self.batches: list[list[str]] = []
        self.queries: list[str] = []

    def default_dimensions(self, model: str, compact: bool = False) -> int:
        return self.dims

    def _vector(self, text: str) -> list[float]:
        vec = [0.0] * self.dims
        for token in tokenize(text):
            vec[stable_string_hash(token) % self.dims] += 1.0
        if not any(vec):
            vec[0] = 1.0
        return vec

    async def embed(
        self,
        texts: Sequence[str],
        api_key: Optional[str],
        model: str,
        dimensions: Optional[int] = None,
    ) -> EmbedResult:
        if self.fail:
            raise EmbeddingError("embedder is down")
        self.batches.append(list(texts))
        return EmbedResult(embeddings=[self._vector(t) for t in texts], total_tokens=len(texts) * 3)

    async def embed_single(
        self,
        text: str,
        api_key: Optional[str],
        model: str,
        dimensions: Optional[int] = None,
    ) -> list[float]:
        if self.fail:
            raise EmbeddingError("embedder is down")
        self.queries.append(text)
        return self._vector(text)



class SlowEmbedder(FakeEmbedder):
    """FakeEmbedder whose batch calls take `delay` seconds."""

    def __init__(self, delay: float, dims: int = 32):
        super().__init__(dims)
        self.delay = delay

    async def embed(self, texts, api_key, model, dimensions=None) -> EmbedResult:
        await asyncio.sleep(self.delay)
        return await super().embed(texts, api_key, model, dimensions)

SAMPLE_VAULT = {
    "Projects/Alpha.md": (
        "---\ntags: [project, alpha]\n---\n"
        "# Alpha\n\nAlpha is the retrieval project.\n\n"
        "## Design\n\nThe lexical index uses TF-IDF weighting. See [[Beta]].\n"
    ),
    "Projects/Beta.md": "# Beta\n\nBeta tracks embeddings and vector shards.\n\nLinks back to [[Alpha]].\n",
    "Journal/2024-01-01.md": "# New year\n\nGardening plans and tomato seedlings.\n",
    "Archive/Old.md": "# Old\n\nArchived retrieval notes nobody reads.\n",
    "日本語.md": "# 日本\n\n日本の庭園について。\n",
}


@pytest.fixture
def source() -> InMemorySource:
    return InMemorySource(SAMPLE_VAULT)


@pytest.fixture
def store(tmp_path: Path) -> JsonFileStore:
    return JsonFileStore(tmp_path / "idx")


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def cfg(tmp_path: Path) -> VaultConfig:
    return VaultConfig(
        vault_root=tmp_path / "vault",
        index_dir=tmp_path / "idx",
        exclude_folders=["Archive"],
        min_score=0.05,
        embedding_enabled=True,
        embedding_provider="ollama",
        embedding_model="fake-model",
        embedding_api_key_env="",
        debounce_ms=10,
        idle_seconds=0.05,
        auto_batch_size=2,
    )
