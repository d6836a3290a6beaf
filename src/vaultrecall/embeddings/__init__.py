from __future__ import annotations

from typing import TYPE_CHECKING

from .base import EmbeddingModelInfo, EmbeddingProvider, EmbedResult
from .ollama import OllamaEmbeddingProvider
from .openai import OpenAIEmbeddingProvider
from .sentence_transformers import SentenceTransformersEmbeddingProvider

if TYPE_CHECKING:
    from ..config import VaultConfig


def create_embedding_provider(cfg: "VaultConfig") -> EmbeddingProvider:
    """Build the provider named by cfg.embedding_provider."""
    if cfg.embedding_provider == "openai":
        if cfg.embedding_endpoint:
            return OpenAIEmbeddingProvider(endpoint=cfg.embedding_endpoint)
        return OpenAIEmbeddingProvider()
    elif cfg.embedding_provider == "ollama":
        if cfg.embedding_endpoint:
            return OllamaEmbeddingProvider(endpoint=cfg.embedding_endpoint)
        return OllamaEmbeddingProvider()
    elif cfg.embedding_provider == "sentence_transformers":
        return SentenceTransformersEmbeddingProvider()
    raise ValueError(f"Unknown embedding provider: {cfg.embedding_provider}")


__all__ = [
    "EmbeddingModelInfo",
    "EmbeddingProvider",
    "EmbedResult",
    "OllamaEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "SentenceTransformersEmbeddingProvider",
    "create_embedding_provider",
]
