from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional, Sequence

from ..errors import EmbeddingError
from .base import EmbeddingModelInfo, EmbedResult, model_dimensions
from .http import post_json
from .resilience import RetryPolicy


@dataclass
class OllamaEmbeddingProvider:
    """Adapter for a local Ollama /api/embed endpoint. No API key needed."""

    endpoint: str = "http://localhost:11434/api/embed"
    timeout_s: float = 120.0
    batch_size: int = 50
    retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(provider="ollama"))

    id: ClassVar[str] = "ollama"
    requires_api_key: ClassVar[bool] = False
    models: ClassVar[tuple[EmbeddingModelInfo, ...]] = (
        EmbeddingModelInfo("nomic-embed-text", 768),
        EmbeddingModelInfo("mxbai-embed-large", 1024),
    )

    def default_dimensions(self, model: str, compact: bool = False) -> int:
        return model_dimensions(self.models, model, compact, fallback=0)

    def _call(self, texts: list[str], model: str) -> EmbedResult:
        out = post_json(self.endpoint, {"model": model, "input": texts}, timeout_s=self.timeout_s)
        vectors = out.get("embeddings") if isinstance(out, dict) else None
        if not isinstance(vectors, list) or len(vectors) != len(texts):
            raise EmbeddingError(f"Unexpected Ollama response: {str(out)[:200]}")
        tokens: Any = out.get("prompt_eval_count", 0)
        return EmbedResult(
            embeddings=[[float(x) for x in v] for v in vectors],
            total_tokens=int(tokens) if isinstance(tokens, int) else 0,
        )

    async def embed(
        self,
        texts: Sequence[str],
        api_key: Optional[str],
        model: str,
        dimensions: Optional[int] = None,
    ) -> EmbedResult:
        texts = list(texts)
        embeddings: list[list[float]] = []
        total_tokens = 0
        for i in range(0, len(texts), self.batch_size):
            result = await asyncio.to_thread(self.retry.call, self._call, texts[i:i + self.batch_size], model)
            embeddings.extend(result.embeddings)
            total_tokens += result.total_tokens
        return EmbedResult(embeddings=embeddings, total_tokens=total_tokens)

    async def embed_single(
        self,
        text: str,
        api_key: Optional[str],
        model: str,
        dimensions: Optional[int] = None,
    ) -> list[float]:
        result = await self.embed([text], api_key, model, dimensions)
        return result.embeddings[0]
