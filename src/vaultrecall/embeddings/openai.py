from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional, Sequence

from ..errors import EmbeddingError
from .base import EmbeddingModelInfo, EmbedResult, model_dimensions
from .http import post_json
from .resilience import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class OpenAIEmbeddingProvider:
    """OpenAI /v1/embeddings adapter.

    Sends up to `batch_size` texts per request and reports token usage.
    """

    endpoint: str = "https://api.openai.com/v1/embeddings"
    timeout_s: float = 60.0
    batch_size: int = 100
    retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(provider="openai"))

    id: ClassVar[str] = "openai"
    requires_api_key: ClassVar[bool] = True
    models: ClassVar[tuple[EmbeddingModelInfo, ...]] = (
        EmbeddingModelInfo("text-embedding-3-small", 1536, 512),
        EmbeddingModelInfo("text-embedding-3-large", 3072, 512),
    )

    def default_dimensions(self, model: str, compact: bool = False) -> int:
        return model_dimensions(self.models, model, compact, fallback=1536)

    def _call(self, texts: list[str], api_key: str, model: str, dimensions: Optional[int]) -> EmbedResult:
        payload: dict[str, Any] = {"model": model, "input": texts, "encoding_format": "float"}
        if dimensions:
            payload["dimensions"] = dimensions
        out = post_json(
            self.endpoint,
            payload,
            timeout_s=self.timeout_s,
            headers={"Authorization": f"Bearer {api_key}"},
        )
        data = out.get("data") if isinstance(out, dict) else None
        if not isinstance(data, list) or len(data) != len(texts):
            raise EmbeddingError(f"Unexpected OpenAI response shape: {str(out)[:200]}")
        ordered = sorted(data, key=lambda d: d.get("index", 0))
        embeddings = [[float(x) for x in d["embedding"]] for d in ordered]
        usage = out.get("usage") or {}
        return EmbedResult(embeddings=embeddings, total_tokens=int(usage.get("total_tokens", 0)))

    async def embed(
        self,
        texts: Sequence[str],
        api_key: Optional[str],
        model: str,
        dimensions: Optional[int] = None,
    ) -> EmbedResult:
        if not api_key:
            raise EmbeddingError("OpenAI embeddings need an API key")
        texts = list(texts)
        embeddings: list[list[float]] = []
        total_tokens = 0
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i:i + self.batch_size]
            result = await asyncio.to_thread(self.retry.call, self._call, batch, api_key, model, dimensions)
            embeddings.extend(result.embeddings)
            total_tokens += result.total_tokens
        logger.debug(f"Embedded {len(texts)} texts with {model} ({total_tokens} tokens)")
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
