from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional, Sequence

from .base import EmbedResult


@dataclass
class SentenceTransformersEmbeddingProvider:
    """Local sentence-transformers models, loaded on first use."""

    device: str = "cpu"
    batch_size: int = 32
    use_query_prefix: bool = True
    query_prefix: str = "Represent this sentence for searching relevant passages: "

    id: ClassVar[str] = "sentence_transformers"
    requires_api_key: ClassVar[bool] = False

    _models: dict[str, Any] = field(default_factory=dict, init=False, repr=False)

    def _model(self, model_id: str) -> Any:
        if model_id not in self._models:
            # Suppress harmless multiprocessing resource tracker warnings on macOS
            import warnings
            warnings.filterwarnings("ignore", message="resource_tracker: There appear to be.*leaked semaphore")

            from sentence_transformers import SentenceTransformer  # type: ignore
            self._models[model_id] = SentenceTransformer(model_id, device=self.device)
        return self._models[model_id]

    def default_dimensions(self, model: str, compact: bool = False) -> int:
        return int(self._model(model).get_sentence_embedding_dimension() or 0)

    def _encode(self, texts: list[str], model: str) -> list[list[float]]:
        arr = self._model(model).encode(
            texts, batch_size=self.batch_size, convert_to_numpy=True, normalize_embeddings=True
        )
        return arr.astype("float32").tolist()

    async def embed(
        self,
        texts: Sequence[str],
        api_key: Optional[str],
        model: str,
        dimensions: Optional[int] = None,
    ) -> EmbedResult:
        """Embed documents (no prefix)."""
        vectors = await asyncio.to_thread(self._encode, list(texts), model)
        return EmbedResult(embeddings=vectors, total_tokens=0)

    async def embed_single(
        self,
        text: str,
        api_key: Optional[str],
        model: str,
        dimensions: Optional[int] = None,
    ) -> list[float]:
        """Embed query with optional instruction prefix for asymmetric retrieval."""
        if self.use_query_prefix and self.query_prefix:
            text = self.query_prefix + text
        vectors = await asyncio.to_thread(self._encode, [text], model)
        return vectors[0]
