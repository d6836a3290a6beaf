from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence


@dataclass(frozen=True)
class EmbeddingModelInfo:
    id: str
    dimensions: int
    reduced_dimensions: Optional[int] = None  # compact mode


@dataclass(frozen=True)
class EmbedResult:
    embeddings: list[list[float]] = field(default_factory=list)
    total_tokens: int = 0


class EmbeddingProvider(Protocol):
    """Turns text into vectors.

    Implementations retry rate-limited and transient failures themselves and
    raise EmbeddingError once they give up.
    """

    id: str
    requires_api_key: bool

    def default_dimensions(self, model: str, compact: bool = False) -> int:
        """Vector width for model; 0 when the provider cannot tell in advance."""
        ...

    async def embed(
        self,
        texts: Sequence[str],
        api_key: Optional[str],
        model: str,
        dimensions: Optional[int] = None,
    ) -> EmbedResult:
        ...

    async def embed_single(
        self,
        text: str,
        api_key: Optional[str],
        model: str,
        dimensions: Optional[int] = None,
    ) -> list[float]:
        ...


def model_dimensions(models: Sequence[EmbeddingModelInfo], model: str, compact: bool, fallback: int) -> int:
    for info in models:
        if info.id == model:
            if compact and info.reduced_dimensions:
                return info.reduced_dimensions
            return info.dimensions
    return fallback
