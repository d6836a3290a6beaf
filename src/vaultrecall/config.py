from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
import os
import tomllib
from typing import Any, Optional

CHUNK_STRATEGIES = ("section", "paragraph", "fixed")
EMBEDDING_PROVIDERS = ("openai", "ollama", "sentence_transformers")


def _expand(p: str) -> str:
    return os.path.expandvars(os.path.expanduser(p))


@dataclass(frozen=True)
class VaultConfig:
    """Configuration for one vault and its index.

    Credentials never live here; `embedding_api_key_env` names the
    environment variable the key is read from.
    """

    vault_root: Path
    index_dir: Path

    exclude_folders: list[str] = field(default_factory=list)
    extensions: list[str] = field(default_factory=lambda: [".md"])

    def __post_init__(self):
        """Expand string paths into Path objects, then check ranges."""
        if isinstance(self.vault_root, str):
            object.__setattr__(self, 'vault_root', Path(_expand(self.vault_root)))
        if isinstance(self.index_dir, str):
            object.__setattr__(self, 'index_dir', Path(_expand(self.index_dir)))
        self.validate()

    # Chunking
    chunk_strategy: str = "section"  # section|paragraph|fixed
    chunk_max_tokens: int = 512

    # Retrieval
    top_k: int = 5
    min_score: float = 0.3

    # Embeddings
    embedding_enabled: bool = False
    embedding_provider: str = "openai"  # openai|ollama|sentence_transformers
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 0  # 0 = provider default
    embedding_compact: bool = False
    embedding_api_key_env: str = "OPENAI_API_KEY"
    embedding_endpoint: Optional[str] = None
    embedding_batch_size: int = 100
    auto_embed: bool = False
    idle_seconds: float = 30.0
    auto_batch_size: int = 10
    auto_backlog_cap: int = 100

    # Proximity boost
    proximity_enabled: bool = True
    proximity_boost_factor: float = 0.5

    # Watcher
    debounce_ms: int = 500

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def api_key(self) -> Optional[str]:
        if not self.embedding_api_key_env:
            return None
        return os.environ.get(self.embedding_api_key_env) or None

    def update(self, **changes: Any) -> "VaultConfig":
        """Return a validated copy with `changes` applied."""
        return replace(self, **changes)

    def validate(self) -> None:
        if self.chunk_strategy not in CHUNK_STRATEGIES:
            raise ValueError(f"Invalid chunking.strategy: {self.chunk_strategy}. Must be one of {CHUNK_STRATEGIES}.")
        if self.chunk_max_tokens < 16 or self.chunk_max_tokens > 8192:
            raise ValueError(f"Invalid chunking.max_tokens: {self.chunk_max_tokens}. Must be between 16 and 8192.")
        if self.top_k <= 0 or self.top_k > 100:
            raise ValueError(f"Invalid retrieval.top_k: {self.top_k}. Must be between 1 and 100.")
        if self.min_score < 0 or self.min_score > 1:
            raise ValueError(f"Invalid retrieval.min_score: {self.min_score}. Must be between 0 and 1.")
        if self.embedding_provider not in EMBEDDING_PROVIDERS:
            raise ValueError(
                f"Invalid embeddings.provider: {self.embedding_provider}. Must be one of {EMBEDDING_PROVIDERS}."
            )
        if self.embedding_dimensions < 0:
            raise ValueError(f"Invalid embeddings.dimensions: {self.embedding_dimensions}. Must be >= 0.")
        if self.embedding_batch_size <= 0 or self.embedding_batch_size > 10000:
            raise ValueError(
                f"Invalid embeddings.batch_size: {self.embedding_batch_size}. Must be between 1 and 10000."
            )
        if self.idle_seconds <= 0:
            raise ValueError(f"Invalid embeddings.idle_seconds: {self.idle_seconds}. Must be > 0.")
        if self.auto_batch_size <= 0:
            raise ValueError(f"Invalid embeddings.auto_batch_size: {self.auto_batch_size}. Must be > 0.")
        if self.auto_backlog_cap < 0:
            raise ValueError(f"Invalid embeddings.auto_backlog_cap: {self.auto_backlog_cap}. Must be >= 0.")
        if self.proximity_boost_factor < 0 or self.proximity_boost_factor > 1:
            raise ValueError(
                f"Invalid proximity.boost_factor: {self.proximity_boost_factor}. Must be between 0 and 1."
            )
        if self.debounce_ms < 0:
            raise ValueError(f"Invalid watch.debounce_ms: {self.debounce_ms}. Must be >= 0.")

    @staticmethod
    def from_toml(path: str | Path) -> "VaultConfig":
        data = tomllib.loads(Path(path).read_text(encoding="utf-8"))
        vault = data.get("vault", {})
        index = data.get("index", {})
        chunking = data.get("chunking", {})
        ret = data.get("retrieval", {})
        emb = data.get("embeddings", {})
        prox = data.get("proximity", {})
        watch = data.get("watch", {})
        log = data.get("logging", {})

        vault_root = Path(_expand(vault["root"])).resolve()
        index_dir = Path(_expand(index["dir"])).resolve()

        # Folders are vault-relative; normalise separators and trailing slashes
        exclude_folders = [str(f).replace("\\", "/").strip("/") for f in vault.get("exclude_folders", [])]
        extensions = [e if e.startswith(".") else f".{e}" for e in vault.get("extensions", [".md"])]

        endpoint = emb.get("endpoint")
        log_file = log.get("file")

        cfg = VaultConfig(
            vault_root=vault_root,
            index_dir=index_dir,
            exclude_folders=[f for f in exclude_folders if f],
            extensions=extensions,
            chunk_strategy=str(chunking.get("strategy", "section")),
            chunk_max_tokens=int(chunking.get("max_tokens", 512)),
            top_k=int(ret.get("top_k", 5)),
            min_score=float(ret.get("min_score", 0.3)),
            embedding_enabled=bool(emb.get("enabled", False)),
            embedding_provider=str(emb.get("provider", "openai")),
            embedding_model=str(emb.get("model", "text-embedding-3-small")),
            embedding_dimensions=int(emb.get("dimensions", 0)),
            embedding_compact=bool(emb.get("compact", False)),
            embedding_api_key_env=str(emb.get("api_key_env", "OPENAI_API_KEY")),
            embedding_endpoint=str(endpoint) if endpoint else None,
            embedding_batch_size=int(emb.get("batch_size", 100)),
            auto_embed=bool(emb.get("auto_embed", False)),
            idle_seconds=float(emb.get("idle_seconds", 30)),
            auto_batch_size=int(emb.get("auto_batch_size", 10)),
            auto_backlog_cap=int(emb.get("auto_backlog_cap", 100)),
            proximity_enabled=bool(prox.get("enabled", True)),
            proximity_boost_factor=float(prox.get("boost_factor", 0.5)),
            debounce_ms=int(watch.get("debounce_ms", 500)),
            log_level=str(log.get("level", "INFO")),
            log_file=_expand(str(log_file)) if log_file else None,
        )
        return cfg
