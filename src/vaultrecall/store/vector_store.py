"""Sharded, file-backed embedding store with exact cosine search.

Vectors are float32, little-endian, base64-encoded inside one JSON file per
shard. A central metadata record maps every chunk id to its shard so shards
load and save independently; only shards touched since the last save are
rewritten.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import numpy as np

from ..errors import CacheFormatError
from ..hashing import stable_string_hash
from .kv import KeyValueStore

logger = logging.getLogger(__name__)

METADATA_KEY = "vectors-meta.json"
STORE_VERSION = 1
SHARD_CAPACITY = 500
SEARCH_YIELD_EVERY = 100
# base64 inflates 4 bytes per float by ~4/3
BASE64_OVERHEAD = 1.33


def shard_key(index: int) -> str:
    return f"vectors-{index}.json"


def encode_vector(vector: Sequence[float] | np.ndarray) -> str:
    return base64.b64encode(np.asarray(vector, dtype="<f4").tobytes()).decode("ascii")


def decode_vector(encoded: str) -> np.ndarray:
    raw = base64.b64decode(encoded, validate=True)
    if len(raw) % 4:
        raise ValueError(f"Encoded vector has {len(raw)} bytes, not a multiple of 4")
    return np.frombuffer(raw, dtype="<f4").astype(np.float32)


def _require(data: dict[str, Any], key: str, kind: type | tuple[type, ...]) -> Any:
    if key not in data:
        raise CacheFormatError(f"vector metadata is missing {key!r}")
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, kind):
        raise CacheFormatError(f"vector metadata field {key!r} has type {type(value).__name__}")
    return value


@dataclass
class VectorStoreMetadata:
    model: str = ""
    dimensions: int = 0
    provider: str = ""
    last_updated: float = 0.0
    version: int = STORE_VERSION
    total_tokens_used: int = 0
    shard_count: int = 0
    chunk_to_shard: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "dimensions": self.dimensions,
            "provider": self.provider,
            "lastUpdated": self.last_updated,
            "version": self.version,
            "totalTokensUsed": self.total_tokens_used,
            "shardCount": self.shard_count,
            "chunkToShard": self.chunk_to_shard,
        }

    @staticmethod
    def from_dict(data: Any) -> "VectorStoreMetadata":
        """Validated decode. Raises CacheFormatError rather than trusting a bad record."""
        if not isinstance(data, dict):
            raise CacheFormatError("vector metadata must be an object")
        version = _require(data, "version", int)
        if version != STORE_VERSION:
            raise CacheFormatError(f"unsupported vector metadata version {version}")
        shard_count = _require(data, "shardCount", int)
        if shard_count < 0:
            raise CacheFormatError(f"negative shardCount {shard_count}")
        mapping = _require(data, "chunkToShard", dict)
        chunk_to_shard: dict[str, int] = {}
        for chunk_id, shard in mapping.items():
            if isinstance(shard, bool) or not isinstance(shard, int) or shard < 0:
                raise CacheFormatError(f"bad shard index for {chunk_id!r}: {shard!r}")
            chunk_to_shard[chunk_id] = shard
        return VectorStoreMetadata(
            model=_require(data, "model", str),
            dimensions=_require(data, "dimensions", int),
            provider=_require(data, "provider", str),
            last_updated=float(_require(data, "lastUpdated", (int, float))),
            version=version,
            total_tokens_used=_require(data, "totalTokensUsed", int),
            shard_count=shard_count,
            chunk_to_shard=chunk_to_shard,
        )


@dataclass(frozen=True)
class VectorHit:
    chunk_id: str
    score: float


@dataclass(frozen=True)
class VectorStoreStats:
    vector_count: int
    storage_size_bytes: int
    model: str
    provider: str
    dimensions: int
    total_tokens_used: int


class VectorStore:
    """Embedding vectors keyed by chunk id.

    `load_metadata()` is cheap and only reads the id→shard map; vectors
    arrive with `load_all_shards_progressive()` (or implicitly on the first
    search). The store does not police dimensionality; callers check
    `is_model_changed()` and `clear()` before mixing models.
    """

    def __init__(self, kv: KeyValueStore, shard_capacity: int = SHARD_CAPACITY):
        self.kv = kv
        self.shard_capacity = shard_capacity
        self._metadata = VectorStoreMetadata()
        self._vectors: dict[str, np.ndarray] = {}
        self._loaded_shards: set[int] = set()
        self._dirty_shards: set[int] = set()
        self._shard_count = 1
        self._metadata_loaded = False

    def __len__(self) -> int:
        return len(self._metadata.chunk_to_shard)

    @property
    def metadata(self) -> VectorStoreMetadata:
        return self._metadata

    @property
    def metadata_loaded(self) -> bool:
        return self._metadata_loaded

    @property
    def shard_count(self) -> int:
        return self._shard_count

    @property
    def dirty_shards(self) -> frozenset[int]:
        return frozenset(self._dirty_shards)

    @property
    def all_shards_loaded(self) -> bool:
        return all(i in self._loaded_shards for i in range(self._metadata.shard_count))

    def has(self, chunk_id: str) -> bool:
        return chunk_id in self._metadata.chunk_to_shard

    def get(self, chunk_id: str) -> Optional[np.ndarray]:
        return self._vectors.get(chunk_id)

    def set(self, chunk_id: str, vector: Sequence[float] | np.ndarray) -> None:
        shard = self._metadata.chunk_to_shard.get(chunk_id)
        if shard is None:
            shard = self._shard_for(chunk_id)
            self._metadata.chunk_to_shard[chunk_id] = shard
        self._vectors[chunk_id] = np.asarray(vector, dtype=np.float32)
        self._dirty_shards.add(shard)

    def remove(self, chunk_id: str) -> None:
        shard = self._metadata.chunk_to_shard.pop(chunk_id, None)
        if shard is not None:
            self._dirty_shards.add(shard)
        self._vectors.pop(chunk_id, None)

    def remove_by_file(self, file_path: str) -> int:
        """Drop every vector whose chunk id belongs to file_path. Returns the count removed."""
        prefix = f"{file_path}::"
        doomed = [cid for cid in self._metadata.chunk_to_shard if cid.startswith(prefix)]
        doomed += [cid for cid in self._vectors if cid.startswith(prefix) and cid not in self._metadata.chunk_to_shard]
        for chunk_id in doomed:
            self.remove(chunk_id)
        return len(doomed)

    def _shard_for(self, chunk_id: str) -> int:
        needed = math.ceil(len(self._metadata.chunk_to_shard) / self.shard_capacity) or 1
        # Shard count only grows so recorded assignments stay valid
        self._shard_count = max(self._shard_count, needed)
        return stable_string_hash(chunk_id) % self._shard_count

    # --- model bookkeeping ---

    def is_model_changed(self, provider: str, model: str, dimensions: int) -> bool:
        meta = self._metadata
        if not meta.model:
            return False
        if meta.provider and meta.provider != provider:
            return True
        return meta.model != model or meta.dimensions != dimensions

    def set_model_info(self, provider: str, model: str, dimensions: int) -> None:
        self._metadata.provider = provider
        self._metadata.model = model
        self._metadata.dimensions = dimensions

    def add_tokens_used(self, tokens: int) -> None:
        self._metadata.total_tokens_used += tokens

    def get_stats(self) -> VectorStoreStats:
        meta = self._metadata
        per_vector = math.ceil(meta.dimensions * 4 * BASE64_OVERHEAD) if meta.dimensions > 0 else 0
        return VectorStoreStats(
            vector_count=len(self),
            storage_size_bytes=len(self) * per_vector,
            model=meta.model,
            provider=meta.provider,
            dimensions=meta.dimensions,
            total_tokens_used=meta.total_tokens_used,
        )

    # --- persistence ---

    async def load_metadata(self) -> None:
        """Read the metadata record. A missing record means an empty store.

        Only the first call reads; after that the in-memory map, including
        removals not yet saved, is authoritative.
        """
        if self._metadata_loaded:
            return
        self._metadata_loaded = True
        if not self.kv.exists(METADATA_KEY):
            logger.debug("No vector metadata yet; starting empty")
            return
        try:
            meta = VectorStoreMetadata.from_dict(self.kv.read_json(METADATA_KEY))
        except (OSError, json.JSONDecodeError, CacheFormatError) as e:
            logger.warning(f"Ignoring unreadable vector metadata: {e}")
            return

        self._metadata = meta
        self._vectors = {}
        self._loaded_shards = set()
        self._dirty_shards = set()
        highest = max(meta.chunk_to_shard.values(), default=-1) + 1
        self._shard_count = max(meta.shard_count, highest, 1)
        meta.shard_count = max(meta.shard_count, highest)
        logger.debug(f"Vector metadata: {len(meta.chunk_to_shard)} vectors in {meta.shard_count} shards")

    async def load_all_shards_progressive(self) -> None:
        for index in range(self._metadata.shard_count):
            if index in self._loaded_shards:
                continue
            self._load_shard(index)
            await asyncio.sleep(0)

    def _load_shard(self, index: int) -> None:
        key = shard_key(index)
        try:
            if not self.kv.exists(key):
                logger.debug(f"Shard {index} has no file")
                self._forget_shard(index)
                return
            data = self.kv.read_json(key)
            if not isinstance(data, dict) or not isinstance(data.get("entries"), dict):
                raise CacheFormatError(f"shard {index} has no entries object")
            decoded: dict[str, np.ndarray] = {}
            for chunk_id, encoded in data["entries"].items():
                if not isinstance(encoded, str):
                    raise CacheFormatError(f"shard {index} entry {chunk_id!r} is not a string")
                decoded[chunk_id] = decode_vector(encoded)
        except (OSError, json.JSONDecodeError, CacheFormatError, binascii.Error, ValueError) as e:
            logger.warning(f"Failed to load vector shard {index}: {e}")
            self._forget_shard(index)
            return
        finally:
            # Never retried, even after a failure
            self._loaded_shards.add(index)

        mapping = self._metadata.chunk_to_shard
        for chunk_id, vec in decoded.items():
            # Removed since the shard was written, or replaced in memory
            if mapping.get(chunk_id) != index or chunk_id in self._vectors:
                continue
            self._vectors[chunk_id] = vec

        missing = [cid for cid, s in mapping.items() if s == index and cid not in self._vectors]
        if missing:
            logger.warning(f"Shard {index} lacks {len(missing)} recorded vectors; dropping them")
            for chunk_id in missing:
                self.remove(chunk_id)

    def _forget_shard(self, index: int) -> None:
        """Unrecord ids whose shard could not be read so they get re-embedded."""
        mapping = self._metadata.chunk_to_shard
        lost = [cid for cid, s in mapping.items() if s == index and cid not in self._vectors]
        for chunk_id in lost:
            del mapping[chunk_id]
        if lost:
            self._dirty_shards.add(index)

    async def save(self) -> None:
        self.kv.mkdir()
        # A dirty shard is rewritten whole, so its persisted entries must be in memory
        for index in sorted(self._dirty_shards):
            if index < self._metadata.shard_count and index not in self._loaded_shards:
                self._load_shard(index)

        by_shard: dict[int, dict[str, str]] = {i: {} for i in self._dirty_shards}
        for chunk_id, index in self._metadata.chunk_to_shard.items():
            if index in by_shard and chunk_id in self._vectors:
                by_shard[index][chunk_id] = encode_vector(self._vectors[chunk_id])

        for index in sorted(by_shard):
            self.kv.write_json(shard_key(index), {"entries": by_shard[index]})
            self._loaded_shards.add(index)
            await asyncio.sleep(0)

        used = max(self._metadata.chunk_to_shard.values(), default=-1) + 1
        self._metadata.shard_count = max(self._metadata.shard_count, used, self._shard_count)
        self._metadata.last_updated = time.time()
        self.kv.write_json(METADATA_KEY, self._metadata.to_dict())
        logger.debug(f"Saved {len(by_shard)} dirty shards, {len(self)} vectors total")
        self._dirty_shards.clear()

    async def clear(self) -> None:
        """Delete every shard file and the metadata record, then reset to empty."""
        for index in range(max(self._metadata.shard_count, self._shard_count)):
            key = shard_key(index)
            if self.kv.exists(key):
                self.kv.remove(key)
        if self.kv.exists(METADATA_KEY):
            self.kv.remove(METADATA_KEY)

        self._metadata = VectorStoreMetadata()
        self._vectors = {}
        self._loaded_shards = set()
        self._dirty_shards = set()
        self._shard_count = 1
        self._metadata_loaded = True

    # --- search ---

    async def search(self, query: Sequence[float] | np.ndarray, top_k: int) -> list[VectorHit]:
        if not self.all_shards_loaded:
            await self.load_all_shards_progressive()

        q = np.asarray(query, dtype=np.float32)
        q_norm = float(np.linalg.norm(q))
        if q_norm == 0:
            return []

        hits: list[VectorHit] = []
        for count, (chunk_id, vec) in enumerate(self._vectors.items(), start=1):
            n = min(len(q), len(vec))
            v = vec[:n]
            v_norm = float(np.linalg.norm(v))
            score = float(np.dot(q[:n], v)) / (q_norm * v_norm) if v_norm else 0.0
            hits.append(VectorHit(chunk_id=chunk_id, score=score))
            if count % SEARCH_YIELD_EVERY == 0:
                await asyncio.sleep(0)

        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:top_k]
