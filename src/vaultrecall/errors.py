from __future__ import annotations


class VaultRecallError(Exception):
    """Base class for errors raised by vaultrecall."""


class EmbeddingError(VaultRecallError):
    """An embedding provider call failed after its retries."""


class CacheFormatError(VaultRecallError):
    """A persisted record (index cache, vector metadata, shard) failed validation."""
