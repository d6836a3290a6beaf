from __future__ import annotations

import hashlib


def blake2b_hex(data: bytes) -> str:
    h = hashlib.blake2b(digest_size=32)
    h.update(data)
    return h.hexdigest()


def content_hash(text: str) -> str:
    """Change-detection hash of a document's text."""
    return blake2b_hex(text.encode("utf-8"))


def stable_string_hash(value: str) -> int:
    """Deterministic non-negative 32-bit string hash.

    Classic `h = h * 31 + c` over UTF-16 code units with signed 32-bit
    wrap-around, so shard assignment does not depend on PYTHONHASHSEED and
    stays compatible with stores written by other clients.
    """
    data = value.encode("utf-16-le")
    h = 0
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = ((h << 5) - h + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)
