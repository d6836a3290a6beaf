"""Cheap token estimate.

Exact tokenizers are large; a character-class heuristic is close enough for
chunk budgeting:
- CJK (U+3000-U+9FFF, U+F900-U+FAFF): ~1.5 characters per token
- everything else: ~4 characters per token
"""
from __future__ import annotations

import math

CHARS_PER_TOKEN_EN = 4
CHARS_PER_TOKEN_CJK = 1.5


def is_cjk(ch: str) -> bool:
    o = ord(ch)
    return 0x3000 <= o <= 0x9FFF or 0xF900 <= o <= 0xFAFF


def token_weight(text: str) -> float:
    """Un-rounded token estimate; additive over concatenation."""
    cjk = sum(1 for ch in text if is_cjk(ch))
    return cjk / CHARS_PER_TOKEN_CJK + (len(text) - cjk) / CHARS_PER_TOKEN_EN


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(token_weight(text))
