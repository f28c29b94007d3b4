"""Vector and text similarity helpers."""

from __future__ import annotations

import re
from collections.abc import Iterable
from collections.abc import Sequence

import numpy as np

from recallmcp.errors import DimensionMismatchError

_WORD_RE = re.compile(r"\s+")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two equal-length vectors.

    Zero-norm vectors have similarity ``0.0``.  Vectors of different
    length raise ``DimensionMismatchError``.
    """
    if len(a) != len(b):
        raise DimensionMismatchError(
            f"cannot compare vectors of dimension {len(a)} and {len(b)}"
        )
    if not len(a):
        return 0.0
    v1 = np.asarray(a, dtype=np.float64)
    v2 = np.asarray(b, dtype=np.float64)
    norm = float(np.linalg.norm(v1) * np.linalg.norm(v2))
    if norm == 0.0:
        return 0.0
    return float(np.dot(v1, v2) / norm)


def long_words(text: str, min_length: int = 4) -> list[str]:
    """Lowercase whitespace-separated words of at least *min_length* chars."""
    return [w for w in _WORD_RE.split(text.lower()) if len(w) >= min_length]


def count_word_matches(memory_text: str, history_item: str) -> int:
    """Count long words of *memory_text* that also occur in *history_item*."""
    history_words = set(_WORD_RE.split(history_item.lower()))
    return sum(1 for word in long_words(memory_text) if word in history_words)


def context_boost(
    memory_text: str,
    history: Iterable[str],
    *,
    per_match: float = 0.05,
    maximum: float = 0.2,
) -> float:
    """Boost for memories sharing long words with recent conversation turns.

    Each history item scores ``min(maximum, matches * per_match)``; the best
    item wins.
    """
    best = 0.0
    for item in history:
        if not item:
            continue
        matches = count_word_matches(memory_text, item)
        best = max(best, min(maximum, matches * per_match))
    return best
