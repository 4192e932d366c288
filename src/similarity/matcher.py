"""Cosine similarity and match-strength classification for embeddings."""

from __future__ import annotations

from enum import Enum
from typing import Sequence

import numpy as np

STRONG_MATCH_THRESHOLD = 0.70
WEAK_MATCH_THRESHOLD = 0.50


class DimensionMismatchError(ValueError):
    """Raised when two vectors (or a centroid's inputs) differ in length."""


class MatchStrength(str, Enum):
    STRONG = "STRONG"
    WEAK = "WEAK"
    NONE = "NONE"


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity between two vectors, clamped to [-1, 1].

    Returns 0.0 when either vector is empty or has zero magnitude.

    Raises:
        DimensionMismatchError: If the vectors have different lengths.
    """
    if len(a) != len(b):
        raise DimensionMismatchError(f"Vector dimensions differ: {len(a)} != {len(b)}")
    if len(a) == 0:
        return 0.0
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    score = float(np.dot(a, b) / (norm_a * norm_b))
    return max(-1.0, min(1.0, score))


def match_strength(score: float) -> MatchStrength:
    if score >= STRONG_MATCH_THRESHOLD:
        return MatchStrength.STRONG
    if score >= WEAK_MATCH_THRESHOLD:
        return MatchStrength.WEAK
    return MatchStrength.NONE


def is_match(score: float) -> bool:
    return score >= WEAK_MATCH_THRESHOLD


def is_strong_match(score: float) -> bool:
    return score >= STRONG_MATCH_THRESHOLD


def centroid(vectors: Sequence[Sequence[float]]) -> list[float] | None:
    """Component-wise mean of equal-length vectors. Returns None if empty."""
    if not vectors:
        return None
    dims = len(vectors[0])
    for vector in vectors:
        if len(vector) != dims:
            raise DimensionMismatchError(f"Vector dimensions differ: {len(vector)} != {dims}")
    return np.mean(np.asarray(vectors, dtype=np.float64), axis=0).tolist()
