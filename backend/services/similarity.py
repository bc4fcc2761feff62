import math
from typing import Sequence

from core.exceptions import DimensionMismatch


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Compute cosine similarity between two vectors; 0.0 if either norm is zero."""
    if len(a) != len(b):
        raise DimensionMismatch(f"Vectors must have the same length ({len(a)} != {len(b)})")

    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    # Rounding can push |a·a| / (|a||a|) a hair past 1
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))
