"""
Similarity Engine
=================

Cosine similarity, threshold ranking and hybrid score fusion.
All functions are pure and synchronous.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from .errors import DimensionMismatch

logger = logging.getLogger(__name__)

C = TypeVar("C")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def calculate_cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity dot(a, b) / (|a| * |b|).

    Raises:
        DimensionMismatch: If the vectors have different lengths

    Returns:
        Similarity in [-1, 1]; 0.0 when either vector has zero magnitude
    """
    if len(a) != len(b):
        raise DimensionMismatch(len(a), len(b))

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    if norm_a == 0 or norm_b == 0:
        return 0.0

    similarity = dot / (math.sqrt(norm_a) * math.sqrt(norm_b))
    return max(-1.0, min(1.0, similarity))


def clamp_similarity(value: float) -> float:
    """Clamp a cosine similarity to [0, 1] for display and fusion."""
    return max(0.0, min(1.0, value))


def _timestamp(value: Optional[datetime]) -> float:
    if value is None:
        return 0.0
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - _EPOCH).total_seconds()


def rank_by_similarity(
    query_embedding: Sequence[float],
    candidates: Iterable[C],
    embedding_of: Callable[[C], Sequence[float]],
    created_at_of: Callable[[C], Optional[datetime]] = lambda c: None,
    limit: int = 5,
    threshold: float = 0.0,
) -> Tuple[List[Tuple[C, float]], List[str]]:
    """
    Rank candidates by cosine similarity to the query.

    Candidates whose vectors do not match the query dimension are
    excluded and reported, never compared after padding.

    Returns:
        Tuple of ([(candidate, similarity)] best first, warnings)
    """
    scored = []
    warnings = []
    for candidate in candidates:
        try:
            similarity = calculate_cosine_similarity(query_embedding, embedding_of(candidate))
        except DimensionMismatch as e:
            logger.warning(f"Excluding candidate from ranking: {e}")
            warnings.append(str(e))
            continue
        if similarity >= threshold:
            scored.append((candidate, similarity))

    # Ties go to the most recently created candidate
    scored.sort(key=lambda item: (-item[1], -_timestamp(created_at_of(item[0]))))
    return scored[:limit], warnings


def normalize_weights(semantic_weight: float, keyword_weight: float) -> Tuple[float, float]:
    """Scale hybrid weights so they sum to 1."""
    if semantic_weight < 0 or keyword_weight < 0:
        raise ValueError("Hybrid weights cannot be negative")
    total = semantic_weight + keyword_weight
    if total == 0:
        raise ValueError("At least one hybrid weight must be positive")
    if not math.isclose(total, 1.0):
        logger.debug(f"Normalizing hybrid weights {semantic_weight}/{keyword_weight}")
    return semantic_weight / total, keyword_weight / total


def fuse_scores(
    semantic: Dict[str, float],
    keyword: Dict[str, float],
    semantic_weight: float = 0.7,
    keyword_weight: float = 0.3,
) -> List[Tuple[str, float, float, float]]:
    """
    Linearly combine semantic and keyword scores.

    Candidates present in only one map keep their single signal; the
    missing one counts as 0.

    Returns:
        [(candidate_id, combined, semantic, keyword)] sorted by combined desc
    """
    sw, kw = normalize_weights(semantic_weight, keyword_weight)
    fused = []
    for candidate_id in set(semantic) | set(keyword):
        s = clamp_similarity(semantic.get(candidate_id, 0.0))
        k = max(0.0, min(1.0, keyword.get(candidate_id, 0.0)))
        fused.append((candidate_id, sw * s + kw * k, s, k))

    fused.sort(key=lambda item: (-item[1], item[0]))
    return fused
