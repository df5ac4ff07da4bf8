"""
Chunk Deduplication
===================

Removes exact and near-duplicate chunks before they reach the embedding
provider. Works on normalized text only (case-folded, whitespace
collapsed); no embeddings exist at this stage.

A chunk is dropped when, against any earlier retained chunk:
- its normalized text hash is equal (exact duplicate), or
- both share at least one token and the SequenceMatcher ratio of the
  normalized texts reaches the threshold (fuzzy duplicate).

Comparing only against retained chunks makes the pass idempotent.
"""

import hashlib
import logging
import re
from difflib import SequenceMatcher
from typing import List, Sequence, Tuple

from .models import TextChunk

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.95


def normalize_text(text: str) -> str:
    """Case-fold and collapse whitespace."""
    return re.sub(r"\s+", " ", text).strip().casefold()


def normalized_hash(text: str) -> str:
    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()


def text_similarity(a: str, b: str) -> float:
    """SequenceMatcher ratio of two already-normalized texts."""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    return SequenceMatcher(None, a, b).ratio()


def deduplicate_with_count(
    chunks: Sequence[TextChunk],
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> Tuple[List[TextChunk], int]:
    """
    Deduplicate chunks and report how many were removed.

    Returns:
        Tuple of (retained chunks in original order, removed count)
    """
    if not 0 < similarity_threshold <= 1:
        raise ValueError("similarity_threshold must be in (0, 1]")

    kept: List[TextChunk] = []
    kept_norms: List[str] = []
    kept_tokens: List[set] = []
    seen_hashes = set()

    for chunk in chunks:
        norm = normalize_text(chunk.text)
        digest = hashlib.sha256(norm.encode("utf-8")).hexdigest()
        if digest in seen_hashes:
            continue

        tokens = set(norm.split())
        duplicate = False
        if similarity_threshold < 1:
            for other_norm, other_tokens in zip(kept_norms, kept_tokens):
                # Cheap guards before the quadratic ratio
                if not tokens & other_tokens:
                    continue
                shorter, longer = sorted((len(norm), len(other_norm)))
                if longer and 2 * shorter / (shorter + longer) < similarity_threshold:
                    continue
                if text_similarity(other_norm, norm) >= similarity_threshold:
                    duplicate = True
                    break
        if duplicate:
            continue

        seen_hashes.add(digest)
        kept.append(chunk)
        kept_norms.append(norm)
        kept_tokens.append(tokens)

    removed = len(chunks) - len(kept)
    if removed:
        logger.debug(f"Deduplicated {removed} of {len(chunks)} chunks")
    return kept, removed


def deduplicate_chunks(
    chunks: Sequence[TextChunk],
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> List[TextChunk]:
    """
    Order-preserving, stable deduplication; the first occurrence wins.

    Args:
        chunks: Chunks in document order
        similarity_threshold: Minimum text similarity for a fuzzy duplicate

    Returns:
        Retained chunks (original objects, original order)
    """
    kept, _ = deduplicate_with_count(chunks, similarity_threshold)
    return kept
