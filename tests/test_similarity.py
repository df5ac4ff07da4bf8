"""
Tests for cosine ranking and hybrid fusion.
"""

from datetime import datetime, timedelta, timezone

import pytest

from src.memory.errors import DimensionMismatch
from src.memory.similarity import (
    calculate_cosine_similarity,
    clamp_similarity,
    fuse_scores,
    normalize_weights,
    rank_by_similarity,
)


class TestCosineSimilarity:
    """Tests for the cosine formula."""

    def test_identical_vectors(self):
        assert calculate_cosine_similarity([1, 2, 3], [1, 2, 3]) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        assert calculate_cosine_similarity([1, 0], [0, 1]) == 0.0

    def test_opposite_vectors(self):
        assert calculate_cosine_similarity([1, 0], [-1, 0]) == pytest.approx(-1.0)

    def test_zero_vector(self):
        assert calculate_cosine_similarity([0, 0], [1, 1]) == 0.0

    def test_dimension_mismatch_raises(self):
        """Vectors of different length are never padded."""
        with pytest.raises(DimensionMismatch) as exc_info:
            calculate_cosine_similarity([1, 0, 0], [1, 0])

        assert exc_info.value.expected == 3
        assert exc_info.value.actual == 2

    def test_clamp(self):
        assert clamp_similarity(-0.4) == 0.0
        assert clamp_similarity(1.2) == 1.0
        assert clamp_similarity(0.5) == 0.5


class TestRankBySimilarity:
    """Tests for threshold ranking."""

    def test_threshold_and_order(self):
        candidates = {"a": [1.0, 0.0], "b": [0.6, 0.8], "c": [0.0, 1.0]}

        ranked, warnings = rank_by_similarity(
            [1.0, 0.0], list(candidates), embedding_of=lambda k: candidates[k], threshold=0.5,
        )

        assert [k for k, _ in ranked] == ["a", "b"]
        assert warnings == []

    def test_limit(self):
        candidates = [[1.0, 0.0]] * 10
        ranked, _ = rank_by_similarity([1.0, 0.0], candidates, embedding_of=lambda v: v, limit=3)

        assert len(ranked) == 3

    def test_mismatched_candidate_excluded_with_warning(self):
        candidates = {"ok": [1.0, 0.0], "bad": [1.0, 0.0, 0.0]}

        ranked, warnings = rank_by_similarity([1.0, 0.0], list(candidates), embedding_of=lambda k: candidates[k])

        assert [k for k, _ in ranked] == ["ok"]
        assert len(warnings) == 1
        assert "expected 2, got 3" in warnings[0]

    def test_ties_prefer_recent(self):
        now = datetime.now(timezone.utc)
        created = {"old": now - timedelta(days=3), "new": now}

        ranked, _ = rank_by_similarity(
            [1.0, 0.0], ["old", "new"],
            embedding_of=lambda k: [1.0, 0.0],
            created_at_of=lambda k: created[k],
        )

        assert [k for k, _ in ranked] == ["new", "old"]


class TestFuseScores:
    """Tests for hybrid score fusion."""

    def test_weighted_ranking(self):
        """0.7 * 0.9 + 0.3 * 0.1 = 0.66 beats 0.7 * 0.5 + 0.3 * 1.0 = 0.65."""
        fused = fuse_scores({"x": 0.9, "y": 0.5}, {"x": 0.1, "y": 1.0}, 0.7, 0.3)

        assert [cid for cid, *_ in fused] == ["x", "y"]
        assert fused[0][1] == pytest.approx(0.66)
        assert fused[1][1] == pytest.approx(0.65)

    def test_single_signal_candidates_kept(self):
        fused = dict((cid, combined) for cid, combined, _, _ in fuse_scores({"s": 0.8}, {"k": 1.0}))

        assert fused["s"] == pytest.approx(0.56)
        assert fused["k"] == pytest.approx(0.3)

    def test_weights_normalized(self):
        assert normalize_weights(7, 3) == pytest.approx((0.7, 0.3))

    def test_invalid_weights(self):
        with pytest.raises(ValueError):
            normalize_weights(-1, 1)
        with pytest.raises(ValueError):
            normalize_weights(0, 0)
