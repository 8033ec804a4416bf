"""Tests for the HNSW index.

Tests cover:
- Recall against the brute-force oracle on random data
- Tombstoned nodes are skipped and can be restored
- Tombstones never crowd live nodes out of the candidate list
- Similarity values for normalised vectors
- Parameter and dimension validation
"""

from __future__ import annotations

import numpy as np
import pytest

from src.context_engine.memory.hnsw import HnswIndex


def _random_vectors(count: int, dimension: int, seed: int) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.normal(size=(count, dimension))


class TestHnswRecall:
    def test_recall_matches_brute_force(self):
        """Top-10 recall against exact search stays above 0.9."""
        data = _random_vectors(300, 32, seed=1)
        queries = _random_vectors(25, 32, seed=2)
        index = HnswIndex(dimension=32, m=16, ef_construction=64, seed=3)
        for i, vector in enumerate(data):
            index.add(f"r{i}", vector)

        found = 0
        for query in queries:
            approx = {key for key, _ in index.search(query, k=10, ef=64)}
            exact = {key for key, _ in index.brute_force(query, k=10)}
            found += len(approx & exact)

        recall = found / (10 * len(queries))
        assert recall >= 0.9

    def test_results_sorted_by_similarity(self):
        data = _random_vectors(100, 16, seed=4)
        index = HnswIndex(dimension=16, seed=5)
        for i, vector in enumerate(data):
            index.add(f"r{i}", vector)

        hits = index.search(data[0], k=10, ef=50)
        similarities = [s for _, s in hits]
        assert similarities == sorted(similarities, reverse=True)
        assert hits[0][0] == "r0"
        assert hits[0][1] == pytest.approx(1.0)


class TestHnswTombstones:
    def test_deleted_nodes_are_skipped(self):
        index = HnswIndex(dimension=4, seed=0)
        a = index.add("a", [1.0, 0.0, 0.0, 0.0])
        index.add("b", [0.9, 0.1, 0.0, 0.0])
        index.delete(a)

        keys = [key for key, _ in index.search([1.0, 0.0, 0.0, 0.0], k=2)]
        assert keys == ["b"]
        assert len(index) == 1

    def test_restore_brings_node_back(self):
        index = HnswIndex(dimension=4, seed=0)
        a = index.add("a", [1.0, 0.0, 0.0, 0.0])
        index.delete(a)
        index.restore(a)
        assert index.search([1.0, 0.0, 0.0, 0.0], k=1)[0][0] == "a"

    def test_tombstones_do_not_fill_the_result_list(self):
        """Fifty deleted exact matches still leave the live neighbour findable."""
        index = HnswIndex(dimension=4, m=4, ef_construction=16, seed=0)
        for i in range(50):
            index.delete(index.add(f"stale-{i}", [1.0, 0.0, 0.0, 0.0]))
        index.add("live", [0.9, 0.4359, 0.0, 0.0])

        hits = index.search([1.0, 0.0, 0.0, 0.0], k=1, ef=10)

        assert [key for key, _ in hits] == ["live"]
        assert hits[0][1] == pytest.approx(0.9, abs=1e-3)

    def test_node_count_includes_tombstones(self):
        index = HnswIndex(dimension=4, seed=0)
        a = index.add("a", [1.0, 0.0, 0.0, 0.0])
        index.add("b", [0.0, 1.0, 0.0, 0.0])
        index.delete(a)
        assert index.node_count == 2
        assert len(index) == 1

    def test_unknown_node_rejected(self):
        index = HnswIndex(dimension=4)
        with pytest.raises(KeyError):
            index.delete(3)


class TestHnswValidation:
    def test_empty_index_returns_nothing(self):
        assert HnswIndex(dimension=4).search([1.0, 0.0, 0.0, 0.0], k=5) == []

    def test_cosine_similarity_ignores_magnitude(self):
        index = HnswIndex(dimension=2)
        index.add("a", [3.0, 4.0])
        (_, similarity), = index.search([6.0, 8.0], k=1)
        assert similarity == pytest.approx(1.0)

    def test_dimension_mismatch(self):
        index = HnswIndex(dimension=4)
        with pytest.raises(ValueError, match="dimension mismatch"):
            index.add("a", [1.0, 0.0])

    @pytest.mark.parametrize(
        "kwargs",
        [{"dimension": 0}, {"dimension": 4, "m": 1}, {"dimension": 4, "ef_construction": 0}],
    )
    def test_invalid_parameters(self, kwargs):
        with pytest.raises(ValueError):
            HnswIndex(**kwargs)
