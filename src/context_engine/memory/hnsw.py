"""Hierarchical Navigable Small World graph for cosine similarity search.

An in-process approximate nearest-neighbor index. Each node carries a
string key (the owning record id) and a unit-normalized vector; cosine
distance is ``1 - dot(a, b)``.

Tuning parameters:
- m: graph degree per layer (layer 0 keeps up to 2*m links)
- ef_construction: candidate list size while inserting
- ef (query time): candidate list size while searching

Nodes are never removed. Deleting a node tombstones it: it is still
traversed (keeping the graph connected) but never enters the result set
of a search, so stale nodes cannot crowd live ones out of the ef-sized
candidate list. Owners rebuild the index once tombstones dominate.
"""

from __future__ import annotations

import heapq
import math
import random

import numpy as np


class HnswIndex:
    """HNSW graph over unit vectors with tombstone deletes.

    Not thread-safe; callers serialize mutations and searches.

    Usage:
        index = HnswIndex(dimension=1536, m=16, ef_construction=64)
        node = index.add("record-1", vector)
        hits = index.search(query, k=10, ef=40)  # [(key, similarity), ...]
        index.delete(node)
    """

    def __init__(
        self,
        dimension: int,
        m: int = 16,
        ef_construction: int = 64,
        seed: int | None = None,
    ) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        if m < 2:
            raise ValueError("m must be at least 2")
        if ef_construction < 1:
            raise ValueError("ef_construction must be at least 1")

        self._dimension = dimension
        self._m = m
        self._m0 = 2 * m
        self._ef_construction = ef_construction
        self._level_mult = 1.0 / math.log(m)
        self._rng = random.Random(seed)

        self._vectors: list[np.ndarray] = []
        self._keys: list[str] = []
        # node -> level -> neighbor node ids
        self._links: list[list[list[int]]] = []
        self._deleted: set[int] = set()
        self._entry_point: int | None = None
        self._max_level = -1

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def node_count(self) -> int:
        """Nodes in the graph, tombstones included."""
        return len(self._keys)

    def __len__(self) -> int:
        return len(self._keys) - len(self._deleted)

    # ── Public API ──────────────────────────────────────────────────────────

    def add(self, key: str, vector: list[float] | np.ndarray) -> int:
        """Insert a vector under ``key`` and return its node id."""
        query = self._normalize(vector)
        node = len(self._keys)
        level = self._random_level()

        self._vectors.append(query)
        self._keys.append(key)
        self._links.append([[] for _ in range(level + 1)])

        if self._entry_point is None:
            self._entry_point = node
            self._max_level = level
            return node

        entry = [self._entry_point]
        for layer in range(self._max_level, level, -1):
            entry = [self._search_layer(query, entry, 1, layer)[0][1]]

        for layer in range(min(level, self._max_level), -1, -1):
            candidates = self._search_layer(query, entry, self._ef_construction, layer)
            neighbors = [n for _, n in candidates[: self._m]]
            self._links[node][layer] = neighbors
            for neighbor in neighbors:
                self._connect(neighbor, node, layer)
            entry = [n for _, n in candidates]

        if level > self._max_level:
            self._entry_point = node
            self._max_level = level
        return node

    def delete(self, node: int) -> None:
        """Tombstone a node so searches skip it."""
        self._check_node(node)
        self._deleted.add(node)

    def restore(self, node: int) -> None:
        """Clear a tombstone."""
        self._check_node(node)
        self._deleted.discard(node)

    def search(
        self,
        vector: list[float] | np.ndarray,
        k: int,
        ef: int | None = None,
    ) -> list[tuple[str, float]]:
        """Return up to ``k`` live ``(key, similarity)`` pairs, most similar first."""
        if self._entry_point is None or k <= 0:
            return []

        query = self._normalize(vector)
        ef = max(ef or k, k)

        entry = [self._entry_point]
        for layer in range(self._max_level, 0, -1):
            entry = [self._search_layer(query, entry, 1, layer)[0][1]]

        candidates = self._search_layer(query, entry, ef, 0, live_only=True)
        return [(self._keys[node], 1.0 - distance) for distance, node in candidates[:k]]

    def brute_force(
        self, vector: list[float] | np.ndarray, k: int
    ) -> list[tuple[str, float]]:
        """Exact search over every live node (recall oracle)."""
        if not self._keys or k <= 0:
            return []
        query = self._normalize(vector)
        matrix = np.vstack(self._vectors)
        similarities = matrix @ query
        order = np.argsort(-similarities, kind="stable")
        hits = [
            (self._keys[int(node)], float(similarities[node]))
            for node in order
            if int(node) not in self._deleted
        ]
        return hits[:k]

    # ── Internals ───────────────────────────────────────────────────────────

    def _normalize(self, vector: list[float] | np.ndarray) -> np.ndarray:
        array = np.asarray(vector, dtype=np.float64)
        if array.shape != (self._dimension,):
            raise ValueError(
                f"Vector dimension mismatch: expected {self._dimension}, "
                f"got {array.shape[0] if array.ndim == 1 else array.shape}"
            )
        norm = np.linalg.norm(array)
        if norm == 0.0:
            return array
        return array / norm

    def _random_level(self) -> int:
        return int(-math.log(1.0 - self._rng.random()) * self._level_mult)

    def _check_node(self, node: int) -> None:
        if node < 0 or node >= len(self._keys):
            raise KeyError(f"Unknown node {node}")

    def _distances(self, query: np.ndarray, nodes: list[int]) -> np.ndarray:
        matrix = np.vstack([self._vectors[n] for n in nodes])
        return 1.0 - matrix @ query

    def _search_layer(
        self,
        query: np.ndarray,
        entry_points: list[int],
        ef: int,
        layer: int,
        live_only: bool = False,
    ) -> list[tuple[float, int]]:
        """Best-first search of one layer; returns (distance, node) ascending.

        With ``live_only`` tombstoned nodes are expanded but never kept as
        results.
        """
        visited = set(entry_points)
        start = self._distances(query, entry_points)
        candidates = [(float(d), n) for d, n in zip(start, entry_points)]
        heapq.heapify(candidates)
        # Max-heap of the current best ``ef`` results via negated distances
        results = [
            (-d, n) for d, n in candidates if not (live_only and n in self._deleted)
        ]
        heapq.heapify(results)
        while len(results) > ef:
            heapq.heappop(results)

        while candidates:
            distance, node = heapq.heappop(candidates)
            if len(results) >= ef and distance > -results[0][0]:
                break

            links = self._links[node]
            if layer >= len(links):
                continue
            fresh = [n for n in links[layer] if n not in visited]
            if not fresh:
                continue
            visited.update(fresh)

            for d, neighbor in zip(self._distances(query, fresh), fresh):
                d = float(d)
                if len(results) < ef or d < -results[0][0]:
                    heapq.heappush(candidates, (d, neighbor))
                    if live_only and neighbor in self._deleted:
                        continue
                    heapq.heappush(results, (-d, neighbor))
                    if len(results) > ef:
                        heapq.heappop(results)

        return sorted((-d, n) for d, n in results)

    def _connect(self, node: int, neighbor: int, layer: int) -> None:
        """Add a back-link, pruning to the closest links past capacity."""
        links = self._links[node][layer]
        links.append(neighbor)
        capacity = self._m0 if layer == 0 else self._m
        if len(links) <= capacity:
            return
        distances = self._distances(self._vectors[node], links)
        keep = np.argsort(distances, kind="stable")[:capacity]
        self._links[node][layer] = [links[int(i)] for i in keep]
