"""
Tests for the HNSW index: recall against a brute-force oracle, tombstone
deletes, filtered search, and compaction with concurrent readers.
"""

from __future__ import annotations

import threading

import numpy as np
import pytest

from services.reco.embedding.hnsw import HNSWIndex, normalize

DIM = 24
N = 1000


def _random_unit(rng: np.random.Generator, n: int, dim: int = DIM) -> np.ndarray:
    vecs = rng.normal(size=(n, dim)).astype(np.float32)
    return vecs / np.linalg.norm(vecs, axis=1, keepdims=True)


def _brute_force(data: np.ndarray, q: np.ndarray, k: int) -> list[int]:
    dists = 1.0 - data @ normalize(q)
    return [int(i) for i in np.argsort(dists, kind="stable")[:k]]


@pytest.fixture(scope="module")
def corpus() -> np.ndarray:
    return _random_unit(np.random.default_rng(7), N)


@pytest.fixture(scope="module")
def built(corpus: np.ndarray) -> HNSWIndex:
    index = HNSWIndex(DIM, m=16, ef_construction=100, ef_search=128, seed=3)
    for i, vec in enumerate(corpus):
        index.add(f"r{i}", vec)
    return index


# ---------------------------------------------------------------------------
# Recall
# ---------------------------------------------------------------------------

class TestRecall:
    def test_recall_at_10_vs_oracle(self, corpus: np.ndarray, built: HNSWIndex):
        queries = _random_unit(np.random.default_rng(11), 50)
        k = 10
        found = 0
        for q in queries:
            truth = {f"r{i}" for i in _brute_force(corpus, q, k)}
            hits = {label for label, _ in built.search(q, k)[:k]}
            found += len(truth & hits)
        recall = found / (k * len(queries))
        assert recall >= 0.9

    def test_results_ascending_by_distance(self, built: HNSWIndex, corpus: np.ndarray):
        hits = built.search(corpus[5], 20)
        dists = [d for _, d in hits]
        assert dists == sorted(dists)

    def test_self_query_returns_self_first(self, built: HNSWIndex, corpus: np.ndarray):
        label, dist = built.search(corpus[42], 1)[0]
        assert label == "r42"
        assert dist == pytest.approx(0.0, abs=1e-5)

    def test_len_counts_live_nodes(self, built: HNSWIndex):
        assert len(built) == N
        assert "r0" in built
        assert "missing" not in built


# ---------------------------------------------------------------------------
# Deletes and filters
# ---------------------------------------------------------------------------

class TestDeletes:
    def test_removed_label_never_returned(self):
        rng = np.random.default_rng(1)
        vecs = _random_unit(rng, 100)
        index = HNSWIndex(DIM, m=8, ef_construction=50, ef_search=50)
        for i, v in enumerate(vecs):
            index.add(f"r{i}", v)

        assert index.remove("r10") is True
        assert index.remove("r10") is False
        labels = [label for label, _ in index.search(vecs[10], 10)]
        assert "r10" not in labels
        assert index.tombstones == 1
        assert len(index) == 99

    def test_readd_replaces_vector(self):
        index = HNSWIndex(4, m=4, ef_construction=16, ef_search=16)
        index.add("a", [1, 0, 0, 0])
        index.add("b", [0, 1, 0, 0])
        index.add("a", [0, 0, 1, 0])
        label, dist = index.search([0, 0, 1, 0], 1)[0]
        assert label == "a"
        assert dist == pytest.approx(0.0, abs=1e-6)
        assert len(index) == 2

    def test_allowed_restricts_results(self, built: HNSWIndex, corpus: np.ndarray):
        allowed = {f"r{i}" for i in range(0, N, 97)}
        hits = built.search(corpus[0], 5, allowed=allowed)
        assert len(hits) >= 5
        assert all(label in allowed for label, _ in hits)

    def test_empty_index_returns_nothing(self):
        index = HNSWIndex(DIM)
        assert index.search(np.ones(DIM), 5) == []

    def test_wrong_dimension_rejected(self, built: HNSWIndex):
        with pytest.raises(ValueError):
            built.search(np.ones(DIM + 1), 3)


# ---------------------------------------------------------------------------
# Graph construction
# ---------------------------------------------------------------------------

class TestNeighborSelection:
    def test_links_spread_across_clusters(self):
        index = HNSWIndex(3, m=2, seed=1)
        for label, vec in (("a1", [1.0, 0.1, 0.0]), ("a2", [1.0, 0.15, 0.0]), ("b", [0.3, 1.0, 0.0])):
            index.add(label, vec)
        graph = index.snapshot().graph
        q = normalize([1.0, 0.6, 0.0])
        ranked = sorted((float(1.0 - graph.data[n] @ q), n) for n in range(3))
        assert [n for _, n in ranked] == [1, 0, 2]

        # a1 sits right next to a2, so b is linked instead of the nearer a1.
        assert HNSWIndex._select_neighbors(graph, ranked, 2) == [1, 2]
        # Pruned candidates fill any spare slots.
        assert HNSWIndex._select_neighbors(graph, ranked, 3) == [1, 2, 0]

    def test_shrink_respects_cap(self):
        rng = np.random.default_rng(11)
        index = HNSWIndex(DIM, m=4, ef_construction=32, seed=2)
        for i, vec in enumerate(_random_unit(rng, 200)):
            index.add(f"r{i}", vec)
        snap = index.snapshot()
        for lc, layer in enumerate(snap.graph.layers):
            cap = index.m0 if lc == 0 else index.m
            assert all(len(links) <= cap for links in layer.values())
            assert all(len(set(links)) == len(links) for links in layer.values())


# ---------------------------------------------------------------------------
# Compaction
# ---------------------------------------------------------------------------

class TestCompaction:
    def test_compact_drops_tombstones_and_keeps_results(self):
        rng = np.random.default_rng(5)
        vecs = _random_unit(rng, 300)
        index = HNSWIndex(DIM, m=8, ef_construction=64, ef_search=64)
        for i, v in enumerate(vecs):
            index.add(f"r{i}", v)
        for i in range(0, 300, 3):
            index.remove(f"r{i}")

        dropped = index.compact()
        assert dropped == 100
        assert index.tombstones == 0
        assert len(index) == 200
        label, _ = index.search(vecs[4], 1)[0]
        assert label == "r4"
        assert "r3" not in index

    def test_readers_see_consistent_results_during_compaction(self):
        rng = np.random.default_rng(9)
        vecs = _random_unit(rng, 400)
        index = HNSWIndex(DIM, m=8, ef_construction=64, ef_search=64)
        for i, v in enumerate(vecs):
            index.add(f"r{i}", v)
        for i in range(200, 400):
            index.remove(f"r{i}")

        errors: list[BaseException] = []
        stop = threading.Event()

        def reader() -> None:
            try:
                while not stop.is_set():
                    for j in (1, 50, 150):
                        label, _ = index.search(vecs[j], 1)[0]
                        assert label == f"r{j}"
            except BaseException as exc:  # surfaced to the main thread
                errors.append(exc)

        threads = [threading.Thread(target=reader) for _ in range(3)]
        for t in threads:
            t.start()
        try:
            index.compact()
        finally:
            stop.set()
            for t in threads:
                t.join()
        assert not errors
        assert index.tombstones == 0

    def test_writes_during_compaction_are_replayed(self):
        index = HNSWIndex(4, m=4, ef_construction=16, ef_search=16)
        index.add("a", [1, 0, 0, 0])
        index.add("b", [0, 1, 0, 0])
        index.remove("b")

        # Simulate a write that lands while the rebuild is running.
        original_insert = index._insert
        injected = {"done": False}

        def insert_and_write(snap, label_map, label, vec):
            result = original_insert(snap, label_map, label, vec)
            if label_map is not index._label_to_node and not injected["done"]:
                injected["done"] = True
                index.add("c", [0, 0, 1, 0])
            return result

        index._insert = insert_and_write
        index.compact()
        index._insert = original_insert

        assert "c" in index
        assert "b" not in index
        assert index.search([0, 0, 1, 0], 1)[0][0] == "c"
