"""
Hierarchical navigable small world (HNSW) index over L2-normalized vectors.

Distance is cosine distance (1 - dot product) since every stored vector is
unit length. Nodes are addressed by a monotonically increasing integer id;
each node carries a string label (the recipe id). Re-adding a label
tombstones the old node and inserts a fresh one, so a row in the vector
matrix is never overwritten once published.

Tunables:
  m                 max links per node on upper layers (2*m on layer 0)
  ef_construction   candidate list size while inserting (build quality)
  ef_search         candidate list size while querying (recall vs latency)

Reader consistency:
  A query captures one IndexSnapshot (graph reference, published node
  count, tombstones, entry point) at its start and ignores every node id at
  or beyond the snapshot's count. Adjacency lists are immutable tuples that
  writers replace rather than mutate, so a concurrent insert can change
  which path a reader walks but never hands it a half-written list.
  Writers must be serialized by the caller.

Compaction:
  compact() builds a fresh graph from the live nodes of a snapshot without
  touching the published structures, replays any writes that landed
  meanwhile, and publishes the new graph with a single snapshot swap.
"""

from __future__ import annotations

import dataclasses
import heapq
import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Iterable, Optional

import numpy as np

logger = logging.getLogger(__name__)

_INITIAL_CAPACITY = 1024


class _Graph:
    """Mutable graph storage. Only ever written by the single writer."""

    def __init__(self, dim: int, capacity: int = _INITIAL_CAPACITY) -> None:
        self.dim = dim
        self.data = np.zeros((capacity, dim), dtype=np.float32)
        self.labels: list[str] = []
        self.levels: list[int] = []
        self.layers: list[dict[int, tuple[int, ...]]] = [{}]

    def append(self, label: str, vec: np.ndarray, level: int) -> int:
        node = len(self.labels)
        if node >= self.data.shape[0]:
            # Readers holding the old array keep a valid view of rows < node.
            grown = np.zeros((self.data.shape[0] * 2, self.dim), dtype=np.float32)
            grown[: self.data.shape[0]] = self.data
            self.data = grown
        self.data[node] = vec
        self.labels.append(label)
        self.levels.append(level)
        while len(self.layers) <= level:
            self.layers.append({})
        return node


@dataclass(frozen=True)
class IndexSnapshot:
    """Read view of the index at one instant."""
    graph: _Graph = field(repr=False, compare=False)
    count: int = 0
    entry_point: int = -1  # -1 when empty
    max_level: int = -1
    deleted: frozenset[int] = frozenset()
    version: int = 0

    def live(self, node: int) -> bool:
        return node < self.count and node not in self.deleted


def normalize(vector: Iterable[float]) -> np.ndarray:
    """Return a float32 unit vector. Zero vectors stay zero."""
    arr = np.asarray(vector, dtype=np.float32).reshape(-1)
    norm = float(np.linalg.norm(arr))
    if norm == 0.0 or not math.isfinite(norm):
        return np.zeros_like(arr)
    return arr / norm


class HNSWIndex:
    """Incremental HNSW index with tombstone deletes and online compaction."""

    def __init__(
        self,
        dim: int,
        *,
        m: int = 16,
        ef_construction: int = 100,
        ef_search: int = 64,
        seed: int = 42,
    ) -> None:
        if dim <= 0:
            raise ValueError("dim must be positive")
        if m < 2:
            raise ValueError("m must be >= 2")
        self.dim = dim
        self.m = m
        self.m0 = 2 * m
        self.ef_construction = max(ef_construction, m)
        self.ef_search = ef_search
        self._level_mult = 1.0 / math.log(m)
        self._rng = np.random.default_rng(seed)

        self._label_to_node: dict[str, int] = {}
        self._snapshot = IndexSnapshot(graph=_Graph(dim))

        self._compaction_lock = threading.Lock()
        self._journal: Optional[list[tuple[str, str, Optional[np.ndarray]]]] = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def snapshot(self) -> IndexSnapshot:
        return self._snapshot

    def __len__(self) -> int:
        snap = self._snapshot
        return snap.count - len(snap.deleted)

    def __contains__(self, label: str) -> bool:
        node = self._label_to_node.get(label)
        return node is not None and self._snapshot.live(node)

    @property
    def tombstones(self) -> int:
        return len(self._snapshot.deleted)

    # ------------------------------------------------------------------
    # Writes (caller serializes)
    # ------------------------------------------------------------------

    def add(self, label: str, vector: Iterable[float]) -> None:
        vec = normalize(vector)
        if vec.shape[0] != self.dim:
            raise ValueError(f"expected {self.dim}-dim vector, got {vec.shape[0]}")
        if self._journal is not None:
            self._journal.append(("add", label, vec))
        self._snapshot = self._insert(self._snapshot, self._label_to_node, label, vec)

    def remove(self, label: str) -> bool:
        """Tombstone a label. Returns False if it was not present."""
        if self._journal is not None:
            self._journal.append(("remove", label, None))
        self._snapshot, removed = self._tombstone(self._snapshot, self._label_to_node, label)
        return removed

    @staticmethod
    def _tombstone(
        snap: IndexSnapshot, label_map: dict[str, int], label: str,
    ) -> tuple[IndexSnapshot, bool]:
        node = label_map.pop(label, None)
        if node is None:
            return snap, False
        return dataclasses.replace(
            snap, deleted=snap.deleted | {node}, version=snap.version + 1,
        ), True

    def _random_level(self) -> int:
        return int(-math.log(1.0 - self._rng.random()) * self._level_mult)

    def _insert(
        self,
        snap: IndexSnapshot,
        label_map: dict[str, int],
        label: str,
        vec: np.ndarray,
    ) -> IndexSnapshot:
        """Insert into snap.graph and return the snapshot that publishes it."""
        graph = snap.graph
        deleted = snap.deleted
        old = label_map.get(label)
        if old is not None:
            deleted = deleted | {old}

        level = self._random_level()
        node = graph.append(label, vec, level)
        entry, max_level = snap.entry_point, snap.max_level

        if entry < 0:
            for lc in range(level + 1):
                graph.layers[lc][node] = ()
            entry, max_level = node, level
        else:
            ep = [entry]
            for lc in range(max_level, level, -1):
                ep = [self._search_layer(graph, vec, ep, 1, lc, node)[0][1]]
            for lc in range(min(level, max_level), -1, -1):
                found = self._search_layer(graph, vec, ep, self.ef_construction, lc, node)
                cap = self.m0 if lc == 0 else self.m
                neighbors = self._select_neighbors(graph, found, self.m)
                graph.layers[lc][node] = tuple(neighbors)
                for nb in neighbors:
                    links = graph.layers[lc].get(nb, ()) + (node,)
                    if len(links) > cap:
                        links = self._shrink(graph, nb, links, cap)
                    graph.layers[lc][nb] = links
                ep = [n for _, n in found]
            for lc in range(max_level + 1, level + 1):
                graph.layers[lc][node] = ()
            if level > max_level:
                entry, max_level = node, level

        label_map[label] = node
        return IndexSnapshot(
            graph=graph,
            count=node + 1,
            entry_point=entry,
            max_level=max_level,
            deleted=deleted,
            version=snap.version + 1,
        )

    @staticmethod
    def _select_neighbors(
        graph: _Graph, candidates: list[tuple[float, int]], m: int,
    ) -> list[int]:
        """Heuristic neighbor selection over (distance, node) pairs, ascending.

        A candidate is taken only if it is closer to the base than to every
        neighbor already taken, which keeps links spread across clusters.
        Rejected candidates top the list up to m, nearest first.
        """
        selected: list[int] = []
        pruned: list[int] = []
        for dist, cand in candidates:
            if len(selected) >= m:
                break
            if selected:
                ids = np.fromiter(selected, dtype=np.int64, count=len(selected))
                closest = float(np.min(1.0 - graph.data[ids] @ graph.data[cand]))
                if closest <= dist:
                    pruned.append(cand)
                    continue
            selected.append(cand)
        selected.extend(pruned[: m - len(selected)])
        return selected

    @classmethod
    def _shrink(
        cls, graph: _Graph, node: int, links: tuple[int, ...], cap: int,
    ) -> tuple[int, ...]:
        ids = np.fromiter(links, dtype=np.int64, count=len(links))
        dists = (1.0 - graph.data[ids] @ graph.data[node]).tolist()
        ranked = sorted(zip(dists, links))
        return tuple(cls._select_neighbors(graph, ranked, cap))

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    @staticmethod
    def _search_layer(
        graph: _Graph,
        q: np.ndarray,
        entry_points: list[int],
        ef: int,
        layer: int,
        limit: int,
    ) -> list[tuple[float, int]]:
        """Best-first search on one layer. Returns (distance, node) ascending.

        Nodes with id >= limit are invisible (not published to the caller).
        """
        data = graph.data
        adjacency = graph.layers[layer] if layer < len(graph.layers) else {}
        visited = set(entry_points)
        eps = np.fromiter(entry_points, dtype=np.int64, count=len(entry_points))
        d0 = (1.0 - data[eps] @ q).tolist()
        candidates = list(zip(d0, entry_points))
        heapq.heapify(candidates)
        best = [(-d, n) for d, n in candidates]
        heapq.heapify(best)
        while len(best) > ef:
            heapq.heappop(best)

        while candidates:
            dist, node = heapq.heappop(candidates)
            if len(best) >= ef and dist > -best[0][0]:
                break
            fresh = [
                nb for nb in adjacency.get(node, ())
                if nb < limit and nb not in visited
            ]
            if not fresh:
                continue
            visited.update(fresh)
            ids = np.fromiter(fresh, dtype=np.int64, count=len(fresh))
            dists = (1.0 - data[ids] @ q).tolist()
            for d, nb in zip(dists, fresh):
                if len(best) < ef or d < -best[0][0]:
                    heapq.heappush(candidates, (d, nb))
                    heapq.heappush(best, (-d, nb))
                    if len(best) > ef:
                        heapq.heappop(best)

        return sorted((-nd, n) for nd, n in best)

    def search(
        self,
        vector: Iterable[float],
        k: int,
        *,
        ef: Optional[int] = None,
        allowed: Optional[set[str]] = None,
    ) -> list[tuple[str, float]]:
        """
        Return up to ``max(k, ef)`` (label, distance) pairs nearest to vector,
        ascending by distance. Tombstoned nodes never appear.

        ``allowed`` restricts which labels may be returned. When it filters
        out too much, the candidate list is widened until k hits are found
        or every published node has been considered.
        """
        if k <= 0:
            return []
        q = normalize(vector)
        if q.shape[0] != self.dim:
            raise ValueError(f"expected {self.dim}-dim vector, got {q.shape[0]}")

        snap = self._snapshot
        graph = snap.graph
        if snap.entry_point < 0 or len(snap.deleted) >= snap.count:
            return []

        ep = [snap.entry_point]
        for lc in range(snap.max_level, 0, -1):
            ep = [self._search_layer(graph, q, ep, 1, lc, snap.count)[0][1]]

        width = max(ef or self.ef_search, k)
        while True:
            found = self._search_layer(graph, q, ep, width, 0, snap.count)
            hits: list[tuple[str, float]] = []
            for dist, node in found:
                if not snap.live(node):
                    continue
                label = graph.labels[node]
                if allowed is not None and label not in allowed:
                    continue
                hits.append((label, dist))
            if len(hits) >= k or width >= snap.count:
                return hits
            width = min(width * 2, snap.count)

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    def compact(self, write_lock: Optional[threading.Lock] = None) -> int:
        """
        Rebuild the graph without tombstones. Returns tombstones dropped.

        The rebuild runs against a snapshot while readers and writers keep
        using the published graph. Writes made during the rebuild are
        journaled and replayed under ``write_lock`` right before the swap.
        """
        if not self._compaction_lock.acquire(blocking=False):
            logger.info("hnsw compaction already running, skipping")
            return 0
        lock = write_lock or threading.Lock()
        try:
            with lock:
                snap = self._snapshot
                live = [
                    (snap.graph.labels[n], snap.graph.data[n].copy())
                    for n in range(snap.count)
                    if n not in snap.deleted
                ]
                self._journal = []

            fresh_map: dict[str, int] = {}
            fresh = IndexSnapshot(
                graph=_Graph(self.dim, capacity=max(_INITIAL_CAPACITY, len(live) * 2)),
            )
            for label, vec in live:
                fresh = self._insert(fresh, fresh_map, label, vec)

            with lock:
                journal = self._journal or []
                self._journal = None
                for op, label, vec in journal:
                    if op == "add":
                        fresh = self._insert(fresh, fresh_map, label, vec)
                    else:
                        fresh, _ = self._tombstone(fresh, fresh_map, label)
                self._label_to_node = fresh_map
                self._snapshot = dataclasses.replace(
                    fresh, version=self._snapshot.version + 1,
                )
            logger.info(
                "hnsw compaction done live=%d dropped=%d replayed=%d",
                len(live), len(snap.deleted), len(journal),
            )
            return len(snap.deleted)
        finally:
            self._journal = None
            self._compaction_lock.release()
