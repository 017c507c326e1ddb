"""
EmbeddingStore — one current vector per recipe plus an HNSW index.

Contract:
  upsert(recipe_id, vector, model_id, source_hash)   replace, never append
  query(vector, k, filter)                           ascending cosine distance
  delete(recipe_id)                                  idempotent

The candidate filter is applied before ranking: a small filter set is scored
exactly (brute force over just those vectors), a large one restricts the
graph search. Ties on distance go to the most recently created embedding,
then to recipe_id for a stable order.

Writes are serialized by a threading lock; queries never take it. Each
write publishes a new index snapshot and replaces (never mutates) the
RecipeEmbedding record, so an in-flight query sees either the old or the
new state of any recipe, never a partial one.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Iterable, Optional

import numpy as np

from services.reco.config import settings
from services.reco.embedding.hnsw import HNSWIndex, normalize
from services.reco.errors import DimensionMismatch, ValidationError
from services.reco.metrics import Metrics
from services.reco.models import RecipeEmbedding, utcnow

logger = logging.getLogger(__name__)

# Round distances before tie-breaking so float noise does not defeat it.
_DISTANCE_DECIMALS = 9


class EmbeddingStore:
    """
    Usage:
        store = EmbeddingStore(dimensions={"nomic-ai/nomic-embed-text-v1.5": 768})
        store.upsert("r1", vec, model_id, content_hash)
        hits = store.query(vec, k=10, filter={"r1", "r2"})
    """

    def __init__(
        self,
        *,
        dimensions: Optional[dict[str, int]] = None,
        index_model_id: Optional[str] = None,
        model_version: str = settings.embedding_model_version,
        m: int = settings.hnsw_m,
        ef_construction: int = settings.hnsw_ef_construction,
        ef_search: int = settings.hnsw_ef_search,
        exact_filter_threshold: int = settings.exact_filter_threshold,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self._dimensions: dict[str, int] = dict(
            dimensions or {settings.embedding_model_id: settings.embedding_dimensions}
        )
        self._index_model_id = index_model_id or next(iter(self._dimensions))
        if self._index_model_id not in self._dimensions:
            raise ValidationError(f"index model {self._index_model_id!r} has no registered dimension")
        self._model_version = model_version
        self._exact_filter_threshold = exact_filter_threshold
        self._index = HNSWIndex(
            self._dimensions[self._index_model_id],
            m=m,
            ef_construction=ef_construction,
            ef_search=ef_search,
        )
        self._embeddings: dict[str, RecipeEmbedding] = {}
        self._write_lock = threading.Lock()
        self._metrics = metrics or Metrics()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def dimension(self) -> int:
        return self._dimensions[self._index_model_id]

    @property
    def model_id(self) -> str:
        return self._index_model_id

    def __len__(self) -> int:
        return len(self._embeddings)

    def __contains__(self, recipe_id: str) -> bool:
        return recipe_id in self._embeddings

    def get(self, recipe_id: str) -> Optional[RecipeEmbedding]:
        return self._embeddings.get(recipe_id)

    def is_current(self, recipe_id: str, source_hash: str) -> bool:
        """True when the stored embedding was generated from this content hash."""
        emb = self._embeddings.get(recipe_id)
        return emb is not None and emb.source_hash == source_hash

    def register_model(self, model_id: str, dimension: int) -> None:
        existing = self._dimensions.get(model_id)
        if existing is not None and existing != dimension:
            raise DimensionMismatch(model_id, existing, dimension)
        self._dimensions[model_id] = dimension

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(
        self,
        recipe_id: str,
        vector: Iterable[float],
        model_id: str,
        source_hash: str,
        *,
        created_at: Optional[datetime] = None,
    ) -> RecipeEmbedding:
        if not recipe_id:
            raise ValidationError("recipe_id must be non-empty")
        arr = np.asarray(
            vector if isinstance(vector, np.ndarray) else list(vector), dtype=np.float32,
        ).reshape(-1)
        expected = self._dimensions.get(model_id)
        if expected is None:
            raise ValidationError(f"unknown embedding model {model_id!r}")
        if arr.shape[0] != expected:
            raise DimensionMismatch(model_id, expected, arr.shape[0])
        if model_id != self._index_model_id:
            raise ValidationError(
                f"store indexes {self._index_model_id!r}, cannot mix in {model_id!r}"
            )
        if not np.all(np.isfinite(arr)):
            raise ValidationError(f"vector for {recipe_id} contains non-finite values")
        if not np.any(arr):
            raise ValidationError(f"vector for {recipe_id} is all zeros and has no direction")

        with self._write_lock:
            existing = self._embeddings.get(recipe_id)
            unit = normalize(arr)
            if (
                existing is not None
                and existing.source_hash == source_hash
                and existing.model_id == model_id
                and np.array_equal(existing.vector, unit)
            ):
                return existing

            record = RecipeEmbedding(
                recipe_id=recipe_id,
                vector=unit,
                model_id=model_id,
                model_version=self._model_version,
                source_hash=source_hash,
                created_at=created_at or utcnow(),
            )
            self._index.add(recipe_id, unit)
            self._embeddings[recipe_id] = record

        logger.debug("embedding upsert recipe=%s model=%s hash=%s", recipe_id, model_id, source_hash)
        return record

    def delete(self, recipe_id: str) -> bool:
        with self._write_lock:
            removed = self._embeddings.pop(recipe_id, None) is not None
            self._index.remove(recipe_id)
        if removed:
            logger.debug("embedding delete recipe=%s", recipe_id)
        return removed

    def delete_many(self, recipe_ids: Iterable[str]) -> int:
        return sum(1 for rid in recipe_ids if self.delete(rid))

    def compact(self) -> int:
        """Drop tombstones from the ANN graph. Safe to run off-thread."""
        return self._index.compact(self._write_lock)

    @property
    def tombstones(self) -> int:
        return self._index.tombstones

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def query(
        self,
        vector: Iterable[float],
        k: int,
        filter: Optional[Iterable[str]] = None,
        *,
        ef: Optional[int] = None,
    ) -> list[tuple[str, float]]:
        """
        Return at most k (recipe_id, cosine_distance) pairs, nearest first.

        filter: optional set of recipe ids that may be returned. Applied
        before ranking.
        """
        if k <= 0:
            return []
        q = np.asarray(vector, dtype=np.float32).reshape(-1)
        if q.shape[0] != self.dimension:
            raise DimensionMismatch(self._index_model_id, self.dimension, q.shape[0])

        start = time.perf_counter()
        allowed = set(filter) if filter is not None else None
        try:
            if allowed is not None and len(allowed) <= self._exact_filter_threshold:
                scored = self._exact(q, allowed)
            else:
                scored = self._index.search(q, k, ef=ef, allowed=allowed)
            return self._rank(scored, k)
        finally:
            self._metrics.observe_ann_latency(time.perf_counter() - start)

    def _exact(self, q: np.ndarray, allowed: set[str]) -> list[tuple[str, float]]:
        embeddings = self._embeddings
        records = [e for e in (embeddings.get(rid) for rid in allowed) if e is not None]
        if not records:
            return []
        matrix = np.stack([r.vector for r in records])
        dists = (1.0 - matrix @ normalize(q)).tolist()
        return [(r.recipe_id, d) for r, d in zip(records, dists)]

    def _rank(self, scored: list[tuple[str, float]], k: int) -> list[tuple[str, float]]:
        embeddings = self._embeddings
        rows = []
        for recipe_id, dist in scored:
            record = embeddings.get(recipe_id)
            if record is None:
                continue  # deleted after the snapshot was taken
            rows.append((
                round(max(0.0, float(dist)), _DISTANCE_DECIMALS),
                -record.created_at.timestamp(),
                recipe_id,
            ))
        rows.sort()
        return [(rid, dist) for dist, _, rid in rows[:k]]
