"""
Recommendation engine.

Request path:
  1. Cache read on user:{uid}:reco:{count}:{filter_hash}.
  2. Miss: last-known taste profile (never waits on a recompute), the user's
     candidate pool minus excludes and, unless include_own, their own recipes.
  3. Query vector: weighted mean of the user's own recipe embeddings, each
     weighted by 0.1 + max(0, category affinity), blended with the most
     recent recipe's embedding.
  4. ANN query over the candidates (bounded by ann_timeout_s), over-fetching
     count * overfetch_factor.
  5. Score, sort by score desc then recipe_id, fill any shortfall from the
     fallback ranking, cache, return the top count.

Scoring:
  ann       W_SIM * similarity + W_TASTE * taste_match * (0.5 + 0.5 * strength)
  fallback  0.5 * recency + 0.3 * popularity + 0.2 * max(0, taste_match)

Degraded mode: when the ANN query raises or times out the whole list comes
from the fallback ranking and is cached under the short-lived
recommendations_degraded category. Only malformed input raises.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Iterable, Optional

import numpy as np

from services.reco.cache import MISS, CacheCoordinator
from services.reco.cache.keys import (
    degraded_recommendations_key,
    filter_hash,
    recommendations_key,
)
from services.reco.config import (
    CATEGORY_RECOMMENDATIONS,
    CATEGORY_RECOMMENDATIONS_DEGRADED,
    settings,
)
from services.reco.embedding import EmbeddingStore
from services.reco.embedding.hnsw import normalize
from services.reco.errors import ValidationError
from services.reco.metrics import Metrics
from services.reco.models import Reasons, Recipe, Recommendation, TasteProfile
from services.reco.profile import TasteProfileEngine, normalize_terms
from services.reco.storage import RecipeStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Scoring weights
# ---------------------------------------------------------------------------

W_SIM = 0.6
W_TASTE = 0.4

FALLBACK_W_RECENCY = 0.5
FALLBACK_W_POPULARITY = 0.3
FALLBACK_W_TASTE = 0.2
FALLBACK_RECENCY_HALF_LIFE_DAYS = 14.0

# Base weight every own recipe contributes to the query vector
QUERY_BASE_WEIGHT = 0.1

MAX_MATCHED_INGREDIENTS = 3
_SCORE_DECIMALS = 6


def _clip01(x: float) -> float:
    return max(0.0, min(1.0, x))


def _matched_categories(profile: TasteProfile, categories: list[str]) -> tuple[str, ...]:
    positive = [c for c in categories if profile.category_weights.get(c, 0.0) > 0]
    return tuple(sorted(positive, key=lambda c: (-profile.category_weights[c], c)))


def _matched_ingredients(profile: TasteProfile, ingredients: list[str]) -> tuple[str, ...]:
    positive = [i for i in ingredients if profile.ingredient_weights.get(i, 0.0) > 0]
    ranked = sorted(positive, key=lambda i: (-profile.ingredient_weights[i], i))
    return tuple(ranked[:MAX_MATCHED_INGREDIENTS])


def _sort_key(rec: Recommendation) -> tuple[float, str]:
    return (-rec.score, rec.recipe_id)


class RecommendationEngine:
    """
    Usage:
        engine = RecommendationEngine(storage, store, cache, profiles)
        recs = await engine.recommend("u1", 10, exclude_ids={"r9"})
    """

    def __init__(
        self,
        storage: RecipeStore,
        store: EmbeddingStore,
        cache: CacheCoordinator,
        profiles: TasteProfileEngine,
        *,
        metrics: Optional[Metrics] = None,
        max_recommendations: int = settings.max_recommendations,
        ann_timeout_s: float = settings.ann_timeout_s,
        overfetch_factor: int = settings.overfetch_factor,
        recent_recipe_blend: float = settings.recent_recipe_blend,
    ) -> None:
        self._storage = storage
        self._store = store
        self._cache = cache
        self._profiles = profiles
        self._metrics = metrics or Metrics()
        self.max_recommendations = max_recommendations
        self.ann_timeout_s = ann_timeout_s
        self.overfetch_factor = overfetch_factor
        self.recent_recipe_blend = recent_recipe_blend

    async def recommend(
        self,
        user_id: str,
        count: int,
        exclude_ids: Iterable[str] = (),
        include_own: bool = False,
    ) -> list[Recommendation]:
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("user_id must be a non-empty string")
        if isinstance(count, bool) or not isinstance(count, int):
            raise ValidationError("count must be an integer")
        if not 1 <= count <= self.max_recommendations:
            raise ValidationError(f"count must be between 1 and {self.max_recommendations}")
        exclude = frozenset(exclude_ids)
        if any(not isinstance(rid, str) for rid in exclude):
            raise ValidationError("exclude_ids must contain recipe id strings")

        fhash = filter_hash(exclude, include_own)
        key = recommendations_key(user_id, count, fhash)
        degraded_key = degraded_recommendations_key(user_id, count, fhash)

        cached = await self._cache.get(key, CATEGORY_RECOMMENDATIONS)
        if cached is MISS:
            cached = await self._cache.get(degraded_key, CATEGORY_RECOMMENDATIONS_DEGRADED)
        if cached is not MISS:
            self._metrics.incr("recommendations_served")
            return [Recommendation.from_dict(row) for row in cached]

        since = self._cache.generation
        results, degraded = await self._compute(user_id, count, exclude, include_own)
        payload = [r.to_dict() for r in results]
        if degraded:
            self._metrics.incr("recommendations_degraded")
            await self._cache.set(
                degraded_key, payload, CATEGORY_RECOMMENDATIONS_DEGRADED, since=since,
            )
        else:
            await self._cache.set(key, payload, CATEGORY_RECOMMENDATIONS, since=since)
        self._metrics.incr("recommendations_served")
        return results

    # ------------------------------------------------------------------
    # Computation
    # ------------------------------------------------------------------

    async def _compute(
        self,
        user_id: str,
        count: int,
        exclude: frozenset[str],
        include_own: bool,
    ) -> tuple[list[Recommendation], bool]:
        """Returns (recommendations, degraded)."""
        profile = await self._profiles.get(user_id)
        own = await self._storage.list_user_recipes(user_id)
        candidates = set(await self._storage.candidate_pool(user_id)) - exclude
        if not include_own:
            candidates -= {r.recipe_id for r in own}
        if not candidates:
            return [], False

        query = self.query_vector(profile, own)
        if query is None:
            logger.debug("no query vector for user=%s, ranking by recency/popularity", user_id)
            return await self._fallback(profile, candidates, count), False

        k = count * self.overfetch_factor
        try:
            hits = await asyncio.wait_for(
                asyncio.to_thread(self._store.query, query, k, candidates),
                timeout=self.ann_timeout_s,
            )
        except Exception:
            logger.warning(
                "ANN query failed for user=%s, serving degraded recommendations",
                user_id, exc_info=True,
            )
            return await self._fallback(profile, candidates, count), True

        recipes = await self._storage.get_recipes([rid for rid, _ in hits])
        scored = [
            self._score_ann(profile, recipes[rid], dist)
            for rid, dist in hits
            if rid in recipes
        ]
        scored.sort(key=_sort_key)
        results = scored[:count]

        if len(results) < count:
            remaining = candidates - {r.recipe_id for r in results}
            fill = await self._fallback(profile, remaining, count - len(results))
            results = sorted(results + fill, key=_sort_key)
        return results, False

    def query_vector(self, profile: TasteProfile, own: list[Recipe]) -> Optional[np.ndarray]:
        """Taste-weighted mean of own embeddings blended with the latest one."""
        acc: Optional[np.ndarray] = None
        latest: Optional[np.ndarray] = None
        latest_key: Optional[tuple[datetime, str]] = None
        for recipe in own:
            emb = self._store.get(recipe.recipe_id)
            if emb is None:
                continue
            affinity = profile.category_affinity(normalize_terms(recipe.categories))
            weight = QUERY_BASE_WEIGHT + max(0.0, affinity)
            contrib = emb.vector.astype(np.float64) * weight
            acc = contrib if acc is None else acc + contrib
            key = (recipe.created_at, recipe.recipe_id)
            if latest_key is None or key > latest_key:
                latest_key, latest = key, emb.vector.astype(np.float64)
        if acc is None or not np.any(acc):
            return None
        mean = normalize(acc)
        if latest is not None and self.recent_recipe_blend > 0:
            blended = (1.0 - self.recent_recipe_blend) * mean + self.recent_recipe_blend * latest
            if np.any(blended):
                mean = normalize(blended)
        return mean.astype(np.float32)

    def _score_ann(self, profile: TasteProfile, recipe: Recipe, distance: float) -> Recommendation:
        categories = normalize_terms(recipe.categories)
        similarity = _clip01(1.0 - distance)
        taste = profile.category_affinity(categories)
        score = W_SIM * similarity + W_TASTE * taste * (0.5 + 0.5 * profile.strength)
        return Recommendation(
            recipe_id=recipe.recipe_id,
            score=round(score, _SCORE_DECIMALS),
            reasons=Reasons(
                matched_categories=_matched_categories(profile, categories),
                matched_ingredients=_matched_ingredients(
                    profile, normalize_terms(recipe.ingredients),
                ),
                similarity=round(similarity, 4),
                source="ann",
            ),
        )

    async def _fallback(
        self,
        profile: TasteProfile,
        candidates: set[str],
        count: int,
    ) -> list[Recommendation]:
        """Recency / popularity ranking that needs no embeddings."""
        if not candidates or count <= 0:
            return []
        recipes = list((await self._storage.get_recipes(candidates)).values())
        if not recipes:
            return []
        newest = max(r.created_at for r in recipes)
        ranked: list[Recommendation] = []
        for recipe in recipes:
            categories = normalize_terms(recipe.categories)
            age_days = max(0.0, (newest - recipe.created_at).total_seconds() / 86_400.0)
            recency = 0.5 ** (age_days / FALLBACK_RECENCY_HALF_LIFE_DAYS)
            taste = profile.category_affinity(categories)
            score = (
                FALLBACK_W_RECENCY * recency
                + FALLBACK_W_POPULARITY * _clip01(recipe.popularity)
                + FALLBACK_W_TASTE * max(0.0, taste)
            )
            ranked.append(Recommendation(
                recipe_id=recipe.recipe_id,
                score=round(score, _SCORE_DECIMALS),
                reasons=Reasons(
                    matched_categories=_matched_categories(profile, categories),
                    matched_ingredients=_matched_ingredients(
                        profile, normalize_terms(recipe.ingredients),
                    ),
                    similarity=None,
                    source="fallback",
                ),
            ))
        ranked.sort(key=_sort_key)
        return ranked[:count]
