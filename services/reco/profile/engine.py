"""
Taste profile engine.

Maintains one TasteProfile per user from their recipe collection.

Signal per recipe:
    direction d = +1.0 when unrated, else (rating - 3) / 2  (1 star -> -1.0)
    recency   w = 0.5 ** (age_days / HALF_LIFE_DAYS)

Age is measured against the newest recipe in the collection rather than the
wall clock, so a recompute over the same recipe set is deterministic.

Weights:
    raw_c     = sum(w_i * d_i for recipes tagged c) / sum(w_i)      in [-1, 1]
    trusted_c = raw_c * min(1, count_c / MIN_CATEGORY_SAMPLES)
    strength  = n / (n + STRENGTH_HALF_SAMPLES)

Ingredients use the same formula and only the top MAX_INGREDIENTS by
magnitude are kept.

Incremental path:
    The profile carries the running sums (category_mass, recency_mass). A new
    recipe decays the sums by the recency shift and adds its own signal, which
    matches a full recompute for pure additions. Ingredient truncation and
    edits or deletes it never sees are the drift that the periodic full
    recompute (every RECOMPUTE_EVERY incremental updates) corrects.

Writes invalidate the user's cache namespace before returning.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections import defaultdict
from datetime import datetime
from typing import Iterable, Optional

from services.reco.cache import MISS, CacheCoordinator
from services.reco.cache.keys import profile_key, user_namespace
from services.reco.config import CATEGORY_PROFILE, settings
from services.reco.errors import ValidationError
from services.reco.models import ProfileState, Recipe, TasteProfile, utcnow
from services.reco.storage import RecipeStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Profiles at or above this strength are considered high-confidence
HIGH_CONFIDENCE_THRESHOLD = 0.6

_SECONDS_PER_DAY = 86_400.0


# ---------------------------------------------------------------------------
# Core math
# ---------------------------------------------------------------------------

def recipe_direction(recipe: Recipe) -> float:
    if recipe.rating is None:
        return 1.0
    return max(-1.0, min(1.0, (recipe.rating - 3) / 2.0))


def recency_weight(newer: datetime, older: datetime, half_life_days: float) -> float:
    age_days = max(0.0, (newer - older).total_seconds() / _SECONDS_PER_DAY)
    return 0.5 ** (age_days / half_life_days)


def compute_strength(sample_count: int, half_samples: int) -> float:
    if sample_count <= 0:
        return 0.0
    return sample_count / (sample_count + half_samples)


def normalize_terms(terms: Iterable[str]) -> list[str]:
    """Lower-case, strip and dedupe while keeping first-seen order."""
    seen: dict[str, None] = {}
    for term in terms:
        t = term.strip().lower()
        if t:
            seen.setdefault(t, None)
    return list(seen)


def _trusted_weights(
    mass: dict[str, float],
    counts: dict[str, int],
    total: float,
    min_samples: int,
) -> dict[str, float]:
    if total <= 0:
        return {}
    weights: dict[str, float] = {}
    for term in sorted(mass):
        raw = mass[term] / total
        count = counts.get(term, 0)
        if count < min_samples:
            raw *= count / min_samples
        weights[term] = max(-1.0, min(1.0, raw))
    return weights


def _top_terms(weights: dict[str, float], limit: int) -> list[str]:
    ranked = sorted(weights, key=lambda t: (-abs(weights[t]), t))
    return ranked[:limit]


class TasteProfileEngine:
    """
    Usage:
        engine = TasteProfileEngine(storage, cache)
        profile = await engine.get(user_id)            # never blocks on recompute
        profile = await engine.recompute(user_id)      # full rescan
        profile = await engine.apply_incremental(user_id, recipe)
        task = engine.schedule_recompute(user_id)      # background, deduped
    """

    def __init__(
        self,
        storage: RecipeStore,
        cache: CacheCoordinator,
        *,
        half_life_days: float = settings.profile_half_life_days,
        min_category_samples: int = settings.profile_min_category_samples,
        strength_half_samples: int = settings.profile_strength_half_samples,
        max_ingredients: int = settings.profile_max_ingredients,
        recompute_every: int = settings.profile_recompute_every,
    ) -> None:
        self._storage = storage
        self._cache = cache
        self.half_life_days = half_life_days
        self.min_category_samples = min_category_samples
        self.strength_half_samples = strength_half_samples
        self.max_ingredients = max_ingredients
        self.recompute_every = recompute_every

        self._user_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._recompute_tasks: dict[str, asyncio.Task] = {}
        self._recompute_dirty: set[str] = set()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, user_id: str) -> TasteProfile:
        """Last known profile. Uninitialized and empty if none exists yet."""
        _validate_user(user_id)
        key = profile_key(user_id)
        cached = await self._cache.get(key, CATEGORY_PROFILE)
        if cached is not MISS:
            return TasteProfile.model_validate(cached)

        since = self._cache.generation
        profile = await self._storage.get_profile(user_id) or TasteProfile.empty(user_id)
        await self._cache.set(key, profile.model_dump(mode="json"), CATEGORY_PROFILE, since=since)
        return profile

    # ------------------------------------------------------------------
    # Full recompute
    # ------------------------------------------------------------------

    def build_profile(self, user_id: str, recipes: Iterable[Recipe]) -> TasteProfile:
        """Pure full computation over a recipe set."""
        ordered = sorted(recipes, key=lambda r: (r.created_at, r.recipe_id))
        if not ordered:
            return TasteProfile(user_id=user_id, last_computed_at=utcnow())

        newest = ordered[-1].created_at
        total = 0.0
        cat_mass: dict[str, float] = defaultdict(float)
        cat_counts: dict[str, int] = defaultdict(int)
        ing_mass: dict[str, float] = defaultdict(float)
        ing_counts: dict[str, int] = defaultdict(int)

        for recipe in ordered:
            w = recency_weight(newest, recipe.created_at, self.half_life_days)
            signal = w * recipe_direction(recipe)
            total += w
            for c in normalize_terms(recipe.categories):
                cat_mass[c] += signal
                cat_counts[c] += 1
            for ing in normalize_terms(recipe.ingredients):
                ing_mass[ing] += signal
                ing_counts[ing] += 1

        return self._assemble(
            user_id,
            total=total,
            cat_mass=dict(cat_mass),
            cat_counts=dict(cat_counts),
            ing_mass=dict(ing_mass),
            ing_counts=dict(ing_counts),
            sample_count=len(ordered),
            newest=newest,
            updates_since_recompute=0,
        )

    async def recompute(self, user_id: str) -> TasteProfile:
        _validate_user(user_id)
        async with self._lock_for(user_id):
            recipes = await self._storage.list_user_recipes(user_id)
            profile = self.build_profile(user_id, recipes)
            await self._storage.save_profile(profile)
            since = self._cache.generation
        await self._after_write(profile, since)
        logger.info(
            "profile recompute user=%s samples=%d categories=%d strength=%.3f",
            user_id, profile.sample_count, len(profile.category_weights), profile.strength,
        )
        return profile

    # ------------------------------------------------------------------
    # Incremental update
    # ------------------------------------------------------------------

    async def apply_incremental(self, user_id: str, recipe: Recipe) -> TasteProfile:
        """Absorb one newly added recipe without rescanning the collection."""
        _validate_user(user_id)
        if recipe.owner_id != user_id:
            raise ValidationError(
                f"recipe {recipe.recipe_id} belongs to {recipe.owner_id}, not {user_id}"
            )
        async with self._lock_for(user_id):
            current = await self._storage.get_profile(user_id) or TasteProfile.empty(user_id)
            profile = self.absorb(current, recipe)
            await self._storage.save_profile(profile)
            since = self._cache.generation
        await self._after_write(profile, since)

        if profile.updates_since_recompute >= self.recompute_every:
            logger.info(
                "profile drift correction due user=%s updates=%d",
                user_id, profile.updates_since_recompute,
            )
            self.schedule_recompute(user_id)
        return profile

    def absorb(self, profile: TasteProfile, recipe: Recipe) -> TasteProfile:
        """Pure incremental step: profile + one recipe -> new profile."""
        newest = profile.newest_recipe_at
        t = recipe.created_at
        if newest is None or t >= newest:
            decay = recency_weight(t, newest, self.half_life_days) if newest else 1.0
            r_new = 1.0
            newest = t
        else:
            decay = 1.0
            r_new = recency_weight(newest, t, self.half_life_days)

        signal = r_new * recipe_direction(recipe)
        total = profile.recency_mass * decay + r_new

        cat_mass = {c: m * decay for c, m in profile.category_mass.items()}
        cat_counts = dict(profile.category_counts)
        for c in normalize_terms(recipe.categories):
            cat_mass[c] = cat_mass.get(c, 0.0) + signal
            cat_counts[c] = cat_counts.get(c, 0) + 1

        ing_mass = {i: m * decay for i, m in profile.ingredient_mass.items()}
        ing_counts = dict(profile.ingredient_counts)
        for ing in normalize_terms(recipe.ingredients):
            ing_mass[ing] = ing_mass.get(ing, 0.0) + signal
            ing_counts[ing] = ing_counts.get(ing, 0) + 1

        return self._assemble(
            profile.user_id,
            total=total,
            cat_mass=cat_mass,
            cat_counts=cat_counts,
            ing_mass=ing_mass,
            ing_counts=ing_counts,
            sample_count=profile.sample_count + 1,
            newest=newest,
            updates_since_recompute=profile.updates_since_recompute + 1,
        )

    # ------------------------------------------------------------------
    # Background recompute
    # ------------------------------------------------------------------

    def schedule_recompute(self, user_id: str) -> asyncio.Task:
        """Start (or join) a background full recompute for user_id.

        A request arriving while one is running marks the user dirty so the
        running task goes around once more and sees the newer collection.
        """
        task = self._recompute_tasks.get(user_id)
        if task is not None and not task.done():
            self._recompute_dirty.add(user_id)
            return task
        task = asyncio.get_running_loop().create_task(self._recompute_loop(user_id))
        self._recompute_tasks[user_id] = task
        return task

    async def _recompute_loop(self, user_id: str) -> TasteProfile:
        try:
            while True:
                self._recompute_dirty.discard(user_id)
                profile = await self.recompute(user_id)
                if user_id not in self._recompute_dirty:
                    return profile
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("background profile recompute failed user=%s", user_id)
            raise
        finally:
            if self._recompute_tasks.get(user_id) is asyncio.current_task():
                del self._recompute_tasks[user_id]

    def pending_recompute(self, user_id: str) -> Optional[asyncio.Task]:
        return self._recompute_tasks.get(user_id)

    async def drain(self) -> None:
        """Wait for every scheduled recompute to finish."""
        while True:
            running = [t for t in self._recompute_tasks.values() if not t.done()]
            if not running:
                return
            await asyncio.gather(*running, return_exceptions=True)

    # ------------------------------------------------------------------
    # Deletion (purge hook only)
    # ------------------------------------------------------------------

    async def delete(self, user_id: str) -> bool:
        _validate_user(user_id)
        task = self._recompute_tasks.pop(user_id, None)
        if task is not None and not task.done():
            task.cancel()
        self._recompute_dirty.discard(user_id)
        async with self._lock_for(user_id):
            deleted = await self._storage.delete_profile(user_id)
        await self._cache.invalidate(user_namespace(user_id))
        return deleted

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _assemble(
        self,
        user_id: str,
        *,
        total: float,
        cat_mass: dict[str, float],
        cat_counts: dict[str, int],
        ing_mass: dict[str, float],
        ing_counts: dict[str, int],
        sample_count: int,
        newest: Optional[datetime],
        updates_since_recompute: int,
    ) -> TasteProfile:
        category_weights = _trusted_weights(
            cat_mass, cat_counts, total, self.min_category_samples,
        )
        all_ing = _trusted_weights(ing_mass, ing_counts, total, self.min_category_samples)
        kept = _top_terms(all_ing, self.max_ingredients)
        return TasteProfile(
            user_id=user_id,
            state=ProfileState.ACTIVE if sample_count > 0 else ProfileState.UNINITIALIZED,
            category_weights=category_weights,
            ingredient_weights={i: all_ing[i] for i in sorted(kept)},
            strength=compute_strength(sample_count, self.strength_half_samples),
            sample_count=sample_count,
            last_computed_at=utcnow(),
            category_counts=cat_counts,
            ingredient_counts={i: ing_counts[i] for i in kept},
            category_mass=cat_mass,
            ingredient_mass={i: ing_mass[i] for i in kept},
            recency_mass=total,
            newest_recipe_at=newest,
            updates_since_recompute=updates_since_recompute,
        )

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        # Weak values: a lock lives only while some coroutine holds a reference.
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        return lock

    async def _after_write(self, profile: TasteProfile, since: int) -> None:
        await self._cache.write_through(
            user_namespace(profile.user_id),
            profile_key(profile.user_id),
            profile.model_dump(mode="json"),
            CATEGORY_PROFILE,
            since=since,
        )


def _validate_user(user_id: str) -> None:
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError("user_id must be a non-empty string")
