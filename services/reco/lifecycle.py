"""
Lifecycle hooks called by the surrounding system after it commits a
mutation to storage.

  on_recipe_created(recipe)             incremental profile update + enqueue
  on_recipe_changed(recipe_id, hash)    invalidate, enqueue re-enrichment
  on_recipe_deleted(recipe_id, owner)   drop embedding, invalidate, recompute
  purge_user(user_id)                   GDPR delete of everything derived

Every hook invalidates the affected cache namespaces before returning, so
the next read after a committed write never sees pre-write cached data.
Deletes and purges also drop every user's cached recommendations, since
any of them may list the removed recipes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from services.reco.cache import CacheCoordinator
from services.reco.cache.keys import (
    all_recommendations_pattern,
    recipe_namespace,
    user_namespace,
)
from services.reco.embedding import EmbeddingStore
from services.reco.enrichment import EnrichmentPipeline
from services.reco.errors import ValidationError
from services.reco.models import Recipe
from services.reco.profile import TasteProfileEngine
from services.reco.storage import RecipeStore

logger = logging.getLogger(__name__)


@dataclass
class PurgeResult:
    user_id: str
    profile_deleted: bool = False
    embeddings_deleted: int = 0
    tasks_cancelled: int = 0
    cache_keys_removed: int = 0


class RecipeLifecycle:
    def __init__(
        self,
        storage: RecipeStore,
        store: EmbeddingStore,
        cache: CacheCoordinator,
        profiles: TasteProfileEngine,
        pipeline: EnrichmentPipeline,
    ) -> None:
        self._storage = storage
        self._store = store
        self._cache = cache
        self._profiles = profiles
        self._pipeline = pipeline

    async def on_recipe_created(self, recipe: Recipe) -> str:
        """New recipe committed. Returns the enrichment task_id."""
        await self._cache.invalidate(recipe_namespace(recipe.recipe_id))
        await self._profiles.apply_incremental(recipe.owner_id, recipe)
        return await self._pipeline.enqueue(recipe.recipe_id, recipe.content_hash)

    async def on_recipe_changed(self, recipe_id: str, content_hash: Optional[str] = None) -> str:
        """Recipe edited. Returns the enrichment task_id."""
        if not recipe_id:
            raise ValidationError("recipe_id must be non-empty")
        await self._cache.invalidate(recipe_namespace(recipe_id))
        recipe = await self._storage.get_recipe(recipe_id)
        if recipe is not None:
            await self._cache.invalidate(user_namespace(recipe.owner_id))
        return await self._pipeline.enqueue(recipe_id, content_hash)

    async def on_recipe_deleted(self, recipe_id: str, owner_id: str) -> bool:
        """Recipe removed from storage. Returns True if an embedding existed."""
        if not recipe_id or not owner_id:
            raise ValidationError("recipe_id and owner_id must be non-empty")
        await self._pipeline.cancel(recipe_id)
        removed = self._store.delete(recipe_id)
        await self._cache.invalidate(recipe_namespace(recipe_id))
        await self._cache.invalidate(user_namespace(owner_id))
        # Other users may have the recipe in a cached list.
        await self._cache.invalidate(all_recommendations_pattern())
        self._profiles.schedule_recompute(owner_id)
        return removed

    async def purge_user(self, user_id: str) -> PurgeResult:
        """Delete the user's profile, embeddings and cached data."""
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("user_id must be a non-empty string")

        result = PurgeResult(user_id=user_id)
        recipes = await self._storage.list_user_recipes(user_id)
        for recipe in recipes:
            if await self._pipeline.cancel(recipe.recipe_id):
                result.tasks_cancelled += 1
            if self._store.delete(recipe.recipe_id):
                result.embeddings_deleted += 1
            result.cache_keys_removed += await self._cache.invalidate(
                recipe_namespace(recipe.recipe_id),
            )

        result.profile_deleted = await self._profiles.delete(user_id)
        result.cache_keys_removed += await self._cache.invalidate(user_namespace(user_id))
        result.cache_keys_removed += await self._cache.invalidate(all_recommendations_pattern())
        logger.info(
            "purge user=%s profile=%s embeddings=%d tasks=%d cache_keys=%d",
            user_id, result.profile_deleted, result.embeddings_deleted,
            result.tasks_cancelled, result.cache_keys_removed,
        )
        return result
