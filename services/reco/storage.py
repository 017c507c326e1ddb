"""
Storage-layer boundary.

The relational store is owned by the surrounding system; the core only
needs the reads and record writes below. Transaction boundaries belong to
the implementation.

InMemoryRecipeStore implements the protocol for local development and
tests.
"""

from __future__ import annotations

import asyncio
import importlib
from typing import Iterable, Optional, Protocol

from services.reco.models import EnrichmentTask, Recipe, TasteProfile


class RecipeStore(Protocol):

    async def get_recipe(self, recipe_id: str) -> Optional[Recipe]: ...

    async def get_recipes(self, recipe_ids: Iterable[str]) -> dict[str, Recipe]: ...

    async def list_user_recipes(self, user_id: str) -> list[Recipe]: ...

    async def list_user_ids(self) -> list[str]:
        """Users owning at least one recipe."""
        ...

    async def candidate_pool(self, user_id: str) -> set[str]:
        """Recipe ids this user may be recommended (own recipes included)."""
        ...

    async def get_profile(self, user_id: str) -> Optional[TasteProfile]: ...

    async def save_profile(self, profile: TasteProfile) -> None: ...

    async def delete_profile(self, user_id: str) -> bool: ...

    async def save_task(self, task: EnrichmentTask) -> None: ...


class InMemoryRecipeStore:
    """Dict-backed RecipeStore."""

    def __init__(self, recipes: Iterable[Recipe] = ()) -> None:
        self._recipes: dict[str, Recipe] = {}
        self._profiles: dict[str, TasteProfile] = {}
        self._tasks: dict[str, EnrichmentTask] = {}
        self._lock = asyncio.Lock()
        for recipe in recipes:
            self._recipes[recipe.recipe_id] = recipe

    # Collection mutation (stands in for the external CRUD layer)

    def put_recipe(self, recipe: Recipe) -> None:
        self._recipes[recipe.recipe_id] = recipe

    def drop_recipe(self, recipe_id: str) -> Optional[Recipe]:
        return self._recipes.pop(recipe_id, None)

    # RecipeStore

    async def get_recipe(self, recipe_id: str) -> Optional[Recipe]:
        return self._recipes.get(recipe_id)

    async def get_recipes(self, recipe_ids: Iterable[str]) -> dict[str, Recipe]:
        return {rid: self._recipes[rid] for rid in recipe_ids if rid in self._recipes}

    async def list_user_recipes(self, user_id: str) -> list[Recipe]:
        owned = [r for r in self._recipes.values() if r.owner_id == user_id]
        return sorted(owned, key=lambda r: (r.created_at, r.recipe_id))

    async def list_user_ids(self) -> list[str]:
        return sorted({r.owner_id for r in self._recipes.values()})

    async def candidate_pool(self, user_id: str) -> set[str]:
        return set(self._recipes)

    async def get_profile(self, user_id: str) -> Optional[TasteProfile]:
        profile = self._profiles.get(user_id)
        return profile.model_copy(deep=True) if profile is not None else None

    async def save_profile(self, profile: TasteProfile) -> None:
        async with self._lock:
            self._profiles[profile.user_id] = profile.model_copy(deep=True)

    async def delete_profile(self, user_id: str) -> bool:
        async with self._lock:
            return self._profiles.pop(user_id, None) is not None

    async def save_task(self, task: EnrichmentTask) -> None:
        self._tasks[task.task_id] = task

    def task(self, task_id: str) -> Optional[EnrichmentTask]:
        return self._tasks.get(task_id)


def load_recipe_store(path: str) -> RecipeStore:
    """Instantiate the storage backend named by "module:attribute"."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"recipe store must look like 'module:attribute', got {path!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory()
