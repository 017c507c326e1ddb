"""
Test doubles and factories shared across the suite.

FakeRedis     dict-backed, implements what SharedTier and the pool use
FakeProvider  deterministic embedding provider with scripted failures
StepClock     manually advanced UTC clock
"""

import fnmatch
import hashlib
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import numpy as np

from services.reco.enrichment import ProviderItem, ProviderResult
from services.reco.errors import PermanentProviderError, TransientError
from services.reco.models import Recipe

TEST_MODEL = "test-model"
TEST_DIM = 16
BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# FakeRedis: dict-backed minimal implementation
# ---------------------------------------------------------------------------

class FakeRedis:
    """
    Minimal dict-backed Redis fake implementing the operations used by
    SharedTier and the pool health check:
      get, set(ex=), scan_iter(match=, count=), delete, ping, aclose
    """

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self.expiry: dict[str, int] = {}
        self.fail = False
        self.closed = False

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError("fake redis down")

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self._store.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self._check()
        self._store[key] = value
        if ex is not None:
            self.expiry[key] = ex
        return True

    async def scan_iter(self, match: str = "*", count: int = 10):
        self._check()
        for key in list(self._store):
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self._store.pop(key, None) is not None:
                removed += 1
            self.expiry.pop(key, None)
        return removed

    async def ping(self) -> bool:
        return not self.fail

    async def aclose(self) -> None:
        self.closed = True

    def keys(self) -> list[str]:
        return sorted(self._store)


# ---------------------------------------------------------------------------
# FakeProvider: scripted embedding provider
# ---------------------------------------------------------------------------

def marker(text: str) -> str:
    """First word of the recipe text, used to target failures."""
    words = text.split()
    return words[0].rstrip(".") if words else ""


class FakeProvider:
    """
    Deterministic provider. Vectors derive from the item text hash.

    transient_once / always_transient / permanent hold markers (first word
    of the embedded text) that fail per item. raise_on_call fails the whole
    call.
    """

    def __init__(self, dim: int = TEST_DIM, model_id: str = TEST_MODEL, max_batch: int = 32) -> None:
        self.dim = dim
        self.model_id = model_id
        self.max_batch = max_batch
        self.calls: list[list[ProviderItem]] = []
        self.transient_once: set[str] = set()
        self.always_transient: set[str] = set()
        self.permanent: set[str] = set()
        self.raise_on_call: Optional[BaseException] = None
        self.vector_for: Callable[[str], list[float]] = lambda text: text_vector(text, self.dim)

    async def embed_batch(self, items: list[ProviderItem]) -> list[ProviderResult]:
        self.calls.append(list(items))
        if self.raise_on_call is not None:
            raise self.raise_on_call
        results = []
        for item in items:
            m = marker(item.text)
            if m in self.permanent:
                results.append(ProviderResult(item.key, error=PermanentProviderError("rejected")))
            elif m in self.transient_once or m in self.always_transient:
                self.transient_once.discard(m)
                results.append(ProviderResult(item.key, error=TransientError("rate limited")))
            else:
                results.append(ProviderResult(item.key, vector=self.vector_for(item.text)))
        return results

    @property
    def items_sent(self) -> int:
        return sum(len(c) for c in self.calls)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class StepClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Factory functions
# ---------------------------------------------------------------------------

def text_vector(text: str, dim: int = TEST_DIM) -> list[float]:
    seed = int(hashlib.sha256(text.encode()).hexdigest()[:8], 16)
    rng = np.random.default_rng(seed)
    return rng.normal(size=dim).tolist()


def unit(dim: int, axis: int, *, wobble: float = 0.0, other: int = 1) -> np.ndarray:
    vec = np.zeros(dim, dtype=np.float32)
    vec[axis] = 1.0
    if wobble:
        vec[other % dim] = wobble
    return vec / np.linalg.norm(vec)


def make_recipe(
    recipe_id: str,
    owner_id: str = "u1",
    *,
    content: Optional[str] = None,
    categories: tuple[str, ...] = (),
    ingredients: tuple[str, ...] = (),
    rating: Optional[int] = None,
    popularity: float = 0.0,
    days: float = 0.0,
    content_hash: Optional[str] = None,
) -> Recipe:
    content = content if content is not None else f"{recipe_id} recipe"
    return Recipe(
        recipe_id=recipe_id,
        owner_id=owner_id,
        content=content,
        content_hash=content_hash or hashlib.sha256(content.encode()).hexdigest()[:16],
        categories=categories,
        ingredients=ingredients,
        rating=rating,
        popularity=popularity,
        created_at=BASE_TIME + timedelta(days=days),
    )
