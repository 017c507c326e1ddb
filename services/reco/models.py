"""
Typed domain structures for the recommendation core.

Every record that crosses a component boundary is a fixed-field structure:
  - Recipe            storage read contract (parsed ingredients included)
  - RecipeEmbedding   one current vector per recipe
  - TasteProfile      per-user bounded preference weights (pydantic-validated)
  - CacheEntry        one cached value with its category
  - EnrichmentTask    observable enrichment state machine
  - Recommendation    ranked result with structured reasons
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Annotated, Any, Optional

import numpy as np
from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Recipe (storage output contract)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Recipe:
    """A recipe row as read from storage. Ingredients are already parsed."""
    recipe_id: str
    owner_id: str
    content: str
    content_hash: str
    categories: tuple[str, ...] = ()
    ingredients: tuple[str, ...] = ()
    rating: Optional[int] = None  # 1-5, None when the user never rated it
    popularity: float = 0.0       # 0.0-1.0, normalized by storage
    created_at: datetime = field(default_factory=utcnow)

    def embedding_text(self) -> str:
        """
        Build the text that gets embedded for a recipe.

        Formula: "{content}. Categories: {cats}. Ingredients: {ings}"
        Omits empty segments.
        """
        parts = [self.content.strip()]
        if self.categories:
            parts.append(f"Categories: {', '.join(self.categories)}")
        if self.ingredients:
            parts.append(f"Ingredients: {', '.join(self.ingredients)}")
        return ". ".join(p for p in parts if p)


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RecipeEmbedding:
    recipe_id: str
    vector: np.ndarray
    model_id: str
    model_version: str
    source_hash: str
    created_at: datetime = field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Taste profile
# ---------------------------------------------------------------------------

BoundedWeight = Annotated[float, Field(ge=-1.0, le=1.0)]


class ProfileState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"


class TasteProfile(BaseModel):
    """
    Per-user preference summary. Mutated only by TasteProfileEngine.

    category_weights / ingredient_weights are the trusted, bounded weights
    used for ranking. The *_mass fields and recency_mass are the running
    sums they were derived from, kept so an incremental update can absorb
    one recipe without rescanning the collection.
    """

    user_id: str = Field(min_length=1)
    state: ProfileState = ProfileState.UNINITIALIZED
    category_weights: dict[str, BoundedWeight] = Field(default_factory=dict)
    ingredient_weights: dict[str, BoundedWeight] = Field(default_factory=dict)
    strength: float = Field(default=0.0, ge=0.0, le=1.0)
    sample_count: int = Field(default=0, ge=0)
    last_computed_at: Optional[datetime] = None

    category_counts: dict[str, int] = Field(default_factory=dict)
    ingredient_counts: dict[str, int] = Field(default_factory=dict)
    category_mass: dict[str, float] = Field(default_factory=dict)
    ingredient_mass: dict[str, float] = Field(default_factory=dict)
    recency_mass: float = Field(default=0.0, ge=0.0)
    newest_recipe_at: Optional[datetime] = None
    updates_since_recompute: int = Field(default=0, ge=0)

    @classmethod
    def empty(cls, user_id: str) -> "TasteProfile":
        return cls(user_id=user_id)

    def category_affinity(self, categories: tuple[str, ...] | list[str]) -> float:
        """Mean trusted weight over the given categories (0.0 when none match)."""
        if not categories:
            return 0.0
        total = sum(self.category_weights.get(c, 0.0) for c in categories)
        return total / len(categories)


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    category: str
    inserted_at: float  # time.monotonic() for local, epoch seconds for shared
    ttl: float

    def expired(self, now: float) -> bool:
        return now >= self.inserted_at + self.ttl


# ---------------------------------------------------------------------------
# Enrichment tasks
# ---------------------------------------------------------------------------

class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.DONE, TaskStatus.FAILED}),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.DONE: frozenset(),
}


class InvalidTransition(RuntimeError):
    pass


@dataclass
class EnrichmentTask:
    """One request to (re)generate a recipe's embedding."""
    recipe_id: str
    task_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    requested_at: datetime = field(default_factory=utcnow)
    status: TaskStatus = TaskStatus.PENDING
    retry_count: int = 0
    error: Optional[str] = None
    content_hash: Optional[str] = None  # hash the caller saw when enqueueing
    next_attempt_at: Optional[datetime] = None
    permanent: bool = False
    reported: bool = False

    @property
    def active(self) -> bool:
        return self.status in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)

    def _move(self, target: TaskStatus) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"task {self.task_id}: {self.status.value} -> {target.value}"
            )
        self.status = target

    def start(self) -> None:
        self._move(TaskStatus.IN_PROGRESS)

    def complete(self) -> None:
        self._move(TaskStatus.DONE)
        self.error = None
        self.next_attempt_at = None

    def fail(self, error: str, *, permanent: bool = False) -> None:
        self._move(TaskStatus.FAILED)
        self.error = error
        self.permanent = permanent

    def retry(self, next_attempt_at: datetime) -> None:
        """failed -> pending, the only backward edge."""
        if self.permanent:
            raise InvalidTransition(f"task {self.task_id}: permanent failure cannot retry")
        self._move(TaskStatus.PENDING)
        self.retry_count += 1
        self.next_attempt_at = next_attempt_at

    def ready(self, now: datetime) -> bool:
        return self.status == TaskStatus.PENDING and (
            self.next_attempt_at is None or self.next_attempt_at <= now
        )


# ---------------------------------------------------------------------------
# Recommendations
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Reasons:
    """Why a recipe was recommended, built from the scoring inputs only."""
    matched_categories: tuple[str, ...] = ()
    matched_ingredients: tuple[str, ...] = ()
    similarity: Optional[float] = None
    source: str = "ann"  # "ann" | "fallback"

    def to_dict(self) -> dict[str, Any]:
        return {
            "matched_categories": list(self.matched_categories),
            "matched_ingredients": list(self.matched_ingredients),
            "similarity": self.similarity,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Reasons":
        return cls(
            matched_categories=tuple(data.get("matched_categories") or ()),
            matched_ingredients=tuple(data.get("matched_ingredients") or ()),
            similarity=data.get("similarity"),
            source=data.get("source", "ann"),
        )


@dataclass(frozen=True)
class Recommendation:
    recipe_id: str
    score: float
    reasons: Reasons

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipe_id": self.recipe_id,
            "score": self.score,
            "reasons": self.reasons.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Recommendation":
        return cls(
            recipe_id=data["recipe_id"],
            score=float(data["score"]),
            reasons=Reasons.from_dict(data.get("reasons") or {}),
        )
