"""
Application configuration via pydantic-settings.
All config read from environment variables with sensible defaults for local dev.

The cache TTL policy is resolved once from these settings into an immutable
table (see ``build_cache_policies``). Nothing mutates it at runtime.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    app_name: str = "reco-core"
    app_version: str = "0.1.0"
    environment: str = Field(default="development", pattern=r"^(development|staging|production)$")
    debug: bool = False

    # Redis (shared cache tier)
    redis_url: str = Field(default="redis://localhost:6379/0")
    cache_namespace: str = "reco"
    cache_op_timeout_s: float = Field(default=0.25, gt=0.0)
    cache_local_max_entries: int = Field(default=2048, ge=1)
    cache_pool_min: int = Field(default=1, ge=1)
    cache_pool_max: int = Field(default=8, ge=1)

    # Cache TTLs per category (seconds). Local tier is always the shorter one.
    ttl_recommendations_local_s: int = 30
    ttl_recommendations_shared_s: int = 900
    ttl_recommendations_degraded_local_s: int = 10
    ttl_recommendations_degraded_shared_s: int = 60
    ttl_profile_local_s: int = 60
    ttl_profile_shared_s: int = 3600
    ttl_embedding_local_s: int = 120
    ttl_embedding_shared_s: int = 86400
    ttl_search_results_local_s: int = 30
    ttl_search_results_shared_s: int = 300

    # Sentry
    sentry_dsn: str = ""
    sentry_traces_sample_rate: float = Field(default=0.1, ge=0.0, le=1.0)

    # Embedding store / ANN
    embedding_model_id: str = "nomic-ai/nomic-embed-text-v1.5"
    embedding_model_version: str = "1.5"
    embedding_dimensions: int = Field(default=768, ge=1)
    hnsw_m: int = Field(default=16, ge=2)
    hnsw_ef_construction: int = Field(default=100, ge=1)
    hnsw_ef_search: int = Field(default=64, ge=1)
    exact_filter_threshold: int = Field(default=256, ge=0)

    # Enrichment
    enrichment_max_pending: int = Field(default=10_000, ge=1)
    enrichment_max_retries: int = Field(default=3, ge=0)
    enrichment_backoff_base_s: float = Field(default=2.0, ge=0.0)
    enrichment_workers: int = Field(default=2, ge=1)
    enrichment_poll_interval_s: float = Field(default=1.0, gt=0.0)
    provider_url: str = ""
    provider_api_key: str = ""
    provider_max_batch: int = Field(default=32, ge=1)
    provider_timeout_s: float = Field(default=10.0, gt=0.0)
    provider_min_interval_s: float = Field(default=0.5, ge=0.0)

    # Taste profile
    profile_half_life_days: float = Field(default=30.0, gt=0.0)
    profile_min_category_samples: int = Field(default=2, ge=1)
    profile_strength_half_samples: int = Field(default=5, ge=1)
    profile_max_ingredients: int = Field(default=50, ge=1)
    profile_recompute_every: int = Field(default=10, ge=1)

    # Recommendation
    max_recommendations: int = Field(default=100, ge=1)
    ann_timeout_s: float = Field(default=0.5, gt=0.0)
    overfetch_factor: int = Field(default=3, ge=1)
    recent_recipe_blend: float = Field(default=0.3, ge=0.0, le=1.0)

    # Storage backend, as "module:attribute" resolving to a RecipeStore factory
    recipe_store: str = "services.reco.storage:InMemoryRecipeStore"

    # Maintenance jobs
    profile_recompute_interval_s: float = Field(default=3600.0, gt=0.0)
    profile_recompute_concurrency: int = Field(default=4, ge=1)
    index_compaction_interval_s: float = Field(default=300.0, gt=0.0)
    index_compaction_min_tombstone_ratio: float = Field(default=0.1, ge=0.0, le=1.0)

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}


settings = Settings()


# ---------------------------------------------------------------------------
# Cache policy table
# ---------------------------------------------------------------------------

CATEGORY_RECOMMENDATIONS = "recommendations"
CATEGORY_RECOMMENDATIONS_DEGRADED = "recommendations_degraded"
CATEGORY_PROFILE = "profile"
CATEGORY_EMBEDDING = "embedding"
CATEGORY_SEARCH_RESULTS = "search_results"

# Only categories where a few seconds of staleness is acceptable may defer
# their shared-tier write.
WRITE_BEHIND_ALLOWED = frozenset({CATEGORY_SEARCH_RESULTS})


@dataclass(frozen=True)
class CachePolicy:
    """TTL policy for one cache category."""
    category: str
    local_ttl_s: int
    shared_ttl_s: int
    write_behind: bool = False

    def __post_init__(self) -> None:
        if self.local_ttl_s <= 0 or self.shared_ttl_s <= 0:
            raise ValueError(f"TTLs must be positive for category {self.category!r}")
        if self.local_ttl_s > self.shared_ttl_s:
            raise ValueError(
                f"local TTL exceeds shared TTL for category {self.category!r}"
            )
        if self.write_behind and self.category not in WRITE_BEHIND_ALLOWED:
            raise ValueError(f"write-behind not permitted for category {self.category!r}")


def build_cache_policies(cfg: Settings | None = None) -> Mapping[str, CachePolicy]:
    """Resolve the per-category TTL table once. Returns a read-only mapping."""
    cfg = cfg or settings
    policies = [
        CachePolicy(
            CATEGORY_RECOMMENDATIONS,
            cfg.ttl_recommendations_local_s,
            cfg.ttl_recommendations_shared_s,
        ),
        CachePolicy(
            CATEGORY_RECOMMENDATIONS_DEGRADED,
            cfg.ttl_recommendations_degraded_local_s,
            cfg.ttl_recommendations_degraded_shared_s,
        ),
        CachePolicy(CATEGORY_PROFILE, cfg.ttl_profile_local_s, cfg.ttl_profile_shared_s),
        CachePolicy(CATEGORY_EMBEDDING, cfg.ttl_embedding_local_s, cfg.ttl_embedding_shared_s),
        CachePolicy(
            CATEGORY_SEARCH_RESULTS,
            cfg.ttl_search_results_local_s,
            cfg.ttl_search_results_shared_s,
            write_behind=True,
        ),
    ]
    return MappingProxyType({p.category: p for p in policies})
