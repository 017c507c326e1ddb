"""
Component wiring.

build_core() assembles the five core components around one storage
implementation, one metrics sink and one cache coordinator. The operator
app and the standalone jobs both start from here.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from services.reco.cache import CacheCoordinator, SharedTier, redis_pool
from services.reco.config import Settings, build_cache_policies, settings
from services.reco.embedding import EmbeddingStore
from services.reco.enrichment import (
    EnrichmentPipeline,
    EnrichmentProvider,
    EnrichmentWorkers,
    HttpEnrichmentProvider,
    LocalEmbeddingProvider,
)
from services.reco.enrichment.pipeline import CallSpacer
from services.reco.jobs.index_compaction import compaction_loop
from services.reco.jobs.profile_recompute import recompute_loop
from services.reco.lifecycle import RecipeLifecycle
from services.reco.metrics import Metrics
from services.reco.pool import AdaptivePool
from services.reco.profile import TasteProfileEngine
from services.reco.recommendation import RecommendationEngine
from services.reco.storage import RecipeStore, load_recipe_store

logger = logging.getLogger(__name__)

# Interval between write-behind / pending-invalidation flushes
CACHE_FLUSH_INTERVAL_S = 1.0


@dataclass
class RecoCore:
    settings: Settings
    metrics: Metrics
    storage: RecipeStore
    store: EmbeddingStore
    cache: CacheCoordinator
    profiles: TasteProfileEngine
    pipeline: EnrichmentPipeline
    recommender: RecommendationEngine
    lifecycle: RecipeLifecycle
    workers: EnrichmentWorkers
    provider: EnrichmentProvider
    redis: Optional[AdaptivePool] = None
    _stop: asyncio.Event = field(default_factory=asyncio.Event)
    _background: list[asyncio.Task] = field(default_factory=list)

    async def start(self, *, run_workers: bool = True, run_jobs: bool = False) -> None:
        if self.redis is not None:
            await self.redis.start()
        self._stop.clear()
        loop = asyncio.get_running_loop()
        self._background.append(loop.create_task(
            self.cache.run_flusher(self._stop, CACHE_FLUSH_INTERVAL_S), name="cache-flusher",
        ))
        if run_jobs:
            cfg = self.settings
            self._background.append(loop.create_task(
                compaction_loop(
                    self.store,
                    self._stop,
                    cfg.index_compaction_interval_s,
                    cfg.index_compaction_min_tombstone_ratio,
                ),
                name="index-compaction",
            ))
            self._background.append(loop.create_task(
                recompute_loop(
                    self.storage, self.profiles, self._stop, cfg.profile_recompute_interval_s,
                ),
                name="profile-recompute",
            ))
        if run_workers:
            self.workers.start()
        logger.info(
            "reco core started redis=%s workers=%s jobs=%s",
            self.redis is not None, run_workers, run_jobs,
        )

    async def aclose(self) -> None:
        self._stop.set()
        await self.workers.stop()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
            self._background.clear()
        await self.profiles.drain()
        await self.cache.flush()
        if isinstance(self.provider, HttpEnrichmentProvider):
            await self.provider.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        logger.info("reco core stopped")


def build_provider(cfg: Settings = settings) -> EnrichmentProvider:
    """Remote provider when a URL is configured, else the local model."""
    if cfg.provider_url:
        return HttpEnrichmentProvider(
            cfg.provider_url,
            cfg.provider_api_key,
            model_id=cfg.embedding_model_id,
            max_batch=cfg.provider_max_batch,
            timeout_s=cfg.provider_timeout_s,
        )
    return LocalEmbeddingProvider(cfg.embedding_model_id, max_batch=cfg.provider_max_batch)


def build_core(
    cfg: Settings = settings,
    *,
    storage: Optional[RecipeStore] = None,
    provider: Optional[EnrichmentProvider] = None,
    use_redis: bool = True,
) -> RecoCore:
    metrics = Metrics()
    storage = storage if storage is not None else load_recipe_store(cfg.recipe_store)

    redis = None
    shared = None
    if use_redis and cfg.redis_url:
        redis = redis_pool(
            cfg.redis_url, min_size=cfg.cache_pool_min, max_size=cfg.cache_pool_max,
        )
        shared = SharedTier(
            redis, namespace=cfg.cache_namespace, op_timeout_s=cfg.cache_op_timeout_s,
        )
    cache = CacheCoordinator(
        shared,
        policies=build_cache_policies(cfg),
        local_max_entries=cfg.cache_local_max_entries,
        metrics=metrics,
    )

    store = EmbeddingStore(
        dimensions={cfg.embedding_model_id: cfg.embedding_dimensions},
        model_version=cfg.embedding_model_version,
        m=cfg.hnsw_m,
        ef_construction=cfg.hnsw_ef_construction,
        ef_search=cfg.hnsw_ef_search,
        exact_filter_threshold=cfg.exact_filter_threshold,
        metrics=metrics,
    )
    profiles = TasteProfileEngine(
        storage,
        cache,
        half_life_days=cfg.profile_half_life_days,
        min_category_samples=cfg.profile_min_category_samples,
        strength_half_samples=cfg.profile_strength_half_samples,
        max_ingredients=cfg.profile_max_ingredients,
        recompute_every=cfg.profile_recompute_every,
    )
    provider = provider or build_provider(cfg)
    pipeline = EnrichmentPipeline(
        storage,
        store,
        cache,
        provider,
        profiles=profiles,
        metrics=metrics,
        max_pending=cfg.enrichment_max_pending,
        max_retries=cfg.enrichment_max_retries,
        backoff_base_s=cfg.enrichment_backoff_base_s,
        provider_timeout_s=cfg.provider_timeout_s,
        spacer=CallSpacer(cfg.provider_min_interval_s),
    )
    recommender = RecommendationEngine(
        storage,
        store,
        cache,
        profiles,
        metrics=metrics,
        max_recommendations=cfg.max_recommendations,
        ann_timeout_s=cfg.ann_timeout_s,
        overfetch_factor=cfg.overfetch_factor,
        recent_recipe_blend=cfg.recent_recipe_blend,
    )
    return RecoCore(
        settings=cfg,
        metrics=metrics,
        storage=storage,
        store=store,
        cache=cache,
        profiles=profiles,
        pipeline=pipeline,
        recommender=recommender,
        lifecycle=RecipeLifecycle(storage, store, cache, profiles, pipeline),
        workers=EnrichmentWorkers(
            pipeline,
            workers=cfg.enrichment_workers,
            batch_size=cfg.provider_max_batch,
            poll_interval_s=cfg.enrichment_poll_interval_s,
        ),
        provider=provider,
        redis=redis,
    )
