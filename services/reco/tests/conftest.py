"""
Shared fixtures for the recommendation core test suite.

Components are wired over InMemoryRecipeStore with a local-only cache,
a small-dimension embedding store and the scripted FakeProvider. No
network or Redis is needed.
"""

import os

import pytest

# Ensure test env vars before any package imports
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("REDIS_URL", "redis://localhost:26379/0")
os.environ.setdefault("SENTRY_DSN", "")

from fakes import TEST_DIM, TEST_MODEL, FakeProvider, FakeRedis, StepClock  # noqa: E402

from services.reco.cache import CacheCoordinator  # noqa: E402
from services.reco.embedding import EmbeddingStore  # noqa: E402
from services.reco.enrichment import CallSpacer, EnrichmentPipeline  # noqa: E402
from services.reco.metrics import Metrics  # noqa: E402
from services.reco.profile import TasteProfileEngine  # noqa: E402
from services.reco.recommendation import RecommendationEngine  # noqa: E402
from services.reco.storage import InMemoryRecipeStore  # noqa: E402


@pytest.fixture
def metrics() -> Metrics:
    return Metrics()


@pytest.fixture
def storage() -> InMemoryRecipeStore:
    return InMemoryRecipeStore()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def cache(metrics: Metrics) -> CacheCoordinator:
    return CacheCoordinator(None, metrics=metrics)


@pytest.fixture
def store(metrics: Metrics) -> EmbeddingStore:
    return EmbeddingStore(
        dimensions={TEST_MODEL: TEST_DIM},
        model_version="test",
        m=8,
        ef_construction=64,
        ef_search=32,
        exact_filter_threshold=0,
        metrics=metrics,
    )


@pytest.fixture
def profiles(storage: InMemoryRecipeStore, cache: CacheCoordinator) -> TasteProfileEngine:
    return TasteProfileEngine(storage, cache)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def pipeline(storage, store, cache, provider, profiles, metrics, clock) -> EnrichmentPipeline:
    return EnrichmentPipeline(
        storage,
        store,
        cache,
        provider,
        profiles=profiles,
        metrics=metrics,
        max_pending=100,
        max_retries=3,
        backoff_base_s=2.0,
        provider_timeout_s=1.0,
        spacer=CallSpacer(0.0),
        clock=clock,
    )


@pytest.fixture
def recommender(storage, store, cache, profiles, metrics) -> RecommendationEngine:
    return RecommendationEngine(
        storage, store, cache, profiles, metrics=metrics, ann_timeout_s=1.0,
    )
