"""
Tests for EnrichmentPipeline and EnrichmentWorkers.

The provider is the scripted FakeProvider from fakes.py; time for retry
backoff comes from StepClock so no test waits on a real backoff.
"""

from __future__ import annotations

import asyncio

import pytest

from fakes import TEST_DIM, TEST_MODEL, FakeProvider, StepClock, make_recipe
from services.reco.cache import MISS, CacheCoordinator
from services.reco.cache.keys import embedding_key, profile_key
from services.reco.config import CATEGORY_EMBEDDING, CATEGORY_PROFILE
from services.reco.enrichment import CallSpacer, EnrichmentPipeline, EnrichmentWorkers
from services.reco.errors import ResourceExhausted, TransientError, ValidationError
from services.reco.metrics import Metrics
from services.reco.models import TaskStatus
from services.reco.storage import InMemoryRecipeStore


def _seed(storage: InMemoryRecipeStore, n: int, owner: str = "u1") -> list[str]:
    ids = [f"r{i}" for i in range(1, n + 1)]
    for rid in ids:
        storage.put_recipe(make_recipe(rid, owner, categories=("italian",)))
    return ids


def _pipeline(storage, store, cache, provider, clock=None, **overrides) -> EnrichmentPipeline:
    kwargs = dict(
        max_pending=100,
        max_retries=3,
        backoff_base_s=2.0,
        provider_timeout_s=1.0,
        spacer=CallSpacer(0.0),
        clock=clock or StepClock(),
    )
    kwargs.update(overrides)
    return EnrichmentPipeline(storage, store, cache, provider, **kwargs)


class SlowProvider(FakeProvider):
    async def embed_batch(self, items):
        await asyncio.sleep(5)
        return await super().embed_batch(items)


class GatedProvider(FakeProvider):
    """Blocks inside embed_batch until ``gate`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def embed_batch(self, items):
        self.entered.set()
        await self.gate.wait()
        return await super().embed_batch(items)


# ---------------------------------------------------------------------------
# Enqueue
# ---------------------------------------------------------------------------

class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_persists_pending_task(self, pipeline: EnrichmentPipeline, storage):
        task_id = await pipeline.enqueue("r1")
        task = pipeline.get_task(task_id)
        assert task.status == TaskStatus.PENDING
        assert task.retry_count == 0
        assert storage.task(task_id) is task
        assert pipeline.queue_depth == 1

    @pytest.mark.asyncio
    async def test_duplicate_enqueue_returns_same_task(self, pipeline: EnrichmentPipeline):
        first = await pipeline.enqueue("r1")
        second = await pipeline.enqueue("r1", content_hash="abc")
        assert first == second
        assert pipeline.queue_depth == 1
        assert pipeline.get_task(first).content_hash == "abc"

    @pytest.mark.asyncio
    async def test_full_queue_raises_resource_exhausted(self, storage, store, cache, provider):
        pipeline = _pipeline(storage, store, cache, provider, max_pending=2)
        await pipeline.enqueue("r1")
        await pipeline.enqueue("r2")
        with pytest.raises(ResourceExhausted):
            await pipeline.enqueue("r3")
        assert pipeline.queue_depth == 2

    @pytest.mark.asyncio
    async def test_invalid_recipe_id(self, pipeline: EnrichmentPipeline):
        with pytest.raises(ValidationError):
            await pipeline.enqueue("")

    @pytest.mark.asyncio
    async def test_queue_depth_reported_in_metrics(self, pipeline: EnrichmentPipeline, metrics: Metrics):
        await pipeline.enqueue("r1")
        await pipeline.enqueue("r2")
        assert metrics.snapshot()["queue_depth"] == 2


# ---------------------------------------------------------------------------
# Batch processing
# ---------------------------------------------------------------------------

class TestProcessBatch:
    @pytest.mark.asyncio
    async def test_one_transient_failure_in_batch(
        self, pipeline: EnrichmentPipeline, storage, store, provider: FakeProvider, profiles
    ):
        ids = _seed(storage, 5)
        task_ids = {rid: await pipeline.enqueue(rid) for rid in ids}
        provider.transient_once.add("r3")

        outcomes = await pipeline.process_batch(16)
        await profiles.drain()

        by_recipe = {o.recipe_id: o for o in outcomes}
        for rid in ("r1", "r2", "r4", "r5"):
            assert by_recipe[rid].status == TaskStatus.DONE
            assert rid in store
        assert by_recipe["r3"].status == TaskStatus.PENDING
        assert by_recipe["r3"].retry_count == 1
        assert "r3" not in store
        assert len(store) == 4
        assert pipeline.get_task(task_ids["r3"]).status == TaskStatus.PENDING
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_retry_waits_for_backoff(
        self, pipeline: EnrichmentPipeline, storage, store, provider: FakeProvider,
        clock: StepClock, profiles,
    ):
        _seed(storage, 1)
        await pipeline.enqueue("r1")
        provider.transient_once.add("r1")

        await pipeline.process_batch(16)
        assert await pipeline.process_batch(16) == []

        clock.advance(2.0)
        outcomes = await pipeline.process_batch(16)
        await profiles.drain()
        assert outcomes[0].status == TaskStatus.DONE
        assert "r1" in store

    @pytest.mark.asyncio
    async def test_exhausted_retries_become_terminal_failure(
        self, pipeline: EnrichmentPipeline, storage, provider: FakeProvider,
        clock: StepClock, metrics: Metrics,
    ):
        _seed(storage, 1)
        task_id = await pipeline.enqueue("r1")
        provider.always_transient.add("r1")

        for _ in range(4):
            await pipeline.process_batch(16)
            clock.advance(3600)

        task = pipeline.get_task(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.retry_count == 3
        assert len(provider.calls) == 4
        assert pipeline.queue_depth == 0
        assert metrics.get("enrichment_failed") == 1

        failures = pipeline.drain_failures()
        assert [t.task_id for t in failures] == [task_id]
        assert pipeline.drain_failures() == []
        assert [t.task_id for t in pipeline.failed_tasks()] == [task_id]

    @pytest.mark.asyncio
    async def test_permanent_error_fails_without_retry(
        self, pipeline: EnrichmentPipeline, storage, provider: FakeProvider, profiles
    ):
        _seed(storage, 2)
        provider.permanent.add("r2")
        await pipeline.enqueue("r1")
        bad = await pipeline.enqueue("r2")

        await pipeline.process_batch(16)
        await profiles.drain()

        task = pipeline.get_task(bad)
        assert task.status == TaskStatus.FAILED
        assert task.permanent
        assert task.retry_count == 0
        assert [t.task_id for t in pipeline.drain_failures()] == [bad]

    @pytest.mark.asyncio
    async def test_missing_recipe_fails_permanently(self, pipeline: EnrichmentPipeline, provider):
        task_id = await pipeline.enqueue("ghost")
        outcomes = await pipeline.process_batch(16)
        assert outcomes[0].status == TaskStatus.FAILED
        assert outcomes[0].error == "recipe not found"
        assert provider.calls == []
        assert pipeline.get_task(task_id).permanent

    @pytest.mark.asyncio
    async def test_current_embedding_skips_provider(
        self, pipeline: EnrichmentPipeline, storage, store, provider: FakeProvider
    ):
        recipe = make_recipe("r1")
        storage.put_recipe(recipe)
        store.upsert("r1", [1.0] * provider.dim, TEST_MODEL, recipe.content_hash)

        await pipeline.enqueue("r1")
        outcomes = await pipeline.process_batch(16)
        assert outcomes[0].status == TaskStatus.DONE
        assert outcomes[0].skipped
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_wrong_vector_length_fails_permanently(
        self, pipeline: EnrichmentPipeline, storage, store, provider: FakeProvider
    ):
        _seed(storage, 1)
        provider.vector_for = lambda text: [1.0, 0.0, 0.0]
        task_id = await pipeline.enqueue("r1")
        await pipeline.process_batch(16)
        assert pipeline.get_task(task_id).status == TaskStatus.FAILED
        assert "r1" not in store

    @pytest.mark.asyncio
    async def test_zero_vector_fails_permanently(
        self, pipeline: EnrichmentPipeline, storage, store, provider: FakeProvider
    ):
        _seed(storage, 1)
        provider.vector_for = lambda text: [0.0] * TEST_DIM
        task_id = await pipeline.enqueue("r1")
        await pipeline.process_batch(16)
        assert pipeline.get_task(task_id).status == TaskStatus.FAILED
        assert "r1" not in store

    @pytest.mark.asyncio
    async def test_chunks_follow_provider_batch_limit(self, storage, store, cache, profiles):
        provider = FakeProvider(max_batch=2)
        pipeline = _pipeline(storage, store, cache, provider, profiles=profiles)
        for rid in _seed(storage, 5):
            await pipeline.enqueue(rid)
        await pipeline.process_batch(16)
        await profiles.drain()
        assert [len(c) for c in provider.calls] == [2, 2, 1]
        assert len(store) == 5

    @pytest.mark.asyncio
    async def test_batch_size_bounds_pickup(self, pipeline: EnrichmentPipeline, storage, profiles):
        for rid in _seed(storage, 5):
            await pipeline.enqueue(rid)
        outcomes = await pipeline.process_batch(2)
        await profiles.drain()
        assert [o.recipe_id for o in outcomes] == ["r1", "r2"]
        assert pipeline.queue_depth == 3

    @pytest.mark.asyncio
    async def test_invalid_batch_size(self, pipeline: EnrichmentPipeline):
        with pytest.raises(ValidationError):
            await pipeline.process_batch(0)

    @pytest.mark.asyncio
    async def test_whole_call_transient_error_retries_every_item(
        self, pipeline: EnrichmentPipeline, storage, provider: FakeProvider, metrics: Metrics
    ):
        _seed(storage, 3)
        for rid in ("r1", "r2", "r3"):
            await pipeline.enqueue(rid)
        provider.raise_on_call = TransientError("503 from provider")

        outcomes = await pipeline.process_batch(16)
        assert {o.status for o in outcomes} == {TaskStatus.PENDING}
        assert {o.retry_count for o in outcomes} == {1}
        assert metrics.get("provider_call_errors") == 1
        assert metrics.provider_error_rate() == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_provider_timeout_is_transient(self, storage, store, cache):
        _seed(storage, 1)
        pipeline = _pipeline(storage, store, cache, SlowProvider(), provider_timeout_s=0.05)
        await pipeline.enqueue("r1")
        outcomes = await pipeline.process_batch(16)
        assert outcomes[0].status == TaskStatus.PENDING
        assert outcomes[0].retry_count == 1


# ---------------------------------------------------------------------------
# Side effects of a successful upsert
# ---------------------------------------------------------------------------

class TestAfterUpsert:
    @pytest.mark.asyncio
    async def test_invalidates_recipe_and_owner_namespaces(
        self, pipeline: EnrichmentPipeline, storage, cache: CacheCoordinator, profiles
    ):
        _seed(storage, 1)
        await cache.set(embedding_key("r1"), [0.0], CATEGORY_EMBEDDING)
        await cache.set(profile_key("u1"), {"stale": True}, CATEGORY_PROFILE)

        await pipeline.enqueue("r1")
        await pipeline.process_batch(16)
        assert await cache.get(embedding_key("r1"), CATEGORY_EMBEDDING) is MISS
        await profiles.drain()

    @pytest.mark.asyncio
    async def test_schedules_owner_profile_recompute(
        self, pipeline: EnrichmentPipeline, storage, profiles
    ):
        _seed(storage, 2)
        await pipeline.enqueue("r1")
        await pipeline.process_batch(16)
        await profiles.drain()
        profile = await storage.get_profile("u1")
        assert profile.sample_count == 2


# ---------------------------------------------------------------------------
# Cancel and re-run
# ---------------------------------------------------------------------------

class TestCancelAndRerun:
    @pytest.mark.asyncio
    async def test_cancel_pending(self, pipeline: EnrichmentPipeline, storage, provider):
        _seed(storage, 1)
        task_id = await pipeline.enqueue("r1")
        assert await pipeline.cancel("r1") is True
        assert await pipeline.cancel("r1") is False
        assert pipeline.queue_depth == 0
        assert await pipeline.process_batch(16) == []
        assert pipeline.get_task(task_id).status == TaskStatus.FAILED
        assert pipeline.drain_failures() == []
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_cancel_in_flight_discards_result(self, storage, store, cache):
        _seed(storage, 1)
        provider = GatedProvider()
        pipeline = _pipeline(storage, store, cache, provider)
        task_id = await pipeline.enqueue("r1")

        batch = asyncio.ensure_future(pipeline.process_batch(16))
        await asyncio.wait_for(provider.entered.wait(), 1.0)
        assert await pipeline.cancel("r1") is True
        provider.gate.set()
        await batch

        assert "r1" not in store
        assert pipeline.get_task(task_id).status == TaskStatus.FAILED
        assert pipeline.drain_failures() == []

    @pytest.mark.asyncio
    async def test_enqueue_during_flight_reruns(self, storage, store, cache):
        _seed(storage, 1)
        provider = GatedProvider()
        pipeline = _pipeline(storage, store, cache, provider)
        first = await pipeline.enqueue("r1")

        batch = asyncio.ensure_future(pipeline.process_batch(16))
        await asyncio.wait_for(provider.entered.wait(), 1.0)
        assert await pipeline.enqueue("r1") == first
        provider.gate.set()
        await batch

        assert pipeline.get_task(first).status == TaskStatus.DONE
        rerun = pipeline.active_task_for("r1")
        assert rerun is not None
        assert rerun.task_id != first
        assert rerun.status == TaskStatus.PENDING


# ---------------------------------------------------------------------------
# Call spacing and workers
# ---------------------------------------------------------------------------

class TestCallSpacer:
    @pytest.mark.asyncio
    async def test_spacing_is_per_caller(self):
        spacer = CallSpacer(0.05, clock=lambda: 0.0)
        assert await spacer.wait("a") == 0.0
        assert await spacer.wait("a") == pytest.approx(0.05)
        assert await spacer.wait("b") == 0.0

    @pytest.mark.asyncio
    async def test_zero_interval_never_waits(self):
        spacer = CallSpacer(0.0)
        assert await spacer.wait("a") == 0.0
        assert await spacer.wait("a") == 0.0


class TestWorkers:
    @pytest.mark.asyncio
    async def test_workers_drain_queue(self, pipeline: EnrichmentPipeline, storage, store, profiles):
        for rid in _seed(storage, 3):
            await pipeline.enqueue(rid)
        workers = EnrichmentWorkers(pipeline, workers=2, batch_size=2, poll_interval_s=0.01)
        workers.start()
        assert workers.running
        try:
            for _ in range(200):
                if len(store) == 3:
                    break
                await asyncio.sleep(0.01)
        finally:
            await workers.stop()
        await profiles.drain()
        assert len(store) == 3
        assert pipeline.queue_depth == 0
        assert not workers.running
