"""
Enrichment pipeline — async, batched, cost-aware embedding generation.

Flow per batch:
  1. Under a short lock, pick up to N ready tasks and mark them in_progress.
  2. Read the recipes. Missing recipes fail permanently; recipes whose
     stored embedding already matches the content hash complete with no
     provider call.
  3. Call the provider in chunks of provider.max_batch, each call spaced by
     CallSpacer and bounded by provider_timeout_s. No lock is held here.
  4. Success: upsert into the EmbeddingStore, invalidate recipe:{rid}:* and
     the owner's user:{uid}:* namespace, schedule a profile recompute.
  5. Transient failure: failed -> pending with exponential backoff
     (backoff_base * 2**retry) until max_retries, then terminal failed.
     Permanent failure: terminal failed immediately.

Terminal failures are kept for operators and surfaced once through
drain_failures(). One active task per recipe serializes enrichment of that
recipe; an enqueue that lands while its task is in flight re-runs it once
the task finishes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from services.reco.cache import CacheCoordinator
from services.reco.cache.keys import recipe_namespace, user_namespace
from services.reco.config import settings
from services.reco.embedding import EmbeddingStore
from services.reco.enrichment.provider import EnrichmentProvider, ProviderItem
from services.reco.errors import (
    PermanentProviderError,
    ResourceExhausted,
    TransientError,
    ValidationError,
)
from services.reco.metrics import Metrics
from services.reco.models import EnrichmentTask, Recipe, TaskStatus, utcnow
from services.reco.profile import TasteProfileEngine
from services.reco.storage import RecipeStore

logger = logging.getLogger(__name__)

# Finished tasks kept in memory for lookups by task_id
_RECENT_LIMIT = 1024
# Terminal failures kept for the operator view
_FAILURE_LIMIT = 1000

DEFAULT_CALLER = "enrichment"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EnrichmentOutcome:
    """State of one task at the end of a process_batch call."""
    task_id: str
    recipe_id: str
    status: TaskStatus
    retry_count: int
    error: Optional[str] = None
    skipped: bool = False  # completed without a provider call

    @classmethod
    def from_task(cls, task: EnrichmentTask, *, skipped: bool = False) -> "EnrichmentOutcome":
        return cls(
            task_id=task.task_id,
            recipe_id=task.recipe_id,
            status=task.status,
            retry_count=task.retry_count,
            error=task.error,
            skipped=skipped,
        )


@dataclass
class BatchStats:
    """Aggregated stats for one process_batch call."""
    picked: int = 0
    embedded: int = 0
    skipped: int = 0
    retried: int = 0
    failed: int = 0
    provider_calls: int = 0
    latency_seconds: float = 0.0
    errors: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Call spacing
# ---------------------------------------------------------------------------

class CallSpacer:
    """Minimum interval between provider calls, tracked per caller key."""

    def __init__(
        self,
        min_interval_s: float = settings.provider_min_interval_s,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.min_interval_s = min_interval_s
        self._clock = clock
        self._last: dict[str, float] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def wait(self, caller: str) -> float:
        """Sleep until ``caller`` may call again. Returns seconds waited."""
        if self.min_interval_s <= 0:
            return 0.0
        lock = self._locks.setdefault(caller, asyncio.Lock())
        async with lock:
            waited = 0.0
            last = self._last.get(caller)
            if last is not None:
                waited = max(0.0, last + self.min_interval_s - self._clock())
                if waited > 0:
                    await asyncio.sleep(waited)
            self._last[caller] = self._clock()
            return waited


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class EnrichmentPipeline:
    """
    Usage:
        pipeline = EnrichmentPipeline(storage, store, cache, provider, profiles=engine)
        task_id = await pipeline.enqueue(recipe_id)
        outcomes = await pipeline.process_batch(16)
        for task in pipeline.drain_failures():
            ...
    """

    def __init__(
        self,
        storage: RecipeStore,
        store: EmbeddingStore,
        cache: CacheCoordinator,
        provider: EnrichmentProvider,
        *,
        profiles: Optional[TasteProfileEngine] = None,
        metrics: Optional[Metrics] = None,
        max_pending: int = settings.enrichment_max_pending,
        max_retries: int = settings.enrichment_max_retries,
        backoff_base_s: float = settings.enrichment_backoff_base_s,
        provider_timeout_s: float = settings.provider_timeout_s,
        spacer: Optional[CallSpacer] = None,
        caller: str = DEFAULT_CALLER,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._storage = storage
        self._store = store
        self._cache = cache
        self._provider = provider
        self._profiles = profiles
        self._metrics = metrics or Metrics()
        self.max_pending = max_pending
        self.max_retries = max_retries
        self.backoff_base_s = backoff_base_s
        self.provider_timeout_s = provider_timeout_s
        self._spacer = spacer or CallSpacer()
        self._caller = caller
        self._clock = clock

        self._lock = asyncio.Lock()
        self._tasks: dict[str, EnrichmentTask] = {}     # active, insertion = FIFO
        self._by_recipe: dict[str, str] = {}            # recipe_id -> active task_id
        self._rerun: set[str] = set()
        self._cancelled: set[str] = set()               # in-flight task ids
        self._recent: OrderedDict[str, EnrichmentTask] = OrderedDict()
        self._failures: OrderedDict[str, EnrichmentTask] = OrderedDict()

        self._metrics.bind_queue_depth(lambda: self.queue_depth)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def queue_depth(self) -> int:
        return len(self._tasks)

    def get_task(self, task_id: str) -> Optional[EnrichmentTask]:
        return self._tasks.get(task_id) or self._recent.get(task_id)

    def active_task_for(self, recipe_id: str) -> Optional[EnrichmentTask]:
        task_id = self._by_recipe.get(recipe_id)
        return self._tasks.get(task_id) if task_id else None

    def failed_tasks(self) -> list[EnrichmentTask]:
        return list(self._failures.values())

    def drain_failures(self) -> list[EnrichmentTask]:
        """Terminal failures not yet reported. Each is returned exactly once."""
        fresh = [t for t in self._failures.values() if not t.reported]
        for task in fresh:
            task.reported = True
        return fresh

    # ------------------------------------------------------------------
    # Enqueue / cancel
    # ------------------------------------------------------------------

    async def enqueue(self, recipe_id: str, content_hash: Optional[str] = None) -> str:
        """Queue (re)generation of a recipe's embedding. Returns the task_id.

        A recipe with a pending or in-progress task is not queued twice.
        """
        if not isinstance(recipe_id, str) or not recipe_id:
            raise ValidationError("recipe_id must be a non-empty string")

        async with self._lock:
            existing = self.active_task_for(recipe_id)
            if existing is not None:
                if content_hash is not None:
                    existing.content_hash = content_hash
                if existing.status == TaskStatus.IN_PROGRESS:
                    self._rerun.add(recipe_id)
                return existing.task_id
            if len(self._tasks) >= self.max_pending:
                raise ResourceExhausted(
                    f"enrichment queue full ({self.max_pending} pending tasks)"
                )
            task = self._new_task(recipe_id, content_hash)

        await self._storage.save_task(task)
        logger.debug("enrichment enqueue recipe=%s task=%s", recipe_id, task.task_id)
        return task.task_id

    async def cancel(self, recipe_id: str) -> bool:
        """Drop the recipe's active task. An in-flight result is discarded."""
        self._rerun.discard(recipe_id)
        task = self.active_task_for(recipe_id)
        if task is None:
            return False
        if task.status == TaskStatus.IN_PROGRESS:
            self._cancelled.add(task.task_id)
            return True
        task.start()
        task.fail("cancelled", permanent=True)
        task.reported = True
        self._forget(task)
        await self._storage.save_task(task)
        return True

    # ------------------------------------------------------------------
    # Batch processing
    # ------------------------------------------------------------------

    async def process_batch(self, max_batch_size: int = settings.provider_max_batch) -> list[EnrichmentOutcome]:
        if max_batch_size <= 0:
            raise ValidationError("max_batch_size must be positive")

        now = self._clock()
        async with self._lock:
            batch: list[EnrichmentTask] = []
            for task in self._tasks.values():
                if len(batch) >= max_batch_size:
                    break
                if task.ready(now):
                    task.start()
                    batch.append(task)
        if not batch:
            return []

        start = time.monotonic()
        stats = BatchStats(picked=len(batch))
        skipped: set[str] = set()
        for task in batch:
            await self._storage.save_task(task)

        recipes = await self._storage.get_recipes([t.recipe_id for t in batch])
        work: list[tuple[EnrichmentTask, Recipe]] = []
        for task in batch:
            recipe = recipes.get(task.recipe_id)
            if recipe is None or task.task_id in self._cancelled:
                reason = "recipe not found" if recipe is None else "cancelled"
                await self._fail_permanently(task, reason, stats, report=recipe is None)
            elif self._store.is_current(recipe.recipe_id, recipe.content_hash):
                stats.skipped += 1
                skipped.add(task.task_id)
                await self._complete(task)
            else:
                work.append((task, recipe))

        chunk_size = max(1, self._provider.max_batch)
        for i in range(0, len(work), chunk_size):
            await self._call_provider(work[i : i + chunk_size], stats)

        stats.latency_seconds = time.monotonic() - start
        logger.info(
            "enrichment batch picked=%d embedded=%d skipped=%d retried=%d failed=%d "
            "provider_calls=%d latency_s=%.3f",
            stats.picked, stats.embedded, stats.skipped, stats.retried, stats.failed,
            stats.provider_calls, stats.latency_seconds,
        )
        return [EnrichmentOutcome.from_task(t, skipped=t.task_id in skipped) for t in batch]

    async def _call_provider(
        self,
        chunk: list[tuple[EnrichmentTask, Recipe]],
        stats: BatchStats,
    ) -> None:
        await self._spacer.wait(self._caller)
        items = [ProviderItem(task.task_id, recipe.embedding_text()) for task, recipe in chunk]
        stats.provider_calls += 1
        self._metrics.incr("provider_calls")
        self._metrics.incr("provider_items", len(items))

        try:
            results = await asyncio.wait_for(
                self._provider.embed_batch(items), timeout=self.provider_timeout_s,
            )
        except PermanentProviderError as exc:
            self._metrics.incr("provider_call_errors")
            self._metrics.incr("provider_item_errors", len(items))
            logger.error("provider rejected batch of %d: %s", len(items), exc)
            for task, _ in chunk:
                await self._fail_permanently(task, str(exc), stats)
            return
        except (asyncio.TimeoutError, TransientError) as exc:
            message = str(exc) or f"provider call exceeded {self.provider_timeout_s}s"
            self._metrics.incr("provider_call_errors")
            self._metrics.incr("provider_item_errors", len(items))
            logger.warning("provider call failed for %d items: %s", len(items), message)
            for task, _ in chunk:
                await self._retry_or_fail(task, message, stats)
            return
        except Exception as exc:
            self._metrics.incr("provider_call_errors")
            self._metrics.incr("provider_item_errors", len(items))
            logger.exception("unexpected provider error for %d items", len(items))
            for task, _ in chunk:
                await self._retry_or_fail(task, f"unexpected provider error: {exc!r}", stats)
            return

        by_key = {r.key: r for r in results}
        for task, recipe in chunk:
            result = by_key.get(task.task_id)
            if result is None or (result.error is None and result.vector is None):
                self._metrics.incr("provider_item_errors")
                await self._retry_or_fail(task, "missing from provider response", stats)
            elif isinstance(result.error, PermanentProviderError):
                self._metrics.incr("provider_item_errors")
                await self._fail_permanently(task, str(result.error), stats)
            elif result.error is not None:
                self._metrics.incr("provider_item_errors")
                await self._retry_or_fail(task, str(result.error), stats)
            else:
                await self._apply(task, recipe, result.vector, stats)

    async def _apply(
        self,
        task: EnrichmentTask,
        recipe: Recipe,
        vector: list[float],
        stats: BatchStats,
    ) -> None:
        if task.task_id in self._cancelled:
            await self._fail_permanently(task, "cancelled", stats, report=False)
            return
        try:
            self._store.upsert(
                recipe.recipe_id, vector, self._provider.model_id, recipe.content_hash,
            )
        except ValidationError as exc:
            await self._fail_permanently(task, str(exc), stats)
            return

        await self._cache.invalidate(recipe_namespace(recipe.recipe_id))
        await self._cache.invalidate(user_namespace(recipe.owner_id))
        stats.embedded += 1
        await self._complete(task)
        if self._profiles is not None:
            self._profiles.schedule_recompute(recipe.owner_id)

    # ------------------------------------------------------------------
    # Task transitions
    # ------------------------------------------------------------------

    async def _complete(self, task: EnrichmentTask) -> None:
        task.complete()
        await self._finish(task)

    async def _retry_or_fail(self, task: EnrichmentTask, error: str, stats: BatchStats) -> None:
        task.fail(error)
        if task.task_id in self._cancelled or task.retry_count >= self.max_retries:
            await self._terminal(task, stats, report=task.task_id not in self._cancelled)
            return
        delay = self.backoff_base_s * (2 ** task.retry_count)
        task.retry(self._clock() + timedelta(seconds=delay))
        stats.retried += 1
        logger.warning(
            "enrichment retry recipe=%s task=%s attempt=%d/%d in %.1fs: %s",
            task.recipe_id, task.task_id, task.retry_count, self.max_retries, delay, error,
        )
        await self._storage.save_task(task)

    async def _fail_permanently(
        self,
        task: EnrichmentTask,
        error: str,
        stats: BatchStats,
        *,
        report: bool = True,
    ) -> None:
        task.fail(error, permanent=True)
        await self._terminal(task, stats, report=report)

    async def _terminal(self, task: EnrichmentTask, stats: BatchStats, *, report: bool) -> None:
        if report:
            stats.failed += 1
            stats.errors.append(f"{task.recipe_id}: {task.error}")
            self._metrics.incr("enrichment_failed")
            self._failures[task.task_id] = task
            while len(self._failures) > _FAILURE_LIMIT:
                self._failures.popitem(last=False)
            logger.error(
                "enrichment failed recipe=%s task=%s retries=%d permanent=%s: %s",
                task.recipe_id, task.task_id, task.retry_count, task.permanent, task.error,
            )
        else:
            task.reported = True
        await self._finish(task)

    async def _finish(self, task: EnrichmentTask) -> None:
        self._forget(task)
        await self._storage.save_task(task)
        if task.recipe_id in self._rerun:
            self._rerun.discard(task.recipe_id)
            async with self._lock:
                if self.active_task_for(task.recipe_id) is None:
                    rerun = self._new_task(task.recipe_id, task.content_hash)
                else:
                    rerun = None
            if rerun is not None:
                await self._storage.save_task(rerun)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _new_task(self, recipe_id: str, content_hash: Optional[str]) -> EnrichmentTask:
        task = EnrichmentTask(
            recipe_id=recipe_id, requested_at=self._clock(), content_hash=content_hash,
        )
        self._tasks[task.task_id] = task
        self._by_recipe[recipe_id] = task.task_id
        return task

    def _forget(self, task: EnrichmentTask) -> None:
        self._tasks.pop(task.task_id, None)
        if self._by_recipe.get(task.recipe_id) == task.task_id:
            del self._by_recipe[task.recipe_id]
        self._cancelled.discard(task.task_id)
        self._recent[task.task_id] = task
        while len(self._recent) > _RECENT_LIMIT:
            self._recent.popitem(last=False)


# ---------------------------------------------------------------------------
# Worker pool
# ---------------------------------------------------------------------------

class EnrichmentWorkers:
    """A small fixed pool of asyncio workers looping process_batch."""

    def __init__(
        self,
        pipeline: EnrichmentPipeline,
        *,
        workers: int = settings.enrichment_workers,
        batch_size: int = settings.provider_max_batch,
        poll_interval_s: float = settings.enrichment_poll_interval_s,
    ) -> None:
        self._pipeline = pipeline
        self.workers = workers
        self.batch_size = batch_size
        self.poll_interval_s = poll_interval_s
        self._stop = asyncio.Event()
        self._running: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._running)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        loop = asyncio.get_running_loop()
        self._running = [
            loop.create_task(self._run(n), name=f"enrichment-worker-{n}")
            for n in range(self.workers)
        ]
        logger.info("enrichment workers started count=%d", self.workers)

    async def stop(self) -> None:
        self._stop.set()
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)
        self._running = []
        logger.info("enrichment workers stopped")

    async def _run(self, worker: int) -> None:
        while not self._stop.is_set():
            try:
                outcomes = await self._pipeline.process_batch(self.batch_size)
            except Exception:
                logger.exception("enrichment worker %d iteration failed", worker)
                outcomes = []
            if outcomes:
                continue
            try:
                await asyncio.wait_for(self._stop.wait(), self.poll_interval_s)
            except asyncio.TimeoutError:
                pass
