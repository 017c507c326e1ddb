"""
CacheCoordinator — two-tier cache with per-category TTL and pattern
invalidation. All other components read and write cached data through it.

Tiers:
  local   process-local LRU, short TTL, checked first
  shared  Redis, authoritative TTL; hits are promoted into local

TTL comes only from the category policy table resolved at startup; callers
cannot override it.

Invalidation:
  invalidate(pattern) clears both tiers and any queued write-behind entries
  matching the pattern before it returns. Writers of source-of-truth data
  call it synchronously after their write commits, so no reader in this
  process sees a cached value older than the last committed mutation.

  If the shared tier cannot be reached during an invalidation, the pattern
  is remembered with its timestamp. Shared entries matching it that were
  written before that moment are treated as misses until a later flush()
  manages to delete them.

Fill races:
  Every invalidation takes the next generation number. A reader that
  misses notes cache.generation before loading from storage and fills with
  set(..., since=gen); the fill is dropped if a matching invalidation
  started meanwhile, so a slow reader cannot park pre-mutation data over a
  newer commit. Writers use write_through() for the same reason.

Write-behind:
  Categories whose policy sets write_behind (search results only) write the
  local tier immediately and queue the shared write for flush().

Graceful degradation: with shared=None, or while Redis is failing, the
coordinator serves from the local tier alone. Cache trouble is never an
error for the caller, only a miss.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from collections import deque
from typing import Any, Callable, Mapping, Optional

from services.reco.cache.local import MISS, LocalTier
from services.reco.cache.shared import SharedTier
from services.reco.config import CachePolicy, build_cache_policies, settings
from services.reco.errors import TransientError, ValidationError
from services.reco.metrics import Metrics

logger = logging.getLogger(__name__)


class CacheCoordinator:
    """
    Usage:
        cache = CacheCoordinator(SharedTier(redis_pool()))
        value = await cache.get(key, "profile")
        if value is MISS:
            gen = cache.generation
            value = compute()
            await cache.set(key, value, "profile", since=gen)

        # after committing a write:
        await cache.invalidate(user_namespace(user_id))
    """

    def __init__(
        self,
        shared: Optional[SharedTier] = None,
        *,
        policies: Optional[Mapping[str, CachePolicy]] = None,
        local_max_entries: int = settings.cache_local_max_entries,
        metrics: Optional[Metrics] = None,
        clock: Callable[[], float] = time.time,
        local_clock: Callable[[], float] = time.monotonic,
        recent_invalidations: int = 1024,
    ) -> None:
        self._shared = shared
        self._policies = policies if policies is not None else build_cache_policies()
        self._local = LocalTier(local_max_entries, clock=local_clock)
        self._metrics = metrics or Metrics()
        self._clock = clock
        self._write_behind: dict[str, tuple[Any, CachePolicy]] = {}
        self._pending_invalidations: list[tuple[str, float]] = []
        self._generation = 0
        self._recent: deque[tuple[int, str]] = deque(maxlen=recent_invalidations)

    @property
    def policies(self) -> Mapping[str, CachePolicy]:
        return self._policies

    @property
    def shared(self) -> Optional[SharedTier]:
        return self._shared

    @property
    def local(self) -> LocalTier:
        return self._local

    @property
    def pending_writes(self) -> int:
        return len(self._write_behind)

    def policy(self, category: str) -> CachePolicy:
        try:
            return self._policies[category]
        except KeyError:
            raise ValidationError(f"unknown cache category {category!r}") from None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, key: str, category: str) -> Any:
        """Return the cached value or MISS."""
        policy = self.policy(category)

        value = self._local.get(key, category)
        if value is not MISS:
            self._metrics.incr("cache_local_hits")
            return value

        if self._shared is not None:
            try:
                entry = await self._shared.get(key)
            except TransientError:
                self._metrics.incr("cache_shared_errors")
                logger.warning("shared cache get failed key=%s, serving miss", key, exc_info=True)
                entry = None
            if (
                entry is not None
                and entry.category == category
                and not self._shadowed(key, entry.inserted_at)
            ):
                self._local.set(key, entry.value, category, policy.local_ttl_s)
                self._metrics.incr("cache_shared_hits")
                return entry.value

        self._metrics.incr("cache_misses")
        return MISS

    def _shadowed(self, key: str, inserted_at: float) -> bool:
        """True if an unconfirmed invalidation covers an entry this old."""
        return any(
            inserted_at <= at and fnmatch.fnmatchcase(key, pattern)
            for pattern, at in self._pending_invalidations
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @property
    def generation(self) -> int:
        """Sequence number of the latest invalidation started in this process.

        Read it before loading source-of-truth data for a cache fill and pass
        it to set(since=...); the fill is dropped if an invalidation covering
        the key started in between.
        """
        return self._generation

    def invalidated_since(self, key: str, since: int, *, ignore: int = 0) -> bool:
        """True if an invalidation newer than ``since`` covers key."""
        if since >= self._generation:
            return False
        if not self._recent or self._recent[0][0] > since + 1:
            # Log rolled past since, assume the worst.
            return True
        return any(
            gen > since and gen != ignore and fnmatch.fnmatchcase(key, pattern)
            for gen, pattern in self._recent
        )

    async def set(
        self, key: str, value: Any, category: str, *, since: Optional[int] = None,
    ) -> bool:
        """Full replace under the category's TTL.

        With ``since``, the write is skipped (returns False) when a matching
        invalidation started after that generation.
        """
        policy = self.policy(category)
        if since is not None and self.invalidated_since(key, since):
            return self._skip_fill(key)
        await self._write(key, value, policy)
        return True

    async def write_through(
        self, pattern: str, key: str, value: Any, category: str, *, since: int,
    ) -> bool:
        """Invalidate pattern, then cache the value just committed.

        ``since`` is the generation read while the writer still held its
        lock. Any other matching invalidation after it means a newer commit
        may exist, so the value is left uncached.
        """
        policy = self.policy(category)
        own, _ = await self._invalidate(pattern)
        if self.invalidated_since(key, since, ignore=own):
            return self._skip_fill(key)
        await self._write(key, value, policy)
        return True

    def _skip_fill(self, key: str) -> bool:
        self._metrics.incr("cache_stale_fills_skipped")
        logger.debug("cache fill skipped key=%s, invalidated during load", key)
        return False

    async def _write(self, key: str, value: Any, policy: CachePolicy) -> None:
        self._local.set(key, value, policy.category, policy.local_ttl_s)
        if self._shared is None:
            return
        if policy.write_behind:
            self._write_behind[key] = (value, policy)
            return
        try:
            await self._shared.set(key, value, policy.category, policy.shared_ttl_s)
        except TransientError:
            self._metrics.incr("cache_shared_errors")
            logger.warning("shared cache set failed key=%s, local only", key, exc_info=True)

    async def invalidate(self, pattern: str) -> int:
        """Remove every entry whose key matches pattern. Returns keys removed."""
        _, removed = await self._invalidate(pattern)
        return removed

    async def _invalidate(self, pattern: str) -> tuple[int, int]:
        """Returns (generation, keys removed)."""
        self._generation += 1
        gen = self._generation
        self._recent.append((gen, pattern))

        removed = set(self._local.invalidate(pattern))
        for key in [k for k in self._write_behind if fnmatch.fnmatchcase(k, pattern)]:
            del self._write_behind[key]
            removed.add(key)

        if self._shared is not None:
            at = self._clock()
            try:
                removed.update(await self._shared.invalidate(pattern))
            except TransientError:
                self._metrics.incr("cache_shared_errors")
                self._pending_invalidations.append((pattern, at))
                logger.warning(
                    "shared cache invalidate failed pattern=%s, shadowing until flush",
                    pattern, exc_info=True,
                )

        logger.debug("cache invalidate pattern=%s removed=%d", pattern, len(removed))
        return gen, len(removed)

    # ------------------------------------------------------------------
    # Background maintenance
    # ------------------------------------------------------------------

    async def flush(self) -> int:
        """Write queued write-behind entries and retry failed invalidations.

        Returns the number of shared writes performed.
        """
        if self._shared is None:
            self._write_behind.clear()
            return 0

        still_pending: list[tuple[str, float]] = []
        for pattern, at in self._pending_invalidations:
            try:
                await self._shared.invalidate(pattern)
            except TransientError:
                still_pending.append((pattern, at))
        # Entries written before ``at`` cannot outlive the longest shared TTL.
        horizon = self._clock() - max(p.shared_ttl_s for p in self._policies.values())
        self._pending_invalidations = [(p, at) for p, at in still_pending if at > horizon]

        queued, self._write_behind = self._write_behind, {}
        written = 0
        for key, (value, policy) in queued.items():
            try:
                await self._shared.set(key, value, policy.category, policy.shared_ttl_s)
                written += 1
            except TransientError:
                self._metrics.incr("cache_shared_errors")
                logger.warning("write-behind flush failed key=%s, dropping", key, exc_info=True)
        return written

    async def run_flusher(self, stop: asyncio.Event, interval_s: float = 1.0) -> None:
        """Flush periodically until ``stop`` is set."""
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), interval_s)
            except asyncio.TimeoutError:
                pass
            try:
                await self.flush()
            except Exception:
                logger.exception("cache flusher iteration failed")
