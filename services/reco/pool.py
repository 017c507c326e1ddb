"""
Bounded, adaptively sized async resource pool.

Holds between ``min_size`` and ``max_size`` connections. Grows one
connection ahead of demand while utilization is at or above
``grow_threshold``; closes connections that have sat idle longer than
``idle_timeout_s`` while utilization is below ``shrink_threshold`` (never
below the floor). A connection that fails its health check on release, or
whose user raised, is evicted instead of being returned.

Acquiring past the ceiling waits up to ``acquire_timeout_s`` and then
raises ResourceExhausted so callers can apply backpressure.

Usage:
    pool = AdaptivePool(factory, health_check=ping, close=aclose)
    async with pool.connection() as conn:
        await conn.get("key")
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Generic, Optional, TypeVar

from services.reco.errors import ResourceExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")

HEALTH_CHECK_TIMEOUT_S = 1.0


class AdaptivePool(Generic[T]):

    def __init__(
        self,
        factory: Callable[[], Awaitable[T]],
        *,
        min_size: int = 1,
        max_size: int = 8,
        health_check: Optional[Callable[[T], Awaitable[bool]]] = None,
        close: Optional[Callable[[T], Awaitable[None]]] = None,
        acquire_timeout_s: float = 1.0,
        grow_threshold: float = 0.8,
        shrink_threshold: float = 0.3,
        idle_timeout_s: float = 60.0,
    ) -> None:
        if min_size < 0 or max_size < 1 or min_size > max_size:
            raise ValueError("require 0 <= min_size <= max_size and max_size >= 1")
        self._factory = factory
        self._health_check = health_check
        self._close = close
        self.min_size = min_size
        self.max_size = max_size
        self._acquire_timeout_s = acquire_timeout_s
        self._grow_threshold = grow_threshold
        self._shrink_threshold = shrink_threshold
        self._idle_timeout_s = idle_timeout_s

        self._cond = asyncio.Condition()
        self._idle: list[tuple[T, float]] = []
        self._size = 0
        self._in_use = 0
        self._evicted = 0
        self._closed = False
        self._grow_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    @property
    def size(self) -> int:
        return self._size

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def idle(self) -> int:
        return len(self._idle)

    @property
    def evicted(self) -> int:
        return self._evicted

    def utilization(self) -> float:
        return self._in_use / self._size if self._size else 1.0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Open the floor of connections up front."""
        for _ in range(self.min_size):
            conn = await self._factory()
            async with self._cond:
                self._size += 1
                self._idle.append((conn, _now()))

    async def aclose(self) -> None:
        async with self._cond:
            self._closed = True
            idle = [c for c, _ in self._idle]
            self._idle.clear()
            self._size -= len(idle)
            self._cond.notify_all()
        for task in list(self._grow_tasks):
            task.cancel()
        for conn in idle:
            await self._safe_close(conn)

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    async def acquire(self) -> T:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._acquire_timeout_s
        async with self._cond:
            while True:
                if self._closed:
                    raise ResourceExhausted("pool is closed")
                if self._idle:
                    conn, _ = self._idle.pop()
                    self._in_use += 1
                    self._maybe_grow()
                    return conn
                if self._size < self.max_size:
                    self._size += 1
                    self._in_use += 1
                    break
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise ResourceExhausted(
                        f"pool exhausted: {self._in_use}/{self.max_size} in use"
                    )
                try:
                    await asyncio.wait_for(self._cond.wait(), remaining)
                except asyncio.TimeoutError:
                    raise ResourceExhausted(
                        f"pool exhausted: {self._in_use}/{self.max_size} in use"
                    ) from None

        try:
            conn = await self._factory()
        except BaseException:
            async with self._cond:
                self._size -= 1
                self._in_use -= 1
                self._cond.notify()
            raise
        async with self._cond:
            self._maybe_grow()
        return conn

    async def release(self, conn: T, *, healthy: Optional[bool] = None) -> None:
        if healthy is None:
            healthy = await self._check(conn)
        to_close: list[T] = []
        async with self._cond:
            self._in_use -= 1
            if healthy and not self._closed:
                self._idle.append((conn, _now()))
            else:
                self._size -= 1
                if not healthy:
                    self._evicted += 1
                to_close.append(conn)
            to_close.extend(self._shrink_idle())
            self._cond.notify()
        if not healthy:
            logger.warning("pool evicted unhealthy connection size=%d", self._size)
        for c in to_close:
            await self._safe_close(c)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[T]:
        conn = await self.acquire()
        try:
            yield conn
        except BaseException:
            # Errors mid-use leave the connection in an unknown state.
            await self.release(conn, healthy=False)
            raise
        else:
            await self.release(conn)

    # ------------------------------------------------------------------
    # Internals (called with self._cond held)
    # ------------------------------------------------------------------

    def _maybe_grow(self) -> None:
        if self._closed or self._size >= self.max_size:
            return
        if self.utilization() < self._grow_threshold or self._grow_tasks:
            return
        self._size += 1
        task = asyncio.get_running_loop().create_task(self._grow_one())
        self._grow_tasks.add(task)
        task.add_done_callback(self._grow_tasks.discard)

    async def _grow_one(self) -> None:
        try:
            conn = await self._factory()
        except Exception:
            logger.warning("pool grow failed", exc_info=True)
            async with self._cond:
                self._size -= 1
            return
        except asyncio.CancelledError:
            async with self._cond:
                self._size -= 1
            raise
        async with self._cond:
            if self._closed:
                self._size -= 1
                close_now = True
            else:
                self._idle.append((conn, _now()))
                self._cond.notify()
                close_now = False
        if close_now:
            await self._safe_close(conn)

    def _shrink_idle(self) -> list[T]:
        if self.utilization() >= self._shrink_threshold:
            return []
        cutoff = _now() - self._idle_timeout_s
        closing: list[T] = []
        keep: list[tuple[T, float]] = []
        for conn, since in self._idle:
            if since < cutoff and self._size > self.min_size:
                self._size -= 1
                closing.append(conn)
            else:
                keep.append((conn, since))
        self._idle = keep
        return closing

    async def _check(self, conn: T) -> bool:
        if self._health_check is None:
            return True
        try:
            return bool(
                await asyncio.wait_for(self._health_check(conn), HEALTH_CHECK_TIMEOUT_S)
            )
        except Exception:
            return False

    async def _safe_close(self, conn: T) -> None:
        if self._close is None:
            return
        try:
            await self._close(conn)
        except Exception:
            logger.debug("pool close failed", exc_info=True)


def _now() -> float:
    return asyncio.get_running_loop().time()
