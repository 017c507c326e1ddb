"""
Shared cache tier backed by Redis (redis.asyncio).

Key format:  {namespace}:{key}
Value:       JSON envelope {"v": value, "c": category, "t": inserted_epoch}
TTL:         SET ... EX {shared_ttl_s} from the category policy

Pattern invalidation walks SCAN MATCH and deletes in batches; it never
uses KEYS. Every operation, including acquiring a pooled connection, runs
under a deadline. Failures surface as TransientError and the coordinator
decides how to degrade.

GCP Cloud Memorystore compatibility:
- No Cluster-mode commands
- No Lua scripts
- Uses only standard Redis 6+ commands (GET, SET EX, SCAN, DEL, PING)
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from services.reco.cache.keys import glob_escape
from services.reco.config import settings
from services.reco.errors import ResourceExhausted, TransientError
from services.reco.models import CacheEntry
from services.reco.pool import AdaptivePool

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SCAN_COUNT = 500
_DELETE_BATCH = 256
# SCAN over a large keyspace takes longer than a point read.
_INVALIDATE_TIMEOUT_MULTIPLIER = 8


def redis_pool(
    url: str = settings.redis_url,
    *,
    min_size: int = settings.cache_pool_min,
    max_size: int = settings.cache_pool_max,
    connect_timeout_s: float = 2.0,
) -> AdaptivePool:
    """Pool of single-connection Redis clients with PING health checks."""

    async def _factory() -> Any:
        return aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout_s,
            max_connections=1,
        )

    async def _ping(client: Any) -> bool:
        return bool(await client.ping())

    async def _close(client: Any) -> None:
        await client.aclose()

    return AdaptivePool(
        _factory,
        min_size=min_size,
        max_size=max_size,
        health_check=_ping,
        close=_close,
    )


class SharedTier:

    def __init__(
        self,
        pool: AdaptivePool,
        *,
        namespace: str = settings.cache_namespace,
        op_timeout_s: float = settings.cache_op_timeout_s,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._pool = pool
        self._namespace = namespace
        self._op_timeout_s = op_timeout_s
        self._clock = clock

    @property
    def pool(self) -> AdaptivePool:
        return self._pool

    def _full(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    def _strip(self, full_key: str) -> str:
        prefix = f"{self._namespace}:"
        return full_key[len(prefix):] if full_key.startswith(prefix) else full_key

    async def _run(self, op: Callable[[Any], Awaitable[T]], timeout: float) -> T:
        async def _with_conn() -> T:
            async with self._pool.connection() as client:
                return await op(client)

        try:
            return await asyncio.wait_for(_with_conn(), timeout)
        except asyncio.TimeoutError as exc:
            raise TransientError(f"shared cache timed out after {timeout:.3f}s") from exc
        except (RedisError, OSError, ResourceExhausted) as exc:
            raise TransientError(f"shared cache unavailable: {exc}") from exc

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        """True if a pooled connection answers PING within the op deadline."""
        try:
            return bool(await self._run(lambda r: r.ping(), self._op_timeout_s))
        except TransientError:
            return False

    async def get(self, key: str) -> Optional[CacheEntry]:
        full = self._full(key)
        raw = await self._run(lambda r: r.get(full), self._op_timeout_s)
        if raw is None:
            return None
        try:
            envelope = json.loads(raw)
            return CacheEntry(
                key=key,
                value=envelope["v"],
                category=envelope["c"],
                inserted_at=float(envelope["t"]),
                ttl=float(envelope.get("ttl", 0.0)),
            )
        except (ValueError, KeyError, TypeError):
            logger.warning("shared cache: undecodable entry key=%s, ignoring", full)
            return None

    async def set(self, key: str, value: Any, category: str, ttl_s: int) -> None:
        full = self._full(key)
        payload = json.dumps(
            {"v": value, "c": category, "t": self._clock(), "ttl": ttl_s},
            separators=(",", ":"),
        )
        await self._run(lambda r: r.set(full, payload, ex=ttl_s), self._op_timeout_s)

    async def invalidate(self, pattern: str) -> list[str]:
        """Delete every key matching pattern. Returns the (un-namespaced) keys removed."""
        match = f"{glob_escape(self._namespace)}:{pattern}"

        async def _op(client: Any) -> list[str]:
            removed: list[str] = []
            batch: list[str] = []
            async for full_key in client.scan_iter(match=match, count=_SCAN_COUNT):
                batch.append(full_key)
                if len(batch) >= _DELETE_BATCH:
                    await client.delete(*batch)
                    removed.extend(batch)
                    batch = []
            if batch:
                await client.delete(*batch)
                removed.extend(batch)
            return removed

        removed = await self._run(_op, self._op_timeout_s * _INVALIDATE_TIMEOUT_MULTIPLIER)
        return [self._strip(k) for k in removed]
