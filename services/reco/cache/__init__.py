"""
Two-tier cache with category TTL policy and pattern invalidation.

local   in-process LRU (LocalTier)
shared  Redis (SharedTier), pooled connections with health checks

Usage:
    from services.reco.cache import MISS, CacheCoordinator, SharedTier, redis_pool
"""

from __future__ import annotations

from services.reco.cache.coordinator import CacheCoordinator
from services.reco.cache.local import MISS, LocalTier
from services.reco.cache.shared import SharedTier, redis_pool

__all__ = ["MISS", "CacheCoordinator", "LocalTier", "SharedTier", "redis_pool"]
