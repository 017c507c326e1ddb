"""
ANN index compaction.

Deletes leave tombstoned nodes in the HNSW graph. Once they make up
min_tombstone_ratio of the graph, the graph is rebuilt off to the side from
live vectors and swapped in. Queries keep running against the old snapshot
for the duration of the rebuild.

The index lives in the serving process, so this job runs there on a timer
(compaction_loop) rather than as a separate cron process.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from services.reco.config import settings
from services.reco.embedding import EmbeddingStore

logger = logging.getLogger(__name__)


def tombstone_ratio(store: EmbeddingStore) -> float:
    tombstones = store.tombstones
    total = tombstones + len(store)
    return tombstones / total if total else 0.0


async def run_index_compaction(
    store: EmbeddingStore,
    *,
    min_tombstone_ratio: float = settings.index_compaction_min_tombstone_ratio,
    force: bool = False,
) -> dict[str, Any]:
    ratio = tombstone_ratio(store)
    if store.tombstones == 0 or (not force and ratio < min_tombstone_ratio):
        return {"status": "skipped", "tombstones": store.tombstones, "ratio": round(ratio, 4)}

    start_ts = time.monotonic()
    removed = await asyncio.to_thread(store.compact)
    duration_ms = int((time.monotonic() - start_ts) * 1000)
    logger.info(
        "index_compaction: complete removed=%d live=%d ratio=%.3f duration_ms=%d",
        removed, len(store), ratio, duration_ms,
    )
    return {
        "status": "success",
        "removed": removed,
        "live": len(store),
        "ratio": round(ratio, 4),
        "duration_ms": duration_ms,
    }


async def compaction_loop(
    store: EmbeddingStore,
    stop: asyncio.Event,
    interval_s: float = settings.index_compaction_interval_s,
    min_tombstone_ratio: float = settings.index_compaction_min_tombstone_ratio,
) -> None:
    """Check the tombstone ratio every interval_s until stop is set."""
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), interval_s)
        except asyncio.TimeoutError:
            pass
        if stop.is_set():
            return
        try:
            await run_index_compaction(store, min_tombstone_ratio=min_tombstone_ratio)
        except Exception:
            logger.exception("index_compaction: iteration failed")
