"""
Passive operator metrics: cache hit rate, queue depth, ANN latency,
provider error rate.

Components push counters here; nothing in this module calls out. The
operator app reads ``snapshot()`` for GET /metrics.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Any, Callable, Optional

# Rolling window of ANN query latencies kept for percentile reporting
_LATENCY_WINDOW = 1024


def _percentile(sorted_values: list[float], pct: float) -> float:
    if not sorted_values:
        return 0.0
    idx = min(len(sorted_values) - 1, int(round(pct * (len(sorted_values) - 1))))
    return sorted_values[idx]


class Metrics:
    """Thread-safe counters shared by the core components."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {
            "cache_local_hits": 0,
            "cache_shared_hits": 0,
            "cache_misses": 0,
            "cache_shared_errors": 0,
            "provider_calls": 0,
            "provider_call_errors": 0,
            "provider_items": 0,
            "provider_item_errors": 0,
            "recommendations_served": 0,
            "recommendations_degraded": 0,
            "enrichment_failed": 0,
        }
        self._ann_latencies: deque[float] = deque(maxlen=_LATENCY_WINDOW)
        self._queue_depth_fn: Optional[Callable[[], int]] = None

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def observe_ann_latency(self, seconds: float) -> None:
        with self._lock:
            self._ann_latencies.append(seconds)

    def bind_queue_depth(self, fn: Callable[[], int]) -> None:
        self._queue_depth_fn = fn

    # ------------------------------------------------------------------
    # Derived rates
    # ------------------------------------------------------------------

    def cache_hit_rate(self) -> float:
        with self._lock:
            hits = self._counters["cache_local_hits"] + self._counters["cache_shared_hits"]
            total = hits + self._counters["cache_misses"]
        return hits / total if total else 0.0

    def provider_error_rate(self) -> float:
        with self._lock:
            items = self._counters["provider_items"]
            errors = self._counters["provider_item_errors"]
        return errors / items if items else 0.0

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
            latencies = sorted(self._ann_latencies)
        queue_depth = self._queue_depth_fn() if self._queue_depth_fn else 0
        return {
            "cache_hit_rate": round(self.cache_hit_rate(), 4),
            "queue_depth": queue_depth,
            "ann_query_latency_ms": {
                "p50": round(_percentile(latencies, 0.50) * 1000, 3),
                "p95": round(_percentile(latencies, 0.95) * 1000, 3),
                "samples": len(latencies),
            },
            "provider_error_rate": round(self.provider_error_rate(), 4),
            "counters": counters,
        }
