"""
Operator endpoints.

GET /health   liveness plus shared-cache reachability
GET /metrics  cache hit rate, queue depth, ANN latency, provider error rate
"""

from fastapi import APIRouter, Request

router = APIRouter(tags=["operator"])


@router.get("/health")
async def health_check(request: Request) -> dict:
    core = request.app.state.core
    shared = core.cache.shared
    cache_status = "disabled"
    if shared is not None:
        cache_status = "ok" if await shared.ping() else "degraded"
    return {
        "success": True,
        "data": {
            "status": "healthy",
            "version": request.app.state.settings.app_version,
            "sharedCache": cache_status,
            "embeddings": len(core.store),
            "queueDepth": core.pipeline.queue_depth,
        },
        "requestId": request.state.request_id,
    }


@router.get("/metrics")
async def metrics(request: Request) -> dict:
    core = request.app.state.core
    data = core.metrics.snapshot()
    data["failed_tasks"] = len(core.pipeline.failed_tasks())
    data["index_tombstones"] = core.store.tombstones
    return {
        "success": True,
        "data": data,
        "requestId": request.state.request_id,
    }
