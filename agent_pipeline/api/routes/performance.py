"""
Performance API Routes
======================

Read-only health endpoints for operational dashboards:
- GET /performance/cache       → Response cache statistics
- GET /performance/queue       → Dispatch queue statistics
- GET /performance/lanes       → Per-tier lane configuration and load
- GET /performance/metrics     → Latency / cache / queue summary
- GET /performance/alerts      → Current alert evaluation
- GET /performance/history     → Response-time samples in a time range
- GET /performance/circuits    → Circuit breaker summary
- GET /performance/prometheus  → Prometheus text exposition
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST

from agent_pipeline.infra.runtime.pipeline import ResponsePipeline

router = APIRouter(prefix="/performance", tags=["performance"])

# ── Helpers ──────────────────────────────────────────────────────────────────

def _get_pipeline(request: Request) -> ResponsePipeline:
    """Get the response pipeline from app state."""
    return request.app.state.pipeline

def _get_metrics(request: Request):
    metrics = _get_pipeline(request).metrics
    if metrics is None:
        raise HTTPException(status_code=503, detail="Metrics collection is not enabled")
    return metrics

# ── Endpoints ────────────────────────────────────────────────────────────────

@router.get("/cache")
async def cache_stats(request: Request):
    stats = await _get_pipeline(request).cache.get_stats()
    return stats.to_dict()

@router.get("/queue")
async def queue_stats(request: Request):
    stats = await _get_pipeline(request).queue.get_queue_stats()
    return stats.to_dict()

@router.get("/lanes")
async def lane_stats(request: Request):
    return await _get_pipeline(request).queue.get_lane_stats()

@router.get("/metrics")
async def metrics_summary(request: Request):
    summary = await _get_metrics(request).get_metrics()
    return summary.to_dict()

@router.get("/alerts")
async def alert_status(request: Request):
    alerts = await _get_metrics(request).get_alert_status()
    return {
        "alerts": [alert.to_dict() for alert in alerts],
        "firing": sum(1 for alert in alerts if alert.status == "firing"),
    }

@router.get("/history")
async def metrics_history(
    request: Request,
    minutes: int = Query(default=60, ge=1, le=24 * 60),
):
    end = datetime.now(UTC)
    return await _get_metrics(request).get_historical_metrics(end - timedelta(minutes=minutes), end)

@router.get("/circuits")
async def circuit_stats(request: Request):
    breaker = getattr(request.app.state, "circuit_breaker", None)
    if breaker is None:
        return {"enabled": False}
    return {"enabled": True, **breaker.get_stats()}

@router.get("/prometheus")
async def prometheus_export(request: Request):
    return Response(content=_get_metrics(request).export_prometheus(), media_type=CONTENT_TYPE_LATEST)
