"""Debug log and performance metric endpoints."""

from typing import Any, Optional

from fastapi import APIRouter, Body, Query, Request

from mcp_hub.app.models.debug import LogCategory, LogLevel, LogQuery, MetricQuery
from mcp_hub.app.routers.results import respond

router = APIRouter(prefix="/debug", tags=["debug"])


@router.get("/logs")
async def query_logs(
    request: Request,
    level: Optional[LogLevel] = Query(default=None),
    category: Optional[LogCategory] = Query(default=None),
    server_id: Optional[str] = Query(default=None),
    search: Optional[str] = Query(default=None, description="Case-insensitive text search"),
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
):
    """Debug entries, newest first."""
    filters = LogQuery(level=level, category=category, server_id=server_id, search=search, limit=limit)
    return respond(await request.app.state.hub.query_logs(filters))


@router.post("/logs")
async def record_log(request: Request, body: dict[str, Any] = Body(...)):
    return respond(await request.app.state.hub.record_log(body))


@router.get("/metrics")
async def query_metrics(
    request: Request,
    server_id: Optional[str] = Query(default=None),
    operation: Optional[str] = Query(default=None),
    success: Optional[bool] = Query(default=None),
    limit: Optional[int] = Query(default=None, ge=1, le=500),
):
    filters = MetricQuery(server_id=server_id, operation=operation, success=success, limit=limit)
    return respond(await request.app.state.hub.query_metrics(filters))


@router.post("/metrics")
async def record_metric(request: Request, body: dict[str, Any] = Body(...)):
    return respond(await request.app.state.hub.record_metric(body))


@router.get("/metrics/aggregate")
async def aggregate_metrics(request: Request):
    """Per-server operation count, average duration and success rate."""
    return respond(await request.app.state.hub.aggregate_metrics())


@router.delete("")
async def clear_debug(request: Request, metrics: bool = Query(default=True)):
    return respond(await request.app.state.hub.clear_debug(metrics=metrics))


@router.get("/export")
async def export_debug(request: Request):
    """Full dump of the debug log and metrics."""
    return respond(await request.app.state.hub.export_debug())
