"""Logs API endpoints."""

from typing import Optional

from fastapi import APIRouter, Query

from mcp_hub.app.services.logging_service import read_hub_logs, read_server_logs

router = APIRouter(prefix="/logs", tags=["logs"])


@router.get("/hub")
async def get_hub_logs(
    tail: int = Query(default=100, ge=1, le=10000, description="Number of lines to return")
) -> dict:
    """Get recent hub logs."""
    lines = read_hub_logs(tail=tail)
    return {
        "lines": lines,
        "count": len(lines),
    }


@router.get("/servers/{server_id}")
async def get_server_logs(
    server_id: str,
    tail: Optional[int] = Query(default=None, ge=1, le=10000, description="Number of lines to return"),
    level: Optional[str] = Query(default=None, description="Filter by log level (INFO, WARNING, ERROR)")
) -> dict:
    """Get logs written while handling a specific server, including its stderr."""
    lines = read_server_logs(server_id, tail=tail, level=level)
    return {
        "server_id": server_id,
        "lines": lines,
        "count": len(lines),
    }
