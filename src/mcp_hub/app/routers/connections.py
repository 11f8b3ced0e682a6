"""Connection, tool invocation and health endpoints."""

from typing import Optional

from fastapi import APIRouter, Query, Request

from mcp_hub.app.models.connection import ToolInvocation
from mcp_hub.app.routers.results import respond

router = APIRouter(prefix="/connections", tags=["connections"])


@router.get("")
async def list_connections(request: Request):
    """Connection state of every configured server."""
    return respond(await request.app.state.hub.list_connections())


@router.get("/history")
async def connection_history(
    request: Request,
    server_id: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None, ge=1, le=100),
):
    """Recent status transitions, newest first."""
    return respond(await request.app.state.hub.connection_history(server_id, limit))


@router.get("/health")
async def list_health(request: Request):
    return respond(await request.app.state.hub.get_health())


@router.get("/{server_id}")
async def get_connection(request: Request, server_id: str):
    return respond(await request.app.state.hub.get_connection_state(server_id))


@router.get("/{server_id}/health")
async def get_health(request: Request, server_id: str):
    return respond(await request.app.state.hub.get_health(server_id))


@router.post("/{server_id}/connect")
async def connect(request: Request, server_id: str):
    """Connect and fetch the server's tools, resources and prompts."""
    return respond(await request.app.state.hub.connect(server_id))


@router.post("/{server_id}/disconnect")
async def disconnect(request: Request, server_id: str):
    """Disconnect; a local server process keeps running."""
    return respond(await request.app.state.hub.disconnect(server_id))


@router.post("/{server_id}/reconnect")
async def reconnect(request: Request, server_id: str):
    """Reconnect now, skipping any automatic backoff."""
    return respond(await request.app.state.hub.manual_reconnect(server_id))


@router.post("/{server_id}/clear-errors")
async def clear_errors(request: Request, server_id: str):
    return respond(await request.app.state.hub.clear_errors(server_id))


@router.post("/{server_id}/tools/{tool_name}")
async def invoke_tool(request: Request, server_id: str, tool_name: str, body: ToolInvocation):
    """Call a tool on a connected server."""
    return respond(
        await request.app.state.hub.invoke_tool(server_id, tool_name, body.arguments, body.timeout)
    )
