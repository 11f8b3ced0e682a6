"""Server configuration CRUD endpoints."""

from typing import Any

from fastapi import APIRouter, Body, Request

from mcp_hub.app.routers.results import respond

router = APIRouter(prefix="/servers", tags=["servers"])


@router.get("")
async def list_servers(request: Request):
    """List all configured servers in insertion order."""
    return respond(await request.app.state.hub.list_servers())


@router.post("")
async def add_server(request: Request, body: dict[str, Any] = Body(...)):
    """Add a stdio, sse or http server configuration."""
    return respond(await request.app.state.hub.add_server(body))


@router.get("/{server_id}")
async def get_server(request: Request, server_id: str):
    return respond(await request.app.state.hub.get_server(server_id))


@router.patch("/{server_id}")
async def update_server(request: Request, server_id: str, body: dict[str, Any] = Body(...)):
    """Apply a partial update; id and created_at never change."""
    return respond(await request.app.state.hub.update_server(server_id, body))


@router.delete("/{server_id}")
async def remove_server(request: Request, server_id: str):
    """Remove a server, cancelling its monitor, OAuth flows and process."""
    return respond(await request.app.state.hub.remove_server(server_id))
