"""Local server process endpoints."""

from fastapi import APIRouter, Query, Request

from mcp_hub.app.routers.results import respond

router = APIRouter(prefix="/processes", tags=["processes"])


@router.get("")
async def list_processes(request: Request):
    return respond(await request.app.state.hub.list_processes())


@router.get("/{server_id}")
async def get_process(request: Request, server_id: str):
    """State, restart count, resource samples and output tail of a process."""
    return respond(await request.app.state.hub.get_process_state(server_id))


@router.post("/{server_id}/start")
async def start_process(request: Request, server_id: str):
    return respond(await request.app.state.hub.start_process(server_id))


@router.post("/{server_id}/stop")
async def stop_process(
    request: Request,
    server_id: str,
    force: bool = Query(default=False, description="Kill immediately instead of SIGTERM"),
):
    return respond(await request.app.state.hub.stop_process(server_id, force=force))


@router.post("/{server_id}/restart")
async def restart_process(request: Request, server_id: str):
    return respond(await request.app.state.hub.restart_process(server_id))
