"""OAuth authorization endpoints, including the browser redirect target."""

from html import escape
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import HTMLResponse

from mcp_hub.app.models.oauth import CallbackParams
from mcp_hub.app.routers.results import respond, status_for
from mcp_hub.app.services.logging_service import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/oauth", tags=["oauth"])

CALLBACK_PAGE = """<!doctype html>
<html><head><meta charset="utf-8"><title>{title}</title></head>
<body style="font-family: sans-serif; margin: 3em;">
<h2>{title}</h2>
<p>{message}</p>
</body></html>"""


@router.post("/{server_id}/authorize")
async def start_flow(request: Request, server_id: str):
    """Begin an authorization code flow and return the URL to visit."""
    return respond(await request.app.state.hub.start_oauth_flow(server_id))


@router.get("/callback", response_class=HTMLResponse)
async def oauth_callback(
    request: Request,
    state: Optional[str] = Query(default=None),
    code: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    error_description: Optional[str] = Query(default=None),
) -> HTMLResponse:
    """Redirect target of the authorization server."""
    params = CallbackParams(state=state, code=code, error=error, error_description=error_description)
    result = await request.app.state.hub.complete_oauth_flow(params)
    if result.success:
        page = CALLBACK_PAGE.format(
            title="Authorization complete",
            message=f"Connected {escape(result.data.server_name or result.data.server_id)}. You can close this window.",
        )
        return HTMLResponse(page)
    logger.warning(f"OAuth callback failed: {result.error.message}")
    page = CALLBACK_PAGE.format(title="Authorization failed", message=escape(result.error.message))
    return HTMLResponse(page, status_code=status_for(result))


@router.post("/complete")
async def complete_flow(request: Request, body: CallbackParams):
    """Complete a flow with callback parameters relayed by a client."""
    return respond(await request.app.state.hub.complete_oauth_flow(body))


@router.post("/{server_id}/refresh")
async def refresh_token(request: Request, server_id: str):
    return respond(await request.app.state.hub.refresh_token(server_id))


@router.get("/{server_id}/token")
async def token_status(request: Request, server_id: str):
    """Token metadata; the token itself is never returned."""
    return respond(await request.app.state.hub.get_token_status(server_id))


@router.delete("/{server_id}/token")
async def revoke_token(request: Request, server_id: str):
    return respond(await request.app.state.hub.revoke_token(server_id))
