"""Import, merge and export of external client configuration files."""

from typing import Optional

from fastapi import APIRouter, Query, Request

from mcp_hub.app.models.common import ActionResult
from mcp_hub.app.models.config_import import ConfigBatch, ConfigContent, ConfigFormat, MergeRequest
from mcp_hub.app.routers.results import respond
from mcp_hub.app.services import config_parser

router = APIRouter(prefix="/configs", tags=["configs"])


@router.post("/detect")
async def detect_format(body: ConfigContent) -> ActionResult:
    """Identify which client wrote the file."""
    return ActionResult.ok({"format": config_parser.detect_format(body.content)})


@router.post("/parse")
async def parse_config(request: Request, body: ConfigContent):
    return respond(await request.app.state.hub.parse_config(body.content, body.source_file))


@router.post("/parse-batch")
async def parse_config_batch(request: Request, body: ConfigBatch):
    """Parse several files; one bad file does not fail the others."""
    return respond(await request.app.state.hub.parse_config_batch(body.files))


@router.post("/merge")
async def merge_configs(request: Request, body: MergeRequest):
    """Add servers not already configured (same name, transport and command/URL)."""
    return respond(await request.app.state.hub.merge_configs(body.servers))


@router.post("/import")
async def import_config(request: Request, body: ConfigContent):
    """Parse a file and merge its servers in one step."""
    hub = request.app.state.hub
    parsed = await hub.parse_config(body.content, body.source_file)
    if not parsed.success:
        return respond(parsed)
    if not parsed.data.success:
        return respond(ActionResult.fail("invalid_configuration", "configuration", "; ".join(parsed.data.errors)))
    merged = await hub.merge_configs(parsed.data.servers)
    if not merged.success:
        return respond(merged)
    return ActionResult.ok({"parse": parsed.data, "merge": merged.data})


@router.get("/export")
async def export_config(
    request: Request,
    format: ConfigFormat = Query(default=ConfigFormat.CLAUDE_DESKTOP),
    server_id: Optional[list[str]] = Query(default=None, description="Limit the export to these servers"),
    include_disabled: bool = Query(default=True),
):
    """Render configured servers in the chosen client's file format."""
    return respond(await request.app.state.hub.export_config(format, server_id, include_disabled))
