"""Server-Sent Events stream of hub notifications."""

import asyncio
from typing import AsyncGenerator, Optional

from fastapi import APIRouter, Query, Request
from sse_starlette.sse import EventSourceResponse

from mcp_hub.app.services.logging_service import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/events", tags=["events"])


@router.get("")
async def stream_events(
    request: Request,
    server_id: Optional[str] = Query(default=None, description="Only events for this server"),
) -> EventSourceResponse:
    """Stream connection, process, health and OAuth events as they happen.

    Each SSE event is named after the event kind (e.g. 'connection.status')
    and carries the HubEvent as JSON.
    """
    bus = request.app.state.hub.bus

    async def generate_events() -> AsyncGenerator[dict, None]:
        try:
            async for event in bus.stream():
                if server_id and event.server_id != server_id:
                    continue
                yield {
                    "event": event.kind,
                    "data": event.model_dump_json(),
                }
        except asyncio.CancelledError:
            logger.info("[SSE] Event stream client disconnected")
            raise

    return EventSourceResponse(generate_events())
