"""Observer interface for hub state changes.

Components publish events here instead of calling the UI. Synchronous
subscribers run inline in publish order; the SSE router consumes events
through ``stream()``.
"""

import asyncio
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Optional

from pydantic import BaseModel, Field

from mcp_hub.app.models.common import utc_now
from mcp_hub.app.services.logging_service import get_logger

logger = get_logger(__name__)

# Event kinds
SERVER_ADDED = "server.added"
SERVER_UPDATED = "server.updated"
SERVER_REMOVED = "server.removed"
CONNECTION_STATUS = "connection.status"
PROCESS_STATE = "process.state"
PROCESS_EXITED = "process.exited"
PROCESS_RESTART_LIMIT = "process.restart_limit"
HEALTH_UPDATE = "health.update"
OAUTH_TOKEN = "oauth.token"

STREAM_QUEUE_SIZE = 100


class HubEvent(BaseModel):
    kind: str
    server_id: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


Subscriber = Callable[[HubEvent], None]


class EventBus:
    def __init__(self, stream_queue_size: int = STREAM_QUEUE_SIZE) -> None:
        self._subscribers: list[Subscriber] = []
        self._queues: set[asyncio.Queue] = set()
        self._stream_queue_size = stream_queue_size

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, kind: str, server_id: Optional[str] = None, **data: Any) -> HubEvent:
        event = HubEvent(kind=kind, server_id=server_id, data=data)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event subscriber failed on {kind}: {e}", exc_info=True)
        for queue in list(self._queues):
            if queue.full():
                # Slow consumer: drop its oldest event
                queue.get_nowait()
            queue.put_nowait(event)
        return event

    async def stream(self) -> AsyncIterator[HubEvent]:
        """Yield events published after the call, until the consumer stops."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._stream_queue_size)
        self._queues.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers) + len(self._queues)
