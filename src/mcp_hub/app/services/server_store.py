"""Owner of the server configuration collection."""

from datetime import timedelta
from typing import Any, Optional

from pydantic import ValidationError

from mcp_hub.app.models.common import utc_now
from mcp_hub.app.models.server import ServerConfiguration, server_config_adapter, server_list_adapter
from mcp_hub.app.services import event_bus as events
from mcp_hub.app.services.errors import InvalidConfiguration, ServerNotFound
from mcp_hub.app.services.event_bus import EventBus
from mcp_hub.app.services.logging_service import get_logger
from mcp_hub.app.services.persistence import SERVERS_KEY, KeyValueStore, load_models, save_models

logger = get_logger(__name__)

# Fields the caller may not change through update()
IMMUTABLE_FIELDS = {"id", "created_at", "updated_at"}


def _validation_message(error: ValidationError) -> str:
    return "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in error.errors())


class ServerConfigStore:
    """Configurations in insertion order, persisted on every mutation."""

    def __init__(self, store: KeyValueStore, bus: EventBus) -> None:
        self._store = store
        self._bus = bus
        self._servers: dict[str, ServerConfiguration] = {}

    def load(self) -> None:
        self._servers = {s.id: s for s in load_models(self._store, SERVERS_KEY, server_list_adapter)}
        logger.info(f"Loaded {len(self._servers)} server configuration(s)")

    def _save(self) -> None:
        save_models(self._store, SERVERS_KEY, server_list_adapter, list(self._servers.values()))

    def list_servers(self) -> list[ServerConfiguration]:
        return [s.model_copy(deep=True) for s in self._servers.values()]

    def get(self, server_id: str) -> Optional[ServerConfiguration]:
        server = self._servers.get(server_id)
        return server.model_copy(deep=True) if server else None

    def require(self, server_id: str) -> ServerConfiguration:
        server = self.get(server_id)
        if server is None:
            raise ServerNotFound(f"Server '{server_id}' not found")
        return server

    def validate(self, payload: dict[str, Any] | ServerConfiguration) -> ServerConfiguration:
        if not isinstance(payload, dict):
            return payload
        try:
            return server_config_adapter.validate_python(payload)
        except ValidationError as e:
            raise InvalidConfiguration(f"Invalid server configuration: {_validation_message(e)}") from e

    def add(self, payload: dict[str, Any] | ServerConfiguration) -> ServerConfiguration:
        server = self.validate(payload)
        if server.id in self._servers:
            raise InvalidConfiguration(f"Server id '{server.id}' already exists")
        self._servers[server.id] = server
        self._save()
        self._bus.publish(events.SERVER_ADDED, server.id, name=server.name, transport=server.transport)
        logger.info(f"Added server '{server.name}' ({server.transport}, id={server.id})")
        return server.model_copy(deep=True)

    def extend(self, servers: list[ServerConfiguration]) -> list[ServerConfiguration]:
        """Add several servers at once, skipping ids that already exist."""
        added = []
        for server in servers:
            if server.id in self._servers:
                continue
            self._servers[server.id] = server
            added.append(server)
        if added:
            self._save()
            for server in added:
                self._bus.publish(events.SERVER_ADDED, server.id, name=server.name, transport=server.transport)
        return [s.model_copy(deep=True) for s in added]

    def update(self, server_id: str, changes: dict[str, Any]) -> ServerConfiguration:
        current = self._servers.get(server_id)
        if current is None:
            raise ServerNotFound(f"Server '{server_id}' not found")

        merged = current.model_dump()
        merged.update({k: v for k, v in changes.items() if k not in IMMUTABLE_FIELDS})
        # Fields of a previous transport variant are ignored by validation
        updated = self.validate(merged)

        now = utc_now()
        if now <= current.updated_at:
            now = current.updated_at + timedelta(microseconds=1)
        updated = updated.model_copy(update={"id": current.id, "created_at": current.created_at, "updated_at": now})

        self._servers[server_id] = updated
        self._save()
        self._bus.publish(events.SERVER_UPDATED, server_id, name=updated.name, transport=updated.transport)
        return updated.model_copy(deep=True)

    def remove(self, server_id: str) -> ServerConfiguration:
        server = self._servers.pop(server_id, None)
        if server is None:
            raise ServerNotFound(f"Server '{server_id}' not found")
        self._save()
        self._bus.publish(events.SERVER_REMOVED, server_id, name=server.name)
        logger.info(f"Removed server '{server.name}' (id={server_id})")
        return server
