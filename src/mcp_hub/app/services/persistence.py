"""Key-value persistence for hub state.

Every collection is stored as serialized JSON under its own namespaced
key. Reads tolerate missing or corrupt values by returning the caller's
empty default, so a damaged file never blocks startup.
"""

import json
import os
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, TypeVar

from pydantic import TypeAdapter, ValidationError

from mcp_hub.app.config import STORE_NAMESPACE
from mcp_hub.app.services.logging_service import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Namespaced keys
SERVERS_KEY = "servers"
CONNECTION_HISTORY_KEY = "connection-history"
PROCESSES_KEY = "processes"
OAUTH_TOKENS_KEY = "oauth-tokens"
OAUTH_PENDING_KEY = "oauth-pending"
DEBUG_LOGS_KEY = "debug-logs"
DEBUG_METRICS_KEY = "debug-metrics"


def namespaced(key: str) -> str:
    return f"{STORE_NAMESPACE}:{key}"


class KeyValueStore(Protocol):
    """Opaque string key-value backend."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    """In-process store, used by tests and ephemeral hubs."""

    def __init__(self, initial: Optional[dict[str, str]] = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class JsonFileStore:
    """One JSON file per key under a directory."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "." for c in key)
        return self.directory / f"{safe}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not read {path}: {e}")
            return None

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(value, encoding="utf-8")
        os.replace(tmp, path)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


def load_json(store: KeyValueStore, key: str, default: Callable[[], T]) -> T | Any:
    """Read a JSON value, falling back to ``default()`` if missing or corrupt."""
    raw = store.get(namespaced(key))
    if raw is None:
        return default()
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Discarding corrupt value for '{key}': {e}")
        return default()


def save_json(store: KeyValueStore, key: str, value: Any) -> None:
    store.set(namespaced(key), json.dumps(value, default=str))


def load_models(store: KeyValueStore, key: str, adapter: TypeAdapter[list[T]]) -> list[T]:
    """Read a list of models, skipping entries that no longer validate."""
    raw = load_json(store, key, list)
    if not isinstance(raw, list):
        logger.warning(f"Expected a list under '{key}', got {type(raw).__name__}")
        return []
    items: list[T] = []
    for index, item in enumerate(raw):
        try:
            items.extend(adapter.validate_python([item]))
        except ValidationError as e:
            logger.warning(f"Skipping invalid entry {index} under '{key}': {e.error_count()} error(s)")
    return items


def save_models(store: KeyValueStore, key: str, adapter: TypeAdapter[list[T]], items: list[T]) -> None:
    store.set(namespaced(key), adapter.dump_json(items).decode("utf-8"))
