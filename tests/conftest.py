from __future__ import annotations

import asyncio
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Optional

import pytest
from fastapi.testclient import TestClient


# Ensure src/ is on sys.path so `import mcp_hub` works without installation.
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

# Unit tests import the app modules directly; keep their module-level paths out of the real home.
os.environ.setdefault("MCP_HUB_HOME", tempfile.mkdtemp(prefix="mcp-hub-tests-"))

from mcp_hub.app.models.server import StdioServerConfig  # noqa: E402
from mcp_hub.app.services.errors import RemoteError, TransportError  # noqa: E402
from mcp_hub.app.services.transports import ProtocolChannel  # noqa: E402

FAKE_SERVER = Path(__file__).resolve().parent / "fixtures" / "fake_mcp_server.py"


# ── scripted remote server ───────────────────────────────────────────────

class FakeChannel(ProtocolChannel):
    """In-memory channel answering from a FakeRemote script."""

    def __init__(self, remote: "FakeRemote", config, headers: dict[str, str], recorder=None) -> None:
        super().__init__(config.id, config.name, recorder)
        self.remote = remote
        self.headers = headers
        self.closed = False
        self.started = False

    @property
    def is_open(self) -> bool:
        return self.started and not self.closed

    async def start(self) -> None:
        if self.remote.fail_start:
            raise TransportError(self.remote.fail_start)
        self.started = True

    async def close(self) -> None:
        self.closed = True

    async def _send(self, message: dict[str, Any]) -> None:
        self.remote.notifications.append(message["method"])

    async def request(self, method: str, params: Optional[dict[str, Any]] = None, timeout: float = 60.0) -> dict:
        if not self.is_open:
            raise TransportError("Channel is closed")
        self.remote.calls.append(method)
        if self.remote.gate is not None:
            await self.remote.gate.wait()
        if self.remote.delay:
            await asyncio.sleep(self.remote.delay)
        failure = self.remote.failures.get(method)
        if failure is not None:
            raise failure
        return self.remote.answer(method, params or {})


class FakeRemote:
    """Channel factory with a mutable script shared by every channel it builds."""

    def __init__(self) -> None:
        self.tools: list[Any] = [{"name": "search", "inputSchema": {"type": "object"}}]
        self.resources: list[Any] = [{"uri": "mem://notes", "name": "notes"}]
        self.failures: dict[str, Exception] = {}
        self.fail_start: Optional[str] = None
        self.gate: Optional[asyncio.Event] = None
        self.delay = 0.0
        self.calls: list[str] = []
        self.notifications: list[str] = []
        self.channels: list[FakeChannel] = []

    def __call__(self, config, headers, recorder=None) -> FakeChannel:
        channel = FakeChannel(self, config, headers, recorder)
        self.channels.append(channel)
        return channel

    def fail(self, method: str, message: str = "boom") -> None:
        self.failures[method] = TransportError(message)

    def recover(self) -> None:
        self.failures.clear()
        self.fail_start = None

    def answer(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        if method == "initialize":
            return {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}, "resources": {}},
                "serverInfo": {"name": "fake-remote", "version": "2.0"},
            }
        if method == "ping":
            return {}
        if method == "tools/list":
            return {"tools": self.tools}
        if method == "resources/list":
            return {"resources": self.resources}
        if method == "tools/call":
            if params["name"] == "broken":
                raise RemoteError("tool is broken", rpc_code=-32000)
            return {"content": [{"type": "text", "text": f"called {params['name']}"}], "isError": False}
        raise RemoteError(f"Method not found: {method}", rpc_code=-32601)


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def fake_server_config():
    """Factory for a stdio configuration running the fake MCP server."""

    def _make(name: str = "fake", env: dict[str, str] | None = None, **kwargs) -> StdioServerConfig:
        return StdioServerConfig(
            name=name,
            command=sys.executable,
            args=["-u", str(FAKE_SERVER)],
            env=env or {},
            **kwargs,
        )

    return _make


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    # Keep tests hermetic: avoid writing to the real user home.
    hub_home = tmp_path / "mcp-hub-home"
    hub_home.mkdir(parents=True, exist_ok=True)
    (hub_home / "settings.json").write_text('{"oauth_open_browser": false}', encoding="utf-8")

    monkeypatch.setenv("MCP_HUB_HOME", str(hub_home))

    # Force a clean import so module-level constants pick up the env var above.
    for mod in list(sys.modules):
        if mod.startswith("mcp_hub.app"):
            sys.modules.pop(mod, None)

    from mcp_hub.app.main import app

    with TestClient(app) as test_client:
        yield test_client
