"""Tests for the connection state machine over scripted remote channels and real stdio servers."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from mcp_hub.app.models.connection import ConnectionStatus
from mcp_hub.app.models.debug import MetricQuery
from mcp_hub.app.models.oauth import OAuthToken
from mcp_hub.app.models.process import ProcessState
from mcp_hub.app.models.server import HttpServerConfig, OAuthSettings, SseServerConfig
from mcp_hub.app.services import event_bus as events
from mcp_hub.app.services.connection_manager import ConnectionManager
from mcp_hub.app.services.debug_recorder import DebugRecorder
from mcp_hub.app.services.errors import (
    AlreadyConnected,
    AlreadyInProgress,
    AuthenticationRequired,
    NotConnected,
    RemoteError,
    TransportError,
)
from mcp_hub.app.services.event_bus import EventBus
from mcp_hub.app.services.oauth_service import OAuthAuthenticator
from mcp_hub.app.services.persistence import MemoryStore
from mcp_hub.app.services.process_manager import ProcessLifecycleManager


# ── helpers ──────────────────────────────────────────────────────────────

def _hub(remote, store=None, configs=()):
    recorder = DebugRecorder()
    bus = EventBus()
    seen: list = []
    bus.subscribe(seen.append)
    lookup = {c.id: c for c in configs}
    processes = ProcessLifecycleManager(recorder, bus, startup_timeout=10.0, restart_base_delay=0.05)
    oauth = OAuthAuthenticator(recorder, bus, MemoryStore(), lookup.get)
    connections = ConnectionManager(
        recorder, bus, processes, oauth, store, channel_factory=remote, handshake_timeout=5.0,
    )
    return SimpleNamespace(
        recorder=recorder, bus=bus, seen=seen, processes=processes, oauth=oauth, connections=connections,
    )


def _http(**kwargs) -> HttpServerConfig:
    return HttpServerConfig(name="remote", url="https://mcp.example.com/mcp", headers={"X-Team": "a"}, **kwargs)


async def _wait_for(predicate, timeout: float = 10.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


def _statuses(hub, server_id) -> list[str]:
    return [e.data["status"] for e in hub.seen if e.kind == events.CONNECTION_STATUS and e.server_id == server_id]


# ── remote connections ───────────────────────────────────────────────────

class TestConnect:
    def test_connect_fetches_inventories(self, remote):
        remote.tools.append({"description": "no name"})
        config = _http()
        hub = _hub(remote)

        state = asyncio.run(hub.connections.connect(config))
        assert state.status == ConnectionStatus.CONNECTED
        assert state.connected_at is not None
        assert [t.name for t in state.tools] == ["search"]
        assert state.tools[0].input_schema == {"type": "object"}
        assert [r.uri for r in state.resources] == ["mem://notes"]
        assert state.prompts == []
        assert state.server_info["name"] == "fake-remote"
        assert remote.channels[0].headers == {"X-Team": "a"}
        assert remote.calls.count("tools/list") == 1
        assert "prompts/list" not in remote.calls
        assert _statuses(hub, config.id) == ["connecting", "connected"]
        assert [h.status for h in hub.connections.history(config.id)] == ["connected", "connecting"]
        assert hub.recorder.query_metrics(MetricQuery(operation="connect"))[0].success is True

    def test_second_connect_while_in_progress(self, remote):
        config = _http()
        hub = _hub(remote)

        async def _run():
            remote.gate = asyncio.Event()
            first = asyncio.create_task(hub.connections.connect(config))
            await asyncio.sleep(0)
            assert hub.connections.status(config.id) == ConnectionStatus.CONNECTING
            with pytest.raises(AlreadyInProgress):
                await hub.connections.connect(config)
            remote.gate.set()
            state = await first
            with pytest.raises(AlreadyConnected):
                await hub.connections.connect(config)
            return state

        state = asyncio.run(_run())
        assert state.status == ConnectionStatus.CONNECTED
        assert len(remote.channels) == 1

    def test_failure_then_retry(self, remote):
        config = _http()
        hub = _hub(remote)
        remote.fail("initialize", "handshake refused")

        async def _run():
            with pytest.raises(TransportError, match="handshake refused"):
                await hub.connections.connect(config)
            failed = hub.connections.get_state(config.id)
            remote.recover()
            connected = await hub.connections.connect(config)
            cleared = hub.connections.clear_errors(config.id)
            return failed, connected, cleared

        failed, connected, cleared = asyncio.run(_run())
        assert failed.status == ConnectionStatus.ERROR
        assert failed.error_count == 1
        assert failed.last_error == "handshake refused"
        assert remote.channels[0].closed is True
        assert connected.status == ConnectionStatus.CONNECTED
        assert connected.error_count == 1
        assert connected.last_error is None
        assert cleared.error_count == 0
        assert hub.recorder.query_metrics(MetricQuery(operation="connect", success=False))

    def test_unexpected_exception_is_wrapped(self, remote):
        config = _http()
        hub = _hub(remote)
        remote.failures["tools/list"] = KeyError("tools")

        with pytest.raises(TransportError, match="Connection failed"):
            asyncio.run(hub.connections.connect(config))
        assert hub.connections.status(config.id) == ConnectionStatus.ERROR

    def test_start_failure_for_sse(self, remote):
        remote.fail_start = "stream refused"
        config = SseServerConfig(name="events", url="https://mcp.example.com/sse")
        hub = _hub(remote)
        with pytest.raises(TransportError, match="stream refused"):
            asyncio.run(hub.connections.connect(config))
        assert remote.channels[0].closed is True


class TestDisconnect:
    def test_disconnect_closes_owned_channel(self, remote):
        config = _http()
        hub = _hub(remote)

        async def _run():
            await hub.connections.connect(config)
            first = await hub.connections.disconnect(config.id)
            second = await hub.connections.disconnect(config.id)
            return first, second

        first, second = asyncio.run(_run())
        assert first.status == ConnectionStatus.DISCONNECTED
        assert first.tools == [] and first.connected_at is None
        assert second.status == ConnectionStatus.DISCONNECTED
        assert remote.channels[0].closed is True
        latest = hub.connections.history(config.id, limit=1)[0]
        assert latest.status == ConnectionStatus.DISCONNECTED
        assert latest.duration_ms is not None
        assert _statuses(hub, config.id).count("disconnected") == 1

    def test_disconnect_unknown_server(self, remote):
        hub = _hub(remote)
        state = asyncio.run(hub.connections.disconnect("nobody"))
        assert state.status == ConnectionStatus.DISCONNECTED

    def test_disconnect_cancels_attempt_in_flight(self, remote):
        config = _http()
        hub = _hub(remote)

        async def _run():
            remote.gate = asyncio.Event()
            attempt = asyncio.create_task(hub.connections.connect(config))
            await asyncio.sleep(0)
            await hub.connections.disconnect(config.id)
            remote.gate.set()
            with pytest.raises(NotConnected):
                await attempt

        asyncio.run(_run())
        assert hub.connections.status(config.id) == ConnectionStatus.DISCONNECTED
        assert remote.channels[0].closed is True


class TestInvoke:
    def test_invoke_requires_connection(self, remote):
        hub = _hub(remote)
        with pytest.raises(NotConnected):
            asyncio.run(hub.connections.invoke("nobody", "search"))

    def test_invoke_records_metrics(self, remote):
        config = _http()
        hub = _hub(remote)

        async def _run():
            await hub.connections.connect(config)
            ok = await hub.connections.invoke(config.id, "search", {"q": "x"})
            with pytest.raises(RemoteError):
                await hub.connections.invoke(config.id, "broken")
            return ok

        ok = asyncio.run(_run())
        assert ok.content == [{"type": "text", "text": "called search"}]
        assert ok.is_error is False
        assert ok.duration_ms >= 0
        search, = hub.recorder.query_metrics(MetricQuery(operation="tool:search"))
        broken, = hub.recorder.query_metrics(MetricQuery(operation="tool:broken"))
        assert search.success is True
        assert broken.success is False
        # A failed tool call does not change the connection
        assert hub.connections.status(config.id) == ConnectionStatus.CONNECTED

    def test_ping_updates_state(self, remote):
        config = _http()
        hub = _hub(remote)

        async def _run():
            await hub.connections.connect(config)
            return await hub.connections.ping(config.id, timeout=1)

        latency = asyncio.run(_run())
        assert hub.connections.get_state(config.id).last_ping_ms == latency


class TestOAuthHeaders:
    def _config(self) -> HttpServerConfig:
        return _http(oauth=OAuthSettings(
            authorization_endpoint="https://auth.example.com/authorize",
            token_endpoint="https://auth.example.com/token",
            client_id="hub",
        ))

    def test_missing_token_fails_with_authentication_error(self, remote):
        config = self._config()
        hub = _hub(remote, configs=[config])
        with pytest.raises(AuthenticationRequired):
            asyncio.run(hub.connections.connect(config))
        state = hub.connections.get_state(config.id)
        assert state.status == ConnectionStatus.ERROR
        assert remote.channels == []

    def test_token_is_sent_as_bearer(self, remote):
        config = self._config()
        hub = _hub(remote, configs=[config])
        hub.oauth._store_token(OAuthToken(server_id=config.id, access_token="tok"))
        asyncio.run(hub.connections.connect(config))
        assert remote.channels[0].headers["Authorization"] == "Bearer tok"
        assert remote.channels[0].headers["X-Team"] == "a"


class TestHealthHooks:
    def test_reconnect_attempt_keeps_error_count_on_success(self, remote):
        config = _http()
        hub = _hub(remote)

        async def _run():
            await hub.connections.connect(config)
            hub.connections.begin_reconnect(config.id)
            assert hub.connections.get_state(config.id).tools == []
            remote.fail("initialize")
            with pytest.raises(TransportError):
                await hub.connections.reconnect_attempt(config.id)
            assert hub.connections.status(config.id) == ConnectionStatus.RECONNECTING
            remote.recover()
            return await hub.connections.reconnect_attempt(config.id)

        state = asyncio.run(_run())
        assert state.status == ConnectionStatus.CONNECTED
        assert state.error_count == 1
        assert _statuses(hub, config.id) == ["connecting", "connected", "reconnecting", "reconnecting", "connected"]

    def test_mark_failed(self, remote):
        config = _http()
        hub = _hub(remote)

        async def _run():
            await hub.connections.connect(config)
            hub.connections.begin_reconnect(config.id)
            hub.connections.mark_failed(config.id, "gave up")

        asyncio.run(_run())
        state = hub.connections.get_state(config.id)
        assert state.status == ConnectionStatus.ERROR
        assert state.last_error == "gave up"
        assert hub.seen[-1].data["source"] == "health"

    def test_begin_reconnect_requires_connected(self, remote):
        hub = _hub(remote)
        with pytest.raises(NotConnected):
            hub.connections.begin_reconnect("nobody")


class TestHistory:
    def test_history_persists_and_is_pruned_on_remove(self, remote):
        store = MemoryStore()
        config = _http()
        hub = _hub(remote, store)

        async def _run():
            await hub.connections.connect(config)
            await hub.connections.disconnect(config.id)

        asyncio.run(_run())

        reloaded = _hub(remote, store)
        reloaded.connections.load()
        assert len(reloaded.connections.history(config.id)) == 3
        assert len(reloaded.connections.history(limit=2)) == 2

        asyncio.run(reloaded.connections.remove(config.id))
        again = _hub(remote, store)
        again.connections.load()
        assert again.connections.history(config.id) == []


# ── stdio connections ────────────────────────────────────────────────────

class TestStdio:
    def test_connect_pages_tools_and_keeps_process_on_disconnect(self, remote, fake_server_config):
        config = fake_server_config()
        hub = _hub(remote)

        async def _run():
            state = await hub.connections.connect(config)
            result = await hub.connections.invoke(config.id, "echo", {"text": "hi"})
            await hub.connections.disconnect(config.id)
            still_running = hub.processes.is_running(config.id)
            await hub.processes.shutdown()
            return state, result, still_running

        state, result, still_running = asyncio.run(_run())
        assert [t.name for t in state.tools] == ["echo", "crash", "fail", "sleep"]
        assert [r.name for r in state.resources] == ["readme"]
        assert state.prompts == []
        assert result.structured_content == {"text": "hi"}
        assert still_running is True

    def test_tool_error_result(self, remote, fake_server_config):
        config = fake_server_config()
        hub = _hub(remote)

        async def _run():
            await hub.connections.connect(config)
            result = await hub.connections.invoke(config.id, "fail")
            await hub.processes.shutdown()
            return result

        assert asyncio.run(_run()).is_error is True

    def test_process_crash_moves_connection_to_error(self, remote, fake_server_config):
        config = fake_server_config()
        hub = _hub(remote)

        async def _run():
            await hub.connections.connect(config)
            with pytest.raises(TransportError):
                await hub.connections.invoke(config.id, "crash", {"code": 9})
            await _wait_for(lambda: hub.connections.status(config.id) == ConnectionStatus.ERROR)
            return hub.connections.get_state(config.id)

        state = asyncio.run(_run())
        assert state.error_count == 1
        assert "code 9" in state.last_error
        assert hub.processes.get_state(config.id).state == ProcessState.ERROR

    def test_restart_resumes_connection(self, remote, fake_server_config):
        config = fake_server_config()
        hub = _hub(remote)

        async def _run():
            await hub.connections.connect(config)
            await hub.processes.restart(config.id)
            await _wait_for(lambda: hub.connections.status(config.id) == ConnectionStatus.CONNECTED)
            result = await hub.connections.invoke(config.id, "echo", {"text": "back"})
            await hub.processes.shutdown()
            return result

        result = asyncio.run(_run())
        assert result.structured_content == {"text": "back"}
        assert "disconnected" in _statuses(hub, config.id)

    def test_stop_process_disconnects(self, remote, fake_server_config):
        config = fake_server_config()
        hub = _hub(remote)

        async def _run():
            await hub.connections.connect(config)
            await hub.processes.stop(config.id)
            await asyncio.sleep(0.1)

        asyncio.run(_run())
        assert hub.connections.status(config.id) == ConnectionStatus.DISCONNECTED
