"""Tests for health probing and automatic reconnection."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from mcp_hub.app.models.connection import ConnectionStatus, HealthStatus
from mcp_hub.app.models.debug import MetricQuery
from mcp_hub.app.models.server import HttpServerConfig
from mcp_hub.app.services import event_bus as events
from mcp_hub.app.services.connection_manager import ConnectionManager
from mcp_hub.app.services.debug_recorder import DebugRecorder
from mcp_hub.app.services.errors import AlreadyInProgress, TransportError
from mcp_hub.app.services.event_bus import EventBus
from mcp_hub.app.services.health_monitor import HealthMonitor
from mcp_hub.app.services.oauth_service import OAuthAuthenticator
from mcp_hub.app.services.persistence import MemoryStore
from mcp_hub.app.services.process_manager import ProcessLifecycleManager


# ── helpers ──────────────────────────────────────────────────────────────

def _hub(remote, **monitor_options):
    recorder = DebugRecorder()
    bus = EventBus()
    seen: list = []
    bus.subscribe(seen.append)
    processes = ProcessLifecycleManager(recorder, bus)
    oauth = OAuthAuthenticator(recorder, bus, MemoryStore(), lambda server_id: None)
    connections = ConnectionManager(recorder, bus, processes, oauth, channel_factory=remote, handshake_timeout=5.0)
    # Never started: probes are driven by calling check_now directly
    scheduler = AsyncIOScheduler()
    options = {
        "probe_interval": 30,
        "probe_timeout": 1.0,
        "failure_threshold": 3,
        "max_reconnect_attempts": 3,
        "reconnect_base_delay": 0.01,
        "reconnect_max_delay": 0.05,
    }
    options.update(monitor_options)
    monitor = HealthMonitor(connections, bus, recorder, scheduler, **options)
    return SimpleNamespace(
        recorder=recorder, bus=bus, seen=seen, processes=processes, connections=connections, monitor=monitor,
        scheduler=scheduler,
    )


def _config() -> HttpServerConfig:
    return HttpServerConfig(name="remote", url="https://mcp.example.com/mcp")


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


async def _fail_probes(hub, server_id: str, count: int) -> None:
    for _ in range(count):
        await hub.monitor.check_now(server_id)


# ── scheduling ───────────────────────────────────────────────────────────

class TestScheduling:
    def test_monitoring_follows_connection_status(self, remote):
        config = _config()
        hub = _hub(remote)

        async def _run():
            await hub.connections.connect(config)
            job = hub.scheduler.get_job(f"health-{config.id}")
            monitoring = hub.monitor.is_monitoring(config.id)
            await hub.connections.disconnect(config.id)
            return job, monitoring

        job, monitoring = asyncio.run(_run())
        assert monitoring is True
        assert job.trigger.interval.total_seconds() == 30
        assert hub.monitor.is_monitoring(config.id) is False
        assert hub.monitor.get_report(config.id) is None

    def test_server_removed_event_stops_monitoring(self, remote):
        config = _config()
        hub = _hub(remote)
        asyncio.run(hub.connections.connect(config))
        hub.bus.publish(events.SERVER_REMOVED, config.id)
        assert hub.monitor.is_monitoring(config.id) is False

    def test_unmonitored_server(self, remote):
        hub = _hub(remote)
        assert asyncio.run(hub.monitor.check_now("nobody")) is None


# ── probes ───────────────────────────────────────────────────────────────

class TestProbes:
    def test_successful_probe(self, remote):
        config = _config()
        hub = _hub(remote)
        reports = []
        remove_listener = hub.monitor.add_listener(reports.append)

        async def _run():
            await hub.connections.connect(config)
            return await hub.monitor.check_now(config.id)

        report = asyncio.run(_run())
        assert report.status == HealthStatus.HEALTHY
        assert report.response_time_ms is not None
        assert len(report.latency_samples) == 1
        assert reports[-1].status == HealthStatus.HEALTHY
        assert hub.recorder.query_metrics(MetricQuery(operation="ping"))[0].success is True
        assert any(e.kind == events.HEALTH_UPDATE for e in hub.seen)

        remove_listener()
        asyncio.run(hub.monitor.check_now(config.id))
        assert len(reports) == 1

    def test_slow_probe_is_degraded(self, remote):
        config = _config()
        hub = _hub(remote, probe_timeout=0.1)

        async def _run():
            await hub.connections.connect(config)
            remote.delay = 0.09
            return await hub.monitor.check_now(config.id)

        assert asyncio.run(_run()).status == HealthStatus.DEGRADED

    def test_failing_listener_does_not_break_probing(self, remote):
        config = _config()
        hub = _hub(remote)

        def broken(report):
            raise RuntimeError("listener bug")

        hub.monitor.add_listener(broken)

        async def _run():
            await hub.connections.connect(config)
            return await hub.monitor.check_now(config.id)

        assert asyncio.run(_run()).status == HealthStatus.HEALTHY

    def test_failures_below_threshold_degrade(self, remote):
        config = _config()
        hub = _hub(remote)

        async def _run():
            await hub.connections.connect(config)
            remote.fail("ping", "no pong")
            await _fail_probes(hub, config.id, 2)
            return hub.monitor.get_report(config.id)

        report = asyncio.run(_run())
        assert report.status == HealthStatus.DEGRADED
        assert report.consecutive_failures == 2
        assert report.error == "no pong"
        assert hub.connections.status(config.id) == ConnectionStatus.CONNECTED
        assert hub.connections.get_state(config.id).error_count == 0


# ── reconnection ─────────────────────────────────────────────────────────

class TestReconnect:
    def test_threshold_triggers_reconnect(self, remote):
        config = _config()
        hub = _hub(remote)

        async def _run():
            await hub.connections.connect(config)
            remote.fail("ping")
            await _fail_probes(hub, config.id, 3)
            status_after_threshold = hub.connections.status(config.id)
            remote.recover()
            await _wait_for(lambda: hub.connections.status(config.id) == ConnectionStatus.CONNECTED)
            return status_after_threshold

        status_after_threshold = asyncio.run(_run())
        assert status_after_threshold == ConnectionStatus.RECONNECTING
        state = hub.connections.get_state(config.id)
        assert state.error_count == 0
        assert len(remote.channels) == 2
        assert remote.channels[0].closed is True
        report = hub.monitor.get_report(config.id)
        assert report.consecutive_failures == 0
        assert hub.monitor.is_monitoring(config.id) is True
        statuses = [e.data["status"] for e in hub.seen if e.kind == events.CONNECTION_STATUS]
        assert statuses == ["connecting", "connected", "reconnecting", "connected"]

    def test_stdio_threshold_restarts_the_process(self, remote, fake_server_config):
        config = fake_server_config()
        hub = _hub(remote)

        async def _no_pong(timeout: float) -> float:
            raise TransportError("no pong")

        async def _run():
            await hub.connections.connect(config)
            before = hub.processes.get_state(config.id)
            stale = hub.processes.channel(config.id)
            stale.ping = _no_pong
            await _fail_probes(hub, config.id, 3)
            status_after_threshold = hub.connections.status(config.id)
            await _wait_for(lambda: hub.connections.status(config.id) == ConnectionStatus.CONNECTED, timeout=15.0)
            after = hub.processes.get_state(config.id)
            fresh = hub.processes.channel(config.id)
            await hub.processes.shutdown()
            return before, after, status_after_threshold, stale, fresh

        before, after, status_after_threshold, stale, fresh = asyncio.run(_run())
        assert status_after_threshold == ConnectionStatus.RECONNECTING
        assert fresh is not stale
        assert after.pid != before.pid
        assert after.restart_count >= before.restart_count
        state = hub.connections.get_state(config.id)
        assert state.error_count == 0
        statuses = [e.data["status"] for e in hub.seen if e.kind == events.CONNECTION_STATUS]
        assert statuses[:4] == ["connecting", "connected", "reconnecting", "connected"]
        process_states = [e.data["state"] for e in hub.seen if e.kind == events.PROCESS_STATE]
        assert "restarting" in process_states
        assert process_states[-1] == "stopped"

    def test_gives_up_after_max_attempts(self, remote):
        config = _config()
        hub = _hub(remote)

        async def _run():
            await hub.connections.connect(config)
            remote.fail("ping")
            remote.fail("initialize", "still down")
            await _fail_probes(hub, config.id, 3)
            await _wait_for(lambda: hub.connections.status(config.id) == ConnectionStatus.ERROR)

        asyncio.run(_run())
        state = hub.connections.get_state(config.id)
        assert state.last_error == "Reconnect failed after 3 attempt(s): still down"
        assert state.error_count == 3
        assert hub.monitor.is_monitoring(config.id) is False
        report = hub.monitor.get_report(config.id)
        assert report.status == HealthStatus.OFFLINE
        assert report.reconnect_attempts == 3
        assert len(remote.channels) == 4

    def test_backoff_is_capped(self, remote):
        hub = _hub(remote, reconnect_base_delay=1.0, reconnect_max_delay=8.0)
        assert [hub.monitor._backoff(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 8.0]


class TestManualReconnect:
    def test_manual_reconnect_from_connected(self, remote):
        config = _config()
        hub = _hub(remote)

        async def _run():
            await hub.connections.connect(config)
            return await hub.monitor.manual_reconnect(config)

        state = asyncio.run(_run())
        assert state.status == ConnectionStatus.CONNECTED
        statuses = [e.data["status"] for e in hub.seen if e.kind == events.CONNECTION_STATUS]
        assert statuses == ["connecting", "connected", "disconnected", "connecting", "connected"]
        assert hub.monitor.is_monitoring(config.id) is True

    def test_manual_reconnect_after_giving_up(self, remote):
        config = _config()
        hub = _hub(remote, max_reconnect_attempts=1)

        async def _run():
            await hub.connections.connect(config)
            remote.fail("ping")
            remote.fail("initialize")
            await _fail_probes(hub, config.id, 3)
            await _wait_for(lambda: hub.connections.status(config.id) == ConnectionStatus.ERROR)
            remote.recover()
            return await hub.monitor.manual_reconnect(config)

        state = asyncio.run(_run())
        assert state.status == ConnectionStatus.CONNECTED
        assert state.error_count == 1
        assert hub.monitor.get_report(config.id).consecutive_failures == 0

    def test_manual_reconnect_cancels_backoff(self, remote):
        config = _config()
        hub = _hub(remote, reconnect_base_delay=30.0, reconnect_max_delay=30.0)

        async def _run():
            await hub.connections.connect(config)
            remote.fail("ping")
            await _fail_probes(hub, config.id, 3)
            assert hub.monitor.is_reconnecting(config.id)
            remote.recover()
            state = await hub.monitor.manual_reconnect(config)
            return state, hub.monitor.is_reconnecting(config.id)

        state, reconnecting = asyncio.run(_run())
        assert state.status == ConnectionStatus.CONNECTED
        assert reconnecting is False

    def test_manual_reconnect_while_connecting(self, remote):
        config = _config()
        hub = _hub(remote)

        async def _run():
            remote.gate = asyncio.Event()
            attempt = asyncio.create_task(hub.connections.connect(config))
            await asyncio.sleep(0)
            with pytest.raises(AlreadyInProgress):
                await hub.monitor.manual_reconnect(config)
            remote.gate.set()
            await attempt

        asyncio.run(_run())
        assert hub.connections.status(config.id) == ConnectionStatus.CONNECTED
