"""Periodic liveness probes and automatic reconnection.

Every connected server gets an APScheduler interval job that pings it.
After FAILURE_THRESHOLD consecutive failed probes the connection is moved
to reconnecting and a background cycle retries with exponential backoff.
When the cycle runs out of attempts the connection is left in error for
manual intervention.
"""

import asyncio
from dataclasses import dataclass
from typing import Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from mcp_hub.app.config import (
    DEGRADED_RESPONSE_RATIO,
    FAILURE_THRESHOLD,
    MAX_LATENCY_SAMPLES,
    MAX_RECONNECT_ATTEMPTS,
    PROBE_INTERVAL_SECONDS,
    PROBE_TIMEOUT_SECONDS,
    RECONNECT_BASE_DELAY_SECONDS,
    RECONNECT_MAX_DELAY_SECONDS,
)
from mcp_hub.app.models.common import utc_now
from mcp_hub.app.models.connection import ConnectionState, ConnectionStatus, HealthReport, HealthStatus
from mcp_hub.app.models.debug import LogCategory, LogLevel
from mcp_hub.app.models.server import ServerConfiguration
from mcp_hub.app.services import event_bus as events
from mcp_hub.app.services.connection_manager import ConnectionManager
from mcp_hub.app.services.debug_recorder import DebugRecorder
from mcp_hub.app.services.errors import AlreadyInProgress, HubError, NotConnected
from mcp_hub.app.services.event_bus import EventBus, HubEvent
from mcp_hub.app.services.logging_service import get_logger

logger = get_logger(__name__)

HealthListener = Callable[[HealthReport], None]


@dataclass
class _Monitored:
    report: HealthReport
    reconnect_task: Optional[asyncio.Task] = None
    probing: bool = False

    @property
    def reconnecting(self) -> bool:
        return self.reconnect_task is not None and not self.reconnect_task.done()


class HealthMonitor:
    def __init__(
        self,
        connections: ConnectionManager,
        bus: EventBus,
        recorder: DebugRecorder,
        scheduler: AsyncIOScheduler,
        *,
        probe_interval: float = PROBE_INTERVAL_SECONDS,
        probe_timeout: float = PROBE_TIMEOUT_SECONDS,
        failure_threshold: int = FAILURE_THRESHOLD,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
        reconnect_base_delay: float = RECONNECT_BASE_DELAY_SECONDS,
        reconnect_max_delay: float = RECONNECT_MAX_DELAY_SECONDS,
    ) -> None:
        self._connections = connections
        self._bus = bus
        self._recorder = recorder
        self._scheduler = scheduler
        self._probe_interval = probe_interval
        self._probe_timeout = probe_timeout
        self._failure_threshold = failure_threshold
        self._max_reconnect_attempts = max_reconnect_attempts
        self._reconnect_base_delay = reconnect_base_delay
        self._reconnect_max_delay = reconnect_max_delay
        self._monitored: dict[str, _Monitored] = {}
        self._manual: set[str] = set()
        self._listeners: list[HealthListener] = []
        self._unsubscribe = bus.subscribe(self._on_event)

    @staticmethod
    def _job_id(server_id: str) -> str:
        return f"health-{server_id}"

    # ── scheduling ─────────────────────────────────────────────────────

    def start_monitoring(self, server_id: str) -> None:
        entry = self._monitored.get(server_id)
        if entry is None:
            entry = _Monitored(report=HealthReport(server_id=server_id))
            self._monitored[server_id] = entry
        entry.report.consecutive_failures = 0
        entry.report.reconnect_attempts = 0
        self._scheduler.add_job(
            self.check_now,
            trigger=IntervalTrigger(seconds=self._probe_interval),
            id=self._job_id(server_id),
            args=[server_id],
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.debug(f"Health monitoring started for {server_id} every {self._probe_interval:g}s")

    def _unschedule(self, server_id: str) -> None:
        try:
            self._scheduler.remove_job(self._job_id(server_id))
        except JobLookupError:
            pass

    def stop_monitoring(self, server_id: str) -> None:
        """Drop the probe job, any reconnect cycle and the health data."""
        self._unschedule(server_id)
        entry = self._monitored.pop(server_id, None)
        if entry is not None and entry.reconnecting and entry.reconnect_task is not asyncio.current_task():
            entry.reconnect_task.cancel()

    def is_monitoring(self, server_id: str) -> bool:
        return self._scheduler.get_job(self._job_id(server_id)) is not None

    def is_reconnecting(self, server_id: str) -> bool:
        entry = self._monitored.get(server_id)
        return entry is not None and entry.reconnecting

    def get_report(self, server_id: str) -> Optional[HealthReport]:
        entry = self._monitored.get(server_id)
        return entry.report.model_copy(deep=True) if entry else None

    def list_reports(self) -> list[HealthReport]:
        return [e.report.model_copy(deep=True) for e in self._monitored.values()]

    # ── listeners ──────────────────────────────────────────────────────

    def add_listener(self, callback: HealthListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def _notify(self, entry: _Monitored) -> None:
        report = entry.report
        for callback in list(self._listeners):
            try:
                callback(report.model_copy(deep=True))
            except Exception as e:
                logger.error(f"Health listener failed for {report.server_id}: {e}", exc_info=True)
        self._bus.publish(
            events.HEALTH_UPDATE,
            report.server_id,
            status=report.status.value,
            response_time_ms=report.response_time_ms,
            consecutive_failures=report.consecutive_failures,
            error=report.error,
        )

    # ── probing ────────────────────────────────────────────────────────

    async def check_now(self, server_id: str) -> Optional[HealthReport]:
        """Run one probe, unless a reconnect for the server is in flight."""
        entry = self._monitored.get(server_id)
        if entry is None:
            return None
        if server_id in self._manual or entry.probing or entry.reconnecting:
            return entry.report.model_copy(deep=True)
        if self._connections.status(server_id) != ConnectionStatus.CONNECTED:
            return entry.report.model_copy(deep=True)

        entry.probing = True
        try:
            latency = await self._connections.ping(server_id, self._probe_timeout)
        except HubError as e:
            failure: Optional[HubError] = e
        else:
            failure = None
        finally:
            entry.probing = False

        if self._monitored.get(server_id) is not entry:
            # Stopped while the probe was in flight
            return None
        if failure is None:
            self._probe_succeeded(server_id, entry, latency)
        else:
            self._probe_failed(server_id, entry, failure)
        return entry.report.model_copy(deep=True)

    def _probe_succeeded(self, server_id: str, entry: _Monitored, latency: float) -> None:
        report = entry.report
        report.last_check = utc_now()
        report.response_time_ms = latency
        report.consecutive_failures = 0
        report.error = None
        report.latency_samples = (report.latency_samples + [latency])[-MAX_LATENCY_SAMPLES:]
        slow = latency > self._probe_timeout * 1000 * DEGRADED_RESPONSE_RATIO
        report.status = HealthStatus.DEGRADED if slow else HealthStatus.HEALTHY
        self._recorder.metric(server_id, "ping", latency, True)
        self._notify(entry)

    def _probe_failed(self, server_id: str, entry: _Monitored, error: HubError) -> None:
        report = entry.report
        report.last_check = utc_now()
        report.response_time_ms = None
        report.consecutive_failures += 1
        report.error = error.message
        self._recorder.metric(server_id, "ping", 0.0, False, error=error.message)
        self._recorder.log(
            LogLevel.WARN, LogCategory.CONNECTION,
            f"Health probe failed ({report.consecutive_failures}/{self._failure_threshold}): {error.message}",
            server_id=server_id,
        )
        if report.consecutive_failures < self._failure_threshold:
            report.status = HealthStatus.DEGRADED
            self._notify(entry)
            return

        report.status = HealthStatus.OFFLINE
        self._notify(entry)
        try:
            self._connections.begin_reconnect(server_id)
        except NotConnected:
            return
        report.reconnect_attempts = 0
        entry.reconnect_task = asyncio.create_task(self._reconnect_cycle(server_id, entry))

    # ── reconnection ───────────────────────────────────────────────────

    def _backoff(self, attempt: int) -> float:
        return min(self._reconnect_base_delay * 2 ** (attempt - 1), self._reconnect_max_delay)

    async def _reconnect_cycle(self, server_id: str, entry: _Monitored) -> None:
        last_error = "unknown error"
        for attempt in range(1, self._max_reconnect_attempts + 1):
            await asyncio.sleep(self._backoff(attempt))
            if self._monitored.get(server_id) is not entry:
                return
            entry.report.reconnect_attempts = attempt
            logger.info(f"Reconnecting {server_id} (attempt {attempt}/{self._max_reconnect_attempts})")
            try:
                await self._connections.reconnect_attempt(server_id)
            except HubError as e:
                last_error = e.message
                logger.warning(f"Reconnect attempt {attempt} for {server_id} failed: {e.message}")
                continue
            logger.info(f"Reconnected {server_id} after {attempt} attempt(s)")
            return

        message = f"Reconnect failed after {self._max_reconnect_attempts} attempt(s): {last_error}"
        self._connections.mark_failed(server_id, message)
        entry.report.status = HealthStatus.OFFLINE
        entry.report.error = message
        self._notify(entry)

    async def manual_reconnect(self, config: ServerConfiguration) -> ConnectionState:
        """Skip any backoff and reconnect now; failures are raised to the caller."""
        server_id = config.id
        if server_id in self._manual:
            raise AlreadyInProgress(f"A manual reconnect for '{config.name}' is already running")
        self._manual.add(server_id)
        try:
            entry = self._monitored.get(server_id)
            if entry is not None and entry.reconnecting:
                entry.reconnect_task.cancel()
                try:
                    await entry.reconnect_task
                except asyncio.CancelledError:
                    pass
            status = self._connections.status(server_id)
            if status == ConnectionStatus.CONNECTING:
                raise AlreadyInProgress(f"A connection attempt for '{config.name}' is already in progress")
            if status in (ConnectionStatus.CONNECTED, ConnectionStatus.RECONNECTING):
                await self._connections.disconnect(server_id)
            self._recorder.log(
                LogLevel.INFO, LogCategory.CONNECTION, "Manual reconnect requested",
                server_id=server_id, server_name=config.name,
            )
            return await self._connections.connect(config)
        finally:
            self._manual.discard(server_id)

    # ── connection events ──────────────────────────────────────────────

    def _on_event(self, event: HubEvent) -> None:
        if event.server_id is None:
            return
        if event.kind == events.SERVER_REMOVED:
            self.stop_monitoring(event.server_id)
            return
        if event.kind != events.CONNECTION_STATUS:
            return
        status = event.data.get("status")
        if status == ConnectionStatus.CONNECTED.value:
            self.start_monitoring(event.server_id)
        elif status == ConnectionStatus.DISCONNECTED.value:
            self.stop_monitoring(event.server_id)
        elif status == ConnectionStatus.ERROR.value:
            if event.data.get("source") == "health":
                # Gave up; keep the offline report for display
                self._unschedule(event.server_id)
            else:
                self.stop_monitoring(event.server_id)

    def shutdown(self) -> None:
        for server_id in list(self._monitored):
            self.stop_monitoring(server_id)
        self._unsubscribe()
