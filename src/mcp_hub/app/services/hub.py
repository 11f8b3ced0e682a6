"""Composition root and action surface of the hub.

McpHub wires the components together once and exposes every operation
as an async action returning an ActionResult. Typed HubErrors become
failed results; anything unexpected becomes an internal error result
and is logged with its traceback. No action raises.
"""

import inspect
import uuid
import webbrowser
from typing import Any, Awaitable, Callable, Optional

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import ValidationError

from mcp_hub.app.config import DEBUG_FLUSH_INTERVAL_SECONDS, HubSettings
from mcp_hub.app.models.common import ActionResult
from mcp_hub.app.models.config_import import ConfigFile, ConfigFormat, MergeResult
from mcp_hub.app.models.connection import ConnectionState
from mcp_hub.app.models.debug import DebugLogEntry, LogCategory, LogLevel, LogQuery, MetricQuery, PerformanceMetric
from mcp_hub.app.models.oauth import CallbackParams
from mcp_hub.app.models.process import ServerProcess
from mcp_hub.app.models.server import ServerConfiguration, StdioServerConfig
from mcp_hub.app.services import config_parser
from mcp_hub.app.services.connection_manager import ChannelFactory, ConnectionManager
from mcp_hub.app.services.debug_recorder import DebugRecorder
from mcp_hub.app.services.errors import HubError, InvalidConfiguration, ProcessNotFound
from mcp_hub.app.services.event_bus import EventBus
from mcp_hub.app.services.health_monitor import HealthMonitor
from mcp_hub.app.services.logging_service import get_logger, release_server_log
from mcp_hub.app.services.oauth_service import OAuthAuthenticator
from mcp_hub.app.services.persistence import KeyValueStore, MemoryStore
from mcp_hub.app.services.process_manager import ProcessLifecycleManager
from mcp_hub.app.services.server_store import ServerConfigStore
from mcp_hub.app.services.transports import open_remote_channel

logger = get_logger(__name__)

FLUSH_JOB_ID = "debug-flush"


class McpHub:
    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        settings: Optional[HubSettings] = None,
        *,
        scheduler: Optional[AsyncIOScheduler] = None,
        channel_factory: ChannelFactory = open_remote_channel,
        oauth_transport: Optional[httpx.AsyncBaseTransport] = None,
        url_opener: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self.settings = settings or HubSettings()
        self.store = store if store is not None else MemoryStore()
        self.scheduler = scheduler or AsyncIOScheduler()
        self.bus = EventBus()
        self.recorder = DebugRecorder(self.store)
        self.servers = ServerConfigStore(self.store, self.bus)
        self.processes = ProcessLifecycleManager(
            self.recorder,
            self.bus,
            self.store,
            startup_timeout=self.settings.startup_timeout_seconds,
            max_restart_attempts=self.settings.max_restart_attempts,
        )
        if url_opener is None and self.settings.oauth_open_browser:
            url_opener = webbrowser.open
        self.oauth = OAuthAuthenticator(
            self.recorder,
            self.bus,
            self.store,
            self.servers.get,
            transport=oauth_transport,
            url_opener=url_opener,
        )
        self.connections = ConnectionManager(
            self.recorder,
            self.bus,
            self.processes,
            self.oauth,
            self.store,
            channel_factory=channel_factory,
        )
        self.monitor = HealthMonitor(
            self.connections,
            self.bus,
            self.recorder,
            self.scheduler,
            probe_interval=self.settings.probe_interval_seconds,
            probe_timeout=self.settings.probe_timeout_seconds,
            failure_threshold=self.settings.failure_threshold,
            max_reconnect_attempts=self.settings.max_reconnect_attempts,
        )
        self._started = False

    # ── lifecycle ──────────────────────────────────────────────────────

    def load(self) -> None:
        """Restore persisted state; corrupt keys fall back to empty defaults."""
        self.servers.load()
        self.processes.load()
        self.oauth.load()
        self.connections.load()
        self.recorder.load()

    async def start(self) -> None:
        if self._started:
            return
        self.load()
        self.scheduler.add_job(
            self.recorder.flush,
            trigger=IntervalTrigger(seconds=DEBUG_FLUSH_INTERVAL_SECONDS),
            id=FLUSH_JOB_ID,
            replace_existing=True,
        )
        self.scheduler.start()
        self._started = True
        self.recorder.log(LogLevel.INFO, LogCategory.SYSTEM, "Hub started")
        logger.info(f"Hub started with {len(self.servers.list_servers())} server(s)")

    async def stop(self) -> None:
        self.monitor.shutdown()
        await self.connections.shutdown()
        await self.processes.shutdown()
        self.recorder.flush()
        if self._started:
            self.scheduler.shutdown(wait=False)
            self._started = False
        logger.info("Hub stopped")

    # ── action plumbing ────────────────────────────────────────────────

    async def _act(self, operation: str, call: Callable[[], Any | Awaitable[Any]]) -> ActionResult:
        try:
            result = call()
            if inspect.isawaitable(result):
                result = await result
        except HubError as e:
            logger.warning(f"{operation} failed: [{e.code}] {e.message}")
            return ActionResult.fail(e.code, e.category.value, e.message, e.details)
        except Exception as e:
            logger.error(f"{operation} failed unexpectedly: {e}", exc_info=True)
            self.recorder.log(LogLevel.ERROR, LogCategory.SYSTEM, f"{operation} failed: {e}", error=e)
            return ActionResult.fail("internal_error", "internal", f"Unexpected error during {operation}: {e}")
        return ActionResult.ok(result)

    # ── servers ────────────────────────────────────────────────────────

    async def list_servers(self) -> ActionResult:
        return await self._act("list_servers", self.servers.list_servers)

    async def get_server(self, server_id: str) -> ActionResult:
        return await self._act("get_server", lambda: self.servers.require(server_id))

    async def add_server(self, payload: dict[str, Any] | ServerConfiguration) -> ActionResult:
        return await self._act("add_server", lambda: self.servers.add(payload))

    async def update_server(self, server_id: str, changes: dict[str, Any]) -> ActionResult:
        return await self._act("update_server", lambda: self.servers.update(server_id, changes))

    async def _remove(self, server_id: str) -> ServerConfiguration:
        config = self.servers.require(server_id)
        self.monitor.stop_monitoring(server_id)
        await self.connections.remove(server_id)
        self.oauth.cancel_flows(server_id)
        self.oauth.revoke(server_id)
        await self.processes.remove(server_id)
        self.recorder.forget_server(server_id)
        release_server_log(server_id)
        self.servers.remove(server_id)
        logger.info(f"Removed {config.name} and everything attached to it")
        return config

    async def remove_server(self, server_id: str) -> ActionResult:
        return await self._act("remove_server", lambda: self._remove(server_id))

    # ── connections ────────────────────────────────────────────────────

    async def _connect(self, server_id: str) -> ConnectionState:
        config = self.servers.require(server_id)
        if not config.enabled:
            raise InvalidConfiguration(f"Server '{config.name}' is disabled")
        return await self.connections.connect(config)

    async def connect(self, server_id: str) -> ActionResult:
        return await self._act("connect", lambda: self._connect(server_id))

    async def _disconnect(self, server_id: str) -> ConnectionState:
        self.servers.require(server_id)
        return await self.connections.disconnect(server_id)

    async def disconnect(self, server_id: str) -> ActionResult:
        return await self._act("disconnect", lambda: self._disconnect(server_id))

    async def invoke_tool(
        self,
        server_id: str,
        tool_name: str,
        arguments: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> ActionResult:
        return await self._act(
            "invoke_tool", lambda: self.connections.invoke(server_id, tool_name, arguments, timeout)
        )

    def _connection_state(self, server_id: str) -> ConnectionState:
        config = self.servers.require(server_id)
        return self.connections.get_state(server_id) or ConnectionState(
            server_id=config.id, server_name=config.name, transport=config.transport
        )

    async def get_connection_state(self, server_id: str) -> ActionResult:
        return await self._act("get_connection_state", lambda: self._connection_state(server_id))

    async def list_connections(self) -> ActionResult:
        return await self._act(
            "list_connections",
            lambda: [self._connection_state(s.id) for s in self.servers.list_servers()],
        )

    async def connection_history(self, server_id: Optional[str] = None, limit: Optional[int] = None) -> ActionResult:
        return await self._act("connection_history", lambda: self.connections.history(server_id, limit))

    def _clear_errors(self, server_id: str) -> ConnectionState:
        self.servers.require(server_id)
        return self.connections.clear_errors(server_id) or self._connection_state(server_id)

    async def clear_errors(self, server_id: str) -> ActionResult:
        return await self._act("clear_errors", lambda: self._clear_errors(server_id))

    async def manual_reconnect(self, server_id: str) -> ActionResult:
        return await self._act(
            "manual_reconnect", lambda: self.monitor.manual_reconnect(self.servers.require(server_id))
        )

    # ── health ─────────────────────────────────────────────────────────

    async def get_health(self, server_id: Optional[str] = None) -> ActionResult:
        if server_id is None:
            return await self._act("get_health", self.monitor.list_reports)
        return await self._act("get_health", lambda: self.monitor.get_report(server_id))

    # ── processes ──────────────────────────────────────────────────────

    def _stdio_config(self, server_id: str) -> StdioServerConfig:
        config = self.servers.require(server_id)
        if config.transport != "stdio":
            raise InvalidConfiguration(f"Server '{config.name}' is not a local ({config.transport}) server")
        return config

    async def start_process(self, server_id: str) -> ActionResult:
        return await self._act(
            "start_process", lambda: self.processes.ensure_running(self._stdio_config(server_id))
        )

    async def stop_process(self, server_id: str, force: bool = False) -> ActionResult:
        return await self._act(
            "stop_process", lambda: self.processes.stop(self._stdio_config(server_id).id, force=force)
        )

    async def restart_process(self, server_id: str) -> ActionResult:
        return await self._act(
            "restart_process", lambda: self.processes.restart(server_id, self._stdio_config(server_id))
        )

    def _process_state(self, server_id: str) -> ServerProcess:
        state = self.processes.get_state(server_id)
        if state is None:
            raise ProcessNotFound(f"No process known for '{server_id}'")
        return state

    async def get_process_state(self, server_id: str) -> ActionResult:
        return await self._act("get_process_state", lambda: self._process_state(server_id))

    async def list_processes(self) -> ActionResult:
        return await self._act("list_processes", self.processes.list_states)

    # ── oauth ──────────────────────────────────────────────────────────

    async def start_oauth_flow(self, server_id: str) -> ActionResult:
        return await self._act(
            "start_oauth_flow", lambda: self.oauth.start_flow(server_id, self.servers.require(server_id))
        )

    async def complete_oauth_flow(self, params: CallbackParams | dict[str, Any]) -> ActionResult:
        return await self._act("complete_oauth_flow", lambda: self.oauth.complete_flow(params))

    async def refresh_token(self, server_id: str) -> ActionResult:
        return await self._act("refresh_token", lambda: self.oauth.refresh(server_id))

    async def get_token_status(self, server_id: str) -> ActionResult:
        return await self._act("get_token_status", lambda: self.oauth.token_status(server_id))

    async def revoke_token(self, server_id: str) -> ActionResult:
        return await self._act("revoke_token", lambda: self.oauth.revoke(server_id))

    # ── configuration files ────────────────────────────────────────────

    async def parse_config(self, content: str, source_file: Optional[str] = None) -> ActionResult:
        return await self._act("parse_config", lambda: config_parser.parse(content, source_file))

    async def parse_config_batch(self, files: list[ConfigFile]) -> ActionResult:
        return await self._act("parse_config_batch", lambda: config_parser.parse_multiple(files))

    def _merge(self, incoming: list[ServerConfiguration | dict[str, Any]]) -> MergeResult:
        existing = self.servers.list_servers()
        taken = {s.id for s in existing}
        servers = []
        for payload in incoming:
            server = self.servers.validate(payload)
            if server.id in taken:
                server = server.model_copy(update={"id": uuid.uuid4().hex})
            taken.add(server.id)
            servers.append(server)
        result = config_parser.merge_servers(existing, servers)
        stored = self.servers.extend(result.servers[len(existing):])
        result = result.model_copy(update={"servers": existing + stored, "added": len(stored)})
        logger.info(f"Merged configuration: {result.added} added, {result.skipped} skipped")
        return result


    async def merge_configs(self, incoming: list[ServerConfiguration | dict[str, Any]]) -> ActionResult:
        return await self._act("merge_configs", lambda: self._merge(incoming))

    def _export(self, fmt: ConfigFormat | str, server_ids: Optional[list[str]], include_disabled: bool) -> str:
        if server_ids is None:
            servers = self.servers.list_servers()
        else:
            servers = [self.servers.require(server_id) for server_id in server_ids]
        return config_parser.export_to_format(servers, fmt, include_disabled=include_disabled)

    async def export_config(
        self,
        fmt: ConfigFormat | str,
        server_ids: Optional[list[str]] = None,
        include_disabled: bool = True,
    ) -> ActionResult:
        return await self._act("export_config", lambda: self._export(fmt, server_ids, include_disabled))

    # ── debug ──────────────────────────────────────────────────────────

    def _record_log(self, entry: DebugLogEntry | dict[str, Any]) -> DebugLogEntry:
        if isinstance(entry, dict):
            try:
                entry = DebugLogEntry.model_validate(entry)
            except ValidationError as e:
                raise InvalidConfiguration(f"Invalid log entry: {e.errors()[0]['msg']}") from e
        self.recorder.record(entry)
        return entry

    async def record_log(self, entry: DebugLogEntry | dict[str, Any]) -> ActionResult:
        return await self._act("record_log", lambda: self._record_log(entry))

    def _record_metric(self, metric: PerformanceMetric | dict[str, Any]) -> PerformanceMetric:
        if isinstance(metric, dict):
            try:
                metric = PerformanceMetric.model_validate(metric)
            except ValidationError as e:
                raise InvalidConfiguration(f"Invalid metric: {e.errors()[0]['msg']}") from e
        self.recorder.record_metric(metric)
        return metric

    async def record_metric(self, metric: PerformanceMetric | dict[str, Any]) -> ActionResult:
        return await self._act("record_metric", lambda: self._record_metric(metric))

    async def query_logs(self, filters: Optional[LogQuery] = None) -> ActionResult:
        return await self._act("query_logs", lambda: self.recorder.query(filters))

    async def query_metrics(self, filters: Optional[MetricQuery] = None) -> ActionResult:
        return await self._act("query_metrics", lambda: self.recorder.query_metrics(filters))

    async def aggregate_metrics(self) -> ActionResult:
        return await self._act("aggregate_metrics", self.recorder.aggregate)

    async def clear_debug(self, metrics: bool = True) -> ActionResult:
        def clear() -> None:
            self.recorder.clear()
            if metrics:
                self.recorder.clear_metrics()

        return await self._act("clear_debug", clear)

    async def export_debug(self) -> ActionResult:
        return await self._act("export_debug", self.recorder.export)
