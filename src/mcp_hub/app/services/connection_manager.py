"""Per-server protocol connections and their state machine.

    disconnected -> connecting -> connected | error
    connected -> disconnected                    (explicit)
    connected -> reconnecting -> connected | error  (health monitor)
    error -> connecting                          (retry)

stdio servers borrow the channel of their supervised process, so a
disconnect releases the channel but leaves the process running. Remote
servers get a channel of their own which is closed on disconnect.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pydantic import BaseModel, TypeAdapter, ValidationError

from mcp_hub.app.config import HANDSHAKE_TIMEOUT_SECONDS, MAX_HISTORY_ENTRIES, TOOL_CALL_TIMEOUT_SECONDS
from mcp_hub.app.models.common import utc_now
from mcp_hub.app.models.connection import (
    ConnectionHistoryEntry,
    ConnectionState,
    ConnectionStatus,
    PromptTemplate,
    ResourceDefinition,
    ToolCallResult,
    ToolDefinition,
)
from mcp_hub.app.models.debug import LogCategory, LogLevel
from mcp_hub.app.models.process import ProcessState
from mcp_hub.app.models.server import RemoteServerConfig, ServerConfiguration
from mcp_hub.app.services import event_bus as events
from mcp_hub.app.services.debug_recorder import DebugRecorder
from mcp_hub.app.services.errors import (
    AlreadyConnected,
    AlreadyInProgress,
    HubError,
    NotConnected,
    TransportError,
)
from mcp_hub.app.services.event_bus import EventBus, HubEvent
from mcp_hub.app.services.logging_service import get_logger
from mcp_hub.app.services.oauth_service import OAuthAuthenticator
from mcp_hub.app.services.persistence import CONNECTION_HISTORY_KEY, KeyValueStore, load_models, save_models
from mcp_hub.app.services.process_manager import ProcessLifecycleManager
from mcp_hub.app.services.transports import ProtocolChannel, open_remote_channel

logger = get_logger(__name__)

_history_list = TypeAdapter(list[ConnectionHistoryEntry])

ChannelFactory = Callable[[RemoteServerConfig, dict[str, str], Optional[DebugRecorder]], ProtocolChannel]

IN_PROGRESS = {ConnectionStatus.CONNECTING, ConnectionStatus.RECONNECTING}


@dataclass
class _Connection:
    config: ServerConfiguration
    state: ConnectionState
    channel: Optional[ProtocolChannel] = None
    owns_channel: bool = False
    # Bumped by every connect attempt and disconnect; stale attempts compare against it
    generation: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    resume_on_restart: bool = False


class ConnectionManager:
    def __init__(
        self,
        recorder: DebugRecorder,
        bus: EventBus,
        processes: ProcessLifecycleManager,
        oauth: OAuthAuthenticator,
        store: Optional[KeyValueStore] = None,
        *,
        channel_factory: ChannelFactory = open_remote_channel,
        handshake_timeout: float = HANDSHAKE_TIMEOUT_SECONDS,
        tool_timeout: float = TOOL_CALL_TIMEOUT_SECONDS,
    ) -> None:
        self._recorder = recorder
        self._bus = bus
        self._processes = processes
        self._oauth = oauth
        self._store = store
        self._channel_factory = channel_factory
        self._handshake_timeout = handshake_timeout
        self._tool_timeout = tool_timeout
        self._connections: dict[str, _Connection] = {}
        self._history: deque[ConnectionHistoryEntry] = deque(maxlen=MAX_HISTORY_ENTRIES)
        self._resume_tasks: dict[str, asyncio.Task] = {}
        self._unsubscribe = bus.subscribe(self._on_event)

    # ── persistence ────────────────────────────────────────────────────

    def load(self) -> None:
        if self._store is not None:
            self._history.extend(load_models(self._store, CONNECTION_HISTORY_KEY, _history_list))

    def _save_history(self) -> None:
        if self._store is None:
            return
        try:
            save_models(self._store, CONNECTION_HISTORY_KEY, _history_list, list(self._history))
        except Exception as e:
            logger.warning(f"Failed to persist connection history: {e}")

    # ── accessors ──────────────────────────────────────────────────────

    def get_state(self, server_id: str) -> Optional[ConnectionState]:
        conn = self._connections.get(server_id)
        return conn.state.model_copy(deep=True) if conn else None

    def list_states(self) -> list[ConnectionState]:
        return [c.state.model_copy(deep=True) for c in self._connections.values()]

    def status(self, server_id: str) -> ConnectionStatus:
        conn = self._connections.get(server_id)
        return conn.state.status if conn else ConnectionStatus.DISCONNECTED

    def history(self, server_id: Optional[str] = None, limit: Optional[int] = None) -> list[ConnectionHistoryEntry]:
        """History entries, newest first."""
        entries = [e.model_copy() for e in reversed(self._history) if server_id is None or e.server_id == server_id]
        return entries[:limit] if limit else entries

    def clear_errors(self, server_id: str) -> Optional[ConnectionState]:
        conn = self._connections.get(server_id)
        if conn is None:
            return None
        conn.state.error_count = 0
        conn.state.last_error = None
        self._publish(conn, conn.state.status)
        return conn.state.model_copy(deep=True)

    # ── state bookkeeping ──────────────────────────────────────────────

    def _conn_for(self, config: ServerConfiguration) -> _Connection:
        conn = self._connections.get(config.id)
        if conn is None:
            conn = _Connection(
                config=config,
                state=ConnectionState(server_id=config.id, server_name=config.name, transport=config.transport),
            )
            self._connections[config.id] = conn
        else:
            conn.config = config
            conn.state.server_name = config.name
            conn.state.transport = config.transport
        return conn

    def _publish(self, conn: _Connection, previous: ConnectionStatus, source: Optional[str] = None) -> None:
        self._bus.publish(
            events.CONNECTION_STATUS,
            conn.config.id,
            status=conn.state.status.value,
            previous=previous.value,
            error=conn.state.last_error,
            error_count=conn.state.error_count,
            source=source,
        )

    def _transition(
        self,
        conn: _Connection,
        status: ConnectionStatus,
        *,
        error: Optional[str] = None,
        duration_ms: Optional[float] = None,
        source: Optional[str] = None,
    ) -> None:
        previous = conn.state.status
        conn.state.status = status
        if status != ConnectionStatus.CONNECTED:
            conn.state.tools = []
            conn.state.resources = []
            conn.state.prompts = []
        if status in (ConnectionStatus.DISCONNECTED, ConnectionStatus.ERROR):
            conn.state.connected_at = None

        self._history.append(
            ConnectionHistoryEntry(
                server_id=conn.config.id,
                server_name=conn.config.name,
                status=status,
                error=error,
                duration_ms=duration_ms,
            )
        )
        self._save_history()

        level = LogLevel.ERROR if error else LogLevel.INFO
        message = f"Connection {previous.value} → {status.value}" + (f": {error}" if error else "")
        self._recorder.log(
            level, LogCategory.CONNECTION, message,
            server_id=conn.config.id, server_name=conn.config.name,
            data={"transport": conn.config.transport, "error_count": conn.state.error_count},
        )
        self._publish(conn, previous, source)

    def _record_failure(self, conn: _Connection, error: BaseException) -> str:
        message = error.message if isinstance(error, HubError) else str(error) or type(error).__name__
        conn.state.last_error = message
        conn.state.error_count += 1
        return message

    async def _release(self, conn: _Connection) -> None:
        channel, owned = conn.channel, conn.owns_channel
        conn.channel = None
        conn.owns_channel = False
        if channel is not None and owned:
            try:
                await channel.close()
            except Exception as e:
                logger.warning(f"Error closing channel for {conn.config.name}: {e}")

    # ── establishing ───────────────────────────────────────────────────

    async def _auth_headers(self, config: RemoteServerConfig) -> dict[str, str]:
        headers = dict(config.headers)
        if config.oauth is not None:
            token = await self._oauth.get_valid_token(config.id)
            headers["Authorization"] = f"{token.token_type} {token.access_token}"
        return headers

    async def _open(self, config: ServerConfiguration, fresh_process: bool = False) -> tuple[ProtocolChannel, bool]:
        """An initialized channel and whether this manager owns it."""
        match config.transport:
            case "stdio":
                if fresh_process and self._processes.is_running(config.id):
                    # An unresponsive process is replaced rather than reused
                    await self._processes.restart(config.id, config)
                else:
                    await self._processes.ensure_running(config)
                return self._processes.channel(config.id), False
            case "sse" | "http":
                headers = await self._auth_headers(config)
                channel = self._channel_factory(config, headers, self._recorder)
                try:
                    await channel.start()
                    await channel.initialize(timeout=self._handshake_timeout)
                except BaseException:
                    await channel.close()
                    raise
                return channel, True
        raise TransportError(f"Unsupported transport '{config.transport}'")

    def _parse_items(self, conn: _Connection, model: type[BaseModel], items: list[dict[str, Any]]) -> list:
        parsed = []
        for item in items:
            try:
                parsed.append(model.model_validate(item))
            except ValidationError as e:
                logger.warning(f"{conn.config.name}: skipping invalid {model.__name__}: {e.errors()[0]['msg']}")
        return parsed

    async def _establish(self, conn: _Connection, *, reconnecting: bool = False) -> ConnectionState:
        conn.generation += 1
        generation = conn.generation
        config = conn.config
        start = time.perf_counter()
        channel: Optional[ProtocolChannel] = None
        owned = False
        try:
            channel, owned = await self._open(config, fresh_process=reconnecting)
            tools = await channel.list_tools(timeout=self._handshake_timeout)
            resources = await channel.list_resources(timeout=self._handshake_timeout)
            prompts = await channel.list_prompts(timeout=self._handshake_timeout)
        except asyncio.CancelledError:
            if channel is not None and owned:
                await channel.close()
            if generation == conn.generation:
                conn.generation += 1
                self._transition(conn, ConnectionStatus.DISCONNECTED)
            raise
        except Exception as e:
            if channel is not None and owned:
                await channel.close()
            error = e if isinstance(e, HubError) else TransportError(f"Connection failed: {e}")
            duration_ms = (time.perf_counter() - start) * 1000
            self._recorder.metric(
                config.id, "connect", duration_ms, False, server_name=config.name, error=error.message
            )
            if generation == conn.generation:
                message = self._record_failure(conn, error)
                status = ConnectionStatus.RECONNECTING if reconnecting else ConnectionStatus.ERROR
                self._transition(conn, status, error=message, duration_ms=duration_ms)
            if error is e:
                raise
            raise error from e

        if generation != conn.generation:
            # Disconnected or removed while the attempt was in flight
            if owned:
                await channel.close()
            raise NotConnected(f"Connection attempt for '{config.name}' was cancelled")

        duration_ms = (time.perf_counter() - start) * 1000
        conn.channel = channel
        conn.owns_channel = owned
        state = conn.state
        state.connected_at = utc_now()
        state.last_error = None
        state.server_info = channel.server_info
        state.protocol_version = channel.protocol_version
        state.tools = self._parse_items(conn, ToolDefinition, tools)
        state.resources = self._parse_items(conn, ResourceDefinition, resources)
        state.prompts = self._parse_items(conn, PromptTemplate, prompts)
        self._transition(conn, ConnectionStatus.CONNECTED, duration_ms=duration_ms)
        self._recorder.metric(config.id, "connect", duration_ms, True, server_name=config.name)
        logger.info(
            f"Connected to {config.name} ({config.transport}): {len(state.tools)} tools, "
            f"{len(state.resources)} resources, {len(state.prompts)} prompts"
        )
        return state.model_copy(deep=True)

    # ── public operations ──────────────────────────────────────────────

    async def connect(self, config: ServerConfiguration) -> ConnectionState:
        conn = self._conn_for(config)
        # Check-and-set before the first await
        if conn.state.status in IN_PROGRESS:
            raise AlreadyInProgress(f"A connection attempt for '{config.name}' is already in progress")
        if conn.state.status == ConnectionStatus.CONNECTED:
            raise AlreadyConnected(f"'{config.name}' is already connected")
        conn.resume_on_restart = False
        self._transition(conn, ConnectionStatus.CONNECTING)
        return await self._establish(conn)

    async def disconnect(self, server_id: str) -> ConnectionState:
        conn = self._connections.get(server_id)
        if conn is None:
            return ConnectionState(server_id=server_id)
        conn.generation += 1
        conn.resume_on_restart = False
        self._cancel_resume(server_id)
        await self._release(conn)
        if conn.state.status != ConnectionStatus.DISCONNECTED:
            duration_ms = None
            if conn.state.connected_at is not None:
                duration_ms = (utc_now() - conn.state.connected_at).total_seconds() * 1000
            self._transition(conn, ConnectionStatus.DISCONNECTED, duration_ms=duration_ms)
        return conn.state.model_copy(deep=True)

    def _require_connected(self, server_id: str) -> tuple[_Connection, ProtocolChannel]:
        conn = self._connections.get(server_id)
        if conn is None or conn.state.status != ConnectionStatus.CONNECTED or conn.channel is None:
            raise NotConnected(f"Server '{server_id}' is not connected")
        return conn, conn.channel

    async def invoke(
        self,
        server_id: str,
        tool_name: str,
        arguments: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> ToolCallResult:
        conn, channel = self._require_connected(server_id)
        timeout = timeout or self._tool_timeout
        self._recorder.log(
            LogLevel.INFO, LogCategory.TOOL, f"Calling tool {tool_name}",
            server_id=server_id, server_name=conn.config.name, data={"arguments": arguments},
        )
        start = time.perf_counter()
        async with self._recorder.measure(server_id, f"tool:{tool_name}", conn.config.name):
            if channel.multiplexed:
                result = await channel.call_tool(tool_name, arguments, timeout=timeout)
            else:
                async with conn.lock:
                    result = await channel.call_tool(tool_name, arguments, timeout=timeout)
        duration_ms = (time.perf_counter() - start) * 1000

        content = result.get("content")
        structured = result.get("structuredContent")
        return ToolCallResult(
            server_id=server_id,
            tool_name=tool_name,
            content=[c for c in content if isinstance(c, dict)] if isinstance(content, list) else [],
            structured_content=structured if isinstance(structured, dict) else None,
            is_error=bool(result.get("isError")),
            duration_ms=duration_ms,
        )

    async def ping(self, server_id: str, timeout: float) -> float:
        conn, channel = self._require_connected(server_id)
        latency = await channel.ping(timeout)
        conn.state.last_ping_ms = latency
        return latency

    # ── health monitor hooks ───────────────────────────────────────────

    def begin_reconnect(self, server_id: str) -> None:
        """connected -> reconnecting; inventories are dropped, the error count kept."""
        conn = self._connections.get(server_id)
        if conn is None or conn.state.status != ConnectionStatus.CONNECTED:
            raise NotConnected(f"Server '{server_id}' is not connected")
        self._transition(conn, ConnectionStatus.RECONNECTING, source="health")

    async def reconnect_attempt(self, server_id: str) -> ConnectionState:
        """Tear down and re-run the connect procedure, staying in reconnecting on failure."""
        conn = self._connections.get(server_id)
        if conn is None:
            raise NotConnected(f"Server '{server_id}' is not connected")
        if conn.state.status != ConnectionStatus.RECONNECTING:
            self._transition(conn, ConnectionStatus.RECONNECTING, source="health")
        await self._release(conn)
        return await self._establish(conn, reconnecting=True)

    def mark_failed(self, server_id: str, error: str) -> None:
        conn = self._connections.get(server_id)
        if conn is None or conn.state.status == ConnectionStatus.ERROR:
            return
        conn.generation += 1
        conn.state.last_error = error
        self._transition(conn, ConnectionStatus.ERROR, error=error, source="health")

    # ── process events ─────────────────────────────────────────────────

    def _on_event(self, event: HubEvent) -> None:
        conn = self._connections.get(event.server_id) if event.server_id else None
        if conn is None or conn.config.transport != "stdio":
            return
        if event.kind == events.PROCESS_EXITED:
            self._on_process_exit(conn, event)
        elif event.kind == events.PROCESS_RESTART_LIMIT:
            conn.resume_on_restart = False
        elif event.kind == events.PROCESS_STATE:
            self._on_process_state(conn, event.data.get("state"))

    def _on_process_state(self, conn: _Connection, state: Optional[str]) -> None:
        if state in (ProcessState.STOPPING.value, ProcessState.RESTARTING.value):
            # The process is going away under an established connection
            if conn.state.status != ConnectionStatus.CONNECTED:
                return
            conn.generation += 1
            conn.channel = None
            conn.owns_channel = False
            self._transition(conn, ConnectionStatus.DISCONNECTED, source="process")
            conn.resume_on_restart = state == ProcessState.RESTARTING.value
        elif state == ProcessState.RUNNING.value and conn.resume_on_restart:
            if conn.state.status in (ConnectionStatus.ERROR, ConnectionStatus.DISCONNECTED):
                conn.resume_on_restart = False
                self._schedule_resume(conn)

    def _on_process_exit(self, conn: _Connection, event: HubEvent) -> None:
        if conn.state.status not in (ConnectionStatus.CONNECTED, ConnectionStatus.RECONNECTING):
            return
        conn.generation += 1
        conn.channel = None
        conn.owns_channel = False
        message = f"Process exited with code {event.data.get('exit_code')}"
        conn.state.last_error = message
        conn.state.error_count += 1
        self._transition(conn, ConnectionStatus.ERROR, error=message, source="process")
        conn.resume_on_restart = bool(event.data.get("auto_restart"))

    def _schedule_resume(self, conn: _Connection) -> None:
        server_id = conn.config.id

        async def resume() -> None:
            try:
                await self.connect(conn.config)
            except HubError as e:
                logger.warning(f"Could not resume {conn.config.name} after restart: {e.message}")
            finally:
                self._resume_tasks.pop(server_id, None)

        self._cancel_resume(server_id)
        self._resume_tasks[server_id] = asyncio.create_task(resume())

    def _cancel_resume(self, server_id: str) -> None:
        task = self._resume_tasks.pop(server_id, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    # ── teardown ───────────────────────────────────────────────────────

    async def remove(self, server_id: str) -> None:
        self._cancel_resume(server_id)
        conn = self._connections.pop(server_id, None)
        if conn is not None:
            conn.generation += 1
            await self._release(conn)
        kept = [e for e in self._history if e.server_id != server_id]
        if len(kept) != len(self._history):
            self._history.clear()
            self._history.extend(kept)
            self._save_history()

    async def shutdown(self) -> None:
        for server_id in list(self._resume_tasks):
            self._cancel_resume(server_id)
        for conn in self._connections.values():
            conn.generation += 1
            await self._release(conn)
        self._unsubscribe()
