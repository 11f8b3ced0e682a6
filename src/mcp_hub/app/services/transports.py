"""JSON-RPC protocol channels for the three MCP transports.

- StdioChannel: newline-delimited JSON over a subprocess's stdin/stdout
- SseChannel:   server->client event stream plus a POST back-channel
- HttpChannel:  one HTTP request per JSON-RPC message

ProtocolChannel carries everything transport independent: request ids,
the initialize handshake, ping, paginated inventory listing and tool
calls. Failures surface as TransportError (or RemoteError when the
server answers with a JSON-RPC error object).
"""

import asyncio
import itertools
import json
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Callable, Optional
from urllib.parse import urljoin

import httpx

from mcp_hub import __version__
from mcp_hub.app.config import (
    HANDSHAKE_TIMEOUT_SECONDS,
    HTTP_RATE_LIMIT_REQUESTS,
    HTTP_RATE_LIMIT_WINDOW_SECONDS,
    PROTOCOL_VERSION,
    TOOL_CALL_TIMEOUT_SECONDS,
)
from mcp_hub.app.models.server import HttpServerConfig, RemoteServerConfig, SseServerConfig
from mcp_hub.app.services.debug_recorder import DebugRecorder
from mcp_hub.app.services.errors import AuthenticationRequired, HubError, RemoteError, TransportError
from mcp_hub.app.services.logging_service import get_logger

logger = get_logger(__name__)

METHOD_NOT_FOUND = -32601
CLIENT_INFO = {"name": "mcp-hub", "version": __version__}
MAX_LIST_PAGES = 50
STDIO_LINE_LIMIT = 16 * 1024 * 1024

# Not traced into the debug log, they run on every health probe
QUIET_METHODS = {"ping"}


class ProtocolChannel(ABC):
    """One JSON-RPC session with a tool server."""

    # True when responses are matched by id and calls may overlap safely
    multiplexed = False

    def __init__(
        self,
        server_id: str,
        server_name: Optional[str] = None,
        recorder: Optional[DebugRecorder] = None,
    ) -> None:
        self.server_id = server_id
        self.server_name = server_name
        self._recorder = recorder
        self._ids = itertools.count(1)
        self._pending: dict[Any, asyncio.Future] = {}
        self.server_capabilities: dict[str, Any] = {}
        self.server_info: Optional[dict[str, Any]] = None
        self.protocol_version: Optional[str] = None
        self.initialized = False

    # ── transport hooks ────────────────────────────────────────────────

    @property
    @abstractmethod
    def is_open(self) -> bool: ...

    async def start(self) -> None:
        """Open the underlying stream, if the transport has one."""

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def _send(self, message: dict[str, Any]) -> None:
        """Write one JSON-RPC message to the server."""

    async def _round_trip(self, message: dict[str, Any]) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending[message["id"]] = future
        try:
            await self._send(message)
            return await future
        finally:
            self._pending.pop(message["id"], None)

    # ── incoming messages ──────────────────────────────────────────────

    async def _dispatch(self, message: dict[str, Any]) -> None:
        if "method" not in message:
            future = self._pending.get(message.get("id"))
            if future is not None and not future.done():
                future.set_result(message)
            else:
                logger.debug(f"[{self.server_id}] Dropping response for unknown id {message.get('id')!r}")
            return

        if "id" not in message:
            logger.debug(f"[{self.server_id}] Notification: {message['method']}")
            return

        # Server-initiated request
        if message["method"] == "ping":
            reply = {"jsonrpc": "2.0", "id": message["id"], "result": {}}
        else:
            reply = {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": METHOD_NOT_FOUND, "message": f"Method not supported: {message['method']}"},
            }
        try:
            await self._send(reply)
        except HubError as e:
            logger.debug(f"[{self.server_id}] Could not answer {message['method']}: {e}")

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransportError(reason))
        self._pending.clear()

    # ── JSON-RPC operations ────────────────────────────────────────────

    async def request(
        self,
        method: str,
        params: Optional[dict[str, Any]] = None,
        timeout: float = TOOL_CALL_TIMEOUT_SECONDS,
    ) -> dict[str, Any]:
        if not self.is_open:
            raise TransportError(f"Channel to '{self.server_name or self.server_id}' is closed")

        message: dict[str, Any] = {"jsonrpc": "2.0", "id": next(self._ids), "method": method}
        if params is not None:
            message["params"] = params

        quiet = method in QUIET_METHODS
        if self._recorder and not quiet:
            self._recorder.log_request(self.server_id, self.server_name, method, params)

        start = time.perf_counter()
        try:
            response = await asyncio.wait_for(self._round_trip(message), timeout=timeout)
        except asyncio.TimeoutError as e:
            error = TransportError(f"{method} timed out after {timeout:g}s")
            if self._recorder and not quiet:
                self._recorder.log_error(self.server_id, self.server_name, method, error)
            raise error from e
        except HubError as e:
            if self._recorder and not quiet:
                self._recorder.log_error(self.server_id, self.server_name, method, e)
            raise
        except (OSError, httpx.HTTPError) as e:
            error = TransportError(f"{method} failed: {e}")
            if self._recorder and not quiet:
                self._recorder.log_error(self.server_id, self.server_name, method, error)
            raise error from e

        if "error" in response:
            err = response["error"] if isinstance(response["error"], dict) else {"message": str(response["error"])}
            error = RemoteError(err.get("message") or "Unknown error", rpc_code=err.get("code"), data=err.get("data"))
            if self._recorder and not quiet:
                self._recorder.log_error(self.server_id, self.server_name, method, error)
            raise error

        result = response.get("result")
        if self._recorder and not quiet:
            duration_ms = (time.perf_counter() - start) * 1000
            self._recorder.log_response(self.server_id, self.server_name, method, result, duration_ms)
        return result if isinstance(result, dict) else {}

    async def notify(self, method: str, params: Optional[dict[str, Any]] = None) -> None:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._send(message)

    async def initialize(self, timeout: float = HANDSHAKE_TIMEOUT_SECONDS) -> dict[str, Any]:
        """Run the initialize handshake and announce readiness."""
        result = await self.request(
            "initialize",
            {"protocolVersion": PROTOCOL_VERSION, "capabilities": {}, "clientInfo": CLIENT_INFO},
            timeout=timeout,
        )
        self.server_capabilities = result.get("capabilities") or {}
        self.server_info = result.get("serverInfo")
        self.protocol_version = result.get("protocolVersion")
        await self.notify("notifications/initialized")
        self.initialized = True
        return result

    async def ping(self, timeout: float) -> float:
        """Round-trip a ping and return the latency in milliseconds."""
        start = time.perf_counter()
        await self.request("ping", timeout=timeout)
        return (time.perf_counter() - start) * 1000

    async def _list_all(self, method: str, key: str, capability: str, timeout: float) -> list[dict[str, Any]]:
        if self.server_capabilities and capability not in self.server_capabilities:
            return []
        items: list[dict[str, Any]] = []
        cursor = None
        for _ in range(MAX_LIST_PAGES):
            try:
                result = await self.request(method, {"cursor": cursor} if cursor else None, timeout=timeout)
            except RemoteError as e:
                if e.rpc_code == METHOD_NOT_FOUND:
                    return items
                raise
            items.extend(i for i in result.get(key) or [] if isinstance(i, dict))
            cursor = result.get("nextCursor")
            if not cursor:
                break
        return items

    async def list_tools(self, timeout: float = HANDSHAKE_TIMEOUT_SECONDS) -> list[dict[str, Any]]:
        return await self._list_all("tools/list", "tools", "tools", timeout)

    async def list_resources(self, timeout: float = HANDSHAKE_TIMEOUT_SECONDS) -> list[dict[str, Any]]:
        return await self._list_all("resources/list", "resources", "resources", timeout)

    async def list_prompts(self, timeout: float = HANDSHAKE_TIMEOUT_SECONDS) -> list[dict[str, Any]]:
        return await self._list_all("prompts/list", "prompts", "prompts", timeout)

    async def call_tool(
        self,
        name: str,
        arguments: Optional[dict[str, Any]] = None,
        timeout: float = TOOL_CALL_TIMEOUT_SECONDS,
    ) -> dict[str, Any]:
        return await self.request("tools/call", {"name": name, "arguments": arguments or {}}, timeout=timeout)


class StdioChannel(ProtocolChannel):
    """JSON-RPC over a child process's pipes.

    The channel belongs to the process supervisor; connections borrow it.
    Lines on stdout that are not JSON-RPC go to ``on_output``.
    """

    def __init__(
        self,
        server_id: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        server_name: Optional[str] = None,
        recorder: Optional[DebugRecorder] = None,
        on_output: Optional[Callable[[str], None]] = None,
    ) -> None:
        super().__init__(server_id, server_name, recorder)
        self._reader = reader
        self._writer = writer
        self._on_output = on_output
        self._reader_task: Optional[asyncio.Task] = None
        self._closed = False
        self.close_reason: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return not self._closed

    async def start(self) -> None:
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        reason = "Server closed its stdout"
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").strip()
                if not text:
                    continue
                try:
                    message = json.loads(text)
                except json.JSONDecodeError:
                    self._emit_output(text)
                    continue
                if not isinstance(message, dict):
                    self._emit_output(text)
                    continue
                await self._dispatch(message)
        except (ValueError, OSError) as e:
            reason = f"Failed reading server output: {e}"
            logger.warning(f"[{self.server_id}] {reason}")
        finally:
            self.abort(reason)

    def _emit_output(self, text: str) -> None:
        if self._on_output is not None:
            self._on_output(text)

    async def _send(self, message: dict[str, Any]) -> None:
        if self._closed:
            raise TransportError(self.close_reason or "Channel is closed")
        try:
            self._writer.write((json.dumps(message) + "\n").encode("utf-8"))
            await self._writer.drain()
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            raise TransportError(f"Failed writing to server stdin: {e}") from e

    def abort(self, reason: str) -> None:
        """Mark the channel dead and fail every outstanding request."""
        if not self._closed:
            self._closed = True
            self.close_reason = reason
        self._fail_pending(reason)

    async def close(self) -> None:
        self.abort("Channel closed")
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
        try:
            self._writer.close()
        except (OSError, RuntimeError) as e:
            logger.debug(f"[{self.server_id}] Error closing stdin: {e}")


def _raise_for_status(response: httpx.Response, what: str) -> None:
    if response.status_code == 401:
        raise AuthenticationRequired(f"{what} rejected the credentials (HTTP 401)")
    if response.status_code >= 400:
        raise TransportError(
            f"{what} returned HTTP {response.status_code}",
            details={"status_code": response.status_code},
        )


class SseEventParser:
    """Incremental text/event-stream parser yielding (event, data) pairs."""

    def __init__(self) -> None:
        self._event = "message"
        self._data: list[str] = []

    def feed(self, line: str) -> Optional[tuple[str, str]]:
        if line == "":
            item = (self._event, "\n".join(self._data)) if self._data else None
            self._event, self._data = "message", []
            return item
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        return None

    def parse_all(self, text: str) -> list[tuple[str, str]]:
        items = [self.feed(line) for line in text.splitlines()]
        items.append(self.feed(""))
        return [item for item in items if item is not None]


class SseChannel(ProtocolChannel):
    """Legacy MCP SSE transport: GET event stream, POST messages."""

    multiplexed = True

    def __init__(
        self,
        config: SseServerConfig,
        headers: dict[str, str],
        *,
        recorder: Optional[DebugRecorder] = None,
        client: Optional[httpx.AsyncClient] = None,
        handshake_timeout: float = HANDSHAKE_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__(config.id, config.name, recorder)
        self._headers = headers
        self._stream_url = config.sse_endpoint or config.url
        self._post_url = urljoin(config.url, config.post_endpoint) if config.post_endpoint else None
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(HANDSHAKE_TIMEOUT_SECONDS, read=None))
        self._handshake_timeout = handshake_timeout
        self._ready = asyncio.Event()
        self._stream_task: Optional[asyncio.Task] = None
        self._failure: Optional[HubError] = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed and self._stream_task is not None and not self._stream_task.done()

    async def start(self) -> None:
        self._stream_task = asyncio.create_task(self._consume())
        waiter = asyncio.ensure_future(self._ready.wait())
        done, _ = await asyncio.wait(
            {waiter, self._stream_task},
            timeout=self._handshake_timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if waiter in done:
            return
        waiter.cancel()
        if self._stream_task in done:
            error = self._failure or TransportError("SSE stream closed before announcing its endpoint")
        else:
            error = TransportError(f"Timed out after {self._handshake_timeout:g}s waiting for the SSE endpoint")
        await self.close()
        raise error

    async def _consume(self) -> None:
        try:
            async with self._client.stream(
                "GET", self._stream_url, headers={**self._headers, "Accept": "text/event-stream"}
            ) as response:
                _raise_for_status(response, "SSE stream")
                if self._post_url:
                    self._ready.set()
                parser = SseEventParser()
                async for line in response.aiter_lines():
                    item = parser.feed(line)
                    if item is not None:
                        await self._handle_event(*item)
        except HubError as e:
            self._failure = e
        except httpx.HTTPError as e:
            self._failure = TransportError(f"SSE stream failed: {e}")
        finally:
            self._fail_pending(str(self._failure or "SSE stream closed"))

    async def _handle_event(self, event: str, data: str) -> None:
        if event == "endpoint":
            self._post_url = urljoin(self._stream_url, data.strip())
            self._ready.set()
            return
        if event != "message":
            return
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            logger.debug(f"[{self.server_id}] Ignoring non-JSON SSE data")
            return
        if isinstance(message, dict):
            await self._dispatch(message)

    async def _send(self, message: dict[str, Any]) -> None:
        if self._closed or self._post_url is None:
            raise TransportError("SSE channel is not ready")
        try:
            response = await self._client.post(
                self._post_url, json=message, headers={**self._headers, "Content-Type": "application/json"}
            )
        except httpx.HTTPError as e:
            raise TransportError(f"POST to {self._post_url} failed: {e}") from e
        _raise_for_status(response, "SSE message endpoint")
        # Some servers answer inline instead of on the stream
        if "application/json" in response.headers.get("content-type", "") and response.content:
            try:
                body = response.json()
            except ValueError:
                return
            if isinstance(body, dict) and "method" not in body:
                await self._dispatch(body)

    async def close(self) -> None:
        self._closed = True
        if self._stream_task is not None and not self._stream_task.done():
            self._stream_task.cancel()
            try:
                await self._stream_task
            except asyncio.CancelledError:
                pass
        self._fail_pending("Channel closed")
        if self._owns_client:
            await self._client.aclose()


class HttpChannel(ProtocolChannel):
    """Request/response JSON-RPC over HTTP (streamable HTTP servers included)."""

    def __init__(
        self,
        config: HttpServerConfig,
        headers: dict[str, str],
        *,
        recorder: Optional[DebugRecorder] = None,
        client: Optional[httpx.AsyncClient] = None,
        rate_limit: int = HTTP_RATE_LIMIT_REQUESTS,
        rate_window: float = HTTP_RATE_LIMIT_WINDOW_SECONDS,
    ) -> None:
        super().__init__(config.id, config.name, recorder)
        self._url = config.url
        self._method = config.method
        self._timeout = float(config.timeout)
        self._headers = headers
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self._timeout)
        self._rate_limit = rate_limit
        self._rate_window = rate_window
        self._request_times: deque[float] = deque()
        self._session_id: Optional[str] = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed

    def _check_rate_limit(self) -> None:
        now = time.monotonic()
        while self._request_times and now - self._request_times[0] >= self._rate_window:
            self._request_times.popleft()
        if len(self._request_times) >= self._rate_limit:
            raise TransportError(
                f"Rate limit exceeded: {self._rate_limit} requests per {self._rate_window:g}s"
            )
        self._request_times.append(now)

    async def _post(self, message: dict[str, Any]) -> httpx.Response:
        if self._closed:
            raise TransportError("HTTP channel is closed")
        self._check_rate_limit()
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            **self._headers,
        }
        if self._session_id:
            headers["Mcp-Session-Id"] = self._session_id
        try:
            response = await self._client.request(self._method, self._url, json=message, headers=headers)
        except httpx.TimeoutException as e:
            raise TransportError(f"HTTP request timed out after {self._timeout:g}s") from e
        except httpx.HTTPError as e:
            raise TransportError(f"HTTP request failed: {e}") from e
        _raise_for_status(response, "Server")
        session_id = response.headers.get("mcp-session-id")
        if session_id:
            self._session_id = session_id
        return response

    async def _send(self, message: dict[str, Any]) -> None:
        await self._post(message)

    async def _round_trip(self, message: dict[str, Any]) -> dict[str, Any]:
        response = await self._post(message)
        content_type = response.headers.get("content-type", "")
        if "text/event-stream" in content_type:
            candidates = []
            for _, data in SseEventParser().parse_all(response.text):
                try:
                    candidates.append(json.loads(data))
                except json.JSONDecodeError:
                    continue
        else:
            try:
                body = response.json()
            except ValueError as e:
                raise TransportError("Server returned a non-JSON response") from e
            candidates = body if isinstance(body, list) else [body]

        for candidate in candidates:
            if isinstance(candidate, dict) and candidate.get("id") == message["id"] and "method" not in candidate:
                return candidate
        raise TransportError(f"No response for request {message['id']} ({message['method']})")

    async def close(self) -> None:
        self._closed = True
        if self._owns_client:
            await self._client.aclose()


def open_remote_channel(
    config: RemoteServerConfig,
    headers: dict[str, str],
    recorder: Optional[DebugRecorder] = None,
) -> ProtocolChannel:
    """Build (but do not start) the channel for an sse or http configuration."""
    match config.transport:
        case "sse":
            return SseChannel(config, headers, recorder=recorder)
        case "http":
            return HttpChannel(config, headers, recorder=recorder)
    raise ValueError(f"No remote channel for transport '{config.transport}'")
