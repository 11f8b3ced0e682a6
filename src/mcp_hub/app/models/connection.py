"""Connection state, inventory and health models."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from mcp_hub.app.models.common import utc_now


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    RECONNECTING = "reconnecting"


class ToolDefinition(BaseModel):
    """A tool advertised by a connected server (tools/list)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    description: str | None = None
    input_schema: dict[str, Any] = Field(default_factory=dict, alias="inputSchema")


class ResourceDefinition(BaseModel):
    """A resource advertised by a connected server (resources/list)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    uri: str
    name: str | None = None
    description: str | None = None
    mime_type: str | None = Field(default=None, alias="mimeType")


class PromptArgument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    description: str | None = None
    required: bool = False


class PromptTemplate(BaseModel):
    """A prompt template advertised by a connected server (prompts/list)."""

    model_config = ConfigDict(extra="ignore")

    name: str
    description: str | None = None
    arguments: list[PromptArgument] = Field(default_factory=list)


class ConnectionState(BaseModel):
    """Per-server connection state owned by the connection manager.

    Inventories are only populated while ``status`` is connected.
    """

    server_id: str
    server_name: str | None = None
    transport: str | None = None
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    connected_at: datetime | None = None
    last_error: str | None = None
    error_count: int = 0
    tools: list[ToolDefinition] = Field(default_factory=list)
    resources: list[ResourceDefinition] = Field(default_factory=list)
    prompts: list[PromptTemplate] = Field(default_factory=list)
    server_info: dict[str, Any] | None = Field(default=None, description="serverInfo from the initialize reply")
    protocol_version: str | None = None
    last_ping_ms: float | None = None


class ConnectionHistoryEntry(BaseModel):
    server_id: str
    server_name: str | None = None
    status: ConnectionStatus
    timestamp: datetime = Field(default_factory=utc_now)
    error: str | None = None
    duration_ms: float | None = None


class ToolCallResult(BaseModel):
    """Outcome of a tools/call request."""

    server_id: str
    tool_name: str
    content: list[dict[str, Any]] = Field(default_factory=list)
    structured_content: dict[str, Any] | None = None
    is_error: bool = False
    duration_ms: float
    timestamp: datetime = Field(default_factory=utc_now)


class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    OFFLINE = "offline"


class HealthReport(BaseModel):
    """Latest probe results for one monitored server."""

    server_id: str
    status: HealthStatus = HealthStatus.UNKNOWN
    last_check: datetime | None = None
    response_time_ms: float | None = None
    consecutive_failures: int = 0
    reconnect_attempts: int = 0
    latency_samples: list[float] = Field(default_factory=list)
    error: str | None = None


class ToolInvocation(BaseModel):
    """Body of a tool call request."""

    arguments: dict[str, Any] = Field(default_factory=dict)
    timeout: float | None = Field(default=None, gt=0, le=600, description="Seconds; defaults to 60")
