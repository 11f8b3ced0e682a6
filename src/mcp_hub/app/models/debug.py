"""Debug log and performance metric models."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from mcp_hub.app.models.common import utc_now


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class LogCategory(str, Enum):
    MCP = "mcp"
    CONNECTION = "connection"
    TOOL = "tool"
    CHAT = "chat"
    SYSTEM = "system"


class CapturedError(BaseModel):
    name: str
    message: str
    stack: str | None = None


class DebugLogEntry(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: datetime = Field(default_factory=utc_now)
    level: LogLevel
    category: LogCategory
    message: str
    data: Any = None
    server_id: str | None = None
    server_name: str | None = None
    error: CapturedError | None = None


class PerformanceMetric(BaseModel):
    timestamp: datetime = Field(default_factory=utc_now)
    server_id: str
    server_name: str | None = None
    operation: str
    duration_ms: float = Field(..., ge=0)
    success: bool
    error: str | None = None


class LogQuery(BaseModel):
    """Filters for querying the debug log. All are optional and combined with AND."""

    level: LogLevel | None = None
    category: LogCategory | None = None
    server_id: str | None = None
    search: str | None = Field(default=None, description="Case-insensitive substring over message, server name and data")
    limit: int | None = Field(default=None, ge=1)


class MetricQuery(BaseModel):
    server_id: str | None = None
    operation: str | None = None
    success: bool | None = None
    limit: int | None = Field(default=None, ge=1)


class ServerPerformanceStats(BaseModel):
    server_id: str
    server_name: str | None = None
    total_operations: int
    avg_duration_ms: float
    success_rate: float = Field(..., description="Percentage of successful operations (0-100)")


class DebugExport(BaseModel):
    exported_at: datetime = Field(default_factory=utc_now)
    logs: list[DebugLogEntry]
    metrics: list[PerformanceMetric]
