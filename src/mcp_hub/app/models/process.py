"""Subprocess lifecycle models for stdio servers."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, computed_field

from mcp_hub.app.models.common import utc_now


class ProcessState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    RESTARTING = "restarting"
    ERROR = "error"


# States in which a live OS process (and therefore a pid) exists
PID_STATES = frozenset({ProcessState.STARTING, ProcessState.RUNNING, ProcessState.STOPPING})


class ResourceSample(BaseModel):
    timestamp: datetime = Field(default_factory=utc_now)
    memory_bytes: int
    cpu_percent: float


class ServerProcess(BaseModel):
    """Snapshot of a supervised subprocess."""

    server_id: str
    server_name: str | None = None
    pid: int | None = None
    state: ProcessState = ProcessState.STOPPED
    started_at: datetime | None = None
    stopped_at: datetime | None = None
    exit_code: int | None = None
    restart_count: int = 0
    last_error: str | None = None
    resource_samples: list[ResourceSample] = Field(default_factory=list)
    output_tail: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def uptime_seconds(self) -> float | None:
        if self.state != ProcessState.RUNNING or self.started_at is None:
            return None
        return round((utc_now() - self.started_at).total_seconds(), 3)
