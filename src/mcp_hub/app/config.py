"""Configuration and constants."""

import json
import logging
import os
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

# Base storage directory
APP_HOME = Path(os.environ.get("MCP_HUB_HOME", Path.home() / ".mcp-hub"))

# Sub-directories
LOGS_DIR = APP_HOME / "logs"
STORE_DIR = APP_HOME / "store"

SETTINGS_FILE = APP_HOME / "settings.json"

# API settings
API_PREFIX = "/api"

# Persistence namespace for the key-value store
STORE_NAMESPACE = "mcp-hub"

# Protocol
PROTOCOL_VERSION = "2024-11-05"
HANDSHAKE_TIMEOUT_SECONDS = 30.0
TOOL_CALL_TIMEOUT_SECONDS = 60.0
HTTP_DEFAULT_TIMEOUT_SECONDS = 30
HTTP_RATE_LIMIT_REQUESTS = 100
HTTP_RATE_LIMIT_WINDOW_SECONDS = 60.0

# Connection history
MAX_HISTORY_ENTRIES = 100

# Process supervision
STARTUP_TIMEOUT_SECONDS = 30.0
STOP_TIMEOUT_SECONDS = 10.0
MAX_RESTART_ATTEMPTS = 3
RESTART_BASE_DELAY_SECONDS = 1.0
RESTART_MAX_DELAY_SECONDS = 30.0
RESTART_STABLE_SECONDS = 60.0
SAMPLE_INTERVAL_SECONDS = 5.0
MAX_RESOURCE_SAMPLES = 60
OUTPUT_TAIL_LINES = 200

# Health monitoring
PROBE_INTERVAL_SECONDS = 30
PROBE_TIMEOUT_SECONDS = 5.0
FAILURE_THRESHOLD = 3
RECONNECT_BASE_DELAY_SECONDS = 1.0
RECONNECT_MAX_DELAY_SECONDS = 8.0
MAX_RECONNECT_ATTEMPTS = 3
DEGRADED_RESPONSE_RATIO = 0.8
MAX_LATENCY_SAMPLES = 20

# OAuth
PENDING_FLOW_TTL_SECONDS = 300
TOKEN_EXCHANGE_TIMEOUT_SECONDS = 10.0
TOKEN_EXPIRY_BUFFER_SECONDS = 60

# Debug recorder capacities
MAX_LOG_ENTRIES = 1000
MAX_METRICS = 500
DEBUG_FLUSH_INTERVAL_SECONDS = 30

logger = logging.getLogger(__name__)


class HubSettings(BaseModel):
    """User-tunable settings read from settings.json."""

    probe_interval_seconds: int = Field(default=PROBE_INTERVAL_SECONDS, ge=5, le=3600)
    probe_timeout_seconds: float = Field(default=PROBE_TIMEOUT_SECONDS, gt=0, le=60)
    failure_threshold: int = Field(default=FAILURE_THRESHOLD, ge=2, le=20)
    max_reconnect_attempts: int = Field(default=MAX_RECONNECT_ATTEMPTS, ge=1, le=20)
    startup_timeout_seconds: float = Field(default=STARTUP_TIMEOUT_SECONDS, gt=0, le=300)
    max_restart_attempts: int = Field(default=MAX_RESTART_ATTEMPTS, ge=0, le=20)
    oauth_open_browser: bool = Field(default=True, description="Open the authorization URL in a browser")
    log_level: str = Field(default="INFO")


def load_settings(path: Path | None = None) -> HubSettings:
    """Load settings.json, falling back to defaults when missing or unreadable."""
    settings_file = path or SETTINGS_FILE
    if not settings_file.exists():
        return HubSettings()
    try:
        raw = json.loads(settings_file.read_text(encoding="utf-8"))
        return HubSettings.model_validate(raw)
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        logger.warning(f"Ignoring unreadable settings file {settings_file}: {e}")
        return HubSettings()


def ensure_directories() -> None:
    """Create required directories if they don't exist."""
    for directory in [APP_HOME, LOGS_DIR, STORE_DIR]:
        directory.mkdir(parents=True, exist_ok=True)
