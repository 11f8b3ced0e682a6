"""Server-aware logging service.

Provides file-based logging organized by MCP server, with both console
and persistent file output.

Log structure:
    ~/.mcp-hub/logs/
    ├── hub.log                 # Global hub events
    └── servers/
        └── {server_id}.log     # Per-server logs
"""

import logging
import sys
from contextvars import ContextVar
from typing import Optional

from mcp_hub.app.config import LOGS_DIR

# Context variable for server-aware logging
_current_server_id: ContextVar[Optional[str]] = ContextVar("server_id", default=None)

SERVER_LOGS_DIR = LOGS_DIR / "servers"

# Log format
LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def ensure_log_dirs() -> None:
    """Create log directories if they don't exist."""
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    SERVER_LOGS_DIR.mkdir(exist_ok=True)


class ServerFileHandler(logging.Handler):
    """Handler that writes to server-specific log files.

    Uses a context variable to determine which MCP server the record
    belongs to. Records outside any server context go to hub.log.
    """

    def __init__(self):
        super().__init__()
        self._file_handlers: dict[str, logging.FileHandler] = {}
        self._hub_handler: Optional[logging.FileHandler] = None
        ensure_log_dirs()

    def _get_hub_handler(self) -> logging.FileHandler:
        if self._hub_handler is None:
            self._hub_handler = logging.FileHandler(LOGS_DIR / "hub.log", encoding="utf-8")
            self._hub_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        return self._hub_handler

    def _get_server_handler(self, server_id: str) -> logging.FileHandler:
        if server_id not in self._file_handlers:
            handler = logging.FileHandler(SERVER_LOGS_DIR / f"{server_id}.log", encoding="utf-8")
            handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
            self._file_handlers[server_id] = handler
        return self._file_handlers[server_id]

    def emit(self, record: logging.LogRecord) -> None:
        try:
            server_id = _current_server_id.get()
            if server_id:
                self._get_server_handler(server_id).emit(record)
                return
            self._get_hub_handler().emit(record)
        except Exception:
            self.handleError(record)

    def release(self, server_id: str) -> None:
        """Close the log file of a removed server."""
        handler = self._file_handlers.pop(server_id, None)
        if handler:
            handler.close()

    def close(self) -> None:
        if self._hub_handler:
            self._hub_handler.close()
        for handler in self._file_handlers.values():
            handler.close()
        self._file_handlers.clear()
        super().close()


class ServerLogContext:
    """Context manager routing log records to one server's log file."""

    def __init__(self, server_id: Optional[str] = None):
        self.server_id = server_id
        self._token = None

    def __enter__(self) -> "ServerLogContext":
        if self.server_id:
            self._token = _current_server_id.set(self.server_id)
        return self

    def __exit__(self, *args) -> None:
        if self._token:
            _current_server_id.reset(self._token)


_server_file_handler: Optional[ServerFileHandler] = None


def setup_logging(level: int | str = logging.INFO) -> None:
    """Configure logging with both console and per-server file output.

    Call this once at application startup.
    """
    global _server_file_handler

    ensure_log_dirs()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    try:
        stream = open(sys.stdout.fileno(), mode="w", encoding="utf-8", errors="replace", closefd=False)
    except (OSError, ValueError):
        # stdout without a file descriptor (captured or redirected in-process)
        stream = sys.stdout
    console_handler = logging.StreamHandler(stream)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter("%(levelname)-7s | %(name)s - %(message)s"))
    root_logger.addHandler(console_handler)

    _server_file_handler = ServerFileHandler()
    _server_file_handler.setLevel(level)
    root_logger.addHandler(_server_file_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sse_starlette.sse").setLevel(logging.WARNING)
    logging.getLogger("tzlocal").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    logging.info(f"Logging initialized. Logs dir: {LOGS_DIR}")


def release_server_log(server_id: str) -> None:
    """Close the file handle kept for a server, if logging is set up."""
    if _server_file_handler is not None:
        _server_file_handler.release(server_id)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)


def _tail_lines(lines: list[str], tail: Optional[int]) -> list[str]:
    if tail and tail > 0:
        return lines[-tail:]
    return lines


def read_server_logs(
    server_id: str,
    tail: Optional[int] = None,
    level: Optional[str] = None,
) -> list[str]:
    """Read logs for a specific MCP server."""
    log_file = SERVER_LOGS_DIR / f"{server_id}.log"
    if not log_file.exists():
        return []

    lines = log_file.read_text(encoding="utf-8").splitlines()

    if level:
        level_upper = level.upper()
        lines = [l for l in lines if f"| {level_upper}" in l]

    return _tail_lines(lines, tail)


def read_hub_logs(tail: Optional[int] = 100) -> list[str]:
    """Read the global hub log."""
    log_file = LOGS_DIR / "hub.log"
    if not log_file.exists():
        return []
    return _tail_lines(log_file.read_text(encoding="utf-8").splitlines(), tail)
