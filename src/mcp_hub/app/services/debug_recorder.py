"""Bounded debug log and performance metric recorder.

Every component writes here. Entries live in fixed-capacity ring buffers
(oldest evicted first) and are mirrored to the standard logging tree
under ``mcp_hub.debug``. Recording is best effort: nothing in this module
raises into the caller.
"""

import json
import logging
import time
import traceback
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from pydantic import TypeAdapter

from mcp_hub.app.config import MAX_LOG_ENTRIES, MAX_METRICS
from mcp_hub.app.models.debug import (
    CapturedError,
    DebugExport,
    DebugLogEntry,
    LogCategory,
    LogLevel,
    LogQuery,
    MetricQuery,
    PerformanceMetric,
    ServerPerformanceStats,
)
from mcp_hub.app.services.logging_service import get_logger
from mcp_hub.app.services.persistence import (
    DEBUG_LOGS_KEY,
    DEBUG_METRICS_KEY,
    KeyValueStore,
    load_models,
    save_models,
)

logger = get_logger(__name__)
mirror_logger = get_logger("mcp_hub.debug")

_LEVEL_MAP = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}

_log_list = TypeAdapter(list[DebugLogEntry])
_metric_list = TypeAdapter(list[PerformanceMetric])


def capture_error(error: BaseException) -> CapturedError:
    stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return CapturedError(name=type(error).__name__, message=str(error), stack=stack or None)


class DebugRecorder:
    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        log_capacity: int = MAX_LOG_ENTRIES,
        metric_capacity: int = MAX_METRICS,
    ) -> None:
        self._store = store
        self._logs: deque[DebugLogEntry] = deque(maxlen=log_capacity)
        self._metrics: deque[PerformanceMetric] = deque(maxlen=metric_capacity)
        self._dirty = False

    @property
    def log_capacity(self) -> int:
        return self._logs.maxlen

    @property
    def metric_capacity(self) -> int:
        return self._metrics.maxlen

    # ── recording ──────────────────────────────────────────────────────

    def record(self, entry: DebugLogEntry) -> None:
        try:
            self._logs.append(entry)
            self._dirty = True
            prefix = f"[{entry.server_name or entry.server_id}] " if entry.server_id else ""
            mirror_logger.log(_LEVEL_MAP[entry.level], f"{entry.category.value}: {prefix}{entry.message}")
        except Exception as e:
            logger.warning(f"Failed to record debug entry: {e}")

    def log(
        self,
        level: LogLevel | str,
        category: LogCategory | str,
        message: str,
        *,
        server_id: Optional[str] = None,
        server_name: Optional[str] = None,
        data: Any = None,
        error: Optional[BaseException] = None,
    ) -> Optional[DebugLogEntry]:
        try:
            entry = DebugLogEntry(
                level=LogLevel(level),
                category=LogCategory(category),
                message=message,
                data=data,
                server_id=server_id,
                server_name=server_name,
                error=capture_error(error) if error is not None else None,
            )
        except Exception as e:
            logger.warning(f"Dropping malformed debug entry '{message}': {e}")
            return None
        self.record(entry)
        return entry

    def record_metric(self, metric: PerformanceMetric) -> None:
        try:
            self._metrics.append(metric)
            self._dirty = True
        except Exception as e:
            logger.warning(f"Failed to record metric: {e}")

    def metric(
        self,
        server_id: str,
        operation: str,
        duration_ms: float,
        success: bool,
        *,
        server_name: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Optional[PerformanceMetric]:
        try:
            metric = PerformanceMetric(
                server_id=server_id,
                server_name=server_name,
                operation=operation,
                duration_ms=max(0.0, duration_ms),
                success=success,
                error=error,
            )
        except Exception as e:
            logger.warning(f"Dropping malformed metric '{operation}': {e}")
            return None
        self.record_metric(metric)
        return metric

    @asynccontextmanager
    async def measure(
        self,
        server_id: str,
        operation: str,
        server_name: Optional[str] = None,
    ) -> AsyncIterator[None]:
        """Time the wrapped block and record a metric; exceptions propagate."""
        start = time.perf_counter()
        try:
            yield
        except BaseException as e:
            self.metric(
                server_id, operation, (time.perf_counter() - start) * 1000, False,
                server_name=server_name, error=str(e) or type(e).__name__,
            )
            raise
        self.metric(server_id, operation, (time.perf_counter() - start) * 1000, True, server_name=server_name)

    # JSON-RPC traffic helpers

    def log_request(self, server_id: str, server_name: Optional[str], method: str, params: Any = None) -> None:
        self.log(
            LogLevel.DEBUG, LogCategory.MCP, f"→ {method}",
            server_id=server_id, server_name=server_name, data={"method": method, "params": params},
        )

    def log_response(
        self, server_id: str, server_name: Optional[str], method: str, result: Any = None, duration_ms: Optional[float] = None
    ) -> None:
        self.log(
            LogLevel.DEBUG, LogCategory.MCP, f"← {method}",
            server_id=server_id, server_name=server_name,
            data={"method": method, "result": result, "duration_ms": duration_ms},
        )

    def log_error(self, server_id: str, server_name: Optional[str], method: str, error: BaseException) -> None:
        self.log(
            LogLevel.ERROR, LogCategory.MCP, f"✗ {method}: {error}",
            server_id=server_id, server_name=server_name, data={"method": method}, error=error,
        )

    # ── queries ────────────────────────────────────────────────────────

    def query(self, filters: Optional[LogQuery] = None) -> list[DebugLogEntry]:
        """Matching entries, newest first."""
        filters = filters or LogQuery()
        needle = filters.search.casefold() if filters.search else None
        results: list[DebugLogEntry] = []
        for entry in reversed(self._logs):
            if filters.level and entry.level != filters.level:
                continue
            if filters.category and entry.category != filters.category:
                continue
            if filters.server_id and entry.server_id != filters.server_id:
                continue
            if needle and not self._matches(entry, needle):
                continue
            results.append(entry)
            if filters.limit and len(results) >= filters.limit:
                break
        return results

    @staticmethod
    def _matches(entry: DebugLogEntry, needle: str) -> bool:
        if needle in entry.message.casefold():
            return True
        if entry.server_name and needle in entry.server_name.casefold():
            return True
        if entry.data is not None:
            try:
                payload = json.dumps(entry.data, default=str)
            except (TypeError, ValueError):
                payload = str(entry.data)
            if needle in payload.casefold():
                return True
        return False

    def query_metrics(self, filters: Optional[MetricQuery] = None) -> list[PerformanceMetric]:
        filters = filters or MetricQuery()
        results: list[PerformanceMetric] = []
        for metric in reversed(self._metrics):
            if filters.server_id and metric.server_id != filters.server_id:
                continue
            if filters.operation and metric.operation != filters.operation:
                continue
            if filters.success is not None and metric.success != filters.success:
                continue
            results.append(metric)
            if filters.limit and len(results) >= filters.limit:
                break
        return results

    def aggregate(self) -> list[ServerPerformanceStats]:
        """Per-server operation count, mean duration and success rate."""
        buckets: dict[str, list[PerformanceMetric]] = {}
        for metric in self._metrics:
            buckets.setdefault(metric.server_id, []).append(metric)

        stats = []
        for server_id, metrics in buckets.items():
            total = len(metrics)
            successes = sum(1 for m in metrics if m.success)
            stats.append(
                ServerPerformanceStats(
                    server_id=server_id,
                    server_name=next((m.server_name for m in reversed(metrics) if m.server_name), None),
                    total_operations=total,
                    avg_duration_ms=round(sum(m.duration_ms for m in metrics) / total, 3),
                    success_rate=round(successes / total * 100, 2),
                )
            )
        return stats

    def server_stats(self, server_id: str) -> Optional[ServerPerformanceStats]:
        return next((s for s in self.aggregate() if s.server_id == server_id), None)

    # ── operator actions ───────────────────────────────────────────────

    def clear(self) -> None:
        self._logs.clear()
        self._dirty = True

    def clear_metrics(self) -> None:
        self._metrics.clear()
        self._dirty = True

    def export(self) -> DebugExport:
        return DebugExport(logs=list(self._logs), metrics=list(self._metrics))

    def forget_server(self, server_id: str) -> None:
        """Drop metrics for a removed server so aggregates stop listing it."""
        kept = [m for m in self._metrics if m.server_id != server_id]
        self._metrics.clear()
        self._metrics.extend(kept)
        self._dirty = True

    # ── persistence ────────────────────────────────────────────────────

    def load(self) -> None:
        if self._store is None:
            return
        self._logs.extend(load_models(self._store, DEBUG_LOGS_KEY, _log_list))
        self._metrics.extend(load_models(self._store, DEBUG_METRICS_KEY, _metric_list))
        self._dirty = False

    def flush(self) -> None:
        if self._store is None or not self._dirty:
            return
        try:
            save_models(self._store, DEBUG_LOGS_KEY, _log_list, list(self._logs))
            save_models(self._store, DEBUG_METRICS_KEY, _metric_list, list(self._metrics))
            self._dirty = False
        except Exception as e:
            logger.warning(f"Failed to persist debug buffers: {e}")
