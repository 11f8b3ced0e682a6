"""Supervisor for locally spawned stdio MCP servers.

Each stdio server gets one OS process and one StdioChannel on its pipes.
A process counts as running once the initialize handshake succeeds on
that channel. Unexpected exits move the process to error, bump its
restart counter and, when the configuration asks for it, respawn it
with exponential backoff until the consecutive-failure limit is hit.

State machine:
    stopped -> starting -> running -> stopping -> stopped
    running -> restarting -> starting -> running
    starting | running -> error (spawn failure, startup timeout, crash)
"""

import asyncio
import os
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

import psutil
from pydantic import TypeAdapter

from mcp_hub.app.config import (
    MAX_RESOURCE_SAMPLES,
    MAX_RESTART_ATTEMPTS,
    OUTPUT_TAIL_LINES,
    RESTART_BASE_DELAY_SECONDS,
    RESTART_MAX_DELAY_SECONDS,
    RESTART_STABLE_SECONDS,
    SAMPLE_INTERVAL_SECONDS,
    STARTUP_TIMEOUT_SECONDS,
    STOP_TIMEOUT_SECONDS,
)
from mcp_hub.app.models.common import utc_now
from mcp_hub.app.models.debug import LogCategory, LogLevel
from mcp_hub.app.models.process import PID_STATES, ProcessState, ResourceSample, ServerProcess
from mcp_hub.app.models.server import StdioServerConfig
from mcp_hub.app.services import event_bus as events
from mcp_hub.app.services.debug_recorder import DebugRecorder
from mcp_hub.app.services.errors import ProcessNotFound, ProcessSpawnFailed, RestartLimitExceeded
from mcp_hub.app.services.event_bus import EventBus
from mcp_hub.app.services.logging_service import ServerLogContext, get_logger
from mcp_hub.app.services.persistence import PROCESSES_KEY, KeyValueStore, load_models, save_models
from mcp_hub.app.services.transports import STDIO_LINE_LIMIT, StdioChannel

logger = get_logger(__name__)

_process_list = TypeAdapter(list[ServerProcess])


@dataclass
class _Supervised:
    """Mutable bookkeeping for one supervised server."""

    config: StdioServerConfig
    state: ServerProcess
    process: Optional[asyncio.subprocess.Process] = None
    channel: Optional[StdioChannel] = None
    output: deque = field(default_factory=lambda: deque(maxlen=OUTPUT_TAIL_LINES))
    samples: deque = field(default_factory=lambda: deque(maxlen=MAX_RESOURCE_SAMPLES))
    tasks: set = field(default_factory=set)
    restart_task: Optional[asyncio.Task] = None
    consecutive_failures: int = 0
    expected_exit: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ProcessLifecycleManager:
    def __init__(
        self,
        recorder: DebugRecorder,
        bus: EventBus,
        store: Optional[KeyValueStore] = None,
        *,
        startup_timeout: float = STARTUP_TIMEOUT_SECONDS,
        stop_timeout: float = STOP_TIMEOUT_SECONDS,
        max_restart_attempts: int = MAX_RESTART_ATTEMPTS,
        restart_base_delay: float = RESTART_BASE_DELAY_SECONDS,
        restart_max_delay: float = RESTART_MAX_DELAY_SECONDS,
        restart_stable_seconds: float = RESTART_STABLE_SECONDS,
        sample_interval: float = SAMPLE_INTERVAL_SECONDS,
    ) -> None:
        self._recorder = recorder
        self._bus = bus
        self._store = store
        self._startup_timeout = startup_timeout
        self._stop_timeout = stop_timeout
        self._max_restart_attempts = max_restart_attempts
        self._restart_base_delay = restart_base_delay
        self._restart_max_delay = restart_max_delay
        self._restart_stable_seconds = restart_stable_seconds
        self._sample_interval = sample_interval
        self._records: dict[str, _Supervised] = {}
        # Snapshots from a previous run, kept for their restart counters
        self._restored: dict[str, ServerProcess] = {}

    # ── persistence ────────────────────────────────────────────────────

    def load(self) -> None:
        if self._store is None:
            return
        for snapshot in load_models(self._store, PROCESSES_KEY, _process_list):
            self._restored[snapshot.server_id] = snapshot.model_copy(
                update={"state": ProcessState.STOPPED, "pid": None, "resource_samples": []}
            )

    def _persist(self) -> None:
        if self._store is None:
            return
        snapshots = {**self._restored, **{sid: self._snapshot(r) for sid, r in self._records.items()}}
        try:
            save_models(self._store, PROCESSES_KEY, _process_list, list(snapshots.values()))
        except Exception as e:
            logger.warning(f"Failed to persist process snapshots: {e}")

    # ── accessors ──────────────────────────────────────────────────────

    @staticmethod
    def _snapshot(record: _Supervised) -> ServerProcess:
        return record.state.model_copy(
            update={"output_tail": list(record.output), "resource_samples": list(record.samples)},
            deep=True,
        )

    def get_state(self, server_id: str) -> Optional[ServerProcess]:
        record = self._records.get(server_id)
        if record is not None:
            return self._snapshot(record)
        restored = self._restored.get(server_id)
        return restored.model_copy(deep=True) if restored else None

    def list_states(self) -> list[ServerProcess]:
        return [self._snapshot(r) for r in self._records.values()]

    def channel(self, server_id: str) -> StdioChannel:
        """The protocol channel of a running process."""
        record = self._records.get(server_id)
        if (
            record is None
            or record.state.state != ProcessState.RUNNING
            or record.channel is None
            or not record.channel.is_open
        ):
            raise ProcessSpawnFailed(f"Process for '{server_id}' is not running")
        return record.channel

    def is_running(self, server_id: str) -> bool:
        record = self._records.get(server_id)
        return record is not None and record.state.state == ProcessState.RUNNING

    # ── state bookkeeping ──────────────────────────────────────────────

    def _record_for(self, config: StdioServerConfig) -> _Supervised:
        record = self._records.get(config.id)
        if record is None:
            state = self._restored.pop(config.id, None) or ServerProcess(server_id=config.id)
            state.server_name = config.name
            record = _Supervised(config=config, state=state)
            self._records[config.id] = record
        else:
            record.config = config
            record.state.server_name = config.name
        return record

    def _set_state(self, record: _Supervised, state: ProcessState, **changes) -> None:
        previous = record.state.state
        for key, value in changes.items():
            setattr(record.state, key, value)
        record.state.state = state
        if state not in PID_STATES:
            record.state.pid = None
        self._persist()
        self._bus.publish(
            events.PROCESS_STATE,
            record.config.id,
            state=state.value,
            previous=previous.value,
            pid=record.state.pid,
            restart_count=record.state.restart_count,
        )
        level = LogLevel.ERROR if state == ProcessState.ERROR else LogLevel.INFO
        self._recorder.log(
            level,
            LogCategory.SYSTEM,
            f"Process {previous.value} → {state.value}",
            server_id=record.config.id,
            server_name=record.config.name,
            data={"pid": record.state.pid, "error": record.state.last_error},
        )

    def _last_output(self, record: _Supervised) -> str:
        return record.output[-1] if record.output else ""

    def _with_output(self, record: _Supervised, reason: str) -> str:
        last = self._last_output(record)
        return f"{reason}: {last[:500]}" if last else reason

    def _cancel_tasks(self, record: _Supervised) -> None:
        current = asyncio.current_task()
        for task in list(record.tasks):
            if task is not current and not task.done():
                task.cancel()
        record.tasks.clear()

    def _cancel_restart(self, record: _Supervised) -> None:
        task = record.restart_task
        record.restart_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _track(self, record: _Supervised, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        record.tasks.add(task)
        task.add_done_callback(record.tasks.discard)
        return task

    # ── spawning ───────────────────────────────────────────────────────

    async def _spawn(self, record: _Supervised) -> None:
        config = record.config
        record.expected_exit = False
        env = {**os.environ, **config.env}
        try:
            process = await asyncio.create_subprocess_exec(
                config.command,
                *config.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=config.cwd or None,
                limit=STDIO_LINE_LIMIT,
            )
        except (OSError, ValueError) as e:
            message = f"Failed to spawn '{config.command}': {e}"
            self._set_state(record, ProcessState.ERROR, last_error=message, stopped_at=utc_now())
            raise ProcessSpawnFailed(message) from e

        record.process = process
        record.samples.clear()
        self._set_state(
            record,
            ProcessState.STARTING,
            pid=process.pid,
            started_at=utc_now(),
            stopped_at=None,
            exit_code=None,
            last_error=None,
        )
        with ServerLogContext(config.id):
            logger.info(f"Spawned '{config.command}' for {config.name} (pid={process.pid})")

        channel = StdioChannel(
            config.id,
            process.stdout,
            process.stdin,
            server_name=config.name,
            recorder=self._recorder,
            on_output=record.output.append,
        )
        record.channel = channel
        handshake = exited = None
        try:
            await channel.start()
            self._track(record, self._pump_stderr(record, process))

            handshake = asyncio.ensure_future(channel.initialize(timeout=self._startup_timeout))
            exited = asyncio.ensure_future(process.wait())
            done, _ = await asyncio.wait(
                {handshake, exited},
                timeout=self._startup_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            for future in (handshake, exited):
                if future is not None and not future.done():
                    future.cancel()
            await asyncio.shield(self._abandon_startup(record))
            raise

        if handshake in done and handshake.exception() is None:
            exited.cancel()
            self._set_state(record, ProcessState.RUNNING)
            self._track(record, self._watch(record, process))
            self._track(record, self._sample(record, process.pid))
            return

        if handshake in done:
            reason = f"Startup handshake failed: {handshake.exception()}"
        elif exited in done:
            reason = f"Process exited during startup with code {process.returncode}"
        else:
            reason = f"No handshake within {self._startup_timeout:g}s"
        for future in (handshake, exited):
            if not future.done():
                future.cancel()

        # Let stderr deliver the reason the process died
        await asyncio.sleep(0.05)
        reason = self._with_output(record, reason)
        await self._terminate(record, force=True)
        self._set_state(record, ProcessState.ERROR, last_error=reason, stopped_at=utc_now())
        raise ProcessSpawnFailed(reason)

    async def _abandon_startup(self, record: _Supervised) -> None:
        await self._terminate(record, force=True)
        self._set_state(record, ProcessState.STOPPED, last_error="Startup cancelled", stopped_at=utc_now())
        with ServerLogContext(record.config.id):
            logger.info(f"Startup of {record.config.name} cancelled, process killed")

    async def _pump_stderr(self, record: _Supervised, process: asyncio.subprocess.Process) -> None:
        while True:
            try:
                line = await process.stderr.readline()
            except ValueError:
                # Line longer than the stream limit; the buffer was discarded
                continue
            except OSError:
                return
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                record.output.append(text)
                with ServerLogContext(record.config.id):
                    logger.debug(f"[stderr] {text}")

    async def _sample(self, record: _Supervised, pid: int) -> None:
        try:
            proc = psutil.Process(pid)
            proc.cpu_percent(None)
        except psutil.Error:
            return
        while True:
            await asyncio.sleep(self._sample_interval)
            try:
                with proc.oneshot():
                    memory = proc.memory_info().rss
                    cpu = proc.cpu_percent(None)
            except psutil.Error:
                return
            record.samples.append(ResourceSample(memory_bytes=memory, cpu_percent=cpu))

    async def _terminate(self, record: _Supervised, force: bool) -> None:
        process = record.process
        record.expected_exit = True
        if record.channel is not None:
            await record.channel.close()
        if process is not None and process.returncode is None:
            try:
                if force:
                    process.kill()
                else:
                    process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=self._stop_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"{record.config.name} ignored SIGTERM for {self._stop_timeout:g}s, killing")
                process.kill()
                await process.wait()
        if process is not None:
            record.state.exit_code = process.returncode
        record.process = None
        record.channel = None
        self._cancel_tasks(record)

    # ── unexpected exits ───────────────────────────────────────────────

    async def _watch(self, record: _Supervised, process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        if record.expected_exit or record.process is not process:
            return
        self._on_unexpected_exit(record, code)

    def _on_unexpected_exit(self, record: _Supervised, code: int) -> None:
        config = record.config
        started = record.state.started_at
        if started is not None and (utc_now() - started).total_seconds() >= self._restart_stable_seconds:
            record.consecutive_failures = 0

        reason = self._with_output(record, f"Process exited unexpectedly with code {code}")
        if record.channel is not None:
            record.channel.abort(reason)
        record.channel = None
        record.process = None
        self._cancel_tasks(record)

        self._set_state(
            record,
            ProcessState.ERROR,
            exit_code=code,
            last_error=reason,
            stopped_at=utc_now(),
            restart_count=record.state.restart_count + 1,
        )
        with ServerLogContext(config.id):
            logger.warning(f"{config.name}: {reason}")
        self._bus.publish(
            events.PROCESS_EXITED,
            config.id,
            exit_code=code,
            restart_count=record.state.restart_count,
            auto_restart=config.auto_restart,
        )

        if not config.auto_restart:
            return
        record.consecutive_failures += 1
        self._schedule_restart(record)

    def _schedule_restart(self, record: _Supervised) -> None:
        if record.consecutive_failures > self._max_restart_attempts:
            error = RestartLimitExceeded(
                f"Gave up after {self._max_restart_attempts} restart attempt(s); manual restart required"
            )
            record.state.last_error = error.message
            self._persist()
            self._recorder.log(
                LogLevel.ERROR, LogCategory.SYSTEM, error.message,
                server_id=record.config.id, server_name=record.config.name, error=error,
            )
            self._bus.publish(events.PROCESS_RESTART_LIMIT, record.config.id, message=error.message)
            return
        delay = min(
            self._restart_base_delay * 2 ** (record.consecutive_failures - 1),
            self._restart_max_delay,
        )
        logger.info(f"Restarting {record.config.name} in {delay:g}s (attempt {record.consecutive_failures})")
        record.restart_task = asyncio.create_task(self._restart_after(record, delay))

    async def _restart_after(self, record: _Supervised, delay: float) -> None:
        await asyncio.sleep(delay)
        async with record.lock:
            if self._records.get(record.config.id) is not record or record.state.state != ProcessState.ERROR:
                return
            record.restart_task = None
            try:
                await self._spawn(record)
            except ProcessSpawnFailed:
                record.consecutive_failures += 1
                self._schedule_restart(record)

    # ── public operations ──────────────────────────────────────────────

    async def ensure_running(self, config: StdioServerConfig) -> ServerProcess:
        """Start the process if needed and wait until its handshake succeeds."""
        record = self._record_for(config)
        async with record.lock:
            if (
                record.state.state == ProcessState.RUNNING
                and record.channel is not None
                and record.channel.is_open
            ):
                return self._snapshot(record)
            self._cancel_restart(record)
            await self._spawn(record)
            return self._snapshot(record)

    async def stop(self, server_id: str, force: bool = False) -> ServerProcess:
        record = self._records.get(server_id)
        if record is None:
            return self.get_state(server_id) or ServerProcess(server_id=server_id)
        async with record.lock:
            self._cancel_restart(record)
            if record.process is None:
                if record.state.state != ProcessState.STOPPED:
                    self._set_state(record, ProcessState.STOPPED)
                return self._snapshot(record)
            self._set_state(record, ProcessState.STOPPING)
            await self._terminate(record, force)
            self._set_state(record, ProcessState.STOPPED, stopped_at=utc_now())
            with ServerLogContext(server_id):
                logger.info(f"Stopped {record.config.name}{' (forced)' if force else ''}")
            return self._snapshot(record)

    async def restart(self, server_id: str, config: Optional[StdioServerConfig] = None) -> ServerProcess:
        """Stop and respawn; counts as a restart even when nothing was running."""
        if config is not None:
            record = self._record_for(config)
        else:
            record = self._records.get(server_id)
            if record is None:
                raise ProcessNotFound(f"No process known for '{server_id}'")
        async with record.lock:
            self._cancel_restart(record)
            record.consecutive_failures = 0
            self._set_state(
                record,
                ProcessState.RESTARTING,
                restart_count=record.state.restart_count + 1,
            )
            if record.process is not None:
                await self._terminate(record, force=False)
            await self._spawn(record)
            return self._snapshot(record)

    async def remove(self, server_id: str) -> None:
        """Force-stop and forget a server; its restart counter goes with it."""
        self._restored.pop(server_id, None)
        record = self._records.pop(server_id, None)
        if record is None:
            self._persist()
            return
        self._cancel_restart(record)
        async with record.lock:
            if record.process is not None:
                await self._terminate(record, force=True)
            self._cancel_tasks(record)
        self._persist()

    async def shutdown(self) -> None:
        await asyncio.gather(
            *(self.stop(server_id) for server_id in list(self._records)),
            return_exceptions=True,
        )
