"""Instance process lifecycle: spawn, output pumping, stop and exit reaction.

The running-process table is owned by one ProcessSupervisor. Every
mutation of it happens on the event loop, and each spawned process gets a
single pump task that drains both of its output streams through one
queue, so log appends and status changes for an instance happen in one
place.

stop() is optimistic: it kills the process tree, drops the table entry and
reports `stopped` without waiting for the OS to confirm the exit. The exit
reaction that follows later only repeats the `stopped` event.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import psutil

from .broadcast import BroadcastChannel
from .environment import build_environment, build_proxy_url, discover_tool_dirs
from .errors import AlreadyRunning, InstanceNotFound, NotRunning, PathMissing, StdinUnavailable
from .launch import LaunchPlan, offline_shell_command, resolve_launch_plan, spawn
from .models import InstanceRecord, InstanceStatus, RedisMode
from .process_tree import kill_process_tree
from .registry import InstanceRegistry
from .settings import LauncherSettings
from .streams import iter_lines, pump_lines

logger = logging.getLogger("botlauncher.supervisor.process_supervisor")

LaunchResolver = Callable[[InstanceRecord, LauncherSettings], LaunchPlan]


@dataclass
class RuntimeState:
    instance_id: str
    name: str
    process: asyncio.subprocess.Process | None = None
    status: InstanceStatus = InstanceStatus.STARTING
    has_output: bool = False
    pump_task: asyncio.Task | None = field(default=None, repr=False)


class ProcessSupervisor:
    """Owns RuntimeState for every live instance."""

    def __init__(
        self,
        registry: InstanceRegistry,
        channel: BroadcastChannel,
        settings: LauncherSettings,
        coordinator=None,
        *,
        launch_resolver: LaunchResolver = resolve_launch_plan,
        offline_resolver: Callable[[str], LaunchPlan] = offline_shell_command,
    ):
        self.registry = registry
        self.channel = channel
        self.settings = settings
        self.coordinator = coordinator
        self.launch_resolver = launch_resolver
        self.offline_resolver = offline_resolver
        self._states: dict[str, RuntimeState] = {}
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # queries

    def is_running(self, instance_id: str) -> bool:
        return instance_id in self._states

    def status_of(self, instance_id: str) -> InstanceStatus:
        state = self._states.get(instance_id)
        return state.status if state else InstanceStatus.STOPPED

    def statuses(self) -> dict[str, str]:
        return {instance_id: state.status.value for instance_id, state in self._states.items()}

    @property
    def running_count(self) -> int:
        return len(self._states)

    def history(self, instance_id: str) -> list[str]:
        return self.channel.aggregator.history(instance_id)

    def _log(self, instance_id: str, line: str, name: str | None = None) -> None:
        self.channel.publish_log(instance_id, line)
        logger.info("[%s] %s", name or instance_id, line)

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _require_record(self, instance_id: str) -> InstanceRecord:
        record = await self.registry.get_record(instance_id)
        if record is None:
            logger.info("Unknown instance requested: %s", instance_id)
            raise InstanceNotFound(instance_id)
        return record

    # ------------------------------------------------------------------
    # lifecycle

    async def start(self, instance_id: str) -> dict[str, Any]:
        """Spawn the instance; spawn refusals surface only as log and status events."""
        record = await self._require_record(instance_id)
        if instance_id in self._states:
            logger.info("Start rejected: %s already running", record.name)
            raise AlreadyRunning(f"Instance {record.name} is already running")

        root = Path(record.path)
        if not root.exists():
            self._log(instance_id, f"Error: Instance path does not exist: {record.path}", record.name)
            raise PathMissing(f"Instance path does not exist: {record.path}", path=record.path)

        plan = self.launch_resolver(record, self.settings)
        env = build_environment(record.type, record.proxy, discover_tool_dirs(self.settings.bin_dir))

        self._log(instance_id, f"--- Starting Instance {record.name} ---", record.name)
        self._log(instance_id, f"Working Directory: {root}", record.name)
        for line in plan.banner:
            self._log(instance_id, line, record.name)
        if record.proxy is not None and record.proxy.host:
            urls = build_proxy_url(record.proxy)
            if urls is not None:
                self._log(instance_id, f"[SYSTEM] Using Proxy: {urls[1]}", record.name)

        state = RuntimeState(instance_id=instance_id, name=record.name)
        self._states[instance_id] = state
        self.channel.publish_status(instance_id, InstanceStatus.STARTING.value)

        try:
            process = await spawn(plan, cwd=root, env=env)
        except OSError as exc:
            logger.error("Spawn failed for %s: %s", record.name, exc)
            self._log(instance_id, f"--- Launch Error: {exc} ---", record.name)
            removed = self._remove_state(instance_id, state)
            self.channel.publish_status(instance_id, InstanceStatus.STOPPED.value)
            if removed:
                await self._after_removal()
            return {"status": InstanceStatus.STOPPED.value, "error": str(exc)}

        if self._states.get(instance_id) is not state:
            # stopped while the spawn was in flight
            logger.info("Instance %s was stopped during launch, killing PID %s", record.name, process.pid)
            self._kill(process)
            self._track(process.wait())
            return {"status": InstanceStatus.STOPPED.value}

        state.process = process
        state.pump_task = asyncio.create_task(self._pump(state))
        state.pump_task.add_done_callback(lambda task: self._pump_done(state, task))

        if (
            record.redis_mode == RedisMode.SHARED
            and self.settings.auto_start_shared_resource
            and self.coordinator is not None
            and not self.coordinator.is_running
        ):
            self._track(self._auto_start_shared_resource())

        return {"status": InstanceStatus.STARTING.value, "pid": process.pid}

    async def _auto_start_shared_resource(self) -> None:
        try:
            await self.coordinator.start()
        except Exception as exc:
            logger.warning("Shared Redis auto-start failed: %s", exc)

    async def _pump(self, state: RuntimeState) -> None:
        process = state.process
        queue: asyncio.Queue[str | None] = asyncio.Queue()
        readers = [
            asyncio.create_task(pump_lines(process.stdout, queue)),
            asyncio.create_task(pump_lines(process.stderr, queue)),
        ]
        open_streams = len(readers)
        try:
            while open_streams:
                line = await queue.get()
                if line is None:
                    open_streams -= 1
                    continue
                self._handle_output(state, line)
            exit_code = await process.wait()
        except asyncio.CancelledError:
            for reader in readers:
                reader.cancel()
            raise
        await self._on_exit(state, exit_code)

    def _pump_done(self, state: RuntimeState, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        logger.error("Output pump for %s failed: %r", state.name, task.exception())
        if self._states.get(state.instance_id) is not state:
            return
        if state.process is not None:
            self._kill(state.process)
        exit_code = state.process.returncode if state.process is not None else None
        self._track(self._on_exit(state, exit_code))

    def _handle_output(self, state: RuntimeState, line: str) -> None:
        self._log(state.instance_id, line, state.name)
        if not state.has_output:
            state.has_output = True
            if self._states.get(state.instance_id) is state:
                state.status = InstanceStatus.RUNNING
                self.channel.publish_status(state.instance_id, InstanceStatus.RUNNING.value)

    async def _on_exit(self, state: RuntimeState, exit_code: int | None) -> None:
        self._log(state.instance_id, f"--- Instance Exited (Code: {exit_code}) ---", state.name)
        current = self._states.get(state.instance_id)
        removed = self._remove_state(state.instance_id, state)
        if current is None or current is state:
            self.channel.publish_status(state.instance_id, InstanceStatus.STOPPED.value, exit_code=exit_code)
        else:
            # a newer run owns this id now
            logger.info("Previous run of %s exited after restart", state.name)
        if removed:
            await self._after_removal()

    def _remove_state(self, instance_id: str, state: RuntimeState) -> bool:
        """Drop state if it is still the current entry; True when the table became empty."""
        if self._states.get(instance_id) is not state:
            return False
        del self._states[instance_id]
        return not self._states

    async def _after_removal(self) -> None:
        if self.coordinator is not None:
            await self.coordinator.maybe_auto_stop(len(self._states))

    def _kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            kill_process_tree(process.pid)
        except psutil.Error as exc:
            logger.warning("Tree kill failed for PID %s, killing directly: %s", process.pid, exc)
            try:
                process.kill()
            except ProcessLookupError:
                pass

    async def stop(self, instance_id: str) -> dict[str, Any]:
        state = self._states.get(instance_id)
        if state is None:
            logger.info("Stop rejected: %s not running", instance_id)
            raise NotRunning(f"Instance {instance_id} is not running")
        if state.process is not None:
            self._kill(state.process)
        removed = self._remove_state(instance_id, state)
        self.channel.publish_status(instance_id, InstanceStatus.STOPPED.value)
        self._log(instance_id, "--- Instance Stopped ---", state.name)
        if removed:
            await self._after_removal()
        return {"status": InstanceStatus.STOPPED.value}

    # ------------------------------------------------------------------
    # commands

    async def send_command(self, instance_id: str, command: str) -> dict[str, str]:
        state = self._states.get(instance_id)
        if state is not None:
            return await self._send_interactive(state, command)
        return await self._run_offline(instance_id, command)

    async def _send_interactive(self, state: RuntimeState, command: str) -> dict[str, str]:
        process = state.process
        stdin = process.stdin if process is not None else None
        if stdin is None or stdin.is_closing():
            raise StdinUnavailable()
        self._log(state.instance_id, f"> {command}", state.name)
        try:
            stdin.write(f"{command}\n".encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise StdinUnavailable(f"Instance stdin unavailable: {exc}") from exc
        return {"mode": "interactive"}

    async def _run_offline(self, instance_id: str, command: str) -> dict[str, str]:
        record = await self._require_record(instance_id)
        root = Path(record.path)
        if not root.exists():
            raise PathMissing(f"Instance path does not exist: {record.path}", path=record.path)

        self._log(instance_id, f"[OFFLINE] > {command}", record.name)
        plan = self.offline_resolver(command)
        env = build_environment(record.type, record.proxy, discover_tool_dirs(self.settings.bin_dir))
        try:
            process = await spawn(plan, cwd=root, env=env, stdin=False)
        except OSError as exc:
            self._log(instance_id, f"[EXEC ERR] Process start failed: {exc}", record.name)
            return {"mode": "offline", "error": str(exc)}
        self._track(self._drain_offline(instance_id, record.name, process))
        return {"mode": "offline"}

    async def _drain_offline(self, instance_id: str, name: str, process: asyncio.subprocess.Process) -> None:
        async def forward(stream) -> None:
            async for line in iter_lines(stream):
                self._log(instance_id, line, name)

        await asyncio.gather(forward(process.stdout), forward(process.stderr))
        exit_code = await process.wait()
        if exit_code != 0:
            self._log(instance_id, f"[EXEC] Command exited with code {exit_code}", name)

    async def wait_idle(self) -> None:
        """Wait for untracked helper tasks; used at shutdown and in tests."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        for instance_id in list(self._states):
            state = self._states.pop(instance_id)
            if state.process is not None:
                self._kill(state.process)
            if state.pump_task is not None:
                state.pump_task.cancel()
            logger.info("Killed instance %s on shutdown", state.name)
        for task in list(self._background):
            task.cancel()
