"""Embedded debug terminal: one interactive shell per instance directory."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import psutil

from .broadcast import BroadcastChannel
from .environment import build_environment, discover_tool_dirs
from .errors import InstanceNotFound, NotRunning, PathMissing, SpawnFailure, StdinUnavailable
from .launch import LaunchPlan, interactive_shell, spawn, venv_bin_dir
from .models import InstanceType
from .process_tree import kill_process_tree
from .registry import InstanceRegistry
from .settings import LauncherSettings
from .streams import iter_lines

logger = logging.getLogger("botlauncher.supervisor.terminal")

BANNER_RULE = "=" * 40


@dataclass
class TerminalSession:
    instance_id: str
    name: str
    process: asyncio.subprocess.Process
    tasks: list[asyncio.Task] = field(default_factory=list)
    watcher: asyncio.Task | None = None


class TerminalManager:
    def __init__(
        self,
        registry: InstanceRegistry,
        channel: BroadcastChannel,
        settings: LauncherSettings,
        *,
        shell_resolver: Callable[[], LaunchPlan] = interactive_shell,
    ):
        self.registry = registry
        self.channel = channel
        self.settings = settings
        self.shell_resolver = shell_resolver
        self._sessions: dict[str, TerminalSession] = {}
        self._lock = asyncio.Lock()

    def is_open(self, instance_id: str) -> bool:
        return instance_id in self._sessions

    def history(self, instance_id: str) -> list[str]:
        return self.channel.aggregator.terminal_history(instance_id)

    def _output(self, instance_id: str, line: str) -> None:
        self.channel.publish_terminal(instance_id, line)

    async def open(self, instance_id: str) -> dict[str, object]:
        async with self._lock:
            return await self._open(instance_id)

    async def _open(self, instance_id: str) -> dict[str, object]:
        record = await self.registry.get_record(instance_id)
        if record is None:
            raise InstanceNotFound(instance_id)
        root = Path(record.path)
        if not root.exists():
            raise PathMissing("Instance directory not found", path=record.path)
        if instance_id in self._sessions:
            return {"success": True, "alreadyOpen": True}

        tool_dirs = discover_tool_dirs(self.settings.bin_dir)
        if record.type == InstanceType.NONEBOT:
            tool_dirs.insert(0, venv_bin_dir(root))
        env = build_environment(record.type, record.proxy, tool_dirs)
        if record.type == InstanceType.NONEBOT:
            env["VIRTUAL_ENV"] = str(root / ".venv")

        plan = self.shell_resolver()
        try:
            process = await spawn(plan, cwd=root, env=env)
        except OSError as exc:
            logger.error("Terminal spawn failed for %s: %s", record.name, exc)
            raise SpawnFailure(f"Failed to open terminal: {exc}") from exc

        session = TerminalSession(instance_id=instance_id, name=record.name, process=process)
        self._sessions[instance_id] = session

        for line in (BANNER_RULE, f"  Debug Terminal: {record.name}", f"  Path: {root}", BANNER_RULE):
            self._output(instance_id, line)
        if record.type == InstanceType.NONEBOT and (root / ".venv").exists():
            self._output(instance_id, "[SYSTEM] Activated Python virtual environment (.venv)")
        self.channel.publish_terminal_state(instance_id, True)

        session.tasks = [
            asyncio.create_task(self._forward(session, process.stdout, "")),
            asyncio.create_task(self._forward(session, process.stderr, "[ERR] ")),
        ]
        session.watcher = asyncio.create_task(self._watch(session))
        self.channel.publish_global(f"[SYSTEM] Opened embedded terminal for: {record.name}")
        return {"success": True}

    async def _forward(self, session: TerminalSession, stream, prefix: str) -> None:
        async for line in iter_lines(stream):
            self._output(session.instance_id, f"{prefix}{line}")

    async def _watch(self, session: TerminalSession) -> None:
        await asyncio.gather(*session.tasks, return_exceptions=True)
        code = await session.process.wait()
        self._output(session.instance_id, f"[SYSTEM] Terminal closed (exit code: {code})")
        if self._sessions.get(session.instance_id) is session:
            del self._sessions[session.instance_id]
            self.channel.publish_terminal_state(session.instance_id, False)

    async def send(self, instance_id: str, command: str) -> dict[str, bool]:
        session = self._sessions.get(instance_id)
        if session is None:
            raise NotRunning('Terminal not open. Click "Open Terminal" first.')
        stdin = session.process.stdin
        if stdin is None or stdin.is_closing():
            raise StdinUnavailable("Terminal stdin unavailable")
        self._output(instance_id, f"> {command}")
        try:
            stdin.write(f"{command}\n".encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise StdinUnavailable(f"Terminal stdin unavailable: {exc}") from exc
        return {"success": True}

    def _kill(self, session: TerminalSession) -> None:
        if session.process.returncode is not None:
            return
        try:
            kill_process_tree(session.process.pid)
        except psutil.Error as exc:
            logger.warning("Terminal tree kill failed, killing directly: %s", exc)
            try:
                session.process.kill()
            except ProcessLookupError:
                pass

    async def close(self, instance_id: str) -> dict[str, bool]:
        session = self._sessions.pop(instance_id, None)
        if session is not None:
            self._kill(session)
            self.channel.publish_terminal_state(instance_id, False)
        return {"success": True}

    async def close_all(self) -> None:
        for instance_id in list(self._sessions):
            await self.close(instance_id)
