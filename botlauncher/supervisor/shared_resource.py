"""Lifecycle of the single shared Redis server used by bot instances."""

from __future__ import annotations

import asyncio
import logging
import shutil
import socket
import sys
from pathlib import Path

import psutil

from .broadcast import BroadcastChannel
from .errors import ResourceAlreadyRunning, ResourceNotRunning, SpawnFailure
from .process_tree import kill_process_tree, kill_processes_named
from .registry import InstanceRegistry
from .settings import LauncherSettings
from .streams import iter_lines

logger = logging.getLogger("botlauncher.supervisor.shared_resource")

REDIS_PROCESS_NAMES = {"redis-server", "redis-server.exe"}
STARTUP_GRACE_SECONDS = 0.5
STOP_WAIT_SECONDS = 5.0


class SharedResourceCoordinator:
    """Owns at most one Redis process and decides when it should go away."""

    def __init__(self, registry: InstanceRegistry, channel: BroadcastChannel, settings: LauncherSettings):
        self.registry = registry
        self.channel = channel
        self.settings = settings
        self._process: asyncio.subprocess.Process | None = None
        self._output_tasks: list[asyncio.Task] = []
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def resolve_executable(self) -> str | None:
        if self.settings.redis_executable:
            return self.settings.redis_executable
        exe_name = "redis-server.exe" if sys.platform == "win32" else "redis-server"
        if self.settings.bin_dir is not None:
            bundled = Path(self.settings.bin_dir) / "redis" / exe_name
            if bundled.is_file():
                return str(bundled)
        return shutil.which("redis-server")

    def build_command(self) -> list[str]:
        executable = self.resolve_executable()
        if not executable:
            raise SpawnFailure("Redis executable not found. Please install Redis first.")
        data_dir = Path(self.settings.redis_data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)
        return [executable, "--dir", str(data_dir), "--port", str(self.settings.redis_port)]

    def _kill_stray_processes(self) -> int:
        return kill_processes_named(REDIS_PROCESS_NAMES)

    def _port_accepts_connections(self) -> bool:
        try:
            with socket.create_connection(("127.0.0.1", self.settings.redis_port), timeout=0.5):
                return True
        except OSError:
            return False

    async def _forward_output(self, stream: asyncio.StreamReader | None) -> None:
        async for line in iter_lines(stream):
            self.channel.publish_global(f"[REDIS] {line}")

    async def start(self) -> dict[str, str]:
        async with self._lock:
            if self.is_running:
                raise ResourceAlreadyRunning()

            killed = await asyncio.to_thread(self._kill_stray_processes)
            if killed:
                self.channel.publish_global(f"[SYSTEM] Cleaned up {killed} stray Redis process(es)")

            command = self.build_command()
            self.channel.publish_global(f"[SYSTEM] Starting Redis: {' '.join(command)}")
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as exc:
                logger.error("Redis spawn failed: %s", exc)
                self.channel.publish_global(f"[SYSTEM] Failed to start Redis: {exc}")
                raise SpawnFailure(f"Failed to start Redis: {exc}") from exc

            self._process = process
            self._output_tasks = [
                asyncio.create_task(self._forward_output(process.stdout)),
                asyncio.create_task(self._forward_output(process.stderr)),
            ]
            try:
                await asyncio.wait_for(process.wait(), timeout=STARTUP_GRACE_SECONDS)
            except asyncio.TimeoutError:
                pass
            if process.returncode is not None:
                self._process = None
                message = f"Redis exited immediately (Code: {process.returncode})"
                self.channel.publish_global(f"[SYSTEM] {message}")
                raise SpawnFailure(message)

            self.channel.publish_global(f"[SYSTEM] Redis started (PID: {process.pid})")
            logger.info("Redis started (PID: %s)", process.pid)
            return {"status": "started"}

    async def _stop_locked(self) -> None:
        process = self._process
        self._process = None
        if process is None or process.returncode is not None:
            raise ResourceNotRunning()
        try:
            kill_process_tree(process.pid)
        except psutil.Error as exc:
            logger.warning("Redis tree kill failed, killing directly: %s", exc)
            try:
                process.kill()
            except ProcessLookupError:
                pass
        try:
            await asyncio.wait_for(process.wait(), timeout=STOP_WAIT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Redis (PID: %s) did not exit within %.1fs", process.pid, STOP_WAIT_SECONDS)
        for task in self._output_tasks:
            task.cancel()
        self._output_tasks = []
        self.channel.publish_global("[SYSTEM] Redis stopped")
        logger.info("Redis stopped")

    async def stop(self) -> dict[str, str]:
        async with self._lock:
            await self._stop_locked()
        return {"status": "stopped"}

    async def status(self) -> dict[str, object]:
        running = self.is_running
        if not running:
            running = await asyncio.to_thread(self._port_accepts_connections)
        return {
            "running": running,
            "managed": self.is_running,
            "port": self.settings.redis_port,
            "keepAlive": await self.get_keep_alive(),
        }

    async def get_keep_alive(self) -> bool:
        return await self.registry.get_keep_alive()

    async def set_keep_alive(self, enabled: bool) -> bool:
        await self.registry.set_keep_alive(enabled)
        state = "enabled" if enabled else "disabled"
        self.channel.publish_global(f"[SYSTEM] Redis keep-alive {state}")
        return enabled

    async def maybe_auto_stop(self, running_count: int) -> bool:
        """Stop Redis when no instance is left running, unless kept alive.

        Best-effort: failures are logged and never reach the caller.
        Returns True when a stop was issued.
        """
        if running_count != 0:
            return False
        if not self.is_running:
            return False
        try:
            if await self.get_keep_alive():
                self.channel.publish_global("[SYSTEM] Redis locked - keeping alive")
                return False
            async with self._lock:
                if not self.is_running:
                    return False
                self.channel.publish_global("[SYSTEM] Last instance closed, stopping Redis...")
                await self._stop_locked()
            return True
        except ResourceNotRunning:
            logger.debug("Redis already stopped")
        except Exception as exc:
            logger.warning("Auto-stop of Redis failed: %s", exc)
        return False

    async def shutdown(self) -> None:
        async with self._lock:
            if self.is_running:
                try:
                    await self._stop_locked()
                except Exception as exc:
                    logger.warning("Redis shutdown failed: %s", exc)
