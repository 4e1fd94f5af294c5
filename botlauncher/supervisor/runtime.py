"""Container wiring one launcher's components together."""

from __future__ import annotations

import logging

from fastapi import Request

from .broadcast import BroadcastChannel
from .conflicts import ConflictChecker
from .instance_manager import InstanceManager
from .log_buffer import LogAggregator
from .process_supervisor import ProcessSupervisor
from .registry import InstanceRegistry
from .settings import LauncherSettings
from .shared_resource import SharedResourceCoordinator
from .terminal import TerminalManager

logger = logging.getLogger("botlauncher.supervisor.runtime")


class LauncherRuntime:
    """Owns every long-lived service; lifecycle follows the host process."""

    def __init__(self, settings: LauncherSettings | None = None, **overrides):
        self.settings = settings or LauncherSettings.from_env()
        self.registry = InstanceRegistry(self.settings.db_path)
        self.aggregator = LogAggregator()
        self.channel = BroadcastChannel(self.aggregator)
        self.coordinator = SharedResourceCoordinator(self.registry, self.channel, self.settings)
        self.supervisor = ProcessSupervisor(
            self.registry,
            self.channel,
            self.settings,
            self.coordinator,
            **overrides,
        )
        self.conflicts = ConflictChecker(self.registry, is_running=self.supervisor.is_running)
        self.instances = InstanceManager(
            self.registry,
            self.supervisor,
            self.conflicts,
            self.channel,
            self.settings,
        )
        self.terminals = TerminalManager(self.registry, self.channel, self.settings)

    async def startup(self) -> None:
        logger.info("Initializing database at %s", self.settings.db_path)
        await self.registry.initialize()
        self.channel.publish_global("[SYSTEM] Launcher started")
        if self.settings.autostart_instances:
            started = await self.instances.autostart_all()
            logger.info("Auto-started %d instance(s)", len(started))

    async def shutdown(self) -> None:
        logger.info("Shutting down instances...")
        await self.supervisor.shutdown()
        await self.terminals.close_all()
        await self.coordinator.shutdown()
        self.channel.close_all()
        logger.info("Launcher stopped.")


def get_runtime(request: Request) -> LauncherRuntime:
    return request.app.state.runtime
