"""Registry mutations: create, import, rename, port and proxy updates, removal.

Every check-then-commit sequence runs under one asyncio.Lock so two
concurrent requests can never both pass a port or name check before
either of them commits.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import uuid
from pathlib import Path
from typing import Any

from .broadcast import BroadcastChannel
from .conflicts import ConflictChecker, config_port
from .errors import InstanceNotFound, InvalidOperation, LauncherError, PathMissing
from .models import (
    DEFAULT_PORTS,
    InstanceRecord,
    InstanceStatus,
    InstanceType,
    InstanceView,
    ProxyConfig,
    RedisMode,
)
from .process_supervisor import ProcessSupervisor
from .registry import InstanceRegistry
from .settings import LauncherSettings

logger = logging.getLogger("botlauncher.supervisor.instance_manager")

INSTANCE_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


def validate_instance_name(name: str) -> str:
    if not name or not INSTANCE_NAME_RE.match(name):
        raise InvalidOperation(
            f'Invalid instance name: "{name}". Only English letters, numbers, hyphens and underscores allowed.',
            error_code="INVALID_NAME",
        )
    return name


def detect_instance_type(root: Path) -> InstanceType | None:
    """Guess the framework of an existing directory; NoneBot markers win."""
    has_nonebot = (root / "bot.py").exists() or (root / ".env").exists()
    pyproject = root / "pyproject.toml"
    if not has_nonebot and pyproject.exists():
        try:
            has_nonebot = "nonebot" in pyproject.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            has_nonebot = False
    if has_nonebot:
        return InstanceType.NONEBOT
    if (root / "gsuid_core").exists():
        return InstanceType.GSUID
    if (root / "package.json").exists():
        return InstanceType.YUNZAI
    return None


def _normalized(path: str | Path) -> str:
    return str(Path(path).resolve()).lower()


class InstanceManager:
    def __init__(
        self,
        registry: InstanceRegistry,
        supervisor: ProcessSupervisor,
        conflicts: ConflictChecker,
        channel: BroadcastChannel,
        settings: LauncherSettings,
    ):
        self.registry = registry
        self.supervisor = supervisor
        self.conflicts = conflicts
        self.channel = channel
        self.settings = settings
        self._lock = asyncio.Lock()

    async def _require(self, instance_id: str) -> InstanceRecord:
        record = await self.registry.get_record(instance_id)
        if record is None:
            raise InstanceNotFound(instance_id)
        return record

    def _view(self, record: InstanceRecord) -> InstanceView:
        return InstanceView(**record.model_dump(), status=self.supervisor.status_of(record.id))

    async def list_instances(self) -> list[InstanceView]:
        return [self._view(record) for record in await self.registry.load_records()]

    async def get_instance(self, instance_id: str) -> InstanceView:
        return self._view(await self._require(instance_id))

    async def create(
        self,
        name: str,
        instance_type: InstanceType = InstanceType.YUNZAI,
        *,
        port: int | None = None,
        path: str | None = None,
        auto_start: bool = False,
        redis_mode: RedisMode = RedisMode.SHARED,
    ) -> InstanceView:
        validate_instance_name(name)
        candidate_port = port or DEFAULT_PORTS[instance_type]
        root = Path(path) if path else Path(self.settings.instances_dir) / name

        async with self._lock:
            records = await self.registry.load_records()
            await self.conflicts.ensure_name_free(name, records=records)
            await self.conflicts.ensure_port_free(candidate_port, records=records)

            root.mkdir(parents=True, exist_ok=True)
            record = InstanceRecord(
                id=uuid.uuid4().hex,
                name=name,
                path=str(root),
                type=instance_type,
                port=candidate_port,
                auto_start=auto_start,
                redis_mode=redis_mode,
            )
            await self.registry.save_record(record)

        logger.info("Created instance %s (%s) on port %s", name, instance_type.value, candidate_port)
        self.channel.publish_global(f"[SYSTEM] Instance '{name}' created at {root} (port {candidate_port})")
        self.channel.publish_status(record.id, InstanceStatus.STOPPED.value)
        return self._view(record)

    async def import_instance(self, path: str, name: str, *, port: int | None = None) -> InstanceView:
        validate_instance_name(name)
        root = Path(path)
        if not root.exists():
            raise PathMissing(f"Path does not exist: {path}", path=path)
        if not root.is_dir():
            raise InvalidOperation(f"Path is not a directory: {path}", error_code="NOT_A_DIRECTORY")
        instance_type = detect_instance_type(root)
        if instance_type is None:
            raise InvalidOperation(
                "Invalid instance: missing package.json (Yunzai), gsuid_core (GSUID) "
                "or bot.py/.env/pyproject.toml (NoneBot)",
                error_code="UNKNOWN_INSTANCE_TYPE",
            )
        candidate_port = port or config_port(instance_type, root) or DEFAULT_PORTS[instance_type]

        async with self._lock:
            records = await self.registry.load_records()
            await self.conflicts.ensure_name_free(name, records=records)
            target = _normalized(root)
            if any(_normalized(record.path) == target for record in records):
                raise InvalidOperation("This directory has already been imported", error_code="DUPLICATE_PATH")
            await self.conflicts.ensure_port_free(candidate_port, records=records)

            record = InstanceRecord(
                id=uuid.uuid4().hex,
                name=name,
                path=str(root.resolve()),
                type=instance_type,
                port=candidate_port,
                is_imported=True,
            )
            await self.registry.save_record(record)

        logger.info("Imported %s instance %s from %s", instance_type.value, name, root)
        self.channel.publish_global(f"[SYSTEM] Imported {instance_type.value} instance '{name}' from {root}")
        self.channel.publish_status(record.id, InstanceStatus.STOPPED.value)
        return self._view(record)

    async def rename(self, instance_id: str, new_name: str) -> InstanceView:
        validate_instance_name(new_name)
        async with self._lock:
            record = await self._require(instance_id)
            if self.supervisor.is_running(instance_id):
                raise InvalidOperation("Cannot rename running instance. Please stop it first.")
            await self.conflicts.ensure_name_free(new_name, exclude_id=instance_id)
            record.name = new_name
            await self.registry.save_record(record)
        self.channel.publish_global(f"[SYSTEM] Instance renamed to {new_name}")
        return self._view(record)

    async def update_port(self, instance_id: str, port: int) -> InstanceView:
        async with self._lock:
            record = await self._require(instance_id)
            await self.conflicts.ensure_port_free(port, exclude_id=instance_id)
            record.port = port
            await self.registry.save_records([record])
        self.channel.publish_global(f"[SYSTEM] Port for {record.name} set to {port}")
        return self._view(record)

    async def set_auto_start(self, instance_id: str, enabled: bool) -> InstanceView:
        async with self._lock:
            record = await self._require(instance_id)
            record.auto_start = enabled
            await self.registry.save_record(record)
        state = "enabled" if enabled else "disabled"
        self.channel.publish_global(f"[SYSTEM] Auto-start {state} for {record.name}")
        return self._view(record)

    async def get_proxy(self, instance_id: str) -> dict[str, Any]:
        record = await self._require(instance_id)
        return record.proxy.model_dump() if record.proxy else {}

    async def set_proxy(self, instance_id: str, proxy: ProxyConfig | None) -> dict[str, Any]:
        async with self._lock:
            record = await self._require(instance_id)
            record.proxy = proxy if proxy is not None and proxy.host else None
            await self.registry.save_record(record)
        self.channel.publish_global(f"[SYSTEM] Proxy settings updated for instance: {record.name}")
        return record.proxy.model_dump() if record.proxy else {}

    async def remove(self, instance_id: str, *, delete_files: bool = False) -> None:
        async with self._lock:
            record = await self._require(instance_id)
            if self.supervisor.is_running(instance_id):
                raise InvalidOperation("Cannot remove a running instance. Please stop it first.")
            if not delete_files and not record.is_imported:
                raise InvalidOperation("Only imported instances can be unbound")
            if delete_files and Path(record.path).exists():
                await asyncio.to_thread(shutil.rmtree, record.path, ignore_errors=True)
            await self.registry.delete_record(instance_id)

        if delete_files:
            self.channel.publish_global(f"[SYSTEM] Instance '{record.name}' deleted.")
        else:
            self.channel.publish_global(f"[SYSTEM] Instance '{record.name}' unbound. Files remain at: {record.path}")

    async def autostart_all(self) -> list[str]:
        started: list[str] = []
        for record in await self.registry.load_records():
            if not record.auto_start:
                continue
            try:
                await self.supervisor.start(record.id)
            except (LauncherError, OSError) as exc:
                logger.warning("Auto-start failed for %s: %s", record.name, exc)
                continue
            started.append(record.id)
        if started:
            self.channel.publish_global(f"[SYSTEM] Auto-started {len(started)} instance(s)")
        return started
