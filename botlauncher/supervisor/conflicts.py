"""Port and name uniqueness checks across registered instances."""

from __future__ import annotations

import json
import logging
import re
import socket
from pathlib import Path
from typing import Any, Callable

from .errors import NameConflict, PortConflict
from .models import DEFAULT_PORTS, InstanceRecord, InstanceType
from .registry import InstanceRegistry

logger = logging.getLogger("botlauncher.supervisor.conflicts")

LOOPBACK_HOST = "127.0.0.1"
MIN_PORT = 1
MAX_PORT = 65535
NONEBOT_ENV_FILES = (".env.prod", ".env.dev", ".env")

_YAML_PORT_RE = re.compile(r"^\s*port:\s*(\d+)", re.MULTILINE)
_ENV_PORT_RE = re.compile(r"^PORT\s*=\s*(\d+)", re.MULTILINE)


def is_port_bindable(port: int, host: str = LOOPBACK_HOST) -> bool:
    """Bind-and-release test; any bind failure counts as unavailable."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except (OSError, OverflowError):
            return False
    return True


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None


def _yunzai_config_port(root: Path) -> int | None:
    for candidate in (
        root / "config" / "config" / "server.yaml",
        root / "config" / "default_config" / "server.yaml",
    ):
        if not candidate.exists():
            continue
        content = _read_text(candidate)
        match = _YAML_PORT_RE.search(content or "")
        if match:
            return int(match.group(1))
        return None
    return None


def _nonebot_config_port(root: Path) -> int | None:
    for name in NONEBOT_ENV_FILES:
        candidate = root / name
        if not candidate.exists():
            continue
        content = _read_text(candidate)
        match = _ENV_PORT_RE.search(content or "")
        return int(match.group(1)) if match else None
    return None


def _gsuid_config_port(root: Path) -> int | None:
    for candidate in (
        root / "gsuid_core" / "data" / "config.json",
        root / "data" / "config.json",
    ):
        if not candidate.exists():
            continue
        content = _read_text(candidate)
        try:
            payload = json.loads(content or "")
        except ValueError:
            return None
        port = payload.get("PORT") if isinstance(payload, dict) else None
        try:
            return int(port) if port is not None else None
        except (TypeError, ValueError):
            return None
    return None


_CONFIG_READERS: dict[InstanceType, Callable[[Path], int | None]] = {
    InstanceType.YUNZAI: _yunzai_config_port,
    InstanceType.NONEBOT: _nonebot_config_port,
    InstanceType.GSUID: _gsuid_config_port,
}


def config_port(instance_type: InstanceType, root: Path) -> int | None:
    """Port declared in the instance's on-disk config, if any."""
    try:
        return _CONFIG_READERS[instance_type](root)
    except OSError as exc:
        logger.debug("Unable to read config port under %s: %s", root, exc)
        return None


def effective_port(record: InstanceRecord) -> int:
    """Explicit record port, else on-disk config port, else the type default."""
    if record.port:
        return int(record.port)
    port = config_port(record.type, Path(record.path))
    if port:
        return port
    return DEFAULT_PORTS[record.type]


class ConflictChecker:
    """Validates candidate ports and names against the registry and the OS."""

    def __init__(
        self,
        registry: InstanceRegistry,
        *,
        is_running: Callable[[str], bool] | None = None,
        port_probe: Callable[[int], bool] = is_port_bindable,
    ):
        self.registry = registry
        self.is_running = is_running or (lambda _instance_id: False)
        self.port_probe = port_probe

    def check_port_available(self, port: int) -> bool:
        return self.port_probe(port)

    async def find_port_owner(
        self,
        port: int,
        *,
        exclude_id: str | None = None,
        records: list[InstanceRecord] | None = None,
    ) -> InstanceRecord | None:
        if records is None:
            records = await self.registry.load_records()
        for record in records:
            if record.id == exclude_id:
                continue
            if effective_port(record) == port:
                return record
        return None

    async def ensure_port_free(
        self,
        port: int,
        *,
        exclude_id: str | None = None,
        records: list[InstanceRecord] | None = None,
    ) -> None:
        """Raise PortConflict if another instance or the system holds port.

        The system-level probe is skipped while exclude_id is running, since
        that instance already occupies its own port.
        """
        owner = await self.find_port_owner(port, exclude_id=exclude_id, records=records)
        if owner is not None:
            logger.info("Port %s rejected: used by instance %s", port, owner.name)
            raise PortConflict(port, owner.name)
        if exclude_id is not None and self.is_running(exclude_id):
            return
        if not self.check_port_available(port):
            logger.info("Port %s rejected: in use by the system", port)
            raise PortConflict(port)

    async def check_port(self, port: int) -> dict[str, Any]:
        if not MIN_PORT <= port <= MAX_PORT:
            return {"available": False, "error": "Invalid port number"}
        owner = await self.find_port_owner(port)
        if owner is not None:
            return {"available": False, "usedBy": owner.name}
        available = self.check_port_available(port)
        return {"available": available, "inUseBySystem": not available}

    async def ensure_name_free(
        self,
        name: str,
        *,
        exclude_id: str | None = None,
        records: list[InstanceRecord] | None = None,
    ) -> None:
        if records is None:
            records = await self.registry.load_records()
        for record in records:
            if record.id != exclude_id and record.name == name:
                logger.info("Name %s rejected: already registered", name)
                raise NameConflict(name)

    async def check_name(self, name: str) -> dict[str, bool]:
        records = await self.registry.load_records()
        return {"available": not any(record.name == name for record in records)}
