"""Process environment assembly for instance launches."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Mapping, Sequence
from urllib.parse import quote

from .models import InstanceType, ProxyConfig

logger = logging.getLogger("botlauncher.supervisor.environment")

# Relative to the bundled tool directory, highest priority first.
TOOL_DIR_PATTERNS = (
    "node-v*",
    "node-v*/bin",
    "node",
    "node/bin",
    "PortableGit/cmd",
    "redis",
    "python-*",
    "uv-*",
)

PYTHON_ENCODING_ENV = {
    "PYTHONUTF8": "1",
    "PYTHONIOENCODING": "utf-8",
}

PROXY_ENV_KEYS = ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY")


def discover_tool_dirs(bin_dir: Path | None) -> list[Path]:
    """Return bundled tool directories that exist, in PATH priority order."""
    if bin_dir is None or not bin_dir.is_dir():
        return []
    found: list[Path] = []
    for pattern in TOOL_DIR_PATTERNS:
        for candidate in sorted(bin_dir.glob(pattern)):
            if candidate.is_dir() and candidate not in found:
                found.append(candidate)
    return found


def find_path_key(env: Mapping[str, str]) -> str:
    """Return the PATH key as spelled in env (Windows uses `Path`)."""
    for key in env:
        if key.upper() == "PATH":
            return key
    return "PATH"


def build_proxy_url(proxy: ProxyConfig | None) -> tuple[str, str] | None:
    """Return (url, redacted_url) for a proxy descriptor, or None when unset."""
    if proxy is None or not proxy.host:
        return None
    protocol = proxy.protocol or "http"
    port_part = f":{proxy.port}" if proxy.port else ""
    if proxy.auth and proxy.username:
        user = quote(proxy.username, safe="")
        password = quote(proxy.password or "", safe="")
        url = f"{protocol}://{user}:{password}@{proxy.host}{port_part}"
        redacted = f"{protocol}://{proxy.username}:******@{proxy.host}{port_part}"
    else:
        url = f"{protocol}://{proxy.host}{port_part}"
        redacted = url
    return url, redacted


def build_environment(
    instance_type: InstanceType,
    proxy: ProxyConfig | None,
    tool_dirs: Sequence[Path],
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Build the environment map for one instance launch.

    Existing bundled tool directories come first on the search path, then
    the inherited one. Proxy variables are injected when a proxy host is set.
    """
    env = dict(os.environ if base_env is None else base_env)
    path_key = find_path_key(env)

    path_parts = [str(tool_dir) for tool_dir in tool_dirs if Path(tool_dir).is_dir()]
    inherited = env.get(path_key)
    if inherited:
        path_parts.append(inherited)
    env[path_key] = os.pathsep.join(path_parts)

    if instance_type in (InstanceType.GSUID, InstanceType.NONEBOT):
        env.update(PYTHON_ENCODING_ENV)

    proxy_urls = build_proxy_url(proxy)
    if proxy_urls is not None:
        url, redacted = proxy_urls
        for key in PROXY_ENV_KEYS:
            env[key] = url
        logger.info("Proxy injected: %s", redacted)
    return env
