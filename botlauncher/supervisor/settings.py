"""Launcher runtime settings resolved from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from platformdirs import user_data_dir

BOTLAUNCHER_DIR = Path.home() / ".botlauncher"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3575
DEFAULT_REDIS_PORT = 6379


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class LauncherSettings:
    """Filesystem locations and behaviour switches for one launcher process."""

    home_dir: Path = BOTLAUNCHER_DIR
    bin_dir: Path | None = None
    instances_dir: Path | None = None
    redis_executable: str | None = None
    redis_data_dir: Path | None = None
    redis_port: int = DEFAULT_REDIS_PORT
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    autostart_instances: bool = True
    auto_start_shared_resource: bool = False

    def __post_init__(self) -> None:
        self.home_dir = Path(self.home_dir)
        if self.bin_dir is None:
            self.bin_dir = Path(user_data_dir("botlauncher")) / "bin"
        if self.instances_dir is None:
            self.instances_dir = self.home_dir / "instances"
        if self.redis_data_dir is None:
            self.redis_data_dir = self.home_dir / "data" / "redis"

    @property
    def db_path(self) -> Path:
        return self.home_dir / "launcher.db"

    @classmethod
    def from_env(cls) -> "LauncherSettings":
        home = os.getenv("BOTLAUNCHER_HOME")
        bin_dir = os.getenv("BOTLAUNCHER_BIN_DIR")
        return cls(
            home_dir=Path(home) if home else BOTLAUNCHER_DIR,
            bin_dir=Path(bin_dir) if bin_dir else None,
            redis_executable=os.getenv("BOTLAUNCHER_REDIS_PATH") or None,
            redis_port=int(os.getenv("BOTLAUNCHER_REDIS_PORT", str(DEFAULT_REDIS_PORT))),
            host=os.getenv("BOTLAUNCHER_HOST", DEFAULT_HOST),
            port=int(os.getenv("BOTLAUNCHER_PORT", str(DEFAULT_PORT))),
            autostart_instances=_env_flag("BOTLAUNCHER_AUTOSTART", True),
            auto_start_shared_resource=_env_flag("BOTLAUNCHER_AUTOSTART_REDIS", False),
        )
