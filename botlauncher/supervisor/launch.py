"""Per-type launch strategies: which executable runs an instance and how."""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path

from .errors import PathMissing
from .models import InstanceRecord, InstanceType
from .settings import LauncherSettings

IS_WINDOWS = sys.platform == "win32"


@dataclass
class LaunchPlan:
    """Executable, arguments and extra environment for one spawn."""

    program: str
    args: list[str] = field(default_factory=list)
    shell: bool = False
    extra_env: dict[str, str] = field(default_factory=dict)
    banner: list[str] = field(default_factory=list)

    @property
    def command_line(self) -> str:
        return " ".join([self.program, *self.args])


def venv_python(root: Path) -> Path:
    if IS_WINDOWS:
        return root / ".venv" / "Scripts" / "python.exe"
    return root / ".venv" / "bin" / "python"


def venv_bin_dir(root: Path) -> Path:
    return venv_python(root).parent


def resolve_node_executable(bin_dir: Path | None) -> str:
    """Prefer a bundled Node.js, then whatever `node` is on PATH."""
    if bin_dir is not None and bin_dir.is_dir():
        exe_name = "node.exe" if IS_WINDOWS else "node"
        for pattern in (f"node-v*/{exe_name}", f"node-v*/bin/{exe_name}", f"node/{exe_name}", f"node/bin/{exe_name}"):
            for candidate in sorted(bin_dir.glob(pattern)):
                if candidate.is_file():
                    return str(candidate)
    return shutil.which("node") or "node"


def resolve_launch_plan(record: InstanceRecord, settings: LauncherSettings) -> LaunchPlan:
    """Choose the launch strategy for a record's declared type."""
    root = Path(record.path)
    if record.type == InstanceType.GSUID:
        return LaunchPlan(
            program="uv run core",
            shell=True,
            banner=["Starting GSUID Core..."],
        )

    if record.type == InstanceType.NONEBOT:
        python = venv_python(root)
        bot_py = root / "bot.py"
        if not python.exists():
            raise PathMissing(
                "Virtual environment not found. Please recreate the instance.",
                path=str(python),
            )
        if not bot_py.exists():
            raise PathMissing("bot.py not found. Please check the instance.", path=str(bot_py))
        return LaunchPlan(
            program=str(python),
            args=[str(bot_py)],
            extra_env={"VIRTUAL_ENV": str(root / ".venv")},
            banner=["Starting NoneBot...", f"Using Python: {python}"],
        )

    node = resolve_node_executable(settings.bin_dir)
    return LaunchPlan(
        program=node,
        args=[str(root / "app.js")],
        banner=[f"Using Node: {node}"],
    )


def offline_shell_command(command: str) -> LaunchPlan:
    """One-off maintenance command executed in the instance directory."""
    if IS_WINDOWS:
        return LaunchPlan(
            program="powershell",
            args=["-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass", "-Command", command],
            extra_env={"FORCE_COLOR": "1"},
        )
    return LaunchPlan(program=command, shell=True)


def interactive_shell() -> LaunchPlan:
    """Shell used by the embedded debug terminal."""
    if IS_WINDOWS:
        return LaunchPlan(program="cmd.exe", extra_env={"PROMPT": "$P$G "})
    return LaunchPlan(program=os.environ.get("SHELL") or "/bin/sh")


STREAM_LIMIT = 1024 * 1024


async def spawn(plan: LaunchPlan, *, cwd: Path, env: dict[str, str], stdin: bool = True):
    """Start a plan as an asyncio subprocess with piped stdio.

    Raises OSError when the OS refuses to create the process.
    """
    full_env = dict(env)
    full_env.update(plan.extra_env)
    stdin_pipe = asyncio.subprocess.PIPE if stdin else asyncio.subprocess.DEVNULL
    if plan.shell:
        return await asyncio.create_subprocess_shell(
            plan.command_line,
            stdin=stdin_pipe,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
            env=full_env,
            limit=STREAM_LIMIT,
        )
    return await asyncio.create_subprocess_exec(
        plan.program,
        *plan.args,
        stdin=stdin_pipe,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd),
        env=full_env,
        limit=STREAM_LIMIT,
    )
