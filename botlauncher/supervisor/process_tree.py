"""Process termination helpers built on psutil."""

from __future__ import annotations

import logging

import psutil

logger = logging.getLogger("botlauncher.supervisor.process_tree")


def kill_process_tree(pid: int) -> int:
    """Kill pid and every descendant; return how many processes were signalled.

    Launches that go through an intermediary shell leave the real runtime as
    a grandchild, so killing only the direct child would orphan it.
    """
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return 0
    try:
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        children = []
    killed = 0
    for proc in children + [parent]:
        try:
            proc.kill()
            killed += 1
        except psutil.NoSuchProcess:
            continue
    return killed


def kill_processes_named(names: set[str]) -> int:
    """Kill every process whose executable name is in names (case-insensitive)."""
    wanted = {name.lower() for name in names}
    killed = 0
    for proc in psutil.process_iter(["name"]):
        name = (proc.info.get("name") or "").lower()
        if name not in wanted:
            continue
        try:
            proc.kill()
            killed += 1
            logger.info("Killed stray process %s (PID: %s)", name, proc.pid)
        except (psutil.NoSuchProcess, psutil.AccessDenied) as exc:
            logger.warning("Unable to kill stray process %s (PID: %s): %s", name, proc.pid, exc)
    return killed
