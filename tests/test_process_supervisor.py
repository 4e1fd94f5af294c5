"""Tests for instance process lifecycle against real child processes."""

from __future__ import annotations

import asyncio
import sys
import tempfile
import unittest
from pathlib import Path

from botlauncher.supervisor.broadcast import EVENT_STATUS, BroadcastChannel
from botlauncher.supervisor.errors import AlreadyRunning, InstanceNotFound, NotRunning, PathMissing
from botlauncher.supervisor.launch import LaunchPlan
from botlauncher.supervisor.models import InstanceRecord, InstanceStatus
from botlauncher.supervisor.process_supervisor import ProcessSupervisor
from botlauncher.supervisor.settings import LauncherSettings

SCRIPTS = {
    "echo": (
        "import sys\n"
        "print('ready', flush=True)\n"
        "for line in sys.stdin:\n"
        "    print('echo: ' + line.strip(), flush=True)\n"
    ),
    "silent": "import time; time.sleep(60)",
    "exit3": "import sys; print('bye', flush=True); sys.exit(3)",
    "stderr": "import sys, time; sys.stderr.write('warming up\\n'); sys.stderr.flush(); time.sleep(60)",
    "color": "import time; print('\\x1b[32mready\\x1b[0m', flush=True); time.sleep(60)",
    "boom": "import time; print('boom', flush=True); time.sleep(60)",
}


def _resolver(record: InstanceRecord, settings: LauncherSettings) -> LaunchPlan:
    if record.name.startswith("broken"):
        return LaunchPlan(program=str(Path(settings.home_dir) / "does-not-exist"))
    script = SCRIPTS[record.name.split("-")[0]]
    return LaunchPlan(program=sys.executable, args=["-u", "-c", script])


def _offline_resolver(command: str) -> LaunchPlan:
    return LaunchPlan(program=sys.executable, args=["-c", f"print({command!r})"])


class _FailingOutputSupervisor(ProcessSupervisor):
    def _handle_output(self, state, line: str) -> None:
        if line == "boom":
            raise RuntimeError("cannot handle line")
        super()._handle_output(state, line)


class _FakeRegistry:
    def __init__(self) -> None:
        self.records: dict[str, InstanceRecord] = {}

    async def get_record(self, instance_id: str) -> InstanceRecord | None:
        return self.records.get(instance_id)


class _FakeCoordinator:
    def __init__(self) -> None:
        self.auto_stop_calls: list[int] = []
        self.is_running = False

    async def maybe_auto_stop(self, running_count: int) -> bool:
        self.auto_stop_calls.append(running_count)
        return running_count == 0


async def _wait_until(predicate, timeout: float = 10.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.02)


class ProcessSupervisorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.settings = LauncherSettings(home_dir=self.root / "home", bin_dir=self.root / "bin")
        self.registry = _FakeRegistry()
        self.channel = BroadcastChannel()
        self.coordinator = _FakeCoordinator()
        self.supervisor = ProcessSupervisor(
            self.registry,
            self.channel,
            self.settings,
            self.coordinator,
            launch_resolver=_resolver,
            offline_resolver=_offline_resolver,
        )
        self.observer = self.channel.subscribe()

    async def asyncTearDown(self) -> None:
        await self.supervisor.shutdown()
        await asyncio.sleep(0.1)
        self._tmp.cleanup()

    def _add(self, name: str, *, path: Path | None = None) -> str:
        instance_dir = path or self.root / name
        instance_dir.mkdir(parents=True, exist_ok=True)
        record = InstanceRecord(id=f"{name}-id", name=name, path=str(instance_dir))
        self.registry.records[record.id] = record
        return record.id

    def _statuses(self, instance_id: str) -> list[tuple[str, int | None]]:
        return [
            (event["data"], event.get("exitCode"))
            for event in self.observer.drain()
            if event["type"] == EVENT_STATUS and event["instanceId"] == instance_id
        ]

    async def test_start_then_first_output_then_stop(self) -> None:
        instance_id = self._add("echo")

        result = await self.supervisor.start(instance_id)
        self.assertEqual(result["status"], "starting")
        self.assertEqual(self.supervisor.status_of(instance_id), InstanceStatus.STARTING)

        await _wait_until(lambda: self.supervisor.status_of(instance_id) == InstanceStatus.RUNNING)
        self.assertIn("ready", self.supervisor.history(instance_id))

        await self.supervisor.stop(instance_id)
        self.assertFalse(self.supervisor.is_running(instance_id))
        self.assertEqual(self.supervisor.statuses(), {})
        self.assertIn("--- Instance Stopped ---", self.supervisor.history(instance_id))
        self.assertEqual(self.coordinator.auto_stop_calls, [0])
        self.assertEqual(
            [status for status, _ in self._statuses(instance_id)][:3],
            ["starting", "running", "stopped"],
        )

    async def test_second_start_is_rejected_without_new_process(self) -> None:
        instance_id = self._add("silent")
        first = await self.supervisor.start(instance_id)

        with self.assertRaises(AlreadyRunning):
            await self.supervisor.start(instance_id)

        self.assertEqual(self.supervisor.running_count, 1)
        self.assertEqual(self.supervisor._states[instance_id].process.pid, first["pid"])

    async def test_stop_when_not_running_leaves_others_untouched(self) -> None:
        running_id = self._add("silent")
        idle_id = self._add("echo")
        await self.supervisor.start(running_id)

        with self.assertRaises(NotRunning):
            await self.supervisor.stop(idle_id)

        self.assertTrue(self.supervisor.is_running(running_id))
        self.assertEqual(self.coordinator.auto_stop_calls, [])

    async def test_shared_resource_stop_fires_once_for_last_instance(self) -> None:
        first = self._add("silent-a")
        second = self._add("silent-b")
        await self.supervisor.start(first)
        await self.supervisor.start(second)

        await self.supervisor.stop(first)
        self.assertEqual(self.coordinator.auto_stop_calls, [])

        await self.supervisor.stop(second)
        self.assertEqual(self.coordinator.auto_stop_calls, [0])

        # the delayed exit reactions must not trigger a second stop
        await _wait_until(lambda: "--- Instance Exited" in " ".join(self.supervisor.history(second)))
        await asyncio.sleep(0.1)
        self.assertEqual(self.coordinator.auto_stop_calls, [0])

    async def test_self_exit_reports_exit_code(self) -> None:
        instance_id = self._add("exit3")
        await self.supervisor.start(instance_id)

        await _wait_until(lambda: not self.supervisor.is_running(instance_id))

        history = self.supervisor.history(instance_id)
        self.assertIn("bye", history)
        self.assertIn("--- Instance Exited (Code: 3) ---", history)
        self.assertIn(("stopped", 3), self._statuses(instance_id))
        self.assertEqual(self.coordinator.auto_stop_calls, [0])

    async def test_spawn_refusal_is_reported_asynchronously(self) -> None:
        instance_id = self._add("broken")

        result = await self.supervisor.start(instance_id)

        self.assertEqual(result["status"], "stopped")
        self.assertFalse(self.supervisor.is_running(instance_id))
        self.assertTrue(any(line.startswith("--- Launch Error:") for line in self.supervisor.history(instance_id)))
        self.assertEqual([status for status, _ in self._statuses(instance_id)], ["starting", "stopped"])

    async def test_silent_process_stays_starting(self) -> None:
        instance_id = self._add("silent")
        await self.supervisor.start(instance_id)
        await asyncio.sleep(0.5)
        self.assertEqual(self.supervisor.status_of(instance_id), InstanceStatus.STARTING)

    async def test_stderr_counts_as_first_output(self) -> None:
        instance_id = self._add("stderr")
        await self.supervisor.start(instance_id)
        await _wait_until(lambda: self.supervisor.status_of(instance_id) == InstanceStatus.RUNNING)
        self.assertIn("warming up", self.supervisor.history(instance_id))

    async def test_missing_path_and_unknown_id(self) -> None:
        instance_id = self._add("echo")
        self.registry.records[instance_id].path = str(self.root / "gone")

        with self.assertRaises(PathMissing):
            await self.supervisor.start(instance_id)
        with self.assertRaises(InstanceNotFound):
            await self.supervisor.start("nope")
        self.assertEqual(self.supervisor.running_count, 0)

    async def test_interactive_command_reaches_stdin(self) -> None:
        instance_id = self._add("echo")
        await self.supervisor.start(instance_id)
        await _wait_until(lambda: self.supervisor.status_of(instance_id) == InstanceStatus.RUNNING)

        result = await self.supervisor.send_command(instance_id, "hello")

        self.assertEqual(result, {"mode": "interactive"})
        await _wait_until(lambda: "echo: hello" in self.supervisor.history(instance_id))
        self.assertIn("> hello", self.supervisor.history(instance_id))

    async def test_offline_command_runs_untracked_helper(self) -> None:
        instance_id = self._add("echo")

        result = await self.supervisor.send_command(instance_id, "offline-ok")
        await self.supervisor.wait_idle()

        self.assertEqual(result, {"mode": "offline"})
        history = self.supervisor.history(instance_id)
        self.assertIn("[OFFLINE] > offline-ok", history)
        self.assertIn("offline-ok", history)
        self.assertFalse(self.supervisor.is_running(instance_id))


    async def test_restart_is_not_overwritten_by_previous_exit(self) -> None:
        instance_id = self._add("silent")
        await self.supervisor.start(instance_id)
        await self.supervisor.stop(instance_id)
        await self.supervisor.start(instance_id)

        await _wait_until(lambda: "--- Instance Exited" in " ".join(self.supervisor.history(instance_id)))
        await asyncio.sleep(0.1)

        statuses = [status for status, _ in self._statuses(instance_id)]
        self.assertEqual(statuses, ["starting", "stopped", "starting"])
        self.assertEqual(self.supervisor.status_of(instance_id), InstanceStatus.STARTING)
        self.assertEqual(self.coordinator.auto_stop_calls, [0])

    async def test_colour_codes_are_stripped_from_history(self) -> None:
        instance_id = self._add("color")
        await self.supervisor.start(instance_id)
        await _wait_until(lambda: self.supervisor.status_of(instance_id) == InstanceStatus.RUNNING)

        history = self.supervisor.history(instance_id)
        self.assertIn("ready", history)
        self.assertFalse(any("\x1b" in line for line in history))

    async def test_output_handler_failure_does_not_wedge_instance(self) -> None:
        supervisor = _FailingOutputSupervisor(
            self.registry,
            self.channel,
            self.settings,
            self.coordinator,
            launch_resolver=_resolver,
        )
        instance_id = self._add("boom")
        try:
            await supervisor.start(instance_id)
            await _wait_until(lambda: not supervisor.is_running(instance_id))
            await supervisor.wait_idle()
        finally:
            await supervisor.shutdown()

        self.assertIn("stopped", [status for status, _ in self._statuses(instance_id)])
        self.assertEqual(self.coordinator.auto_stop_calls, [0])


if __name__ == "__main__":
    unittest.main()
