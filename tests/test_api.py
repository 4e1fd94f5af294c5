"""Tests for the HTTP and WebSocket surface of the launcher."""

import socket
import sys
import tempfile
import time
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

from botlauncher.supervisor.app import create_app
from botlauncher.supervisor.launch import LaunchPlan
from botlauncher.supervisor.settings import LauncherSettings


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _resolver(record, settings) -> LaunchPlan:
    script = "import time; print('hello from ' + %r, flush=True); time.sleep(60)" % record.name
    return LaunchPlan(program=sys.executable, args=["-u", "-c", script])


class LauncherApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        settings = LauncherSettings(
            home_dir=root / "home",
            bin_dir=root / "bin",
            redis_port=_free_port(),
            autostart_instances=False,
        )
        self.client = TestClient(create_app(settings, launch_resolver=_resolver))
        self.client.__enter__()

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)
        self._tmp.cleanup()

    def _create(self, name: str, port: int) -> dict:
        response = self.client.post("/api/instances", json={"name": name, "port": port})
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def test_health(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")

    def test_port_conflict_maps_to_409_with_owner(self) -> None:
        port = _free_port()
        self._create("alpha", port)

        response = self.client.post("/api/instances", json={"name": "beta", "port": port})

        self.assertEqual(response.status_code, 409)
        body = response.json()
        self.assertEqual(body["error_code"], "PORT_CONFLICT")
        self.assertEqual(body["usedBy"], "alpha")
        self.assertEqual(self.client.get(f"/api/instances/check-port/{port}").json()["usedBy"], "alpha")
        self.assertFalse(self.client.get("/api/instances/check-name/alpha").json()["available"])

    def test_check_port_out_of_range_is_not_a_server_error(self) -> None:
        for port in (70000, -1):
            response = self.client.get(f"/api/instances/check-port/{port}")
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.json(), {"available": False, "error": "Invalid port number"})

    def test_unknown_instance_and_state_errors(self) -> None:
        self.assertEqual(self.client.get("/api/instances/nope").status_code, 404)
        created = self._create("alpha", _free_port())
        response = self.client.post(f"/api/instances/{created['id']}/stop")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error_code"], "NOT_RUNNING")
        invalid = self.client.post("/api/instances", json={"name": "bad name", "port": _free_port()})
        self.assertEqual(invalid.status_code, 400)

    def test_start_logs_and_stop(self) -> None:
        created = self._create("alpha", _free_port())
        instance_id = created["id"]

        started = self.client.post(f"/api/instances/{instance_id}/start")
        self.assertEqual(started.json()["status"], "starting")
        self.assertEqual(self.client.post(f"/api/instances/{instance_id}/start").status_code, 409)

        deadline = time.monotonic() + 10
        while "hello from alpha" not in self.client.get(f"/api/instances/{instance_id}/logs").json():
            self.assertLess(time.monotonic(), deadline)
            time.sleep(0.05)
        self.assertEqual(self.client.get("/api/instances/status").json(), {instance_id: "running"})

        stopped = self.client.post(f"/api/instances/{instance_id}/stop")
        self.assertEqual(stopped.json(), {"status": "stopped"})
        listing = self.client.get("/api/instances").json()
        self.assertEqual([item["status"] for item in listing], ["stopped"])

    def test_websocket_replays_history_first(self) -> None:
        self._create("alpha", _free_port())

        with self.client.websocket_connect("/ws") as websocket:
            welcome = websocket.receive_json()
            self.assertEqual(welcome["type"], "WELCOME")
            first = websocket.receive_json()
            self.assertEqual(first, {"type": "GLOBAL_LOG", "data": "[SYSTEM] Launcher started"})
            second = websocket.receive_json()
            self.assertEqual(second["type"], "GLOBAL_LOG")
            self.assertIn("Instance 'alpha' created", second["data"])

            self.client.post("/api/shared-resource/keepalive", json={"enabled": True})
            live = websocket.receive_json()
            self.assertEqual(live, {"type": "GLOBAL_LOG", "data": "[SYSTEM] Redis keep-alive enabled"})

    def test_shared_resource_endpoints(self) -> None:
        self.assertEqual(self.client.get("/api/shared-resource/keepalive").json(), {"enabled": False})
        status = self.client.get("/api/shared-resource/status").json()
        self.assertFalse(status["running"])
        response = self.client.post("/api/shared-resource/stop")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error_code"], "RESOURCE_NOT_RUNNING")


if __name__ == "__main__":
    unittest.main()
