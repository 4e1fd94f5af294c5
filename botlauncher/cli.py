import json
import os
import signal
import socket
import subprocess
import sys
from pathlib import Path
from typing import Optional

import httpx
import psutil
import typer
import uvicorn

from botlauncher.supervisor.settings import LauncherSettings

app = typer.Typer(help="Launch and supervise bot instances.")
instance_app = typer.Typer(help="Manage bot instances.")
redis_app = typer.Typer(help="Manage the shared Redis server.")
app.add_typer(instance_app, name="instance")
app.add_typer(redis_app, name="redis")

SETTINGS = LauncherSettings.from_env()
BOTLAUNCHER_DIR = SETTINGS.home_dir
PID_FILE = BOTLAUNCHER_DIR / "supervisor.pid"
LOG_DIR = BOTLAUNCHER_DIR / "logs"
SUPERVISOR_HOST = SETTINGS.host
SUPERVISOR_PORT = SETTINGS.port
SUPERVISOR_URL = f"http://{SUPERVISOR_HOST}:{SUPERVISOR_PORT}"


def ensure_dirs():
    BOTLAUNCHER_DIR.mkdir(parents=True, exist_ok=True)
    LOG_DIR.mkdir(parents=True, exist_ok=True)


def is_port_in_use(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        return s.connect_ex((SUPERVISOR_HOST, port)) == 0


def _request(method: str, path: str, **kwargs) -> httpx.Response:
    try:
        return httpx.request(method, f"{SUPERVISOR_URL}{path}", timeout=10.0, **kwargs)
    except httpx.ConnectError:
        typer.echo("Launcher is not running.")
        raise typer.Exit(code=1)


def _ok_or_exit(response: httpx.Response) -> dict | list:
    """Return the JSON body of a 2xx response, otherwise print the error and exit."""
    try:
        payload = response.json()
    except ValueError:
        payload = {"error": response.text}
    if response.status_code >= 400:
        message = payload.get("error") if isinstance(payload, dict) else None
        typer.echo(f"Error ({response.status_code}): {message or payload}")
        raise typer.Exit(code=1)
    return payload


@app.command()
def start():
    """Start the launcher API in the background."""
    ensure_dirs()

    if PID_FILE.exists():
        try:
            pid = int(PID_FILE.read_text())
            if psutil.pid_exists(pid):
                typer.echo(f"Launcher already running (PID: {pid})")
                return
            typer.echo("Stale PID file found. Removing...")
            PID_FILE.unlink()
        except ValueError:
            PID_FILE.unlink()

    if is_port_in_use(SUPERVISOR_PORT):
        typer.echo(f"Error: Port {SUPERVISOR_PORT} is already in use by another process.")
        raise typer.Exit(code=1)

    typer.echo("Starting launcher...")
    cmd = [
        sys.executable, "-m", "uvicorn",
        "botlauncher.supervisor.app:app",
        "--host", SUPERVISOR_HOST,
        "--port", str(SUPERVISOR_PORT),
    ]

    kwargs = {}
    if sys.platform == "win32":
        kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True

    with open(LOG_DIR / "launcher.log", "a") as log_file:
        process = subprocess.Popen(cmd, stdout=log_file, stderr=log_file, **kwargs)

    PID_FILE.write_text(str(process.pid))
    typer.echo(f"Launcher started (PID: {process.pid}) on {SUPERVISOR_URL}")


@app.command()
def stop():
    """Stop the background launcher and every instance it supervises."""
    if not PID_FILE.exists():
        typer.echo("Launcher not running (no PID file)")
        return

    try:
        pid = int(PID_FILE.read_text())

        try:
            typer.echo("Attempting graceful shutdown...")
            response = httpx.post(f"{SUPERVISOR_URL}/shutdown", timeout=15.0)
            if response.status_code == 200:
                typer.echo(f"Launcher shutting down gracefully (PID: {pid})...")
                PID_FILE.unlink()
                return
        except (httpx.ConnectError, httpx.TimeoutException):
            typer.echo("Graceful shutdown failed (API unreachable).")

        typer.echo(f"Forcing stop (PID: {pid})...")
        os.kill(pid, signal.SIGTERM)
        typer.echo("Launcher stopped.")
        PID_FILE.unlink()
    except ProcessLookupError:
        typer.echo("Launcher process not found. Cleaning up PID file.")
        PID_FILE.unlink()
    except (OSError, ValueError) as e:
        typer.echo(f"Failed to stop launcher: {e}")


@app.command()
def status():
    """Check launcher health and list instances."""
    try:
        response = httpx.get(f"{SUPERVISOR_URL}/health", timeout=5.0)
    except httpx.ConnectError:
        typer.echo("Launcher: NOT RESPONDING (Connection refused)")
        return
    if response.status_code != 200:
        typer.echo("Launcher: UNHEALTHY (API not responding correctly)")
        return
    health = response.json()
    typer.echo(f"Launcher: RUNNING (version {health['version']}, {health['observers']} observer(s))")
    _print_instances(_ok_or_exit(_request("GET", "/api/instances")))


@app.command()
def serve(
    host: str = typer.Option(SUPERVISOR_HOST, "--host"),
    port: int = typer.Option(SUPERVISOR_PORT, "--port"),
):
    """Run the launcher API in the foreground."""
    uvicorn.run("botlauncher.supervisor.app:app", host=host, port=port)


@app.command()
def tail(instance_id: Optional[str] = typer.Argument(None, help="Only show lines of this instance.")):
    """Follow the live event stream (replay first, then live)."""
    try:
        with httpx.stream("GET", f"{SUPERVISOR_URL}/api/events", timeout=None) as response:
            for raw in response.iter_lines():
                if not raw.startswith("data: "):
                    continue
                event = json.loads(raw[len("data: "):])
                if instance_id and event.get("instanceId") != instance_id:
                    continue
                typer.echo(_format_event(event))
    except httpx.ConnectError:
        typer.echo("Launcher is not running.")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        return


def _format_event(event: dict) -> str:
    kind = event.get("type")
    target = event.get("instanceId")
    if kind == "STATUS":
        suffix = f" (exit code {event['exitCode']})" if "exitCode" in event else ""
        return f"[{target}] status -> {event.get('data')}{suffix}"
    if kind in {"TERMINAL_OPENED", "TERMINAL_CLOSED"}:
        return f"[{target}] {kind.lower()}"
    if target:
        return f"[{target}] {event.get('data', '')}"
    return str(event.get("data", ""))


def _print_instances(instances: list) -> None:
    typer.echo(f"Instances: {len(instances)}")
    for item in instances:
        port = item.get("port") or "-"
        typer.echo(f" - {item['name']} ({item['id']}) [{item['status']}] {item['type']} port={port}")


@instance_app.command("list")
def instance_list():
    """List registered instances with their current status."""
    _print_instances(_ok_or_exit(_request("GET", "/api/instances")))


@instance_app.command("create")
def instance_create(
    name: str,
    instance_type: str = typer.Option("yunzai", "--type", help="yunzai, gsuid or nonebot"),
    port: Optional[int] = typer.Option(None, "--port"),
    path: Optional[Path] = typer.Option(None, "--path"),
    auto_start: bool = typer.Option(False, "--auto-start"),
    independent_redis: bool = typer.Option(False, "--independent-redis"),
):
    """Register a new instance directory."""
    body = {
        "name": name,
        "type": instance_type,
        "port": port,
        "path": str(path) if path else None,
        "auto_start": auto_start,
        "redis_mode": "independent" if independent_redis else "shared",
    }
    data = _ok_or_exit(_request("POST", "/api/instances", json=body))
    typer.echo(f"Instance created: {data['name']} (ID: {data['id']}) port={data['port']}")


@instance_app.command("import")
def instance_import(path: Path, name: str, port: Optional[int] = typer.Option(None, "--port")):
    """Import an existing bot directory."""
    body = {"path": str(path), "name": name, "port": port}
    data = _ok_or_exit(_request("POST", "/api/instances/import", json=body))
    typer.echo(f"Imported {data['type']} instance: {data['name']} (ID: {data['id']}) port={data['port']}")


@instance_app.command("start")
def instance_start(instance_id: str):
    data = _ok_or_exit(_request("POST", f"/api/instances/{instance_id}/start"))
    typer.echo(f"Instance {instance_id}: {data['status']}")


@instance_app.command("stop")
def instance_stop(instance_id: str):
    data = _ok_or_exit(_request("POST", f"/api/instances/{instance_id}/stop"))
    typer.echo(f"Instance {instance_id}: {data['status']}")


@instance_app.command("send")
def instance_send(instance_id: str, command: str):
    """Send a console command (runs as a shell command when the instance is stopped)."""
    data = _ok_or_exit(_request("POST", f"/api/instances/{instance_id}/command", json={"command": command}))
    typer.echo(f"Sent ({data['mode']})")


@instance_app.command("logs")
def instance_logs(instance_id: str, lines: int = typer.Option(100, "--lines", "-n")):
    history = _ok_or_exit(_request("GET", f"/api/instances/{instance_id}/logs"))
    for line in history[-lines:]:
        typer.echo(line)


@instance_app.command("check-port")
def instance_check_port(port: int):
    data = _ok_or_exit(_request("GET", f"/api/instances/check-port/{port}"))
    if data["available"]:
        typer.echo(f"Port {port} is available")
    elif data.get("usedBy"):
        typer.echo(f"Port {port} is used by instance \"{data['usedBy']}\"")
    else:
        typer.echo(f"Port {port} is in use by the system")


@instance_app.command("check-name")
def instance_check_name(name: str):
    data = _ok_or_exit(_request("GET", f"/api/instances/check-name/{name}"))
    typer.echo(f"Name {name} is {'available' if data['available'] else 'taken'}")


@redis_app.command("start")
def redis_start():
    _ok_or_exit(_request("POST", "/api/shared-resource/start"))
    typer.echo("Redis started")


@redis_app.command("stop")
def redis_stop():
    _ok_or_exit(_request("POST", "/api/shared-resource/stop"))
    typer.echo("Redis stopped")


@redis_app.command("status")
def redis_status():
    data = _ok_or_exit(_request("GET", "/api/shared-resource/status"))
    state = "RUNNING" if data["running"] else "STOPPED"
    typer.echo(f"Redis: {state} (port {data['port']}, keep-alive {'on' if data['keepAlive'] else 'off'})")


@redis_app.command("keepalive")
def redis_keepalive(enabled: Optional[bool] = typer.Argument(None, help="true/false; omit to show the current value")):
    """Show or set whether Redis stays up after the last instance stops."""
    if enabled is None:
        data = _ok_or_exit(_request("GET", "/api/shared-resource/keepalive"))
    else:
        data = _ok_or_exit(_request("POST", "/api/shared-resource/keepalive", json={"enabled": enabled}))
    typer.echo(f"Redis keep-alive: {'on' if data['enabled'] else 'off'}")


if __name__ == "__main__":
    app()
