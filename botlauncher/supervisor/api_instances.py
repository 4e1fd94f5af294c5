"""HTTP API endpoints for instance management and lifecycle."""

import logging

from fastapi import APIRouter, Depends

from .models import (
    AutoStartUpdate,
    CommandRequest,
    InstanceCreate,
    InstanceImport,
    InstanceRename,
    InstanceView,
    PortUpdate,
    ProxyConfig,
)
from .runtime import LauncherRuntime, get_runtime

logger = logging.getLogger("botlauncher.supervisor.api_instances")

router = APIRouter(prefix="/api/instances")


@router.get("", response_model=list[InstanceView])
async def list_instances(runtime: LauncherRuntime = Depends(get_runtime)):
    return await runtime.instances.list_instances()


@router.get("/status")
async def current_statuses(runtime: LauncherRuntime = Depends(get_runtime)):
    """Current status of every live instance; absent ids are stopped."""
    return runtime.supervisor.statuses()


@router.get("/check-port/{port}")
async def check_port(port: int, runtime: LauncherRuntime = Depends(get_runtime)):
    return await runtime.conflicts.check_port(port)


@router.get("/check-name/{name}")
async def check_name(name: str, runtime: LauncherRuntime = Depends(get_runtime)):
    return await runtime.conflicts.check_name(name)


@router.post("", response_model=InstanceView, status_code=201)
async def create_instance(body: InstanceCreate, runtime: LauncherRuntime = Depends(get_runtime)):
    return await runtime.instances.create(
        body.name,
        body.type,
        port=body.port,
        path=body.path,
        auto_start=body.auto_start,
        redis_mode=body.redis_mode,
    )


@router.post("/import", response_model=InstanceView, status_code=201)
async def import_instance(body: InstanceImport, runtime: LauncherRuntime = Depends(get_runtime)):
    return await runtime.instances.import_instance(body.path, body.name, port=body.port)


@router.get("/{instance_id}", response_model=InstanceView)
async def get_instance(instance_id: str, runtime: LauncherRuntime = Depends(get_runtime)):
    return await runtime.instances.get_instance(instance_id)


@router.delete("/{instance_id}")
async def remove_instance(
    instance_id: str,
    delete_files: bool = False,
    runtime: LauncherRuntime = Depends(get_runtime),
):
    await runtime.instances.remove(instance_id, delete_files=delete_files)
    return {"success": True, "id": instance_id}


@router.post("/{instance_id}/start")
async def start_instance(instance_id: str, runtime: LauncherRuntime = Depends(get_runtime)):
    return await runtime.supervisor.start(instance_id)


@router.post("/{instance_id}/stop")
async def stop_instance(instance_id: str, runtime: LauncherRuntime = Depends(get_runtime)):
    return await runtime.supervisor.stop(instance_id)


@router.post("/{instance_id}/command")
async def send_command(instance_id: str, body: CommandRequest, runtime: LauncherRuntime = Depends(get_runtime)):
    return await runtime.supervisor.send_command(instance_id, body.command)


@router.get("/{instance_id}/logs")
async def get_logs(instance_id: str, runtime: LauncherRuntime = Depends(get_runtime)):
    return runtime.supervisor.history(instance_id)


@router.post("/{instance_id}/rename", response_model=InstanceView)
async def rename_instance(instance_id: str, body: InstanceRename, runtime: LauncherRuntime = Depends(get_runtime)):
    return await runtime.instances.rename(instance_id, body.new_name)


@router.put("/{instance_id}/port", response_model=InstanceView)
async def update_port(instance_id: str, body: PortUpdate, runtime: LauncherRuntime = Depends(get_runtime)):
    return await runtime.instances.update_port(instance_id, body.port)


@router.post("/{instance_id}/autostart", response_model=InstanceView)
async def set_auto_start(instance_id: str, body: AutoStartUpdate, runtime: LauncherRuntime = Depends(get_runtime)):
    return await runtime.instances.set_auto_start(instance_id, body.auto_start)


@router.get("/{instance_id}/proxy")
async def get_proxy(instance_id: str, runtime: LauncherRuntime = Depends(get_runtime)):
    return await runtime.instances.get_proxy(instance_id)


@router.post("/{instance_id}/proxy")
async def set_proxy(instance_id: str, body: ProxyConfig, runtime: LauncherRuntime = Depends(get_runtime)):
    """Replace proxy settings; an empty host clears them."""
    return await runtime.instances.set_proxy(instance_id, body)


@router.post("/{instance_id}/terminal")
async def open_terminal(instance_id: str, runtime: LauncherRuntime = Depends(get_runtime)):
    return await runtime.terminals.open(instance_id)


@router.post("/{instance_id}/terminal/command")
async def terminal_command(instance_id: str, body: CommandRequest, runtime: LauncherRuntime = Depends(get_runtime)):
    return await runtime.terminals.send(instance_id, body.command)


@router.post("/{instance_id}/terminal/close")
async def close_terminal(instance_id: str, runtime: LauncherRuntime = Depends(get_runtime)):
    return await runtime.terminals.close(instance_id)
