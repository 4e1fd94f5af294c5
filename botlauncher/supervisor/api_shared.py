"""HTTP API endpoints for the shared Redis server."""

import logging

from fastapi import APIRouter, Depends

from .models import KeepAliveUpdate
from .runtime import LauncherRuntime, get_runtime

logger = logging.getLogger("botlauncher.supervisor.api_shared")

router = APIRouter(prefix="/api/shared-resource")


@router.get("/status")
async def redis_status(runtime: LauncherRuntime = Depends(get_runtime)):
    return await runtime.coordinator.status()


@router.post("/start")
async def start_redis(runtime: LauncherRuntime = Depends(get_runtime)):
    return await runtime.coordinator.start()


@router.post("/stop")
async def stop_redis(runtime: LauncherRuntime = Depends(get_runtime)):
    return await runtime.coordinator.stop()


@router.get("/keepalive")
async def get_keep_alive(runtime: LauncherRuntime = Depends(get_runtime)):
    return {"enabled": await runtime.coordinator.get_keep_alive()}


@router.post("/keepalive")
async def set_keep_alive(body: KeepAliveUpdate, runtime: LauncherRuntime = Depends(get_runtime)):
    """Persist the override that keeps Redis up after the last instance stops."""
    return {"enabled": await runtime.coordinator.set_keep_alive(body.enabled)}
