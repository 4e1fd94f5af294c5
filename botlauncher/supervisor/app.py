import asyncio
import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api_instances import router as instances_router
from .api_shared import router as shared_router
from .api_stream import router as stream_router
from .errors import LauncherError
from .runtime import LauncherRuntime
from .settings import LauncherSettings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()],
)
logger = logging.getLogger("botlauncher.supervisor")

VERSION = "0.1.0"


def create_app(settings: LauncherSettings | None = None, **runtime_overrides) -> FastAPI:
    """Build the launcher API around a fresh LauncherRuntime."""
    app = FastAPI(title="BotLauncher Supervisor")
    app.state.runtime = LauncherRuntime(settings, **runtime_overrides)
    app.include_router(instances_router)
    app.include_router(shared_router)
    app.include_router(stream_router)

    @app.exception_handler(LauncherError)
    async def launcher_error_handler(request: Request, exc: LauncherError):
        logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.message, exc.error_code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_detail())

    @app.on_event("startup")
    async def startup_event():
        await app.state.runtime.startup()
        logger.info("Launcher API ready.")

    @app.on_event("shutdown")
    async def shutdown_event():
        await app.state.runtime.shutdown()

    @app.get("/health")
    async def health_check():
        runtime: LauncherRuntime = app.state.runtime
        return {
            "status": "ok",
            "version": VERSION,
            "running": runtime.supervisor.running_count,
            "observers": runtime.channel.observer_count,
        }

    @app.post("/shutdown")
    async def shutdown():
        logger.info("Shutdown requested via API.")
        await app.state.runtime.shutdown()
        # Schedule process exit to allow response to be sent
        loop = asyncio.get_running_loop()
        loop.call_later(1, lambda: os._exit(0))
        return {"status": "shutting_down"}

    return app


app = create_app()
