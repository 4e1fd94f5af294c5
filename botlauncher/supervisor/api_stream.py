"""Observer endpoints: WebSocket and server-sent event streams of launcher events."""

import asyncio
import json
import logging

from fastapi import APIRouter, Depends, Request, WebSocket, WebSocketDisconnect
from starlette.responses import StreamingResponse

from .broadcast import Observer
from .runtime import LauncherRuntime, get_runtime

logger = logging.getLogger("botlauncher.supervisor.api_stream")

router = APIRouter()

SSE_KEEPALIVE_SECONDS = 15.0


@router.get("/api/logs/global")
async def global_logs(runtime: LauncherRuntime = Depends(get_runtime)):
    return runtime.aggregator.global_history()


async def _send_events(websocket: WebSocket, observer: Observer) -> None:
    while True:
        event = await observer.next_event()
        if event is None:
            if observer.overflowed:
                logger.warning("Closing WebSocket observer that fell behind")
            return
        await websocket.send_json(event)


async def _receive_until_closed(websocket: WebSocket) -> None:
    try:
        while True:
            # clients have nothing to say; reading only detects disconnects
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


@router.websocket("/ws")
async def observer_websocket(websocket: WebSocket):
    """Replay buffered output, then forward live events until either side leaves."""
    runtime: LauncherRuntime = websocket.app.state.runtime
    await websocket.accept()
    observer = runtime.channel.subscribe()
    sender = asyncio.create_task(_send_events(websocket, observer))
    receiver = asyncio.create_task(_receive_until_closed(websocket))
    try:
        done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, (WebSocketDisconnect, RuntimeError)):
                logger.error("WebSocket observer error: %s", exc)
    finally:
        runtime.channel.unsubscribe(observer)
    if sender in done:
        try:
            await websocket.close()
        except RuntimeError:
            pass


@router.get("/api/events")
async def observer_events(request: Request, runtime: LauncherRuntime = Depends(get_runtime)):
    """Same event sequence as /ws, framed as server-sent events."""
    observer = runtime.channel.subscribe()

    async def event_generator():
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(observer.next_event(), timeout=SSE_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                if event is None:
                    break
                yield f"data: {json.dumps(event)}\n\n"
        finally:
            runtime.channel.unsubscribe(observer)

    headers = {
        "Content-Type": "text/event-stream",
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
    }
    return StreamingResponse(event_generator(), headers=headers)
