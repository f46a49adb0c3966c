"""Live tail of a node's console over a WebSocket.

The handler re-attaches the node's screen session through the executor and
forwards every output chunk to the client.  When the client goes away the
handler cancels its own tail call, which closes that call's SSH session
(or drops it from the lock queue) and leaves other work on the host alone.
"""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from nodefleet.models.nodes import ServiceType
from nodefleet.services.scripts import BOB_SCREEN_NAME, LITE_SCREEN_NAME
from nodefleet.utils.logging import get_logger

log = get_logger(__name__)

router = APIRouter(tags=["logs"])

SCREEN_NAMES = {
    ServiceType.lite_node: LITE_SCREEN_NAME,
    ServiceType.bob_node: BOB_SCREEN_NAME,
}


def tail_command(kind: ServiceType) -> str:
    return f"screen -r {SCREEN_NAMES[kind]} -d"


@router.websocket("/ws/logs/{server}/{service}")
async def tail_logs(websocket: WebSocket, server: str, service: ServiceType) -> None:
    services = websocket.app.state.services
    expected = services.cfg.fleet_api_key
    if expected and websocket.headers.get("x-api-key") != expected:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    record = await services.store.find_server_by_host(server)
    if record is None:
        log.warning("logs.unknown_server", host=server)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    queue: asyncio.Queue[str] = asyncio.Queue()
    executor = services.executor

    tail = asyncio.create_task(
        executor.execute(
            record.credentials(),
            [tail_command(service)],
            on_data=queue.put_nowait,
        )
    )
    log.info("logs.subscribed", host=server, service=service.value)

    async def pump() -> None:
        while True:
            chunk = await queue.get()
            await websocket.send_json({"service": service.value, "log": chunk})

    async def watch_client() -> None:
        # Only disconnects matter; any client message is ignored
        while True:
            await websocket.receive_text()

    sender = asyncio.create_task(pump())
    watcher = asyncio.create_task(watch_client())
    try:
        done, _ = await asyncio.wait(
            {tail, watcher}, return_when=asyncio.FIRST_COMPLETED,
        )
        if tail in done:
            result = tail.result()
            while not queue.empty():
                await websocket.send_json({"service": service.value, "log": queue.get_nowait()})
            if not result.is_success:
                await websocket.send_json({
                    "service": service.value,
                    "log": f"Error executing SSH commands: {result.stderr_text}\n",
                })
            await websocket.close()
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        watcher.cancel()
        if not tail.done():
            log.info("logs.unsubscribed", host=server, service=service.value)
            tail.cancel()
            await asyncio.gather(tail, return_exceptions=True)
        await asyncio.gather(sender, watcher, return_exceptions=True)
