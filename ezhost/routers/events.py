# ezhost/routers/events.py
"""Live registry, status and console events over WebSocket."""

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 30.0

router = APIRouter()


@router.websocket("/ws/servers")
async def websocket_servers(websocket: WebSocket):
    """Initial snapshot of all servers, then every change as it happens."""
    await websocket.accept()

    bus = websocket.app.state.events
    orchestrator = websocket.app.state.orchestrator
    event_queue = bus.subscribe()

    try:
        await websocket.send_json({
            "type": "snapshot",
            "servers": [record.to_dict() for record in orchestrator.list_servers()],
        })
        while True:
            try:
                event = await asyncio.wait_for(event_queue.get(), timeout=HEARTBEAT_INTERVAL)
                await websocket.send_json(event)
            except asyncio.TimeoutError:
                await websocket.send_json({"type": "heartbeat"})
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.debug("Server events WebSocket error", exc_info=True)
    finally:
        bus.unsubscribe(event_queue)
