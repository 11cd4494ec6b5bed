"""
WebSocket endpoint for the realtime chat channel.

Clients connect to /ws/chat?token=<access token>. Frames are JSON
objects {"event": name, "v": 1, "data": payload} in both directions.
"""

import json
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from chatforum.kernel.errors import EventValidationError
from chatforum.logging_config import connection_id_var, get_logger
from chatforum.realtime import RealtimeHub
from chatforum.realtime.events import decode_frame

router = APIRouter()
logger = get_logger(__name__)


@router.websocket("/ws/chat")
async def chat_socket(websocket: WebSocket, token: Optional[str] = Query(default=None)):
    hub: RealtimeHub = websocket.app.state.hub
    await websocket.accept()
    handle = hub.transport.attach(websocket)
    ctx_token = connection_id_var.set(handle.id)

    try:
        if not await hub.supervisor.on_connect(handle, token):
            return

        while True:
            raw = await websocket.receive_text()
            try:
                event, payload = decode_frame(json.loads(raw))
            except (ValueError, EventValidationError) as exc:
                logger.info("Dropped inbound frame: %s", exc)
                continue
            await hub.supervisor.on_message(handle, event, payload)
    except WebSocketDisconnect as exc:
        logger.debug("Socket closed by peer (code %s)", exc.code)
    except RuntimeError as exc:
        # Receive after the server already closed the socket
        logger.debug("Socket closed by server: %s", exc)
    finally:
        hub.transport.detach(handle)
        await hub.supervisor.on_disconnect(handle)
        connection_id_var.reset(ctx_token)
