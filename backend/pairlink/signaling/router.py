"""Signaling WebSocket endpoint.

    WebSocket /ws?userId=<external identity>

Frames are JSON objects with a ``type`` field (see
:mod:`pairlink.signaling.events`). The optional ``userId`` query parameter
binds an identity to the connection before it joins a room, which lets it
request relay credentials and is the key the user rate-limit scope uses.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from pairlink.services import get_services
from pairlink.signaling.connection import Connection

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def signaling_endpoint(
    websocket: WebSocket,
    userId: Optional[str] = Query(None, max_length=128),
) -> None:
    """Accept a peer and feed its frames to the dispatcher until it goes away.

    Cleanup runs exactly once whichever way the loop ends: a client close, a
    transport error, or an eviction that closed the socket from the server
    side.
    """
    services = get_services()
    await websocket.accept()

    origin = websocket.client.host if websocket.client else None
    connection = Connection(websocket, origin=origin, user_id=userId or None)
    services.registry.register(connection)
    logger.info("[WS] Connected %s (user=%s, origin=%s)", connection.id, userId, origin)

    reason = "disconnect"
    try:
        while not connection.is_closing:
            text = await websocket.receive_text()
            try:
                raw = json.loads(text)
            except json.JSONDecodeError:
                logger.warning("[WS] Non-JSON frame from %s dropped", connection.identity)
                await connection.send({
                    "type": "error",
                    "code": "INVALID_PAYLOAD",
                    "message": "Frames must be JSON objects",
                })
                continue
            await services.dispatcher.handle(connection, raw)
    except WebSocketDisconnect as e:
        logger.info("[WS] %s disconnected (code=%s)", connection.identity, e.code)
    except Exception as e:
        reason = "transport-error"
        logger.warning(f"[WS] Connection {connection.id} failed: {e}")
    finally:
        await services.dispatcher.disconnect(connection, reason=reason)
