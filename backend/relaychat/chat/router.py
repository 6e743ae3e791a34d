"""Chat router providing the WebSocket session and HTTP query endpoints.

This module provides:
    - WebSocket /ws?token=...: Real-time session (presence, messaging, metrics)
    - GET /users/online: Users currently marked online
    - GET /messages/history: Recent public-room messages, newest first

Protocol Flow:
    1. Client connects with a bearer token
       → on failure: {type: "auth_error", error} and close(1008)
       → Server sends: {type: "connected", connectionId, userId, displayName}
       → Others receive: {type: "presence_joined", user}
       → Everyone receives: {type: "presence_snapshot", users: [...]}
    2. Client sends events ({type: "send_broadcast", text}, ...)
       → dispatched by the SessionGateway
    3. On disconnect → {type: "presence_left", user} + fresh snapshot
"""
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from relaychat.auth.service import AuthenticationError
from relaychat.config import get_config
from relaychat.storage import ChatStore

from .gateway import get_gateway
from .models import ConnectionState

logger = logging.getLogger(__name__)

router = APIRouter()

# 1008 = Policy Violation
AUTH_FAILED_CLOSE_CODE = 1008


@router.get("/users/online")
async def online_users() -> JSONResponse:
    """Users whose persisted presence flag is set."""
    try:
        users = await ChatStore.get_instance().list_online_users()
    except Exception as e:
        logger.error(f"[HTTP] Online users query failed: {e}")
        return JSONResponse({"error": "Database error"}, status_code=500)
    return JSONResponse([u.model_dump(mode="json") for u in users])


@router.get("/messages/history")
async def message_history(
    limit: Optional[int] = Query(None, ge=1, description="Number of messages to return")
) -> JSONResponse:
    """Recent public-room messages, most recent first.

    Bounded by ``history.broadcast_history_limit``.
    """
    max_limit = get_config().history.broadcast_history_limit
    limit = min(limit or max_limit, max_limit)
    try:
        messages = await ChatStore.get_instance().list_recent_broadcasts(limit)
    except Exception as e:
        logger.error(f"[HTTP] Message history query failed: {e}")
        return JSONResponse({"error": "Database error"}, status_code=500)
    return JSONResponse([m.model_dump(mode="json") for m in messages])


@router.websocket("/ws")
async def websocket_session(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer token from /auth/login"),
) -> None:
    """WebSocket endpoint for one client session.

    Args:
        websocket: The WebSocket connection.
        token: Bearer credential; the session is refused without a valid one.
    """
    gateway = get_gateway()
    await websocket.accept()

    try:
        connection = gateway.authenticate(websocket, token)
    except AuthenticationError as e:
        logger.warning(f"[WS] Handshake rejected: {e}")
        await websocket.send_json({"type": "auth_error", "error": str(e)})
        await websocket.close(code=AUTH_FAILED_CLOSE_CODE)
        return

    logger.info(
        f"[WS] {connection.display_name} (userId={connection.user_id}) connected "
        f"as {connection.connection_id}"
    )

    try:
        await gateway.activate(connection)
        while True:
            raw = await websocket.receive_text()
            await gateway.handle_frame(connection, raw)
            if connection.state == ConnectionState.DISCONNECTED:
                # Replaced by a newer session; the socket is already closed
                break
    except WebSocketDisconnect:
        logger.info(f"[WS] {connection.display_name} disconnected")
    finally:
        await gateway.disconnect(connection)
