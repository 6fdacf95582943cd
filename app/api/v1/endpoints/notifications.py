"""WebSocket notification channel."""

import asyncio
import json
from typing import Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from app.core.security import user_id_from_token
from app.dependencies import Registry

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Notifications"])

# Seconds a new socket has to send its auth message
AUTH_TIMEOUT_SECONDS = 10


def _parse(raw: str) -> dict[str, Any]:
    try:
        message = json.loads(raw)
    except ValueError:
        return {}
    return message if isinstance(message, dict) else {}


async def _authenticate(websocket: WebSocket) -> int | None:
    """Wait for the auth message and return the user id it carries."""
    try:
        raw = await asyncio.wait_for(websocket.receive_text(), timeout=AUTH_TIMEOUT_SECONDS)
    except TimeoutError:
        logger.info("websocket_auth_timeout")
        return None

    message = _parse(raw)
    if message.get("type") != "auth":
        return None
    return user_id_from_token(str(message.get("token", "")))


@router.websocket("/ws")
async def notification_socket(websocket: WebSocket, registry: Registry) -> None:
    """
    Notification channel for one user.

    The client must first send ``{"type": "auth", "token": <access token>}``.
    After ``auth_success`` the server pushes ``notification`` messages and
    answers ``ping`` with ``pong``. Any message from the client counts as a
    sign of life for the heartbeat.
    """
    await websocket.accept()

    try:
        user_id = await _authenticate(websocket)
    except WebSocketDisconnect:
        return

    if user_id is None:
        await websocket.send_json({"type": "auth_error", "message": "Authentication failed"})
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    identity = str(user_id)
    await registry.register(identity, websocket)
    await websocket.send_json({"type": "auth_success", "user_id": user_id})

    try:
        while True:
            message = _parse(await websocket.receive_text())
            registry.mark_alive(identity, websocket)

            if message.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect as e:
        logger.info("websocket_disconnected", identity=identity, code=e.code)
    except RuntimeError as e:
        # Socket was closed from our side (replaced or pruned)
        logger.info("websocket_closed", identity=identity, error=str(e))
    finally:
        registry.unregister(identity, websocket)
