"""Realtime endpoint: one socket per client, multiplexing notification, feed, chat and broadcast channels.

Protocol (JSON text frames):

    client -> server
        {"action": "subscribe", "channel": "events" | "system" | "chat:{id}"}
        {"action": "unsubscribe", "channel": "..."}
        {"action": "ping"}

    server -> client
        {"channel": "notifications", "data": {"type": ..., "data": {...}, "timestamp": ...}}
        {"type": "subscribed" | "unsubscribed", "channel": "..."}
        {"type": "pong"}
        {"type": "error", "message": "..."}
"""

import json
import uuid
from typing import Any

import jwt
import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from crolars.auth.jwt import verify_token
from crolars.ws.manager import manager

logger = structlog.get_logger()

router = APIRouter()


def _error(message: str) -> dict[str, str]:
    return {"type": "error", "message": message}


async def _handle(conn_id: str, raw: str) -> dict[str, Any]:
    """Apply one client frame and build the reply."""
    try:
        msg = json.loads(raw)
    except json.JSONDecodeError:
        return _error("Invalid JSON")
    if not isinstance(msg, dict):
        return _error("Expected a JSON object")

    action = msg.get("action")
    channel = msg.get("channel", "")
    if action == "ping":
        return {"type": "pong"}
    if action == "subscribe":
        if await manager.subscribe(conn_id, channel):
            return {"type": "subscribed", "channel": channel}
        return _error(f"Invalid channel: {channel}")
    if action == "unsubscribe":
        await manager.unsubscribe(conn_id, channel)
        return {"type": "unsubscribed", "channel": channel}
    return _error(f"Unknown action: {action}")


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(...),
) -> None:
    """Authenticate from ``?token=`` (close 4001 on failure), then serve frames until disconnect."""
    try:
        claims = verify_token(token, expected_type="access")
        user_id = int(claims["sub"])
    except (jwt.InvalidTokenError, KeyError, ValueError) as e:
        await websocket.close(code=4001, reason=f"Authentication failed: {e}")
        return

    conn_id = str(uuid.uuid4())
    # Over the per-user cap the manager closes with 4008
    if not await manager.connect(websocket, conn_id, user_id, claims.get("username", "")):
        return

    try:
        while True:
            reply = await _handle(conn_id, await websocket.receive_text())
            await websocket.send_json(reply)
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("ws_error", conn_id=conn_id, user_id=user_id)
    finally:
        await manager.disconnect(conn_id)
