"""In-process registry of realtime sockets and their channel subscriptions.

Each connection starts subscribed to its owner's ``notifications`` and
``feed`` channels. ``events``, ``system`` and ``chat:{id}`` are opt-in.
Messages arrive from the Redis pub/sub bridge and are fanned out here.
"""

import json
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Any

import structlog
from fastapi import WebSocket

logger = structlog.get_logger()

USER_CHANNELS = frozenset({"notifications", "feed"})
SHARED_CHANNELS = frozenset({"events", "system"})
CHAT_PREFIX = "chat:"


def is_valid_channel(channel: str) -> bool:
    if channel in USER_CHANNELS or channel in SHARED_CHANNELS:
        return True
    return channel.startswith(CHAT_PREFIX) and len(channel) > len(CHAT_PREFIX)


@dataclass
class ClientConnection:
    websocket: WebSocket
    user_id: int
    username: str
    subscriptions: set[str] = field(default_factory=lambda: set(USER_CHANNELS))
    connected_at: float = field(default_factory=time.time)


class ConnectionManager:
    """Connections keyed by id, indexed by user. Single event loop, no locking."""

    def __init__(self, max_connections_per_user: int = 5) -> None:
        self.max_connections_per_user = max_connections_per_user
        self._clients: dict[str, ClientConnection] = {}
        self._by_user: dict[int, set[str]] = defaultdict(set)

    @property
    def connection_count(self) -> int:
        return len(self._clients)

    def user_connection_count(self, user_id: int) -> int:
        return len(self._by_user.get(user_id, ()))

    async def connect(self, websocket: WebSocket, conn_id: str, user_id: int, username: str) -> bool:
        """Accept the socket, or close it with 4008 when the user is at the cap."""
        if self.user_connection_count(user_id) >= self.max_connections_per_user:
            await websocket.close(code=4008, reason="Too many connections")
            logger.info("ws_rejected_connection_cap", user_id=user_id, cap=self.max_connections_per_user)
            return False

        await websocket.accept()
        self._clients[conn_id] = ClientConnection(websocket=websocket, user_id=user_id, username=username)
        self._by_user[user_id].add(conn_id)
        logger.info("ws_connected", conn_id=conn_id, user_id=user_id)
        return True

    async def disconnect(self, conn_id: str) -> None:
        client = self._clients.pop(conn_id, None)
        if client is None:
            return
        owned = self._by_user.get(client.user_id)
        if owned is not None:
            owned.discard(conn_id)
            if not owned:
                del self._by_user[client.user_id]
        logger.info("ws_disconnected", conn_id=conn_id, user_id=client.user_id)

    async def subscribe(self, conn_id: str, channel: str) -> bool:
        client = self._clients.get(conn_id)
        if client is None or not is_valid_channel(channel):
            return False
        client.subscriptions.add(channel)
        return True

    async def unsubscribe(self, conn_id: str, channel: str) -> bool:
        client = self._clients.get(conn_id)
        if client is None:
            return False
        client.subscriptions.discard(channel)
        return True

    async def _deliver(self, conn_ids: list[str], text: str) -> int:
        """Send ``text`` to each connection; a failed send drops that connection."""
        delivered = 0
        for conn_id in conn_ids:
            client = self._clients.get(conn_id)
            if client is None:
                continue
            try:
                await client.websocket.send_text(text)
            except Exception:
                logger.debug("ws_send_failed", conn_id=conn_id)
                await self.disconnect(conn_id)
                continue
            delivered += 1
        return delivered

    async def broadcast_to_channel(self, channel: str, message: dict[str, Any]) -> int:
        """Fan out to every subscriber of a shared or chat channel."""
        targets = [cid for cid, c in self._clients.items() if channel in c.subscriptions]
        if not targets:
            return 0
        return await self._deliver(targets, json.dumps({"channel": channel, "data": message}, default=str))

    async def send_to_user(self, user_id: int, channel: str, message: dict[str, Any]) -> int:
        """Deliver on a per-user channel, skipping connections that unsubscribed from it."""
        targets = [
            cid for cid in self._by_user.get(user_id, ())
            if channel in self._clients[cid].subscriptions
        ]
        return await self._deliver(targets, json.dumps({"channel": channel, "data": message}, default=str))

    async def send_to_user_direct(self, user_id: int, message: dict[str, Any]) -> int:
        return await self._deliver(list(self._by_user.get(user_id, ())), json.dumps(message, default=str))

    def get_stats(self) -> dict[str, Any]:
        per_channel = Counter(ch for c in self._clients.values() for ch in c.subscriptions)
        return {
            "total_connections": len(self._clients),
            "unique_users": len(self._by_user),
            "channels": dict(per_channel),
        }


manager = ConnectionManager()
