"""Bridges Redis pub/sub to WebSocket clients.

Per-user channels (``notifications:{user}``, ``feed:{user}``) are delivered to
that user's connections; ``chat:{id}``, ``events:live`` and
``system:announcements`` fan out to subscribed connections.
"""

import asyncio
import json

import redis.asyncio as aioredis
import structlog

from crolars.cache import Channels
from crolars.ws.manager import manager

logger = structlog.get_logger()

# Redis broadcast channel -> WebSocket channel
CHANNEL_MAP: dict[str, str] = {
    Channels.LIVE_EVENTS: "events",
    Channels.SYSTEM_ANNOUNCEMENTS: "system",
}
PATTERNS = (Channels.NOTIFICATIONS_PATTERN, Channels.FEED_PATTERN, Channels.CHAT_PATTERN)
_USER_PREFIXES = ("notifications", "feed")


class PubSubBridge:
    """Subscribes to Redis pub/sub and pushes messages to WebSocket clients."""

    def __init__(self, redis_client: aioredis.Redis) -> None:
        self.redis = redis_client
        self._running = False

    async def dispatch(self, message: dict) -> int:
        """Route one pub/sub message. Returns the number of recipients."""
        msg_type = message.get("type", "")
        redis_channel = message.get("channel", "")
        if isinstance(redis_channel, bytes):
            redis_channel = redis_channel.decode()

        try:
            data = message.get("data", b"")
            if isinstance(data, bytes):
                data = data.decode()
            payload = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError):
            logger.warning("pubsub_invalid_message", channel=redis_channel)
            return 0

        if msg_type == "pmessage":
            prefix, _, suffix = redis_channel.partition(":")
            if prefix in _USER_PREFIXES:
                try:
                    user_id = int(suffix)
                except ValueError:
                    logger.warning("pubsub_invalid_user_id", channel=redis_channel)
                    return 0
                sent = await manager.send_to_user(user_id, prefix, payload)
                if sent > 0:
                    logger.debug("user_message_sent", user_id=user_id, channel=prefix, recipients=sent)
                return sent
            if prefix == "chat" and suffix:
                return await manager.broadcast_to_channel(redis_channel, payload)
            return 0

        ws_channel = CHANNEL_MAP.get(redis_channel)
        if ws_channel is None:
            return 0
        sent = await manager.broadcast_to_channel(ws_channel, payload)
        if sent > 0:
            logger.debug("pubsub_broadcast", channel=ws_channel, recipients=sent)
        return sent

    async def start(self) -> None:
        """Listen until stopped or cancelled."""
        self._running = True
        pubsub = self.redis.pubsub()

        await pubsub.subscribe(*CHANNEL_MAP.keys())
        await pubsub.psubscribe(*PATTERNS)
        logger.info("pubsub_bridge_started", channels=list(CHANNEL_MAP.keys()), patterns=list(PATTERNS))

        try:
            while self._running:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    continue
                await self.dispatch(message)
        except asyncio.CancelledError:
            pass
        finally:
            await pubsub.unsubscribe()
            await pubsub.punsubscribe()
            await pubsub.close()
            logger.info("pubsub_bridge_stopped")

    async def stop(self) -> None:
        """Signal the bridge to stop."""
        self._running = False
