"""Redis key layout, pub/sub channel names and JSON cache helpers.

Cache reads and writes are best-effort: a Redis failure is logged and treated
as a miss, never surfaced to the caller.
"""

from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)


class CacheKeys:
    @staticmethod
    def notifications(user_id: int) -> str:
        return f"notifications:{user_id}"

    SYSTEM_NOTIFICATIONS = "notifications:system"

    @staticmethod
    def rankings(limit: int) -> str:
        return f"ranking:xp:{limit}"

    @staticmethod
    def catalog(kind: str) -> str:
        return f"catalog:{kind}"

    @staticmethod
    def outbound(channel: str) -> str:
        return f"notifications:outbound:{channel}"


class Channels:
    """Pub/sub topics. Messages are JSON ``{type, data, timestamp}``."""

    LIVE_EVENTS = "events:live"
    SYSTEM_ANNOUNCEMENTS = "system:announcements"
    NOTIFICATIONS_PATTERN = "notifications:*"
    FEED_PATTERN = "feed:*"
    CHAT_PATTERN = "chat:*"

    @staticmethod
    def notifications(user_id: int) -> str:
        return f"notifications:{user_id}"

    @staticmethod
    def feed(user_id: int) -> str:
        return f"feed:{user_id}"

    @staticmethod
    def chat(chat_id: str) -> str:
        return f"chat:{chat_id}"


async def cache_get_json(redis: Any, key: str) -> Any | None:  # noqa: ANN401
    """Return the decoded JSON value at ``key`` or None on miss/error."""
    try:
        raw = await redis.get(key)
    except Exception:
        logger.warning("Cache read failed for %s", key, exc_info=True)
        return None
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Discarding undecodable cache entry %s", key)
        return None


async def cache_set_json(redis: Any, key: str, value: Any, ttl: int) -> bool:  # noqa: ANN401
    try:
        await redis.set(key, json.dumps(value, default=str), ex=ttl)
    except Exception:
        logger.warning("Cache write failed for %s", key, exc_info=True)
        return False
    return True


async def cache_delete(redis: Any, *keys: str) -> None:  # noqa: ANN401
    if not keys:
        return
    try:
        await redis.delete(*keys)
    except Exception:
        logger.warning("Cache delete failed for %s", keys, exc_info=True)
