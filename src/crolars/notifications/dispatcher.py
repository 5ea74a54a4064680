"""Notification creation, caching and live delivery.

A published notification is:
1. Persisted in the database (source of truth for read/unread and history)
2. Prepended to the per-user Redis list of recent history, when that list is warm
3. Published on the user's pub/sub channel for connected clients
4. Queued for email/push workers when the user's preferences allow it

Steps 2-4 are best-effort and at-most-once. Their failures are logged and
never undo step 1 or the mutation that triggered the notification.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from crolars.cache import CacheKeys, Channels
from crolars.config import Settings
from crolars.db.models import Notification
from crolars.errors import NotificationDeliveryFailure
from crolars.notifications.payloads import NotificationPayload, SystemAnnouncement
from crolars.notifications.preferences import get_preferences, should_deliver, side_channels

logger = logging.getLogger(__name__)


def serialize_notification(notification: Notification) -> dict[str, Any]:
    return {
        "id": notification.id,
        "type": notification.type,
        "title": notification.title,
        "message": notification.message,
        "metadata": notification.notification_metadata or {},
        "actionUrl": notification.action_url,
        "isRead": notification.read_at is not None,
        "readAt": notification.read_at.isoformat() if notification.read_at else None,
        "createdAt": notification.created_at.isoformat() if notification.created_at else None,
    }


def channel_message(type_: str, data: dict[str, Any], timestamp: datetime | None = None) -> str:
    """Wire format for every pub/sub channel: ``{type, data, timestamp}``."""
    ts = timestamp or datetime.now(timezone.utc)
    return json.dumps({"type": type_, "data": data, "timestamp": ts.isoformat()}, default=str)


class NotificationDispatcher:
    """Publishes notifications and manages their read state."""

    def __init__(self, redis: Any, settings: Settings) -> None:  # noqa: ANN401
        self.redis = redis
        self.history_size = settings.notification_history_size
        self.cache_ttl = settings.notification_cache_ttl_seconds

    # -- publish -----------------------------------------------------------

    async def publish(
        self,
        db: AsyncSession,
        user_id: int,
        payload: NotificationPayload,
    ) -> Notification | None:
        """Persist, cache and push a notification. Returns None if the user opted out."""
        preferences = await get_preferences(db, user_id)
        if not should_deliver(preferences, payload.category):
            logger.debug("Notification %s suppressed by preferences for user %s", payload.type, user_id)
            return None

        now = datetime.now(timezone.utc)
        notification = Notification(
            user_id=user_id,
            type=payload.type,
            title=payload.title(),
            message=payload.message(),
            notification_metadata=payload.metadata(),
            action_url=payload.link_url(),
            created_at=now,
        )
        db.add(notification)
        await db.flush()

        data = serialize_notification(notification)
        try:
            await self._cache_push(CacheKeys.notifications(user_id), data, only_if_warm=True)
            await self.redis.publish(Channels.notifications(user_id), channel_message("notification", data, now))
            for channel in sorted(side_channels(preferences, payload.category, now)):
                await self.redis.rpush(CacheKeys.outbound(channel), json.dumps({"userId": user_id, **data}))
        except Exception as exc:
            failure = NotificationDeliveryFailure(f"Live delivery failed for notification {notification.id}")
            logger.warning("%s: %s", failure, exc, exc_info=True)
        return notification

    async def broadcast_system(self, announcement: SystemAnnouncement) -> dict[str, Any]:
        """Publish a platform-wide announcement (not persisted per user)."""
        now = datetime.now(timezone.utc)
        data = {
            "type": announcement.type,
            "title": announcement.title(),
            "message": announcement.message(),
            "actionUrl": announcement.link_url(),
            "createdAt": now.isoformat(),
        }
        try:
            await self._cache_push(CacheKeys.SYSTEM_NOTIFICATIONS, data)
            await self.redis.publish(Channels.SYSTEM_ANNOUNCEMENTS, channel_message("system_announcement", data, now))
        except Exception as exc:
            logger.warning("System broadcast failed: %s", exc, exc_info=True)
        return data

    async def _cache_push(self, key: str, data: dict[str, Any], *, only_if_warm: bool = False) -> None:
        """Prepend ``data`` to a bounded list.

        With ``only_if_warm`` a missing list stays missing: a list started from
        one item would hide older history until the next invalidation, so the
        next ``recent()`` rebuilds it from the database instead.
        """
        pipe = self.redis.pipeline(transaction=True)
        if only_if_warm:
            pipe.lpushx(key, json.dumps(data, default=str))
        else:
            pipe.lpush(key, json.dumps(data, default=str))
        pipe.ltrim(key, 0, self.history_size - 1)
        pipe.expire(key, self.cache_ttl)
        await pipe.execute()

    async def _invalidate(self, user_id: int) -> None:
        try:
            await self.redis.delete(CacheKeys.notifications(user_id))
        except Exception:
            logger.warning("Failed to invalidate notification cache for user %s", user_id, exc_info=True)

    # -- reads -------------------------------------------------------------

    async def recent(self, db: AsyncSession, user_id: int) -> list[dict[str, Any]]:
        """Most recent notifications, from cache when warm, otherwise from the database."""
        key = CacheKeys.notifications(user_id)
        try:
            cached = await self.redis.lrange(key, 0, self.history_size - 1)
        except Exception:
            logger.warning("Notification cache read failed for user %s", user_id, exc_info=True)
            cached = None
        if cached:
            return [json.loads(item) for item in cached]

        result = await db.execute(
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(self.history_size)
            # Bulk read-state updates do not touch rows already loaded in the session
            .execution_options(populate_existing=True)
        )
        items = [serialize_notification(n) for n in result.scalars().all()]
        if items:
            try:
                pipe = self.redis.pipeline(transaction=True)
                pipe.delete(key)
                pipe.rpush(key, *[json.dumps(i) for i in items])
                pipe.expire(key, self.cache_ttl)
                await pipe.execute()
            except Exception:
                logger.warning("Failed to warm notification cache for user %s", user_id, exc_info=True)
        return items

    async def list(
        self,
        db: AsyncSession,
        user_id: int,
        page: int = 1,
        limit: int = 20,
        unread_only: bool = False,
    ) -> tuple[list[Notification], int, int]:
        """Paginated notifications, newest first. Returns (items, total, unread)."""
        filters = [Notification.user_id == user_id]
        if unread_only:
            filters.append(Notification.read_at.is_(None))

        total_result = await db.execute(
            select(func.count()).select_from(Notification).where(*filters)
        )
        total = total_result.scalar_one()

        result = await db.execute(
            select(Notification)
            .where(*filters)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), total, await self.unread_count(db, user_id)

    async def unread_count(self, db: AsyncSession, user_id: int) -> int:
        result = await db.execute(
            select(func.count())
            .select_from(Notification)
            .where(Notification.user_id == user_id, Notification.read_at.is_(None))
        )
        return result.scalar_one()

    # -- read state & deletion ------------------------------------------------

    async def mark_read(self, db: AsyncSession, user_id: int, notification_ids: Sequence[int]) -> int:
        """Set read_at on the given unread notifications. Idempotent; returns rows changed."""
        if not notification_ids:
            return 0
        result = await db.execute(
            update(Notification)
            .where(
                Notification.user_id == user_id,
                Notification.id.in_(list(notification_ids)),
                Notification.read_at.is_(None),
            )
            .values(read_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await db.flush()
        await self._invalidate(user_id)
        return result.rowcount

    async def mark_unread(self, db: AsyncSession, user_id: int, notification_ids: Sequence[int]) -> int:
        if not notification_ids:
            return 0
        result = await db.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.id.in_(list(notification_ids)))
            .values(read_at=None)
            .execution_options(synchronize_session=False)
        )
        await db.flush()
        await self._invalidate(user_id)
        return result.rowcount

    async def mark_all_read(self, db: AsyncSession, user_id: int) -> int:
        result = await db.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.read_at.is_(None))
            .values(read_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await db.flush()
        await self._invalidate(user_id)
        return result.rowcount

    async def mark_all_unread(self, db: AsyncSession, user_id: int) -> int:
        result = await db.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.read_at.is_not(None))
            .values(read_at=None)
            .execution_options(synchronize_session=False)
        )
        await db.flush()
        await self._invalidate(user_id)
        return result.rowcount

    async def delete(
        self,
        db: AsyncSession,
        user_id: int,
        notification_ids: Sequence[int] | None = None,
        *,
        delete_all: bool = False,
    ) -> int:
        """Delete specific notifications, or all of the user's when ``delete_all``."""
        stmt = delete(Notification).where(Notification.user_id == user_id)
        if not delete_all:
            if not notification_ids:
                return 0
            stmt = stmt.where(Notification.id.in_(list(notification_ids)))
        result = await db.execute(stmt.execution_options(synchronize_session=False))
        await db.flush()
        await self._invalidate(user_id)
        return result.rowcount
