"""Integration tests for notification publishing, read state and event fan-out."""

import json

import pytest
from sqlalchemy import select

from crolars.config import get_settings
from crolars.db.models import Notification
from crolars.gamification.progression import award_xp
from crolars.ledger.service import credit, debit
from crolars.notifications.dispatcher import NotificationDispatcher
from crolars.notifications.payloads import SystemAnnouncement, XPGained
from crolars.notifications.preferences import update_preferences


@pytest.fixture
def dispatcher(fake_redis) -> NotificationDispatcher:
    return NotificationDispatcher(fake_redis, get_settings())


async def _notifications(db, user_id: int) -> list[Notification]:
    result = await db.execute(
        select(Notification).where(Notification.user_id == user_id).order_by(Notification.id)
    )
    return list(result.scalars().all())


class TestPublish:
    @pytest.mark.asyncio
    async def test_persists_caches_and_pushes(self, db_session, make_user, dispatcher, fake_redis) -> None:
        user = await make_user()
        notification = await dispatcher.publish(db_session, user.id, XPGained(amount=60, source="quiz", total_xp=60))
        await db_session.commit()

        assert notification is not None
        assert notification.title == "XP earned"
        assert notification.notification_metadata == {"amount": 60, "source": "quiz", "total_xp": 60}

        # A cold cache is left for recent() to build from the database
        assert await fake_redis.exists(f"notifications:{user.id}") == 0
        assert [n["id"] for n in await dispatcher.recent(db_session, user.id)] == [notification.id]
        later = await dispatcher.publish(db_session, user.id, XPGained(amount=10, source="quiz", total_xp=70))
        cached = await fake_redis.lrange(f"notifications:{user.id}", 0, -1)
        assert [json.loads(item)["id"] for item in cached] == [later.id, notification.id]

        message = json.loads(fake_redis.published[f"notifications:{user.id}"][0])
        assert message["type"] == "notification"
        assert message["data"]["type"] == "xp_gained"
        assert message["data"]["isRead"] is False

    @pytest.mark.asyncio
    async def test_instant_category_queues_side_channels(self, db_session, make_user, dispatcher, fake_redis) -> None:
        user = await make_user()
        await dispatcher.publish(db_session, user.id, XPGained(amount=60, source="quiz", total_xp=60))
        assert len(await fake_redis.lrange("notifications:outbound:email", 0, -1)) == 1
        assert len(await fake_redis.lrange("notifications:outbound:push", 0, -1)) == 1

    @pytest.mark.asyncio
    async def test_disabled_category_is_suppressed(self, db_session, make_user, dispatcher, fake_redis) -> None:
        user = await make_user()
        await update_preferences(db_session, user.id, [{"category": "ACHIEVEMENT", "enabled": False}])
        result = await dispatcher.publish(db_session, user.id, XPGained(amount=60, source="quiz", total_xp=60))
        await db_session.commit()
        assert result is None
        assert await _notifications(db_session, user.id) == []
        assert fake_redis.published == {}

    @pytest.mark.asyncio
    async def test_global_email_switch(self, db_session, make_user, dispatcher, fake_redis) -> None:
        user = await make_user()
        prefs = await update_preferences(
            db_session, user.id, [{"category": "ACHIEVEMENT"}], {"email_notifications": False}
        )
        assert prefs.for_category("ACHIEVEMENT").email_enabled is False
        await dispatcher.publish(db_session, user.id, XPGained(amount=60, source="quiz", total_xp=60))
        assert await fake_redis.lrange("notifications:outbound:email", 0, -1) == []
        assert len(await fake_redis.lrange("notifications:outbound:push", 0, -1)) == 1

    @pytest.mark.asyncio
    async def test_redis_outage_keeps_notification(self, db_session, make_user, dispatcher, fake_redis) -> None:
        user = await make_user()
        fake_redis.fail = True
        notification = await dispatcher.publish(db_session, user.id, XPGained(amount=60, source="quiz", total_xp=60))
        await db_session.commit()
        assert notification is not None
        assert len(await _notifications(db_session, user.id)) == 1

    @pytest.mark.asyncio
    async def test_system_broadcast(self, dispatcher, fake_redis) -> None:
        data = await dispatcher.broadcast_system(SystemAnnouncement(headline="Maintenance", body="Tonight 22:00"))
        assert data["title"] == "Maintenance"
        message = json.loads(fake_redis.published["system:announcements"][0])
        assert message["type"] == "system_announcement"
        assert len(await fake_redis.lrange("notifications:system", 0, -1)) == 1


class TestReadState:
    @pytest.mark.asyncio
    async def test_mark_read_is_idempotent(self, db_session, make_user, dispatcher) -> None:
        user = await make_user()
        first = await dispatcher.publish(db_session, user.id, XPGained(amount=60, source="a", total_xp=60))
        second = await dispatcher.publish(db_session, user.id, XPGained(amount=70, source="b", total_xp=130))
        await db_session.commit()

        assert await dispatcher.mark_read(db_session, user.id, [first.id]) == 1
        assert await dispatcher.mark_read(db_session, user.id, [first.id]) == 0
        assert await dispatcher.unread_count(db_session, user.id) == 1

        items, total, unread = await dispatcher.list(db_session, user.id, unread_only=True)
        assert [n.id for n in items] == [second.id]
        assert (total, unread) == (1, 1)

        assert await dispatcher.mark_all_read(db_session, user.id) == 1
        assert await dispatcher.unread_count(db_session, user.id) == 0
        assert await dispatcher.mark_unread(db_session, user.id, [first.id]) == 1
        assert await dispatcher.unread_count(db_session, user.id) == 1

    @pytest.mark.asyncio
    async def test_other_users_rows_untouched(self, db_session, make_user, dispatcher) -> None:
        alice = await make_user("alice")
        bob = await make_user("bob")
        note = await dispatcher.publish(db_session, alice.id, XPGained(amount=60, source="a", total_xp=60))
        assert await dispatcher.mark_read(db_session, bob.id, [note.id]) == 0
        assert await dispatcher.delete(db_session, bob.id, [note.id]) == 0
        assert await dispatcher.unread_count(db_session, alice.id) == 1

    @pytest.mark.asyncio
    async def test_delete(self, db_session, make_user, dispatcher) -> None:
        user = await make_user()
        notes = [
            await dispatcher.publish(db_session, user.id, XPGained(amount=60 + i, source="a", total_xp=60))
            for i in range(3)
        ]
        assert await dispatcher.delete(db_session, user.id, [notes[0].id]) == 1
        assert await dispatcher.delete(db_session, user.id) == 0
        assert await dispatcher.delete(db_session, user.id, delete_all=True) == 2
        assert await _notifications(db_session, user.id) == []

    @pytest.mark.asyncio
    async def test_recent_rewarms_cache(self, db_session, make_user, dispatcher, fake_redis) -> None:
        user = await make_user()
        await dispatcher.publish(db_session, user.id, XPGained(amount=60, source="a", total_xp=60))
        newest = await dispatcher.publish(db_session, user.id, XPGained(amount=70, source="b", total_xp=130))
        await db_session.commit()
        await fake_redis.delete(f"notifications:{user.id}")

        recent = await dispatcher.recent(db_session, user.id)
        assert [n["id"] for n in recent][0] == newest.id
        assert len(await fake_redis.lrange(f"notifications:{user.id}", 0, -1)) == 2
        assert await dispatcher.recent(db_session, user.id) == recent

    @pytest.mark.asyncio
    async def test_publish_after_invalidation_keeps_full_history(self, db_session, make_user, dispatcher) -> None:
        user = await make_user()
        for i in range(5):
            await dispatcher.publish(db_session, user.id, XPGained(amount=60 + i, source="a", total_xp=60))
        await db_session.commit()
        assert len(await dispatcher.recent(db_session, user.id)) == 5

        await dispatcher.mark_all_read(db_session, user.id)
        await db_session.commit()
        newest = await dispatcher.publish(db_session, user.id, XPGained(amount=90, source="b", total_xp=400))
        await db_session.commit()

        recent = await dispatcher.recent(db_session, user.id)
        assert len(recent) == 6
        assert recent[0]["id"] == newest.id
        assert [n["isRead"] for n in recent] == [False] + [True] * 5


class TestEventFanOut:
    @pytest.mark.asyncio
    async def test_large_credit_notifies_after_commit(self, db_session, make_user, event_bus, fake_redis) -> None:
        user = await make_user()
        await credit(db_session, user.id, 150, "BONUS", "Weekly bonus")
        assert event_bus.pending == 0
        await db_session.commit()
        assert event_bus.pending == 1

        await event_bus.drain()
        notes = await _notifications(db_session, user.id)
        assert [(n.type, n.title) for n in notes] == [("currency_changed", "Crolars earned")]
        assert notes[0].message == "+150 Crolars - Weekly bonus"
        assert fake_redis.published[f"notifications:{user.id}"]

    @pytest.mark.asyncio
    async def test_small_movements_are_silent(self, db_session, make_user, event_bus) -> None:
        user = await make_user()
        await credit(db_session, user.id, 40, "EARNED", "small")
        await debit(db_session, user.id, 10, "SPENT", "smaller")
        await db_session.commit()
        assert await event_bus.drain() == 2
        assert await _notifications(db_session, user.id) == []

    @pytest.mark.asyncio
    async def test_rollback_emits_nothing(self, db_session, make_user, event_bus) -> None:
        user = await make_user()
        await credit(db_session, user.id, 500, "BONUS", "rolled back")
        await db_session.rollback()
        assert event_bus.pending == 0
        assert await event_bus.drain() == 0

    @pytest.mark.asyncio
    async def test_level_up_notifications(self, db_session, make_user, event_bus) -> None:
        user = await make_user()
        await award_xp(db_session, user.id, 150, "lesson")
        await db_session.commit()
        await event_bus.drain()
        types = {n.type for n in await _notifications(db_session, user.id)}
        # 75 Crolars level reward is below the currency threshold
        assert types == {"xp_gained", "level_up"}
