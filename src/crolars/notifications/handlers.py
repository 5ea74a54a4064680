"""Event bus subscribers turning committed gamification events into notifications."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from crolars.config import Settings
from crolars.events import (
    AchievementUnlocked,
    BadgeGranted,
    CurrencyChanged,
    EventBus,
    LevelUp,
    StreakExtended,
    XPAwarded,
)
from crolars.gamification.streaks import WEEK
from crolars.notifications.dispatcher import NotificationDispatcher
from crolars.notifications.payloads import (
    AchievementEarned,
    BadgeEarned,
    CurrencyMoved,
    LevelUpReached,
    NotificationPayload,
    StreakMilestone,
    XPGained,
)

logger = logging.getLogger(__name__)


def payload_for(event: Any, settings: Settings) -> NotificationPayload | None:  # noqa: ANN401
    """Map an event to its notification, or None when it is below the noise threshold."""
    if isinstance(event, XPAwarded):
        if event.amount < settings.xp_notification_threshold:
            return None
        return XPGained(amount=event.amount, source=event.source, total_xp=event.total_xp)
    if isinstance(event, LevelUp):
        return LevelUpReached(
            old_level=event.old_level,
            new_level=event.new_level,
            total_xp=event.total_xp,
            level_name=event.level_name,
            crolars_reward=event.reward_crolars,
        )
    if isinstance(event, AchievementUnlocked):
        return AchievementEarned(
            slug=event.slug,
            name=event.name,
            rarity=event.rarity,
            xp_reward=event.xp_reward,
            crolars_reward=event.crolars_reward,
            requires_claim=event.requires_claim,
        )
    if isinstance(event, BadgeGranted):
        return BadgeEarned(slug=event.slug, name=event.name, rarity=event.rarity)
    if isinstance(event, CurrencyChanged):
        if event.amount < settings.large_transaction_threshold:
            return None
        return CurrencyMoved(
            transaction_id=event.transaction_id,
            kind=event.kind,
            amount=event.amount,
            signed_amount=event.signed_amount,
            balance=event.balance,
            description=event.description,
        )
    if isinstance(event, StreakExtended):
        if event.days % WEEK != 0:
            return None
        return StreakMilestone(name=event.name, days=event.days)
    return None


def register_notification_handlers(
    bus: EventBus,
    get_session_factory: Callable[[], Any],
    get_redis: Callable[[], Any],
    settings: Settings,
) -> None:
    """Subscribe one handler per event type.

    Each notification is written in its own session so a delivery problem
    never touches the transaction that produced the event.
    """

    async def notify(event: Any) -> None:  # noqa: ANN401
        payload = payload_for(event, settings)
        if payload is None:
            return
        dispatcher = NotificationDispatcher(get_redis(), settings)
        async with get_session_factory()() as db:
            await dispatcher.publish(db, event.user_id, payload)
            await db.commit()
        logger.debug("Notified user %s of %s", event.user_id, payload.type)

    for event_type in (XPAwarded, LevelUp, AchievementUnlocked, BadgeGranted, CurrencyChanged, StreakExtended):
        bus.subscribe(event_type, notify)
