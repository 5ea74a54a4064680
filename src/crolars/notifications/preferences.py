"""Notification preferences: per-category switches plus global settings.

``should_deliver`` decides whether a notification is created at all.
``side_channels`` decides which out-of-app channels (email, push) get a copy
right now, honoring frequency and quiet hours.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, time
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crolars.db.dialect import insert_for
from crolars.db.models import NotificationPreference, NotificationSettings

CATEGORIES = ("LIKE", "COMMENT", "FOLLOW", "MENTION", "MESSAGE", "SYSTEM", "ACHIEVEMENT")
FREQUENCIES = ("INSTANT", "HOURLY", "DAILY", "WEEKLY", "NEVER")


@dataclass(frozen=True)
class CategoryPreference:
    category: str
    enabled: bool = True
    email_enabled: bool = True
    push_enabled: bool = True
    frequency: str = "INSTANT"
    quiet_hours_start: str | None = None
    quiet_hours_end: str | None = None


@dataclass(frozen=True)
class GlobalSettings:
    email_notifications: bool = True
    push_notifications: bool = True
    quiet_hours_enabled: bool = False
    quiet_hours_start: str = "22:00"
    quiet_hours_end: str = "08:00"
    weekend_quiet_mode: bool = False


@dataclass(frozen=True)
class Preferences:
    categories: dict[str, CategoryPreference] = field(default_factory=dict)
    settings: GlobalSettings = GlobalSettings()

    def for_category(self, category: str) -> CategoryPreference:
        return self.categories.get(category) or DEFAULT_CATEGORY_PREFERENCES.get(
            category, CategoryPreference(category)
        )


DEFAULT_CATEGORY_PREFERENCES: dict[str, CategoryPreference] = {
    c: CategoryPreference(c) for c in CATEGORIES
}
DEFAULT_CATEGORY_PREFERENCES["LIKE"] = CategoryPreference("LIKE", email_enabled=False)
DEFAULT_CATEGORY_PREFERENCES["SYSTEM"] = CategoryPreference("SYSTEM", push_enabled=False, frequency="DAILY")

DEFAULT_PREFERENCES = Preferences(categories=dict(DEFAULT_CATEGORY_PREFERENCES))


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def in_quiet_window(now: time, start: str, end: str) -> bool:
    """True if ``now`` falls in [start, end), handling windows that wrap midnight."""
    begin, finish = _parse_hhmm(start), _parse_hhmm(end)
    if begin == finish:
        return False
    if begin < finish:
        return begin <= now < finish
    return now >= begin or now < finish


def is_quiet(preferences: Preferences, category: str, now: datetime) -> bool:
    pref = preferences.for_category(category)
    settings = preferences.settings
    if settings.weekend_quiet_mode and now.weekday() >= 5:
        return True
    if pref.quiet_hours_start and pref.quiet_hours_end:
        if in_quiet_window(now.time(), pref.quiet_hours_start, pref.quiet_hours_end):
            return True
    if settings.quiet_hours_enabled:
        return in_quiet_window(now.time(), settings.quiet_hours_start, settings.quiet_hours_end)
    return False


def should_deliver(preferences: Preferences, category: str) -> bool:
    """Whether a notification of this category is created at all."""
    pref = preferences.for_category(category)
    return pref.enabled and pref.frequency != "NEVER"


def side_channels(preferences: Preferences, category: str, now: datetime) -> set[str]:
    """Out-of-app channels to notify immediately. Digest frequencies are left to batch jobs."""
    pref = preferences.for_category(category)
    if not should_deliver(preferences, category) or pref.frequency != "INSTANT":
        return set()
    if is_quiet(preferences, category, now):
        return set()
    channels: set[str] = set()
    if pref.email_enabled and preferences.settings.email_notifications:
        channels.add("email")
    if pref.push_enabled and preferences.settings.push_notifications:
        channels.add("push")
    return channels


async def get_preferences(db: AsyncSession, user_id: int) -> Preferences:
    """Stored preferences merged over the defaults."""
    rows = await db.execute(
        select(NotificationPreference)
        .where(NotificationPreference.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    categories = dict(DEFAULT_CATEGORY_PREFERENCES)
    for row in rows.scalars():
        categories[row.category] = CategoryPreference(
            category=row.category,
            enabled=row.enabled,
            email_enabled=row.email_enabled,
            push_enabled=row.push_enabled,
            frequency=row.frequency,
            quiet_hours_start=row.quiet_hours_start,
            quiet_hours_end=row.quiet_hours_end,
        )

    settings_row = await db.get(NotificationSettings, user_id, populate_existing=True)
    settings = GlobalSettings()
    if settings_row is not None:
        settings = GlobalSettings(
            email_notifications=settings_row.email_notifications,
            push_notifications=settings_row.push_notifications,
            quiet_hours_enabled=settings_row.quiet_hours_enabled,
            quiet_hours_start=settings_row.quiet_hours_start,
            quiet_hours_end=settings_row.quiet_hours_end,
            weekend_quiet_mode=settings_row.weekend_quiet_mode,
        )
    return Preferences(categories=categories, settings=settings)


async def update_preferences(
    db: AsyncSession,
    user_id: int,
    categories: list[dict[str, Any]],
    settings: dict[str, Any] | None = None,
) -> Preferences:
    """Upsert category preferences and global settings.

    Per-category email/push switches are ANDed with the global switches, so
    turning a global channel off turns it off everywhere.
    """
    current = await get_preferences(db, user_id)
    new_settings = replace(current.settings, **settings) if settings else current.settings

    if settings:
        stmt = insert_for(db, NotificationSettings).values(user_id=user_id, **settings)
        stmt = stmt.on_conflict_do_update(index_elements=["user_id"], set_=settings)
        await db.execute(stmt)

    for entry in categories:
        pref = replace(current.for_category(entry["category"]), **entry)
        values = {
            "enabled": pref.enabled,
            "email_enabled": pref.email_enabled and new_settings.email_notifications,
            "push_enabled": pref.push_enabled and new_settings.push_notifications,
            "frequency": pref.frequency,
            "quiet_hours_start": pref.quiet_hours_start,
            "quiet_hours_end": pref.quiet_hours_end,
        }
        stmt = insert_for(db, NotificationPreference).values(user_id=user_id, category=pref.category, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["user_id", "category"], set_=values)
        await db.execute(stmt)

    await db.flush()
    return await get_preferences(db, user_id)
