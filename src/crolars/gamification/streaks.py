"""Daily activity streaks.

Recording an activity on the same day as the last one is a no-op. The day
after extends the streak. A longer gap restarts it at 1. Every extension
earns XP, with a larger bonus each completed week.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crolars.db.dialect import insert_ignore
from crolars.db.models import UserStreak
from crolars.events import StreakExtended, stage_event
from crolars.gamification.progression import award_xp, lock_progress

logger = logging.getLogger(__name__)

STREAK_DAY_XP = 15
STREAK_WEEK_XP = 100
WEEK = 7


@dataclass(frozen=True)
class StreakUpdate:
    name: str
    days: int
    longest: int
    changed: bool
    xp_awarded: int = 0

    @property
    def is_milestone(self) -> bool:
        return self.changed and self.days > 0 and self.days % WEEK == 0


def next_streak_days(current: int, last_day: date | None, today: date) -> int:
    """Pure transition: streak length after recording activity on ``today``."""
    if last_day is None:
        return 1
    if last_day == today:
        return current
    if last_day == today - timedelta(days=1):
        return current + 1
    return 1


async def record_activity(
    db: AsyncSession,
    user_id: int,
    name: str = "daily_login",
    today: date | None = None,
) -> StreakUpdate:
    """Record one day of activity for streak ``name`` and award its XP."""
    if today is None:
        today = datetime.now(timezone.utc).date()

    # Per-user serialization for the read-modify-write below
    await lock_progress(db, user_id)
    await insert_ignore(
        db, UserStreak, ["user_id", "name"],
        user_id=user_id, name=name, current_days=0, longest_days=0, last_activity_date=None,
    )
    result = await db.execute(
        select(UserStreak)
        .where(UserStreak.user_id == user_id, UserStreak.name == name)
        .execution_options(populate_existing=True)
    )
    streak = result.scalar_one()

    if streak.last_activity_date == today:
        return StreakUpdate(name=name, days=streak.current_days, longest=streak.longest_days, changed=False)

    days = next_streak_days(streak.current_days, streak.last_activity_date, today)
    streak.current_days = days
    streak.longest_days = max(streak.longest_days, days)
    streak.last_activity_date = today
    await db.flush()

    update = StreakUpdate(name=name, days=days, longest=streak.longest_days, changed=True)
    xp = STREAK_WEEK_XP if update.is_milestone else STREAK_DAY_XP
    stage_event(db, StreakExtended(user_id=user_id, name=name, days=days, day=today))

    # award_xp re-runs the evaluator, which covers streak conditions too
    await award_xp(
        db, user_id, xp, "streak",
        description=f"{name} streak: day {days}",
        idempotency_key=f"streak:{user_id}:{name}:{today.isoformat()}",
    )
    return StreakUpdate(name=name, days=days, longest=streak.longest_days, changed=True, xp_awarded=xp)
