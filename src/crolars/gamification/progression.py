"""XP awards with atomic increment, level recompute and level-up rewards."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from crolars.db.dialect import insert_ignore
from crolars.db.models import UserProgress, UserStreak, XPEvent
from crolars.errors import InvalidAmount
from crolars.events import LevelUp, XPAwarded, stage_event
from crolars.gamification.badges import ensure_badge, grant_badge, user_badge_slugs
from crolars.gamification.levels import NextLevelProgress, level_definition, level_for, xp_for_next_level
from crolars.ledger.service import RelatedType, TransactionKind, credit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AwardResult:
    old_level: int
    new_level: int
    total_xp: int
    granted: bool = True

    @property
    def leveled_up(self) -> bool:
        return self.new_level > self.old_level


@dataclass(frozen=True)
class ProgressSnapshot:
    """Immutable view of a user's progression state, input to achievement conditions."""

    user_id: int
    total_xp: int = 0
    level: int = 1
    badges: frozenset[str] = frozenset()
    achievements: frozenset[str] = frozenset()
    streaks: dict[str, int] = field(default_factory=dict)
    last_activity_at: datetime | None = None


async def ensure_progress(db: AsyncSession, user_id: int) -> None:
    """Create the progress row if missing (idempotent under concurrency)."""
    await insert_ignore(
        db, UserProgress, ["user_id"],
        user_id=user_id, total_xp=0, level=1, updated_at=datetime.now(timezone.utc),
    )


async def lock_progress(db: AsyncSession, user_id: int) -> UserProgress:
    """Load the progress row with a row lock held until the transaction ends.

    Serializes read-modify-write sequences on one user (PostgreSQL ``FOR UPDATE``;
    SQLite already serializes writers).
    """
    await ensure_progress(db, user_id)
    result = await db.execute(
        select(UserProgress)
        .where(UserProgress.user_id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def award_xp(
    db: AsyncSession,
    user_id: int,
    amount: int,
    source: str,
    description: str | None = None,
    idempotency_key: str | None = None,
    *,
    evaluate: bool = True,
) -> AwardResult:
    """Add XP to a user and apply any level-ups.

    The increment is a single ``UPDATE ... RETURNING``, so concurrent awards
    serialize on the row and none is lost. Old and new levels are derived from
    the returned total, which makes the level-up detection exact even when
    other awards interleave.

    For each level crossed: credit its Crolars reward (idempotent per level),
    grant its reward badge, and on every fifth level a ``level_{n}`` milestone
    badge. Then re-run the achievement evaluator unless ``evaluate`` is False.
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        msg = f"XP amount must be a positive integer, got {amount!r}"
        raise InvalidAmount(msg)

    if idempotency_key is not None:
        existing = await db.execute(
            select(XPEvent.id).where(XPEvent.idempotency_key == idempotency_key)
        )
        if existing.scalar_one_or_none() is not None:
            progress = await get_progress_row(db, user_id)
            return AwardResult(progress.level, progress.level, progress.total_xp, granted=False)

    now = datetime.now(timezone.utc)
    await ensure_progress(db, user_id)
    result = await db.execute(
        update(UserProgress)
        .where(UserProgress.user_id == user_id)
        .values(total_xp=UserProgress.total_xp + amount, last_activity_at=now, updated_at=now)
        .returning(UserProgress.total_xp)
    )
    total_xp = int(result.scalar_one())
    old_level = level_for(total_xp - amount)
    new_level = level_for(total_xp)
    await db.execute(
        update(UserProgress)
        .where(UserProgress.user_id == user_id)
        .values(level=new_level)
    )

    db.add(XPEvent(
        user_id=user_id,
        amount=amount,
        source=source,
        description=description,
        idempotency_key=idempotency_key,
        created_at=now,
    ))
    await db.flush()
    stage_event(db, XPAwarded(user_id=user_id, amount=amount, source=source, total_xp=total_xp))

    if new_level > old_level:
        reward_total = 0
        for level in range(old_level + 1, new_level + 1):
            reward_total += await _apply_level_rewards(db, user_id, level)
        logger.info("User %s leveled up %d -> %d (%d XP)", user_id, old_level, new_level, total_xp)
        stage_event(db, LevelUp(
            user_id=user_id,
            old_level=old_level,
            new_level=new_level,
            total_xp=total_xp,
            level_name=level_definition(new_level).name,
            reward_crolars=reward_total,
        ))

    if evaluate:
        from crolars.gamification.achievements import evaluate as evaluate_achievements

        await evaluate_achievements(db, user_id)

    return AwardResult(old_level=old_level, new_level=new_level, total_xp=total_xp)


async def _apply_level_rewards(db: AsyncSession, user_id: int, level: int) -> int:
    definition = level_definition(level)
    if definition.reward_crolars > 0:
        await credit(
            db, user_id, definition.reward_crolars, TransactionKind.BONUS,
            f"Reached level {level}: {definition.name}",
            related_id=str(level), related_type=RelatedType.LEVEL.value,
        )
    if definition.reward_badge:
        await grant_badge(db, user_id, definition.reward_badge, evaluate=False)
    milestone = definition.milestone_badge
    if milestone:
        await ensure_badge(
            db, milestone,
            name=f"Level {level}",
            description=f"Reached level {level}",
            category="level",
            rarity="RARE" if level % 10 == 0 else "COMMON",
        )
        await grant_badge(db, user_id, milestone, evaluate=False)
    return definition.reward_crolars


async def get_progress_row(db: AsyncSession, user_id: int) -> UserProgress:
    """Progress row for a user; an unsaved zero row for users who never earned XP."""
    result = await db.execute(
        select(UserProgress).where(UserProgress.user_id == user_id).execution_options(populate_existing=True)
    )
    progress = result.scalar_one_or_none()
    if progress is None:
        return UserProgress(user_id=user_id, total_xp=0, level=1)
    return progress


async def get_progress(db: AsyncSession, user_id: int) -> ProgressSnapshot:
    """Assemble the progress snapshot from its tables."""
    from crolars.gamification.achievements import user_achievement_slugs

    progress = await get_progress_row(db, user_id)
    streak_rows = await db.execute(
        select(UserStreak.name, UserStreak.current_days).where(UserStreak.user_id == user_id)
    )
    return ProgressSnapshot(
        user_id=user_id,
        total_xp=progress.total_xp,
        level=progress.level,
        badges=frozenset(await user_badge_slugs(db, user_id)),
        achievements=frozenset(await user_achievement_slugs(db, user_id)),
        streaks={name: days for name, days in streak_rows},
        last_activity_at=progress.last_activity_at,
    )


async def next_level_progress(db: AsyncSession, user_id: int) -> NextLevelProgress:
    progress = await get_progress_row(db, user_id)
    return xp_for_next_level(progress.total_xp)
