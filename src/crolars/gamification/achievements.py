"""Achievement evaluation, unlock and claim.

Conditions are pure functions registered per ``condition_type``. Each takes
the definition and a :class:`ProgressSnapshot` and returns whether it is met.
Evaluation is a full re-scan of active definitions, repeated until nothing
new unlocks (an unlock's rewards can satisfy further conditions).

Reward timing is per definition:

- ``requires_claim=False``: rewards are granted on unlock, and ``claimed_at`` is stamped.
- ``requires_claim=True``: unlock only records EARNED, and :func:`claim` grants the rewards once.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from crolars.db.dialect import insert_ignore
from crolars.db.models import AchievementDefinition, UserAchievement
from crolars.errors import NotFound
from crolars.events import AchievementUnlocked, stage_event
from crolars.gamification.badges import grant_badge
from crolars.gamification.progression import ProgressSnapshot, award_xp, get_progress, lock_progress
from crolars.ledger.service import RelatedType, TransactionKind, credit

logger = logging.getLogger(__name__)

# Upper bound on evaluate() passes; each pass must unlock something to continue
_MAX_PASSES = 10


# ---------------------------------------------------------------------------
# Condition handlers
# ---------------------------------------------------------------------------


def _check_total_xp(definition: AchievementDefinition, snapshot: ProgressSnapshot) -> bool:
    return snapshot.total_xp >= definition.target_value


def _check_level(definition: AchievementDefinition, snapshot: ProgressSnapshot) -> bool:
    return snapshot.level >= definition.target_value


def _check_badge_count(definition: AchievementDefinition, snapshot: ProgressSnapshot) -> bool:
    return len(snapshot.badges) >= definition.target_value


def _check_streak(definition: AchievementDefinition, snapshot: ProgressSnapshot) -> bool:
    """Named streak if ``criteria.streak`` is set, otherwise the best of any streak."""
    name = (definition.criteria or {}).get("streak")
    if name:
        return snapshot.streaks.get(name, 0) >= definition.target_value
    return max(snapshot.streaks.values(), default=0) >= definition.target_value


ConditionHandler = Callable[[AchievementDefinition, ProgressSnapshot], bool]

CONDITION_HANDLERS: dict[str, ConditionHandler] = {
    "total_xp": _check_total_xp,
    "level": _check_level,
    "badge_count": _check_badge_count,
    "streak": _check_streak,
}


def condition_met(definition: AchievementDefinition, snapshot: ProgressSnapshot) -> bool:
    handler = CONDITION_HANDLERS.get(definition.condition_type)
    if handler is None:
        logger.warning("Unknown achievement condition %r on %s", definition.condition_type, definition.slug)
        return False
    return handler(definition, snapshot)


def find_unlockable(
    definitions: Sequence[AchievementDefinition],
    snapshot: ProgressSnapshot,
) -> list[AchievementDefinition]:
    """Active definitions whose condition holds and which the snapshot does not already contain."""
    return [
        d for d in definitions
        if d.is_active and d.slug not in snapshot.achievements and condition_met(d, snapshot)
    ]


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def get_definition(db: AsyncSession, slug: str) -> AchievementDefinition | None:
    result = await db.execute(
        select(AchievementDefinition).where(AchievementDefinition.slug == slug)
    )
    return result.scalar_one_or_none()


async def active_definitions(db: AsyncSession) -> list[AchievementDefinition]:
    result = await db.execute(
        select(AchievementDefinition)
        .where(AchievementDefinition.is_active.is_(True))
        .order_by(AchievementDefinition.id)
    )
    return list(result.scalars().all())


async def user_achievement_slugs(db: AsyncSession, user_id: int) -> set[str]:
    result = await db.execute(
        select(AchievementDefinition.slug)
        .join(UserAchievement, UserAchievement.achievement_id == AchievementDefinition.id)
        .where(UserAchievement.user_id == user_id)
    )
    return set(result.scalars().all())


async def user_achievements(db: AsyncSession, user_id: int) -> dict[str, UserAchievement]:
    result = await db.execute(
        select(UserAchievement)
        .where(UserAchievement.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return {ua.achievement.slug: ua for ua in result.scalars().unique().all()}


# ---------------------------------------------------------------------------
# Evaluate / unlock / claim
# ---------------------------------------------------------------------------


async def evaluate(db: AsyncSession, user_id: int) -> list[str]:
    """Unlock every achievement whose condition now holds. Returns new slugs in unlock order."""
    definitions = await active_definitions(db)
    if not definitions:
        return []

    unlocked: list[str] = []
    for _ in range(_MAX_PASSES):
        snapshot = await get_progress(db, user_id)
        candidates = find_unlockable(definitions, snapshot)
        if not candidates:
            break
        progressed = False
        for definition in candidates:
            if await _unlock_definition(db, user_id, definition):
                unlocked.append(definition.slug)
                progressed = True
        if not progressed:
            break

    if unlocked:
        logger.info("User %s unlocked achievements: %s", user_id, ", ".join(unlocked))
    return unlocked


async def unlock(db: AsyncSession, user_id: int, slug: str) -> bool:
    """Unlock an achievement. Re-unlocking is a no-op that grants nothing."""
    definition = await get_definition(db, slug)
    if definition is None:
        msg = f"Achievement not found: {slug}"
        raise NotFound(msg)
    return await _unlock_definition(db, user_id, definition)


async def _unlock_definition(db: AsyncSession, user_id: int, definition: AchievementDefinition) -> bool:
    now = datetime.now(timezone.utc)
    inserted = await insert_ignore(
        db, UserAchievement, ["user_id", "achievement_id"],
        user_id=user_id,
        achievement_id=definition.id,
        earned_at=now,
        claimed_at=None if definition.requires_claim else now,
    )
    if inserted is None:
        return False

    stage_event(db, AchievementUnlocked(
        user_id=user_id,
        slug=definition.slug,
        name=definition.name,
        rarity=definition.rarity,
        xp_reward=definition.xp_reward,
        crolars_reward=definition.crolars_reward,
        requires_claim=definition.requires_claim,
    ))

    if not definition.requires_claim:
        await _grant_rewards(db, user_id, definition)
    return True


@dataclass(frozen=True)
class RewardPayload:
    xp: int
    crolars: int
    badge: str | None


class ClaimStatus(str, Enum):
    CLAIMED = "CLAIMED"
    ALREADY_CLAIMED = "ALREADY_CLAIMED"
    NOT_EARNED = "NOT_EARNED"


@dataclass(frozen=True)
class ClaimResult:
    status: ClaimStatus
    reward: RewardPayload | None = None


async def _grant_rewards(db: AsyncSession, user_id: int, definition: AchievementDefinition) -> RewardPayload:
    if definition.xp_reward > 0:
        await award_xp(
            db, user_id, definition.xp_reward, "achievement",
            description=f"Achievement: {definition.name}",
            idempotency_key=f"achievement:{definition.slug}:{user_id}",
            evaluate=False,
        )
    if definition.crolars_reward > 0:
        await credit(
            db, user_id, definition.crolars_reward, TransactionKind.EARNED,
            f"Achievement unlocked: {definition.name}",
            related_id=definition.slug, related_type=RelatedType.ACHIEVEMENT.value,
        )
    if definition.badge_slug:
        await grant_badge(db, user_id, definition.badge_slug, evaluate=False)
    return RewardPayload(xp=definition.xp_reward, crolars=definition.crolars_reward, badge=definition.badge_slug)


async def claim(db: AsyncSession, user_id: int, slug: str) -> ClaimResult:
    """Collect an earned achievement's rewards exactly once (EARNED -> CLAIMED).

    The transition is a conditional UPDATE on ``claimed_at IS NULL``; only the
    caller that flips it grants rewards.
    """
    definition = await get_definition(db, slug)
    if definition is None:
        msg = f"Achievement not found: {slug}"
        raise NotFound(msg)

    await lock_progress(db, user_id)
    result = await db.execute(
        update(UserAchievement)
        .where(
            UserAchievement.user_id == user_id,
            UserAchievement.achievement_id == definition.id,
            UserAchievement.claimed_at.is_(None),
        )
        .values(claimed_at=datetime.now(timezone.utc))
        .returning(UserAchievement.id)
    )
    if result.scalar_one_or_none() is None:
        earned = await db.execute(
            select(UserAchievement.id).where(
                UserAchievement.user_id == user_id,
                UserAchievement.achievement_id == definition.id,
            )
        )
        if earned.scalar_one_or_none() is None:
            return ClaimResult(ClaimStatus.NOT_EARNED)
        return ClaimResult(ClaimStatus.ALREADY_CLAIMED)

    reward = await _grant_rewards(db, user_id, definition)
    logger.info("User %s claimed achievement %s", user_id, slug)
    await evaluate(db, user_id)
    return ClaimResult(ClaimStatus.CLAIMED, reward)
