"""Badge and achievement catalog seed data, upserted on startup."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from crolars.db.dialect import insert_for
from crolars.db.models import AchievementDefinition, BadgeDefinition

logger = logging.getLogger(__name__)

BADGE_SEED_DATA: list[dict] = [
    # Level rewards
    {
        "slug": "first_step",
        "name": "First Step",
        "description": "Reach level 3",
        "category": "level",
        "rarity": "COMMON",
        "criteria": {"level": 3},
    },
    {
        "slug": "consistency",
        "name": "Consistency",
        "description": "Reach level 5",
        "category": "level",
        "rarity": "COMMON",
        "criteria": {"level": 5},
    },
    {
        "slug": "mastery",
        "name": "Mastery",
        "description": "Reach level 8",
        "category": "level",
        "rarity": "RARE",
        "criteria": {"level": 8},
    },
    {
        "slug": "academic_legend",
        "name": "Academic Legend",
        "description": "Reach level 10",
        "category": "level",
        "rarity": "EPIC",
        "criteria": {"level": 10},
    },
    {
        "slug": "immortal_of_knowledge",
        "name": "Immortal of Knowledge",
        "description": "Reach level 12",
        "category": "level",
        "rarity": "EPIC",
        "criteria": {"level": 12},
    },
    {
        "slug": "transcendence",
        "name": "Transcendence",
        "description": "Reach level 14",
        "category": "level",
        "rarity": "LEGENDARY",
        "criteria": {"level": 14},
    },
    {
        "slug": "omniscience",
        "name": "Omniscience",
        "description": "Reach level 15",
        "category": "level",
        "rarity": "LEGENDARY",
        "criteria": {"level": 15},
    },
    # Achievement rewards
    {
        "slug": "collector",
        "name": "Collector",
        "description": "Hold five badges",
        "category": "collection",
        "rarity": "RARE",
        "criteria": {"achievement": "badge_collector"},
    },
    {
        "slug": "streak_master",
        "name": "Streak Master",
        "description": "Keep any streak alive for 7 days",
        "category": "streak",
        "rarity": "RARE",
        "criteria": {"achievement": "streak_master"},
    },
]

# XP-threshold achievements pay Crolars only, so unlocking them never feeds the XP they measure.
ACHIEVEMENT_SEED_DATA: list[dict] = [
    {
        "slug": "first_100_xp",
        "name": "Getting Started",
        "description": "Earn your first 100 XP",
        "condition_type": "total_xp",
        "target_value": 100,
        "xp_reward": 0,
        "crolars_reward": 25,
        "category": "xp",
        "rarity": "COMMON",
    },
    {
        "slug": "first_500_xp",
        "name": "On a Roll",
        "description": "Earn 500 XP",
        "condition_type": "total_xp",
        "target_value": 500,
        "xp_reward": 0,
        "crolars_reward": 50,
        "category": "xp",
        "rarity": "COMMON",
    },
    {
        "slug": "first_1000_xp",
        "name": "Knowledge Seeker",
        "description": "Earn 1,000 XP",
        "condition_type": "total_xp",
        "target_value": 1000,
        "xp_reward": 0,
        "crolars_reward": 100,
        "category": "xp",
        "rarity": "RARE",
    },
    {
        "slug": "badge_collector",
        "name": "Badge Collector",
        "description": "Hold five badges",
        "condition_type": "badge_count",
        "target_value": 5,
        "xp_reward": 100,
        "crolars_reward": 100,
        "badge_slug": "collector",
        "category": "collection",
        "rarity": "RARE",
        "requires_claim": True,
    },
    {
        "slug": "level_5",
        "name": "Rising Star",
        "description": "Reach level 5",
        "condition_type": "level",
        "target_value": 5,
        "xp_reward": 50,
        "crolars_reward": 100,
        "category": "level",
        "rarity": "COMMON",
    },
    {
        "slug": "level_10",
        "name": "Veteran",
        "description": "Reach level 10",
        "condition_type": "level",
        "target_value": 10,
        "xp_reward": 100,
        "crolars_reward": 250,
        "category": "level",
        "rarity": "EPIC",
        "requires_claim": True,
    },
    {
        "slug": "streak_master",
        "name": "Streak Master",
        "description": "Keep any streak alive for 7 days",
        "condition_type": "streak",
        "target_value": 7,
        "xp_reward": 100,
        "crolars_reward": 150,
        "badge_slug": "streak_master",
        "category": "streak",
        "rarity": "RARE",
        "requires_claim": True,
    },
]


async def seed_badges(db: AsyncSession) -> int:
    """Upsert badge definitions. Returns number of badges seeded."""
    seeded = 0
    for badge_data in BADGE_SEED_DATA:
        stmt = insert_for(db, BadgeDefinition).values(**badge_data)
        stmt = stmt.on_conflict_do_update(
            index_elements=["slug"],
            set_={
                "name": stmt.excluded.name,
                "description": stmt.excluded.description,
                "category": stmt.excluded.category,
            },
        )
        await db.execute(stmt)
        seeded += 1
    return seeded


async def seed_achievements(db: AsyncSession) -> int:
    """Upsert achievement definitions. Returns number seeded."""
    seeded = 0
    for data in ACHIEVEMENT_SEED_DATA:
        values = {"criteria": {}, "badge_slug": None, "requires_claim": False, **data}
        stmt = insert_for(db, AchievementDefinition).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["slug"],
            set_={
                "name": stmt.excluded.name,
                "description": stmt.excluded.description,
                "xp_reward": stmt.excluded.xp_reward,
                "crolars_reward": stmt.excluded.crolars_reward,
                "requires_claim": stmt.excluded.requires_claim,
            },
        )
        await db.execute(stmt)
        seeded += 1
    return seeded


async def seed_catalog(db: AsyncSession) -> None:
    badges = await seed_badges(db)
    achievements = await seed_achievements(db)
    await db.commit()
    logger.info("Seeded %d badge and %d achievement definitions", badges, achievements)
