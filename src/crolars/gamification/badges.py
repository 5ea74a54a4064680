"""Badge registry: idempotent grants, counts and catalog lifecycle."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from crolars.db.dialect import insert_ignore
from crolars.db.models import AchievementDefinition, BadgeDefinition, UserBadge
from crolars.errors import InvalidTransition, NotFound
from crolars.events import BadgeGranted, stage_event

logger = logging.getLogger(__name__)

RARITIES = ("COMMON", "RARE", "EPIC", "LEGENDARY")
# Fields that define what holders earned; frozen once anyone holds the badge
_FROZEN_WHEN_HELD = frozenset({"criteria", "rarity"})
_EDITABLE = frozenset({"name", "description", "category", "criteria", "rarity"})


async def get_badge_by_slug(db: AsyncSession, slug: str) -> BadgeDefinition | None:
    """Fetch a badge definition by slug."""
    result = await db.execute(
        select(BadgeDefinition).where(BadgeDefinition.slug == slug)
    )
    return result.scalar_one_or_none()


async def ensure_badge(db: AsyncSession, slug: str, **defaults: Any) -> BadgeDefinition:  # noqa: ANN401
    """Get or create a badge definition (used for synthetic level milestones)."""
    values = {
        "name": slug.replace("_", " ").title(),
        "description": "",
        "rarity": "COMMON",
        "category": "general",
        "criteria": {},
        "is_active": True,
        "created_at": datetime.now(timezone.utc),
    }
    values.update(defaults)
    await insert_ignore(db, BadgeDefinition, ["slug"], slug=slug, **values)
    badge = await get_badge_by_slug(db, slug)
    if badge is None:
        # Deleted by a concurrent admin call between the insert and the read
        msg = f"Badge {slug!r} not found"
        raise NotFound(msg)
    return badge


async def badge_count(db: AsyncSession, user_id: int) -> int:
    result = await db.execute(
        select(func.count()).select_from(UserBadge).where(UserBadge.user_id == user_id)
    )
    return result.scalar_one()


async def user_badge_slugs(db: AsyncSession, user_id: int) -> set[str]:
    result = await db.execute(
        select(BadgeDefinition.slug)
        .join(UserBadge, UserBadge.badge_id == BadgeDefinition.id)
        .where(UserBadge.user_id == user_id)
    )
    return set(result.scalars().all())


async def grant_badge(
    db: AsyncSession,
    user_id: int,
    slug: str,
    *,
    evaluate: bool = True,
) -> bool:
    """Grant a badge. Returns True on first grant, False if already held or unknown.

    The unique (user_id, badge_id) constraint makes this a set-insert, so
    concurrent grants of the same badge produce exactly one row.
    """
    badge = await get_badge_by_slug(db, slug)
    if badge is None:
        logger.warning("Badge not found: %s", slug)
        return False
    if not badge.is_active:
        logger.info("Skipping inactive badge %s for user %s", slug, user_id)
        return False

    inserted = await insert_ignore(
        db, UserBadge, ["user_id", "badge_id"],
        user_id=user_id, badge_id=badge.id, earned_at=datetime.now(timezone.utc),
    )
    if inserted is None:
        return False

    logger.info("Badge %s granted to user %s", slug, user_id)
    stage_event(db, BadgeGranted(user_id=user_id, slug=badge.slug, name=badge.name, rarity=badge.rarity))

    if evaluate:
        from crolars.gamification.achievements import evaluate as evaluate_achievements

        await evaluate_achievements(db, user_id)
    return True


# ---------------------------------------------------------------------------
# Catalog administration
# ---------------------------------------------------------------------------


async def _holder_count(db: AsyncSession, badge_id: int) -> int:
    result = await db.execute(
        select(func.count()).select_from(UserBadge).where(UserBadge.badge_id == badge_id)
    )
    return result.scalar_one()


async def _require_badge(db: AsyncSession, slug: str) -> BadgeDefinition:
    badge = await get_badge_by_slug(db, slug)
    if badge is None:
        msg = f"Badge not found: {slug}"
        raise NotFound(msg)
    return badge


async def create_badge(
    db: AsyncSession,
    slug: str,
    name: str,
    description: str = "",
    rarity: str = "COMMON",
    category: str = "general",
    criteria: dict[str, Any] | None = None,
) -> BadgeDefinition:
    if rarity not in RARITIES:
        msg = f"Unknown rarity {rarity!r}"
        raise InvalidTransition(msg)
    if await get_badge_by_slug(db, slug) is not None:
        msg = f"Badge already exists: {slug}"
        raise InvalidTransition(msg)
    badge = BadgeDefinition(
        slug=slug,
        name=name,
        description=description,
        rarity=rarity,
        category=category,
        criteria=criteria or {},
        is_active=True,
        created_at=datetime.now(timezone.utc),
    )
    db.add(badge)
    await db.flush()
    return badge


async def update_badge(db: AsyncSession, slug: str, **changes: Any) -> BadgeDefinition:  # noqa: ANN401
    """Edit a badge. Criteria and rarity are frozen once any user holds it."""
    badge = await _require_badge(db, slug)
    unknown = set(changes) - _EDITABLE
    if unknown:
        msg = f"Fields not editable: {sorted(unknown)}"
        raise InvalidTransition(msg)
    if "rarity" in changes and changes["rarity"] not in RARITIES:
        msg = f"Unknown rarity {changes['rarity']!r}"
        raise InvalidTransition(msg)

    frozen = {k for k in changes if k in _FROZEN_WHEN_HELD and changes[k] != getattr(badge, k)}
    if frozen and await _holder_count(db, badge.id) > 0:
        msg = f"Badge {slug} is held by users; cannot change {sorted(frozen)} (deactivate it instead)"
        raise InvalidTransition(msg)

    for key, value in changes.items():
        setattr(badge, key, value)
    await db.flush()
    return badge


async def deactivate_badge(db: AsyncSession, slug: str) -> BadgeDefinition:
    badge = await _require_badge(db, slug)
    badge.is_active = False
    await db.flush()
    return badge


async def delete_badge(db: AsyncSession, slug: str) -> None:
    """Hard-delete an unused badge. Refused while held or referenced by an achievement."""
    badge = await _require_badge(db, slug)
    if await _holder_count(db, badge.id) > 0:
        msg = f"Badge {slug} is held by users; deactivate it instead"
        raise InvalidTransition(msg)
    referenced = await db.execute(
        select(func.count())
        .select_from(AchievementDefinition)
        .where(AchievementDefinition.badge_slug == slug)
    )
    if referenced.scalar_one() > 0:
        msg = f"Badge {slug} is referenced by an achievement; deactivate it instead"
        raise InvalidTransition(msg)
    await db.delete(badge)
    await db.flush()
