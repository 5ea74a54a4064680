"""Gamification API endpoints: catalog, progress, achievements, streaks, rankings and admin tools."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from crolars.auth.dependencies import get_admin_user, get_current_user
from crolars.cache import CacheKeys, cache_delete, cache_get_json, cache_set_json
from crolars.config import get_settings
from crolars.database import get_session
from crolars.db.models import (
    AchievementDefinition,
    BadgeDefinition,
    User,
    UserAchievement,
    UserBadge,
    UserProgress,
)
from crolars.errors import InvalidTransition, NotFound
from crolars.gamification import achievements, badges
from crolars.gamification.levels import level_definition, level_table, xp_for_next_level
from crolars.gamification.progression import award_xp, get_progress
from crolars.gamification.schemas import (
    AchievementListResponse,
    AchievementStateResponse,
    AllLevelsResponse,
    AwardXPRequest,
    AwardXPResponse,
    BadgeCreateRequest,
    BadgeResponse,
    BadgeUpdateRequest,
    CatalogItem,
    CatalogResponse,
    CheckResponse,
    ClaimResponse,
    LevelEntry,
    NextLevelResponse,
    ProgressResponse,
    RankingEntry,
    RankingsResponse,
    RewardResponse,
    StreakResponse,
)
from crolars.gamification.streaks import record_activity
from crolars.ledger.service import get_balance
from crolars.ratelimit import rate_limit
from crolars.redis_client import get_redis

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/gamification", tags=["Gamification"])
admin_router = APIRouter(prefix="/api/v1/admin/gamification", tags=["Admin"])


# ── Catalog ──


async def _load_catalog(db: AsyncSession, kind: str) -> list[dict[str, Any]]:
    """Full catalog for one kind with holder counts, served from cache when warm."""
    redis = get_redis()
    key = CacheKeys.catalog(kind)
    cached = await cache_get_json(redis, key)
    if cached is not None:
        return cached

    items: list[dict[str, Any]] = []
    if kind == "badges":
        counts = dict((await db.execute(
            select(UserBadge.badge_id, func.count()).group_by(UserBadge.badge_id)
        )).all())
        result = await db.execute(select(BadgeDefinition).order_by(BadgeDefinition.id))
        for b in result.scalars():
            items.append(CatalogItem(
                type="badge",
                slug=b.slug,
                name=b.name,
                description=b.description,
                rarity=b.rarity,
                category=b.category,
                is_active=b.is_active,
                total_earned=counts.get(b.id, 0),
            ).model_dump())
    else:
        counts = dict((await db.execute(
            select(UserAchievement.achievement_id, func.count()).group_by(UserAchievement.achievement_id)
        )).all())
        result = await db.execute(select(AchievementDefinition).order_by(AchievementDefinition.id))
        for a in result.scalars():
            items.append(CatalogItem(
                type="achievement",
                slug=a.slug,
                name=a.name,
                description=a.description,
                rarity=a.rarity,
                category=a.category,
                is_active=a.is_active,
                total_earned=counts.get(a.id, 0),
                condition_type=a.condition_type,
                target_value=a.target_value,
                xp_reward=a.xp_reward,
                crolars_reward=a.crolars_reward,
                badge_slug=a.badge_slug,
                requires_claim=a.requires_claim,
            ).model_dump())

    await cache_set_json(redis, key, items, get_settings().catalog_cache_ttl_seconds)
    return items


async def invalidate_catalog() -> None:
    await cache_delete(get_redis(), CacheKeys.catalog("badges"), CacheKeys.catalog("achievements"))


@router.get("/catalog", response_model=CatalogResponse)
async def get_catalog(
    type: Literal["all", "badges", "achievements"] = Query("all"),  # noqa: A002
    rarity: str | None = Query(None),
    category: str | None = Query(None),
    earned: bool | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Active badges and achievements with holder counts and the caller's earned flag."""
    kinds = ["badges", "achievements"] if type == "all" else [type]
    items: list[dict[str, Any]] = []
    for kind in kinds:
        items.extend(await _load_catalog(db, kind))

    owned_badges = await badges.user_badge_slugs(db, user.id)
    owned_achievements = await achievements.user_achievement_slugs(db, user.id)

    filtered: list[CatalogItem] = []
    for raw in items:
        item = CatalogItem(**raw)
        if not item.is_active:
            continue
        if rarity and item.rarity != rarity.upper():
            continue
        if category and item.category != category:
            continue
        owned = owned_badges if item.type == "badge" else owned_achievements
        item.earned = item.slug in owned
        if earned is not None and item.earned != earned:
            continue
        filtered.append(item)

    start = (page - 1) * limit
    return CatalogResponse(items=filtered[start:start + limit], total=len(filtered), page=page, limit=limit)


# ── Progress & levels ──


@router.get("/progress", response_model=ProgressResponse)
async def get_my_progress(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """XP, level, next-level progress, holdings and balance for the caller."""
    snapshot = await get_progress(db, user.id)
    progress = xp_for_next_level(snapshot.total_xp)
    return ProgressResponse(
        total_xp=snapshot.total_xp,
        level=snapshot.level,
        level_name=level_definition(snapshot.level).name,
        next_level=NextLevelResponse(
            current_level_xp=progress.current_level_xp,
            required_xp=progress.required_xp,
            percent=progress.percent,
        ),
        badges=sorted(snapshot.badges),
        achievements=sorted(snapshot.achievements),
        streaks=snapshot.streaks,
        balance=await get_balance(db, user.id),
        last_activity_at=snapshot.last_activity_at,
    )


@router.get("/levels", response_model=AllLevelsResponse)
async def list_levels(max_level: int = Query(30, ge=1, le=200)):
    """Static level table."""
    return AllLevelsResponse(
        levels=[
            LevelEntry(
                level=d.level,
                name=d.name,
                min_xp=d.min_xp,
                reward_crolars=d.reward_crolars,
                reward_badge=d.reward_badge,
                milestone_badge=d.milestone_badge,
            )
            for d in level_table(max_level)
        ]
    )


# ── Achievements ──


@router.get("/achievements", response_model=AchievementListResponse)
async def list_my_achievements(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Every active achievement with the caller's state (LOCKED, EARNED or CLAIMED)."""
    definitions = await achievements.active_definitions(db)
    held = await achievements.user_achievements(db, user.id)

    states = []
    for d in definitions:
        ua = held.get(d.slug)
        if ua is None:
            status = "LOCKED"
        elif ua.claimed_at is None:
            status = "EARNED"
        else:
            status = "CLAIMED"
        states.append(AchievementStateResponse(
            slug=d.slug,
            name=d.name,
            description=d.description,
            rarity=d.rarity,
            category=d.category,
            xp_reward=d.xp_reward,
            crolars_reward=d.crolars_reward,
            badge_slug=d.badge_slug,
            requires_claim=d.requires_claim,
            status=status,
            earned_at=ua.earned_at if ua else None,
            claimed_at=ua.claimed_at if ua else None,
        ))
    return AchievementListResponse(achievements=states)


@router.post("/achievements/check", response_model=CheckResponse)
async def check_my_achievements(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Re-run the evaluator for the caller."""
    unlocked = await achievements.evaluate(db, user.id)
    await db.commit()
    if unlocked:
        await invalidate_catalog()
    return CheckResponse(unlocked=unlocked)


@router.post("/achievements/{slug}/claim", response_model=ClaimResponse)
async def claim_achievement(
    slug: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Collect an earned achievement's rewards. A repeated claim is a no-op."""
    result = await achievements.claim(db, user.id, slug)
    if result.status is achievements.ClaimStatus.NOT_EARNED:
        msg = f"Achievement {slug} has not been earned yet"
        raise InvalidTransition(msg)
    await db.commit()

    reward = None
    if result.reward is not None:
        reward = RewardResponse(xp=result.reward.xp, crolars=result.reward.crolars, badge=result.reward.badge)
    return ClaimResponse(status=result.status.value, reward=reward)


# ── Streaks ──


@router.post("/streaks/{name}", response_model=StreakResponse)
async def record_streak(
    name: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Record today's activity for one of the caller's streaks."""
    today = datetime.now(timezone.utc).date()
    update = await record_activity(db, user.id, name, today)
    await db.commit()
    return StreakResponse(
        name=update.name,
        current_days=update.days,
        longest_days=update.longest,
        extended=update.changed,
        xp_awarded=update.xp_awarded,
        day=today,
    )


# ── Rankings ──


@router.get("/rankings", response_model=RankingsResponse)
async def get_rankings(
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
):
    """Top users by total XP."""
    redis = get_redis()
    key = CacheKeys.rankings(limit)
    cached = await cache_get_json(redis, key)
    if cached is not None:
        return RankingsResponse(rankings=[RankingEntry(**row) for row in cached])

    result = await db.execute(
        select(UserProgress, User.username)
        .join(User, User.id == UserProgress.user_id)
        .where(User.is_banned.is_(False))
        .order_by(UserProgress.total_xp.desc(), UserProgress.user_id)
        .limit(limit)
    )
    rankings = [
        RankingEntry(
            rank=i,
            user_id=row.UserProgress.user_id,
            username=row.username,
            total_xp=row.UserProgress.total_xp,
            level=row.UserProgress.level,
        )
        for i, row in enumerate(result, start=1)
    ]
    await cache_set_json(redis, key, [r.model_dump() for r in rankings], get_settings().rankings_cache_ttl_seconds)
    return RankingsResponse(rankings=rankings)


# ── Admin ──


def badge_response(badge: BadgeDefinition) -> BadgeResponse:
    return BadgeResponse(
        slug=badge.slug,
        name=badge.name,
        description=badge.description,
        rarity=badge.rarity,
        category=badge.category,
        criteria=badge.criteria or {},
        is_active=badge.is_active,
    )


@admin_router.post(
    "/xp",
    response_model=AwardXPResponse,
    dependencies=[Depends(rate_limit("xp_award"))],
)
async def admin_award_xp(
    body: AwardXPRequest,
    admin: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_session),
):
    """Award XP to a user."""
    if await db.get(User, body.user_id) is None:
        msg = f"User not found: {body.user_id}"
        raise NotFound(msg)
    result = await award_xp(
        db, body.user_id, body.amount, body.source,
        description=body.description,
        idempotency_key=body.idempotency_key,
    )
    await db.commit()
    logger.info("Admin %s awarded %d XP to user %s", admin.id, body.amount, body.user_id)
    return AwardXPResponse(
        user_id=body.user_id,
        old_level=result.old_level,
        new_level=result.new_level,
        total_xp=result.total_xp,
        granted=result.granted,
        leveled_up=result.leveled_up,
    )


@admin_router.post("/badges", response_model=BadgeResponse, status_code=201)
async def admin_create_badge(
    body: BadgeCreateRequest,
    _admin: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_session),
):
    badge = await badges.create_badge(
        db,
        body.slug,
        body.name,
        description=body.description,
        rarity=body.rarity,
        category=body.category,
        criteria=body.criteria,
    )
    await db.commit()
    await invalidate_catalog()
    return badge_response(badge)


@admin_router.patch("/badges/{slug}", response_model=BadgeResponse)
async def admin_update_badge(
    slug: str,
    body: BadgeUpdateRequest,
    _admin: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_session),
):
    """Edit a badge. Criteria and rarity are frozen once anyone holds it."""
    badge = await badges.update_badge(db, slug, **body.model_dump(exclude_unset=True, exclude_none=True))
    await db.commit()
    await invalidate_catalog()
    return badge_response(badge)


@admin_router.post("/badges/{slug}/deactivate", response_model=BadgeResponse)
async def admin_deactivate_badge(
    slug: str,
    _admin: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_session),
):
    badge = await badges.deactivate_badge(db, slug)
    await db.commit()
    await invalidate_catalog()
    return badge_response(badge)


@admin_router.delete("/badges/{slug}", status_code=204)
async def admin_delete_badge(
    slug: str,
    _admin: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_session),
):
    """Delete an unused badge. Held or referenced badges must be deactivated instead."""
    await badges.delete_badge(db, slug)
    await db.commit()
    await invalidate_catalog()
    return Response(status_code=204)
