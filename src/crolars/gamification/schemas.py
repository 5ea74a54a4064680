"""Pydantic request/response models for gamification endpoints."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

Rarity = Literal["COMMON", "RARE", "EPIC", "LEGENDARY"]


# --- Catalog ---


class CatalogItem(BaseModel):
    type: Literal["badge", "achievement"]
    slug: str
    name: str
    description: str
    rarity: str
    category: str
    is_active: bool = True
    total_earned: int = 0
    earned: bool = False
    # achievements only
    condition_type: str | None = None
    target_value: int | None = None
    xp_reward: int | None = None
    crolars_reward: int | None = None
    badge_slug: str | None = None
    requires_claim: bool | None = None


class CatalogResponse(BaseModel):
    items: list[CatalogItem]
    total: int
    page: int
    limit: int


# --- Progress ---


class NextLevelResponse(BaseModel):
    current_level_xp: int
    required_xp: int
    percent: float


class ProgressResponse(BaseModel):
    total_xp: int
    level: int
    level_name: str
    next_level: NextLevelResponse
    badges: list[str]
    achievements: list[str]
    streaks: dict[str, int]
    balance: int
    last_activity_at: datetime | None = None


# --- Levels ---


class LevelEntry(BaseModel):
    level: int
    name: str
    min_xp: int
    reward_crolars: int
    reward_badge: str | None = None
    milestone_badge: str | None = None


class AllLevelsResponse(BaseModel):
    levels: list[LevelEntry]


# --- Achievements ---


class AchievementStateResponse(BaseModel):
    slug: str
    name: str
    description: str
    rarity: str
    category: str
    xp_reward: int
    crolars_reward: int
    badge_slug: str | None = None
    requires_claim: bool
    status: Literal["LOCKED", "EARNED", "CLAIMED"]
    earned_at: datetime | None = None
    claimed_at: datetime | None = None


class AchievementListResponse(BaseModel):
    achievements: list[AchievementStateResponse]


class CheckResponse(BaseModel):
    unlocked: list[str]


class RewardResponse(BaseModel):
    xp: int
    crolars: int
    badge: str | None = None


class ClaimResponse(BaseModel):
    status: Literal["CLAIMED", "ALREADY_CLAIMED"]
    reward: RewardResponse | None = None


# --- Streaks ---


class StreakResponse(BaseModel):
    name: str
    current_days: int
    longest_days: int
    extended: bool
    xp_awarded: int = 0
    day: date


# --- Rankings ---


class RankingEntry(BaseModel):
    rank: int
    user_id: int
    username: str
    total_xp: int
    level: int


class RankingsResponse(BaseModel):
    rankings: list[RankingEntry]


# --- Admin ---


class AwardXPRequest(BaseModel):
    user_id: int
    amount: int = Field(..., gt=0)
    source: str = Field(..., min_length=1, max_length=64)
    description: str | None = Field(None, max_length=256)
    idempotency_key: str | None = Field(None, max_length=200)


class AwardXPResponse(BaseModel):
    user_id: int
    old_level: int
    new_level: int
    total_xp: int
    granted: bool
    leveled_up: bool


class BadgeCreateRequest(BaseModel):
    slug: str = Field(..., min_length=1, max_length=64, pattern=r"^[a-z0-9_]+$")
    name: str = Field(..., min_length=1, max_length=128)
    description: str = ""
    rarity: Rarity = "COMMON"
    category: str = Field("general", max_length=32)
    criteria: dict[str, Any] = Field(default_factory=dict)


class BadgeUpdateRequest(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=128)
    description: str | None = None
    rarity: Rarity | None = None
    category: str | None = Field(None, max_length=32)
    criteria: dict[str, Any] | None = None


class BadgeResponse(BaseModel):
    slug: str
    name: str
    description: str
    rarity: str
    category: str
    criteria: dict[str, Any]
    is_active: bool
