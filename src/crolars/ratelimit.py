"""Redis fixed-window rate limiter.

Each check runs ``INCR``, ``EXPIRE key window NX`` and ``TTL`` inside one
MULTI/EXEC pipeline, so the counter and its expiry are set atomically: the
window starts at the first hit and no burst can slip in between the
increment and the expiry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends
from redis.exceptions import RedisError

from crolars.auth.dependencies import get_current_user
from crolars.config import get_settings
from crolars.db.models import User
from crolars.errors import RateLimited, StorageUnavailable
from crolars.redis_client import get_redis

logger = logging.getLogger(__name__)

KEY_PREFIX = "rate_limit"


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime

    @property
    def retry_after(self) -> int:
        """Whole seconds until the window resets (at least 1)."""
        delta = (self.reset_at - datetime.now(timezone.utc)).total_seconds()
        return max(1, int(delta + 0.999))


# Platform defaults; xp_award and crolars_spend are overridable via settings.
RATE_LIMITS: dict[str, RateLimitRule] = {
    "api": RateLimitRule(100, 60),
    "login": RateLimitRule(5, 300),
    "post": RateLimitRule(10, 3600),
    "comment": RateLimitRule(50, 3600),
    "upload": RateLimitRule(20, 3600),
    "search": RateLimitRule(100, 3600),
    "xp_award": RateLimitRule(60, 60),
    "crolars_spend": RateLimitRule(20, 60),
}


def get_rule(name: str) -> RateLimitRule:
    """Resolve a named rule, applying settings overrides."""
    settings = get_settings()
    if name == "api":
        return RateLimitRule(settings.rate_limit_requests, settings.rate_limit_window_seconds)
    if name == "xp_award":
        return RateLimitRule(settings.xp_award_limit, settings.xp_award_window_seconds)
    if name == "crolars_spend":
        return RateLimitRule(settings.spend_limit, settings.spend_window_seconds)
    return RATE_LIMITS[name]


class RateLimiter:
    """Atomic counter-per-key limiter backed by Redis."""

    def __init__(self, redis: Any, prefix: str = KEY_PREFIX) -> None:  # noqa: ANN401
        self.redis = redis
        self.prefix = prefix

    async def check_and_increment(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        """Count one hit against ``key``. ``allowed`` is False once the count exceeds ``limit``."""
        redis_key = f"{self.prefix}:{key}"
        pipe = self.redis.pipeline(transaction=True)
        pipe.incr(redis_key)
        pipe.expire(redis_key, window_seconds, nx=True)
        pipe.ttl(redis_key)
        count, _, ttl = await pipe.execute()

        if ttl is None or ttl < 0:
            ttl = window_seconds
        reset_at = datetime.now(timezone.utc) + timedelta(seconds=ttl)
        return RateLimitResult(
            allowed=count <= limit,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at=reset_at,
        )

    async def check_rule(self, rule_name: str, identity: str) -> RateLimitResult:
        rule = get_rule(rule_name)
        return await self.check_and_increment(f"{rule_name}:{identity}", rule.limit, rule.window_seconds)


def rate_limit(rule_name: str):
    """FastAPI dependency gating an endpoint per authenticated user.

    Mutating endpoints fail closed: if Redis is unreachable the request is refused.
    """

    async def _check(user: User = Depends(get_current_user)) -> RateLimitResult:
        try:
            result = await RateLimiter(get_redis()).check_rule(rule_name, str(user.id))
        except (RedisError, RuntimeError) as exc:
            logger.error("Rate limiter unavailable for rule %s", rule_name, exc_info=True)
            raise StorageUnavailable("Rate limiter unavailable") from exc
        if not result.allowed:
            logger.info("Rate limit hit: rule=%s user=%s", rule_name, user.id)
            raise RateLimited(result.reset_at, result.limit, result.retry_after)
        return result

    return _check
