"""Per-IP API rate limiting middleware on top of the shared fixed-window limiter."""

from typing import Any

import structlog
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from crolars.ratelimit import RateLimiter, RateLimitResult
from crolars.redis_client import get_redis

logger = structlog.get_logger()

# Paths exempt from rate limiting
_EXEMPT_PATHS = frozenset({"/health", "/ready"})


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(result.reset_at.timestamp())),
    }


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Apply the ``api`` rule per client IP. Fails open when Redis is unavailable."""

    def __init__(self, app: Any, requests_per_window: int = 100, window_seconds: int = 60) -> None:  # noqa: ANN401
        super().__init__(app)
        self.requests_per_window = requests_per_window
        self.window_seconds = window_seconds

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        """Count the request, return 429 once the window is exhausted."""
        if request.url.path in _EXEMPT_PATHS:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        result: RateLimitResult | None = None
        try:
            limiter = RateLimiter(get_redis())
            result = await limiter.check_and_increment(
                f"api:{client_ip}", self.requests_per_window, self.window_seconds
            )
        except (RuntimeError, RedisError):
            logger.warning("rate_limiter_unavailable", client_ip=client_ip)

        if result is None:
            return await call_next(request)

        if not result.allowed:
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later.", "code": "rate_limited"},
                headers={"Retry-After": str(result.retry_after), **rate_limit_headers(result)},
            )

        response = await call_next(request)
        # A route-level rule that already reported its own window wins
        for name, value in rate_limit_headers(result).items():
            response.headers.setdefault(name, value)
        return response
