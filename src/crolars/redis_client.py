"""Process-wide Redis client.

One client backs the notification cache, the pub/sub channels read by the
WebSocket bridge, catalog/rankings caches and the rate-limit counters.
"""

import redis.asyncio as redis
import structlog

logger = structlog.get_logger()

_client: redis.Redis | None = None


async def init_redis(url: str, max_connections: int = 50) -> redis.Redis:
    """Build the shared client. Responses are decoded to str."""
    global _client  # noqa: PLW0603
    _client = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=max_connections,
        health_check_interval=30,
    )
    logger.info("redis_initialized", max_connections=max_connections)
    return _client


def set_redis(client: redis.Redis | None) -> None:
    """Swap in a client built elsewhere, e.g. a test double."""
    global _client  # noqa: PLW0603
    _client = client


async def close_redis() -> None:
    global _client  # noqa: PLW0603
    if _client is not None:
        await _client.aclose()
        _client = None


def get_redis() -> redis.Redis:
    if _client is None:
        msg = "Redis client is not initialised (init_redis runs in the app lifespan)"
        raise RuntimeError(msg)
    return _client


async def check_redis() -> str:
    """Readiness check: ``"ok"`` or ``"error: ..."``."""
    try:
        await get_redis().ping()
    except Exception as exc:
        return f"error: {exc}"
    return "ok"
