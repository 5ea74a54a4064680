"""Liveness, readiness and version endpoints (mounted without the API prefix)."""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from crolars.config import get_settings
from crolars.database import get_session
from crolars.events import get_event_bus
from crolars.redis_client import check_redis

router = APIRouter()


async def _check_database(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        return f"error: {exc}"
    return "ok"


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict[str, object]:
    """Ready once the ledger database, Redis and the event bus are all usable.

    A missing bus means notifications would be silently lost, so it degrades
    readiness like a storage outage does.
    """
    bus = get_event_bus()
    checks = {
        "database": await _check_database(db),
        "redis": await check_redis(),
        "event_bus": "ok" if bus is not None else "error: not started",
    }
    return {
        "status": "ready" if all(v == "ok" for v in checks.values()) else "degraded",
        "checks": checks,
        "pending_events": bus.pending if bus is not None else 0,
    }


@router.get("/version")
async def version() -> dict[str, str]:
    settings = get_settings()
    return {"version": settings.app_version, "environment": settings.environment}
