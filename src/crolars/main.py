"""FastAPI application factory."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from crolars.config import get_settings
from crolars.database import close_db, create_tables, get_session_factory, init_db
from crolars.events import close_event_bus, init_event_bus
from crolars.gamification.router import admin_router as gamification_admin_router
from crolars.gamification.router import router as gamification_router
from crolars.gamification.seed import seed_catalog
from crolars.health.router import router as health_router
from crolars.ledger.router import router as ledger_router
from crolars.middleware import setup_middleware
from crolars.notifications.handlers import register_notification_handlers
from crolars.notifications.router import admin_router as notifications_admin_router
from crolars.notifications.router import router as notifications_router
from crolars.redis_client import close_redis, get_redis, init_redis
from crolars.ws.bridge import PubSubBridge
from crolars.ws.manager import manager
from crolars.ws.router import router as ws_router

logger = logging.getLogger(__name__)


async def _cancel(task: asyncio.Task) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url, settings.redis_max_connections)

    if settings.create_tables_on_startup:
        await create_tables()

    # Catalog upsert is idempotent
    if settings.seed_catalog_on_startup:
        try:
            async with get_session_factory()() as db:
                await seed_catalog(db)
        except Exception:
            logger.warning("Catalog seeding failed (tables may not exist yet)", exc_info=True)

    bus = init_event_bus(settings.event_queue_maxsize)
    register_notification_handlers(bus, get_session_factory, get_redis, settings)
    bus_task = asyncio.create_task(bus.run())

    manager.max_connections_per_user = settings.ws_max_connections_per_user
    bridge = PubSubBridge(get_redis())
    bridge_task = asyncio.create_task(bridge.start())

    yield

    await bridge.stop()
    await _cancel(bridge_task)

    # Deliver what is already queued before the connections go away
    await _cancel(bus_task)
    drained = await bus.drain()
    if drained:
        logger.info("Delivered %d queued events on shutdown", drained)
    close_event_bus()

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Crolars API",
        description="Gamification, progression and currency engine",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(ledger_router)
    app.include_router(gamification_router)
    app.include_router(gamification_admin_router)
    app.include_router(notifications_router)
    app.include_router(notifications_admin_router)
    app.include_router(ws_router)

    return app


app = create_app()
