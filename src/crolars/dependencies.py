"""Shared FastAPI dependencies."""

from crolars.config import get_settings
from crolars.notifications.dispatcher import NotificationDispatcher
from crolars.redis_client import get_redis


def get_dispatcher() -> NotificationDispatcher:
    """Build a dispatcher bound to the shared Redis pool."""
    return NotificationDispatcher(get_redis(), get_settings())
