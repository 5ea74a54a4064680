"""structlog setup shared by the API process and its background tasks."""

import logging

import structlog

from crolars.config import Settings

# Chatty at INFO; the service logs its own storage failures
_QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "asyncio")


def _renderer(settings: Settings) -> structlog.types.Processor:
    if settings.log_format == "console":
        return structlog.dev.ConsoleRenderer(colors=settings.debug)
    return structlog.processors.JSONRenderer()


def setup_logging(settings: Settings) -> None:
    """Configure structlog and the stdlib root logger.

    Infrastructure code (middleware, event bus, WebSocket bridge) logs through
    structlog with event keys; domain services use ``logging.getLogger`` and
    share the same level.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(settings),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level)
    logging.getLogger("crolars").setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
