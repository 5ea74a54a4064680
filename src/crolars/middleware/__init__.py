"""HTTP middleware stack and exception handlers."""

from fastapi import FastAPI

from crolars.config import Settings
from crolars.middleware.cors import setup_cors
from crolars.middleware.error_handler import setup_error_handlers
from crolars.middleware.logging import setup_logging
from crolars.middleware.rate_limit import RateLimitMiddleware
from crolars.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Install logging, domain error mapping and the middleware chain.

    Outermost first, requests pass CORS, then request-id binding, then the
    per-IP ``api`` limit. Starlette wraps in reverse-add order, so the calls
    below run innermost first.
    """
    setup_logging(settings)
    setup_error_handlers(app)

    app.add_middleware(
        RateLimitMiddleware,
        requests_per_window=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    # Outside the limiter so 429s still carry X-Request-Id
    app.add_middleware(RequestIdMiddleware)
    setup_cors(app, settings)
