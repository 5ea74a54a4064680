"""Global error handlers: consistent JSON error responses for HTTP and domain errors."""

import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from crolars.errors import (
    InsufficientFunds,
    InvalidAmount,
    InvalidTransition,
    LedgerOutcomeUnknown,
    NotFound,
    RateLimited,
    StorageUnavailable,
)

logger = structlog.get_logger()

_UNAVAILABLE = {"detail": "Service temporarily unavailable", "code": "storage_unavailable"}


def setup_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Handle HTTP exceptions with consistent JSON format."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle validation errors with consistent JSON format."""
        return JSONResponse(
            status_code=422,
            content={"detail": "Validation error", "errors": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(InsufficientFunds)
    async def insufficient_funds_handler(_request: Request, exc: InsufficientFunds) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "detail": str(exc),
                "code": exc.code,
                "required": exc.required,
                "available": exc.available,
            },
        )

    @app.exception_handler(InvalidAmount)
    async def invalid_amount_handler(_request: Request, exc: InvalidAmount) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc), "code": exc.code})

    @app.exception_handler(InvalidTransition)
    async def invalid_transition_handler(_request: Request, exc: InvalidTransition) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc), "code": exc.code})

    @app.exception_handler(NotFound)
    async def not_found_handler(_request: Request, exc: NotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc), "code": exc.code})

    @app.exception_handler(RateLimited)
    async def rate_limited_handler(_request: Request, exc: RateLimited) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content={"detail": str(exc), "code": exc.code},
            headers={
                "Retry-After": str(exc.retry_after),
                "X-RateLimit-Limit": str(exc.limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(int(exc.reset_at.timestamp())),
            },
        )

    @app.exception_handler(LedgerOutcomeUnknown)
    async def ledger_timeout_handler(request: Request, exc: LedgerOutcomeUnknown) -> JSONResponse:
        logger.warning("ledger_timeout", path=request.url.path, method=request.method)
        return JSONResponse(status_code=504, content={"detail": str(exc), "code": exc.code})

    @app.exception_handler(StorageUnavailable)
    async def storage_unavailable_handler(request: Request, exc: StorageUnavailable) -> JSONResponse:
        logger.error("storage_unavailable", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=503, content=_UNAVAILABLE)

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("database_error", path=request.url.path, method=request.method, error=str(exc), exc_info=exc)
        return JSONResponse(status_code=503, content=_UNAVAILABLE)

    @app.exception_handler(RedisError)
    async def redis_error_handler(request: Request, exc: RedisError) -> JSONResponse:
        logger.error("redis_error", path=request.url.path, method=request.method, error=str(exc))
        return JSONResponse(status_code=503, content=_UNAVAILABLE)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions: always return JSON."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )
