"""FastAPI application entry point.

This module creates and configures the FastAPI application, including:
- Lifespan that builds the Redis client, revocation ledger, activity
  throttle and rate limiter onto ``app.state``
- Exception handlers for API errors
- API v1 router mounting
- Health check endpoint
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from account_trust.api.v1.router import router as v1_router
from account_trust.core.config import settings
from account_trust.core.errors import APIError
from account_trust.core.kv_store import create_redis_client
from account_trust.core.responses import ErrorDetail, ErrorResponse
from account_trust.services.activity_throttle import ActivityThrottle
from account_trust.services.rate_limiter import RateLimiter
from account_trust.services.session_ledger import SessionRevocationLedger

logger = structlog.get_logger()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to add security headers to all responses.

    Headers added:
    - X-Frame-Options / Content-Security-Policy: no framing, no resources
    - X-Content-Type-Options: Prevents MIME sniffing
    - Referrer-Policy: Tokens travel in query strings, so never leak the URL
    - Cache-Control: API responses (recovery codes included) are not cached
    - Strict-Transport-Security: Forces HTTPS (production only)
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        """Add security headers to response."""
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none'"
        )

        if request.url.path.startswith("/api/"):
            response.headers["Cache-Control"] = "no-store, max-age=0"

        # HSTS only in production (assumes HTTPS via reverse proxy)
        if settings.environment == "production":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )

        return response


def api_error_handler(_request: Request, exc: APIError) -> JSONResponse:
    """Render an APIError with the standard error envelope.

    Args:
        request: The incoming request.
        exc: The APIError that was raised.

    Returns:
        JSONResponse with error envelope, status code and extra headers.
    """
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=exc.code,
                message=exc.message,
                details=exc.details,
            )
        ).model_dump(),
        headers=exc.headers,
    )


def validation_error_handler(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Convert FastAPI's request validation errors to the standard format."""
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(
            error=ErrorDetail(
                code="VALIDATION_ERROR",
                message="Request validation failed",
                details=[
                    {"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]}
                    for e in exc.errors()
                ],
            )
        ).model_dump(),
    )


def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions.

    Returns 500 INTERNAL_ERROR without exposing stack traces. The full
    exception is logged.
    """
    logger.exception("Unhandled exception", exc_info=exc, path=str(request.url.path))

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="INTERNAL_ERROR",
                message="An unexpected error occurred",
            )
        ).model_dump(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the key-value backed components and close the client on exit."""
    client = create_redis_client(settings)
    app.state.redis = client
    app.state.ledger = SessionRevocationLedger(
        client, ttl=timedelta(days=settings.session_revocation_ttl_days)
    )
    app.state.throttle = ActivityThrottle(
        client, window_seconds=settings.activity_throttle_seconds
    )
    app.state.rate_limiter = RateLimiter.from_settings(settings)
    logger.info(
        "account_trust_started",
        environment=settings.environment,
        rate_limit_storage=settings.rate_limit_storage_uri.split("://")[0],
    )
    try:
        yield
    finally:
        await client.aclose()


def create_app(*, with_lifespan: bool = True) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        with_lifespan: Build components from settings on startup. Tests
            disable it and populate ``app.state`` themselves.

    Returns:
        Configured FastAPI application instance.
    """
    app = FastAPI(
        title="Account Trust API",
        version="1.0.0",
        description="Tokens, recovery codes, session revocation and rate limits",
        lifespan=lifespan if with_lifespan else None,
    )

    # Middleware order: Starlette uses LIFO, so the LAST added runs FIRST.
    # CORS must run first to handle preflight requests, so add it last.
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", "X-Request-ID"],
    )

    # Order matters: specific handlers first, then catch-all
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, internal_error_handler)

    app.include_router(v1_router, prefix="/api/v1")

    # Health check endpoint (outside versioned API, no database access)
    @app.get("/health")
    async def health_check(request: Request) -> dict:
        """Report ledger reachability and size.

        Returns:
            {"status": "healthy" | "degraded", "ledger": {...}}
        """
        ledger: SessionRevocationLedger = request.app.state.ledger
        healthy = await ledger.health_check()
        revoked: int | None = None
        if healthy:
            try:
                revoked = await ledger.count()
            except RedisError:
                healthy = False
        return {
            "status": "healthy" if healthy else "degraded",
            "ledger": {"reachable": healthy, "revoked_sessions": revoked},
        }

    return app


# Create the application instance
# Used by uvicorn: uvicorn account_trust.main:app
app = create_app()
