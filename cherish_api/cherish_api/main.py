"""FastAPI application entry-point for the Cherishly allowance and sync API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import pydantic
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException

from cherish_api import __version__
from cherish_api.config import APISettings, PlatformEnv, load_api_settings
from cherish_api.dependencies import (
    dispose_engine,
    dispose_http_clients,
    init_engine,
    init_http_clients,
)
from cherish_api.middleware.auth import AuthenticationMiddleware
from cherish_api.middleware.logging import RequestLoggingMiddleware
from cherish_api.middleware.rate_limit import RateLimitConfig, RateLimitMiddleware
from cherish_api.routers import allowance, health, people, suggestions, sync, sync_peer
from cherish_engine.errors import (
    AllowanceDeniedError,
    NotFoundError,
    SyncAuthError,
    UpstreamError,
)

logger = logging.getLogger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create tables if they do not exist (dev or local SQLite only).
    - Initialise the AI gateway and peer HTTP clients.

    On shutdown:
    - Close both HTTP clients.
    - Dispose the database engine connection pool.
    """
    settings: APISettings = load_api_settings()

    if settings.platform_env in (PlatformEnv.STAGING, PlatformEnv.PRODUCTION) and not (
        settings.jwt_secret.get_secret_value()
    ):
        raise RuntimeError(
            f"CHERISH_JWT_SECRET is required in {settings.platform_env.value} mode. Refusing to start."
        )

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    if settings.platform_env == PlatformEnv.DEV or is_local:
        from cherish_engine.state.sqlite_adapter import create_local_tables

        await create_local_tables(engine)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-create")

    init_http_clients(settings)
    logger.info("HTTP clients initialised (ai_gateway=%s)", settings.ai_gateway_url)

    if settings.structured_logging:
        from cherish_api.middleware.json_formatter import JSONFormatter
        from cherish_api.middleware.logging import CorrelationIdFilter

        root_logger = logging.getLogger()
        root_logger.handlers.clear()
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        handler.addFilter(CorrelationIdFilter())
        root_logger.addHandler(handler)
        root_logger.setLevel(logging.INFO)
        logger.info("Structured JSON logging enabled")

    yield

    await dispose_http_clients()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Cherishly API",
        description="Credit-gated AI allowance and peer-to-peer relationship sync.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (last added runs first) ----------------------------------

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        config=RateLimitConfig(
            enabled=settings.rate_limit_enabled,
            default_requests_per_minute=settings.rate_limit_requests_per_minute,
            ai_requests_per_minute=settings.rate_limit_ai_requests_per_minute,
        ),
    )
    app.add_middleware(AuthenticationMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Correlation-ID",
            "Idempotency-Key",
            "Accept",
        ],
    )

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(allowance.router, prefix="/api/v1")
    app.include_router(allowance.admin_router, prefix="/api/v1")
    app.include_router(suggestions.router, prefix="/api/v1")
    app.include_router(people.router, prefix="/api/v1")
    app.include_router(sync.router, prefix="/api/v1")
    app.include_router(sync_peer.router, prefix="/api/v1")

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error(404, str(exc) or "Not found")

    @app.exception_handler(SyncAuthError)
    async def sync_auth_handler(request: Request, exc: SyncAuthError) -> JSONResponse:
        logger.warning("Peer auth failed on %s: %s", request.url.path, exc)
        return _error(401, str(exc) or "Unauthorized")

    @app.exception_handler(AllowanceDeniedError)
    async def allowance_denied_handler(request: Request, exc: AllowanceDeniedError) -> JSONResponse:
        return _error(403, exc.reason)

    @app.exception_handler(UpstreamError)
    async def upstream_error_handler(request: Request, exc: UpstreamError) -> JSONResponse:
        logger.warning("Upstream failure on %s: %s (upstream=%s)", request.url.path, exc, exc.upstream_status)
        return _error(exc.status_code, str(exc))

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return _error(400, str(exc) or "Invalid request")

    @app.exception_handler(pydantic.ValidationError)
    async def payload_error_handler(request: Request, exc: pydantic.ValidationError) -> JSONResponse:
        return _error(400, f"Invalid request body: {exc.error_count()} error(s)")

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ())[1:]) or "body"
        return _error(400, f"{field}: {first.get('msg', 'invalid')}")

    @app.exception_handler(PermissionError)
    async def permission_error_handler(request: Request, exc: PermissionError) -> JSONResponse:
        logger.warning("PermissionError on %s: %s", request.url.path, exc)
        return _error(403, str(exc) or "Permission denied")

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return _error(500, "Internal database error")

    return app


# Module-level application instance used by ``uvicorn cherish_api.main:app``.
app = create_app()
