"""FastAPI application entry-point for the entitlement service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from entitlement_api import __version__
from entitlement_api.config import APISettings, PlatformEnv
from entitlement_api.dependencies import dispose_engine, get_session_factory, get_settings, init_engine
from entitlement_api.middleware.logging import RequestLoggingMiddleware
from entitlement_api.middleware.prometheus import PrometheusMiddleware
from entitlement_api.middleware.trace_context import TraceContextMiddleware, TraceLoggingFilter
from entitlement_api.routers import billing, health, tenants
from entitlement_api.routers import metrics as metrics_router
from entitlement_api.services.ledger_retention import LedgerRetentionTask
from entitlement_engine.errors import (
    QuotaExceededError,
    SignatureInvalidError,
    StorageTransientError,
    TenantAlreadyExistsError,
    TenantNotFoundError,
)

logger = logging.getLogger(__name__)

# Seconds the provider (or calling service) should wait before retrying a 503.
_RETRY_AFTER_SECONDS = "5"


def _configure_structured_logging() -> None:
    from entitlement_api.middleware.json_formatter import JSONFormatter

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    handler.addFilter(TraceLoggingFilter())
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Switch to JSON logging when configured.
    - Initialise the async database engine.
    - Create tables in dev or local SQLite mode (production uses Alembic).
    - Start the ledger retention task.

    On shutdown the task is stopped and the engine pool disposed.
    """
    settings: APISettings = get_settings()

    if settings.structured_logging:
        _configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    if settings.platform_env == PlatformEnv.DEV or is_local:
        from entitlement_engine.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-migration")

    if not settings.service_token.get_secret_value():
        logger.warning("API_SERVICE_TOKEN is not set; tenant endpoints accept unauthenticated calls")

    retention: LedgerRetentionTask | None = None
    if settings.ledger_purge_enabled:
        retention = LedgerRetentionTask(
            get_session_factory(),
            retention_days=settings.ledger_retention_days,
            interval_seconds=settings.ledger_purge_interval_seconds,
        )
        await retention.start()

    yield

    if retention is not None:
        await retention.stop()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: APISettings | None = None) -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Entitlement Service",
        description="Billing entitlement synchronization, access checks, and usage metering.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID", "X-Service-Token", "Accept"],
    )
    app.add_middleware(TraceContextMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(billing.router, prefix="/api/v1")
    app.include_router(tenants.router, prefix="/api/v1")
    app.include_router(metrics_router.router)
    app.include_router(health.router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(SignatureInvalidError)
    async def signature_error_handler(request: Request, exc: SignatureInvalidError) -> JSONResponse:
        logger.warning("Rejected webhook on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=401, content={"detail": "Invalid webhook signature"})

    @app.exception_handler(StorageTransientError)
    async def transient_error_handler(request: Request, exc: StorageTransientError) -> JSONResponse:
        logger.error("Transient storage failure on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=503,
            content={"detail": "Temporarily unable to process request; retry later"},
            headers={"Retry-After": _RETRY_AFTER_SECONDS},
        )

    @app.exception_handler(QuotaExceededError)
    async def quota_error_handler(request: Request, exc: QuotaExceededError) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content={
                "detail": str(exc),
                "tenant_id": exc.tenant_id,
                "requested": exc.requested,
                "usage_count": exc.usage_count,
                "usage_limit": exc.usage_limit,
            },
        )

    @app.exception_handler(TenantNotFoundError)
    async def tenant_not_found_handler(request: Request, exc: TenantNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(TenantAlreadyExistsError)
    async def tenant_exists_handler(request: Request, exc: TenantAlreadyExistsError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn entitlement_api.main:app``.
app = create_app()
