"""FastAPI application entrypoint.

Application startup order:
1. Load settings (from environment)
2. Configure logging
3. Initialize database engine and session factory
4. Build the lifecycle service
5. Start the in-process daily scheduler (only with SCHEDULER_ENABLED)

Shutdown order:
1. Stop the scheduler
2. Close DB connection pool
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from lifecycle import __version__
from lifecycle.api.router import api_v1_router, public_router
from lifecycle.compliance.errors import LifecycleError
from lifecycle.compliance.service import DataLifecycleService
from lifecycle.config import get_settings
from lifecycle.database import close_db, get_session_factory, init_db
from lifecycle.scheduler import LifecycleScheduler, ScheduleConfig
from lifecycle.telemetry import RequestIdMiddleware, configure_logging

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    settings = get_settings()

    # Configure structured logging first (before any log calls)
    configure_logging(
        json_logs=settings.is_prod,
        log_level="DEBUG" if settings.debug else settings.log_level,
    )

    log.info(
        "app.starting",
        environment=settings.environment,
        db_url=settings.database_url.split("@")[-1],
    )

    init_db(settings)
    service = DataLifecycleService(get_session_factory(), settings)
    app.state.lifecycle_service = service

    scheduler = LifecycleScheduler(
        service,
        ScheduleConfig(
            daily_hour_utc=settings.daily_run_hour_utc,
            enabled=settings.scheduler_enabled,
        ),
    )
    app.state.scheduler = scheduler
    await scheduler.start()

    log.info("app.ready")
    yield

    await scheduler.stop()
    await close_db()
    log.info("app.shutdown")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    app = FastAPI(
        title="Data Lifecycle Engine",
        description=(
            "Data subject requests, grace-period deletion, anonymization "
            "and retention enforcement."
        ),
        version=__version__,
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
        openapi_url="/openapi.json" if settings.is_dev else None,
        lifespan=lifespan,
    )

    # Unique request ID for log correlation
    app.add_middleware(RequestIdMiddleware)

    app.include_router(public_router)
    app.include_router(api_v1_router)

    # ------------------------------------------------------------------ #
    # Exception handlers
    # ------------------------------------------------------------------ #

    @app.exception_handler(LifecycleError)
    async def lifecycle_error_handler(request: Request, exc: LifecycleError) -> JSONResponse:
        log.warning(
            "app.lifecycle_error",
            path=request.url.path,
            method=request.method,
            error_code=exc.code,
            status_code=exc.status_code,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "app.unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "detail": "Internal server error"},
        )

    return app


app = create_app()
