"""
FastAPI Application Factory

Creates and configures the FundSync API server with:
- Lifespan events (startup/shutdown)
- Exception handlers
- API router mounting
- Structured logging (JSON for production)
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from fundsync.api.v1.health import router as health_router
from fundsync.api.v1.router import api_router
from fundsync.core.config import settings
from fundsync.core.database import check_database_connection, create_all_tables
from fundsync.core.exceptions import (
    CycleAbortedError,
    DatabaseError,
    FundSyncException,
    ProviderError,
)
from fundsync.core.logging_config import setup_logging

# Configure structured logging
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup: Check the database and create missing tables
    """
    logger.info(
        f"Starting {settings.app_name} v{settings.app_version} (environment={settings.environment})"
    )

    # In test environment, tables are managed by fixtures
    if settings.environment == "test":
        logger.info("Test environment detected - skipping startup sequence")
        yield
        return

    logger.info("Checking database connection...")
    db_ok = await check_database_connection()
    if not db_ok:
        # Health endpoint keeps working for debugging
        logger.critical("Database connection failed - running in degraded mode")
    else:
        await create_all_tables()
        logger.info("Database connection verified, tables ready")

    yield

    logger.info("Shutdown complete")


def _status_code_for(exc: FundSyncException) -> int:
    if isinstance(exc, CycleAbortedError):
        return 503
    if isinstance(exc, DatabaseError):
        return 503
    if isinstance(exc, ProviderError):
        return 502
    return 500


def create_app() -> FastAPI:
    """
    Application factory pattern.

    Creates a configured FastAPI instance with exception handlers and routers.
    """
    app = FastAPI(
        title=settings.app_name,
        description="Resumable, time-budgeted ingestion of company fundamentals.",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )

    @app.exception_handler(FundSyncException)
    async def fundsync_exception_handler(request: Request, exc: FundSyncException):
        """Handle custom FundSync exceptions."""
        status_code = _status_code_for(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    app.include_router(health_router, prefix="/health", tags=["Health"])
    app.include_router(api_router, prefix=settings.api_prefix)

    return app


# Create application instance
app = create_app()
