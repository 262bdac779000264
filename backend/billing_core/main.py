"""
Main FastAPI application.

WHY: This is the entry point for the application. It configures logging,
middleware, routes, exception handlers and the startup sequence (catalog
seeding, background jobs).
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from billing_core.api import audit, batches, organizations, plans, subscriptions, webhooks
from billing_core.core.config import settings
from billing_core.core.exception_handlers import (
    app_exception_handler,
    generic_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from billing_core.core.exceptions import AppException
from billing_core.db.session import AsyncSessionLocal
from billing_core.middleware import RequestContextMiddleware
from billing_core.services.feature_catalog import FeatureCatalogService
from billing_core.services.plan_service import PlanService
from billing_core.services.scheduler import get_scheduler_status, shutdown_scheduler, start_scheduler

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Root logger at the configured level (DEBUG in development)."""
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


async def seed_reference_data() -> None:
    """
    Seed the feature catalog, plus demo plans in development.

    WHY: Runs in its own session so startup never depends on a request.
    """
    async with AsyncSessionLocal() as session:
        await FeatureCatalogService(session).seed_default_features()
        if settings.is_development:
            await PlanService(session).seed_demo_plans()
        await session.commit()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application startup and shutdown.

    WHY: The catalog must exist before plans referencing it are validated;
    background sweeps only run outside tests.
    """
    logger.info(f"Starting {settings.PROJECT_NAME} ({settings.ENVIRONMENT.value})")
    await seed_reference_data()

    if settings.scheduler_enabled:
        await start_scheduler()

    yield

    await shutdown_scheduler()


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    WHY: Factory pattern allows easier testing with different configurations.

    Returns:
        Configured FastAPI application instance
    """
    configure_logging()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Billing and entitlement API",
        version=settings.VERSION,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )

    # Register exception handlers
    # WHY: Consistent error bodies; unexpected errors never leak internals
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    # WHY: Client IP, user agent and request ID feed audit records
    app.add_middleware(RequestContextMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["health"])
    async def health_check() -> dict:
        """
        Health check endpoint.

        WHY: Liveness only; no authentication or database round trip.
        """
        return {
            "status": "healthy",
            "version": settings.VERSION,
            "scheduler": get_scheduler_status(),
        }

    # Register API routers
    prefix = settings.API_V1_PREFIX
    app.include_router(plans.router, prefix=prefix)
    app.include_router(plans.features_router, prefix=prefix)
    app.include_router(subscriptions.router, prefix=prefix)
    app.include_router(batches.router, prefix=prefix)
    app.include_router(batches.licenses_router, prefix=prefix)
    app.include_router(batches.groups_router, prefix=prefix)
    app.include_router(organizations.router, prefix=prefix)
    app.include_router(organizations.users_router, prefix=prefix)
    app.include_router(audit.router, prefix=prefix)
    app.include_router(webhooks.webhooks_router, prefix=prefix)
    app.include_router(webhooks.reconcile_router, prefix=prefix)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "billing_core.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level=settings.log_level.lower(),
    )
