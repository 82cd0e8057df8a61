"""
Main FastAPI application.

WHY: This is the entry point for the billing engine. It configures
middleware, routes, exception handlers and the background scheduler.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from billing_engine.core.config import settings
from billing_engine.core.exceptions import AppException
from billing_engine.core.exception_handlers import (
    app_exception_handler,
    validation_exception_handler,
    http_exception_handler,
    generic_exception_handler,
)
from billing_engine.middleware import RequestContextMiddleware
from billing_engine.api import billing, invoices, payments
from billing_engine.services.scheduler import start_scheduler, shutdown_scheduler, get_scheduler_status


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Start and stop the billing job scheduler with the application.

    WHY: Billing, dunning and overdue jobs run in-process. Disable with
    BILLING_SCHEDULER_ENABLED=false when an external trigger calls the
    /api/billing/jobs endpoints instead.
    """
    if settings.BILLING_SCHEDULER_ENABLED:
        await start_scheduler()
    try:
        yield
    finally:
        await shutdown_scheduler()


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    WHY: Factory pattern allows easier testing with different configurations.

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Subscription billing, invoicing and dunning API",
        version=settings.VERSION,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )

    # Register exception handlers
    # WHY: Consistent {error, message, status_code, details} bodies, with
    # no provider responses or SQL leaking to clients
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    # Request IDs for log correlation
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

        WHY: Load balancers and monitoring need a cheap liveness check.
        Scheduler state is included so a stalled billing loop is visible.
        """
        return {
            "status": "healthy",
            "version": settings.VERSION,
            "scheduler": get_scheduler_status(),
        }

    @app.get("/", tags=["root"])
    async def root() -> dict:
        """Root endpoint with API information."""
        return {
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "docs": "/api/docs",
        }

    app.include_router(invoices.router, prefix=settings.API_V1_PREFIX)
    app.include_router(payments.router, prefix=settings.API_V1_PREFIX)
    app.include_router(payments.webhooks_router, prefix=settings.API_V1_PREFIX)
    app.include_router(billing.router, prefix=settings.API_V1_PREFIX)

    return app


app = create_app()
