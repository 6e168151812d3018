"""
Main FastAPI application.

WHY: Entry point for the ledger API. Wires exception handlers, middleware,
routers and the reconciliation scheduler.
"""

import logging

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from quota_ledger.api import billing, partners, workspace
from quota_ledger.core.config import settings
from quota_ledger.core.exception_handlers import (
    app_exception_handler,
    generic_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from quota_ledger.core.exceptions import AppException
from quota_ledger.middleware import RequestContextMiddleware, RequestIdLogFilter
from quota_ledger.services.scheduler import (
    get_scheduler_status,
    shutdown_scheduler,
    start_scheduler,
)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s"


def configure_logging() -> None:
    """
    Root logging with the request id on every line.
    """
    logging.basicConfig(level=settings.LOG_LEVEL.upper(), format=LOG_FORMAT)
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RequestIdLogFilter) for f in handler.filters):
            handler.addFilter(RequestIdLogFilter())


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    WHY: Factory pattern lets tests build an app without side effects
    beyond the scheduler, which is gated on SCHEDULER_ENABLED.

    Returns:
        Configured FastAPI application instance
    """
    configure_logging()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Hierarchical storage quota ledger and provisioning API",
        version=settings.VERSION,
        docs_url=f"{settings.API_V1_PREFIX}/docs",
        redoc_url=f"{settings.API_V1_PREFIX}/redoc",
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    )

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

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
        """Liveness plus scheduler state; does not touch the database."""
        return {
            "status": "healthy",
            "version": settings.VERSION,
            "scheduler": get_scheduler_status(),
        }

    @app.on_event("startup")
    async def startup_event():
        if settings.SCHEDULER_ENABLED:
            await start_scheduler()

    @app.on_event("shutdown")
    async def shutdown_event():
        await shutdown_scheduler()

    app.include_router(partners.router, prefix=settings.API_V1_PREFIX)
    app.include_router(workspace.router, prefix=settings.API_V1_PREFIX)
    app.include_router(billing.router, prefix=settings.API_V1_PREFIX)
    app.include_router(billing.webhooks_router, prefix=settings.API_V1_PREFIX)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "quota_ledger.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="info" if settings.DEBUG else "warning",
    )
