"""
Main FastAPI application entry point.

This module sets up the FastAPI app with the audit pipeline, the audit
middleware, routes and lifecycle events.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .api import admin_router, healthz_router, metrics_router
from .config import Settings, get_settings
from .core.exceptions import AuditPipelineException
from .core.middleware import AuditMiddleware
from .core.pipeline import AuditPipeline


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging for the application."""
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
    )

    logging.getLogger("watchfiles").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def create_lifespan_handler(pipeline: AuditPipeline) -> Any:
    """Create a lifespan handler bound to the pipeline."""
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        FastAPI lifespan context manager.

        Opens the queue and starts the consumer, health and sweep loops;
        on shutdown flushes pending submissions and stops them.
        """
        logger = structlog.get_logger(__name__)
        logger.info("Starting audit pipeline service", version=app.version)

        await pipeline.start()

        try:
            logger.info("Audit pipeline service started successfully")
            yield
        finally:
            logger.info("Shutting down audit pipeline service")
            await pipeline.stop()
            logger.info("Audit pipeline service shutdown complete")

    return lifespan


async def audit_exception_handler(request: Request, exc: AuditPipelineException) -> JSONResponse:
    """Handle audit pipeline exceptions."""
    logger = structlog.get_logger(__name__)
    logger.error(
        "Audit pipeline exception occurred",
        error=exc.message,
        status_code=exc.status_code,
        path=request.url.path,
        method=request.method,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.error_code,
            "message": exc.message,
            "details": exc.details,
        },
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger = structlog.get_logger(__name__)
    logger.error(
        "Unexpected exception occurred",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
            "details": {},
        },
    )


def create_app(
    settings: Optional[Settings] = None,
    pipeline: Optional[AuditPipeline] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Settings to use; loaded from config and env when omitted
        pipeline: Prebuilt pipeline; built from settings when omitted
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    pipeline = pipeline if pipeline is not None else AuditPipeline(settings)

    app = FastAPI(
        title="auditpipe",
        description="Compliance audit pipeline",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=create_lifespan_handler(pipeline),
    )
    app.state.pipeline = pipeline

    app.add_middleware(AuditMiddleware, capture=pipeline.capture)

    app.add_exception_handler(AuditPipelineException, audit_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(admin_router, tags=["admin"])
    app.include_router(metrics_router, tags=["metrics"])
    app.include_router(healthz_router, tags=["health"])

    @app.get("/", include_in_schema=False)
    async def root() -> Dict[str, str]:
        """Root endpoint with service information."""
        return {
            "service": "auditpipe",
            "version": app.version,
            "description": "Compliance audit pipeline",
            "docs": "/docs",
        }

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "auditpipe.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
