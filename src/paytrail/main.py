"""
Application wiring.

Configures structlog for the whole process and builds a FastAPI app with the
request boundary middleware, error handlers and the health and metrics routes.
Run with ``uvicorn paytrail.main:create_app --factory``.
"""

import logging
import sys
from contextlib import asynccontextmanager
from logging.handlers import TimedRotatingFileHandler
from typing import Any, AsyncGenerator, Dict, List, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.types import ASGIApp

from . import __version__
from .api import CorrelationMiddleware, healthz_router, metrics_router
from .config import Settings, get_settings
from .core.boundary import BoundaryEntryHandler, IdentityProvider
from .core.exceptions import PayTrailException
from .core.metrics import MetricsCollector, get_metrics_collector
from .core.serializer import MaskingEventProcessor, build_serializer

AUDIT_LOGGER_NAME = "paytrail.audit"

# Marks handlers installed here so reconfiguration replaces them
_HANDLER_MARKER = "_paytrail_handler"


def configure_audit_logging(settings: Settings) -> logging.Logger:
    """Give the audit logger its own sink, detached from the root handlers."""
    audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
    for handler in list(audit_logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            audit_logger.removeHandler(handler)
            handler.close()

    handler: logging.Handler
    if settings.log.audit_log_path is not None:
        settings.log.audit_log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = TimedRotatingFileHandler(
            settings.log.audit_log_path,
            when="midnight",
            backupCount=settings.log.audit_retention_days,
            encoding="utf-8",
        )
    else:
        handler = logging.StreamHandler(sys.stderr)

    handler.setFormatter(logging.Formatter("%(message)s"))
    setattr(handler, _HANDLER_MARKER, True)
    audit_logger.addHandler(handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False
    return audit_logger


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure structured logging for the application."""
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper())

    # Configure stdlib logging but silence watchfiles spam
    logging.basicConfig(format="%(message)s", level=level, stream=sys.stdout)
    logging.getLogger().setLevel(level)
    logging.getLogger("watchfiles").setLevel(logging.WARNING)

    configure_audit_logging(settings)

    processors: List[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    # Final processors hold their masking engine before structlog routes anything through them
    if settings.log.json_format:
        processors.append(build_serializer(settings))
    else:
        processors.extend(
            [
                MaskingEventProcessor(),
                structlog.dev.ConsoleRenderer(exception_formatter=structlog.dev.plain_traceback),
            ]
        )

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


class PayTrailApp(FastAPI):
    """
    FastAPI application with the request boundary around the whole middleware
    stack, ``ServerErrorMiddleware`` included: unhandled-error responses and
    their log records still see the request context.
    """

    def __init__(
        self,
        *args: Any,
        boundary: Optional[BoundaryEntryHandler] = None,
        boundary_metrics: Optional[MetricsCollector] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.boundary = boundary
        self.boundary_metrics = boundary_metrics

    def build_middleware_stack(self) -> ASGIApp:
        stack = super().build_middleware_stack()
        if self.boundary is None:
            return stack
        return CorrelationMiddleware(stack, handler=self.boundary, metrics=self.boundary_metrics)


def create_lifespan_handler(settings: Settings) -> Any:
    """Create a lifespan handler with access to settings."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger = structlog.get_logger(__name__)
        logger.info(
            "Starting PayTrail instrumented service",
            service=settings.service_name,
            environment=settings.environment,
            version=app.version,
        )
        try:
            yield
        finally:
            app.state.metrics.update_uptime()
            logger.info("PayTrail instrumented service shutdown complete")

    return lifespan


def create_app(
    settings: Optional[Settings] = None,
    identity_provider: Optional[IdentityProvider] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Settings to use instead of the cached process settings
        identity_provider: Resolver for the authenticated user of a request
    """
    settings = settings or get_settings()

    configure_logging(settings)

    metrics = get_metrics_collector()
    boundary = (
        BoundaryEntryHandler(settings.correlation, identity_provider=identity_provider)
        if settings.correlation.enabled
        else None
    )

    app = PayTrailApp(
        title="PayTrail",
        description="Correlated, masked operation logging for transaction services",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=create_lifespan_handler(settings),
        boundary=boundary,
        boundary_metrics=metrics,
    )
    app.state.settings = settings
    app.state.metrics = metrics

    @app.exception_handler(PayTrailException)
    async def paytrail_exception_handler(request: Request, exc: PayTrailException) -> JSONResponse:
        """Handle custom PayTrail exceptions."""
        logger = structlog.get_logger(__name__)
        logger.error(
            "PayTrail exception occurred",
            error=str(exc),
            status_code=exc.status_code,
            path=request.url.path,
            method=request.method,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.error_code,
                "message": str(exc),
                "details": exc.details,
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger = structlog.get_logger(__name__)
        logger.error(
            "Unexpected exception occurred",
            error_type=type(exc).__name__,
            path=request.url.path,
            method=request.method,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    app.include_router(metrics_router, tags=["metrics"])
    app.include_router(healthz_router, tags=["health"])

    @app.get("/", include_in_schema=False)
    async def root() -> Dict[str, str]:
        """Root endpoint with service information."""
        return {
            "service": settings.service_name,
            "version": app.version,
            "docs": "/docs",
        }

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "paytrail.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=settings.debug,
    )
