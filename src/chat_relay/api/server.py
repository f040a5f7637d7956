"""FastAPI server for chat-relay."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config.settings import Settings, get_settings
from ..errors import RelayError
from ..logging import configure_logging, get_logger
from ..metrics import MetricsMiddleware, get_metrics_response
from ..middleware import (
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    RequestSizeLimitMiddleware,
    SecurityHeadersMiddleware,
)
from .chat import router as chat_router
from .dependencies import AppServices, build_services
from .usage import router as usage_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings: Settings = app.state.settings
    services: Optional[AppServices] = getattr(app.state, "services", None)
    owned = services is None

    # Startup
    if owned:
        services = await build_services(settings)
        app.state.services = services
    services.rate_guard.start_sweeper(settings.rate_limit_sweep_seconds)
    logger.info(
        "relay_started",
        vendors=services.factory.configured_vendors(),
        storage="postgres" if services.database is not None else "memory",
        rate_limit_store=type(services.rate_guard.store).__name__,
    )

    yield

    # Shutdown
    if owned:
        await services.aclose()
    else:
        await services.rate_guard.stop_sweeper()
    logger.info("relay_stopped")


async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=exc.headers)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", error_type=type(exc).__name__, path=request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(settings: Optional[Settings] = None, services: Optional[AppServices] = None) -> FastAPI:
    """Build the application.

    Args:
        settings: Explicit settings; defaults to the services' settings or the environment.
        services: Prebuilt collaborators. When given, the lifespan does not connect
            or close storage itself.
    """
    settings = settings or (services.settings if services is not None else get_settings())
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Chat Relay API",
        description="Streaming multi-provider chat completion relay",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    if services is not None:
        app.state.services = services

    # Added innermost first; RequestIDMiddleware ends up outermost.
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestSizeLimitMiddleware, max_bytes=settings.max_request_bytes)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_origins != ["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    app.add_exception_handler(RelayError, relay_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(chat_router, prefix="/api")
    app.include_router(usage_router, prefix="/api")

    @app.get("/health")
    async def health(request: Request):
        """Quick liveness health check endpoint."""
        return request.app.state.services.health.quick_health()

    @app.get("/ready")
    async def ready(request: Request):
        """Readiness check endpoint with component checks."""
        report = await request.app.state.services.health.readiness_health()
        return JSONResponse(status_code=200 if report["status"] == "ready" else 503, content=report)

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return get_metrics_response(settings.enable_metrics)

    return app


app = create_app()
