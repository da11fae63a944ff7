"""SessionGuard Backend - FastAPI Application Factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST

from sessionguard.api import api_router
from sessionguard.api.health import router as health_router
from sessionguard.container import SecurityComponents, build_security_components
from sessionguard.core import metrics
from sessionguard.core.config import Settings, get_settings
from sessionguard.core.database import dispose_engine
from sessionguard.core.logging import get_logger, setup_logging
from sessionguard.middleware import SecurityHeadersMiddleware, SecurityMiddleware

logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    security: SecurityComponents = app.state.security
    settings = security.settings

    setup_logging(level=settings.log_level, format_type=settings.log_format)
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    for warning in settings.check_security_configuration():
        logger.warning(f"SECURITY: {warning}")

    await security.maintenance.start()

    yield

    logger.info("Shutting down...")
    await security.maintenance.stop()
    if security.alert_subscriber is not None:
        await security.alert_subscriber.drain()
    await dispose_engine()


def create_app(
    security: SecurityComponents | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        security: Prebuilt engine (tests pass one over an in-memory store)
        settings: Settings used when ``security`` is not given
    """
    security = security or build_security_components(settings or get_settings())
    settings = security.settings

    app = FastAPI(
        title=settings.app_name,
        description="API security and session-integrity engine",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )
    app.state.security = security

    # Starlette runs middleware in reverse order of registration
    app.add_middleware(SecurityMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)

    # CORS must be outermost so 401/403/429 responses carry CORS headers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept", "X-Request-ID"],
    )

    if settings.enable_metrics:
        from prometheus_fastapi_instrumentator import Instrumentator

        # HTTP metrics share the engine's registry so /metrics renders both
        Instrumentator(
            excluded_handlers=["/health", "/metrics"],
            registry=metrics.registry,
        ).instrument(app)

        @app.get("/metrics", include_in_schema=False)
        async def prometheus_metrics() -> Response:
            return Response(content=metrics.render_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(health_router)
    app.include_router(api_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with API information."""
        return {"name": settings.app_name, "version": settings.app_version}

    return app
