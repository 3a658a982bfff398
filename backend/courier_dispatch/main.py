"""
FastAPI application entry point.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from courier_dispatch.api.routes import api_router
from courier_dispatch.core.config import settings
from courier_dispatch.core.database import AsyncSessionLocal, check_db_connection, close_db, init_db
from courier_dispatch.core.exceptions import register_exception_handlers
from courier_dispatch.core.logging import RequestLoggingMiddleware, setup_logging
from courier_dispatch.core.metrics import PrometheusMiddleware, metrics_endpoint, update_service_health
from courier_dispatch.core.redis import redis_client
from courier_dispatch.core.sentry import init_sentry
from courier_dispatch.services.container import build_dispatch_services

# Setup logging
setup_logging(
    level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
    json_format=not settings.DEBUG,
)

logger = logging.getLogger(__name__)

# Initialize Sentry (if configured)
init_sentry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting application...")
    settings.validate_production_settings()
    await init_db()
    await _check_external_services()

    redis = await redis_client.get_client() if settings.GEO_INDEX_BACKEND == "redis" else None
    services = build_dispatch_services(settings, AsyncSessionLocal, redis=redis)
    app.state.services = services

    if settings.SWEEPER_MODE == "inline":
        services.sweeper.start(
            interval_seconds=settings.SWEEPER_INTERVAL_SECONDS,
            reconcile_interval_seconds=settings.RECONCILE_INTERVAL_SECONDS,
        )

    logger.info("Application started successfully")
    yield

    logger.info("Shutting down application...")
    await services.sweeper.stop()
    await services.publisher.close()
    await close_db()
    await redis_client.close()
    logger.info("Application shutdown complete")


async def _check_external_services():
    """Check and report health of external services on startup."""
    db_healthy = await check_db_connection()
    update_service_health("database", db_healthy)
    if db_healthy:
        logger.info("Database: healthy")
    else:
        logger.warning("Database: unhealthy")

    if settings.GEO_INDEX_BACKEND == "redis":
        redis_healthy = await redis_client.health_check()
        update_service_health("redis", redis_healthy)
        if redis_healthy:
            logger.info("Redis service: healthy")
        else:
            logger.warning("Redis service: unhealthy")


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Order to delivery partner assignment service",
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        docs_url=f"{settings.API_V1_PREFIX}/docs",
        redoc_url=f"{settings.API_V1_PREFIX}/redoc",
        lifespan=lifespan,
    )

    # Standardized exception handlers (must be registered first)
    register_exception_handlers(app)

    if settings.METRICS_ENABLED:
        app.add_middleware(PrometheusMiddleware)

    app.add_middleware(RequestLoggingMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix=settings.API_V1_PREFIX)

    # Metrics endpoint (outside API prefix)
    if settings.METRICS_ENABLED:
        app.add_api_route(
            settings.METRICS_PATH,
            metrics_endpoint,
            methods=["GET"],
            include_in_schema=False,
        )

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": f"{settings.API_V1_PREFIX}/docs",
            "metrics": settings.METRICS_PATH if settings.METRICS_ENABLED else None,
        }

    logger.info(f"Application configured: {settings.APP_NAME} v{settings.APP_VERSION}")

    return app


app = create_app()
