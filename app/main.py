"""
Call Sync - Main FastAPI Application

Run with:
    uvicorn app.main:create_app --factory
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine

from app.core.config import Settings, get_settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.core.rate_limiter import RateLimiter, RateLimiterConfig
from app.core.webhook_deduplicator import DeduplicatorConfig, WebhookDeduplicator
from app.api.routes import router as api_router
from app.db.database import create_all_tables, create_engine_from_settings, create_session_factory
from app.domain.services.health_service import check_readiness
from app.domain.services.monitoring_service import ApiMonitor, MonitoringConfig
from app.domain.services.task_queue import AsyncTaskQueue, QueueConfig

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {
        "name": "webhooks",
        "description": "Signed Ringover notifications for new recordings and voicemails.",
    },
    {
        "name": "admin",
        "description": "Queue, rate limit, webhook and monitoring diagnostics (X-Admin-API-Key).",
    },
    {"name": "Health", "description": "Liveness and readiness probes."},
]


def create_app(
    settings: Settings | None = None,
    *,
    engine: AsyncEngine | None = None,
) -> FastAPI:
    """
    Build the application around one engine.

    Components are created here rather than in the lifespan so they are on
    ``app.state`` even when the app is driven without lifespan events. An
    engine passed in by the caller is not disposed on shutdown.
    """
    settings = settings or get_settings()

    setup_logging(
        level="DEBUG" if settings.DEBUG else "INFO",
        json_format=not settings.DEBUG,
        app_name=settings.APP_NAME
    )

    owns_engine = engine is None
    engine = engine or create_engine_from_settings(settings)
    session_factory = create_session_factory(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
        await create_all_tables(engine)
        logger.info("Database tables initialized")
        await app.state.rate_limiter.probe()
        yield
        logger.info("Shutting down application")
        if owns_engine:
            # avoid connection pool exhaustion across restarts
            await engine.dispose()
            logger.info("Database connections disposed")

    app = FastAPI(
        title=settings.APP_NAME,
        version="1.0.0",
        description=(
            "Receives Ringover call notifications, transcribes and analyzes the "
            "recordings with OpenAI and records the result on Pipedrive deals."
        ),
        openapi_tags=_OPENAPI_TAGS,
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.rate_limiter = RateLimiter(
        session_factory, RateLimiterConfig.from_settings(settings)
    )
    app.state.deduplicator = WebhookDeduplicator(
        session_factory, DeduplicatorConfig.from_settings(settings)
    )
    app.state.task_queue = AsyncTaskQueue(session_factory, QueueConfig.from_settings(settings))
    app.state.api_monitor = ApiMonitor(session_factory, MonitoringConfig.from_settings(settings))

    setup_middleware(app, settings)
    setup_exception_handlers(app)

    allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)
    if allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allowed_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
            allow_headers=["Content-Type", "X-Correlation-ID", "X-Admin-API-Key"],
        )

    app.include_router(api_router, prefix="/api")

    @app.get(
        "/health",
        summary="Liveness probe",
        description=(
            "Cheap check that the process is up. Does not touch dependencies, "
            "so a database outage never triggers a restart."
        ),
        tags=["Health"],
    )
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get(
        "/health/ready",
        summary="Readiness probe",
        description=(
            "Checks the database, the rate limit tables and the Celery broker. "
            "Returns 200 with status=healthy, or 503 with status=degraded."
        ),
        responses={
            200: {
                "description": "All dependencies are available",
                "content": {
                    "application/json": {
                        "example": {
                            "status": "healthy",
                            "db": "ok",
                            "rate_limiter": "ok",
                            "celery": "ok",
                        }
                    }
                },
            },
            503: {
                "description": "At least one dependency is unavailable",
                "content": {
                    "application/json": {
                        "example": {
                            "status": "degraded",
                            "db": "ok",
                            "rate_limiter": "passthrough",
                            "celery": "ok",
                        }
                    }
                },
            },
        },
        tags=["Health"],
    )
    async def readiness_check() -> JSONResponse:
        result = await check_readiness(
            app.state.session_factory,
            app.state.rate_limiter,
            settings.CELERY_BROKER_URL,
        )
        status_code = 200 if result["status"] == "healthy" else 503
        return JSONResponse(content=result, status_code=status_code)

    return app
