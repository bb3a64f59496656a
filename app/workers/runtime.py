"""
Worker composition root.

Builds the engine, the resilience components and the API clients from
Settings and tears them down again. Used by the queue worker CLI and by the
Celery tasks, each of which runs inside its own event loop.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine

from app.core.config import Settings
from app.core.http_client import HttpClientConfig, ResilientHttpClient
from app.core.rate_limiter import RateLimiter, RateLimiterConfig
from app.core.retry import RetryExecutor, RetryPolicy
from app.core.webhook_deduplicator import DeduplicatorConfig, WebhookDeduplicator
from app.db.database import SessionFactory, create_engine_from_settings, create_session_factory
from app.domain.jobs import JobContext
from app.domain.services.monitoring_service import ApiMonitor, MonitoringConfig
from app.domain.services.providers import OpenAIClient, PipedriveClient, RingoverClient
from app.domain.services.task_queue import AsyncTaskQueue, QueueConfig


@dataclass
class Runtime:
    engine: AsyncEngine
    session_factory: SessionFactory
    rate_limiter: RateLimiter
    monitor: ApiMonitor
    deduplicator: WebhookDeduplicator
    queue: AsyncTaskQueue
    http: ResilientHttpClient
    jobs: JobContext


@asynccontextmanager
async def build_runtime(
    settings: Settings,
    *,
    engine: AsyncEngine | None = None,
) -> AsyncIterator[Runtime]:
    owns_engine = engine is None
    engine = engine or create_engine_from_settings(settings)
    session_factory = create_session_factory(engine)

    rate_limiter = await RateLimiter.create(
        session_factory, RateLimiterConfig.from_settings(settings)
    )
    monitor = ApiMonitor(session_factory, MonitoringConfig.from_settings(settings))
    queue = AsyncTaskQueue(session_factory, QueueConfig.from_settings(settings))
    http = ResilientHttpClient(
        rate_limiter,
        retry_executor=RetryExecutor(RetryPolicy.from_settings(settings)),
        monitor=monitor,
        config=HttpClientConfig.from_settings(settings),
    )

    jobs = JobContext(
        queue=queue,
        settings=settings,
        ringover=RingoverClient(
            http,
            api_url=settings.RINGOVER_API_URL,
            api_key=settings.RINGOVER_API_KEY,
            max_recording_mb=settings.RINGOVER_MAX_RECORDING_MB,
        ),
        openai=OpenAIClient(
            http,
            api_url=settings.OPENAI_API_URL,
            api_key=settings.OPENAI_API_KEY,
            transcription_model=settings.OPENAI_TRANSCRIPTION_MODEL,
            chat_model=settings.OPENAI_CHAT_MODEL,
        ),
        pipedrive=PipedriveClient(
            http,
            api_url=settings.PIPEDRIVE_API_URL,
            api_token=settings.PIPEDRIVE_API_TOKEN,
        ),
    )

    try:
        yield Runtime(
            engine=engine,
            session_factory=session_factory,
            rate_limiter=rate_limiter,
            monitor=monitor,
            deduplicator=WebhookDeduplicator(
                session_factory, DeduplicatorConfig.from_settings(settings)
            ),
            queue=queue,
            http=http,
            jobs=jobs,
        )
    finally:
        await http.aclose()
        if owns_engine:
            await engine.dispose()
