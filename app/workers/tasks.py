"""
Celery Tasks

Periodic maintenance, the hourly Ringover sync, and a beat-driven drain of
the async task queue for deployments that run Celery beat instead of a
dedicated queue worker process.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager

from app.workers.celery_app import celery_app
from app.core.config import get_settings
from app.core.logging import get_correlation_id, get_logger, set_correlation_id
from app.domain.jobs import SYNC_RINGOVER_CALLS, build_job_registry, build_sync_payload
from app.workers.queue_worker import QueueWorker
from app.workers.runtime import build_runtime

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="app.workers.tasks.process_async_tasks")
def process_async_tasks(max_tasks: int | None = None) -> dict:
    """Drain up to ``max_tasks`` visible tasks from the queue"""
    settings = get_settings()
    limit = max_tasks or settings.QUEUE_DRAIN_BATCH_SIZE

    async def _process() -> dict:
        async with build_runtime(settings) as runtime:
            worker = QueueWorker(
                runtime.queue,
                build_job_registry(),
                runtime.jobs,
                poll_interval_seconds=settings.QUEUE_POLL_INTERVAL_SECONDS,
            )
            handled = await worker.drain(limit)
            return {"handled": handled, **worker.stats()}

    result = run_async(_process())
    if result["handled"]:
        logger.info("Async task batch processed", extra_data=result)
    return result


@celery_app.task(name="app.workers.tasks.sync_ringover_calls")
def sync_ringover_calls() -> dict:
    """Queue one Ringover sync run over the last window, under a fresh batch id"""
    settings = get_settings()

    async def _schedule() -> dict:
        payload = build_sync_payload(settings.RINGOVER_SYNC_WINDOW_MINUTES)
        async with build_runtime(settings) as runtime:
            task_id = await runtime.queue.enqueue(
                SYNC_RINGOVER_CALLS,
                payload,
                correlation_id=get_correlation_id(),
            )
        return {"task_id": task_id, "batch_id": payload["batch_id"]}

    result = run_async(_schedule())
    logger.info("Ringover sync scheduled", extra_data=result)
    return result


@celery_app.task(name="app.workers.tasks.cleanup_rate_limit_buckets")
def cleanup_rate_limit_buckets() -> int:
    """Delete rate-limit buckets untouched for longer than the cleanup interval"""

    async def _cleanup() -> int:
        async with build_runtime(get_settings()) as runtime:
            return await runtime.rate_limiter.cleanup()

    return run_async(_cleanup())


@celery_app.task(name="app.workers.tasks.cleanup_webhook_deduplication")
def cleanup_webhook_deduplication() -> dict:
    """Delete expired dedup records and old webhook processing logs"""

    async def _cleanup() -> dict:
        async with build_runtime(get_settings()) as runtime:
            return await runtime.deduplicator.cleanup()

    return run_async(_cleanup())


@celery_app.task(name="app.workers.tasks.cleanup_api_monitoring")
def cleanup_api_monitoring(days: int | None = None) -> int:
    """Delete monitoring rows past retention"""

    async def _cleanup() -> int:
        async with build_runtime(get_settings()) as runtime:
            return await runtime.monitor.cleanup(days)

    return run_async(_cleanup())
