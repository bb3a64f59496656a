"""
Admin Endpoints - diagnostics and maintenance without direct DB access.

Four areas:
1. Task queue: stats, dead letters, manual requeue / delete, on-demand Ringover sync
2. Rate limit buckets: inspect and reset
3. Webhook deduplication: processing stats, manual release of a key
4. Outbound API monitoring per service
"""
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.dependencies.services import (
    get_api_monitor,
    get_app_settings,
    get_deduplicator,
    get_rate_limiter,
    get_task_queue,
)
from app.core.config import Settings
from app.core.logging import get_correlation_id, get_logger
from app.core.rate_limiter import RateLimiter
from app.core.webhook_deduplicator import WebhookDeduplicator
from app.domain.jobs import SYNC_RINGOVER_CALLS, build_sync_payload
from app.domain.services.monitoring_service import ApiMonitor
from app.domain.services.task_queue import AsyncTaskQueue

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])

_AUTH_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: {"description": "Missing API key"},
    403: {"description": "Wrong API key, or ADMIN_API_KEY not configured"},
}


# ─── Pydantic models ────────────────────────────────────────────────────────

class TaskTypeStats(BaseModel):
    pending: int = 0
    reserved: int = 0
    delayed: int = 0
    dead_letter: int = 0


class QueueStatsResponse(BaseModel):
    """Counts per task type plus the totals"""
    task_types: dict[str, TaskTypeStats]
    total: TaskTypeStats


class TaskResponse(BaseModel):
    id: int
    task_id: str
    task_type: str
    payload: dict[str, Any]
    priority: int
    attempts: int
    max_attempts: int
    retry_backoff_sec: int
    visible_at: str | None
    reserved_at: str | None
    dlq: bool
    error_reason: str | None
    correlation_id: str | None
    created_at: str | None


class RateLimitBucketsResponse(BaseModel):
    passthrough: bool = Field(
        description="True when the bucket tables are missing and nothing is limited"
    )
    buckets: list[dict[str, Any]]


class MarkFailedRequest(BaseModel):
    error: str = Field(min_length=1, max_length=2000)


class RingoverSyncRequest(BaseModel):
    window_minutes: Optional[int] = Field(
        default=None, ge=1, le=7 * 24 * 60,
        description="How far back to list calls; defaults to RINGOVER_SYNC_WINDOW_MINUTES",
    )


class RingoverSyncResponse(BaseModel):
    task_id: str
    batch_id: str
    start_date: str
    end_date: str


class MarkFailedResponse(BaseModel):
    deduplication_key: str
    released: bool


# ─── 1. Task queue ──────────────────────────────────────────────────────────

@router.get(
    "/queue/stats",
    response_model=QueueStatsResponse,
    summary="Task queue statistics",
    description="Pending, reserved, delayed and dead-lettered tasks per task type.",
    responses=_AUTH_RESPONSES,
)
async def get_queue_stats(
    queue: AsyncTaskQueue = Depends(get_task_queue),
) -> QueueStatsResponse:
    per_type = await queue.get_stats()
    total = TaskTypeStats()
    for counts in per_type.values():
        total.pending += counts["pending"]
        total.reserved += counts["reserved"]
        total.delayed += counts["delayed"]
        total.dead_letter += counts["dead_letter"]
    return QueueStatsResponse(
        task_types={task_type: TaskTypeStats(**counts) for task_type, counts in per_type.items()},
        total=total,
    )


@router.get(
    "/queue/dead-letters",
    response_model=list[TaskResponse],
    summary="Dead-lettered tasks",
    description="Tasks that exhausted their attempts, newest first.",
    responses=_AUTH_RESPONSES,
)
async def get_dead_letters(
    queue: AsyncTaskQueue = Depends(get_task_queue),
    task_type: Optional[str] = Query(default=None, description="Filter by task type"),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[dict[str, Any]]:
    return await queue.list_dead_letters(limit=limit, task_type=task_type)


@router.get(
    "/queue/tasks/{task_id}",
    response_model=TaskResponse,
    summary="Single task",
    responses={**_AUTH_RESPONSES, 404: {"description": "Task not found"}},
)
async def get_task(
    task_id: str,
    queue: AsyncTaskQueue = Depends(get_task_queue),
) -> dict[str, Any]:
    return await queue.get_task(task_id)


@router.post(
    "/queue/tasks/{task_id}/requeue",
    response_model=TaskResponse,
    summary="Requeue a dead-lettered task",
    description=(
        "Moves the task out of the dead-letter queue with a fresh attempt budget. "
        "Only works on tasks that are dead-lettered."
    ),
    responses={
        **_AUTH_RESPONSES,
        400: {"description": "Task is not dead-lettered"},
        404: {"description": "Task not found"},
    },
)
async def requeue_task(
    task_id: str,
    queue: AsyncTaskQueue = Depends(get_task_queue),
) -> dict[str, Any]:
    return await queue.requeue_dead_letter(task_id)


@router.delete(
    "/queue/tasks/{task_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a task",
    responses={**_AUTH_RESPONSES, 404: {"description": "Task not found"}},
)
async def delete_task(
    task_id: str,
    queue: AsyncTaskQueue = Depends(get_task_queue),
) -> None:
    if not await queue.delete_task(task_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Task {task_id} not found",
        )


@router.post(
    "/queue/sync/ringover",
    response_model=RingoverSyncResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a Ringover sync now",
    description=(
        "Queues the same sync run the hourly schedule does, under a fresh batch id. "
        "The worker lists the calls and queues a download for each recording."
    ),
    responses=_AUTH_RESPONSES,
)
async def queue_ringover_sync(
    body: Optional[RingoverSyncRequest] = None,
    queue: AsyncTaskQueue = Depends(get_task_queue),
    settings: Settings = Depends(get_app_settings),
) -> RingoverSyncResponse:
    window = (body.window_minutes if body else None) or settings.RINGOVER_SYNC_WINDOW_MINUTES
    payload = build_sync_payload(window)
    task_id = await queue.enqueue(SYNC_RINGOVER_CALLS, payload, correlation_id=get_correlation_id())
    logger.info(
        "Ringover sync queued from admin API",
        extra_data={"task_id": task_id, "batch_id": payload["batch_id"], "window_minutes": window}
    )
    return RingoverSyncResponse(task_id=task_id, **payload)


# ─── 2. Rate limits ─────────────────────────────────────────────────────────

@router.get(
    "/rate-limits",
    response_model=RateLimitBucketsResponse,
    summary="All rate limit buckets",
    responses=_AUTH_RESPONSES,
)
async def list_rate_limits(
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> RateLimitBucketsResponse:
    buckets = await rate_limiter.get_all_buckets()
    return RateLimitBucketsResponse(
        passthrough=await rate_limiter.probe(),
        buckets=buckets,
    )


@router.get(
    "/rate-limits/{key:path}",
    summary="Rate limit bucket status",
    description="Current tokens refilled to now. Does not consume or persist anything.",
    responses=_AUTH_RESPONSES,
)
async def get_rate_limit(
    key: str,
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> dict[str, Any]:
    return await rate_limiter.get_status(key)


@router.delete(
    "/rate-limits/{key:path}",
    summary="Reset a rate limit bucket",
    description="Drops the bucket so the next call starts at full capacity.",
    responses=_AUTH_RESPONSES,
)
async def reset_rate_limit(
    key: str,
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> dict[str, Any]:
    return {"key": key, "reset": await rate_limiter.reset(key)}


# ─── 3. Webhooks ────────────────────────────────────────────────────────────

@router.get(
    "/webhooks/stats",
    summary="Webhook processing statistics",
    description="Counts and processing times per webhook type and status.",
    responses=_AUTH_RESPONSES,
)
async def get_webhook_stats(
    deduplicator: WebhookDeduplicator = Depends(get_deduplicator),
    hours: int = Query(default=24, ge=1, le=24 * 30),
) -> list[dict[str, Any]]:
    return await deduplicator.get_stats(hours=hours)


@router.post(
    "/webhooks/{deduplication_key:path}/mark-failed",
    response_model=MarkFailedResponse,
    summary="Release a deduplication key",
    description=(
        "Marks the webhook as failed and removes its deduplication record so "
        "the next delivery of the same event is processed again."
    ),
    responses=_AUTH_RESPONSES,
)
async def mark_webhook_failed(
    deduplication_key: str,
    body: MarkFailedRequest,
    deduplicator: WebhookDeduplicator = Depends(get_deduplicator),
) -> MarkFailedResponse:
    released = await deduplicator.mark_failed(deduplication_key, body.error)
    logger.info(
        "Webhook key released by operator",
        extra_data={"deduplication_key": deduplication_key, "released": released},
    )
    return MarkFailedResponse(deduplication_key=deduplication_key, released=released)


# ─── 4. Monitoring ──────────────────────────────────────────────────────────

@router.get(
    "/monitoring/services",
    summary="Outbound API metrics per service",
    description="Request counts, error rate and latency per external service.",
    responses=_AUTH_RESPONSES,
)
async def get_service_metrics(
    monitor: ApiMonitor = Depends(get_api_monitor),
    hours: int = Query(default=1, ge=1, le=24 * 7),
) -> dict[str, dict[str, Any]]:
    return await monitor.get_service_metrics(hours=hours)
