"""
Request-scoped access to the components built by ``create_app``.

Everything lives on ``app.state``; nothing here reaches for module globals, so
tests can build an app around their own engine and settings.
"""
from fastapi import Request

from app.core.config import Settings
from app.core.rate_limiter import RateLimiter
from app.core.webhook_deduplicator import WebhookDeduplicator
from app.domain.services.monitoring_service import ApiMonitor
from app.domain.services.task_queue import AsyncTaskQueue


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_task_queue(request: Request) -> AsyncTaskQueue:
    return request.app.state.task_queue


def get_deduplicator(request: Request) -> WebhookDeduplicator:
    return request.app.state.deduplicator


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_api_monitor(request: Request) -> ApiMonitor:
    return request.app.state.api_monitor
