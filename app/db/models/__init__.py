"""
Database Models
"""
from app.db.models.async_task import AsyncTask
from app.db.models.rate_limit import RateLimitBucket, RateLimitConfig
from app.db.models.webhook_deduplication import (
    WebhookDeduplication,
    WebhookProcessingLog,
    WebhookProcessingStatus,
)
from app.db.models.api_monitoring import ApiMonitoringRecord

__all__ = [
    "AsyncTask",
    "RateLimitBucket",
    "RateLimitConfig",
    "WebhookDeduplication",
    "WebhookProcessingLog",
    "WebhookProcessingStatus",
    "ApiMonitoringRecord",
]
