"""
Domain Services
"""
from app.domain.services.monitoring_service import ApiMonitor, MonitoringConfig
from app.domain.services.task_queue import AsyncTaskQueue, QueueConfig, ReservedTask

__all__ = [
    "ApiMonitor",
    "MonitoringConfig",
    "AsyncTaskQueue",
    "QueueConfig",
    "ReservedTask",
]
