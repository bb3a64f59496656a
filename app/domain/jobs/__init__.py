"""
Background jobs run by the queue worker.
"""
from app.domain.jobs.base import JobContext, JobHandler, JobRegistry, validate_payload
from app.domain.jobs.crm_sync import CrmSyncJob
from app.domain.jobs.recordings import (
    CRM_SYNC,
    DOWNLOAD_RECORDING,
    TRANSCRIBE_RECORDING,
    DownloadRecordingJob,
    TranscribeRecordingJob,
)
from app.domain.jobs.ringover_sync import SYNC_RINGOVER_CALLS, SyncRingoverCallsJob, build_sync_payload


def build_job_registry() -> JobRegistry:
    """Registry with every job this service knows how to run"""
    registry = JobRegistry()
    registry.register(SYNC_RINGOVER_CALLS, SyncRingoverCallsJob)
    registry.register(DOWNLOAD_RECORDING, DownloadRecordingJob)
    registry.register(TRANSCRIBE_RECORDING, TranscribeRecordingJob)
    registry.register(CRM_SYNC, CrmSyncJob)
    return registry


__all__ = [
    "CRM_SYNC",
    "DOWNLOAD_RECORDING",
    "SYNC_RINGOVER_CALLS",
    "TRANSCRIBE_RECORDING",
    "JobContext",
    "JobHandler",
    "JobRegistry",
    "build_job_registry",
    "build_sync_payload",
    "validate_payload",
]
