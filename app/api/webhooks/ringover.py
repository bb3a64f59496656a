"""
Ringover Webhook Handler

Signed recording / voicemail notifications. Each event is authenticated,
deduplicated and turned into a ``download_recording`` task; the download,
transcription and CRM sync all happen in the queue worker.
"""
from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import AnyHttpUrl, BaseModel, Field, ValidationError

from app.api.dependencies.services import get_deduplicator, get_task_queue
from app.api.dependencies.webhook_auth import verify_ringover_signature
from app.core.exceptions import ErrorCode, ValidationException
from app.core.logging import get_correlation_id, get_logger
from app.core.webhook_deduplicator import WebhookDeduplicator
from app.domain.jobs import DOWNLOAD_RECORDING
from app.domain.services.task_queue import AsyncTaskQueue

logger = get_logger(__name__)

router = APIRouter()

RECORDING_TASK_PRIORITY = 5


class AudioJob(BaseModel):
    """What the download job needs from a recording/voicemail notification"""
    call_id: str = Field(min_length=1, max_length=100)
    recording_url: AnyHttpUrl
    duration: int = Field(ge=0)
    phone_number: str | None = None
    direction: str | None = None


def _parse_body(body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise ValidationException("Webhook body is not valid JSON")
    if not isinstance(payload, dict):
        raise ValidationException("Webhook body must be a JSON object")
    return payload


def normalize_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """
    Flatten Ringover's ``{"event": ..., "data": {...}}`` envelope.

    Fields already at the top level win over the ones inside ``data``.
    """
    data = payload.get("data")
    flat = dict(data) if isinstance(data, dict) else {}
    flat.update({key: value for key, value in payload.items() if key != "data"})
    if "event_type" not in flat and "event" in flat:
        flat["event_type"] = flat["event"]
    if "call_id" in flat and flat["call_id"] is not None:
        flat["call_id"] = str(flat["call_id"])
    return flat


async def _accept_audio_webhook(
    request: Request,
    body: bytes,
    webhook_type: str,
    url_field: str,
    deduplicator: WebhookDeduplicator,
    queue: AsyncTaskQueue,
) -> dict[str, Any] | JSONResponse:
    data = normalize_payload(_parse_body(body))
    correlation_id = getattr(request.state, "correlation_id", None) or get_correlation_id()

    dedup = await deduplicator.should_process(webhook_type, data, correlation_id)
    if not dedup.should_process:
        logger.info(
            "Duplicate Ringover webhook ignored",
            extra_data={
                "webhook_type": webhook_type,
                "deduplication_key": dedup.deduplication_key,
                "original_processed_at": dedup.original_processed_at,
            }
        )
        return {
            "success": True,
            "queued": False,
            "reason": "duplicate",
            "deduplication_key": dedup.deduplication_key,
        }

    try:
        job = AudioJob.model_validate({
            "call_id": data.get("call_id") or "",
            "recording_url": data.get(url_field) or data.get("recording_url") or "",
            "duration": data.get("duration"),
            "phone_number": data.get("phone_number") or data.get("contact_number"),
            "direction": data.get("direction"),
        })
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        ]
        await deduplicator.mark_failed(
            dedup.deduplication_key, f"Validation failed: {', '.join(errors)}"
        )
        return JSONResponse(
            status_code=422,
            content={
                "error": {
                    "code": ErrorCode.WEBHOOK_INVALID_PAYLOAD.value,
                    "message": "Invalid Ringover webhook payload",
                    "details": {"errors": errors},
                }
            },
        )

    try:
        task_id = await queue.enqueue(
            DOWNLOAD_RECORDING,
            {
                **job.model_dump(mode="json"),
                "deduplication_key": dedup.deduplication_key,
            },
            priority=RECORDING_TASK_PRIORITY,
            correlation_id=correlation_id,
        )
    except Exception as e:
        # release the key so Ringover's own retry is admitted
        await deduplicator.mark_failed(dedup.deduplication_key, str(e))
        raise

    logger.info(
        "Ringover webhook queued",
        extra_data={
            "webhook_type": webhook_type,
            "call_id": job.call_id,
            "task_id": task_id,
            "deduplication_key": dedup.deduplication_key,
        }
    )
    return {
        "success": True,
        "queued": True,
        "task_id": task_id,
        "deduplication_key": dedup.deduplication_key,
    }


@router.post(
    "/record-available",
    summary="Ringover recording available",
    description="Signed notification that a call recording can be downloaded.",
    responses={
        200: {"description": "Queued, or ignored as a duplicate"},
        401: {"description": "Missing or invalid X-Ringover-Signature"},
        422: {"description": "Payload is missing call_id, recording_url or duration"},
    },
)
async def record_available(
    request: Request,
    body: bytes = Depends(verify_ringover_signature),
    deduplicator: WebhookDeduplicator = Depends(get_deduplicator),
    queue: AsyncTaskQueue = Depends(get_task_queue),
):
    return await _accept_audio_webhook(
        request, body, "ringover_call", "recording_url", deduplicator, queue
    )


@router.post(
    "/voicemail-available",
    summary="Ringover voicemail available",
    description="Signed notification that a voicemail can be downloaded.",
    responses={
        200: {"description": "Queued, or ignored as a duplicate"},
        401: {"description": "Missing or invalid X-Ringover-Signature"},
        422: {"description": "Payload is missing call_id, voicemail_url or duration"},
    },
)
async def voicemail_available(
    request: Request,
    body: bytes = Depends(verify_ringover_signature),
    deduplicator: WebhookDeduplicator = Depends(get_deduplicator),
    queue: AsyncTaskQueue = Depends(get_task_queue),
):
    return await _accept_audio_webhook(
        request, body, "ringover_voicemail", "voicemail_url", deduplicator, queue
    )
