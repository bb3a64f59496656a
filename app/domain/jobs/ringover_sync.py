"""
Hourly Ringover sync: pull the calls of the last window and feed every call
with a recording into the download stage.

All calls of one run share a ``batch_id``; each call gets its own
correlation id, so a single call can be followed through download,
transcription and CRM sync while the batch ties the run together.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.core.logging import generate_correlation_id, get_logger
from app.core.time_utils import utcnow
from app.domain.jobs.base import JobContext, require, validate_payload
from app.domain.jobs.recordings import DOWNLOAD_RECORDING

logger = get_logger(__name__)

SYNC_RINGOVER_CALLS = "sync_ringover_calls"

# stops a listing whose offset is ignored upstream from paging forever
MAX_PAGES = 50

_DIRECTIONS = {"in": "inbound", "out": "outbound"}


class SyncRingoverCallsPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    batch_id: str = Field(min_length=1, max_length=64)
    start_date: datetime
    end_date: datetime | None = None
    correlation_id: str | None = None


def build_sync_payload(
    window_minutes: int,
    *,
    now: datetime | None = None,
    batch_id: str | None = None,
) -> dict[str, Any]:
    """Payload for one sync run covering the ``window_minutes`` before ``now``"""
    end = now or utcnow()
    return {
        "batch_id": batch_id or uuid.uuid4().hex,
        "start_date": (end - timedelta(minutes=window_minutes)).isoformat(),
        "end_date": end.isoformat(),
    }


def _ringover_timestamp(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=0).isoformat() + "Z"


def _seconds(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


def map_call(call: dict[str, Any]) -> dict[str, Any] | None:
    """
    Download payload for a listed call, or None when there is nothing to fetch.

    The listing is not consistent about field names, so each field falls
    back to its older spelling.
    """
    call_id = call.get("call_id") or call.get("id")
    recording_url = call.get("recording_url") or call.get("recording")
    if not call_id or not recording_url:
        return None

    direction = call.get("direction") or call.get("type")
    duration = call.get("incall_duration") or call.get("total_duration") or 0
    return {
        "call_id": str(call_id),
        "recording_url": recording_url,
        "phone_number": call.get("from_number") or call.get("caller_number"),
        "direction": _DIRECTIONS.get(direction, direction),
        "duration": _seconds(duration),
    }


class SyncRingoverCallsJob:
    def __init__(self, context: JobContext):
        self.context = context
        self.ringover = require(context.ringover, "Ringover")
        self.page_size = context.settings.RINGOVER_SYNC_PAGE_SIZE

    async def handle(self, payload: dict[str, Any]) -> None:
        data = validate_payload(SyncRingoverCallsPayload, SYNC_RINGOVER_CALLS, payload)

        # every page is listed before the first enqueue
        calls = await self._list_calls(data)

        enqueued = 0
        skipped = 0
        seen: set[str] = set()
        for call in calls:
            mapped = map_call(call)
            if mapped is None or mapped["call_id"] in seen:
                skipped += 1
                continue
            seen.add(mapped["call_id"])

            correlation_id = generate_correlation_id()
            await self.context.queue.enqueue(
                DOWNLOAD_RECORDING,
                {**mapped, "batch_id": data.batch_id},
                correlation_id=correlation_id,
            )
            logger.info(
                "Call synced from Ringover",
                extra_data={
                    "call_id": mapped["call_id"],
                    "batch_id": data.batch_id,
                    "correlation_id": correlation_id,
                }
            )
            enqueued += 1

        logger.info(
            "Ringover sync finished",
            extra_data={
                "batch_id": data.batch_id,
                "calls_listed": len(calls),
                "recordings_enqueued": enqueued,
                "calls_skipped": skipped,
            }
        )

    async def _list_calls(self, data: SyncRingoverCallsPayload) -> list[dict[str, Any]]:
        calls: list[dict[str, Any]] = []
        previous_first = None
        for page in range(MAX_PAGES):
            body = await self.ringover.get_calls(
                start_date=_ringover_timestamp(data.start_date),
                end_date=_ringover_timestamp(data.end_date) if data.end_date else None,
                limit=self.page_size,
                offset=page * self.page_size,
                correlation_id=data.correlation_id,
                batch_id=data.batch_id,
            )
            listed = body.get("call_list") or body.get("data") or []
            if not listed:
                break

            first = listed[0].get("call_id") or listed[0].get("id")
            if first is not None and first == previous_first:
                logger.warning(
                    "Ringover ignored the listing offset, stopping pagination",
                    extra_data={"batch_id": data.batch_id, "page": page}
                )
                break
            previous_first = first

            calls.extend(listed)
            if len(listed) < self.page_size:
                break
        return calls
