"""
CRM sync job - pushes an analysed call into Pipedrive as a deal with a note.
"""
from __future__ import annotations

from typing import Any

from pydantic import Field

from app.core.logging import get_logger
from app.domain.jobs.base import JobContext, require, validate_payload
from app.domain.jobs.recordings import CRM_SYNC, CallMetadata

logger = get_logger(__name__)


class CrmSyncPayload(CallMetadata):
    summary: str = ""
    sentiment: str | None = None
    keywords: list[str] = Field(default_factory=list)


def build_note(data: CrmSyncPayload) -> str:
    lines = [f"Call {data.call_id}"]
    if data.direction:
        lines.append(f"Direction: {data.direction}")
    if data.duration:
        lines.append(f"Duration: {data.duration}s")
    if data.sentiment:
        lines.append(f"Sentiment: {data.sentiment}")
    if data.keywords:
        lines.append(f"Keywords: {', '.join(data.keywords)}")
    if data.summary:
        lines.extend(["", data.summary])
    return "\n".join(lines)


class CrmSyncJob:
    """
    Find or create the open deal for a call and attach the analysis note.

    The deal title carries the call id, so a re-executed job finds the deal it
    created earlier instead of opening a second one.
    """

    def __init__(self, context: JobContext):
        self.context = context
        self.pipedrive = require(context.pipedrive, "Pipedrive")

    async def handle(self, payload: dict[str, Any]) -> None:
        data = validate_payload(CrmSyncPayload, CRM_SYNC, payload)
        trace = {"correlation_id": data.correlation_id, "batch_id": data.batch_id}

        person_id = None
        if data.phone_number:
            person_id = await self.pipedrive.find_person_by_phone(data.phone_number, **trace)

        deal_id = await self.pipedrive.find_open_deal(data.call_id, data.phone_number, **trace)
        created = deal_id is None
        if created:
            deal: dict[str, Any] = {
                "title": f"Call {data.call_id} - {data.phone_number or 'unknown number'}",
                "status": "open",
            }
            if person_id is not None:
                deal["person_id"] = person_id
            deal_id = await self.pipedrive.create_deal(deal, **trace)

        await self.pipedrive.add_note(deal_id, build_note(data), **trace)

        logger.info(
            "Call synced to Pipedrive",
            extra_data={
                "call_id": data.call_id,
                "deal_id": deal_id,
                "deal_created": created,
                "person_id": person_id,
                "correlation_id": data.correlation_id,
            }
        )
