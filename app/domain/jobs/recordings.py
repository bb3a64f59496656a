"""
Recording pipeline jobs: download from Ringover, then transcribe and analyse
with OpenAI. Each stage enqueues the next one.
"""
from __future__ import annotations

import re
from pathlib import Path, PurePosixPath
from typing import Any
from urllib.parse import urlsplit

from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field

from app.core.exceptions import JobPayloadError
from app.core.logging import get_logger
from app.domain.jobs.base import JobContext, require, validate_payload

logger = get_logger(__name__)

DOWNLOAD_RECORDING = "download_recording"
TRANSCRIBE_RECORDING = "transcribe_recording"
CRM_SYNC = "crm_sync"

ALLOWED_AUDIO_EXTENSIONS = (".mp3", ".wav", ".ogg", ".m4a")

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class CallMetadata(BaseModel):
    """Call fields carried along every stage of the pipeline"""
    model_config = ConfigDict(extra="ignore")

    call_id: str = Field(min_length=1, max_length=100)
    phone_number: str | None = None
    direction: str | None = None
    duration: int = Field(default=0, ge=0)
    correlation_id: str | None = None
    batch_id: str | None = None

    def forward(self) -> dict[str, Any]:
        return self.model_dump(include={"call_id", "phone_number", "direction", "duration", "batch_id"})


class DownloadRecordingPayload(CallMetadata):
    recording_url: AnyHttpUrl


class TranscribeRecordingPayload(CallMetadata):
    path: str = Field(min_length=1)


def recording_filename(call_id: str, url: str) -> str:
    suffix = PurePosixPath(urlsplit(url).path).suffix.lower()
    if suffix not in ALLOWED_AUDIO_EXTENSIONS:
        suffix = ".mp3"
    return f"{_UNSAFE_FILENAME_CHARS.sub('_', call_id)}{suffix}"


class DownloadRecordingJob:
    def __init__(self, context: JobContext):
        self.context = context
        self.ringover = require(context.ringover, "Ringover")

    async def handle(self, payload: dict[str, Any]) -> None:
        data = validate_payload(DownloadRecordingPayload, DOWNLOAD_RECORDING, payload)
        url = str(data.recording_url)
        target = Path(self.context.settings.RECORDINGS_DIR) / recording_filename(data.call_id, url)

        await self.ringover.download_recording(
            url,
            target,
            correlation_id=data.correlation_id,
            batch_id=data.batch_id,
        )

        await self.context.queue.enqueue(
            TRANSCRIBE_RECORDING,
            {**data.forward(), "path": str(target)},
            correlation_id=data.correlation_id,
        )


class TranscribeRecordingJob:
    def __init__(self, context: JobContext):
        self.context = context
        self.openai = require(context.openai, "OpenAI")

    async def handle(self, payload: dict[str, Any]) -> None:
        data = validate_payload(TranscribeRecordingPayload, TRANSCRIBE_RECORDING, payload)
        path = Path(data.path)
        settings = self.context.settings

        if path.suffix.lower() not in ALLOWED_AUDIO_EXTENSIONS:
            raise JobPayloadError(TRANSCRIBE_RECORDING, f"unsupported audio format: {path.suffix}")
        if not path.is_file():
            raise FileNotFoundError(f"Recording not found: {path}")

        max_bytes = settings.RINGOVER_MAX_RECORDING_MB * 1024 * 1024
        if path.stat().st_size > max_bytes:
            raise JobPayloadError(TRANSCRIBE_RECORDING, "recording exceeds maximum size")

        transcription = await self.openai.transcribe(
            path,
            language=settings.OPENAI_TRANSCRIPTION_LANGUAGE,
            correlation_id=data.correlation_id,
            batch_id=data.batch_id,
        )
        transcript = transcription["text"]

        analysis = await self.openai.analyze_call(
            transcript,
            correlation_id=data.correlation_id,
            batch_id=data.batch_id,
        )
        sentiment = analysis.get("sentiment") or {}

        logger.info(
            "Recording transcribed and analysed",
            extra_data={
                "call_id": data.call_id,
                "language": transcription.get("language"),
                "transcript_chars": len(transcript),
                "correlation_id": data.correlation_id,
            }
        )

        await self.context.queue.enqueue(
            CRM_SYNC,
            {
                **data.forward(),
                "summary": analysis.get("summary") or "",
                "sentiment": sentiment.get("label") if isinstance(sentiment, dict) else None,
                "keywords": analysis.get("keywords") or [],
            },
            correlation_id=data.correlation_id,
        )
