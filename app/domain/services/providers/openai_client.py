"""
OpenAI API client - Whisper transcription and call analysis via chat completions.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from app.core.exceptions import ExternalServiceException
from app.core.http_client import ResilientHttpClient
from app.core.logging import get_logger

logger = get_logger(__name__)

SERVICE = "openai"

AUDIO_CONTENT_TYPES = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".m4a": "audio/mp4",
}

ANALYSIS_PROMPT = (
    "You analyse sales phone calls. Reply with a JSON object with the keys "
    "'summary' (string), 'sentiment' (object with 'label' of positive, neutral "
    "or negative and 'confidence' between 0 and 1) and 'keywords' (list of strings). "
    "Write the summary in the language of the transcript."
)


class OpenAIClient:
    def __init__(
        self,
        http: ResilientHttpClient,
        *,
        api_url: str,
        api_key: str,
        transcription_model: str = "whisper-1",
        chat_model: str = "gpt-4o-mini",
    ):
        self.http = http
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.transcription_model = transcription_model
        self.chat_model = chat_model

    def _auth(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def transcribe(
        self,
        path: Path,
        *,
        language: str | None = None,
        correlation_id: str | None = None,
        batch_id: str | None = None,
    ) -> dict[str, Any]:
        """Transcribe an audio file; returns the verbose_json response"""
        content_type = AUDIO_CONTENT_TYPES.get(path.suffix.lower(), "application/octet-stream")
        form: dict[str, Any] = {
            "model": self.transcription_model,
            "response_format": "verbose_json",
            "temperature": "0",
        }
        if language:
            form["language"] = language

        response = await self.http.post(
            f"{self.api_url}/audio/transcriptions",
            service=SERVICE,
            headers=self._auth(),
            data=form,
            files={"file": (path.name, path.read_bytes(), content_type)},
            correlation_id=correlation_id,
            batch_id=batch_id,
        )
        result = response.json()
        if not result.get("text"):
            raise ExternalServiceException(SERVICE, "Empty transcription result from OpenAI")
        return result

    async def chat(
        self,
        messages: list[dict[str, str]],
        *,
        extra: dict[str, Any] | None = None,
        correlation_id: str | None = None,
        batch_id: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"model": self.chat_model, "messages": messages}
        body.update(extra or {})
        response = await self.http.post(
            f"{self.api_url}/chat/completions",
            service=SERVICE,
            headers=self._auth(),
            json=body,
            correlation_id=correlation_id,
            batch_id=batch_id,
        )
        return response.json()

    async def analyze_call(
        self,
        transcript: str,
        *,
        correlation_id: str | None = None,
        batch_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Summarise a transcript.

        Returns a dict with ``summary``, ``sentiment`` and ``keywords``. If the
        model answers with something other than a JSON object the raw text is
        kept as the summary.
        """
        completion = await self.chat(
            [
                {"role": "system", "content": ANALYSIS_PROMPT},
                {"role": "user", "content": transcript},
            ],
            extra={"response_format": {"type": "json_object"}, "temperature": 0},
            correlation_id=correlation_id,
            batch_id=batch_id,
        )

        try:
            content = completion["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            raise ExternalServiceException(SERVICE, "Malformed chat completion response")

        try:
            analysis = json.loads(content)
        except ValueError:
            analysis = None

        if not isinstance(analysis, dict):
            logger.warning(
                "Call analysis was not a JSON object, keeping raw text",
                extra_data={"correlation_id": correlation_id}
            )
            return {"summary": content, "sentiment": None, "keywords": []}

        keywords = [
            keyword["term"] if isinstance(keyword, dict) and "term" in keyword else keyword
            for keyword in analysis.get("keywords") or []
        ]
        return {
            "summary": analysis.get("summary") or "",
            "sentiment": analysis.get("sentiment"),
            "keywords": [str(keyword) for keyword in keywords],
        }
