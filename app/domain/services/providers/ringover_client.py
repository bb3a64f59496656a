"""
Ringover API client - call listing and recording downloads.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any

import httpx

from app.core.exceptions import ValidationException
from app.core.http_client import ResilientHttpClient
from app.core.logging import get_logger

logger = get_logger(__name__)

SERVICE = "ringover"


class RingoverClient:
    def __init__(
        self,
        http: ResilientHttpClient,
        *,
        api_url: str,
        api_key: str,
        max_recording_mb: int = 100,
    ):
        self.http = http
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.max_recording_bytes = max_recording_mb * 1024 * 1024

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
        }

    async def get_calls(
        self,
        *,
        start_date: str | None = None,
        end_date: str | None = None,
        limit: int = 100,
        offset: int = 0,
        correlation_id: str | None = None,
        batch_id: str | None = None,
    ) -> dict[str, Any]:
        params = {
            key: value
            for key, value in {
                "start_date": start_date,
                "end_date": end_date,
                "limit": limit,
                "offset": offset,
            }.items()
            if value is not None
        }
        response = await self.http.get(
            f"{self.api_url}/calls",
            service=SERVICE,
            headers=self._headers(),
            params=params,
            correlation_id=correlation_id,
            batch_id=batch_id,
        )
        return response.json() or {}

    async def download_recording(
        self,
        url: str,
        destination: Path,
        *,
        correlation_id: str | None = None,
        batch_id: str | None = None,
    ) -> Path:
        """
        Stream a recording to ``destination``.

        The body is written to ``<destination>.part`` first and renamed, so a
        crash mid-download never leaves a truncated file under the final name.
        A declared Content-Length over the cap is refused before reading; a
        body that grows past the cap is cut off and the partial file removed.
        """
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + ".part")

        async with self.http.stream(
            "GET",
            url,
            service=SERVICE,
            correlation_id=correlation_id,
            batch_id=batch_id,
        ) as response:
            declared = _content_length(response)
            if declared is not None and declared > self.max_recording_bytes:
                raise self._too_large(declared, correlation_id)

            size = 0
            try:
                with partial.open("wb") as fh:
                    async for chunk in response.aiter_bytes():
                        size += len(chunk)
                        if size > self.max_recording_bytes:
                            raise self._too_large(size, correlation_id)
                        fh.write(chunk)
            except BaseException:
                partial.unlink(missing_ok=True)
                raise

        partial.replace(destination)

        logger.info(
            "Recording downloaded",
            extra_data={
                "path": str(destination),
                "size_bytes": size,
                "correlation_id": correlation_id,
                "batch_id": batch_id,
            }
        )
        return destination

    def _too_large(self, size_bytes: int, correlation_id: str | None) -> ValidationException:
        logger.warning(
            "Recording exceeds maximum size, download aborted",
            extra_data={
                "size_bytes": size_bytes,
                "max_bytes": self.max_recording_bytes,
                "correlation_id": correlation_id,
            }
        )
        return ValidationException(
            "Recording exceeds maximum size",
            field="recording_url",
            details={"size_bytes": size_bytes, "max_bytes": self.max_recording_bytes},
        )


def _content_length(response: httpx.Response) -> int | None:
    try:
        return int(response.headers["Content-Length"])
    except (KeyError, ValueError):
        return None
