"""
Smoke tests against a running app instance:
- GET /health
- POST /api/webhooks/ringover/record-available (signed), sent twice

The second delivery of the same event must come back as a duplicate, which
exercises signature verification, deduplication and enqueueing end to end.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import sys
import uuid
from pathlib import Path

import httpx

# allow running from any directory
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.core.logging import get_logger, setup_logging  # noqa: E402


logger = get_logger(__name__)


def _base_url() -> str:
    port = os.environ.get("PORT", "8000")
    return os.environ.get("BASE_URL", f"http://127.0.0.1:{port}").rstrip("/")


def _timeout_seconds() -> float:
    return float(os.environ.get("SMOKE_TIMEOUT_SECONDS", "10"))


def _recording_payload() -> dict:
    return {
        "call_id": f"smoke-{uuid.uuid4().hex[:12]}",
        "event_type": "recording.available",
        "timestamp": "2024-01-01T00:00:00Z",
        "recording_url": "https://example.invalid/recordings/smoke.mp3",
        "duration": 1,
    }


def _sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _check_status(resp: httpx.Response, expected_family: int = 2) -> None:
    family = resp.status_code // 100
    if family != expected_family:
        raise RuntimeError(
            f"Unexpected status {resp.status_code} for {resp.request.method} {resp.request.url}. "
            f"Body: {(resp.text or '')[:500]}"
        )


def main() -> None:
    setup_logging(level="INFO", json_format=False, app_name="call-sync-smoke")

    base_url = _base_url()
    timeout = _timeout_seconds()
    secret = os.environ.get("RINGOVER_WEBHOOK_SECRET", "")
    if not secret:
        raise SystemExit("RINGOVER_WEBHOOK_SECRET must be set to sign the smoke webhook")

    logger.info("Starting smoke tests", extra_data={"base_url": base_url, "timeout_seconds": timeout})

    with httpx.Client(timeout=timeout) as client:
        health_url = f"{base_url}/health"
        logger.info("Checking health endpoint", extra_data={"url": health_url})
        _check_status(client.get(health_url))

        webhook_url = f"{base_url}/api/webhooks/ringover/record-available"
        body = json.dumps(_recording_payload()).encode("utf-8")
        headers = {"Content-Type": "application/json", "X-Ringover-Signature": _sign(body, secret)}

        logger.info("Posting signed ringover webhook", extra_data={"url": webhook_url})
        first = client.post(webhook_url, content=body, headers=headers)
        _check_status(first)
        if not first.json().get("queued"):
            raise RuntimeError(f"First delivery was not queued: {first.text[:500]}")

        second = client.post(webhook_url, content=body, headers=headers)
        _check_status(second)
        if second.json().get("reason") != "duplicate":
            raise RuntimeError(f"Second delivery was not deduplicated: {second.text[:500]}")

    logger.info("Smoke tests completed successfully")


if __name__ == "__main__":
    main()
