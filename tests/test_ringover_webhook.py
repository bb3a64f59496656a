"""
Tests for the Ringover webhook endpoints - app/api/webhooks/ringover.py

Covers signature checks, deduplication, payload validation and enqueueing.
"""
import json

import pytest
from sqlalchemy import select

from app.db.models.webhook_deduplication import WebhookDeduplication, WebhookProcessingLog
from app.domain.jobs import DOWNLOAD_RECORDING
from conftest import sign, signed_request

RECORD_URL = "/api/webhooks/ringover/record-available"
VOICEMAIL_URL = "/api/webhooks/ringover/voicemail-available"

RECORD_EVENT = {
    "event": "record_available",
    "timestamp": "2024-01-15T12:00:00Z",
    "data": {
        "call_id": 123456,
        "recording_url": "https://cdn.ringover.com/recordings/123456.mp3",
        "duration": 42,
        "direction": "in",
        "contact_number": "+34600000000",
    },
}


class TestSignature:

    @pytest.mark.unit
    async def test_missing_signature_rejected(self, test_client):
        response = await test_client.post(RECORD_URL, json=RECORD_EVENT)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "ERR_2001"

    @pytest.mark.unit
    async def test_wrong_signature_rejected(self, test_client):
        body = json.dumps(RECORD_EVENT).encode()

        response = await test_client.post(
            RECORD_URL,
            content=body,
            headers={"Content-Type": "application/json", "X-Ringover-Signature": sign(body, "other")},
        )

        assert response.status_code == 401

    @pytest.mark.unit
    async def test_prefixed_signature_accepted(self, test_client):
        body = json.dumps(RECORD_EVENT).encode()

        response = await test_client.post(
            RECORD_URL,
            content=body,
            headers={"Content-Type": "application/json", "X-Ringover-Signature": f"sha256={sign(body)}"},
        )

        assert response.status_code == 200

    @pytest.mark.unit
    async def test_unconfigured_secret_rejects_everything(self, app, test_client):
        app.state.settings = app.state.settings.model_copy(update={"RINGOVER_WEBHOOK_SECRET": ""})
        body, headers = signed_request(RECORD_EVENT)

        response = await test_client.post(RECORD_URL, content=body, headers=headers)

        assert response.status_code == 401


class TestRecordAvailable:

    @pytest.mark.integration
    async def test_queues_download_task(self, app, test_client):
        body, headers = signed_request(RECORD_EVENT)

        response = await test_client.post(
            RECORD_URL, content=body, headers={**headers, "X-Correlation-ID": "corr-42"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["queued"] is True
        assert data["deduplication_key"].startswith("ringover_call:")

        task = await app.state.task_queue.reserve()
        assert task.task_id == data["task_id"]
        assert task.task_type == DOWNLOAD_RECORDING
        assert task.correlation_id == "corr-42"
        assert task.payload["call_id"] == "123456"
        assert task.payload["recording_url"] == "https://cdn.ringover.com/recordings/123456.mp3"
        assert task.payload["phone_number"] == "+34600000000"
        assert task.payload["duration"] == 42
        assert task.priority == 5

    @pytest.mark.integration
    async def test_duplicate_delivery_is_not_queued_twice(self, app, test_client, session_factory):
        body, headers = signed_request(RECORD_EVENT)

        first = await test_client.post(RECORD_URL, content=body, headers=headers)
        second = await test_client.post(RECORD_URL, content=body, headers=headers)

        assert first.json()["queued"] is True
        assert second.status_code == 200
        assert second.json() == {
            "success": True,
            "queued": False,
            "reason": "duplicate",
            "deduplication_key": first.json()["deduplication_key"],
        }
        assert (await app.state.task_queue.get_stats())[DOWNLOAD_RECORDING]["pending"] == 1

        async with session_factory() as session:
            statuses = (await session.execute(
                select(WebhookProcessingLog.status).order_by(WebhookProcessingLog.id)
            )).scalars().all()
        assert statuses == ["processed", "duplicate"]

    @pytest.mark.integration
    async def test_invalid_payload_releases_key(self, test_client, session_factory):
        event = {**RECORD_EVENT, "data": {"call_id": "c1", "duration": -1}}
        body, headers = signed_request(event)

        response = await test_client.post(RECORD_URL, content=body, headers=headers)

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "ERR_2002"
        assert any("recording_url" in item for item in error["details"]["errors"])
        assert any("duration" in item for item in error["details"]["errors"])

        async with session_factory() as session:
            records = (await session.execute(select(WebhookDeduplication))).scalars().all()
            log = (await session.execute(select(WebhookProcessingLog))).scalar_one()
        assert records == []
        assert log.status == "failed"

    @pytest.mark.unit
    async def test_non_json_body(self, test_client):
        body = b"not json"

        response = await test_client.post(
            RECORD_URL,
            content=body,
            headers={"Content-Type": "application/json", "X-Ringover-Signature": sign(body)},
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "ERR_1001"

    @pytest.mark.integration
    async def test_enqueue_failure_releases_key(self, app, test_client, session_factory, monkeypatch):
        async def broken_enqueue(*args, **kwargs):
            raise RuntimeError("queue table unavailable")

        monkeypatch.setattr(app.state.task_queue, "enqueue", broken_enqueue)
        body, headers = signed_request(RECORD_EVENT)

        response = await test_client.post(RECORD_URL, content=body, headers=headers)

        assert response.status_code == 500
        async with session_factory() as session:
            records = (await session.execute(select(WebhookDeduplication))).scalars().all()
        assert records == []


class TestVoicemailAvailable:

    @pytest.mark.integration
    async def test_voicemail_url_is_used(self, app, test_client):
        event = {
            "event": "voicemail_available",
            "call_id": "vm-1",
            "voicemail_url": "https://cdn.ringover.com/voicemails/vm-1.wav",
            "duration": 12,
        }
        body, headers = signed_request(event)

        response = await test_client.post(VOICEMAIL_URL, content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["deduplication_key"].startswith("ringover_voicemail:")
        task = await app.state.task_queue.reserve()
        assert task.payload["recording_url"] == "https://cdn.ringover.com/voicemails/vm-1.wav"
