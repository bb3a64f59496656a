"""
Signature verification for inbound Ringover webhooks.

Ringover signs the raw request body with HMAC-SHA256 using the shared
secret and sends the hex digest in ``X-Ringover-Signature``.

Usage:
    @router.post("/record-available")
    async def record_available(
        body: bytes = Depends(verify_ringover_signature),
    ):
        ...
"""
import hashlib
import hmac

from fastapi import Depends, Request

from app.api.dependencies.services import get_app_settings
from app.core.config import Settings
from app.core.exceptions import WebhookSignatureError
from app.core.logging import get_logger

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Ringover-Signature"


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def is_valid_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Constant-time comparison; a missing secret or signature never validates"""
    if not secret or not signature:
        return False
    candidate = signature.strip()
    if candidate.startswith("sha256="):
        candidate = candidate[len("sha256="):]
    return hmac.compare_digest(candidate.lower(), compute_signature(body, secret))


async def verify_ringover_signature(
    request: Request,
    settings: Settings = Depends(get_app_settings),
) -> bytes:
    """Return the raw body if the signature matches, raise 401 otherwise"""
    body = await request.body()
    if not is_valid_signature(body, request.headers.get(SIGNATURE_HEADER), settings.RINGOVER_WEBHOOK_SECRET):
        logger.warning(
            "Invalid Ringover webhook signature",
            extra_data={
                "path": request.url.path,
                "has_signature": SIGNATURE_HEADER in request.headers,
                "secret_configured": bool(settings.RINGOVER_WEBHOOK_SECRET),
            }
        )
        raise WebhookSignatureError("ringover")
    return body
