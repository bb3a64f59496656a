"""
API key check for the admin endpoints.

Usage:
    @router.get("/queue/stats")
    async def queue_stats(
        _: None = Depends(require_admin_api_key),
    ):
        ...
"""
import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from app.api.dependencies.services import get_app_settings
from app.core.config import Settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_api_key_header = APIKeyHeader(name="X-Admin-API-Key", auto_error=False)


async def require_admin_api_key(
    api_key: str | None = Depends(_api_key_header),
    settings: Settings = Depends(get_app_settings),
) -> None:
    """
    Validate the admin API key.

    401 if the key is missing, 403 if it does not match. When ADMIN_API_KEY
    is not configured the admin surface is closed entirely.
    """
    if not settings.ADMIN_API_KEY:
        logger.warning("Admin endpoint access denied: ADMIN_API_KEY is not configured")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="ADMIN_API_KEY is not configured",
        )

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key, header required: X-Admin-API-Key",
        )

    if not hmac.compare_digest(api_key, settings.ADMIN_API_KEY):
        logger.warning("Admin endpoint access denied: wrong API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )
