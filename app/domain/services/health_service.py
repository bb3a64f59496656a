"""
Health checks for the readiness probe.

Two levels:
- liveness: the process answers (no dependency checks)
- readiness: database, rate-limit tables and the Celery broker
"""
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy import text

from app.core.logging import get_logger
from app.core.rate_limiter import RateLimiter
from app.db.database import SessionFactory

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# sanitized messages, no infrastructure details
_ERROR_DB = "error: db_unavailable"
_ERROR_CELERY = "error: celery_unavailable"
_RATE_LIMITER_PASSTHROUGH = "passthrough"


async def _check_db(session_factory: SessionFactory) -> str:
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("Database health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_rate_limiter(rate_limiter: RateLimiter) -> str:
    """Passthrough means the bucket tables are missing and nothing is limited"""
    if await rate_limiter.probe():
        return _RATE_LIMITER_PASSTHROUGH
    return _CHECK_OK


async def _check_celery(broker_url: str) -> str:
    """Ping the Celery broker (Redis)"""
    try:
        client = aioredis.from_url(broker_url, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("Celery broker health check failed", extra_data={"error": str(e)})
        return _ERROR_CELERY


async def check_readiness(
    session_factory: SessionFactory,
    rate_limiter: RateLimiter,
    broker_url: str,
) -> dict[str, Any]:
    """
    Returns the overall status plus one entry per dependency:
    - status: "healthy" when every check is "ok", otherwise "degraded"
    - db / rate_limiter / celery: "ok" or the reason it is not
    """
    checks = {
        "db": await _check_db(session_factory),
        "rate_limiter": await _check_rate_limiter(rate_limiter),
        "celery": await _check_celery(broker_url),
    }

    all_ok = all(value == _CHECK_OK for value in checks.values())
    result: dict[str, Any] = {
        "status": _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED,
        **checks,
    }

    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=result)

    return result
