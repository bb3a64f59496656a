"""
Webhook Deduplication

Each inbound webhook gets a stable key derived from its identifying fields.
The first delivery inserts a record with a TTL; repeats inside the TTL are
reported as duplicates. If the dedup store itself fails the webhook is still
admitted (fail-open) and the failure lands in the processing log.
"""
import hashlib
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from app.core.logging import get_logger, log_async_operation
from app.core.time_utils import utcnow
from app.db.models.webhook_deduplication import (
    WebhookDeduplication,
    WebhookProcessingLog,
    WebhookProcessingStatus,
)

logger = get_logger(__name__)

DEFAULT_TYPE_TTLS: dict[str, int] = {
    "ringover_call": 3600,
    "ringover_voicemail": 3600,
    "pipedrive_deal": 1800,
    "n8n_workflow": 7200,
}


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def extract_key_fields(webhook_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Identifying fields for a webhook type; unknown types use the whole payload"""
    if webhook_type in ("ringover_call", "ringover_voicemail"):
        return {
            "call_id": payload.get("call_id"),
            "event_type": payload.get("event_type"),
            "timestamp": payload.get("timestamp"),
        }
    if webhook_type == "pipedrive_deal":
        current = payload.get("current") or {}
        return {
            "deal_id": current.get("id") if isinstance(current, dict) else None,
            "event_type": payload.get("event"),
            "timestamp": payload.get("timestamp"),
        }
    if webhook_type == "n8n_workflow":
        return {
            "workflow_id": payload.get("workflow_id"),
            "execution_id": payload.get("execution_id"),
            "timestamp": payload.get("timestamp"),
        }
    return payload


def generate_deduplication_key(webhook_type: str, payload: dict[str, Any]) -> str:
    fields = extract_key_fields(webhook_type, payload)
    digest = hashlib.sha256(canonical_json(fields).encode("utf-8")).hexdigest()
    return f"{webhook_type}:{digest}"


def generate_payload_hash(payload: dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


@dataclass
class DeduplicatorConfig:
    default_ttl_seconds: int = 3600
    max_ttl_seconds: int = 86400
    log_retention_days: int = 30
    type_ttls: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_TYPE_TTLS))

    @classmethod
    def from_settings(cls, settings: Any) -> "DeduplicatorConfig":
        return cls(
            default_ttl_seconds=settings.WEBHOOK_DEDUP_DEFAULT_TTL_SECONDS,
            max_ttl_seconds=settings.WEBHOOK_DEDUP_MAX_TTL_SECONDS,
            log_retention_days=settings.WEBHOOK_LOG_RETENTION_DAYS,
        )


@dataclass
class DeduplicationResult:
    should_process: bool
    deduplication_key: str
    is_duplicate: bool
    original_processed_at: datetime | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "should_process": self.should_process,
            "deduplication_key": self.deduplication_key,
            "is_duplicate": self.is_duplicate,
        }
        if self.original_processed_at is not None:
            data["original_processed_at"] = self.original_processed_at.isoformat()
        if self.error is not None:
            data["error"] = self.error
        return data


class WebhookDeduplicator:
    """Admission gate for inbound webhooks"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: DeduplicatorConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.config = config or DeduplicatorConfig()
        self._clock = clock

    def resolve_ttl(self, webhook_type: str, ttl_seconds: int | None = None) -> int:
        ttl = ttl_seconds if ttl_seconds is not None else self.config.type_ttls.get(
            webhook_type, self.config.default_ttl_seconds
        )
        return max(0, min(ttl, self.config.max_ttl_seconds))

    async def should_process(
        self,
        webhook_type: str,
        payload: dict[str, Any],
        correlation_id: str | None = None,
        ttl_seconds: int | None = None,
    ) -> DeduplicationResult:
        """
        Decide whether a webhook should be processed.

        Never raises on storage failure: the webhook is admitted and the
        error is attached to the result and the processing log.
        """
        ttl = self.resolve_ttl(webhook_type, ttl_seconds)
        dedup_key = generate_deduplication_key(webhook_type, payload)
        payload_size = len(canonical_json(payload).encode("utf-8"))
        started = time.perf_counter()

        try:
            existing_processed_at = await self._admit(
                dedup_key, webhook_type, payload, correlation_id, ttl
            )
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "Webhook deduplication store failed, admitting webhook",
                extra_data={
                    "webhook_type": webhook_type,
                    "deduplication_key": dedup_key,
                    "error": str(e),
                }
            )
            await self._log_processing(
                webhook_type, dedup_key, correlation_id,
                WebhookProcessingStatus.FAILED, payload_size,
                self._elapsed_ms(started), error_message=str(e),
            )
            return DeduplicationResult(
                should_process=True,
                deduplication_key=dedup_key,
                is_duplicate=False,
                error=str(e),
            )

        if existing_processed_at is not None:
            await self._log_processing(
                webhook_type, dedup_key, correlation_id,
                WebhookProcessingStatus.DUPLICATE, payload_size,
                self._elapsed_ms(started),
            )
            logger.info(
                "Duplicate webhook rejected",
                extra_data={
                    "webhook_type": webhook_type,
                    "deduplication_key": dedup_key,
                    "original_processed_at": existing_processed_at.isoformat(),
                }
            )
            return DeduplicationResult(
                should_process=False,
                deduplication_key=dedup_key,
                is_duplicate=True,
                original_processed_at=existing_processed_at,
            )

        await self._log_processing(
            webhook_type, dedup_key, correlation_id,
            WebhookProcessingStatus.PROCESSED, payload_size,
            self._elapsed_ms(started),
        )
        return DeduplicationResult(
            should_process=True,
            deduplication_key=dedup_key,
            is_duplicate=False,
        )

    async def _admit(
        self,
        dedup_key: str,
        webhook_type: str,
        payload: dict[str, Any],
        correlation_id: str | None,
        ttl: int,
    ) -> datetime | None:
        """Record the key; returns the original processed_at if it is a live duplicate"""
        now = self._clock()
        expires_at = now + timedelta(seconds=ttl)
        payload_hash = generate_payload_hash(payload)

        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookDeduplication)
                .where(WebhookDeduplication.deduplication_key == dedup_key)
            )
            record = result.scalar_one_or_none()

            if record is not None and record.expires_at > now:
                return record.processed_at

            if record is not None:
                # expired: the key is free again, but only one redelivery may reclaim it
                reclaimed = await session.execute(
                    update(WebhookDeduplication)
                    .where(
                        WebhookDeduplication.deduplication_key == dedup_key,
                        WebhookDeduplication.expires_at <= now,
                    )
                    .values(
                        webhook_type=webhook_type,
                        payload_hash=payload_hash,
                        correlation_id=correlation_id,
                        processed_at=now,
                        expires_at=expires_at,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if reclaimed.rowcount > 0:
                    return None
                result = await session.execute(
                    select(WebhookDeduplication.processed_at)
                    .where(WebhookDeduplication.deduplication_key == dedup_key)
                )
                return result.scalar_one_or_none() or now

            session.add(WebhookDeduplication(
                deduplication_key=dedup_key,
                webhook_type=webhook_type,
                payload_hash=payload_hash,
                correlation_id=correlation_id,
                processed_at=now,
                expires_at=expires_at,
            ))
            try:
                await session.commit()
            except IntegrityError:
                # a concurrent delivery of the same event won the insert
                await session.rollback()
                result = await session.execute(
                    select(WebhookDeduplication.processed_at)
                    .where(WebhookDeduplication.deduplication_key == dedup_key)
                )
                return result.scalar_one_or_none() or now
        return None

    async def _log_processing(
        self,
        webhook_type: str,
        dedup_key: str,
        correlation_id: str | None,
        status: WebhookProcessingStatus,
        payload_size: int,
        processing_time_ms: int,
        error_message: str | None = None,
    ) -> None:
        try:
            async with self._session_factory() as session:
                session.add(WebhookProcessingLog(
                    webhook_type=webhook_type,
                    deduplication_key=dedup_key,
                    correlation_id=correlation_id,
                    status=status.value,
                    payload_size=payload_size,
                    processing_time_ms=processing_time_ms,
                    error_message=error_message,
                    created_at=self._clock(),
                ))
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "Failed to write webhook processing log",
                extra_data={"deduplication_key": dedup_key, "status": status.value, "error": str(e)}
            )

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.perf_counter() - started) * 1000)

    async def mark_failed(self, deduplication_key: str, error: str) -> bool:
        """
        Release a key after downstream processing failed so the sender's
        retry is admitted, and flip the latest log row to ``failed``.

        Returns True if a dedup record was removed.
        """
        try:
            async with self._session_factory() as session:
                deleted = await session.execute(
                    delete(WebhookDeduplication)
                    .where(WebhookDeduplication.deduplication_key == deduplication_key)
                )

                # aliased so the subquery is not correlated to the UPDATE target
                latest = aliased(WebhookProcessingLog)
                latest_id = (
                    select(latest.id)
                    .where(latest.deduplication_key == deduplication_key)
                    .order_by(latest.created_at.desc(), latest.id.desc())
                    .limit(1)
                    .scalar_subquery()
                )
                await session.execute(
                    update(WebhookProcessingLog)
                    .where(WebhookProcessingLog.id == latest_id)
                    .values(
                        status=WebhookProcessingStatus.FAILED.value,
                        error_message=error,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "Failed to mark webhook as failed",
                extra_data={"deduplication_key": deduplication_key, "error": str(e)}
            )
            return False

        logger.warning(
            "Webhook marked as failed, key released for retry",
            extra_data={"deduplication_key": deduplication_key, "error": error}
        )
        return deleted.rowcount > 0

    async def get_stats(self, hours: int = 24) -> list[dict[str, Any]]:
        """Counts and timings per (webhook_type, status) over the last ``hours``"""
        since = self._clock() - timedelta(hours=hours)

        async with self._session_factory() as session:
            result = await session.execute(
                select(
                    WebhookProcessingLog.webhook_type,
                    WebhookProcessingLog.status,
                    func.count(WebhookProcessingLog.id),
                    func.avg(WebhookProcessingLog.processing_time_ms),
                    func.max(WebhookProcessingLog.processing_time_ms),
                )
                .where(WebhookProcessingLog.created_at >= since)
                .group_by(WebhookProcessingLog.webhook_type, WebhookProcessingLog.status)
                .order_by(WebhookProcessingLog.webhook_type, WebhookProcessingLog.status)
            )
            rows = result.all()

        return [
            {
                "webhook_type": webhook_type,
                "status": status,
                "count": count,
                "avg_processing_time": float(avg_time or 0),
                "max_processing_time": int(max_time or 0),
            }
            for webhook_type, status, count, avg_time, max_time in rows
        ]

    @log_async_operation("webhook_dedup_cleanup")
    async def cleanup(self) -> dict[str, int]:
        """Delete expired dedup records and processing logs past retention"""
        started = time.perf_counter()
        now = self._clock()
        log_cutoff = now - timedelta(days=self.config.log_retention_days)

        async with self._session_factory() as session:
            dedup_result = await session.execute(
                delete(WebhookDeduplication).where(WebhookDeduplication.expires_at < now)
            )
            logs_result = await session.execute(
                delete(WebhookProcessingLog).where(WebhookProcessingLog.created_at < log_cutoff)
            )
            await session.commit()

        return {
            "deduplication_records_cleaned": dedup_result.rowcount,
            "processing_logs_cleaned": logs_result.rowcount,
            "duration_ms": self._elapsed_ms(started),
        }
