"""
API Monitoring Service

Writes one ApiMonitoringRecord per dispatched outbound request and
aggregates them into per-service health metrics.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.logging import get_logger, log_async_operation
from app.core.time_utils import utcnow
from app.db.models.api_monitoring import ApiMonitoringRecord

logger = get_logger(__name__)


@dataclass
class MonitoringConfig:
    retention_days: int = 30
    error_rate_threshold: float = 5.0
    latency_threshold_ms: int = 2000

    @classmethod
    def from_settings(cls, settings: Any) -> "MonitoringConfig":
        return cls(
            retention_days=settings.API_MONITORING_RETENTION_DAYS,
            error_rate_threshold=settings.API_MONITORING_ERROR_RATE_THRESHOLD,
            latency_threshold_ms=settings.API_MONITORING_LATENCY_THRESHOLD_MS,
        )


def _percentile(values: list[int], pct: float) -> int:
    """Nearest-rank percentile of a non-empty list"""
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100.0 * len(ordered)))
    return ordered[rank - 1]


class ApiMonitor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: MonitoringConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.config = config or MonitoringConfig()
        self._clock = clock

    async def record(
        self,
        *,
        service: str,
        request_path: str,
        method: str,
        response_time_ms: int,
        status_code: int | None,
        success: bool,
        correlation_id: str | None = None,
        batch_id: str | None = None,
        error_message: str | None = None,
    ) -> None:
        async with self._session_factory() as session:
            session.add(ApiMonitoringRecord(
                service=service,
                request_path=request_path[:500],
                method=method.upper(),
                response_time_ms=response_time_ms,
                status_code=status_code,
                success=success,
                correlation_id=correlation_id,
                batch_id=batch_id,
                error_message=error_message,
                timestamp=self._clock(),
            ))
            await session.commit()

    async def get_service_metrics(self, hours: int = 1) -> dict[str, dict[str, Any]]:
        """
        Per-service metrics over the last ``hours``.

        Each entry holds total_requests, avg_response_time_ms,
        p95_response_time_ms, error_rate (percent) and ``degraded``, which is
        True when the error rate or p95 latency crosses its threshold.
        """
        since = self._clock() - timedelta(hours=hours)

        async with self._session_factory() as session:
            result = await session.execute(
                select(
                    ApiMonitoringRecord.service,
                    ApiMonitoringRecord.response_time_ms,
                    ApiMonitoringRecord.success,
                )
                .where(ApiMonitoringRecord.timestamp >= since)
            )
            rows = result.all()

        grouped: dict[str, list[tuple[int, bool]]] = {}
        for service, response_time_ms, success in rows:
            grouped.setdefault(service, []).append((response_time_ms, success))

        metrics: dict[str, dict[str, Any]] = {}
        for service, samples in sorted(grouped.items()):
            latencies = [latency for latency, _ in samples]
            errors = sum(1 for _, success in samples if not success)
            total = len(samples)
            error_rate = round(errors / total * 100, 2)
            p95 = _percentile(latencies, 95)

            metrics[service] = {
                "total_requests": total,
                "failed_requests": errors,
                "avg_response_time_ms": round(sum(latencies) / total, 1),
                "p95_response_time_ms": p95,
                "error_rate": error_rate,
                "degraded": (
                    error_rate > self.config.error_rate_threshold
                    or p95 > self.config.latency_threshold_ms
                ),
            }

        return metrics

    @log_async_operation("api_monitoring_cleanup")
    async def cleanup(self, days: int | None = None) -> int:
        retention = days if days is not None else self.config.retention_days
        cutoff = self._clock() - timedelta(days=retention)

        async with self._session_factory() as session:
            result = await session.execute(
                delete(ApiMonitoringRecord).where(ApiMonitoringRecord.timestamp < cutoff)
            )
            await session.commit()
        return result.rowcount
