"""
Tests for ApiMonitor - app/domain/services/monitoring_service.py
"""
import pytest

from app.domain.services.monitoring_service import ApiMonitor, MonitoringConfig, _percentile


@pytest.fixture
def monitor(session_factory, datetime_clock) -> ApiMonitor:
    return ApiMonitor(
        session_factory,
        MonitoringConfig(retention_days=30, error_rate_threshold=5.0, latency_threshold_ms=2000),
        clock=datetime_clock,
    )


async def _record(monitor: ApiMonitor, service: str, latency: int, success: bool = True) -> None:
    await monitor.record(
        service=service,
        request_path="/v1/chat/completions",
        method="post",
        response_time_ms=latency,
        status_code=200 if success else 503,
        success=success,
    )


class TestPercentile:

    @pytest.mark.unit
    def test_nearest_rank(self):
        assert _percentile([5], 95) == 5
        assert _percentile(list(range(1, 101)), 95) == 95
        assert _percentile([30, 10, 20], 50) == 20


class TestServiceMetrics:

    @pytest.mark.unit
    async def test_metrics_per_service(self, monitor):
        for latency in (100, 200, 300):
            await _record(monitor, "openai", latency)
        await _record(monitor, "openai", 400, success=False)
        await _record(monitor, "pipedrive", 50)

        metrics = await monitor.get_service_metrics(hours=1)

        assert set(metrics) == {"openai", "pipedrive"}
        openai = metrics["openai"]
        assert openai["total_requests"] == 4
        assert openai["failed_requests"] == 1
        assert openai["avg_response_time_ms"] == 250.0
        assert openai["p95_response_time_ms"] == 400
        assert openai["error_rate"] == 25.0
        assert openai["degraded"] is True
        assert metrics["pipedrive"]["degraded"] is False

    @pytest.mark.unit
    async def test_slow_service_is_degraded(self, monitor):
        await _record(monitor, "ringover", 2500)

        metrics = await monitor.get_service_metrics()

        assert metrics["ringover"]["error_rate"] == 0.0
        assert metrics["ringover"]["degraded"] is True

    @pytest.mark.unit
    async def test_window_excludes_old_rows(self, monitor, datetime_clock):
        await _record(monitor, "openai", 100)
        datetime_clock.advance(2 * 3600)
        await _record(monitor, "pipedrive", 100)

        metrics = await monitor.get_service_metrics(hours=1)

        assert list(metrics) == ["pipedrive"]

    @pytest.mark.unit
    async def test_cleanup_applies_retention(self, monitor, datetime_clock):
        await _record(monitor, "openai", 100)
        datetime_clock.advance(31 * 24 * 3600)
        await _record(monitor, "openai", 100)

        assert await monitor.cleanup() == 1
        assert await monitor.cleanup(days=0) == 0
        assert (await monitor.get_service_metrics(hours=1))["openai"]["total_requests"] == 1
