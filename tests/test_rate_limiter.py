"""
Tests for the token-bucket RateLimiter - app/core/rate_limiter.py
"""
import itertools

import pytest
from hypothesis import HealthCheck, given, settings as h_settings
from hypothesis.strategies import floats, integers, lists, tuples

from app.core.exceptions import ValidationException
from app.core.rate_limiter import RateLimiter, RateLimiterConfig
from app.db.database import create_session_factory
from app.db.models.rate_limit import RateLimitConfig
from conftest import FakeClock

_prop_counter = itertools.count(1)


@pytest.fixture
def limiter(session_factory, fake_clock) -> RateLimiter:
    return RateLimiter(session_factory, RateLimiterConfig(), clock=fake_clock)


class TestAdmission:
    """is_allowed"""

    @pytest.mark.unit
    async def test_first_check_starts_full(self, limiter):
        result = await limiter.is_allowed("openai:chat")

        assert result.allowed is True
        assert result.capacity == 100
        assert result.refill_rate == 1.0
        assert result.remaining == 99

    @pytest.mark.unit
    async def test_denied_when_empty(self, limiter, fake_clock):
        override = {"capacity": 2, "refill_rate": 0.0}

        first = await limiter.is_allowed("ringover:download", limits_override=override)
        second = await limiter.is_allowed("ringover:download", limits_override=override)
        third = await limiter.is_allowed("ringover:download", limits_override=override)

        assert (first.allowed, second.allowed, third.allowed) == (True, True, False)
        assert third.remaining == 0
        # no refill: reset never comes, reported as now
        assert third.reset_time == int(fake_clock.now)

    @pytest.mark.unit
    async def test_lazy_refill(self, limiter, fake_clock):
        override = {"capacity": 5, "refill_rate": 1.0}
        for _ in range(5):
            assert (await limiter.is_allowed("svc:op", limits_override=override)).allowed
        assert not (await limiter.is_allowed("svc:op", limits_override=override)).allowed

        fake_clock.advance(3)
        result = await limiter.is_allowed("svc:op", limits_override=override)

        assert result.allowed is True
        assert result.remaining == 2

    @pytest.mark.unit
    async def test_refill_never_exceeds_capacity(self, limiter, fake_clock):
        override = {"capacity": 5, "refill_rate": 1.0}
        await limiter.is_allowed("svc:op", limits_override=override)

        fake_clock.advance(3600)
        result = await limiter.is_allowed("svc:op", limits_override=override)

        assert result.remaining == 4

    @pytest.mark.unit
    async def test_clock_going_backwards_adds_nothing(self, limiter, fake_clock):
        override = {"capacity": 5, "refill_rate": 1.0}
        await limiter.is_allowed("svc:op", tokens=3, limits_override=override)

        fake_clock.advance(-100)
        result = await limiter.is_allowed("svc:op", limits_override=override)

        assert result.remaining == 1

    @pytest.mark.unit
    async def test_reset_time_counts_missing_tokens(self, limiter, fake_clock):
        result = await limiter.is_allowed(
            "svc:op", tokens=5, limits_override={"capacity": 10, "refill_rate": 2.0}
        )

        assert result.reset_time == int(fake_clock.now) + 3

    @pytest.mark.unit
    @pytest.mark.parametrize("tokens", [0, -50])
    async def test_rejects_requests_below_one_token(self, limiter, tokens):
        override = {"capacity": 10, "refill_rate": 1.0}
        await limiter.is_allowed("svc:op", limits_override=override)

        with pytest.raises(ValidationException) as exc_info:
            await limiter.is_allowed("svc:op", tokens, limits_override=override)

        assert exc_info.value.details["field"] == "tokens"
        status = await limiter.get_status("svc:op")
        assert status["tokens"] == 9
        assert status["tokens"] <= status["capacity"]

    @pytest.mark.unit
    async def test_check_multiple_rejects_before_consuming(self, limiter):
        with pytest.raises(ValidationException):
            await limiter.check_multiple({"openai:chat": 5, "ringover:download": 0})

        status = await limiter.get_status("openai:chat")
        assert status["tokens"] == 100

    @pytest.mark.unit
    async def test_headers(self, limiter):
        result = await limiter.is_allowed("openai:transcribe")

        assert result.to_headers("openai:transcribe") == {
            "X-RateLimit-Limit": "50",
            "X-RateLimit-Remaining": "49",
            "X-RateLimit-Reset": str(result.reset_time),
            "X-RateLimit-Key": "openai:transcribe",
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    @given(
        ops=lists(
            tuples(
                integers(min_value=1, max_value=4),
                floats(min_value=0.0, max_value=20.0, allow_nan=False),
            ),
            min_size=1,
            max_size=25,
        )
    )
    @h_settings(
        max_examples=30,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
        deadline=None,
    )
    async def test_never_grants_more_than_capacity_plus_refill(self, ops, session_factory):
        """Granted tokens are bounded by the starting capacity plus what time refilled"""
        clock = FakeClock()
        limiter = RateLimiter(session_factory, RateLimiterConfig(), clock=clock)
        key = f"prop:{next(_prop_counter)}"
        override = {"capacity": 10, "refill_rate": 0.5}

        granted = 0
        elapsed = 0.0
        for tokens, advance in ops:
            clock.advance(advance)
            elapsed += advance
            result = await limiter.is_allowed(key, tokens, limits_override=override)
            assert 0 <= result.remaining <= 10
            if result.allowed:
                granted += tokens

        assert granted <= 10 + 0.5 * elapsed + 1e-6


class TestLimitResolution:
    """Service config table, built-in limits and global defaults"""

    @pytest.mark.unit
    async def test_service_config_table_wins(self, limiter, session_factory):
        async with session_factory() as session:
            session.add(RateLimitConfig(
                service_name="pipedrive",
                max_requests_per_minute=60,
                max_requests_per_hour=1000,
            ))
            await session.commit()

        result = await limiter.is_allowed("pipedrive:api")

        assert result.capacity == 60
        assert result.refill_rate == 1.0

    @pytest.mark.unit
    async def test_builtin_limit_by_service_prefix(self, limiter):
        result = await limiter.is_allowed("openai:embeddings")

        assert result.capacity == 50

    @pytest.mark.unit
    async def test_unknown_service_uses_defaults(self, limiter):
        result = await limiter.is_allowed("custom:thing")

        assert result.capacity == 100
        assert result.refill_rate == pytest.approx(10.0 / 60.0)

    @pytest.mark.unit
    async def test_partial_override(self, limiter):
        result = await limiter.is_allowed("openai:chat", limits_override={"capacity": 7})

        assert result.capacity == 7
        assert result.refill_rate == 1.0


class TestBucketOperations:
    """check_multiple, get_status, reset, cleanup"""

    @pytest.mark.unit
    async def test_check_multiple_requires_every_key(self, limiter):
        await limiter.is_allowed("ringover:download", tokens=20)

        result = await limiter.check_multiple({"openai:chat": 1, "ringover:download": 1})

        assert result.allowed is False
        assert result.results["openai:chat"].allowed is True
        assert result.results["ringover:download"].allowed is False

    @pytest.mark.unit
    async def test_get_status_does_not_consume(self, limiter):
        await limiter.is_allowed("openai:chat", tokens=10)

        before = await limiter.get_status("openai:chat")
        after = await limiter.get_status("openai:chat")

        assert before["tokens"] == after["tokens"] == 90
        assert before["passthrough"] is False

    @pytest.mark.unit
    async def test_get_status_unknown_key_is_full(self, limiter):
        status = await limiter.get_status("pipedrive:api")

        assert status["tokens"] == status["capacity"] == 200
        assert await limiter.get_all_buckets() == []

    @pytest.mark.unit
    async def test_reset_refills_bucket(self, limiter):
        await limiter.is_allowed("openai:chat", tokens=50)

        assert await limiter.reset("openai:chat") is True
        result = await limiter.is_allowed("openai:chat")

        assert result.remaining == 99
        assert await limiter.reset("never:used") is False

    @pytest.mark.unit
    async def test_cleanup_removes_idle_buckets(self, limiter, fake_clock):
        await limiter.is_allowed("openai:chat")
        fake_clock.advance(limiter.config.cleanup_interval_seconds + 1)
        await limiter.is_allowed("pipedrive:api")

        removed = await limiter.cleanup()

        keys = [bucket["key"] for bucket in await limiter.get_all_buckets()]
        assert removed == 1
        assert keys == ["pipedrive:api"]

    @pytest.mark.unit
    async def test_get_headers(self, limiter):
        headers = await limiter.get_headers("ringover:api")

        assert headers["X-RateLimit-Limit"] == "300"
        assert headers["X-RateLimit-Remaining"] == "300"


class TestPassthrough:
    """Missing tables degrade to allow-everything"""

    @pytest.fixture
    def bare_limiter(self, bare_engine) -> RateLimiter:
        return RateLimiter(create_session_factory(bare_engine), RateLimiterConfig())

    @pytest.mark.unit
    async def test_detects_missing_tables(self, bare_limiter):
        assert await bare_limiter.probe() is True
        assert bare_limiter.passthrough is True

    @pytest.mark.unit
    async def test_every_check_allowed_at_full_capacity(self, bare_limiter):
        for _ in range(5):
            result = await bare_limiter.is_allowed("ringover:download", tokens=20)
            assert result.allowed is True
            assert result.remaining == 20

    @pytest.mark.unit
    async def test_admin_operations_are_noops(self, bare_limiter):
        assert await bare_limiter.get_all_buckets() == []
        assert await bare_limiter.reset("openai:chat") is False
        assert await bare_limiter.cleanup() == 0
        assert (await bare_limiter.get_status("openai:chat"))["passthrough"] is True

    @pytest.mark.unit
    async def test_create_checks_tables_eagerly(self, session_factory):
        limiter = await RateLimiter.create(session_factory)

        assert limiter.passthrough is False
