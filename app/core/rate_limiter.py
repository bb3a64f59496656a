"""
Token-Bucket Rate Limiter

Persistent buckets keyed by ``service:operation``. Every check lazily refills
the bucket from the time elapsed since ``last_refill``. If the backing tables
are missing (or the store cannot be probed) the limiter degrades to
passthrough: every check is allowed with full capacity, so a missing
rate-limit infrastructure never blocks business traffic.
"""
import asyncio
import math
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Callable

from sqlalchemy import delete, inspect, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import ValidationException
from app.core.logging import get_logger, log_async_operation
from app.db.models.rate_limit import RateLimitBucket, RateLimitConfig

logger = get_logger(__name__)

# Fallback limits when rate_limit_config has no row for the service:
# key -> (capacity, refill tokens per second)
BUILTIN_LIMITS: dict[str, tuple[int, float]] = {
    "openai:transcribe": (50, 0.5),      # 30 per minute
    "openai:chat": (100, 1.0),           # 60 per minute
    "pipedrive:api": (200, 2.0),         # 120 per minute
    "ringover:api": (300, 3.0),          # 180 per minute
    "ringover:download": (20, 0.2),      # 12 per minute
}

REQUIRED_TABLES = ("rate_limit_buckets",)


@dataclass
class RateLimiterConfig:
    """Global defaults for keys without a service config or built-in limit"""
    default_capacity: int = 100
    default_refill_per_minute: float = 10.0
    cleanup_interval_seconds: int = 3600
    builtin_limits: dict[str, tuple[int, float]] = field(
        default_factory=lambda: dict(BUILTIN_LIMITS)
    )

    @property
    def default_refill_rate(self) -> float:
        """Tokens per second"""
        return self.default_refill_per_minute / 60.0

    @classmethod
    def from_settings(cls, settings: Any) -> "RateLimiterConfig":
        return cls(
            default_capacity=settings.RATE_LIMIT_DEFAULT_CAPACITY,
            default_refill_per_minute=settings.RATE_LIMIT_DEFAULT_REFILL_PER_MINUTE,
            cleanup_interval_seconds=settings.RATE_LIMIT_CLEANUP_INTERVAL_SECONDS,
        )


@dataclass
class RateLimitResult:
    """Outcome of one admission check"""
    allowed: bool
    remaining: int
    reset_time: int  # epoch seconds when the bucket is full again
    capacity: int
    refill_rate: float  # tokens per second

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_headers(self, key: str) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.capacity),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_time),
            "X-RateLimit-Key": key,
        }


@dataclass
class MultiRateLimitResult:
    """Aggregate of check_multiple: allowed only if every key was allowed"""
    allowed: bool
    results: dict[str, RateLimitResult]

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "results": {key: result.to_dict() for key, result in self.results.items()},
        }


def _reset_time(now: float, capacity: int, available: float, refill_rate: float) -> int:
    if refill_rate <= 0:
        return int(now)
    return int(now) + int(math.ceil(max(0.0, capacity - available) / refill_rate))


def _validate_tokens(key: str, tokens: int) -> None:
    if tokens < 1:
        raise ValidationException(
            message=f"Rate limit check for {key} must request at least one token",
            field="tokens",
            details={"rate_limit_key": key, "tokens": tokens},
        )


class RateLimiter:
    """
    Token-bucket limiter persisted in ``rate_limit_buckets``.

    Use ``await RateLimiter.create(...)`` to probe the tables up front; a
    limiter built with the plain constructor probes lazily on first use.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: RateLimiterConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self._session_factory = session_factory
        self.config = config or RateLimiterConfig()
        self._clock = clock
        self._passthrough: bool | None = None
        self._probe_lock = asyncio.Lock()
        # service_name -> (capacity, refill/sec) or None; non-authoritative
        self._service_config_cache: dict[str, tuple[int, float] | None] = {}

    @classmethod
    async def create(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        config: RateLimiterConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> "RateLimiter":
        limiter = cls(session_factory, config, clock=clock)
        await limiter.probe()
        return limiter

    @property
    def passthrough(self) -> bool:
        """True once the probe found the backing store unusable"""
        return bool(self._passthrough)

    async def probe(self) -> bool:
        """Check for the backing tables; returns True when passthrough is active"""
        async with self._probe_lock:
            if self._passthrough is not None:
                return self._passthrough

            error: str | None = None
            missing: list[str] = []
            try:
                async with self._session_factory() as session:
                    conn = await session.connection()
                    missing = await conn.run_sync(
                        lambda sync_conn: [
                            table for table in REQUIRED_TABLES
                            if not inspect(sync_conn).has_table(table)
                        ]
                    )
            except (SQLAlchemyError, OSError) as e:
                error = str(e)

            self._passthrough = bool(missing) or error is not None
            if self._passthrough:
                logger.warning(
                    "Rate limiter running in passthrough mode, rate limiting is inactive",
                    extra_data={"missing_tables": missing, "error": error}
                )
            return self._passthrough

    async def _is_passthrough(self) -> bool:
        if self._passthrough is None:
            await self.probe()
        return bool(self._passthrough)

    # ==================== limit resolution ====================

    async def _service_limits(self, service: str) -> tuple[int, float] | None:
        if service in self._service_config_cache:
            return self._service_config_cache[service]

        limits: tuple[int, float] | None = None
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(RateLimitConfig).where(RateLimitConfig.service_name == service)
                )
                row = result.scalar_one_or_none()
                if row is not None and row.max_requests_per_minute > 0:
                    limits = (row.max_requests_per_minute, row.max_requests_per_minute / 60.0)
        except SQLAlchemyError as e:
            # rate_limit_config is optional; buckets still work on built-in limits
            logger.debug(
                "Rate limit config lookup failed, using built-in limits",
                extra_data={"service": service, "error": str(e)}
            )

        self._service_config_cache[service] = limits
        return limits

    def _builtin_limits(self, key: str) -> tuple[int, float]:
        table = self.config.builtin_limits
        if key in table:
            return table[key]

        service = key.split(":", 1)[0]
        for pattern, limits in table.items():
            if pattern.split(":", 1)[0] == service:
                return limits

        return self.config.default_capacity, self.config.default_refill_rate

    async def _resolve_limits(
        self,
        key: str,
        limits_override: dict[str, Any] | None,
        *,
        use_store: bool = True,
    ) -> tuple[int, float]:
        override = limits_override or {}
        if "capacity" in override and "refill_rate" in override:
            return int(override["capacity"]), float(override["refill_rate"])

        service = key.split(":", 1)[0]
        limits = await self._service_limits(service) if use_store else None
        if limits is None:
            limits = self._builtin_limits(key)

        capacity = int(override.get("capacity", limits[0]))
        refill_rate = float(override.get("refill_rate", limits[1]))
        return capacity, refill_rate

    def clear_config_cache(self) -> None:
        self._service_config_cache.clear()

    # ==================== bucket operations ====================

    async def _get_or_create_bucket(
        self,
        session: AsyncSession,
        key: str,
        capacity: int,
        now: float,
    ) -> RateLimitBucket:
        result = await session.execute(
            select(RateLimitBucket)
            .where(RateLimitBucket.bucket_key == key)
            .with_for_update()
        )
        bucket = result.scalar_one_or_none()
        if bucket is not None:
            return bucket

        bucket = RateLimitBucket(
            bucket_key=key,
            tokens=float(capacity),
            capacity=capacity,
            last_refill=now,
        )
        session.add(bucket)
        try:
            await session.flush()
        except IntegrityError:
            # another worker created it between our select and insert
            await session.rollback()
            result = await session.execute(
                select(RateLimitBucket)
                .where(RateLimitBucket.bucket_key == key)
                .with_for_update()
            )
            bucket = result.scalar_one()
        return bucket

    @staticmethod
    def _available_tokens(
        bucket: RateLimitBucket,
        capacity: int,
        refill_rate: float,
        now: float,
    ) -> float:
        elapsed = max(0.0, now - bucket.last_refill)
        available = min(float(capacity), bucket.tokens + elapsed * refill_rate)
        return max(0.0, available)

    def _passthrough_result(self, capacity: int, refill_rate: float) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            remaining=capacity,
            reset_time=int(self._clock()),
            capacity=capacity,
            refill_rate=refill_rate,
        )

    async def is_allowed(
        self,
        key: str,
        tokens: int = 1,
        limits_override: dict[str, Any] | None = None,
    ) -> RateLimitResult:
        """
        Check whether ``tokens`` may be consumed from the bucket for ``key``
        and consume them if so.

        Args:
            key: ``service:operation`` (e.g. ``openai:transcribe``)
            tokens: tokens to consume
            limits_override: optional ``capacity`` / ``refill_rate`` for this check

        Returns:
            RateLimitResult. On denial the partial refill is still persisted.

        Raises:
            ValidationException: ``tokens`` is below 1
        """
        _validate_tokens(key, tokens)
        if await self._is_passthrough():
            capacity, refill_rate = await self._resolve_limits(
                key, limits_override, use_store=False
            )
            return self._passthrough_result(capacity, refill_rate)

        capacity, refill_rate = await self._resolve_limits(key, limits_override)
        now = self._clock()

        async with self._session_factory() as session:
            bucket = await self._get_or_create_bucket(session, key, capacity, now)
            available = self._available_tokens(bucket, capacity, refill_rate, now)

            allowed = available >= tokens
            stored = available - tokens if allowed else available
            stored = min(float(capacity), max(0.0, stored))

            bucket.tokens = stored
            bucket.capacity = capacity
            bucket.last_refill = now
            await session.commit()

        result = RateLimitResult(
            allowed=allowed,
            remaining=int(stored),
            reset_time=_reset_time(now, capacity, stored, refill_rate),
            capacity=capacity,
            refill_rate=refill_rate,
        )

        if not allowed:
            logger.warning(
                f"Rate limit denied for {key}",
                extra_data={
                    "rate_limit_key": key,
                    "tokens_requested": tokens,
                    "tokens_available": round(available, 3),
                    "reset_time": result.reset_time,
                }
            )
        return result

    async def check_multiple(self, checks: dict[str, int]) -> MultiRateLimitResult:
        """Check (and consume) every key; allowed only if all were allowed"""
        for key, tokens in checks.items():
            _validate_tokens(key, tokens)

        results: dict[str, RateLimitResult] = {}
        all_allowed = True
        for key, tokens in checks.items():
            result = await self.is_allowed(key, tokens)
            results[key] = result
            if not result.allowed:
                all_allowed = False
        return MultiRateLimitResult(allowed=all_allowed, results=results)

    async def get_status(self, key: str) -> dict[str, Any]:
        """Current state of the bucket, refilled to now, without consuming or persisting"""
        if await self._is_passthrough():
            capacity, refill_rate = await self._resolve_limits(key, None, use_store=False)
            now = self._clock()
            return {
                "key": key,
                "tokens": capacity,
                "capacity": capacity,
                "refill_rate": refill_rate,
                "last_refill": now,
                "reset_time": int(now),
                "passthrough": True,
            }

        capacity, refill_rate = await self._resolve_limits(key, None)
        now = self._clock()

        async with self._session_factory() as session:
            result = await session.execute(
                select(RateLimitBucket).where(RateLimitBucket.bucket_key == key)
            )
            bucket = result.scalar_one_or_none()

        if bucket is None:
            current, last_refill = float(capacity), now
        else:
            current = self._available_tokens(bucket, capacity, refill_rate, now)
            last_refill = bucket.last_refill

        return {
            "key": key,
            "tokens": int(current),
            "capacity": capacity,
            "refill_rate": refill_rate,
            "last_refill": last_refill,
            "reset_time": _reset_time(now, capacity, current, refill_rate),
            "passthrough": False,
        }

    async def get_headers(self, key: str) -> dict[str, str]:
        """X-RateLimit-* headers for the bucket's current state"""
        status = await self.get_status(key)
        return {
            "X-RateLimit-Limit": str(status["capacity"]),
            "X-RateLimit-Remaining": str(status["tokens"]),
            "X-RateLimit-Reset": str(status["reset_time"]),
            "X-RateLimit-Key": key,
        }

    async def reset(self, key: str) -> bool:
        """Admin override: drop the bucket so the next check starts full"""
        if await self._is_passthrough():
            return False

        async with self._session_factory() as session:
            result = await session.execute(
                delete(RateLimitBucket).where(RateLimitBucket.bucket_key == key)
            )
            await session.commit()

        deleted = result.rowcount > 0
        logger.info(
            "Rate limit bucket reset",
            extra_data={"rate_limit_key": key, "deleted": deleted}
        )
        return deleted

    async def get_all_buckets(self) -> list[dict[str, Any]]:
        if await self._is_passthrough():
            return []

        async with self._session_factory() as session:
            result = await session.execute(
                select(RateLimitBucket).order_by(RateLimitBucket.last_refill.desc())
            )
            buckets = result.scalars().all()

        return [
            {
                "key": bucket.bucket_key,
                "tokens": bucket.tokens,
                "capacity": bucket.capacity,
                "last_refill": bucket.last_refill,
                "created_at": bucket.created_at,
            }
            for bucket in buckets
        ]

    @log_async_operation("rate_limit_cleanup")
    async def cleanup(self) -> int:
        """Delete buckets untouched for longer than the cleanup interval"""
        if await self._is_passthrough():
            return 0

        cutoff = self._clock() - self.config.cleanup_interval_seconds
        async with self._session_factory() as session:
            result = await session.execute(
                delete(RateLimitBucket).where(RateLimitBucket.last_refill < cutoff)
            )
            await session.commit()
        return result.rowcount
