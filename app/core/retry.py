"""
Retry Executor

Exponential backoff with jitter around a unit of work, normally one outbound
HTTP call. Errors are classified as retryable or fatal; fatal errors propagate
on the first occurrence.
"""
import asyncio
import inspect
import random
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({429, 500, 502, 503, 504})

# Network-level failures. ExternalRequestError is retryable through its own flag.
DEFAULT_RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    httpx.TransportError,
    ConnectionError,
    TimeoutError,
)


@dataclass
class RetryPolicy:
    """Configuration bundle for RetryExecutor"""
    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    jitter_factor: float = 0.1
    retryable_status_codes: frozenset[int] = DEFAULT_RETRYABLE_STATUS_CODES
    retryable_exceptions: tuple[type[BaseException], ...] = DEFAULT_RETRYABLE_EXCEPTIONS
    # Ceiling across all attempts combined; None means attempts alone bound the run
    deadline_seconds: float | None = None

    def __post_init__(self) -> None:
        self.max_attempts = max(1, int(self.max_attempts))
        self.base_delay_ms = max(0, int(self.base_delay_ms))
        self.max_delay_ms = max(self.base_delay_ms, int(self.max_delay_ms))
        self.jitter_factor = max(0.0, min(1.0, float(self.jitter_factor)))
        self.retryable_status_codes = frozenset(self.retryable_status_codes)
        if self.deadline_seconds is not None and self.deadline_seconds <= 0:
            self.deadline_seconds = None

    @classmethod
    def for_api_calls(cls) -> "RetryPolicy":
        """Outbound API calls: 3 attempts, 1s base, 10s cap"""
        return cls(max_attempts=3, base_delay_ms=1000, max_delay_ms=10000, jitter_factor=0.1)

    @classmethod
    def for_critical_operations(cls) -> "RetryPolicy":
        """Operations that must not be lost: 5 attempts, 2s base, 30s cap"""
        return cls(max_attempts=5, base_delay_ms=2000, max_delay_ms=30000, jitter_factor=0.2)

    @classmethod
    def for_background_jobs(cls) -> "RetryPolicy":
        """Work inside queue jobs: 3 attempts, 5s base, 60s cap"""
        return cls(max_attempts=3, base_delay_ms=5000, max_delay_ms=60000, jitter_factor=0.3)

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay_ms=settings.RETRY_BASE_DELAY_MS,
            max_delay_ms=settings.RETRY_MAX_DELAY_MS,
            jitter_factor=settings.RETRY_JITTER_FACTOR,
            retryable_status_codes=settings.retry_status_codes,
            deadline_seconds=settings.RETRY_DEADLINE_SECONDS or None,
        )


@dataclass
class RetryExecutor:
    """
    Runs an operation up to ``policy.max_attempts`` times.

    Sleep and randomness are injectable so tests can observe the exact delays
    without waiting for them.
    """
    policy: RetryPolicy = field(default_factory=RetryPolicy)
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    rng: random.Random = field(default_factory=random.Random)
    clock: Callable[[], float] = time.monotonic

    def backoff_delay_ms(self, attempt: int) -> int:
        """Deterministic part of the delay after ``attempt`` failed: base * 2^(attempt-1), capped"""
        if attempt < 1:
            attempt = 1
        if self.policy.base_delay_ms == 0:
            return 0
        exponent = attempt - 1
        # capping the exponent keeps huge attempt numbers from building huge ints
        if exponent >= 63 or self.policy.base_delay_ms * (1 << exponent) >= self.policy.max_delay_ms:
            return self.policy.max_delay_ms
        return self.policy.base_delay_ms * (1 << exponent)

    def compute_delay_ms(self, attempt: int) -> int:
        """Backoff delay plus jitter in [0, delay * jitter_factor]"""
        delay = self.backoff_delay_ms(attempt)
        jitter = delay * self.policy.jitter_factor * self.rng.random()
        return int(delay + jitter)

    def is_retryable(self, error: BaseException) -> bool:
        """Classify an error as transient (worth another attempt) or fatal"""
        explicit = getattr(error, "retryable", None)
        if explicit is not None:
            return bool(explicit)

        if isinstance(error, self.policy.retryable_exceptions):
            return True

        status = _extract_status_code(error)
        if status is not None:
            return status in self.policy.retryable_status_codes

        # Last resort for untyped errors: a retryable code somewhere in the message
        message = str(error)
        return any(
            re.search(rf"(?<!\d){code}(?!\d)", message)
            for code in self.policy.retryable_status_codes
        )

    async def execute(
        self,
        operation: Callable[[], T | Awaitable[T]],
        operation_name: str | None = None,
        correlation_id: str | None = None,
    ) -> T:
        """
        Execute ``operation`` with retries.

        Args:
            operation: zero-argument callable, sync or async
            operation_name: name used in log lines
            correlation_id: tracing id attached to every log line

        Returns:
            The operation's result

        Raises:
            The last error once attempts (or the deadline) are exhausted, or
            the first non-retryable error.
        """
        name = operation_name or "operation"
        started = self.clock()
        attempt = 1

        while True:
            try:
                result = operation()
                if inspect.isawaitable(result):
                    result = await result

                if attempt > 1:
                    logger.info(
                        f"Retry successful for {name} on attempt {attempt}",
                        extra_data={
                            "operation": name,
                            "attempt": attempt,
                            "correlation_id": correlation_id,
                        }
                    )
                return result

            except Exception as e:
                if not self.is_retryable(e):
                    logger.warning(
                        f"Non-retryable error for {name}: {e}",
                        extra_data={
                            "operation": name,
                            "attempt": attempt,
                            "error": str(e),
                            "error_type": type(e).__name__,
                            "correlation_id": correlation_id,
                        }
                    )
                    raise

                if attempt >= self.policy.max_attempts:
                    self._log_exhausted(name, attempt, e, correlation_id, "max_attempts")
                    raise

                delay_ms = self.compute_delay_ms(attempt)

                if self.policy.deadline_seconds is not None:
                    elapsed = self.clock() - started
                    if elapsed + delay_ms / 1000.0 > self.policy.deadline_seconds:
                        self._log_exhausted(name, attempt, e, correlation_id, "deadline_exceeded")
                        raise

                logger.warning(
                    f"Retry attempt {attempt}/{self.policy.max_attempts} for {name} "
                    f"(delay: {delay_ms}ms): {e}",
                    extra_data={
                        "operation": name,
                        "attempt": attempt,
                        "max_attempts": self.policy.max_attempts,
                        "delay_ms": delay_ms,
                        "error": str(e),
                        "error_type": type(e).__name__,
                        "correlation_id": correlation_id,
                    }
                )

                await self.sleep(delay_ms / 1000.0)
                attempt += 1

    def _log_exhausted(
        self,
        name: str,
        attempt: int,
        error: Exception,
        correlation_id: str | None,
        reason: str,
    ) -> None:
        logger.error(
            f"Max retry attempts ({attempt}) reached for {name}: {error}",
            extra_data={
                "operation": name,
                "attempts": attempt,
                "reason": reason,
                "error": str(error),
                "error_type": type(error).__name__,
                "correlation_id": correlation_id,
            }
        )


def _extract_status_code(error: BaseException) -> int | None:
    """HTTP status carried by the error, if it carries one"""
    upstream = getattr(error, "upstream_status", None)
    if isinstance(upstream, int):
        return upstream
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None
