"""
Resilient HTTP Client

Every outbound call to Ringover, OpenAI and Pipedrive goes through here:
local token-bucket admission, retries with backoff (honoring upstream
Retry-After), correlation headers, and one monitoring row per request.
Large bodies such as call recordings are read through stream().
"""
import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable
from urllib.parse import urlsplit

import httpx

from app.core.exceptions import (
    AppException,
    ExternalRequestError,
    RateLimitExceededError,
    UpstreamHTTPError,
)
from app.core.logging import get_logger
from app.core.rate_limiter import RateLimiter
from app.core.retry import RetryExecutor, RetryPolicy
from app.domain.services.monitoring_service import ApiMonitor

logger = get_logger(__name__)

# service -> ordered (path fragment, operation); first match wins
OPERATION_PATTERNS: dict[str, list[tuple[str, str]]] = {
    "openai": [
        ("/audio/transcriptions", "transcribe"),
        ("/chat/completions", "chat"),
    ],
    "ringover": [
        ("/recordings", "download"),
        (".mp3", "download"),
        (".wav", "download"),
    ],
    "pipedrive": [],
}

DEFAULT_OPERATION = "api"


def infer_operation(service: str, path: str) -> str:
    """
    Operation segment of the rate-limit key for a request path.

    Unmapped paths collapse into the service's generic ``api`` bucket.
    """
    lowered = path.lower()
    for fragment, operation in OPERATION_PATTERNS.get(service, []):
        if fragment in lowered:
            return operation
    return DEFAULT_OPERATION


def parse_retry_after(value: str | None, cap_seconds: float) -> float | None:
    """Retry-After in seconds (numeric form only), clamped to [0, cap]"""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if seconds != seconds:  # NaN
        return None
    return max(0.0, min(seconds, cap_seconds))


@dataclass
class HttpClientConfig:
    connect_timeout_seconds: float = 10.0
    timeout_seconds: float = 15.0
    user_agent: str = "call-sync/1.0"
    max_retry_after_seconds: float = 300.0

    @classmethod
    def from_settings(cls, settings: Any) -> "HttpClientConfig":
        return cls(
            connect_timeout_seconds=settings.HTTP_CONNECT_TIMEOUT_SECONDS,
            timeout_seconds=settings.HTTP_TIMEOUT_SECONDS,
            user_agent=settings.HTTP_USER_AGENT,
            max_retry_after_seconds=settings.HTTP_MAX_RETRY_AFTER_SECONDS,
        )


class ResilientHttpClient:
    """
    httpx.AsyncClient wrapped with rate limiting, retries and monitoring.

    Local rate-limit denial raises RateLimitExceededError immediately and is
    never retried. An upstream 429 is retried like any other retryable status.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        *,
        retry_executor: RetryExecutor | None = None,
        monitor: ApiMonitor | None = None,
        config: HttpClientConfig | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or HttpClientConfig()
        self.rate_limiter = rate_limiter
        self.retry_executor = retry_executor or RetryExecutor(RetryPolicy.for_api_calls())
        self.monitor = monitor
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                self.config.timeout_seconds,
                connect=self.config.connect_timeout_seconds,
            ),
            headers={"User-Agent": self.config.user_agent},
            follow_redirects=True,
        )

    async def __aenter__(self) -> "ResilientHttpClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def request(
        self,
        method: str,
        url: str,
        *,
        service: str,
        correlation_id: str | None = None,
        batch_id: str | None = None,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        json: Any = None,
        data: dict[str, Any] | None = None,
        files: Any = None,
        content: bytes | None = None,
    ) -> httpx.Response:
        """
        Send one logical request.

        Raises:
            RateLimitExceededError: local bucket denied the call
            UpstreamHTTPError: final response was >= 400
            ExternalRequestError: network failure on the final attempt
        """
        return await self._execute(
            method, url,
            service=service,
            correlation_id=correlation_id,
            batch_id=batch_id,
            headers=headers,
            params=params,
            json=json,
            data=data,
            files=files,
            content=content,
            stream=False,
        )

    @asynccontextmanager
    async def stream(
        self,
        method: str,
        url: str,
        *,
        service: str,
        correlation_id: str | None = None,
        batch_id: str | None = None,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
    ) -> AsyncIterator[httpx.Response]:
        """
        Like request(), but the body is left unread for ``aiter_bytes()``.

        Admission, retries and the monitoring row cover getting the response
        headers; a failure while reading the body is the caller's to handle.
        The response is closed when the block exits.
        """
        response = await self._execute(
            method, url,
            service=service,
            correlation_id=correlation_id,
            batch_id=batch_id,
            headers=headers,
            params=params,
            stream=True,
        )
        try:
            yield response
        finally:
            await response.aclose()

    async def _execute(
        self,
        method: str,
        url: str,
        *,
        service: str,
        correlation_id: str | None,
        batch_id: str | None,
        headers: dict[str, str] | None,
        params: dict[str, Any] | None,
        json: Any = None,
        data: dict[str, Any] | None = None,
        files: Any = None,
        content: bytes | None = None,
        stream: bool,
    ) -> httpx.Response:
        method = method.upper()
        path = urlsplit(url).path or url
        rate_limit_key = f"{service}:{infer_operation(service, path)}"

        admission = await self.rate_limiter.is_allowed(rate_limit_key)
        if not admission.allowed:
            logger.warning(
                f"Outbound call to {service} blocked by local rate limit",
                extra_data={
                    "service": service,
                    "rate_limit_key": rate_limit_key,
                    "method": method,
                    "path": path,
                    "reset_time": admission.reset_time,
                    "correlation_id": correlation_id,
                }
            )
            raise RateLimitExceededError(rate_limit_key, admission.reset_time, admission.remaining)

        request_headers = dict(headers or {})
        if correlation_id:
            request_headers["X-Correlation-ID"] = correlation_id
        if batch_id:
            request_headers["X-Batch-ID"] = batch_id

        max_attempts = self.retry_executor.policy.max_attempts
        retryable_statuses = self.retry_executor.policy.retryable_status_codes
        attempts = 0

        async def send() -> httpx.Response:
            nonlocal attempts
            attempts += 1
            request = self._client.build_request(
                method,
                url,
                headers=request_headers,
                params=params,
                json=json,
                data=data,
                files=files,
                content=content,
            )
            try:
                response = await self._client.send(request, stream=stream)
            except httpx.TransportError as e:
                raise ExternalRequestError(service, method, path, e) from e

            if response.status_code < 400:
                return response

            if stream:
                # the exception carries the error body
                try:
                    await response.aread()
                except httpx.TransportError as e:
                    raise ExternalRequestError(service, method, path, e) from e
                finally:
                    await response.aclose()

            retry_after = None
            if response.status_code in retryable_statuses:
                retry_after = parse_retry_after(
                    response.headers.get("Retry-After"),
                    self.config.max_retry_after_seconds,
                )
                if retry_after and attempts < max_attempts:
                    logger.info(
                        f"{service} asked to retry after {retry_after:.0f}s",
                        extra_data={
                            "service": service,
                            "status_code": response.status_code,
                            "retry_after_seconds": retry_after,
                            "correlation_id": correlation_id,
                        }
                    )
                    await self._sleep(retry_after)

            raise UpstreamHTTPError.from_response(
                service, response, retry_after_seconds=retry_after
            )

        started = time.perf_counter()
        try:
            response = await self.retry_executor.execute(
                send,
                operation_name=f"{method} {rate_limit_key}",
                correlation_id=correlation_id,
            )
        except Exception as e:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            status_code = e.upstream_status if isinstance(e, UpstreamHTTPError) else None
            message = e.message if isinstance(e, AppException) else str(e)
            logger.error(
                f"External API call to {service} failed",
                extra_data={
                    "service": service,
                    "method": method,
                    "path": path,
                    "status_code": status_code,
                    "attempts": attempts,
                    "duration_ms": elapsed_ms,
                    "correlation_id": correlation_id,
                    "batch_id": batch_id,
                    "error": message,
                }
            )
            await self._record(
                service, path, method, elapsed_ms, status_code, False,
                correlation_id, batch_id, message,
            )
            raise

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            f"External API call to {service} completed",
            extra_data={
                "service": service,
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "attempts": attempts,
                "duration_ms": elapsed_ms,
                "correlation_id": correlation_id,
                "batch_id": batch_id,
            }
        )
        await self._record(
            service, path, method, elapsed_ms, response.status_code, True,
            correlation_id, batch_id, None,
        )
        response.headers.update(admission.to_headers(rate_limit_key))
        return response

    async def _record(
        self,
        service: str,
        path: str,
        method: str,
        elapsed_ms: int,
        status_code: int | None,
        success: bool,
        correlation_id: str | None,
        batch_id: str | None,
        error_message: str | None,
    ) -> None:
        if self.monitor is None:
            return
        try:
            await self.monitor.record(
                service=service,
                request_path=path,
                method=method,
                response_time_ms=elapsed_ms,
                status_code=status_code,
                success=success,
                correlation_id=correlation_id,
                batch_id=batch_id,
                error_message=error_message,
            )
        except Exception as e:
            logger.error(
                "Failed to record API monitoring row",
                extra_data={"service": service, "path": path, "error": str(e)}
            )

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)
