"""
Custom Exception Hierarchy

Structured exceptions shared by the resilience layer, the task queue and the
HTTP surface. ``retryable`` is read by the RetryExecutor before any heuristic:
True forces a retry, False forbids one, None defers to the policy.
"""
from datetime import datetime, timezone
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Webhook errors (2xxx)
    WEBHOOK_INVALID_SIGNATURE = "ERR_2001"
    WEBHOOK_INVALID_PAYLOAD = "ERR_2002"

    # Task queue errors (3xxx)
    TASK_NOT_FOUND = "ERR_3001"
    TASK_UNKNOWN_TYPE = "ERR_3002"
    TASK_INVALID_PAYLOAD = "ERR_3003"
    TASK_NOT_DEAD_LETTERED = "ERR_3004"

    # External service errors (5xxx)
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"
    EXTERNAL_HTTP_ERROR = "ERR_5005"
    EXTERNAL_RATE_LIMITED = "ERR_5006"


class AppException(Exception):
    """Base exception for all application errors"""

    retryable: bool | None = None

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    retryable = False

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=422,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    retryable = False

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class WebhookSignatureError(AppException):
    """Raised when an inbound webhook fails HMAC verification"""

    retryable = False

    def __init__(self, provider: str):
        super().__init__(
            message=f"Invalid {provider} webhook signature",
            error_code=ErrorCode.WEBHOOK_INVALID_SIGNATURE,
            status_code=401,
            details={"provider": provider}
        )


# ==================== External services ====================

class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.service_name = service_name
        self.details["service"] = service_name


class UpstreamHTTPError(ExternalServiceException):
    """Upstream answered with a non-2xx status.

    ``upstream_status`` is what the RetryExecutor classifies on; the generic
    ``status_code`` stays the one returned to our own API callers.
    """

    def __init__(
        self,
        service_name: str,
        upstream_status: int,
        method: str,
        url: str,
        *,
        response_text: str = "",
        retry_after_seconds: float | None = None,
        max_response_chars: int = 500,
    ):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} {method} {url} returned status {upstream_status}",
            error_code=ErrorCode.EXTERNAL_HTTP_ERROR,
            details={
                "upstream_status": upstream_status,
                "method": method,
                "url": url,
                "response_text": response_text[:max_response_chars],
                "retry_after_seconds": retry_after_seconds,
            }
        )
        self.upstream_status = upstream_status
        self.status_code = 502

    @classmethod
    def from_response(
        cls,
        service_name: str,
        response: Any,
        *,
        retry_after_seconds: float | None = None,
    ) -> "UpstreamHTTPError":
        """Build the error from an ``httpx.Response`` (or anything shaped like one)"""
        request = getattr(response, "request", None)
        return cls(
            service_name=service_name,
            upstream_status=getattr(response, "status_code", 0),
            method=getattr(request, "method", "?"),
            url=str(getattr(request, "url", "?")),
            response_text=getattr(response, "text", "") or "",
            retry_after_seconds=retry_after_seconds,
        )


class ExternalRequestError(ExternalServiceException):
    """Network-level failure (DNS, connect, read timeout), always transient"""

    retryable = True

    def __init__(self, service_name: str, method: str, url: str, error: Exception):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} {method} {url} failed: {type(error).__name__}: {error}",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"method": method, "url": url, "error_type": type(error).__name__}
        )


class RateLimitExceededError(ExternalServiceException):
    """Local token bucket denied the call. Not an upstream 429, never retried."""

    retryable = False

    def __init__(self, rate_limit_key: str, reset_time: int, remaining: int = 0):
        service_name = rate_limit_key.split(":", 1)[0]
        super().__init__(
            service_name=service_name,
            message=f"Local rate limit exceeded for {rate_limit_key}",
            error_code=ErrorCode.EXTERNAL_RATE_LIMITED,
            details={
                "rate_limit_key": rate_limit_key,
                "reset_time": reset_time,
                "remaining": remaining,
            }
        )
        self.rate_limit_key = rate_limit_key
        self.reset_time = reset_time
        self.status_code = 429

    @property
    def retry_after_seconds(self) -> int:
        now = int(datetime.now(timezone.utc).timestamp())
        return max(0, self.reset_time - now)


# ==================== Task queue ====================

class TaskQueueException(AppException):
    """Base exception for task-queue errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        task_id: str | None = None,
        details: dict[str, Any] | None = None,
        status_code: int = 400,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        if task_id:
            self.details["task_id"] = task_id


class TaskNotFoundError(TaskQueueException):
    """Raised when a task id does not exist"""

    def __init__(self, task_id: str):
        super().__init__(
            message=f"Task not found: {task_id}",
            error_code=ErrorCode.TASK_NOT_FOUND,
            task_id=task_id,
            status_code=404,
        )


class TaskNotDeadLetteredError(TaskQueueException):
    """Raised when requeue is requested for a task that is not in the DLQ"""

    def __init__(self, task_id: str):
        super().__init__(
            message=f"Task {task_id} is not in the dead-letter queue",
            error_code=ErrorCode.TASK_NOT_DEAD_LETTERED,
            task_id=task_id,
        )


class UnknownTaskTypeError(TaskQueueException):
    """No handler registered for the task type"""

    retryable = False

    def __init__(self, task_type: str):
        super().__init__(
            message=f"No job handler registered for task type '{task_type}'",
            error_code=ErrorCode.TASK_UNKNOWN_TYPE,
            details={"task_type": task_type},
        )


class JobPayloadError(TaskQueueException):
    """Job payload is permanently invalid; retrying cannot fix it"""

    retryable = False

    def __init__(self, task_type: str, errors: list[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        super().__init__(
            message=f"Invalid payload for '{task_type}': {'; '.join(errors)}",
            error_code=ErrorCode.TASK_INVALID_PAYLOAD,
            details={"task_type": task_type, "errors": errors},
        )
