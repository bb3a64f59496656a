"""
Job handler contract and the task-type registry used by the queue worker.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from app.core.exceptions import JobPayloadError, UnknownTaskTypeError

if TYPE_CHECKING:
    from app.core.config import Settings
    from app.domain.services.providers import OpenAIClient, PipedriveClient, RingoverClient
    from app.domain.services.task_queue import AsyncTaskQueue

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class JobHandler(Protocol):
    """A background job. Raising from ``handle`` sends the task down the retry/DLQ path."""

    async def handle(self, payload: dict[str, Any]) -> None:
        ...


@dataclass
class JobContext:
    """Collaborators a job factory may pull from"""
    queue: AsyncTaskQueue
    settings: Settings
    ringover: RingoverClient | None = None
    openai: OpenAIClient | None = None
    pipedrive: PipedriveClient | None = None


JobFactory = Callable[[JobContext], JobHandler]


class JobRegistry:
    """Maps task-type strings to job factories. Populated explicitly at startup."""

    def __init__(self) -> None:
        self._factories: dict[str, JobFactory] = {}

    def register(self, task_type: str, factory: JobFactory) -> None:
        if task_type in self._factories:
            raise ValueError(f"Task type '{task_type}' is already registered")
        self._factories[task_type] = factory

    def create(self, task_type: str, context: JobContext) -> JobHandler:
        factory = self._factories.get(task_type)
        if factory is None:
            raise UnknownTaskTypeError(task_type)
        return factory(context)

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._factories

    @property
    def task_types(self) -> list[str]:
        return sorted(self._factories)


def validate_payload(model: type[PayloadT], task_type: str, payload: dict[str, Any]) -> PayloadT:
    """Parse a job payload, turning pydantic errors into a non-retryable JobPayloadError"""
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in error['loc']) or 'payload'}: {error['msg']}"
            for error in e.errors()
        ]
        raise JobPayloadError(task_type, errors) from e


def require(client: Any, name: str) -> Any:
    if client is None:
        raise RuntimeError(f"{name} client is not configured in the job context")
    return client
