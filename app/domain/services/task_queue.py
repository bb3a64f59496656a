"""
Async Task Queue - durable work queue backed by the async_tasks table.

State machine per task:
    pending -> reserved -> deleted (success)
                        -> pending with later visible_at (retry, linear backoff)
                        -> dead-letter (attempts exhausted)

A reservation older than the lease timeout is considered abandoned and can be
claimed again, so handlers must tolerate being re-executed.
"""
from __future__ import annotations

import enum
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import TaskNotDeadLetteredError, TaskNotFoundError
from app.core.logging import get_logger
from app.core.time_utils import utcnow
from app.db.models.async_task import AsyncTask

logger = get_logger(__name__)

# error_reason is free text, but a runaway traceback should not bloat the row
MAX_ERROR_REASON_CHARS = 4000


@dataclass
class QueueConfig:
    lease_timeout_seconds: int = 60
    default_priority: int = 5
    default_max_attempts: int = 3
    default_retry_backoff_seconds: int = 60
    # how many candidates one reserve() tries before giving up
    claim_batch_size: int = 5

    @classmethod
    def from_settings(cls, settings: Any) -> "QueueConfig":
        return cls(
            lease_timeout_seconds=settings.QUEUE_LEASE_TIMEOUT_SECONDS,
            default_priority=settings.QUEUE_DEFAULT_PRIORITY,
            default_max_attempts=settings.QUEUE_DEFAULT_MAX_ATTEMPTS,
            default_retry_backoff_seconds=settings.QUEUE_DEFAULT_RETRY_BACKOFF_SECONDS,
        )


class FailureOutcome(str, enum.Enum):
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"
    # the lease expired and another worker owns the task now
    LEASE_LOST = "lease_lost"


@dataclass
class ReservedTask:
    """A task claimed by this worker. ``reserved_at`` doubles as the lease token."""
    id: int
    task_id: str
    task_type: str
    payload: dict[str, Any]
    priority: int
    attempts: int
    max_attempts: int
    retry_backoff_sec: int
    reserved_at: datetime
    correlation_id: str | None = None

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts >= self.max_attempts


def _decode_payload(task_id: str, raw: str) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        logger.error("Task payload is not valid JSON", extra_data={"task_id": task_id})
        return {}
    return payload if isinstance(payload, dict) else {"value": payload}


def task_to_dict(task: AsyncTask) -> dict[str, Any]:
    return {
        "id": task.id,
        "task_id": task.task_id,
        "task_type": task.task_type,
        "payload": _decode_payload(task.task_id, task.task_data),
        "priority": task.priority,
        "attempts": task.attempts,
        "max_attempts": task.max_attempts,
        "retry_backoff_sec": task.retry_backoff_sec,
        "visible_at": task.visible_at.isoformat() if task.visible_at else None,
        "reserved_at": task.reserved_at.isoformat() if task.reserved_at else None,
        "dlq": task.dlq,
        "error_reason": task.error_reason,
        "correlation_id": task.correlation_id,
        "created_at": task.created_at.isoformat() if task.created_at else None,
    }


class AsyncTaskQueue:
    """
    Queue operations over async_tasks.

    Every method opens its own short session from the injected factory, so
    one instance can be shared by a worker loop and the admin API.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: QueueConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.config = config or QueueConfig()
        self._clock = clock

    async def enqueue(
        self,
        task_type: str,
        data: dict[str, Any],
        priority: int | None = None,
        correlation_id: str | None = None,
        max_attempts: int | None = None,
        retry_backoff_sec: int | None = None,
        delay_seconds: int = 0,
    ) -> str:
        """
        Add a task to the queue.

        Args:
            task_type: registered job name (e.g. ``download_recording``)
            data: JSON-serializable payload
            priority: lower number = more urgent
            correlation_id: also injected into the payload as ``correlation_id``
            max_attempts: attempts before dead-lettering
            retry_backoff_sec: backoff unit, multiplied by the attempt count
            delay_seconds: keep the task invisible for this long

        Returns:
            The new task id
        """
        payload = dict(data)
        if correlation_id:
            payload["correlation_id"] = correlation_id

        now = self._clock()
        task_id = str(uuid.uuid4())
        task = AsyncTask(
            task_id=task_id,
            task_type=task_type,
            task_data=json.dumps(payload, ensure_ascii=False, default=str),
            priority=self.config.default_priority if priority is None else priority,
            attempts=0,
            max_attempts=max(1, max_attempts or self.config.default_max_attempts),
            retry_backoff_sec=max(
                0,
                self.config.default_retry_backoff_seconds
                if retry_backoff_sec is None else retry_backoff_sec,
            ),
            visible_at=now + timedelta(seconds=max(0, delay_seconds)),
            reserved_at=None,
            dlq=False,
            correlation_id=correlation_id,
            created_at=now,
        )

        async with self._session_factory() as session:
            session.add(task)
            await session.commit()

        logger.info(
            f"Task enqueued: {task_type}",
            extra_data={
                "task_id": task_id,
                "task_type": task_type,
                "priority": task.priority,
                "correlation_id": correlation_id,
            }
        )
        return task_id

    def _claimable(self, now: datetime):
        lease_cutoff = now - timedelta(seconds=self.config.lease_timeout_seconds)
        return and_(
            AsyncTask.dlq.is_(False),
            AsyncTask.visible_at <= now,
            or_(AsyncTask.reserved_at.is_(None), AsyncTask.reserved_at < lease_cutoff),
        )

    async def reserve(self) -> ReservedTask | None:
        """
        Claim the most urgent visible task, or return None if there is none.

        Candidates are ordered by (priority, id). The claim itself is a
        conditional UPDATE that only matches while the row is still
        claimable, so two workers racing for one row cannot both win.
        """
        now = self._clock()
        claimable = self._claimable(now)

        async with self._session_factory() as session:
            conn = await session.connection()
            candidates = (
                select(AsyncTask.id)
                .where(claimable)
                .order_by(AsyncTask.priority.asc(), AsyncTask.id.asc())
                .limit(self.config.claim_batch_size)
            )
            if conn.dialect.name == "postgresql":
                candidates = candidates.with_for_update(skip_locked=True)

            candidate_ids = (await session.execute(candidates)).scalars().all()

            for pk in candidate_ids:
                claimed = await session.execute(
                    update(AsyncTask)
                    .where(AsyncTask.id == pk, claimable)
                    .values(reserved_at=now, attempts=AsyncTask.attempts + 1)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    continue

                row = (
                    await session.execute(select(AsyncTask).where(AsyncTask.id == pk))
                ).scalar_one()
                await session.commit()

                reserved = ReservedTask(
                    id=row.id,
                    task_id=row.task_id,
                    task_type=row.task_type,
                    payload=_decode_payload(row.task_id, row.task_data),
                    priority=row.priority,
                    attempts=row.attempts,
                    max_attempts=row.max_attempts,
                    retry_backoff_sec=row.retry_backoff_sec,
                    reserved_at=now,
                    correlation_id=row.correlation_id,
                )
                logger.debug(
                    "Task reserved",
                    extra_data={
                        "task_id": reserved.task_id,
                        "task_type": reserved.task_type,
                        "attempt": reserved.attempts,
                    }
                )
                return reserved

            await session.commit()
        return None

    async def complete(self, task: ReservedTask) -> bool:
        """Delete a finished task. False if the lease was lost to another worker."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(AsyncTask).where(
                    AsyncTask.id == task.id,
                    AsyncTask.reserved_at == task.reserved_at,
                )
            )
            await session.commit()

        if result.rowcount != 1:
            logger.warning(
                "Task completed after its lease was reclaimed, leaving row untouched",
                extra_data={"task_id": task.task_id, "task_type": task.task_type}
            )
            return False
        return True

    async def fail(self, task: ReservedTask, error: BaseException | str) -> FailureOutcome:
        """
        Record a failed attempt.

        Only the attempt count decides the outcome: below ``max_attempts``
        the task becomes visible again after ``attempts * retry_backoff_sec``
        seconds, otherwise it moves to the dead-letter queue.
        """
        reason = str(error)[:MAX_ERROR_REASON_CHARS]
        now = self._clock()

        if task.attempts >= task.max_attempts:
            outcome = FailureOutcome.DEAD_LETTER
            values: dict[str, Any] = {"dlq": True, "error_reason": reason, "reserved_at": None}
        else:
            outcome = FailureOutcome.RETRY
            values = {
                "reserved_at": None,
                "visible_at": now + timedelta(seconds=task.attempts * task.retry_backoff_sec),
                "error_reason": reason,
            }

        async with self._session_factory() as session:
            result = await session.execute(
                update(AsyncTask)
                .where(
                    AsyncTask.id == task.id,
                    AsyncTask.reserved_at == task.reserved_at,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount != 1:
            logger.warning(
                "Task failed after its lease was reclaimed, leaving row untouched",
                extra_data={"task_id": task.task_id, "task_type": task.task_type, "error": reason}
            )
            return FailureOutcome.LEASE_LOST

        if outcome is FailureOutcome.DEAD_LETTER:
            logger.error(
                f"Task moved to dead-letter queue: {task.task_type}",
                extra_data={
                    "task_id": task.task_id,
                    "task_type": task.task_type,
                    "attempts": task.attempts,
                    "error": reason,
                }
            )
        else:
            logger.warning(
                f"Task failed, retrying: {task.task_type}",
                extra_data={
                    "task_id": task.task_id,
                    "task_type": task.task_type,
                    "attempt": task.attempts,
                    "max_attempts": task.max_attempts,
                    "retry_in_seconds": task.attempts * task.retry_backoff_sec,
                    "error": reason,
                }
            )
        return outcome

    # ==================== Operator tooling ====================

    async def _get_row(self, session: AsyncSession, task_id: str) -> AsyncTask:
        result = await session.execute(select(AsyncTask).where(AsyncTask.task_id == task_id))
        task = result.scalar_one_or_none()
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def get_task(self, task_id: str) -> dict[str, Any]:
        async with self._session_factory() as session:
            task = await self._get_row(session, task_id)
            return task_to_dict(task)

    async def list_dead_letters(
        self,
        limit: int = 50,
        task_type: str | None = None,
    ) -> list[dict[str, Any]]:
        query = (
            select(AsyncTask)
            .where(AsyncTask.dlq.is_(True))
            .order_by(AsyncTask.id.desc())
            .limit(limit)
        )
        if task_type:
            query = query.where(AsyncTask.task_type == task_type)

        async with self._session_factory() as session:
            result = await session.execute(query)
            return [task_to_dict(task) for task in result.scalars().all()]

    async def requeue_dead_letter(self, task_id: str) -> dict[str, Any]:
        """Give a dead-lettered task a fresh attempt budget"""
        async with self._session_factory() as session:
            task = await self._get_row(session, task_id)
            if not task.dlq:
                raise TaskNotDeadLetteredError(task_id)

            task.dlq = False
            task.attempts = 0
            task.reserved_at = None
            task.visible_at = self._clock()
            task.error_reason = None
            await session.commit()
            data = task_to_dict(task)

        logger.info(
            "Dead-lettered task requeued",
            extra_data={"task_id": task_id, "task_type": data["task_type"]}
        )
        return data

    async def delete_task(self, task_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(delete(AsyncTask).where(AsyncTask.task_id == task_id))
            await session.commit()

        deleted = result.rowcount > 0
        if deleted:
            logger.info("Task deleted by operator", extra_data={"task_id": task_id})
        return deleted

    async def get_stats(self) -> dict[str, dict[str, int]]:
        """Counts per task type: pending, reserved, delayed and dead_letter"""
        now = self._clock()
        lease_cutoff = now - timedelta(seconds=self.config.lease_timeout_seconds)

        async with self._session_factory() as session:
            result = await session.execute(
                select(
                    AsyncTask.task_type,
                    AsyncTask.dlq,
                    AsyncTask.visible_at,
                    AsyncTask.reserved_at,
                )
            )
            rows = result.all()

        stats: dict[str, dict[str, int]] = {}
        for task_type, dlq, visible_at, reserved_at in rows:
            counts = stats.setdefault(
                task_type, {"pending": 0, "reserved": 0, "delayed": 0, "dead_letter": 0}
            )
            if dlq:
                counts["dead_letter"] += 1
            elif reserved_at is not None and reserved_at >= lease_cutoff:
                counts["reserved"] += 1
            elif visible_at > now:
                counts["delayed"] += 1
            else:
                counts["pending"] += 1
        return stats
