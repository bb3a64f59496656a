"""
Queue Worker - single-task polling loop over AsyncTaskQueue.

One task per iteration: reserve, run its job under the task's correlation id,
delete it on success or record the failure. When nothing is visible the loop
sleeps for the poll interval. Several worker processes may run side by side;
they coordinate only through the async_tasks table.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable

from app.core.logging import correlation_scope, get_logger
from app.domain.jobs import JobContext, JobRegistry
from app.domain.services.task_queue import AsyncTaskQueue, FailureOutcome

logger = get_logger(__name__)


class QueueWorker:
    def __init__(
        self,
        queue: AsyncTaskQueue,
        registry: JobRegistry,
        context: JobContext,
        *,
        poll_interval_seconds: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.queue = queue
        self.registry = registry
        self.context = context
        self.poll_interval_seconds = poll_interval_seconds
        self._sleep = sleep
        self._stopping = False
        self.processed = 0
        self.failed = 0

    def stop(self) -> None:
        """Finish the current task, then leave run_forever()"""
        self._stopping = True

    @property
    def stopping(self) -> bool:
        return self._stopping

    async def run_once(self) -> bool:
        """
        Process at most one task.

        Returns True if a task was reserved (whatever its outcome), False if
        the queue had nothing visible.
        """
        task = await self.queue.reserve()
        if task is None:
            return False

        correlation_id = task.correlation_id or task.payload.get("correlation_id")
        with correlation_scope(correlation_id):
            started = time.perf_counter()
            try:
                handler = self.registry.create(task.task_type, self.context)
                await handler.handle(task.payload)
            except Exception as e:
                self.failed += 1
                logger.error(
                    f"Task {task.task_type} failed on attempt {task.attempts}/{task.max_attempts}",
                    extra_data={
                        "task_id": task.task_id,
                        "task_type": task.task_type,
                        "attempt": task.attempts,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                    exc_info=True,
                )
                outcome = await self.queue.fail(task, e)
                if outcome is FailureOutcome.DEAD_LETTER:
                    logger.critical(
                        f"Task {task.task_type} exhausted its attempts",
                        extra_data={"task_id": task.task_id, "task_type": task.task_type}
                    )
                return True

            await self.queue.complete(task)
            self.processed += 1
            logger.info(
                f"Task {task.task_type} completed",
                extra_data={
                    "task_id": task.task_id,
                    "task_type": task.task_type,
                    "attempt": task.attempts,
                    "duration_ms": int((time.perf_counter() - started) * 1000),
                }
            )
        return True

    async def drain(self, max_tasks: int) -> int:
        """Process up to ``max_tasks`` tasks without sleeping; returns how many ran"""
        handled = 0
        while handled < max_tasks and not self._stopping:
            if not await self.run_once():
                break
            handled += 1
        return handled

    async def run_forever(self) -> None:
        logger.info(
            "Queue worker started",
            extra_data={
                "task_types": self.registry.task_types,
                "poll_interval_seconds": self.poll_interval_seconds,
            }
        )
        while not self._stopping:
            try:
                handled = await self.run_once()
            except Exception as e:
                # the store is unreachable or broke mid-task; the lease expires on its own
                handled = False
                logger.error(
                    "Queue worker iteration failed, retrying after the poll interval",
                    extra_data={
                        "error": str(e),
                        "error_type": type(e).__name__,
                        "poll_interval_seconds": self.poll_interval_seconds,
                    },
                    exc_info=True,
                )
            if not handled:
                await self._sleep(self.poll_interval_seconds)

        logger.info(
            "Queue worker stopped",
            extra_data={"processed": self.processed, "failed": self.failed}
        )

    def stats(self) -> dict[str, Any]:
        return {"processed": self.processed, "failed": self.failed}
