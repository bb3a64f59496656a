"""
Tests for AsyncTaskQueue - app/domain/services/task_queue.py

Covers priority ordering, retry backoff, dead-lettering, lease expiry and
the operator tooling used by the admin API.
"""
import json

import pytest
from sqlalchemy import select

from app.core.exceptions import TaskNotDeadLetteredError, TaskNotFoundError
from app.db.models.async_task import AsyncTask
from app.domain.services.task_queue import AsyncTaskQueue, FailureOutcome, QueueConfig


@pytest.fixture
def queue(session_factory, datetime_clock) -> AsyncTaskQueue:
    return AsyncTaskQueue(
        session_factory,
        QueueConfig(lease_timeout_seconds=60, default_retry_backoff_seconds=60),
        clock=datetime_clock,
    )


async def _row(session_factory, task_id: str) -> AsyncTask | None:
    async with session_factory() as session:
        result = await session.execute(select(AsyncTask).where(AsyncTask.task_id == task_id))
        return result.scalar_one_or_none()


class TestEnqueue:

    @pytest.mark.unit
    async def test_enqueue_stores_payload_and_correlation_id(self, queue, session_factory):
        task_id = await queue.enqueue("crm_sync", {"call_id": "c1"}, correlation_id="corr-1")

        row = await _row(session_factory, task_id)
        assert row.task_type == "crm_sync"
        assert json.loads(row.task_data) == {"call_id": "c1", "correlation_id": "corr-1"}
        assert row.priority == 5
        assert row.attempts == 0
        assert row.max_attempts == 3
        assert row.dlq is False
        assert row.reserved_at is None

    @pytest.mark.unit
    async def test_delayed_task_is_invisible(self, queue, datetime_clock):
        await queue.enqueue("crm_sync", {}, delay_seconds=30)

        assert await queue.reserve() is None
        datetime_clock.advance(30)
        assert await queue.reserve() is not None


class TestReserve:

    @pytest.mark.unit
    async def test_priority_then_fifo(self, queue):
        """Lower priority number first, insertion order inside one priority"""
        a = await queue.enqueue("job", {"name": "A"}, priority=5)
        b = await queue.enqueue("job", {"name": "B"}, priority=1)
        c = await queue.enqueue("job", {"name": "C"}, priority=5)

        order = []
        for _ in range(3):
            task = await queue.reserve()
            order.append(task.task_id)
            await queue.complete(task)

        assert order == [b, a, c]
        assert await queue.reserve() is None

    @pytest.mark.unit
    async def test_reserve_increments_attempts(self, queue, datetime_clock):
        await queue.enqueue("job", {"x": 1})

        task = await queue.reserve()

        assert task.attempts == 1
        assert task.reserved_at == datetime_clock.now
        assert task.payload == {"x": 1}

    @pytest.mark.unit
    async def test_reserved_task_not_handed_out_twice(self, queue):
        await queue.enqueue("job", {})

        assert await queue.reserve() is not None
        assert await queue.reserve() is None

    @pytest.mark.unit
    async def test_expired_lease_is_reclaimed(self, queue, datetime_clock):
        """A worker that died mid-task: after the lease timeout the task runs again"""
        await queue.enqueue("job", {})
        abandoned = await queue.reserve()

        datetime_clock.advance(59)
        assert await queue.reserve() is None

        datetime_clock.advance(2)
        reclaimed = await queue.reserve()

        assert reclaimed.task_id == abandoned.task_id
        assert reclaimed.attempts == 2

    @pytest.mark.unit
    async def test_stale_worker_cannot_complete_or_fail(self, queue, datetime_clock, session_factory):
        await queue.enqueue("job", {})
        stale = await queue.reserve()
        datetime_clock.advance(61)
        fresh = await queue.reserve()

        assert await queue.complete(stale) is False
        assert await queue.fail(stale, "late failure") is FailureOutcome.LEASE_LOST
        assert await _row(session_factory, fresh.task_id) is not None

        assert await queue.complete(fresh) is True
        assert await _row(session_factory, fresh.task_id) is None


class TestFailure:

    @pytest.mark.unit
    async def test_retry_uses_linear_backoff(self, queue, datetime_clock, session_factory):
        task_id = await queue.enqueue("job", {}, retry_backoff_sec=60)

        first = await queue.reserve()
        assert await queue.fail(first, RuntimeError("503 from OpenAI")) is FailureOutcome.RETRY

        row = await _row(session_factory, task_id)
        assert row.reserved_at is None
        assert row.error_reason == "503 from OpenAI"
        assert await queue.reserve() is None

        datetime_clock.advance(60)
        second = await queue.reserve()
        assert second.attempts == 2
        assert await queue.fail(second, "again") is FailureOutcome.RETRY

        datetime_clock.advance(119)
        assert await queue.reserve() is None
        datetime_clock.advance(1)
        assert (await queue.reserve()).attempts == 3

    @pytest.mark.unit
    async def test_dead_letter_after_max_attempts(self, queue, datetime_clock, session_factory):
        task_id = await queue.enqueue("job", {}, max_attempts=3, retry_backoff_sec=0)

        outcomes = []
        for _ in range(3):
            task = await queue.reserve()
            outcomes.append(await queue.fail(task, f"failure {task.attempts}"))

        assert outcomes == [FailureOutcome.RETRY, FailureOutcome.RETRY, FailureOutcome.DEAD_LETTER]
        row = await _row(session_factory, task_id)
        assert row.dlq is True
        assert row.attempts == 3
        assert row.error_reason == "failure 3"

        datetime_clock.advance(3600)
        assert await queue.reserve() is None

    @pytest.mark.unit
    async def test_max_attempts_one_dead_letters_immediately(self, queue):
        await queue.enqueue("job", {}, max_attempts=1)
        task = await queue.reserve()

        assert task.is_final_attempt is True
        assert await queue.fail(task, "fatal") is FailureOutcome.DEAD_LETTER

    @pytest.mark.unit
    async def test_long_error_is_truncated(self, queue, session_factory):
        task_id = await queue.enqueue("job", {}, max_attempts=1)
        task = await queue.reserve()

        await queue.fail(task, "x" * 10_000)

        row = await _row(session_factory, task_id)
        assert len(row.error_reason) == 4000


class TestOperatorTooling:

    @pytest.fixture
    async def dead_task_id(self, queue) -> str:
        task_id = await queue.enqueue("crm_sync", {"call_id": "c1"}, max_attempts=1)
        await queue.fail(await queue.reserve(), "Pipedrive 400")
        return task_id

    @pytest.mark.unit
    async def test_list_dead_letters(self, queue, dead_task_id):
        await queue.enqueue("crm_sync", {})

        dead = await queue.list_dead_letters()

        assert [task["task_id"] for task in dead] == [dead_task_id]
        assert dead[0]["error_reason"] == "Pipedrive 400"
        assert await queue.list_dead_letters(task_type="download_recording") == []

    @pytest.mark.unit
    async def test_requeue_gives_fresh_budget(self, queue, dead_task_id):
        data = await queue.requeue_dead_letter(dead_task_id)

        assert data["dlq"] is False
        assert data["attempts"] == 0
        assert data["error_reason"] is None
        task = await queue.reserve()
        assert task.task_id == dead_task_id
        assert task.attempts == 1

    @pytest.mark.unit
    async def test_requeue_rejects_live_task(self, queue):
        task_id = await queue.enqueue("crm_sync", {})

        with pytest.raises(TaskNotDeadLetteredError):
            await queue.requeue_dead_letter(task_id)

    @pytest.mark.unit
    async def test_unknown_task(self, queue):
        with pytest.raises(TaskNotFoundError):
            await queue.get_task("missing")
        with pytest.raises(TaskNotFoundError):
            await queue.requeue_dead_letter("missing")
        assert await queue.delete_task("missing") is False

    @pytest.mark.unit
    async def test_stats_per_type(self, queue, datetime_clock, dead_task_id):
        await queue.enqueue("download_recording", {})
        await queue.enqueue("download_recording", {}, delay_seconds=300)
        await queue.enqueue("transcribe_recording", {})
        await queue.reserve()

        stats = await queue.get_stats()

        assert stats["crm_sync"] == {"pending": 0, "reserved": 0, "delayed": 0, "dead_letter": 1}
        assert stats["download_recording"] == {"pending": 0, "reserved": 1, "delayed": 1, "dead_letter": 0}
        assert stats["transcribe_recording"] == {"pending": 1, "reserved": 0, "delayed": 0, "dead_letter": 0}

    @pytest.mark.unit
    async def test_get_and_delete_task(self, queue):
        task_id = await queue.enqueue("crm_sync", {"call_id": "c1"})

        data = await queue.get_task(task_id)
        assert data["payload"] == {"call_id": "c1"}

        assert await queue.delete_task(task_id) is True
        with pytest.raises(TaskNotFoundError):
            await queue.get_task(task_id)
