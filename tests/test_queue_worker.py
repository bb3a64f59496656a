"""
Tests for QueueWorker - app/workers/queue_worker.py
"""
import pytest
from sqlalchemy.exc import OperationalError

from app.core.logging import get_correlation_id
from app.domain.jobs import JobContext, JobRegistry
from app.domain.services.task_queue import AsyncTaskQueue, QueueConfig
from app.workers.queue_worker import QueueWorker


class _RecordingJob:
    """Remembers payloads and the correlation id active while it ran"""

    seen: list[tuple[dict, str]] = []

    def __init__(self, context: JobContext):
        self.context = context

    async def handle(self, payload: dict) -> None:
        _RecordingJob.seen.append((payload, get_correlation_id()))


class _FailingJob:
    def __init__(self, context: JobContext):
        pass

    async def handle(self, payload: dict) -> None:
        raise RuntimeError("upstream exploded")


@pytest.fixture(autouse=True)
def reset_seen():
    _RecordingJob.seen = []
    yield
    _RecordingJob.seen = []


@pytest.fixture
def queue(session_factory, datetime_clock) -> AsyncTaskQueue:
    return AsyncTaskQueue(
        session_factory,
        QueueConfig(default_retry_backoff_seconds=0),
        clock=datetime_clock,
    )


@pytest.fixture
def worker(queue, settings, recording_sleep) -> QueueWorker:
    registry = JobRegistry()
    registry.register("record", _RecordingJob)
    registry.register("explode", _FailingJob)
    return QueueWorker(
        queue,
        registry,
        JobContext(queue=queue, settings=settings),
        poll_interval_seconds=2.0,
        sleep=recording_sleep,
    )


class TestRunOnce:

    @pytest.mark.unit
    async def test_empty_queue(self, worker):
        assert await worker.run_once() is False

    @pytest.mark.unit
    async def test_success_deletes_task(self, worker, queue):
        task_id = await queue.enqueue("record", {"call_id": "c1"}, correlation_id="corr-7")

        assert await worker.run_once() is True

        assert _RecordingJob.seen == [({"call_id": "c1", "correlation_id": "corr-7"}, "corr-7")]
        assert worker.stats() == {"processed": 1, "failed": 0}
        assert await queue.delete_task(task_id) is False

    @pytest.mark.unit
    async def test_failure_goes_to_retry_then_dead_letter(self, worker, queue):
        task_id = await queue.enqueue("explode", {}, max_attempts=2)

        await worker.run_once()
        assert (await queue.get_task(task_id))["dlq"] is False

        await worker.run_once()
        task = await queue.get_task(task_id)
        assert task["dlq"] is True
        assert task["error_reason"] == "upstream exploded"
        assert worker.stats() == {"processed": 0, "failed": 2}

    @pytest.mark.unit
    async def test_unknown_task_type_counts_as_failed_attempt(self, worker, queue):
        task_id = await queue.enqueue("never_registered", {}, max_attempts=1)

        assert await worker.run_once() is True

        task = await queue.get_task(task_id)
        assert task["dlq"] is True
        assert "never_registered" in task["error_reason"]


class TestLoop:

    @pytest.mark.unit
    async def test_drain_stops_when_queue_is_empty(self, worker, queue):
        for n in range(3):
            await queue.enqueue("record", {"n": n})

        assert await worker.drain(10) == 3
        assert [payload["n"] for payload, _ in _RecordingJob.seen] == [0, 1, 2]

    @pytest.mark.unit
    async def test_drain_respects_limit(self, worker, queue):
        for n in range(3):
            await queue.enqueue("record", {"n": n})

        assert await worker.drain(2) == 2

    @pytest.mark.unit
    async def test_run_forever_sleeps_when_idle_and_stops(self, worker, recording_sleep):
        async def stop_after_two_polls(seconds: float) -> None:
            recording_sleep.calls.append(seconds)
            if len(recording_sleep.calls) == 2:
                worker.stop()

        worker._sleep = stop_after_two_polls

        await worker.run_forever()

        assert recording_sleep.calls == [2.0, 2.0]
        assert worker.stopping is True

    @pytest.mark.unit
    async def test_run_forever_survives_store_error_on_reserve(self, worker, queue, recording_sleep, monkeypatch):
        await queue.enqueue("record", {"call_id": "c1"})
        reserve = queue.reserve
        calls = {"reserve": 0}

        async def flaky_reserve():
            calls["reserve"] += 1
            if calls["reserve"] == 1:
                raise OperationalError("SELECT", {}, Exception("server closed the connection unexpectedly"))
            task = await reserve()
            if task is None:
                worker.stop()
            return task

        monkeypatch.setattr(queue, "reserve", flaky_reserve)

        await worker.run_forever()

        assert recording_sleep.calls == [2.0, 2.0]
        assert [payload["call_id"] for payload, _ in _RecordingJob.seen] == ["c1"]
        assert worker.stats() == {"processed": 1, "failed": 0}

    @pytest.mark.unit
    async def test_run_forever_survives_store_error_on_complete(self, worker, queue, recording_sleep, monkeypatch):
        task_id = await queue.enqueue("record", {"call_id": "c2"})

        async def broken_complete(task):
            worker.stop()
            raise OperationalError("DELETE", {}, Exception("connection reset by peer"))

        monkeypatch.setattr(queue, "complete", broken_complete)

        await worker.run_forever()

        assert recording_sleep.calls == [2.0]
        assert worker.stats() == {"processed": 0, "failed": 0}
        # still leased, so another worker picks it up once the lease expires
        assert (await queue.get_task(task_id)) is not None
