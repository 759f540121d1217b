"""
Tests for the batched task queue.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from notion_sync.exceptions import InvalidTransitionError, TaskNotFoundError, UnknownOperationError
from notion_sync.queue import (
    InMemoryWakeupScheduler,
    QueueManager,
    Task,
    TaskOptions,
    TaskStatus,
    split_into_batches,
)
from notion_sync.storage.database import DatabaseStorage

START = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable wall clock."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeTimer:
    """Monotonic timer that moves forward on every reading."""

    def __init__(self, step: float = 0.0) -> None:
        self.value = 0.0
        self.step = step

    def __call__(self) -> float:
        self.value += self.step
        return self.value


class RecordingHandler:
    """Operation handler that records batches and fails on demand."""

    def __init__(self, fail_times: int = 0, raise_error: bool = False) -> None:
        self.batches: list[list[Any]] = []
        self.fail_times = fail_times
        self.raise_error = raise_error

    async def __call__(self, batch: list[Any], task: Task) -> dict[str, Any]:
        self.batches.append(batch)
        if self.fail_times:
            self.fail_times -= 1
            if self.raise_error:
                raise RuntimeError("remote exploded")
            return {"processed": len(batch), "error_count": 1, "errors": ["p1: boom"]}
        return {"processed": len(batch), "error_count": 0}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wakeup(clock: FakeClock) -> InMemoryWakeupScheduler:
    return InMemoryWakeupScheduler(clock=clock)


@pytest.fixture
def queue(storage: DatabaseStorage, wakeup: InMemoryWakeupScheduler, clock: FakeClock) -> QueueManager:
    """Queue on a fresh database with a fake clock and no time pressure."""
    return QueueManager(
        storage,
        wakeup=wakeup,
        max_tasks_per_run=5,
        time_budget=100,
        clock=clock,
        timer=FakeTimer(),
    )


def options(**overrides: int) -> TaskOptions:
    values = {"batch_size": 10, "max_retries": 3, "retry_delay": 60, "timeout": 30, "priority": 10}
    values.update(overrides)
    return TaskOptions(**values)


class TestTaskModel:
    """Tests for batching and the task state machine."""

    def test_split_into_batches(self) -> None:
        """25 items in batches of 10 give 10, 10 and 5."""
        batches = split_into_batches(list(range(25)), 10)

        assert [len(b) for b in batches] == [10, 10, 5]
        assert batches[2] == [20, 21, 22, 23, 24]

    def test_invalid_batch_size(self) -> None:
        """Batch size must be positive."""
        with pytest.raises(ValueError):
            split_into_batches([1, 2], 0)

    def test_allowed_transitions(self) -> None:
        """A task walks pending, processing, retrying, processing, completed."""
        task = Task.create("op", [1], options())

        for status in (
            TaskStatus.PROCESSING,
            TaskStatus.RETRYING,
            TaskStatus.PROCESSING,
            TaskStatus.COMPLETED,
        ):
            task.transition(status)

        assert task.is_terminal

    def test_terminal_states_are_final(self) -> None:
        """Nothing leaves COMPLETED."""
        task = Task.create("op", [1], options())
        task.transition(TaskStatus.PROCESSING)
        task.transition(TaskStatus.COMPLETED)

        with pytest.raises(InvalidTransitionError):
            task.transition(TaskStatus.PENDING)

    def test_pending_cannot_complete_directly(self) -> None:
        """PENDING must pass through PROCESSING."""
        task = Task.create("op", [1], options())

        with pytest.raises(InvalidTransitionError):
            task.transition(TaskStatus.COMPLETED)

    def test_options_from_dict_fills_defaults(self) -> None:
        """Missing option keys take their defaults."""
        opts = TaskOptions.from_dict({"batch_size": "5"})

        assert opts.batch_size == 5
        assert opts.max_retries == TaskOptions().max_retries


class TestEnqueue:
    """Tests for QueueManager.enqueue."""

    @pytest.mark.asyncio
    async def test_enqueue_persists_and_wakes(
        self, queue: QueueManager, wakeup: InMemoryWakeupScheduler
    ) -> None:
        """A new task is PENDING and a run is requested right away."""
        queue.register_operation("import_pages", RecordingHandler())

        task_id = await queue.enqueue("import_pages", list(range(25)), options())
        status = await queue.get_status(task_id)

        assert status["status"] == "pending"
        assert status["total_batches"] == 3
        assert status["progress"] == 0.0
        assert wakeup.pending_at == START

    @pytest.mark.asyncio
    async def test_unknown_operation(self, queue: QueueManager) -> None:
        """Enqueuing an unregistered operation is rejected."""
        with pytest.raises(UnknownOperationError):
            await queue.enqueue("nope", [1])

    @pytest.mark.asyncio
    async def test_empty_data(self, queue: QueueManager) -> None:
        """Enqueuing nothing is rejected."""
        queue.register_operation("import_pages", RecordingHandler())

        with pytest.raises(ValueError):
            await queue.enqueue("import_pages", [])

    @pytest.mark.asyncio
    async def test_options_dict(self, queue: QueueManager) -> None:
        """Options may be given as a dict of overrides."""
        queue.register_operation("import_pages", RecordingHandler())

        task_id = await queue.enqueue("import_pages", list(range(6)), {"batch_size": 2})

        assert (await queue.get_status(task_id))["total_batches"] == 3


class TestProcessQueue:
    """Tests for QueueManager.process_queue."""

    @pytest.mark.asyncio
    async def test_one_batch_per_run(self, queue: QueueManager) -> None:
        """Each run advances a task by exactly one batch."""
        handler = RecordingHandler()
        queue.register_operation("import_pages", handler)
        task_id = await queue.enqueue("import_pages", list(range(25)), options())

        first = await queue.process_queue()
        status = await queue.get_status(task_id)

        assert first.processed == 1
        assert first.work_remaining
        assert status["status"] == "pending"
        assert status["current_batch"] == 1
        assert status["progress"] == 33.33

        await queue.process_queue()
        third = await queue.process_queue()
        status = await queue.get_status(task_id)

        assert third.completed == 1
        assert not third.work_remaining
        assert status["status"] == "completed"
        assert status["progress"] == 100.0
        assert [len(b) for b in handler.batches] == [10, 10, 5]
        assert [r["batch"] for r in status["results"]] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_failed_batch_is_retried_with_delay(
        self, queue: QueueManager, clock: FakeClock, wakeup: InMemoryWakeupScheduler
    ) -> None:
        """A batch with errors moves the task to RETRYING with a growing delay."""
        handler = RecordingHandler(fail_times=2)
        queue.register_operation("import_pages", handler)
        task_id = await queue.enqueue("import_pages", [1, 2], options(retry_delay=60))

        result = await queue.process_queue()
        status = await queue.get_status(task_id)

        assert result.retrying == 1
        assert status["status"] == "retrying"
        assert status["retry_count"] == 1
        assert status["current_batch"] == 0
        assert status["next_attempt_at"] == "2024-06-01T12:01:00.000Z"
        assert "p1: boom" in status["errors"][0]

        # Not eligible before the delay has passed
        wakeup.clear()
        assert (await queue.process_queue()).processed == 0
        assert wakeup.pending_at == START + timedelta(seconds=60)

        clock.advance(seconds=61)
        await queue.process_queue()
        status = await queue.get_status(task_id)
        assert status["retry_count"] == 2
        assert status["next_attempt_at"] == "2024-06-01T12:03:01.000Z"

        clock.advance(seconds=121)
        await queue.process_queue()
        status = await queue.get_status(task_id)
        assert status["status"] == "completed"
        assert status["retry_count"] == 0

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, queue: QueueManager, clock: FakeClock) -> None:
        """After max_retries failures the task is FAILED."""
        queue.register_operation("import_pages", RecordingHandler(fail_times=5, raise_error=True))
        task_id = await queue.enqueue("import_pages", [1], options(max_retries=2, retry_delay=1))

        await queue.process_queue()
        clock.advance(seconds=5)
        result = await queue.process_queue()
        status = await queue.get_status(task_id)

        assert result.failed == 1
        assert status["status"] == "failed"
        assert status["retry_count"] == 2
        assert "remote exploded" in status["errors"][-1]
        assert not result.work_remaining

    @pytest.mark.asyncio
    async def test_priority_order(self, queue: QueueManager) -> None:
        """Lower priority values run first."""
        order: list[str] = []

        async def handler(batch: list[Any], task: Task) -> dict[str, Any]:
            order.append(batch[0])
            return {"error_count": 0}

        queue.register_operation("op", handler)
        await queue.enqueue("op", ["low"], options(priority=50))
        await queue.enqueue("op", ["high"], options(priority=1))

        await queue.process_queue()

        assert order == ["high", "low"]

    @pytest.mark.asyncio
    async def test_max_tasks_per_run(self, storage: DatabaseStorage, clock: FakeClock) -> None:
        """No more than max_tasks_per_run tasks are picked up."""
        queue = QueueManager(storage, max_tasks_per_run=2, time_budget=100, clock=clock, timer=FakeTimer())
        queue.register_operation("op", RecordingHandler())
        for i in range(3):
            await queue.enqueue("op", [i], options())

        result = await queue.process_queue()

        assert result.processed == 2
        assert result.work_remaining

    @pytest.mark.asyncio
    async def test_time_budget(self, storage: DatabaseStorage, clock: FakeClock) -> None:
        """Once the budget is used up the run stops after the current task."""
        queue = QueueManager(
            storage, max_tasks_per_run=5, time_budget=10, clock=clock, timer=FakeTimer(step=6)
        )
        queue.register_operation("op", RecordingHandler())
        for i in range(3):
            await queue.enqueue("op", [i], options())

        result = await queue.process_queue()

        assert result.processed == 2
        assert result.budget_exhausted
        assert result.work_remaining

    @pytest.mark.asyncio
    async def test_batch_timeout(self, queue: QueueManager) -> None:
        """A batch exceeding its timeout counts as a failure."""

        async def slow(batch: list[Any], task: Task) -> dict[str, Any]:
            await asyncio.sleep(5)
            return {}

        queue.register_operation("op", slow)
        task_id = await queue.enqueue("op", [1], options(timeout=1))

        await queue.process_queue()
        status = await queue.get_status(task_id)

        assert status["status"] == "retrying"
        assert "timed out" in status["errors"][0]


class TestStatusAndMaintenance:
    """Tests for status queries, cancel and cleanup."""

    @pytest.mark.asyncio
    async def test_unknown_task(self, queue: QueueManager) -> None:
        """Status of a missing task raises."""
        with pytest.raises(TaskNotFoundError):
            await queue.get_status("missing")

    @pytest.mark.asyncio
    async def test_queue_status(self, queue: QueueManager) -> None:
        """Counts include every status and the total."""
        queue.register_operation("op", RecordingHandler())
        await queue.enqueue("op", [1], options())
        await queue.enqueue("op", [2], options())

        status = await queue.get_queue_status()

        assert status["pending"] == 2
        assert status["failed"] == 0
        assert status["total"] == 2

    @pytest.mark.asyncio
    async def test_cancel_pending(self, queue: QueueManager) -> None:
        """A pending task can be cancelled and is gone afterwards."""
        queue.register_operation("op", RecordingHandler())
        task_id = await queue.enqueue("op", [1], options())

        assert await queue.cancel(task_id)
        with pytest.raises(TaskNotFoundError):
            await queue.get_status(task_id)

    @pytest.mark.asyncio
    async def test_cancel_finished_refused(self, queue: QueueManager) -> None:
        """A completed task cannot be cancelled."""
        queue.register_operation("op", RecordingHandler())
        task_id = await queue.enqueue("op", [1], options())
        await queue.process_queue()

        assert not await queue.cancel(task_id)

    @pytest.mark.asyncio
    async def test_cancel_missing(self, queue: QueueManager) -> None:
        with pytest.raises(TaskNotFoundError):
            await queue.cancel("missing")

    @pytest.mark.asyncio
    async def test_cleanup(self, queue: QueueManager, storage: DatabaseStorage) -> None:
        """Finished tasks older than the retention period are removed."""
        old = Task.create("op", [1], options())
        old.status = TaskStatus.COMPLETED
        old.updated_at = START - timedelta(days=30)
        fresh = Task.create("op", [1], options())
        fresh.status = TaskStatus.FAILED
        fresh.updated_at = START - timedelta(days=1)
        await storage.save_task(old)
        await storage.save_task(fresh)

        removed = await queue.cleanup(days_old=7)

        assert removed == 1
        assert await storage.get_task(fresh.id) is not None


class TestWakeupScheduler:
    """Tests for InMemoryWakeupScheduler."""

    def test_single_pending_wakeup(self, clock: FakeClock) -> None:
        """A second request while one is pending is ignored."""
        wakeup = InMemoryWakeupScheduler(clock=clock)

        assert wakeup.request_wakeup(30)
        assert not wakeup.request_wakeup(0)
        assert wakeup.pending_at == START + timedelta(seconds=30)
        assert wakeup.requests == 2

    def test_clear(self, clock: FakeClock) -> None:
        wakeup = InMemoryWakeupScheduler(clock=clock)
        wakeup.request_wakeup()
        wakeup.clear()

        assert not wakeup.has_pending_wakeup()
