"""
Queue Manager

Executes large operations as persisted, batched tasks. Every call to
`process_queue` is a short run: it picks up to N ready tasks, executes one
batch of each, records the outcome and asks the wake-up scheduler for
another run if work is left. Failed batches are retried with a growing
delay until the task's retry budget is used up.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Protocol, Sequence

from rich.console import Console

from notion_sync.config import settings
from notion_sync.events import EventEmitter
from notion_sync.exceptions import TaskNotFoundError, UnknownOperationError
from notion_sync.metrics import metrics
from notion_sync.models import sanitize_error_context
from notion_sync.queue.task import (
    CANCELLABLE_STATUSES,
    Task,
    TaskOptions,
    TaskStatus,
    TaskStore,
)
from notion_sync.timestamps import utc_now

console = Console()
logger = logging.getLogger(__name__)

# A handler receives one batch of items and the owning task, and returns a
# result dict; the batch succeeded when `error_count` is 0 (or absent).
OperationHandler = Callable[[list[Any], Task], Awaitable[dict[str, Any]]]


class WakeupScheduler(Protocol):
    """Schedules a future queue run. Never holds more than one pending wake-up."""

    def request_wakeup(self, delay_seconds: float = 0.0) -> bool:
        """Schedule a run; returns False when one is already pending."""
        ...

    def has_pending_wakeup(self) -> bool: ...


class InMemoryWakeupScheduler:
    """
    Wake-up scheduler for one-off invocations (CLI, tests).

    Remembers the requested time so the caller can report it; a long-running
    process uses the APScheduler-backed implementation instead.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self.pending_at: datetime | None = None
        self.requests = 0

    def request_wakeup(self, delay_seconds: float = 0.0) -> bool:
        self.requests += 1
        if self.pending_at is not None:
            return False
        self.pending_at = self._clock() + timedelta(seconds=max(delay_seconds, 0.0))
        return True

    def has_pending_wakeup(self) -> bool:
        return self.pending_at is not None

    def clear(self) -> None:
        self.pending_at = None


@dataclass
class QueueRunResult:
    """Outcome of one `process_queue` run."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    retrying: int = 0
    duration: float = 0.0
    budget_exhausted: bool = False
    work_remaining: bool = False


class QueueManager:
    """
    Persisted batch queue.

    Usage:
        queue = QueueManager(storage, wakeup=scheduler)
        queue.register_operation("import_pages", handler)
        task_id = await queue.enqueue("import_pages", page_refs)
        result = await queue.process_queue()
    """

    def __init__(
        self,
        store: TaskStore,
        wakeup: WakeupScheduler | None = None,
        emitter: EventEmitter | None = None,
        max_tasks_per_run: int | None = None,
        time_budget: float | None = None,
        clock: Callable[[], datetime] = utc_now,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.wakeup = wakeup or InMemoryWakeupScheduler()
        self.emitter = emitter
        self.max_tasks_per_run = max_tasks_per_run or settings.queue_max_tasks_per_run
        self.time_budget = time_budget if time_budget is not None else settings.queue_time_budget
        self._clock = clock
        self._timer = timer
        self._handlers: dict[str, OperationHandler] = {}

    # ========== Operations ==========

    def register_operation(self, name: str, handler: OperationHandler) -> None:
        """Register (or replace) the handler for an operation name."""
        self._handlers[name] = handler

    @property
    def operations(self) -> list[str]:
        return sorted(self._handlers)

    # ========== Enqueue ==========

    async def enqueue(
        self,
        operation: str,
        data: Sequence[Any],
        options: TaskOptions | dict[str, Any] | None = None,
    ) -> str:
        """
        Split `data` into batches, persist a task and request a queue run.

        Raises:
            UnknownOperationError: If no handler is registered for `operation`
            ValueError: If there is nothing to process
        """
        if operation not in self._handlers:
            raise UnknownOperationError(operation)
        if not data:
            raise ValueError("Cannot enqueue an operation without data")

        if isinstance(options, dict):
            task_options = TaskOptions.from_settings(**options)
        else:
            task_options = options or TaskOptions.from_settings()

        task = Task.create(operation, list(data), task_options)
        task.created_at = task.updated_at = self._clock()
        await self.store.save_task(task)

        logger.info(
            "Enqueued %s task %s: %d items in %d batches",
            operation,
            task.id,
            len(data),
            task.total_batches,
        )
        self.wakeup.request_wakeup(0)
        return task.id

    async def enqueue_batch_operation(
        self,
        operation: str,
        data: Sequence[Any],
        options: TaskOptions | dict[str, Any] | None = None,
    ) -> str:
        """Alias of `enqueue`."""
        return await self.enqueue(operation, data, options)

    # ========== Processing ==========

    async def process_queue(self) -> QueueRunResult:
        """Run one batch of each ready task, within the time budget."""
        started = self._timer()
        result = QueueRunResult()

        tasks = await self.store.get_eligible_tasks(self._clock(), self.max_tasks_per_run)
        if tasks:
            console.print(f"[blue]Processing {len(tasks)} queued task(s)[/blue]")

        for task in tasks:
            if result.processed and self._timer() - started > self.time_budget:
                logger.info("Queue time budget of %.0fs used up", self.time_budget)
                result.budget_exhausted = True
                break

            status = await self._process_task(task)
            result.processed += 1
            if status == TaskStatus.COMPLETED:
                result.completed += 1
            elif status == TaskStatus.FAILED:
                result.failed += 1
            elif status == TaskStatus.RETRYING:
                result.retrying += 1

        result.work_remaining = await self._schedule_remaining()
        result.duration = self._timer() - started
        return result

    async def _process_task(self, task: Task) -> TaskStatus:
        """Execute the current batch of one task and persist the outcome."""
        task.transition(TaskStatus.PROCESSING)
        await self.store.save_task(task)

        batch_index = task.current_batch
        error: str | None = None
        batch_result: dict[str, Any] = {}

        try:
            handler = self._handlers.get(task.operation)
            if handler is None:
                raise UnknownOperationError(task.operation)
            batch_result = await asyncio.wait_for(
                handler(task.current_payload, task),
                timeout=task.options.timeout,
            )
            if batch_result.get("error_count", 0):
                errors = batch_result.get("errors") or []
                error = f"Batch {batch_index + 1}: {batch_result['error_count']} error(s): " + "; ".join(
                    str(e) for e in errors[:5]
                )
        except asyncio.TimeoutError:
            error = f"Batch {batch_index + 1} timed out after {task.options.timeout}s"
        except Exception as e:
            logger.exception("Batch %d of task %s raised", batch_index + 1, task.id)
            error = f"Batch {batch_index + 1} failed: {e}"

        if error is None:
            await self._record_success(task, batch_index, batch_result)
        else:
            await self._record_failure(task, error)

        metrics.record_queue_batch(
            task.operation, "success" if error is None else task.status.value
        )
        await self.store.save_task(task)
        return task.status

    async def _record_success(
        self, task: Task, batch_index: int, batch_result: dict[str, Any]
    ) -> None:
        task.results.append({"batch": batch_index, **batch_result})
        task.current_batch += 1
        task.retry_count = 0
        task.next_attempt_at = None

        if task.has_remaining_batches:
            task.progress = round(task.current_batch / task.total_batches * 100, 2)
            task.transition(TaskStatus.PENDING)
            return

        task.progress = 100.0
        task.transition(TaskStatus.COMPLETED)
        console.print(f"[green]Task {task.id} ({task.operation}) completed[/green]")
        if self.emitter:
            await self.emitter.emit_task_completed(task.id, task.operation)

    async def _record_failure(self, task: Task, error: str) -> None:
        task.retry_count += 1
        task.errors.append(sanitize_error_context({"error": error})["error"])

        if task.retry_count < task.options.max_retries:
            delay = task.options.retry_delay * task.retry_count
            task.next_attempt_at = self._clock() + timedelta(seconds=delay)
            task.transition(TaskStatus.RETRYING)
            logger.warning(
                "Task %s batch %d failed (attempt %d/%d), retrying in %ds: %s",
                task.id,
                task.current_batch + 1,
                task.retry_count,
                task.options.max_retries,
                delay,
                error,
            )
            self.wakeup.request_wakeup(delay)
            return

        task.next_attempt_at = None
        task.transition(TaskStatus.FAILED)
        console.print(f"[red]Task {task.id} ({task.operation}) failed: {error}[/red]")
        if self.emitter:
            await self.emitter.emit_task_failed(task.id, task.operation, error)

    async def _schedule_remaining(self) -> bool:
        """Request a wake-up for leftover work; returns whether any is left."""
        counts = await self.store.count_tasks_by_status()
        if counts.get(TaskStatus.PENDING.value, 0):
            self.wakeup.request_wakeup(0)
            return True
        if counts.get(TaskStatus.RETRYING.value, 0):
            next_retry = await self.store.next_retry_time()
            delay = 0.0
            if next_retry is not None:
                delay = max((next_retry - self._clock()).total_seconds(), 0.0)
            self.wakeup.request_wakeup(delay)
            return True
        return False

    # ========== Status & Maintenance ==========

    async def get_status(self, task_id: str) -> dict[str, Any]:
        """
        Status summary of one task.

        Raises:
            TaskNotFoundError: If the task does not exist
        """
        task = await self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task.to_status_dict()

    async def get_queue_status(self) -> dict[str, int]:
        """Number of tasks per status, plus the total."""
        counts = await self.store.count_tasks_by_status()
        status = {s.value: counts.get(s.value, 0) for s in TaskStatus}
        status["total"] = sum(status.values())
        return status

    async def cancel(self, task_id: str) -> bool:
        """
        Remove a task that has not started or is waiting to retry.

        Returns False when the task is running or already finished.

        Raises:
            TaskNotFoundError: If the task does not exist
        """
        task = await self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if task.status not in CANCELLABLE_STATUSES:
            return False
        await self.store.delete_task(task_id)
        logger.info("Cancelled task %s", task_id)
        return True

    async def cleanup(self, days_old: int | None = None) -> int:
        """Delete completed and failed tasks older than `days_old` days."""
        days = days_old if days_old is not None else settings.queue_retention_days
        cutoff = self._clock() - timedelta(days=days)
        removed = await self.store.delete_finished_tasks(cutoff)
        if removed:
            logger.info("Removed %d finished task(s) older than %d days", removed, days)
        return removed
