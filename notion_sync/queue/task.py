"""
Queue task model and its state machine.

A task splits a large operation into fixed-size batches. Each queue run
executes at most one batch per task, so a task survives many short
invocations and resumes from `current_batch`.

    PENDING -> PROCESSING -> PENDING      (batch done, more to go)
                          -> COMPLETED    (last batch done)
                          -> RETRYING     (batch failed, retries left)
                          -> FAILED       (batch failed, retries exhausted)
    RETRYING -> PROCESSING
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol, Sequence

from notion_sync.config import settings
from notion_sync.exceptions import InvalidTransitionError
from notion_sync.timestamps import to_iso, utc_now


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})
CANCELLABLE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.RETRYING})

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.PROCESSING}),
    TaskStatus.PROCESSING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.PENDING, TaskStatus.RETRYING, TaskStatus.FAILED}
    ),
    TaskStatus.RETRYING: frozenset({TaskStatus.PROCESSING}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


@dataclass
class TaskOptions:
    """Per-task execution options."""

    batch_size: int = 10
    max_retries: int = 3
    retry_delay: int = 300  # Seconds, multiplied by retry_count
    timeout: int = 300  # Seconds per batch
    priority: int = 10  # Lower runs first

    @classmethod
    def from_settings(cls, **overrides: Any) -> "TaskOptions":
        """Defaults from settings, with explicit overrides (None values ignored)."""
        values: dict[str, Any] = {
            "batch_size": settings.queue_batch_size,
            "max_retries": settings.queue_max_retries,
            "retry_delay": settings.queue_retry_delay,
            "timeout": settings.queue_task_timeout,
            "priority": settings.queue_priority,
        }
        values.update({k: v for k, v in overrides.items() if v is not None and k in values})
        return cls(**values)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TaskOptions":
        data = data or {}
        defaults = cls()
        return cls(
            batch_size=int(data.get("batch_size", defaults.batch_size)),
            max_retries=int(data.get("max_retries", defaults.max_retries)),
            retry_delay=int(data.get("retry_delay", defaults.retry_delay)),
            timeout=int(data.get("timeout", defaults.timeout)),
            priority=int(data.get("priority", defaults.priority)),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "batch_size": self.batch_size,
            "max_retries": self.max_retries,
            "retry_delay": self.retry_delay,
            "timeout": self.timeout,
            "priority": self.priority,
        }


def split_into_batches(items: Sequence[Any], batch_size: int) -> list[list[Any]]:
    """Split items into consecutive batches of at most `batch_size`."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return [list(items[i : i + batch_size]) for i in range(0, len(items), batch_size)]


@dataclass
class Task:
    """A batched queue job."""

    id: str
    operation: str
    batches: list[list[Any]]
    options: TaskOptions = field(default_factory=TaskOptions)
    status: TaskStatus = TaskStatus.PENDING
    current_batch: int = 0
    total_batches: int = 0
    retry_count: int = 0
    progress: float = 0.0
    results: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    next_attempt_at: datetime | None = None

    @classmethod
    def create(cls, operation: str, data: Sequence[Any], options: TaskOptions) -> "Task":
        batches = split_into_batches(data, options.batch_size)
        return cls(
            id=str(uuid.uuid4()),
            operation=operation,
            batches=batches,
            options=options,
            total_batches=len(batches),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def has_remaining_batches(self) -> bool:
        return self.current_batch < self.total_batches

    @property
    def current_payload(self) -> list[Any]:
        return self.batches[self.current_batch]

    def transition(self, target: TaskStatus) -> None:
        """
        Move to another status.

        Raises:
            InvalidTransitionError: If the state machine has no such edge
        """
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.id, self.status.value, target.value)
        self.status = target
        self.updated_at = utc_now()

    def to_status_dict(self) -> dict[str, Any]:
        """Summary for status queries (no batch payloads)."""
        return {
            "id": self.id,
            "operation": self.operation,
            "status": self.status.value,
            "current_batch": self.current_batch,
            "total_batches": self.total_batches,
            "retry_count": self.retry_count,
            "progress": self.progress,
            "results": self.results,
            "errors": self.errors,
            "options": self.options.to_dict(),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "next_attempt_at": to_iso(self.next_attempt_at) if self.next_attempt_at else None,
        }


class TaskStore(Protocol):
    """Persistence of queue tasks."""

    async def save_task(self, task: Task) -> None: ...

    async def get_task(self, task_id: str) -> Task | None: ...

    async def delete_task(self, task_id: str) -> bool: ...

    async def get_eligible_tasks(self, now: datetime, limit: int) -> list[Task]: ...

    async def count_tasks_by_status(self) -> dict[str, int]: ...

    async def delete_finished_tasks(self, older_than: datetime) -> int: ...

    async def next_retry_time(self) -> datetime | None: ...
