"""Batch queue - persisted, resumable tasks."""

from notion_sync.queue.manager import (
    InMemoryWakeupScheduler,
    OperationHandler,
    QueueManager,
    QueueRunResult,
    WakeupScheduler,
)
from notion_sync.queue.task import (
    ALLOWED_TRANSITIONS,
    Task,
    TaskOptions,
    TaskStatus,
    TaskStore,
    split_into_batches,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "InMemoryWakeupScheduler",
    "OperationHandler",
    "QueueManager",
    "QueueRunResult",
    "Task",
    "TaskOptions",
    "TaskStatus",
    "TaskStore",
    "WakeupScheduler",
    "split_into_batches",
]
