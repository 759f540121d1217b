"""
Exception hierarchy for the sync engine.

Classifiable API failures travel as ApiResult values; these exceptions cover
the cases where a caller cannot continue.
"""

from typing import Any


class NotionSyncError(Exception):
    """Base class for all sync engine errors."""


class ApiRequestError(NotionSyncError):
    """A remote request failed after retries and fallbacks."""

    def __init__(self, message: str, result: Any = None) -> None:
        self.result = result
        super().__init__(message)


class SyncAbortedError(NotionSyncError):
    """The run cannot continue (for example the token was rejected)."""


class DetectionError(NotionSyncError):
    """Remote data could not be hashed or compared."""


class InvalidTransitionError(NotionSyncError):
    """A task was asked to move between two states that are not connected."""

    def __init__(self, task_id: str, current: str, target: str) -> None:
        self.task_id = task_id
        self.current = current
        self.target = target
        super().__init__(f"Task {task_id}: illegal transition {current} -> {target}")


class TaskNotFoundError(NotionSyncError):
    """No task with the given id exists."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class UnknownOperationError(NotionSyncError):
    """A task references an operation with no registered handler."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"No handler registered for operation '{operation}'")


class SyncLockedError(NotionSyncError):
    """Another run already holds the lock."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Lock '{name}' is held by another run")
