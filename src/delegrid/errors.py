"""Typed errors shared across the coordination engine."""

from __future__ import annotations


class DelegridError(Exception):
    """Base exception for delegrid errors."""


class ValidationError(DelegridError, ValueError):
    """Malformed input rejected before any state is touched."""


class TaskNotFoundError(DelegridError, LookupError):
    """Referenced task id does not exist."""

    def __init__(self, task_id: int) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class WorkerNotFoundError(DelegridError, LookupError):
    """Referenced worker uid is not registered."""

    def __init__(self, uid: int) -> None:
        super().__init__(f"Worker not found: {uid}")
        self.uid = uid


class OwnershipError(DelegridError):
    """Operation attempted by a worker that does not hold the task."""


class InvalidTransitionError(DelegridError):
    """Requested status change is not allowed from the current status."""


class PersistenceFailure(DelegridError, RuntimeError):
    """Store write failed; the critical section was rolled back."""


class LockTimeoutError(PersistenceFailure):
    """Exclusive lock was not acquired within the configured bound."""


class GenerationFailure(DelegridError, RuntimeError):
    """Generation capability failed or timed out."""

    def __init__(self, message: str, *, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class GenerationCancelled(DelegridError):
    """Generation was aborted by an external cancellation signal."""
