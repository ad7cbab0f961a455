"""Domain models for the task queue."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    UNASSIGNED = "UNASSIGNED"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    FAILED = "FAILED"


class GlobalStatus(str, Enum):
    """Project-wide disposition derived from task counts."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    ALL_DISPOSED = "all_disposed"
    COMPLETED = "completed"


@dataclass(slots=True)
class TaskSeed:
    """Input record for bulk task creation."""

    payload: str
    layer: int = 0
    parent_task_id: int | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI and worker logic."""

    id: int
    layer: int
    payload: str
    status: TaskStatus
    assigned_worker: str | None
    result_location: str | None
    error_message: str | None
    retry_count: int
    max_retries: int
    retry_on_failure: bool
    created_at: datetime
    updated_at: datetime
    parent_task_id: int | None = None


@dataclass(slots=True)
class QueueStats:
    """Task counts per status plus the derived project disposition."""

    total: int = 0
    unassigned: int = 0
    processing: int = 0
    done: int = 0
    failed: int = 0

    @classmethod
    def from_counts(cls, counts: Mapping[TaskStatus, int]) -> QueueStats:
        unassigned = counts.get(TaskStatus.UNASSIGNED, 0)
        processing = counts.get(TaskStatus.PROCESSING, 0)
        done = counts.get(TaskStatus.DONE, 0)
        failed = counts.get(TaskStatus.FAILED, 0)
        return cls(
            total=unassigned + processing + done + failed,
            unassigned=unassigned,
            processing=processing,
            done=done,
            failed=failed,
        )

    @property
    def global_status(self) -> GlobalStatus:
        if self.total == 0 or self.unassigned == self.total:
            return GlobalStatus.NOT_STARTED
        if self.unassigned or self.processing:
            return GlobalStatus.IN_PROGRESS
        if self.failed:
            return GlobalStatus.ALL_DISPOSED
        return GlobalStatus.COMPLETED


def next_status_after_failure(
    *,
    retry_count: int,
    max_retries: int,
    retry_on_failure: bool,
) -> TaskStatus:
    """Status for a task whose failure counter has just become ``retry_count``."""

    if retry_on_failure and retry_count < max_retries:
        return TaskStatus.UNASSIGNED
    return TaskStatus.FAILED
