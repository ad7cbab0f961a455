"""Queue store interface shared by the relational and document backends."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol

from delegrid.queue.models import QueueStats, TaskSeed, TaskStatus, TaskView


class TaskQueueStore(Protocol):
    """Durable, concurrency-safe task records with atomic claim-next.

    Every mutating method is one critical section: it either applies fully
    or leaves the store untouched.
    """

    def init_schema(self) -> None:
        """Create or migrate the backing storage."""

    def close(self) -> None:
        """Release backend resources."""

    def create_task(
        self,
        payload: str,
        *,
        layer: int = 0,
        parent_task_id: int | None = None,
    ) -> TaskView:
        """Append an UNASSIGNED task with the next id; a missing parent raises."""

    def create_tasks(self, seeds: Sequence[TaskSeed]) -> list[TaskView]:
        """Append many tasks in one critical section."""

    def claim_next(self, worker_id: str, *, layer: int | None = None) -> TaskView | None:
        """Move the lowest-id UNASSIGNED task to PROCESSING for ``worker_id``."""

    def complete(
        self,
        task_id: int,
        *,
        result_location: str | None = None,
        worker_id: str | None = None,
    ) -> TaskView:
        """Mark a PROCESSING task DONE."""

    def fail(self, task_id: int, error_text: str, *, worker_id: str | None = None) -> TaskView:
        """Record a failure; requeue while retries remain, otherwise FAILED."""

    def release(self, task_id: int, worker_id: str) -> TaskView:
        """Hand a task held by ``worker_id`` back to UNASSIGNED."""

    def release_all_for_worker(self, worker_id: str) -> int:
        """Requeue every PROCESSING task held by ``worker_id``."""

    def get_task(self, task_id: int) -> TaskView | None:
        """Return one task or None."""

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        layer: int | None = None,
        parent_task_id: int | None = None,
        limit: int | None = None,
    ) -> list[TaskView]:
        """List tasks in id order; ``parent_task_id`` selects its subtasks."""

    def stats(self) -> QueueStats:
        """Counts per status."""

    def load_pipeline_state(self, task_id: int) -> dict[str, Any] | None:
        """Return the stored pipeline position of a task."""

    def save_pipeline_state(self, task_id: int, worker_id: str, state: dict[str, Any]) -> None:
        """Persist pipeline position; only the holding worker may write it."""
