"""Select the task queue backend at construction time."""

from __future__ import annotations

from delegrid.config import Settings
from delegrid.queue.base import TaskQueueStore
from delegrid.queue.document_store import DocumentTaskQueue
from delegrid.queue.sql_store import SqlTaskQueue


def open_task_queue(settings: Settings) -> TaskQueueStore:
    """Build the configured backend; callers still own ``init_schema``/``close``."""

    if settings.queue.backend == "sqlite":
        return SqlTaskQueue(
            settings.db_path,
            max_retries=settings.queue.max_retries,
            retry_on_failure=settings.queue.retry_on_failure,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
    if settings.queue.backend == "document":
        return DocumentTaskQueue(
            settings.queue.document_path,
            max_retries=settings.queue.max_retries,
            retry_on_failure=settings.queue.retry_on_failure,
            lock_timeout_seconds=settings.queue.lock_timeout_seconds,
            lock_retry_interval_seconds=settings.queue.lock_retry_interval_seconds,
        )
    raise ValueError(f"Unsupported queue backend: {settings.queue.backend}")
