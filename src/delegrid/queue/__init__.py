"""Task queue store: one contract, two backends."""

from delegrid.queue.base import TaskQueueStore
from delegrid.queue.document_store import DocumentTaskQueue
from delegrid.queue.factory import open_task_queue
from delegrid.queue.models import GlobalStatus, QueueStats, TaskSeed, TaskStatus, TaskView
from delegrid.queue.sql_store import SqlTaskQueue

__all__ = [
    "DocumentTaskQueue",
    "GlobalStatus",
    "QueueStats",
    "SqlTaskQueue",
    "TaskQueueStore",
    "TaskSeed",
    "TaskStatus",
    "TaskView",
    "open_task_queue",
]
