"""Domain models for the worker registry, slot pool and event log."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class WorkerStatus(str, Enum):
    """Worker lifecycle states."""

    QUEUED = "QUEUED"
    SLOT_ASSIGNED = "SLOT_ASSIGNED"
    IDLE = "IDLE"
    WORKING = "WORKING"
    AWAITING_SUBORDINATES = "AWAITING_SUBORDINATES"
    DONE = "DONE"
    ERROR = "ERROR"
    SHUTDOWN = "SHUTDOWN"


ACTIVE_STATUSES = frozenset(
    {WorkerStatus.IDLE, WorkerStatus.WORKING, WorkerStatus.AWAITING_SUBORDINATES},
)
TERMINAL_STATUSES = frozenset({WorkerStatus.DONE, WorkerStatus.ERROR, WorkerStatus.SHUTDOWN})

# Statuses excluded from unresponsive detection: finished workers, and queued
# workers that were never started and so never heartbeat.
HEARTBEAT_EXEMPT_STATUSES = TERMINAL_STATUSES | {WorkerStatus.QUEUED}

ALLOWED_TRANSITIONS: dict[WorkerStatus, frozenset[WorkerStatus]] = {
    WorkerStatus.QUEUED: frozenset({WorkerStatus.SLOT_ASSIGNED}),
    WorkerStatus.SLOT_ASSIGNED: ACTIVE_STATUSES,
    WorkerStatus.IDLE: ACTIVE_STATUSES | {WorkerStatus.DONE},
    WorkerStatus.WORKING: ACTIVE_STATUSES | {WorkerStatus.DONE},
    WorkerStatus.AWAITING_SUBORDINATES: ACTIVE_STATUSES | {WorkerStatus.DONE},
    WorkerStatus.DONE: frozenset(),
    WorkerStatus.ERROR: frozenset(),
    WorkerStatus.SHUTDOWN: frozenset(),
}


def can_transition(current: WorkerStatus, target: WorkerStatus) -> bool:
    """ERROR and SHUTDOWN are reachable from any live status."""

    if current == target:
        return current not in TERMINAL_STATUSES
    if current in TERMINAL_STATUSES:
        return False
    if target in {WorkerStatus.ERROR, WorkerStatus.SHUTDOWN}:
        return True
    return target in ALLOWED_TRANSITIONS[current]


class EventType(str, Enum):
    """Typed kinds of audit-trail entries."""

    TASK_CREATED = "TASK_CREATED"
    TASK_CLAIMED = "TASK_CLAIMED"
    TASK_DONE = "TASK_DONE"
    TASK_FAILED = "TASK_FAILED"
    TASK_REQUEUED = "TASK_REQUEUED"
    TASK_RELEASED = "TASK_RELEASED"
    WORKER_PROVISIONED = "WORKER_PROVISIONED"
    WORKER_SPAWNED = "WORKER_SPAWNED"
    WORKER_SPAWN_FAILED = "WORKER_SPAWN_FAILED"
    WORKER_STARTED = "WORKER_STARTED"
    WORKER_HEARTBEAT = "WORKER_HEARTBEAT"
    WORKER_DONE = "WORKER_DONE"
    WORKER_ERROR = "WORKER_ERROR"
    WORKER_SHUTDOWN = "WORKER_SHUTDOWN"
    SLOT_ASSIGNED = "SLOT_ASSIGNED"
    SLOT_RELEASED = "SLOT_RELEASED"
    PROJECT_STARTED = "PROJECT_STARTED"
    PROJECT_STOPPED = "PROJECT_STOPPED"


@dataclass(slots=True)
class WorkerRegistration:
    """Input payload for registering a worker and its tree edge."""

    uid: int
    folder_name: str
    folder_path: str
    role: str
    layer: int
    parent_uid: int | None = None


@dataclass(slots=True)
class WorkerView:
    """Readable worker row."""

    uid: int
    folder_name: str
    folder_path: str
    role: str
    layer: int
    parent_uid: int | None
    status: WorkerStatus
    slot_id: int | None
    last_heartbeat: datetime | None
    tasks_completed: int
    tasks_failed: int
    current_task_id: int | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


@dataclass(slots=True)
class SlotView:
    slot_id: int
    worker_uid: int | None
    assigned_at: datetime | None


@dataclass(slots=True)
class EventView:
    """Event log entry."""

    event_id: int
    created_at: datetime
    event_type: str
    worker_uid: int | None
    task_id: int | None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DashboardStats:
    """Point-in-time project overview."""

    workers_by_status: dict[str, int]
    tasks_by_status: dict[str, int]
    slots_total: int
    slots_used: int
    unresponsive_workers: int

    @property
    def slots_free(self) -> int:
        return self.slots_total - self.slots_used
