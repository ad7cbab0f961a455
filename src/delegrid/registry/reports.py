"""Upward status reports: each worker's counters rolled up to its manager."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from delegrid.errors import WorkerNotFoundError
from delegrid.queue.models import QueueStats
from delegrid.registry.models import WorkerStatus, WorkerView
from delegrid.registry.repository import WorkerRegistry
from delegrid.storage.common import utc_now

BUSY_STATUSES = frozenset({WorkerStatus.WORKING, WorkerStatus.AWAITING_SUBORDINATES})


@dataclass(slots=True)
class WorkerReport:
    """Point-in-time status of one worker."""

    uid: int
    folder_name: str
    role: str
    layer: int
    status: WorkerStatus
    current_task_id: int | None
    tasks_completed: int
    tasks_failed: int
    uptime_seconds: int | None


@dataclass(slots=True)
class ManagerReport:
    """A manager's own status, its direct reports and its whole subtree's totals."""

    manager: WorkerReport
    generated_at: datetime
    subordinates: list[WorkerReport] = field(default_factory=list)
    team_size: int = 0
    team_tasks_completed: int = 0
    team_tasks_failed: int = 0
    queue: QueueStats | None = None

    @property
    def active(self) -> int:
        return sum(1 for report in self.subordinates if report.status in BUSY_STATUSES)

    @property
    def idle(self) -> int:
        return sum(1 for report in self.subordinates if report.status == WorkerStatus.IDLE)

    @property
    def errors(self) -> int:
        return sum(1 for report in self.subordinates if report.status == WorkerStatus.ERROR)


def worker_report(view: WorkerView, *, now: datetime | None = None) -> WorkerReport:
    """Uptime runs from ``started_at`` to ``completed_at`` or ``now``."""

    uptime: int | None = None
    if view.started_at is not None:
        until = view.completed_at or now or utc_now()
        uptime = max(0, int((until - view.started_at).total_seconds()))
    return WorkerReport(
        uid=view.uid,
        folder_name=view.folder_name,
        role=view.role,
        layer=view.layer,
        status=view.status,
        current_task_id=view.current_task_id,
        tasks_completed=view.tasks_completed,
        tasks_failed=view.tasks_failed,
        uptime_seconds=uptime,
    )


def manager_report(
    registry: WorkerRegistry,
    manager_uid: int,
    *,
    queue: QueueStats | None = None,
    now: datetime | None = None,
) -> ManagerReport:
    """Collect direct reports and roll every descendant's counters up.

    Raises:
        WorkerNotFoundError: ``manager_uid`` is not registered.
    """

    manager = registry.get_worker(manager_uid)
    if manager is None:
        raise WorkerNotFoundError(manager_uid)
    now = now or utc_now()
    report = ManagerReport(
        manager=worker_report(manager, now=now),
        generated_at=now,
        queue=queue,
    )

    pending = [manager_uid]
    while pending:
        children = registry.get_children(pending.pop())
        for child in children:
            if child.parent_uid == manager_uid:
                report.subordinates.append(worker_report(child, now=now))
            report.team_size += 1
            report.team_tasks_completed += child.tasks_completed
            report.team_tasks_failed += child.tasks_failed
            pending.append(child.uid)
    return report


def format_manager_report(report: ManagerReport) -> list[str]:
    manager = report.manager
    lines = [
        f"Report for {manager.folder_name} ({manager.role}, layer {manager.layer})",
        f"Generated: {report.generated_at.isoformat()}",
        f"Status: {manager.status.value} done={manager.tasks_completed} "
        f"failed={manager.tasks_failed}",
    ]
    if report.queue is not None:
        progress = round(100 * report.queue.done / report.queue.total) if report.queue.total else 0
        lines.append(
            f"Queue: {report.queue.global_status.value} progress={progress}% "
            f"done={report.queue.done}/{report.queue.total}",
        )
    lines.append(
        f"Team: size={report.team_size} done={report.team_tasks_completed} "
        f"failed={report.team_tasks_failed}",
    )
    lines.append(
        f"Direct reports: {len(report.subordinates)} active={report.active} "
        f"idle={report.idle} errors={report.errors}",
    )
    for sub in report.subordinates:
        task = f"task={sub.current_task_id}" if sub.current_task_id is not None else "task=-"
        lines.append(
            f"- uid={sub.uid} {sub.folder_name} {sub.status.value} {task} "
            f"done={sub.tasks_completed} failed={sub.tasks_failed}",
        )
    return lines
