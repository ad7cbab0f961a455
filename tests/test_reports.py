from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import allure
import pytest

from delegrid.errors import WorkerNotFoundError
from delegrid.queue.models import GlobalStatus, QueueStats
from delegrid.registry.models import WorkerRegistration, WorkerStatus
from delegrid.registry.reports import format_manager_report, manager_report, worker_report
from delegrid.registry.repository import WorkerRegistry
from delegrid.storage.common import utc_now

pytestmark = [
    allure.epic("Worker Registry"),
    allure.feature("Upward Reports"),
]


def _add(registry: WorkerRegistry, name: str, role: str, layer: int, parent: int | None) -> int:
    uid = registry.allocate_uid()
    registry.register_worker(
        WorkerRegistration(
            uid=uid,
            folder_name=name,
            folder_path=f"/work/{name}",
            role=role,
            layer=layer,
            parent_uid=parent,
        ),
    )
    registry.assign_slot(uid)
    return uid


@pytest.fixture()
def team(registry: WorkerRegistry) -> dict[str, int]:
    registry.init_slots(4)
    root = _add(registry, "root", "CEO", 0, None)
    busy = _add(registry, "busy", "PROCCTL", 1, root)
    quiet = _add(registry, "quiet", "PROCCTL", 1, root)
    deep = _add(registry, "deep", "TASKENG", 2, busy)

    registry.record_task_claimed(busy, 10)
    registry.record_task_finished(busy, 10, succeeded=True)
    registry.record_task_claimed(busy, 11)
    registry.record_task_claimed(quiet, 12)
    registry.record_task_finished(quiet, 12, succeeded=False)
    for task_id in (13, 14):
        registry.record_task_claimed(deep, task_id)
        registry.record_task_finished(deep, task_id, succeeded=True)
    return {"root": root, "busy": busy, "quiet": quiet, "deep": deep}


def test_manager_report_rolls_up_the_subtree(registry: WorkerRegistry, team) -> None:
    report = manager_report(registry, team["root"])

    assert [sub.uid for sub in report.subordinates] == [team["busy"], team["quiet"]]
    assert (report.team_size, report.team_tasks_completed, report.team_tasks_failed) == (3, 3, 1)
    assert (report.active, report.idle, report.errors) == (1, 1, 0)
    assert report.subordinates[0].current_task_id == 11

    middle = manager_report(registry, team["busy"])
    assert [sub.folder_name for sub in middle.subordinates] == ["deep"]
    assert (middle.team_size, middle.team_tasks_completed) == (1, 2)

    leaf = manager_report(registry, team["deep"])
    assert leaf.subordinates == []
    assert leaf.team_size == 0


def test_manager_report_requires_known_worker(registry: WorkerRegistry) -> None:
    with pytest.raises(WorkerNotFoundError):
        manager_report(registry, 404)


def test_worker_uptime_stops_at_completion(registry: WorkerRegistry, team) -> None:
    view = registry.get_worker(team["deep"])
    started = utc_now() - timedelta(minutes=10)

    running = worker_report(replace(view, started_at=started), now=started + timedelta(seconds=90))
    assert running.uptime_seconds == 90

    finished = replace(view, started_at=started, completed_at=started + timedelta(seconds=30))
    assert worker_report(finished, now=started + timedelta(hours=1)).uptime_seconds == 30

    assert worker_report(replace(view, started_at=None)).uptime_seconds is None


def test_format_manager_report(registry: WorkerRegistry, team) -> None:
    stats = QueueStats(total=4, unassigned=1, processing=1, done=2, failed=0)
    report = manager_report(registry, team["root"], queue=stats)

    lines = format_manager_report(report)

    assert lines[0] == "Report for root (CEO, layer 0)"
    assert lines[2] == f"Status: {WorkerStatus.SLOT_ASSIGNED.value} done=0 failed=0"
    assert f"Queue: {GlobalStatus.IN_PROGRESS.value} progress=50% done=2/4" in lines
    assert "Team: size=3 done=3 failed=1" in lines
    assert "Direct reports: 2 active=1 idle=1 errors=0" in lines
    assert f"- uid={team['busy']} busy WORKING task=11 done=1 failed=0" in lines
    assert f"- uid={team['quiet']} quiet IDLE task=- done=0 failed=1" in lines
