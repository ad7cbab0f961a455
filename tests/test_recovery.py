from __future__ import annotations

from datetime import timedelta

import allure
from sqlmodel import Session

from delegrid.hierarchy.identity import root_folder_name
from delegrid.queue.models import TaskStatus
from delegrid.queue.sql_store import SqlTaskQueue
from delegrid.recovery import recover_unresponsive_workers
from delegrid.registry.models import EventType, WorkerRegistration, WorkerStatus
from delegrid.registry.repository import WorkerRegistry
from delegrid.storage.common import to_db_datetime, utc_now
from delegrid.storage.sqlmodel_models import WorkerRow

pytestmark = [
    allure.epic("Worker Registry"),
    allure.feature("Unresponsive Worker Recovery"),
]


def _start_worker(registry: WorkerRegistry) -> tuple[int, str]:
    uid = registry.allocate_uid()
    name = root_folder_name(1, uid)
    registry.register_worker(
        WorkerRegistration(
            uid=uid,
            folder_name=name,
            folder_path=f"/w/{name}",
            role="CEO",
            layer=0,
        ),
    )
    registry.assign_slot(uid)
    registry.update_status(uid, WorkerStatus.IDLE)
    return uid, name


def _age_heartbeat(registry: WorkerRegistry, uid: int, seconds: int) -> None:
    with Session(registry.engine) as session:
        row = session.get(WorkerRow, uid)
        row.last_heartbeat = to_db_datetime(utc_now() - timedelta(seconds=seconds))
        session.add(row)
        session.commit()


def test_stale_worker_loses_slot_and_tasks(
    sql_queue: SqlTaskQueue,
    registry: WorkerRegistry,
) -> None:
    registry.init_slots(2)
    stale_uid, stale_name = _start_worker(registry)
    live_uid, live_name = _start_worker(registry)
    held = sql_queue.create_task("held by stale")
    kept = sql_queue.create_task("held by live")
    assert sql_queue.claim_next(stale_name).id == held.id
    assert sql_queue.claim_next(live_name).id == kept.id
    _age_heartbeat(registry, stale_uid, 600)

    report = recover_unresponsive_workers(registry, sql_queue, threshold_seconds=90)

    assert report.workers == [stale_uid]
    assert report.slots_released == 1
    assert report.tasks_released == 1

    stale = registry.get_worker(stale_uid)
    assert stale.status == WorkerStatus.ERROR
    assert stale.slot_id is None
    assert "No heartbeat" in stale.error_message
    assert registry.get_worker(live_uid).status == WorkerStatus.IDLE

    assert sql_queue.get_task(held.id).status == TaskStatus.UNASSIGNED
    assert sql_queue.get_task(kept.id).assigned_worker == live_name
    latest = registry.recent_events(limit=1, event_type=EventType.WORKER_ERROR)
    assert latest[0].worker_uid == stale_uid


def test_recovery_is_a_no_op_for_healthy_workers(
    sql_queue: SqlTaskQueue,
    registry: WorkerRegistry,
) -> None:
    registry.init_slots(1)
    _start_worker(registry)

    report = recover_unresponsive_workers(registry, sql_queue, threshold_seconds=90)

    assert report.workers == []
    assert (report.slots_released, report.tasks_released) == (0, 0)


def test_recovered_slot_goes_to_the_next_queued_worker(
    sql_queue: SqlTaskQueue,
    registry: WorkerRegistry,
) -> None:
    registry.init_slots(1)
    stale_uid, _ = _start_worker(registry)
    waiting_uid = registry.allocate_uid()
    registry.register_worker(
        WorkerRegistration(
            uid=waiting_uid,
            folder_name=root_folder_name(1, waiting_uid),
            folder_path="/w/waiting",
            role="CEO",
            layer=0,
        ),
    )
    assert registry.assign_slot(waiting_uid) is None
    _age_heartbeat(registry, stale_uid, 600)

    recover_unresponsive_workers(registry, sql_queue, threshold_seconds=90)

    assert registry.assign_slot(waiting_uid) == 1
