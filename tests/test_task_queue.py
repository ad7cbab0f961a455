from __future__ import annotations

import json
import multiprocessing
import threading
from concurrent.futures import ProcessPoolExecutor
from pathlib import Path

import allure
import pytest

from delegrid.errors import InvalidTransitionError, OwnershipError, TaskNotFoundError
from delegrid.queue.document_store import DocumentTaskQueue
from delegrid.queue.models import GlobalStatus, QueueStats, TaskSeed, TaskStatus
from delegrid.queue.sql_store import SqlTaskQueue

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Claim, Settle, Retry"),
]


def test_claim_takes_lowest_id_and_honors_layer(any_queue) -> None:
    any_queue.create_tasks(
        [
            TaskSeed(payload="top", layer=0),
            TaskSeed(payload="mid-a", layer=1),
            TaskSeed(payload="mid-b", layer=1),
        ],
    )

    first = any_queue.claim_next("w1", layer=1)
    assert first is not None
    assert first.payload == "mid-a"
    assert first.status == TaskStatus.PROCESSING
    assert first.assigned_worker == "w1"

    second = any_queue.claim_next("w2")
    assert second is not None
    assert second.payload == "top"
    assert any_queue.claim_next("w3", layer=2) is None


def test_complete_requires_holder(any_queue) -> None:
    task = any_queue.create_task("do it")
    any_queue.claim_next("w1")

    with pytest.raises(OwnershipError):
        any_queue.complete(task.id, worker_id="intruder")

    done = any_queue.complete(task.id, result_location="out/1.md", worker_id="w1")
    assert done.status == TaskStatus.DONE
    assert done.result_location == "out/1.md"

    with pytest.raises(InvalidTransitionError):
        any_queue.complete(task.id)


def test_failure_requeues_until_retry_budget_is_spent(any_queue) -> None:
    task = any_queue.create_task("flaky")

    any_queue.claim_next("w1")
    requeued = any_queue.fail(task.id, "boom 1", worker_id="w1")
    assert requeued.status == TaskStatus.UNASSIGNED
    assert requeued.assigned_worker is None
    assert requeued.retry_count == 1

    any_queue.claim_next("w2")
    failed = any_queue.fail(task.id, "boom 2")
    assert failed.status == TaskStatus.FAILED
    assert failed.retry_count == 2
    assert failed.error_message == "boom 2"
    assert any_queue.claim_next("w3") is None


def test_release_returns_task_without_spending_retries(any_queue) -> None:
    task = any_queue.create_task("paused")
    any_queue.claim_next("w1")

    with pytest.raises(OwnershipError):
        any_queue.release(task.id, "w2")

    released = any_queue.release(task.id, "w1")
    assert released.status == TaskStatus.UNASSIGNED
    assert released.retry_count == 0

    with pytest.raises(OwnershipError):
        any_queue.release(task.id, "w1")


def test_release_all_for_worker(any_queue) -> None:
    any_queue.create_tasks([TaskSeed(payload=f"t{index}") for index in range(3)])
    any_queue.claim_next("crashed")
    any_queue.claim_next("crashed")
    any_queue.claim_next("healthy")

    assert any_queue.release_all_for_worker("crashed") == 2
    assert any_queue.release_all_for_worker("crashed") == 0
    stats = any_queue.stats()
    assert (stats.unassigned, stats.processing) == (2, 1)


def test_pipeline_state_is_owned_by_holder(any_queue) -> None:
    task = any_queue.create_task("staged")
    assert any_queue.load_pipeline_state(task.id) is None

    with pytest.raises(OwnershipError):
        any_queue.save_pipeline_state(task.id, "w1", {"current_stage_id": "draft"})

    any_queue.claim_next("w1")
    any_queue.save_pipeline_state(task.id, "w1", {"current_stage_id": "draft", "n": 1})
    any_queue.save_pipeline_state(task.id, "w1", {"current_stage_id": "review", "n": 2})
    assert any_queue.load_pipeline_state(task.id) == {"current_stage_id": "review", "n": 2}


def test_unknown_task_raises(any_queue) -> None:
    assert any_queue.get_task(404) is None
    with pytest.raises(TaskNotFoundError):
        any_queue.fail(404, "nope")


def test_list_tasks_filters_and_limits(any_queue) -> None:
    any_queue.create_tasks([TaskSeed(payload=f"t{index}", layer=index % 2) for index in range(5)])
    any_queue.claim_next("w1")

    assert [task.payload for task in any_queue.list_tasks(layer=1)] == ["t1", "t3"]
    assert [task.payload for task in any_queue.list_tasks(status=TaskStatus.PROCESSING)] == ["t0"]
    assert len(any_queue.list_tasks(limit=2)) == 2


def test_subtasks_link_to_existing_parent(any_queue) -> None:
    parent = any_queue.create_task("split me")
    first = any_queue.create_task("part one", parent_task_id=parent.id)
    any_queue.create_task("unrelated")
    any_queue.create_tasks([TaskSeed(payload="part two", parent_task_id=parent.id)])

    assert first.parent_task_id == parent.id
    assert any_queue.get_task(parent.id).parent_task_id is None
    subtasks = any_queue.list_tasks(parent_task_id=parent.id)
    assert [task.payload for task in subtasks] == ["part one", "part two"]

    with pytest.raises(TaskNotFoundError):
        any_queue.create_task("orphan", parent_task_id=404)
    assert len(any_queue.list_tasks()) == 4


def test_global_status_progression(any_queue) -> None:
    assert any_queue.stats().global_status == GlobalStatus.NOT_STARTED
    first, second = any_queue.create_tasks([TaskSeed(payload="a"), TaskSeed(payload="b")])
    assert any_queue.stats().global_status == GlobalStatus.NOT_STARTED

    any_queue.claim_next("w1")
    assert any_queue.stats().global_status == GlobalStatus.IN_PROGRESS
    any_queue.complete(first.id)

    any_queue.claim_next("w1")
    any_queue.fail(second.id, "x")
    any_queue.claim_next("w1")
    any_queue.fail(second.id, "y")

    stats = any_queue.stats()
    assert (stats.done, stats.failed) == (1, 1)
    assert stats.global_status == GlobalStatus.ALL_DISPOSED


def test_queue_stats_completed_when_every_task_is_done() -> None:
    stats = QueueStats.from_counts({TaskStatus.DONE: 3})
    assert stats.total == 3
    assert stats.global_status == GlobalStatus.COMPLETED


def test_concurrent_claims_never_share_a_task(db_path: Path) -> None:
    setup = SqlTaskQueue(db_path)
    setup.init_schema()
    setup.create_tasks([TaskSeed(payload=f"task-{index}") for index in range(40)])
    setup.close()

    claimed: dict[str, list[int]] = {}
    errors: list[BaseException] = []

    def _drain(worker_id: str) -> None:
        queue = SqlTaskQueue(db_path, sqlite_busy_timeout_ms=10_000)
        taken: list[int] = []
        try:
            while (task := queue.claim_next(worker_id)) is not None:
                taken.append(task.id)
        except Exception as error:  # noqa: BLE001
            errors.append(error)
        finally:
            queue.close()
        claimed[worker_id] = taken

    threads = [threading.Thread(target=_drain, args=(f"w{index}",)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    all_ids = [task_id for ids in claimed.values() for task_id in ids]
    assert sorted(all_ids) == list(range(1, 41))


def _drain_document(document_path: Path, worker_id: str) -> list[int]:
    queue = DocumentTaskQueue(
        document_path,
        lock_timeout_seconds=60.0,
        lock_retry_interval_seconds=0.005,
    )
    taken: list[int] = []
    while (task := queue.claim_next(worker_id)) is not None:
        taken.append(task.id)
    return taken


def test_document_queue_claims_are_exclusive_across_processes(tmp_path: Path) -> None:
    document_path = tmp_path / "tasks.json"
    setup = DocumentTaskQueue(document_path)
    setup.init_schema()
    setup.create_tasks([TaskSeed(payload=f"task-{index}") for index in range(200)])

    worker_ids = [f"w{index}" for index in range(6)]
    context = multiprocessing.get_context("spawn")
    with ProcessPoolExecutor(max_workers=len(worker_ids), mp_context=context) as pool:
        claimed = list(pool.map(_drain_document, [document_path] * len(worker_ids), worker_ids))

    all_ids = [task_id for ids in claimed for task_id in ids]
    assert sorted(all_ids) == list(range(1, 201))
    stats = setup.stats()
    assert (stats.processing, stats.unassigned) == (200, 0)
    assert not setup.lock.lock_path.exists()


def test_sql_queue_records_task_events(sql_queue: SqlTaskQueue, registry) -> None:
    task = sql_queue.create_task("audited")
    sql_queue.claim_next("w1")
    sql_queue.fail(task.id, "transient")
    sql_queue.claim_next("w1")
    sql_queue.complete(task.id, result_location="r.md")

    events = [event.event_type for event in reversed(registry.task_events(task.id))]
    assert events == [
        "TASK_CREATED",
        "TASK_CLAIMED",
        "TASK_REQUEUED",
        "TASK_CLAIMED",
        "TASK_DONE",
    ]


def test_document_queue_persists_stats_block(document_queue: DocumentTaskQueue) -> None:
    document_queue.create_tasks([TaskSeed(payload="a"), TaskSeed(payload="b")])
    document_queue.claim_next("w1")

    document = json.loads(document_queue.document_path.read_text(encoding="utf-8"))
    assert document["stats"]["processing"] == 1
    assert document["stats"]["unassigned"] == 1
    assert document["stats"]["global_status"] == GlobalStatus.IN_PROGRESS.value
    assert not document_queue.lock.lock_path.exists()


def test_document_queue_failed_mutation_keeps_previous_document(
    document_queue: DocumentTaskQueue,
) -> None:
    task = document_queue.create_task("keep me")
    before = document_queue.document_path.read_text(encoding="utf-8")

    with pytest.raises(InvalidTransitionError):
        document_queue.complete(task.id)

    assert document_queue.document_path.read_text(encoding="utf-8") == before
    assert not document_queue.lock.lock_path.exists()
