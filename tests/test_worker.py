from __future__ import annotations

import logging
from collections import deque
from pathlib import Path

import allure

from delegrid.errors import GenerationCancelled, GenerationFailure
from delegrid.generation.base import CancellationToken
from delegrid.generation.resolver import ExecutorResolver
from delegrid.hierarchy.identity import root_folder_name
from delegrid.pipeline.definition import PipelineDefinition, pipeline_from_mapping
from delegrid.pipeline.engine import StageEngine
from delegrid.pipeline.loop import PipelineRunner
from delegrid.pipeline.outputs import StageOutputStore
from delegrid.queue.models import TaskStatus
from delegrid.queue.sql_store import SqlTaskQueue
from delegrid.registry.models import WorkerRegistration, WorkerStatus
from delegrid.registry.repository import WorkerRegistry
from delegrid.worker import PipelineWorker

pytestmark = [
    allure.epic("Worker"),
    allure.feature("Claim, Run, Settle"),
]


class _Client:
    def __init__(self, script: list, on_generate=None) -> None:
        self.script = deque(script)
        self.prompts: list[str] = []
        self.on_generate = on_generate

    def generate(self, prompt: str, *, cancellation: CancellationToken | None = None) -> str:
        self.prompts.append(prompt)
        if self.on_generate is not None:
            self.on_generate()
        step = self.script.popleft()
        if isinstance(step, Exception):
            raise step
        return step


def _single_stage() -> PipelineDefinition:
    return pipeline_from_mapping(
        {
            "id": "single",
            "stages": [
                {"id": "unassigned", "name": "unassigned"},
                {"id": "work", "name": "work", "executor": "writer", "instructions": "Do it."},
                {"id": "review", "name": "review", "executor": "auditor"},
                {"id": "completed", "name": "completed", "terminal": True},
                {"id": "failed", "name": "failed", "terminal": True, "outcome": "failure"},
            ],
        },
    )


def _approval_flow() -> PipelineDefinition:
    return pipeline_from_mapping(
        {
            "id": "approval",
            "stages": [
                {"id": "unassigned", "name": "unassigned"},
                {"id": "draft", "name": "draft", "executor": "writer"},
                {"id": "approval", "name": "awaiting_approval"},
                {"id": "publish", "name": "publish", "executor": "publisher"},
                {"id": "completed", "name": "completed", "terminal": True},
                {"id": "failed", "name": "failed", "terminal": True, "outcome": "failure"},
            ],
        },
    )


def _worker(
    tmp_path: Path,
    queue: SqlTaskQueue,
    clients: dict[str, _Client],
    *,
    definition: PipelineDefinition | None = None,
    **kwargs,
) -> PipelineWorker:
    definition = definition or _single_stage()
    resolver = ExecutorResolver(lambda executor: clients[executor])
    engine = StageEngine(definition, resolver, StageOutputStore(tmp_path / "outputs"))
    return PipelineWorker(
        queue=queue,
        runner=PipelineRunner(definition, engine),
        worker_id=kwargs.pop("worker_id", "worker-a"),
        poll_interval_seconds=0,
        **kwargs,
    )


def test_completed_run_marks_task_done(tmp_path: Path, sql_queue: SqlTaskQueue) -> None:
    task = sql_queue.create_task("Summarize")
    worker = _worker(
        tmp_path,
        sql_queue,
        {"writer": _Client(["Summary"]), "auditor": _Client(["Verdict: PASS"])},
    )

    summary = worker.run_once()

    assert (summary.processed, summary.completed) == (1, 1)
    done = sql_queue.get_task(task.id)
    assert done.status == TaskStatus.DONE
    assert done.result_location.endswith(f"{task.id}_review.md")
    state = sql_queue.load_pipeline_state(task.id)
    assert state["current_stage_id"] == "completed"


def test_paused_task_is_released_and_resumed(tmp_path: Path, sql_queue: SqlTaskQueue) -> None:
    task = sql_queue.create_task("Announce")
    writer, publisher = _Client(["Draft"]), _Client(["Posted"])
    worker = _worker(
        tmp_path,
        sql_queue,
        {"writer": writer, "publisher": publisher},
        definition=_approval_flow(),
    )

    first = worker.run_once()
    assert first.paused == 1
    released = sql_queue.get_task(task.id)
    assert released.status == TaskStatus.UNASSIGNED
    assert released.retry_count == 0
    assert sql_queue.load_pipeline_state(task.id)["current_stage_id"] == "approval"

    second = worker.run_once()
    assert second.completed == 1
    assert len(writer.prompts) == 1
    assert len(publisher.prompts) == 1


def test_failures_requeue_until_budget_is_spent(tmp_path: Path, sql_queue: SqlTaskQueue) -> None:
    task = sql_queue.create_task("Doomed")
    writer = _Client(
        [
            GenerationFailure("agent missing", transient=False),
            GenerationFailure("agent missing", transient=False),
        ],
    )
    worker = _worker(tmp_path, sql_queue, {"writer": writer})

    assert worker.run_once().requeued == 1
    assert sql_queue.get_task(task.id).status == TaskStatus.UNASSIGNED

    assert worker.run_once().failed == 1
    final = sql_queue.get_task(task.id)
    assert final.status == TaskStatus.FAILED
    assert final.retry_count == 2
    assert final.error_message == "agent missing"


def test_cancelled_run_releases_without_spending_retries(
    tmp_path: Path,
    sql_queue: SqlTaskQueue,
) -> None:
    task = sql_queue.create_task("Interrupted")
    worker = _worker(
        tmp_path,
        sql_queue,
        {"writer": _Client([GenerationCancelled("shutdown")])},
    )

    summary = worker.run_once()

    assert summary.requeued == 1
    view = sql_queue.get_task(task.id)
    assert view.status == TaskStatus.UNASSIGNED
    assert view.retry_count == 0


def test_crash_is_logged_and_counted_as_failure(
    tmp_path: Path,
    sql_queue: SqlTaskQueue,
    caplog,
) -> None:
    task = sql_queue.create_task("Crashy")
    worker = _worker(tmp_path, sql_queue, {"writer": _Client([RuntimeError("boom")])})

    with caplog.at_level(logging.ERROR, logger="delegrid.worker"):
        summary = worker.run_once()

    assert summary.requeued == 1
    assert sql_queue.get_task(task.id).error_message == "RuntimeError: boom"
    assert "crashed the pipeline" in caplog.text


def test_claim_taken_back_mid_run_does_not_stop_the_loop(
    tmp_path: Path,
    sql_queue: SqlTaskQueue,
    caplog,
) -> None:
    task = sql_queue.create_task("Reclaimed")
    released: list[int] = []

    def _release_once() -> None:
        if not released:
            released.append(sql_queue.release_all_for_worker("worker-a"))

    worker = _worker(
        tmp_path,
        sql_queue,
        {
            "writer": _Client(["Draft", "Draft again"], on_generate=_release_once),
            "auditor": _Client(["Verdict: PASS"]),
        },
    )

    with caplog.at_level(logging.WARNING, logger="delegrid.worker"):
        summary = worker.run_loop()

    assert released == [1]
    assert "lost task" in caplog.text
    assert (summary.processed, summary.lost, summary.completed) == (2, 1, 1)
    final = sql_queue.get_task(task.id)
    assert final.status == TaskStatus.DONE
    assert final.retry_count == 0


def test_registered_worker_counters(
    tmp_path: Path,
    sql_queue: SqlTaskQueue,
    registry: WorkerRegistry,
) -> None:
    registry.init_slots(1)
    uid = registry.allocate_uid()
    name = root_folder_name(2, uid)
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
    task = sql_queue.create_task("Tracked")
    worker = _worker(
        tmp_path,
        sql_queue,
        {"writer": _Client(["ok"]), "auditor": _Client(["Verdict: PASS"])},
        worker_id=name,
        registry=registry,
        worker_uid=uid,
    )

    worker.run_once()

    view = registry.get_worker(uid)
    assert view.tasks_completed == 1
    assert view.current_task_id is None
    assert view.status == WorkerStatus.IDLE
    assert sql_queue.get_task(task.id).assigned_worker == name


def test_worker_marked_error_hands_back_its_claim_and_stops(
    tmp_path: Path,
    sql_queue: SqlTaskQueue,
    registry: WorkerRegistry,
) -> None:
    registry.init_slots(1)
    uid = registry.allocate_uid()
    name = root_folder_name(2, uid)
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
    registry.update_status(uid, WorkerStatus.ERROR, error_message="No heartbeat")
    task = sql_queue.create_task("Orphaned")
    writer = _Client(["never used"])
    worker = _worker(
        tmp_path,
        sql_queue,
        {"writer": writer},
        worker_id=name,
        registry=registry,
        worker_uid=uid,
    )

    summary = worker.run_loop()

    assert (summary.processed, summary.requeued) == (0, 1)
    assert worker.stopping
    assert writer.prompts == []
    assert sql_queue.get_task(task.id).status == TaskStatus.UNASSIGNED
    assert registry.get_worker(uid).status == WorkerStatus.ERROR


def test_run_loop_honours_task_limit_and_idle_exit(
    tmp_path: Path,
    sql_queue: SqlTaskQueue,
) -> None:
    for index in range(3):
        sql_queue.create_task(f"task {index}")
    worker = _worker(
        tmp_path,
        sql_queue,
        {
            "writer": _Client(["a", "b", "c"]),
            "auditor": _Client(["Verdict: PASS"] * 3),
        },
    )

    limited = worker.run_loop(max_tasks=2)
    assert (limited.processed, limited.completed) == (2, 2)

    drained = worker.run_loop(max_idle_polls=2)
    assert drained.completed == 1
    assert drained.idle_polls == 2
    assert sql_queue.stats().done == 3


def test_stop_request_blocks_new_claims(tmp_path: Path, sql_queue: SqlTaskQueue) -> None:
    sql_queue.create_task("Untouched")
    worker = _worker(tmp_path, sql_queue, {"writer": _Client([])})

    worker.request_stop(signal_name="SIGTERM")

    assert worker.run_once().idle_polls == 1
    assert worker.run_loop().processed == 0
    assert sql_queue.stats().unassigned == 1


def test_stop_during_run_cancels_after_grace_period(
    tmp_path: Path,
    sql_queue: SqlTaskQueue,
) -> None:
    task = sql_queue.create_task("Long job")
    clients: dict[str, _Client] = {"auditor": _Client(["Verdict: PASS"])}
    worker = _worker(tmp_path, sql_queue, clients, graceful_shutdown_seconds=0)
    clients["writer"] = _Client(["Draft"], on_generate=worker.request_stop)

    summary = worker.run_once()

    assert summary.requeued == 1
    assert clients["auditor"].prompts == []
    assert sql_queue.get_task(task.id).status == TaskStatus.UNASSIGNED
    assert sql_queue.load_pipeline_state(task.id)["current_stage_id"] == "review"
