"""Controllers for delegrid CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from delegrid.config import Settings
from delegrid.errors import ValidationError, WorkerNotFoundError
from delegrid.generation.resolver import ExecutorResolver
from delegrid.hierarchy.identity import (
    HierarchyIdentity,
    child_folder_name,
    extract_chain,
    format_folder_name,
    infer_depth,
    parse_folder_name,
    root_folder_name,
    try_parse_folder_name,
)
from delegrid.hierarchy.roles import ROOT_ROLE, get_hierarchy, lookup_role, validate_fan_out
from delegrid.pipeline.aggregate import MergeStrategy, aggregate_subtask_outputs
from delegrid.pipeline.definition import PipelineDefinition, default_pipeline, load_pipeline
from delegrid.pipeline.engine import StageEngine
from delegrid.pipeline.loop import PipelineRunner
from delegrid.pipeline.models import PipelineTask
from delegrid.pipeline.outputs import StageOutputStore
from delegrid.queue.base import TaskQueueStore
from delegrid.queue.factory import open_task_queue
from delegrid.queue.models import TaskSeed, TaskStatus
from delegrid.recovery import recover_unresponsive_workers
from delegrid.registry.models import TERMINAL_STATUSES, WorkerRegistration, WorkerStatus
from delegrid.registry.reports import format_manager_report, manager_report
from delegrid.registry.repository import WorkerRegistry
from delegrid.worker import PipelineWorker

NOT_RUNNABLE_STATUSES = TERMINAL_STATUSES | {WorkerStatus.QUEUED}


@dataclass(slots=True)
class DbCommand:
    """CLI input for commands that only need the database location."""

    db_path: Path | None


@dataclass(slots=True)
class ProjectInitCommand:
    """CLI input for project bootstrap."""

    db_path: Path | None
    tasks_file: Path | None
    slots: int | None
    name: str | None = None


@dataclass(slots=True)
class TaskAddCommand:
    db_path: Path | None
    payload: str
    layer: int
    parent_id: int | None = None


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    layer: int | None
    limit: int
    parent_id: int | None = None


@dataclass(slots=True)
class TaskInspectCommand:
    db_path: Path | None
    task_id: int


@dataclass(slots=True)
class TaskReleaseWorkerCommand:
    db_path: Path | None
    worker_id: str


@dataclass(slots=True)
class TaskAggregateCommand:
    """CLI input for merging subtask outputs."""

    db_path: Path | None
    task_id: int
    strategy: str
    include_headers: bool = False
    save: bool = True


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    pipeline_path: Path | None
    worker_id: str | None
    worker_uid: int | None
    layer: int | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class IdentityEncodeCommand:
    role: str
    fan_out: int
    sibling: int
    uid: int


@dataclass(slots=True)
class RegistryEventsCommand:
    db_path: Path | None
    limit: int
    worker_uid: int | None


@dataclass(slots=True)
class RegistryWorkersCommand:
    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class RegistryRecoverCommand:
    db_path: Path | None
    threshold_seconds: int | None


@dataclass(slots=True)
class RegistryReportCommand:
    db_path: Path | None
    worker_uid: int


@dataclass(slots=True)
class RegistryRegisterCommand:
    """CLI input for provisioning one worker in the hierarchy."""

    db_path: Path | None
    role: str | None
    fan_out: int
    sibling: int
    parent_uid: int | None
    root_dir: Path


class QueueCliController:
    """Coordinates project, task and worker CLI operations."""

    def init_project(self, command: ProjectInitCommand) -> list[str]:
        settings = _settings(command.db_path)
        seeds = read_task_seeds(command.tasks_file) if command.tasks_file else []
        slots = command.slots or settings.registry.slot_count
        with _registry(settings) as registry, _queue(settings) as queue:
            created = queue.create_tasks(seeds) if seeds else []
            slot_views = registry.init_slots(slots)
            if command.name:
                registry.set_meta("name", command.name)
            registry.set_meta("queue_backend", settings.queue.backend)
            registry.record_project_started({"tasks": len(created), "slots": len(slot_views)})

        return [
            f"Project initialized: db={settings.db_path} backend={settings.queue.backend}",
            f"Tasks created: {len(created)}",
            f"Slots: {len(slot_views)}",
        ]

    def project_status(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _registry(settings) as registry, _queue(settings) as queue:
            meta = registry.all_meta()
            dashboard = registry.dashboard(
                unresponsive_after_seconds=settings.registry.unresponsive_after_seconds,
            )
            stats = queue.stats()

        lines = [f"Project: {meta.get('name', '-')}", f"Queue: {stats.global_status.value}"]
        lines.append(
            f"Tasks: total={stats.total} unassigned={stats.unassigned} "
            f"processing={stats.processing} done={stats.done} failed={stats.failed}",
        )
        lines.append(
            f"Slots: used={dashboard.slots_used} free={dashboard.slots_free} "
            f"total={dashboard.slots_total}",
        )
        workers = " ".join(
            f"{status}={count}" for status, count in sorted(dashboard.workers_by_status.items())
        )
        lines.append(f"Workers: {workers or '-'}")
        lines.append(f"Unresponsive workers: {dashboard.unresponsive_workers}")
        for key in ("started_at", "stopped_at"):
            if key in meta:
                lines.append(f"{key.replace('_', ' ').capitalize()}: {meta[key]}")
        return lines

    def add_task(self, command: TaskAddCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _queue(settings) as queue:
            task = queue.create_task(
                command.payload,
                layer=command.layer,
                parent_task_id=command.parent_id,
            )
        line = f"Task created: id={task.id} layer={task.layer} status={task.status.value}"
        if task.parent_task_id is not None:
            line += f" parent={task.parent_task_id}"
        return [line]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = TaskStatus(command.status.upper()) if command.status else None
        with _queue(settings) as queue:
            tasks = queue.list_tasks(
                status=status,
                layer=command.layer,
                parent_task_id=command.parent_id,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.id} layer={task.layer} status={task.status.value} "
                f"worker={task.assigned_worker or '-'} "
                f"retries={task.retry_count}/{task.max_retries} "
                f"updated_at={task.updated_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _queue(settings) as queue:
            task = queue.get_task(command.task_id)
            state = queue.load_pipeline_state(command.task_id)
        if task is None:
            return [f"Task not found: {command.task_id}"]
        with _registry(settings) as registry:
            events = registry.task_events(command.task_id)

        lines = [
            f"Task: {task.id}",
            f"Layer: {task.layer}",
            f"Parent: {task.parent_task_id if task.parent_task_id is not None else '-'}",
            f"Status: {task.status.value}",
            f"Worker: {task.assigned_worker or '-'}",
            f"Retries: {task.retry_count}/{task.max_retries}",
            f"Error: {task.error_message or '-'}",
            f"Result: {task.result_location or '-'}",
            f"Payload: {_preview(task.payload)}",
        ]
        if state is not None:
            pipeline_task = PipelineTask.from_state(state, payload=task.payload)
            lines.append(
                f"Pipeline: {pipeline_task.pipeline_id} stage={pipeline_task.current_stage_id} "
                f"audit_retries={pipeline_task.audit_retry_count} "
                f"stage_retries={pipeline_task.stage_retry_count}",
            )
            for entry in pipeline_task.stage_history:
                lines.append(
                    f"  stage {entry.stage_name} executor={entry.executor or '-'} "
                    f"duration_ms={entry.duration_ms} output={entry.output_path or '-'}",
                )
            for record in pipeline_task.audit_results:
                verdict = "pass" if record.passed else "fail"
                lines.append(
                    f"  audit {record.stage_name} verdict={verdict} "
                    f"source={record.verdict_source} routed_to={record.routed_to or '-'}",
                )
        lines.append(f"Events: {len(events)}")
        for event in reversed(events):
            lines.append(f"  {event.created_at.isoformat()} {event.event_type} {event.details}")
        return lines

    def aggregate_subtasks(self, command: TaskAggregateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _queue(settings) as queue:
            result = aggregate_subtask_outputs(
                queue,
                command.task_id,
                StageOutputStore(settings.pipeline.output_dir),
                strategy=MergeStrategy(command.strategy),
                include_headers=command.include_headers,
                save=command.save,
            )

        lines = [
            f"Task {result.parent_task_id}: merged {len(result.sources)} subtask output(s) "
            f"strategy={result.strategy.value}",
            f"Subtasks complete: {'yes' if result.subtasks_complete else 'no'}",
        ]
        if result.missing:
            missing = ", ".join(str(task_id) for task_id in result.missing)
            lines.append(f"Missing outputs: {missing}")
        if result.output_path is not None:
            lines.append(f"Saved: {result.output_path}")
        else:
            lines.append(result.content)
        return lines

    def release_worker(self, command: TaskReleaseWorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _queue(settings) as queue:
            released = queue.release_all_for_worker(command.worker_id)
        return [f"Released {released} task(s) held by {command.worker_id}"]

    def stats(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _queue(settings) as queue:
            stats = queue.stats()
        return [
            f"Global status: {stats.global_status.value}",
            f"Total: {stats.total}",
            f"Unassigned: {stats.unassigned}",
            f"Processing: {stats.processing}",
            f"Done: {stats.done}",
            f"Failed: {stats.failed}",
        ]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        definition = _pipeline_definition(settings, command.pipeline_path)
        engine = StageEngine(
            definition,
            ExecutorResolver.from_settings(settings),
            StageOutputStore(settings.pipeline.output_dir),
            audit_default_verdict=settings.pipeline.audit_default_verdict,
        )
        runner = PipelineRunner(
            definition,
            engine,
            max_stage_retries=settings.pipeline.max_stage_retries,
            max_audit_retries=settings.pipeline.max_audit_retries,
        )
        with _queue(settings) as queue, _registry(settings) as registry:
            worker_id = command.worker_id or settings.worker.worker_id
            if command.worker_uid is not None:
                registered = registry.get_worker(command.worker_uid)
                if registered is None:
                    raise WorkerNotFoundError(command.worker_uid)
                if registered.status in NOT_RUNNABLE_STATUSES:
                    raise ValidationError(
                        f"Worker {registered.uid} cannot run in status {registered.status.value}.",
                    )
                worker_id = registered.folder_name
                if registered.status == WorkerStatus.SLOT_ASSIGNED:
                    registry.update_status(registered.uid, WorkerStatus.IDLE)
            worker = PipelineWorker(
                queue=queue,
                runner=runner,
                worker_id=worker_id,
                layer=command.layer if command.layer is not None else settings.worker.layer,
                registry=registry if command.worker_uid is not None else None,
                worker_uid=command.worker_uid,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                graceful_shutdown_seconds=settings.worker.graceful_shutdown_seconds,
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            f"Worker {worker_id} summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"failed={summary.failed} paused={summary.paused} "
            f"requeued={summary.requeued} lost={summary.lost} idle_polls={summary.idle_polls}",
        ]


class HierarchyCliController:
    """Identity codec, role catalog and worker registry CLI operations."""

    def encode_identity(self, command: IdentityEncodeCommand) -> list[str]:
        name = format_folder_name(command.role, command.fan_out, command.sibling, command.uid)
        return [name]

    def decode_identity(self, name: str) -> list[str]:
        return _identity_lines(parse_folder_name(name))

    def chain(self, path: str) -> list[str]:
        chain = extract_chain(path)
        if not chain:
            return [f"No hierarchy identities in: {path}"]
        depth = infer_depth(chain)
        lines = [f"Chain: {len(chain)} identities, depth={depth if depth is not None else '?'}"]
        for identity in chain:
            lines.append(
                f"  {identity.folder_name} role={identity.role} "
                f"fan_out={identity.fan_out} uid={identity.uid}",
            )
        return lines

    def show_roles(self, depth: int) -> list[str]:
        lines = [f"Hierarchy depth {depth}:"]
        for layer, role in enumerate(get_hierarchy(depth)):
            lines.append(f"  layer {layer} {role.code} {role.title}")
        return lines

    def list_workers(self, command: RegistryWorkersCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = WorkerStatus(command.status.upper()) if command.status else None
        with _registry(settings) as registry:
            workers = registry.list_workers(status=status)

        lines = [f"Workers: {len(workers)}"]
        for worker in workers:
            heartbeat = worker.last_heartbeat.isoformat() if worker.last_heartbeat else "-"
            lines.append(
                f"  {worker.uid} {worker.folder_name} status={worker.status.value} "
                f"slot={worker.slot_id or '-'} parent={worker.parent_uid or '-'} "
                f"done={worker.tasks_completed} failed={worker.tasks_failed} "
                f"heartbeat={heartbeat}",
            )
        return lines

    def events(self, command: RegistryEventsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _registry(settings) as registry:
            events = (
                registry.worker_events(command.worker_uid, limit=command.limit)
                if command.worker_uid is not None
                else registry.recent_events(limit=command.limit)
            )

        lines = [f"Events: {len(events)}"]
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"worker={event.worker_uid or '-'} task={event.task_id or '-'} {event.details}",
            )
        return lines

    def dashboard(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _registry(settings) as registry:
            dashboard = registry.dashboard(
                unresponsive_after_seconds=settings.registry.unresponsive_after_seconds,
            )
        lines = ["Workers by status:"]
        for status, count in sorted(dashboard.workers_by_status.items()):
            lines.append(f"  {status}: {count}")
        lines.append("Tasks by status:")
        for status, count in sorted(dashboard.tasks_by_status.items()):
            lines.append(f"  {status}: {count}")
        lines.append(
            f"Slots: used={dashboard.slots_used} free={dashboard.slots_free} "
            f"total={dashboard.slots_total}",
        )
        lines.append(f"Unresponsive workers: {dashboard.unresponsive_workers}")
        return lines

    def recover(self, command: RegistryRecoverCommand) -> list[str]:
        settings = _settings(command.db_path)
        threshold = command.threshold_seconds or settings.registry.unresponsive_after_seconds
        with _registry(settings) as registry, _queue(settings) as queue:
            report = recover_unresponsive_workers(registry, queue, threshold_seconds=threshold)
        return [
            f"Recovered workers: {len(report.workers)}",
            f"Slots released: {report.slots_released}",
            f"Tasks released: {report.tasks_released}",
        ]

    def report(self, command: RegistryReportCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _registry(settings) as registry, _queue(settings) as queue:
            report = manager_report(registry, command.worker_uid, queue=queue.stats())
        return format_manager_report(report)

    def register_worker(self, command: RegistryRegisterCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _registry(settings) as registry:
            if command.parent_uid is None:
                if command.role not in (None, ROOT_ROLE):
                    raise ValidationError(f"A worker without parent must be {ROOT_ROLE}.")
                uid = registry.allocate_uid()
                name = root_folder_name(command.fan_out, uid)
                role, layer = ROOT_ROLE, 0
                folder_path = command.root_dir / name
            else:
                parent = registry.get_worker(command.parent_uid)
                if parent is None:
                    raise WorkerNotFoundError(command.parent_uid)
                if not command.role:
                    raise ValidationError("--role is required for a subordinate worker.")
                position = lookup_role(command.role)
                if position is None:
                    raise ValidationError(f"Unknown role: {command.role}")
                problems = validate_fan_out(command.role, command.fan_out)
                if problems:
                    raise ValidationError(" ".join(problems))
                used_siblings = {
                    identity.sibling
                    for child in registry.get_children(parent.uid)
                    if (identity := try_parse_folder_name(child.folder_name)) is not None
                }
                if command.sibling in used_siblings:
                    raise ValidationError(
                        f"Sibling index {command.sibling} is already taken under worker "
                        f"{parent.uid}.",
                    )
                uid = registry.allocate_uid()
                name = child_folder_name(
                    parse_folder_name(parent.folder_name),
                    command.role,
                    command.fan_out,
                    command.sibling,
                    uid,
                )
                role, layer = command.role, position.layer
                folder_path = Path(parent.folder_path) / name
            registry.register_worker(
                WorkerRegistration(
                    uid=uid,
                    folder_name=name,
                    folder_path=str(folder_path),
                    role=role,
                    layer=layer,
                    parent_uid=command.parent_uid,
                ),
            )
            slot_id = registry.assign_slot(uid)

        return [
            f"Worker registered: uid={uid} name={name}",
            f"Path: {folder_path}",
            f"Slot: {slot_id if slot_id is not None else 'queued (pool full)'}",
        ]


def read_task_seeds(path: Path) -> list[TaskSeed]:
    """Read the seed array for project bootstrap.

    Each entry is either ``{"payload": ..., "layer": n}`` or any other JSON
    value, which becomes the payload of a layer 0 task.
    """

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        raise ValidationError(f"Cannot read tasks file {path}: {error}") from error
    if not isinstance(raw, list):
        raise ValidationError(f"Tasks file {path} must contain a JSON array.")

    seeds: list[TaskSeed] = []
    for item in raw:
        if isinstance(item, dict) and "payload" in item:
            layer = item.get("layer", 0)
            if not isinstance(layer, int) or layer < 0:
                raise ValidationError(f"Task layer must be a non-negative integer, got {layer!r}")
            seeds.append(TaskSeed(payload=_payload_text(item["payload"]), layer=layer))
        else:
            seeds.append(TaskSeed(payload=_payload_text(item)))
    return seeds


def _payload_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _identity_lines(identity: HierarchyIdentity) -> list[str]:
    return [
        f"Name: {identity.folder_name}",
        f"Role: {identity.role}",
        f"Fan-out: {identity.fan_out}",
        f"Sibling: {identity.sibling}",
        f"Uid: {identity.uid}",
        f"Leaf: {identity.is_leaf}",
        f"CEO: {identity.is_ceo}",
        f"Depth: {identity.depth if identity.depth is not None else '?'}",
        f"Layer: {identity.layer if identity.layer is not None else '?'}",
    ]


def _preview(text: str, *, limit: int = 120) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= limit else flat[: limit - 3] + "..."


def _pipeline_definition(settings: Settings, path: Path | None) -> PipelineDefinition:
    definition_path = path or settings.pipeline.definition_path
    if definition_path is not None:
        return load_pipeline(definition_path)
    return default_pipeline(settings.generation.default_executor)


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _queue(settings: Settings) -> Iterator[TaskQueueStore]:
    queue = open_task_queue(settings)
    queue.init_schema()
    try:
        yield queue
    finally:
        queue.close()


@contextmanager
def _registry(settings: Settings) -> Iterator[WorkerRegistry]:
    registry = WorkerRegistry(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    registry.init_schema()
    try:
        yield registry
    finally:
        registry.close()
