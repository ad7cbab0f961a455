"""CLI entrypoint for delegrid."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from delegrid import __version__
from delegrid.controllers import (
    DbCommand,
    HierarchyCliController,
    IdentityEncodeCommand,
    ProjectInitCommand,
    QueueCliController,
    RegistryEventsCommand,
    RegistryRecoverCommand,
    RegistryRegisterCommand,
    RegistryReportCommand,
    RegistryWorkersCommand,
    TaskAddCommand,
    TaskAggregateCommand,
    TaskInspectCommand,
    TaskListCommand,
    TaskReleaseWorkerCommand,
    WorkerRunCommand,
)
from delegrid.errors import DelegridError
from delegrid.hierarchy.roles import MAX_DEPTH, MIN_DEPTH
from delegrid.pipeline.aggregate import MergeStrategy
from delegrid.queue.models import TaskStatus
from delegrid.registry.models import WorkerStatus

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()
HIERARCHY_CONTROLLER = HierarchyCliController()
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]

CommandT = TypeVar("CommandT")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="delegrid")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Logging level. Defaults to DELEGRID_LOG_LEVEL or WARNING.",
)
def delegrid(log_level: str | None) -> None:
    """Hierarchical task delegation CLI."""

    level = (log_level or os.getenv("DELEGRID_LOG_LEVEL", "WARNING")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )


@delegrid.group()
def project() -> None:
    """Project bootstrap and status."""


@project.command("init")
@db_path_option
@click.option(
    "--tasks-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="JSON array of task payloads to seed the queue with.",
)
@click.option(
    "--slots",
    type=click.IntRange(min=1),
    default=None,
    help="Concurrent slot pool size. Defaults to DELEGRID_SLOT_COUNT.",
)
@click.option("--name", default=None, help="Optional project name.")
def project_init(
    db_path: Path | None,
    tasks_file: Path | None,
    slots: int | None,
    name: str | None,
) -> None:
    """Create the database, seed tasks and size the slot pool."""

    _run(
        QUEUE_CONTROLLER.init_project,
        ProjectInitCommand(db_path=db_path, tasks_file=tasks_file, slots=slots, name=name),
    )


@project.command("status")
@db_path_option
def project_status(db_path: Path | None) -> None:
    """Show queue, slot and worker summary."""

    _run(QUEUE_CONTROLLER.project_status, DbCommand(db_path=db_path))


@delegrid.group()
def tasks() -> None:
    """Task queue commands."""


@tasks.command("add")
@db_path_option
@click.option("--payload", required=True, help="Task payload (free text or JSON).")
@click.option(
    "--layer",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Hierarchy layer the task belongs to.",
)
@click.option("--parent-id", type=int, default=None, help="Make the task a subtask of this task.")
def tasks_add(db_path: Path | None, payload: str, layer: int, parent_id: int | None) -> None:
    """Add one task to the queue."""

    _run(
        QUEUE_CONTROLLER.add_task,
        TaskAddCommand(db_path=db_path, payload=payload, layer=layer, parent_id=parent_id),
    )


@tasks.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value.lower() for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--layer", type=click.IntRange(min=0), default=None, help="Optional layer filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
@click.option("--parent-id", type=int, default=None, help="Only subtasks of this task.")
def tasks_list(
    db_path: Path | None,
    status: str | None,
    layer: int | None,
    limit: int,
    parent_id: int | None,
) -> None:
    """List queued tasks."""

    _run(
        QUEUE_CONTROLLER.list_tasks,
        TaskListCommand(
            db_path=db_path,
            status=status,
            layer=layer,
            limit=limit,
            parent_id=parent_id,
        ),
    )


@tasks.command("inspect")
@db_path_option
@click.option("--task-id", type=int, required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: int) -> None:
    """Inspect one task with pipeline progress and event history."""

    _run(QUEUE_CONTROLLER.inspect_task, TaskInspectCommand(db_path=db_path, task_id=task_id))


@tasks.command("release-worker")
@db_path_option
@click.option("--worker-id", required=True, help="Worker id whose tasks should be requeued.")
def tasks_release_worker(db_path: Path | None, worker_id: str) -> None:
    """Return every task held by a worker to the queue."""

    _run(
        QUEUE_CONTROLLER.release_worker,
        TaskReleaseWorkerCommand(db_path=db_path, worker_id=worker_id),
    )


@tasks.command("aggregate")
@db_path_option
@click.option("--task-id", type=int, required=True, help="Parent task whose subtasks to merge.")
@click.option(
    "--strategy",
    type=click.Choice([strategy.value for strategy in MergeStrategy]),
    default=MergeStrategy.CONCATENATE.value,
    show_default=True,
    help="How subtask outputs are combined.",
)
@click.option("--include-headers", is_flag=True, help="Prefix each part with its file name.")
@click.option(
    "--save/--print",
    default=True,
    show_default=True,
    help="Write the merged output under the output directory, or print it.",
)
def tasks_aggregate(
    db_path: Path | None,
    task_id: int,
    strategy: str,
    include_headers: bool,
    save: bool,
) -> None:
    """Merge the result files of a task's subtasks."""

    _run(
        QUEUE_CONTROLLER.aggregate_subtasks,
        TaskAggregateCommand(
            db_path=db_path,
            task_id=task_id,
            strategy=strategy,
            include_headers=include_headers,
            save=save,
        ),
    )


@tasks.command("stats")
@db_path_option
def tasks_stats(db_path: Path | None) -> None:
    """Show task counts and the global queue status."""

    _run(QUEUE_CONTROLLER.stats, DbCommand(db_path=db_path))


@delegrid.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@db_path_option
@click.option(
    "--pipeline",
    "pipeline_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Pipeline definition JSON. Defaults to a single execute stage.",
)
@click.option("--worker-id", default=None, help="Queue worker id. Defaults to DELEGRID_WORKER_ID.")
@click.option(
    "--worker-uid",
    type=click.IntRange(min=1),
    default=None,
    help="Registered worker uid; its folder name becomes the queue worker id.",
)
@click.option("--layer", type=click.IntRange(min=0), default=None, help="Only claim this layer.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
def worker_run(  # noqa: PLR0913
    db_path: Path | None,
    pipeline_path: Path | None,
    worker_id: str | None,
    worker_uid: int | None,
    layer: int | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int,
) -> None:
    """Claim tasks and drive them through the pipeline."""

    _run(
        QUEUE_CONTROLLER.run_worker,
        WorkerRunCommand(
            db_path=db_path,
            pipeline_path=pipeline_path,
            worker_id=worker_id,
            worker_uid=worker_uid,
            layer=layer,
            once=once,
            max_tasks=max_tasks,
            max_idle_polls=max_idle_polls,
        ),
    )


@delegrid.group()
def identity() -> None:
    """Worker folder-name codec."""


@identity.command("encode")
@click.option("--role", required=True, help="Role code, for example VP.")
@click.option("--fan-out", type=click.IntRange(min=0), required=True, help="Direct reports.")
@click.option("--sibling", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--uid", type=click.IntRange(min=1), required=True, help="Worker uid.")
def identity_encode(role: str, fan_out: int, sibling: int, uid: int) -> None:
    """Encode identity fields into a folder name."""

    _run(
        HIERARCHY_CONTROLLER.encode_identity,
        IdentityEncodeCommand(role=role, fan_out=fan_out, sibling=sibling, uid=uid),
    )


@identity.command("decode")
@click.argument("name")
def identity_decode(name: str) -> None:
    """Decode a folder name into identity fields."""

    _run(HIERARCHY_CONTROLLER.decode_identity, name)


@identity.command("chain")
@click.argument("path")
def identity_chain(path: str) -> None:
    """List every hierarchy identity along a path."""

    _run(HIERARCHY_CONTROLLER.chain, path)


@delegrid.group()
def roles() -> None:
    """Role catalog."""


@roles.command("show")
@click.option(
    "--depth",
    type=click.IntRange(min=MIN_DEPTH, max=MAX_DEPTH),
    required=True,
    help="Hierarchy depth.",
)
def roles_show(depth: int) -> None:
    """Print the role chain for one hierarchy depth."""

    _run(HIERARCHY_CONTROLLER.show_roles, depth)


@delegrid.group()
def registry() -> None:
    """Worker registry commands."""


@registry.command("workers")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value.lower() for status in WorkerStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
def registry_workers(db_path: Path | None, status: str | None) -> None:
    """List registered workers."""

    _run(HIERARCHY_CONTROLLER.list_workers, RegistryWorkersCommand(db_path=db_path, status=status))


@registry.command("events")
@db_path_option
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max events to print.",
)
@click.option("--worker-uid", type=int, default=None, help="Only events for this worker.")
def registry_events(db_path: Path | None, limit: int, worker_uid: int | None) -> None:
    """Show the most recent lifecycle events."""

    _run(
        HIERARCHY_CONTROLLER.events,
        RegistryEventsCommand(db_path=db_path, limit=limit, worker_uid=worker_uid),
    )


@registry.command("dashboard")
@db_path_option
def registry_dashboard(db_path: Path | None) -> None:
    """Show worker, task and slot counts."""

    _run(HIERARCHY_CONTROLLER.dashboard, DbCommand(db_path=db_path))


@registry.command("recover")
@db_path_option
@click.option(
    "--threshold-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Heartbeat age that marks a worker unresponsive.",
)
def registry_recover(db_path: Path | None, threshold_seconds: int | None) -> None:
    """Mark stale workers failed and requeue their tasks."""

    _run(
        HIERARCHY_CONTROLLER.recover,
        RegistryRecoverCommand(db_path=db_path, threshold_seconds=threshold_seconds),
    )


@registry.command("report")
@db_path_option
@click.option("--worker-uid", type=int, required=True, help="Manager to report on.")
def registry_report(db_path: Path | None, worker_uid: int) -> None:
    """Roll subordinate status and counters up to one manager."""

    _run(
        HIERARCHY_CONTROLLER.report,
        RegistryReportCommand(db_path=db_path, worker_uid=worker_uid),
    )


@registry.command("register")
@db_path_option
@click.option("--role", default=None, help="Role code. Omit for the root worker.")
@click.option("--fan-out", type=click.IntRange(min=0), required=True, help="Direct reports.")
@click.option("--sibling", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--parent-uid", type=int, default=None, help="Uid of the delegating worker.")
@click.option(
    "--root-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=Path("."),
    show_default=True,
    help="Directory the root worker folder lives under.",
)
def registry_register(  # noqa: PLR0913
    db_path: Path | None,
    role: str | None,
    fan_out: int,
    sibling: int,
    parent_uid: int | None,
    root_dir: Path,
) -> None:
    """Provision a worker identity and try to give it a slot."""

    _run(
        HIERARCHY_CONTROLLER.register_worker,
        RegistryRegisterCommand(
            db_path=db_path,
            role=role,
            fan_out=fan_out,
            sibling=sibling,
            parent_uid=parent_uid,
            root_dir=root_dir,
        ),
    )


def _run(action: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = action(command)
    except (DelegridError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    delegrid()
