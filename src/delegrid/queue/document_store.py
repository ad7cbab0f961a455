"""Task queue persisted as a JSON document guarded by a sidecar lock file."""

from __future__ import annotations

import json
import os
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from delegrid.errors import (
    InvalidTransitionError,
    OwnershipError,
    PersistenceFailure,
    TaskNotFoundError,
)
from delegrid.queue.file_lock import DocumentLock
from delegrid.queue.models import (
    QueueStats,
    TaskSeed,
    TaskStatus,
    TaskView,
    next_status_after_failure,
)
from delegrid.storage.common import from_iso, utc_now

DOCUMENT_FORMAT_VERSION = 1


class DocumentTaskQueue:
    """Queue store whose whole read-modify-write runs under one file lock.

    Mutations happen on an in-memory copy; the document is rewritten (temp
    file + atomic rename) only when the mutation finishes without raising,
    so a failure or crash leaves the previous document intact.
    """

    def __init__(  # noqa: PLR0913
        self,
        document_path: Path,
        *,
        max_retries: int = 3,
        retry_on_failure: bool = True,
        lock_timeout_seconds: float = 5.0,
        lock_retry_interval_seconds: float = 0.1,
    ) -> None:
        self.document_path = document_path
        self.max_retries = max_retries
        self.retry_on_failure = retry_on_failure
        self.lock = DocumentLock(
            document_path.with_name(document_path.name + ".lock"),
            timeout_seconds=lock_timeout_seconds,
            retry_interval_seconds=lock_retry_interval_seconds,
        )

    def init_schema(self) -> None:
        """Create an empty document when none exists yet."""

        with self._mutate():
            pass

    def close(self) -> None:
        """Nothing is held open between operations."""

    def create_task(
        self,
        payload: str,
        *,
        layer: int = 0,
        parent_task_id: int | None = None,
    ) -> TaskView:
        seed = TaskSeed(payload=payload, layer=layer, parent_task_id=parent_task_id)
        return self.create_tasks([seed])[0]

    def create_tasks(self, seeds: Sequence[TaskSeed]) -> list[TaskView]:
        now = utc_now().isoformat()
        with self._mutate() as document:
            tasks = document["tasks"]
            for parent_id in {seed.parent_task_id for seed in seeds} - {None}:
                _find_task(document, parent_id)
            next_id = max((task["id"] for task in tasks), default=0) + 1
            created: list[dict[str, Any]] = []
            for offset, seed in enumerate(seeds):
                record = {
                    "id": next_id + offset,
                    "layer": seed.layer,
                    "parent_task_id": seed.parent_task_id,
                    "payload": seed.payload,
                    "status": TaskStatus.UNASSIGNED.value,
                    "assigned_worker": None,
                    "result_location": None,
                    "error_message": None,
                    "retry_count": 0,
                    "max_retries": self.max_retries,
                    "retry_on_failure": self.retry_on_failure,
                    "created_at": now,
                    "updated_at": now,
                    "pipeline": None,
                }
                tasks.append(record)
                created.append(record)
            return [_to_task_view(record) for record in created]

    def claim_next(self, worker_id: str, *, layer: int | None = None) -> TaskView | None:
        with self._mutate() as document:
            candidates = [
                task
                for task in document["tasks"]
                if task["status"] == TaskStatus.UNASSIGNED.value
                and (layer is None or task["layer"] == layer)
            ]
            if not candidates:
                return None
            task = min(candidates, key=lambda item: item["id"])
            task["status"] = TaskStatus.PROCESSING.value
            task["assigned_worker"] = worker_id
            task["updated_at"] = utc_now().isoformat()
            return _to_task_view(task)

    def complete(
        self,
        task_id: int,
        *,
        result_location: str | None = None,
        worker_id: str | None = None,
    ) -> TaskView:
        with self._mutate() as document:
            task = _find_task(document, task_id)
            _require_processing(task, worker_id=worker_id)
            task["status"] = TaskStatus.DONE.value
            task["result_location"] = result_location
            task["error_message"] = None
            task["updated_at"] = utc_now().isoformat()
            return _to_task_view(task)

    def fail(self, task_id: int, error_text: str, *, worker_id: str | None = None) -> TaskView:
        with self._mutate() as document:
            task = _find_task(document, task_id)
            _require_processing(task, worker_id=worker_id)
            task["retry_count"] += 1
            status = next_status_after_failure(
                retry_count=task["retry_count"],
                max_retries=task["max_retries"],
                retry_on_failure=task["retry_on_failure"],
            )
            task["status"] = status.value
            task["error_message"] = error_text
            if status == TaskStatus.UNASSIGNED:
                task["assigned_worker"] = None
            task["updated_at"] = utc_now().isoformat()
            return _to_task_view(task)

    def release(self, task_id: int, worker_id: str) -> TaskView:
        with self._mutate() as document:
            task = _find_task(document, task_id)
            if (
                task["status"] != TaskStatus.PROCESSING.value
                or task["assigned_worker"] != worker_id
            ):
                raise OwnershipError(
                    f"Task {task_id} is not held by {worker_id} "
                    f"(status={task['status']}, holder={task['assigned_worker']}).",
                )
            task["status"] = TaskStatus.UNASSIGNED.value
            task["assigned_worker"] = None
            task["updated_at"] = utc_now().isoformat()
            return _to_task_view(task)

    def release_all_for_worker(self, worker_id: str) -> int:
        now = utc_now().isoformat()
        released = 0
        with self._mutate() as document:
            for task in document["tasks"]:
                if (
                    task["status"] == TaskStatus.PROCESSING.value
                    and task["assigned_worker"] == worker_id
                ):
                    task["status"] = TaskStatus.UNASSIGNED.value
                    task["assigned_worker"] = None
                    task["updated_at"] = now
                    released += 1
        return released

    def get_task(self, task_id: int) -> TaskView | None:
        document = self._snapshot()
        for task in document["tasks"]:
            if task["id"] == task_id:
                return _to_task_view(task)
        return None

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        layer: int | None = None,
        parent_task_id: int | None = None,
        limit: int | None = None,
    ) -> list[TaskView]:
        document = self._snapshot()
        views = [
            _to_task_view(task)
            for task in sorted(document["tasks"], key=lambda item: item["id"])
            if (status is None or task["status"] == status.value)
            and (layer is None or task["layer"] == layer)
            and (parent_task_id is None or task.get("parent_task_id") == parent_task_id)
        ]
        return views[:limit] if limit is not None else views

    def stats(self) -> QueueStats:
        return _compute_stats(self._snapshot()["tasks"])

    def load_pipeline_state(self, task_id: int) -> dict[str, Any] | None:
        document = self._snapshot()
        for task in document["tasks"]:
            if task["id"] == task_id:
                return task.get("pipeline")
        return None

    def save_pipeline_state(self, task_id: int, worker_id: str, state: dict[str, Any]) -> None:
        with self._mutate() as document:
            task = _find_task(document, task_id)
            if (
                task["status"] != TaskStatus.PROCESSING.value
                or task["assigned_worker"] != worker_id
            ):
                raise OwnershipError(
                    f"Worker {worker_id} cannot update pipeline state of task {task_id}.",
                )
            task["pipeline"] = state
            task["updated_at"] = utc_now().isoformat()

    @contextmanager
    def _mutate(self) -> Iterator[dict[str, Any]]:
        with self._locked():
            document = self._read()
            yield document
            document["stats"] = _stats_payload(_compute_stats(document["tasks"]))
            self._write(document)

    def _snapshot(self) -> dict[str, Any]:
        with self._locked():
            return self._read()

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.lock.acquire()
        try:
            yield
        finally:
            self.lock.release()

    def _read(self) -> dict[str, Any]:
        if not self.document_path.exists():
            return {"format_version": DOCUMENT_FORMAT_VERSION, "tasks": [], "stats": {}}
        try:
            document = json.loads(self.document_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise PersistenceFailure(
                f"Cannot read task document {self.document_path}: {error}",
            ) from error
        if not isinstance(document, dict) or not isinstance(document.get("tasks"), list):
            raise PersistenceFailure(f"Task document {self.document_path} is malformed.")
        return document

    def _write(self, document: dict[str, Any]) -> None:
        temp_path = self.document_path.with_name(self.document_path.name + ".tmp")
        try:
            self.document_path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(
                json.dumps(document, ensure_ascii=False, indent=2, sort_keys=True) + "\n",
                encoding="utf-8",
            )
            os.replace(temp_path, self.document_path)
        except OSError as error:
            temp_path.unlink(missing_ok=True)
            raise PersistenceFailure(
                f"Cannot write task document {self.document_path}: {error}",
            ) from error


def _find_task(document: dict[str, Any], task_id: int) -> dict[str, Any]:
    for task in document["tasks"]:
        if task["id"] == task_id:
            return task
    raise TaskNotFoundError(task_id)


def _require_processing(task: dict[str, Any], *, worker_id: str | None) -> None:
    if task["status"] != TaskStatus.PROCESSING.value:
        raise InvalidTransitionError(
            f"Task {task['id']} is {task['status']}; only PROCESSING tasks can be settled.",
        )
    if worker_id is not None and task["assigned_worker"] != worker_id:
        raise OwnershipError(
            f"Task {task['id']} is held by {task['assigned_worker']}, not {worker_id}.",
        )


def _compute_stats(tasks: list[dict[str, Any]]) -> QueueStats:
    counts: dict[TaskStatus, int] = {}
    for task in tasks:
        status = TaskStatus(task["status"])
        counts[status] = counts.get(status, 0) + 1
    return QueueStats.from_counts(counts)


def _stats_payload(stats: QueueStats) -> dict[str, Any]:
    return {
        "total": stats.total,
        "unassigned": stats.unassigned,
        "processing": stats.processing,
        "done": stats.done,
        "failed": stats.failed,
        "global_status": stats.global_status.value,
    }


def _to_task_view(task: dict[str, Any]) -> TaskView:
    return TaskView(
        id=task["id"],
        layer=task["layer"],
        payload=task["payload"],
        status=TaskStatus(task["status"]),
        assigned_worker=task["assigned_worker"],
        result_location=task["result_location"],
        error_message=task["error_message"],
        retry_count=task["retry_count"],
        max_retries=task["max_retries"],
        retry_on_failure=task["retry_on_failure"],
        created_at=from_iso(task["created_at"]),
        updated_at=from_iso(task["updated_at"]),
        parent_task_id=task.get("parent_task_id"),
    )
