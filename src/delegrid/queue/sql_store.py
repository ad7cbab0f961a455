"""Transactional task queue backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import aliased
from sqlmodel import Session, col, select

from delegrid.errors import (
    InvalidTransitionError,
    OwnershipError,
    PersistenceFailure,
    TaskNotFoundError,
)
from delegrid.queue.models import (
    QueueStats,
    TaskSeed,
    TaskStatus,
    TaskView,
    next_status_after_failure,
)
from delegrid.registry.models import EventType
from delegrid.storage.alembic_runner import upgrade_head
from delegrid.storage.common import build_sqlite_engine, to_db_datetime, to_utc_aware, utc_now
from delegrid.storage.sqlmodel_models import EventRow, PipelineStateRow, TaskRow


class SqlTaskQueue:
    """Queue persistence facade backed by SQLModel + SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        max_retries: int = 3,
        retry_on_failure: bool = True,
        sqlite_busy_timeout_ms: int = 5000,
    ) -> None:
        self.db_path = db_path
        self.max_retries = max_retries
        self.retry_on_failure = retry_on_failure
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path, busy_timeout_ms=self.sqlite_busy_timeout_ms)

    def create_task(
        self,
        payload: str,
        *,
        layer: int = 0,
        parent_task_id: int | None = None,
    ) -> TaskView:
        """Create an UNASSIGNED task, optionally as a subtask of ``parent_task_id``."""

        seed = TaskSeed(payload=payload, layer=layer, parent_task_id=parent_task_id)
        return self.create_tasks([seed])[0]

    def create_tasks(self, seeds: Sequence[TaskSeed]) -> list[TaskView]:
        """Create many UNASSIGNED tasks in one transaction."""

        now = to_db_datetime(utc_now())
        with self._session() as session:
            for parent_id in {seed.parent_task_id for seed in seeds} - {None}:
                self._get_row(session=session, task_id=parent_id)
            rows = [
                TaskRow(
                    layer=seed.layer,
                    parent_task_id=seed.parent_task_id,
                    payload=seed.payload,
                    status=TaskStatus.UNASSIGNED.value,
                    retry_count=0,
                    max_retries=self.max_retries,
                    retry_on_failure=self.retry_on_failure,
                    created_at=now,
                    updated_at=now,
                )
                for seed in seeds
            ]
            session.add_all(rows)
            session.flush()
            for row in rows:
                self._add_event(
                    session=session,
                    event_type=EventType.TASK_CREATED,
                    task_id=row.id,
                    details=_created_details(row),
                )
            views = [_to_task_view(row) for row in rows]
            session.commit()
        return views

    def claim_next(self, worker_id: str, *, layer: int | None = None) -> TaskView | None:
        """Atomically claim the lowest-id UNASSIGNED task.

        Selection and the status flip happen in one UPDATE statement, so two
        workers can never both see the same task as claimable.
        """

        # Aliased so the subquery is not correlated to the table being updated.
        pending = aliased(TaskRow)
        candidate = select(pending.id).where(pending.status == TaskStatus.UNASSIGNED.value)
        if layer is not None:
            candidate = candidate.where(pending.layer == layer)
        candidate_id = candidate.order_by(pending.id.asc()).limit(1).scalar_subquery()

        now = to_db_datetime(utc_now())
        with self._session() as session:
            claimed_id = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.id) == candidate_id,
                    col(TaskRow.status) == TaskStatus.UNASSIGNED.value,
                )
                .values(
                    status=TaskStatus.PROCESSING.value,
                    assigned_worker=worker_id,
                    updated_at=now,
                )
                .returning(col(TaskRow.id))
                .execution_options(synchronize_session=False),
            ).scalar_one_or_none()
            if claimed_id is None:
                session.rollback()
                return None

            row = self._get_row(session=session, task_id=claimed_id)
            self._add_event(
                session=session,
                event_type=EventType.TASK_CLAIMED,
                task_id=claimed_id,
                details={"worker_id": worker_id},
            )
            view = _to_task_view(row)
            session.commit()
        return view

    def complete(
        self,
        task_id: int,
        *,
        result_location: str | None = None,
        worker_id: str | None = None,
    ) -> TaskView:
        """Mark a PROCESSING task as DONE."""

        with self._session() as session:
            row = self._get_row(session=session, task_id=task_id)
            _require_processing(row, worker_id=worker_id)
            row.status = TaskStatus.DONE.value
            row.result_location = result_location
            row.error_message = None
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            self._add_event(
                session=session,
                event_type=EventType.TASK_DONE,
                task_id=task_id,
                details={"worker_id": row.assigned_worker, "result_location": result_location},
            )
            view = _to_task_view(row)
            session.commit()
        return view

    def fail(self, task_id: int, error_text: str, *, worker_id: str | None = None) -> TaskView:
        """Record a failure and requeue or terminate according to the retry policy."""

        with self._session() as session:
            row = self._get_row(session=session, task_id=task_id)
            _require_processing(row, worker_id=worker_id)
            failed_worker = row.assigned_worker
            row.retry_count += 1
            status = next_status_after_failure(
                retry_count=row.retry_count,
                max_retries=row.max_retries,
                retry_on_failure=row.retry_on_failure,
            )
            row.status = status.value
            row.error_message = error_text
            if status == TaskStatus.UNASSIGNED:
                row.assigned_worker = None
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            self._add_event(
                session=session,
                event_type=(
                    EventType.TASK_REQUEUED
                    if status == TaskStatus.UNASSIGNED
                    else EventType.TASK_FAILED
                ),
                task_id=task_id,
                details={
                    "worker_id": failed_worker,
                    "retry_count": row.retry_count,
                    "max_retries": row.max_retries,
                    "error": error_text,
                },
            )
            view = _to_task_view(row)
            session.commit()
        return view

    def release(self, task_id: int, worker_id: str) -> TaskView:
        """Return a task to UNASSIGNED when ``worker_id`` holds it."""

        with self._session() as session:
            row = self._get_row(session=session, task_id=task_id)
            if row.status != TaskStatus.PROCESSING.value or row.assigned_worker != worker_id:
                raise OwnershipError(
                    f"Task {task_id} is not held by {worker_id} "
                    f"(status={row.status}, holder={row.assigned_worker}).",
                )
            row.status = TaskStatus.UNASSIGNED.value
            row.assigned_worker = None
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            self._add_event(
                session=session,
                event_type=EventType.TASK_RELEASED,
                task_id=task_id,
                details={"worker_id": worker_id},
            )
            view = _to_task_view(row)
            session.commit()
        return view

    def release_all_for_worker(self, worker_id: str) -> int:
        """Requeue every PROCESSING task held by a crashed or removed worker."""

        now = to_db_datetime(utc_now())
        with self._session() as session:
            released_ids = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.status) == TaskStatus.PROCESSING.value,
                    col(TaskRow.assigned_worker) == worker_id,
                )
                .values(
                    status=TaskStatus.UNASSIGNED.value,
                    assigned_worker=None,
                    updated_at=now,
                )
                .returning(col(TaskRow.id))
                .execution_options(synchronize_session=False),
            ).scalars().all()
            for task_id in released_ids:
                self._add_event(
                    session=session,
                    event_type=EventType.TASK_RELEASED,
                    task_id=task_id,
                    details={"worker_id": worker_id, "reason": "worker_recovery"},
                )
            session.commit()
        return len(released_ids)

    def get_task(self, task_id: int) -> TaskView | None:
        with self._session() as session:
            row = session.get(TaskRow, task_id)
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        layer: int | None = None,
        parent_task_id: int | None = None,
        limit: int | None = None,
    ) -> list[TaskView]:
        """List tasks in id order, optionally filtered."""

        statement = select(TaskRow).order_by(col(TaskRow.id).asc())
        if status is not None:
            statement = statement.where(TaskRow.status == status.value)
        if layer is not None:
            statement = statement.where(TaskRow.layer == layer)
        if parent_task_id is not None:
            statement = statement.where(TaskRow.parent_task_id == parent_task_id)
        if limit is not None:
            statement = statement.limit(limit)
        with self._session() as session:
            rows = session.exec(statement).all()
            return [_to_task_view(row) for row in rows]

    def stats(self) -> QueueStats:
        with self._session() as session:
            rows = session.exec(
                select(TaskRow.status, func.count()).group_by(TaskRow.status),
            ).all()
        return QueueStats.from_counts({TaskStatus(status): count for status, count in rows})

    def load_pipeline_state(self, task_id: int) -> dict[str, Any] | None:
        with self._session() as session:
            row = session.get(PipelineStateRow, task_id)
            if row is None:
                return None
            parsed = json.loads(row.state_json)
        return parsed if isinstance(parsed, dict) else None

    def save_pipeline_state(self, task_id: int, worker_id: str, state: dict[str, Any]) -> None:
        """Persist pipeline position; rejected unless ``worker_id`` holds the task."""

        now = to_db_datetime(utc_now())
        with self._session() as session:
            task = self._get_row(session=session, task_id=task_id)
            if task.status != TaskStatus.PROCESSING.value or task.assigned_worker != worker_id:
                raise OwnershipError(
                    f"Worker {worker_id} cannot update pipeline state of task {task_id}.",
                )
            row = session.get(PipelineStateRow, task_id)
            if row is None:
                row = PipelineStateRow(
                    task_id=task_id,
                    current_stage_id=str(state.get("current_stage_id", "")),
                    state_json="{}",
                    updated_at=now,
                )
            row.current_stage_id = str(state.get("current_stage_id", ""))
            row.state_json = json.dumps(state, ensure_ascii=False, sort_keys=True)
            row.updated_at = now
            session.add(row)
            session.commit()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except DBAPIError as error:
            raise PersistenceFailure(f"Task store operation failed: {error}") from error

    def _get_row(self, *, session: Session, task_id: int) -> TaskRow:
        row = session.get(TaskRow, task_id)
        if row is None:
            raise TaskNotFoundError(task_id)
        return row

    def _add_event(
        self,
        *,
        session: Session,
        event_type: EventType,
        task_id: int | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            EventRow(
                created_at=to_db_datetime(utc_now()),
                event_type=event_type.value,
                worker_uid=None,
                task_id=task_id,
                details=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
            ),
        )


def _require_processing(row: TaskRow, *, worker_id: str | None) -> None:
    if row.status != TaskStatus.PROCESSING.value:
        raise InvalidTransitionError(
            f"Task {row.id} is {row.status}; only PROCESSING tasks can be settled.",
        )
    if worker_id is not None and row.assigned_worker != worker_id:
        raise OwnershipError(
            f"Task {row.id} is held by {row.assigned_worker}, not {worker_id}.",
        )


def _to_task_view(row: TaskRow) -> TaskView:
    return TaskView(
        id=row.id or 0,
        layer=row.layer,
        payload=row.payload,
        status=TaskStatus(row.status),
        assigned_worker=row.assigned_worker,
        result_location=row.result_location,
        error_message=row.error_message,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        retry_on_failure=row.retry_on_failure,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        parent_task_id=row.parent_task_id,
    )


def _created_details(row: TaskRow) -> dict[str, object]:
    details: dict[str, object] = {"layer": row.layer}
    if row.parent_task_id is not None:
        details["parent_task_id"] = row.parent_task_id
    return details
