"""Persistent worker registry, slot pool, event log and project metadata."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import DBAPIError
from sqlmodel import Session, col, select

from delegrid.errors import (
    InvalidTransitionError,
    PersistenceFailure,
    ValidationError,
    WorkerNotFoundError,
)
from delegrid.hierarchy.identity import MAX_UID
from delegrid.registry.models import (
    ACTIVE_STATUSES,
    HEARTBEAT_EXEMPT_STATUSES,
    TERMINAL_STATUSES,
    DashboardStats,
    EventType,
    EventView,
    SlotView,
    WorkerRegistration,
    WorkerStatus,
    WorkerView,
    can_transition,
)
from delegrid.storage.alembic_runner import upgrade_head
from delegrid.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    to_utc_aware_or_none,
    utc_now,
)
from delegrid.storage.sqlmodel_models import EventRow, ProjectMetaRow, SlotRow, TaskRow, WorkerRow

UID_COUNTER_KEY = "uid_counter"
MAX_SLOTS_KEY = "max_slots"

_STATUS_EVENTS = {
    WorkerStatus.DONE: EventType.WORKER_DONE,
    WorkerStatus.ERROR: EventType.WORKER_ERROR,
    WorkerStatus.SHUTDOWN: EventType.WORKER_SHUTDOWN,
}


class WorkerRegistry:
    """Registry facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
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

    # Workers

    def allocate_uid(self) -> int:
        """Reserve the next project-wide worker uid."""

        with self._session() as session:
            row = session.get(ProjectMetaRow, UID_COUNTER_KEY)
            current = int(row.value) if row is not None else 0
            if current >= MAX_UID:
                raise ValidationError(f"Uid space exhausted (max {MAX_UID}).")
            self._put_meta(session=session, key=UID_COUNTER_KEY, value=str(current + 1))
            session.commit()
        return current + 1

    def register_worker(self, registration: WorkerRegistration) -> WorkerView:
        """Record a new QUEUED worker together with its parent edge."""

        now = to_db_datetime(utc_now())
        with self._session() as session:
            if session.get(WorkerRow, registration.uid) is not None:
                raise ValidationError(f"Worker uid already registered: {registration.uid}")
            if (
                registration.parent_uid is not None
                and session.get(WorkerRow, registration.parent_uid) is None
            ):
                raise WorkerNotFoundError(registration.parent_uid)
            row = WorkerRow(
                uid=registration.uid,
                folder_name=registration.folder_name,
                folder_path=registration.folder_path,
                role=registration.role,
                layer=registration.layer,
                parent_uid=registration.parent_uid,
                status=WorkerStatus.QUEUED.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                event_type=EventType.WORKER_PROVISIONED,
                worker_uid=registration.uid,
                details={
                    "folder_name": registration.folder_name,
                    "role": registration.role,
                    "parent_uid": registration.parent_uid,
                },
            )
            view = _to_worker_view(row)
            session.commit()
        return view

    def get_worker(self, uid: int) -> WorkerView | None:
        with self._session() as session:
            row = session.get(WorkerRow, uid)
            return _to_worker_view(row) if row is not None else None

    def list_workers(self, *, status: WorkerStatus | None = None) -> list[WorkerView]:
        statement = select(WorkerRow).order_by(col(WorkerRow.uid).asc())
        if status is not None:
            statement = statement.where(WorkerRow.status == status.value)
        with self._session() as session:
            return [_to_worker_view(row) for row in session.exec(statement).all()]

    def get_children(self, parent_uid: int) -> list[WorkerView]:
        with self._session() as session:
            rows = session.exec(
                select(WorkerRow)
                .where(WorkerRow.parent_uid == parent_uid)
                .order_by(col(WorkerRow.uid).asc()),
            ).all()
            return [_to_worker_view(row) for row in rows]

    def update_status(
        self,
        uid: int,
        status: WorkerStatus,
        *,
        error_message: str | None = None,
    ) -> WorkerView:
        """Move a worker along its lifecycle and stamp the heartbeat.

        Raises:
            InvalidTransitionError: The lifecycle does not allow the move.
        """

        now = to_db_datetime(utc_now())
        with self._session() as session:
            row = self._get_worker_row(session=session, uid=uid)
            previous = WorkerStatus(row.status)
            if not can_transition(previous, status):
                raise InvalidTransitionError(
                    f"Worker {uid} cannot move from {previous.value} to {status.value}.",
                )
            row.status = status.value
            row.last_heartbeat = now
            row.updated_at = now
            if status in {WorkerStatus.SLOT_ASSIGNED, WorkerStatus.WORKING}:
                row.started_at = row.started_at or now
            if status in TERMINAL_STATUSES:
                row.completed_at = now
            if error_message is not None:
                row.error_message = error_message
            session.add(row)

            event_type = _STATUS_EVENTS.get(status)
            if previous == WorkerStatus.SLOT_ASSIGNED and status in ACTIVE_STATUSES:
                event_type = EventType.WORKER_STARTED
            if event_type is not None:
                self._add_event(
                    session=session,
                    event_type=event_type,
                    worker_uid=uid,
                    details={
                        "from": previous.value,
                        "to": status.value,
                        "error": error_message,
                    },
                )
            view = _to_worker_view(row)
            session.commit()
        return view

    def heartbeat(self, uid: int, *, log_event: bool = False) -> None:
        """Stamp liveness without touching status."""

        now = to_db_datetime(utc_now())
        with self._session() as session:
            row = self._get_worker_row(session=session, uid=uid)
            row.last_heartbeat = now
            session.add(row)
            if log_event:
                self._add_event(
                    session=session,
                    event_type=EventType.WORKER_HEARTBEAT,
                    worker_uid=uid,
                    details={},
                )
            session.commit()

    def record_spawn(self, uid: int, *, succeeded: bool, details: dict[str, Any]) -> None:
        with self._session() as session:
            self._get_worker_row(session=session, uid=uid)
            self._add_event(
                session=session,
                event_type=(
                    EventType.WORKER_SPAWNED if succeeded else EventType.WORKER_SPAWN_FAILED
                ),
                worker_uid=uid,
                details=details,
            )
            session.commit()

    def record_task_claimed(self, uid: int, task_id: int) -> None:
        """Mark the worker WORKING on ``task_id``.

        Raises:
            InvalidTransitionError: The worker is queued or already finished.
        """

        now = to_db_datetime(utc_now())
        with self._session() as session:
            row = self._get_worker_row(session=session, uid=uid)
            previous = WorkerStatus(row.status)
            if not can_transition(previous, WorkerStatus.WORKING):
                raise InvalidTransitionError(
                    f"Worker {uid} cannot take task {task_id} in status {previous.value}.",
                )
            row.current_task_id = task_id
            row.status = WorkerStatus.WORKING.value
            row.started_at = row.started_at or now
            row.last_heartbeat = now
            row.updated_at = now
            session.add(row)
            session.commit()

    def record_task_finished(self, uid: int, task_id: int, *, succeeded: bool | None) -> None:
        """Bump the worker's counters and return it to IDLE.

        ``succeeded=None`` records a hand-back that counts as neither outcome.
        """

        now = to_db_datetime(utc_now())
        with self._session() as session:
            row = self._get_worker_row(session=session, uid=uid)
            if succeeded is True:
                row.tasks_completed += 1
            elif succeeded is False:
                row.tasks_failed += 1
            if row.current_task_id == task_id:
                row.current_task_id = None
            if WorkerStatus(row.status) not in TERMINAL_STATUSES:
                row.status = WorkerStatus.IDLE.value
            row.last_heartbeat = now
            row.updated_at = now
            session.add(row)
            session.commit()

    def unresponsive_workers(self, threshold_seconds: int = 90) -> list[WorkerView]:
        """Live workers whose last heartbeat is older than the threshold."""

        cutoff = to_db_datetime(utc_now() - timedelta(seconds=threshold_seconds))
        exempt = [status.value for status in HEARTBEAT_EXEMPT_STATUSES]
        with self._session() as session:
            rows = session.exec(
                select(WorkerRow)
                .where(
                    col(WorkerRow.status).not_in(exempt),
                    col(WorkerRow.last_heartbeat).is_not(None),
                    col(WorkerRow.last_heartbeat) < cutoff,
                )
                .order_by(col(WorkerRow.uid).asc()),
            ).all()
            return [_to_worker_view(row) for row in rows]

    # Slots

    def init_slots(self, count: int) -> list[SlotView]:
        """Size the slot pool to ``count`` entries numbered from 1."""

        if count < 1:
            raise ValidationError(f"Slot pool size must be >= 1, got {count}.")
        with self._session() as session:
            existing = {row.slot_id: row for row in session.exec(select(SlotRow)).all()}
            for slot_id, row in existing.items():
                if slot_id > count:
                    if row.worker_uid is not None:
                        raise ValidationError(
                            f"Cannot shrink pool below occupied slot {slot_id}.",
                        )
                    session.delete(row)
            for slot_id in range(1, count + 1):
                if slot_id not in existing:
                    session.add(SlotRow(slot_id=slot_id))
            self._put_meta(session=session, key=MAX_SLOTS_KEY, value=str(count))
            session.commit()
        return self.list_slots()

    def assign_slot(self, uid: int) -> int | None:
        """Give the worker the lowest free slot; None when the pool is full."""

        now = to_db_datetime(utc_now())
        with self._session() as session:
            worker = self._get_worker_row(session=session, uid=uid)
            if worker.slot_id is not None:
                return worker.slot_id
            previous = WorkerStatus(worker.status)
            if previous != WorkerStatus.QUEUED:
                raise InvalidTransitionError(
                    f"Worker {uid} is {previous.value}; only QUEUED workers get slots.",
                )
            slot = session.exec(
                select(SlotRow)
                .where(col(SlotRow.worker_uid).is_(None))
                .order_by(col(SlotRow.slot_id).asc())
                .limit(1),
            ).one_or_none()
            if slot is None:
                return None

            slot.worker_uid = uid
            slot.assigned_at = now
            worker.slot_id = slot.slot_id
            worker.status = WorkerStatus.SLOT_ASSIGNED.value
            worker.started_at = worker.started_at or now
            worker.last_heartbeat = now
            worker.updated_at = now
            session.add(slot)
            session.add(worker)
            self._add_event(
                session=session,
                event_type=EventType.SLOT_ASSIGNED,
                worker_uid=uid,
                details={"slot_id": slot.slot_id},
            )
            slot_id = slot.slot_id
            session.commit()
        return slot_id

    def release_slot(self, uid: int) -> int | None:
        """Free the worker's slot for the next assignment."""

        with self._session() as session:
            worker = self._get_worker_row(session=session, uid=uid)
            slot = session.exec(select(SlotRow).where(SlotRow.worker_uid == uid)).one_or_none()
            if slot is None:
                return None
            slot_id = slot.slot_id
            slot.worker_uid = None
            slot.assigned_at = None
            worker.slot_id = None
            worker.updated_at = to_db_datetime(utc_now())
            session.add(slot)
            session.add(worker)
            self._add_event(
                session=session,
                event_type=EventType.SLOT_RELEASED,
                worker_uid=uid,
                details={"slot_id": slot_id},
            )
            session.commit()
        return slot_id

    def list_slots(self) -> list[SlotView]:
        with self._session() as session:
            rows = session.exec(select(SlotRow).order_by(col(SlotRow.slot_id).asc())).all()
            return [
                SlotView(
                    slot_id=row.slot_id,
                    worker_uid=row.worker_uid,
                    assigned_at=to_utc_aware_or_none(row.assigned_at),
                )
                for row in rows
            ]

    # Events

    def log_event(
        self,
        event_type: EventType,
        *,
        worker_uid: int | None = None,
        task_id: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        with self._session() as session:
            self._add_event(
                session=session,
                event_type=event_type,
                worker_uid=worker_uid,
                task_id=task_id,
                details=details or {},
            )
            session.commit()

    def recent_events(
        self,
        *,
        limit: int = 50,
        event_type: EventType | None = None,
    ) -> list[EventView]:
        """Newest events first."""

        statement = select(EventRow).order_by(col(EventRow.id).desc()).limit(limit)
        if event_type is not None:
            statement = statement.where(EventRow.event_type == event_type.value)
        with self._session() as session:
            return [_to_event_view(row) for row in session.exec(statement).all()]

    def worker_events(self, uid: int, *, limit: int = 50) -> list[EventView]:
        with self._session() as session:
            rows = session.exec(
                select(EventRow)
                .where(EventRow.worker_uid == uid)
                .order_by(col(EventRow.id).desc())
                .limit(limit),
            ).all()
            return [_to_event_view(row) for row in rows]

    def task_events(self, task_id: int, *, limit: int = 50) -> list[EventView]:
        with self._session() as session:
            rows = session.exec(
                select(EventRow)
                .where(EventRow.task_id == task_id)
                .order_by(col(EventRow.id).desc())
                .limit(limit),
            ).all()
            return [_to_event_view(row) for row in rows]

    # Project metadata

    def set_meta(self, key: str, value: str) -> None:
        with self._session() as session:
            self._put_meta(session=session, key=key, value=value)
            session.commit()

    def get_meta(self, key: str) -> str | None:
        with self._session() as session:
            row = session.get(ProjectMetaRow, key)
            return row.value if row is not None else None

    def all_meta(self) -> dict[str, str]:
        with self._session() as session:
            rows = session.exec(select(ProjectMetaRow).order_by(col(ProjectMetaRow.key))).all()
            return {row.key: row.value for row in rows}

    def record_project_started(self, details: dict[str, Any] | None = None) -> None:
        now = utc_now().isoformat()
        with self._session() as session:
            self._put_meta(session=session, key="started_at", value=now)
            self._add_event(
                session=session,
                event_type=EventType.PROJECT_STARTED,
                details=details or {},
            )
            session.commit()

    def record_project_stopped(self, details: dict[str, Any] | None = None) -> None:
        now = utc_now().isoformat()
        with self._session() as session:
            self._put_meta(session=session, key="stopped_at", value=now)
            self._add_event(
                session=session,
                event_type=EventType.PROJECT_STOPPED,
                details=details or {},
            )
            session.commit()

    def dashboard(self, *, unresponsive_after_seconds: int = 90) -> DashboardStats:
        """Counts across workers, tasks and slots in one snapshot."""

        with self._session() as session:
            worker_counts = session.exec(
                select(WorkerRow.status, func.count()).group_by(WorkerRow.status),
            ).all()
            task_counts = session.exec(
                select(TaskRow.status, func.count()).group_by(TaskRow.status),
            ).all()
            slots_total = session.exec(select(func.count()).select_from(SlotRow)).one()
            slots_used = session.exec(
                select(func.count())
                .select_from(SlotRow)
                .where(col(SlotRow.worker_uid).is_not(None)),
            ).one()
        return DashboardStats(
            workers_by_status={status: count for status, count in worker_counts},
            tasks_by_status={status: count for status, count in task_counts},
            slots_total=int(slots_total),
            slots_used=int(slots_used),
            unresponsive_workers=len(self.unresponsive_workers(unresponsive_after_seconds)),
        )

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except DBAPIError as error:
            raise PersistenceFailure(f"Registry operation failed: {error}") from error

    def _get_worker_row(self, *, session: Session, uid: int) -> WorkerRow:
        row = session.get(WorkerRow, uid)
        if row is None:
            raise WorkerNotFoundError(uid)
        return row

    def _put_meta(self, *, session: Session, key: str, value: str) -> None:
        now = to_db_datetime(utc_now())
        row = session.get(ProjectMetaRow, key)
        if row is None:
            row = ProjectMetaRow(key=key, value=value, updated_at=now)
        else:
            row.value = value
            row.updated_at = now
        session.add(row)

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        event_type: EventType,
        worker_uid: int | None = None,
        task_id: int | None = None,
        details: dict[str, Any],
    ) -> None:
        session.add(
            EventRow(
                created_at=to_db_datetime(utc_now()),
                event_type=event_type.value,
                worker_uid=worker_uid,
                task_id=task_id,
                details=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
            ),
        )


def _to_worker_view(row: WorkerRow) -> WorkerView:
    return WorkerView(
        uid=row.uid,
        folder_name=row.folder_name,
        folder_path=row.folder_path,
        role=row.role,
        layer=row.layer,
        parent_uid=row.parent_uid,
        status=WorkerStatus(row.status),
        slot_id=row.slot_id,
        last_heartbeat=to_utc_aware_or_none(row.last_heartbeat),
        tasks_completed=row.tasks_completed,
        tasks_failed=row.tasks_failed,
        current_task_id=row.current_task_id,
        error_message=row.error_message,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        started_at=to_utc_aware_or_none(row.started_at),
        completed_at=to_utc_aware_or_none(row.completed_at),
    )


def _to_event_view(row: EventRow) -> EventView:
    details: dict[str, Any] = {}
    if row.details:
        parsed = json.loads(row.details)
        if isinstance(parsed, dict):
            details = parsed
    return EventView(
        event_id=row.id or 0,
        created_at=to_utc_aware(row.created_at),
        event_type=row.event_type,
        worker_uid=row.worker_uid,
        task_id=row.task_id,
        details=details,
    )
