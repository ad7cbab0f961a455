"""SQLModel ORM tables for the task queue, worker registry and event log."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, Text
from sqlmodel import Field, SQLModel

TASK_STATUSES = ("UNASSIGNED", "PROCESSING", "DONE", "FAILED")
WORKER_STATUSES = (
    "QUEUED",
    "SLOT_ASSIGNED",
    "IDLE",
    "WORKING",
    "AWAITING_SUBORDINATES",
    "DONE",
    "ERROR",
    "SHUTDOWN",
)


def _in_clause(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(_in_clause("status", TASK_STATUSES), name="ck_tasks_status"),
        Index("idx_tasks_status", "status"),
        Index("idx_tasks_layer_status", "layer", "status"),
        Index("idx_tasks_assigned_worker", "assigned_worker"),
        Index("idx_tasks_parent", "parent_task_id"),
        {"sqlite_autoincrement": True},
    )

    id: int | None = Field(default=None, primary_key=True)
    layer: int = 0
    parent_task_id: int | None = None
    payload: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    assigned_worker: str | None = None
    result_location: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    retry_count: int = 0
    max_retries: int = 3
    retry_on_failure: bool = True
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PipelineStateRow(SQLModel, table=True):
    __tablename__ = "pipeline_states"  # type: ignore[bad-override]

    task_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("tasks.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    current_stage_id: str
    state_json: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkerRow(SQLModel, table=True):
    __tablename__ = "workers"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(_in_clause("status", WORKER_STATUSES), name="ck_workers_status"),
        Index("idx_workers_status", "status"),
        Index("idx_workers_parent", "parent_uid"),
    )

    uid: int = Field(sa_column=Column(Integer, primary_key=True, autoincrement=False))
    folder_name: str = Field(unique=True)
    folder_path: str
    role: str
    layer: int
    parent_uid: int | None = Field(
        default=None,
        sa_column=Column(Integer, ForeignKey("workers.uid"), nullable=True),
    )
    status: str
    slot_id: int | None = None
    last_heartbeat: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    tasks_completed: int = 0
    tasks_failed: int = 0
    current_task_id: int | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class SlotRow(SQLModel, table=True):
    __tablename__ = "slots"  # type: ignore[bad-override]

    slot_id: int = Field(sa_column=Column(Integer, primary_key=True, autoincrement=False))
    worker_uid: int | None = Field(
        default=None,
        sa_column=Column(Integer, ForeignKey("workers.uid"), nullable=True, unique=True),
    )
    assigned_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class EventRow(SQLModel, table=True):
    __tablename__ = "events"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_events_created_at", "created_at"),
        Index("idx_events_worker", "worker_uid"),
        Index("idx_events_task", "task_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    event_type: str
    worker_uid: int | None = None
    task_id: int | None = None
    details: str | None = Field(default=None, sa_column=Column(Text, nullable=True))


class ProjectMetaRow(SQLModel, table=True):
    __tablename__ = "project"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
