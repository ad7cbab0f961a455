"""Add worker registry and concurrency slot pool."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "workers",
        sa.Column("uid", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("folder_name", sa.String(), nullable=False),
        sa.Column("folder_path", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("layer", sa.Integer(), nullable=False),
        sa.Column("parent_uid", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("slot_id", sa.Integer(), nullable=True),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tasks_completed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tasks_failed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("current_task_id", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('QUEUED', 'SLOT_ASSIGNED', 'IDLE', 'WORKING', "
            "'AWAITING_SUBORDINATES', 'DONE', 'ERROR', 'SHUTDOWN')",
            name="ck_workers_status",
        ),
        sa.ForeignKeyConstraint(["parent_uid"], ["workers.uid"]),
        sa.PrimaryKeyConstraint("uid"),
        sa.UniqueConstraint("folder_name"),
    )
    op.create_index("idx_workers_status", "workers", ["status"])
    op.create_index("idx_workers_parent", "workers", ["parent_uid"])

    op.create_table(
        "slots",
        sa.Column("slot_id", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("worker_uid", sa.Integer(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["worker_uid"], ["workers.uid"]),
        sa.PrimaryKeyConstraint("slot_id"),
        sa.UniqueConstraint("worker_uid"),
    )


def downgrade() -> None:
    op.drop_table("slots")
    op.drop_index("idx_workers_parent", table_name="workers")
    op.drop_index("idx_workers_status", table_name="workers")
    op.drop_table("workers")
