"""Link subtasks to the task they were split from."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0003"
down_revision = "20261018_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("tasks", sa.Column("parent_task_id", sa.Integer(), nullable=True))
    op.create_index("idx_tasks_parent", "tasks", ["parent_task_id"])


def downgrade() -> None:
    op.drop_index("idx_tasks_parent", table_name="tasks")
    with op.batch_alter_table("tasks") as batch_op:
        batch_op.drop_column("parent_task_id")
