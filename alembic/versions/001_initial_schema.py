"""Initial schema with tasks table

Revision ID: 001
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TASK_STATES = ("pending", "leased", "succeeded", "dead_lettered")


def upgrade() -> None:
    op.create_table(
        "tasks",
        sa.Column("id", sa.String(32), nullable=False),
        sa.Column("seq", sa.BigInteger, nullable=False),
        sa.Column("queue", sa.String(255), nullable=False),
        sa.Column("type", sa.String(255), nullable=False),
        sa.Column("payload", sa.LargeBinary, nullable=False),
        sa.Column(
            "state",
            sa.Enum(*TASK_STATES, name="task_state", create_constraint=True),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("attempt", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="2"),
        sa.Column("timeout_seconds", sa.Float, nullable=False),
        sa.Column("lease_token", sa.String(32), nullable=True),
        sa.Column("lease_owner", sa.String(255), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime, nullable=True),
        sa.Column("visible_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.Column("completed_at", sa.DateTime, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("lease_token"),
    )

    op.create_index("ix_tasks_seq", "tasks", ["seq"])
    op.create_index("ix_tasks_state", "tasks", ["state"])

    # Lease selection: oldest pending task per queue
    op.create_index("ix_tasks_queue_poll", "tasks", ["queue", "state", "seq"])

    # Expired lease recovery
    op.create_index("ix_tasks_lease_expiry", "tasks", ["state", "lease_expires_at"])


def downgrade() -> None:
    op.drop_index("ix_tasks_lease_expiry")
    op.drop_index("ix_tasks_queue_poll")
    op.drop_index("ix_tasks_state")
    op.drop_index("ix_tasks_seq")

    op.drop_table("tasks")

    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP TYPE IF EXISTS task_state")
