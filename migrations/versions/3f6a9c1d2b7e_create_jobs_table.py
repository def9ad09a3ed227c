"""create jobs table

Revision ID: 3f6a9c1d2b7e
Revises:
Create Date: 2026-10-19 09:12:40.118204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3f6a9c1d2b7e"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # Timestamps are stored as naive UTC
    op.create_table(
        "jobs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "priority", sa.Integer, nullable=False, default=0, comment="Lower runs first"
        ),
        sa.Column(
            "attempts",
            sa.Integer,
            nullable=False,
            default=0,
            comment="Failed executions so far",
        ),
        sa.Column(
            "handler", sa.Text, nullable=False, comment="Encoded executable unit"
        ),
        sa.Column(
            "last_error",
            sa.Text,
            nullable=True,
            comment="Most recent failure message and traceback",
        ),
        sa.Column(
            "run_at", sa.DateTime, nullable=False, comment="Earliest time to run"
        ),
        # Worker coordination fields
        sa.Column(
            "locked_at",
            sa.DateTime,
            nullable=True,
            comment="When the current lock was taken",
        ),
        sa.Column(
            "locked_by", sa.Text, nullable=True, comment="Worker holding the lock"
        ),
        sa.Column(
            "failed_at", sa.DateTime, nullable=True, comment="Set once the job is abandoned"
        ),
        sa.Column(
            "reoccur_in",
            sa.String(64),
            nullable=True,
            comment="Seconds between runs or a calendar rule name",
        ),
        # Timestamps
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )

    op.create_index("ix_jobs_priority_run_at", "jobs", ["priority", "run_at"])
    op.create_index("ix_jobs_locked_by", "jobs", ["locked_by"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_jobs_locked_by", table_name="jobs")
    op.drop_index("ix_jobs_priority_run_at", table_name="jobs")
    op.drop_table("jobs")
