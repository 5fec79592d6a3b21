"""create delayed_jobs table

Revision ID: 3b8e5f0c9a21
Revises:
Create Date: 2026-10-17 09:12:40.118302

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "3b8e5f0c9a21"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "delayed_jobs",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column("job_type", sa.Text, nullable=False, comment="JobType catalog value"),
        sa.Column(
            "queue",
            sa.Text,
            nullable=False,
            comment="Queue family: DEFAULT|HIGH|LOW|BULK|SCREENSHOT",
        ),
        sa.Column(
            "priority",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Within-queue priority, higher first",
        ),
        sa.Column(
            "payload",
            postgresql.JSONB,
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
            comment="Handler parameters",
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="PENDING",
            comment="Job status: PENDING|PROCESSING|COMPLETED|FAILED",
        ),
        sa.Column(
            "attempts",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Number of claims made",
        ),
        sa.Column(
            "max_attempts",
            sa.Integer,
            nullable=False,
            server_default="5",
            comment="Attempts before terminal failure",
        ),
        sa.Column(
            "scheduled_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            comment="Earliest claim time (initial delay and retry backoff)",
        ),
        # Lease
        sa.Column(
            "locked_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="When a worker claimed the job",
        ),
        sa.Column(
            "locked_by",
            sa.Text,
            nullable=True,
            comment="Worker identity (hostname:pid/slot)",
        ),
        # Terminal bookkeeping
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("failed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "last_error",
            sa.Text,
            nullable=True,
            comment="Error from the most recent failed attempt",
        ),
        # Timestamps
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        # Constraints
        sa.CheckConstraint(
            "queue IN ('DEFAULT', 'HIGH', 'LOW', 'BULK', 'SCREENSHOT')",
            name="delayed_jobs_queue_check",
        ),
        sa.CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED')",
            name="delayed_jobs_status_check",
        ),
        sa.CheckConstraint("max_attempts >= 1", name="delayed_jobs_max_attempts_check"),
    )

    # Claim scans: ready rows of one queue in (priority DESC, scheduled_at) order
    op.create_index(
        "ix_delayed_jobs_ready",
        "delayed_jobs",
        ["queue", sa.text("priority DESC"), "scheduled_at"],
        postgresql_where=sa.text("status = 'PENDING'"),
    )

    # Monitoring scans
    op.create_index("ix_delayed_jobs_status", "delayed_jobs", ["status"])
    op.create_index("ix_delayed_jobs_job_type", "delayed_jobs", ["job_type"])
    op.create_index("ix_delayed_jobs_scheduled_at", "delayed_jobs", ["scheduled_at"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("delayed_jobs")
