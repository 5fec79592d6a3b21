"""
Job record store: the delayed_jobs table.
"""

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    BigInteger,
    CheckConstraint,
    Index,
    Integer,
    Text,
    and_,
    or_,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from orchestrator.infra.database import Base
from orchestrator.jobs.types import JobQueue, JobStatus

# SQLite only autoincrements INTEGER PRIMARY KEY columns
_JobId = BigInteger().with_variant(Integer(), "sqlite")
_Payload = JSON().with_variant(JSONB(), "postgresql")


class DelayedJob(Base):
    """
    A unit of asynchronous work and its lifecycle state.

    Rows are created PENDING by the enqueuer, mutated only by a supervisor
    holding a valid lease, and never deleted by the engine.
    """

    __tablename__ = "delayed_jobs"

    id: Mapped[int] = mapped_column(_JobId, primary_key=True, autoincrement=True)
    job_type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="JobType catalog value"
    )
    queue: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Queue family: DEFAULT|HIGH|LOW|BULK|SCREENSHOT"
    )
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Within-queue priority, higher first"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        _Payload, nullable=False, default=dict, comment="Handler parameters"
    )

    # Job state
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="Job status: PENDING|PROCESSING|COMPLETED|FAILED",
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Number of claims made"
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=5, comment="Attempts before terminal failure"
    )
    scheduled_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        comment="Earliest claim time (initial delay and retry backoff)",
    )

    # Lease
    locked_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True, comment="When a worker claimed the job"
    )
    locked_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker identity (hostname:pid/slot)"
    )

    # Terminal bookkeeping
    completed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    failed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Error from the most recent failed attempt"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "queue IN ('DEFAULT', 'HIGH', 'LOW', 'BULK', 'SCREENSHOT')",
            name="delayed_jobs_queue_check",
        ),
        CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED')",
            name="delayed_jobs_status_check",
        ),
        CheckConstraint("max_attempts >= 1", name="delayed_jobs_max_attempts_check"),
    )

    @classmethod
    def eligible(cls, now: datetime, lease_timeout: timedelta):
        """
        Predicate for rows a worker may claim at ``now``.

        A PENDING row is eligible once scheduled and not under a live lease. A
        PROCESSING row whose lease is older than ``lease_timeout`` was abandoned
        and is eligible again while it still has attempts left.
        """
        lease_cutoff = now - lease_timeout
        return or_(
            and_(
                cls.status == JobStatus.PENDING.value,
                cls.scheduled_at <= now,
                or_(cls.locked_at.is_(None), cls.locked_at < lease_cutoff),
            ),
            and_(
                cls.status == JobStatus.PROCESSING.value,
                cls.locked_at < lease_cutoff,
                cls.attempts < cls.max_attempts,
            ),
        )

    @classmethod
    def live_lease(cls, now: datetime, lease_timeout: timedelta):
        """Predicate for PROCESSING rows whose lease has not expired."""
        return and_(
            cls.status == JobStatus.PROCESSING.value,
            cls.locked_at >= now - lease_timeout,
        )

    @property
    def queue_family(self) -> JobQueue:
        return JobQueue(self.queue)

    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED.value, JobStatus.FAILED.value)

    def __repr__(self) -> str:
        return (
            f"<DelayedJob(id={self.id}, type={self.job_type}, queue={self.queue}, "
            f"status={self.status}, attempts={self.attempts}/{self.max_attempts})>"
        )


# Eligibility scans: (queue, priority DESC, scheduled_at) over PENDING rows
Index(
    "ix_delayed_jobs_ready",
    DelayedJob.queue,
    DelayedJob.priority.desc(),
    DelayedJob.scheduled_at,
    postgresql_where=text("status = 'PENDING'"),
    sqlite_where=text("status = 'PENDING'"),
)
# Monitoring scans
Index("ix_delayed_jobs_status", DelayedJob.status)
Index("ix_delayed_jobs_job_type", DelayedJob.job_type)
Index("ix_delayed_jobs_scheduled_at", DelayedJob.scheduled_at)
