"""
Job service for enqueueing and inspecting delayed jobs.
"""

from datetime import datetime
from typing import Any

from pydantic import ValidationError
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.config.logging import get_logger
from orchestrator.config.settings import Settings
from orchestrator.core.clock import Clock, coerce_utc, utcnow
from orchestrator.core.exceptions import (
    EnqueueError,
    InvalidJobStateError,
    JobNotFoundError,
)
from orchestrator.jobs.models import DelayedJob
from orchestrator.jobs.schemas import JobCreate, JobDetail, QueueStats
from orchestrator.jobs.types import JobQueue, JobStatus, JobType

logger = get_logger(__name__)


class JobService:
    """Service for producing jobs and reading the backlog."""

    def __init__(self, settings: Settings, clock: Clock | None = None):
        self.settings = settings
        self.clock = clock or utcnow

    async def enqueue(
        self,
        session: AsyncSession,
        job_type: JobType | str,
        *,
        queue: JobQueue | str | None = None,
        priority: int | None = None,
        payload: dict[str, Any] | None = None,
        not_before: datetime | None = None,
        max_attempts: int | None = None,
    ) -> int:
        """
        Enqueue a new job inside the caller's transaction.

        The row is flushed, not committed: it becomes visible to workers when
        the caller commits and disappears if the caller rolls back.

        Args:
            session: Caller's database session
            job_type: Catalog job type
            queue: Queue family, defaults to the job type's family
            priority: Within-queue priority, higher runs first; defaults to the
                queue family's urgency number
            payload: JSON-serializable handler parameters
            not_before: Earliest claim time, defaults to now
            max_attempts: Defaults to the per-type setting, else the global one

        Returns:
            The new job id

        Raises:
            EnqueueError: Invalid input or the store rejected the row
        """
        try:
            job_create = JobCreate(
                job_type=job_type,
                queue=queue,
                priority=priority,
                payload=payload if payload is not None else {},
                not_before=not_before,
                max_attempts=max_attempts,
            )
        except ValidationError as e:
            raise EnqueueError(
                f"Invalid job for {job_type}", details={"errors": e.errors()}
            ) from e

        now = self.clock()
        job = DelayedJob(
            job_type=job_create.job_type.value,
            queue=job_create.resolved_queue.value,
            priority=job_create.resolved_priority,
            payload=job_create.payload,
            status=JobStatus.PENDING.value,
            attempts=0,
            max_attempts=job_create.max_attempts
            or self.settings.max_attempts_for(job_create.job_type.value),
            scheduled_at=job_create.not_before or now,
            created_at=now,
            updated_at=now,
        )

        try:
            session.add(job)
            await session.flush()
        except SQLAlchemyError as e:
            raise EnqueueError(
                f"Failed to enqueue {job_create.job_type.value}",
                details={"error": str(e)},
            ) from e

        logger.info(
            "Job enqueued",
            job_id=job.id,
            job_type=job.job_type,
            queue=job.queue,
            priority=job.priority,
            scheduled_at=job.scheduled_at.isoformat(),
        )
        return job.id

    async def get_job(self, session: AsyncSession, job_id: int) -> JobDetail:
        """Get one job by id."""
        job = await session.get(DelayedJob, job_id, populate_existing=True)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found", details={"job_id": job_id})
        return JobDetail.model_validate(job)

    async def list_jobs(
        self,
        session: AsyncSession,
        status: JobStatus | None = None,
        queue: JobQueue | None = None,
        job_type: JobType | None = None,
        limit: int = 50,
    ) -> list[JobDetail]:
        """List the most recently created jobs matching the filters."""
        query = select(DelayedJob)
        if status is not None:
            query = query.where(DelayedJob.status == status.value)
        if queue is not None:
            query = query.where(DelayedJob.queue == queue.value)
        if job_type is not None:
            query = query.where(DelayedJob.job_type == job_type.value)
        query = query.order_by(DelayedJob.id.desc()).limit(limit)

        result = await session.execute(query.execution_options(populate_existing=True))
        return [JobDetail.model_validate(job) for job in result.scalars().all()]

    async def queue_stats(self, session: AsyncSession) -> list[QueueStats]:
        """Per-queue counts by status and the age of the oldest ready job."""
        now = self.clock()
        stats = {
            queue: QueueStats(queue=queue, limit=self.settings.queue_limit(queue))
            for queue in JobQueue.by_urgency()
        }

        status_result = await session.execute(
            select(DelayedJob.queue, DelayedJob.status, func.count(DelayedJob.id))
            .group_by(DelayedJob.queue, DelayedJob.status)
        )
        for queue, status, count in status_result.all():
            setattr(stats[JobQueue(queue)], JobStatus(status).value.lower(), count)

        oldest_result = await session.execute(
            select(DelayedJob.queue, func.min(DelayedJob.scheduled_at))
            .where(
                DelayedJob.status == JobStatus.PENDING.value,
                DelayedJob.scheduled_at <= now,
            )
            .group_by(DelayedJob.queue)
        )
        for queue, oldest in oldest_result.all():
            if oldest is not None:
                age = (now - coerce_utc(oldest)).total_seconds()
                stats[JobQueue(queue)].oldest_pending_age_s = max(age, 0.0)

        return list(stats.values())

    async def retry_job(
        self, session: AsyncSession, job_id: int, extra_attempts: int = 1
    ) -> JobDetail:
        """
        Re-queue a FAILED job for immediate execution.

        ``attempts`` is preserved; ``max_attempts`` is raised when needed so the
        job gets at least ``extra_attempts`` more claims.
        """
        if extra_attempts < 1:
            raise ValueError("extra_attempts must be at least 1")

        now = self.clock()
        result = await session.execute(
            update(DelayedJob)
            .where(
                DelayedJob.id == job_id,
                DelayedJob.status == JobStatus.FAILED.value,
            )
            .values(
                status=JobStatus.PENDING.value,
                max_attempts=case(
                    (
                        DelayedJob.max_attempts > DelayedJob.attempts + extra_attempts,
                        DelayedJob.max_attempts,
                    ),
                    else_=DelayedJob.attempts + extra_attempts,
                ),
                scheduled_at=now,
                locked_at=None,
                locked_by=None,
                failed_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            await session.rollback()
            job = await session.get(DelayedJob, job_id)
            if job is None:
                raise JobNotFoundError(
                    f"Job {job_id} not found", details={"job_id": job_id}
                )
            raise InvalidJobStateError(
                f"Job {job_id} is {job.status}, only FAILED jobs can be retried",
                details={"job_id": job_id, "status": job.status},
            )

        await session.commit()
        logger.info("Job retried", job_id=job_id, extra_attempts=extra_attempts)
        return await self.get_job(session, job_id)
