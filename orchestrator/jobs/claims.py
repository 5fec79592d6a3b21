"""
Claim protocol: lease-based exclusive ownership of one ready job.

Every state change is a single-row conditional UPDATE scoped to one job id.
A claim is conditioned on the row still satisfying the eligibility predicate,
so among N racers exactly one sees an affected row; the others see zero and
move on to the next candidate. Outcome writes are conditioned on the lease the
worker was granted, so a worker whose lease expired and was re-claimed cannot
overwrite the new owner's state.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import Text, func, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.config.logging import get_logger
from orchestrator.config.settings import Settings
from orchestrator.core.clock import Clock, coerce_utc, utcnow
from orchestrator.jobs.governor import ConcurrencyGovernor
from orchestrator.jobs.models import DelayedJob
from orchestrator.jobs.types import JobQueue, JobStatus

logger = get_logger(__name__)


@dataclass(frozen=True)
class ClaimedJob:
    """Snapshot of a job taken at the moment this worker claimed it."""

    id: int
    job_type: str
    queue: JobQueue
    priority: int
    payload: dict[str, Any]
    attempts: int
    max_attempts: int
    locked_by: str
    locked_at: datetime

    @classmethod
    def from_row(cls, job: DelayedJob) -> "ClaimedJob":
        return cls(
            id=job.id,
            job_type=job.job_type,
            queue=JobQueue(job.queue),
            priority=job.priority,
            payload=dict(job.payload or {}),
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            locked_by=job.locked_by,
            locked_at=coerce_utc(job.locked_at),
        )


class JobClaimer:
    """Claims jobs and writes lease-guarded outcomes back to the store."""

    def __init__(
        self,
        settings: Settings,
        governor: ConcurrencyGovernor | None = None,
        clock: Clock | None = None,
    ):
        self.settings = settings
        self.lease_timeout = settings.lease_timeout
        self.governor = governor or ConcurrencyGovernor.from_settings(settings)
        self.clock = clock or utcnow

    async def claim_next(
        self, session: AsyncSession, worker_id: str, queues: list[JobQueue]
    ) -> ClaimedJob | None:
        """
        Claim the best eligible job across ``queues``.

        Queues are tried most urgent first; families at their concurrency
        ceiling are skipped. Within a queue, candidates are taken in
        (priority DESC, scheduled_at ASC, id ASC) order.
        """
        now = self.clock()
        for queue in await self.governor.open_queues(
            session, JobQueue.by_urgency(queues), now
        ):
            for job_id in await self._candidates(session, queue, now):
                claimed = await self.try_claim(session, job_id, worker_id, now)
                if claimed is not None:
                    return claimed
                logger.debug("Lost claim race", job_id=job_id, queue=queue.value)
        return None

    async def _candidates(
        self, session: AsyncSession, queue: JobQueue, now: datetime
    ) -> list[int]:
        result = await session.execute(
            select(DelayedJob.id)
            .where(
                DelayedJob.queue == queue.value,
                DelayedJob.eligible(now, self.lease_timeout),
            )
            .order_by(
                DelayedJob.priority.desc(),
                DelayedJob.scheduled_at.asc(),
                DelayedJob.id.asc(),
            )
            .limit(self.settings.job_claim_candidates)
        )
        return list(result.scalars().all())

    async def try_claim(
        self,
        session: AsyncSession,
        job_id: int,
        worker_id: str,
        now: datetime | None = None,
    ) -> ClaimedJob | None:
        """
        Atomically move one eligible job to PROCESSING under ``worker_id``.

        Returns None when the row no longer satisfies the eligibility predicate,
        which is how a lost race shows up, or when its family reached its
        concurrency ceiling in the meantime.
        """
        now = now or self.clock()
        conditions = [
            DelayedJob.id == job_id,
            DelayedJob.eligible(now, self.lease_timeout),
        ]
        below_ceiling = self.governor.below_ceiling(now)
        if below_ceiling is not None:
            conditions.append(below_ceiling)

        result = await session.execute(
            update(DelayedJob)
            .where(*conditions)
            .values(
                status=JobStatus.PROCESSING.value,
                locked_at=now,
                locked_by=worker_id,
                attempts=DelayedJob.attempts + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            return None
        await session.commit()

        row = await session.execute(
            select(DelayedJob)
            .where(DelayedJob.id == job_id)
            .execution_options(populate_existing=True)
        )
        claimed = ClaimedJob.from_row(row.scalar_one())
        logger.info(
            "Claimed job",
            job_id=claimed.id,
            job_type=claimed.job_type,
            queue=claimed.queue.value,
            attempt=claimed.attempts,
            max_attempts=claimed.max_attempts,
        )
        return claimed

    async def complete(self, session: AsyncSession, claimed: ClaimedJob) -> bool:
        """Mark a job COMPLETED; commits any writes already pending in ``session``."""
        now = self.clock()
        return await self._transition(
            session,
            claimed,
            status=JobStatus.COMPLETED.value,
            completed_at=now,
            locked_at=None,
            locked_by=None,
            updated_at=now,
        )

    async def schedule_retry(
        self, session: AsyncSession, claimed: ClaimedJob, run_at: datetime, error: str
    ) -> bool:
        """Return a job to PENDING, eligible again at ``run_at``."""
        return await self._transition(
            session,
            claimed,
            status=JobStatus.PENDING.value,
            scheduled_at=run_at,
            locked_at=None,
            locked_by=None,
            last_error=error,
            updated_at=self.clock(),
        )

    async def fail(self, session: AsyncSession, claimed: ClaimedJob, error: str) -> bool:
        """Mark a job terminally FAILED."""
        now = self.clock()
        return await self._transition(
            session,
            claimed,
            status=JobStatus.FAILED.value,
            failed_at=now,
            locked_at=None,
            locked_by=None,
            last_error=error,
            updated_at=now,
        )

    async def _transition(
        self, session: AsyncSession, claimed: ClaimedJob, **values: Any
    ) -> bool:
        # The (locked_by, attempts) pair identifies this particular claim
        result = await session.execute(
            update(DelayedJob)
            .where(
                DelayedJob.id == claimed.id,
                DelayedJob.status == JobStatus.PROCESSING.value,
                DelayedJob.locked_by == claimed.locked_by,
                DelayedJob.attempts == claimed.attempts,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            logger.warning(
                "Lease lost before outcome could be recorded",
                job_id=claimed.id,
                attempt=claimed.attempts,
                target_status=values.get("status"),
            )
            return False
        await session.commit()
        return True

    async def reap_abandoned(self, session: AsyncSession) -> int:
        """
        Fail abandoned PROCESSING jobs that have no attempts left.

        Such rows are excluded from the eligibility predicate, so without this
        sweep they would stay PROCESSING forever.
        """
        now = self.clock()
        result = await session.execute(
            update(DelayedJob)
            .where(
                DelayedJob.status == JobStatus.PROCESSING.value,
                DelayedJob.locked_at < now - self.lease_timeout,
                DelayedJob.attempts >= DelayedJob.max_attempts,
            )
            .values(
                status=JobStatus.FAILED.value,
                failed_at=now,
                last_error=literal(
                    "Lease expired during final attempt; last claimed by ", Text
                ).concat(func.coalesce(DelayedJob.locked_by, "unknown")),
                locked_at=None,
                locked_by=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        reaped = result.rowcount or 0
        if reaped:
            logger.warning(
                "Failed abandoned jobs with exhausted attempts",
                reaped_count=reaped,
                lease_timeout_s=self.settings.job_lease_timeout_s,
            )
        return reaped
