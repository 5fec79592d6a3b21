"""
Queue concurrency governor.

Bounds how many jobs of a queue family may be PROCESSING at once across all
workers. Counts are derived from the job table, so there is no second source
of truth to drift. `open_queues` is a cheap pre-filter run once per poll; the
ceiling itself is re-checked inside the claim UPDATE by `below_ceiling`, so
where the store serializes writers the limit is exact, and elsewhere the race
is confined to a single statement.
"""

from collections.abc import Mapping
from datetime import datetime, timedelta

from sqlalchemy import case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from orchestrator.config.logging import get_logger
from orchestrator.config.settings import Settings
from orchestrator.jobs.models import DelayedJob
from orchestrator.jobs.types import JobQueue, JobStatus

logger = get_logger(__name__)


class ConcurrencyGovernor:
    def __init__(self, limits: Mapping[JobQueue, int], lease_timeout: timedelta):
        self.limits = dict(limits)
        self.lease_timeout = lease_timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConcurrencyGovernor":
        return cls(settings.job_queue_limits, settings.lease_timeout)

    async def in_flight(
        self, session: AsyncSession, now: datetime
    ) -> dict[JobQueue, int]:
        """Count PROCESSING jobs holding a live lease, per queue family."""
        result = await session.execute(
            select(DelayedJob.queue, func.count(DelayedJob.id))
            .where(DelayedJob.live_lease(now, self.lease_timeout))
            .group_by(DelayedJob.queue)
        )
        counts = {queue: 0 for queue in JobQueue}
        for queue, count in result.all():
            counts[JobQueue(queue)] = count
        return counts

    def has_capacity(self, queue: JobQueue, in_flight: Mapping[JobQueue, int]) -> bool:
        limit = self.limits.get(queue)
        if limit is None:
            return True
        return in_flight.get(queue, 0) < limit

    async def open_queues(
        self, session: AsyncSession, queues: list[JobQueue], now: datetime
    ) -> list[JobQueue]:
        """
        Filter ``queues`` down to families below their ceiling.

        Order is preserved; saturated families are skipped for this poll cycle.
        """
        counts = await self.in_flight(session, now)
        open_queues = []
        for queue in queues:
            if self.has_capacity(queue, counts):
                open_queues.append(queue)
            else:
                logger.debug(
                    "Queue at concurrency ceiling, skipping",
                    queue=queue.value,
                    in_flight=counts.get(queue, 0),
                    limit=self.limits.get(queue),
                )
        return open_queues

    def below_ceiling(self, now: datetime):
        """
        Claim-time predicate: the target row's family still has a free slot.

        Correlated on the row being claimed, so it is evaluated in the same
        statement that takes the lease. Returns None when no family is bounded.
        """
        if not self.limits:
            return None
        running = aliased(DelayedJob)
        in_flight = (
            select(func.count(running.id))
            .where(
                running.queue == DelayedJob.queue,
                running.status == JobStatus.PROCESSING.value,
                running.locked_at >= now - self.lease_timeout,
            )
            .correlate(DelayedJob)
            .scalar_subquery()
        )
        ceiling = case(
            {queue.value: limit for queue, limit in self.limits.items()},
            value=DelayedJob.queue,
        )
        bounded = [queue.value for queue in self.limits]
        return or_(DelayedJob.queue.not_in(bounded), in_flight < ceiling)
