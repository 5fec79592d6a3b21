"""
Database-backed job worker: supervisor loops that claim, dispatch and record.
"""

import asyncio
import os
import socket
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.config.logging import bind_worker_context, get_logger
from orchestrator.config.settings import Settings
from orchestrator.core.clock import Clock, utcnow
from orchestrator.core.exceptions import (
    JobExecutionError,
    UnknownJobTypeError,
    format_job_error,
)
from orchestrator.core.registries import JobHandler, JobRegistry, job_registry
from orchestrator.infra.database import Database
from orchestrator.jobs.backoff import RetryPolicy
from orchestrator.jobs.claims import ClaimedJob, JobClaimer
from orchestrator.jobs.governor import ConcurrencyGovernor
from orchestrator.jobs.types import JobOutcome, JobQueue, JobType

logger = get_logger(__name__)


@dataclass(frozen=True)
class JobContext:
    """What a handler knows about the attempt it is running."""

    job_id: int
    job_type: str
    queue: JobQueue
    attempts: int
    max_attempts: int
    worker_id: str

    @property
    def is_retry(self) -> bool:
        return self.attempts > 1

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts >= self.max_attempts


@dataclass(frozen=True)
class ExecutionResult:
    job_id: int
    outcome: JobOutcome
    attempts: int
    error: str | None = None
    next_run_at: datetime | None = None


class JobWorker:
    """
    Job worker running ``concurrency`` supervisor loops in one process.

    Features:
    - Conditional single-row UPDATE claims, safe across processes and hosts
    - Lease expiry for recovery of jobs abandoned by crashed workers
    - Deterministic exponential backoff for retryable failures
    - Per-queue-family concurrency ceilings
    - Graceful shutdown that lets in-flight jobs finish
    """

    def __init__(
        self,
        settings: Settings,
        database: Database,
        registry: JobRegistry | None = None,
        queues: list[JobQueue] | None = None,
        concurrency: int | None = None,
        clock: Clock | None = None,
        worker_id: str | None = None,
        policy: RetryPolicy | None = None,
        governor: ConcurrencyGovernor | None = None,
    ):
        self.settings = settings
        self.database = database
        self.registry = registry if registry is not None else job_registry
        self.queues = JobQueue.by_urgency(queues or settings.job_queues)
        self.concurrency = concurrency or settings.job_concurrency
        self.clock = clock or utcnow
        self.worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}"
        self.policy = policy or RetryPolicy.from_settings(settings)
        self.claimer = JobClaimer(settings, governor=governor, clock=self.clock)
        self.running = False
        self.active_jobs: set[int] = set()
        self._stop_event: asyncio.Event | None = None

    def slot_id(self, slot: int | str) -> str:
        return f"{self.worker_id}/{slot}"

    def prepare(self) -> list[JobType]:
        """Freeze the registry and report served job types without a handler."""
        self.registry.freeze()
        missing = self.registry.missing(JobType.in_queues(self.queues))
        if missing:
            logger.warning(
                "Job types without a registered handler will fail when claimed",
                worker_id=self.worker_id,
                job_types=[job_type.value for job_type in missing],
            )
        return missing

    async def start(self) -> None:
        """Run the supervisor loops and the reaper until ``stop()`` is called."""
        if self.running:
            raise RuntimeError("Worker is already running")

        self.prepare()
        self.running = True
        self._stop_event = asyncio.Event()
        logger.info(
            "Starting job worker",
            worker_id=self.worker_id,
            queues=[queue.value for queue in self.queues],
            concurrency=self.concurrency,
            poll_interval_ms=self.settings.job_poll_interval_ms,
            lease_timeout_s=self.settings.job_lease_timeout_s,
        )

        try:
            await asyncio.gather(
                *(self._worker_loop(slot) for slot in range(self.concurrency)),
                self._reaper_loop(),
            )
        finally:
            self.running = False
            logger.info("Job worker stopped", worker_id=self.worker_id)

    async def stop(self, timeout_s: float = 30.0) -> None:
        """Stop polling and wait for in-flight jobs to finish."""
        logger.info("Stopping job worker", worker_id=self.worker_id)
        self.running = False
        if self._stop_event is not None:
            self._stop_event.set()

        waited = 0.0
        while self.active_jobs and waited < timeout_s:
            await asyncio.sleep(0.1)
            waited += 0.1

        if self.active_jobs:
            logger.warning(
                "Worker stopped with active jobs",
                worker_id=self.worker_id,
                active_jobs=sorted(self.active_jobs),
            )

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early once a stop is requested."""
        if self._stop_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def _worker_loop(self, slot: int) -> None:
        """One supervisor: claim, execute, record, repeat."""
        bind_worker_context(self.slot_id(slot))
        while self.running:
            try:
                result = await self.run_once(slot)
                if result is None:
                    await self._sleep(self.settings.job_poll_interval_ms / 1000)
            except Exception:
                logger.exception("Error in worker loop")
                await self._sleep(self.settings.job_error_backoff_s)

    async def _reaper_loop(self) -> None:
        """Fail abandoned jobs whose attempts are exhausted."""
        bind_worker_context(self.slot_id("reaper"))
        while self.running:
            try:
                async with self.database.session() as session:
                    await self.claimer.reap_abandoned(session)
            except Exception:
                logger.exception("Error reaping abandoned jobs")
            await self._sleep(self.settings.job_reaper_interval_s)

    async def run_once(self, slot: int = 0) -> ExecutionResult | None:
        """Claim and process at most one job; None when nothing was claimable."""
        async with self.database.session() as session:
            claimed = await self.claimer.claim_next(
                session, self.slot_id(slot), self.queues
            )
        if claimed is None:
            return None
        return await self._process_job(claimed)

    async def _process_job(self, claimed: ClaimedJob) -> ExecutionResult:
        """Dispatch a claimed job to its handler and write the outcome."""
        self.active_jobs.add(claimed.id)
        job_logger = logger.bind(
            job_id=claimed.id,
            job_type=claimed.job_type,
            queue=claimed.queue.value,
            attempt=claimed.attempts,
        )
        context = JobContext(
            job_id=claimed.id,
            job_type=claimed.job_type,
            queue=claimed.queue,
            attempts=claimed.attempts,
            max_attempts=claimed.max_attempts,
            worker_id=claimed.locked_by,
        )

        try:
            async with self.database.session() as session:
                try:
                    handler = self.registry.get(claimed.job_type)
                except KeyError:
                    error = UnknownJobTypeError(
                        f"No handler registered for job type {claimed.job_type}"
                    )
                    job_logger.error("Unknown job type")
                    return await self._record_failure(
                        session, claimed, error, terminal=True, job_logger=job_logger
                    )

                job_logger.info("Processing job started")
                try:
                    result = await handler.handle(session, claimed.payload, context)
                    completed = await self.claimer.complete(session, claimed)
                except Exception as e:
                    await session.rollback()
                    return await self._record_failure(
                        session,
                        claimed,
                        e,
                        terminal=self._is_terminal(handler, e),
                        job_logger=job_logger,
                    )

                if not completed:
                    return ExecutionResult(
                        claimed.id, JobOutcome.LEASE_LOST, claimed.attempts
                    )
                job_logger.info("Processing job completed successfully", result=result)
                return ExecutionResult(claimed.id, JobOutcome.COMPLETED, claimed.attempts)
        finally:
            self.active_jobs.discard(claimed.id)

    @staticmethod
    def _is_terminal(handler: JobHandler, exc: Exception) -> bool:
        if isinstance(exc, JobExecutionError):
            return not exc.retryable
        terminal_exceptions: tuple[type[BaseException], ...] = getattr(
            handler, "terminal_exceptions", ()
        )
        return bool(terminal_exceptions) and isinstance(exc, terminal_exceptions)

    async def _record_failure(
        self,
        session: AsyncSession,
        claimed: ClaimedJob,
        exc: Exception,
        terminal: bool,
        job_logger: Any,
    ) -> ExecutionResult:
        """Schedule a retry or mark the job FAILED, depending on classification."""
        error = format_job_error(exc, self.settings.job_last_error_max_chars)

        if not terminal and not self.policy.is_exhausted(
            claimed.attempts, claimed.max_attempts
        ):
            next_run_at = self.policy.next_run_at(claimed.attempts, self.clock())
            if not await self.claimer.schedule_retry(session, claimed, next_run_at, error):
                return ExecutionResult(
                    claimed.id, JobOutcome.LEASE_LOST, claimed.attempts, error
                )
            job_logger.warning(
                "Job attempt failed, retry scheduled",
                error=f"{exc.__class__.__name__}: {exc}",
                next_run_at=next_run_at.isoformat(),
                max_attempts=claimed.max_attempts,
            )
            return ExecutionResult(
                claimed.id,
                JobOutcome.RETRY_SCHEDULED,
                claimed.attempts,
                error,
                next_run_at,
            )

        if not await self.claimer.fail(session, claimed, error):
            return ExecutionResult(
                claimed.id, JobOutcome.LEASE_LOST, claimed.attempts, error
            )
        job_logger.error(
            "Job failed",
            error=f"{exc.__class__.__name__}: {exc}",
            terminal=terminal,
            max_attempts=claimed.max_attempts,
        )
        return ExecutionResult(claimed.id, JobOutcome.FAILED, claimed.attempts, error)
