import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from orchestrator.core.exceptions import RetryableJobError, TerminalJobError
from orchestrator.jobs.claims import JobClaimer
from orchestrator.jobs.models import DelayedJob
from orchestrator.jobs.service import JobService
from orchestrator.jobs.types import JobOutcome, JobQueue, JobStatus, JobType


async def test_idle_worker_returns_none(make_worker):
    worker = make_worker()

    assert await worker.run_once() is None


async def test_successful_job_completes(make_worker, registry, enqueue, load_job, clock):
    seen = []

    @registry.handler(JobType.EMAIL_DELIVERY)
    async def deliver(session, payload, context):
        seen.append((payload, context))
        return {"sent": True}

    job_id = await enqueue(JobType.EMAIL_DELIVERY, payload={"to": "ops@example.com"})

    result = await make_worker().run_once()

    assert result.job_id == job_id
    assert result.outcome == JobOutcome.COMPLETED
    assert result.attempts == 1

    payload, context = seen[0]
    assert payload == {"to": "ops@example.com"}
    assert context.job_id == job_id
    assert context.job_type == "EMAIL_DELIVERY"
    assert context.queue == JobQueue.DEFAULT
    assert context.attempts == 1
    assert context.max_attempts == 5
    assert context.worker_id == "test-host:1/0"
    assert not context.is_retry

    job = await load_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.completed_at == clock.now
    assert job.locked_at is None
    assert job.locked_by is None
    assert job.last_error is None


async def test_handler_writes_commit_with_completion(
    make_worker, registry, enqueue, database, settings, clock
):
    follow_up = JobService(settings, clock=clock)

    @registry.handler(JobType.LISTING_IMAGE_PROCESSING)
    async def process(session, payload, context):
        await follow_up.enqueue(
            session, JobType.LISTING_IMAGE_CLEANUP, payload={"listing": payload["listing"]}
        )

    await enqueue(JobType.LISTING_IMAGE_PROCESSING, payload={"listing": 42})

    result = await make_worker().run_once()
    assert result.outcome == JobOutcome.COMPLETED

    async with database.session() as session:
        cleanup = await session.scalar(
            select(DelayedJob).where(DelayedJob.job_type == "LISTING_IMAGE_CLEANUP")
        )
    assert cleanup is not None
    assert cleanup.payload == {"listing": 42}


async def test_always_failing_job_exhausts_attempts(
    make_worker, registry, enqueue, load_job, clock
):
    """max_attempts=3: two retries with growing backoff, then FAILED."""

    @registry.handler(JobType.LINK_HEALTH_CHECK)
    async def check(session, payload, context):
        raise RuntimeError("upstream unavailable")

    job_id = await enqueue(JobType.LINK_HEALTH_CHECK, max_attempts=3)
    worker = make_worker()

    first = await worker.run_once()
    assert first.outcome == JobOutcome.RETRY_SCHEDULED
    assert first.next_run_at == clock.now + timedelta(seconds=60)
    job = await load_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 1
    assert job.scheduled_at == clock.now + timedelta(seconds=60)
    assert "RuntimeError: upstream unavailable" in job.last_error

    # Not eligible until the backoff has elapsed
    assert await worker.run_once() is None
    clock.advance(seconds=60)

    second = await worker.run_once()
    assert second.outcome == JobOutcome.RETRY_SCHEDULED
    assert second.next_run_at == clock.now + timedelta(seconds=120)
    clock.advance(seconds=120)

    third = await worker.run_once()
    assert third.outcome == JobOutcome.FAILED

    job = await load_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 3
    assert job.failed_at == clock.now
    assert job.locked_by is None
    assert "RuntimeError: upstream unavailable" in job.last_error

    clock.advance(hours=2)
    assert await worker.run_once() is None


async def test_retryable_error_is_retried(make_worker, registry, enqueue):
    @registry.handler(JobType.SOCIAL_REFRESH)
    async def refresh(session, payload, context):
        raise RetryableJobError("rate limited")

    await enqueue(JobType.SOCIAL_REFRESH)

    result = await make_worker().run_once()

    assert result.outcome == JobOutcome.RETRY_SCHEDULED
    assert "RetryableJobError: rate limited" in result.error


async def test_terminal_error_fails_immediately(make_worker, registry, enqueue, load_job):
    @registry.handler(JobType.GDPR_DELETION)
    async def delete(session, payload, context):
        raise TerminalJobError("account does not exist")

    job_id = await enqueue(JobType.GDPR_DELETION)

    result = await make_worker().run_once()

    assert result.outcome == JobOutcome.FAILED
    job = await load_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 1
    assert "TerminalJobError: account does not exist" in job.last_error


async def test_declared_terminal_exceptions(make_worker, registry, enqueue, load_job):
    @registry.handler(JobType.INBOUND_EMAIL, terminal_exceptions=(ValueError,))
    async def parse(session, payload, context):
        raise ValueError("malformed MIME")

    job_id = await enqueue(JobType.INBOUND_EMAIL)

    result = await make_worker().run_once()

    assert result.outcome == JobOutcome.FAILED
    assert (await load_job(job_id)).attempts == 1


async def test_job_without_handler_fails_on_first_claim(make_worker, enqueue, load_job):
    job_id = await enqueue(JobType.SCREENSHOT_CAPTURE)

    result = await make_worker().run_once()

    assert result.outcome == JobOutcome.FAILED
    job = await load_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 1
    assert "UnknownJobTypeError" in job.last_error
    assert "SCREENSHOT_CAPTURE" in job.last_error


async def test_retry_sees_incremented_attempts(make_worker, registry, enqueue, clock):
    attempts = []

    @registry.handler(JobType.WEATHER_REFRESH)
    async def refresh(session, payload, context):
        attempts.append((context.attempts, context.is_retry))
        if context.attempts == 1:
            raise ConnectionError("reset by peer")

    await enqueue(JobType.WEATHER_REFRESH)
    worker = make_worker()

    assert (await worker.run_once()).outcome == JobOutcome.RETRY_SCHEDULED
    clock.advance(minutes=1)
    assert (await worker.run_once()).outcome == JobOutcome.COMPLETED

    assert attempts == [(1, False), (2, True)]


async def test_lost_lease_discards_outcome_and_writes(
    make_worker, registry, enqueue, load_job, database, settings, clock
):
    """A handler that outlives its lease must not overwrite the new owner's state."""
    usurper = JobClaimer(settings, clock=clock)
    follow_up = JobService(settings, clock=clock)

    @registry.handler(JobType.BULK_IMPORT)
    async def slow_import(session, payload, context):
        clock.advance(seconds=settings.job_lease_timeout_s + 1)
        async with database.session() as other:
            assert await usurper.try_claim(other, context.job_id, "other-host:9/0")
        await follow_up.enqueue(session, JobType.AI_TAGGING)

    job_id = await enqueue(JobType.BULK_IMPORT)

    result = await make_worker().run_once()

    assert result.outcome == JobOutcome.LEASE_LOST
    job = await load_job(job_id)
    assert job.status == JobStatus.PROCESSING
    assert job.locked_by == "other-host:9/0"
    assert job.attempts == 2

    async with database.session() as session:
        tagging = await session.scalar(
            select(DelayedJob).where(DelayedJob.job_type == "AI_TAGGING")
        )
    assert tagging is None


async def test_prepare_freezes_registry_and_reports_missing(make_worker, registry):
    @registry.handler(JobType.STOCK_REFRESH)
    async def refresh(session, payload, context):
        return None

    worker = make_worker(queues=[JobQueue.HIGH])

    missing = worker.prepare()

    assert missing == [JobType.MESSAGE_RELAY]
    assert registry.is_frozen()
    with pytest.raises(RuntimeError, match="frozen"):

        @registry.handler(JobType.MESSAGE_RELAY)
        async def relay(session, payload, context):
            return None


def test_worker_identity_includes_slot(make_worker):
    worker = make_worker(worker_id="box:42")

    assert worker.slot_id(3) == "box:42/3"


async def test_start_and_stop_drain_backlog(make_worker, registry, enqueue, load_job):
    done = asyncio.Event()
    processed = []

    @registry.handler(JobType.CLICK_ROLLUP)
    async def rollup(session, payload, context):
        processed.append(payload["day"])
        if len(processed) == 3:
            done.set()

    job_ids = [await enqueue(JobType.CLICK_ROLLUP, payload={"day": day}) for day in range(3)]
    worker = make_worker(concurrency=2)

    runner = asyncio.create_task(worker.start())
    await asyncio.wait_for(done.wait(), timeout=10)
    await worker.stop()
    await asyncio.wait_for(runner, timeout=10)

    assert sorted(processed) == [0, 1, 2]
    assert not worker.running
    for job_id in job_ids:
        assert (await load_job(job_id)).status == JobStatus.COMPLETED


async def test_start_twice_is_rejected(make_worker):
    worker = make_worker()
    worker.running = True

    with pytest.raises(RuntimeError, match="already running"):
        await worker.start()
