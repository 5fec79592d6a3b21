import asyncio
from datetime import timedelta

from orchestrator.jobs.claims import JobClaimer
from orchestrator.jobs.governor import ConcurrencyGovernor
from orchestrator.jobs.types import JobQueue, JobStatus, JobType
from orchestrator.jobs.worker import JobWorker

LEASE = timedelta(seconds=300)


def test_has_capacity_respects_limits():
    governor = ConcurrencyGovernor({JobQueue.HIGH: 2, JobQueue.LOW: 0}, LEASE)

    assert governor.has_capacity(JobQueue.HIGH, {JobQueue.HIGH: 1})
    assert not governor.has_capacity(JobQueue.HIGH, {JobQueue.HIGH: 2})
    # A zero ceiling pauses a family
    assert not governor.has_capacity(JobQueue.LOW, {})
    # Families without a ceiling are unbounded
    assert governor.has_capacity(JobQueue.BULK, {JobQueue.BULK: 10_000})


async def test_in_flight_counts_live_leases_only(database, claimer, enqueue, clock):
    await enqueue(JobType.EMAIL_DELIVERY)
    await enqueue(JobType.EMAIL_DELIVERY)
    await enqueue(JobType.STOCK_REFRESH)
    governor = ConcurrencyGovernor({}, LEASE)

    async with database.session() as session:
        await claimer.claim_next(session, "w1:1/0", [JobQueue.DEFAULT])
        await claimer.claim_next(session, "w1:1/0", [JobQueue.HIGH])

        counts = await governor.in_flight(session, clock.now)
        assert counts[JobQueue.DEFAULT] == 1
        assert counts[JobQueue.HIGH] == 1
        assert counts[JobQueue.BULK] == 0

        # Expired leases no longer occupy a slot
        counts = await governor.in_flight(session, clock.now + LEASE + timedelta(seconds=1))
        assert counts[JobQueue.DEFAULT] == 0
        assert counts[JobQueue.HIGH] == 0


async def test_saturated_family_is_skipped(database, settings, clock, enqueue, load_job):
    """Bounded family: PROCESSING count never exceeds the ceiling."""
    first = await enqueue(JobType.EMAIL_DELIVERY)
    second = await enqueue(JobType.EMAIL_DELIVERY)
    low = await enqueue(JobType.CLICK_ROLLUP)
    governor = ConcurrencyGovernor({JobQueue.DEFAULT: 1}, LEASE)
    claimer = JobClaimer(settings, governor=governor, clock=clock)
    queues = [JobQueue.DEFAULT, JobQueue.LOW]

    async with database.session() as session:
        claimed = [await claimer.claim_next(session, f"w{n}:1/0", queues) for n in range(3)]

    assert [job.id if job else None for job in claimed] == [first, low, None]
    assert (await load_job(second)).status == JobStatus.PENDING


async def test_family_reopens_when_slot_frees(database, settings, clock, enqueue):
    first = await enqueue(JobType.EMAIL_DELIVERY)
    second = await enqueue(JobType.EMAIL_DELIVERY)
    governor = ConcurrencyGovernor({JobQueue.DEFAULT: 1}, LEASE)
    claimer = JobClaimer(settings, governor=governor, clock=clock)

    async with database.session() as session:
        running = await claimer.claim_next(session, "w1:1/0", [JobQueue.DEFAULT])
        assert running.id == first
        assert await claimer.claim_next(session, "w2:1/0", [JobQueue.DEFAULT]) is None

        await claimer.complete(session, running)
        next_job = await claimer.claim_next(session, "w2:1/0", [JobQueue.DEFAULT])

    assert next_job.id == second


async def test_open_queues_preserves_order(database, clock):
    governor = ConcurrencyGovernor({JobQueue.HIGH: 0}, LEASE)

    async with database.session() as session:
        open_queues = await governor.open_queues(
            session, [JobQueue.HIGH, JobQueue.DEFAULT, JobQueue.BULK], clock.now
        )

    assert open_queues == [JobQueue.DEFAULT, JobQueue.BULK]


def test_from_settings(settings):
    governor = ConcurrencyGovernor.from_settings(settings)

    assert governor.limits[JobQueue.SCREENSHOT] == 3
    assert governor.lease_timeout == timedelta(seconds=300)


async def test_claim_rechecks_ceiling(database, settings, clock, enqueue, load_job):
    """A claimant whose pre-filter saw a free slot still loses once it is taken."""
    first = await enqueue(JobType.SCREENSHOT_CAPTURE)
    second = await enqueue(JobType.SCREENSHOT_CAPTURE)
    governor = ConcurrencyGovernor({JobQueue.SCREENSHOT: 1}, LEASE)
    claimer = JobClaimer(settings, governor=governor, clock=clock)

    async with database.session() as session:
        assert await governor.open_queues(session, [JobQueue.SCREENSHOT], clock.now)
        assert (await claimer.try_claim(session, first, "w1:1/0")).id == first

        assert await claimer.try_claim(session, second, "w2:1/0") is None

    assert (await load_job(second)).status == JobStatus.PENDING


def test_below_ceiling_is_none_without_limits(clock):
    governor = ConcurrencyGovernor({}, LEASE)

    assert governor.below_ceiling(clock.now) is None


async def test_worker_never_exceeds_family_ceiling(
    settings, database, registry, clock, enqueue, load_job
):
    """More supervisor loops than slots: in-flight SCREENSHOT jobs stay at the ceiling."""
    total = 12
    running = 0
    peak = 0
    finished = asyncio.Event()
    processed = []

    @registry.handler(JobType.SCREENSHOT_CAPTURE)
    async def capture(session, payload, context):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        try:
            await asyncio.sleep(0.05)
        finally:
            running -= 1
        processed.append(payload["n"])
        if len(processed) == total:
            finished.set()

    job_ids = [
        await enqueue(JobType.SCREENSHOT_CAPTURE, payload={"n": n}) for n in range(total)
    ]
    worker = JobWorker(
        settings,
        database,
        registry=registry,
        queues=[JobQueue.SCREENSHOT],
        concurrency=8,
        clock=clock,
        worker_id="test-host:1",
        governor=ConcurrencyGovernor({JobQueue.SCREENSHOT: 3}, LEASE),
    )

    runner = asyncio.create_task(worker.start())
    await asyncio.wait_for(finished.wait(), timeout=30)
    await worker.stop()
    await asyncio.wait_for(runner, timeout=10)

    assert sorted(processed) == list(range(total))
    assert peak <= 3
    for job_id in job_ids:
        assert (await load_job(job_id)).status == JobStatus.COMPLETED
