from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.config.settings import Settings
from orchestrator.core.registries import JobRegistry
from orchestrator.infra.database import Database
from orchestrator.jobs.claims import JobClaimer
from orchestrator.jobs.schemas import JobDetail
from orchestrator.jobs.service import JobService
from orchestrator.jobs.worker import JobWorker


class FakeClock:
    """Controllable clock so lease expiry and backoff can be simulated."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 5, 9, 0, tzinfo=UTC))


@pytest.fixture
def settings(tmp_path) -> Settings:
    """File-backed SQLite so several sessions can race on the same rows."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}",
        job_poll_interval_ms=10,
        job_error_backoff_s=0.01,
        job_reaper_interval_s=1,
    )


@pytest.fixture
async def database(settings: Settings) -> AsyncGenerator[Database, None]:
    db = Database(settings)
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
async def session(database: Database) -> AsyncGenerator[AsyncSession, None]:
    async with database.session() as session:
        yield session


@pytest.fixture
def registry() -> JobRegistry:
    """Fresh registry per test so the global one is never frozen or polluted."""
    return JobRegistry()


@pytest.fixture
def service(settings: Settings, clock: FakeClock) -> JobService:
    return JobService(settings, clock=clock)


@pytest.fixture
def claimer(settings: Settings, clock: FakeClock) -> JobClaimer:
    return JobClaimer(settings, clock=clock)


@pytest.fixture
def make_worker(
    settings: Settings, database: Database, registry: JobRegistry, clock: FakeClock
) -> Callable[..., JobWorker]:
    def factory(**overrides: Any) -> JobWorker:
        options: dict[str, Any] = {
            "registry": registry,
            "clock": clock,
            "worker_id": "test-host:1",
        }
        options.update(overrides)
        return JobWorker(settings, database, **options)

    return factory


@pytest.fixture
def enqueue(database: Database, service: JobService):
    """Enqueue one job in its own committed transaction and return its id."""

    async def _enqueue(job_type: str, **kwargs: Any) -> int:
        async with database.session() as session:
            job_id = await service.enqueue(session, job_type, **kwargs)
            await session.commit()
        return job_id

    return _enqueue


@pytest.fixture
def load_job(database: Database, service: JobService):
    async def _load(job_id: int) -> JobDetail:
        async with database.session() as session:
            return await service.get_job(session, job_id)

    return _load
