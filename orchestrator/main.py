from orchestrator.config.logging import setup_logging
from orchestrator.config.settings import Settings, settings as default_settings
from orchestrator.infra.database import get_database
from orchestrator.jobs.registry_init import register_job_handlers
from orchestrator.jobs.types import JobQueue
from orchestrator.jobs.worker import JobWorker


def create_worker(
    settings: Settings | None = None,
    queues: list[JobQueue] | None = None,
    concurrency: int | None = None,
) -> JobWorker:
    """Create and configure a job worker process."""
    settings = settings or default_settings

    # Initialize structured logging
    setup_logging(settings)

    # Handler modules register on import; the worker freezes the registry on start
    register_job_handlers(settings.job_handler_modules)

    return JobWorker(
        settings,
        get_database(settings),
        queues=queues,
        concurrency=concurrency,
    )
