"""
Job registry initialization.

Handler modules register themselves with the global job registry on import,
either through ``job_registry.register(...)`` or the ``@job_registry.handler``
decorator. The worker imports the configured modules before it freezes the
registry.
"""

import importlib

from orchestrator.config.logging import get_logger
from orchestrator.core.registries import JobRegistry, job_registry

logger = get_logger(__name__)


def register_job_handlers(
    modules: list[str], registry: JobRegistry | None = None
) -> list[str]:
    """Import each handler module and return the registered job types."""
    registry = registry if registry is not None else job_registry

    logger.info("Registering job handlers", modules=modules)
    for module in modules:
        importlib.import_module(module)

    registered = registry.list()
    logger.info("Job handlers registered", registered_handlers=registered)
    return registered
