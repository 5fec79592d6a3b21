import logging
import sys
from typing import Any

import structlog

from .settings import Settings, settings as default_settings


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog for worker processes and the CLI."""
    settings = settings or default_settings
    level = getattr(logging, settings.log_level)

    # Library loggers (SQLAlchemy, asyncio) go through the stdlib root logger
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    structlog.configure(
        processors=[
            # worker_id bound per supervisor task
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            # Handler tracebacks rendered into the event
            structlog.processors.format_exc_info,
            (
                structlog.processors.CallsiteParameterAdder(
                    parameters=[structlog.processors.CallsiteParameter.FUNC_NAME]
                )
                if settings.debug
                else structlog.processors.CallsiteParameterAdder(parameters=[])
            ),
            # One JSON object per line for log shippers; readable lines locally
            (
                structlog.dev.ConsoleRenderer()
                if settings.debug
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def bind_worker_context(worker_id: str, **context: Any) -> None:
    """Attach the worker identity to every log line emitted by the current task."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(worker_id=worker_id, **context)
