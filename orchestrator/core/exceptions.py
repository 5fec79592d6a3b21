import traceback
from typing import Any


class OrchestratorError(Exception):
    """Base exception for the job orchestration engine."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class EnqueueError(OrchestratorError):
    """Raised when a job cannot be enqueued; no job row exists."""


class JobNotFoundError(OrchestratorError):
    """Raised when a job id does not exist."""


class InvalidJobStateError(OrchestratorError):
    """Raised when an operation does not apply to the job's current status."""


class UnknownJobTypeError(OrchestratorError):
    """Raised when no handler is registered for a claimed job's type."""


# Handler-facing failure classification
class JobExecutionError(Exception):
    """Base class for failures raised by job handlers."""

    retryable: bool = True

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class RetryableJobError(JobExecutionError):
    """Transient failure: retried with backoff until attempts run out."""

    retryable = True


class TerminalJobError(JobExecutionError):
    """Permanent failure: the job is marked FAILED without further retries."""

    retryable = False


def format_job_error(exc: BaseException, max_chars: int) -> str:
    """Render an exception for the last_error column."""
    rendered = f"{exc.__class__.__name__}: {exc}"
    if exc.__traceback__ is not None:
        rendered += "\n" + "".join(traceback.format_tb(exc.__traceback__))
    if len(rendered) > max_chars:
        rendered = rendered[: max_chars - 3] + "..."
    return rendered
