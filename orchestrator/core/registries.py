from collections.abc import Awaitable, Callable
from typing import Any, Generic, Protocol, TypeVar

from orchestrator.jobs.types import JobType

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen"
            )
        if name in self._implementations:
            raise ValueError(
                f"Duplicate {self.name.lower()} implementation registered with name: {name}"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._implementations

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Registry - background processing handlers
class JobHandler(Protocol):
    """
    Protocol for job handlers.

    A handler may raise ``RetryableJobError`` or ``TerminalJobError`` to
    classify a failure; any other exception is treated as retryable unless its
    type is listed in the optional ``terminal_exceptions`` attribute.
    """

    async def handle(
        self,
        session: Any,  # AsyncSession
        payload: dict[str, Any],
        context: Any,  # JobContext
    ) -> dict[str, Any] | None:
        """
        Handle a background job.

        Args:
            session: Database session; writes commit together with completion
            payload: Job-specific parameters
            context: Job id, type, queue, attempt counters and worker identity

        Returns:
            Optional result dictionary (logged, not persisted)
        """
        ...


HandlerFunc = Callable[[Any, dict[str, Any], Any], Awaitable[dict[str, Any] | None]]


class FunctionHandler:
    """Adapts a plain coroutine function to the JobHandler protocol."""

    def __init__(
        self,
        func: HandlerFunc,
        terminal_exceptions: tuple[type[BaseException], ...] = (),
    ):
        self.func = func
        self.terminal_exceptions = terminal_exceptions

    async def handle(self, session, payload, context):
        return await self.func(session, payload, context)

    def __repr__(self) -> str:
        return f"<FunctionHandler {self.func.__qualname__}>"


class JobRegistry(Registry[JobHandler]):
    """Closed registry mapping catalog job types to their handlers."""

    def __init__(self):
        super().__init__("Job")

    def register(self, name: JobType | str, implementation: JobHandler) -> None:
        job_type = JobType(name)
        if not callable(getattr(implementation, "handle", None)):
            raise TypeError(
                f"Handler for {job_type.value} must define an async handle() method"
            )
        super().register(job_type.value, implementation)

    def get(self, name: JobType | str) -> JobHandler:
        key = name.value if isinstance(name, JobType) else name
        return super().get(key)

    def handler(
        self,
        job_type: JobType | str,
        terminal_exceptions: tuple[type[BaseException], ...] = (),
    ) -> Callable[[HandlerFunc], HandlerFunc]:
        """Decorator registering a coroutine function as the handler for ``job_type``."""

        def decorator(func: HandlerFunc) -> HandlerFunc:
            self.register(job_type, FunctionHandler(func, terminal_exceptions))
            return func

        return decorator

    def missing(self, job_types: list[JobType]) -> list[JobType]:
        """Return the job types that have no registered handler."""
        return [job_type for job_type in job_types if job_type.value not in self]


# Global registry instance (singleton)
job_registry = JobRegistry()
