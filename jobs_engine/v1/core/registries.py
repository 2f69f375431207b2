from typing import TYPE_CHECKING, Any, Generic, Protocol, TypeVar

from jobs_engine.v1.core.exceptions import UnknownJobTypeError

if TYPE_CHECKING:
    from jobs_engine.v1.jobs.context import JobContext

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
                "registry is frozen in production mode"
            )
        self._implementations[name] = implementation

    def unregister(self, name: str) -> None:
        """Remove an implementation if present."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot unregister '{name}' from {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations.pop(name, None)

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

    def __contains__(self, name: str) -> bool:
        return name in self._implementations

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Registry - processors keyed by job type
class JobHandler(Protocol):
    """Protocol for processors that execute jobs of one type."""

    async def handle(self, ctx: "JobContext") -> dict[str, Any] | None:
        """
        Execute one attempt of a job.

        Args:
            ctx: Job context with payload, options, attempt number, deadline
                and a progress reporter

        Returns:
            Optional JSON-serializable result stored as the job's JobResult
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Registry for job processors, populated at startup."""

    def __init__(self):
        super().__init__("Job")

    def get(self, name: str) -> JobHandler:
        """Get the processor for a job type.

        Raises:
            UnknownJobTypeError: if no processor is registered for ``name``
        """
        try:
            return super().get(name)
        except KeyError:
            raise UnknownJobTypeError(
                f"No processor registered for job type: {name}",
                details={"job_type": name, "registered": self.list()},
            ) from None


# Global registry instance (singleton)
job_registry = JobRegistry()
