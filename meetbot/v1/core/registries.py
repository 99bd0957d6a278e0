from typing import Any, Generic, Protocol, TypeVar

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
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


# Job Registry - background processing handlers
class JobHandler(Protocol):
    """Protocol for job handlers that process background work."""

    async def handle(self, job: Any) -> dict[str, Any] | None:
        """
        Handle one claimed job.

        Args:
            job: Immutable snapshot of the claimed job (JobRecord)

        Returns:
            Optional result dictionary stored with the completed job

        Raises:
            Any exception marks the attempt as failed and feeds the retry policy.
        """
        ...


class JobRegistry(Registry[Any]):
    """
    Registry for background job handlers.

    Values are JobHandler objects or plain async callables taking the job.
    """

    def __init__(self):
        super().__init__("Job")

    def resolve(self, name: str):
        """Return the coroutine function to invoke for a job type."""
        handler = self.get(name)
        return getattr(handler, "handle", handler)
