"""Ports (interfaces) to the backend collaborators.

Hey future me - this is the Hexagonal "port" layer, same as the rest of the app:
the application services only talk to these ABCs. The backend command service and
event bus are black boxes; the infrastructure layer plugs in HTTP/SSE adapters,
tests plug in AsyncMocks or the in-process LocalEventBus.

Architecture:
- MutationLedger / AssetFetchCache → ICommandService
- OperationProgressCoordinator      → IEventBus
- AssetFetchCache                   → IAssetHandleFactory
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from shelfsync.domain.entities.asset import AssetBlob, AssetHandle

EventHandler = Callable[[Any], None]
Unsubscribe = Callable[[], None]

# The "reload catalog" collaborator. Idempotent, no parameters, NOT cheap.
CatalogRefresher = Callable[[], Awaitable[None]]


class ICommandService(ABC):
    """Interface for the backend command service.

    Commands are request/response: invoke() suspends until the backend answers.
    A command that fails as a whole raises CommandError; per-item failures are
    reported through the data (e.g. pending change status), not exceptions.
    """

    @abstractmethod
    async def invoke(self, command: str, args: Mapping[str, Any] | None = None) -> Any:
        """Run a backend command and return its decoded result.

        Args:
            command: Command name, e.g. "apply-file-changes"
            args: JSON-serialisable arguments

        Returns:
            Decoded command result (None for commands without a result)

        Raises:
            CommandError: Transport failure or command rejected
        """
        ...


class IEventBus(ABC):
    """Interface for the backend event bus (publish/subscribe).

    Subscribing never suspends - handlers fire on event arrival, on the event loop.
    """

    @abstractmethod
    def subscribe(self, event_name: str, handler: EventHandler) -> Unsubscribe:
        """Register a handler for one event name.

        Returns:
            Callable that removes the subscription (safe to call more than once)
        """
        ...


class IAssetHandleFactory(ABC):
    """Wraps resolved asset bytes into locally revocable handles."""

    @abstractmethod
    def acquire(self, key: str, blob: AssetBlob) -> AssetHandle:
        """Create a handle owning `blob`. The caller must release() it exactly once."""
        ...


__all__ = [
    "CatalogRefresher",
    "EventHandler",
    "IAssetHandleFactory",
    "ICommandService",
    "IEventBus",
    "Unsubscribe",
]
