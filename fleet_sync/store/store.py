"""Store module for holding the sync state of applications."""

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from enum import Enum

from .status import SyncState, SyncStatus


class StoreEvent(str, Enum):
    """Enum for store events."""

    STATE_ADDED = "state_added"
    STATE_UPDATED = "state_updated"
    STATE_REMOVED = "state_removed"


class Store(ABC):
    """Abstract base class for the sync state store with listener support.

    There is exactly one SyncState per registered application. The registry
    adds and removes entries; only the reconciler updates them.
    """

    @abstractmethod
    def add_state(self, name: str) -> SyncState:
        """Create the initial Idle state for a newly registered application."""

    @abstractmethod
    def get_state(self, name: str) -> SyncState | None:
        """Retrieve the sync state for an application."""

    @abstractmethod
    def update_state(self, state: SyncState) -> None:
        """Replace the sync state of an application.

        Updates for applications that are not in the store are dropped so that
        a sync finishing after deregistration does not resurrect its state.
        """

    @abstractmethod
    def remove_state(self, name: str) -> None:
        """Remove the sync state for an application, if present."""

    @abstractmethod
    def list_states(self) -> list[SyncState]:
        """List all sync states ordered by application name."""

    @abstractmethod
    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[SyncState], None],
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a specific event.

        Returns a callable that can be called to remove the listener.
        """

    @abstractmethod
    async def watch_status(
        self, name: str, statuses: Iterable[SyncStatus]
    ) -> SyncState:
        """
        Wait for the application to reach one of the specified statuses.

        If the application is already in one of the statuses, returns its
        SyncState immediately.

        Raises:
            ObjectNotFoundError: If the application is not in the store or is
                removed while waiting.
            asyncio.CancelledError: If the watch is cancelled.
        """

    def close(self) -> None:
        """Release any resources held by the store."""
