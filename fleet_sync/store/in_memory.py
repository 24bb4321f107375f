"""Module for in memory sync state store."""

import asyncio
from collections import defaultdict
from collections.abc import Callable, Iterable
import logging
from typing import Any, DefaultDict

from fleet_sync.exceptions import ObjectNotFoundError

from .status import SyncState, SyncStatus
from .store import Store, StoreEvent


_LOGGER = logging.getLogger(__name__)


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Stores SyncState objects keyed by application name and supports event
    listeners for added, updated and removed states.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryStore."""
        self._states: dict[str, SyncState] = {}
        self._listeners: DefaultDict[StoreEvent, list[Callable[..., None]]] = (
            defaultdict(list)
        )

    def add_state(self, name: str) -> SyncState:
        """Create the initial Idle state for a newly registered application."""
        if name in self._states:
            raise ValueError(f"Sync state for {name} already exists")
        state = SyncState(application=name)
        self._states[name] = state
        self._fire_event(StoreEvent.STATE_ADDED, state)
        return state

    def get_state(self, name: str) -> SyncState | None:
        """Retrieve the sync state for an application."""
        return self._states.get(name)

    def update_state(self, state: SyncState) -> None:
        """Replace the sync state of an application."""
        if state.application not in self._states:
            _LOGGER.debug(
                "Dropping state update for removed application %s", state.application
            )
            return
        if state.status == SyncStatus.DEGRADED:
            _LOGGER.error(
                "Application %s status %s: %s",
                state.application,
                state,
                state.message,
            )
        else:
            _LOGGER.debug("Updating state for %s to %s", state.application, state)
        self._states[state.application] = state
        self._fire_event(StoreEvent.STATE_UPDATED, state)

    def remove_state(self, name: str) -> None:
        """Remove the sync state for an application, if present."""
        if (state := self._states.pop(name, None)) is None:
            return
        self._fire_event(StoreEvent.STATE_REMOVED, state)

    def list_states(self) -> list[SyncState]:
        """List all sync states ordered by application name."""
        return [self._states[name] for name in sorted(self._states)]

    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[SyncState], None],
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a specific event."""

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)

        if flush and event != StoreEvent.STATE_REMOVED:
            _LOGGER.debug("Flushing states for event type %s", event)
            for state in self.list_states():
                callback(state)

        return remove

    def _fire_event(self, event: StoreEvent, *args: Any) -> None:
        for cb in list(self._listeners[event]):  # Iterate over a copy for safe removal
            try:
                cb(*args)
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)

    async def watch_status(
        self, name: str, statuses: Iterable[SyncStatus]
    ) -> SyncState:
        """Wait for the application to reach one of the specified statuses."""
        wanted = set(statuses)
        if (current := self._states.get(name)) is None:
            raise ObjectNotFoundError(f"Application {name} has no sync state")
        if current.status in wanted:
            return current

        future: asyncio.Future[SyncState] = asyncio.get_running_loop().create_future()

        def on_updated(state: SyncState) -> None:
            if state.application == name and state.status in wanted:
                if not future.done():
                    future.set_result(state)

        def on_removed(state: SyncState) -> None:
            if state.application == name and not future.done():
                future.set_exception(
                    ObjectNotFoundError(f"Application {name} was removed")
                )

        remove_updated = self.add_listener(StoreEvent.STATE_UPDATED, on_updated)
        remove_removed = self.add_listener(StoreEvent.STATE_REMOVED, on_removed)
        try:
            return await future
        except asyncio.CancelledError:
            _LOGGER.debug("watch_status for %s cancelled.", name)
            raise
        finally:
            remove_updated()
            remove_removed()

    def close(self) -> None:
        """Drop all states and listeners."""
        self._states.clear()
        self._listeners.clear()
