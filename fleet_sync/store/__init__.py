"""
The store module holds the sync state of every registered application.

- Uses the application name as the key for all states.
- Stores values as frozen SyncState dataclasses; a new cycle replaces the state.
- Provides query, update and watch APIs for the reconciler and status queries.

This abstract interface allows for in-memory or persistent implementations.
"""

from .store import Store, StoreEvent
from .in_memory import InMemoryStore
from .status import (
    SyncStatus,
    SyncState,
    ResourceResult,
    ResourceRef,
    ResourceStatus,
)

__all__ = [
    "Store",
    "StoreEvent",
    "InMemoryStore",
    "SyncStatus",
    "SyncState",
    "ResourceResult",
    "ResourceRef",
    "ResourceStatus",
]
