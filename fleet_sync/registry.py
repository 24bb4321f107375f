"""Registry of the applications managed by fleet-sync.

The registry is the sole owner of Application objects. It is constructed at
process start, injected into the reconciler and closed on shutdown. Registering
an application also creates its sync state and its sync lock; deregistering it
removes both.
"""

from __future__ import annotations

import asyncio
import logging

from .cluster import ClusterClientPool
from .exceptions import DuplicateName, InputException, ObjectNotFoundError
from .manifest import Application
from .store import Store

__all__ = ["ApplicationRegistry"]

_LOGGER = logging.getLogger(__name__)


class ApplicationRegistry:
    """In-memory record of applications and their destinations."""

    def __init__(self, store: Store, clusters: ClusterClientPool | None = None) -> None:
        """Initialize the registry.

        Args:
            store: Store that holds the sync state of each application
            clusters: When set, destinations are validated against the
                registered clusters and referenced clusters cannot be removed.
        """
        self._store = store
        self._clusters = clusters
        self._apps: dict[str, Application] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._remove_check = (
            clusters.add_reference_check(self.applications_for_cluster)
            if clusters
            else None
        )

    def _check_destination(self, app: Application) -> None:
        if self._clusters is None:
            return
        if app.destination.cluster not in self._clusters:
            raise InputException(
                f"Application {app.name} references unknown cluster "
                f"'{app.destination.cluster}'"
            )

    def register(self, app: Application) -> None:
        """Register a new application.

        Raises:
            DuplicateName: If an application with the same name exists.
            InputException: If the destination cluster is not registered.
        """
        if app.name in self._apps:
            raise DuplicateName(Application.kind, app.name)
        self._check_destination(app)
        self._apps[app.name] = app
        self._locks[app.name] = asyncio.Lock()
        self._store.add_state(app.name)
        _LOGGER.info(
            "Registered application %s -> %s/%s",
            app.name,
            app.destination.cluster,
            app.destination.namespace,
        )

    def update(self, app: Application) -> None:
        """Replace an existing application, e.g. on a sync policy change."""
        if app.name not in self._apps:
            raise ObjectNotFoundError(f"Application {app.name} is not registered")
        self._check_destination(app)
        self._apps[app.name] = app
        _LOGGER.info("Updated application %s", app.name)

    def deregister(self, name: str) -> None:
        """Remove an application along with its sync state.

        Removing an application that is not registered is a no-op.
        """
        if self._apps.pop(name, None) is None:
            _LOGGER.debug("Application %s not registered, nothing to remove", name)
            return
        self._locks.pop(name, None)
        self._store.remove_state(name)
        _LOGGER.info("Deregistered application %s", name)

    def get(self, name: str) -> Application:
        """Return the application with the specified name."""
        if (app := self._apps.get(name)) is None:
            raise ObjectNotFoundError(f"Application {name} is not registered")
        return app

    def list(self) -> list[Application]:
        """Return all applications ordered by name."""
        return [self._apps[name] for name in sorted(self._apps)]

    def lock(self, name: str) -> asyncio.Lock:
        """Return the lock that serializes sync cycles of an application."""
        if (lock := self._locks.get(name)) is None:
            raise ObjectNotFoundError(f"Application {name} is not registered")
        return lock

    def applications_for_cluster(self, cluster: str) -> list[str]:
        """Names of the applications deployed to a cluster."""
        return [
            app.name for app in self.list() if app.destination.cluster == cluster
        ]

    def __contains__(self, name: object) -> bool:
        return name in self._apps

    def __len__(self) -> int:
        return len(self._apps)

    def close(self) -> None:
        """Deregister every application."""
        for name in list(self._apps):
            self.deregister(name)
        if self._remove_check:
            self._remove_check()
            self._remove_check = None
