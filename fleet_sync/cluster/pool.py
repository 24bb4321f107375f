"""Pool of cluster clients, one per registered cluster."""

from collections.abc import Awaitable, Callable
import logging
from typing import TypeVar

from fleet_sync.config import ClusterPoolConfig
from fleet_sync.exceptions import (
    AuthRejected,
    DuplicateName,
    FleetException,
    ObjectNotFoundError,
    Unreachable,
)
from fleet_sync.manifest import (
    DRIVER_MEMORY,
    ClusterHealth,
    ClusterTarget,
    Resource,
)

from .client import ClusterClient
from .in_memory import InMemoryClusterClient
from .kubectl import KubectlClusterClient

__all__ = ["ClusterClientPool", "create_client"]

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def create_client(target: ClusterTarget, config: ClusterPoolConfig) -> ClusterClient:
    """Create the client for a cluster based on its driver."""
    if target.driver == DRIVER_MEMORY:
        return InMemoryClusterClient(target.name)
    return KubectlClusterClient(target, kubectl=config.kubectl)


class ClusterClientPool:
    """Maintains one client per registered cluster.

    Clients are independent of each other: a slow or failing cluster does not
    hold up calls to any other cluster. Every call records the health of the
    cluster it was made against.
    """

    def __init__(self, config: ClusterPoolConfig | None = None) -> None:
        self._config = config or ClusterPoolConfig()
        self._targets: dict[str, ClusterTarget] = {}
        self._clients: dict[str, ClusterClient] = {}
        self._reference_checks: list[Callable[[str], list[str]]] = []

    def register(
        self, target: ClusterTarget, client: ClusterClient | None = None
    ) -> ClusterClient:
        """Register a cluster, creating a client from its driver if none is given."""
        if target.name in self._targets:
            raise DuplicateName(ClusterTarget.kind, target.name)
        self._targets[target.name] = target
        self._clients[target.name] = client or create_client(target, self._config)
        _LOGGER.info("Registered cluster %s (%s)", target.name, target.driver)
        return self._clients[target.name]

    async def deregister(self, name: str) -> None:
        """Remove a cluster that no application references; absent names are ignored."""
        if name not in self._targets:
            return
        for check in self._reference_checks:
            if apps := check(name):
                raise FleetException(
                    f"Cluster {name} is still referenced by applications: {apps}"
                )
        del self._targets[name]
        client = self._clients.pop(name)
        await client.close()
        _LOGGER.info("Deregistered cluster %s", name)

    def add_reference_check(
        self, check: Callable[[str], list[str]]
    ) -> Callable[[], None]:
        """Register a callback listing the users of a cluster, consulted on removal.

        Returns a callable that removes the check.
        """

        def remove() -> None:
            if check in self._reference_checks:
                self._reference_checks.remove(check)

        self._reference_checks.append(check)
        return remove

    def target(self, name: str) -> ClusterTarget:
        if (target := self._targets.get(name)) is None:
            raise ObjectNotFoundError(f"Cluster {name} is not registered")
        return target

    def targets(self) -> list[ClusterTarget]:
        """Return all clusters ordered by name."""
        return [self._targets[name] for name in sorted(self._targets)]

    def client(self, name: str) -> ClusterClient:
        self.target(name)
        return self._clients[name]

    def __contains__(self, name: object) -> bool:
        return name in self._targets

    async def _call(
        self, cluster: str, call: Callable[[ClusterClient], Awaitable[T]]
    ) -> T:
        target = self.target(cluster)
        try:
            result = await call(self._clients[cluster])
        except Unreachable:
            self._set_health(target, ClusterHealth.UNREACHABLE)
            raise
        except AuthRejected:
            _LOGGER.error("Cluster %s rejected the configured credentials", cluster)
            self._set_health(target, ClusterHealth.REACHABLE)
            raise
        self._set_health(target, ClusterHealth.REACHABLE)
        return result

    def _set_health(self, target: ClusterTarget, health: ClusterHealth) -> None:
        if target.health != health:
            _LOGGER.info("Cluster %s is now %s", target.name, health)
        target.health = health

    async def probe(self, cluster: str) -> ClusterHealth:
        """Check connectivity to a cluster and return its health.

        Raises:
            AuthRejected: If the cluster refuses the credentials.
        """
        try:
            await self._call(cluster, lambda client: client.probe())
        except Unreachable as err:
            _LOGGER.warning("Cluster %s is unreachable: %s", cluster, err)
        return self.target(cluster).health

    async def get_observed_state(
        self,
        cluster: str,
        namespace: str | None,
        kind: str,
        selector: dict[str, str] | None = None,
    ) -> list[Resource]:
        """Return the live objects of a kind in a namespace of a cluster."""
        return await self._call(
            cluster,
            lambda client: client.get_observed_state(namespace, kind, selector),
        )

    async def apply(self, cluster: str, resource: Resource) -> None:
        """Create or update a resource on a cluster."""
        await self._call(cluster, lambda client: client.apply(resource))

    async def prune(self, cluster: str, resource: Resource) -> None:
        """Delete a resource from a cluster."""
        await self._call(cluster, lambda client: client.prune(resource))

    async def close(self) -> None:
        """Close every client."""
        for name, client in list(self._clients.items()):
            _LOGGER.debug("Closing client for cluster %s", name)
            await client.close()
        self._clients.clear()
        self._targets.clear()
