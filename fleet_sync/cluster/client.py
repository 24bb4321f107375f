"""Interface to the API of a single cluster."""

from abc import ABC, abstractmethod

from fleet_sync.manifest import Resource

__all__ = ["ClusterClient"]


class ClusterClient(ABC):
    """A declarative apply/read/delete client for one cluster.

    Implementations raise `Unreachable` when the API server cannot be reached,
    `AuthRejected` when the credentials are refused, `ApplyConflict` when the
    live object changed underneath an apply, and `ResourceError` when the
    server rejects a specific object.
    """

    @abstractmethod
    async def probe(self) -> None:
        """Check that the API server is reachable and accepts the credentials."""

    @abstractmethod
    async def get_observed_state(
        self,
        namespace: str | None,
        kind: str,
        selector: dict[str, str] | None = None,
    ) -> list[Resource]:
        """Return the live objects of a kind in a namespace.

        Args:
            namespace: Namespace to list, or None for cluster scoped kinds
            kind: The kind of object to list
            selector: Only return objects with all of these labels
        """

    @abstractmethod
    async def apply(self, resource: Resource) -> None:
        """Create or update the object declared by the resource."""

    @abstractmethod
    async def prune(self, resource: Resource) -> None:
        """Delete the object; deleting an object that is already gone succeeds."""

    async def close(self) -> None:
        """Release any connection held by the client."""
