"""Cluster client backed by an in-memory object map.

The in-memory cluster behaves like a small API server: applied objects get
server populated metadata and a status, so that the fields an API server
defaults are present in observed state but absent from desired state. Failures
and conflicts can be injected to exercise error handling.
"""

import asyncio
import copy
import logging
from collections import defaultdict
from typing import Any

from fleet_sync.exceptions import ApplyConflict, SyncError
from fleet_sync.manifest import NamedResource, Resource

from .client import ClusterClient

__all__ = ["InMemoryClusterClient"]

_LOGGER = logging.getLogger(__name__)


class InMemoryClusterClient(ClusterClient):
    """In-memory implementation of the ClusterClient interface."""

    def __init__(self, name: str = "in-memory") -> None:
        self.name = name
        self._objects: dict[NamedResource, dict[str, Any]] = {}
        self._version = 0
        self.error: SyncError | None = None
        """When set, every call raises this error."""

        self.conflicts: defaultdict[NamedResource, int] = defaultdict(int)
        """Number of upcoming applies of a resource that fail with a conflict."""

        self.applied: list[NamedResource] = []
        self.pruned: list[NamedResource] = []

    async def _call(self) -> None:
        # Yield to the loop like a network round trip would
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error

    def add(self, doc: dict[str, Any]) -> Resource:
        """Create an object directly, as an out-of-band change would."""
        resource = Resource.parse_doc(copy.deepcopy(doc))
        self._store(resource.resource_id, resource.doc)
        return resource

    def get(self, resource_id: NamedResource) -> dict[str, Any] | None:
        """Return a copy of the live object document."""
        if (doc := self._objects.get(resource_id)) is None:
            return None
        return copy.deepcopy(doc)

    def objects(self) -> list[NamedResource]:
        return sorted(self._objects)

    def _store(self, resource_id: NamedResource, doc: dict[str, Any]) -> None:
        self._version += 1
        existing = self._objects.get(resource_id)
        metadata = doc.setdefault("metadata", {})
        metadata["uid"] = (
            existing["metadata"]["uid"] if existing else f"uid-{self._version}"
        )
        metadata["resourceVersion"] = str(self._version)
        metadata.setdefault("annotations", {})
        generation = existing["metadata"].get("generation", 0) if existing else 0
        metadata["generation"] = generation + 1
        doc["status"] = {"observedGeneration": metadata["generation"]}
        self._objects[resource_id] = doc

    async def probe(self) -> None:
        await self._call()

    async def get_observed_state(
        self,
        namespace: str | None,
        kind: str,
        selector: dict[str, str] | None = None,
    ) -> list[Resource]:
        await self._call()
        results = []
        for resource_id in sorted(self._objects):
            if resource_id.kind != kind or resource_id.namespace != namespace:
                continue
            resource = Resource.parse_doc(copy.deepcopy(self._objects[resource_id]))
            if selector and any(
                resource.labels.get(key) != value for key, value in selector.items()
            ):
                continue
            results.append(resource)
        return results

    async def apply(self, resource: Resource) -> None:
        await self._call()
        resource_id = resource.resource_id
        if self.conflicts[resource_id] > 0:
            self.conflicts[resource_id] -= 1
            raise ApplyConflict(
                f"Operation cannot be fulfilled on {resource_id}: "
                "the object has been modified"
            )
        _LOGGER.debug("Applying %s to %s", resource_id, self.name)
        self._store(resource_id, copy.deepcopy(resource.doc))
        self.applied.append(resource_id)

    async def prune(self, resource: Resource) -> None:
        await self._call()
        _LOGGER.debug("Pruning %s from %s", resource.resource_id, self.name)
        self._objects.pop(resource.resource_id, None)
        self.pruned.append(resource.resource_id)
