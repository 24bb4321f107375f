"""Sync state of an application."""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from mashumaro import DataClassDictMixin
from mashumaro.config import BaseConfig

from fleet_sync.manifest import NamedResource


class SyncStatus(StrEnum):
    """Lifecycle of an application's sync cycle."""

    IDLE = "Idle"
    SYNCING = "Syncing"
    SYNCED = "Synced"
    DEGRADED = "Degraded"


class ResourceResult(StrEnum):
    """Outcome of a single resource within a sync cycle."""

    APPLIED = "Applied"
    PRUNED = "Pruned"
    UNCHANGED = "Unchanged"
    FAILED = "Failed"
    SKIPPED = "Skipped"


@dataclass(frozen=True)
class ResourceRef(DataClassDictMixin):
    """Serializable identity of a resource."""

    kind: str
    namespace: str | None
    name: str

    @classmethod
    def from_id(cls, resource_id: NamedResource) -> "ResourceRef":
        return cls(
            kind=resource_id.kind,
            namespace=resource_id.namespace,
            name=resource_id.name,
        )

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(self.kind, self.namespace, self.name)

    def __str__(self) -> str:
        return str(self.resource_id)

    class Config(BaseConfig):
        omit_none = True


@dataclass(frozen=True)
class ResourceStatus(ResourceRef):
    """Action taken for a resource and its outcome."""

    action: str = ""
    result: ResourceResult = ResourceResult.UNCHANGED
    reason: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class SyncState(DataClassDictMixin):
    """Record of the last sync cycle of an application."""

    application: str
    """Name of the application."""

    status: SyncStatus = SyncStatus.IDLE

    revision: str | None = None
    """The source commit of the last cycle that resolved one."""

    reason: str | None = None
    """Short label for why the application is degraded."""

    message: str | None = None

    resources: tuple[ResourceStatus, ...] = ()
    """Per resource outcome, in the order the actions were applied."""

    orphans: tuple[ResourceRef, ...] = ()
    """Live resources owned by the application that are no longer declared."""

    last_synced: datetime | None = None

    @property
    def failed(self) -> list[ResourceStatus]:
        return [r for r in self.resources if r.result == ResourceResult.FAILED]

    def __str__(self) -> str:
        """Return a string representation of the status."""
        if self.reason:
            return f"{self.status}: {self.reason}"
        return str(self.status)

    class Config(BaseConfig):
        omit_none = True
