"""Representation of applications, clusters and the resources they manage.

The objects in this module are declared in a fleet configuration file (see
`fleet_sync.config`) or read from a source repository at a specific revision
(see `fleet_sync.source`). A `ManifestSet` is the immutable set of resources
resolved from one revision of an application's source.
"""

import copy
import hashlib
from dataclasses import dataclass, field
from enum import StrEnum
import logging
from typing import Any, ClassVar

import yaml
from mashumaro import DataClassDictMixin
from mashumaro.codecs.yaml import yaml_encode
from mashumaro.config import BaseConfig

from .exceptions import InputException

__all__ = [
    "NamedResource",
    "Resource",
    "ManifestSet",
    "SourceRef",
    "Destination",
    "SyncPolicy",
    "Application",
    "ClusterHealth",
    "ClusterTarget",
    "parse_raw_obj",
]

_LOGGER = logging.getLogger(__name__)


# Match a prefix of apiVersion to ensure we have the right type of object.
# We don't check specific versions for forward compatibility on upgrade.
FLEET_DOMAIN = "fleet-sync.io"
KUSTOMIZE_DOMAIN = "kustomize.config.k8s.io"
APPLICATION_KIND = "Application"
CLUSTER_KIND = "Cluster"
LIST_KIND = "List"
DEFAULT_REVISION = "HEAD"
DRIVER_KUBECTL = "kubectl"
DRIVER_MEMORY = "memory"
DRIVERS = (DRIVER_KUBECTL, DRIVER_MEMORY)

# Kinds that are never namespaced, so the destination namespace of an
# application is not applied to them.
CLUSTER_SCOPED_KINDS = frozenset(
    {
        "Namespace",
        "Node",
        "PersistentVolume",
        "StorageClass",
        "ClusterRole",
        "ClusterRoleBinding",
        "CustomResourceDefinition",
        "PriorityClass",
        "IngressClass",
        "APIService",
        "MutatingWebhookConfiguration",
        "ValidatingWebhookConfiguration",
    }
)


def _check_version(doc: dict[str, Any], version: str) -> None:
    """Assert that the resource has the specified version."""
    if not (api_version := doc.get("apiVersion")):
        raise InputException(f"Invalid object missing apiVersion: {doc}")
    if not api_version.startswith(version):
        raise InputException(f"Invalid object expected '{version}': {doc}")


def _metadata_name(cls: type, doc: dict[str, Any]) -> tuple[dict[str, Any], str]:
    if not isinstance(metadata := doc.get("metadata"), dict):
        raise InputException(f"Invalid {cls.__name__} missing metadata: {doc}")
    if not (name := metadata.get("name")):
        raise InputException(f"Invalid {cls.__name__} missing metadata.name: {doc}")
    return metadata, name


class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    def yaml(self) -> str:
        """Return a YAML string representation of the object."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]

    class Config(BaseConfig):
        omit_none = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


@dataclass(frozen=True)
class Resource(BaseManifest):
    """A single kubernetes object document."""

    kind: str
    """The kind of the object."""

    api_version: str
    """The apiVersion of the object."""

    name: str
    """The name of the object."""

    namespace: str | None
    """The namespace of the object, unset for cluster scoped or defaulted objects."""

    doc: dict[str, Any]
    """The full object document as declared or as observed."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Resource":
        """Parse a Resource from a raw kubernetes object."""
        if not isinstance(doc, dict):
            raise InputException(f"Invalid object is not a mapping: {doc}")
        if not (api_version := doc.get("apiVersion")):
            raise InputException(f"Invalid object missing apiVersion: {doc}")
        if not (kind := doc.get("kind")):
            raise InputException(f"Invalid object missing kind: {doc}")
        metadata, name = _metadata_name(cls, doc)
        return cls(
            kind=kind,
            api_version=api_version,
            name=name,
            namespace=metadata.get("namespace"),
            doc=doc,
        )

    @property
    def resource_id(self) -> NamedResource:
        """Identity of the object within a cluster."""
        return NamedResource(self.kind, self.namespace, self.name)

    @property
    def labels(self) -> dict[str, str]:
        return self.doc.get("metadata", {}).get("labels") or {}

    @property
    def cluster_scoped(self) -> bool:
        return self.kind in CLUSTER_SCOPED_KINDS

    def derive(
        self, namespace: str | None = None, labels: dict[str, str] | None = None
    ) -> "Resource":
        """Return a copy of the resource placed in a namespace with extra labels.

        The original document is left untouched.
        """
        doc = copy.deepcopy(self.doc)
        metadata = doc.setdefault("metadata", {})
        if namespace and not self.cluster_scoped:
            metadata["namespace"] = namespace
        if labels:
            metadata["labels"] = {**(metadata.get("labels") or {}), **labels}
        return Resource.parse_doc(doc)

    def __str__(self) -> str:
        return str(self.resource_id)


@dataclass(frozen=True)
class SourceRef(BaseManifest):
    """Location of the desired state for an application."""

    repo_url: str
    """URL or local path of the git repository."""

    path: str = "."
    """Directory within the repository containing the manifests."""

    revision: str = DEFAULT_REVISION
    """Branch, tag, or commit to read the manifests from."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "SourceRef":
        """Parse a SourceRef from an Application spec.source."""
        if not (repo_url := doc.get("repoURL")):
            raise InputException(f"Invalid source missing repoURL: {doc}")
        return cls(
            repo_url=repo_url,
            path=doc.get("path") or ".",
            revision=str(doc.get("targetRevision") or DEFAULT_REVISION),
        )

    @property
    def label(self) -> str:
        return f"{self.repo_url}//{self.path}@{self.revision}"


@dataclass(frozen=True)
class ManifestSet(BaseManifest):
    """An immutable, revision bound collection of resources."""

    source: SourceRef
    """The source the manifests were read from."""

    revision: str
    """The commit the source revision resolved to."""

    resources: tuple[Resource, ...] = ()
    """Resources in the order they were declared."""

    def serialize(self) -> bytes:
        """Return the canonical serialization of the resources."""
        return yaml.dump_all(
            [resource.doc for resource in self.resources],
            sort_keys=True,
            explicit_start=True,
        ).encode("utf-8")

    @property
    def digest(self) -> str:
        """Content hash of the canonical serialization."""
        return hashlib.sha256(self.serialize()).hexdigest()

    @property
    def kinds(self) -> list[str]:
        return sorted({resource.kind for resource in self.resources})


@dataclass(frozen=True)
class Destination(BaseManifest):
    """Where an application's resources are applied."""

    cluster: str
    """Name of the registered ClusterTarget."""

    namespace: str
    """Namespace used for resources that do not declare one."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Destination":
        """Parse a Destination from an Application spec.destination."""
        if not (cluster := doc.get("cluster")):
            raise InputException(f"Invalid destination missing cluster: {doc}")
        if not (namespace := doc.get("namespace")):
            raise InputException(f"Invalid destination missing namespace: {doc}")
        return cls(cluster=cluster, namespace=namespace)


@dataclass(frozen=True)
class SyncPolicy(BaseManifest):
    """Controls when and how an application is reconciled."""

    automated: bool = False
    """Sync automatically when the source revision changes."""

    prune: bool = False
    """Delete live resources that are no longer declared."""

    self_heal: bool = False
    """Re-apply desired state on every tick, including after failures."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "SyncPolicy":
        """Parse a SyncPolicy from an Application spec.syncPolicy."""
        return cls(
            automated=bool(doc.get("automated", False)),
            prune=bool(doc.get("prune", False)),
            self_heal=bool(doc.get("selfHeal", False)),
        )


@dataclass(frozen=True)
class Application(BaseManifest):
    """An application maps a source of manifests to a cluster destination."""

    kind: ClassVar[str] = APPLICATION_KIND
    """The kind of the object."""

    name: str
    """The name of the application, unique within a registry."""

    source: SourceRef
    """Where the desired state is read from."""

    destination: Destination
    """Where the desired state is applied."""

    sync_policy: SyncPolicy = field(default_factory=SyncPolicy)
    """Sync policy for the application."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Application":
        """Parse an Application from a fleet configuration document."""
        _check_version(doc, FLEET_DOMAIN)
        _, name = _metadata_name(cls, doc)
        if not (spec := doc.get("spec")):
            raise InputException(f"Invalid {cls.__name__} missing spec: {doc}")
        if not (source := spec.get("source")):
            raise InputException(f"Invalid {cls.__name__} missing spec.source: {doc}")
        if not (destination := spec.get("destination")):
            raise InputException(
                f"Invalid {cls.__name__} missing spec.destination: {doc}"
            )
        return cls(
            name=name,
            source=SourceRef.parse_doc(source),
            destination=Destination.parse_doc(destination),
            sync_policy=SyncPolicy.parse_doc(spec.get("syncPolicy") or {}),
        )


class ClusterHealth(StrEnum):
    """Connectivity of a cluster as last observed."""

    UNKNOWN = "Unknown"
    REACHABLE = "Reachable"
    UNREACHABLE = "Unreachable"


@dataclass
class ClusterTarget(BaseManifest):
    """A cluster that applications can be deployed to."""

    kind: ClassVar[str] = CLUSTER_KIND
    """The kind of the object."""

    name: str
    """The name of the cluster."""

    server: str | None = None
    """The API server endpoint."""

    context: str | None = None
    """The kubeconfig context holding the credentials for the cluster."""

    kubeconfig: str | None = None
    """Path to the kubeconfig file, or the default kubeconfig when unset."""

    driver: str = DRIVER_KUBECTL
    """The client implementation used to talk to the cluster."""

    health: ClusterHealth = ClusterHealth.UNKNOWN
    """Connectivity as of the last call made to the cluster."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ClusterTarget":
        """Parse a ClusterTarget from a fleet configuration document."""
        _check_version(doc, FLEET_DOMAIN)
        _, name = _metadata_name(cls, doc)
        spec = doc.get("spec") or {}
        driver = spec.get("driver", DRIVER_KUBECTL)
        if driver not in DRIVERS:
            raise InputException(
                f"Invalid {cls.__name__} {name} unknown driver '{driver}': {doc}"
            )
        return cls(
            name=name,
            server=spec.get("server"),
            context=spec.get("context"),
            kubeconfig=spec.get("kubeconfig"),
            driver=driver,
        )


def parse_raw_obj(obj: dict[str, Any]) -> Application | ClusterTarget:
    """Parse a fleet configuration document into an Application or ClusterTarget."""
    if not isinstance(obj, dict):
        raise InputException(f"Invalid object is not a mapping: {obj}")
    if not (kind := obj.get("kind")):
        raise InputException(f"Invalid object missing kind: {obj}")
    if kind == APPLICATION_KIND:
        return Application.parse_doc(obj)
    if kind == CLUSTER_KIND:
        return ClusterTarget.parse_doc(obj)
    raise InputException(f"Unsupported object kind '{kind}': {obj}")
