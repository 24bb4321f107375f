"""Cluster client that drives kubectl."""

import logging
import re

import yaml

from fleet_sync.command import Command, CommandRunner
from fleet_sync.exceptions import (
    ApplyConflict,
    AuthRejected,
    CommandException,
    ResourceError,
    SyncError,
    Unreachable,
)
from fleet_sync.manifest import ClusterTarget, Resource

from .client import ClusterClient

__all__ = ["KubectlClusterClient", "classify_error"]

_LOGGER = logging.getLogger(__name__)

_UNREACHABLE = re.compile(
    r"unable to connect|connection refused|no such host|i/o timeout|timed out"
    r"|tls handshake timeout|connection reset|no route to host|network is unreachable"
    r"|server is currently unable to handle the request"
    r"|connection to the server .* was refused",
    re.IGNORECASE,
)
_AUTH_REJECTED = re.compile(
    r"unauthorized|must be logged in|provide credentials"
    r"|forbidden: user .* cannot|certificate signed by unknown authority|x509:",
    re.IGNORECASE,
)
_CONFLICT = re.compile(r"the object has been modified|\(Conflict\)")
_MISSING_KIND = re.compile(r"doesn't have a resource type")


def classify_error(err: CommandException) -> SyncError:
    """Map a failed kubectl invocation onto the sync error taxonomy.

    Only the output of the command is inspected, since the first line of the
    message echoes the command line including object names.
    """
    message = str(err)
    command_line, _, output = message.partition("\n")
    if not output:
        # No output at all, kubectl never ran or was killed after the timeout
        if command_line.endswith("timed out") or "could not be started" in message:
            return Unreachable(message)
        return ResourceError(message)
    if _AUTH_REJECTED.search(output):
        return AuthRejected(message)
    if _UNREACHABLE.search(output):
        return Unreachable(message)
    if _CONFLICT.search(output):
        return ApplyConflict(message)
    return ResourceError(message)


class KubectlClusterClient(ClusterClient):
    """Cluster client that shells out to kubectl for every call."""

    def __init__(
        self,
        target: ClusterTarget,
        kubectl: str = "kubectl",
        runner: CommandRunner | None = None,
    ) -> None:
        self._target = target
        self._kubectl = kubectl
        self._runner = runner or CommandRunner()

    def _base_args(self) -> list[str]:
        args = [self._kubectl]
        if self._target.kubeconfig:
            args.extend(["--kubeconfig", self._target.kubeconfig])
        if self._target.context:
            args.extend(["--context", self._target.context])
        if self._target.server:
            args.extend(["--server", self._target.server])
        return args

    def get_args(
        self, namespace: str | None, kind: str, selector: dict[str, str] | None
    ) -> list[str]:
        args = self._base_args() + ["get", kind, "-o", "yaml"]
        if namespace:
            args.extend(["-n", namespace])
        if selector:
            args.extend(
                ["-l", ",".join(f"{k}={v}" for k, v in sorted(selector.items()))]
            )
        return args

    def apply_args(self, resource: Resource) -> list[str]:
        return self._base_args() + ["apply", "-f", "-"]

    def prune_args(self, resource: Resource) -> list[str]:
        args = self._base_args() + [
            "delete",
            resource.kind,
            resource.name,
            "--ignore-not-found",
            "--wait=false",
        ]
        if resource.namespace:
            args.extend(["-n", resource.namespace])
        return args

    async def _run(self, args: list[str], stdin: bytes | None = None) -> str:
        try:
            return await self._runner.run(Command(args), stdin)
        except CommandException as err:
            raise classify_error(err) from err

    async def probe(self) -> None:
        """Check the readiness endpoint of the API server."""
        await self._run(self._base_args() + ["get", "--raw", "/readyz"])

    async def get_observed_state(
        self,
        namespace: str | None,
        kind: str,
        selector: dict[str, str] | None = None,
    ) -> list[Resource]:
        """Return the live objects of a kind in a namespace.

        A kind the API server does not serve yet, such as a custom resource
        whose definition is applied in the same cycle, has no live objects.
        """
        try:
            out = await self._run(self.get_args(namespace, kind, selector))
        except ResourceError as err:
            if not _MISSING_KIND.search(str(err)):
                raise
            _LOGGER.debug("Cluster does not serve kind %s yet", kind)
            return []
        doc = yaml.safe_load(out) or {}
        items = doc.get("items", []) if doc.get("kind") == "List" else [doc]
        return [Resource.parse_doc(item) for item in items if item]

    async def apply(self, resource: Resource) -> None:
        """Apply the resource document with kubectl apply."""
        content = yaml.dump(resource.doc, sort_keys=False).encode("utf-8")
        out = await self._run(self.apply_args(resource), content)
        _LOGGER.debug("kubectl apply %s: %s", resource, out.strip())

    async def prune(self, resource: Resource) -> None:
        """Delete the resource with kubectl delete."""
        out = await self._run(self.prune_args(resource))
        _LOGGER.debug("kubectl delete %s: %s", resource, out.strip())
