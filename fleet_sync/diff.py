"""Module for computing drift between desired and observed resources.

Comparison is structural and only covers the fields declared in the desired
state, so fields that the API server defaults or populates never show up as
drift.
"""

from collections.abc import Generator, Iterable
import copy
from dataclasses import dataclass
import difflib
from enum import StrEnum
import logging
from typing import Any

import yaml

from .manifest import NamedResource, Resource

__all__ = [
    "Action",
    "ResourceAction",
    "DiffResult",
    "compute_diff",
    "diff_resource",
    "render_diff",
]

_LOGGER = logging.getLogger(__name__)

_TRUNCATE = "[Diff truncated by fleet-sync]"

# Fields that are owned by the cluster even when declared
IGNORED_FIELDS = ("status",)

# Strip any annotations from kustomize that contribute to diff noise when
# objects are re-ordered in the output
STRIP_ATTRIBUTES = [
    "config.kubernetes.io/index",
    "internal.config.kubernetes.io/index",
]


class Action(StrEnum):
    """Corrective action for a single resource."""

    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    NOOP = "NoOp"


@dataclass(frozen=True)
class ResourceAction:
    """The action needed to bring one resource to its desired state."""

    resource: Resource
    """The desired resource, or the live resource for a Delete."""

    action: Action

    observed: Resource | None = None
    """The live resource, when there is one."""

    changes: tuple[str, ...] = ()
    """Dotted paths of the declared fields that differ."""

    @property
    def resource_id(self) -> NamedResource:
        return self.resource.resource_id


@dataclass(frozen=True)
class DiffResult:
    """Ordered actions plus the live resources that are no longer declared."""

    actions: tuple[ResourceAction, ...]

    orphans: tuple[Resource, ...] = ()
    """Reported whether or not pruning is enabled."""

    @property
    def in_sync(self) -> bool:
        return all(item.action == Action.NOOP for item in self.actions)

    def count(self, action: Action) -> int:
        return sum(1 for item in self.actions if item.action == action)


def _declared(doc: dict[str, Any]) -> dict[str, Any]:
    """Return the desired document without fields that are never compared."""
    doc = {k: v for k, v in doc.items() if k not in IGNORED_FIELDS}
    annotations = (doc.get("metadata") or {}).get("annotations")
    if annotations and any(attr in annotations for attr in STRIP_ATTRIBUTES):
        doc = copy.deepcopy(doc)
        for attr in STRIP_ATTRIBUTES:
            doc["metadata"]["annotations"].pop(attr, None)
    return doc


def _changed_fields(desired: Any, observed: Any, path: str) -> list[str]:
    if isinstance(desired, dict):
        if not isinstance(observed, dict):
            return [path or "."]
        changes = []
        for key, value in desired.items():
            child = f"{path}.{key}" if path else str(key)
            if key not in observed:
                changes.append(child)
                continue
            changes.extend(_changed_fields(value, observed[key], child))
        return changes
    if isinstance(desired, list):
        if not isinstance(observed, list) or len(desired) != len(observed):
            return [path]
        changes = []
        for i, (d, o) in enumerate(zip(desired, observed)):
            changes.extend(_changed_fields(d, o, f"{path}[{i}]"))
        return changes
    return [] if desired == observed else [path]


def _project(observed: Any, desired: Any) -> Any:
    """Restrict observed state to the shape of the declared fields."""
    if isinstance(desired, dict) and isinstance(observed, dict):
        return {
            key: _project(observed[key], value)
            for key, value in desired.items()
            if key in observed
        }
    if (
        isinstance(desired, list)
        and isinstance(observed, list)
        and len(desired) == len(observed)
    ):
        return [_project(o, d) for o, d in zip(observed, desired)]
    return observed


def diff_resource(desired: Resource, observed: Resource | None) -> ResourceAction:
    """Compute the action for a single desired resource."""
    if observed is None:
        return ResourceAction(resource=desired, action=Action.CREATE)
    changes = _changed_fields(_declared(desired.doc), observed.doc, "")
    if changes:
        _LOGGER.debug("Drift detected for %s: %s", desired.resource_id, changes)
        return ResourceAction(
            resource=desired,
            action=Action.UPDATE,
            observed=observed,
            changes=tuple(changes),
        )
    return ResourceAction(resource=desired, action=Action.NOOP, observed=observed)


def compute_diff(
    desired: Iterable[Resource], observed: Iterable[Resource], prune: bool
) -> DiffResult:
    """Compute the ordered actions that converge observed state to desired state.

    Actions for desired resources come first in declaration order, followed by
    Delete actions for orphaned live resources when pruning is enabled.
    """
    live = {resource.resource_id: resource for resource in observed}
    actions: list[ResourceAction] = []
    declared: set[NamedResource] = set()
    for resource in desired:
        if resource.resource_id in declared:
            _LOGGER.warning("Ignoring duplicate resource %s", resource.resource_id)
            continue
        declared.add(resource.resource_id)
        actions.append(diff_resource(resource, live.get(resource.resource_id)))

    orphans = tuple(
        live[resource_id] for resource_id in sorted(live) if resource_id not in declared
    )
    if prune:
        actions.extend(
            ResourceAction(resource=orphan, action=Action.DELETE, observed=orphan)
            for orphan in orphans
        )
    elif orphans:
        _LOGGER.info(
            "Pruning disabled, leaving %d orphaned resources: %s",
            len(orphans),
            [str(orphan) for orphan in orphans],
        )
    return DiffResult(actions=tuple(actions), orphans=orphans)


def _yaml_lines(doc: Any) -> list[str]:
    if doc is None:
        return []
    return yaml.dump(doc, sort_keys=False).splitlines(keepends=True)


def render_diff(
    item: ResourceAction, n: int = 3, limit_bytes: int = 0
) -> Generator[str, None, None]:
    """Generate a unified diff of live state against desired state."""
    if item.action == Action.NOOP:
        return
    if item.action == Action.DELETE:
        before = _yaml_lines(item.resource.doc)
        after: list[str] = []
    else:
        declared = _declared(item.resource.doc)
        before = _yaml_lines(
            _project(item.observed.doc, declared) if item.observed else None
        )
        after = _yaml_lines(declared)
    label = str(item.resource_id)
    diff_text = difflib.unified_diff(
        a=before,
        b=after,
        fromfile=f"{label} (live)",
        tofile=f"{label} (desired)",
        n=n,
    )
    size = 0
    for line in diff_text:
        size += len(line)
        if limit_bytes and size > limit_bytes:
            yield _TRUNCATE
            break
        yield line
