"""Reconciler for fleet-sync.

This module drives the sync cycle of every registered application:

1. Read the desired state from the application's source at its revision.
2. Read the live state owned by the application from its destination cluster.
3. Compute the ordered corrective actions with the diff engine.
4. Apply the actions one at a time, recording the outcome in the SyncState.

Sync cycles of distinct applications run independently, bounded by a shared
worker limit. Cycles of the same application are serialized by the
application's lock. A cycle can be cancelled between resources but never in the
middle of applying one.
"""

import asyncio
from collections.abc import Awaitable, Callable
import dataclasses
from datetime import datetime, timezone
import logging
from typing import Any, TypeVar, assert_never

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from fleet_sync.cluster import ClusterClientPool
from fleet_sync.config import ReconcilerConfig
from fleet_sync.context import trace_context
from fleet_sync.diff import (
    Action,
    DiffResult,
    ResourceAction,
    compute_diff,
    diff_resource,
)
from fleet_sync.exceptions import (
    ApplyConflict,
    AuthRejected,
    ObjectNotFoundError,
    SyncError,
    Unreachable,
)
from fleet_sync.manifest import Application, ManifestSet, Resource
from fleet_sync.registry import ApplicationRegistry
from fleet_sync.source import ManifestSourceReader
from fleet_sync.store import (
    ResourceRef,
    ResourceResult,
    ResourceStatus,
    Store,
    SyncState,
    SyncStatus,
)
from fleet_sync.task import TaskService, TaskServiceImpl

__all__ = ["Reconciler", "TRACKING_LABEL"]

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

TRACKING_LABEL = "fleet-sync.io/application"
CANCELLED = "Cancelled"

# Failures that make every remaining call against the cluster pointless
_CLUSTER_FAILURES = (Unreachable.reason, AuthRejected.reason)


def _is_retryable(err: BaseException) -> bool:
    return isinstance(err, SyncError) and err.retryable


def _resource_status(
    item: ResourceAction,
    result: ResourceResult,
    reason: str | None = None,
    message: str | None = None,
) -> ResourceStatus:
    resource_id = item.resource_id
    return ResourceStatus(
        kind=resource_id.kind,
        namespace=resource_id.namespace,
        name=resource_id.name,
        action=str(item.action),
        result=result,
        reason=reason,
        message=message,
    )


@dataclasses.dataclass
class _Cycle:
    """Progress of one sync cycle, kept to record a cycle that is interrupted."""

    previous: SyncState
    cancel_event: asyncio.Event = dataclasses.field(default_factory=asyncio.Event)
    revision: str | None = None
    actions: tuple[ResourceAction, ...] = ()
    statuses: list[ResourceStatus] = dataclasses.field(default_factory=list)

    def resources(self, reason: str) -> tuple[ResourceStatus, ...]:
        """Return the completed results with the remaining actions skipped."""
        if not self.actions:
            return self.previous.resources
        remaining = self.actions[len(self.statuses) :]
        return tuple(self.statuses) + tuple(
            _resource_status(item, ResourceResult.SKIPPED, reason=reason)
            for item in remaining
        )


class Reconciler:
    """Drives sync cycles for the applications in a registry.

    The reconciler is responsible for:
    - Running a sync cycle on request (`sync`) or in the background (`trigger`)
    - Periodically syncing applications according to their sync policy
    - Recording the outcome of every cycle in the store
    - Cancelling in-flight cycles on request or on shutdown
    """

    def __init__(
        self,
        registry: ApplicationRegistry,
        store: Store,
        reader: ManifestSourceReader,
        clusters: ClusterClientPool,
        config: ReconcilerConfig | None = None,
        task_service: TaskService | None = None,
    ) -> None:
        """Initialize the reconciler."""
        self._registry = registry
        self._store = store
        self._reader = reader
        self._clusters = clusters
        self._config = config or ReconcilerConfig()
        self._task_service = task_service or TaskServiceImpl()
        self._workers = asyncio.Semaphore(self._config.max_concurrency)
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._loop_task: asyncio.Task[None] | None = None

    def status(self, name: str) -> SyncState:
        """Return the sync state of an application."""
        if (state := self._store.get_state(name)) is None:
            raise ObjectNotFoundError(f"Application {name} is not registered")
        return state

    def trigger(
        self, name: str, only_new_revision: bool = False
    ) -> asyncio.Task[SyncState]:
        """Schedule a sync cycle for an application and return immediately.

        The outcome is observable through the application's SyncState, or by
        awaiting the returned task.
        """
        self._registry.get(name)
        _LOGGER.debug("Sync of %s requested", name)
        return self._task_service.create_task(
            self.sync(name, only_new_revision=only_new_revision), name=f"sync/{name}"
        )

    def cancel(self, name: str) -> bool:
        """Request cancellation of the in-flight sync cycle of an application.

        The cycle stops before the next resource is applied. Returns False when
        no cycle is in flight.
        """
        if (event := self._cancel_events.get(name)) is None:
            return False
        _LOGGER.info("Cancelling sync of %s", name)
        event.set()
        return True

    async def sync(self, name: str, only_new_revision: bool = False) -> SyncState:
        """Run one sync cycle for an application and return the resulting state.

        Args:
            name: The application to sync
            only_new_revision: Skip the cycle when the source revision has
                already been synced successfully.
        """
        lock = self._registry.lock(name)
        async with lock, self._workers:
            if name not in self._registry:
                raise ObjectNotFoundError(f"Application {name} was deregistered")
            app = self._registry.get(name)
            cycle = _Cycle(previous=self.status(name))
            self._cancel_events[name] = cycle.cancel_event
            try:
                with trace_context(f"Sync {name}", "sync"):
                    return await self._sync_locked(app, cycle, only_new_revision)
            except asyncio.CancelledError:
                self._interrupted(app, cycle, CANCELLED, "Sync task was cancelled")
                raise
            except Exception as err:
                _LOGGER.exception("Unexpected error syncing %s", name)
                self._interrupted(app, cycle, type(err).__name__, str(err))
                raise
            finally:
                self._cancel_events.pop(name, None)

    async def plan(self, name: str) -> tuple[ManifestSet, DiffResult]:
        """Compute the actions a sync of the application would take."""
        app = self._registry.get(name)
        previous = self.status(name)
        manifests = await self._fetch(app)
        desired = self._desired_resources(app, manifests)
        observed = await self._observe(app, desired, previous)
        return manifests, compute_diff(desired, observed, prune=app.sync_policy.prune)

    async def _sync_locked(
        self, app: Application, cycle: _Cycle, only_new_revision: bool
    ) -> SyncState:
        previous = cycle.previous
        revision = previous.revision
        syncing = dataclasses.replace(previous, status=SyncStatus.SYNCING)
        try:
            if not only_new_revision:
                self._store.update_state(syncing)
            manifests = await self._fetch(app)
            if only_new_revision:
                if (
                    previous.status == SyncStatus.SYNCED
                    and manifests.revision == previous.revision
                ):
                    _LOGGER.debug(
                        "%s already synced at %s", app.name, manifests.revision
                    )
                    return previous
                self._store.update_state(syncing)
            revision = cycle.revision = manifests.revision
            desired = self._desired_resources(app, manifests)
            if cycle.cancel_event.is_set():
                return self._cancelled(app, revision, previous)
            observed = await self._observe(app, desired, previous)
        except SyncError as err:
            return self._finish(
                app,
                SyncStatus.DEGRADED,
                revision=revision,
                reason=err.reason,
                message=str(err),
                resources=previous.resources,
            )
        if cycle.cancel_event.is_set():
            return self._cancelled(app, revision, previous)

        result = compute_diff(desired, observed, prune=app.sync_policy.prune)
        cycle.actions = result.actions
        _LOGGER.info(
            "Syncing %s at %s: %d create, %d update, %d delete, %d orphaned",
            app.name,
            revision[:12],
            result.count(Action.CREATE),
            result.count(Action.UPDATE),
            result.count(Action.DELETE),
            len(result.orphans),
        )
        statuses = await self._apply(app, cycle)
        orphans = tuple(
            ResourceRef.from_id(orphan.resource_id)
            for orphan in result.orphans
            if not app.sync_policy.prune
        )
        failed = [s for s in statuses if s.result == ResourceResult.FAILED]
        skipped = [s for s in statuses if s.result == ResourceResult.SKIPPED]
        if not failed and not skipped:
            return self._finish(
                app,
                SyncStatus.SYNCED,
                revision=revision,
                resources=tuple(statuses),
                orphans=orphans,
            )
        if failed:
            reason = failed[0].reason
            message = f"{len(failed)} of {len(statuses)} resources failed"
        else:
            reason = skipped[0].reason
            message = f"Sync stopped with {len(skipped)} resources remaining"
        return self._finish(
            app,
            SyncStatus.DEGRADED,
            revision=revision,
            reason=reason,
            message=message,
            resources=tuple(statuses),
            orphans=orphans,
        )

    def _cancelled(
        self, app: Application, revision: str | None, previous: SyncState
    ) -> SyncState:
        return self._finish(
            app,
            SyncStatus.DEGRADED,
            revision=revision,
            reason=CANCELLED,
            message="Sync was cancelled before applying resources",
            resources=previous.resources,
        )

    def _interrupted(
        self, app: Application, cycle: _Cycle, reason: str, message: str
    ) -> None:
        """Record a cycle that stopped without finishing, keeping its progress."""
        if self._store.get_state(app.name) is None:
            return
        self._finish(
            app,
            SyncStatus.DEGRADED,
            revision=cycle.revision or cycle.previous.revision,
            reason=reason,
            message=message,
            resources=cycle.resources(reason),
            orphans=cycle.previous.orphans,
        )

    def _finish(
        self,
        app: Application,
        status: SyncStatus,
        revision: str | None,
        reason: str | None = None,
        message: str | None = None,
        resources: tuple[ResourceStatus, ...] = (),
        orphans: tuple[ResourceRef, ...] = (),
    ) -> SyncState:
        state = SyncState(
            application=app.name,
            status=status,
            revision=revision,
            reason=reason,
            message=message,
            resources=resources,
            orphans=orphans,
            last_synced=datetime.now(timezone.utc),
        )
        self._store.update_state(state)
        if status == SyncStatus.SYNCED:
            _LOGGER.info("Application %s synced at %s", app.name, revision)
        return state

    async def _retry(self, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Call func, retrying transient sync errors with exponential backoff."""
        retry = self._config.retry
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(retry.attempts),
            wait=wait_exponential(
                multiplier=retry.multiplier,
                min=retry.backoff_min,
                max=retry.backoff_max,
            ),
            before_sleep=before_sleep_log(_LOGGER, logging.WARNING),
            reraise=True,
        )
        return await retrying(func, *args)

    async def _fetch(self, app: Application) -> ManifestSet:
        return await self._retry(self._reader.fetch, app.source)

    def _desired_resources(
        self, app: Application, manifests: ManifestSet
    ) -> list[Resource]:
        """Place resources in the destination namespace and stamp the tracking label."""
        return [
            resource.derive(
                namespace=resource.namespace or app.destination.namespace,
                labels={TRACKING_LABEL: app.name},
            )
            for resource in manifests.resources
        ]

    async def _observe(
        self, app: Application, desired: list[Resource], previous: SyncState
    ) -> list[Resource]:
        """Read the live resources owned by the application.

        Kinds from the previous cycle are included so that resources whose kind
        is no longer declared are still found as orphans.
        """
        queries = {(r.namespace, r.kind) for r in desired}
        queries.update((r.namespace, r.kind) for r in previous.resources)
        queries.update((r.namespace, r.kind) for r in previous.orphans)
        selector = {TRACKING_LABEL: app.name}
        observed: list[Resource] = []
        with trace_context(f"Observe {app.name}", "observe"):
            for namespace, kind in sorted(queries, key=lambda q: (q[0] or "", q[1])):
                observed.extend(
                    await self._retry(
                        self._clusters.get_observed_state,
                        app.destination.cluster,
                        namespace,
                        kind,
                        selector,
                    )
                )
        return observed

    async def _apply(self, app: Application, cycle: _Cycle) -> list[ResourceStatus]:
        """Apply actions in order, stopping early on cancellation or cluster failure."""
        statuses = cycle.statuses
        stop_reason: str | None = None
        with trace_context(f"Apply {app.name}", "apply"):
            for item in cycle.actions:
                if stop_reason is None and cycle.cancel_event.is_set():
                    stop_reason = CANCELLED
                if stop_reason is not None:
                    statuses.append(
                        _resource_status(
                            item, ResourceResult.SKIPPED, reason=stop_reason
                        )
                    )
                    continue
                step = asyncio.ensure_future(self._apply_one(app, item))
                try:
                    status = await asyncio.shield(step)
                except asyncio.CancelledError:
                    # Let the resource in progress finish before unwinding
                    statuses.append(await step)
                    raise
                statuses.append(status)
                if (
                    status.result == ResourceResult.FAILED
                    and status.reason in _CLUSTER_FAILURES
                ):
                    stop_reason = status.reason
        return statuses

    async def _apply_one(
        self, app: Application, item: ResourceAction
    ) -> ResourceStatus:
        cluster = app.destination.cluster
        try:
            match item.action:
                case Action.NOOP:
                    return _resource_status(item, ResourceResult.UNCHANGED)
                case Action.CREATE | Action.UPDATE:
                    await self._apply_resource(app, item)
                    return _resource_status(item, ResourceResult.APPLIED)
                case Action.DELETE:
                    await self._retry(self._clusters.prune, cluster, item.resource)
                    return _resource_status(item, ResourceResult.PRUNED)
                case _:
                    assert_never(item.action)
        except SyncError as err:
            _LOGGER.warning(
                "Failed to %s %s for %s: %s",
                str(item.action).lower(),
                item.resource_id,
                app.name,
                err,
            )
            return _resource_status(
                item, ResourceResult.FAILED, reason=err.reason, message=str(err)
            )

    async def _apply_resource(self, app: Application, item: ResourceAction) -> None:
        """Apply a resource, re-reading live state and retrying once on conflict."""
        cluster = app.destination.cluster
        try:
            await self._retry(self._clusters.apply, cluster, item.resource)
            return
        except ApplyConflict as err:
            _LOGGER.info(
                "Conflict applying %s, re-reading live state: %s",
                item.resource_id,
                err,
            )
        resource = item.resource
        observed = await self._retry(
            self._clusters.get_observed_state,
            cluster,
            resource.namespace,
            resource.kind,
            {TRACKING_LABEL: app.name},
        )
        live = next(
            (r for r in observed if r.resource_id == resource.resource_id), None
        )
        if diff_resource(resource, live).action == Action.NOOP:
            _LOGGER.debug("%s already matches desired state", resource.resource_id)
            return
        await self._retry(self._clusters.apply, cluster, resource)

    async def tick(self) -> list[SyncState]:
        """Sync every application whose policy calls for it and wait for the results.

        Degraded applications are only retried when self-heal is enabled.
        Applications with only automated sync enabled are synced when their
        source revision changes.
        """
        tasks: list[asyncio.Task[SyncState]] = []
        for app in self._registry.list():
            policy = app.sync_policy
            if not (policy.self_heal or policy.automated):
                continue
            state = self.status(app.name)
            if state.status == SyncStatus.SYNCING:
                continue
            if state.status == SyncStatus.DEGRADED and not policy.self_heal:
                _LOGGER.debug("Not retrying degraded %s without self-heal", app.name)
                continue
            tasks.append(self.trigger(app.name, only_new_revision=not policy.self_heal))
        results = await asyncio.gather(*tasks, return_exceptions=True)
        states = []
        for result in results:
            if isinstance(result, BaseException):
                _LOGGER.error("Sync task failed: %s", result)
                continue
            states.append(result)
        return states

    async def run(self, max_ticks: int | None = None) -> None:
        """Tick at the configured interval, forever or for max_ticks ticks."""
        ticks = 0
        while max_ticks is None or ticks < max_ticks:
            with trace_context("Tick", "tick"):
                await self.tick()
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            await asyncio.sleep(self._config.interval)

    async def start(self) -> None:
        """Start the reconciliation loop in the background."""
        if self._loop_task is not None:
            return
        _LOGGER.info("Starting reconciler (interval %ss)", self._config.interval)
        self._loop_task = self._task_service.create_background_task(
            self.run(), name="reconciler"
        )

    async def stop(self) -> None:
        """Stop the loop and cancel every in-flight sync cycle."""
        _LOGGER.info("Stopping reconciler")
        self._loop_task = None
        await self._task_service.cancel_all()
