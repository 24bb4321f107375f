"""Tests for the reconciler."""

import asyncio
from collections import Counter
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from fleet_sync.cluster import InMemoryClusterClient, KubectlClusterClient
from fleet_sync.diff import Action
from fleet_sync.exceptions import (
    AuthRejected,
    ObjectNotFoundError,
    ResourceError,
    Unreachable,
)
from fleet_sync.manifest import (
    Application,
    ClusterHealth,
    ClusterTarget,
    Destination,
    DRIVER_MEMORY,
    NamedResource,
    Resource,
    SourceRef,
)
from fleet_sync.reconciler import TRACKING_LABEL
from fleet_sync.store import ResourceRef, ResourceResult, SyncStatus

# Fixture types defined in conftest
FleetFixture = Any
ConfigMap = Callable[..., dict[str, Any]]


def cm_id(name: str, namespace: str = "web") -> NamedResource:
    return NamedResource("ConfigMap", namespace, name)


class ScriptedClusterClient(InMemoryClusterClient):
    """In-memory cluster that can fail or pause applies of specific objects."""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.failures: dict[str, Exception] = {}
        self.attempts: Counter[str] = Counter()
        self.gated: str | None = None
        self.gate = asyncio.Event()
        self.started = asyncio.Event()

    async def apply(self, resource: Resource) -> None:
        self.attempts[resource.name] += 1
        if resource.name == self.gated:
            self.started.set()
            await self.gate.wait()
        if (err := self.failures.get(resource.name)) is not None:
            raise err
        await super().apply(resource)


def add_scripted_cluster(fleet: FleetFixture, name: str) -> ScriptedClusterClient:
    client = ScriptedClusterClient(name)
    fleet.clusters.register(ClusterTarget(name=name, driver=DRIVER_MEMORY), client)
    return client


async def test_sync(fleet: FleetFixture, configmap: ConfigMap) -> None:
    """Test a sync creates the declared resources with the tracking label."""
    fleet.repo.write("cm.yaml", configmap("a"), configmap("b"))
    sha = fleet.repo.commit()
    cluster = fleet.add_cluster("dev")
    fleet.add_app("web", "dev", namespace="web")

    state = await fleet.reconciler.sync("web")
    assert state.status == SyncStatus.SYNCED
    assert state.revision == sha
    assert state.reason is None
    assert state.last_synced is not None
    assert [(str(r), r.action, r.result) for r in state.resources] == [
        ("ConfigMap/web/a", "Create", ResourceResult.APPLIED),
        ("ConfigMap/web/b", "Create", ResourceResult.APPLIED),
    ]
    assert fleet.reconciler.status("web") == state
    assert cluster.objects() == [cm_id("a"), cm_id("b")]
    live = cluster.get(cm_id("a"))
    assert live is not None
    assert live["metadata"]["labels"] == {TRACKING_LABEL: "web"}
    assert fleet.clusters.target("dev").health == ClusterHealth.REACHABLE


async def test_sync_is_idempotent(fleet: FleetFixture, configmap: ConfigMap) -> None:
    """Test syncing an unchanged revision applies nothing."""
    fleet.repo.write("cm.yaml", configmap("a"))
    fleet.repo.commit()
    cluster = fleet.add_cluster("dev")
    fleet.add_app("web", "dev", namespace="web")

    await fleet.reconciler.sync("web")
    state = await fleet.reconciler.sync("web")
    assert state.status == SyncStatus.SYNCED
    assert [(r.action, r.result) for r in state.resources] == [
        ("NoOp", ResourceResult.UNCHANGED)
    ]
    assert cluster.applied == [cm_id("a")]


async def test_drift_is_corrected(fleet: FleetFixture, configmap: ConfigMap) -> None:
    """Test an out-of-band change to a live object is reverted."""
    fleet.repo.write("cm.yaml", configmap("a", {"key": "desired"}))
    fleet.repo.commit()
    cluster = fleet.add_cluster("dev")
    fleet.add_app("web", "dev", namespace="web", self_heal=True)
    await fleet.reconciler.sync("web")

    cluster.add(
        configmap(
            "a", {"key": "edited"}, namespace="web", labels={TRACKING_LABEL: "web"}
        )
    )
    states = await fleet.reconciler.tick()
    assert [state.status for state in states] == [SyncStatus.SYNCED]
    assert [(r.action, r.result) for r in states[0].resources] == [
        ("Update", ResourceResult.APPLIED)
    ]
    live = cluster.get(cm_id("a"))
    assert live is not None
    assert live["data"] == {"key": "desired"}


async def test_orphan_without_prune(fleet: FleetFixture, configmap: ConfigMap) -> None:
    """Test a resource removed from the source is kept and reported."""
    fleet.repo.write("x.yaml", configmap("x"))
    fleet.repo.write("y.yaml", configmap("y"))
    fleet.repo.commit()
    cluster = fleet.add_cluster("dev")
    fleet.add_app("web", "dev", namespace="web")
    await fleet.reconciler.sync("web")

    fleet.repo.remove("y.yaml")
    fleet.repo.commit()
    state = await fleet.reconciler.sync("web")
    assert state.status == SyncStatus.SYNCED
    assert [str(r) for r in state.resources] == ["ConfigMap/web/x"]
    assert state.orphans == (ResourceRef(kind="ConfigMap", namespace="web", name="y"),)
    assert cluster.objects() == [cm_id("x"), cm_id("y")]
    assert cluster.pruned == []

    # The orphan is still reported on later cycles
    state = await fleet.reconciler.sync("web")
    assert [str(r) for r in state.orphans] == ["ConfigMap/web/y"]


async def test_orphan_with_prune(fleet: FleetFixture, configmap: ConfigMap) -> None:
    """Test a resource removed from the source is deleted when pruning."""
    fleet.repo.write("x.yaml", configmap("x"))
    fleet.repo.write(
        "svc.yaml",
        {"apiVersion": "v1", "kind": "Service", "metadata": {"name": "api"}},
    )
    fleet.repo.commit()
    cluster = fleet.add_cluster("dev")
    fleet.add_app("web", "dev", namespace="web", prune=True)
    await fleet.reconciler.sync("web")

    # The Service kind is no longer declared at all
    fleet.repo.remove("svc.yaml")
    fleet.repo.commit()
    state = await fleet.reconciler.sync("web")
    assert state.status == SyncStatus.SYNCED
    assert [(str(r), r.action, r.result) for r in state.resources] == [
        ("ConfigMap/web/x", "NoOp", ResourceResult.UNCHANGED),
        ("Service/web/api", "Delete", ResourceResult.PRUNED),
    ]
    assert state.orphans == ()
    assert cluster.objects() == [cm_id("x")]


async def test_unowned_objects_untouched(
    fleet: FleetFixture, configmap: ConfigMap
) -> None:
    """Test live objects without the application's label are never pruned."""
    fleet.repo.write("x.yaml", configmap("x"))
    fleet.repo.commit()
    cluster = fleet.add_cluster("dev")
    cluster.add(configmap("manual", namespace="web"))
    cluster.add(
        configmap("other", namespace="web", labels={TRACKING_LABEL: "other-app"})
    )
    fleet.add_app("web", "dev", namespace="web", prune=True)

    state = await fleet.reconciler.sync("web")
    assert state.status == SyncStatus.SYNCED
    assert state.orphans == ()
    assert cluster.objects() == [cm_id("manual"), cm_id("other"), cm_id("x")]


async def test_cluster_scoped_resources(
    fleet: FleetFixture, configmap: ConfigMap
) -> None:
    """Test cluster scoped resources are applied without a namespace."""
    fleet.repo.write(
        "ns.yaml",
        {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "web"}},
        configmap("a"),
        configmap("b", namespace="shared"),
    )
    fleet.repo.commit()
    cluster = fleet.add_cluster("dev")
    fleet.add_app("web", "dev", namespace="web")

    state = await fleet.reconciler.sync("web")
    assert state.status == SyncStatus.SYNCED
    assert cluster.objects() == [
        cm_id("b", namespace="shared"),
        cm_id("a"),
        NamedResource("Namespace", None, "web"),
    ]
    state = await fleet.reconciler.sync("web")
    assert all(r.result == ResourceResult.UNCHANGED for r in state.resources)


async def test_concurrent_apps_same_cluster(
    fleet: FleetFixture, configmap: ConfigMap
) -> None:
    """Test two applications on one cluster sync concurrently."""
    fleet.repo.write("apps/a/cm.yaml", configmap("a"))
    fleet.repo.write("apps/b/cm.yaml", configmap("b"))
    fleet.repo.commit()
    cluster = fleet.add_cluster("dev")
    fleet.add_app("app-a", "dev", path="apps/a", namespace="web")
    fleet.add_app("app-b", "dev", path="apps/b", namespace="web")

    states = await asyncio.wait_for(
        asyncio.gather(
            fleet.reconciler.trigger("app-a"), fleet.reconciler.trigger("app-b")
        ),
        timeout=10,
    )
    assert [(s.application, s.status) for s in states] == [
        ("app-a", SyncStatus.SYNCED),
        ("app-b", SyncStatus.SYNCED),
    ]
    assert [str(r) for r in states[0].resources] == ["ConfigMap/web/a"]
    assert [str(r) for r in states[1].resources] == ["ConfigMap/web/b"]
    assert cluster.objects() == [cm_id("a"), cm_id("b")]


async def test_same_app_serialized(fleet: FleetFixture, configmap: ConfigMap) -> None:
    """Test concurrent triggers of one application run one after the other."""
    fleet.repo.write("cm.yaml", configmap("a"))
    fleet.repo.commit()
    cluster = fleet.add_cluster("dev")
    fleet.add_app("web", "dev", namespace="web")

    first, second = await asyncio.gather(
        fleet.reconciler.trigger("web"), fleet.reconciler.trigger("web")
    )
    assert first.resources[0].result == ResourceResult.APPLIED
    assert second.resources[0].result == ResourceResult.UNCHANGED
    assert cluster.applied == [cm_id("a")]


async def test_unreachable_cluster(fleet: FleetFixture, configmap: ConfigMap) -> None:
    """Test an unreachable cluster degrades only its own applications."""
    fleet.repo.write("cm.yaml", configmap("a"))
    fleet.repo.commit()
    down = fleet.add_cluster("down")
    up = fleet.add_cluster("up")
    down.error = Unreachable("dial tcp 10.0.0.1:6443: connection refused")
    fleet.add_app("app-a", "down", namespace="web")
    fleet.add_app("app-b", "up", namespace="web")

    state_a, state_b = await asyncio.gather(
        fleet.reconciler.trigger("app-a"), fleet.reconciler.trigger("app-b")
    )
    assert state_a.status == SyncStatus.DEGRADED
    assert state_a.reason == "Unreachable"
    assert "connection refused" in (state_a.message or "")
    assert state_b.status == SyncStatus.SYNCED
    assert fleet.clusters.target("down").health == ClusterHealth.UNREACHABLE
    assert fleet.clusters.target("up").health == ClusterHealth.REACHABLE
    assert up.objects() == [cm_id("a")]


async def test_unreachable_skips_remaining(
    fleet: FleetFixture, configmap: ConfigMap
) -> None:
    """Test the actions after a cluster failure are skipped."""
    fleet.repo.write("cm.yaml", configmap("a"), configmap("b"), configmap("c"))
    fleet.repo.commit()
    cluster = add_scripted_cluster(fleet, "dev")
    cluster.failures["b"] = Unreachable("i/o timeout")
    fleet.add_app("web", "dev", namespace="web")

    state = await fleet.reconciler.sync("web")
    assert state.status == SyncStatus.DEGRADED
    assert state.reason == "Unreachable"
    assert [(r.name, r.result, r.reason) for r in state.resources] == [
        ("a", ResourceResult.APPLIED, None),
        ("b", ResourceResult.FAILED, "Unreachable"),
        ("c", ResourceResult.SKIPPED, "Unreachable"),
    ]
    # No rollback of the resource that was applied
    assert cluster.objects() == [cm_id("a")]


async def test_auth_rejected_skips_remaining(
    fleet: FleetFixture, configmap: ConfigMap
) -> None:
    """Test rejected credentials are not retried."""
    fleet.repo.write("cm.yaml", configmap("a"), configmap("b"))
    fleet.repo.commit()
    cluster = add_scripted_cluster(fleet, "dev")
    cluster.failures["a"] = AuthRejected("Unauthorized")
    fleet.add_app("web", "dev", namespace="web")

    state = await fleet.reconciler.sync("web")
    assert state.status == SyncStatus.DEGRADED
    assert state.reason == "AuthRejected"
    assert [r.result for r in state.resources] == [
        ResourceResult.FAILED,
        ResourceResult.SKIPPED,
    ]
    assert fleet.clusters.target("dev").health == ClusterHealth.REACHABLE


async def test_resource_error_continues(
    fleet: FleetFixture, configmap: ConfigMap
) -> None:
    """Test a rejected resource does not stop the others."""
    fleet.repo.write("cm.yaml", configmap("a"), configmap("b"), configmap("c"))
    fleet.repo.commit()
    cluster = add_scripted_cluster(fleet, "dev")
    cluster.failures["b"] = ResourceError('ConfigMap "b" is invalid')
    fleet.add_app("web", "dev", namespace="web")

    state = await fleet.reconciler.sync("web")
    assert state.status == SyncStatus.DEGRADED
    assert state.reason == "ResourceError"
    assert state.message == "1 of 3 resources failed"
    assert [(r.name, r.result) for r in state.resources] == [
        ("a", ResourceResult.APPLIED),
        ("b", ResourceResult.FAILED),
        ("c", ResourceResult.APPLIED),
    ]
    assert [str(r) for r in state.failed] == ["ConfigMap/web/b"]
    assert state.failed[0].message == 'ConfigMap "b" is invalid'


async def test_only_transient_errors_retried(
    fleet: FleetFixture, configmap: ConfigMap
) -> None:
    """Test an unreachable cluster is retried while a rejected resource is not."""
    fleet.repo.write("cm.yaml", configmap("a"), configmap("b"))
    fleet.repo.commit()
    cluster = add_scripted_cluster(fleet, "dev")
    cluster.failures["a"] = ResourceError("spec.data: Invalid value")
    cluster.failures["b"] = Unreachable("i/o timeout")
    fleet.add_app("web", "dev", namespace="web")

    state = await fleet.reconciler.sync("web")
    assert [(r.name, r.reason) for r in state.resources] == [
        ("a", "ResourceError"),
        ("b", "Unreachable"),
    ]
    assert cluster.attempts == {"a": 1, "b": 2}


async def test_unexpected_error_degrades(
    fleet: FleetFixture, configmap: ConfigMap
) -> None:
    """Test an unexpected failure is recorded instead of leaving the sync running."""
    fleet.repo.write("cm.yaml", configmap("a"), configmap("b"))
    sha = fleet.repo.commit()
    cluster = add_scripted_cluster(fleet, "dev")
    cluster.failures["b"] = RuntimeError("kubectl crashed")
    fleet.add_app("web", "dev", namespace="web", self_heal=True)

    with pytest.raises(RuntimeError):
        await fleet.reconciler.sync("web")
    state = fleet.reconciler.status("web")
    assert state.status == SyncStatus.DEGRADED
    assert state.reason == "RuntimeError"
    assert state.message == "kubectl crashed"
    assert state.revision == sha
    assert [(r.name, r.result) for r in state.resources] == [
        ("a", ResourceResult.APPLIED),
        ("b", ResourceResult.SKIPPED),
    ]

    # The application is not stuck syncing and self-heal picks it up again
    del cluster.failures["b"]
    states = await fleet.reconciler.tick()
    assert [state.status for state in states] == [SyncStatus.SYNCED]


async def test_missing_kubectl(fleet: FleetFixture, configmap: ConfigMap) -> None:
    """Test a kubectl binary that is not installed degrades the application."""
    fleet.repo.write("cm.yaml", configmap("a"))
    fleet.repo.commit()
    target = ClusterTarget(name="dev")
    fleet.clusters.register(
        target, KubectlClusterClient(target, kubectl="/nonexistent/kubectl")
    )
    fleet.add_app("web", "dev", namespace="web")

    state = await fleet.reconciler.sync("web")
    assert state.status == SyncStatus.DEGRADED
    assert state.reason == "Unreachable"
    assert "could not be started" in (state.message or "")
    assert fleet.clusters.target("dev").health == ClusterHealth.UNREACHABLE


async def test_conflict_retried_once(fleet: FleetFixture, configmap: ConfigMap) -> None:
    """Test a single conflict is resolved by re-reading live state."""
    fleet.repo.write("cm.yaml", configmap("a"))
    fleet.repo.commit()
    cluster = fleet.add_cluster("dev")
    cluster.conflicts[cm_id("a")] = 1
    fleet.add_app("web", "dev", namespace="web")

    state = await fleet.reconciler.sync("web")
    assert state.status == SyncStatus.SYNCED
    assert state.resources[0].result == ResourceResult.APPLIED
    assert cluster.applied == [cm_id("a")]


async def test_repeated_conflict_fails(
    fleet: FleetFixture, configmap: ConfigMap
) -> None:
    """Test a second conflict fails the resource."""
    fleet.repo.write("cm.yaml", configmap("a"), configmap("b"))
    fleet.repo.commit()
    cluster = fleet.add_cluster("dev")
    cluster.conflicts[cm_id("a")] = 2
    fleet.add_app("web", "dev", namespace="web")

    state = await fleet.reconciler.sync("web")
    assert state.status == SyncStatus.DEGRADED
    assert state.reason == "ApplyConflict"
    assert [(r.name, r.result) for r in state.resources] == [
        ("a", ResourceResult.FAILED),
        ("b", ResourceResult.APPLIED),
    ]


async def test_conflict_already_converged(
    fleet: FleetFixture, configmap: ConfigMap
) -> None:
    """Test a conflict where the live object already matches is not re-applied."""
    fleet.repo.write("cm.yaml", configmap("a", {"key": "v2"}))
    fleet.repo.commit()
    cluster = fleet.add_cluster("dev")
    cluster.add(
        configmap("a", {"key": "v1"}, namespace="web", labels={TRACKING_LABEL: "web"})
    )
    fleet.add_app("web", "dev", namespace="web")

    # Another writer applies the same change before our apply goes through
    async def concurrent_writer() -> None:
        cluster.add(
            configmap(
                "a", {"key": "v2"}, namespace="web", labels={TRACKING_LABEL: "web"}
            )
        )

    original_apply = cluster.apply

    async def apply(resource: Resource) -> None:
        if cluster.conflicts[resource.resource_id] > 0:
            await concurrent_writer()
        await original_apply(resource)

    cluster.conflicts[cm_id("a")] = 1
    cluster.apply = apply  # type: ignore[method-assign]

    state = await fleet.reconciler.sync("web")
    assert state.status == SyncStatus.SYNCED
    assert cluster.applied == []
    live = cluster.get(cm_id("a"))
    assert live is not None
    assert live["data"] == {"key": "v2"}


async def test_revision_not_found(fleet: FleetFixture, configmap: ConfigMap) -> None:
    """Test an unknown revision degrades the application."""
    fleet.repo.write("cm.yaml", configmap("a"))
    fleet.repo.commit()
    cluster = fleet.add_cluster("dev")
    fleet.add_app("web", "dev", namespace="web", revision="no-such-branch")

    state = await fleet.reconciler.sync("web")
    assert state.status == SyncStatus.DEGRADED
    assert state.reason == "RevisionNotFound"
    assert state.revision is None
    assert cluster.objects() == []


async def test_parse_error(fleet: FleetFixture) -> None:
    """Test invalid manifests degrade the application."""
    fleet.repo.write_text("cm.yaml", "apiVersion: v1\nkind: ConfigMap\n")
    fleet.repo.commit()
    fleet.add_cluster("dev")
    fleet.add_app("web", "dev", namespace="web")

    state = await fleet.reconciler.sync("web")
    assert state.status == SyncStatus.DEGRADED
    assert state.reason == "ParseError"


async def test_source_unavailable(fleet: FleetFixture, tmp_path: Path) -> None:
    """Test a missing repository is retried then degrades the application."""
    fleet.add_cluster("dev")
    fleet.registry.register(
        Application(
            name="web",
            source=SourceRef(repo_url=str(tmp_path / "missing")),
            destination=Destination(cluster="dev", namespace="web"),
        )
    )

    state = await fleet.reconciler.sync("web")
    assert state.status == SyncStatus.DEGRADED
    assert state.reason == "SourceUnavailable"


async def test_first_commit_recovers(fleet: FleetFixture, configmap: ConfigMap) -> None:
    """Test an application degraded by an empty repository syncs once committed."""
    fleet.add_cluster("dev")
    fleet.add_app("web", "dev", namespace="web")

    state = await fleet.reconciler.sync("web")
    assert state.status == SyncStatus.DEGRADED
    assert state.reason == "RevisionNotFound"

    fleet.repo.write("cm.yaml", configmap("a"))
    fleet.repo.commit()
    state = await fleet.reconciler.sync("web")
    assert state.status == SyncStatus.SYNCED


async def test_degraded_without_self_heal(
    fleet: FleetFixture, configmap: ConfigMap
) -> None:
    """Test ticks leave a degraded application alone without self-heal."""
    fleet.repo.write("cm.yaml", configmap("a"))
    fleet.repo.commit()
    cluster = fleet.add_cluster("dev")
    cluster.error = Unreachable("no route to host")
    fleet.add_app("web", "dev", namespace="web", automated=True)

    degraded = await fleet.reconciler.sync("web")
    assert degraded.status == SyncStatus.DEGRADED

    cluster.error = None
    for _ in range(3):
        assert await fleet.reconciler.tick() == []
        assert fleet.reconciler.status("web") == degraded

    # An explicit trigger always syncs
    state = await fleet.reconciler.trigger("web")
    assert state.status == SyncStatus.SYNCED


async def test_self_heal_retries_degraded(
    fleet: FleetFixture, configmap: ConfigMap
) -> None:
    """Test ticks retry a degraded application with self-heal."""
    fleet.repo.write("cm.yaml", configmap("a"))
    fleet.repo.commit()
    cluster = fleet.add_cluster("dev")
    cluster.error = Unreachable("no route to host")
    fleet.add_app("web", "dev", namespace="web", self_heal=True)

    assert (await fleet.reconciler.sync("web")).status == SyncStatus.DEGRADED
    cluster.error = None
    states = await fleet.reconciler.tick()
    assert [state.status for state in states] == [SyncStatus.SYNCED]


async def test_automated_syncs_new_revisions(
    fleet: FleetFixture, configmap: ConfigMap
) -> None:
    """Test ticks sync an automated application only when its revision changes."""
    fleet.repo.write("cm.yaml", configmap("a", {"key": "v1"}))
    fleet.repo.commit()
    cluster = fleet.add_cluster("dev")
    fleet.add_app("web", "dev", namespace="web", automated=True)

    states = await fleet.reconciler.tick()
    assert [state.status for state in states] == [SyncStatus.SYNCED]
    synced = states[0]

    # Drift is not corrected without self-heal while the revision is unchanged
    cluster.add(
        configmap(
            "a", {"key": "edited"}, namespace="web", labels={TRACKING_LABEL: "web"}
        )
    )
    await fleet.reconciler.tick()
    assert fleet.reconciler.status("web") == synced
    live = cluster.get(cm_id("a"))
    assert live is not None
    assert live["data"] == {"key": "edited"}

    fleet.repo.write("cm.yaml", configmap("a", {"key": "v2"}))
    sha = fleet.repo.commit()
    states = await fleet.reconciler.tick()
    assert states[0].revision == sha
    live = cluster.get(cm_id("a"))
    assert live is not None
    assert live["data"] == {"key": "v2"}


async def test_manual_app_not_ticked(fleet: FleetFixture, configmap: ConfigMap) -> None:
    """Test an application without automation is only synced on request."""
    fleet.repo.write("cm.yaml", configmap("a"))
    fleet.repo.commit()
    cluster = fleet.add_cluster("dev")
    fleet.add_app("web", "dev", namespace="web")

    assert await fleet.reconciler.tick() == []
    assert fleet.reconciler.status("web").status == SyncStatus.IDLE
    assert cluster.objects() == []


async def test_trigger_returns_immediately(
    fleet: FleetFixture, configmap: ConfigMap
) -> None:
    """Test trigger schedules the sync and returns before it completes."""
    fleet.repo.write("cm.yaml", configmap("a"))
    fleet.repo.commit()
    fleet.add_cluster("dev")
    fleet.add_app("web", "dev", namespace="web")

    task = fleet.reconciler.trigger("web")
    assert not task.done()
    state = await fleet.store.watch_status("web", [SyncStatus.SYNCED])
    assert state.application == "web"
    assert (await task) == state


async def test_trigger_unknown_application(fleet: FleetFixture) -> None:
    """Test triggering an application that is not registered."""
    with pytest.raises(ObjectNotFoundError):
        fleet.reconciler.trigger("web")
    with pytest.raises(ObjectNotFoundError):
        fleet.reconciler.status("web")
    assert not fleet.reconciler.cancel("web")


async def test_cancel_between_resources(
    fleet: FleetFixture, configmap: ConfigMap
) -> None:
    """Test cancelling a sync lets the current resource finish then stops."""
    fleet.repo.write("cm.yaml", configmap("a"), configmap("b"), configmap("c"))
    fleet.repo.commit()
    cluster = add_scripted_cluster(fleet, "dev")
    cluster.gated = "a"
    fleet.add_app("web", "dev", namespace="web")

    task = fleet.reconciler.trigger("web")
    await asyncio.wait_for(cluster.started.wait(), timeout=10)
    assert fleet.reconciler.status("web").status == SyncStatus.SYNCING
    assert fleet.reconciler.cancel("web")
    cluster.gate.set()

    state = await task
    assert state.status == SyncStatus.DEGRADED
    assert state.reason == "Cancelled"
    assert [(r.name, r.result) for r in state.resources] == [
        ("a", ResourceResult.APPLIED),
        ("b", ResourceResult.SKIPPED),
        ("c", ResourceResult.SKIPPED),
    ]
    assert cluster.objects() == [cm_id("a")]


async def test_task_cancellation_shields_apply(
    fleet: FleetFixture, configmap: ConfigMap
) -> None:
    """Test cancelling the sync task never interrupts an apply."""
    fleet.repo.write("cm.yaml", configmap("a"), configmap("b"))
    sha = fleet.repo.commit()
    cluster = add_scripted_cluster(fleet, "dev")
    cluster.gated = "a"
    fleet.add_app("web", "dev", namespace="web")

    task = fleet.reconciler.trigger("web")
    await asyncio.wait_for(cluster.started.wait(), timeout=10)
    task.cancel()
    await asyncio.sleep(0)
    assert not task.done()
    cluster.gate.set()

    with pytest.raises(asyncio.CancelledError):
        await task
    state = fleet.reconciler.status("web")
    assert state.status == SyncStatus.DEGRADED
    assert state.reason == "Cancelled"
    # The in-flight resource was applied, the next one was not started
    assert cluster.objects() == [cm_id("a")]
    assert state.revision == sha
    assert [(r.name, r.result, r.reason) for r in state.resources] == [
        ("a", ResourceResult.APPLIED, None),
        ("b", ResourceResult.SKIPPED, "Cancelled"),
    ]


async def test_deregister_during_sync(
    fleet: FleetFixture, configmap: ConfigMap
) -> None:
    """Test the outcome of a sync for a removed application is dropped."""
    fleet.repo.write("cm.yaml", configmap("a"))
    fleet.repo.commit()
    cluster = add_scripted_cluster(fleet, "dev")
    cluster.gated = "a"
    fleet.add_app("web", "dev", namespace="web")

    task = fleet.reconciler.trigger("web")
    await asyncio.wait_for(cluster.started.wait(), timeout=10)
    fleet.registry.deregister("web")
    cluster.gate.set()

    state = await task
    assert state.status == SyncStatus.SYNCED
    assert fleet.store.get_state("web") is None
    with pytest.raises(ObjectNotFoundError):
        fleet.reconciler.status("web")


async def test_plan(fleet: FleetFixture, configmap: ConfigMap) -> None:
    """Test planning a sync does not change the cluster or the state."""
    fleet.repo.write("cm.yaml", configmap("a"))
    sha = fleet.repo.commit()
    cluster = fleet.add_cluster("dev")
    fleet.add_app("web", "dev", namespace="web")

    manifests, result = await fleet.reconciler.plan("web")
    assert manifests.revision == sha
    assert [item.action for item in result.actions] == [Action.CREATE]
    assert result.actions[0].resource.labels == {TRACKING_LABEL: "web"}
    assert cluster.objects() == []
    assert fleet.reconciler.status("web").status == SyncStatus.IDLE


async def test_start_stop(fleet: FleetFixture, configmap: ConfigMap) -> None:
    """Test the background loop syncs applications until stopped."""
    fleet.repo.write("cm.yaml", configmap("a"))
    fleet.repo.commit()
    cluster = fleet.add_cluster("dev")
    fleet.add_app("web", "dev", namespace="web", self_heal=True)

    await fleet.reconciler.start()
    await asyncio.wait_for(
        fleet.store.watch_status("web", [SyncStatus.SYNCED]), timeout=10
    )
    await fleet.reconciler.stop()
    assert cluster.objects() == [cm_id("a")]


async def test_run_max_ticks(
    fleet: FleetFixture, configmap: ConfigMap, trace_capture: Any
) -> None:
    """Test running a fixed number of ticks."""
    fleet.repo.write("cm.yaml", configmap("a"))
    fleet.repo.commit()
    cluster = fleet.add_cluster("dev")
    fleet.add_app("web", "dev", namespace="web", self_heal=True)

    await fleet.reconciler.run(max_ticks=2)
    assert fleet.reconciler.status("web").status == SyncStatus.SYNCED
    assert cluster.applied == [cm_id("a")]
    assert trace_capture.counts["tick"] == 2
    assert trace_capture.counts["sync"] == 2
