"""Shared fixtures for fleet-sync tests."""

from collections.abc import AsyncGenerator, Callable, Generator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import git
import pytest
import yaml

from fleet_sync import context
from fleet_sync.cluster import ClusterClientPool, InMemoryClusterClient
from fleet_sync.config import ReconcilerConfig, RetryConfig, SourceReaderConfig
from fleet_sync.manifest import (
    Application,
    ClusterTarget,
    Destination,
    DRIVER_MEMORY,
    SourceRef,
    SyncPolicy,
)
from fleet_sync.reconciler import Reconciler
from fleet_sync.registry import ApplicationRegistry
from fleet_sync.source import ManifestSourceReader
from fleet_sync.store import InMemoryStore
from fleet_sync.task import TaskService, TaskServiceImpl

AUTHOR = git.Actor("Fleet Tester", "tester@example.com")


def _configmap(
    name: str, data: dict[str, str] | None = None, **metadata: Any
) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, **metadata},
        "data": data or {"key": "value"},
    }


class GitRepoBuilder:
    """Builds commits in a throwaway git repository."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.repo = git.Repo.init(str(path))

    def write(self, filename: str, *docs: dict[str, Any]) -> None:
        target = self.path / filename
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(yaml.dump_all(docs, sort_keys=False, explicit_start=True))

    def write_text(self, filename: str, content: str) -> None:
        target = self.path / filename
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)

    def remove(self, filename: str) -> None:
        (self.path / filename).unlink()

    def commit(self, message: str = "Update manifests") -> str:
        self.repo.git.add(A=True)
        commit = self.repo.index.commit(message, author=AUTHOR, committer=AUTHOR)
        return commit.hexsha


@pytest.fixture
def repo_builder(tmp_path: Path) -> GitRepoBuilder:
    """A git repository with no commits."""
    return GitRepoBuilder(tmp_path / "gitops")


@pytest.fixture
def task_service() -> TaskService:
    """A fresh task service for each test."""
    return TaskServiceImpl()


@pytest.fixture(autouse=True)
def trace_capture() -> Generator[context.TraceCollector, None, None]:
    """Capture traces for each test."""
    with context.get_trace_collector() as collector:
        yield collector


@dataclass
class FleetFixture:
    """Components wired together against in-memory clusters."""

    store: InMemoryStore
    clusters: ClusterClientPool
    registry: ApplicationRegistry
    reader: ManifestSourceReader
    reconciler: Reconciler
    repo: GitRepoBuilder

    def add_cluster(self, name: str) -> InMemoryClusterClient:
        client = InMemoryClusterClient(name)
        self.clusters.register(ClusterTarget(name=name, driver=DRIVER_MEMORY), client)
        return client

    def add_app(
        self,
        name: str,
        cluster: str,
        path: str = ".",
        namespace: str = "default",
        revision: str = "HEAD",
        **policy: bool,
    ) -> Application:
        app = Application(
            name=name,
            source=SourceRef(
                repo_url=str(self.repo.path), path=path, revision=revision
            ),
            destination=Destination(cluster=cluster, namespace=namespace),
            sync_policy=SyncPolicy(**policy),
        )
        self.registry.register(app)
        return app


NO_BACKOFF = RetryConfig(attempts=2, multiplier=0, backoff_min=0, backoff_max=0)


@pytest.fixture
def reconciler_config() -> ReconcilerConfig:
    return ReconcilerConfig(interval=0.01, max_concurrency=4, retry=NO_BACKOFF)


@pytest.fixture
async def fleet(
    tmp_path: Path,
    repo_builder: GitRepoBuilder,
    reconciler_config: ReconcilerConfig,
    task_service: TaskService,
) -> AsyncGenerator[FleetFixture, None]:
    """A registry, store, reader and reconciler with no clusters or apps."""
    store = InMemoryStore()
    clusters = ClusterClientPool()
    registry = ApplicationRegistry(store, clusters)
    reader = ManifestSourceReader(SourceReaderConfig(cache_dir=tmp_path / "cache"))
    reconciler = Reconciler(
        registry,
        store,
        reader,
        clusters,
        config=reconciler_config,
        task_service=task_service,
    )
    yield FleetFixture(store, clusters, registry, reader, reconciler, repo_builder)
    await reconciler.stop()
    registry.close()
    reader.close()
    await clusters.close()
    store.close()


@pytest.fixture
def configmap() -> Callable[..., dict[str, Any]]:
    """Factory for ConfigMap documents."""
    return _configmap
