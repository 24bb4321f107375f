"""Shared setup for commands that operate on a fleet configuration file."""

from argparse import ArgumentParser
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
import pathlib

from fleet_sync.cluster import ClusterClientPool
from fleet_sync.config import (
    ClusterPoolConfig,
    ReconcilerConfig,
    SourceReaderConfig,
    read_config,
)
from fleet_sync.reconciler import Reconciler
from fleet_sync.registry import ApplicationRegistry
from fleet_sync.source import ManifestSourceReader
from fleet_sync.store import InMemoryStore

_LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG = "fleet.yaml"


def add_config_flags(args: ArgumentParser) -> None:
    """Add flags locating the fleet configuration and its dependencies."""
    args.add_argument(
        "--config",
        "-c",
        type=pathlib.Path,
        default=pathlib.Path(DEFAULT_CONFIG),
        help="Path to the fleet configuration file",
    )
    args.add_argument(
        "--kubectl",
        default=ClusterPoolConfig.kubectl,
        help="Path to the kubectl binary",
    )
    args.add_argument(
        "--cache-dir",
        type=pathlib.Path,
        default=None,
        help="Directory for cloned repositories, or a temporary directory if unset",
    )


@dataclass
class Fleet:
    """The components wired together for a fleet configuration."""

    store: InMemoryStore
    clusters: ClusterClientPool
    registry: ApplicationRegistry
    reader: ManifestSourceReader
    reconciler: Reconciler


@asynccontextmanager
async def open_fleet(
    config: pathlib.Path,
    kubectl: str = ClusterPoolConfig.kubectl,
    cache_dir: pathlib.Path | None = None,
    reconciler_config: ReconcilerConfig | None = None,
) -> AsyncGenerator[Fleet, None]:
    """Register the clusters and applications of a fleet configuration file.

    Everything is torn down in reverse order on exit, cancelling any sync
    still in flight.
    """
    fleet_config = await read_config(config)
    store = InMemoryStore()
    clusters = ClusterClientPool(ClusterPoolConfig(kubectl=kubectl))
    registry = ApplicationRegistry(store, clusters)
    reader = ManifestSourceReader(SourceReaderConfig(cache_dir=cache_dir))
    reconciler = Reconciler(registry, store, reader, clusters, config=reconciler_config)
    try:
        for target in fleet_config.clusters:
            clusters.register(target)
        for app in fleet_config.applications:
            registry.register(app)
        _LOGGER.debug(
            "Loaded %d clusters and %d applications from %s",
            len(fleet_config.clusters),
            len(fleet_config.applications),
            config,
        )
        yield Fleet(store, clusters, registry, reader, reconciler)
    finally:
        await reconciler.stop()
        registry.close()
        reader.close()
        await clusters.close()
        store.close()
