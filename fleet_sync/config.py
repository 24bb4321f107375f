"""Configuration objects for fleet-sync.

The fleet itself (clusters and applications) is declared in a multi document
YAML file, for example:

```yaml
---
apiVersion: fleet-sync.io/v1
kind: Cluster
metadata:
  name: dev
spec:
  context: kind-dev
---
apiVersion: fleet-sync.io/v1
kind: Application
metadata:
  name: microservice-1
spec:
  source:
    repoURL: https://github.com/example/gitops.git
    path: applications/microservice-1
    targetRevision: main
  destination:
    cluster: dev
    namespace: microservice-1
  syncPolicy:
    automated: true
    prune: true
    selfHeal: true
```
"""

import dataclasses
from dataclasses import dataclass, field
import logging
from pathlib import Path
from urllib.parse import urlparse

import aiofiles
import yaml

from .exceptions import InputException
from .manifest import Application, ClusterTarget, parse_raw_obj

__all__ = [
    "RetryConfig",
    "ReconcilerConfig",
    "ClusterPoolConfig",
    "SourceReaderConfig",
    "FleetConfig",
    "read_config",
]

_LOGGER = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Backoff used for retry eligible failures."""

    attempts: int = 3
    """Total number of attempts, including the first one."""

    multiplier: float = 1.0
    """Multiplier for the exponential backoff in seconds."""

    backoff_min: float = 1.0
    backoff_max: float = 30.0


@dataclass
class ReconcilerConfig:
    """Configuration for the Reconciler."""

    interval: float = 180.0
    """Seconds between ticks of the reconciliation loop."""

    max_concurrency: int = 4
    """Number of sync cycles allowed to run at the same time."""

    retry: RetryConfig = field(default_factory=RetryConfig)


@dataclass
class ClusterPoolConfig:
    """Configuration for cluster clients."""

    kubectl: str = "kubectl"
    """The kubectl binary used by the kubectl driver."""


@dataclass
class SourceReaderConfig:
    """Configuration for the ManifestSourceReader."""

    cache_dir: Path | None = None
    """Directory used for clones of remote repositories."""

    max_cached_revisions: int = 64
    """Number of ManifestSets kept for reuse."""


@dataclass
class FleetConfig:
    """Clusters and applications declared in a fleet configuration file."""

    clusters: list[ClusterTarget] = field(default_factory=list)
    applications: list[Application] = field(default_factory=list)


def _resolve_repo_url(app: Application, base_dir: Path) -> Application:
    """Resolve a relative local repository path against the config directory."""
    url = app.source.repo_url
    parsed = urlparse(url)
    if parsed.scheme or "@" in url or Path(url).expanduser().is_absolute():
        return app
    resolved = str((base_dir / url).resolve())
    _LOGGER.debug("Resolved repository %s for %s to %s", url, app.name, resolved)
    return dataclasses.replace(
        app, source=dataclasses.replace(app.source, repo_url=resolved)
    )


def parse_config(content: str, base_dir: Path) -> FleetConfig:
    """Parse the contents of a fleet configuration file."""
    try:
        docs = list(yaml.safe_load_all(content))
    except yaml.YAMLError as err:
        raise InputException(f"Invalid fleet configuration: {err}") from err
    config = FleetConfig()
    for doc in docs:
        if doc is None:
            continue
        obj = parse_raw_obj(doc)
        if isinstance(obj, Application):
            config.applications.append(_resolve_repo_url(obj, base_dir))
        else:
            config.clusters.append(obj)
    return config


async def read_config(config_path: Path) -> FleetConfig:
    """Return the contents of a fleet configuration file on disk."""
    try:
        async with aiofiles.open(str(config_path)) as config_file:
            content = await config_file.read()
    except OSError as err:
        raise InputException(
            f"Unable to read fleet configuration {config_path}: {err}"
        ) from err
    if not content:
        raise InputException(f"Fleet configuration {config_path} is empty")
    return parse_config(content, config_path.parent.resolve())
