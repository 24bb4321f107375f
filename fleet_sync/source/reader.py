"""Manifest Source Reader.

Reads the desired state of an application out of its source repository at a
revision. Reading the same (repository, path, commit) always produces the same
ManifestSet, and a repeated commit is served from the manifest cache without
reading the repository contents again.
"""

import asyncio
from collections import defaultdict
import logging
from typing import Any

import yaml

from fleet_sync.config import SourceReaderConfig
from fleet_sync.context import trace_context
from fleet_sync.exceptions import InputException, ParseError
from fleet_sync.manifest import (
    KUSTOMIZE_DOMAIN,
    LIST_KIND,
    ManifestSet,
    Resource,
    SourceRef,
)

from .cache import GitCache, ManifestCache
from .git import local_path, open_repo, read_manifest_files, resolve_commit

__all__ = ["ManifestSourceReader", "parse_documents"]

_LOGGER = logging.getLogger(__name__)


def _expand(doc: Any, filename: str) -> list[dict[str, Any]]:
    if not isinstance(doc, dict):
        raise ParseError(f"Document in {filename} is not a mapping: {doc!r}")
    if doc.get("kind") == LIST_KIND and "items" in doc:
        items: list[dict[str, Any]] = []
        for item in doc.get("items") or ():
            items.extend(_expand(item, filename))
        return items
    return [doc]


def parse_documents(filename: str, content: str) -> list[Resource]:
    """Parse the resources declared in a manifest file.

    Raises:
        ParseError: If the file is not valid YAML or declares an invalid object.
    """
    try:
        docs = list(yaml.safe_load_all(content))
    except yaml.YAMLError as err:
        raise ParseError(f"Invalid YAML in {filename}: {err}") from err
    resources = []
    for doc in docs:
        if doc is None:
            continue
        for item in _expand(doc, filename):
            if str(item.get("apiVersion", "")).startswith(KUSTOMIZE_DOMAIN):
                _LOGGER.debug("Skipping kustomize configuration in %s", filename)
                continue
            try:
                resources.append(Resource.parse_doc(item))
            except InputException as err:
                raise ParseError(f"Invalid object in {filename}: {err}") from err
    return resources


class ManifestSourceReader:
    """Fetches ManifestSets from git sources."""

    def __init__(self, config: SourceReaderConfig | None = None) -> None:
        self._config = config or SourceReaderConfig()
        self._git_cache = GitCache(self._config.cache_dir)
        self._manifests = ManifestCache(self._config.max_cached_revisions)
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _resolve(self, source: SourceRef) -> str:
        repo = open_repo(source.repo_url, self._git_cache)
        try:
            remote = local_path(source.repo_url) is None
            return resolve_commit(repo, source.revision, remote).hexsha
        finally:
            repo.close()

    def _read(self, source: SourceRef, revision: str) -> list[Resource]:
        repo = open_repo(source.repo_url, self._git_cache)
        try:
            commit = repo.commit(revision)
            resources: list[Resource] = []
            for filename, content in read_manifest_files(commit, source.path):
                resources.extend(parse_documents(filename, content))
            return resources
        finally:
            repo.close()

    async def fetch(self, source: SourceRef) -> ManifestSet:
        """Return the ManifestSet for the source at its revision.

        Raises:
            SourceUnavailable: If the repository cannot be reached.
            RevisionNotFound: If the revision does not exist.
            ParseError: If the manifests at the revision are invalid.
        """
        async with self._locks[source.repo_url]:
            with trace_context(f"Fetch {source.label}", "fetch"):
                revision = await asyncio.to_thread(self._resolve, source)
                key = (source.repo_url, source.path, revision)
                if (cached := self._manifests.get(key)) is not None:
                    _LOGGER.debug(
                        "Reusing manifests for %s at %s", source.label, revision
                    )
                    return cached
                resources = await asyncio.to_thread(self._read, source, revision)
        manifests = ManifestSet(
            source=source, revision=revision, resources=tuple(resources)
        )
        self._manifests.put(key, manifests)
        _LOGGER.info(
            "Read %d resources from %s at %s",
            len(resources),
            source.label,
            revision[:12],
        )
        return manifests

    def close(self) -> None:
        """Drop cached manifests, and the clones unless cache_dir was configured."""
        self._manifests.clear()
        if self._config.cache_dir is None:
            self._git_cache.cleanup()
