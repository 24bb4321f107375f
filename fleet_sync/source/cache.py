"""Cache management for git repositories and the manifests read from them."""

from collections import OrderedDict
import hashlib
import logging
from pathlib import Path
from shutil import rmtree
import tempfile
from urllib.parse import urlparse

from slugify import slugify

from fleet_sync.exceptions import SourceUnavailable
from fleet_sync.manifest import ManifestSet

_LOGGER = logging.getLogger(__name__)

CacheKey = tuple[str, str, str]


class GitCache:
    """Cache of clones of remote repositories.

    Each repository URL is cloned once into a directory named after the
    repository and a hash of the URL, then fetched on later reads.
    """

    def __init__(self, cache_dir: Path | None = None) -> None:
        """Initialize the cache manager."""
        self._cache_dir = cache_dir or Path(tempfile.gettempdir()) / "fleet-sync-cache"
        self._repos: dict[str, Path] = {}  # Map of URL -> local path

    def _slugify_url(self, url: str) -> str:
        """Extract and slugify a repository name from a URL."""
        parsed = urlparse(url)
        path = parsed.path
        if parsed.scheme == "" and "@" in url and ":" in url:
            # scp style ssh URLs (git@github.com:user/repo.git)
            path = url.rsplit(":", 1)[1]
        path = path.removesuffix(".git").rstrip("/")
        slug = path.split("/")[-1] or "repo"
        return slugify(slug, max_length=50, lowercase=True, separator="-")

    def get_repo_path(self, url: str) -> Path:
        """Get the local path where a repository is cloned.

        Raises:
            SourceUnavailable: If the cache directory cannot be created.
        """
        if (path := self._repos.get(url)) is not None:
            return path
        hash_str = hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]
        cache_path = self._cache_dir / self._slugify_url(url) / hash_str
        try:
            cache_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            _LOGGER.error("Error creating cache directory for %s: %s", url, e)
            raise SourceUnavailable(f"Failed to create cache directory: {e}") from e
        self._repos[url] = cache_path
        return cache_path

    def cleanup(self) -> None:
        """Clean up all cached repositories."""
        for path in self._repos.values():
            if path.exists():
                _LOGGER.info("Cleaning up cached repository: %s", path)
                rmtree(path, ignore_errors=True)
        self._repos.clear()


class ManifestCache:
    """Bounded cache of ManifestSets keyed by (url, path, commit)."""

    def __init__(self, max_entries: int) -> None:
        self._max_entries = max_entries
        self._entries: OrderedDict[CacheKey, ManifestSet] = OrderedDict()

    def get(self, key: CacheKey) -> ManifestSet | None:
        if (manifests := self._entries.get(key)) is not None:
            self._entries.move_to_end(key)
        return manifests

    def put(self, key: CacheKey, manifests: ManifestSet) -> None:
        self._entries[key] = manifests
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()
