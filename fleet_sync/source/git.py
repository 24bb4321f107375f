"""Reading manifests out of git repositories.

These functions are blocking and are run in a worker thread by the reader.
"""

import logging
from pathlib import Path, PurePosixPath
from urllib.parse import urlparse

import git

from fleet_sync.exceptions import ParseError, RevisionNotFound, SourceUnavailable

from .cache import GitCache

_LOGGER = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")


def local_path(url: str) -> Path | None:
    """Return the filesystem path for a local repository URL, else None."""
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(parsed.path)
    if parsed.scheme == "" and not ("@" in url and ":" in url):
        return Path(url).expanduser()
    return None


def open_repo(url: str, cache: GitCache) -> git.Repo:
    """Open a local repository in place, or clone/fetch a remote one into the cache.

    Raises:
        SourceUnavailable: If the repository cannot be opened, cloned or fetched.
    """
    if (path := local_path(url)) is not None:
        try:
            return git.Repo(str(path))
        except (git.exc.NoSuchPathError, git.exc.InvalidGitRepositoryError) as err:
            raise SourceUnavailable(
                f"Repository {url} is not a git repository: {err}"
            ) from err

    repo_path = cache.get_repo_path(url)
    try:
        if (repo_path / ".git").exists():
            _LOGGER.info("Fetching repository %s in %s", url, repo_path)
            repo = git.Repo(str(repo_path))
            repo.remotes.origin.fetch(tags=True, prune=True)
            return repo
        _LOGGER.info("Cloning repository %s to %s", url, repo_path)
        return git.Repo.clone_from(url, str(repo_path), no_checkout=True)
    except git.exc.GitCommandError as err:
        raise SourceUnavailable(f"Unable to fetch repository {url}: {err}") from err


def resolve_commit(repo: git.Repo, revision: str, remote: bool) -> git.Commit:
    """Resolve a branch, tag or commit to a commit.

    For cloned repositories the remote tracking branch is preferred since the
    local branch is not updated by a fetch.

    Raises:
        RevisionNotFound: If no candidate resolves to a commit.
    """
    candidates = [f"origin/{revision}", revision] if remote else [revision]
    for candidate in candidates:
        try:
            return repo.commit(candidate)
        except (git.exc.BadName, git.exc.BadObject, ValueError):
            _LOGGER.debug("Revision %s not found in %s", candidate, repo.working_dir)
    raise RevisionNotFound(f"Revision '{revision}' not found in {repo.working_dir}")


def read_manifest_files(commit: git.Commit, path: str) -> list[tuple[str, str]]:
    """Return (filename, content) of the manifest files below a path, sorted by name.

    Raises:
        ParseError: If the path does not exist at the commit or a file is not
            valid utf-8.
    """
    tree = commit.tree
    subpath = PurePosixPath(path.strip("/") or ".").as_posix()
    if subpath != ".":
        try:
            tree = tree / subpath
        except KeyError as err:
            raise ParseError(
                f"Path '{path}' not found at revision {commit.hexsha}"
            ) from err
        if tree.type != "tree":
            raise ParseError(f"Path '{path}' is not a directory at {commit.hexsha}")

    blobs = sorted(
        (
            item
            for item in tree.traverse()
            if item.type == "blob"
            and PurePosixPath(item.path).suffix in MANIFEST_SUFFIXES
        ),
        key=lambda item: item.path,
    )
    files = []
    for blob in blobs:
        try:
            files.append((blob.path, blob.data_stream.read().decode("utf-8")))
        except UnicodeDecodeError as err:
            raise ParseError(f"File {blob.path} is not valid utf-8: {err}") from err
    return files
