"""Exceptions related to fleet-sync."""

__all__ = [
    "FleetException",
    "InputException",
    "CommandException",
    "DuplicateName",
    "ObjectNotFoundError",
    "SyncError",
    "SourceUnavailable",
    "RevisionNotFound",
    "ParseError",
    "Unreachable",
    "AuthRejected",
    "ApplyConflict",
    "ResourceError",
]


class FleetException(Exception):
    """Generic base exception used for this library."""


class InputException(FleetException):
    """Raised when the input files or values are not formatted as expected."""


class CommandException(FleetException):
    """Raised when there is a failure running a subcommand."""


class DuplicateName(FleetException):
    """Raised when registering an object with a name that is already taken."""

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"{kind} '{name}' is already registered")
        self.kind = kind
        self.name = name


class ObjectNotFoundError(FleetException):
    """Raised when an object is not found in the registry or store."""


class SyncError(FleetException):
    """Base class for failures that are recorded on an application's sync state.

    The `reason` is the short machine readable label stored in the SyncState
    and `retryable` marks failures that are retried with backoff.
    """

    reason: str = "SyncError"
    retryable: bool = False

    def __init_subclass__(cls, **kwargs: object) -> None:
        super().__init_subclass__(**kwargs)
        cls.reason = cls.__name__


class SourceUnavailable(SyncError):
    """Raised when the source repository cannot be reached or opened."""

    retryable = True


class RevisionNotFound(SyncError):
    """Raised when the requested revision does not exist in the source."""


class ParseError(SyncError):
    """Raised when the manifests at a revision cannot be parsed."""


class Unreachable(SyncError):
    """Raised when a cluster API endpoint cannot be reached."""

    retryable = True


class AuthRejected(SyncError):
    """Raised when a cluster rejects the configured credentials."""


class ApplyConflict(SyncError):
    """Raised when the live object changed underneath an apply."""


class ResourceError(SyncError):
    """Raised when the cluster rejects a specific resource."""
