"""Custom exceptions for replication runs.

Only failures that happen before anything on disk has been changed are
raised as exceptions. Once a run has started mutating state, individual
step failures are reported through ``StepResult`` values instead (see
``btrfs_replicator.domain.models``).

Exception Hierarchy:
    ReplicationError (base)
        └── ValidationError
            ├── InvalidArgumentsError
            ├── UnsupportedFilesystemError
            ├── ListingUnavailableError
            ├── PermissionDeniedError
            └── ConfigurationError

Usage:
    from btrfs_replicator.storage.exceptions import InvalidArgumentsError

    if source == destination:
        raise InvalidArgumentsError("source and destination are the same path")
"""

from __future__ import annotations


class ReplicationError(Exception):
    """Base exception for all replication failures."""


class ValidationError(ReplicationError):
    """A precondition failed; nothing has been modified yet."""


class InvalidArgumentsError(ValidationError):
    """Source/destination arguments are unusable."""

    def __init__(self, reason: str, source: str | None = None, destination: str | None = None):
        self.reason = reason
        self.source = source
        self.destination = destination
        super().__init__(f"Invalid arguments: {reason}")


class UnsupportedFilesystemError(ValidationError):
    """Path is not a mount point of a btrfs filesystem."""

    def __init__(self, path: str, reason: str = ""):
        self.path = path
        self.reason = reason
        msg = f"{path} is not a mounted btrfs filesystem"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ListingUnavailableError(ValidationError):
    """The subvolume listing could not be obtained or parsed."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot list subvolumes of {path}: {reason}")


class PermissionDeniedError(ValidationError):
    """The process lacks the privileges required to manage filesystems."""

    def __init__(self, reason: str = "must be run as root"):
        self.reason = reason
        super().__init__(f"Permission denied: {reason}")


class ConfigurationError(ValidationError):
    """A configuration file could not be loaded."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid configuration {path}: {reason}")

