"""Precondition checks for a replication run.

Everything here runs before the first mutating command. Validation
functions raise exceptions from the exceptions module rather than
returning booleans, and all of them are fatal.

Example:
    from btrfs_replicator.storage.validation import validate_job

    try:
        validate_job(job)
    except InvalidArgumentsError:
        ...
"""

import os

from btrfs_replicator.domain import ReplicationJob, Volume

from .exceptions import InvalidArgumentsError, PermissionDeniedError


def validate_privileges() -> None:
    """Require an effective user id of 0.

    Raises:
        PermissionDeniedError: If not running as root
    """
    if os.geteuid() != 0:
        raise PermissionDeniedError("btrfs-replicator must be run as root")


def validate_job(job: ReplicationJob) -> None:
    """Validate paths and names of a job.

    Raises:
        InvalidArgumentsError: If a path is relative or empty, both paths are
            the same, or the root snapshot name is unusable
    """
    try:
        job.validate()
    except ValueError as error:
        raise InvalidArgumentsError(str(error), job.source, job.destination) from error


def validate_volumes_different(source: Volume, destination: Volume) -> None:
    """Refuse to replicate a filesystem onto itself.

    Raises:
        InvalidArgumentsError: If both paths are backed by the same device
    """
    if os.path.realpath(source.device) == os.path.realpath(destination.device):
        raise InvalidArgumentsError(
            f"{source.mount_path} and {destination.mount_path} are the same "
            f"filesystem ({source.device})",
            source.mount_path,
            destination.mount_path,
        )
