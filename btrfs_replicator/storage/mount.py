"""Remounting a btrfs filesystem onto a different subvolume.

Enumerating every subvolume of a filesystem requires the mount to expose
the top-level subvolume (id 5). When a source or destination is mounted
with a narrower ``subvolid=`` binding, it is remounted at the same path
bound to the top level for the duration of the run, and bound back
afterwards.

A remount is always unmount followed by mount, even when the volume is
already bound to the requested subvolume. Failures are not raised; they
are returned as a failed ``StepResult`` and the caller carries on.

Functions:
    - remount(): unmount + mount with ``-o subvolid=N``
    - remount_to_root(): bind to the top-level subvolume
    - remount_to_subvolume(): bind to a specific subvolume
"""

from __future__ import annotations

from btrfs_replicator.domain import (
    TOP_LEVEL_SUBVOLUME_ID,
    ReplicationReport,
    Step,
    StepResult,
    Volume,
)
from btrfs_replicator.logging import LoggerFactory

from .commands import CommandRunner


# Module logger
log = LoggerFactory.for_mount()


def remount(
    volume: Volume, subvolume_id: int, subvolume_path: str, runner: CommandRunner
) -> tuple[Volume, StepResult]:
    """Unmount ``volume`` and mount its device again bound to ``subvolume_id``.

    Returns:
        The volume as now mounted, and the step outcome. On failure the
        returned volume is the unchanged input.
    """
    target = f"{volume.mount_path} -> subvolid={subvolume_id}"
    log.info(f"Remounting {volume.device} on {volume.mount_path} (subvolid={subvolume_id})")

    result = runner.execute(["umount", volume.mount_path])
    if not result.ok:
        message = f"Failed to unmount {volume.mount_path}: {result.message}"
        log.warning(message)
        return volume, StepResult.failure(Step.REMOUNT, target, message)

    result = runner.execute(
        ["mount", "-t", "btrfs", "-o", f"subvolid={subvolume_id}", volume.device, volume.mount_path]
    )
    if not result.ok:
        message = (
            f"Failed to mount {volume.device} on {volume.mount_path} "
            f"with subvolid={subvolume_id}: {result.message}"
        )
        log.warning(message)
        # The original binding is gone; the path is now not mounted at all.
        return volume, StepResult.failure(Step.REMOUNT, target, message)

    return volume.rebind(subvolume_id, subvolume_path), StepResult.success(Step.REMOUNT, target)


def remount_to_root(volume: Volume, runner: CommandRunner) -> tuple[Volume, StepResult]:
    return remount(volume, TOP_LEVEL_SUBVOLUME_ID, "/", runner)


def remount_to_subvolume(
    volume: Volume, subvolume_id: int, subvolume_path: str, runner: CommandRunner
) -> tuple[Volume, StepResult]:
    return remount(volume, subvolume_id, subvolume_path, runner)


class MountBinding:
    """Remembers a volume's original subvolume binding during a run.

    ``expose_root()`` binds the mount to the top-level subvolume when it is
    not already, and ``bind()`` to any other subvolume. ``restore()`` binds
    it back to the original subvolume, at most once, and only if one of them
    touched the mount.
    """

    def __init__(self, volume: Volume, runner: CommandRunner, report: ReplicationReport | None = None):
        self.original = volume
        self.current = volume
        self.runner = runner
        self.report = report if report is not None else ReplicationReport()
        self.changed = False
        self.restored = False

    def expose_root(self) -> Volume:
        if self.current.is_root_mounted:
            return self.current
        self.changed = True
        volume, result = remount_to_root(self.current, self.runner)
        self.report.record(result)
        self.current = volume
        return self.current

    def bind(self, subvolume_id: int, subvolume_path: str) -> Volume:
        self.changed = True
        volume, result = remount_to_subvolume(self.current, subvolume_id, subvolume_path, self.runner)
        self.report.record(result)
        self.current = volume
        return self.current

    def restore(self) -> Volume:
        if not self.changed or self.restored:
            return self.current
        self.restored = True
        volume, result = remount_to_subvolume(
            self.current,
            self.original.subvolume_id,
            self.original.subvolume_path,
            self.runner,
        )
        self.report.record(result)
        self.current = volume
        return self.current
