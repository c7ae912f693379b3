"""Replication executor: replicate a whole btrfs filesystem to another one.

A run goes through these phases, strictly one after the other:

    1. Validate        paths, privileges, both sides mounted btrfs (fatal)
    2. Normalize       expose the top-level subvolume on both sides, list
                       the source subvolumes (listing failure is fatal)
    3. Root transfer   read-only snapshot of the source root, send/receive,
                       delete the transient snapshot, rename, make writable
    4. Destination     bind the destination mount to the replicated root so
                       the subvolumes are received inside it
    5. Read-only       capture flags and force source subvolumes read-only
    6. Transfer        every subvolume in creation order, incremental
                       against its parent when the parent was just sent
    7. Restore flags   always, also after failures
    8. Restore mounts  original subvolume binding of both mounts
    9. fstab           optionally point the destination entry at the new root

Only phase 1 and 2 can abort the run, and both happen before any data is
written. From phase 3 on, each failed step is recorded in the
``ReplicationReport``, logged as a warning, and the run continues with the
next step that does not depend on it.

The root snapshot does not descend into nested subvolumes; each one leaves
an empty directory behind in the replicated root. That placeholder is
removed right before the subvolume is received into its place.
"""

from __future__ import annotations

import posixpath
import uuid
from datetime import datetime
from typing import Callable, Optional

from btrfs_replicator.config.settings import get_bool, get_setting
from btrfs_replicator.domain import (
    PlanEntry,
    ReplicationJob,
    ReplicationReport,
    Step,
    StepResult,
    SubvolumeGraph,
    TransferKind,
    Volume,
)
from btrfs_replicator.logging import EventLogger, LoggerFactory, operation_context
from btrfs_replicator.storage.btrfs import Btrfs
from btrfs_replicator.storage.commands import CommandResult, CommandRunner
from btrfs_replicator.storage.devices import locate_volume
from btrfs_replicator.storage.fstab import patch_fstab
from btrfs_replicator.storage.mount import MountBinding
from btrfs_replicator.storage.readonly import ReadOnlyStateManager, read_only_session
from btrfs_replicator.storage.subvolumes import build_graph, plan_transfers
from btrfs_replicator.storage.validation import (
    validate_job,
    validate_volumes_different,
)


class Replicator:
    """Runs one replication job. Not reusable: create one per run."""

    def __init__(
        self,
        job: ReplicationJob,
        runner: Optional[CommandRunner] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.job = job
        self.runner = runner if runner is not None else CommandRunner(dry_run=job.dry_run)
        self.btrfs = Btrfs(self.runner, job.btrfs_command)
        self.report = ReplicationReport()
        self.clock = clock
        self.log = LoggerFactory.for_replication()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self) -> ReplicationReport:
        """Replicate ``job.source`` onto ``job.destination``.

        Raises:
            ValidationError: On a fatal precondition failure. Mounts changed
                during normalization are restored before it propagates.
        """
        with operation_context(
            "replicate", source_path=self.job.source, destination_path=self.job.destination
        ) as log:
            self.log = log
            validate_job(self.job)
            source = locate_volume(self.job.source, self.runner)
            destination = locate_volume(self.job.destination, self.runner)
            validate_volumes_different(source, destination)
            log.info(f"Source: {source}")
            log.info(f"Destination: {destination}")
            if self.runner.dry_run:
                log.info("Dry run: no changes will be made")

            source_binding = MountBinding(source, self.runner, self.report)
            destination_binding = MountBinding(destination, self.runner, self.report)
            try:
                source_root = source_binding.expose_root()
                destination_root = destination_binding.expose_root()
                graph = build_graph(self.btrfs, source_root.mount_path)

                self.transfer_root(source_root, destination_root, graph)
                destination_current = self.mount_new_root(destination_binding)

                manager = ReadOnlyStateManager(self.btrfs, source_root.mount_path, self.report)
                with read_only_session(manager, graph):
                    self.transfer_subvolumes(graph, source_root, destination_current)
            finally:
                destination_binding.restore()
                source_binding.restore()

            if self.job.edit_fstab:
                self.update_fstab(destination)

            EventLogger.log_run_summary(
                log,
                attempted=len(self.report.results),
                failed=len(self.report.failures),
                full=self.report.count(TransferKind.FULL),
                incremental=self.report.count(TransferKind.INCREMENTAL),
            )
            return self.report

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record(self, step: Step, target: str, result: CommandResult) -> bool:
        if result.ok:
            self.report.record(StepResult.success(step, target))
            return True
        self._record_failure(step, target, result.message)
        return False

    def _record_failure(self, step: Step, target: str, message: str) -> None:
        EventLogger.log_step_failed(self.log, step.value, target, message)
        self.report.record(StepResult.failure(step, target, message))

    def snapshot_name(self) -> str:
        if self.job.root_snapshot_name:
            return self.job.root_snapshot_name
        return self.clock().strftime(get_setting("snapshot_name_format"))

    def transient_name(self, name: str, source_root: Volume, graph: SubvolumeGraph) -> str:
        """Source-side snapshot name; ``name`` unless that is already taken."""
        taken = {subvolume.relative_path for subvolume in graph}
        if name not in taken and not self.runner.exists(posixpath.join(source_root.mount_path, name)):
            return name
        return f"{name}.{uuid.uuid4().hex[:8]}"

    # ------------------------------------------------------------------
    # Phase 3: root transfer
    # ------------------------------------------------------------------

    def transfer_root(self, source_root: Volume, destination_root: Volume, graph: SubvolumeGraph) -> None:
        """Copy the top-level subvolume's own content into a new destination subvolume."""
        name = self.snapshot_name()
        transient = self.transient_name(name, source_root, graph)
        source_snapshot = posixpath.join(source_root.mount_path, transient)
        self.log.info(f"Replicating root of {source_root.mount_path} as {name}")

        if not self._record(
            Step.SNAPSHOT,
            source_snapshot,
            self.btrfs.snapshot(source_root.mount_path, source_snapshot, read_only=True),
        ):
            self.log.warning("Root snapshot missing; skipping root transfer")
            return

        sent = self._record(
            Step.TRANSFER,
            source_snapshot,
            self.btrfs.send_receive(source_snapshot, destination_root.mount_path),
        )
        self._record(Step.DELETE, source_snapshot, self.btrfs.delete(source_snapshot))
        if not sent:
            return

        received = posixpath.join(destination_root.mount_path, transient)
        if transient != name:
            renamed = posixpath.join(destination_root.mount_path, name)
            if self._record(Step.RENAME, received, self.btrfs.rename(received, renamed)):
                received = renamed

        self._record(Step.SET_WRITABLE, received, self.btrfs.set_read_only(received, False))
        self.report.new_root_path = "/" + posixpath.basename(received)
        self.report.new_root_id = self.btrfs.root_id(received)
        if self.report.new_root_id is not None:
            self.log.info(
                f"Replicated root is subvolume {self.report.new_root_id} at {self.report.new_root_path}"
            )

    # ------------------------------------------------------------------
    # Phase 4: destination onto the replicated root
    # ------------------------------------------------------------------

    def mount_new_root(self, binding: MountBinding) -> Volume:
        """Bind the destination mount to the replicated root subvolume.

        Without a replicated root the subvolumes are received at the top level
        of the destination instead.
        """
        volume = binding.current
        new_root_id, new_root_path = self.report.new_root_id, self.report.new_root_path
        if new_root_path is None:
            self.log.warning(
                f"No replicated root; receiving subvolumes at the top level of {volume.mount_path}"
            )
            return volume
        if new_root_id is None:
            if self.runner.dry_run:
                # Nothing was received, so there is no id to resolve yet.
                self.runner.note(
                    f"remount {volume.device} on {volume.mount_path} "
                    f"(subvolid=<id of {new_root_path}>)"
                )
                return volume
            self._record_failure(
                Step.REMOUNT,
                volume.mount_path,
                f"cannot resolve the subvolume id of {new_root_path}",
            )
            return volume
        return binding.bind(new_root_id, new_root_path)

    # ------------------------------------------------------------------
    # Phase 6: subvolume transfers
    # ------------------------------------------------------------------

    def transfer_subvolumes(self, graph: SubvolumeGraph, source_root: Volume, destination: Volume) -> None:
        plan = plan_transfers(graph)
        self.report.plan = plan
        for entry in plan:
            self.transfer_subvolume(entry, source_root, destination)

    def transfer_subvolume(self, entry: PlanEntry, source_root: Volume, destination: Volume) -> bool:
        subvolume = entry.subvolume
        source_path = posixpath.join(source_root.mount_path, subvolume.relative_path)
        receive_directory = posixpath.normpath(
            posixpath.join(destination.mount_path, entry.receive_directory)
        )
        received = posixpath.join(receive_directory, posixpath.basename(subvolume.relative_path))

        if entry.receive_directory:
            if not self._record(
                Step.MKDIR, receive_directory, self.runner.execute(["mkdir", "-p", receive_directory])
            ):
                return False

        if self.runner.is_directory(received):
            # rmdir refuses anything but the empty placeholder left by the root snapshot.
            if not self._record(Step.RMDIR, received, self.runner.execute(["rmdir", received])):
                return False

        parent_path = None
        if entry.mode.is_incremental:
            parent_path = posixpath.join(source_root.mount_path, entry.mode.parent_path)

        EventLogger.log_transfer_started(
            self.log, subvolume.relative_path, entry.mode.kind.value, entry.mode.parent_path
        )
        if not self._record(
            Step.TRANSFER,
            source_path,
            self.btrfs.send_receive(source_path, receive_directory, parent=parent_path),
        ):
            return False

        if subvolume.is_read_only:
            # Read-only at the source before this run; keep it that way.
            return True
        return self._record(Step.SET_WRITABLE, received, self.btrfs.set_read_only(received, False))

    # ------------------------------------------------------------------
    # Phase 9: fstab
    # ------------------------------------------------------------------

    def update_fstab(self, destination: Volume) -> Optional[StepResult]:
        if self.runner.dry_run and self.report.new_root_id is None and self.report.new_root_path:
            # Nothing was received, so there is no id to resolve yet.
            self.runner.note(
                f"update {self.job.fstab_path}: {destination.mount_path} -> "
                f"subvolid=<id of {self.report.new_root_path}>,subvol={self.report.new_root_path}"
            )
            return self.report.record(
                StepResult.success(Step.FSTAB, self.job.fstab_path, "dry-run")
            )
        if self.report.new_root_id is None or self.report.new_root_path is None:
            message = "cannot resolve the subvolume id of the replicated root"
            self.log.warning(f"Skipping fstab update: {message}")
            return self.report.record(
                StepResult.failure(Step.FSTAB, self.job.fstab_path, message)
            )
        return self.report.record(
            patch_fstab(
                self.job.fstab_path,
                destination.mount_path,
                self.report.new_root_id,
                self.report.new_root_path,
                self.runner,
                backup=get_bool("fstab_backup", True),
                device=destination.device,
            )
        )


def replicate(job: ReplicationJob, runner: Optional[CommandRunner] = None) -> ReplicationReport:
    """Run ``job`` and return its report."""
    return Replicator(job, runner=runner).run()
