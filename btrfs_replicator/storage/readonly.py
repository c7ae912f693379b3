"""Read-only flag management for source subvolumes.

``btrfs send`` only accepts read-only subvolumes, and a read-only source
guarantees that what is sent is a frozen point-in-time view. Before the
transfer loop every writable source subvolume is switched to read-only;
afterwards exactly those subvolumes are switched back.

The memo holds only the subvolumes whose flag this run changed. A
subvolume that was already read-only is never memoized and so is never
made writable by ``restore()``.

Usage:
    manager = ReadOnlyStateManager(btrfs, "/mnt/source", report)
    with read_only_session(manager, graph):
        ...  # transfer subvolumes
"""

from __future__ import annotations

import posixpath
from contextlib import contextmanager
from typing import Generator, Optional

from btrfs_replicator.domain import (
    ReplicationReport,
    Step,
    StepResult,
    Subvolume,
    SubvolumeGraph,
)
from btrfs_replicator.logging import EventLogger, LoggerFactory

from .btrfs import Btrfs


log = LoggerFactory.for_btrfs()


class ReadOnlyStateManager:
    """Forces source subvolumes read-only and restores them afterwards."""

    def __init__(self, btrfs: Btrfs, root_path: str, report: ReplicationReport | None = None):
        self.btrfs = btrfs
        self.root_path = root_path
        self.report = report if report is not None else ReplicationReport()
        self._memo: list[str] = []
        self._restored = False

    @property
    def memo(self) -> tuple[str, ...]:
        """Relative paths whose read-only flag was changed by this run."""
        return tuple(self._memo)

    def path_for(self, subvolume: Subvolume) -> str:
        return posixpath.join(self.root_path, subvolume.relative_path)

    def capture(self, graph: SubvolumeGraph) -> None:
        """Record the current read-only flag of every subvolume.

        A failed or ambiguous query is logged and the subvolume is treated
        as writable, so it will be forced read-only (and restored later).
        """
        for subvolume in graph:
            path = self.path_for(subvolume)
            read_only, result = self.btrfs.get_read_only(path)
            if read_only is None:
                reason = result.message if not result.ok else f"unexpected output {result.stdout.strip()!r}"
                log.warning(f"Cannot read ro flag of {path} ({reason}); assuming writable")
                read_only = False
            subvolume.is_read_only = read_only
            log.debug(f"{subvolume.relative_path}: ro={str(read_only).lower()}")

    def force_read_only(self, subvolume: Subvolume) -> Optional[StepResult]:
        """Make ``subvolume`` read-only unless it already is.

        Returns:
            The step outcome, or None when nothing had to be done
        """
        if subvolume.is_read_only:
            return None
        path = self.path_for(subvolume)
        result = self.btrfs.set_read_only(path, True)
        if not result.ok:
            EventLogger.log_step_failed(log, Step.SET_READ_ONLY.value, path, result.message)
            return self.report.record(
                StepResult.failure(Step.SET_READ_ONLY, path, result.message)
            )
        self._memo.append(subvolume.relative_path)
        return self.report.record(StepResult.success(Step.SET_READ_ONLY, path))

    def force_all(self, graph: SubvolumeGraph) -> None:
        for subvolume in graph:
            self.force_read_only(subvolume)
        log.info(f"Set {len(self._memo)} subvolumes read-only for the transfer")

    def restore(self) -> list[StepResult]:
        """Make every memoized subvolume writable again, newest first.

        Runs once; later calls do nothing. Failures are logged and the
        remaining subvolumes are still restored.
        """
        if self._restored:
            return []
        self._restored = True
        results = []
        for relative_path in reversed(self._memo):
            path = posixpath.join(self.root_path, relative_path)
            result = self.btrfs.set_read_only(path, False)
            if result.ok:
                step = StepResult.success(Step.SET_WRITABLE, path)
            else:
                EventLogger.log_step_failed(log, Step.SET_WRITABLE.value, path, result.message)
                step = StepResult.failure(Step.SET_WRITABLE, path, result.message)
            results.append(self.report.record(step))
        if self._memo:
            log.info(f"Restored ro=false on {len(self._memo)} subvolumes")
        return results


@contextmanager
def read_only_session(
    manager: ReadOnlyStateManager, graph: SubvolumeGraph
) -> Generator[ReadOnlyStateManager, None, None]:
    """Capture and force read-only flags; restore them on every exit path."""
    try:
        manager.capture(graph)
        manager.force_all(graph)
        yield manager
    finally:
        manager.restore()
