"""Domain model for btrfs replication runs.

These types replace the raw tool output (mount table lines, subvolume
listings) that the storage layer parses, so the executor only deals with
typed values.
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterator


TOP_LEVEL_SUBVOLUME_ID = 5
NO_PARENT_UUID = "-"


# ==============================================================================
# Volume Domain
# ==============================================================================


@dataclass(frozen=True)
class Volume:
    """The current mount binding of one btrfs filesystem.

    Never mutated: a remount produces a new record through ``rebind``.
    """

    device: str  # e.g., "/dev/sdb1"
    mount_path: str  # e.g., "/build"
    subvolume_id: int = TOP_LEVEL_SUBVOLUME_ID
    subvolume_path: str = "/"

    @property
    def is_root_mounted(self) -> bool:
        """True when the mount exposes the top-level subvolume."""
        return self.subvolume_id == TOP_LEVEL_SUBVOLUME_ID

    def rebind(self, subvolume_id: int, subvolume_path: str) -> Volume:
        return replace(self, subvolume_id=subvolume_id, subvolume_path=subvolume_path)

    def __str__(self) -> str:
        return f"{self.device} on {self.mount_path} (subvolid={self.subvolume_id}, subvol={self.subvolume_path})"


# ==============================================================================
# Subvolume Domain
# ==============================================================================


@dataclass
class Subvolume:
    """One node of a filesystem's subvolume tree.

    ``relative_path`` is relative to the top-level subvolume. ``is_read_only``
    is filled in by the read-only state manager, not by the listing.
    """

    relative_path: str
    id: int
    generation: int
    top_level_id: int
    parent_uuid: str | None
    uuid: str
    creation_generation: int | None = None
    is_read_only: bool = False

    @property
    def ordering_generation(self) -> int:
        """Creation generation when known, otherwise the listed generation."""
        if self.creation_generation is not None:
            return self.creation_generation
        return self.generation

    def __str__(self) -> str:
        return f"{self.relative_path}({self.id})"


class SubvolumeGraph:
    """Subvolumes in creation order plus a uuid lookup.

    Records are kept in an arena addressed by index; ``uuid -> index`` gives
    the lineage without object references between subvolumes. A parent
    created from the same filesystem always has a smaller creation generation
    than its snapshots, so it always sits at a lower index.
    """

    def __init__(self, subvolumes: list[Subvolume] | None = None):
        self._subvolumes: list[Subvolume] = []
        self._index_by_uuid: dict[str, int] = {}
        for subvolume in subvolumes or []:
            self.add(subvolume)

    def add(self, subvolume: Subvolume) -> int:
        index = len(self._subvolumes)
        self._subvolumes.append(subvolume)
        self._index_by_uuid.setdefault(subvolume.uuid, index)
        return index

    def __len__(self) -> int:
        return len(self._subvolumes)

    def __iter__(self) -> Iterator[Subvolume]:
        return iter(self._subvolumes)

    def __getitem__(self, index: int) -> Subvolume:
        return self._subvolumes[index]

    def __contains__(self, uuid: object) -> bool:
        return uuid in self._index_by_uuid

    def path_of(self, uuid: str | None) -> str | None:
        """Relative path of the subvolume with ``uuid``, if it is listed."""
        if uuid is None:
            return None
        index = self._index_by_uuid.get(uuid)
        if index is None:
            return None
        return self._subvolumes[index].relative_path


# ==============================================================================
# Replication Plan Domain
# ==============================================================================


class TransferKind(Enum):
    """How a subvolume is sent to the destination."""

    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass(frozen=True)
class TransferMode:
    kind: TransferKind
    parent_path: str | None = None

    @classmethod
    def full(cls) -> TransferMode:
        return cls(TransferKind.FULL)

    @classmethod
    def incremental(cls, parent_path: str) -> TransferMode:
        return cls(TransferKind.INCREMENTAL, parent_path)

    @property
    def is_incremental(self) -> bool:
        return self.kind is TransferKind.INCREMENTAL

    def __str__(self) -> str:
        if self.is_incremental:
            return f"incremental from {self.parent_path}"
        return "full"


@dataclass(frozen=True)
class PlanEntry:
    subvolume: Subvolume
    mode: TransferMode

    @property
    def receive_directory(self) -> str:
        """Directory, relative to the destination root, that receives the subvolume."""
        return posixpath.dirname(self.subvolume.relative_path)


# ==============================================================================
# Run Report Domain
# ==============================================================================


class Step(Enum):
    """Mutating steps whose outcome is recorded in the report."""

    REMOUNT = "remount"
    SNAPSHOT = "snapshot"
    TRANSFER = "transfer"
    DELETE = "delete"
    RENAME = "rename"
    SET_READ_ONLY = "set-read-only"
    SET_WRITABLE = "set-writable"
    MKDIR = "mkdir"
    RMDIR = "rmdir"
    FSTAB = "fstab"


@dataclass(frozen=True)
class StepResult:
    """Outcome of one non-fatal step."""

    step: Step
    target: str
    ok: bool
    message: str = ""

    @classmethod
    def success(cls, step: Step, target: str, message: str = "") -> StepResult:
        return cls(step, target, True, message)

    @classmethod
    def failure(cls, step: Step, target: str, message: str) -> StepResult:
        return cls(step, target, False, message)


@dataclass
class ReplicationReport:
    """Best-effort record of everything a run attempted."""

    results: list[StepResult] = field(default_factory=list)
    plan: list[PlanEntry] = field(default_factory=list)
    new_root_path: str | None = None
    new_root_id: int | None = None

    def record(self, result: StepResult) -> StepResult:
        self.results.append(result)
        return result

    @property
    def failures(self) -> list[StepResult]:
        return [result for result in self.results if not result.ok]

    @property
    def succeeded(self) -> bool:
        return not self.failures

    def count(self, kind: TransferKind) -> int:
        return sum(1 for entry in self.plan if entry.mode.kind is kind)


# ==============================================================================
# Replication Job
# ==============================================================================


@dataclass(frozen=True)
class ReplicationJob:
    """A replication request as given on the command line."""

    source: str
    destination: str
    dry_run: bool = False
    root_snapshot_name: str | None = None
    edit_fstab: bool = False
    fstab_path: str = "/etc/fstab"
    btrfs_command: str = "btrfs"

    def validate(self) -> None:
        """Validate the job's arguments.

        Raises:
            ValueError: If validation fails with a descriptive error message
        """
        for label, path in (("source", self.source), ("destination", self.destination)):
            if not path:
                raise ValueError(f"{label} path is empty")
            if not posixpath.isabs(path):
                raise ValueError(f"{label} path must be absolute: {path}")

        if posixpath.normpath(self.source) == posixpath.normpath(self.destination):
            raise ValueError(
                f"Source and destination cannot be the same path: {self.source}"
            )

        if self.root_snapshot_name is not None:
            name = self.root_snapshot_name
            if not name or "/" in name or name in (".", ".."):
                raise ValueError(f"Invalid root snapshot name: {name!r}")
