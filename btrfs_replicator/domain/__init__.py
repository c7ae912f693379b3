"""Domain models for btrfs replication runs."""

from __future__ import annotations

from .models import (
    NO_PARENT_UUID,
    TOP_LEVEL_SUBVOLUME_ID,
    PlanEntry,
    ReplicationJob,
    ReplicationReport,
    Step,
    StepResult,
    Subvolume,
    SubvolumeGraph,
    TransferKind,
    TransferMode,
    Volume,
)


__all__ = [
    "NO_PARENT_UUID",
    "TOP_LEVEL_SUBVOLUME_ID",
    "PlanEntry",
    "ReplicationJob",
    "ReplicationReport",
    "Step",
    "StepResult",
    "Subvolume",
    "SubvolumeGraph",
    "TransferKind",
    "TransferMode",
    "Volume",
]
