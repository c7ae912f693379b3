"""Subvolume listing, lineage graph and transfer planning.

The only ancestry information btrfs exposes is a flat list of
``uuid``/``parent_uuid`` pairs. Listing the subvolumes sorted by creation
generation (``--sort=ogen``) yields them in the order they were created,
which is also an order in which every snapshot comes after the subvolume it
was taken from. Walking the list in that order therefore never needs a
parent that has not been seen yet, and no topological sort is required.

Listing line format (``btrfs subvolume list -c -q -u``)::

    ID 257 gen 12 cgen 11 top level 5 parent_uuid - uuid 0b3c... path home

A ``parent_uuid`` of ``-`` means the subvolume was not snapshotted from
another one (or its origin is unknown).
"""

from __future__ import annotations

import re

from btrfs_replicator.domain import (
    NO_PARENT_UUID,
    PlanEntry,
    Subvolume,
    SubvolumeGraph,
    TransferMode,
)
from btrfs_replicator.logging import LoggerFactory

from .btrfs import Btrfs
from .exceptions import ListingUnavailableError

LISTING_LINE_RE = re.compile(
    r"^ID (?P<id>\d+) gen (?P<gen>\d+)"
    r"(?: cgen (?P<cgen>\d+))?"
    r" top level (?P<top_level>\d+)"
    r"(?: parent_uuid (?P<parent_uuid>\S+))?"
    r"(?: received_uuid \S+)?"
    r" uuid (?P<uuid>\S+)"
    r" path (?P<path>.+)$"
)
FS_TREE_PREFIX = "<FS_TREE>/"

log = LoggerFactory.for_btrfs()


def parse_listing_line(line: str) -> Subvolume:
    """Parse one listing record.

    Raises:
        ValueError: If the line is not a subvolume record
    """
    match = LISTING_LINE_RE.match(line.strip())
    if not match:
        raise ValueError(f"unrecognised subvolume record: {line.strip()!r}")
    parent_uuid = match.group("parent_uuid")
    if parent_uuid in (None, NO_PARENT_UUID):
        parent_uuid = None
    path = match.group("path")
    if path.startswith(FS_TREE_PREFIX):
        path = path[len(FS_TREE_PREFIX):]
    cgen = match.group("cgen")
    return Subvolume(
        relative_path=path,
        id=int(match.group("id")),
        generation=int(match.group("gen")),
        top_level_id=int(match.group("top_level")),
        parent_uuid=parent_uuid,
        uuid=match.group("uuid"),
        creation_generation=int(cgen) if cgen is not None else None,
    )


def parse_listing(output: str, path: str = "<listing>") -> SubvolumeGraph:
    """Build a graph from listing output.

    Records are ordered by creation generation; subvolumes with the same
    generation keep their listed order.

    Raises:
        ListingUnavailableError: If any non-empty line cannot be parsed
    """
    subvolumes = []
    for number, line in enumerate(output.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            subvolumes.append(parse_listing_line(line))
        except ValueError as error:
            raise ListingUnavailableError(path, f"line {number}: {error}") from error

    subvolumes.sort(key=lambda subvolume: subvolume.ordering_generation)
    return SubvolumeGraph(subvolumes)


def build_graph(btrfs: Btrfs, root_path: str) -> SubvolumeGraph:
    """List and parse all subvolumes below the filesystem root at ``root_path``.

    Raises:
        ListingUnavailableError: If the listing cannot be run or parsed
    """
    result = btrfs.list_subvolumes(root_path)
    if not result.ok:
        raise ListingUnavailableError(root_path, result.message)
    graph = parse_listing(result.stdout, root_path)
    log.info(f"Found {len(graph)} subvolumes below {root_path}")
    for subvolume in graph:
        log.debug(
            f"Subvolume {subvolume} gen {subvolume.ordering_generation} "
            f"parent {subvolume.parent_uuid or '-'} uuid {subvolume.uuid}"
        )
    return graph


def plan_transfers(graph: SubvolumeGraph) -> list[PlanEntry]:
    """Choose full or incremental transfer for every subvolume, in graph order.

    A subvolume is sent incrementally against its parent when the parent is
    part of the graph, and therefore transferred earlier in the same run.
    Otherwise (no parent, or the parent was deleted or lives outside this
    filesystem) it is sent in full.
    """
    plan = []
    seen: set[str] = set()
    for subvolume in graph:
        parent_path = graph.path_of(subvolume.parent_uuid)
        if parent_path is not None and subvolume.parent_uuid in seen:
            mode = TransferMode.incremental(parent_path)
        else:
            if parent_path is not None:
                log.warning(
                    f"Parent {parent_path} of {subvolume.relative_path} is ordered "
                    f"after it; sending in full"
                )
            mode = TransferMode.full()
        plan.append(PlanEntry(subvolume, mode))
        seen.add(subvolume.uuid)
    return plan
