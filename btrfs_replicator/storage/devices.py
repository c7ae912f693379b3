"""Volume location using lsblk and the mount table.

This module answers one question for the replicator: which device backs a
given path, is it btrfs, and which subvolume is currently mounted there.

Device Detection:
    ``lsblk -J`` returns a JSON device tree (disks with their partitions as
    ``children``). Each node carries ``name``, ``path``, ``type``, ``fstype``
    and ``mountpoint``. It is used to confirm the filesystem type of the
    backing device.

Mount Table:
    ``mount`` prints one line per mount::

        /dev/sdb on /build type btrfs (rw,relatime,subvolid=256,subvol=/data)

    The options carry the active subvolume binding. Without explicit
    ``subvolid``/``subvol`` options the top-level subvolume (id 5, "/") is
    assumed.

Operations:
    - get_block_devices(): lsblk device tree
    - find_block_device(): lookup of a device node in that tree
    - read_mount_table() / parse_mount_table(): mount table entries
    - parse_mount_options(): option string to mapping
    - locate_volume(): the Volume Locator
"""

from __future__ import annotations

import json
import posixpath
import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from btrfs_replicator.domain import TOP_LEVEL_SUBVOLUME_ID, Volume
from btrfs_replicator.logging import LoggerFactory

from .commands import CommandRunner
from .exceptions import UnsupportedFilesystemError

SUPPORTED_FSTYPE = "btrfs"

LSBLK_COMMAND = ["lsblk", "-J", "-o", "NAME,PATH,TYPE,FSTYPE,MOUNTPOINT"]
MOUNT_COMMAND = ["mount"]

MOUNT_LINE_RE = re.compile(
    r"^(?P<device>\S+) on (?P<path>.+?) type (?P<fstype>\S+) \((?P<options>[^)]*)\)\s*$"
)

log = LoggerFactory.for_mount()


@dataclass(frozen=True)
class MountEntry:
    device: str
    path: str
    fstype: str
    options: dict[str, Optional[str]]

    @property
    def subvolume_id(self) -> Optional[int]:
        value = self.options.get("subvolid")
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            return None

    @property
    def subvolume_path(self) -> Optional[str]:
        return self.options.get("subvol")


def parse_mount_options(options: str) -> dict[str, Optional[str]]:
    """Split ``rw,relatime,subvolid=5`` into ``{"rw": None, ..., "subvolid": "5"}``."""
    parsed: dict[str, Optional[str]] = {}
    for option in options.split(","):
        option = option.strip()
        if not option:
            continue
        key, sep, value = option.partition("=")
        parsed[key] = value if sep else None
    return parsed


def parse_mount_table(output: str) -> list[MountEntry]:
    entries = []
    for line in output.splitlines():
        match = MOUNT_LINE_RE.match(line.strip())
        if not match:
            continue
        entries.append(
            MountEntry(
                device=match.group("device"),
                path=match.group("path"),
                fstype=match.group("fstype"),
                options=parse_mount_options(match.group("options")),
            )
        )
    return entries


def read_mount_table(runner: CommandRunner) -> list[MountEntry]:
    result = runner.query(MOUNT_COMMAND)
    if not result.ok:
        log.warning(f"mount table query failed: {result.message}")
        return []
    return parse_mount_table(result.stdout)


def find_mount_entry(entries: Iterable[MountEntry], path: str) -> Optional[MountEntry]:
    """Return the effective mount at ``path``; later mounts shadow earlier ones."""
    path = posixpath.normpath(path)
    found = None
    for entry in entries:
        if posixpath.normpath(entry.path) == path:
            found = entry
    return found


def get_block_devices(runner: CommandRunner) -> list[dict[str, Any]]:
    """Return the lsblk device tree, or an empty list if lsblk is unusable."""
    result = runner.query(LSBLK_COMMAND)
    if not result.ok:
        log.debug(f"lsblk failed: {result.message}")
        return []
    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as error:
        log.debug(f"lsblk returned invalid JSON: {error}")
        return []
    return data.get("blockdevices", []) or []


def get_children(device: dict[str, Any]) -> list[dict[str, Any]]:
    return device.get("children", []) or []


def _iter_devices(devices: Iterable[dict[str, Any]]) -> Iterable[dict[str, Any]]:
    for device in devices:
        yield device
        yield from _iter_devices(get_children(device))


def find_block_device(devices: Iterable[dict[str, Any]], device_path: str) -> Optional[dict[str, Any]]:
    """Find a device node by path (``/dev/sdb1``) or name (``sdb1``)."""
    name = posixpath.basename(device_path)
    for device in _iter_devices(devices):
        if device.get("path") == device_path or device.get("name") == name:
            return device
    return None


def locate_volume(path: str, runner: CommandRunner) -> Volume:
    """Identify the btrfs filesystem mounted at ``path``.

    Raises:
        UnsupportedFilesystemError: If ``path`` is not a mount point, or the
            mount or its backing device is not btrfs
    """
    entry = find_mount_entry(read_mount_table(runner), path)
    if entry is None:
        raise UnsupportedFilesystemError(path, "not a mount point")
    if entry.fstype != SUPPORTED_FSTYPE:
        raise UnsupportedFilesystemError(path, f"mounted as {entry.fstype}")

    block_device = find_block_device(get_block_devices(runner), entry.device)
    if block_device is not None:
        fstype = block_device.get("fstype")
        if fstype and fstype != SUPPORTED_FSTYPE:
            raise UnsupportedFilesystemError(path, f"{entry.device} holds {fstype}")
    else:
        log.debug(f"{entry.device} not found in lsblk output, trusting mount table")

    subvolume_id = entry.subvolume_id
    if subvolume_id is None:
        subvolume_id = TOP_LEVEL_SUBVOLUME_ID
    subvolume_path = entry.subvolume_path or "/"

    volume = Volume(
        device=entry.device,
        mount_path=posixpath.normpath(path),
        subvolume_id=subvolume_id,
        subvolume_path=subvolume_path,
    )
    log.debug(f"Located {volume}")
    return volume
