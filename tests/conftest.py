"""
Pytest configuration and shared fixtures for btrfs-replicator tests.

This module provides common fixtures and utilities used across all test modules.
No test touches a real filesystem: every external command goes through a
scripted ``FakeRunner``.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

import pytest
from loguru import logger

from btrfs_replicator.config import settings
from btrfs_replicator.storage.commands import CommandResult, CommandRunner


# ==============================================================================
# Scripted Command Runner
# ==============================================================================


class FakeRunner(CommandRunner):
    """CommandRunner that answers from a script instead of spawning processes.

    Responses are matched on a command prefix; the most recently added
    matching response wins. Unmatched commands succeed with empty output.
    Every command that would have reached a subprocess is appended to
    ``calls``; dry-run recording still goes through the real runner.
    """

    def __init__(self, dry_run: bool = False):
        super().__init__(dry_run=dry_run)
        self.calls: List[Tuple[str, ...]] = []
        self._responses: List[Tuple[Tuple[str, ...], int, str, str]] = []

    def respond(self, prefix: Sequence[str], stdout: str = "", returncode: int = 0, stderr: str = ""):
        self._responses.insert(0, (tuple(prefix), returncode, stdout, stderr))

    def fail(self, prefix: Sequence[str], stderr: str = "ERROR: operation failed"):
        self.respond(prefix, returncode=1, stderr=stderr)

    def _lookup(self, command: Tuple[str, ...]) -> CommandResult:
        for prefix, returncode, stdout, stderr in self._responses:
            if command[: len(prefix)] == prefix:
                return CommandResult(command, returncode, stdout, stderr)
        return CommandResult(command, 0)

    def _run(self, command, input_text=None) -> CommandResult:
        command = tuple(str(part) for part in command)
        self.calls.append(command)
        return self._lookup(command)

    def pipe(self, producer, consumer) -> CommandResult:
        if self.dry_run:
            return super().pipe(producer, consumer)
        command = tuple(producer) + ("|",) + tuple(consumer)
        self.calls.append(command)
        return self._lookup(command)

    def called(self, *prefix: str) -> List[Tuple[str, ...]]:
        """All recorded calls starting with ``prefix``."""
        return [call for call in self.calls if call[: len(prefix)] == prefix]


@pytest.fixture
def runner() -> FakeRunner:
    """Fixture providing a scripted runner in normal (mutating) mode."""
    return FakeRunner()


@pytest.fixture
def dry_runner() -> FakeRunner:
    """Fixture providing a scripted runner in dry-run mode."""
    return FakeRunner(dry_run=True)


# ==============================================================================
# Tool Output Fixtures
# ==============================================================================


@pytest.fixture
def mock_mount_output() -> str:
    """
    Fixture providing ``mount`` output with two root-mounted btrfs filesystems.

    Returns:
        String as printed by mount(8).
    """
    return (
        "sysfs on /sys type sysfs (rw,nosuid,nodev,noexec,relatime)\n"
        "/dev/sda1 on / type ext4 (rw,relatime,errors=remount-ro)\n"
        "/dev/sdb on /mnt/src type btrfs (rw,relatime,space_cache=v2,subvolid=5,subvol=/)\n"
        "/dev/sdc on /mnt/dst type btrfs (rw,relatime,space_cache=v2,subvolid=5,subvol=/)\n"
    )


@pytest.fixture
def mock_mount_output_subvolumes() -> str:
    """Fixture providing ``mount`` output where both sides are bound to a subvolume."""
    return (
        "/dev/sda1 on / type ext4 (rw,relatime,errors=remount-ro)\n"
        "/dev/sdb on /mnt/src type btrfs (rw,relatime,space_cache=v2,subvolid=256,subvol=/root)\n"
        "/dev/sdc on /mnt/dst type btrfs (rw,relatime,space_cache=v2,subvolid=300,subvol=/data)\n"
    )


@pytest.fixture
def mock_block_devices() -> List[Dict[str, Any]]:
    """Fixture providing the lsblk device tree for the mount output fixtures."""
    return [
        {
            "name": "sda",
            "path": "/dev/sda",
            "type": "disk",
            "fstype": None,
            "mountpoint": None,
            "children": [
                {
                    "name": "sda1",
                    "path": "/dev/sda1",
                    "type": "part",
                    "fstype": "ext4",
                    "mountpoint": "/",
                }
            ],
        },
        {
            "name": "sdb",
            "path": "/dev/sdb",
            "type": "disk",
            "fstype": "btrfs",
            "mountpoint": "/mnt/src",
        },
        {
            "name": "sdc",
            "path": "/dev/sdc",
            "type": "disk",
            "fstype": "btrfs",
            "mountpoint": "/mnt/dst",
        },
    ]


@pytest.fixture
def mock_lsblk_output(mock_block_devices) -> str:
    """Fixture providing the JSON output of ``lsblk -J``."""
    return json.dumps({"blockdevices": mock_block_devices})


@pytest.fixture
def mock_subvolume_listing() -> str:
    """
    Fixture providing ``btrfs subvolume list -c -q -u --sort=ogen`` output.

    ``root`` was created first, ``A`` is a snapshot of ``root`` and ``B`` a
    snapshot of ``A``.
    """
    return (
        "ID 256 gen 40 cgen 8 top level 5 parent_uuid - "
        "uuid 11111111-aaaa-4000-8000-000000000001 path root\n"
        "ID 257 gen 41 cgen 9 top level 5 parent_uuid 11111111-aaaa-4000-8000-000000000001 "
        "uuid 22222222-bbbb-4000-8000-000000000002 path A\n"
        "ID 258 gen 42 cgen 10 top level 5 parent_uuid 22222222-bbbb-4000-8000-000000000002 "
        "uuid 33333333-cccc-4000-8000-000000000003 path B\n"
    )


@pytest.fixture
def scripted_runner(runner, mock_mount_output, mock_lsblk_output, mock_subvolume_listing) -> FakeRunner:
    """
    Fixture providing a runner scripted for a complete replication of
    ``/mnt/src`` onto ``/mnt/dst``.

    All subvolumes report ``ro=false``, the replicated root resolves to
    subvolume id 259, no path named like the root snapshot exists yet, and
    every subvolume has a placeholder directory in the replicated root.
    """
    runner.respond(["mount"], mock_mount_output)
    runner.respond(["lsblk"], mock_lsblk_output)
    runner.respond(["btrfs", "subvolume", "list"], mock_subvolume_listing)
    runner.respond(["btrfs", "property", "get"], "ro=false\n")
    runner.respond(["btrfs", "inspect-internal", "rootid"], "259\n")
    runner.respond(["test", "-e"], returncode=1)
    return runner


@pytest.fixture
def scripted_dry_runner(dry_runner, mock_mount_output, mock_lsblk_output, mock_subvolume_listing) -> FakeRunner:
    """Same script as ``scripted_runner`` but in dry-run mode."""
    dry_runner.respond(["mount"], mock_mount_output)
    dry_runner.respond(["lsblk"], mock_lsblk_output)
    dry_runner.respond(["btrfs", "subvolume", "list"], mock_subvolume_listing)
    dry_runner.respond(["btrfs", "property", "get"], "ro=false\n")
    dry_runner.fail(["btrfs", "inspect-internal", "rootid"], "ERROR: cannot access")
    dry_runner.respond(["test", "-e"], returncode=1)
    return dry_runner


# ==============================================================================
# File Fixtures
# ==============================================================================


@pytest.fixture
def fstab_file(tmp_path) -> Path:
    """
    Fixture providing an fstab with an entry for the destination mount.

    Args:
        tmp_path: pytest's built-in temporary directory fixture.

    Returns:
        Path to the fstab file.
    """
    path = tmp_path / "fstab"
    path.write_text(
        "# /etc/fstab: static file system information.\n"
        "UUID=0a1b2c3d / ext4 errors=remount-ro 0 1\n"
        "/dev/sdb /mnt/src btrfs rw,relatime 0 0\n"
        "/dev/sdc /mnt/dst btrfs rw,relatime,subvolid=5,subvol=/ 0 0  # destination\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def temp_settings_file(tmp_path) -> Path:
    """Fixture providing a path for a settings file inside tmp_path."""
    settings_dir = tmp_path / "btrfs-replicator"
    settings_dir.mkdir()
    return settings_dir / "settings.json"


@pytest.fixture(autouse=True)
def reset_settings():
    """Every test starts from the default settings."""
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    yield
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)


@pytest.fixture
def log_records():
    """
    Fixture capturing loguru records in a list.

    Returns:
        List that receives the ``record`` dict of every message.
    """
    records: List[dict] = []
    handler_id = logger.add(lambda message: records.append(message.record), level="TRACE")
    yield records
    try:
        logger.remove(handler_id)
    except ValueError:
        # setup_logging() already removed every handler
        pass
