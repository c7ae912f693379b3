"""Thin wrapper around the ``btrfs`` command line tool.

Each method maps to exactly one tool invocation (or one send/receive
pipeline) and returns the raw ``CommandResult``; interpretation of the
outcome is left to the caller. Queries are run even under dry-run,
mutations are recorded only.

Operations:
    - list_subvolumes(): ``btrfs subvolume list -c -q -u --sort=ogen``
    - get_read_only(): ``btrfs property get -ts <path> ro``
    - set_read_only(): ``btrfs property set -ts <path> ro true|false``
    - snapshot(): ``btrfs subvolume snapshot [-r]``
    - send_receive(): ``btrfs send [-p parent] <src> | btrfs receive <dir>``
    - delete(): ``btrfs subvolume delete``
    - root_id(): ``btrfs inspect-internal rootid``
    - rename(): ``mv -T`` (subvolumes are renamed like directories)
"""

from __future__ import annotations

from typing import Optional

from btrfs_replicator.logging import LoggerFactory

from .commands import CommandResult, CommandRunner


log = LoggerFactory.for_btrfs()


def parse_read_only(output: str) -> Optional[bool]:
    """Parse ``ro=true`` / ``ro=false`` from ``btrfs property get``.

    Returns None when the output does not contain exactly one recognisable
    ``ro`` value.
    """
    values = []
    for line in output.splitlines():
        key, sep, value = line.strip().partition("=")
        if sep and key.strip() == "ro":
            values.append(value.strip().lower())
    if len(values) != 1:
        return None
    if values[0] == "true":
        return True
    if values[0] == "false":
        return False
    return None


class Btrfs:
    """btrfs commands bound to a runner and an executable path."""

    def __init__(self, runner: CommandRunner, command: str = "btrfs"):
        self.runner = runner
        self.command = command

    def _cmd(self, *args: str) -> list[str]:
        return [self.command, *args]

    def list_subvolumes(self, path: str) -> CommandResult:
        return self.runner.query(
            self._cmd("subvolume", "list", "-c", "-q", "-u", "--sort=ogen", path)
        )

    def get_read_only(self, path: str) -> tuple[Optional[bool], CommandResult]:
        result = self.runner.query(self._cmd("property", "get", "-ts", path, "ro"))
        if not result.ok:
            return None, result
        return parse_read_only(result.stdout), result

    def set_read_only(self, path: str, read_only: bool) -> CommandResult:
        value = "true" if read_only else "false"
        return self.runner.execute(self._cmd("property", "set", "-ts", path, "ro", value))

    def snapshot(self, source: str, target: str, read_only: bool = True) -> CommandResult:
        args = ["subvolume", "snapshot"]
        if read_only:
            args.append("-r")
        return self.runner.execute(self._cmd(*args, source, target))

    def send_receive(
        self, source: str, target_directory: str, parent: Optional[str] = None
    ) -> CommandResult:
        send = ["send"]
        if parent is not None:
            send += ["-p", parent]
        send.append(source)
        return self.runner.pipe(self._cmd(*send), self._cmd("receive", target_directory))

    def delete(self, path: str) -> CommandResult:
        return self.runner.execute(self._cmd("subvolume", "delete", path))

    def root_id(self, path: str) -> Optional[int]:
        """Subvolume id containing ``path``, or None if it cannot be resolved."""
        result = self.runner.query(self._cmd("inspect-internal", "rootid", path))
        if not result.ok:
            log.debug(f"rootid failed for {path}: {result.message}")
            return None
        try:
            return int(result.stdout.strip())
        except ValueError:
            log.debug(f"Unexpected rootid output for {path}: {result.stdout.strip()!r}")
            return None

    def rename(self, source: str, target: str) -> CommandResult:
        return self.runner.execute(["mv", "-T", source, target])
