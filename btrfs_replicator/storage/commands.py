"""External command execution with a dry-run mode.

Every interaction with the outside world (btrfs, mount, umount, lsblk, mv)
goes through a ``CommandRunner``. Commands come in two kinds:

    query:    read-only (``lsblk``, ``mount``, ``btrfs subvolume list``,
              ``btrfs property get`` ...). Always executed, also under dry-run.
    mutating: changes filesystem state (snapshot, send/receive, property set,
              delete, mount/umount ...). Under dry-run the command is only
              recorded in ``CommandRunner.trace`` and logged, and a successful
              result is returned.

Commands never raise on a non-zero exit status; callers inspect
``CommandResult.ok`` and turn a failure into a ``StepResult``.
"""

from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass, field
from typing import Sequence

from btrfs_replicator.logging import get_logger

DRY_RUN_PREFIX = "[dry-run]"

log = get_logger(source="command", tags=["command"])


def format_command(command: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(part)) for part in command)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one external command (or pipeline)."""

    command: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def message(self) -> str:
        """Best available diagnostic text for a failed command."""
        return self.stderr.strip() or self.stdout.strip() or f"exit status {self.returncode}"


@dataclass
class CommandRunner:
    """Runs external commands, honouring dry-run for mutating ones."""

    dry_run: bool = False
    trace: list[str] = field(default_factory=list)

    def query(self, command: Sequence[str]) -> CommandResult:
        """Run a read-only command. Executed even under dry-run."""
        return self._run(command)

    def exists(self, path: str) -> bool:
        return self.query(["test", "-e", path]).ok

    def is_directory(self, path: str) -> bool:
        return self.query(["test", "-d", path]).ok

    def execute(self, command: Sequence[str], input_text: str | None = None) -> CommandResult:
        """Run a state-changing command, or record it under dry-run."""
        if self.dry_run:
            return self._record(format_command(command), tuple(command))
        return self._run(command, input_text=input_text)

    def pipe(self, producer: Sequence[str], consumer: Sequence[str]) -> CommandResult:
        """Run ``producer | consumer`` (e.g. ``btrfs send | btrfs receive``).

        The pipeline succeeds only if both sides exit with status zero.
        """
        combined = tuple(producer) + ("|",) + tuple(consumer)
        rendered = f"{format_command(producer)} | {format_command(consumer)}"
        if self.dry_run:
            return self._record(rendered, combined)

        log.debug(f"Running pipeline: {rendered}")
        try:
            sender = subprocess.Popen(
                list(producer),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as error:
            log.debug(f"Pipeline could not start: {error}")
            return CommandResult(combined, 127, stderr=str(error))
        try:
            receiver = subprocess.Popen(
                list(consumer),
                stdin=sender.stdout,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as error:
            sender.kill()
            sender.wait()
            log.debug(f"Pipeline could not start: {error}")
            return CommandResult(combined, 127, stderr=str(error))

        # Allow the sender to receive SIGPIPE if the receiver exits early.
        sender.stdout.close()
        recv_out, recv_err = receiver.communicate()
        send_err = sender.stderr.read() if sender.stderr else b""
        sender.wait()
        if sender.stderr:
            sender.stderr.close()

        stderr_parts = []
        if sender.returncode != 0:
            stderr_parts.append(f"send: {send_err.decode(errors='replace').strip()}")
        if receiver.returncode != 0:
            stderr_parts.append(f"receive: {recv_err.decode(errors='replace').strip()}")
        returncode = sender.returncode or receiver.returncode
        result = CommandResult(
            combined,
            returncode,
            stdout=recv_out.decode(errors="replace"),
            stderr="\n".join(stderr_parts),
        )
        self._log_result(result)
        return result

    def note(self, action: str) -> None:
        """Record a state change made in-process (e.g. a file write) under dry-run."""
        self.trace.append(action)
        log.info(f"{DRY_RUN_PREFIX} {action}")

    def _record(self, rendered: str, command: tuple[str, ...]) -> CommandResult:
        self.trace.append(rendered)
        log.info(f"{DRY_RUN_PREFIX} {rendered}")
        return CommandResult(command, 0, dry_run=True)

    def _run(self, command: Sequence[str], input_text: str | None = None) -> CommandResult:
        command = tuple(str(part) for part in command)
        log.debug(f"Running command: {format_command(command)}")
        try:
            completed = subprocess.run(
                list(command),
                input=input_text,
                text=True,
                capture_output=True,
            )
        except OSError as error:
            log.debug(f"Command could not start: {error}")
            return CommandResult(command, 127, stderr=str(error))
        result = CommandResult(
            command, completed.returncode, completed.stdout or "", completed.stderr or ""
        )
        self._log_result(result)
        return result

    @staticmethod
    def _log_result(result: CommandResult) -> None:
        if result.stdout:
            log.trace(f"stdout: {result.stdout.strip()}")
        if result.stderr:
            log.trace(f"stderr: {result.stderr.strip()}")
        log.debug(f"Command completed with return code {result.returncode}")
