"""Patching the persisted mount configuration (fstab).

After a replication the destination's root data lives in a new subvolume.
``patch_fstab`` points the fstab entry of the destination mount path at
that subvolume by rewriting the ``subvolid=`` and ``subvol=`` options of
that one line:

    /dev/sdb /build btrfs rw,relatime,subvolid=5,subvol=/ 0 0
    ->
    /dev/sdb /build btrfs rw,relatime,subvolid=42,subvol=/import-x 0 0

Existing options are replaced in place and missing ones appended. Every
other line, and everything on the patched line outside the options field
(whitespace, dump/pass fields, trailing comments), is kept byte for byte.
Applying the same patch twice gives the same result as applying it once.
"""

from __future__ import annotations

import os
import posixpath
import re
import shutil
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional

from btrfs_replicator.domain import Step, StepResult
from btrfs_replicator.logging import LoggerFactory

from .commands import CommandRunner

FSTAB_LINE_RE = re.compile(
    r"^(?P<head>\s*(?P<device>\S+)\s+(?P<path>\S+)\s+(?P<fstype>\S+)\s+)"
    r"(?P<options>\S+)"
    r"(?P<tail>.*)$"
)
OCTAL_ESCAPE_RE = re.compile(r"\\([0-7]{3})")

log = LoggerFactory.for_fstab()


def unescape_fstab_path(path: str) -> str:
    """Decode fstab octal escapes such as ``\\040`` (space)."""
    return OCTAL_ESCAPE_RE.sub(lambda match: chr(int(match.group(1), 8)), path)


def rewrite_options(options: str, subvolume_id: int, subvolume_path: str) -> str:
    """Set ``subvolid`` and ``subvol`` in a comma separated option list."""
    wanted = {"subvolid": f"subvolid={subvolume_id}", "subvol": f"subvol={subvolume_path}"}
    seen = set()
    rewritten = []
    for option in options.split(","):
        key = option.partition("=")[0]
        if key in wanted:
            if key in seen:
                continue
            seen.add(key)
            rewritten.append(wanted[key])
        else:
            rewritten.append(option)
    for key in ("subvolid", "subvol"):
        if key not in seen:
            rewritten.append(wanted[key])
    return ",".join(rewritten)


def patch_line(line: str, mount_path: str, subvolume_id: int, subvolume_path: str) -> Optional[str]:
    """Return the patched line if it mounts ``mount_path``, else None.

    ``line`` must not contain its line terminator.
    """
    if line.lstrip().startswith("#"):
        return None
    match = FSTAB_LINE_RE.match(line)
    if not match:
        return None
    if posixpath.normpath(unescape_fstab_path(match.group("path"))) != posixpath.normpath(mount_path):
        return None
    options = rewrite_options(match.group("options"), subvolume_id, subvolume_path)
    return f"{match.group('head')}{options}{match.group('tail')}"


def patch_fstab_text(
    text: str, mount_path: str, subvolume_id: int, subvolume_path: str
) -> tuple[str, int]:
    """Patch the first line mounting ``mount_path``.

    Returns:
        The new text and the number of lines that matched ``mount_path``
    """
    output = []
    matches = 0
    for raw_line in text.splitlines(keepends=True):
        body = raw_line.rstrip("\r\n")
        ending = raw_line[len(body):]
        patched = patch_line(body, mount_path, subvolume_id, subvolume_path)
        if patched is not None:
            matches += 1
            if matches == 1:
                output.append(patched + ending)
                continue
        output.append(raw_line)
    return "".join(output), matches


def _write_atomically(path: Path, text: str) -> None:
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        shutil.copymode(path, tmp_name)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def patch_fstab(
    fstab_path: str | Path,
    mount_path: str,
    subvolume_id: int,
    subvolume_path: str,
    runner: CommandRunner,
    backup: bool = True,
    device: str | None = None,
) -> StepResult:
    """Rewrite the fstab entry for ``mount_path`` on disk.

    Never raises for I/O problems: an unreadable or unwritable file, or a
    missing entry, is reported as a failed step and the file is untouched.
    """
    fstab_path = Path(fstab_path)
    target = f"{fstab_path}:{mount_path}"
    try:
        original = fstab_path.read_text(encoding="utf-8")
    except OSError as error:
        message = f"Cannot read {fstab_path}: {error.strerror or error}"
        log.warning(f"{message}; skipping fstab update")
        return StepResult.failure(Step.FSTAB, target, message)

    patched, matches = patch_fstab_text(original, mount_path, subvolume_id, subvolume_path)
    if matches == 0:
        message = f"No entry for {mount_path} in {fstab_path}"
        log.warning(f"{message}; skipping fstab update")
        return StepResult.failure(Step.FSTAB, target, message)
    if matches > 1:
        log.warning(f"{matches} entries for {mount_path} in {fstab_path}; only the first is updated")
    if patched == original:
        log.info(f"{fstab_path} already references subvolid={subvolume_id} for {mount_path}")
        return StepResult.success(Step.FSTAB, target, "unchanged")

    label = f" ({device})" if device else ""
    if runner.dry_run:
        runner.note(
            f"update {fstab_path}: {mount_path}{label} -> subvolid={subvolume_id},subvol={subvolume_path}"
        )
        return StepResult.success(Step.FSTAB, target, "dry-run")

    try:
        if backup:
            backup_path = fstab_path.with_name(
                f"{fstab_path.name}.bak-{datetime.now().strftime('%Y%m%d%H%M%S')}"
            )
            shutil.copy2(fstab_path, backup_path)
            log.info(f"Saved {fstab_path} to {backup_path}")
        _write_atomically(fstab_path, patched)
    except OSError as error:
        message = f"Cannot write {fstab_path}: {error.strerror or error}"
        log.warning(message)
        return StepResult.failure(Step.FSTAB, target, message)

    log.info(
        f"Updated {fstab_path}: {mount_path}{label} now mounts subvolid={subvolume_id},subvol={subvolume_path}"
    )
    return StepResult.success(Step.FSTAB, target)
