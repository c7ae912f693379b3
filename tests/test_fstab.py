"""Tests for storage/fstab.py - the Mount-Configuration Patcher."""

import os

import pytest

from btrfs_replicator.domain import Step
from btrfs_replicator.storage import fstab


class TestRewriteOptions:
    """Tests for rewrite_options()."""

    def test_replaces_in_place(self):
        assert (
            fstab.rewrite_options("rw,relatime,subvolid=5,subvol=/", 42, "/import-x")
            == "rw,relatime,subvolid=42,subvol=/import-x"
        )

    def test_keeps_option_positions(self):
        assert (
            fstab.rewrite_options("subvol=/old,noatime,subvolid=7,compress=zstd", 42, "/new")
            == "subvol=/new,noatime,subvolid=42,compress=zstd"
        )

    def test_appends_missing(self):
        assert fstab.rewrite_options("defaults", 42, "/import-x") == "defaults,subvolid=42,subvol=/import-x"

    def test_appends_only_the_missing_one(self):
        assert fstab.rewrite_options("rw,subvol=/a", 42, "/b") == "rw,subvol=/b,subvolid=42"

    def test_drops_duplicates(self):
        assert fstab.rewrite_options("subvolid=5,rw,subvolid=6", 42, "/b") == "subvolid=42,rw,subvol=/b"

    def test_similar_keys_are_not_touched(self):
        """Test options merely starting with subvol are kept."""
        assert fstab.rewrite_options("subvolume_x=1", 42, "/b") == "subvolume_x=1,subvolid=42,subvol=/b"


class TestPatchLine:
    """Tests for patch_line()."""

    def test_example_line(self):
        """Test the reference rewrite keeps fields and whitespace."""
        line = "/dev/sdb /build btrfs rw,relatime,subvolid=5,subvol=/ 0 0"
        assert (
            fstab.patch_line(line, "/build", 42, "/import-x")
            == "/dev/sdb /build btrfs rw,relatime,subvolid=42,subvol=/import-x 0 0"
        )

    def test_preserves_alignment_and_comment(self):
        line = "UUID=abcd\t/build   btrfs   noatime,subvol=/   0  2   # data disk"
        assert (
            fstab.patch_line(line, "/build", 42, "/import-x")
            == "UUID=abcd\t/build   btrfs   noatime,subvol=/import-x,subvolid=42   0  2   # data disk"
        )

    def test_other_mount_path(self):
        assert fstab.patch_line("/dev/sdb /build2 btrfs defaults 0 0", "/build", 42, "/x") is None

    def test_trailing_slash_matches(self):
        assert fstab.patch_line("/dev/sdb /build/ btrfs defaults 0 0", "/build", 42, "/x") is not None

    def test_comment_line(self):
        assert fstab.patch_line("# /dev/sdb /build btrfs defaults 0 0", "/build", 42, "/x") is None

    def test_escaped_path(self):
        line = r"/dev/sdb /mnt/my\040disk btrfs defaults 0 0"
        assert fstab.patch_line(line, "/mnt/my disk", 42, "/x").startswith(r"/dev/sdb /mnt/my\040disk btrfs")

    def test_short_line(self):
        assert fstab.patch_line("/dev/sdb /build", "/build", 42, "/x") is None


class TestPatchFstabText:
    """Tests for patch_fstab_text()."""

    def test_other_lines_are_byte_identical(self, fstab_file):
        original = fstab_file.read_text()

        patched, matches = fstab.patch_fstab_text(original, "/mnt/dst", 42, "/import-x")

        assert matches == 1
        old_lines = original.splitlines(keepends=True)
        new_lines = patched.splitlines(keepends=True)
        assert new_lines[:3] == old_lines[:3]
        assert new_lines[3] == "/dev/sdc /mnt/dst btrfs rw,relatime,subvolid=42,subvol=/import-x 0 0  # destination\n"

    def test_idempotent(self, fstab_file):
        """Test patching twice gives the same text as patching once."""
        once, _ = fstab.patch_fstab_text(fstab_file.read_text(), "/mnt/dst", 42, "/import-x")
        twice, _ = fstab.patch_fstab_text(once, "/mnt/dst", 42, "/import-x")
        assert twice == once

    def test_only_first_match_is_patched(self):
        text = "/dev/sdc /mnt/dst btrfs defaults 0 0\n/dev/sdd /mnt/dst btrfs defaults 0 0\n"

        patched, matches = fstab.patch_fstab_text(text, "/mnt/dst", 42, "/x")

        assert matches == 2
        assert patched.splitlines()[1] == "/dev/sdd /mnt/dst btrfs defaults 0 0"

    def test_crlf_and_missing_final_newline(self):
        text = "# header\r\n/dev/sdc /mnt/dst btrfs defaults 0 0"
        patched, _ = fstab.patch_fstab_text(text, "/mnt/dst", 42, "/x")
        assert patched == "# header\r\n/dev/sdc /mnt/dst btrfs defaults,subvolid=42,subvol=/x 0 0"


class TestPatchFstab:
    """Tests for patch_fstab() on disk."""

    def test_writes_file_and_backup(self, fstab_file, runner):
        original = fstab_file.read_text()

        result = fstab.patch_fstab(fstab_file, "/mnt/dst", 42, "/import-x", runner)

        assert result.ok
        assert result.step is Step.FSTAB
        assert "subvolid=42,subvol=/import-x" in fstab_file.read_text()
        backups = list(fstab_file.parent.glob("fstab.bak-*"))
        assert len(backups) == 1
        assert backups[0].read_text() == original

    def test_without_backup(self, fstab_file, runner):
        fstab.patch_fstab(fstab_file, "/mnt/dst", 42, "/import-x", runner, backup=False)
        assert list(fstab_file.parent.glob("fstab.bak-*")) == []

    def test_keeps_file_mode(self, fstab_file, runner):
        os.chmod(fstab_file, 0o640)
        fstab.patch_fstab(fstab_file, "/mnt/dst", 42, "/import-x", runner, backup=False)
        assert os.stat(fstab_file).st_mode & 0o777 == 0o640

    def test_unchanged_file_is_not_rewritten(self, fstab_file, runner):
        fstab.patch_fstab(fstab_file, "/mnt/dst", 42, "/import-x", runner, backup=False)
        mtime = os.stat(fstab_file).st_mtime_ns

        result = fstab.patch_fstab(fstab_file, "/mnt/dst", 42, "/import-x", runner)

        assert result.ok
        assert result.message == "unchanged"
        assert os.stat(fstab_file).st_mtime_ns == mtime
        assert list(fstab_file.parent.glob("fstab.bak-*")) == []

    def test_unreadable_file_is_skipped(self, tmp_path, runner):
        result = fstab.patch_fstab(tmp_path / "missing", "/mnt/dst", 42, "/x", runner)
        assert not result.ok
        assert "Cannot read" in result.message

    def test_no_matching_entry(self, fstab_file, runner):
        original = fstab_file.read_text()

        result = fstab.patch_fstab(fstab_file, "/mnt/elsewhere", 42, "/x", runner)

        assert not result.ok
        assert fstab_file.read_text() == original

    def test_dry_run_leaves_file_untouched(self, fstab_file, dry_runner):
        original = fstab_file.read_text()

        result = fstab.patch_fstab(fstab_file, "/mnt/dst", 42, "/import-x", dry_runner, device="/dev/sdc")

        assert result.ok
        assert fstab_file.read_text() == original
        assert list(fstab_file.parent.glob("fstab.bak-*")) == []
        assert dry_runner.trace == [
            f"update {fstab_file}: /mnt/dst (/dev/sdc) -> subvolid=42,subvol=/import-x"
        ]

    @pytest.mark.skipif(os.geteuid() == 0, reason="root ignores file permissions")
    def test_unwritable_directory(self, fstab_file, runner):
        fstab_file.parent.chmod(0o555)
        try:
            result = fstab.patch_fstab(fstab_file, "/mnt/dst", 42, "/import-x", runner, backup=False)
        finally:
            fstab_file.parent.chmod(0o755)

        assert not result.ok
        assert "Cannot write" in result.message
