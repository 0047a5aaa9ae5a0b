"""Tests for rsync command building and execution."""

import os
import shutil
import signal
from datetime import datetime
from pathlib import Path

import pytest

from rsnap.config import FilesystemType, PriorityLevel
from rsnap.layout import SnapshotKind, VaultLayout
from rsnap.sync import (
    FullCopyCommand,
    LinkedCopyCommand,
    SyncError,
    SyncOptions,
    SyncRunner,
    command_for,
    parse_rsync_stats,
)


def rsync_args(command) -> list:
    """Arguments after the rsync executable (without any nice/ionice prefix)."""
    args = command.build_args()
    return args[args.index(command.options.rsync_path) + 1:]


class TestCommandBuilder:

    def test_full_copy_defaults(self):
        command = FullCopyCommand(Path("/src"), Path("/dst/snap_partial"), SyncOptions())

        assert command.kind is SnapshotKind.FULL
        assert command.build_args() == [
            "rsync", "-a", "-v", "--delete", "--stats", "--human-readable", "--progress",
            "--no-xattrs", "--bwlimit=50000", "/src/", "/dst/snap_partial/",
        ]

    def test_linked_copy_adds_link_dest(self, tmp_path: Path):
        reference = tmp_path / "chain" / "2025-01-01-120000"
        command = LinkedCopyCommand(
            Path("/src/"), Path("/dst"), SyncOptions(), link_reference=reference
        )

        args = rsync_args(command)

        assert command.kind is SnapshotKind.INCREMENTAL
        assert f"--link-dest={reference}" in args
        assert args[-2:] == ["/src/", "/dst/"]

    def test_link_dest_is_absolute(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        command = LinkedCopyCommand(
            Path("/src"), Path("/dst"), SyncOptions(), link_reference=Path("rel/snap")
        )

        assert f"--link-dest={tmp_path / 'rel' / 'snap'}" in rsync_args(command)

    @pytest.mark.parametrize("fs_type, flags", [
        (FilesystemType.APFS, ["--xattrs", "--crtimes", "--protect-args"]),
        (FilesystemType.HFS, ["--xattrs", "--crtimes"]),
        (FilesystemType.UNIX, ["--no-xattrs"]),
        (FilesystemType.FAT, ["--no-xattrs"]),
        (FilesystemType.NTFS, ["--no-xattrs"]),
    ])
    def test_filesystem_flags(self, fs_type, flags):
        command = FullCopyCommand(Path("/src"), Path("/dst"), SyncOptions(fs_type=fs_type))
        args = rsync_args(command)

        start = args.index("--progress") + 1
        assert args[start:start + len(flags)] == flags

    def test_optional_flags(self, tmp_path: Path):
        excludes = tmp_path / "excludes.txt"
        options = SyncOptions(
            rsync_path="/opt/bin/rsync",
            exclude_from=excludes,
            safe_mode=True,
            quiet=True,
        )

        args = rsync_args(FullCopyCommand(Path("/src"), Path("/dst"), options))

        assert "--quiet" in args
        assert "--no-links" in args
        assert f"--exclude-from={excludes}" in args

    @pytest.mark.parametrize("priority, bwlimit", [
        (PriorityLevel.IDLE, "--bwlimit=20000"),
        (PriorityLevel.NORMAL, "--bwlimit=50000"),
        (PriorityLevel.FAST, "--bwlimit=100000"),
    ])
    def test_bandwidth_by_priority(self, priority, bwlimit):
        command = FullCopyCommand(Path("/src"), Path("/dst"), SyncOptions(priority=priority))

        assert bwlimit in rsync_args(command)

    def test_normal_priority_has_no_wrapper(self):
        command = FullCopyCommand(Path("/src"), Path("/dst"), SyncOptions())

        assert command.build_args()[0] == "rsync"

    @pytest.mark.skipif(shutil.which("nice") is None, reason="nice not installed")
    def test_idle_priority_is_niced(self):
        command = FullCopyCommand(
            Path("/src"), Path("/dst"), SyncOptions(priority=PriorityLevel.IDLE)
        )

        assert command.build_args()[:3] == ["nice", "-n", "19"]

    @pytest.mark.skipif(shutil.which("nice") is None, reason="nice not installed")
    def test_fast_priority_is_niced(self):
        command = FullCopyCommand(
            Path("/src"), Path("/dst"), SyncOptions(priority=PriorityLevel.FAST)
        )

        assert command.build_args()[:3] == ["nice", "-n", "-5"]

    def test_command_for_plan(self, tmp_path: Path):
        layout = VaultLayout(tmp_path, "v")
        plan = layout.plan(SnapshotKind.FULL, datetime(2025, 1, 1, 12, 0, 0))

        command = command_for(Path("/src"), plan, SyncOptions())

        assert isinstance(command, FullCopyCommand)
        assert rsync_args(command)[-1] == f"{plan.provisional_path}{os.sep}"


class TestParseRsyncStats:

    def test_plain_numbers(self):
        output = (
            "Number of files: 2,895 (reg: 2,500, dir: 395)\n"
            "Number of created files: 10\n"
            "Number of regular files transferred: 17\n"
            "Total file size: 1.20G bytes\n"
            "sent 123,456 bytes  received 789 bytes  12,345.00 bytes/sec\n"
        )

        assert parse_rsync_stats(output) == (17, 2895, 123456)

    def test_human_readable_sizes(self):
        output = "sent 1.50K bytes  received 35 bytes  3.07K bytes/sec\n"

        assert parse_rsync_stats(output) == (0, 0, 1536)

    def test_no_stats(self):
        assert parse_rsync_stats("rsync: connection unexpectedly closed\n") == (0, 0, 0)


class TestSyncRunner:

    def test_successful_run(self, fake_rsync: Path, source_tree: Path, tmp_path: Path):
        dest = tmp_path / "out"
        dest.mkdir()
        transcript = tmp_path / "transcript.txt"
        command = FullCopyCommand(source_tree, dest, SyncOptions(rsync_path=str(fake_rsync)))

        result = SyncRunner().run(command, transcript)

        assert result.success
        assert result.exit_code == 0
        assert result.files_transferred == 3
        assert result.bytes_sent > 0
        assert (dest / "docs" / "notes.txt").read_text() == "some notes\n"
        content = transcript.read_text()
        assert "=== Backup started at" in content
        assert "Running command:" in content
        assert "Rsync exit code: 0" in content

    def test_failed_run_keeps_exit_code(
        self, fake_rsync: Path, source_tree: Path, tmp_path: Path, monkeypatch
    ):
        monkeypatch.setenv("FAKE_RSYNC_EXIT", "23")
        transcript = tmp_path / "transcript.txt"
        command = FullCopyCommand(
            source_tree, tmp_path / "out", SyncOptions(rsync_path=str(fake_rsync))
        )

        result = SyncRunner().run(command, transcript)

        assert not result.success
        assert result.exit_code == 23
        content = transcript.read_text()
        assert "simulated failure" in content
        assert "Rsync exit code: 23" in content

    def test_killed_by_signal_maps_to_shell_status(
        self, fake_rsync: Path, source_tree: Path, tmp_path: Path, monkeypatch
    ):
        monkeypatch.setenv("FAKE_RSYNC_SIGNAL", str(int(signal.SIGKILL)))
        transcript = tmp_path / "transcript.txt"
        command = FullCopyCommand(
            source_tree, tmp_path / "out", SyncOptions(rsync_path=str(fake_rsync))
        )

        result = SyncRunner().run(command, transcript)

        assert not result.success
        assert result.exit_code == 128 + signal.SIGKILL
        assert f"Rsync exit code: {128 + signal.SIGKILL}" in transcript.read_text()

    def test_missing_binary_raises(self, source_tree: Path, tmp_path: Path):
        command = FullCopyCommand(
            source_tree,
            tmp_path / "out",
            SyncOptions(rsync_path=str(tmp_path / "no-such-rsync")),
        )

        with pytest.raises(SyncError, match="Failed to start rsync"):
            SyncRunner().run(command, tmp_path / "transcript.txt")

    def test_process_callback(self, fake_rsync: Path, source_tree: Path, tmp_path: Path):
        seen = []
        runner = SyncRunner(on_process=seen.append)
        command = FullCopyCommand(
            source_tree, tmp_path / "out", SyncOptions(rsync_path=str(fake_rsync))
        )

        runner.run(command, tmp_path / "transcript.txt")

        assert len(seen) == 2
        assert seen[0] is not None
        assert seen[1] is None

    def test_ticks_while_running(
        self, fake_rsync: Path, source_tree: Path, tmp_path: Path, monkeypatch
    ):
        monkeypatch.setenv("FAKE_RSYNC_SLEEP", "0.5")
        ticks = []
        runner = SyncRunner(on_tick=ticks.append, poll_interval=0.02)
        command = FullCopyCommand(
            source_tree, tmp_path / "out", SyncOptions(rsync_path=str(fake_rsync))
        )

        result = runner.run(command, tmp_path / "transcript.txt")

        assert result.success
        assert len(ticks) > 0
        assert ticks == list(range(1, len(ticks) + 1))


@pytest.mark.skipif(shutil.which("rsync") is None, reason="rsync not installed")
class TestRealRsync:

    def test_link_dest_hard_links_unchanged_files(self, source_tree: Path, tmp_path: Path):
        first = tmp_path / "first"
        second = tmp_path / "second"
        first.mkdir()
        second.mkdir()
        runner = SyncRunner()

        assert runner.run(
            FullCopyCommand(source_tree, first, SyncOptions()), tmp_path / "t1.txt"
        ).success
        (source_tree / "README.md").write_text("changed\n")
        assert runner.run(
            LinkedCopyCommand(source_tree, second, SyncOptions(), link_reference=first),
            tmp_path / "t2.txt",
        ).success

        assert os.stat(second / "docs" / "notes.txt").st_ino == os.stat(first / "docs" / "notes.txt").st_ino
        assert os.stat(second / "README.md").st_ino != os.stat(first / "README.md").st_ino
        assert (second / "README.md").read_text() == "changed\n"
