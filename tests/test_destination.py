"""Unit tests for source, destination and helper validation."""

import os
import stat
from pathlib import Path

import pytest

from rsnap.destination import (
    DestinationError,
    find_rsync,
    is_volume_mounted,
    is_writable,
    validate_destination,
    validate_exclude_file,
    validate_source,
)


running_as_root = hasattr(os, "geteuid") and os.geteuid() == 0


class TestValidateDestination:

    def test_existing_writable_path_succeeds(self, tmp_path: Path):
        validate_destination(tmp_path)

    def test_non_existent_path_raises_error(self, tmp_path: Path):
        missing = tmp_path / "missing"

        with pytest.raises(DestinationError) as exc_info:
            validate_destination(missing)

        assert "not found" in str(exc_info.value).lower()
        assert str(missing) in str(exc_info.value)

    def test_file_path_raises_error(self, tmp_path: Path):
        path = tmp_path / "file.txt"
        path.write_text("x")

        with pytest.raises(DestinationError, match="not a directory"):
            validate_destination(path)

    @pytest.mark.skipif(running_as_root, reason="root can write anywhere")
    def test_non_writable_path_raises_error(self, tmp_path: Path):
        dest = tmp_path / "readonly"
        dest.mkdir()
        original_mode = dest.stat().st_mode
        try:
            os.chmod(dest, stat.S_IRUSR | stat.S_IXUSR)
            with pytest.raises(DestinationError, match="not writable"):
                validate_destination(dest)
            # Read-only runs don't need write access
            validate_destination(dest, require_writable=False)
        finally:
            os.chmod(dest, original_mode)

    def test_write_probe_leaves_nothing_behind(self, tmp_path: Path):
        assert is_writable(tmp_path)
        assert list(tmp_path.iterdir()) == []


class TestValidateSource:

    def test_valid_source(self, tmp_path: Path):
        validate_source(tmp_path)

    def test_unset_source(self):
        with pytest.raises(DestinationError, match="not set"):
            validate_source(None)

    def test_missing_source(self, tmp_path: Path):
        with pytest.raises(DestinationError, match="Source not found"):
            validate_source(tmp_path / "missing")

    def test_source_is_file(self, tmp_path: Path):
        path = tmp_path / "file.txt"
        path.write_text("x")
        with pytest.raises(DestinationError, match="not a directory"):
            validate_source(path)


class TestValidateExcludeFile:

    def test_none_is_fine(self):
        validate_exclude_file(None)

    def test_existing_file(self, tmp_path: Path):
        path = tmp_path / "excludes.txt"
        path.write_text("*.tmp\n")
        validate_exclude_file(path)

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(DestinationError, match="Exclude file not found"):
            validate_exclude_file(tmp_path / "missing.txt")


class TestFindRsync:

    def test_explicit_path(self, fake_rsync: Path):
        assert find_rsync(str(fake_rsync)) == str(fake_rsync)

    def test_missing_executable(self, tmp_path: Path):
        with pytest.raises(DestinationError, match="rsync executable not found"):
            find_rsync(str(tmp_path / "no-rsync-here"))


class TestIsVolumeMounted:

    def test_regular_path(self, tmp_path: Path):
        assert is_volume_mounted(tmp_path)

    def test_unmounted_volume(self):
        assert not is_volume_mounted(Path("/Volumes/rsnap-test-no-such-volume/backups"))
