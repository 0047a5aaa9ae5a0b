"""Input validation for rsnap.

This module checks, before anything on disk is touched, that the backup
source and destination are usable and that the rsync collaborator and the
optional exclude file can be found.
"""

import os
import shutil
from pathlib import Path
from typing import Optional


class DestinationError(Exception):
    """Raised when a backup source, destination or helper is unusable."""
    pass


def validate_destination(destination: Path, require_writable: bool = True) -> None:
    """
    Validate backup destination is available and writable.

    Checks:
    1. Volume is mounted (for removable drives)
    2. Path exists and is a directory
    3. Path is writable (skipped for read-only operations such as dry-run)

    Args:
        destination: Path to the destination root
        require_writable: Also check that the destination can be written

    Raises:
        DestinationError: If destination doesn't exist, isn't a directory,
                          isn't writable or its volume isn't mounted
    """
    destination = Path(destination)

    if not is_volume_mounted(destination):
        raise DestinationError(
            f"Destination not found: {destination} (volume may not be mounted)"
        )

    if not destination.exists():
        raise DestinationError(f"Destination not found: {destination}")

    if not destination.is_dir():
        raise DestinationError(
            f"Destination is not a directory: {destination}"
        )

    if require_writable and not is_writable(destination):
        raise DestinationError(f"Destination not writable: {destination}")


def validate_source(source: Optional[Path]) -> None:
    """
    Validate the backup source is an existing, readable directory.

    Raises:
        DestinationError: If the source is unset, missing or not a directory
    """
    if source is None:
        raise DestinationError("Source directory is not set")

    source = Path(source)
    if not source.exists():
        raise DestinationError(f"Source not found: {source}")
    if not source.is_dir():
        raise DestinationError(f"Source is not a directory: {source}")
    if not os.access(source, os.R_OK | os.X_OK):
        raise DestinationError(f"Source not readable: {source}")


def validate_exclude_file(exclude_from: Optional[Path]) -> None:
    """
    Validate an rsync exclude-pattern file, if one is configured.

    Raises:
        DestinationError: If the file is configured but missing
    """
    if exclude_from is None:
        return
    if not Path(exclude_from).is_file():
        raise DestinationError(f"Exclude file not found: {exclude_from}")


def find_rsync(rsync_path: str) -> str:
    """
    Resolve the rsync executable.

    Args:
        rsync_path: Command name or path of the rsync binary

    Returns:
        Absolute path of the executable

    Raises:
        DestinationError: If rsync cannot be found or isn't executable
    """
    resolved = shutil.which(rsync_path)
    if resolved is None:
        raise DestinationError(f"rsync executable not found: {rsync_path}")
    return resolved


def is_volume_mounted(path: Path) -> bool:
    """
    Check if path is on a mounted volume (for removable drives).

    For paths under /Volumes/, checks if the volume mount point exists.
    For other paths, returns True (assumes local filesystem).
    """
    path = Path(path)

    try:
        abs_path = path.resolve()
    except OSError:
        abs_path = path

    path_str = str(abs_path)

    if path_str.startswith("/Volumes/"):
        parts = path_str.split("/")
        if len(parts) >= 3:
            volume_path = Path(f"/Volumes/{parts[2]}")
            return volume_path.exists() and volume_path.is_dir()

    return True


def is_writable(path: Path) -> bool:
    """
    Check if path is writable.

    Uses os.access to check write permission, and also attempts
    to create a temporary file as a more reliable check.
    """
    path = Path(path)

    if not os.access(path, os.W_OK):
        return False

    test_file = path / ".rsnap_write_test"
    try:
        test_file.touch()
        test_file.unlink()
        return True
    except OSError:
        return False
