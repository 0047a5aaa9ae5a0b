"""Device identity resolution for rsnap.

Backing a volume up onto itself protects against nothing, so before a run
the source and destination are mapped to the device that backs them and
compared. Resolution fails soft: anything that can't be stat'ed is UNKNOWN
(None) rather than an error.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import logging
import os


logger = logging.getLogger(__name__)


# Opaque "<major>:<minor>" identifier of a block device
VolumeId = str


class SameVolumeError(Exception):
    """Raised when source and destination can't be shown to be on different volumes."""
    pass


@dataclass(frozen=True)
class VolumeCheck:
    """Outcome of comparing the source and destination volumes."""
    source_id: Optional[VolumeId]
    destination_id: Optional[VolumeId]
    same_volume: bool
    verified: bool  # False when either side is UNKNOWN


def resolve_volume_id(path: Path) -> Optional[VolumeId]:
    """
    Resolve the device backing a path.

    Args:
        path: A file or directory

    Returns:
        "<major>:<minor>" of the backing device, or None (UNKNOWN) when the
        path doesn't exist or the filesystem can't be queried
    """
    try:
        st_dev = os.stat(path).st_dev
    except (OSError, ValueError):
        return None
    return f"{os.major(st_dev)}:{os.minor(st_dev)}"


def check_same_volume(
    source: Path,
    destination: Path,
    allow_same_volume: bool = False,
    strict_unknown: bool = False,
) -> VolumeCheck:
    """
    Guard against backing a volume up onto itself.

    Args:
        source: Backup source
        destination: Destination root
        allow_same_volume: Proceed even on a match (or an unverifiable pair)
        strict_unknown: Treat an UNKNOWN identity on either side as a match

    Returns:
        VolumeCheck describing both identities

    Raises:
        SameVolumeError: If both resolve to the same device, or one side is
                         UNKNOWN in strict mode, and allow_same_volume is off
    """
    source_id = resolve_volume_id(source)
    destination_id = resolve_volume_id(destination)
    verified = source_id is not None and destination_id is not None
    same_volume = verified and source_id == destination_id

    check = VolumeCheck(
        source_id=source_id,
        destination_id=destination_id,
        same_volume=same_volume,
        verified=verified,
    )

    if same_volume:
        if not allow_same_volume:
            raise SameVolumeError(
                f"Source and destination are on the same filesystem ({source_id})"
            )
        logger.warning(
            f"Source and destination are on the same filesystem ({source_id}); "
            f"continuing because same-volume backups are allowed"
        )
    elif not verified:
        message = (
            f"Cannot verify source and destination volumes "
            f"(source: {source_id or 'unknown'}, "
            f"destination: {destination_id or 'unknown'})"
        )
        if strict_unknown and not allow_same_volume:
            raise SameVolumeError(message)
        logger.warning(f"{message}; continuing")
    else:
        logger.debug(f"Source volume {source_id}, destination volume {destination_id}")

    return check
