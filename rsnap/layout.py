"""Snapshot naming and on-disk layout for rsnap.

A vault lives at <destination>/Backups.rsnap/<vault>/ and holds chains:

    <vault>/2025-01-01-120000/                  chain, named after its FULL
    <vault>/2025-01-01-120000/2025-01-01-120000/    the FULL snapshot
    <vault>/2025-01-01-120000/2025-01-02-120000/    an INCREMENTAL
    <vault>/2025-01-01-120000/2025-01-03-120000_partial/  failed or running

Names are whole-second timestamps, so lexicographic order is chronological
order. A directory whose name carries the provisional suffix never took part
in a successful commit.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional
import logging


logger = logging.getLogger(__name__)


# Timestamp format for chain and snapshot directories
TIMESTAMP_FORMAT = "%Y-%m-%d-%H%M%S"

# Marker for snapshots that have not been committed
PROVISIONAL_SUFFIX = "_partial"

# Directory under the destination root that holds all vaults
FIXED_PREFIX = "Backups.rsnap"

# Per-run rsync transcript inside a committed snapshot
TRANSCRIPT_NAME = "rsync-log.txt"


class SnapshotState(Enum):
    PROVISIONAL = "provisional"
    COMPLETE = "complete"


class SnapshotKind(Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


def parse_timestamp(name: str) -> Optional[datetime]:
    """
    Parse a chain or snapshot directory name to its timestamp.

    Accepts both committed and provisional names. Names must be exactly
    what name_for() produces, zero padding included, so that name order
    stays chronological order.

    Returns:
        datetime if valid, None otherwise
    """
    if name.endswith(PROVISIONAL_SUFFIX):
        name = name[:-len(PROVISIONAL_SUFFIX)]
    try:
        parsed = datetime.strptime(name, TIMESTAMP_FORMAT)
    except ValueError:
        return None
    if parsed.strftime(TIMESTAMP_FORMAT) != name:
        return None
    return parsed


def name_for(timestamp: datetime) -> str:
    """Committed directory name for a run started at timestamp."""
    return timestamp.strftime(TIMESTAMP_FORMAT)


def provisional_name(name: str) -> str:
    return f"{name}{PROVISIONAL_SUFFIX}"


def is_provisional(name: str) -> bool:
    return name.endswith(PROVISIONAL_SUFFIX)


def final_name(name: str) -> str:
    """Strip the provisional marker from a snapshot name."""
    if is_provisional(name):
        return name[:-len(PROVISIONAL_SUFFIX)]
    return name


@dataclass(frozen=True)
class SnapshotInfo:
    """One snapshot directory inside a chain."""
    path: Path
    timestamp: datetime
    state: SnapshotState

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def is_complete(self) -> bool:
        return self.state is SnapshotState.COMPLETE


@dataclass
class ChainInfo:
    """A chain directory: one FULL snapshot and the incrementals built on it."""
    path: Path
    timestamp: datetime
    snapshots: List[SnapshotInfo] = field(default_factory=list)  # sorted by name

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def complete_snapshots(self) -> List[SnapshotInfo]:
        return [s for s in self.snapshots if s.is_complete]

    @property
    def provisional_snapshots(self) -> List[SnapshotInfo]:
        return [s for s in self.snapshots if not s.is_complete]

    @property
    def has_complete(self) -> bool:
        return any(s.is_complete for s in self.snapshots)

    @property
    def latest_complete(self) -> Optional[SnapshotInfo]:
        complete = self.complete_snapshots
        return complete[-1] if complete else None

    def kind_of(self, snapshot: SnapshotInfo) -> Optional[SnapshotKind]:
        """
        Derive whether a committed snapshot is the chain's FULL or an INCREMENTAL.

        Returns None for provisional snapshots, which have no kind yet.
        """
        complete = self.complete_snapshots
        if snapshot not in complete:
            return None
        if snapshot == complete[0]:
            return SnapshotKind.FULL
        return SnapshotKind.INCREMENTAL

    def link_reference_of(self, snapshot: SnapshotInfo) -> Optional[SnapshotInfo]:
        """Return the committed snapshot an INCREMENTAL was linked against."""
        complete = self.complete_snapshots
        if snapshot not in complete:
            return None
        index = complete.index(snapshot)
        return complete[index - 1] if index > 0 else None


@dataclass(frozen=True)
class SnapshotPlan:
    """Where the next snapshot goes and what it links against."""
    kind: SnapshotKind
    chain_path: Path
    new_chain: bool
    snapshot_name: str
    link_reference: Optional[Path] = None

    @property
    def provisional_path(self) -> Path:
        return self.chain_path / provisional_name(self.snapshot_name)

    @property
    def final_path(self) -> Path:
        return self.chain_path / self.snapshot_name

    @property
    def provisional_transcript(self) -> Path:
        """Transcript location while the copy runs, and after a failure."""
        return self.chain_path / f"{provisional_name(self.snapshot_name)}.{TRANSCRIPT_NAME}"

    @property
    def final_transcript(self) -> Path:
        return self.final_path / TRANSCRIPT_NAME


def _scan_snapshots(chain_path: Path) -> List[SnapshotInfo]:
    snapshots = []
    for entry in chain_path.iterdir():
        if not entry.is_dir() or entry.name.startswith("."):
            continue
        timestamp = parse_timestamp(entry.name)
        if timestamp is None:
            logger.debug(f"Ignoring non-snapshot directory: {entry}")
            continue
        state = (
            SnapshotState.PROVISIONAL
            if is_provisional(entry.name)
            else SnapshotState.COMPLETE
        )
        snapshots.append(SnapshotInfo(path=entry, timestamp=timestamp, state=state))
    snapshots.sort(key=lambda s: s.name)
    return snapshots


def scan_vault(vault_root: Path) -> List[ChainInfo]:
    """
    List every chain in a vault with its snapshots.

    Hidden entries, plain files and directories whose names aren't
    timestamps are ignored.

    Returns:
        Chains sorted oldest first; empty if the vault doesn't exist yet
    """
    vault_root = Path(vault_root)
    if not vault_root.is_dir():
        return []

    chains = []
    for entry in vault_root.iterdir():
        if not entry.is_dir() or entry.name.startswith("."):
            continue
        timestamp = parse_timestamp(entry.name)
        if timestamp is None or is_provisional(entry.name):
            logger.debug(f"Ignoring non-chain directory: {entry}")
            continue
        chains.append(ChainInfo(
            path=entry,
            timestamp=timestamp,
            snapshots=_scan_snapshots(entry),
        ))

    chains.sort(key=lambda c: c.name)
    return chains


class VaultLayout:
    """
    Maps a destination root and vault name onto the chain hierarchy.

    The vault name is expected to be sanitized already (Configuration does
    this when it is built).
    """

    def __init__(self, destination: Path, vault: str):
        self.destination = Path(destination)
        self.vault = vault

    @property
    def vault_root(self) -> Path:
        return self.destination / FIXED_PREFIX / self.vault

    def scan(self) -> List[ChainInfo]:
        return scan_vault(self.vault_root)

    def plan(
        self,
        kind: SnapshotKind,
        timestamp: datetime,
        chain: Optional[ChainInfo] = None,
        link_reference: Optional[SnapshotInfo] = None,
    ) -> SnapshotPlan:
        """
        Lay out the next snapshot.

        A FULL snapshot starts a new chain named after itself. An INCREMENTAL
        goes into the chain of its link-reference.
        """
        name = name_for(timestamp)
        if kind is SnapshotKind.FULL:
            return SnapshotPlan(
                kind=kind,
                chain_path=self.vault_root / name,
                new_chain=True,
                snapshot_name=name,
            )

        if chain is None or link_reference is None:
            raise ValueError("An incremental snapshot needs a chain and a link-reference")
        return SnapshotPlan(
            kind=kind,
            chain_path=chain.path,
            new_chain=False,
            snapshot_name=name,
            link_reference=link_reference.path,
        )
