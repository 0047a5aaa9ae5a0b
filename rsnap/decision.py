"""Full/incremental decision for rsnap.

Given the vault's history, decide whether the next snapshot is a FULL copy
that starts a new chain or an INCREMENTAL hard-linked against the most
recent committed snapshot. Provisional snapshots are failed or interrupted
runs: they never count toward the cadence and are never linked against.
"""

from dataclasses import dataclass
from typing import Callable, List, Optional
import logging
import os

from rsnap.layout import ChainInfo, SnapshotInfo, SnapshotKind


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackupDecision:
    """What the next snapshot will be, and why."""
    kind: SnapshotKind
    reason: str
    chain: Optional[ChainInfo] = None  # chain the INCREMENTAL joins
    link_reference: Optional[SnapshotInfo] = None
    complete_in_chain: int = 0

    @property
    def is_full(self) -> bool:
        return self.kind is SnapshotKind.FULL


def _full(reason: str, complete_in_chain: int = 0) -> BackupDecision:
    return BackupDecision(
        kind=SnapshotKind.FULL,
        reason=reason,
        complete_in_chain=complete_in_chain,
    )


def find_current_chain(chains: List[ChainInfo]) -> Optional[ChainInfo]:
    """
    Return the chain holding the most recent committed snapshot.

    Ties between chains can't happen with well-formed names; if they do,
    the later chain by name wins.
    """
    current: Optional[ChainInfo] = None
    for chain in chains:
        latest = chain.latest_complete
        if latest is None:
            continue
        if current is None or latest.name >= current.latest_complete.name:
            current = chain
    return current


def decide(
    chains: List[ChainInfo],
    full_every: int = 7,
    force_full: bool = False,
    reference_exists: Callable[[str], bool] = os.path.isdir,
) -> BackupDecision:
    """
    Decide FULL or INCREMENTAL for the next snapshot.

    1. force_full, or no committed snapshot at all: FULL.
    2. The current chain already holds full_every committed snapshots: FULL.
    3. Otherwise INCREMENTAL against the most recent committed snapshot.
    4. If that snapshot's directory is gone by now: FULL.

    Args:
        chains: Vault history as returned by VaultLayout.scan()
        full_every: Committed snapshots per chain before a new FULL is forced
        force_full: Always start a new chain
        reference_exists: Check that the link-reference is still on disk

    Returns:
        BackupDecision

    Raises:
        ValueError: If full_every is less than 1
    """
    if full_every < 1:
        raise ValueError(f"full_every must be at least 1, got {full_every}")

    if force_full:
        return _full("full backup forced")

    current = find_current_chain(chains)
    if current is None:
        return _full("no complete snapshot exists")

    newest = chains[-1]
    if newest is not current and not newest.has_complete:
        logger.warning(
            f"Newest chain {newest.name} has no complete snapshot; continuing "
            f"chain {current.name}. Pruning stays skipped until {newest.name} "
            f"is removed or a full backup succeeds"
        )

    complete_count = len(current.complete_snapshots)
    if complete_count >= full_every:
        return _full(
            f"chain {current.name} holds {complete_count} complete snapshot(s) "
            f"(full every {full_every})",
            complete_in_chain=complete_count,
        )

    reference = current.latest_complete
    if not reference_exists(str(reference.path)):
        logger.warning(
            f"Link-reference {reference.path} disappeared; falling back to a full backup"
        )
        return _full(
            f"link-reference {reference.name} no longer exists",
            complete_in_chain=complete_count,
        )

    return BackupDecision(
        kind=SnapshotKind.INCREMENTAL,
        reason=(
            f"chain {current.name} holds {complete_count} complete snapshot(s) "
            f"(full every {full_every})"
        ),
        chain=current,
        link_reference=reference,
        complete_in_chain=complete_count,
    )
