"""Chain pruning for rsnap.

Retention works on whole chains: deleting a FULL snapshot without its
incrementals (or the reverse) would leave nothing useful, so the engine
keeps the newest keep_count chains and deletes older ones entirely. It
refuses to delete anything while the newest chain holds no committed
snapshot, since the chains about to go could then be the only good copies.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional
import logging
import shutil

from rsnap.layout import ChainInfo, scan_vault


logger = logging.getLogger(__name__)


class PruneActionKind(Enum):
    DELETED = "deleted"
    WOULD_DELETE = "would_delete"
    FAILED = "failed"


@dataclass(frozen=True)
class PruneAction:
    """What happened (or would happen) to one chain."""
    path: Path
    kind: PruneActionKind
    error: Optional[str] = None


@dataclass
class PruneResult:
    """Result of one pruning pass."""
    actions: List[PruneAction] = field(default_factory=list)
    kept: List[Path] = field(default_factory=list)
    skipped: bool = False
    skip_reason: Optional[str] = None

    @property
    def deleted(self) -> List[Path]:
        return [a.path for a in self.actions if a.kind is PruneActionKind.DELETED]

    @property
    def failed(self) -> List[Path]:
        return [a.path for a in self.actions if a.kind is PruneActionKind.FAILED]


class PruneEngine:
    """Deletes the oldest chains of one vault beyond a retention count."""

    def __init__(self, vault_root: Path):
        self.vault_root = Path(vault_root)

    def list_chains(self) -> List[ChainInfo]:
        return scan_vault(self.vault_root)

    def prune(self, keep_count: int, dry_run: bool = False) -> PruneResult:
        """
        Keep the newest keep_count chains and delete the rest, oldest first.

        Args:
            keep_count: Chains to keep; at least 1
            dry_run: Report what would be deleted without touching anything

        Returns:
            PruneResult with one action per candidate chain

        Raises:
            ValueError: If keep_count is less than 1
        """
        if keep_count < 1:
            raise ValueError(f"keep_count must be at least 1, got {keep_count}")

        if not self.vault_root.is_dir():
            logger.info(f"Nothing to prune: {self.vault_root} does not exist")
            return PruneResult()

        chains = self.list_chains()
        if len(chains) <= keep_count:
            logger.info(
                f"Nothing to prune: {len(chains)} chain(s), keeping {keep_count}"
            )
            return PruneResult(kept=[c.path for c in chains])

        newest = chains[-1]
        if not newest.has_complete:
            reason = (
                f"newest chain {newest.name} has no complete snapshot; "
                f"refusing to delete older chains"
            )
            logger.warning(f"Pruning skipped: {reason}")
            return PruneResult(
                kept=[c.path for c in chains],
                skipped=True,
                skip_reason=reason,
            )

        candidates = chains[:-keep_count]
        result = PruneResult(kept=[c.path for c in chains[-keep_count:]])

        for chain in candidates:
            if dry_run:
                logger.info(f"Would delete chain {chain.path}")
                result.actions.append(PruneAction(chain.path, PruneActionKind.WOULD_DELETE))
                continue
            try:
                shutil.rmtree(chain.path)
            except OSError as e:
                logger.error(f"Failed to delete chain {chain.path}: {e}")
                result.actions.append(
                    PruneAction(chain.path, PruneActionKind.FAILED, error=str(e))
                )
                continue
            logger.info(f"Deleted chain {chain.path}")
            result.actions.append(PruneAction(chain.path, PruneActionKind.DELETED))

        return result
