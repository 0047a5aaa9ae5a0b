"""Snapshot materialization for rsnap.

Writes one planned snapshot: the copy goes into a provisional directory
and only a successful rsync run renames it to its final name. The rename
is the commit point; anything that stops short of it leaves a provisional
snapshot behind that later runs ignore.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import logging
import os
import shutil
import time

from rsnap.layout import SnapshotKind, SnapshotPlan
from rsnap.sync import SyncOptions, SyncResult, SyncRunner, command_for


logger = logging.getLogger(__name__)


# Exit code reported when the snapshot could not be written or committed
EXIT_COMMIT_FAILED = 1


class SnapshotCollisionError(Exception):
    """Raised when the planned snapshot or chain directory already exists."""
    pass


@dataclass
class CommitResult:
    """Result of materializing one snapshot."""
    success: bool
    kind: SnapshotKind
    exit_code: int
    provisional_path: Path
    snapshot_path: Optional[Path] = None  # set only once committed
    link_reference: Optional[Path] = None
    transcript_path: Optional[Path] = None
    sync_result: Optional[SyncResult] = None
    duration_seconds: float = 0.0
    error_message: Optional[str] = None


class SnapshotMaterializer:
    """
    Creates, fills and commits snapshot directories.

    The SyncRunner is injected so tests can substitute the rsync binary
    (through SyncOptions.rsync_path) or the runner itself.
    """

    def __init__(self, runner: Optional[SyncRunner] = None):
        self.runner = runner if runner is not None else SyncRunner()

    def check_collision(self, plan: SnapshotPlan) -> None:
        """
        Raises:
            SnapshotCollisionError: If any directory the plan would create, or
                the transcript beside it, exists
        """
        if plan.new_chain and plan.chain_path.exists():
            raise SnapshotCollisionError(f"Chain already exists: {plan.chain_path}")
        for path in (plan.final_path, plan.provisional_path, plan.provisional_transcript):
            if path.exists():
                raise SnapshotCollisionError(f"Already exists: {path}")

    def _unwritable(self, plan: SnapshotPlan, start_time: float, message: str) -> CommitResult:
        logger.error(f"{message}; nothing committed under {plan.chain_path}")
        return CommitResult(
            success=False,
            kind=plan.kind,
            exit_code=EXIT_COMMIT_FAILED,
            provisional_path=plan.provisional_path,
            link_reference=plan.link_reference,
            duration_seconds=time.time() - start_time,
            error_message=message,
        )

    def materialize(
        self,
        source: Path,
        plan: SnapshotPlan,
        options: SyncOptions,
    ) -> CommitResult:
        """
        Copy source into a new snapshot and commit it on success.

        Process:
        1. Refuse if the snapshot (or, for a FULL, its chain) exists
        2. Create the provisional directory
        3. Run rsync, writing the transcript beside the provisional directory
        4. Exit 0: rename to the final name, move the transcript inside it
        5. Otherwise: leave the provisional directory and transcript

        A snapshot directory or transcript that can't be written gives a
        failed CommitResult with exit code 1 rather than an exception.

        Args:
            source: Directory to back up
            plan: Layout of the new snapshot
            options: rsync options

        Returns:
            CommitResult; success is True only once the rename happened

        Raises:
            SnapshotCollisionError: If the planned directories already exist
            SyncError: If rsync can't be started (the snapshot stays provisional)
            KeyboardInterrupt: After rsync has been terminated
        """
        self.check_collision(plan)
        start_time = time.time()

        try:
            plan.provisional_path.mkdir(parents=True)
        except OSError as e:
            return self._unwritable(plan, start_time, f"Could not create snapshot directory: {e}")
        logger.info(f"Writing {plan.kind.value} snapshot to {plan.provisional_path}")
        if plan.link_reference is not None:
            logger.info(f"Hard-linking unchanged files against {plan.link_reference}")

        command = command_for(source, plan, options)
        try:
            sync_result = self.runner.run(command, plan.provisional_transcript)
        except KeyboardInterrupt:
            logger.warning(f"Interrupted; snapshot left provisional: {plan.provisional_path}")
            raise
        except OSError as e:
            return self._unwritable(plan, start_time, f"Could not write transcript: {e}")

        result = CommitResult(
            success=False,
            kind=plan.kind,
            exit_code=sync_result.exit_code,
            provisional_path=plan.provisional_path,
            link_reference=plan.link_reference,
            transcript_path=plan.provisional_transcript,
            sync_result=sync_result,
        )

        if not sync_result.success:
            result.duration_seconds = time.time() - start_time
            result.error_message = f"rsync exited with code {sync_result.exit_code}"
            logger.error(
                f"{result.error_message}; snapshot left provisional: {plan.provisional_path} "
                f"(transcript: {plan.provisional_transcript})"
            )
            return result

        try:
            os.rename(plan.provisional_path, plan.final_path)
        except OSError as e:
            result.exit_code = EXIT_COMMIT_FAILED
            result.duration_seconds = time.time() - start_time
            result.error_message = f"Could not commit snapshot: {e}"
            logger.error(result.error_message)
            return result

        result.success = True
        result.snapshot_path = plan.final_path
        try:
            shutil.move(str(plan.provisional_transcript), str(plan.final_transcript))
            result.transcript_path = plan.final_transcript
        except OSError as e:
            # The snapshot is committed; only the transcript is misplaced
            logger.warning(f"Could not move transcript into {plan.final_path}: {e}")

        result.duration_seconds = time.time() - start_time
        logger.info(f"Committed snapshot {plan.final_path}")
        return result
