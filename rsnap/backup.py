"""Run coordination for rsnap.

run_backup() sequences one invocation:

1. Validate the destination (and, unless pruning only, the source, exclude
   file and rsync binary)
2. Resolve both volumes and refuse to back a volume up onto itself
3. Take the vault lock
4. Scan the vault, decide FULL or INCREMENTAL and lay the snapshot out
5. Materialize and commit the snapshot
6. Optionally prune old chains

Every failure up to step 4 happens before anything is written. The lock
and signal handlers are always released. Pruning problems are reported
but never fail a backup.
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional
import logging
import shlex
import time

from rsnap.config import Configuration
from rsnap.decision import BackupDecision, decide
from rsnap.destination import (
    DestinationError,
    find_rsync,
    validate_destination,
    validate_exclude_file,
    validate_source,
)
from rsnap.layout import SnapshotPlan, VaultLayout
from rsnap.lock import LockError, LockManager, lock_path_for
from rsnap.logger import (
    get_logger,
    log_backup_completion,
    log_backup_error,
    log_backup_start,
)
from rsnap.materializer import CommitResult, SnapshotCollisionError, SnapshotMaterializer
from rsnap.pruning import PruneEngine, PruneResult
from rsnap.signal_handler import SignalHandler
from rsnap.sync import SyncError, SyncOptions, SyncRunner, command_for
from rsnap.volume import SameVolumeError, check_same_volume


EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


@dataclass
class BackupResult:
    """Result of one rsnap invocation."""
    success: bool
    exit_code: int
    decision: Optional[BackupDecision] = None
    plan: Optional[SnapshotPlan] = None
    commit_result: Optional[CommitResult] = None
    prune_result: Optional[PruneResult] = None
    error_message: Optional[str] = None
    dry_run: bool = False


def _failure(
    logger: logging.Logger,
    error: Exception,
    context: str,
    exit_code: int = EXIT_FAILURE,
    **kwargs,
) -> BackupResult:
    log_backup_error(logger, error, context)
    return BackupResult(
        success=False,
        exit_code=exit_code,
        error_message=str(error),
        **kwargs,
    )


def _prune(
    logger: logging.Logger,
    vault_root: Path,
    keep_count: int,
    dry_run: bool,
) -> Optional[PruneResult]:
    logger.info(f"Pruning {vault_root}, keeping {keep_count} chain(s)")
    try:
        return PruneEngine(vault_root).prune(keep_count, dry_run=dry_run)
    except OSError as e:
        logger.warning(f"Pruning failed: {e}")
        return None


def _run_prune_only(
    config: Configuration,
    logger: logging.Logger,
    vault_root: Path,
) -> BackupResult:
    lock_manager: Optional[LockManager] = None
    try:
        if not config.dry_run:
            lock_manager = LockManager(lock_path_for(vault_root))
            try:
                lock_manager.acquire()
            except LockError as e:
                lock_manager = None
                return _failure(logger, e, "lock acquisition")

        prune_result = _prune(
            logger, vault_root, config.retention.keep_chains, config.dry_run
        )
        if prune_result is None or prune_result.failed:
            return BackupResult(
                success=False,
                exit_code=EXIT_FAILURE,
                prune_result=prune_result,
                error_message="Pruning did not complete",
                dry_run=config.dry_run,
            )
        return BackupResult(
            success=True,
            exit_code=EXIT_SUCCESS,
            prune_result=prune_result,
            dry_run=config.dry_run,
        )
    finally:
        if lock_manager is not None:
            lock_manager.release()


def run_backup(
    config: Configuration,
    clock: Optional[Callable[[], datetime]] = None,
    runner: Optional[SyncRunner] = None,
) -> BackupResult:
    """
    Run one backup (or prune-only pass) for a configuration.

    Args:
        config: Run configuration
        clock: Returns the snapshot timestamp; defaults to datetime.now
        runner: SyncRunner to execute rsync with (e.g. one with a progress
                callback); a plain one is created if omitted

    Returns:
        BackupResult; exit_code is 0 on success, the rsync exit code when
        rsync failed, 130 when interrupted and 1 for anything else
    """
    logger = get_logger()
    clock = clock if clock is not None else datetime.now
    layout = VaultLayout(config.destination, config.vault)
    vault_root = layout.vault_root
    start_time = time.time()

    try:
        validate_destination(config.destination, require_writable=not config.dry_run)
    except DestinationError as e:
        return _failure(logger, e, "destination validation")

    if config.prune_only:
        return _run_prune_only(config, logger, vault_root)

    try:
        validate_source(config.source)
        validate_exclude_file(config.exclude_from)
        find_rsync(config.rsync_path)
    except DestinationError as e:
        return _failure(logger, e, "validation")

    try:
        check_same_volume(
            config.source,
            config.destination,
            allow_same_volume=config.allow_same_volume,
            strict_unknown=config.strict_volume_check,
        )
    except SameVolumeError as e:
        return _failure(logger, e, "volume check")

    lock_manager: Optional[LockManager] = None
    signal_handler: Optional[SignalHandler] = None

    try:
        if not config.dry_run:
            lock_manager = LockManager(lock_path_for(vault_root))
            try:
                lock_manager.acquire()
            except LockError as e:
                lock_manager = None
                return _failure(logger, e, "lock acquisition")
            logger.debug("Vault lock acquired")

        log_backup_start(logger, config.source, vault_root)

        decision = decide(
            layout.scan(),
            full_every=config.retention.full_every,
            force_full=config.force_full,
        )
        logger.info(f"Decision: {decision.kind.value.upper()} ({decision.reason})")

        plan = layout.plan(
            decision.kind,
            clock(),
            chain=decision.chain,
            link_reference=decision.link_reference,
        )
        options = SyncOptions.from_config(config)

        if config.dry_run:
            command = command_for(config.source, plan, options)
            logger.info(f"Dry run: would write {plan.final_path}")
            logger.info(f"Dry run: would run {shlex.join(command.build_args())}")
            prune_result = None
            if config.prune_after:
                prune_result = _prune(
                    logger, vault_root, config.retention.keep_chains, dry_run=True
                )
            return BackupResult(
                success=True,
                exit_code=EXIT_SUCCESS,
                decision=decision,
                plan=plan,
                prune_result=prune_result,
                dry_run=True,
            )

        runner = runner if runner is not None else SyncRunner()
        signal_handler = SignalHandler()
        signal_handler.register(lock_manager=lock_manager)
        signal_handler.set_provisional_path(plan.provisional_path)
        if runner.on_process is None:
            runner.on_process = signal_handler.set_sync_process

        try:
            commit = SnapshotMaterializer(runner).materialize(config.source, plan, options)
        except SnapshotCollisionError as e:
            return _failure(logger, e, "snapshot creation", decision=decision, plan=plan)
        except SyncError as e:
            return _failure(logger, e, "rsync", decision=decision, plan=plan)
        except KeyboardInterrupt:
            logger.warning(f"Backup interrupted; {plan.provisional_path} left provisional")
            return BackupResult(
                success=False,
                exit_code=EXIT_INTERRUPTED,
                decision=decision,
                plan=plan,
                error_message="Interrupted",
            )
        finally:
            if runner.on_process == signal_handler.set_sync_process:
                runner.on_process = None

        if not commit.success:
            logger.error(f"Backup failed: {commit.error_message}")
            return BackupResult(
                success=False,
                exit_code=commit.exit_code,
                decision=decision,
                plan=plan,
                commit_result=commit,
                error_message=commit.error_message,
            )

        log_backup_completion(
            logger,
            time.time() - start_time,
            commit.sync_result.files_transferred,
            commit.sync_result.bytes_sent,
            commit.snapshot_path,
        )

        prune_result = None
        if config.prune_after:
            prune_result = _prune(
                logger, vault_root, config.retention.keep_chains, dry_run=False
            )

        return BackupResult(
            success=True,
            exit_code=EXIT_SUCCESS,
            decision=decision,
            plan=plan,
            commit_result=commit,
            prune_result=prune_result,
        )

    finally:
        if signal_handler is not None:
            signal_handler.unregister()
        if lock_manager is not None:
            lock_manager.release()
