"""rsnap - Time Machine style snapshot backups with rsync and hard links."""

__version__ = "0.1.0"

from rsnap.config import (
    Configuration,
    ConfigurationError,
    FilesystemType,
    LoggingConfig,
    PriorityLevel,
    RetentionConfig,
    ValidationError,
    build_config,
    parse_config,
    sanitize_vault_name,
)
from rsnap.volume import (
    SameVolumeError,
    VolumeCheck,
    check_same_volume,
    resolve_volume_id,
)
from rsnap.destination import DestinationError, validate_destination
from rsnap.layout import (
    ChainInfo,
    SnapshotInfo,
    SnapshotKind,
    SnapshotPlan,
    SnapshotState,
    VaultLayout,
)
from rsnap.decision import BackupDecision, decide
from rsnap.sync import (
    FullCopyCommand,
    LinkedCopyCommand,
    SyncCommand,
    SyncError,
    SyncOptions,
    SyncResult,
    SyncRunner,
)
from rsnap.materializer import (
    CommitResult,
    SnapshotCollisionError,
    SnapshotMaterializer,
)
from rsnap.pruning import PruneAction, PruneActionKind, PruneEngine, PruneResult
from rsnap.lock import LockError, LockManager
from rsnap.logger import LoggingError, setup_logging, get_logger
from rsnap.backup import (
    BackupResult,
    run_backup,
    EXIT_SUCCESS,
    EXIT_FAILURE,
    EXIT_INTERRUPTED,
)

__all__ = [
    "Configuration",
    "ConfigurationError",
    "FilesystemType",
    "LoggingConfig",
    "PriorityLevel",
    "RetentionConfig",
    "ValidationError",
    "build_config",
    "parse_config",
    "sanitize_vault_name",
    "SameVolumeError",
    "VolumeCheck",
    "check_same_volume",
    "resolve_volume_id",
    "DestinationError",
    "validate_destination",
    "ChainInfo",
    "SnapshotInfo",
    "SnapshotKind",
    "SnapshotPlan",
    "SnapshotState",
    "VaultLayout",
    "BackupDecision",
    "decide",
    "FullCopyCommand",
    "LinkedCopyCommand",
    "SyncCommand",
    "SyncError",
    "SyncOptions",
    "SyncResult",
    "SyncRunner",
    "CommitResult",
    "SnapshotCollisionError",
    "SnapshotMaterializer",
    "PruneAction",
    "PruneActionKind",
    "PruneEngine",
    "PruneResult",
    "LockError",
    "LockManager",
    "LoggingError",
    "setup_logging",
    "get_logger",
    "BackupResult",
    "run_backup",
    "EXIT_SUCCESS",
    "EXIT_FAILURE",
    "EXIT_INTERRUPTED",
]
