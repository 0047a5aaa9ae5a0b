"""Logging configuration for rsnap.

This module provides logging setup and utility functions for backup runs.
Console output is always installed; a log file is added when configured,
with automatic rotation and gzip compression of rotated files.
"""

import gzip
import logging
import os
import shutil
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rsnap.config import LoggingConfig


# Logger name for the rsnap package
LOGGER_NAME = "rsnap"

# Default rotation settings
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10MB
DEFAULT_BACKUP_COUNT = 5

# Valid log levels
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}

CONSOLE_FORMAT = "%(message)s"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class LoggingError(Exception):
    """Raised when logging setup fails."""
    pass


class GzipRotatingFileHandler(RotatingFileHandler):
    """
    Rotating file handler that compresses rotated files with gzip.

    Rotated files are named with a .gz extension.
    """

    def rotation_filename(self, default_name: str) -> str:
        return default_name + ".gz"

    def rotate(self, source: str, dest: str) -> None:
        """
        Rotate and compress the log file.

        Falls back to a plain rename if compression fails.
        """
        if not os.path.exists(source):
            return

        try:
            with open(source, 'rb') as f_in:
                with gzip.open(dest, 'wb') as f_out:
                    shutil.copyfileobj(f_in, f_out)
            os.remove(source)
        except OSError:
            if os.path.exists(source):
                fallback_dest = dest[:-3] if dest.endswith('.gz') else dest
                try:
                    os.rename(source, fallback_dest)
                except OSError:
                    pass  # Best effort - don't fail logging


def _ensure_log_directory(log_path: Path) -> None:
    """Ensure the parent directory for a log file exists."""
    log_dir = log_path.parent
    if not log_dir.exists():
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LoggingError(f"Failed to create log directory {log_dir}: {e}")


def _get_log_level(level_str: str) -> int:
    """Convert log level string to logging constant."""
    level_str = level_str.upper()
    if level_str not in VALID_LOG_LEVELS:
        raise LoggingError(
            f"Invalid log level '{level_str}'. Must be one of: "
            f"{', '.join(sorted(VALID_LOG_LEVELS))}"
        )
    return getattr(logging, level_str)


def setup_logging(
    config: Optional[LoggingConfig] = None,
    quiet: bool = False,
) -> logging.Logger:
    """
    Configure logging for rsnap.

    Sets up logging with:
    - Console output (stderr); only warnings and errors when quiet
    - A gzip-rotating file handler when config.log_file is set

    Calling this again replaces the handlers installed by a previous call.

    Args:
        config: LoggingConfig object with settings (defaults if None)
        quiet: Suppress informational console output

    Returns:
        Configured logger instance

    Raises:
        LoggingError: If the level is invalid or the log directory can't be created
    """
    if config is None:
        config = LoggingConfig()

    log_level = _get_log_level(config.level)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(max(log_level, logging.WARNING) if quiet else log_level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(console_handler)

    if config.log_file is not None:
        _ensure_log_directory(config.log_file)
        file_handler = GzipRotatingFileHandler(
            config.log_file,
            maxBytes=config.log_max_bytes or DEFAULT_MAX_BYTES,
            backupCount=config.log_backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        logger.addHandler(file_handler)

    return logger


def get_logger() -> logging.Logger:
    """Get the rsnap logger instance."""
    return logging.getLogger(LOGGER_NAME)


def log_backup_start(
    logger: logging.Logger,
    source: Path,
    vault_root: Path,
) -> None:
    """Log the start of a backup run."""
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    logger.info(f"====== Backup started at {timestamp} ======")
    logger.info(f"Source: {source}")
    logger.info(f"Vault: {vault_root}")


def _format_size(size_bytes: int) -> str:
    if size_bytes >= 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024 * 1024):.2f} GB"
    elif size_bytes >= 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.2f} MB"
    elif size_bytes >= 1024:
        return f"{size_bytes / 1024:.2f} KB"
    return f"{size_bytes} bytes"


def log_backup_completion(
    logger: logging.Logger,
    duration_seconds: float,
    files_transferred: int,
    bytes_sent: int,
    snapshot_path: Optional[Path] = None,
) -> None:
    """Log the completion of a backup run."""
    logger.info("Backup completed successfully")
    logger.info(f"Duration: {duration_seconds:.2f} seconds")
    logger.info(f"Files transferred: {files_transferred}")
    logger.info(f"Data sent: {_format_size(bytes_sent)}")
    if snapshot_path:
        logger.info(f"Snapshot: {snapshot_path}")


def log_backup_error(
    logger: logging.Logger,
    error: Exception,
    context: Optional[str] = None,
) -> None:
    """Log a backup error, with the step it happened in when known."""
    if context:
        logger.error(f"Backup failed during {context}: {error}")
    else:
        logger.error(f"Backup failed: {error}")
