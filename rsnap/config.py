"""Configuration management for rsnap.

This module provides immutable dataclasses for configuration and functions
for parsing TOML configuration files and merging command-line overrides.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
import re
import socket
import tomllib


class ConfigurationError(Exception):
    """Raised when configuration is missing, malformed or unusable."""
    pass


class ValidationError(Exception):
    """Raised when configuration values have invalid types."""
    pass


class FilesystemType(Enum):
    """Destination filesystem type, used to pick metadata-preserving flags."""
    APFS = "apfs"
    HFS = "hfs"
    UNIX = "unix"
    FAT = "fat"
    NTFS = "ntfs"


class PriorityLevel(Enum):
    """How aggressively the copy may use CPU, disk and bandwidth."""
    IDLE = "idle"
    NORMAL = "normal"
    FAST = "fast"


# Characters outside this class are stripped from vault names
_VAULT_NAME_STRIP = re.compile(r"[^A-Za-z0-9_-]")

DEFAULT_KEEP_CHAINS = 3
DEFAULT_FULL_EVERY = 7


def sanitize_vault_name(name: str) -> str:
    """
    Strip every character outside [A-Za-z0-9_-] from a vault name.

    Args:
        name: Raw vault name (often the host name)

    Returns:
        The sanitized name

    Raises:
        ConfigurationError: If nothing is left after sanitization
    """
    sanitized = _VAULT_NAME_STRIP.sub("", name or "")
    if not sanitized:
        raise ConfigurationError(
            f"Vault name '{name}' is empty after removing characters "
            f"outside [A-Za-z0-9_-]"
        )
    return sanitized


def default_vault_name() -> str:
    """Return the host name, which is the vault name when none is given."""
    return socket.gethostname()


@dataclass(frozen=True)
class RetentionConfig:
    """Configuration for chain retention and full-backup cadence."""
    keep_chains: int = DEFAULT_KEEP_CHAINS
    full_every: int = DEFAULT_FULL_EVERY


@dataclass(frozen=True)
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"  # "DEBUG", "INFO", "WARNING", "ERROR"
    log_file: Optional[Path] = None  # None = console only
    log_max_size_mb: int = 10
    log_backup_count: int = 5

    @property
    def log_max_bytes(self) -> int:
        """Return max size in bytes for use with RotatingFileHandler."""
        return self.log_max_size_mb * 1024 * 1024


@dataclass(frozen=True)
class Configuration:
    """Everything one rsnap invocation needs, built once and passed down."""
    destination: Path
    vault: str
    source: Optional[Path] = None
    exclude_from: Optional[Path] = None
    fs_type: FilesystemType = FilesystemType.UNIX
    priority: PriorityLevel = PriorityLevel.NORMAL
    safe_mode: bool = False
    force_full: bool = False
    allow_same_volume: bool = False
    strict_volume_check: bool = False
    prune_only: bool = False
    prune_after: bool = False
    dry_run: bool = False
    quiet: bool = False
    rsync_path: str = "rsync"
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self):
        # Vault names are always stored sanitized
        object.__setattr__(self, "vault", sanitize_vault_name(self.vault))
        if self.retention.keep_chains < 1:
            raise ValidationError("retention.keep_chains must be at least 1")
        if self.retention.full_every < 1:
            raise ValidationError("retention.full_every must be at least 1")


# Default config file path
DEFAULT_CONFIG_PATH = Path.home() / ".config/rsnap/config.toml"


def _validate_type(value: Any, expected_type: type, key: str) -> None:
    """Validate that a value has the expected type."""
    # bool is a subclass of int, but "keep_chains = true" is a mistake
    if expected_type is int and isinstance(value, bool):
        raise ValidationError(
            f"Key '{key}' has invalid type: expected int, got bool"
        )
    if not isinstance(value, expected_type):
        raise ValidationError(
            f"Key '{key}' has invalid type: expected {expected_type.__name__}, "
            f"got {type(value).__name__}"
        )


def _parse_enum(enum_type, value: Any, key: str):
    """Parse a string into one of an enum's values."""
    _validate_type(value, str, key)
    try:
        return enum_type(value.lower())
    except ValueError:
        choices = ", ".join(member.value for member in enum_type)
        raise ValidationError(
            f"Key '{key}' has invalid value '{value}': expected one of {choices}"
        )


def _expand_path(value: str) -> Path:
    return Path(value).expanduser()


def _parse_retention_config(data: Dict[str, Any]) -> RetentionConfig:
    """Parse retention configuration from dict."""
    retention_data = data.get("retention", {})

    keep_chains = retention_data.get("keep_chains", DEFAULT_KEEP_CHAINS)
    _validate_type(keep_chains, int, "retention.keep_chains")

    full_every = retention_data.get("full_every", DEFAULT_FULL_EVERY)
    _validate_type(full_every, int, "retention.full_every")

    return RetentionConfig(keep_chains=keep_chains, full_every=full_every)


def _parse_logging_config(data: Dict[str, Any]) -> LoggingConfig:
    """Parse logging configuration from dict."""
    logging_data = data.get("logging", {})

    level = logging_data.get("level", "INFO")
    _validate_type(level, str, "logging.level")

    log_file = logging_data.get("log_file")
    if log_file is not None:
        _validate_type(log_file, str, "logging.log_file")

    log_max_size_mb = logging_data.get("log_max_size_mb", 10)
    _validate_type(log_max_size_mb, int, "logging.log_max_size_mb")

    log_backup_count = logging_data.get("log_backup_count", 5)
    _validate_type(log_backup_count, int, "logging.log_backup_count")

    return LoggingConfig(
        level=level.upper(),
        log_file=_expand_path(log_file) if log_file else None,
        log_max_size_mb=log_max_size_mb,
        log_backup_count=log_backup_count,
    )


def _parse_backup_section(data: Dict[str, Any]) -> Dict[str, Any]:
    """Parse the [backup] table into Configuration keyword arguments."""
    backup_data = data.get("backup", {})
    values: Dict[str, Any] = {}

    for key in ("source", "destination", "exclude_from"):
        if key in backup_data:
            _validate_type(backup_data[key], str, f"backup.{key}")
            values[key] = _expand_path(backup_data[key])

    for key in ("vault", "rsync_path"):
        if key in backup_data:
            _validate_type(backup_data[key], str, f"backup.{key}")
            values[key] = backup_data[key]

    if "fs_type" in backup_data:
        values["fs_type"] = _parse_enum(
            FilesystemType, backup_data["fs_type"], "backup.fs_type"
        )
    if "priority" in backup_data:
        values["priority"] = _parse_enum(
            PriorityLevel, backup_data["priority"], "backup.priority"
        )

    for key in (
        "safe_mode",
        "allow_same_volume",
        "strict_volume_check",
        "prune_after",
        "quiet",
    ):
        if key in backup_data:
            _validate_type(backup_data[key], bool, f"backup.{key}")
            values[key] = backup_data[key]

    return values


def parse_config_string(
    toml_content: str,
    overrides: Optional[Dict[str, Any]] = None,
) -> Configuration:
    """
    Parse TOML string into Configuration object.

    Args:
        toml_content: TOML formatted string
        overrides: Values that win over the file (typically from the CLI);
                   None values are ignored

    Returns:
        Configuration object

    Raises:
        ConfigurationError: If the TOML is malformed or destination is missing
        ValidationError: If a value has the wrong type
    """
    try:
        data = tomllib.loads(toml_content)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML format: {e}")

    values = _parse_backup_section(data)
    values["retention"] = _parse_retention_config(data)
    values["logging"] = _parse_logging_config(data)
    return build_config(values, overrides)


def build_config(
    values: Dict[str, Any],
    overrides: Optional[Dict[str, Any]] = None,
) -> Configuration:
    """
    Build a Configuration from file values and command-line overrides.

    Override keys "keep_chains", "full_every", "log_level" and "log_file" are
    routed into the nested retention and logging sections.
    """
    merged = dict(values)
    retention = merged.pop("retention", RetentionConfig())
    logging_config = merged.pop("logging", LoggingConfig())

    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if key in ("keep_chains", "full_every"):
            retention = replace(retention, **{key: value})
        elif key == "log_level":
            logging_config = replace(logging_config, level=value.upper())
        elif key == "log_file":
            logging_config = replace(logging_config, log_file=Path(value))
        else:
            merged[key] = value

    if merged.get("destination") is None:
        raise ConfigurationError("Missing required configuration key: 'destination'")
    if not merged.get("vault"):
        merged["vault"] = default_vault_name()

    return Configuration(retention=retention, logging=logging_config, **merged)


def parse_config(
    config_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Configuration:
    """
    Parse TOML configuration file into Configuration object.

    Args:
        config_path: Path to config file. Defaults to ~/.config/rsnap/config.toml
        overrides: Values that win over the file

    Returns:
        Configuration object

    Raises:
        ConfigurationError: If file doesn't exist or cannot be read
        ValidationError: If value has wrong type
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    if not config_path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {config_path}"
        )

    try:
        content = config_path.read_text()
    except PermissionError:
        raise ConfigurationError(
            f"Permission denied reading configuration file: {config_path}"
        )
    except OSError as e:
        raise ConfigurationError(
            f"Error reading configuration file {config_path}: {e}"
        )

    return parse_config_string(content, overrides)
