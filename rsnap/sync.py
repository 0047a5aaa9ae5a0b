"""rsync invocation for rsnap.

This is the only place that assembles rsync arguments. A SyncCommand is
either a FullCopyCommand or a LinkedCopyCommand (adds --link-dest so that
unchanged files become hard links into the reference snapshot). The
SyncRunner executes a command, streams its output to a transcript file,
waits for it and parses the --stats summary into a SyncResult.
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional
import logging
import os
import shlex
import shutil
import subprocess
import sys
import time

from rsnap.config import Configuration, FilesystemType, PriorityLevel
from rsnap.layout import SnapshotKind, SnapshotPlan
from rsnap.progress import DEFAULT_INTERVAL, LivenessTicker


logger = logging.getLogger(__name__)


class SyncError(Exception):
    """Raised when rsync can't be started at all."""
    pass


@dataclass(frozen=True)
class PrioritySettings:
    """Process and bandwidth limits for one priority level."""
    nice: int
    bwlimit_kbps: int  # 0 = unlimited
    idle_io: bool


PRIORITY_SETTINGS: Dict[PriorityLevel, PrioritySettings] = {
    PriorityLevel.IDLE: PrioritySettings(nice=19, bwlimit_kbps=20000, idle_io=True),
    PriorityLevel.NORMAL: PrioritySettings(nice=0, bwlimit_kbps=50000, idle_io=False),
    PriorityLevel.FAST: PrioritySettings(nice=-5, bwlimit_kbps=100000, idle_io=False),
}

# Metadata flags by destination filesystem
FILESYSTEM_FLAGS: Dict[FilesystemType, List[str]] = {
    FilesystemType.APFS: ["--xattrs", "--crtimes", "--protect-args"],
    FilesystemType.HFS: ["--xattrs", "--crtimes"],
    FilesystemType.UNIX: ["--no-xattrs"],
    FilesystemType.FAT: ["--no-xattrs"],
    FilesystemType.NTFS: ["--no-xattrs"],
}

BASE_FLAGS = ["-a", "-v", "--delete", "--stats", "--human-readable", "--progress"]

# rsync --human-readable size suffixes
_SIZE_SUFFIXES = {"K": 1024, "M": 1024 ** 2, "G": 1024 ** 3, "T": 1024 ** 4}


def _with_trailing_separator(path: Path) -> str:
    # rsync copies a directory's contents, not the directory, when the
    # source ends with a separator
    path_str = str(path)
    if not path_str.endswith(os.sep):
        path_str += os.sep
    return path_str


@dataclass(frozen=True)
class SyncOptions:
    """Everything about an rsync run that doesn't depend on the snapshot."""
    rsync_path: str = "rsync"
    fs_type: FilesystemType = FilesystemType.UNIX
    priority: PriorityLevel = PriorityLevel.NORMAL
    exclude_from: Optional[Path] = None
    safe_mode: bool = False
    quiet: bool = False

    @classmethod
    def from_config(cls, config: Configuration) -> "SyncOptions":
        return cls(
            rsync_path=config.rsync_path,
            fs_type=config.fs_type,
            priority=config.priority,
            exclude_from=config.exclude_from,
            safe_mode=config.safe_mode,
            quiet=config.quiet,
        )


class SyncCommand:
    """A full-copy rsync invocation; subclasses add link-reference handling."""

    kind = SnapshotKind.FULL

    def __init__(self, source: Path, destination: Path, options: SyncOptions):
        self.source = Path(source)
        self.destination = Path(destination)
        self.options = options

    def priority_prefix(self) -> List[str]:
        """nice/ionice wrapper for the configured priority, when available."""
        settings = PRIORITY_SETTINGS[self.options.priority]
        prefix: List[str] = []
        if settings.nice != 0 and shutil.which("nice"):
            prefix += ["nice", "-n", str(settings.nice)]
        if settings.idle_io and sys.platform.startswith("linux") and shutil.which("ionice"):
            prefix += ["ionice", "-c", "3"]
        return prefix

    def rsync_options(self) -> List[str]:
        options = list(BASE_FLAGS)
        if self.options.quiet:
            options.append("--quiet")
        options += FILESYSTEM_FLAGS[self.options.fs_type]
        if self.options.safe_mode:
            options.append("--no-links")
        bwlimit = PRIORITY_SETTINGS[self.options.priority].bwlimit_kbps
        if bwlimit > 0:
            options.append(f"--bwlimit={bwlimit}")
        if self.options.exclude_from is not None:
            options.append(f"--exclude-from={self.options.exclude_from}")
        return options

    def link_options(self) -> List[str]:
        return []

    def build_args(self) -> List[str]:
        """Return the complete argument list for subprocess."""
        return (
            self.priority_prefix()
            + [self.options.rsync_path]
            + self.rsync_options()
            + self.link_options()
            + [
                _with_trailing_separator(self.source),
                _with_trailing_separator(self.destination),
            ]
        )


class FullCopyCommand(SyncCommand):
    """Copies every file."""
    kind = SnapshotKind.FULL


class LinkedCopyCommand(SyncCommand):
    """Hard-links files unchanged since link_reference instead of copying them."""

    kind = SnapshotKind.INCREMENTAL

    def __init__(
        self,
        source: Path,
        destination: Path,
        options: SyncOptions,
        link_reference: Path,
    ):
        super().__init__(source, destination, options)
        self.link_reference = Path(link_reference)

    def link_options(self) -> List[str]:
        # rsync resolves a relative --link-dest against the destination
        return [f"--link-dest={os.path.abspath(self.link_reference)}"]


def command_for(
    source: Path,
    plan: SnapshotPlan,
    options: SyncOptions,
) -> SyncCommand:
    """Build the command that writes a planned snapshot into its provisional directory."""
    if plan.link_reference is not None:
        return LinkedCopyCommand(
            source, plan.provisional_path, options, plan.link_reference
        )
    return FullCopyCommand(source, plan.provisional_path, options)


@dataclass
class SyncResult:
    """Outcome of one rsync run."""
    exit_code: int
    duration_seconds: float
    files_transferred: int = 0
    total_files: int = 0
    bytes_sent: int = 0

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def _parse_number(text: str) -> int:
    """Parse "2,895", "1.23K" or "17" as rsync prints them."""
    text = text.strip().replace(",", "")
    multiplier = 1
    if text and text[-1].upper() in _SIZE_SUFFIXES:
        multiplier = _SIZE_SUFFIXES[text[-1].upper()]
        text = text[:-1]
    return int(float(text) * multiplier)


def parse_rsync_stats(output: str) -> tuple[int, int, int]:
    """
    Parse rsync --stats output.

    Args:
        output: rsync stdout (or a transcript containing it)

    Returns:
        Tuple of (files_transferred, total_files, bytes_sent); fields that
        can't be found are 0
    """
    files_transferred = 0
    total_files = 0
    bytes_sent = 0

    # "Number of files: 2,895 (reg: 2,500, dir: 395)"
    # "Number of regular files transferred: 3"
    # "sent 1.23K bytes  received 73 bytes  646.00 bytes/sec"
    for line in output.splitlines():
        line = line.strip()

        if line.startswith('Number of files:'):
            try:
                total_files = _parse_number(line.split(':')[1].split('(')[0])
            except (ValueError, IndexError):
                pass

        elif line.startswith('Number of regular files transferred:'):
            try:
                files_transferred = _parse_number(line.split(':')[1])
            except (ValueError, IndexError):
                pass

        elif line.startswith('sent ') and ' bytes' in line:
            try:
                bytes_sent = _parse_number(line.split()[1])
            except (ValueError, IndexError):
                pass

    return files_transferred, total_files, bytes_sent


def _terminate(process: subprocess.Popen) -> None:
    process.terminate()
    try:
        process.wait(timeout=5)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


class SyncRunner:
    """
    Runs a SyncCommand to completion.

    Output (stdout and stderr) goes to the transcript file, framed by start
    and finish lines. While rsync runs, on_tick (if set) is called from a
    LivenessTicker. on_process is called with the child once started and
    with None once it has exited, so a signal handler can terminate it.
    """

    def __init__(
        self,
        on_tick: Optional[Callable[[int], None]] = None,
        on_process: Optional[Callable[[Optional[subprocess.Popen]], None]] = None,
        poll_interval: float = DEFAULT_INTERVAL,
    ):
        self.on_tick = on_tick
        self.on_process = on_process
        self.poll_interval = poll_interval

    def run(self, command: SyncCommand, transcript_path: Path) -> SyncResult:
        """
        Execute rsync and wait for it.

        A KeyboardInterrupt terminates rsync and propagates; the caller
        decides what happens to the partial snapshot.

        Raises:
            SyncError: If rsync can't be started
        """
        args = command.build_args()
        logger.info(f"Running command: {shlex.join(args)}")
        start_time = time.time()

        with open(transcript_path, "a", encoding="utf-8") as transcript:
            transcript.write(f"=== Backup started at {datetime.now():%Y-%m-%d %H:%M:%S} ===\n")
            transcript.write(f"Running command: {shlex.join(args)}\n")
            transcript.flush()

            try:
                process = subprocess.Popen(
                    args,
                    stdout=transcript,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                )
            except OSError as e:
                transcript.write(f"Failed to start rsync: {e}\n")
                raise SyncError(f"Failed to start rsync: {e}")

            if self.on_process is not None:
                self.on_process(process)

            ticker = None
            if self.on_tick is not None:
                ticker = LivenessTicker(
                    is_alive=lambda: process.poll() is None,
                    on_tick=self.on_tick,
                    interval=self.poll_interval,
                ).start()

            try:
                exit_code = process.wait()
            except KeyboardInterrupt:
                _terminate(process)
                transcript.write("=== Backup interrupted ===\n")
                raise
            finally:
                if ticker is not None:
                    ticker.stop()
                if self.on_process is not None:
                    self.on_process(None)

            if exit_code < 0:
                logger.warning(f"rsync was killed by signal {-exit_code}")
                exit_code = 128 - exit_code

            duration = time.time() - start_time
            transcript.write(f"=== Backup finished at {datetime.now():%Y-%m-%d %H:%M:%S} ===\n")
            transcript.write(f"Rsync exit code: {exit_code}\n")

        try:
            output = Path(transcript_path).read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.warning(f"Could not read transcript {transcript_path}: {e}")
            output = ""

        files_transferred, total_files, bytes_sent = parse_rsync_stats(output)
        return SyncResult(
            exit_code=exit_code,
            duration_seconds=duration,
            files_transferred=files_transferred,
            total_files=total_files,
            bytes_sent=bytes_sent,
        )
