"""Per-vault run lock for rsnap.

Two runs against the same vault would race on chain selection and
pruning, so every mutating run holds an fcntl.flock on a file inside the
vault root. The file also records the holder's PID.
"""

from pathlib import Path
from typing import Optional
import fcntl
import logging
import os
import time


logger = logging.getLogger(__name__)


# Lock file name inside the vault root; hidden, so scans skip it
LOCK_FILE_NAME = ".rsnap.lock"


class LockError(Exception):
    """Raised when the vault lock can't be acquired."""
    pass


def lock_path_for(vault_root: Path) -> Path:
    return Path(vault_root) / LOCK_FILE_NAME


class LockManager:
    """
    Exclusive lock on one vault.

    Acquisition is a single non-blocking flock retried until the timeout;
    a PID left behind by a dead process is simply overwritten once the
    flock is ours. Usable as a context manager.
    """

    def __init__(self, lock_path: Path, timeout: float = 0):
        """
        Args:
            lock_path: Lock file, normally lock_path_for(vault_root)
            timeout: Seconds to keep retrying; 0 fails on the first attempt
        """
        self.lock_path = Path(lock_path)
        self.timeout = timeout
        self._lock_fd: Optional[int] = None

    @property
    def acquired(self) -> bool:
        return self._lock_fd is not None

    def acquire(self) -> bool:
        """
        Take the lock, creating the vault root if needed.

        Returns:
            True once the lock is held

        Raises:
            LockError: If another process holds the lock past the timeout,
                       or the lock file can't be opened
        """
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LockError(f"Cannot open lock file {self.lock_path}: {e}")

        start_time = time.time()
        while True:
            try:
                fd = os.open(str(self.lock_path), os.O_RDWR | os.O_CREAT, 0o644)
            except OSError as e:
                raise LockError(f"Cannot open lock file {self.lock_path}: {e}")
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                if time.time() - start_time >= self.timeout:
                    holder_pid = self.get_lock_holder_pid()
                    if holder_pid:
                        raise LockError(
                            f"Another rsnap run (PID {holder_pid}) holds the lock on "
                            f"{self.lock_path.parent}"
                        )
                    raise LockError(
                        f"Another rsnap run holds the lock on {self.lock_path.parent}"
                    )
                time.sleep(0.1)
                continue
            if self._is_current_file(fd):
                break
            # Locked a file the previous holder unlinked on release; start over
            os.close(fd)

        self._lock_fd = fd
        previous_pid = self._read_pid_from_fd()
        if previous_pid is not None and previous_pid != os.getpid():
            logger.debug(f"Taking over stale lock left by PID {previous_pid}")
        self._write_pid()
        return True

    def _is_current_file(self, fd: int) -> bool:
        """Whether fd still refers to the file at lock_path."""
        try:
            on_disk = os.stat(str(self.lock_path))
        except FileNotFoundError:
            return False
        held = os.fstat(fd)
        return (held.st_dev, held.st_ino) == (on_disk.st_dev, on_disk.st_ino)

    def release(self) -> None:
        """
        Release the lock and remove the lock file. Safe to call twice.

        The file is unlinked while still locked; a waiter that opened it
        earlier sees on acquisition that it is no longer current.
        """
        if self._lock_fd is None:
            return
        try:
            self.lock_path.unlink()
        except OSError:
            pass  # already gone
        try:
            fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
        finally:
            os.close(self._lock_fd)
            self._lock_fd = None

    def is_locked(self) -> bool:
        """Check whether any process currently holds the lock."""
        if not self.lock_path.exists():
            return False
        try:
            fd = os.open(str(self.lock_path), os.O_RDONLY)
        except OSError:
            return False
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            fcntl.flock(fd, fcntl.LOCK_UN)
            return False
        except BlockingIOError:
            return True
        finally:
            os.close(fd)

    def get_lock_holder_pid(self) -> Optional[int]:
        """Return the PID recorded in the lock file, or None."""
        try:
            content = self.lock_path.read_text().strip()
            return int(content) if content else None
        except (OSError, ValueError):
            return None

    def _read_pid_from_fd(self) -> Optional[int]:
        try:
            os.lseek(self._lock_fd, 0, os.SEEK_SET)
            content = os.read(self._lock_fd, 32).decode().strip()
            return int(content) if content else None
        except (OSError, ValueError):
            return None

    def _write_pid(self) -> None:
        os.ftruncate(self._lock_fd, 0)
        os.lseek(self._lock_fd, 0, os.SEEK_SET)
        os.write(self._lock_fd, str(os.getpid()).encode())

    def __enter__(self) -> "LockManager":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.release()
        return False
