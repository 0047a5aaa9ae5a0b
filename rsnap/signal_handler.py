"""Signal handling for interrupted rsnap runs.

On SIGTERM or SIGINT the running rsync is terminated, the vault lock is
released and the process exits with 128 + signal number. The snapshot being
written stays provisional: it keeps its suffix so that later runs neither
count it nor link against it, and its transcript is left for inspection.
"""

from pathlib import Path
from typing import Any, Dict, Optional
import logging
import signal
import subprocess
import sys
import threading


class SignalHandler:
    """
    Installs SIGTERM/SIGINT handlers for the duration of a run.

    Usage:
        handler = SignalHandler()
        handler.register(lock_manager=lock)
        handler.set_provisional_path(plan.provisional_path)
        runner.on_process = handler.set_sync_process
        # ... run ...
        handler.unregister()
    """

    def __init__(self):
        self._provisional_path: Optional[Path] = None
        self._lock_manager: Optional[Any] = None  # LockManager
        self._sync_process: Optional[subprocess.Popen] = None
        self._original_handlers: Dict[int, Any] = {}
        self._registered = False
        self._logger = logging.getLogger(__name__)

    def register(self, lock_manager: Optional[Any] = None) -> None:
        """
        Install handlers for SIGTERM and SIGINT.

        Outside the main thread signal handlers can't be installed; state is
        still tracked so cleanup() works.
        """
        self._lock_manager = lock_manager
        self._registered = True

        if threading.current_thread() is not threading.main_thread():
            self._logger.debug("Signal handlers not registered: not running in main thread")
            return

        for sig in (signal.SIGTERM, signal.SIGINT):
            self._original_handlers[sig] = signal.signal(sig, self._handle_signal)
        self._logger.debug("Signal handlers registered")

    def set_provisional_path(self, path: Optional[Path]) -> None:
        self._provisional_path = path

    def set_sync_process(self, process: Optional[subprocess.Popen]) -> None:
        self._sync_process = process

    def unregister(self) -> None:
        """Restore the original handlers and forget all tracked state."""
        if not self._registered:
            return

        if self._original_handlers and threading.current_thread() is threading.main_thread():
            for sig, handler in self._original_handlers.items():
                signal.signal(sig, handler)

        self._original_handlers.clear()
        self._provisional_path = None
        self._lock_manager = None
        self._sync_process = None
        self._registered = False
        self._logger.debug("Signal handlers unregistered")

    @property
    def is_registered(self) -> bool:
        return self._registered

    def _terminate_sync_process(self) -> bool:
        process = self._sync_process
        if process is None or process.poll() is not None:
            return False
        process.terminate()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
        self._logger.debug("rsync terminated")
        return True

    def cleanup(self) -> bool:
        """
        Stop rsync and release the lock without exiting.

        The provisional snapshot is left where it is.

        Returns:
            True if anything was stopped or released
        """
        cleaned = False

        try:
            cleaned = self._terminate_sync_process()
        except OSError as e:
            self._logger.warning(f"Error terminating rsync: {e}")

        if self._provisional_path is not None and self._provisional_path.exists():
            self._logger.warning(
                f"Snapshot left provisional: {self._provisional_path}"
            )

        if self._lock_manager is not None:
            try:
                self._lock_manager.release()
                cleaned = True
            except OSError as e:
                self._logger.warning(f"Error releasing lock: {e}")

        return cleaned

    def _handle_signal(self, signum: int, frame: Any) -> None:
        sig_name = signal.Signals(signum).name
        self._logger.warning(f"Received {sig_name}, stopping backup")
        self.cleanup()

        exit_code = 128 + signum
        self._logger.info(f"Exiting with code {exit_code}")
        sys.exit(exit_code)
