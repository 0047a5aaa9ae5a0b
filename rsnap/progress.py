"""Liveness reporting for rsnap.

While rsync runs the coordinator only waits for it to exit. A
LivenessTicker calls back at a fixed interval for as long as the child is
alive, which the CLI turns into a spinner. Nothing here affects whether a
backup succeeds.
"""

from typing import Callable, Optional, TextIO
import sys
import threading


# Poll interval for the child process, in seconds
DEFAULT_INTERVAL = 0.2


class LivenessTicker:
    """
    Calls on_tick(tick_number) every interval seconds while is_alive() holds.

    Runs on a daemon thread. stop() cancels it and waits for the thread;
    calling stop() more than once is harmless. Also usable as a context
    manager.
    """

    def __init__(
        self,
        is_alive: Callable[[], bool],
        on_tick: Callable[[int], None],
        interval: float = DEFAULT_INTERVAL,
    ):
        self.is_alive = is_alive
        self.on_tick = on_tick
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.ticks = 0

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            if not self.is_alive():
                break
            self.ticks += 1
            self.on_tick(self.ticks)

    def start(self) -> "LivenessTicker":
        self._thread = threading.Thread(
            target=self._run, name="rsnap-liveness", daemon=True
        )
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()

    def __enter__(self) -> "LivenessTicker":
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.stop()
        return False


class Spinner:
    """
    Renders ticks as a one-line "[-] Running backup..." spinner.

    Draws nothing unless the stream is a terminal.
    """

    FRAMES = "-\\|/"
    MESSAGE = "Running backup..."

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream if stream is not None else sys.stdout
        self.enabled = bool(getattr(self.stream, "isatty", lambda: False)())
        self._drawn = False

    def tick(self, tick_number: int) -> None:
        if not self.enabled:
            return
        frame = self.FRAMES[tick_number % len(self.FRAMES)]
        self.stream.write(f"\r[{frame}] {self.MESSAGE}")
        self.stream.flush()
        self._drawn = True

    def finish(self) -> None:
        if self._drawn:
            self.stream.write("\rDone!" + " " * (len(self.MESSAGE) + 4) + "\n")
            self.stream.flush()
            self._drawn = False
