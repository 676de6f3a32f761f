"""
Repository change notifications: an inotifywait child process plus a
cancellable debounce timer driven from the UI loop.
"""

import fcntl
import logging
import os
import select
import shutil
import subprocess
import time
from typing import Callable, List, Optional

log = logging.getLogger(__name__)


class Debouncer:
    """Runs `callback` once after `delay` seconds without a new `arm()`.

    There is no background thread: the owner calls `poll()` from its event
    loop and the callback fires there once the deadline has passed.
    """
    def __init__(self, delay: float, callback: Callable[[], None],
                 clock: Callable[[], float] = time.monotonic):
        self.delay = delay
        self.callback = callback
        self.clock = clock
        self._deadline: Optional[float] = None

    @property
    def armed(self) -> bool:
        return self._deadline is not None

    def arm(self):
        """Start the timer, or restart it if already running"""
        self._deadline = self.clock() + self.delay

    def cancel(self):
        self._deadline = None

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self.clock())

    def poll(self) -> bool:
        """Fire the callback if the deadline passed. Returns True if it fired."""
        if self._deadline is None or self.clock() < self._deadline:
            return False
        # Disarm first so the callback may re-arm
        self._deadline = None
        self.callback()
        return True


class RepoWatcher:
    """Watches a repository with `inotifywait -r -m`.

    Events carry no payload: subscribers are only told that something changed.
    """
    EVENTS = ['create', 'modify', 'delete', 'move']

    def __init__(self, root: str):
        self.root = root
        self.proc: Optional[subprocess.Popen] = None
        self._subscribers: List[Callable[[], None]] = []

    @staticmethod
    def available() -> bool:
        """Check if inotifywait is available"""
        return shutil.which('inotifywait') is not None

    @property
    def running(self) -> bool:
        return self.proc is not None

    def start(self) -> bool:
        """Start inotifywait if available. Returns whether it is running."""
        if self.proc:
            return True
        if not self.available():
            log.info("inotifywait not found, automatic refresh disabled")
            return False

        args = ['inotifywait', '-r', '-m', '-q']
        for event in self.EVENTS:
            args += ['-e', event]
        args.append(self.root)
        try:
            self.proc = subprocess.Popen(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL
            )
        except OSError as e:
            log.warning("cannot start inotifywait: %s", e)
            self.proc = None
            return False

        # Make stdout non-blocking
        fd = self.proc.stdout.fileno()
        flags = fcntl.fcntl(fd, fcntl.F_GETFL)
        fcntl.fcntl(fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)
        log.debug("watching %s (pid %d)", self.root, self.proc.pid)
        return True

    def stop(self):
        """Stop inotifywait and drop all subscribers"""
        self._subscribers.clear()
        if self.proc:
            self.proc.terminate()
            try:
                self.proc.wait(timeout=1)
            except subprocess.TimeoutExpired:
                self.proc.kill()
            self.proc.stdout.close()
            self.proc = None

    def subscribe(self, callback: Callable[[], None]):
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[], None]):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def poll(self) -> bool:
        """Drain pending events and notify subscribers once if there were any"""
        if not self.proc:
            return False

        readable, _, _ = select.select([self.proc.stdout], [], [], 0)
        if not readable:
            return False

        # Drain all available data
        has_events = False
        while True:
            try:
                chunk = self.proc.stdout.read(4096)
            except BlockingIOError:
                break
            if chunk is None:
                break
            if not chunk:
                # EOF: inotifywait went away (e.g. watch limit reached)
                log.warning("inotifywait exited with %s", self.proc.wait())
                self.proc.stdout.close()
                self.proc = None
                break
            has_events = True

        if not has_events:
            return False
        for callback in list(self._subscribers):
            callback()
        return True
