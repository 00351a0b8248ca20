"""Background periodic task on a daemon thread."""

from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Run ``action`` every ``interval`` seconds until stopped.

    The first run happens one interval after ``start()``. ``stop()`` signals
    the loop and, unless called from the loop's own thread, waits for an
    in-flight run to finish, so callers can rely on no further run starting
    or still running once ``stop()`` returns.

    ``action`` may return ``False`` to end the loop from inside.
    """

    def __init__(self, name: str, interval: float, action: Callable[[], bool | None]) -> None:
        self.name = name
        self.interval = interval
        self._action = action
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def start(self) -> None:
        if self.running:
            return
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.debug("%s started (interval %.0fs)", self.name, self.interval)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        thread = self._thread
        if thread is None:
            return
        if thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        logger.debug("%s stopped", self.name)

    def _run(self) -> None:
        stop = self._stop
        while not stop.wait(self.interval):
            try:
                keep_going = self._action()
            except Exception:
                logger.exception("%s: periodic run failed", self.name)
                continue
            if keep_going is False:
                stop.set()
                break


__all__ = ["PeriodicTask"]
