"""Background interval timers that can be stopped deterministically."""

import threading
from typing import Callable, Optional

from ..monitoring.logging import get_logger

logger = get_logger(__name__)


class PeriodicTask:
    """Run ``func`` every ``interval`` seconds on a daemon thread.

    The thread never keeps the interpreter alive and ``stop()`` joins it, so
    tests and long-running services can release the timer without leaking.
    Exceptions raised by ``func`` are logged and the schedule continues.
    """

    def __init__(self, interval: float, func: Callable[[], None], name: str = "periodic-task"):
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.interval = interval
        self.func = func
        self.name = name
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "PeriodicTask":
        if self.running:
            return self
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        return self

    def stop(self, timeout: float = 1.0):
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def _run(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.func()
            except Exception as e:
                logger.error("Periodic task failed", task=self.name, error=str(e))
