"""Fixed-interval timer driving the image sweep"""

import threading
from datetime import timedelta
from typing import Callable, Optional, Union

from docker_gc.logging_utils import get_logger, log_exception

logger = get_logger(__name__)


class SweepScheduler:
    """Runs ``sweep`` every ``interval`` on a background thread.

    The next wait only starts once the current sweep has returned, so sweeps
    never overlap. An exception escaping a sweep is logged and the timer
    keeps going.
    """

    def __init__(self, interval: Union[timedelta, float], sweep: Callable[[], object], name: str = "sweep-scheduler"):
        if isinstance(interval, timedelta):
            interval = interval.total_seconds()
        if interval <= 0:
            raise ValueError("sweep interval must be greater than zero")
        self.interval = interval
        self.sweep = sweep
        self.name = name
        self.ticks = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.debug(f"Sweep scheduler started, interval {self.interval}s")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None

    def tick(self) -> None:
        """Run one sweep now"""
        self.ticks += 1
        try:
            self.sweep()
        except Exception as e:
            log_exception(logger, "Image sweep failed", e)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.tick()
