"""Cancelable periodic timer on a daemon thread."""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTimer:
    """Calls ``fn`` every ``interval`` seconds until cancelled.

    Each timer owns its thread and stop event, so cancelling one never
    affects another. Exceptions from ``fn`` are logged and the timer keeps
    running.
    """

    def __init__(self, interval: float, fn: Callable[[], None], name: str = "timer", immediate: bool = False):
        self.interval = interval
        self.fn = fn
        self.name = name
        self.immediate = immediate
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def cancel(self, join: bool = True) -> None:
        self._stop.set()
        thread = self._thread
        if join and thread and thread is not threading.current_thread():
            thread.join(timeout=max(1.0, self.interval * 2))
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and not self._stop.is_set()

    def _run(self) -> None:
        if self.immediate:
            self._tick()
        while not self._stop.wait(self.interval):
            self._tick()

    def _tick(self) -> None:
        try:
            self.fn()
        except Exception as e:
            logger.error(f"{self.name} tick failed: {e}")
