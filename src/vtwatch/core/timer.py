"""
Restartable interval timer running its callback on a daemon thread.
"""

import threading
from typing import Callable, Optional

from vtwatch.utils.logger import get_logger

logger = get_logger(__name__)


class IntervalTimer:
    """
    Calls ``callback`` every ``interval`` seconds until stopped.

    ``start`` on a running timer is a no-op; a stopped timer can be started
    again. The callback may call ``stop`` on its own timer.
    """

    def __init__(self, interval: float, callback: Callable[[], None], name: str = "interval-timer"):
        self.interval = interval
        self.callback = callback
        self.name = name
        self._lock = threading.Lock()
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def enabled(self) -> bool:
        with self._lock:
            return self._stop_event is not None and not self._stop_event.is_set()

    def start(self) -> None:
        with self._lock:
            if self._stop_event is not None and not self._stop_event.is_set():
                return
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._thread = threading.Thread(target=self._run, args=(stop_event,),
                                            daemon=True, name=self.name)
            self._thread.start()

    def stop(self) -> None:
        with self._lock:
            if self._stop_event is not None:
                self._stop_event.set()

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval):
            try:
                self.callback()
            except Exception as e:
                logger.error(f"Error in {self.name} callback: {e}")
