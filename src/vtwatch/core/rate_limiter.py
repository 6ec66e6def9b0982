"""
Per-minute request limiting for the remote API.

The window is anchored at the moment the limiter is created, not at calendar
minute boundaries; ``time_until_reset`` is relative to that anchor.
"""

import threading
import time
from collections import deque
from typing import Callable, List, Optional

import requests
from requests.adapters import HTTPAdapter

from vtwatch.errors import OperationCancelledError
from vtwatch.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_PERMIT_LIMIT = 4
DEFAULT_WINDOW_SECONDS = 60.0
DEFAULT_QUEUE_LIMIT = 100
# Longest single wait while queued, so cancellation is noticed promptly
_WAIT_SLICE_SECONDS = 0.5


class RateLimiter:
    """
    Fixed-window permit counter with an oldest-first wait queue.

    Listeners registered with ``subscribe`` are told when a request has to
    wait for the next window and when it got its permit. They are called on
    the requesting thread.
    """

    def __init__(self, permit_limit: int = DEFAULT_PERMIT_LIMIT,
                 window_seconds: float = DEFAULT_WINDOW_SECONDS,
                 queue_limit: int = DEFAULT_QUEUE_LIMIT,
                 clock: Callable[[], float] = time.monotonic):
        self.permit_limit = permit_limit if permit_limit > 0 else DEFAULT_PERMIT_LIMIT
        self.window_seconds = window_seconds
        self.queue_limit = queue_limit
        self._clock = clock
        self.window_start = clock()
        self._window_index = 0
        self._used = 0
        self._waiters = deque()
        self._cond = threading.Condition()
        self._hit_listeners: List[Callable[[float], None]] = []
        self._resolved_listeners: List[Callable[[], None]] = []

    def _roll_window(self) -> None:
        index = int((self._clock() - self.window_start) // self.window_seconds)
        if index != self._window_index:
            self._window_index = index
            self._used = 0

    def available_permits(self) -> int:
        with self._cond:
            self._roll_window()
            return max(self.permit_limit - self._used, 0)

    def time_until_reset(self) -> float:
        """
        Seconds until the current window ends.

        Returns:
            Remaining time, never negative
        """
        elapsed = self._clock() - self.window_start
        remaining = self.window_seconds - (elapsed % self.window_seconds)
        return max(remaining, 0.0)

    def acquire(self, cancel_event: Optional[threading.Event] = None) -> bool:
        """
        Block until a permit is available in the current window.

        Args:
            cancel_event: Aborts the wait when set.

        Returns:
            True once a permit is held, False if the wait queue is full

        Raises:
            OperationCancelledError: If cancel_event is set while waiting.
        """
        with self._cond:
            if len(self._waiters) >= self.queue_limit:
                logger.warning(f"Rate limiter queue is full ({self.queue_limit} waiting)")
                return False
            ticket = object()
            self._waiters.append(ticket)
            try:
                while True:
                    if cancel_event is not None and cancel_event.is_set():
                        raise OperationCancelledError("Cancelled while waiting for a rate limit permit")
                    self._roll_window()
                    if self._waiters[0] is ticket and self._used < self.permit_limit:
                        self._used += 1
                        return True
                    self._cond.wait(timeout=min(self.time_until_reset(), _WAIT_SLICE_SECONDS))
            finally:
                self._waiters.remove(ticket)
                self._cond.notify_all()

    def subscribe(self, on_hit: Callable[[float], None],
                  on_resolved: Optional[Callable[[], None]] = None) -> None:
        self._hit_listeners.append(on_hit)
        if on_resolved is not None:
            self._resolved_listeners.append(on_resolved)

    def unsubscribe(self, on_hit: Callable[[float], None],
                    on_resolved: Optional[Callable[[], None]] = None) -> None:
        if on_hit in self._hit_listeners:
            self._hit_listeners.remove(on_hit)
        if on_resolved is not None and on_resolved in self._resolved_listeners:
            self._resolved_listeners.remove(on_resolved)

    def notify_rate_limit_hit(self, wait_seconds: float) -> None:
        for listener in list(self._hit_listeners):
            try:
                listener(wait_seconds)
            except Exception as e:
                logger.error(f"Rate limit listener failed: {e}")

    def notify_rate_limit_resolved(self) -> None:
        for listener in list(self._resolved_listeners):
            try:
                listener()
            except Exception as e:
                logger.error(f"Rate limit listener failed: {e}")


class ThrottlingAdapter(HTTPAdapter):
    """
    Transport adapter that takes a rate limiter permit before every request.
    """

    def __init__(self, limiter: RateLimiter, cancel_event: Optional[threading.Event] = None, **kwargs):
        super().__init__(**kwargs)
        self.limiter = limiter
        self.cancel_event = cancel_event

    def send(self, request, **kwargs):
        if self.limiter.available_permits() == 0:
            wait_seconds = self.limiter.time_until_reset()
            logger.info(f"Rate limit reached, waiting {wait_seconds:.0f}s for the next window")
            self.limiter.notify_rate_limit_hit(wait_seconds)
            acquired = self.limiter.acquire(self.cancel_event)
            if acquired:
                self.limiter.notify_rate_limit_resolved()
        else:
            acquired = self.limiter.acquire(self.cancel_event)

        if not acquired:
            return self._too_many_requests(request)
        return super().send(request, **kwargs)

    @staticmethod
    def _too_many_requests(request) -> requests.Response:
        response = requests.Response()
        response.status_code = 429
        response.reason = "Too Many Requests"
        response.url = request.url
        response.request = request
        response._content = b''
        return response
