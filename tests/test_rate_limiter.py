import threading
import time
import unittest
from unittest.mock import MagicMock, patch

import requests
from requests.adapters import HTTPAdapter

from vtwatch.core.rate_limiter import RateLimiter, ThrottlingAdapter
from vtwatch.errors import OperationCancelledError


class FakeClock:

    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestRateLimiter(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.limiter = RateLimiter(permit_limit=4, window_seconds=60, clock=self.clock)

    def test_time_until_reset_is_anchored_at_creation(self):
        self.assertEqual(self.limiter.time_until_reset(), 60)
        self.clock.advance(15)
        self.assertEqual(self.limiter.time_until_reset(), 45)
        self.clock.advance(60)
        self.assertEqual(self.limiter.time_until_reset(), 45)

    def test_permits_are_consumed(self):
        for _ in range(3):
            self.assertTrue(self.limiter.acquire())
        self.assertEqual(self.limiter.available_permits(), 1)

    def test_permits_replenish_in_next_window(self):
        for _ in range(4):
            self.limiter.acquire()
        self.assertEqual(self.limiter.available_permits(), 0)
        self.clock.advance(60)
        self.assertEqual(self.limiter.available_permits(), 4)

    def test_invalid_limit_falls_back_to_default(self):
        limiter = RateLimiter(permit_limit=0, clock=self.clock)
        self.assertEqual(limiter.permit_limit, 4)

    def test_waiter_gets_permit_when_window_rolls(self):
        for _ in range(4):
            self.limiter.acquire()
        acquired = []
        waiter = threading.Thread(target=lambda: acquired.append(self.limiter.acquire()))
        waiter.start()
        time.sleep(0.1)
        self.assertTrue(waiter.is_alive())

        self.clock.advance(60)
        waiter.join(timeout=3)
        self.assertFalse(waiter.is_alive())
        self.assertEqual(acquired, [True])
        self.assertEqual(self.limiter.available_permits(), 3)

    def test_cancel_while_waiting(self):
        for _ in range(4):
            self.limiter.acquire()
        cancel_event = threading.Event()
        cancel_event.set()
        with self.assertRaises(OperationCancelledError):
            self.limiter.acquire(cancel_event)

    def test_full_queue_rejects(self):
        limiter = RateLimiter(permit_limit=1, queue_limit=0, clock=self.clock)
        self.assertFalse(limiter.acquire())

    def test_listener_errors_are_contained(self):
        resolved = MagicMock()
        self.limiter.subscribe(MagicMock(side_effect=RuntimeError("boom")), resolved)
        self.limiter.notify_rate_limit_hit(10)
        self.limiter.notify_rate_limit_resolved()
        resolved.assert_called_once_with()

    def test_unsubscribe(self):
        on_hit = MagicMock()
        self.limiter.subscribe(on_hit)
        self.limiter.unsubscribe(on_hit)
        self.limiter.notify_rate_limit_hit(10)
        on_hit.assert_not_called()


class TestThrottlingAdapter(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.request = requests.Request('GET', 'https://example.test/files/abc').prepare()

    @patch.object(HTTPAdapter, 'send')
    def test_takes_permit_before_sending(self, mock_send):
        limiter = RateLimiter(permit_limit=4, clock=self.clock)
        on_hit = MagicMock()
        limiter.subscribe(on_hit)
        adapter = ThrottlingAdapter(limiter)

        response = adapter.send(self.request)

        self.assertIs(response, mock_send.return_value)
        self.assertEqual(limiter.available_permits(), 3)
        on_hit.assert_not_called()

    @patch.object(HTTPAdapter, 'send')
    def test_full_queue_reports_hit_without_resolving(self, mock_send):
        limiter = RateLimiter(permit_limit=1, queue_limit=0, clock=self.clock)
        limiter.acquire()
        self.clock.advance(15)
        on_hit = MagicMock()
        on_resolved = MagicMock()
        limiter.subscribe(on_hit, on_resolved)
        adapter = ThrottlingAdapter(limiter)

        response = adapter.send(self.request)

        on_hit.assert_called_once_with(45)
        on_resolved.assert_not_called()
        self.assertEqual(response.status_code, 429)
        mock_send.assert_not_called()

    @patch.object(HTTPAdapter, 'send')
    def test_resolved_once_permit_is_acquired(self, mock_send):
        limiter = RateLimiter(permit_limit=1, clock=self.clock)
        limiter.acquire()
        on_resolved = MagicMock()
        # the next window opens while the request is waiting
        limiter.subscribe(lambda wait_seconds: self.clock.advance(60), on_resolved)
        adapter = ThrottlingAdapter(limiter)

        response = adapter.send(self.request)

        self.assertIs(response, mock_send.return_value)
        on_resolved.assert_called_once_with()


if __name__ == '__main__':
    unittest.main()
