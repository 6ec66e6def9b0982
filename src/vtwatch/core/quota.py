"""
Daily and monthly API quota tracking.

Counters live in the shared settings document and are persisted after every
increment, so a restart within the same day or month keeps the usage.
"""

from datetime import datetime
from typing import Callable

from vtwatch.config.store import SettingsStore
from vtwatch.errors import QuotaExceededError
from vtwatch.utils.logger import get_logger

logger = get_logger(__name__)


class QuotaTracker:
    """
    Enforces the configured per-day and per-month request caps.
    """

    def __init__(self, store: SettingsStore, clock: Callable[[], datetime] = datetime.now):
        """
        Initialize the quota tracker.

        Args:
            store: Settings store holding the quota counters.
            clock: Returns the current local time. Replaced in tests.
        """
        self.store = store
        self._clock = clock

    def check_quota(self) -> None:
        """
        Roll counters over on a new day or month, then verify the caps.

        Raises:
            QuotaExceededError: If the daily or monthly cap has been reached.
        """
        with self.store.lock:
            quota = self.store.current.quota
            now = self._clock()
            last = quota.last_used_date

            if last is None or last.date() != now.date():
                if last is None or (last.year, last.month) != (now.year, now.month):
                    quota.used_this_month = 0
                quota.used_today = 0
                quota.last_used_date = now
                logger.info("Quota counters reset for a new day")

            if quota.per_day > 0 and quota.used_today >= quota.per_day:
                raise QuotaExceededError('daily', quota.used_today, quota.per_day)

            if quota.per_month > 0 and quota.used_this_month >= quota.per_month:
                raise QuotaExceededError('monthly', quota.used_this_month, quota.per_month)

    def increment_quota(self) -> None:
        """
        Count one API request and persist the counters.

        Raises:
            QuotaExceededError: If the cap was reached before this request.
        """
        with self.store.lock:
            self.check_quota()
            quota = self.store.current.quota
            quota.used_today += 1
            quota.used_this_month += 1
            quota.last_used_date = self._clock()
            self.store.save()
            logger.debug(f"Quota used: {quota.used_today} today, {quota.used_this_month} this month")
