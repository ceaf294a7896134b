"""
Clock

Source of "now" for the lifecycle engine. Timestamps are naive UTC, matching the
DateTime columns of the models.
"""
import time
from datetime import date, datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SystemClock:
    """Wall clock."""

    def now(self) -> datetime:
        return utcnow()

    def today(self) -> date:
        return self.now().date()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class ManualClock(SystemClock):
    """Clock that only moves when told to. Sleeping advances it."""

    def __init__(self, start: datetime):
        self._now = start

    def now(self) -> datetime:
        return self._now

    def set(self, moment: datetime) -> None:
        self._now = moment

    def advance(self, **kwargs) -> datetime:
        """advance(days=1), advance(hours=25), ..."""
        self._now = self._now + timedelta(**kwargs)
        return self._now

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            self._now = self._now + timedelta(seconds=seconds)
