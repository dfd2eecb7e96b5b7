"""
Clock Module

Injectable source of the current date and time so that arrears, penalties
and duplicate-payment windows can be tested deterministically.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
import threading


class Clock(ABC):
    """Abstract source of the current time"""

    @abstractmethod
    def now(self) -> datetime:
        """Current UTC datetime"""
        pass

    def today(self) -> date:
        """Current business date"""
        return self.now().date()


class SystemClock(Clock):
    """Wall clock"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Manually controlled clock for tests and replays"""

    def __init__(self, current: datetime):
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        self._current = current
        self._lock = threading.Lock()

    @classmethod
    def at_date(cls, day: date, hour: int = 9) -> 'FixedClock':
        return cls(datetime(day.year, day.month, day.day, hour, tzinfo=timezone.utc))

    def now(self) -> datetime:
        with self._lock:
            return self._current

    def set(self, current: datetime) -> None:
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        with self._lock:
            self._current = current

    def set_date(self, day: date, hour: int = 9) -> None:
        self.set(datetime(day.year, day.month, day.day, hour, tzinfo=timezone.utc))

    def advance(self, days: int = 0, seconds: int = 0) -> datetime:
        with self._lock:
            self._current = self._current + timedelta(days=days, seconds=seconds)
            return self._current
