"""
Core Module - System Clock.

============================================================
RESPONSIBILITY
============================================================
Provides a unified, testable clock abstraction for the monitor.

- All time-related operations MUST use this clock
- Enables deterministic testing of threshold windows
- Ensures consistent timestamps across poller, alerts and remediation

============================================================
DESIGN PRINCIPLES
============================================================
- Single source of truth for system time
- Naive UTC datetimes only (matches the persisted columns)
- Mockable for testing
- Thread-safe

============================================================
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Generator, Optional
import threading
import time


# ============================================================
# CLOCK PROTOCOL
# ============================================================

class ClockProtocol(ABC):
    """Abstract interface for system clock."""

    @abstractmethod
    def now(self) -> datetime:
        """Get current UTC datetime (naive)."""
        pass

    @abstractmethod
    def timestamp(self) -> float:
        """Get current Unix timestamp."""
        pass

    def today(self) -> date:
        """Get current UTC date."""
        return self.now().date()

    def month_start(self) -> datetime:
        """Get midnight of the first day of the current UTC month."""
        return self.now().replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    def minutes_since(self, moment: Optional[datetime]) -> float:
        """
        Minutes elapsed since a moment.

        Returns infinity for a moment that never happened.
        """
        if moment is None:
            return float("inf")
        return (self.now() - moment).total_seconds() / 60.0


# ============================================================
# SYSTEM CLOCK (PRODUCTION)
# ============================================================

class SystemClock(ClockProtocol):
    """
    Production clock using actual system time.

    All times are naive UTC.
    """

    def now(self) -> datetime:
        """Get current UTC datetime."""
        return datetime.now(timezone.utc).replace(tzinfo=None)

    def timestamp(self) -> float:
        """Get current Unix timestamp."""
        return time.time()


# ============================================================
# MOCK CLOCK (TESTING)
# ============================================================

class MockClock(ClockProtocol):
    """
    Mock clock for testing.

    Allows time manipulation for deterministic tests.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        """
        Initialize mock clock.

        Args:
            initial_time: Starting time (defaults to current UTC)
        """
        self._time = _naive(initial_time) if initial_time else SystemClock().now()
        self._lock = threading.Lock()

    def now(self) -> datetime:
        """Get current (mocked) datetime."""
        with self._lock:
            return self._time

    def timestamp(self) -> float:
        """Get current (mocked) timestamp."""
        with self._lock:
            return self._time.replace(tzinfo=timezone.utc).timestamp()

    def set_time(self, new_time: datetime) -> None:
        """Set the current time."""
        with self._lock:
            self._time = _naive(new_time)

    def advance(self, seconds: float = 0, **kwargs) -> None:
        """
        Advance time by the specified amount.

        Args:
            seconds: Number of seconds to advance
            **kwargs: Passed to timedelta (hours, minutes, days, etc.)
        """
        with self._lock:
            self._time = self._time + timedelta(seconds=seconds, **kwargs)

    @contextmanager
    def freeze(self, at_time: Optional[datetime] = None) -> Generator[None, None, None]:
        """
        Context manager to freeze time.

        Args:
            at_time: Time to freeze at (defaults to current)
        """
        with self._lock:
            original_time = self._time
            if at_time:
                self._time = _naive(at_time)

        try:
            yield
        finally:
            with self._lock:
                self._time = original_time


def _naive(moment: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


# ============================================================
# CLOCK FACTORY
# ============================================================

class ClockFactory:
    """Factory for creating clock instances."""

    _instance: Optional[ClockProtocol] = None
    _lock = threading.Lock()

    @classmethod
    def get_clock(cls) -> ClockProtocol:
        """Get the global clock instance."""
        with cls._lock:
            if cls._instance is None:
                cls._instance = SystemClock()
            return cls._instance

    @classmethod
    def set_clock(cls, clock: ClockProtocol) -> None:
        """Set the global clock instance."""
        with cls._lock:
            cls._instance = clock

    @classmethod
    def reset(cls) -> None:
        """Reset to default system clock."""
        with cls._lock:
            cls._instance = SystemClock()

    @classmethod
    @contextmanager
    def use_mock(
        cls,
        initial_time: Optional[datetime] = None,
    ) -> Generator[MockClock, None, None]:
        """
        Context manager to use mock clock temporarily.

        Args:
            initial_time: Initial time for mock clock
        """
        original = cls._instance
        mock = MockClock(initial_time)
        cls.set_clock(mock)
        try:
            yield mock
        finally:
            cls._instance = original


# ============================================================
# TIMESTAMP UTILITIES
# ============================================================

def to_iso8601(dt: Optional[datetime]) -> Optional[str]:
    """Convert a naive UTC datetime to an ISO 8601 string."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def from_iso8601(iso_string: str) -> datetime:
    """Parse ISO 8601 string to a naive UTC datetime."""
    return _naive(datetime.fromisoformat(iso_string))


def now_utc() -> datetime:
    """Get current UTC time using global clock."""
    return ClockFactory.get_clock().now()


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "ClockFactory",
    "to_iso8601",
    "from_iso8601",
    "now_utc",
]
