"""
Exchange Gateway - Clock.

============================================================
RESPONSIBILITY
============================================================
Injectable time source for signing, admission and backoff.

- Signers read wall-clock time for timestamps and nonces
- Rate budgets read a monotonic time for refill schedules
- Backoff and admission waits sleep through the clock

============================================================
DESIGN PRINCIPLES
============================================================
- UTC only
- Mockable for testing (virtual sleep, no wall-clock waits)
- A single clock is shared by every stage of one adapter

============================================================
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import List, Optional
import asyncio
import threading
import time


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# ============================================================
# CLOCK PROTOCOL
# ============================================================

class ClockProtocol(ABC):
    """Abstract interface for the gateway clock."""
    
    @abstractmethod
    def now(self) -> datetime:
        """Get current UTC datetime."""
        pass
    
    @abstractmethod
    def monotonic(self) -> float:
        """Get a monotonic reading in seconds."""
        pass
    
    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Suspend the calling task for the given number of seconds."""
        pass
    
    def timestamp_ms(self) -> int:
        """Get current Unix time in whole milliseconds."""
        return (self.now() - EPOCH) // timedelta(milliseconds=1)


# ============================================================
# SYSTEM CLOCK (PRODUCTION)
# ============================================================

class SystemClock(ClockProtocol):
    """
    Production clock using actual system time.
    
    All times are in UTC.
    """
    
    def now(self) -> datetime:
        return datetime.now(timezone.utc)
    
    def monotonic(self) -> float:
        return time.monotonic()
    
    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


# ============================================================
# MOCK CLOCK (TESTING)
# ============================================================

class MockClock(ClockProtocol):
    """
    Mock clock for testing.
    
    Sleeping never waits on the event loop timer: the clock jumps
    forward to the sleeper's wake-up time and yields once, so
    concurrent sleepers resume in wake-up order.
    """
    
    def __init__(self, initial_time: Optional[datetime] = None):
        """
        Initialize mock clock.
        
        Args:
            initial_time: Starting time (defaults to 2023-07-22 04:26:40 UTC)
        """
        self._time = initial_time or datetime(2023, 7, 22, 4, 26, 40, tzinfo=timezone.utc)
        if self._time.tzinfo is None:
            self._time = self._time.replace(tzinfo=timezone.utc)
        self._elapsed = 0.0
        self._lock = threading.Lock()
        self.sleeps: List[float] = []
        """Every sleep duration requested, in call order."""
    
    def now(self) -> datetime:
        with self._lock:
            return self._time + timedelta(seconds=self._elapsed)
    
    def monotonic(self) -> float:
        with self._lock:
            return self._elapsed
    
    async def sleep(self, seconds: float) -> None:
        seconds = max(0.0, seconds)
        with self._lock:
            self.sleeps.append(seconds)
            wake_at = self._elapsed + seconds
        await asyncio.sleep(0)
        with self._lock:
            self._elapsed = max(self._elapsed, wake_at)
    
    def set_time(self, new_time: datetime) -> None:
        """Set the current wall-clock time without moving the monotonic reading."""
        with self._lock:
            if new_time.tzinfo is None:
                new_time = new_time.replace(tzinfo=timezone.utc)
            self._time = new_time - timedelta(seconds=self._elapsed)
    
    def advance(self, seconds: float = 0, **kwargs) -> None:
        """
        Advance time by the specified amount.
        
        Args:
            seconds: Number of seconds to advance
            **kwargs: Passed to timedelta (milliseconds, minutes, etc.)
        """
        with self._lock:
            self._elapsed += timedelta(seconds=seconds, **kwargs).total_seconds()
    
    @property
    def total_slept(self) -> float:
        """Sum of every requested sleep."""
        with self._lock:
            return sum(self.sleeps)


_default_clock = SystemClock()


def get_default_clock() -> ClockProtocol:
    """Get the shared production clock."""
    return _default_clock
