"""
Exchange Gateway - Rate Budgets.

============================================================
PURPOSE
============================================================
Admission control for one endpoint class of one adapter.

A RateBudget is a token bucket with two limits:
- tokens (request weight), refilled on a fixed schedule
  anchored at creation, independent of arrival times
- in-flight requests, never above the burst capacity

============================================================
CONCURRENCY
============================================================
- Counters are mutated only inside acquire() under one
  asyncio.Lock, and by Admission.release(), which never
  suspends and is therefore atomic on the event loop
- A token is taken only at the moment of admission, so a
  cancelled waiter never consumes one
- Budgets are owned by an adapter instance, never global
- Token waits and slot waits both run their deadline on the
  injected clock

============================================================
"""

import asyncio
import logging
import math
from typing import Any, Dict, Optional

from .clock import ClockProtocol, get_default_clock
from .config import RateLimitConfig
from .errors import ConfigurationError, RateLimitTimeout


logger = logging.getLogger(__name__)

# Tolerance for float drift when counting elapsed refill ticks.
_TICK_EPSILON = 1e-9


class Admission:
    """
    A granted admission holding one in-flight slot.
    
    Use as an async context manager or call release().
    """
    
    def __init__(self, budget: "RateBudget", weight: int, waited: float):
        self.budget = budget
        self.weight = weight
        self.waited = waited
        self._released = False
    
    @property
    def delayed(self) -> bool:
        return self.waited > 0
    
    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self.budget._release_slot()
    
    async def __aenter__(self) -> "Admission":
        return self
    
    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class RateBudget:
    """
    Token bucket with fixed-schedule refill and an in-flight cap.
    
    Example:
        budget = RateBudget("orders", capacity=2, refill_amount=1,
                            refill_interval=0.1)
        async with await budget.acquire(timeout=1.0):
            ...
    """
    
    def __init__(
        self,
        name: str,
        capacity: int,
        refill_amount: int = 1,
        refill_interval: float = 0.1,
        max_in_flight: Optional[int] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        """
        Initialize budget.
        
        Args:
            name: Endpoint class name
            capacity: Burst capacity in tokens
            refill_amount: Tokens added per tick
            refill_interval: Seconds between ticks
            max_in_flight: In-flight cap (defaults to capacity)
            clock: Time source
        """
        if capacity < 1 or refill_amount < 1 or refill_interval <= 0:
            raise ConfigurationError(f"Invalid rate budget '{name}'", config_key=name)
        if max_in_flight is not None and not 1 <= max_in_flight <= capacity:
            raise ConfigurationError(
                f"Rate budget '{name}': max_in_flight {max_in_flight} outside 1..{capacity}",
                config_key=name,
            )
        
        self.name = name
        self.capacity = capacity
        self.refill_amount = refill_amount
        self.refill_interval = refill_interval
        self.max_in_flight = capacity if max_in_flight is None else max_in_flight
        self._clock = clock or get_default_clock()
        
        self._lock = asyncio.Lock()
        self._slot_freed = asyncio.Event()
        self._epoch = self._clock.monotonic()
        self._ticks_applied = 0
        self._tokens = capacity
        self._in_flight = 0
        
        # Stats
        self._admitted = 0
        self._delayed = 0
        self._timeouts = 0
        self._total_wait = 0.0
        self._peak_in_flight = 0
    
    @classmethod
    def from_config(
        cls,
        name: str,
        config: RateLimitConfig,
        clock: Optional[ClockProtocol] = None,
    ) -> "RateBudget":
        config.validate(name)
        return cls(
            name,
            capacity=config.capacity,
            refill_amount=config.refill_amount,
            refill_interval=config.refill_interval_seconds,
            max_in_flight=config.max_in_flight,
            clock=clock,
        )
    
    # ------------------------------------------------------------
    # STATE
    # ------------------------------------------------------------
    
    @property
    def available_tokens(self) -> int:
        """Tokens as of the last refill (read-only view)."""
        return self._tokens
    
    @property
    def in_flight(self) -> int:
        return self._in_flight
    
    def _refill(self, now: float) -> None:
        ticks = int((now - self._epoch) / self.refill_interval + _TICK_EPSILON)
        new_ticks = ticks - self._ticks_applied
        if new_ticks > 0:
            self._tokens = min(self.capacity, self._tokens + new_ticks * self.refill_amount)
            self._ticks_applied = ticks
    
    def _delay_until_tokens(self, now: float, weight: int) -> float:
        ticks_needed = math.ceil((weight - self._tokens) / self.refill_amount)
        ready_at = self._epoch + (self._ticks_applied + ticks_needed) * self.refill_interval
        return max(0.0, ready_at - now)
    
    def _release_slot(self) -> None:
        self._in_flight -= 1
        self._slot_freed.set()
        self._slot_freed = asyncio.Event()
    
    # ------------------------------------------------------------
    # ADMISSION
    # ------------------------------------------------------------
    
    async def acquire(self, weight: int = 1, timeout: Optional[float] = None) -> Admission:
        """
        Wait for a token and an in-flight slot.
        
        Args:
            weight: Tokens this request costs
            timeout: Seconds to wait before giving up (None waits forever)
        
        Returns:
            Admission holding the in-flight slot
        
        Raises:
            RateLimitTimeout: If admission cannot happen before the deadline
            ConfigurationError: If weight can never fit the bucket
        """
        if weight < 1 or weight > self.capacity:
            raise ConfigurationError(
                f"Weight {weight} does not fit budget '{self.name}' (capacity {self.capacity})",
                config_key=self.name,
            )
        
        start = self._clock.monotonic()
        deadline = None if timeout is None else start + timeout
        
        while True:
            async with self._lock:
                now = self._clock.monotonic()
                self._refill(now)
                
                slot_free = self._in_flight < self.max_in_flight
                if slot_free and self._tokens >= weight:
                    self._tokens -= weight
                    self._in_flight += 1
                    return self._admit(weight, now - start)
                
                slot_event = None if slot_free else self._slot_freed
                delay = self._delay_until_tokens(now, weight) if slot_free else None
            
            remaining = None if deadline is None else deadline - now
            if remaining is not None and (remaining <= 0 or (delay is not None and delay > remaining)):
                self._timeouts += 1
                logger.warning(
                    f"Rate budget '{self.name}' admission timed out "
                    f"(weight={weight}, waited={now - start:.3f}s)"
                )
                raise RateLimitTimeout(self.name, now - start, timeout)
            
            if slot_event is not None:
                if not await self._wait_for_slot(slot_event, remaining):
                    self._timeouts += 1
                    waited = self._clock.monotonic() - start
                    logger.warning(
                        f"Rate budget '{self.name}' found no free slot "
                        f"(weight={weight}, waited={waited:.3f}s)"
                    )
                    raise RateLimitTimeout(self.name, waited, timeout)
            else:
                await self._clock.sleep(delay)
    
    async def _wait_for_slot(self, slot_event: asyncio.Event, remaining: Optional[float]) -> bool:
        """
        Wait until a slot is released or the deadline passes.
        
        The deadline runs on the budget's clock, like token waits.
        
        Returns:
            True if a slot was released
        """
        if remaining is None:
            await slot_event.wait()
            return True
        
        released = asyncio.ensure_future(slot_event.wait())
        deadline = asyncio.ensure_future(self._clock.sleep(remaining))
        try:
            await asyncio.wait({released, deadline}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            released.cancel()
            deadline.cancel()
        return slot_event.is_set()
    
    def _admit(self, weight: int, waited: float) -> Admission:
        self._admitted += 1
        self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
        if waited > 0:
            self._delayed += 1
            self._total_wait += waited
            logger.debug(f"Rate budget '{self.name}' admitted after {waited:.3f}s")
        return Admission(self, weight, waited)
    
    def get_stats(self) -> Dict[str, Any]:
        """Get admission statistics."""
        return {
            "name": self.name,
            "capacity": self.capacity,
            "tokens": self._tokens,
            "in_flight": self._in_flight,
            "peak_in_flight": self._peak_in_flight,
            "admitted": self._admitted,
            "delayed": self._delayed,
            "timeouts": self._timeouts,
            "total_wait_seconds": round(self._total_wait, 6),
        }
