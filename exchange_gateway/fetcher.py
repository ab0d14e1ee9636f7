"""
Exchange Gateway - Periodic Fetcher.

============================================================
PURPOSE
============================================================
Poll one request on a fixed interval in a background task and
hand out the freshest result.

- next(): wait for the next fetch result (errors are raised)
- A failing fetch never stops the loop; the error is kept in
  last_error until the next success
- get(): latest successful value, waiting only for the first
- A slow fetch delays the following tick instead of bursting

============================================================
"""

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Generic, Optional, Tuple, TypeVar

from .clock import ClockProtocol, get_default_clock
from .errors import GatewayError


logger = logging.getLogger(__name__)

T = TypeVar("T")


class Fetcher(Generic[T]):
    """
    Background poller.
    
    Example:
        async with Fetcher(lambda: adapter.get_ticker("BTCUSDT"), 1.0) as ticker:
            price = (await ticker.get()).price
    """
    
    def __init__(
        self,
        fetch: Callable[[], Awaitable[T]],
        interval: float,
        clock: Optional[ClockProtocol] = None,
        name: str = "fetcher",
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._fetch = fetch
        self._interval = interval
        self._clock = clock or get_default_clock()
        self._name = name
        self._task: Optional[asyncio.Task] = None
        self._fresh = asyncio.Event()
        self._pending: Optional[Tuple[Optional[T], Optional[Exception]]] = None
        self._latest: Optional[T] = None
        self._has_value = False
        self.last_error: Optional[Exception] = None
        self.fetch_count = 0
    
    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
    
    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self._name)
    
    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.debug(f"Fetcher '{self._name}' stopped")
    
    async def __aenter__(self) -> "Fetcher[T]":
        self.start()
        return self
    
    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
    
    async def _run(self) -> None:
        while True:
            started = self._clock.monotonic()
            try:
                value = await self._fetch()
            except GatewayError as e:
                logger.warning(f"Fetcher '{self._name}' fetch failed: {e}")
                self.last_error = e
                self._pending = (None, e)
            except Exception as e:
                logger.exception(f"Fetcher '{self._name}' fetch raised {type(e).__name__}")
                self.last_error = e
                self._pending = (None, e)
            else:
                self._latest = value
                self._has_value = True
                self.last_error = None
                self._pending = (value, None)
            self.fetch_count += 1
            self._fresh.set()
            
            elapsed = self._clock.monotonic() - started
            await self._clock.sleep(max(0.0, self._interval - elapsed))
    
    async def next(self) -> T:
        """Wait for the next result not yet handed out."""
        if self._task is None:
            self.start()
        while self._pending is None:
            self._fresh.clear()
            await self._fresh.wait()
        value, error = self._pending
        self._pending = None
        if error is not None:
            raise error
        return value
    
    async def get(self) -> T:
        """Latest successful value; waits for the first one."""
        while not self._has_value:
            await self.next()
        self._pending = None
        return self._latest
