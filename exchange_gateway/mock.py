"""
Exchange Gateway - Mock Transport.

============================================================
PURPOSE
============================================================
Scripted transport for tests and dry runs.

FEATURES:
- Queue of scripted responses or exceptions
- Handler callback for request-dependent replies
- Latency simulated through the injected clock
- Full request history and peak concurrency tracking

============================================================
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from .clock import ClockProtocol, get_default_clock
from .contract import WireRequest, WireResponse
from .transport import Transport


logger = logging.getLogger(__name__)


ScriptedReply = Union[WireResponse, BaseException, Callable[[WireRequest], WireResponse]]


def json_response(
    payload: Any,
    status: int = 200,
    headers: Optional[Dict[str, str]] = None,
) -> WireResponse:
    """Build a JSON WireResponse; Decimals are written as strings."""
    body = json.dumps(payload, default=str)
    merged = {"Content-Type": "application/json"}
    merged.update(headers or {})
    return WireResponse(status=status, body=body.encode("utf-8"), headers=merged)


@dataclass
class MockTransportConfig:
    """Configuration for the mock transport."""
    
    latency_seconds: float = 0.0
    """Simulated latency per request (via the clock)."""
    
    default_response: Optional[WireResponse] = None
    """Reply when the script is exhausted (None raises AssertionError)."""


class MockTransport(Transport):
    """
    Transport replaying scripted replies in order.
    
    Example:
        transport = MockTransport([json_response({"serverTime": 1})])
        response = await transport.send(request)
    """
    
    def __init__(
        self,
        replies: Optional[List[ScriptedReply]] = None,
        config: Optional[MockTransportConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self.config = config or MockTransportConfig()
        self._clock = clock or get_default_clock()
        self._replies: List[ScriptedReply] = list(replies or [])
        self.requests: List[WireRequest] = []
        self.in_flight = 0
        self.peak_in_flight = 0
        self.closed = False
    
    def enqueue(self, *replies: ScriptedReply) -> None:
        self._replies.extend(replies)
    
    @property
    def last_request(self) -> Optional[WireRequest]:
        return self.requests[-1] if self.requests else None
    
    async def send(self, request: WireRequest) -> WireResponse:
        self.requests.append(request)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.config.latency_seconds:
                await self._clock.sleep(self.config.latency_seconds)
            return self._next_reply(request)
        finally:
            self.in_flight -= 1
    
    def _next_reply(self, request: WireRequest) -> WireResponse:
        if self._replies:
            reply = self._replies.pop(0)
        elif self.config.default_response is not None:
            reply = self.config.default_response
        else:
            raise AssertionError(f"No scripted reply for {request.method} {request.path}")
        
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return reply(request)
        return reply
    
    async def close(self) -> None:
        self.closed = True
