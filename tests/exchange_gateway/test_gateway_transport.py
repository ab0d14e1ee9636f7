"""
Transport Tests.

============================================================
PURPOSE
============================================================
Tests for the aiohttp transport and the scripted mock transport.

The aiohttp session is replaced by a MagicMock so no network
access is needed.

============================================================
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from yarl import URL

from exchange_gateway.clock import MockClock
from exchange_gateway.contract import WireRequest, WireResponse
from exchange_gateway.errors import TransportError
from exchange_gateway.mock import MockTransport, MockTransportConfig, json_response
from exchange_gateway.transport import AiohttpTransport


def wire(query="symbol=BTCUSDT&signature=ab%2Fcd", body=b""):
    return WireRequest(
        method="GET",
        base_url="https://api.test",
        path="/api/v3/order",
        query=query,
        headers={"X-MBX-APIKEY": "my-key"},
        body=body,
    )


def session_returning(status=200, body=b"{}", headers=None):
    response = MagicMock()
    response.status = status
    response.read = AsyncMock(return_value=body)
    response.headers = headers or {"Content-Type": "application/json"}
    
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)
    
    session = MagicMock()
    session.closed = False
    session.request = MagicMock(return_value=context)
    session.close = AsyncMock()
    return session


def session_raising(error):
    context = MagicMock()
    context.__aenter__ = AsyncMock(side_effect=error)
    context.__aexit__ = AsyncMock(return_value=False)
    
    session = MagicMock()
    session.closed = False
    session.request = MagicMock(return_value=context)
    return session


# ============================================================
# AIOHTTP TRANSPORT TESTS
# ============================================================

class TestAiohttpTransport:
    """Tests for AiohttpTransport."""
    
    @pytest.mark.asyncio
    async def test_send_keeps_encoded_query(self):
        session = session_returning(status=200, body=b'{"ok":true}')
        transport = AiohttpTransport(session=session)
        
        response = await transport.send(wire())
        
        method, url = session.request.call_args.args
        assert method == "GET"
        assert isinstance(url, URL)
        assert url.raw_query_string == "symbol=BTCUSDT&signature=ab%2Fcd"
        assert session.request.call_args.kwargs["data"] is None
        assert response == WireResponse(status=200, body=b'{"ok":true}', headers={"Content-Type": "application/json"})
    
    @pytest.mark.asyncio
    async def test_body_is_sent(self):
        session = session_returning()
        transport = AiohttpTransport(session=session)
        
        await transport.send(wire(query="", body=b"quantity=1"))
        
        assert session.request.call_args.kwargs["data"] == b"quantity=1"
    
    @pytest.mark.asyncio
    async def test_client_error_becomes_transport_error(self):
        transport = AiohttpTransport(session=session_raising(aiohttp.ClientConnectionError("refused")))
        
        with pytest.raises(TransportError) as exc_info:
            await transport.send(wire())
        
        assert not exc_info.value.timeout
        assert exc_info.value.retryable
        assert isinstance(exc_info.value.cause, aiohttp.ClientConnectionError)
    
    @pytest.mark.asyncio
    async def test_timeout_becomes_transport_error(self):
        transport = AiohttpTransport(session=session_raising(asyncio.TimeoutError()))
        
        with pytest.raises(TransportError) as exc_info:
            await transport.send(wire())
        
        assert exc_info.value.timeout
    
    @pytest.mark.asyncio
    async def test_read_timeout_is_a_timeout(self):
        """aiohttp read timeouts are both ClientError and TimeoutError."""
        transport = AiohttpTransport(session=session_raising(aiohttp.ServerTimeoutError("read timed out")))
        
        with pytest.raises(TransportError) as exc_info:
            await transport.send(wire())
        
        assert exc_info.value.timeout
        assert exc_info.value.retryable
    
    @pytest.mark.asyncio
    async def test_injected_session_is_not_closed(self):
        session = session_returning()
        transport = AiohttpTransport(session=session)
        
        await transport.close()
        
        session.close.assert_not_called()


# ============================================================
# MOCK TRANSPORT TESTS
# ============================================================

class TestMockTransport:
    """Tests for MockTransport."""
    
    @pytest.mark.asyncio
    async def test_scripted_replies_in_order(self):
        error = TransportError("reset")
        transport = MockTransport([json_response({"a": 1}), error])
        
        first = await transport.send(wire())
        with pytest.raises(TransportError):
            await transport.send(wire())
        
        assert first.status == 200
        assert first.body == b'{"a": 1}'
        assert len(transport.requests) == 2
    
    @pytest.mark.asyncio
    async def test_callable_reply(self):
        transport = MockTransport([lambda request: json_response({"path": request.path})])
        
        response = await transport.send(wire())
        
        assert response.body == b'{"path": "/api/v3/order"}'
    
    @pytest.mark.asyncio
    async def test_exhausted_script(self):
        transport = MockTransport()
        
        with pytest.raises(AssertionError):
            await transport.send(wire())
    
    @pytest.mark.asyncio
    async def test_latency_and_concurrency(self):
        clock = MockClock()
        transport = MockTransport(
            config=MockTransportConfig(latency_seconds=0.1, default_response=json_response({})),
            clock=clock,
        )
        
        await asyncio.gather(*(transport.send(wire()) for _ in range(3)))
        await transport.close()
        
        assert transport.peak_in_flight == 3
        assert clock.sleeps == [0.1, 0.1, 0.1]
        assert transport.closed


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
