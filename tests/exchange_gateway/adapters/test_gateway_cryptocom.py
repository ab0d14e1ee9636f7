"""
Crypto.com Adapter Tests.

============================================================
PURPOSE
============================================================
Tests for the Crypto.com public market data adapter over a
scripted transport.

TEST CATEGORIES:
- Result envelope and one-letter row keys
- Common tickers, trades and orderbook
- Error codes on HTTP 200

============================================================
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from exchange_gateway.adapters.cryptocom import CryptocomAdapter, CryptocomSide
from exchange_gateway.clock import MockClock
from exchange_gateway.common import Market, Order, Side
from exchange_gateway.errors import ErrorCategory, ExchangeError, UnsupportedOperation
from exchange_gateway.mock import MockTransport, json_response


SPOT = Market.parse("spot:BTC/USDT")


@pytest.fixture
def clock():
    return MockClock()


@pytest.fixture
def transport(clock):
    return MockTransport(clock=clock)


@pytest.fixture
def cryptocom(transport, clock):
    return CryptocomAdapter(transport=transport, clock=clock)


def result(method, payload, code=0, message=None, status=200):
    body = {"id": -1, "method": method, "code": code, "result": payload}
    if message is not None:
        body["message"] = message
    return json_response(body, status=status)


def ticker_row(instrument, bid="51170.000000", ask="51180.000000", last="51174.500000"):
    return {
        "i": instrument,
        "b": bid,
        "k": ask,
        "a": last,
        "t": 1613580710768,
        "v": "879.5024",
        "vv": "26370000.12",
        "h": "51790.00",
        "l": "47895.50",
        "c": "0.0368",
    }


# ============================================================
# PUBLIC ENDPOINT TESTS
# ============================================================

class TestCryptocomPublic:
    """Tests for market data endpoints."""
    
    @pytest.mark.asyncio
    async def test_ticker_letter_keys(self, cryptocom, transport):
        transport.enqueue(result("public/get-ticker", {"data": [ticker_row("BTC_USDT")]}))
        
        tickers = await cryptocom.get_instrument_tickers("BTC_USDT")
        
        assert transport.last_request.url == "https://api.crypto.com/v2/public/get-ticker?instrument_name=BTC_USDT"
        assert tickers[0].best_bid == Decimal("51170.000000")
        assert tickers[0].volume_24h_usd == Decimal("26370000.12")
        assert tickers[0].timestamp == datetime(2021, 2, 17, 16, 51, 50, 768000, tzinfo=timezone.utc)
    
    @pytest.mark.asyncio
    async def test_trades(self, cryptocom, transport):
        transport.enqueue(result("public/get-trades", {"data": [
            {"d": 1613581138462, "i": "BTC_USDT", "s": "SELL", "p": "51327.500000", "q": "0.000051", "t": 1613581138462},
        ]}))
        
        trades = await cryptocom.get_recent_trades("BTC_USDT")
        
        assert trades[0].trade_id == "1613581138462"
        assert trades[0].side is CryptocomSide.SELL
        assert trades[0].quantity == Decimal("0.000051")
    
    @pytest.mark.asyncio
    async def test_error_code_on_http_200(self, cryptocom, transport):
        transport.enqueue(result("public/get-book", None, code=30003, message="SYMBOL_NOT_FOUND"))
        
        with pytest.raises(ExchangeError) as exc_info:
            await cryptocom.get_book("NOPE_USDT")
        
        assert exc_info.value.category is ErrorCategory.INVALID_PARAMETER
        assert len(transport.requests) == 1


# ============================================================
# COMMON OPERATION TESTS
# ============================================================

class TestCryptocomCommon:
    """Tests for the common operations."""
    
    @pytest.mark.asyncio
    async def test_all_spot_tickers(self, cryptocom, transport):
        transport.enqueue(result("public/get-ticker", {"data": [
            ticker_row("BTC_USDT"),
            ticker_row("ETH_BTC", bid=None, ask="0.0651"),
            ticker_row("BTCUSD-PERP"),
        ]}))
        
        tickers = await cryptocom.get_tickers()
        
        assert transport.last_request.query == ""
        assert set(tickers) == {SPOT, Market("ETH", "BTC")}
        assert tickers[SPOT].last == Decimal("51174.500000")
        assert tickers[Market("ETH", "BTC")].bid is None
    
    @pytest.mark.asyncio
    async def test_single_market_ticker_by_name(self, cryptocom, transport):
        transport.enqueue(result("public/get-ticker", {"data": [ticker_row("BTC_USDT")]}))
        
        tickers = await cryptocom.get_tickers([SPOT])
        
        assert transport.last_request.query == "instrument_name=BTC_USDT"
        assert tickers[SPOT].ask == Decimal("51180.000000")
    
    @pytest.mark.asyncio
    async def test_trades_name_the_taker(self, cryptocom, transport):
        transport.enqueue(result("public/get-trades", {"data": [
            {"d": "2", "i": "BTC_USDT", "s": "BUY", "p": "51327.5", "q": "0.5", "t": 1613581138462},
        ]}))
        
        trades = await cryptocom.get_trades(SPOT)
        
        assert trades[0].taker_side is Side.BUY
        assert trades[0].market == SPOT
        assert trades[0].price == Decimal("51327.5")
    
    @pytest.mark.asyncio
    async def test_orderbook_three_column_rows(self, cryptocom, transport):
        transport.enqueue(result("public/get-book", {
            "instrument_name": "BTC_USDT",
            "depth": 2,
            "data": [{
                "bids": [["51160.00", "0.25", "2"], ["51150.00", "1.00", "1"]],
                "asks": [["51170.00", "0.10", "1"]],
                "t": 1613581138462,
            }],
        }))
        
        book = await cryptocom.get_orderbook(SPOT, depth=2)
        
        assert transport.last_request.query == "instrument_name=BTC_USDT&depth=2"
        assert book.best_bid.price == Decimal("51160.00")
        assert book.best_ask.quantity == Decimal("0.10")
        assert len(book.bids) == 2
    
    @pytest.mark.asyncio
    async def test_account_operations_unsupported(self, cryptocom, transport):
        with pytest.raises(UnsupportedOperation):
            await cryptocom.get_balances()
        with pytest.raises(UnsupportedOperation):
            await cryptocom.place_order(SPOT, Order.market(Side.BUY, Decimal("1")))
        with pytest.raises(UnsupportedOperation):
            cryptocom.symbol_for(Market.parse("swap:BTC/USD"))
        
        assert transport.requests == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
