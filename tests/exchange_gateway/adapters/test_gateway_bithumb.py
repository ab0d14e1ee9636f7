"""
Bithumb Adapter Tests.

============================================================
PURPOSE
============================================================
Tests for the Bithumb public orderbook adapter over a
scripted transport.

TEST CATEGORIES:
- Pair in the path, string millisecond timestamps
- ALL_<QUOTE> flattening
- Status codes on HTTP 200

============================================================
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from exchange_gateway.adapters.bithumb import BithumbAdapter
from exchange_gateway.clock import MockClock
from exchange_gateway.common import Market
from exchange_gateway.errors import ErrorCategory, ExchangeError, UnsupportedOperation
from exchange_gateway.mock import MockTransport, json_response


KRW_BTC = Market.parse("spot:BTC/KRW")

BTC_BOOK = {
    "timestamp": "1690000000000",
    "payment_currency": "KRW",
    "order_currency": "BTC",
    "bids": [
        {"quantity": "0.5", "price": "37990000"},
        {"quantity": "1.2", "price": "37980000"},
    ],
    "asks": [
        {"quantity": "0.1", "price": "38000000"},
    ],
}


@pytest.fixture
def clock():
    return MockClock()


@pytest.fixture
def transport(clock):
    return MockTransport(clock=clock)


@pytest.fixture
def bithumb(transport, clock):
    return BithumbAdapter(transport=transport, clock=clock)


def ok(data):
    return json_response({"status": "0000", "data": data})


# ============================================================
# ORDERBOOK TESTS
# ============================================================

class TestBithumbOrderbook:
    """Tests for orderbook endpoints."""
    
    @pytest.mark.asyncio
    async def test_pair_in_path(self, bithumb, transport):
        transport.enqueue(ok(BTC_BOOK))
        
        book = await bithumb.get_book("BTC", "KRW", count=5)
        
        assert transport.last_request.path_and_query == "/public/orderbook/BTC_KRW?count=5"
        assert book.timestamp == datetime(2023, 7, 22, 4, 26, 40, tzinfo=timezone.utc)
        assert book.order_currency == "BTC"
        assert book.bids[1].quantity == Decimal("1.2")
    
    @pytest.mark.asyncio
    async def test_all_books_flattened_by_currency(self, bithumb, transport):
        transport.enqueue(ok({
            "timestamp": "1690000000000",
            "payment_currency": "KRW",
            "BTC": {"order_currency": "BTC", "bids": BTC_BOOK["bids"], "asks": BTC_BOOK["asks"]},
            "ETH": {"order_currency": "ETH", "bids": [], "asks": [{"quantity": "3", "price": "2500000"}]},
        }))
        
        books = await bithumb.get_books("KRW")
        
        assert transport.last_request.path == "/public/orderbook/ALL_KRW"
        assert set(books) == {"BTC", "ETH"}
        assert books["ETH"].payment_currency == "KRW"
        assert books["ETH"].bids == []
        assert books["BTC"].timestamp == datetime(2023, 7, 22, 4, 26, 40, tzinfo=timezone.utc)
    
    @pytest.mark.asyncio
    async def test_common_orderbook(self, bithumb, transport):
        transport.enqueue(ok(BTC_BOOK))
        
        book = await bithumb.get_orderbook(KRW_BTC, depth=2)
        
        assert transport.last_request.path_and_query == "/public/orderbook/BTC_KRW?count=2"
        assert book.market == KRW_BTC
        assert book.best_bid.price == Decimal("37990000")
        assert book.best_ask.quantity == Decimal("0.1")
    
    def test_spot_only(self, bithumb):
        assert bithumb.symbol_for(KRW_BTC) == "BTC_KRW"
        with pytest.raises(UnsupportedOperation):
            bithumb.symbol_for(Market.parse("swap:BTC/KRW"))


# ============================================================
# ERROR TESTS
# ============================================================

class TestBithumbErrors:
    """Tests for Bithumb status codes."""
    
    @pytest.mark.asyncio
    async def test_status_on_http_200(self, bithumb, transport):
        transport.enqueue(json_response({"status": "5600", "message": "Invalid currency"}))
        
        with pytest.raises(ExchangeError) as exc_info:
            await bithumb.get_book("NOPE", "KRW")
        
        assert exc_info.value.category is ErrorCategory.INVALID_PARAMETER
        assert exc_info.value.exchange_message == "Invalid currency"
        assert len(transport.requests) == 1
    
    @pytest.mark.asyncio
    async def test_account_operations_unsupported(self, bithumb, transport):
        with pytest.raises(UnsupportedOperation):
            await bithumb.get_balances()
        with pytest.raises(UnsupportedOperation):
            await bithumb.get_tickers()
        
        assert transport.requests == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
