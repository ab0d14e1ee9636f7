"""
Bithumb Exchange Adapter.

============================================================
PURPOSE
============================================================
Bithumb public orderbook binding of the generic pipeline.

EXCHANGE SPECIFICS:
- snake_case parameters
- Responses are {"status": "0000", "data": {...}}; any other
  status is an error even on HTTP 200
- Timestamps arrive as millisecond strings
- The pair is part of the path: /public/orderbook/BTC_KRW
- The ALL_<QUOTE> orderbook flattens one entry per base
  currency beside "timestamp" and "payment_currency"

Only public endpoints are bound; Bithumb's signed API is not
implemented and account or order operations raise
UnsupportedOperation.

============================================================
API DOCUMENTATION
============================================================
https://apidocs.bithumb.com/

============================================================
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar, Dict, List, Optional

from ..codec import BodyFormat, CodecConfig, FieldCase, QueryEncoding, ResponseEnvelope, TimestampFormat
from ..common import BookLevel, Market, MarketKind, OrderbookSnapshot
from ..config import RateLimitConfig
from ..contract import ExchangeRequest
from ..errors import ErrorCategory, ErrorTable, UnsupportedOperation
from .base import ExchangeAdapter


logger = logging.getLogger(__name__)


# ============================================================
# CONSTANTS
# ============================================================

BITHUMB_REST_URL = "https://api.bithumb.com"

BITHUMB_CODEC = CodecConfig(
    field_case=FieldCase.SNAKE,
    timestamp_format=TimestampFormat.MILLIS,
    query=QueryEncoding(),
    body_format=BodyFormat.QUERY,
    envelope=ResponseEnvelope(
        code_key="status",
        message_key="message",
        success_codes=("0000",),
        data_key="data",
    ),
)

BITHUMB_ERRORS = ErrorTable("bithumb", {
    # Authentication
    "5200": ErrorCategory.AUTHENTICATION,
    "5300": ErrorCategory.AUTHENTICATION,
    
    # Parameters
    "5100": ErrorCategory.INVALID_PARAMETER,
    "5302": ErrorCategory.INVALID_PARAMETER,
    "5500": ErrorCategory.INVALID_PARAMETER,
    "5600": ErrorCategory.INVALID_PARAMETER,
    
    # Exchange side
    "5400": ErrorCategory.SERVICE_UNAVAILABLE,
    "5900": ErrorCategory.SERVICE_UNAVAILABLE,
})

_SUMMARY_KEYS = ("timestamp", "payment_currency")


# ============================================================
# RESPONSE TYPES
# ============================================================

@dataclass
class BithumbLevel:
    quantity: Decimal
    price: Decimal


@dataclass
class BithumbOrderbook:
    timestamp: datetime
    payment_currency: str
    bids: List[BithumbLevel]
    asks: List[BithumbLevel]
    order_currency: Optional[str] = None


# ============================================================
# ENDPOINTS
# ============================================================

@dataclass
class GetOrderbook(ExchangeRequest):
    path: ClassVar[str] = "/public/orderbook/{order_currency}_{payment_currency}"
    response_type: ClassVar[Any] = BithumbOrderbook
    
    order_currency: str
    payment_currency: str
    count: Optional[int] = None
    """Levels per side, 1 to 30."""


@dataclass
class GetOrderbookAll(ExchangeRequest):
    path: ClassVar[str] = "/public/orderbook/ALL_{payment_currency}"
    response_type: ClassVar[Any] = Dict[str, Any]
    
    payment_currency: str
    count: Optional[int] = None


# ============================================================
# BITHUMB ADAPTER
# ============================================================

class BithumbAdapter(ExchangeAdapter):
    """Bithumb spot orderbook adapter."""
    
    EXCHANGE_ID = "bithumb"
    BASE_URL = BITHUMB_REST_URL
    CODEC_CONFIG = BITHUMB_CODEC
    ERROR_TABLE = BITHUMB_ERRORS
    RATE_LIMITS = {
        # Public API: 135 requests per second
        "default": RateLimitConfig(capacity=135, refill_amount=135, refill_interval_seconds=1.0),
    }
    
    # --------------------------------------------------------
    # ENDPOINTS
    # --------------------------------------------------------
    
    async def get_book(self, order_currency: str, payment_currency: str, count: Optional[int] = None) -> BithumbOrderbook:
        return await self.request(GetOrderbook(
            order_currency=order_currency,
            payment_currency=payment_currency,
            count=count,
        ))
    
    async def get_books(self, payment_currency: str, count: Optional[int] = None) -> Dict[str, BithumbOrderbook]:
        """
        Every orderbook quoted in one currency, keyed by base currency.
        
        Raises:
            CodecError: If an entry does not decode as an orderbook
        """
        data = await self.request(GetOrderbookAll(payment_currency=payment_currency, count=count))
        summary = {key: data.get(key) for key in _SUMMARY_KEYS}
        
        books = {}
        for currency, entry in data.items():
            if currency in _SUMMARY_KEYS or not isinstance(entry, dict):
                continue
            books[currency] = self.codec.decode(BithumbOrderbook, {**summary, **entry}, f"$.{currency}")
        logger.debug(f"Bithumb {payment_currency} orderbooks: {len(books)} markets")
        return books
    
    # --------------------------------------------------------
    # COMMON OPERATIONS
    # --------------------------------------------------------
    
    def symbol_for(self, market: Market) -> str:
        if market.kind is not MarketKind.SPOT:
            raise UnsupportedOperation(self.EXCHANGE_ID, "symbol_for", f"{market} is not a spot market")
        return f"{market.base}_{market.quote}"
    
    async def get_orderbook(self, market: Market, depth: Optional[int] = None) -> OrderbookSnapshot:
        order_currency, _, payment_currency = self.symbol_for(market).partition("_")
        book = await self.get_book(order_currency, payment_currency, depth)
        return OrderbookSnapshot(
            market=market,
            bids=[BookLevel(level.price, level.quantity) for level in book.bids],
            asks=[BookLevel(level.price, level.quantity) for level in book.asks],
        )
