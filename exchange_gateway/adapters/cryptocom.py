"""
Crypto.com Exchange Adapter.

============================================================
PURPOSE
============================================================
Crypto.com Exchange v2 public market data binding of the
generic pipeline.

EXCHANGE SPECIFICS:
- snake_case parameters, millisecond timestamps
- Every response is {"code": 0, "method": "...", "result": {...}};
  a non-zero code is an error even on HTTP 200
- Market data rows use one-letter keys (i, b, k, a, t, ...)
- Book levels are [price, quantity, order count] rows
- Instruments are BASE_QUOTE (BTC_USDT); spot only

Only public endpoints are bound; signed requests have no
signer here and fail before reaching the transport.

============================================================
API DOCUMENTATION
============================================================
https://exchange-docs.crypto.com/spot/index.html

============================================================
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from ..codec import BodyFormat, CodecConfig, FieldCase, QueryEncoding, ResponseEnvelope, TimestampFormat
from ..common import BookLevel, Market, MarketKind, OrderbookSnapshot, PublicTrade, Side, Ticker
from ..config import RateLimitConfig
from ..contract import ExchangeRequest, wire_field
from ..errors import ErrorCategory, ErrorTable, UnknownExchangeError, UnsupportedOperation
from .base import ExchangeAdapter


logger = logging.getLogger(__name__)


# ============================================================
# CONSTANTS
# ============================================================

CRYPTOCOM_REST_URL = "https://api.crypto.com"
CRYPTOCOM_UAT_URL = "https://uat-api.3ona.co"

CRYPTOCOM_CODEC = CodecConfig(
    field_case=FieldCase.SNAKE,
    timestamp_format=TimestampFormat.MILLIS,
    query=QueryEncoding(),
    body_format=BodyFormat.JSON,
    envelope=ResponseEnvelope(
        code_key="code",
        message_key="message",
        success_codes=(0,),
        data_key="result",
    ),
)

CRYPTOCOM_ERRORS = ErrorTable("cryptocom", {
    # Rate limits
    10006: ErrorCategory.RATE_LIMITED,
    
    # Authentication
    10002: ErrorCategory.AUTHENTICATION,
    10003: ErrorCategory.AUTHENTICATION,
    40101: ErrorCategory.AUTHENTICATION,
    10007: ErrorCategory.STALE_TIMESTAMP,
    40102: ErrorCategory.STALE_TIMESTAMP,
    
    # Parameters
    10004: ErrorCategory.INVALID_PARAMETER,
    10008: ErrorCategory.INVALID_PARAMETER,
    10009: ErrorCategory.INVALID_PARAMETER,
    30003: ErrorCategory.INVALID_PARAMETER,
    
    # Exchange side
    10001: ErrorCategory.SERVICE_UNAVAILABLE,
    50001: ErrorCategory.SERVICE_UNAVAILABLE,
})


# ============================================================
# ENUMS
# ============================================================

class CryptocomSide(Enum):
    BUY = "BUY"
    SELL = "SELL"


_COMMON_SIDES = {CryptocomSide.BUY: Side.BUY, CryptocomSide.SELL: Side.SELL}


# ============================================================
# RESPONSE TYPES
# ============================================================

@dataclass
class CryptocomTicker:
    instrument_name: str = wire_field("i")
    volume_24h: Decimal = wire_field("v")
    timestamp: datetime = wire_field("t")
    best_bid: Optional[Decimal] = wire_field("b", default=None)
    """None when the book has no bids."""
    best_ask: Optional[Decimal] = wire_field("k", default=None)
    latest_trade_price: Optional[Decimal] = wire_field("a", default=None)
    highest_price_24h: Optional[Decimal] = wire_field("h", default=None)
    lowest_price_24h: Optional[Decimal] = wire_field("l", default=None)
    """None when nothing traded in 24h."""
    price_change_24h: Optional[Decimal] = wire_field("c", default=None)
    volume_24h_usd: Optional[Decimal] = wire_field("vv", default=None)
    open_interest: Optional[Decimal] = wire_field("oi", default=None)


@dataclass
class CryptocomTickers:
    data: List[CryptocomTicker]


@dataclass
class CryptocomTrade:
    trade_id: str = wire_field("d")
    instrument_name: str = wire_field("i")
    side: CryptocomSide = wire_field("s")
    """Taker side."""
    price: Decimal = wire_field("p")
    quantity: Decimal = wire_field("q")
    timestamp: datetime = wire_field("t")


@dataclass
class CryptocomTrades:
    data: List[CryptocomTrade]


@dataclass
class CryptocomBookLevel:
    """[price, quantity, order count] row."""
    
    price: Decimal
    quantity: Decimal
    num_orders: Optional[int] = None


@dataclass
class CryptocomBook:
    bids: List[CryptocomBookLevel]
    asks: List[CryptocomBookLevel]
    timestamp: datetime = wire_field("t")


@dataclass
class CryptocomBooks:
    data: List[CryptocomBook]
    instrument_name: Optional[str] = None
    depth: Optional[int] = None


# ============================================================
# ENDPOINTS
# ============================================================

@dataclass
class GetTicker(ExchangeRequest):
    path: ClassVar[str] = "/v2/public/get-ticker"
    response_type: ClassVar[Any] = CryptocomTickers
    
    instrument_name: Optional[str] = None
    """Omit for every instrument."""


@dataclass
class GetTrades(ExchangeRequest):
    path: ClassVar[str] = "/v2/public/get-trades"
    response_type: ClassVar[Any] = CryptocomTrades
    
    instrument_name: str


@dataclass
class GetBook(ExchangeRequest):
    path: ClassVar[str] = "/v2/public/get-book"
    response_type: ClassVar[Any] = CryptocomBooks
    
    instrument_name: str
    depth: Optional[int] = None
    """Levels per side, max 150."""


# ============================================================
# HELPERS
# ============================================================

def _spot_market(instrument_name: str) -> Optional[Market]:
    """Market of a spot instrument (BTC_USDT); None for derivatives."""
    parts = instrument_name.split("_")
    if len(parts) != 2 or not all(parts) or "-" in instrument_name:
        return None
    return Market(parts[0], parts[1], MarketKind.SPOT)


def _ticker(market: Market, item: CryptocomTicker) -> Ticker:
    return Ticker(market, bid=item.best_bid, ask=item.best_ask, last=item.latest_trade_price)


# ============================================================
# CRYPTO.COM ADAPTER
# ============================================================

class CryptocomAdapter(ExchangeAdapter):
    """
    Crypto.com Exchange public market data adapter.
    
    Tickers, trades and books only; account and order operations
    raise UnsupportedOperation.
    """
    
    EXCHANGE_ID = "cryptocom"
    BASE_URL = CRYPTOCOM_REST_URL
    TESTNET_URL = CRYPTOCOM_UAT_URL
    CODEC_CONFIG = CRYPTOCOM_CODEC
    ERROR_TABLE = CRYPTOCOM_ERRORS
    RATE_LIMITS = {
        # Public market data: 100 requests per second
        "default": RateLimitConfig(capacity=100, refill_amount=100, refill_interval_seconds=1.0),
    }
    
    # --------------------------------------------------------
    # ENDPOINTS
    # --------------------------------------------------------
    
    async def get_instrument_tickers(self, instrument_name: Optional[str] = None) -> List[CryptocomTicker]:
        return (await self.request(GetTicker(instrument_name=instrument_name))).data
    
    async def get_recent_trades(self, instrument_name: str) -> List[CryptocomTrade]:
        return (await self.request(GetTrades(instrument_name=instrument_name))).data
    
    async def get_book(self, instrument_name: str, depth: Optional[int] = None) -> CryptocomBook:
        books = (await self.request(GetBook(instrument_name=instrument_name, depth=depth))).data
        if not books:
            raise UnknownExchangeError(self.EXCHANGE_ID, exchange_message="empty book data")
        return books[0]
    
    # --------------------------------------------------------
    # COMMON OPERATIONS
    # --------------------------------------------------------
    
    def symbol_for(self, market: Market) -> str:
        if market.kind is not MarketKind.SPOT:
            raise UnsupportedOperation(self.EXCHANGE_ID, "symbol_for", f"{market} is not a spot market")
        return f"{market.base}_{market.quote}"
    
    async def get_tickers(self, markets: Optional[List[Market]] = None) -> Dict[Market, Ticker]:
        """
        Tickers keyed by market.
        
        A single market is fetched by name; anything else reads
        the full listing and filters it.
        """
        wanted = None if markets is None else {self.symbol_for(market): market for market in markets}
        single = next(iter(wanted)) if wanted is not None and len(wanted) == 1 else None
        
        tickers = {}
        for item in await self.get_instrument_tickers(single):
            market = _spot_market(item.instrument_name) if wanted is None else wanted.get(item.instrument_name)
            if market is not None:
                tickers[market] = _ticker(market, item)
        logger.debug(f"Crypto.com tickers: {len(tickers)} markets")
        return tickers
    
    async def get_trades(self, market: Market) -> List[PublicTrade]:
        return [
            PublicTrade(
                market=market,
                trade_id=trade.trade_id,
                price=trade.price,
                quantity=trade.quantity,
                time=trade.timestamp,
                taker_side=_COMMON_SIDES[trade.side],
            )
            for trade in await self.get_recent_trades(self.symbol_for(market))
        ]
    
    async def get_orderbook(self, market: Market, depth: Optional[int] = None) -> OrderbookSnapshot:
        book = await self.get_book(self.symbol_for(market), depth)
        return OrderbookSnapshot(
            market=market,
            bids=[BookLevel(level.price, level.quantity) for level in book.bids],
            asks=[BookLevel(level.price, level.quantity) for level in book.asks],
        )
