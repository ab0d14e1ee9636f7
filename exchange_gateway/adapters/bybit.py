"""
Bybit Exchange Adapter.

============================================================
PURPOSE
============================================================
Bybit V5 (unified) REST binding of the generic pipeline.

EXCHANGE SPECIFICS:
- camelCase parameters; GET in the query string, POST as JSON
- Every response is {"retCode": 0, "retMsg": "OK", "result": {...}};
  a non-zero retCode is an error even on HTTP 200
- HMAC-SHA256 (hex) over
  timestamp + api_key + recv_window + (query or body)
- X-BAPI-API-KEY / X-BAPI-SIGN / X-BAPI-TIMESTAMP /
  X-BAPI-RECV-WINDOW headers, millisecond timestamps
- One API for all products, selected by category
  (spot, linear, inverse); symbols are BASE+QUOTE

============================================================
API DOCUMENTATION
============================================================
https://bybit-exchange.github.io/docs/v5/intro

============================================================
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from ..codec import BodyFormat, CodecConfig, FieldCase, QueryEncoding, ResponseEnvelope, TimestampFormat
from ..common import Balance, BookLevel, Market, MarketKind, Order, OrderKind, OrderbookSnapshot, Side, Ticker, TimeInForce
from ..config import RateLimitConfig
from ..contract import AuthKind, ExchangeRequest, HttpMethod, wire_field
from ..errors import ErrorCategory, ErrorTable, UnknownExchangeError, UnsupportedOperation
from ..signing import DigestEncoding, HeaderLayout, HmacHeaderSigner, PrehashLayout, Signer
from .base import ExchangeAdapter


logger = logging.getLogger(__name__)


# ============================================================
# CONSTANTS
# ============================================================

BYBIT_REST_URL = "https://api.bybit.com"
BYBIT_TESTNET_URL = "https://api-testnet.bybit.com"

BYBIT_CODEC = CodecConfig(
    field_case=FieldCase.CAMEL,
    timestamp_format=TimestampFormat.MILLIS,
    query=QueryEncoding(),
    body_format=BodyFormat.JSON,
    envelope=ResponseEnvelope(
        code_key="retCode",
        message_key="retMsg",
        success_codes=(0,),
        data_key="result",
    ),
    empty_string_as_none=True,
)

BYBIT_HEADERS = HeaderLayout(
    key_header="X-BAPI-API-KEY",
    signature_header="X-BAPI-SIGN",
    timestamp_header="X-BAPI-TIMESTAMP",
    recv_window_header="X-BAPI-RECV-WINDOW",
    prehash=PrehashLayout.TIMESTAMP_KEY_WINDOW_PAYLOAD,
    encoding=DigestEncoding.HEX,
    timestamp_format=TimestampFormat.MILLIS,
)

BYBIT_ERRORS = ErrorTable("bybit", {
    # Rate limits
    10006: ErrorCategory.RATE_LIMITED,
    10018: ErrorCategory.RATE_LIMITED,
    
    # Authentication
    10003: ErrorCategory.AUTHENTICATION,
    10005: ErrorCategory.AUTHENTICATION,
    10010: ErrorCategory.AUTHENTICATION,
    33004: ErrorCategory.AUTHENTICATION,
    10004: ErrorCategory.INVALID_SIGNATURE,
    10002: ErrorCategory.STALE_TIMESTAMP,
    
    # Parameters
    10001: ErrorCategory.INVALID_PARAMETER,
    110003: ErrorCategory.INVALID_PARAMETER,
    110017: ErrorCategory.INVALID_PARAMETER,
    170130: ErrorCategory.INVALID_PARAMETER,
    
    # Funds
    110004: ErrorCategory.INSUFFICIENT_FUNDS,
    110007: ErrorCategory.INSUFFICIENT_FUNDS,
    110012: ErrorCategory.INSUFFICIENT_FUNDS,
    170131: ErrorCategory.INSUFFICIENT_FUNDS,
    
    # Orders
    110001: ErrorCategory.ORDER_NOT_FOUND,
    110008: ErrorCategory.ORDER_NOT_FOUND,
    170213: ErrorCategory.ORDER_NOT_FOUND,
    
    # Exchange side
    10016: ErrorCategory.SERVICE_UNAVAILABLE,
})


# ============================================================
# ENUMS
# ============================================================

class BybitCategory(Enum):
    SPOT = "spot"
    LINEAR = "linear"
    INVERSE = "inverse"


class BybitSide(Enum):
    BUY = "Buy"
    SELL = "Sell"


class BybitOrderType(Enum):
    MARKET = "Market"
    LIMIT = "Limit"


class BybitTimeInForce(Enum):
    GTC = "GTC"
    IOC = "IOC"
    FOK = "FOK"
    POST_ONLY = "PostOnly"


_CATEGORIES = {
    MarketKind.SPOT: BybitCategory.SPOT,
    MarketKind.SWAP: BybitCategory.LINEAR,
    MarketKind.INVERSE: BybitCategory.INVERSE,
}
_SIDES = {Side.BUY: BybitSide.BUY, Side.SELL: BybitSide.SELL}
_TIME_IN_FORCE = {
    TimeInForce.GTC: BybitTimeInForce.GTC,
    TimeInForce.IOC: BybitTimeInForce.IOC,
    TimeInForce.FOK: BybitTimeInForce.FOK,
    TimeInForce.GTX: BybitTimeInForce.POST_ONLY,
}


# ============================================================
# RESPONSE TYPES
# ============================================================

@dataclass
class BybitServerTime:
    time_second: int
    time_nano: int


@dataclass
class BybitLevel:
    """[price, size] row."""
    
    price: Decimal
    size: Decimal


@dataclass
class BybitOrderbook:
    symbol: str = wire_field("s")
    bids: List[BybitLevel] = wire_field("b")
    asks: List[BybitLevel] = wire_field("a")
    ts: datetime = wire_field()
    update_id: Optional[int] = wire_field("u", default=None)


@dataclass
class BybitTicker:
    symbol: str
    last_price: Decimal
    bid1_price: Optional[Decimal] = None
    ask1_price: Optional[Decimal] = None
    volume24h: Optional[Decimal] = None


@dataclass
class BybitTickers:
    category: BybitCategory
    items: List[BybitTicker] = wire_field("list")


@dataclass
class BybitCoinBalance:
    coin: str
    wallet_balance: Decimal
    locked: Optional[Decimal] = None
    equity: Optional[Decimal] = None


@dataclass
class BybitWallet:
    account_type: str
    coin: List[BybitCoinBalance]
    total_equity: Optional[Decimal] = None


@dataclass
class BybitWalletBalance:
    items: List[BybitWallet] = wire_field("list")


@dataclass
class BybitOrderAck:
    order_id: str
    order_link_id: Optional[str] = None


# ============================================================
# ENDPOINTS
# ============================================================

@dataclass
class GetServerTime(ExchangeRequest):
    path: ClassVar[str] = "/v5/market/time"
    response_type: ClassVar[Any] = BybitServerTime


@dataclass
class GetTickers(ExchangeRequest):
    path: ClassVar[str] = "/v5/market/tickers"
    response_type: ClassVar[Any] = BybitTickers
    
    category: BybitCategory
    symbol: Optional[str] = None


@dataclass
class GetOrderbook(ExchangeRequest):
    path: ClassVar[str] = "/v5/market/orderbook"
    response_type: ClassVar[Any] = BybitOrderbook
    
    category: BybitCategory
    symbol: str
    limit: Optional[int] = None


@dataclass
class GetWalletBalance(ExchangeRequest):
    path: ClassVar[str] = "/v5/account/wallet-balance"
    response_type: ClassVar[Any] = BybitWalletBalance
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    endpoint_class: ClassVar[str] = "account"
    
    account_type: str = "UNIFIED"
    coin: Optional[str] = None


@dataclass
class CreateOrder(ExchangeRequest):
    method: ClassVar[HttpMethod] = HttpMethod.POST
    path: ClassVar[str] = "/v5/order/create"
    response_type: ClassVar[Any] = BybitOrderAck
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    endpoint_class: ClassVar[str] = "orders"
    
    category: BybitCategory
    symbol: str
    side: BybitSide
    order_type: BybitOrderType
    qty: Decimal
    price: Optional[Decimal] = None
    time_in_force: Optional[BybitTimeInForce] = None
    reduce_only: Optional[bool] = None
    order_link_id: Optional[str] = None


@dataclass
class CancelOrder(ExchangeRequest):
    method: ClassVar[HttpMethod] = HttpMethod.POST
    path: ClassVar[str] = "/v5/order/cancel"
    response_type: ClassVar[Any] = BybitOrderAck
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    endpoint_class: ClassVar[str] = "orders"
    
    category: BybitCategory
    symbol: str
    order_id: Optional[str] = None
    order_link_id: Optional[str] = None


# ============================================================
# BYBIT ADAPTER
# ============================================================

class BybitAdapter(ExchangeAdapter):
    """Bybit V5 adapter for spot, linear and inverse markets."""
    
    EXCHANGE_ID = "bybit"
    BASE_URL = BYBIT_REST_URL
    TESTNET_URL = BYBIT_TESTNET_URL
    CODEC_CONFIG = BYBIT_CODEC
    ERROR_TABLE = BYBIT_ERRORS
    RATE_LIMITS = {
        # 600 requests per 5 seconds per IP
        "default": RateLimitConfig(capacity=120, refill_amount=24, refill_interval_seconds=0.2, max_in_flight=50),
        "account": RateLimitConfig(capacity=10, refill_amount=10, refill_interval_seconds=1.0),
        # 10 orders per second per UID
        "orders": RateLimitConfig(capacity=10, refill_amount=10, refill_interval_seconds=1.0),
    }
    
    def build_signer(self) -> Signer:
        return HmacHeaderSigner(BYBIT_HEADERS, self.codec, recv_window_ms=self.config.recv_window_ms)
    
    # --------------------------------------------------------
    # ENDPOINTS
    # --------------------------------------------------------
    
    async def server_time_ms(self) -> int:
        server_time = await self.request(GetServerTime())
        return server_time.time_nano // 1_000_000
    
    async def get_category_tickers(self, category: BybitCategory, symbol: Optional[str] = None) -> List[BybitTicker]:
        return (await self.request(GetTickers(category=category, symbol=symbol))).items
    
    async def get_book(self, category: BybitCategory, symbol: str, limit: Optional[int] = None) -> BybitOrderbook:
        return await self.request(GetOrderbook(category=category, symbol=symbol, limit=limit))
    
    async def get_wallet_balance(self, coin: Optional[str] = None) -> BybitWallet:
        wallets = (await self.request(GetWalletBalance(coin=coin))).items
        if not wallets:
            raise UnknownExchangeError(self.EXCHANGE_ID, exchange_message="empty wallet list")
        return wallets[0]
    
    async def create_order(self, order: CreateOrder) -> BybitOrderAck:
        return await self.request(order)
    
    async def cancel(self, category: BybitCategory, symbol: str, order_id: str) -> BybitOrderAck:
        return await self.request(CancelOrder(category=category, symbol=symbol, order_id=order_id))
    
    # --------------------------------------------------------
    # COMMON OPERATIONS
    # --------------------------------------------------------
    
    def symbol_for(self, market: Market) -> str:
        return f"{market.base}{market.quote}"
    
    async def get_tickers(self, markets: Optional[List[Market]] = None) -> Dict[Market, Ticker]:
        """
        Tickers of the given markets, one request per category.
        
        A category holding a single requested market asks for that
        symbol only.
        
        Raises:
            UnsupportedOperation: Without markets, since Bybit symbols
                do not separate base and quote
        """
        if markets is None:
            raise UnsupportedOperation(self.EXCHANGE_ID, "get_tickers", "symbols do not separate base and quote")
        
        by_category: Dict[BybitCategory, Dict[str, Market]] = {}
        for market in markets:
            by_category.setdefault(_CATEGORIES[market.kind], {})[self.symbol_for(market)] = market
        
        tickers = {}
        for category, wanted in by_category.items():
            symbol = next(iter(wanted)) if len(wanted) == 1 else None
            for item in await self.get_category_tickers(category, symbol):
                market = wanted.get(item.symbol)
                if market is not None:
                    tickers[market] = Ticker(market, bid=item.bid1_price, ask=item.ask1_price, last=item.last_price)
        return tickers
    
    async def get_orderbook(self, market: Market, depth: Optional[int] = None) -> OrderbookSnapshot:
        book = await self.get_book(_CATEGORIES[market.kind], self.symbol_for(market), depth)
        return OrderbookSnapshot(
            market=market,
            bids=[BookLevel(level.price, level.size) for level in book.bids],
            asks=[BookLevel(level.price, level.size) for level in book.asks],
        )
    
    async def get_balances(self) -> Dict[str, Balance]:
        wallet = await self.get_wallet_balance()
        balances = {}
        for item in wallet.coin:
            locked = item.locked or Decimal("0")
            balances[item.coin] = Balance(item.coin, item.wallet_balance - locked, locked)
        return balances
    
    def build_order(self, market: Market, order: Order, reduce_only: bool = False) -> CreateOrder:
        """Translate a common order into a Bybit order request."""
        if order.kind in (OrderKind.STOP_MARKET, OrderKind.STOP_LIMIT):
            raise UnsupportedOperation(self.EXCHANGE_ID, "place_order", "conditional orders need a trigger direction")
        if reduce_only and market.kind is MarketKind.SPOT:
            raise UnsupportedOperation(self.EXCHANGE_ID, "place_order", "spot orders cannot be reduce-only")
        
        return CreateOrder(
            category=_CATEGORIES[market.kind],
            symbol=self.symbol_for(market),
            side=_SIDES[order.side],
            order_type=BybitOrderType.MARKET if order.kind is OrderKind.MARKET else BybitOrderType.LIMIT,
            qty=order.quantity,
            price=order.price,
            time_in_force=_TIME_IN_FORCE.get(order.time_in_force),
            reduce_only=True if reduce_only else None,
        )
    
    async def place_order(self, market: Market, order: Order, reduce_only: bool = False) -> str:
        ack = await self.create_order(self.build_order(market, order, reduce_only))
        logger.info(f"Bybit order {ack.order_id} placed on {self.symbol_for(market)}")
        return ack.order_id
    
    async def cancel_order(self, market: Market, order_id: str) -> None:
        await self.cancel(_CATEGORIES[market.kind], self.symbol_for(market), order_id)
