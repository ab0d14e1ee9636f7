"""
Upbit Exchange Adapter.

============================================================
PURPOSE
============================================================
Upbit REST binding of the generic pipeline.

EXCHANGE SPECIFICS:
- snake_case parameters
- Signed requests carry "Authorization: Bearer <jwt>" (HS256)
  with access_key, nonce, iat and, when parameters exist,
  query_hash (SHA-512 of the query string) + query_hash_alg
- POST bodies are JSON; their query form is what gets hashed
- List parameters use brackets (uuids[]=a&uuids[]=b), left
  unescaped in the hashed query
- Errors are {"error": {"name": "...", "message": "..."}};
  throttling answers 429 with a plain-text body
- Markets are QUOTE-BASE (KRW-BTC); spot only
- Market buys are sized in quote currency (ord_type=price)

============================================================
API DOCUMENTATION
============================================================
https://docs.upbit.com/reference

============================================================
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from ..codec import BodyFormat, CodecConfig, FieldCase, ListStyle, QueryEncoding, ResponseEnvelope, TimestampFormat
from ..common import Balance, BookLevel, Market, MarketKind, OpenOrder, Order, OrderKind, OrderbookSnapshot, Side, TimeInForce
from ..config import RateLimitConfig
from ..contract import AuthKind, ExchangeRequest, HttpMethod
from ..errors import CodecError, ErrorCategory, ErrorTable, UnknownExchangeError, UnsupportedOperation
from ..signing import JwtBearerSigner, Signer
from .base import ExchangeAdapter


logger = logging.getLogger(__name__)


# ============================================================
# CONSTANTS
# ============================================================

UPBIT_REST_URL = "https://api.upbit.com"

UPBIT_CODEC = CodecConfig(
    field_case=FieldCase.SNAKE,
    timestamp_format=TimestampFormat.MILLIS,
    query=QueryEncoding(safe="[]", list_style=ListStyle.BRACKETS),
    body_format=BodyFormat.JSON,
    envelope=ResponseEnvelope(code_key="name", message_key="message", error_key="error"),
)

UPBIT_ERRORS = ErrorTable("upbit", {
    # Authentication
    "jwt_verification": ErrorCategory.INVALID_SIGNATURE,
    "invalid_query_payload": ErrorCategory.INVALID_SIGNATURE,
    "nonce_used": ErrorCategory.STALE_TIMESTAMP,
    "expired_access_key": ErrorCategory.AUTHENTICATION,
    "invalid_access_key": ErrorCategory.AUTHENTICATION,
    "no_authorization_i_p": ErrorCategory.AUTHENTICATION,
    "out_of_scope": ErrorCategory.AUTHENTICATION,
    
    # Parameters
    "validation_error": ErrorCategory.INVALID_PARAMETER,
    "create_ask_error": ErrorCategory.INVALID_PARAMETER,
    "create_bid_error": ErrorCategory.INVALID_PARAMETER,
    "under_min_total_ask": ErrorCategory.INVALID_PARAMETER,
    "under_min_total_bid": ErrorCategory.INVALID_PARAMETER,
    "width_too_many": ErrorCategory.INVALID_PARAMETER,
    "invalid_volume_ask": ErrorCategory.INVALID_PARAMETER,
    "invalid_volume_bid": ErrorCategory.INVALID_PARAMETER,
    "invalid_price_ask": ErrorCategory.INVALID_PARAMETER,
    "invalid_price_bid": ErrorCategory.INVALID_PARAMETER,
    "market_offline": ErrorCategory.INVALID_PARAMETER,
    
    # Funds
    "insufficient_funds_ask": ErrorCategory.INSUFFICIENT_FUNDS,
    "insufficient_funds_bid": ErrorCategory.INSUFFICIENT_FUNDS,
    
    # Orders
    "order_not_found": ErrorCategory.ORDER_NOT_FOUND,
})


# ============================================================
# ENUMS
# ============================================================

class UpbitSide(Enum):
    BID = "bid"
    ASK = "ask"


class UpbitOrderType(Enum):
    LIMIT = "limit"
    PRICE = "price"
    """Market buy sized in quote currency."""
    MARKET = "market"
    """Market sell sized in base currency."""


class UpbitOrderState(Enum):
    WAIT = "wait"
    WATCH = "watch"
    DONE = "done"
    CANCEL = "cancel"


class UpbitSortOrder(Enum):
    ASC = "asc"
    DESC = "desc"


_SIDES = {Side.BUY: UpbitSide.BID, Side.SELL: UpbitSide.ASK}
_COMMON_SIDES = {upbit: common for common, upbit in _SIDES.items()}


# ============================================================
# RESPONSE TYPES
# ============================================================

@dataclass
class OrderbookUnit:
    ask_price: Decimal
    bid_price: Decimal
    ask_size: Decimal
    bid_size: Decimal


@dataclass
class UpbitOrderbook:
    market: str
    timestamp: datetime
    total_ask_size: Decimal
    total_bid_size: Decimal
    orderbook_units: List[OrderbookUnit]


@dataclass
class UpbitAccount:
    currency: str
    balance: Decimal
    locked: Decimal
    avg_buy_price: Optional[Decimal] = None
    avg_buy_price_modified: Optional[bool] = None
    unit_currency: Optional[str] = None


@dataclass
class UpbitOrder:
    uuid: str
    side: UpbitSide
    ord_type: UpbitOrderType
    state: UpbitOrderState
    market: str
    created_at: datetime
    price: Optional[Decimal] = None
    avg_price: Optional[Decimal] = None
    volume: Optional[Decimal] = None
    remaining_volume: Optional[Decimal] = None
    executed_volume: Optional[Decimal] = None
    locked: Optional[Decimal] = None
    paid_fee: Optional[Decimal] = None
    trades_count: Optional[int] = None


# ============================================================
# ENDPOINTS
# ============================================================

@dataclass
class GetOrderbook(ExchangeRequest):
    path: ClassVar[str] = "/v1/orderbook"
    response_type: ClassVar[Any] = List[UpbitOrderbook]
    
    markets: str
    """Comma separated market codes."""


@dataclass
class GetAccounts(ExchangeRequest):
    path: ClassVar[str] = "/v1/accounts"
    response_type: ClassVar[Any] = List[UpbitAccount]
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    endpoint_class: ClassVar[str] = "account"


@dataclass
class PostOrder(ExchangeRequest):
    method: ClassVar[HttpMethod] = HttpMethod.POST
    path: ClassVar[str] = "/v1/orders"
    response_type: ClassVar[Any] = UpbitOrder
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    endpoint_class: ClassVar[str] = "orders"
    
    market: str
    side: UpbitSide
    ord_type: UpbitOrderType
    volume: Optional[Decimal] = None
    price: Optional[Decimal] = None
    identifier: Optional[str] = None


@dataclass
class GetOrders(ExchangeRequest):
    path: ClassVar[str] = "/v1/orders"
    response_type: ClassVar[Any] = List[UpbitOrder]
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    endpoint_class: ClassVar[str] = "account"
    
    market: Optional[str] = None
    uuids: Optional[List[str]] = None
    identifiers: Optional[List[str]] = None
    state: Optional[UpbitOrderState] = None
    page: Optional[int] = None
    limit: Optional[int] = None
    order_by: Optional[UpbitSortOrder] = None


@dataclass
class DeleteOrder(ExchangeRequest):
    method: ClassVar[HttpMethod] = HttpMethod.DELETE
    path: ClassVar[str] = "/v1/order"
    response_type: ClassVar[Any] = UpbitOrder
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    endpoint_class: ClassVar[str] = "orders"
    
    uuid: Optional[str] = None
    identifier: Optional[str] = None


# ============================================================
# HELPERS
# ============================================================

def _open_order(order: UpbitOrder) -> OpenOrder:
    return OpenOrder(
        order_id=order.uuid,
        symbol=order.market,
        side=_COMMON_SIDES[order.side],
        quantity=order.volume if order.volume is not None else Decimal("0"),
        filled=order.executed_volume or Decimal("0"),
        price=order.price,
        status=order.state.value,
    )


# ============================================================
# UPBIT ADAPTER
# ============================================================

class UpbitAdapter(ExchangeAdapter):
    """
    Upbit spot adapter.
    
    Upbit exposes no server time endpoint, so sync_time() is
    unsupported.
    """
    
    EXCHANGE_ID = "upbit"
    BASE_URL = UPBIT_REST_URL
    CODEC_CONFIG = UPBIT_CODEC
    ERROR_TABLE = UPBIT_ERRORS
    RATE_LIMITS = {
        # Quotation API: 10 requests per second
        "default": RateLimitConfig(capacity=10, refill_amount=10, refill_interval_seconds=1.0),
        # Exchange API: 30 requests per second
        "account": RateLimitConfig(capacity=30, refill_amount=30, refill_interval_seconds=1.0),
        # Order API: 8 requests per second
        "orders": RateLimitConfig(capacity=8, refill_amount=8, refill_interval_seconds=1.0),
    }
    
    def build_signer(self) -> Signer:
        return JwtBearerSigner(self.codec)
    
    # --------------------------------------------------------
    # ENDPOINTS
    # --------------------------------------------------------
    
    async def get_orderbooks(self, markets: List[str]) -> List[UpbitOrderbook]:
        for i, market in enumerate(markets):
            if "," in market:
                raise CodecError(f"markets[{i}]", "market code contains ','", market)
        return await self.request(GetOrderbook(markets=",".join(markets)))
    
    async def get_accounts(self) -> List[UpbitAccount]:
        return await self.request(GetAccounts())
    
    async def post_order(self, order: PostOrder) -> UpbitOrder:
        return await self.request(order)
    
    async def list_orders(
        self,
        market: Optional[str] = None,
        uuids: Optional[List[str]] = None,
        state: Optional[UpbitOrderState] = None,
    ) -> List[UpbitOrder]:
        return await self.request(GetOrders(market=market, uuids=uuids, state=state))
    
    async def delete_order(self, uuid: str) -> UpbitOrder:
        return await self.request(DeleteOrder(uuid=uuid))
    
    # --------------------------------------------------------
    # COMMON OPERATIONS
    # --------------------------------------------------------
    
    def symbol_for(self, market: Market) -> str:
        if market.kind is not MarketKind.SPOT:
            raise UnsupportedOperation(self.EXCHANGE_ID, "symbol_for", f"{market} is not a spot market")
        return f"{market.quote}-{market.base}"
    
    async def get_orderbook(self, market: Market, depth: Optional[int] = None) -> OrderbookSnapshot:
        books = await self.get_orderbooks([self.symbol_for(market)])
        if not books:
            raise UnknownExchangeError(self.EXCHANGE_ID, exchange_message="empty orderbook response")
        units = books[0].orderbook_units[:depth] if depth else books[0].orderbook_units
        return OrderbookSnapshot(
            market=market,
            bids=[BookLevel(unit.bid_price, unit.bid_size) for unit in units],
            asks=[BookLevel(unit.ask_price, unit.ask_size) for unit in units],
        )
    
    async def get_orders(self, market: Market) -> List[OpenOrder]:
        orders = await self.list_orders(market=self.symbol_for(market), state=UpbitOrderState.WAIT)
        return [_open_order(order) for order in orders]
    
    async def get_all_orders(self) -> List[OpenOrder]:
        return [_open_order(order) for order in await self.list_orders(state=UpbitOrderState.WAIT)]
    
    async def get_balances(self) -> Dict[str, Balance]:
        return {
            account.currency: Balance(account.currency, account.balance, account.locked)
            for account in await self.get_accounts()
        }
    
    def build_order(self, market: Market, order: Order, reduce_only: bool = False) -> PostOrder:
        """
        Translate a common order into an Upbit order request.
        
        Raises:
            UnsupportedOperation: For stop orders, reduce-only,
                non-GTC limits and base-sized market buys
        """
        if reduce_only:
            raise UnsupportedOperation(self.EXCHANGE_ID, "place_order", "spot orders cannot be reduce-only")
        if order.kind in (OrderKind.STOP_MARKET, OrderKind.STOP_LIMIT):
            raise UnsupportedOperation(self.EXCHANGE_ID, "place_order", "stop orders are not supported")
        
        symbol = self.symbol_for(market)
        if order.kind is OrderKind.MARKET:
            if order.side is Side.BUY:
                raise UnsupportedOperation(
                    self.EXCHANGE_ID,
                    "place_order",
                    "market buys are sized in quote currency; submit PostOrder with ord_type=price",
                )
            return PostOrder(market=symbol, side=UpbitSide.ASK, ord_type=UpbitOrderType.MARKET, volume=order.quantity)
        
        if order.time_in_force is not TimeInForce.GTC:
            raise UnsupportedOperation(self.EXCHANGE_ID, "place_order", "only GTC limit orders are supported")
        return PostOrder(
            market=symbol,
            side=_SIDES[order.side],
            ord_type=UpbitOrderType.LIMIT,
            volume=order.quantity,
            price=order.price,
        )
    
    async def place_order(self, market: Market, order: Order, reduce_only: bool = False) -> str:
        result = await self.post_order(self.build_order(market, order, reduce_only))
        logger.info(f"Upbit order {result.uuid} placed on {result.market}")
        return result.uuid
    
    async def cancel_order(self, market: Market, order_id: str) -> None:
        await self.delete_order(order_id)
