"""
Binance Exchange Adapters.

============================================================
PURPOSE
============================================================
Spot (api.binance.com) and USD-M futures (fapi.binance.com)
bindings of the generic pipeline.

EXCHANGE SPECIFICS:
- camelCase parameters, millisecond timestamps
- All parameters travel in the query string, POST included
- HMAC-SHA256 (hex) over query + body, appended as &signature=
- API key in the X-MBX-APIKEY header
- Errors are {"code": -1021, "msg": "..."} on non-2xx responses
- Symbols are BASE+QUOTE (BTCUSDT)

============================================================
API DOCUMENTATION
============================================================
https://binance-docs.github.io/apidocs/spot/en/
https://binance-docs.github.io/apidocs/futures/en/

============================================================
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from ..codec import BodyFormat, CodecConfig, FieldCase, QueryEncoding, ResponseEnvelope, TimestampFormat
from ..common import (
    Balance,
    BookLevel,
    Market,
    MarketKind,
    OpenOrder,
    Order,
    OrderKind,
    OrderbookSnapshot,
    Position,
    PublicTrade,
    Side,
    TimeInForce,
)
from ..config import RateLimitConfig
from ..contract import AuthKind, ExchangeRequest, HttpMethod, wire_field
from ..errors import CodecError, ErrorCategory, ErrorTable, UnknownExchangeError, UnsupportedOperation
from ..signing import HmacQuerySigner, Signer
from .base import ExchangeAdapter


logger = logging.getLogger(__name__)


# ============================================================
# CONSTANTS
# ============================================================

BINANCE_SPOT_URL = "https://api.binance.com"
BINANCE_SPOT_TESTNET_URL = "https://testnet.binance.vision"
BINANCE_FUTURES_URL = "https://fapi.binance.com"
BINANCE_FUTURES_TESTNET_URL = "https://testnet.binancefuture.com"

BINANCE_CODEC = CodecConfig(
    field_case=FieldCase.CAMEL,
    timestamp_format=TimestampFormat.MILLIS,
    query=QueryEncoding(),
    body_format=BodyFormat.QUERY,
    envelope=ResponseEnvelope(code_key="code", message_key="msg"),
)

BINANCE_ERRORS = ErrorTable("binance", {
    # Rate limits
    -1003: ErrorCategory.RATE_LIMITED,
    -1015: ErrorCategory.RATE_LIMITED,
    
    # Authentication
    -1002: ErrorCategory.AUTHENTICATION,
    -2014: ErrorCategory.AUTHENTICATION,
    -2015: ErrorCategory.AUTHENTICATION,
    -1022: ErrorCategory.INVALID_SIGNATURE,
    -1021: ErrorCategory.STALE_TIMESTAMP,
    
    # Parameters
    -1013: ErrorCategory.INVALID_PARAMETER,
    -1100: ErrorCategory.INVALID_PARAMETER,
    -1101: ErrorCategory.INVALID_PARAMETER,
    -1102: ErrorCategory.INVALID_PARAMETER,
    -1111: ErrorCategory.INVALID_PARAMETER,
    -1112: ErrorCategory.INVALID_PARAMETER,
    -1114: ErrorCategory.INVALID_PARAMETER,
    -1115: ErrorCategory.INVALID_PARAMETER,
    -1116: ErrorCategory.INVALID_PARAMETER,
    -1117: ErrorCategory.INVALID_PARAMETER,
    -1121: ErrorCategory.INVALID_PARAMETER,
    -4014: ErrorCategory.INVALID_PARAMETER,
    -4015: ErrorCategory.INVALID_PARAMETER,
    -4164: ErrorCategory.INVALID_PARAMETER,
    
    # Funds
    -2010: ErrorCategory.INSUFFICIENT_FUNDS,
    -2018: ErrorCategory.INSUFFICIENT_FUNDS,
    -2019: ErrorCategory.INSUFFICIENT_FUNDS,
    
    # Orders
    -2011: ErrorCategory.ORDER_NOT_FOUND,
    -2013: ErrorCategory.ORDER_NOT_FOUND,
    
    # Exchange side
    -1000: ErrorCategory.SERVICE_UNAVAILABLE,
    -1001: ErrorCategory.SERVICE_UNAVAILABLE,
    -1006: ErrorCategory.SERVICE_UNAVAILABLE,
    -1007: ErrorCategory.SERVICE_UNAVAILABLE,
    -1008: ErrorCategory.SERVICE_UNAVAILABLE,
    -1016: ErrorCategory.SERVICE_UNAVAILABLE,
})


# ============================================================
# ENUMS
# ============================================================

class BinanceSide(Enum):
    BUY = "BUY"
    SELL = "SELL"


class BinanceOrderType(Enum):
    LIMIT = "LIMIT"
    MARKET = "MARKET"
    STOP_LOSS = "STOP_LOSS"
    STOP_LOSS_LIMIT = "STOP_LOSS_LIMIT"
    TAKE_PROFIT = "TAKE_PROFIT"
    TAKE_PROFIT_LIMIT = "TAKE_PROFIT_LIMIT"
    LIMIT_MAKER = "LIMIT_MAKER"
    
    # Futures only
    STOP = "STOP"
    STOP_MARKET = "STOP_MARKET"
    TAKE_PROFIT_MARKET = "TAKE_PROFIT_MARKET"
    TRAILING_STOP_MARKET = "TRAILING_STOP_MARKET"


class BinanceTimeInForce(Enum):
    GTC = "GTC"
    IOC = "IOC"
    FOK = "FOK"
    GTX = "GTX"
    
    # Futures only
    GTE_GTC = "GTE_GTC"


_SIDES = {Side.BUY: BinanceSide.BUY, Side.SELL: BinanceSide.SELL}
_COMMON_SIDES = {binance: common for common, binance in _SIDES.items()}
_TIME_IN_FORCE = {
    TimeInForce.GTC: BinanceTimeInForce.GTC,
    TimeInForce.IOC: BinanceTimeInForce.IOC,
    TimeInForce.FOK: BinanceTimeInForce.FOK,
    TimeInForce.GTX: BinanceTimeInForce.GTX,
}


# ============================================================
# RESPONSE TYPES
# ============================================================

@dataclass
class ServerTime:
    server_time: int


@dataclass
class TickerPrice:
    symbol: str
    price: Decimal


@dataclass
class DepthLevel:
    """[price, quantity] row."""
    
    price: Decimal
    quantity: Decimal


@dataclass
class Depth:
    last_update_id: int
    bids: List[DepthLevel]
    asks: List[DepthLevel]


@dataclass
class Trade:
    id: int
    price: Decimal
    qty: Decimal
    quote_qty: Decimal
    time: datetime
    is_buyer_maker: bool
    is_best_match: Optional[bool] = None


@dataclass
class AssetBalance:
    asset: str
    free: Decimal
    locked: Decimal


@dataclass
class Account:
    maker_commission: Decimal
    taker_commission: Decimal
    can_trade: bool
    can_withdraw: bool
    can_deposit: bool
    update_time: datetime
    balances: List[AssetBalance]
    account_type: Optional[str] = None


@dataclass
class NewOrderResult:
    symbol: str
    order_id: int
    client_order_id: str
    transact_time: datetime
    order_list_id: Optional[int] = None
    price: Optional[Decimal] = None
    orig_qty: Optional[Decimal] = None
    executed_qty: Optional[Decimal] = None
    cummulative_quote_qty: Optional[Decimal] = None
    status: Optional[str] = None
    time_in_force: Optional[BinanceTimeInForce] = None
    order_type: Optional[BinanceOrderType] = wire_field("type", default=None)
    side: Optional[BinanceSide] = None


@dataclass
class BinanceOpenOrder:
    symbol: str
    order_id: int
    client_order_id: str
    price: Decimal
    orig_qty: Decimal
    executed_qty: Decimal
    status: str
    time_in_force: BinanceTimeInForce
    order_type: BinanceOrderType = wire_field("type")
    side: BinanceSide = wire_field()
    time: Optional[datetime] = None
    update_time: Optional[datetime] = None
    stop_price: Optional[Decimal] = None


@dataclass
class CanceledOrder:
    symbol: str
    order_id: int
    orig_client_order_id: str
    status: str


# ============================================================
# SPOT ENDPOINTS
# ============================================================

@dataclass
class GetServerTime(ExchangeRequest):
    path: ClassVar[str] = "/api/v3/time"
    response_type: ClassVar[Any] = ServerTime


@dataclass
class GetTickerPrice(ExchangeRequest):
    path: ClassVar[str] = "/api/v3/ticker/price"
    response_type: ClassVar[Any] = TickerPrice
    weight: ClassVar[int] = 2
    
    symbol: str


@dataclass
class GetDepth(ExchangeRequest):
    path: ClassVar[str] = "/api/v3/depth"
    response_type: ClassVar[Any] = Depth
    weight: ClassVar[int] = 5
    
    symbol: str
    limit: Optional[int] = None
    """Default 100, max 5000."""


@dataclass
class GetTrades(ExchangeRequest):
    path: ClassVar[str] = "/api/v3/trades"
    response_type: ClassVar[Any] = List[Trade]
    weight: ClassVar[int] = 25
    
    symbol: str
    limit: Optional[int] = None
    """Default 500, max 1000."""


@dataclass
class GetAccount(ExchangeRequest):
    path: ClassVar[str] = "/api/v3/account"
    response_type: ClassVar[Any] = Account
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    weight: ClassVar[int] = 20


@dataclass
class NewOrder(ExchangeRequest):
    method: ClassVar[HttpMethod] = HttpMethod.POST
    path: ClassVar[str] = "/api/v3/order"
    response_type: ClassVar[Any] = NewOrderResult
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    endpoint_class: ClassVar[str] = "orders"
    
    symbol: str
    side: BinanceSide
    order_type: BinanceOrderType = wire_field("type")
    time_in_force: Optional[BinanceTimeInForce] = None
    quantity: Optional[Decimal] = None
    quote_order_qty: Optional[Decimal] = None
    price: Optional[Decimal] = None
    new_client_order_id: Optional[str] = None
    stop_price: Optional[Decimal] = None
    iceberg_qty: Optional[Decimal] = None
    new_order_resp_type: Optional[str] = None


@dataclass
class CancelOrder(ExchangeRequest):
    method: ClassVar[HttpMethod] = HttpMethod.DELETE
    path: ClassVar[str] = "/api/v3/order"
    response_type: ClassVar[Any] = CanceledOrder
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    endpoint_class: ClassVar[str] = "orders"
    
    symbol: str
    order_id: Optional[int] = None
    orig_client_order_id: Optional[str] = None


@dataclass
class GetOpenOrders(ExchangeRequest):
    path: ClassVar[str] = "/api/v3/openOrders"
    response_type: ClassVar[Any] = List[BinanceOpenOrder]
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    weight: ClassVar[int] = 6
    
    symbol: str


@dataclass
class GetAllOpenOrders(ExchangeRequest):
    path: ClassVar[str] = "/api/v3/openOrders"
    response_type: ClassVar[Any] = List[BinanceOpenOrder]
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    weight: ClassVar[int] = 80


# ============================================================
# FUTURES RESPONSE TYPES
# ============================================================

@dataclass
class FuturesDepth:
    last_update_id: int
    message_output_time: datetime = wire_field("E")
    transaction_time: datetime = wire_field("T")
    bids: List[DepthLevel] = wire_field()
    asks: List[DepthLevel] = wire_field()


@dataclass
class FuturesBalance:
    asset: str
    balance: Decimal
    available_balance: Decimal
    cross_wallet_balance: Optional[Decimal] = None
    cross_un_pnl: Optional[Decimal] = None
    max_withdraw_amount: Optional[Decimal] = None
    margin_available: Optional[bool] = None
    update_time: Optional[datetime] = None
    account_alias: Optional[str] = None


@dataclass
class FuturesOrderResult:
    symbol: str
    order_id: int
    client_order_id: str
    status: str
    price: Optional[Decimal] = None
    orig_qty: Optional[Decimal] = None
    executed_qty: Optional[Decimal] = None
    reduce_only: Optional[bool] = None
    update_time: Optional[datetime] = None


@dataclass
class FuturesPosition:
    """positionRisk entry; one per symbol in one-way mode."""
    
    symbol: str
    position_amt: Decimal
    entry_price: Decimal
    un_realized_profit: Decimal
    mark_price: Optional[Decimal] = None
    liquidation_price: Optional[Decimal] = None
    leverage: Optional[Decimal] = None
    margin_type: Optional[str] = None
    position_side: Optional[str] = None
    update_time: Optional[datetime] = None


# ============================================================
# FUTURES ENDPOINTS
# ============================================================

@dataclass
class GetFuturesServerTime(ExchangeRequest):
    path: ClassVar[str] = "/fapi/v1/time"
    response_type: ClassVar[Any] = ServerTime


@dataclass
class GetFuturesDepth(ExchangeRequest):
    path: ClassVar[str] = "/fapi/v1/depth"
    response_type: ClassVar[Any] = FuturesDepth
    weight: ClassVar[int] = 5
    
    symbol: str
    limit: Optional[int] = None


@dataclass
class GetFuturesTrades(ExchangeRequest):
    path: ClassVar[str] = "/fapi/v1/trades"
    response_type: ClassVar[Any] = List[Trade]
    weight: ClassVar[int] = 5
    
    symbol: str
    limit: Optional[int] = None


@dataclass
class GetFuturesOpenOrders(ExchangeRequest):
    path: ClassVar[str] = "/fapi/v1/openOrders"
    response_type: ClassVar[Any] = List[BinanceOpenOrder]
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    
    symbol: str


@dataclass
class GetAllFuturesOpenOrders(ExchangeRequest):
    path: ClassVar[str] = "/fapi/v1/openOrders"
    response_type: ClassVar[Any] = List[BinanceOpenOrder]
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    weight: ClassVar[int] = 40


@dataclass
class GetPositionRisk(ExchangeRequest):
    path: ClassVar[str] = "/fapi/v2/positionRisk"
    response_type: ClassVar[Any] = List[FuturesPosition]
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    weight: ClassVar[int] = 5
    
    symbol: Optional[str] = None


@dataclass
class GetFuturesBalance(ExchangeRequest):
    path: ClassVar[str] = "/fapi/v2/balance"
    response_type: ClassVar[Any] = List[FuturesBalance]
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    weight: ClassVar[int] = 5


@dataclass
class NewFuturesOrder(ExchangeRequest):
    method: ClassVar[HttpMethod] = HttpMethod.POST
    path: ClassVar[str] = "/fapi/v1/order"
    response_type: ClassVar[Any] = FuturesOrderResult
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    endpoint_class: ClassVar[str] = "orders"
    
    symbol: str
    side: BinanceSide
    order_type: BinanceOrderType = wire_field("type")
    time_in_force: Optional[BinanceTimeInForce] = None
    quantity: Optional[Decimal] = None
    price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    reduce_only: Optional[bool] = None
    new_client_order_id: Optional[str] = None


@dataclass
class CancelFuturesOrder(ExchangeRequest):
    method: ClassVar[HttpMethod] = HttpMethod.DELETE
    path: ClassVar[str] = "/fapi/v1/order"
    response_type: ClassVar[Any] = FuturesOrderResult
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    endpoint_class: ClassVar[str] = "orders"
    
    symbol: str
    order_id: Optional[int] = None
    orig_client_order_id: Optional[str] = None


# ============================================================
# HELPERS
# ============================================================

def _numeric_order_id(order_id: str) -> int:
    if not order_id.isdigit():
        raise CodecError("order_id", "Binance order ids are numeric", order_id)
    return int(order_id)


def _book(market: Market, bids: List[DepthLevel], asks: List[DepthLevel]) -> OrderbookSnapshot:
    return OrderbookSnapshot(
        market=market,
        bids=[BookLevel(level.price, level.quantity) for level in bids],
        asks=[BookLevel(level.price, level.quantity) for level in asks],
    )


def _public_trade(market: Market, trade: Trade) -> PublicTrade:
    return PublicTrade(
        market=market,
        trade_id=str(trade.id),
        price=trade.price,
        quantity=trade.qty,
        time=trade.time,
        taker_side=Side.SELL if trade.is_buyer_maker else Side.BUY,
    )


def _open_order(order: BinanceOpenOrder) -> OpenOrder:
    # Market orders report price 0
    return OpenOrder(
        order_id=str(order.order_id),
        symbol=order.symbol,
        side=_COMMON_SIDES[order.side],
        quantity=order.orig_qty,
        filled=order.executed_qty,
        price=order.price or None,
        status=order.status,
    )


# ============================================================
# BINANCE SPOT ADAPTER
# ============================================================

class BinanceAdapter(ExchangeAdapter):
    """
    Binance spot exchange adapter.
    
    Endpoint weights follow the documented request weights;
    order placement and cancellation draw from a separate
    "orders" budget.
    """
    
    EXCHANGE_ID = "binance"
    BASE_URL = BINANCE_SPOT_URL
    TESTNET_URL = BINANCE_SPOT_TESTNET_URL
    CODEC_CONFIG = BINANCE_CODEC
    ERROR_TABLE = BINANCE_ERRORS
    RATE_LIMITS = {
        # 6000 weight per minute
        "default": RateLimitConfig(capacity=6000, refill_amount=100, refill_interval_seconds=1.0, max_in_flight=50),
        # 50 orders per 10 seconds
        "orders": RateLimitConfig(capacity=50, refill_amount=5, refill_interval_seconds=1.0, max_in_flight=10),
    }
    
    _STOP_TYPES = {
        OrderKind.STOP_MARKET: BinanceOrderType.STOP_LOSS,
        OrderKind.STOP_LIMIT: BinanceOrderType.STOP_LOSS_LIMIT,
    }
    
    def build_signer(self) -> Signer:
        return HmacQuerySigner(self.codec, recv_window_ms=self.config.recv_window_ms)
    
    # --------------------------------------------------------
    # ENDPOINTS
    # --------------------------------------------------------
    
    async def get_server_time(self) -> ServerTime:
        return await self.request(GetServerTime())
    
    async def server_time_ms(self) -> int:
        return (await self.get_server_time()).server_time
    
    async def get_ticker_price(self, symbol: str) -> TickerPrice:
        return await self.request(GetTickerPrice(symbol=symbol))
    
    async def get_depth(self, symbol: str, limit: Optional[int] = None) -> Depth:
        return await self.request(GetDepth(symbol=symbol, limit=limit))
    
    async def get_recent_trades(self, symbol: str, limit: Optional[int] = None) -> List[Trade]:
        return await self.request(GetTrades(symbol=symbol, limit=limit))
    
    async def get_account(self) -> Account:
        return await self.request(GetAccount())
    
    async def new_order(self, order: NewOrder) -> NewOrderResult:
        return await self.request(order)
    
    async def get_open_orders(self, symbol: Optional[str] = None) -> List[BinanceOpenOrder]:
        """Open orders on one symbol, or on all symbols at a higher weight."""
        if symbol is None:
            return await self.request(GetAllOpenOrders())
        return await self.request(GetOpenOrders(symbol=symbol))
    
    async def cancel(self, symbol: str, order_id: int) -> CanceledOrder:
        return await self.request(CancelOrder(symbol=symbol, order_id=order_id))
    
    # --------------------------------------------------------
    # COMMON OPERATIONS
    # --------------------------------------------------------
    
    def symbol_for(self, market: Market) -> str:
        if market.kind is not MarketKind.SPOT:
            raise UnsupportedOperation(self.EXCHANGE_ID, "symbol_for", f"{market} is not a spot market")
        return f"{market.base}{market.quote}"
    
    async def get_trades(self, market: Market) -> List[PublicTrade]:
        trades = await self.get_recent_trades(self.symbol_for(market))
        return [_public_trade(market, trade) for trade in trades]
    
    async def get_orderbook(self, market: Market, depth: Optional[int] = None) -> OrderbookSnapshot:
        book = await self.get_depth(self.symbol_for(market), depth)
        return _book(market, book.bids, book.asks)
    
    async def get_orders(self, market: Market) -> List[OpenOrder]:
        return [_open_order(order) for order in await self.get_open_orders(self.symbol_for(market))]
    
    async def get_all_orders(self) -> List[OpenOrder]:
        return [_open_order(order) for order in await self.get_open_orders()]
    
    async def get_balances(self) -> Dict[str, Balance]:
        """Non-zero balances keyed by asset."""
        account = await self.get_account()
        balances = {}
        for item in account.balances:
            balance = Balance(item.asset, item.free, item.locked)
            if balance.total:
                balances[item.asset] = balance
        return balances
    
    def build_order(self, market: Market, order: Order, reduce_only: bool = False) -> NewOrder:
        """Translate a common order into a spot order request."""
        if reduce_only:
            raise UnsupportedOperation(self.EXCHANGE_ID, "place_order", "spot orders cannot be reduce-only")
        if order.time_in_force is TimeInForce.GTX:
            raise UnsupportedOperation(self.EXCHANGE_ID, "place_order", "spot has no GTX time in force")
        
        if order.kind is OrderKind.MARKET:
            order_type = BinanceOrderType.MARKET
        elif order.kind is OrderKind.LIMIT:
            order_type = BinanceOrderType.LIMIT
        else:
            order_type = self._STOP_TYPES[order.kind]
        
        return NewOrder(
            symbol=self.symbol_for(market),
            side=_SIDES[order.side],
            order_type=order_type,
            time_in_force=_TIME_IN_FORCE.get(order.time_in_force),
            quantity=order.quantity,
            price=order.price,
            stop_price=order.stop_price,
            new_order_resp_type="RESULT",
        )
    
    async def place_order(self, market: Market, order: Order, reduce_only: bool = False) -> str:
        result = await self.new_order(self.build_order(market, order, reduce_only))
        logger.info(f"Binance order {result.order_id} placed on {result.symbol}")
        return str(result.order_id)
    
    async def cancel_order(self, market: Market, order_id: str) -> None:
        await self.cancel(self.symbol_for(market), _numeric_order_id(order_id))


# ============================================================
# BINANCE USD-M FUTURES ADAPTER
# ============================================================

class BinanceFuturesAdapter(ExchangeAdapter):
    """Binance USD-M perpetual futures adapter."""
    
    EXCHANGE_ID = "binance_futures"
    BASE_URL = BINANCE_FUTURES_URL
    TESTNET_URL = BINANCE_FUTURES_TESTNET_URL
    CODEC_CONFIG = BINANCE_CODEC
    ERROR_TABLE = ErrorTable("binance_futures", {
        code: BINANCE_ERRORS.category_for(code) for code in BINANCE_ERRORS.codes()
    })
    RATE_LIMITS = {
        # 2400 weight per minute
        "default": RateLimitConfig(capacity=2400, refill_amount=40, refill_interval_seconds=1.0, max_in_flight=50),
        # 300 orders per 10 seconds
        "orders": RateLimitConfig(capacity=300, refill_amount=30, refill_interval_seconds=1.0, max_in_flight=20),
    }
    
    _STOP_TYPES = {
        OrderKind.STOP_MARKET: BinanceOrderType.STOP_MARKET,
        OrderKind.STOP_LIMIT: BinanceOrderType.STOP,
    }
    
    def build_signer(self) -> Signer:
        return HmacQuerySigner(self.codec, recv_window_ms=self.config.recv_window_ms)
    
    # --------------------------------------------------------
    # ENDPOINTS
    # --------------------------------------------------------
    
    async def server_time_ms(self) -> int:
        return (await self.request(GetFuturesServerTime())).server_time
    
    async def get_depth(self, symbol: str, limit: Optional[int] = None) -> FuturesDepth:
        return await self.request(GetFuturesDepth(symbol=symbol, limit=limit))
    
    async def get_recent_trades(self, symbol: str, limit: Optional[int] = None) -> List[Trade]:
        return await self.request(GetFuturesTrades(symbol=symbol, limit=limit))
    
    async def get_futures_balance(self) -> List[FuturesBalance]:
        return await self.request(GetFuturesBalance())
    
    async def get_open_orders(self, symbol: Optional[str] = None) -> List[BinanceOpenOrder]:
        if symbol is None:
            return await self.request(GetAllFuturesOpenOrders())
        return await self.request(GetFuturesOpenOrders(symbol=symbol))
    
    async def get_position_risk(self, symbol: Optional[str] = None) -> List[FuturesPosition]:
        return await self.request(GetPositionRisk(symbol=symbol))
    
    async def new_order(self, order: NewFuturesOrder) -> FuturesOrderResult:
        return await self.request(order)
    
    async def cancel(self, symbol: str, order_id: int) -> FuturesOrderResult:
        return await self.request(CancelFuturesOrder(symbol=symbol, order_id=order_id))
    
    # --------------------------------------------------------
    # COMMON OPERATIONS
    # --------------------------------------------------------
    
    def symbol_for(self, market: Market) -> str:
        if market.kind is not MarketKind.SWAP:
            raise UnsupportedOperation(self.EXCHANGE_ID, "symbol_for", f"{market} is not a USD-M perpetual")
        return f"{market.base}{market.quote}"
    
    async def get_trades(self, market: Market) -> List[PublicTrade]:
        trades = await self.get_recent_trades(self.symbol_for(market))
        return [_public_trade(market, trade) for trade in trades]
    
    async def get_orderbook(self, market: Market, depth: Optional[int] = None) -> OrderbookSnapshot:
        book = await self.get_depth(self.symbol_for(market), depth)
        return _book(market, book.bids, book.asks)
    
    async def get_orders(self, market: Market) -> List[OpenOrder]:
        return [_open_order(order) for order in await self.get_open_orders(self.symbol_for(market))]
    
    async def get_all_orders(self) -> List[OpenOrder]:
        return [_open_order(order) for order in await self.get_open_orders()]
    
    async def get_position(self, market: Market) -> Position:
        """
        Net position of a one-way mode account.
        
        Raises:
            UnsupportedOperation: For hedge mode, which reports
                separate long and short legs
        """
        symbol = self.symbol_for(market)
        entries = [entry for entry in await self.get_position_risk(symbol) if entry.symbol == symbol]
        if not entries:
            raise UnknownExchangeError(self.EXCHANGE_ID, exchange_message=f"no position entry for {symbol}")
        if len(entries) > 1:
            raise UnsupportedOperation(self.EXCHANGE_ID, "get_position", "hedge mode positions have separate legs")
        
        entry = entries[0]
        return Position(
            market=market,
            quantity=entry.position_amt,
            entry_price=entry.entry_price,
            unrealized_pnl=entry.un_realized_profit,
            leverage=entry.leverage,
        )
    
    async def get_balances(self) -> Dict[str, Balance]:
        balances = {}
        for item in await self.get_futures_balance():
            if item.balance:
                balances[item.asset] = Balance(
                    item.asset,
                    free=item.available_balance,
                    locked=item.balance - item.available_balance,
                )
        return balances
    
    def build_order(self, market: Market, order: Order, reduce_only: bool = False) -> NewFuturesOrder:
        """Translate a common order into a futures order request."""
        if order.kind is OrderKind.MARKET:
            order_type = BinanceOrderType.MARKET
        elif order.kind is OrderKind.LIMIT:
            order_type = BinanceOrderType.LIMIT
        else:
            order_type = self._STOP_TYPES[order.kind]
        
        return NewFuturesOrder(
            symbol=self.symbol_for(market),
            side=_SIDES[order.side],
            order_type=order_type,
            time_in_force=_TIME_IN_FORCE.get(order.time_in_force),
            quantity=order.quantity,
            price=order.price,
            stop_price=order.stop_price,
            reduce_only=True if reduce_only else None,
        )
    
    async def place_order(self, market: Market, order: Order, reduce_only: bool = False) -> str:
        result = await self.new_order(self.build_order(market, order, reduce_only))
        logger.info(f"Binance futures order {result.order_id} placed on {result.symbol}")
        return str(result.order_id)
    
    async def cancel_order(self, market: Market, order_id: str) -> None:
        await self.cancel(self.symbol_for(market), _numeric_order_id(order_id))
