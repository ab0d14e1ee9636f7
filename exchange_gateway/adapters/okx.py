"""
OKX Exchange Adapter.

============================================================
PURPOSE
============================================================
OKX V5 REST binding of the generic pipeline.

EXCHANGE SPECIFICS:
- camelCase parameters; GET parameters in the query string,
  POST parameters as a compact JSON body
- Every response is {"code": "0", "msg": "", "data": [...]};
  a non-"0" code is an error even on HTTP 200
- Batch style trade responses carry per-item sCode/sMsg
- HMAC-SHA256 (base64) over
  timestamp + METHOD + path?query + body
- Timestamp header in ISO-8601 with milliseconds
- Passphrase required; demo trading via x-simulated-trading
- Symbols are BASE-QUOTE (spot) and BASE-QUOTE-SWAP (perpetual)

============================================================
API DOCUMENTATION
============================================================
https://www.okx.com/docs-v5/

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

OKX_REST_URL = "https://www.okx.com"
OKX_AWS_URL = "https://aws.okx.com"

OKX_CODEC = CodecConfig(
    field_case=FieldCase.CAMEL,
    timestamp_format=TimestampFormat.MILLIS,
    query=QueryEncoding(),
    body_format=BodyFormat.JSON,
    envelope=ResponseEnvelope(
        code_key="code",
        message_key="msg",
        success_codes=("0",),
        data_key="data",
        item_code_key="sCode",
        item_message_key="sMsg",
    ),
    empty_string_as_none=True,
)

OKX_HEADERS = HeaderLayout(
    key_header="OK-ACCESS-KEY",
    signature_header="OK-ACCESS-SIGN",
    timestamp_header="OK-ACCESS-TIMESTAMP",
    passphrase_header="OK-ACCESS-PASSPHRASE",
    prehash=PrehashLayout.TIMESTAMP_METHOD_PATH_BODY,
    encoding=DigestEncoding.BASE64,
    timestamp_format=TimestampFormat.ISO_MILLIS,
)

OKX_ERRORS = ErrorTable("okx", {
    # Rate limits
    "50011": ErrorCategory.RATE_LIMITED,
    "50061": ErrorCategory.RATE_LIMITED,
    
    # Authentication
    "50100": ErrorCategory.AUTHENTICATION,
    "50101": ErrorCategory.AUTHENTICATION,
    "50103": ErrorCategory.AUTHENTICATION,
    "50104": ErrorCategory.AUTHENTICATION,
    "50105": ErrorCategory.AUTHENTICATION,
    "50106": ErrorCategory.AUTHENTICATION,
    "50107": ErrorCategory.AUTHENTICATION,
    "50108": ErrorCategory.AUTHENTICATION,
    "50109": ErrorCategory.AUTHENTICATION,
    "50110": ErrorCategory.AUTHENTICATION,
    "50111": ErrorCategory.AUTHENTICATION,
    "50112": ErrorCategory.AUTHENTICATION,
    "50113": ErrorCategory.INVALID_SIGNATURE,
    "50102": ErrorCategory.STALE_TIMESTAMP,
    
    # Parameters
    "50014": ErrorCategory.INVALID_PARAMETER,
    "51000": ErrorCategory.INVALID_PARAMETER,
    "51001": ErrorCategory.INVALID_PARAMETER,
    "51002": ErrorCategory.INVALID_PARAMETER,
    "51003": ErrorCategory.INVALID_PARAMETER,
    "51004": ErrorCategory.INVALID_PARAMETER,
    "51005": ErrorCategory.INVALID_PARAMETER,
    "51006": ErrorCategory.INVALID_PARAMETER,
    "51009": ErrorCategory.INVALID_PARAMETER,
    "51010": ErrorCategory.INVALID_PARAMETER,
    "51011": ErrorCategory.INVALID_PARAMETER,
    "51012": ErrorCategory.INVALID_PARAMETER,
    "51016": ErrorCategory.INVALID_PARAMETER,
    "51020": ErrorCategory.INVALID_PARAMETER,
    "51023": ErrorCategory.INVALID_PARAMETER,
    "51024": ErrorCategory.INVALID_PARAMETER,
    
    # Funds
    "51008": ErrorCategory.INSUFFICIENT_FUNDS,
    "51119": ErrorCategory.INSUFFICIENT_FUNDS,
    "51127": ErrorCategory.INSUFFICIENT_FUNDS,
    
    # Orders
    "51400": ErrorCategory.ORDER_NOT_FOUND,
    "51603": ErrorCategory.ORDER_NOT_FOUND,
    
    # Exchange side
    "50001": ErrorCategory.SERVICE_UNAVAILABLE,
    "50004": ErrorCategory.SERVICE_UNAVAILABLE,
    "50013": ErrorCategory.SERVICE_UNAVAILABLE,
})


# ============================================================
# ENUMS
# ============================================================

class OkxInstType(Enum):
    SPOT = "SPOT"
    MARGIN = "MARGIN"
    SWAP = "SWAP"
    FUTURES = "FUTURES"
    OPTION = "OPTION"


class OkxTradeMode(Enum):
    CASH = "cash"
    CROSS = "cross"
    ISOLATED = "isolated"


class OkxSide(Enum):
    BUY = "buy"
    SELL = "sell"


class OkxOrderType(Enum):
    MARKET = "market"
    LIMIT = "limit"
    POST_ONLY = "post_only"
    FOK = "fok"
    IOC = "ioc"


_INST_TYPES = {
    MarketKind.SPOT: OkxInstType.SPOT,
    MarketKind.SWAP: OkxInstType.SWAP,
    MarketKind.INVERSE: OkxInstType.SWAP,
}
_SIDES = {Side.BUY: OkxSide.BUY, Side.SELL: OkxSide.SELL}
_LIMIT_TYPES = {
    TimeInForce.GTC: OkxOrderType.LIMIT,
    TimeInForce.IOC: OkxOrderType.IOC,
    TimeInForce.FOK: OkxOrderType.FOK,
    TimeInForce.GTX: OkxOrderType.POST_ONLY,
}


# ============================================================
# RESPONSE TYPES
# ============================================================

@dataclass
class OkxTicker:
    inst_id: str
    last: Decimal
    ts: datetime
    inst_type: Optional[str] = None
    last_sz: Optional[Decimal] = None
    ask_px: Optional[Decimal] = None
    ask_sz: Optional[Decimal] = None
    bid_px: Optional[Decimal] = None
    bid_sz: Optional[Decimal] = None


@dataclass
class OkxBookLevel:
    """[price, quantity, deprecated, order count] row."""
    
    price: Decimal
    quantity: Decimal
    liquidated_orders: Optional[str] = None
    num_orders: Optional[int] = None


@dataclass
class OkxBook:
    asks: List[OkxBookLevel]
    bids: List[OkxBookLevel]
    ts: datetime


@dataclass
class OkxBalanceDetail:
    ccy: str
    eq: Decimal
    avail_bal: Optional[Decimal] = None
    frozen_bal: Optional[Decimal] = None
    cash_bal: Optional[Decimal] = None
    u_time: Optional[datetime] = None


@dataclass
class OkxAccountBalance:
    u_time: datetime
    details: List[OkxBalanceDetail]
    total_eq: Optional[Decimal] = None


@dataclass
class OkxOrderAck:
    ord_id: str
    s_code: str
    cl_ord_id: Optional[str] = None
    s_msg: Optional[str] = None
    tag: Optional[str] = None


@dataclass
class OkxOrderDetail:
    inst_id: str
    ord_id: str
    side: OkxSide
    ord_type: OkxOrderType
    sz: Decimal
    state: str
    cl_ord_id: Optional[str] = None
    px: Optional[Decimal] = None
    acc_fill_sz: Optional[Decimal] = None
    avg_px: Optional[Decimal] = None
    c_time: Optional[datetime] = None


# ============================================================
# ENDPOINTS
# ============================================================

@dataclass
class GetTicker(ExchangeRequest):
    path: ClassVar[str] = "/api/v5/market/ticker"
    response_type: ClassVar[Any] = List[OkxTicker]
    
    inst_id: str


@dataclass
class GetTickers(ExchangeRequest):
    path: ClassVar[str] = "/api/v5/market/tickers"
    response_type: ClassVar[Any] = List[OkxTicker]
    
    inst_type: OkxInstType
    underlying: Optional[str] = wire_field("uly", default=None)
    inst_family: Optional[str] = None


@dataclass
class GetBooks(ExchangeRequest):
    path: ClassVar[str] = "/api/v5/market/books"
    response_type: ClassVar[Any] = List[OkxBook]
    
    inst_id: str
    sz: Optional[int] = None
    """Depth per side, max 400."""


@dataclass
class GetBalance(ExchangeRequest):
    path: ClassVar[str] = "/api/v5/account/balance"
    response_type: ClassVar[Any] = List[OkxAccountBalance]
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    endpoint_class: ClassVar[str] = "account"
    
    ccy: Optional[str] = None
    """Comma separated currencies."""


@dataclass
class PlaceOrder(ExchangeRequest):
    method: ClassVar[HttpMethod] = HttpMethod.POST
    path: ClassVar[str] = "/api/v5/trade/order"
    response_type: ClassVar[Any] = List[OkxOrderAck]
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    endpoint_class: ClassVar[str] = "orders"
    
    inst_id: str
    td_mode: OkxTradeMode
    side: OkxSide
    ord_type: OkxOrderType
    sz: Decimal
    px: Optional[Decimal] = None
    reduce_only: Optional[bool] = None
    cl_ord_id: Optional[str] = None


@dataclass
class CancelOrder(ExchangeRequest):
    method: ClassVar[HttpMethod] = HttpMethod.POST
    path: ClassVar[str] = "/api/v5/trade/cancel-order"
    response_type: ClassVar[Any] = List[OkxOrderAck]
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    endpoint_class: ClassVar[str] = "orders"
    
    inst_id: str
    ord_id: Optional[str] = None
    cl_ord_id: Optional[str] = None


@dataclass
class GetOrder(ExchangeRequest):
    path: ClassVar[str] = "/api/v5/trade/order"
    response_type: ClassVar[Any] = List[OkxOrderDetail]
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    endpoint_class: ClassVar[str] = "orders"
    
    inst_id: str
    ord_id: Optional[str] = None
    cl_ord_id: Optional[str] = None


# ============================================================
# HELPERS
# ============================================================

def _single(exchange_id: str, items: List[Any]) -> Any:
    """The one element of an OKX data array."""
    if not items:
        raise UnknownExchangeError(exchange_id, exchange_message="empty data array")
    return items[0]


def _spot_market(inst_id: str) -> Optional[Market]:
    """Market of a spot instrument id (BTC-USDT); None for others."""
    parts = inst_id.split("-")
    if len(parts) != 2 or not all(parts):
        return None
    return Market(parts[0], parts[1], MarketKind.SPOT)


# ============================================================
# OKX ADAPTER
# ============================================================

class OKXAdapter(ExchangeAdapter):
    """
    OKX V5 adapter.
    
    Testnet mode keeps the production host and marks signed
    requests as demo trading.
    """
    
    EXCHANGE_ID = "okx"
    BASE_URL = OKX_REST_URL
    TESTNET_URL = OKX_REST_URL
    CODEC_CONFIG = OKX_CODEC
    ERROR_TABLE = OKX_ERRORS
    REQUIRES_PASSPHRASE = True
    RATE_LIMITS = {
        # 20 requests per 2 seconds
        "default": RateLimitConfig(capacity=20, refill_amount=10, refill_interval_seconds=1.0),
        # 10 requests per 2 seconds
        "account": RateLimitConfig(capacity=10, refill_amount=5, refill_interval_seconds=1.0),
        # 60 requests per 2 seconds
        "orders": RateLimitConfig(capacity=60, refill_amount=30, refill_interval_seconds=1.0),
    }
    
    def build_signer(self) -> Signer:
        layout = OKX_HEADERS
        if self.config.testnet:
            layout = HeaderLayout(
                key_header=layout.key_header,
                signature_header=layout.signature_header,
                timestamp_header=layout.timestamp_header,
                passphrase_header=layout.passphrase_header,
                prehash=layout.prehash,
                encoding=layout.encoding,
                timestamp_format=layout.timestamp_format,
                extra_headers=(("x-simulated-trading", "1"),),
            )
        return HmacHeaderSigner(layout, self.codec, recv_window_ms=None)
    
    # --------------------------------------------------------
    # ENDPOINTS
    # --------------------------------------------------------
    
    async def get_ticker(self, inst_id: str) -> OkxTicker:
        return _single(self.EXCHANGE_ID, await self.request(GetTicker(inst_id=inst_id)))
    
    async def get_instrument_tickers(self, inst_type: OkxInstType, underlying: Optional[str] = None) -> List[OkxTicker]:
        return await self.request(GetTickers(inst_type=inst_type, underlying=underlying))
    
    async def get_books(self, inst_id: str, sz: Optional[int] = None) -> OkxBook:
        return _single(self.EXCHANGE_ID, await self.request(GetBooks(inst_id=inst_id, sz=sz)))
    
    async def get_balance(self, ccy: Optional[str] = None) -> OkxAccountBalance:
        return _single(self.EXCHANGE_ID, await self.request(GetBalance(ccy=ccy)))
    
    async def submit_order(self, order: PlaceOrder) -> OkxOrderAck:
        return _single(self.EXCHANGE_ID, await self.request(order))
    
    async def cancel(self, inst_id: str, ord_id: str) -> OkxOrderAck:
        return _single(self.EXCHANGE_ID, await self.request(CancelOrder(inst_id=inst_id, ord_id=ord_id)))
    
    async def get_order(self, inst_id: str, ord_id: str) -> OkxOrderDetail:
        return _single(self.EXCHANGE_ID, await self.request(GetOrder(inst_id=inst_id, ord_id=ord_id)))
    
    # --------------------------------------------------------
    # COMMON OPERATIONS
    # --------------------------------------------------------
    
    def symbol_for(self, market: Market) -> str:
        if market.kind is MarketKind.SPOT:
            return f"{market.base}-{market.quote}"
        return f"{market.base}-{market.quote}-SWAP"
    
    async def get_tickers(self, markets: Optional[List[Market]] = None) -> Dict[Market, Ticker]:
        """
        Tickers from the instrument-type listings.
        
        Without markets, every spot instrument is returned. With
        markets, one listing per instrument type is fetched and
        filtered down to the requested ones.
        """
        if markets is None:
            wanted = None
            inst_types = [OkxInstType.SPOT]
        else:
            wanted = {self.symbol_for(market): market for market in markets}
            inst_types = list(dict.fromkeys(_INST_TYPES[market.kind] for market in markets))
        
        tickers = {}
        for inst_type in inst_types:
            for item in await self.get_instrument_tickers(inst_type):
                market = _spot_market(item.inst_id) if wanted is None else wanted.get(item.inst_id)
                if market is not None:
                    tickers[market] = Ticker(market, bid=item.bid_px, ask=item.ask_px, last=item.last)
        return tickers
    
    async def get_orderbook(self, market: Market, depth: Optional[int] = None) -> OrderbookSnapshot:
        book = await self.get_books(self.symbol_for(market), depth)
        return OrderbookSnapshot(
            market=market,
            bids=[BookLevel(level.price, level.quantity) for level in book.bids],
            asks=[BookLevel(level.price, level.quantity) for level in book.asks],
        )
    
    async def get_balances(self) -> Dict[str, Balance]:
        account = await self.get_balance()
        balances = {}
        for detail in account.details:
            free = detail.avail_bal if detail.avail_bal is not None else detail.eq
            locked = detail.frozen_bal or Decimal("0")
            balances[detail.ccy] = Balance(detail.ccy, free, locked)
        return balances
    
    def build_order(self, market: Market, order: Order, reduce_only: bool = False) -> PlaceOrder:
        """Translate a common order into an OKX order request."""
        if order.kind in (OrderKind.STOP_MARKET, OrderKind.STOP_LIMIT):
            raise UnsupportedOperation(self.EXCHANGE_ID, "place_order", "stop orders use the algo order API")
        if reduce_only and market.kind is MarketKind.SPOT:
            raise UnsupportedOperation(self.EXCHANGE_ID, "place_order", "spot orders cannot be reduce-only")
        
        if order.kind is OrderKind.MARKET:
            ord_type = OkxOrderType.MARKET
        else:
            ord_type = _LIMIT_TYPES[order.time_in_force]
        
        return PlaceOrder(
            inst_id=self.symbol_for(market),
            td_mode=OkxTradeMode.CASH if market.kind is MarketKind.SPOT else OkxTradeMode.CROSS,
            side=_SIDES[order.side],
            ord_type=ord_type,
            sz=order.quantity,
            px=order.price,
            reduce_only=True if reduce_only else None,
        )
    
    async def place_order(self, market: Market, order: Order, reduce_only: bool = False) -> str:
        ack = await self.submit_order(self.build_order(market, order, reduce_only))
        logger.info(f"OKX order {ack.ord_id} placed on {self.symbol_for(market)}")
        return ack.ord_id
    
    async def cancel_order(self, market: Market, order_id: str) -> None:
        await self.cancel(self.symbol_for(market), order_id)
