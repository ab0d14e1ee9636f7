"""
Exchange Gateway - Common Operations.

============================================================
PURPOSE
============================================================
Exchange-agnostic vocabulary for the operations most adapters
share, so callers can switch exchanges without touching
endpoint-specific request types.

MARKETS are written "<kind>:<BASE>/<QUOTE>":
- spot:BTC/USDT     spot market
- swap:BTC/USDT     USD-margined perpetual
- inverse:BTC/USD   coin-margined perpetual

Snapshots answer taker questions (how much base a quote amount
buys) by walking the returned levels.

Adapters translate these into their own symbols and typed
requests. Anything an exchange cannot do raises
UnsupportedOperation.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from .errors import CodecError, UnsupportedOperation


# ============================================================
# MARKETS
# ============================================================

class MarketKind(Enum):
    """Market type."""
    
    SPOT = "spot"
    SWAP = "swap"
    INVERSE = "inverse"


@dataclass(frozen=True)
class Market:
    """A tradable pair of one kind."""
    
    base: str
    quote: str
    kind: MarketKind = MarketKind.SPOT
    
    @classmethod
    def parse(cls, text: str) -> "Market":
        """
        Parse "<kind>:<BASE>/<QUOTE>".
        
        Raises:
            CodecError: If the text is not a market
        """
        kind, sep, pair = text.partition(":")
        base, slash, quote = pair.partition("/")
        if not sep or not slash or not base or not quote:
            raise CodecError("market", "expected '<kind>:<BASE>/<QUOTE>'", text)
        try:
            market_kind = MarketKind(kind.lower())
        except ValueError as e:
            raise CodecError("market", f"invalid market kind '{kind}'", text) from e
        return cls(base.upper(), quote.upper(), market_kind)
    
    def __str__(self) -> str:
        return f"{self.kind.value}:{self.base}/{self.quote}"


# ============================================================
# ORDERS
# ============================================================

class Side(Enum):
    BUY = "buy"
    SELL = "sell"


class TimeInForce(Enum):
    """Order lifetime."""
    
    GTC = "gtc"
    """Good til canceled."""
    
    IOC = "ioc"
    """Immediate or cancel."""
    
    FOK = "fok"
    """Fill or kill."""
    
    GTX = "gtx"
    """Good til crossing (post only)."""


class OrderKind(Enum):
    MARKET = "market"
    LIMIT = "limit"
    STOP_MARKET = "stop_market"
    STOP_LIMIT = "stop_limit"


@dataclass(frozen=True)
class Order:
    """
    An order independent of any exchange.
    
    Use the constructors below; __post_init__ rejects fields that
    do not belong to the kind.
    """
    
    kind: OrderKind
    side: Side
    quantity: Decimal
    price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    time_in_force: Optional[TimeInForce] = None
    
    def __post_init__(self):
        if self.quantity <= 0:
            raise CodecError("quantity", "must be positive", self.quantity)
        
        priced = self.kind in (OrderKind.LIMIT, OrderKind.STOP_LIMIT)
        stopped = self.kind in (OrderKind.STOP_MARKET, OrderKind.STOP_LIMIT)
        
        if priced and (self.price is None or self.price <= 0):
            raise CodecError("price", f"{self.kind.value} order needs a positive price", self.price)
        if not priced and self.price is not None:
            raise CodecError("price", f"{self.kind.value} order takes no price", self.price)
        if stopped and (self.stop_price is None or self.stop_price <= 0):
            raise CodecError("stop_price", f"{self.kind.value} order needs a positive stop price", self.stop_price)
        if not stopped and self.stop_price is not None:
            raise CodecError("stop_price", f"{self.kind.value} order takes no stop price", self.stop_price)
        if not priced and self.time_in_force is not None:
            raise CodecError("time_in_force", f"{self.kind.value} order takes no time in force")
        if priced and self.time_in_force is None:
            object.__setattr__(self, "time_in_force", TimeInForce.GTC)
    
    @classmethod
    def market(cls, side: Side, quantity: Decimal) -> "Order":
        return cls(OrderKind.MARKET, side, quantity)
    
    @classmethod
    def limit(cls, side: Side, quantity: Decimal, price: Decimal, time_in_force: TimeInForce = TimeInForce.GTC) -> "Order":
        return cls(OrderKind.LIMIT, side, quantity, price=price, time_in_force=time_in_force)
    
    @classmethod
    def stop_market(cls, side: Side, quantity: Decimal, stop_price: Decimal) -> "Order":
        return cls(OrderKind.STOP_MARKET, side, quantity, stop_price=stop_price)
    
    @classmethod
    def stop_limit(
        cls,
        side: Side,
        quantity: Decimal,
        price: Decimal,
        stop_price: Decimal,
        time_in_force: TimeInForce = TimeInForce.GTC,
    ) -> "Order":
        return cls(OrderKind.STOP_LIMIT, side, quantity, price=price, stop_price=stop_price, time_in_force=time_in_force)


# ============================================================
# SNAPSHOTS
# ============================================================

@dataclass(frozen=True)
class BookLevel:
    price: Decimal
    quantity: Decimal


@dataclass(frozen=True)
class TakerFill:
    """
    Result of walking one side of a book as a taker.
    
    amount is what the taker receives (or pays, for the reversed
    forms); remaining is the part of the requested size the book
    could not absorb.
    """
    
    amount: Decimal
    remaining: Decimal = Decimal("0")
    
    @property
    def complete(self) -> bool:
        return self.remaining == 0


def _consume_by_base(levels: List[BookLevel], quantity: Decimal) -> TakerFill:
    remaining = quantity
    amount = Decimal("0")
    for level in levels:
        if remaining <= 0:
            break
        commit = min(remaining, level.quantity)
        amount += level.price * commit
        remaining -= commit
    return TakerFill(amount, remaining)


def _consume_by_quote(levels: List[BookLevel], quote: Decimal) -> TakerFill:
    remaining = quote
    amount = Decimal("0")
    for level in levels:
        if remaining <= 0 or level.price <= 0:
            break
        commit = min(remaining, level.price * level.quantity)
        amount += commit / level.price
        remaining -= commit
    return TakerFill(amount, remaining)


@dataclass
class OrderbookSnapshot:
    """
    Bids (best first) and asks (best first) as returned.
    
    The taker helpers walk the snapshot level by level and never
    model queue position, fees or book changes.
    """
    
    market: Market
    bids: List[BookLevel] = field(default_factory=list)
    asks: List[BookLevel] = field(default_factory=list)
    
    @property
    def best_bid(self) -> Optional[BookLevel]:
        return self.bids[0] if self.bids else None
    
    @property
    def best_ask(self) -> Optional[BookLevel]:
        return self.asks[0] if self.asks else None
    
    def taker_buy(self, quote_quantity: Decimal) -> TakerFill:
        """Base bought by spending quote_quantity against the asks."""
        return _consume_by_quote(self.asks, quote_quantity)
    
    def taker_buy_reversed(self, base_quantity: Decimal) -> TakerFill:
        """Quote needed to buy base_quantity from the asks."""
        return _consume_by_base(self.asks, base_quantity)
    
    def taker_sell(self, base_quantity: Decimal) -> TakerFill:
        """Quote received for selling base_quantity into the bids."""
        return _consume_by_base(self.bids, base_quantity)
    
    def taker_sell_reversed(self, quote_quantity: Decimal) -> TakerFill:
        """Base to sell into the bids to receive quote_quantity."""
        return _consume_by_quote(self.bids, quote_quantity)


@dataclass(frozen=True)
class Ticker:
    """Top of book for one market; sides are None when empty."""
    
    market: Market
    bid: Optional[Decimal] = None
    ask: Optional[Decimal] = None
    last: Optional[Decimal] = None


@dataclass(frozen=True)
class PublicTrade:
    market: Market
    trade_id: str
    price: Decimal
    quantity: Decimal
    time: datetime
    taker_side: Optional[Side] = None


@dataclass(frozen=True)
class OpenOrder:
    """
    A resting order as the exchange reports it.
    
    symbol stays in exchange form; exchanges listing orders across
    all markets do not always name the quote currency separately.
    """
    
    order_id: str
    symbol: str
    side: Side
    quantity: Decimal
    filled: Decimal = Decimal("0")
    price: Optional[Decimal] = None
    status: str = ""


@dataclass(frozen=True)
class Position:
    """Net derivatives position; quantity is negative when short."""
    
    market: Market
    quantity: Decimal
    entry_price: Decimal
    unrealized_pnl: Decimal = Decimal("0")
    leverage: Optional[Decimal] = None


@dataclass(frozen=True)
class Balance:
    asset: str
    free: Decimal
    locked: Decimal = Decimal("0")
    
    @property
    def total(self) -> Decimal:
        return self.free + self.locked


# ============================================================
# COMMON OPERATIONS
# ============================================================

class CommonOps:
    """
    Mixin declaring the shared operations.
    
    Adapters override what their exchange supports.
    """
    
    exchange_id: str = "unknown"
    
    def symbol_for(self, market: Market) -> str:
        """Exchange symbol of a market."""
        raise UnsupportedOperation(self.exchange_id, "symbol_for", str(market))
    
    async def get_tickers(self, markets: Optional[List[Market]] = None) -> Dict[Market, Ticker]:
        """
        Tickers keyed by market.
        
        Args:
            markets: Markets to fetch (None for every spot market the
                exchange can name)
        """
        raise UnsupportedOperation(self.exchange_id, "get_tickers")
    
    async def get_trades(self, market: Market) -> List[PublicTrade]:
        """Recent public trades."""
        raise UnsupportedOperation(self.exchange_id, "get_trades")
    
    async def get_orderbook(self, market: Market, depth: Optional[int] = None) -> OrderbookSnapshot:
        raise UnsupportedOperation(self.exchange_id, "get_orderbook")
    
    async def get_orders(self, market: Market) -> List[OpenOrder]:
        """Open orders on one market."""
        raise UnsupportedOperation(self.exchange_id, "get_orders")
    
    async def get_all_orders(self) -> List[OpenOrder]:
        """Open orders on every market."""
        raise UnsupportedOperation(self.exchange_id, "get_all_orders")
    
    async def place_order(self, market: Market, order: Order, reduce_only: bool = False) -> str:
        """Place an order; returns the exchange order id."""
        raise UnsupportedOperation(self.exchange_id, "place_order")
    
    async def cancel_order(self, market: Market, order_id: str) -> None:
        raise UnsupportedOperation(self.exchange_id, "cancel_order")
    
    async def cancel_all_orders(self) -> None:
        """Cancel open orders on every market."""
        raise UnsupportedOperation(self.exchange_id, "cancel_all_orders")
    
    async def get_balances(self) -> Dict[str, Balance]:
        raise UnsupportedOperation(self.exchange_id, "get_balances")
    
    async def get_position(self, market: Market) -> Position:
        raise UnsupportedOperation(self.exchange_id, "get_position")
