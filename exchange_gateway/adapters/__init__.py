"""
Exchange Gateway - Adapters Package.

============================================================
PURPOSE
============================================================
Exchange adapter implementations.

AVAILABLE ADAPTERS:
- BinanceAdapter: Binance spot API
- BinanceFuturesAdapter: Binance USD-M futures API
- OKXAdapter: OKX V5 API
- UpbitAdapter: Upbit API
- BybitAdapter: Bybit V5 Unified API
- BithumbAdapter: Bithumb public orderbooks
- CryptocomAdapter: Crypto.com Exchange public market data

UTILITIES:
- AdapterFactory: Factory for creating adapters

============================================================
"""

# Base types
from .base import ExchangeAdapter

# Adapters
from .binance import BINANCE_ERRORS, BinanceAdapter, BinanceFuturesAdapter
from .okx import OKX_ERRORS, OKXAdapter
from .upbit import UPBIT_ERRORS, UpbitAdapter
from .bybit import BYBIT_ERRORS, BybitAdapter
from .bithumb import BITHUMB_ERRORS, BithumbAdapter
from .cryptocom import CRYPTOCOM_ERRORS, CryptocomAdapter

# Factory
from .factory import AdapterFactory, ExchangeId, create_adapter
