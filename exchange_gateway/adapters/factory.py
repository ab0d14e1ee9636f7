"""
Exchange Adapter Factory.

============================================================
PURPOSE
============================================================
Create adapter instances by exchange identifier.

FEATURES:
- Centralized adapter creation
- Configuration injection
- Adapter registry for extension

Credentials are always passed in by the caller; the factory
never reads them from the environment.

============================================================
USAGE
============================================================
```python
adapter = AdapterFactory.create("binance", credentials=creds)

config = GatewayConfig(testnet=True)
adapter = create_adapter("bybit", credentials=creds, config=config)

AdapterFactory.register("binance_eu", MyBinanceEuAdapter)
```

============================================================
"""

import logging
from enum import Enum
from typing import Dict, List, Optional, Type

from ..config import GatewayConfig
from ..signing import Credentials
from .base import ExchangeAdapter
from .binance import BinanceAdapter, BinanceFuturesAdapter
from .bithumb import BithumbAdapter
from .bybit import BybitAdapter
from .cryptocom import CryptocomAdapter
from .okx import OKXAdapter
from .upbit import UpbitAdapter


logger = logging.getLogger(__name__)


# ============================================================
# EXCHANGE IDENTIFIERS
# ============================================================

class ExchangeId(Enum):
    """Supported exchange identifiers."""
    
    BINANCE = "binance"
    BINANCE_FUTURES = "binance_futures"
    OKX = "okx"
    UPBIT = "upbit"
    BYBIT = "bybit"
    BITHUMB = "bithumb"
    CRYPTOCOM = "cryptocom"


_BUILTIN: Dict[str, Type[ExchangeAdapter]] = {
    ExchangeId.BINANCE.value: BinanceAdapter,
    ExchangeId.BINANCE_FUTURES.value: BinanceFuturesAdapter,
    ExchangeId.OKX.value: OKXAdapter,
    ExchangeId.UPBIT.value: UpbitAdapter,
    ExchangeId.BYBIT.value: BybitAdapter,
    ExchangeId.BITHUMB.value: BithumbAdapter,
    ExchangeId.CRYPTOCOM.value: CryptocomAdapter,
}


# ============================================================
# ADAPTER FACTORY
# ============================================================

class AdapterFactory:
    """
    Factory for creating exchange adapters.
    
    Registered classes take precedence over the built-in ones.
    """
    
    # Registry of adapter classes
    _registry: Dict[str, Type[ExchangeAdapter]] = {}
    
    @classmethod
    def register(cls, exchange_id: str, adapter_class: Type[ExchangeAdapter]) -> None:
        """
        Register an adapter class.
        
        Args:
            exchange_id: Exchange identifier
            adapter_class: Adapter class to register
        """
        cls._registry[exchange_id.lower()] = adapter_class
        logger.debug(f"Registered adapter {adapter_class.__name__} for {exchange_id}")
    
    @classmethod
    def unregister(cls, exchange_id: str) -> None:
        """Unregister an adapter."""
        cls._registry.pop(exchange_id.lower(), None)
    
    @classmethod
    def adapter_class(cls, exchange_id: str) -> Type[ExchangeAdapter]:
        """
        Resolve the adapter class for an identifier.
        
        Raises:
            ValueError: If exchange not supported
        """
        key = exchange_id.value if isinstance(exchange_id, ExchangeId) else exchange_id.lower()
        adapter_class = cls._registry.get(key) or _BUILTIN.get(key)
        if adapter_class is None:
            raise ValueError(f"Unsupported exchange: {exchange_id}")
        return adapter_class
    
    @classmethod
    def create(
        cls,
        exchange_id: str,
        credentials: Optional[Credentials] = None,
        config: Optional[GatewayConfig] = None,
        **kwargs,
    ) -> ExchangeAdapter:
        """
        Create an exchange adapter.
        
        Args:
            exchange_id: Exchange identifier or ExchangeId
            credentials: API credentials (None for public data only)
            config: Gateway configuration
            **kwargs: Additional arguments passed to adapter
                (transport, clock, nonce_factory, extra_stages)
        
        Returns:
            ExchangeAdapter instance
        
        Raises:
            ValueError: If exchange not supported
        """
        adapter_class = cls.adapter_class(exchange_id)
        return adapter_class(credentials=credentials, config=config, **kwargs)
    
    @classmethod
    def list_supported(cls) -> List[str]:
        """List supported exchanges."""
        return sorted(set(_BUILTIN) | set(cls._registry))


# ============================================================
# CONVENIENCE FUNCTIONS
# ============================================================

def create_adapter(
    exchange_id: str,
    credentials: Optional[Credentials] = None,
    config: Optional[GatewayConfig] = None,
    **kwargs,
) -> ExchangeAdapter:
    """
    Create exchange adapter.
    
    Convenience wrapper for AdapterFactory.create().
    """
    return AdapterFactory.create(exchange_id, credentials=credentials, config=config, **kwargs)
