"""
Exchange Gateway - Base Exchange Adapter.

============================================================
PURPOSE
============================================================
Binds one Credentials instance, one codec configuration, one
signing scheme, one error table and the adapter's own rate
budgets into a Pipeline.

A new exchange subclasses ExchangeAdapter and declares:
- EXCHANGE_ID, BASE_URL, TESTNET_URL
- CODEC_CONFIG (casing, timestamps, encoding, envelope)
- ERROR_TABLE
- RATE_LIMITS (endpoint class -> RateLimitConfig)
- build_signer()
and writes one coroutine per endpoint. The pipeline itself
never changes.

============================================================
LIFECYCLE
============================================================
    async with BinanceAdapter(credentials) as binance:
        await binance.get_server_time()
    # credentials zeroed, owned transport closed

============================================================
"""

import logging
from typing import Any, Callable, ClassVar, Dict, Optional

from ..clock import ClockProtocol, get_default_clock
from ..codec import Codec, CodecConfig
from ..common import CommonOps
from ..config import GatewayConfig, RateLimitConfig
from ..contract import ExchangeRequest, ResponseOutcome
from ..errors import ConfigurationError, ErrorTable, UnsupportedOperation
from ..logging_utils import AdapterLogger
from ..metrics import AdapterMetrics
from ..pipeline import Middleware, Pipeline, RetryPolicy, _DEFAULT
from ..rate_limit import RateBudget
from ..signing import Credentials, Signer
from ..transport import AiohttpTransport, Transport


logger = logging.getLogger(__name__)


class ExchangeAdapter(CommonOps):
    """
    Per-exchange binding of credentials, codec and signer.
    
    Public endpoints work without credentials; signed endpoints
    raise SigningError when none were supplied.
    """
    
    EXCHANGE_ID: ClassVar[str] = "base"
    BASE_URL: ClassVar[str] = ""
    TESTNET_URL: ClassVar[Optional[str]] = None
    CODEC_CONFIG: ClassVar[CodecConfig] = CodecConfig()
    ERROR_TABLE: ClassVar[ErrorTable] = ErrorTable("base", {})
    RATE_LIMITS: ClassVar[Dict[str, RateLimitConfig]] = {"default": RateLimitConfig()}
    REQUIRES_PASSPHRASE: ClassVar[bool] = False
    
    def __init__(
        self,
        credentials: Optional[Credentials] = None,
        config: Optional[GatewayConfig] = None,
        transport: Optional[Transport] = None,
        clock: Optional[ClockProtocol] = None,
        nonce_factory: Optional[Callable[[], str]] = None,
        extra_stages: tuple = (),
    ):
        """
        Initialize adapter.
        
        Args:
            credentials: API credentials (None for public data only)
            config: Gateway configuration
            transport: HTTP transport (default: aiohttp)
            clock: Time source
            nonce_factory: Nonce generator (default: uuid4)
            extra_stages: Middleware run after admission
        """
        try:
            self._setup(credentials, config, transport, clock, nonce_factory, extra_stages)
        except Exception:
            if credentials is not None:
                credentials.release()
            raise
        
        logger.info(
            f"{self.EXCHANGE_ID} adapter ready "
            f"({'testnet' if self._config.testnet else 'mainnet'}, "
            f"{'signed' if credentials else 'public only'})"
        )
    
    def _setup(self, credentials, config, transport, clock, nonce_factory, extra_stages) -> None:
        self._config = config or GatewayConfig()
        self._config.validate()
        
        if credentials is not None and self.REQUIRES_PASSPHRASE and not credentials.passphrase:
            raise ConfigurationError(f"{self.EXCHANGE_ID} credentials need a passphrase", config_key="passphrase")
        
        self._credentials = credentials
        self._clock = clock or get_default_clock()
        self._transport = transport or AiohttpTransport(self._config.timeout)
        self._owns_transport = transport is None
        self._closed = False
        
        self.codec = Codec(self.CODEC_CONFIG)
        self.metrics = AdapterMetrics(self.EXCHANGE_ID)
        self.adapter_logger = AdapterLogger(self.EXCHANGE_ID)
        
        limits = dict(self.RATE_LIMITS)
        limits.update(self._config.rate_limits)
        self.budgets: Dict[str, RateBudget] = {
            name: RateBudget.from_config(name, limit, self._clock)
            for name, limit in limits.items()
        }
        
        self.signer = self.build_signer() if credentials is not None else None
        self.pipeline = Pipeline(
            exchange_id=self.EXCHANGE_ID,
            base_url=self.base_url,
            codec=self.codec,
            error_table=self.ERROR_TABLE,
            transport=self._transport,
            signer=self.signer,
            credentials=credentials,
            budgets=self.budgets,
            retry_policy=RetryPolicy.from_config(self._config.retry),
            clock=self._clock,
            nonce_factory=nonce_factory,
            extra_stages=extra_stages,
            metrics=self.metrics,
            adapter_logger=self.adapter_logger,
            admission_timeout=self._config.admission_timeout_seconds,
            log_requests=self._config.log_requests,
        )
    
    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------
    
    @property
    def exchange_id(self) -> str:
        return self.EXCHANGE_ID
    
    @property
    def base_url(self) -> str:
        if self._config.base_url:
            return self._config.base_url
        if self._config.testnet:
            if not self.TESTNET_URL:
                raise ConfigurationError(f"{self.EXCHANGE_ID} has no testnet", config_key="testnet")
            return self.TESTNET_URL
        return self.BASE_URL
    
    @property
    def config(self) -> GatewayConfig:
        return self._config
    
    @property
    def closed(self) -> bool:
        return self._closed
    
    def build_signer(self) -> Optional[Signer]:
        """Signer for this exchange's authentication scheme."""
        return None
    
    # --------------------------------------------------------
    # EXECUTION
    # --------------------------------------------------------
    
    async def request(self, request: ExchangeRequest, admission_timeout: Any = _DEFAULT) -> Any:
        """Run a typed request through the pipeline."""
        if self._closed:
            raise ConfigurationError(f"{self.EXCHANGE_ID} adapter is closed")
        return await self.pipeline.send(request, admission_timeout)
    
    async def outcome(self, request: ExchangeRequest, admission_timeout: Any = _DEFAULT) -> ResponseOutcome:
        """Run a typed request, returning exchange errors as a failed outcome."""
        if self._closed:
            raise ConfigurationError(f"{self.EXCHANGE_ID} adapter is closed")
        return await self.pipeline.outcome(request, admission_timeout)
    
    def set_time_offset(self, offset_ms: int) -> None:
        """Apply server-minus-local clock skew to signed timestamps."""
        self.pipeline.authentication.time_offset_ms = offset_ms
    
    async def server_time_ms(self) -> int:
        """Exchange server time in epoch milliseconds."""
        raise UnsupportedOperation(self.EXCHANGE_ID, "server_time_ms")
    
    async def sync_time(self) -> int:
        """
        Measure clock skew against the exchange and apply it.
        
        The server reading is compared with the midpoint of the
        local readings taken around the call.
        
        Returns:
            Applied offset in milliseconds
        """
        before = self._clock.timestamp_ms()
        server = await self.server_time_ms()
        after = self._clock.timestamp_ms()
        offset = server - (before + after) // 2
        self.set_time_offset(offset)
        logger.info(f"{self.EXCHANGE_ID} clock offset set to {offset}ms")
        return offset
    
    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------
    
    async def close(self) -> None:
        """Release credentials and close an owned transport."""
        if self._closed:
            return
        self._closed = True
        try:
            if self._owns_transport:
                await self._transport.close()
        finally:
            if self._credentials is not None:
                self._credentials.release()
            logger.info(f"{self.EXCHANGE_ID} adapter closed")
    
    async def __aenter__(self) -> "ExchangeAdapter":
        return self
    
    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
    
    def get_status(self) -> Dict[str, Any]:
        """Adapter status for diagnostics."""
        return {
            "exchange_id": self.EXCHANGE_ID,
            "base_url": self.base_url,
            "signed": self.signer is not None,
            "closed": self._closed,
            "budgets": {name: budget.get_stats() for name, budget in self.budgets.items()},
            "metrics": self.metrics.get_summary(),
        }
