"""
Exchange Gateway Package.

============================================================
PURPOSE
============================================================
One asynchronous request pipeline for many crypto exchange
REST APIs.

CRITICAL PRINCIPLE:
    "The pipeline knows nothing about any exchange."
    "Adapters know nothing about retries or rate limits."

============================================================
MODULES
============================================================
- contract: Typed request/response contract
- codec: Wire encoding, decimals, timestamps, envelopes
- signing: Credentials and the closed set of signers
- rate_limit: Adapter-owned token buckets
- pipeline: Authentication, admission, transport, retries
- transport: aiohttp transport
- errors: Error taxonomy and exchange error tables
- config: Retry, rate limit, timeout configuration
- clock: System and virtual clocks
- common: Exchange-agnostic markets, orders, snapshots, positions
- fetcher: Periodic background polling
- logging_utils / metrics: Observability
- mock: Scripted transport for tests
- adapters: Binance, Binance futures, OKX, Upbit, Bybit,
  Bithumb (public), Crypto.com (public)

============================================================
"""

# Contract
from .contract import (
    AuthKind,
    ExchangeRequest,
    HttpMethod,
    PreparedRequest,
    ResponseOutcome,
    WireRequest,
    WireResponse,
    wire_field,
)

# Codec
from .codec import (
    BodyFormat,
    Codec,
    CodecConfig,
    FieldCase,
    ListStyle,
    QueryEncoding,
    ResponseEnvelope,
    TimestampFormat,
)

# Signing
from .signing import (
    AuthorizedRequest,
    BearerToken,
    Credentials,
    DigestEncoding,
    HeaderLayout,
    HmacHeaderSigner,
    HmacQuerySigner,
    JwtBearerSigner,
    PrehashLayout,
    Signature,
    SignableRequest,
    Signer,
    SigningScheme,
    create_signer,
)

# Rate limiting
from .rate_limit import Admission, RateBudget

# Pipeline
from .pipeline import (
    AdmissionStage,
    AttemptContext,
    AttemptState,
    AttemptStateMachine,
    AttemptTransition,
    AuthenticationStage,
    Middleware,
    Pipeline,
    RetryPolicy,
)

# Transport
from .transport import AiohttpTransport, Transport

# Errors
from .errors import (
    CodecError,
    ConfigurationError,
    ErrorCategory,
    ErrorTable,
    ExchangeError,
    GatewayError,
    RateLimitTimeout,
    SigningError,
    TransportError,
    UnknownExchangeError,
    UnsupportedOperation,
)

# Configuration
from .config import GatewayConfig, RateLimitConfig, RetryConfig, TimeoutConfig

# Clock
from .clock import ClockProtocol, MockClock, SystemClock

# Common operations
from .common import (
    Balance,
    BookLevel,
    CommonOps,
    Market,
    MarketKind,
    OpenOrder,
    Order,
    OrderbookSnapshot,
    OrderKind,
    Position,
    PublicTrade,
    Side,
    TakerFill,
    Ticker,
    TimeInForce,
)

# Utilities
from .fetcher import Fetcher
from .logging_utils import AdapterLogger, setup_logging
from .metrics import AdapterMetrics
from .mock import MockTransport, json_response

# Adapters
from .adapters import (
    AdapterFactory,
    BinanceAdapter,
    BinanceFuturesAdapter,
    BithumbAdapter,
    BybitAdapter,
    CryptocomAdapter,
    ExchangeAdapter,
    ExchangeId,
    OKXAdapter,
    UpbitAdapter,
    create_adapter,
)


__version__ = "0.1.0"
