"""
Exchange Gateway - Error Taxonomy.

============================================================
PURPOSE
============================================================
Every failure the gateway can surface, plus the per-exchange
tables that classify exchange-reported error codes.

============================================================
EXCEPTION HIERARCHY
============================================================
GatewayError (base)
├── ConfigurationError
├── CodecError
├── SigningError
├── TransportError
├── RateLimitTimeout
├── UnsupportedOperation
└── ExchangeError
    └── UnknownExchangeError

============================================================
RETRY POLICY
============================================================
- CodecError / SigningError: never retried (defect, not transient)
- TransportError: retried
- ExchangeError: retried only when category is RATE_LIMITED
- Everything else is terminal

============================================================
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Union


# ============================================================
# ERROR CATEGORIES
# ============================================================

class ErrorCategory(Enum):
    """Classified exchange-reported error."""
    
    RATE_LIMITED = "rate_limited"
    """Request or order rate exceeded."""
    
    INVALID_SIGNATURE = "invalid_signature"
    """Signature did not verify."""
    
    STALE_TIMESTAMP = "stale_timestamp"
    """Timestamp outside the exchange's receive window."""
    
    AUTHENTICATION = "authentication"
    """Unknown key, missing permission, IP not whitelisted."""
    
    INSUFFICIENT_FUNDS = "insufficient_funds"
    """Balance or margin too low."""
    
    INVALID_PARAMETER = "invalid_parameter"
    """Malformed or out-of-range parameter."""
    
    ORDER_NOT_FOUND = "order_not_found"
    """Referenced order does not exist."""
    
    SERVICE_UNAVAILABLE = "service_unavailable"
    """Exchange-side outage or maintenance."""
    
    UNKNOWN = "unknown"
    """Undocumented code."""


RETRYABLE_CATEGORIES = frozenset({ErrorCategory.RATE_LIMITED})


# ============================================================
# BASE EXCEPTION
# ============================================================

class GatewayError(Exception):
    """
    Base exception for all gateway errors.
    
    All exceptions carry:
    - context: for debugging (never credential material)
    - retryable: whether the retry stage may loop
    - timestamp: when the error occurred
    """
    
    default_retryable: bool = False
    
    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        
        self.message = message
        self.context = context or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)
        
        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)
    
    @property
    def retryable(self) -> bool:
        return self.default_retryable
    
    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None,
        }


class ConfigurationError(GatewayError):
    """Invalid gateway or adapter configuration."""
    
    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        if config_key:
            context["config_key"] = config_key
        super().__init__(message, context=context, **kwargs)
        self.config_key = config_key


class CodecError(GatewayError):
    """A field could not be encoded or decoded."""
    
    def __init__(self, field: str, reason: str, value: Any = None, **kwargs):
        context = kwargs.pop("context", {})
        context["field"] = field
        if value is not None:
            context["value"] = repr(value)[:100]
        super().__init__(f"Invalid field '{field}': {reason}", context=context, **kwargs)
        self.field = field
        self.reason = reason


class SigningError(GatewayError):
    """Signable input was malformed or credentials are unusable."""


class TransportError(GatewayError):
    """Connection or timeout failure below the exchange protocol."""
    
    default_retryable = True
    
    def __init__(self, message: str, timeout: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.timeout = timeout
        self.context["timeout"] = timeout


class RateLimitTimeout(GatewayError):
    """Admission was not granted before the caller's deadline."""
    
    def __init__(self, budget: str, waited: float, timeout: float):
        super().__init__(
            f"Rate budget '{budget}' did not admit request within {timeout:.3f}s",
            context={"budget": budget, "waited": round(waited, 6), "timeout": timeout},
        )
        self.budget = budget
        self.waited = waited
        self.timeout = timeout


class UnsupportedOperation(GatewayError):
    """The exchange does not offer the requested operation."""
    
    def __init__(self, exchange_id: str, operation: str, reason: str = ""):
        message = f"{exchange_id} does not support {operation}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, context={"exchange_id": exchange_id, "operation": operation})
        self.exchange_id = exchange_id
        self.operation = operation


# ============================================================
# EXCHANGE ERRORS
# ============================================================

class ExchangeError(GatewayError):
    """
    Exchange-reported business or protocol error.
    
    Retryable only when the exchange says the caller was rate
    limited; retry_after carries the exchange's hint in seconds.
    """
    
    def __init__(
        self,
        category: ErrorCategory,
        exchange_id: str,
        code: Union[int, str, None] = None,
        exchange_message: str = "",
        http_status: Optional[int] = None,
        retry_after: Optional[float] = None,
        **kwargs,
    ):
        message = kwargs.pop("message", None) or (
            f"{exchange_id} error {code}: {exchange_message}" if code is not None
            else f"{exchange_id} error: {exchange_message or category.value}"
        )
        context = kwargs.pop("context", {})
        context.update({
            "category": category.value,
            "exchange_id": exchange_id,
            "code": code,
            "http_status": http_status,
        })
        super().__init__(message, context=context, **kwargs)
        
        self.category = category
        self.exchange_id = exchange_id
        self.code = code
        self.exchange_message = exchange_message
        self.http_status = http_status
        self.retry_after = retry_after
    
    @property
    def retryable(self) -> bool:
        return self.category in RETRYABLE_CATEGORIES


class UnknownExchangeError(ExchangeError):
    """Undocumented code or unparseable body; keeps the raw payload."""
    
    def __init__(
        self,
        exchange_id: str,
        raw_body: bytes = b"",
        http_status: Optional[int] = None,
        code: Union[int, str, None] = None,
        exchange_message: str = "",
        **kwargs,
    ):
        super().__init__(
            ErrorCategory.UNKNOWN,
            exchange_id,
            code=code,
            exchange_message=exchange_message,
            http_status=http_status,
            **kwargs,
        )
        self.raw_body = raw_body
        self.context["raw_body"] = raw_body[:200].decode("utf-8", errors="replace")


# ============================================================
# ERROR TABLES
# ============================================================

class ErrorTable:
    """
    Maps one exchange's error codes onto ErrorCategory.
    
    Each documented code appears exactly once. Codes missing from
    the table fall back on the HTTP status for throttling statuses
    only; anything else becomes UnknownExchangeError.
    """
    
    DEFAULT_STATUS_FALLBACKS: Dict[int, ErrorCategory] = {
        418: ErrorCategory.RATE_LIMITED,
        429: ErrorCategory.RATE_LIMITED,
    }
    
    def __init__(
        self,
        exchange_id: str,
        codes: Dict[Union[int, str], ErrorCategory],
        status_fallbacks: Optional[Dict[int, ErrorCategory]] = None,
    ):
        self.exchange_id = exchange_id
        self._codes = {self._key(code): category for code, category in codes.items()}
        if len(self._codes) != len(codes):
            raise ConfigurationError(
                f"Duplicate error codes in {exchange_id} table",
                config_key="codes",
            )
        self._status_fallbacks = (
            dict(status_fallbacks) if status_fallbacks is not None
            else dict(self.DEFAULT_STATUS_FALLBACKS)
        )
    
    @staticmethod
    def _key(code: Union[int, str]) -> str:
        return str(code).strip()
    
    def __contains__(self, code: Union[int, str]) -> bool:
        return self._key(code) in self._codes
    
    def __len__(self) -> int:
        return len(self._codes)
    
    def codes(self) -> Iterable[str]:
        return self._codes.keys()
    
    def category_for(self, code: Union[int, str]) -> Optional[ErrorCategory]:
        """Get the documented category for a code, if any."""
        return self._codes.get(self._key(code))
    
    def classify(
        self,
        code: Union[int, str, None],
        message: str = "",
        http_status: Optional[int] = None,
        retry_after: Optional[float] = None,
        raw_body: bytes = b"",
    ) -> ExchangeError:
        """
        Build the classified error for an exchange response.
        
        Args:
            code: Exchange error code (may be None)
            message: Exchange error message
            http_status: HTTP status code
            retry_after: Retry-after hint in seconds
            raw_body: Raw response body for diagnostics
            
        Returns:
            ExchangeError (UnknownExchangeError for undocumented codes)
        """
        category = self.category_for(code) if code is not None else None
        if category is None and http_status is not None:
            category = self._status_fallbacks.get(http_status)
        
        if category is None:
            return UnknownExchangeError(
                self.exchange_id,
                raw_body=raw_body,
                http_status=http_status,
                code=code,
                exchange_message=message,
            )
        
        return ExchangeError(
            category,
            self.exchange_id,
            code=code,
            exchange_message=message,
            http_status=http_status,
            retry_after=retry_after,
        )
