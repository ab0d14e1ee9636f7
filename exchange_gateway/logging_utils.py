"""
Exchange Gateway - Secure Logging Utilities.

============================================================
PURPOSE
============================================================
Logging for pipeline attempts with:
- Credential and signature masking
- Structured (JSON) request/response entries
- A bounded per-adapter audit trail
- Process-level logging setup for embedding applications

============================================================
SECURITY REQUIREMENTS
============================================================
1. NEVER log raw API keys, secrets, passphrases or signatures
2. Mask sensitive headers (Authorization, X-MBX-APIKEY, ...)
3. Mask sensitive query parameters (signature, ...)
4. Log a short hash of request bodies, never the body

============================================================
"""

import hashlib
import json
import logging
import re
import sys
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional


logger = logging.getLogger(__name__)


# ============================================================
# SENSITIVE DATA
# ============================================================

SENSITIVE_HEADERS = {
    "authorization",
    "x-mbx-apikey",
    "ok-access-key",
    "ok-access-sign",
    "ok-access-passphrase",
    "x-bapi-api-key",
    "x-bapi-sign",
    "api-key",
}

SENSITIVE_PARAMS = {
    "signature",
    "sign",
    "apikey",
    "api_key",
    "access_key",
    "secret",
    "passphrase",
    "token",
}


# ============================================================
# MASKING FUNCTIONS
# ============================================================

def mask_value(value: str, show_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only the first few chars.
    
    Args:
        value: Value to mask
        show_chars: Number of chars to show at start
        
    Returns:
        Masked value
    """
    if not value or len(value) <= show_chars * 2:
        return "***"
    return f"{value[:show_chars]}...***"


def mask_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Mask sensitive headers. Bearer tokens are fully hidden."""
    if not headers:
        return {}
    
    masked = {}
    for key, value in headers.items():
        lowered = key.lower()
        if lowered == "authorization":
            masked[key] = "***"
        elif lowered in SENSITIVE_HEADERS:
            masked[key] = mask_value(str(value))
        else:
            masked[key] = value
    return masked


def mask_params(params: Dict[str, Any]) -> Dict[str, Any]:
    """Mask sensitive parameters."""
    if not params:
        return {}
    
    masked = {}
    for key, value in params.items():
        if key.lower() in SENSITIVE_PARAMS:
            masked[key] = "***"
        elif isinstance(value, dict):
            masked[key] = mask_params(value)
        else:
            masked[key] = value
    return masked


def mask_query(query: str) -> str:
    """Mask sensitive parameters inside an encoded query string."""
    if not query:
        return query
    
    for param in SENSITIVE_PARAMS:
        pattern = re.compile(f"(^|&)({re.escape(param)}=)([^&]*)", re.IGNORECASE)
        query = pattern.sub(lambda m: f"{m.group(1)}{m.group(2)}***", query)
    return query


# ============================================================
# LOG ENTRY STRUCTURES
# ============================================================

@dataclass
class RequestLogEntry:
    """Structured log entry for one attempt."""
    
    timestamp: str
    exchange_id: str
    operation: str
    request_id: str
    attempt: int
    method: str
    path: str
    
    query: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    body_hash: Optional[str] = None
    
    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}
    
    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class ResponseLogEntry:
    """Structured log entry for the outcome of one attempt."""
    
    timestamp: str
    exchange_id: str
    operation: str
    request_id: str
    attempt: int
    success: bool
    latency_ms: float
    
    status_code: Optional[int] = None
    error_type: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    
    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}
    
    def to_json(self) -> str:
        return json.dumps(self.to_dict())


# ============================================================
# ADAPTER LOGGER
# ============================================================

class AdapterLogger:
    """
    Secure logger for one adapter's pipeline.
    
    Every entry passes through the masking functions before it is
    written or kept in the audit trail.
    """
    
    def __init__(self, exchange_id: str, logger_name: Optional[str] = None, max_audit_entries: int = 1000):
        """
        Initialize adapter logger.
        
        Args:
            exchange_id: Exchange identifier
            logger_name: Logger name (default: exchange_gateway.<exchange_id>)
            max_audit_entries: Audit trail size
        """
        self._exchange_id = exchange_id
        self._logger = logging.getLogger(logger_name or f"exchange_gateway.{exchange_id}")
        self._request_counter = 0
        self._audit: Deque[Dict[str, Any]] = deque(maxlen=max_audit_entries)
    
    def next_request_id(self) -> str:
        """Correlation id for one logical request."""
        self._request_counter += 1
        return f"{self._exchange_id}-{self._request_counter}"
    
    @staticmethod
    def _hash_body(body: bytes) -> Optional[str]:
        if not body:
            return None
        return hashlib.sha256(body).hexdigest()[:16]
    
    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
    
    def log_request(
        self,
        operation: str,
        request_id: str,
        attempt: int,
        method: str,
        path: str,
        query: str = "",
        headers: Optional[Dict[str, str]] = None,
        body: bytes = b"",
    ) -> None:
        """Log one outgoing attempt."""
        entry = RequestLogEntry(
            timestamp=self._now(),
            exchange_id=self._exchange_id,
            operation=operation,
            request_id=request_id,
            attempt=attempt,
            method=method,
            path=path,
            query=mask_query(query) or None,
            headers=mask_headers(headers) or None,
            body_hash=self._hash_body(body),
        )
        self._audit.append(entry.to_dict())
        self._logger.debug(f"REQUEST: {entry.to_json()}")
    
    def log_response(
        self,
        operation: str,
        request_id: str,
        attempt: int,
        success: bool,
        latency_ms: float,
        status_code: Optional[int] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        """Log the outcome of one attempt."""
        entry = ResponseLogEntry(
            timestamp=self._now(),
            exchange_id=self._exchange_id,
            operation=operation,
            request_id=request_id,
            attempt=attempt,
            success=success,
            latency_ms=round(latency_ms, 3),
            status_code=status_code,
            error_type=type(error).__name__ if error else None,
            error_code=str(getattr(error, "code", None)) if getattr(error, "code", None) is not None else None,
            error_message=str(error)[:200] if error else None,
        )
        self._audit.append(entry.to_dict())
        
        if success:
            self._logger.debug(f"RESPONSE: {entry.to_json()}")
        else:
            self._logger.warning(f"RESPONSE_ERROR: {entry.to_json()}")
    
    def log_retry(self, operation: str, request_id: str, attempt: int, max_attempts: int, delay: float, error: BaseException) -> None:
        self._logger.warning(
            f"[{self._exchange_id}] {operation} ({request_id}) attempt {attempt}/{max_attempts} "
            f"failed: {type(error).__name__}: {error}. Retrying in {delay:.3f}s"
        )
    
    def get_audit_log(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent audit entries."""
        return list(self._audit)[-limit:]


# ============================================================
# PROCESS SETUP
# ============================================================

def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
    correlation_id: Optional[str] = None,
) -> logging.Logger:
    """
    Set up structured logging for an embedding application.
    
    Args:
        level: Log level
        log_format: Output format (json or text)
        correlation_id: Correlation ID for tracing
        
    Returns:
        The gateway's package logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    
    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
                "correlation_id": correlation_id or "",
            })
        )
    else:
        formatter = logging.Formatter(
            f"%(asctime)s | %(levelname)-8s | %(name)s | {correlation_id or ''} | %(message)s"
        )
    
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]
    
    return logging.getLogger("exchange_gateway")
