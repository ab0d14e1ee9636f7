"""
Exchange Gateway - Metrics.

============================================================
PURPOSE
============================================================
In-memory metrics for one adapter's pipeline.

METRICS TRACKED:
- Attempt latency (by endpoint)
- Attempt success/failure counts
- Retries and their causes
- Admission delays and timeouts
- Error code distribution

============================================================
"""

import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from .errors import ExchangeError, RateLimitTimeout, TransportError


logger = logging.getLogger(__name__)


# ============================================================
# METRIC TYPES
# ============================================================

class MetricType(Enum):
    """Counted events."""
    
    ATTEMPT_SUCCESS = "attempt_success"
    ATTEMPT_FAILURE = "attempt_failure"
    RETRY = "retry"
    RATE_LIMITED = "rate_limited"
    TRANSPORT_ERROR = "transport_error"
    TIMEOUT = "timeout"
    ADMISSION_DELAYED = "admission_delayed"
    ADMISSION_TIMEOUT = "admission_timeout"


@dataclass
class LatencyStats:
    """Latency statistics."""
    
    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0
    
    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count > 0 else 0.0
    
    def record(self, latency_ms: float) -> None:
        self.count += 1
        self.total_ms += latency_ms
        self.min_ms = min(self.min_ms, latency_ms)
        self.max_ms = max(self.max_ms, latency_ms)
    
    def to_dict(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "avg_ms": self.avg_ms,
            "min_ms": self.min_ms if self.count else 0.0,
            "max_ms": self.max_ms,
        }


# ============================================================
# ADAPTER METRICS
# ============================================================

class AdapterMetrics:
    """
    Metrics collector for one adapter.
    
    Updated from the event loop only; no locking needed.
    """
    
    def __init__(self, exchange_id: str, max_recent: int = 100):
        self._exchange_id = exchange_id
        self._start_time = datetime.now(timezone.utc)
        self._latency: Dict[str, LatencyStats] = defaultdict(LatencyStats)
        self._counters: Dict[MetricType, int] = {mt: 0 for mt in MetricType}
        self._error_codes: Dict[str, int] = defaultdict(int)
        self._admission_wait_seconds = 0.0
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=max_recent)
    
    # --------------------------------------------------------
    # RECORDING
    # --------------------------------------------------------
    
    def record_attempt(
        self,
        endpoint: str,
        latency_ms: float,
        success: bool,
        status_code: Optional[int] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        """Record one dispatched attempt."""
        self._latency[endpoint].record(latency_ms)
        self._latency["_all"].record(latency_ms)
        
        if success:
            self._counters[MetricType.ATTEMPT_SUCCESS] += 1
        else:
            self._counters[MetricType.ATTEMPT_FAILURE] += 1
            self._record_error(error)
        
        self._recent.append({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "endpoint": endpoint,
            "latency_ms": latency_ms,
            "success": success,
            "status_code": status_code,
            "error": type(error).__name__ if error else None,
        })
    
    def _record_error(self, error: Optional[BaseException]) -> None:
        if isinstance(error, ExchangeError):
            self._error_codes[str(error.code) if error.code is not None else error.category.value] += 1
            if error.retryable:
                self._counters[MetricType.RATE_LIMITED] += 1
        elif isinstance(error, TransportError):
            self._counters[MetricType.TRANSPORT_ERROR] += 1
            if error.timeout:
                self._counters[MetricType.TIMEOUT] += 1
    
    def record_retry(self) -> None:
        self._counters[MetricType.RETRY] += 1
    
    def record_admission(self, waited: float) -> None:
        if waited > 0:
            self._counters[MetricType.ADMISSION_DELAYED] += 1
            self._admission_wait_seconds += waited
    
    def record_admission_timeout(self, error: RateLimitTimeout) -> None:
        self._counters[MetricType.ADMISSION_TIMEOUT] += 1
        self._admission_wait_seconds += error.waited
    
    def count(self, metric: MetricType) -> int:
        return self._counters[metric]
    
    # --------------------------------------------------------
    # REPORTING
    # --------------------------------------------------------
    
    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary."""
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        success = self._counters[MetricType.ATTEMPT_SUCCESS]
        failure = self._counters[MetricType.ATTEMPT_FAILURE]
        total = success + failure
        
        return {
            "exchange_id": self._exchange_id,
            "uptime_seconds": uptime,
            "attempts": {
                "total": total,
                "success": success,
                "failure": failure,
                "success_rate": success / total if total > 0 else 1.0,
                "retries": self._counters[MetricType.RETRY],
            },
            "latency": self._latency.get("_all", LatencyStats()).to_dict(),
            "admission": {
                "delayed": self._counters[MetricType.ADMISSION_DELAYED],
                "timeouts": self._counters[MetricType.ADMISSION_TIMEOUT],
                "wait_seconds": round(self._admission_wait_seconds, 6),
            },
            "errors": {
                "rate_limited": self._counters[MetricType.RATE_LIMITED],
                "transport": self._counters[MetricType.TRANSPORT_ERROR],
                "timeouts": self._counters[MetricType.TIMEOUT],
                "by_code": dict(self._error_codes),
            },
        }
    
    def get_latency_by_endpoint(self) -> Dict[str, Dict[str, float]]:
        return {
            endpoint: stats.to_dict()
            for endpoint, stats in self._latency.items()
            if endpoint != "_all"
        }
    
    def get_recent_requests(self, limit: int = 20) -> List[Dict[str, Any]]:
        return list(self._recent)[-limit:]
    
    def get_error_distribution(self) -> Dict[str, int]:
        return dict(self._error_codes)
    
    def reset(self) -> None:
        """Reset all metrics."""
        self._start_time = datetime.now(timezone.utc)
        self._latency.clear()
        self._counters = {mt: 0 for mt in MetricType}
        self._error_codes.clear()
        self._admission_wait_seconds = 0.0
        self._recent.clear()
