"""
Exchange Gateway - Configuration.

============================================================
PURPOSE
============================================================
Tunables for the request pipeline: retry schedule, transport
timeouts and per-endpoint-class rate budgets.

Configuration never carries credentials. The embedding
application hands Credentials to the adapter directly.

============================================================
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .errors import ConfigurationError


# ============================================================
# RETRY CONFIGURATION
# ============================================================

@dataclass
class RetryConfig:
    """
    Retry configuration for one logical request.
    
    Only transport failures and rate-limit errors are retried.
    """
    
    max_attempts: int = 3
    """Maximum attempts including the first one."""
    
    initial_delay_seconds: float = 0.5
    """Delay before the first retry."""
    
    max_delay_seconds: float = 30.0
    """Upper bound for any single backoff delay, retry-after hints included."""
    
    backoff_multiplier: float = 2.0
    """Exponential backoff multiplier."""
    
    def validate(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1", config_key="retry.max_attempts")
        if self.initial_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ConfigurationError("Retry delays must be non-negative", config_key="retry")
        if self.backoff_multiplier < 1.0:
            raise ConfigurationError("backoff_multiplier must be >= 1.0", config_key="retry.backoff_multiplier")


# ============================================================
# RATE LIMIT CONFIGURATION
# ============================================================

@dataclass
class RateLimitConfig:
    """
    Token bucket for one endpoint class.
    
    Tokens are request weight units.
    """
    
    capacity: int = 10
    """Burst capacity in tokens."""
    
    refill_amount: int = 1
    """Tokens added at every refill tick."""
    
    refill_interval_seconds: float = 0.1
    """Fixed interval between refill ticks."""
    
    max_in_flight: Optional[int] = None
    """Concurrent request cap (defaults to capacity)."""
    
    def validate(self, name: str = "default") -> None:
        key = f"rate_limits.{name}"
        if self.capacity < 1:
            raise ConfigurationError("capacity must be at least 1", config_key=key)
        if self.refill_amount < 1:
            raise ConfigurationError("refill_amount must be at least 1", config_key=key)
        if self.refill_interval_seconds <= 0:
            raise ConfigurationError("refill_interval_seconds must be positive", config_key=key)
        if self.max_in_flight is not None and self.max_in_flight < 1:
            raise ConfigurationError("max_in_flight must be at least 1", config_key=key)
        if self.max_in_flight is not None and self.max_in_flight > self.capacity:
            raise ConfigurationError("max_in_flight must not exceed capacity", config_key=key)


# ============================================================
# TIMEOUT CONFIGURATION
# ============================================================

@dataclass
class TimeoutConfig:
    """Transport timeouts."""
    
    connection_timeout_seconds: float = 5.0
    """Timeout for establishing connection."""
    
    read_timeout_seconds: float = 30.0
    """Timeout for reading the response."""
    
    total_timeout_seconds: float = 60.0
    """Timeout for the whole exchange of one attempt."""


# ============================================================
# GATEWAY CONFIGURATION
# ============================================================

@dataclass
class GatewayConfig:
    """
    Configuration for one adapter instance.
    
    Rate limits left empty fall back on the adapter's documented
    defaults for each endpoint class.
    """
    
    retry: RetryConfig = field(default_factory=RetryConfig)
    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)
    
    rate_limits: Dict[str, RateLimitConfig] = field(default_factory=dict)
    """Overrides keyed by endpoint class."""
    
    recv_window_ms: int = 5000
    """Receive window sent with signed requests where supported."""
    
    admission_timeout_seconds: Optional[float] = 10.0
    """Default admission deadline (None waits indefinitely)."""
    
    testnet: bool = False
    """Use the exchange's test environment."""
    
    base_url: Optional[str] = None
    """Override of the adapter's REST base URL."""
    
    log_requests: bool = True
    """Write masked request/response entries to the adapter log."""
    
    def validate(self) -> None:
        """Validate every section; raises ConfigurationError."""
        self.retry.validate()
        for name, limit in self.rate_limits.items():
            limit.validate(name)
        if self.recv_window_ms <= 0:
            raise ConfigurationError("recv_window_ms must be positive", config_key="recv_window_ms")
        if self.admission_timeout_seconds is not None and self.admission_timeout_seconds < 0:
            raise ConfigurationError(
                "admission_timeout_seconds must be non-negative",
                config_key="admission_timeout_seconds",
            )
    
    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "GatewayConfig":
        """Build configuration from a plain mapping."""
        data = dict(data or {})
        unknown = set(data) - {
            "retry", "timeout", "rate_limits", "recv_window_ms",
            "admission_timeout_seconds", "testnet", "base_url", "log_requests",
        }
        if unknown:
            raise ConfigurationError(
                f"Unknown configuration keys: {', '.join(sorted(unknown))}",
                config_key=sorted(unknown)[0],
            )
        
        try:
            config = cls(
                retry=RetryConfig(**data.pop("retry", None) or {}),
                timeout=TimeoutConfig(**data.pop("timeout", None) or {}),
                rate_limits={
                    name: RateLimitConfig(**values)
                    for name, values in (data.pop("rate_limits", None) or {}).items()
                },
                **data,
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration: {e}", cause=e) from e
        
        config.validate()
        return config
    
    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "GatewayConfig":
        """Load configuration from a YAML file."""
        with open(path, "r") as f:
            data = yaml.safe_load(f)
        
        if data is not None and not isinstance(data, dict):
            raise ConfigurationError(f"Expected a mapping in {path}")
        return cls.from_dict(data)
