"""
Exchange Gateway - Request/Response Contract.

============================================================
PURPOSE
============================================================
The typed shape every endpoint satisfies.

A request is a dataclass whose class attributes declare the
HTTP method, path template, expected response type, whether it
must be signed, its rate-limit weight and its endpoint class.
Instance fields are the parameters, in canonical order.

This module is data only. Encoding lives in the codec, signing
in the signers, execution in the pipeline.

============================================================
USAGE
============================================================
```python
@dataclass
class GetDepth(ExchangeRequest):
    method: ClassVar[HttpMethod] = HttpMethod.GET
    path: ClassVar[str] = "/api/v3/depth"
    response_type: ClassVar[Any] = Depth
    
    symbol: str
    limit: Optional[int] = None
```

============================================================
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from string import Formatter
from typing import Any, ClassVar, Dict, Generic, List, Optional, Tuple, TypeVar

from .errors import CodecError, ExchangeError


T = TypeVar("T")


# ============================================================
# ENUMS
# ============================================================

class HttpMethod(Enum):
    """HTTP methods used by exchange REST APIs."""
    
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    
    @property
    def has_body(self) -> bool:
        return self in (HttpMethod.POST, HttpMethod.PUT)


class AuthKind(Enum):
    """Whether an endpoint needs authentication."""
    
    PUBLIC = "public"
    SIGNED = "signed"


# ============================================================
# FIELD HELPERS
# ============================================================

def wire_field(
    name: Optional[str] = None,
    *,
    default: Any = ...,
    timestamp: Optional[str] = None,
    decimal_places: Optional[int] = None,
) -> Any:
    """
    Declare a dataclass field with wire metadata.
    
    Args:
        name: Wire name (defaults to the codec's casing rule)
        default: Default value (omit for a required field)
        timestamp: Timestamp format override for this field
        decimal_places: Reject decimals with more places than this
    """
    metadata = {}
    if name is not None:
        metadata["wire"] = name
    if timestamp is not None:
        metadata["timestamp"] = timestamp
    if decimal_places is not None:
        metadata["decimal_places"] = decimal_places
    if default is ...:
        return field(metadata=metadata)
    return field(default=default, metadata=metadata)


# ============================================================
# REQUEST CONTRACT
# ============================================================

@dataclass
class ExchangeRequest:
    """
    Base class for typed endpoint requests.
    
    Subclasses must be dataclasses and override the class
    attributes below.
    """
    
    method: ClassVar[HttpMethod] = HttpMethod.GET
    path: ClassVar[str] = "/"
    response_type: ClassVar[Any] = Any
    auth: ClassVar[AuthKind] = AuthKind.PUBLIC
    weight: ClassVar[int] = 1
    endpoint_class: ClassVar[str] = "default"
    
    @classmethod
    def path_fields(cls) -> Tuple[str, ...]:
        """Names of fields substituted into the path template."""
        return tuple(
            name for _, name, _, _ in Formatter().parse(cls.path) if name
        )
    
    @classmethod
    def param_fields(cls) -> List[Any]:
        """Dataclass fields sent as query or body parameters."""
        in_path = set(cls.path_fields())
        return [f for f in fields(cls) if f.name not in in_path]
    
    @property
    def signed(self) -> bool:
        return self.auth is AuthKind.SIGNED
    
    def render_path(self) -> str:
        """Substitute path fields into the path template."""
        values = {}
        for name in self.path_fields():
            value = getattr(self, name, None)
            if value is None or value == "":
                raise CodecError(name, "path parameter is required")
            value = value.value if isinstance(value, Enum) else str(value)
            if "/" in value or "?" in value:
                raise CodecError(name, "path parameter contains a reserved character", value)
            values[name] = value
        return self.path.format(**values)


# ============================================================
# WIRE TYPES
# ============================================================

@dataclass
class PreparedRequest:
    """A request encoded by the codec, before authentication."""
    
    method: HttpMethod
    path: str
    query_params: List[Tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    body_params: List[Tuple[str, str]] = field(default_factory=list)
    """Canonical pairs of a JSON body, for schemes that hash the form encoding."""
    content_type: Optional[str] = None
    signed: bool = False
    weight: int = 1
    endpoint_class: str = "default"


@dataclass
class WireRequest:
    """Bytes ready for the transport."""
    
    method: str
    base_url: str
    path: str
    query: str = ""
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)
    
    @property
    def path_and_query(self) -> str:
        return f"{self.path}?{self.query}" if self.query else self.path
    
    @property
    def url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.path_and_query}"


@dataclass
class WireResponse:
    """Status, headers and raw body bytes returned by the transport."""
    
    status: int
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)
    
    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300
    
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")
    
    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None
    
    def retry_after(self) -> Optional[float]:
        """Retry-After header in seconds, when present and numeric."""
        value = self.header("Retry-After")
        if value is None:
            return None
        try:
            seconds = float(value)
        except ValueError:
            return None
        return seconds if seconds >= 0 else None


# ============================================================
# RESPONSE OUTCOME
# ============================================================

@dataclass
class ResponseOutcome(Generic[T]):
    """
    Either a typed success value or a classified exchange error.
    
    Pipeline calls raise; this wrapper exists for callers that
    would rather branch on values.
    """
    
    value: Optional[T] = None
    error: Optional[ExchangeError] = None
    
    @classmethod
    def success(cls, value: T) -> "ResponseOutcome[T]":
        return cls(value=value)
    
    @classmethod
    def failure(cls, error: ExchangeError) -> "ResponseOutcome[T]":
        return cls(error=error)
    
    @property
    def is_success(self) -> bool:
        return self.error is None
    
    def unwrap(self) -> T:
        """Return the value or raise the classified error."""
        if self.error is not None:
            raise self.error
        return self.value
