"""
Exchange Gateway - Codec Layer.

============================================================
PURPOSE
============================================================
Translate typed request fields into exchange wire form and
exchange responses back into typed values.

============================================================
RULES
============================================================
1. Financial values are Decimal end to end. Floats are rejected,
   JSON numbers are parsed with parse_float=Decimal, and nothing
   is ever rounded or truncated.
2. Field order is declaration order; None fields are omitted.
3. Percent-encoding, list layout, casing and timestamp format
   are per-exchange configuration (CodecConfig).
4. Malformed request fields raise CodecError naming the field.
   Malformed response bodies become UnknownExchangeError.

============================================================
"""

import dataclasses
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union, get_args, get_origin, get_type_hints
from urllib.parse import quote, quote_plus, unquote, unquote_plus

from .clock import EPOCH
from .contract import ExchangeRequest, HttpMethod, PreparedRequest, ResponseOutcome, WireResponse
from .errors import CodecError, ErrorTable, UnknownExchangeError


logger = logging.getLogger(__name__)

_INTEGER = re.compile(r"^-?\d+$")
_MILLISECOND = timedelta(milliseconds=1)


# ============================================================
# CONFIGURATION TYPES
# ============================================================

class TimestampFormat(Enum):
    """Wire representation of datetime fields."""
    
    MILLIS = "millis"
    """Integer milliseconds since the Unix epoch."""
    
    SECONDS = "seconds"
    """Integer seconds since the Unix epoch."""
    
    ISO_MILLIS = "iso_millis"
    """UTC ISO-8601 with milliseconds and Z suffix (2023-07-22T04:26:40.000Z)."""
    
    ISO = "iso"
    """ISO-8601 keeping the value's own offset."""


class ListStyle(Enum):
    """Layout of list-valued query parameters."""
    
    REPEAT = "repeat"       # ids=1&ids=2
    BRACKETS = "brackets"   # ids[]=1&ids[]=2
    COMMA = "comma"         # ids=1,2


class FieldCase(Enum):
    """Default casing of wire names derived from field names."""
    
    SNAKE = "snake"
    CAMEL = "camel"


class BodyFormat(Enum):
    """Where POST/PUT parameters travel."""
    
    QUERY = "query"
    JSON = "json"


@dataclass
class QueryEncoding:
    """Percent-encoding rules for the signed query string."""
    
    safe: str = ""
    """Characters left unescaped."""
    
    space_as_plus: bool = True
    """Encode spaces as '+' (form style) instead of '%20'."""
    
    list_style: ListStyle = ListStyle.REPEAT
    
    def quote(self, text: str) -> str:
        if self.space_as_plus:
            return quote_plus(text, safe=self.safe)
        return quote(text, safe=self.safe)
    
    def unquote(self, text: str) -> str:
        if self.space_as_plus:
            return unquote_plus(text)
        return unquote(text)


@dataclass
class ResponseEnvelope:
    """
    Shape of an exchange's JSON responses.
    
    Covers plain error objects ({code, msg}), wrapped payloads
    ({code, msg, data}) whose non-success code signals an error even
    on HTTP 200, and nested error objects ({"error": {...}}).
    """
    
    code_key: Optional[str] = "code"
    message_key: Optional[str] = "msg"
    
    success_codes: Tuple[Any, ...] = ()
    """When set, any other code is an error regardless of HTTP status."""
    
    data_key: Optional[str] = None
    """Key holding the success payload."""
    
    error_key: Optional[str] = None
    """Key holding a nested error object."""
    
    item_code_key: Optional[str] = None
    """Per-item code inside data (batch style responses)."""
    
    item_message_key: Optional[str] = None
    
    def _is_success_code(self, code: Any) -> bool:
        return str(code) in {str(c) for c in self.success_codes}
    
    def extract_error(self, payload: Any, status: int) -> Optional[Tuple[Any, str]]:
        """
        Find an error code and message in a decoded payload.
        
        Returns:
            (code, message) or None when the payload is not an error
        """
        if not isinstance(payload, dict):
            return None
        
        if self.error_key is not None:
            nested = payload.get(self.error_key)
            if not isinstance(nested, dict):
                return None
            code = nested.get(self.code_key) if self.code_key else None
            message = nested.get(self.message_key, "") if self.message_key else ""
            return code, str(message)
        
        if self.code_key is None or self.code_key not in payload:
            return None
        
        code = payload[self.code_key]
        message = str(payload.get(self.message_key, "")) if self.message_key else ""
        
        if self.success_codes:
            if self._is_success_code(code):
                return None
            item_error = self._item_error(payload)
            return item_error or (code, message)
        
        if 200 <= status < 300:
            return None
        return code, message
    
    def _item_error(self, payload: Dict[str, Any]) -> Optional[Tuple[Any, str]]:
        if not self.item_code_key or not self.data_key:
            return None
        items = payload.get(self.data_key)
        if not isinstance(items, list):
            return None
        for item in items:
            if not isinstance(item, dict):
                continue
            code = item.get(self.item_code_key)
            if code is not None and not self._is_success_code(code):
                return code, str(item.get(self.item_message_key, ""))
        return None
    
    def unwrap(self, payload: Any) -> Any:
        if self.data_key is not None and isinstance(payload, dict):
            return payload.get(self.data_key)
        return payload


@dataclass
class CodecConfig:
    """Serialization rules for one exchange."""
    
    field_case: FieldCase = FieldCase.SNAKE
    timestamp_format: TimestampFormat = TimestampFormat.MILLIS
    query: QueryEncoding = field(default_factory=QueryEncoding)
    body_format: BodyFormat = BodyFormat.JSON
    envelope: ResponseEnvelope = field(default_factory=ResponseEnvelope)
    
    empty_string_as_none: bool = False
    """Treat "" as absent when decoding optional fields."""


# ============================================================
# CODEC
# ============================================================

class Codec:
    """
    Encoder/decoder bound to one CodecConfig.
    
    Stateless apart from its configuration; safe to share across
    concurrent requests.
    """
    
    def __init__(self, config: Optional[CodecConfig] = None):
        self.config = config or CodecConfig()
    
    # ------------------------------------------------------------
    # FIELD NAMES
    # ------------------------------------------------------------
    
    def wire_name(self, f: dataclasses.Field) -> str:
        explicit = f.metadata.get("wire")
        if explicit:
            return explicit
        if self.config.field_case is FieldCase.CAMEL:
            head, *rest = f.name.split("_")
            return head + "".join(part[:1].upper() + part[1:] for part in rest)
        return f.name
    
    # ------------------------------------------------------------
    # SCALAR ENCODING
    # ------------------------------------------------------------
    
    def encode_decimal(self, value: Any, name: str, places: Optional[int] = None) -> str:
        """Format an exact decimal in plain notation."""
        if isinstance(value, bool) or isinstance(value, float):
            raise CodecError(name, f"{type(value).__name__} is not an exact decimal", value)
        if isinstance(value, int):
            value = Decimal(value)
        if not isinstance(value, Decimal):
            raise CodecError(name, "expected Decimal", value)
        if not value.is_finite():
            raise CodecError(name, "decimal must be finite", value)
        if places is not None and -value.normalize().as_tuple().exponent > places:
            raise CodecError(name, f"more than {places} decimal places", value)
        return format(value, "f")
    
    def encode_timestamp(self, value: datetime, name: str, fmt: Optional[TimestampFormat] = None) -> Union[int, str]:
        fmt = fmt or self.config.timestamp_format
        if value.tzinfo is None:
            raise CodecError(name, "naive datetime has no timezone", value)
        
        if fmt is TimestampFormat.ISO:
            return value.isoformat()
        
        delta = value - EPOCH
        if delta % _MILLISECOND:
            raise CodecError(name, "sub-millisecond precision cannot be encoded", value)
        
        if fmt is TimestampFormat.MILLIS:
            return delta // _MILLISECOND
        if fmt is TimestampFormat.SECONDS:
            if delta % timedelta(seconds=1):
                raise CodecError(name, "sub-second precision cannot be encoded", value)
            return delta // timedelta(seconds=1)
        
        utc = value.astimezone(timezone.utc)
        return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"
    
    def encode_value(self, value: Any, f: dataclasses.Field, name: str, for_json: bool = False) -> Any:
        """Encode one scalar field value."""
        if isinstance(value, bool):
            if for_json:
                return value
            return "true" if value else "false"
        if isinstance(value, Enum):
            return self.encode_value(value.value, f, name, for_json)
        if isinstance(value, (Decimal, float)):
            return self.encode_decimal(value, name, f.metadata.get("decimal_places"))
        if isinstance(value, int):
            return value if for_json else str(value)
        if isinstance(value, datetime):
            fmt = f.metadata.get("timestamp")
            encoded = self.encode_timestamp(value, name, TimestampFormat(fmt) if fmt else None)
            return encoded if for_json else str(encoded)
        if isinstance(value, str):
            return value
        raise CodecError(name, f"unsupported type {type(value).__name__}", value)
    
    # ------------------------------------------------------------
    # REQUEST ENCODING
    # ------------------------------------------------------------
    
    def encode_params(self, request: ExchangeRequest) -> List[Tuple[str, str]]:
        """Canonical (name, value) pairs in declaration order."""
        pairs: List[Tuple[str, str]] = []
        style = self.config.query.list_style
        
        for f in request.param_fields():
            value = getattr(request, f.name)
            if value is None:
                continue
            name = self.wire_name(f)
            
            if isinstance(value, (list, tuple)):
                items = [self.encode_value(v, f, f"{f.name}[{i}]") for i, v in enumerate(value)]
                if not items:
                    continue
                if style is ListStyle.COMMA:
                    for i, item in enumerate(items):
                        if "," in item:
                            raise CodecError(f"{f.name}[{i}]", "comma-joined item contains ','", item)
                    pairs.append((name, ",".join(items)))
                elif style is ListStyle.BRACKETS:
                    pairs.extend((f"{name}[]", item) for item in items)
                else:
                    pairs.extend((name, item) for item in items)
                continue
            
            pairs.append((name, self.encode_value(value, f, f.name)))
        
        return pairs
    
    def encode_query(self, pairs: List[Tuple[str, str]]) -> str:
        quote_text = self.config.query.quote
        return "&".join(f"{quote_text(k)}={quote_text(v)}" for k, v in pairs)
    
    def encode_json(self, request: ExchangeRequest) -> bytes:
        """Canonical compact JSON body."""
        body: Dict[str, Any] = {}
        for f in request.param_fields():
            value = getattr(request, f.name)
            if value is None:
                continue
            if isinstance(value, (list, tuple)):
                body[self.wire_name(f)] = [
                    self.encode_value(v, f, f"{f.name}[{i}]", for_json=True)
                    for i, v in enumerate(value)
                ]
            else:
                body[self.wire_name(f)] = self.encode_value(value, f, f.name, for_json=True)
        if not body:
            return b""
        return json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    
    def prepare(self, request: ExchangeRequest) -> PreparedRequest:
        """Encode a typed request, leaving authentication to the signer."""
        method = request.method
        prepared = PreparedRequest(
            method=method,
            path=request.render_path(),
            signed=request.signed,
            weight=request.weight,
            endpoint_class=request.endpoint_class,
        )
        
        if method.has_body and self.config.body_format is BodyFormat.JSON:
            prepared.body = self.encode_json(request)
            prepared.body_params = self.encode_params(request)
            if prepared.body:
                prepared.content_type = "application/json"
        else:
            prepared.query_params = self.encode_params(request)
        
        return prepared
    
    # ------------------------------------------------------------
    # REQUEST DECODING
    # ------------------------------------------------------------
    
    def decode_query(self, query: str) -> List[Tuple[str, str]]:
        unquote_text = self.config.query.unquote
        pairs = []
        for part in query.split("&"):
            if not part:
                continue
            key, _, value = part.partition("=")
            pairs.append((unquote_text(key), unquote_text(value)))
        return pairs
    
    def decode_request(
        self,
        cls: type,
        query: str,
        path_params: Optional[Dict[str, str]] = None,
    ) -> ExchangeRequest:
        """Rebuild a typed request from its encoded query string."""
        grouped: Dict[str, List[str]] = {}
        for key, value in self.decode_query(query):
            grouped.setdefault(key, []).append(value)
        
        hints = get_type_hints(cls)
        style = self.config.query.list_style
        kwargs: Dict[str, Any] = {}
        
        for name, value in (path_params or {}).items():
            kwargs[name] = self.decode(hints[name], value, name)
        
        for f in cls.param_fields():
            wire = self.wire_name(f)
            hint = hints[f.name]
            item_type = _list_item_type(hint)
            
            if item_type is not None:
                if style is ListStyle.BRACKETS:
                    raw = grouped.get(f"{wire}[]")
                elif style is ListStyle.COMMA:
                    raw = grouped[wire][0].split(",") if wire in grouped else None
                else:
                    raw = grouped.get(wire)
                if raw is not None:
                    kwargs[f.name] = [
                        self.decode(item_type, item, f"{f.name}[{i}]", f)
                        for i, item in enumerate(raw)
                    ]
                continue
            
            if wire in grouped:
                values = grouped[wire]
                if len(values) > 1:
                    raise CodecError(f.name, "repeated scalar parameter", values)
                kwargs[f.name] = self.decode(hint, values[0], f.name, f)
        
        try:
            return cls(**kwargs)
        except TypeError as e:
            raise CodecError(cls.__name__, str(e)) from e
    
    # ------------------------------------------------------------
    # RESPONSE DECODING
    # ------------------------------------------------------------
    
    def loads(self, body: bytes) -> Any:
        """Parse JSON without ever producing a float."""
        return json.loads(body, parse_float=Decimal)
    
    def decode(
        self,
        target: Any,
        payload: Any,
        name: str = "$",
        f: Optional[dataclasses.Field] = None,
    ) -> Any:
        """
        Decode a JSON (or query string) value into a typed value.
        
        Args:
            target: Type hint to decode into
            payload: Parsed JSON value or query string value
            name: Field path for error messages
            f: Dataclass field carrying timestamp metadata
            
        Raises:
            CodecError: On any value that does not fit the target
        """
        if target is Any or target is object:
            return payload
        
        origin = get_origin(target)
        if origin is Union:
            args = [a for a in get_args(target) if a is not type(None)]
            if payload is None:
                return None
            if payload == "" and self.config.empty_string_as_none:
                return None
            return self.decode(args[0], payload, name, f)
        
        if payload is None:
            raise CodecError(name, "value is required")
        
        if origin in (list, List):
            if not isinstance(payload, list):
                raise CodecError(name, "expected a list", payload)
            (item_type,) = get_args(target) or (Any,)
            return [self.decode(item_type, item, f"{name}[{i}]", f) for i, item in enumerate(payload)]
        
        if origin in (dict, Dict):
            if not isinstance(payload, dict):
                raise CodecError(name, "expected an object", payload)
            _, value_type = get_args(target) or (str, Any)
            return {k: self.decode(value_type, v, f"{name}.{k}", f) for k, v in payload.items()}
        
        if dataclasses.is_dataclass(target):
            return self._decode_dataclass(target, payload, name)
        
        if target is Decimal:
            return self._decode_decimal(payload, name)
        if target is bool:
            return self._decode_bool(payload, name)
        if target is int:
            return self._decode_int(payload, name)
        if target is str:
            if isinstance(payload, (dict, list, bool)):
                raise CodecError(name, "expected a string", payload)
            return payload if isinstance(payload, str) else str(payload)
        if target is datetime:
            fmt = f.metadata.get("timestamp") if f is not None else None
            return self._decode_timestamp(payload, name, TimestampFormat(fmt) if fmt else None)
        if isinstance(target, type) and issubclass(target, Enum):
            return self._decode_enum(target, payload, name)
        
        raise CodecError(name, f"unsupported target type {target!r}")
    
    def _decode_dataclass(self, target: type, payload: Any, name: str) -> Any:
        hints = get_type_hints(target)
        target_fields = [f for f in dataclasses.fields(target) if f.init]
        kwargs: Dict[str, Any] = {}
        
        if isinstance(payload, list):
            # Positional rows such as [price, quantity]; extra columns ignored.
            if len(payload) < sum(1 for f in target_fields if _is_required(f)):
                raise CodecError(name, f"expected at least {len(target_fields)} columns", payload)
            for f, item in zip(target_fields, payload):
                kwargs[f.name] = self.decode(hints[f.name], item, f"{name}.{f.name}", f)
            return target(**kwargs)
        
        if not isinstance(payload, dict):
            raise CodecError(name, f"expected an object for {target.__name__}", payload)
        
        for f in target_fields:
            wire = self.wire_name(f)
            if wire not in payload:
                if _is_required(f):
                    raise CodecError(f"{name}.{wire}", "missing required field")
                continue
            kwargs[f.name] = self.decode(hints[f.name], payload[wire], f"{name}.{wire}", f)
        
        return target(**kwargs)
    
    def _decode_decimal(self, payload: Any, name: str) -> Decimal:
        if isinstance(payload, bool) or isinstance(payload, float):
            raise CodecError(name, "expected an exact decimal", payload)
        if isinstance(payload, Decimal):
            value = payload
        elif isinstance(payload, (int, str)):
            try:
                value = Decimal(payload) if isinstance(payload, int) else Decimal(payload.strip())
            except InvalidOperation as e:
                raise CodecError(name, "not a decimal number", payload) from e
        else:
            raise CodecError(name, "expected a decimal", payload)
        if not value.is_finite():
            raise CodecError(name, "decimal must be finite", payload)
        return value
    
    def _decode_int(self, payload: Any, name: str) -> int:
        if isinstance(payload, bool):
            raise CodecError(name, "expected an integer", payload)
        if isinstance(payload, int):
            return payload
        if isinstance(payload, str) and _INTEGER.match(payload.strip()):
            return int(payload)
        if isinstance(payload, Decimal) and payload == payload.to_integral_value():
            return int(payload)
        raise CodecError(name, "expected an integer", payload)
    
    def _decode_bool(self, payload: Any, name: str) -> bool:
        if isinstance(payload, bool):
            return payload
        if isinstance(payload, str) and payload.lower() in ("true", "false"):
            return payload.lower() == "true"
        raise CodecError(name, "expected a boolean", payload)
    
    def _decode_enum(self, target: type, payload: Any, name: str) -> Enum:
        for member in target:
            if member.value == payload or str(member.value) == str(payload):
                return member
        raise CodecError(name, f"not a valid {target.__name__}", payload)
    
    def _decode_timestamp(self, payload: Any, name: str, fmt: Optional[TimestampFormat]) -> datetime:
        fmt = fmt or self.config.timestamp_format
        
        if isinstance(payload, bool):
            raise CodecError(name, "expected a timestamp", payload)
        
        numeric: Optional[Decimal] = None
        if isinstance(payload, (int, Decimal)):
            numeric = Decimal(payload)
        elif isinstance(payload, str) and _INTEGER.match(payload.strip()):
            numeric = Decimal(payload.strip())
        
        if numeric is not None:
            if fmt is TimestampFormat.SECONDS:
                micros = numeric * 1_000_000
            else:
                micros = numeric * 1000
            if micros != micros.to_integral_value():
                raise CodecError(name, "timestamp below microsecond precision", payload)
            return EPOCH + timedelta(microseconds=int(micros))
        
        if not isinstance(payload, str):
            raise CodecError(name, "expected a timestamp", payload)
        
        text = payload.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError as e:
            raise CodecError(name, "not an ISO-8601 timestamp", payload) from e
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value
    
    # ------------------------------------------------------------
    # RESPONSES
    # ------------------------------------------------------------
    
    def outcome(self, target: Any, response: WireResponse, errors: ErrorTable) -> ResponseOutcome:
        """
        Classify and decode a transport response without raising.
        
        Args:
            target: Expected success type
            response: Raw transport response
            errors: Exchange error table
        """
        try:
            payload = self.loads(response.body) if response.body.strip() else None
        except ValueError:
            # Plain-text throttling pages still classify by status.
            return ResponseOutcome.failure(errors.classify(
                None,
                "unparseable response body",
                http_status=response.status,
                retry_after=response.retry_after(),
                raw_body=response.body,
            ))
        
        error = self.config.envelope.extract_error(payload, response.status)
        if error is not None or not response.ok:
            code, message = error if error is not None else (None, "")
            return ResponseOutcome.failure(errors.classify(
                code,
                message,
                http_status=response.status,
                retry_after=response.retry_after(),
                raw_body=response.body,
            ))
        
        try:
            value = self.decode(target, self.config.envelope.unwrap(payload))
        except CodecError as e:
            logger.warning(f"Undecodable {errors.exchange_id} response: {e.message}")
            return ResponseOutcome.failure(UnknownExchangeError(
                errors.exchange_id,
                raw_body=response.body,
                http_status=response.status,
                exchange_message=e.message,
                cause=e,
            ))
        return ResponseOutcome.success(value)
    
    def decode_response(self, target: Any, response: WireResponse, errors: ErrorTable) -> Any:
        """Decode a success value or raise the classified ExchangeError."""
        return self.outcome(target, response, errors).unwrap()


# ============================================================
# HELPERS
# ============================================================

def _is_required(f: dataclasses.Field) -> bool:
    return f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING


def _list_item_type(hint: Any) -> Optional[Any]:
    """Element type when the hint is List[X] or Optional[List[X]]."""
    origin = get_origin(hint)
    if origin is Union:
        args = [a for a in get_args(hint) if a is not type(None)]
        return _list_item_type(args[0]) if args else None
    if origin in (list, List):
        args = get_args(hint)
        return args[0] if args else Any
    return None


def format_epoch_millis(timestamp_ms: int, fmt: TimestampFormat) -> str:
    """Render an epoch-millisecond reading in an exchange timestamp format."""
    value = EPOCH + timedelta(milliseconds=timestamp_ms)
    return str(Codec().encode_timestamp(value, "timestamp", fmt))
