"""
Codec Tests.

============================================================
PURPOSE
============================================================
Tests for request encoding and response decoding.

TEST CATEGORIES:
- Parameter encoding: order, omission, exact decimals
- List styles and percent-encoding
- Request decoding back into typed requests
- Response decoding and envelope classification

============================================================
"""

import pytest
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, List, Optional

from exchange_gateway.codec import (
    BodyFormat,
    Codec,
    CodecConfig,
    FieldCase,
    ListStyle,
    QueryEncoding,
    ResponseEnvelope,
    TimestampFormat,
)
from exchange_gateway.contract import ExchangeRequest, HttpMethod, WireResponse, wire_field
from exchange_gateway.errors import (
    CodecError,
    ErrorCategory,
    ErrorTable,
    ExchangeError,
    UnknownExchangeError,
)


# ============================================================
# FIXTURE TYPES
# ============================================================

class SampleSide(Enum):
    BUY = "BUY"
    SELL = "SELL"


@dataclass
class SampleQuery(ExchangeRequest):
    path: ClassVar[str] = "/api/sample"
    
    symbol: str
    side: SampleSide
    quantity: Decimal
    price: Optional[Decimal] = None
    start_time: Optional[datetime] = None
    post_only: Optional[bool] = None
    ids: Optional[List[int]] = None


@dataclass
class SampleOrder(ExchangeRequest):
    method: ClassVar[HttpMethod] = HttpMethod.POST
    path: ClassVar[str] = "/api/order"
    
    symbol: str
    side: SampleSide
    quantity: Decimal
    order_type: str = wire_field("type", default="LIMIT")


@dataclass
class TaggedQuery(ExchangeRequest):
    path: ClassVar[str] = "/api/tags"
    
    tags: List[str]


@dataclass
class OrderByPath(ExchangeRequest):
    method: ClassVar[HttpMethod] = HttpMethod.DELETE
    path: ClassVar[str] = "/api/orders/{order_id}"
    
    order_id: str
    symbol: Optional[str] = None


@dataclass
class Level:
    price: Decimal
    quantity: Decimal


@dataclass
class Snapshot:
    last_update_id: int
    updated_at: datetime
    bids: List[Level]
    note: Optional[str] = None


SAMPLE_TIME = datetime(2023, 7, 22, 4, 26, 40, tzinfo=timezone.utc)

TABLE = ErrorTable("sample", {
    -1003: ErrorCategory.RATE_LIMITED,
    -1021: ErrorCategory.STALE_TIMESTAMP,
    -2010: ErrorCategory.INSUFFICIENT_FUNDS,
})


@pytest.fixture
def codec():
    return Codec(CodecConfig(field_case=FieldCase.CAMEL))


# ============================================================
# PARAMETER ENCODING TESTS
# ============================================================

class TestParameterEncoding:
    """Tests for encode_params / encode_query."""
    
    def test_declaration_order_and_none_omitted(self, codec):
        """Fields are emitted in declaration order; None fields are skipped."""
        request = SampleQuery(symbol="BTCUSDT", side=SampleSide.BUY, quantity=Decimal("0.0100"))
        
        assert codec.encode_params(request) == [
            ("symbol", "BTCUSDT"),
            ("side", "BUY"),
            ("quantity", "0.0100"),
        ]
    
    def test_camel_case_wire_names(self, codec):
        """Snake case field names become camelCase."""
        request = SampleQuery(
            symbol="BTCUSDT",
            side=SampleSide.SELL,
            quantity=Decimal("1"),
            start_time=SAMPLE_TIME,
            post_only=True,
        )
        
        assert codec.encode_query(codec.encode_params(request)) == (
            "symbol=BTCUSDT&side=SELL&quantity=1&startTime=1690000000000&postOnly=true"
        )
    
    def test_explicit_wire_name(self, codec):
        """wire_field overrides the casing rule."""
        request = SampleOrder(symbol="BTCUSDT", side=SampleSide.BUY, quantity=Decimal("2"))
        
        assert ("type", "LIMIT") in codec.encode_params(request)
    
    def test_decimal_is_never_rounded(self, codec):
        """Decimals keep every digit and use plain notation."""
        assert codec.encode_decimal(Decimal("30000.10"), "price") == "30000.10"
        assert codec.encode_decimal(Decimal("1E-8"), "price") == "0.00000001"
        assert codec.encode_decimal(Decimal("1.5E+3"), "price") == "1500"
        assert codec.encode_decimal(Decimal("0.123456789012345678"), "price") == "0.123456789012345678"
    
    def test_float_is_rejected(self, codec):
        """A float anywhere in a financial field is a CodecError naming the field."""
        request = SampleQuery(symbol="BTCUSDT", side=SampleSide.BUY, quantity=0.1)
        
        with pytest.raises(CodecError) as exc_info:
            codec.encode_params(request)
        
        assert exc_info.value.field == "quantity"
    
    def test_non_finite_decimal_rejected(self, codec):
        """NaN and infinity are not prices."""
        with pytest.raises(CodecError):
            codec.encode_decimal(Decimal("NaN"), "price")
        with pytest.raises(CodecError):
            codec.encode_decimal(Decimal("Infinity"), "price")
    
    def test_decimal_places_limit(self, codec):
        """decimal_places rejects values that would need rounding."""
        assert codec.encode_decimal(Decimal("1.10"), "qty", places=1) == "1.10"
        with pytest.raises(CodecError):
            codec.encode_decimal(Decimal("1.05"), "qty", places=1)
    
    def test_sub_millisecond_timestamp_rejected(self, codec):
        """Timestamps never lose precision silently."""
        with pytest.raises(CodecError):
            codec.encode_timestamp(SAMPLE_TIME.replace(microsecond=1500), "start_time")
    
    def test_naive_timestamp_rejected(self, codec):
        """A datetime without a timezone names its field instead of guessing UTC."""
        request = SampleQuery(
            symbol="BTCUSDT",
            side=SampleSide.BUY,
            quantity=Decimal("1"),
            start_time=datetime(2023, 7, 22, 4, 26, 40),
        )
        
        with pytest.raises(CodecError) as exc_info:
            codec.encode_params(request)
        
        assert exc_info.value.field == "start_time"
        with pytest.raises(CodecError):
            codec.encode_timestamp(datetime(2023, 7, 22, 4, 26, 40), "t", TimestampFormat.ISO)
    
    def test_timestamp_formats(self, codec):
        """Every timestamp format renders the same instant."""
        assert codec.encode_timestamp(SAMPLE_TIME, "t", TimestampFormat.MILLIS) == 1690000000000
        assert codec.encode_timestamp(SAMPLE_TIME, "t", TimestampFormat.SECONDS) == 1690000000
        assert codec.encode_timestamp(SAMPLE_TIME, "t", TimestampFormat.ISO_MILLIS) == "2023-07-22T04:26:40.000Z"
    
    def test_space_encoding(self):
        """Spaces follow the configured form or path style."""
        form = Codec(CodecConfig(query=QueryEncoding(space_as_plus=True)))
        path = Codec(CodecConfig(query=QueryEncoding(space_as_plus=False)))
        
        assert form.encode_query([("note", "a b")]) == "note=a+b"
        assert path.encode_query([("note", "a b")]) == "note=a%20b"


# ============================================================
# LIST STYLE TESTS
# ============================================================

class TestListStyles:
    """Tests for list-valued parameters."""
    
    def _query(self, codec, ids):
        request = SampleQuery(symbol="X", side=SampleSide.BUY, quantity=Decimal("1"), ids=ids)
        return codec.encode_query(codec.encode_params(request))
    
    def test_repeat(self):
        codec = Codec(CodecConfig(query=QueryEncoding(list_style=ListStyle.REPEAT)))
        
        assert self._query(codec, [1, 2]).endswith("&ids=1&ids=2")
    
    def test_brackets_left_unescaped(self):
        codec = Codec(CodecConfig(query=QueryEncoding(safe="[]", list_style=ListStyle.BRACKETS)))
        
        assert self._query(codec, [1, 2]).endswith("&ids[]=1&ids[]=2")
    
    def test_brackets_escaped_by_default(self):
        codec = Codec(CodecConfig(query=QueryEncoding(list_style=ListStyle.BRACKETS)))
        
        assert self._query(codec, [1]).endswith("&ids%5B%5D=1")
    
    def test_comma(self):
        codec = Codec(CodecConfig(query=QueryEncoding(list_style=ListStyle.COMMA)))
        
        assert codec.encode_params(TaggedQuery(tags=["a", "b"])) == [("tags", "a,b")]
    
    def test_comma_rejects_item_containing_comma(self):
        """A comma inside an item would change the list on the wire."""
        codec = Codec(CodecConfig(query=QueryEncoding(list_style=ListStyle.COMMA)))
        
        with pytest.raises(CodecError) as exc_info:
            codec.encode_params(TaggedQuery(tags=["a", "b,c"]))
        
        assert exc_info.value.field == "tags[1]"
    
    def test_empty_list_omitted(self):
        codec = Codec()
        
        assert codec.encode_params(TaggedQuery(tags=[])) == []


# ============================================================
# PREPARE TESTS
# ============================================================

class TestPrepare:
    """Tests for Codec.prepare."""
    
    def test_get_goes_to_query(self, codec):
        request = SampleQuery(symbol="BTCUSDT", side=SampleSide.BUY, quantity=Decimal("1"))
        
        prepared = codec.prepare(request)
        
        assert prepared.method is HttpMethod.GET
        assert prepared.path == "/api/sample"
        assert prepared.body == b""
        assert prepared.query_params[0] == ("symbol", "BTCUSDT")
    
    def test_post_json_body(self, codec):
        """JSON bodies are compact, ordered and keep decimals as strings."""
        request = SampleOrder(symbol="BTCUSDT", side=SampleSide.BUY, quantity=Decimal("0.010"))
        
        prepared = codec.prepare(request)
        
        assert prepared.body == b'{"symbol":"BTCUSDT","side":"BUY","quantity":"0.010","type":"LIMIT"}'
        assert prepared.content_type == "application/json"
        assert prepared.query_params == []
        assert prepared.body_params == [
            ("symbol", "BTCUSDT"),
            ("side", "BUY"),
            ("quantity", "0.010"),
            ("type", "LIMIT"),
        ]
    
    def test_post_query_body_format(self):
        """Exchanges that take POST parameters in the query keep an empty body."""
        codec = Codec(CodecConfig(field_case=FieldCase.CAMEL, body_format=BodyFormat.QUERY))
        request = SampleOrder(symbol="BTCUSDT", side=SampleSide.BUY, quantity=Decimal("1"))
        
        prepared = codec.prepare(request)
        
        assert prepared.body == b""
        assert prepared.content_type is None
        assert ("quantity", "1") in prepared.query_params
    
    def test_path_parameter_rendered_not_sent(self, codec):
        prepared = codec.prepare(OrderByPath(order_id="42", symbol="BTCUSDT"))
        
        assert prepared.path == "/api/orders/42"
        assert prepared.query_params == [("symbol", "BTCUSDT")]
    
    def test_path_parameter_reserved_characters(self, codec):
        with pytest.raises(CodecError):
            codec.prepare(OrderByPath(order_id="4/2"))
        with pytest.raises(CodecError):
            codec.prepare(OrderByPath(order_id=""))


# ============================================================
# REQUEST DECODING TESTS
# ============================================================

class TestRequestDecoding:
    """Tests for decode_request."""
    
    def test_round_trip(self, codec):
        """Encoding then decoding yields an equal request."""
        request = SampleQuery(
            symbol="BTC USDT",
            side=SampleSide.SELL,
            quantity=Decimal("0.00100"),
            price=Decimal("30000.10"),
            start_time=SAMPLE_TIME,
            post_only=False,
            ids=[3, 1, 2],
        )
        
        query = codec.encode_query(codec.encode_params(request))
        
        assert codec.decode_request(SampleQuery, query) == request
    
    @pytest.mark.parametrize("fmt", [TimestampFormat.MILLIS, TimestampFormat.ISO_MILLIS, TimestampFormat.ISO])
    def test_round_trip_with_offset_timestamp(self, fmt):
        """A timestamp in a non-UTC zone comes back as the same instant."""
        codec = Codec(CodecConfig(timestamp_format=fmt))
        seoul = timezone(timedelta(hours=9))
        request = SampleQuery(
            symbol="KRW-BTC",
            side=SampleSide.BUY,
            quantity=Decimal("1"),
            start_time=datetime(2023, 7, 22, 13, 26, 40, 123000, tzinfo=seoul),
        )
        
        query = codec.encode_query(codec.encode_params(request))
        
        assert codec.decode_request(SampleQuery, query) == request
    
    def test_round_trip_brackets(self):
        codec = Codec(CodecConfig(query=QueryEncoding(list_style=ListStyle.BRACKETS)))
        request = SampleQuery(symbol="X", side=SampleSide.BUY, quantity=Decimal("1"), ids=[7, 8])
        
        query = codec.encode_query(codec.encode_params(request))
        
        assert codec.decode_request(SampleQuery, query) == request
    
    def test_repeated_scalar_rejected(self, codec):
        with pytest.raises(CodecError):
            codec.decode_request(SampleQuery, "symbol=A&symbol=B&side=BUY&quantity=1")
    
    def test_missing_required_field(self, codec):
        with pytest.raises(CodecError):
            codec.decode_request(SampleQuery, "symbol=A&side=BUY")


# ============================================================
# RESPONSE DECODING TESTS
# ============================================================

class TestResponseDecoding:
    """Tests for Codec.decode and friends."""
    
    def test_json_numbers_parse_as_decimal(self, codec):
        payload = codec.loads(b'{"price": 0.1, "qty": 12}')
        
        assert payload["price"] == Decimal("0.1")
        assert isinstance(payload["price"], Decimal)
    
    def test_dataclass_with_positional_rows(self, codec):
        """[price, quantity] rows decode positionally; extra columns are ignored."""
        payload = codec.loads(
            b'{"lastUpdateId": 10, "updatedAt": 1690000000000,'
            b' "bids": [["4.00000000", "431.00000000", "ignored"]]}'
        )
        
        snapshot = codec.decode(Snapshot, payload)
        
        assert snapshot.last_update_id == 10
        assert snapshot.updated_at == SAMPLE_TIME
        assert snapshot.bids == [Level(Decimal("4.00000000"), Decimal("431.00000000"))]
        assert snapshot.note is None
    
    def test_missing_required_field(self, codec):
        with pytest.raises(CodecError) as exc_info:
            codec.decode(Snapshot, {"lastUpdateId": 1, "bids": []})
        
        assert "updatedAt" in exc_info.value.field
    
    def test_float_payload_rejected(self, codec):
        """Values that arrive as floats cannot be trusted as prices."""
        with pytest.raises(CodecError):
            codec.decode(Decimal, 0.1)
    
    def test_empty_string_as_none(self):
        lenient = Codec(CodecConfig(empty_string_as_none=True))
        strict = Codec()
        
        assert lenient.decode(Optional[Decimal], "") is None
        with pytest.raises(CodecError):
            strict.decode(Optional[Decimal], "")
    
    def test_timestamp_decoding(self, codec):
        seconds = Codec(CodecConfig(timestamp_format=TimestampFormat.SECONDS))
        
        assert codec.decode(datetime, "1690000000000") == SAMPLE_TIME
        assert codec.decode(datetime, "2023-07-22T04:26:40.000Z") == SAMPLE_TIME
        assert seconds.decode(datetime, 1690000000) == SAMPLE_TIME
    
    def test_enum_and_bool(self, codec):
        assert codec.decode(SampleSide, "SELL") is SampleSide.SELL
        assert codec.decode(bool, "true") is True
        with pytest.raises(CodecError):
            codec.decode(SampleSide, "HOLD")
        with pytest.raises(CodecError):
            codec.decode(int, True)


# ============================================================
# ENVELOPE / OUTCOME TESTS
# ============================================================

class TestResponseOutcome:
    """Tests for Codec.outcome classification."""
    
    def test_success(self, codec):
        response = WireResponse(200, b'{"lastUpdateId": 1, "updatedAt": 1690000000000, "bids": []}')
        
        outcome = codec.outcome(Snapshot, response, TABLE)
        
        assert outcome.is_success
        assert outcome.unwrap().last_update_id == 1
    
    def test_documented_error_code(self, codec):
        response = WireResponse(400, b'{"code": -1021, "msg": "Timestamp outside recvWindow"}')
        
        outcome = codec.outcome(Snapshot, response, TABLE)
        
        assert not outcome.is_success
        assert outcome.error.category is ErrorCategory.STALE_TIMESTAMP
        assert outcome.error.code == -1021
        assert outcome.error.http_status == 400
        with pytest.raises(ExchangeError):
            outcome.unwrap()
    
    def test_undocumented_code_is_unknown(self, codec):
        body = b'{"code": -9999, "msg": "Something new"}'
        
        outcome = codec.outcome(Snapshot, WireResponse(400, body), TABLE)
        
        assert isinstance(outcome.error, UnknownExchangeError)
        assert outcome.error.code == -9999
        assert outcome.error.raw_body == body
    
    def test_unparseable_throttling_page(self, codec):
        """Plain-text 429 pages still classify as rate limited."""
        response = WireResponse(429, b"Too Many Requests", {"Retry-After": "3"})
        
        error = codec.outcome(Snapshot, response, TABLE).error
        
        assert error.category is ErrorCategory.RATE_LIMITED
        assert error.retry_after == 3.0
    
    def test_unparseable_body_is_unknown(self, codec):
        response = WireResponse(502, b"<html>Bad Gateway</html>")
        
        error = codec.outcome(Snapshot, response, TABLE).error
        
        assert isinstance(error, UnknownExchangeError)
        assert error.raw_body == b"<html>Bad Gateway</html>"
    
    def test_undecodable_success_is_unknown(self, codec):
        error = codec.outcome(Snapshot, WireResponse(200, b'{"lastUpdateId": "x"}'), TABLE).error
        
        assert isinstance(error, UnknownExchangeError)
        assert isinstance(error.cause, CodecError)
    
    def test_wrapped_envelope_error_on_http_200(self):
        """A non-success code inside a 200 response is still an error."""
        codec = Codec(CodecConfig(envelope=ResponseEnvelope(
            code_key="code", message_key="msg", success_codes=("0",), data_key="data",
            item_code_key="sCode", item_message_key="sMsg",
        )))
        table = ErrorTable("wrapped", {"51008": ErrorCategory.INSUFFICIENT_FUNDS})
        body = b'{"code": "1", "msg": "Operation failed.", "data": [{"sCode": "51008", "sMsg": "Insufficient balance"}]}'
        
        error = codec.outcome(Any, WireResponse(200, body), table).error
        
        assert error.category is ErrorCategory.INSUFFICIENT_FUNDS
        assert error.code == "51008"
        assert error.exchange_message == "Insufficient balance"
    
    def test_wrapped_envelope_unwraps_data(self):
        codec = Codec(CodecConfig(envelope=ResponseEnvelope(
            code_key="retCode", message_key="retMsg", success_codes=(0,), data_key="result",
        )))
        body = b'{"retCode": 0, "retMsg": "OK", "result": {"value": "1.5"}}'
        
        assert codec.decode_response(Any, WireResponse(200, body), TABLE) == {"value": Decimal("1.5")}
    
    def test_nested_error_object(self):
        codec = Codec(CodecConfig(envelope=ResponseEnvelope(
            code_key="name", message_key="message", error_key="error",
        )))
        table = ErrorTable("nested", {"insufficient_funds_bid": ErrorCategory.INSUFFICIENT_FUNDS})
        body = b'{"error": {"name": "insufficient_funds_bid", "message": "not enough KRW"}}'
        
        error = codec.outcome(Any, WireResponse(400, body), table).error
        
        assert error.category is ErrorCategory.INSUFFICIENT_FUNDS
        assert error.exchange_message == "not enough KRW"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
