"""
Pipeline Tests.

============================================================
PURPOSE
============================================================
Tests for the middleware pipeline and its retry state machine.

TEST CATEGORIES:
- Stage order and wire output
- Retry bound, backoff and retry-after hints
- Fresh timestamps per attempt
- Terminal (non-retried) failures
- Attempt state transitions and cancellation

============================================================
"""

import asyncio
from dataclasses import dataclass
from typing import Any, ClassVar

import pytest

from exchange_gateway.clock import MockClock
from exchange_gateway.codec import BodyFormat, Codec, CodecConfig, FieldCase
from exchange_gateway.contract import AuthKind, ExchangeRequest, WireResponse
from exchange_gateway.errors import (
    CodecError,
    ErrorCategory,
    ErrorTable,
    ExchangeError,
    RateLimitTimeout,
    SigningError,
    TransportError,
    UnknownExchangeError,
)
from exchange_gateway.metrics import MetricType
from exchange_gateway.mock import MockTransport, json_response
from exchange_gateway.pipeline import (
    AttemptState,
    AttemptStateMachine,
    Middleware,
    Pipeline,
    RetryPolicy,
)
from exchange_gateway.rate_limit import RateBudget
from exchange_gateway.signing import Credentials, HmacQuerySigner
from exchange_gateway.transport import Transport


# ============================================================
# FIXTURES
# ============================================================

SIGNATURE_AT_0 = "62cdbf47f7c959fae8e0c757e0f8cec8d799bb712bb41b56f3217cc3a6aac4df"
SIGNATURE_AT_1 = "3a9cae0f5fd87758aa173fcc896bc2bed8aa1a050ef0ddd1d7e96a980264be20"
SIGNATURE_AT_1500 = "3b05d250d2560f96fd8ce1391914145f2dfab2c4077ba8653b23b5a8359fd8b7"

CODEC = Codec(CodecConfig(field_case=FieldCase.CAMEL, body_format=BodyFormat.QUERY))

ERRORS = ErrorTable("testex", {
    -1003: ErrorCategory.RATE_LIMITED,
    -1021: ErrorCategory.STALE_TIMESTAMP,
    -1022: ErrorCategory.INVALID_SIGNATURE,
    -2010: ErrorCategory.INSUFFICIENT_FUNDS,
})


@dataclass
class Pong:
    server_time: int


@dataclass
class Ping(ExchangeRequest):
    path: ClassVar[str] = "/api/ping"
    response_type: ClassVar[Any] = Pong


@dataclass
class SignedPing(ExchangeRequest):
    path: ClassVar[str] = "/api/account"
    response_type: ClassVar[Any] = Pong
    auth: ClassVar[AuthKind] = AuthKind.SIGNED
    
    symbol: str = "BTCUSDT"


@dataclass
class FloatPing(ExchangeRequest):
    path: ClassVar[str] = "/api/ping"
    response_type: ClassVar[Any] = Pong
    
    amount: Any = 0.5


def ok(server_time=1):
    return json_response({"serverTime": server_time})


def error_reply(code, status=400, headers=None):
    return json_response({"code": code, "msg": "failed"}, status=status, headers=headers)


@pytest.fixture
def clock():
    return MockClock()


@pytest.fixture
def transport(clock):
    return MockTransport(clock=clock)


def build_pipeline(transport, clock, credentials=True, **kwargs):
    kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=3, initial_delay=0.5, max_delay=30.0))
    return Pipeline(
        exchange_id="testex",
        base_url="https://api.test",
        codec=CODEC,
        error_table=ERRORS,
        transport=transport,
        signer=HmacQuerySigner(CODEC, recv_window_ms=None),
        credentials=Credentials("my-key", "s3cr3t") if credentials else None,
        clock=clock,
        **kwargs,
    )


def timestamps(transport):
    return [
        int(dict(part.split("=") for part in r.query.split("&"))["timestamp"])
        for r in transport.requests
    ]


# ============================================================
# HAPPY PATH TESTS
# ============================================================

class TestPipelineSend:
    """Tests for a single successful request."""
    
    @pytest.mark.asyncio
    async def test_public_request(self, transport, clock):
        transport.enqueue(ok(42))
        pipeline = build_pipeline(transport, clock, credentials=False)
        
        result = await pipeline.send(Ping())
        
        assert result == Pong(server_time=42)
        assert transport.last_request.url == "https://api.test/api/ping"
        assert transport.last_request.headers == {}
    
    @pytest.mark.asyncio
    async def test_signed_request_wire_form(self, transport, clock):
        transport.enqueue(ok())
        pipeline = build_pipeline(transport, clock)
        
        await pipeline.send(SignedPing())
        
        request = transport.last_request
        assert request.method == "GET"
        assert request.query == f"symbol=BTCUSDT&timestamp=1690000000000&signature={SIGNATURE_AT_0}"
        assert request.headers == {"X-MBX-APIKEY": "my-key"}
    
    @pytest.mark.asyncio
    async def test_time_offset_applied(self, transport, clock):
        transport.enqueue(ok())
        pipeline = build_pipeline(transport, clock)
        pipeline.authentication.time_offset_ms = 1500
        
        await pipeline.send(SignedPing())
        
        assert transport.last_request.query.endswith(f"timestamp=1690000001500&signature={SIGNATURE_AT_1500}")
    
    @pytest.mark.asyncio
    async def test_extra_stage_runs_after_admission(self, transport, clock):
        seen = []
        
        class TagStage(Middleware):
            async def handle(self, ctx, call_next):
                seen.append(ctx.machine.current_state)
                ctx.wire.headers["X-Trace"] = ctx.request_id
                return await call_next(ctx)
        
        transport.enqueue(ok())
        pipeline = build_pipeline(transport, clock, credentials=False, extra_stages=[TagStage()])
        
        await pipeline.send(Ping())
        
        assert seen == [AttemptState.ADMITTED]
        assert transport.last_request.headers["X-Trace"] == "testex-1"
    
    @pytest.mark.asyncio
    async def test_outcome_returns_exchange_error(self, transport, clock):
        transport.enqueue(error_reply(-2010))
        pipeline = build_pipeline(transport, clock)
        
        outcome = await pipeline.outcome(SignedPing())
        
        assert not outcome.is_success
        assert outcome.error.category is ErrorCategory.INSUFFICIENT_FUNDS


# ============================================================
# RETRY TESTS
# ============================================================

class TestRetry:
    """Tests for the retry loop."""
    
    @pytest.mark.asyncio
    async def test_transport_error_retried_with_backoff(self, transport, clock):
        transport.enqueue(TransportError("reset"), TransportError("reset"), ok())
        pipeline = build_pipeline(transport, clock)
        
        result = await pipeline.send(SignedPing())
        
        assert result == Pong(1)
        assert len(transport.requests) == 3
        assert clock.sleeps == [0.5, 1.0]
        assert pipeline.metrics.count(MetricType.RETRY) == 2
        assert pipeline.metrics.count(MetricType.TRANSPORT_ERROR) == 2
    
    @pytest.mark.asyncio
    async def test_every_attempt_is_freshly_signed(self, transport, clock):
        transport.enqueue(TransportError("reset"), TransportError("reset"), ok())
        pipeline = build_pipeline(transport, clock)
        
        await pipeline.send(SignedPing())
        
        assert timestamps(transport) == [1690000000000, 1690000000500, 1690000001500]
        signatures = {r.query.rsplit("signature=", 1)[1] for r in transport.requests}
        assert len(signatures) == 3
    
    @pytest.mark.asyncio
    async def test_timestamps_increase_on_frozen_clock(self, transport, clock):
        """With zero backoff the clock does not move, yet timestamps still increase."""
        transport.enqueue(TransportError("reset"), ok())
        pipeline = build_pipeline(transport, clock, retry_policy=RetryPolicy(max_attempts=2, initial_delay=0.0))
        
        await pipeline.send(SignedPing())
        
        assert timestamps(transport) == [1690000000000, 1690000000001]
        assert transport.requests[1].query.endswith(SIGNATURE_AT_1)
    
    @pytest.mark.asyncio
    async def test_fresh_nonce_per_attempt(self, transport, clock):
        nonces = []
        
        def nonce_factory():
            nonces.append(f"n-{len(nonces)}")
            return nonces[-1]
        
        transport.enqueue(TransportError("reset"), ok())
        pipeline = build_pipeline(transport, clock, nonce_factory=nonce_factory)
        
        await pipeline.send(SignedPing())
        
        assert nonces == ["n-0", "n-1"]
    
    @pytest.mark.asyncio
    async def test_exhaustion_reraises_last_error_object(self, transport, clock):
        errors = [TransportError(f"reset {i}") for i in range(3)]
        transport.enqueue(*errors)
        pipeline = build_pipeline(transport, clock)
        
        with pytest.raises(TransportError) as exc_info:
            await pipeline.send(SignedPing())
        
        assert exc_info.value is errors[-1]
        assert len(transport.requests) == 3
        assert clock.sleeps == [0.5, 1.0]
    
    @pytest.mark.asyncio
    async def test_rate_limited_uses_retry_after(self, transport, clock):
        transport.enqueue(error_reply(-1003, status=429, headers={"Retry-After": "2"}), ok())
        pipeline = build_pipeline(transport, clock)
        
        await pipeline.send(SignedPing())
        
        assert clock.sleeps == [2.0]
    
    @pytest.mark.asyncio
    async def test_retry_after_capped_at_max_delay(self, transport, clock):
        transport.enqueue(error_reply(-1003, status=429, headers={"Retry-After": "120"}), ok())
        pipeline = build_pipeline(transport, clock)
        
        await pipeline.send(SignedPing())
        
        assert clock.sleeps == [30.0]
    
    @pytest.mark.asyncio
    async def test_plain_text_429_retried(self, transport, clock):
        throttled = WireResponse(429, b"Too many API requests.")
        transport.enqueue(throttled, throttled, throttled)
        pipeline = build_pipeline(transport, clock)
        
        with pytest.raises(ExchangeError) as exc_info:
            await pipeline.send(Ping())
        
        assert exc_info.value.category is ErrorCategory.RATE_LIMITED
        assert len(transport.requests) == 3
    
    @pytest.mark.asyncio
    async def test_single_attempt_policy(self, transport, clock):
        transport.enqueue(TransportError("reset"))
        pipeline = build_pipeline(transport, clock, retry_policy=RetryPolicy(max_attempts=1))
        
        with pytest.raises(TransportError):
            await pipeline.send(Ping())
        
        assert len(transport.requests) == 1
        assert clock.sleeps == []


# ============================================================
# TERMINAL FAILURE TESTS
# ============================================================

class TestTerminalFailures:
    """Failures that must never be retried."""
    
    @pytest.mark.asyncio
    @pytest.mark.parametrize("code,category", [
        (-1022, ErrorCategory.INVALID_SIGNATURE),
        (-2010, ErrorCategory.INSUFFICIENT_FUNDS),
        (-1021, ErrorCategory.STALE_TIMESTAMP),
    ])
    async def test_classified_error_not_retried(self, transport, clock, code, category):
        transport.enqueue(error_reply(code))
        pipeline = build_pipeline(transport, clock)
        
        with pytest.raises(ExchangeError) as exc_info:
            await pipeline.send(SignedPing())
        
        assert exc_info.value.category is category
        assert exc_info.value.code == code
        assert len(transport.requests) == 1
    
    @pytest.mark.asyncio
    async def test_unknown_code(self, transport, clock):
        transport.enqueue(error_reply(-9999))
        pipeline = build_pipeline(transport, clock)
        
        with pytest.raises(UnknownExchangeError) as exc_info:
            await pipeline.send(SignedPing())
        
        assert exc_info.value.code == -9999
        assert b"-9999" in exc_info.value.raw_body
        assert len(transport.requests) == 1
    
    @pytest.mark.asyncio
    async def test_missing_credentials_never_dispatched(self, transport, clock):
        pipeline = build_pipeline(transport, clock, credentials=False)
        
        with pytest.raises(SigningError):
            await pipeline.send(SignedPing())
        
        assert transport.requests == []
    
    @pytest.mark.asyncio
    async def test_codec_error_never_dispatched(self, transport, clock):
        pipeline = build_pipeline(transport, clock)
        
        with pytest.raises(CodecError):
            await pipeline.send(FloatPing())
        
        assert transport.requests == []
    
    @pytest.mark.asyncio
    async def test_admission_timeout_not_retried(self, transport, clock):
        budget = RateBudget("default", capacity=1, refill_interval=10.0, clock=clock)
        transport.enqueue(ok(), ok())
        pipeline = build_pipeline(transport, clock, budgets={"default": budget})
        
        await pipeline.send(Ping())
        with pytest.raises(RateLimitTimeout):
            await pipeline.send(Ping(), admission_timeout=1.0)
        
        assert len(transport.requests) == 1
        assert pipeline.metrics.count(MetricType.ADMISSION_TIMEOUT) == 1


# ============================================================
# STATE MACHINE TESTS
# ============================================================

class TestAttemptStates:
    """Tests for attempt state transitions."""
    
    @pytest.mark.asyncio
    async def test_transitions_for_retry_then_success(self, transport, clock):
        transitions = []
        transport.enqueue(TransportError("reset"), ok())
        pipeline = build_pipeline(transport, clock)
        pipeline.add_listener(lambda t: transitions.append((t.attempt, t.from_state, t.to_state)))
        
        await pipeline.send(SignedPing())
        
        S = AttemptState
        assert transitions == [
            (1, S.PENDING, S.SIGNING),
            (1, S.SIGNING, S.ADMITTED),
            (1, S.ADMITTED, S.IN_FLIGHT),
            (1, S.IN_FLIGHT, S.RETRYABLE),
            (2, S.RETRYABLE, S.PENDING),
            (2, S.PENDING, S.SIGNING),
            (2, S.SIGNING, S.ADMITTED),
            (2, S.ADMITTED, S.IN_FLIGHT),
            (2, S.IN_FLIGHT, S.SUCCEEDED),
        ]
    
    @pytest.mark.asyncio
    async def test_exhaustion_ends_failed(self, transport, clock):
        transitions = []
        transport.enqueue(TransportError("a"), TransportError("b"))
        pipeline = build_pipeline(transport, clock, retry_policy=RetryPolicy(max_attempts=2, initial_delay=0.1))
        pipeline.add_listener(transitions.append)
        
        with pytest.raises(TransportError):
            await pipeline.send(Ping())
        
        assert transitions[-2].to_state is AttemptState.RETRYABLE
        assert transitions[-1].to_state is AttemptState.FAILED
        assert transitions[-1].reason == "attempts exhausted"
        assert max(t.attempt for t in transitions) == 2
    
    @pytest.mark.asyncio
    async def test_cancellation_moves_to_failed(self, clock):
        transitions = []
        dispatched = asyncio.Event()
        
        class HangingTransport(Transport):
            async def send(self, request):
                dispatched.set()
                await asyncio.Event().wait()
        
        pipeline = build_pipeline(HangingTransport(), clock)
        pipeline.add_listener(transitions.append)
        
        task = asyncio.create_task(pipeline.send(Ping()))
        await dispatched.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        
        assert transitions[-1].from_state is AttemptState.IN_FLIGHT
        assert transitions[-1].to_state is AttemptState.FAILED
        assert transitions[-1].reason == "cancelled"
    
    def test_invalid_transition(self, clock):
        machine = AttemptStateMachine("r-1", max_attempts=2, clock=clock)
        
        with pytest.raises(ValueError):
            machine.transition_to(AttemptState.IN_FLIGHT)
    
    def test_attempt_limit(self, clock):
        machine = AttemptStateMachine("r-1", max_attempts=1, clock=clock)
        for state in (AttemptState.SIGNING, AttemptState.ADMITTED, AttemptState.IN_FLIGHT, AttemptState.RETRYABLE):
            machine.transition_to(state)
        
        allowed, reason = machine.can_transition_to(AttemptState.PENDING)
        
        assert not allowed
        assert "attempt limit" in reason
        with pytest.raises(ValueError):
            machine.transition_to(AttemptState.PENDING)


# ============================================================
# RETRY POLICY TESTS
# ============================================================

class TestRetryPolicy:
    """Tests for RetryPolicy."""
    
    def test_schedule(self):
        policy = RetryPolicy(max_attempts=4, initial_delay=0.5, max_delay=1.5, multiplier=2.0)
        
        assert policy.schedule() == [0.5, 1.0, 1.5]
    
    def test_retry_classification(self):
        policy = RetryPolicy()
        
        assert policy.is_retryable(TransportError("x"))
        assert policy.is_retryable(ExchangeError(ErrorCategory.RATE_LIMITED, "ex"))
        assert not policy.is_retryable(ExchangeError(ErrorCategory.SERVICE_UNAVAILABLE, "ex"))
        assert not policy.is_retryable(ExchangeError(ErrorCategory.STALE_TIMESTAMP, "ex"))
        assert not policy.is_retryable(SigningError("x"))
        assert not policy.is_retryable(CodecError("f", "bad"))
    
    def test_negative_hint_treated_as_zero(self):
        assert RetryPolicy().delay_for(1, retry_after=-5) == 0.0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
