"""
Exchange Gateway - Middleware Pipeline.

============================================================
PURPOSE
============================================================
Run one typed request through authentication, rate-limit
admission and transport dispatch, retrying transient failures.

STAGES (fixed order, composed around the transport):
    
    Authentication ──► Admission ──► [extra stages] ──► Transport
          ▲                                                │
          └──────────── retry decision ◄───────────────────┘

ATTEMPT STATE MACHINE:
    
    PENDING ──► SIGNING ──► ADMITTED ──► IN_FLIGHT ──► SUCCEEDED
                   │                         │
                   ▼                         ├──► FAILED
                 FAILED                      ▼
                                         RETRYABLE ──► FAILED
                                             │        (exhausted)
                                             ▼
                                          PENDING (next attempt)
    
    Cancellation moves any non-terminal state to FAILED.

INVARIANTS:
- Attempts of one logical request run strictly one after another
- Every attempt gets a fresh timestamp, nonce and signature
- Attempts never exceed RetryPolicy.max_attempts
- Exhaustion re-raises the last classified error object itself

============================================================
"""

import asyncio
import functools
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from .clock import ClockProtocol, get_default_clock
from .codec import Codec
from .config import RetryConfig
from .contract import ExchangeRequest, PreparedRequest, ResponseOutcome, WireRequest, WireResponse
from .errors import (
    ErrorTable,
    ExchangeError,
    GatewayError,
    RateLimitTimeout,
    SigningError,
    TransportError,
)
from .logging_utils import AdapterLogger
from .metrics import AdapterMetrics
from .rate_limit import Admission, RateBudget
from .signing import AuthorizedRequest, Credentials, Signer


logger = logging.getLogger(__name__)


# ============================================================
# ATTEMPT STATES
# ============================================================

class AttemptState(Enum):
    """State of the current attempt of one logical request."""
    
    PENDING = "pending"
    SIGNING = "signing"
    ADMITTED = "admitted"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    RETRYABLE = "retryable"
    FAILED = "failed"


TERMINAL_STATES: Set[AttemptState] = {AttemptState.SUCCEEDED, AttemptState.FAILED}

VALID_TRANSITIONS: Dict[AttemptState, Set[AttemptState]] = {
    AttemptState.PENDING: {AttemptState.SIGNING, AttemptState.FAILED},
    AttemptState.SIGNING: {AttemptState.ADMITTED, AttemptState.FAILED},
    AttemptState.ADMITTED: {AttemptState.IN_FLIGHT, AttemptState.FAILED},
    AttemptState.IN_FLIGHT: {
        AttemptState.SUCCEEDED,
        AttemptState.RETRYABLE,
        AttemptState.FAILED,
    },
    AttemptState.RETRYABLE: {AttemptState.PENDING, AttemptState.FAILED},
    AttemptState.SUCCEEDED: set(),
    AttemptState.FAILED: set(),
}


@dataclass
class AttemptTransition:
    """One recorded state change."""
    
    request_id: str
    attempt: int
    from_state: AttemptState
    to_state: AttemptState
    timestamp: datetime
    reason: str = ""
    details: Dict[str, Any] = field(default_factory=dict)


class AttemptStateMachine:
    """
    Tracks the attempts of one logical request.
    
    Invalid transitions raise ValueError; the attempt counter only
    moves on RETRYABLE -> PENDING and never past max_attempts.
    """
    
    def __init__(self, request_id: str, max_attempts: int, clock: Optional[ClockProtocol] = None):
        self.request_id = request_id
        self.max_attempts = max_attempts
        self._clock = clock or get_default_clock()
        self._state = AttemptState.PENDING
        self._attempt = 1
        self._history: List[AttemptTransition] = []
        self._listeners: List[Callable[[AttemptTransition], None]] = []
        self.last_timestamp_ms: Optional[int] = None
        """Timestamp signed into the previous attempt."""
    
    @property
    def current_state(self) -> AttemptState:
        return self._state
    
    @property
    def attempt(self) -> int:
        return self._attempt
    
    @property
    def history(self) -> List[AttemptTransition]:
        return list(self._history)
    
    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES
    
    @property
    def attempts_remaining(self) -> int:
        return self.max_attempts - self._attempt
    
    def add_listener(self, listener: Callable[[AttemptTransition], None]) -> None:
        self._listeners.append(listener)
    
    def can_transition_to(self, target: AttemptState) -> tuple[bool, str]:
        if target not in VALID_TRANSITIONS[self._state]:
            return False, f"{self._state.value} -> {target.value} is not a valid transition"
        if target is AttemptState.PENDING and self._attempt >= self.max_attempts:
            return False, f"attempt limit {self.max_attempts} reached"
        return True, ""
    
    def transition_to(
        self,
        target: AttemptState,
        reason: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> AttemptTransition:
        """
        Move to a new state.
        
        Raises:
            ValueError: If the transition is not allowed
        """
        allowed, why = self.can_transition_to(target)
        if not allowed:
            raise ValueError(f"Request {self.request_id} attempt {self._attempt}: {why}")
        
        if target is AttemptState.PENDING:
            self._attempt += 1
        
        event = AttemptTransition(
            request_id=self.request_id,
            attempt=self._attempt,
            from_state=self._state,
            to_state=target,
            timestamp=self._clock.now(),
            reason=reason,
            details=details or {},
        )
        self._state = target
        self._history.append(event)
        
        for listener in self._listeners:
            listener(event)
        
        logger.debug(
            f"Request {self.request_id} attempt {event.attempt}: "
            f"{event.from_state.value} -> {event.to_state.value}"
            + (f" ({reason})" if reason else "")
        )
        return event
    
    def fail(self, reason: str) -> None:
        """Move to FAILED unless already terminal."""
        if not self.is_terminal:
            self.transition_to(AttemptState.FAILED, reason=reason)


# ============================================================
# RETRY POLICY
# ============================================================

@dataclass
class RetryPolicy:
    """
    Bounded exponential backoff.
    
    Only TransportError and rate-limited ExchangeError are retried.
    An exchange retry-after hint replaces the computed delay.
    """
    
    max_attempts: int = 3
    initial_delay: float = 0.5
    max_delay: float = 30.0
    multiplier: float = 2.0
    
    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        config.validate()
        return cls(
            max_attempts=config.max_attempts,
            initial_delay=config.initial_delay_seconds,
            max_delay=config.max_delay_seconds,
            multiplier=config.backoff_multiplier,
        )
    
    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, TransportError):
            return True
        if isinstance(error, ExchangeError):
            return error.retryable
        return False
    
    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Delay before the attempt following `attempt` (1-based).
        
        Args:
            attempt: Number of the attempt that just failed
            retry_after: Exchange hint in seconds
        """
        if retry_after is not None:
            return min(max(retry_after, 0.0), self.max_delay)
        return min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)
    
    def schedule(self) -> List[float]:
        """Delays between consecutive attempts without hints."""
        return [self.delay_for(n) for n in range(1, self.max_attempts)]


# ============================================================
# ATTEMPT CONTEXT
# ============================================================

@dataclass
class AttemptContext:
    """Everything stages know about the current attempt."""
    
    request: ExchangeRequest
    request_id: str
    machine: AttemptStateMachine
    base_url: str
    admission_timeout: Optional[float] = None
    
    prepared: Optional[PreparedRequest] = None
    authorized: Optional[AuthorizedRequest] = None
    wire: Optional[WireRequest] = None
    admission: Optional[Admission] = None
    
    @property
    def attempt(self) -> int:
        return self.machine.attempt
    
    @property
    def operation(self) -> str:
        return type(self.request).__name__


Handler = Callable[[AttemptContext], Awaitable[WireResponse]]


# ============================================================
# STAGES
# ============================================================

class Middleware(ABC):
    """One pipeline stage wrapping the rest of the chain."""
    
    @abstractmethod
    async def handle(self, ctx: AttemptContext, call_next: Handler) -> WireResponse:
        pass


def compose(stages: Sequence[Middleware], terminal: Handler) -> Handler:
    """Wrap `terminal` so that stages[0] runs first."""
    handler = terminal
    for stage in reversed(stages):
        handler = functools.partial(stage.handle, call_next=handler)
    return handler


class AuthenticationStage(Middleware):
    """
    Encode the request and inject authentication.
    
    Runs on every attempt, so timestamp, nonce and signature are
    always fresh. Timestamps of one logical request strictly
    increase even if the clock has not moved.
    """
    
    def __init__(
        self,
        codec: Codec,
        signer: Optional[Signer] = None,
        credentials: Optional[Credentials] = None,
        clock: Optional[ClockProtocol] = None,
        nonce_factory: Optional[Callable[[], str]] = None,
    ):
        self._codec = codec
        self._signer = signer
        self._credentials = credentials
        self._clock = clock or get_default_clock()
        self._nonce_factory = nonce_factory or (lambda: str(uuid.uuid4()))
        self.time_offset_ms = 0
        """Server time minus local time, applied to signed timestamps."""
    
    def _timestamp_ms(self, machine: AttemptStateMachine) -> int:
        timestamp = self._clock.timestamp_ms() + self.time_offset_ms
        if machine.last_timestamp_ms is not None and timestamp <= machine.last_timestamp_ms:
            timestamp = machine.last_timestamp_ms + 1
        machine.last_timestamp_ms = timestamp
        return timestamp
    
    async def handle(self, ctx: AttemptContext, call_next: Handler) -> WireResponse:
        ctx.machine.transition_to(AttemptState.SIGNING)
        prepared = self._codec.prepare(ctx.request)
        ctx.prepared = prepared
        
        if prepared.signed:
            if self._signer is None or self._credentials is None:
                raise SigningError(f"{ctx.operation} requires credentials")
            authorized = self._signer.authorize(
                prepared,
                self._credentials,
                self._timestamp_ms(ctx.machine),
                self._nonce_factory(),
            )
        else:
            authorized = AuthorizedRequest(
                query=self._codec.encode_query(prepared.query_params),
                body=prepared.body,
            )
        
        headers = {}
        if prepared.content_type:
            headers["Content-Type"] = prepared.content_type
        headers.update(authorized.headers)
        
        ctx.authorized = authorized
        ctx.wire = WireRequest(
            method=prepared.method.value,
            base_url=ctx.base_url,
            path=prepared.path,
            query=authorized.query,
            body=authorized.body,
            headers=headers,
        )
        return await call_next(ctx)


class AdmissionStage(Middleware):
    """
    Gate the attempt on the RateBudget of its endpoint class.
    
    The in-flight slot is held until the transport returns.
    """
    
    def __init__(self, budgets: Dict[str, RateBudget], metrics: Optional[AdapterMetrics] = None):
        self._budgets = budgets
        self._metrics = metrics
    
    def budget_for(self, endpoint_class: str) -> Optional[RateBudget]:
        return self._budgets.get(endpoint_class) or self._budgets.get("default")
    
    async def handle(self, ctx: AttemptContext, call_next: Handler) -> WireResponse:
        budget = self.budget_for(ctx.prepared.endpoint_class)
        if budget is None:
            ctx.machine.transition_to(AttemptState.ADMITTED, reason="no budget")
            return await call_next(ctx)
        
        try:
            admission = await budget.acquire(ctx.prepared.weight, ctx.admission_timeout)
        except RateLimitTimeout as e:
            if self._metrics:
                self._metrics.record_admission_timeout(e)
            raise
        
        if self._metrics:
            self._metrics.record_admission(admission.waited)
        ctx.admission = admission
        ctx.machine.transition_to(
            AttemptState.ADMITTED,
            details={"budget": budget.name, "waited": admission.waited},
        )
        async with admission:
            return await call_next(ctx)


class TransportStage:
    """Terminal handler: dispatch the wire request."""
    
    def __init__(self, transport, adapter_logger: Optional[AdapterLogger] = None):
        self._transport = transport
        self._log = adapter_logger
    
    async def __call__(self, ctx: AttemptContext) -> WireResponse:
        ctx.machine.transition_to(AttemptState.IN_FLIGHT)
        wire = ctx.wire
        if self._log:
            self._log.log_request(
                ctx.operation,
                ctx.request_id,
                ctx.attempt,
                wire.method,
                wire.path,
                query=wire.query,
                headers=wire.headers,
                body=wire.body,
            )
        return await self._transport.send(wire)


# ============================================================
# PIPELINE
# ============================================================

_DEFAULT = object()


class Pipeline:
    """
    Exchange-agnostic request executor.
    
    Everything exchange-specific arrives through the codec, the
    signer and the error table.
    """
    
    def __init__(
        self,
        exchange_id: str,
        base_url: str,
        codec: Codec,
        error_table: ErrorTable,
        transport,
        signer: Optional[Signer] = None,
        credentials: Optional[Credentials] = None,
        budgets: Optional[Dict[str, RateBudget]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[ClockProtocol] = None,
        nonce_factory: Optional[Callable[[], str]] = None,
        extra_stages: Sequence[Middleware] = (),
        metrics: Optional[AdapterMetrics] = None,
        adapter_logger: Optional[AdapterLogger] = None,
        admission_timeout: Optional[float] = None,
        log_requests: bool = True,
    ):
        self.exchange_id = exchange_id
        self.base_url = base_url
        self._codec = codec
        self._errors = error_table
        self._clock = clock or get_default_clock()
        self._retry = retry_policy or RetryPolicy()
        self._admission_timeout = admission_timeout
        self.metrics = metrics or AdapterMetrics(exchange_id)
        self._log = adapter_logger or AdapterLogger(exchange_id)
        self._listeners: List[Callable[[AttemptTransition], None]] = []
        
        self.budgets = dict(budgets or {})
        self.authentication = AuthenticationStage(codec, signer, credentials, self._clock, nonce_factory)
        self.admission = AdmissionStage(self.budgets, self.metrics)
        self._handler = compose(
            [self.authentication, self.admission, *extra_stages],
            TransportStage(transport, self._log if log_requests else None),
        )
    
    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry
    
    @property
    def adapter_logger(self) -> AdapterLogger:
        return self._log
    
    def add_listener(self, listener: Callable[[AttemptTransition], None]) -> None:
        """Observe attempt transitions of every request."""
        self._listeners.append(listener)
    
    async def send(self, request: ExchangeRequest, admission_timeout: Any = _DEFAULT) -> Any:
        """
        Execute a request, retrying transient failures.
        
        Args:
            request: Typed request
            admission_timeout: Admission deadline in seconds
                (None waits indefinitely; default from configuration)
        
        Returns:
            Decoded response of request.response_type
        
        Raises:
            CodecError, SigningError, RateLimitTimeout, TransportError,
            ExchangeError, UnknownExchangeError
        """
        timeout = self._admission_timeout if admission_timeout is _DEFAULT else admission_timeout
        request_id = self._log.next_request_id()
        machine = AttemptStateMachine(request_id, self._retry.max_attempts, self._clock)
        for listener in self._listeners:
            machine.add_listener(listener)
        
        while True:
            ctx = AttemptContext(
                request=request,
                request_id=request_id,
                machine=machine,
                base_url=self.base_url,
                admission_timeout=timeout,
            )
            started = self._clock.monotonic()
            status = None
            
            try:
                response = await self._handler(ctx)
                status = response.status
                result = self._codec.decode_response(request.response_type, response, self._errors)
            except asyncio.CancelledError:
                machine.fail("cancelled")
                raise
            except GatewayError as error:
                dispatched = machine.current_state is AttemptState.IN_FLIGHT
                if dispatched:
                    self._record(ctx, started, False, status, error)
                
                if not (dispatched and self._retry.is_retryable(error)):
                    machine.fail(f"{type(error).__name__}: {error.message}")
                    raise
                
                machine.transition_to(AttemptState.RETRYABLE, reason=type(error).__name__)
                if machine.attempts_remaining <= 0:
                    machine.transition_to(AttemptState.FAILED, reason="attempts exhausted")
                    raise
                
                delay = self._retry.delay_for(machine.attempt, getattr(error, "retry_after", None))
                self._log.log_retry(ctx.operation, request_id, machine.attempt, self._retry.max_attempts, delay, error)
                self.metrics.record_retry()
                try:
                    await self._clock.sleep(delay)
                except asyncio.CancelledError:
                    machine.fail("cancelled during backoff")
                    raise
                machine.transition_to(AttemptState.PENDING, reason=f"retry after {delay:.3f}s")
                continue
            except Exception as error:
                machine.fail(f"unexpected {type(error).__name__}")
                raise
            
            self._record(ctx, started, True, status, None)
            machine.transition_to(AttemptState.SUCCEEDED)
            return result
    
    async def outcome(self, request: ExchangeRequest, admission_timeout: Any = _DEFAULT) -> ResponseOutcome:
        """Like send(), but exchange errors come back as a failed outcome."""
        try:
            return ResponseOutcome.success(await self.send(request, admission_timeout))
        except ExchangeError as e:
            return ResponseOutcome.failure(e)
    
    def _record(
        self,
        ctx: AttemptContext,
        started: float,
        success: bool,
        status: Optional[int],
        error: Optional[BaseException],
    ) -> None:
        latency_ms = (self._clock.monotonic() - started) * 1000
        self.metrics.record_attempt(ctx.prepared.path, latency_ms, success, status, error)
        self._log.log_response(ctx.operation, ctx.request_id, ctx.attempt, success, latency_ms, status, error)
