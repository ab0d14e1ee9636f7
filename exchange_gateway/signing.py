"""
Exchange Gateway - Credentials & Signers.

============================================================
PURPOSE
============================================================
Hold API key material and turn a signable view of a request
into a signature or bearer token.

SIGNING SCHEMES (closed set):
- HMAC_QUERY:  HMAC-SHA256 hex appended as a query parameter
- HMAC_HEADER: HMAC-SHA256 sent in headers, prehash layout and
               digest encoding configured per exchange
- JWT_BEARER:  HS256 JWT carrying a hash of the query

============================================================
SECURITY REQUIREMENTS
============================================================
1. Secret bytes live in one mutable buffer, zeroed on release
2. Credential material never reaches logs, reprs or errors
3. Verification uses hmac.compare_digest
4. Signers perform no I/O; failures are SigningError only

============================================================
"""

import base64
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Dict, Optional, Tuple, Type, Union

import jwt

from .codec import Codec, TimestampFormat, format_epoch_millis
from .contract import PreparedRequest
from .errors import SigningError


logger = logging.getLogger(__name__)


# ============================================================
# CREDENTIALS
# ============================================================

class Credentials:
    """
    API key, secret and optional passphrase.
    
    Read-only after construction. release() overwrites the secret
    buffer with zeros; the instance is a context manager that
    releases on every exit path. Pass the secret as bytes or a
    bytearray when the caller's own copy must not outlive it.
    """
    
    __slots__ = ("_api_key", "_secret", "_passphrase", "_released")
    
    def __init__(
        self,
        api_key: str,
        api_secret: Union[str, bytes, bytearray],
        passphrase: Optional[str] = None,
    ):
        if not api_key:
            raise SigningError("API key is required")
        if not api_secret:
            raise SigningError("API secret is required")
        
        secret = api_secret.encode("utf-8") if isinstance(api_secret, str) else api_secret
        object.__setattr__(self, "_api_key", api_key)
        object.__setattr__(self, "_secret", bytearray(secret))
        object.__setattr__(self, "_passphrase", passphrase)
        object.__setattr__(self, "_released", False)
    
    def __setattr__(self, name, value):
        raise AttributeError("Credentials are immutable")
    
    def __repr__(self) -> str:
        state = "released" if self._released else "active"
        key = f"{self._api_key[:4]}...***" if len(self._api_key) > 4 else "***"
        return f"Credentials(api_key='{key}', secret=***, {state})"
    
    __str__ = __repr__
    
    def __reduce__(self):
        raise TypeError("Credentials cannot be pickled")
    
    def __enter__(self) -> "Credentials":
        return self
    
    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
    
    @property
    def released(self) -> bool:
        return self._released
    
    @property
    def api_key(self) -> str:
        self._check()
        return self._api_key
    
    @property
    def passphrase(self) -> Optional[str]:
        self._check()
        return self._passphrase
    
    def secret_buffer(self) -> bytearray:
        """The live secret buffer; never store or log it."""
        self._check()
        return self._secret
    
    def release(self) -> None:
        """Zero the secret and forbid further use. Idempotent."""
        for i in range(len(self._secret)):
            self._secret[i] = 0
        object.__setattr__(self, "_passphrase", None)
        object.__setattr__(self, "_released", True)
    
    def _check(self) -> None:
        if self._released:
            raise SigningError("Credentials have been released")


# ============================================================
# SIGNING TYPES
# ============================================================

class SigningScheme(Enum):
    """Supported authentication schemes."""
    
    HMAC_QUERY = "hmac_query"
    HMAC_HEADER = "hmac_header"
    JWT_BEARER = "jwt_bearer"


class SignaturePlacement(Enum):
    """Where a signature travels."""
    
    HEADER = "header"
    QUERY = "query"
    BEARER = "bearer"


@dataclass(frozen=True)
class SignableRequest:
    """
    Exactly what a signer needs to see of one attempt.
    
    Built fresh per attempt; timestamp and nonce are never reused.
    """
    
    method: str
    path: str
    query: str = ""
    body: bytes = b""
    timestamp: str = ""
    nonce: str = ""
    recv_window: Optional[int] = None
    
    @property
    def path_and_query(self) -> str:
        return f"{self.path}?{self.query}" if self.query else self.path
    
    @property
    def payload(self) -> str:
        """Body text when present, else the query string."""
        return self.body.decode("utf-8") if self.body else self.query


@dataclass(frozen=True)
class Signature:
    """Signature for one attempt."""
    
    value: str
    placement: SignaturePlacement
    name: str
    
    def __repr__(self) -> str:
        return f"Signature(placement={self.placement.value}, name='{self.name}', value=***)"


@dataclass(frozen=True)
class BearerToken:
    """Short-lived signed token."""
    
    token: str
    nonce: str
    issued_at_ms: int
    
    def header_value(self) -> str:
        return f"Bearer {self.token}"
    
    def __repr__(self) -> str:
        return f"BearerToken(nonce='{self.nonce}', issued_at_ms={self.issued_at_ms}, token=***)"


@dataclass
class AuthorizedRequest:
    """Wire pieces produced by a signer for one attempt."""
    
    query: str
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)
    signable: Optional[SignableRequest] = None
    signature: Optional[Signature] = None


# ============================================================
# SIGNER BASE
# ============================================================

class Signer(ABC):
    """
    Narrow signing capability shared by every scheme.
    
    sign() is deterministic for identical signable input;
    authorize() builds the signable view of a prepared request
    and embeds the resulting signature.
    """
    
    scheme: ClassVar[SigningScheme]
    
    def __init__(self, codec: Optional[Codec] = None, recv_window_ms: Optional[int] = 5000):
        self._codec = codec or Codec()
        self.recv_window_ms = recv_window_ms
    
    @abstractmethod
    def sign(self, signable: SignableRequest, credentials: Credentials) -> Signature:
        """Sign one attempt."""
        pass
    
    @abstractmethod
    def authorize(
        self,
        prepared: PreparedRequest,
        credentials: Credentials,
        timestamp_ms: int,
        nonce: str,
    ) -> AuthorizedRequest:
        """Embed authentication into a prepared request."""
        pass
    
    def verify(self, signable: SignableRequest, credentials: Credentials, signature: Signature) -> bool:
        """Constant-time check of a signature against the signable view."""
        expected = self.sign(signable, credentials)
        return hmac.compare_digest(expected.value.encode("utf-8"), signature.value.encode("utf-8"))
    
    @staticmethod
    def _hmac_sha256(credentials: Credentials, message: str) -> bytes:
        try:
            data = message.encode("utf-8")
        except UnicodeEncodeError as e:
            raise SigningError("Signable input is not valid text", cause=e) from e
        return hmac.new(credentials.secret_buffer(), data, hashlib.sha256).digest()
    
    @staticmethod
    def _check_signable(signable: SignableRequest) -> None:
        if not signable.method or not signable.path.startswith("/"):
            raise SigningError(
                "Signable request needs a method and an absolute path",
                context={"method": signable.method, "path": signable.path},
            )
        if not signable.timestamp:
            raise SigningError("Signable request has no timestamp")
        try:
            signable.body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SigningError("Signable body is not UTF-8", cause=e) from e


# ============================================================
# HMAC QUERY SIGNER
# ============================================================

class HmacQuerySigner(Signer):
    """
    Hex HMAC-SHA256 over query string plus body, sent as a query
    parameter, with the key in a header.
    """
    
    scheme = SigningScheme.HMAC_QUERY
    
    def __init__(
        self,
        codec: Optional[Codec] = None,
        recv_window_ms: Optional[int] = 5000,
        key_header: str = "X-MBX-APIKEY",
        signature_param: str = "signature",
        timestamp_param: str = "timestamp",
        recv_window_param: str = "recvWindow",
    ):
        super().__init__(codec, recv_window_ms)
        self.key_header = key_header
        self.signature_param = signature_param
        self.timestamp_param = timestamp_param
        self.recv_window_param = recv_window_param
    
    def sign(self, signable: SignableRequest, credentials: Credentials) -> Signature:
        self._check_signable(signable)
        message = signable.query + signable.body.decode("utf-8")
        digest = self._hmac_sha256(credentials, message).hex()
        return Signature(digest, SignaturePlacement.QUERY, self.signature_param)
    
    def authorize(self, prepared, credentials, timestamp_ms, nonce):
        params = list(prepared.query_params)
        if self.recv_window_ms is not None:
            params.append((self.recv_window_param, str(self.recv_window_ms)))
        params.append((self.timestamp_param, str(timestamp_ms)))
        query = self._codec.encode_query(params)
        
        signable = SignableRequest(
            method=prepared.method.value,
            path=prepared.path,
            query=query,
            body=prepared.body,
            timestamp=str(timestamp_ms),
            nonce=nonce,
            recv_window=self.recv_window_ms,
        )
        signature = self.sign(signable, credentials)
        
        return AuthorizedRequest(
            query=f"{query}&{self.signature_param}={signature.value}",
            body=prepared.body,
            headers={self.key_header: credentials.api_key},
            signable=signable,
            signature=signature,
        )


# ============================================================
# HMAC HEADER SIGNER
# ============================================================

class PrehashLayout(Enum):
    """Order of the fields concatenated before hashing."""
    
    TIMESTAMP_METHOD_PATH_BODY = "timestamp_method_path_body"
    """timestamp + METHOD + path[?query] + body"""
    
    TIMESTAMP_KEY_WINDOW_PAYLOAD = "timestamp_key_window_payload"
    """timestamp + api_key + recv_window + (body or query)"""


class DigestEncoding(Enum):
    HEX = "hex"
    BASE64 = "base64"


@dataclass(frozen=True)
class HeaderLayout:
    """Header names and hashing rules of one HMAC-header exchange."""
    
    key_header: str
    signature_header: str
    timestamp_header: str
    prehash: PrehashLayout
    encoding: DigestEncoding
    timestamp_format: TimestampFormat = TimestampFormat.MILLIS
    passphrase_header: Optional[str] = None
    recv_window_header: Optional[str] = None
    extra_headers: Tuple[Tuple[str, str], ...] = ()


class HmacHeaderSigner(Signer):
    """HMAC-SHA256 signature and key material carried in headers."""
    
    scheme = SigningScheme.HMAC_HEADER
    
    def __init__(self, layout: HeaderLayout, codec: Optional[Codec] = None, recv_window_ms: Optional[int] = 5000):
        super().__init__(codec, recv_window_ms)
        self.layout = layout
    
    def prehash(self, signable: SignableRequest, credentials: Credentials) -> str:
        if self.layout.prehash is PrehashLayout.TIMESTAMP_METHOD_PATH_BODY:
            return (
                signable.timestamp
                + signable.method.upper()
                + signable.path_and_query
                + signable.body.decode("utf-8")
            )
        window = "" if signable.recv_window is None else str(signable.recv_window)
        return signable.timestamp + credentials.api_key + window + signable.payload
    
    def sign(self, signable: SignableRequest, credentials: Credentials) -> Signature:
        self._check_signable(signable)
        digest = self._hmac_sha256(credentials, self.prehash(signable, credentials))
        if self.layout.encoding is DigestEncoding.BASE64:
            value = base64.b64encode(digest).decode("ascii")
        else:
            value = digest.hex()
        return Signature(value, SignaturePlacement.HEADER, self.layout.signature_header)
    
    def authorize(self, prepared, credentials, timestamp_ms, nonce):
        layout = self.layout
        if layout.passphrase_header and not credentials.passphrase:
            raise SigningError(f"{layout.passphrase_header} requires a passphrase")
        
        query = self._codec.encode_query(prepared.query_params)
        timestamp = format_epoch_millis(timestamp_ms, layout.timestamp_format)
        signable = SignableRequest(
            method=prepared.method.value,
            path=prepared.path,
            query=query,
            body=prepared.body,
            timestamp=timestamp,
            nonce=nonce,
            recv_window=self.recv_window_ms if layout.recv_window_header else None,
        )
        signature = self.sign(signable, credentials)
        
        headers = {
            layout.key_header: credentials.api_key,
            layout.signature_header: signature.value,
            layout.timestamp_header: timestamp,
        }
        if layout.passphrase_header:
            headers[layout.passphrase_header] = credentials.passphrase
        if layout.recv_window_header and self.recv_window_ms is not None:
            headers[layout.recv_window_header] = str(self.recv_window_ms)
        headers.update(dict(layout.extra_headers))
        
        return AuthorizedRequest(
            query=query,
            body=prepared.body,
            headers=headers,
            signable=signable,
            signature=signature,
        )


# ============================================================
# JWT BEARER SIGNER
# ============================================================

class JwtBearerSigner(Signer):
    """
    HS256 JWT per request.
    
    Claims: access_key, nonce, iat and, for a non-empty query,
    query_hash (SHA-512 hex of the canonical query) with
    query_hash_alg. JSON bodies are hashed in their query form.
    """
    
    scheme = SigningScheme.JWT_BEARER
    
    def __init__(self, codec: Optional[Codec] = None, header: str = "Authorization"):
        super().__init__(codec, recv_window_ms=None)
        self.header = header
    
    def claims(self, signable: SignableRequest, credentials: Credentials) -> Dict[str, object]:
        try:
            issued_at = int(signable.timestamp) // 1000
        except ValueError as e:
            raise SigningError("JWT timestamp must be epoch milliseconds", cause=e) from e
        
        claims: Dict[str, object] = {
            "access_key": credentials.api_key,
            "nonce": signable.nonce,
            "iat": issued_at,
        }
        if signable.query:
            claims["query_hash"] = hashlib.sha512(signable.query.encode("utf-8")).hexdigest()
            claims["query_hash_alg"] = "SHA512"
        return claims
    
    def authenticate_token(self, credentials: Credentials, signable: SignableRequest) -> BearerToken:
        """Issue the bearer token for one attempt."""
        self._check_signable(signable)
        if not signable.nonce:
            raise SigningError("JWT authentication needs a nonce")
        
        token = jwt.encode(
            self.claims(signable, credentials),
            bytes(credentials.secret_buffer()),
            algorithm="HS256",
        )
        return BearerToken(token=token, nonce=signable.nonce, issued_at_ms=int(signable.timestamp))
    
    def sign(self, signable: SignableRequest, credentials: Credentials) -> Signature:
        token = self.authenticate_token(credentials, signable)
        return Signature(token.header_value(), SignaturePlacement.BEARER, self.header)
    
    def authorize(self, prepared, credentials, timestamp_ms, nonce):
        query = self._codec.encode_query(prepared.query_params)
        hashed = query or self._codec.encode_query(prepared.body_params)
        signable = SignableRequest(
            method=prepared.method.value,
            path=prepared.path,
            query=hashed,
            body=prepared.body,
            timestamp=str(timestamp_ms),
            nonce=nonce,
        )
        signature = self.sign(signable, credentials)
        
        return AuthorizedRequest(
            query=query,
            body=prepared.body,
            headers={self.header: signature.value},
            signable=signable,
            signature=signature,
        )


# ============================================================
# REGISTRY
# ============================================================

SIGNERS: Dict[SigningScheme, Type[Signer]] = {
    SigningScheme.HMAC_QUERY: HmacQuerySigner,
    SigningScheme.HMAC_HEADER: HmacHeaderSigner,
    SigningScheme.JWT_BEARER: JwtBearerSigner,
}


def create_signer(scheme: SigningScheme, **kwargs) -> Signer:
    """Instantiate the signer for a scheme."""
    return SIGNERS[scheme](**kwargs)
