"""
Exchange Gateway - Transport.

============================================================
PURPOSE
============================================================
The "send these bytes, get status and body back" boundary.

Connection pooling and TLS belong to aiohttp. The transport
only maps failures below the HTTP layer to TransportError and
sends the signed query exactly as encoded.

============================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import aiohttp
from yarl import URL

from .config import TimeoutConfig
from .contract import WireRequest, WireResponse
from .errors import TransportError


logger = logging.getLogger(__name__)


class Transport(ABC):
    """Minimal HTTP capability consumed by the pipeline."""
    
    @abstractmethod
    async def send(self, request: WireRequest) -> WireResponse:
        """
        Send one request.
        
        Raises:
            TransportError: On connection or timeout failure
        """
        pass
    
    async def close(self) -> None:
        """Release transport resources."""
        pass


class AiohttpTransport(Transport):
    """
    aiohttp-backed transport.
    
    Owns its ClientSession unless one is injected.
    """
    
    def __init__(
        self,
        timeout_config: Optional[TimeoutConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._timeout_config = timeout_config or TimeoutConfig()
        self._session = session
        self._owns_session = session is None
    
    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(
                total=self._timeout_config.total_timeout_seconds,
                connect=self._timeout_config.connection_timeout_seconds,
                sock_read=self._timeout_config.read_timeout_seconds,
            )
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session
    
    async def send(self, request: WireRequest) -> WireResponse:
        session = self._get_session()
        # encoded=True keeps the signed query byte-for-byte.
        url = URL(request.url, encoded=True)
        
        try:
            async with session.request(
                request.method,
                url,
                data=request.body or None,
                headers=request.headers,
            ) as response:
                body = await response.read()
                return WireResponse(
                    status=response.status,
                    body=body,
                    headers=dict(response.headers),
                )
        except asyncio.TimeoutError as e:
            raise TransportError("Request timeout", timeout=True, cause=e) from e
        except aiohttp.ClientError as e:
            raise TransportError(f"Network error: {e}", cause=e) from e
    
    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            logger.debug("Closed aiohttp session")
        self._session = None
