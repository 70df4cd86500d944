#!/usr/bin/env python3
"""
Shared httpx client with size limits and timeout controls
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import Dict, Optional

import httpx

from config import config

logger = logging.getLogger(__name__)

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36"
)

DEFAULT_HEADERS = {
    "User-Agent": BROWSER_USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Upgrade-Insecure-Requests": "1",
}

MAX_RESPONSE_BYTES = 10 * 1024 * 1024


@dataclass(frozen=True)
class FetchedResponse:
    """Body and metadata of a completed GET"""
    url: str
    status_code: int
    content: bytes
    headers: httpx.Headers
    charset: Optional[str]

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


def _cookieless_jar() -> CookieJar:
    # Server cookies are never stored; the request shaper owns the Cookie header
    return CookieJar(policy=DefaultCookiePolicy(allowed_domains=[]))


def create_client(transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    timeout = httpx.Timeout(config.HTTP_TIMEOUT_S, connect=5.0)
    limits = httpx.Limits(max_connections=100, max_keepalive_connections=20)
    return httpx.AsyncClient(
        follow_redirects=True,
        max_redirects=5,
        timeout=timeout,
        limits=limits,
        cookies=_cookieless_jar(),
        transport=transport,
    )


class NetworkSession:
    """Shared httpx client used by every fetch path"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client
        self._owns_client = client is None

    def get_client(self) -> httpx.AsyncClient:
        """Get or create the shared client"""
        if self._client is None or self._client.is_closed:
            self._client = create_client()
            self._owns_client = True
        return self._client

    async def close(self):
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def get(self, url: str, headers: Optional[Dict[str, str]] = None,
                  timeout: Optional[float] = None,
                  max_size: int = MAX_RESPONSE_BYTES) -> FetchedResponse:
        """
        GET with a size limit

        Raises:
            httpx.HTTPError: for transport failures, timeouts and oversized bodies
        """
        client = self.get_client()
        request_headers = dict(DEFAULT_HEADERS)
        if headers:
            request_headers.update(headers)

        started = time.monotonic()
        try:
            async with client.stream(
                "GET", url, headers=request_headers,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            ) as response:
                content_length = response.headers.get('content-length')
                if content_length and content_length.isdigit() and int(content_length) > max_size:
                    raise httpx.HTTPError(f"Response too large: {content_length} bytes")

                content = bytearray()
                async for chunk in response.aiter_bytes():
                    content.extend(chunk)
                    if len(content) > max_size:
                        raise httpx.HTTPError(f"Response too large: {len(content)} bytes")
        except asyncio.TimeoutError as e:
            raise httpx.TimeoutException(f"Request timeout for {url}") from e

        logger.debug(
            f"GET {url} -> {response.status_code} ({len(content)} bytes)",
            extra={'external_service': 'http', 'external_duration': time.monotonic() - started,
                   'status_code': response.status_code, 'url': url},
        )
        return FetchedResponse(
            url=str(response.url),
            status_code=response.status_code,
            content=bytes(content),
            headers=response.headers,
            charset=response.charset_encoding,
        )


# Global session instance
_global_session = NetworkSession()


def get_session() -> NetworkSession:
    return _global_session


async def cleanup_session():
    """Cleanup global session"""
    await _global_session.close()
