"""
HTTP client utilities for NimbusStorage SDK
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional
from urllib.parse import urlsplit

import httpx

from ._signer import SignableRequest

Attempt = Callable[[], Awaitable[httpx.Response]]
RetryPolicy = Callable[[Attempt], Awaitable[httpx.Response]]


def backoff_retry_policy(max_retries: int = 3, base_delay_ms: int = 1000, max_delay_ms: int = 10000) -> RetryPolicy:
    """
    Retry transport failures with exponential backoff.

    Only ``httpx.RequestError`` (connection failures and timeouts) is
    retried; any HTTP response, including 5xx, is returned to the caller.
    """

    async def policy(attempt_fn: Attempt) -> httpx.Response:
        for attempt in range(max_retries):
            try:
                return await attempt_fn()
            except httpx.RequestError:
                if attempt < max_retries - 1:
                    wait_time = min(base_delay_ms * (2 ** attempt), max_delay_ms) / 1000
                    await asyncio.sleep(wait_time)
                else:
                    raise

    return policy


class HttpClient:
    """
    HTTP client wrapper with connection pooling.

    Each ``send`` is a single attempt unless a retry policy was supplied.
    """

    def __init__(
        self,
        timeout: float = 30,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.retry_policy = retry_policy
        self._client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=100),
            transport=transport,
        )
        self._logger = logging.getLogger(__name__)

    async def send(self, request: SignableRequest) -> httpx.Response:
        """Send a signed request and return the response, whatever its status."""
        url = request.url()

        async def attempt() -> httpx.Response:
            return await self._client.request(
                request.method,
                url,
                headers=request.headers,
                content=request.body,
            )

        if self.retry_policy is None:
            response = await attempt()
        else:
            response = await self.retry_policy(attempt)

        self._logger.debug(
            "[NimbusStorage][Http] %s %s status=%s",
            request.method,
            _loggable(url),
            response.status_code,
        )
        return response

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


def _loggable(url: str) -> str:
    # Query strings can carry presigned signatures and upload ids.
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}{parts.path}"
