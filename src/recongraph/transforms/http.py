"""HTTP substrate for transforms.

Transforms own their latency: the orchestrator never times them out, so
every request made through here has explicit timeouts and a bounded
retry policy for transient failures.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from recongraph.config import settings

TransientHttpError = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


def default_timeout() -> httpx.Timeout:
    return httpx.Timeout(settings.http_timeout, connect=10.0)


def default_limits() -> httpx.Limits:
    return httpx.Limits(max_connections=20, max_keepalive_connections=10)


class HttpClientFactory:
    """Creates httpx clients with the configured timeout and pool limits.

    Tests pass a ``transport`` (e.g. httpx.MockTransport) to keep
    transforms off the network.
    """

    @staticmethod
    def client(
        base_url: Optional[str] = None,
        headers: Optional[dict] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=base_url or "",
            headers=headers,
            timeout=default_timeout(),
            limits=default_limits(),
            follow_redirects=True,
            transport=transport,
        )


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, TransientHttpError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS
    return False


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    attempts: Optional[int] = None,
    **kwargs: Any,
) -> httpx.Response:
    """Send a request, retrying transient failures with jittered backoff.

    Non-transient HTTP errors (4xx other than 429) raise immediately.
    """
    retrying = AsyncRetrying(
        reraise=True,
        stop=stop_after_attempt(attempts or settings.http_retries),
        wait=wait_exponential_jitter(initial=0.5, max=10.0),
        retry=retry_if_exception(_is_transient),
    )
    async for attempt in retrying:
        with attempt:
            response = await client.request(method, url, **kwargs)
            response.raise_for_status()
    return response
