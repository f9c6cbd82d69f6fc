"""HTTP plumbing shared by all provider adapters.

Backoff strategy:
  delay = min(base * 2^attempt + jitter, max_delay)
  jitter = random(0, base * 0.5)

Only 408/429/502/503/504 are retried; everything else surfaces immediately
as a TransportError carrying the status and the first lines of the body.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any

import httpx

from council_gateway.core.config import settings
from council_gateway.gateway.errors import ProtocolError, TransportError

logger = logging.getLogger(__name__)

SNIPPET_MAX_LINES = 20


def build_client(
    timeout: float | None = None,
    connect_timeout: float | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create an AsyncClient with an overall and a (shorter) connect timeout."""
    total = timeout if timeout is not None else settings.request_timeout_seconds
    connect = connect_timeout if connect_timeout is not None else settings.connect_timeout_seconds
    return httpx.AsyncClient(
        timeout=httpx.Timeout(total, connect=connect),
        transport=transport,
        follow_redirects=True,
    )


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
) -> float:
    """Calculate exponential backoff with jitter."""
    exponential = base_delay * (2**attempt)
    jitter = random.uniform(0, base_delay * 0.5)
    return min(exponential + jitter, max_delay)


def body_snippet(text: str, max_lines: int = SNIPPET_MAX_LINES) -> str:
    return "\n".join(text.splitlines()[:max_lines])


def error_from_response(resp: httpx.Response, provider: str = "") -> TransportError:
    snippet = body_snippet(resp.text)
    return TransportError(
        f"http {resp.status_code}: {snippet}",
        status_code=resp.status_code,
        snippet=snippet,
        provider=provider,
    )


async def request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    provider: str = "",
    max_retries: int | None = None,
    **kwargs: Any,
) -> httpx.Response:
    """Send a request, retrying transient statuses with backoff.

    Returns the successful response; raises TransportError otherwise.
    """
    retries = settings.max_retries if max_retries is None else max_retries

    for attempt in range(retries + 1):
        try:
            resp = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"{provider or 'http'}: timeout calling {url}", provider=provider) from e
        except httpx.HTTPError as e:
            raise TransportError(f"{provider or 'http'}: {e}", provider=provider) from e

        if resp.is_success:
            return resp

        error = error_from_response(resp, provider)
        if not error.retryable or attempt >= retries:
            raise error

        delay = calculate_backoff(attempt, settings.retry_base_delay, settings.retry_max_delay)
        logger.warning(
            "Retrying %s %s (status %d, attempt %d/%d) in %.1fs",
            provider,
            url,
            resp.status_code,
            attempt + 1,
            retries,
            delay,
        )
        await asyncio.sleep(delay)

    # range() above always returns or raises
    raise TransportError(f"{provider}: retries exhausted for {url}", provider=provider)


def parse_json(resp: httpx.Response, provider: str = "") -> Any:
    try:
        return resp.json()
    except ValueError as e:
        raise ProtocolError(f"{provider}: invalid JSON response: {body_snippet(resp.text, 3)}") from e


async def send_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    provider: str = "",
    **kwargs: Any,
) -> tuple[Any, httpx.Headers]:
    """Send a request and decode the JSON body. Returns (data, headers)."""
    resp = await request(client, method, url, provider=provider, **kwargs)
    return parse_json(resp, provider), resp.headers
