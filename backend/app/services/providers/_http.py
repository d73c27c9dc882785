from __future__ import annotations
"""httpx helpers shared by provider clients: ownership and error mapping."""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx

from app.config import get_settings
from app.services.errors import InvalidInput, ProviderRejected, TransientNetwork

logger = logging.getLogger(__name__)
settings = get_settings()


@asynccontextmanager
async def client_scope(
    http_client: httpx.AsyncClient | None, timeout: float = 30.0
) -> AsyncIterator[httpx.AsyncClient]:
    """Use the injected client, or open (and close) a private one."""
    if http_client is not None:
        yield http_client
        return
    async with httpx.AsyncClient(timeout=timeout) as client:
        yield client


def raise_for_provider(response: httpx.Response, provider: str) -> None:
    """Translate a non-2xx provider response into the pipeline taxonomy."""
    if response.is_success:
        return

    status = response.status_code
    body = response.text[:300]
    details = {"status_code": status, "body": body}

    if status == 429:
        raise ProviderRejected(
            f"{provider} rate limit or quota exceeded: {body}",
            provider=provider,
            retryable=settings.RETRY_QUOTA_REJECTIONS,
            details=details,
        )
    if status >= 500 or status == 408:
        raise TransientNetwork(
            f"{provider} unavailable ({status}): {body}",
            provider=provider,
            details=details,
        )
    if status in (400, 422):
        raise InvalidInput(
            f"{provider} rejected the input ({status}): {body}",
            provider=provider,
            details=details,
        )
    raise ProviderRejected(
        f"{provider} API error ({status}): {body}",
        provider=provider,
        retryable=False,
        details=details,
    )


async def send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    provider: str,
    **kwargs: Any,
) -> httpx.Response:
    """Issue a request, mapping transport failures and error statuses."""
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise TransientNetwork(f"{provider} request timed out: {e}", provider=provider) from e
    except httpx.TransportError as e:
        raise TransientNetwork(f"{provider} connection failed: {e}", provider=provider) from e

    raise_for_provider(response, provider)
    return response


def json_body(response: httpx.Response, provider: str) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError as e:
        raise TransientNetwork(
            f"{provider} returned a non-JSON body: {response.text[:200]}",
            provider=provider,
        ) from e
    if not isinstance(data, dict):
        raise TransientNetwork(f"{provider} returned unexpected JSON: {data!r}", provider=provider)
    return data
