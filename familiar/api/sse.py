"""
Server-sent-event plumbing shared by the httpx-based backends.

Both the OpenAI-compatible and the Gemini endpoints answer a streaming
request with ``data: {json}`` lines. This module opens such a request with
retries, maps HTTP failures into the provider error taxonomy and turns the
body into a sequence of decoded JSON payloads.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Optional

import httpx
import structlog

from familiar.errors import (
    MalformedStreamError,
    ProviderAuthError,
    ProviderConnectionError,
    ProviderError,
    ProviderRateLimitError,
)
from familiar.harness.retry import RetryConfig, with_retries

logger = structlog.get_logger(__name__)


def status_error(
    provider: str,
    status_code: int,
    detail: str,
    retry_after: Optional[float] = None,
) -> ProviderError:
    """Build the taxonomy error for a non-2xx HTTP response."""
    message = f"{provider} API error {status_code}: {detail}"
    if status_code in (401, 403):
        return ProviderAuthError(message, status_code=status_code, provider=provider)
    if status_code == 429:
        return ProviderRateLimitError(message, retry_after=retry_after, provider=provider)
    return ProviderError(
        message,
        status_code=status_code,
        retryable=status_code >= 500,
        provider=provider,
    )


def _retry_after_header(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


async def open_stream(
    client: httpx.AsyncClient,
    provider: str,
    url: str,
    body: dict[str, Any],
    headers: dict[str, str],
    retry: RetryConfig,
) -> httpx.Response:
    """POST ``body`` and return the streaming response once it is known good."""

    async def _open() -> httpx.Response:
        request = client.build_request("POST", url, json=body, headers=headers)
        try:
            response = await client.send(request, stream=True)
        except httpx.TransportError as e:
            raise ProviderConnectionError(f"{provider} unreachable: {e}", provider=provider) from e
        if response.status_code >= 400:
            raw = await response.aread()
            await response.aclose()
            raise status_error(
                provider,
                response.status_code,
                raw.decode("utf-8", errors="replace")[:500],
                _retry_after_header(response),
            )
        return response

    return await with_retries(_open, config=retry)


async def iter_sse_json(response: httpx.Response, provider: str) -> AsyncIterator[dict[str, Any]]:
    """Yield each ``data:`` payload as a dict; stops at ``[DONE]``."""
    try:
        async for line in response.aiter_lines():
            line = line.strip()
            if not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            if not data:
                continue
            if data == "[DONE]":
                return
            try:
                payload = json.loads(data)
            except json.JSONDecodeError as e:
                raise MalformedStreamError(
                    f"{provider} sent a non-JSON event: {data[:120]!r}", provider=provider
                ) from e
            if not isinstance(payload, dict):
                raise MalformedStreamError(
                    f"{provider} sent an unexpected event payload", provider=provider
                )
            if "error" in payload:
                error = payload["error"]
                message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
                raise ProviderError(f"{provider} stream error: {message}", provider=provider)
            yield payload
    except httpx.TransportError as e:
        logger.error("sse.stream_interrupted", provider=provider, error=str(e))
        raise ProviderConnectionError(f"{provider} stream interrupted: {e}", provider=provider) from e
