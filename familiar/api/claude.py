"""
Claude backend — streams Anthropic Messages API events as fragments.

The neutral message shape already is the Anthropic shape, so the request side
is a pass-through. The response side walks the raw server-sent events:

    content_block_start   (text | tool_use with id and name)
    content_block_delta   (text_delta | input_json_delta)
    content_block_stop    → a finished tool_use becomes a ToolCallRequest
    message_delta         → stop_reason

Text deltas are yielded the moment they arrive. Tool-use input arrives as
partial JSON and is only parsed once its block closes.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Optional

import anthropic
import httpx
import structlog

from familiar.api.base import (
    Fragment,
    ProviderAdapter,
    StreamEnd,
    TextDelta,
    ToolCallRequest,
    parse_arguments,
)
from familiar.config import ProviderTuning
from familiar.errors import (
    ProviderAuthError,
    ProviderConnectionError,
    ProviderError,
    ProviderRateLimitError,
)
from familiar.harness.retry import RetryConfig, with_retries

logger = structlog.get_logger(__name__)


def map_anthropic_error(error: anthropic.APIError) -> ProviderError:
    """Translate an SDK exception into the provider error taxonomy."""
    if isinstance(error, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
        return ProviderAuthError(str(error), status_code=error.status_code, provider="anthropic")
    if isinstance(error, anthropic.RateLimitError):
        retry_after = None
        try:
            value = error.response.headers.get("retry-after")
            retry_after = float(value) if value else None
        except (ValueError, AttributeError):
            pass
        return ProviderRateLimitError(str(error), retry_after=retry_after, provider="anthropic")
    if isinstance(error, anthropic.APIConnectionError):
        return ProviderConnectionError(str(error), provider="anthropic")
    if isinstance(error, anthropic.APIStatusError):
        return ProviderError(
            str(error),
            status_code=error.status_code,
            retryable=error.status_code in (500, 502, 503, 529),
            provider="anthropic",
        )
    return ProviderError(str(error), provider="anthropic")


class ClaudeProvider(ProviderAdapter):
    """Anthropic Messages API over the official async SDK."""

    name = "anthropic"

    def __init__(
        self,
        api_key: str,
        model: str,
        tuning: Optional[ProviderTuning] = None,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ):
        tuning = tuning or ProviderTuning()
        self._model = model
        self._max_tokens = tuning.max_tokens
        self._retry = RetryConfig.from_tuning(tuning)
        # Retries are ours; the SDK's own retry loop would double them.
        self._client = client or anthropic.AsyncAnthropic(
            api_key=api_key,
            timeout=tuning.request_timeout_seconds,
            max_retries=0,
        )
        logger.info("claude_provider.initialized", model=model)

    async def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
    ) -> AsyncIterator[Fragment]:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "system": system,
            "messages": messages,
            "stream": True,
        }
        if tools:
            kwargs["tools"] = tools

        async def _open() -> Any:
            try:
                return await self._client.messages.create(**kwargs)
            except anthropic.APIError as e:
                raise map_anthropic_error(e) from e

        events = await with_retries(_open, config=self._retry)

        # index -> [id, name, partial json]
        pending_tools: dict[int, list[str]] = {}
        stop_reason = "end_turn"
        try:
            async for event in events:
                if event.type == "content_block_start":
                    block = event.content_block
                    if block.type == "tool_use":
                        pending_tools[event.index] = [block.id, block.name, ""]
                elif event.type == "content_block_delta":
                    delta = event.delta
                    if delta.type == "text_delta":
                        if delta.text:
                            yield TextDelta(delta.text)
                    elif delta.type == "input_json_delta":
                        entry = pending_tools.get(event.index)
                        if entry is not None:
                            entry[2] += delta.partial_json
                elif event.type == "content_block_stop":
                    entry = pending_tools.pop(event.index, None)
                    if entry is not None:
                        call_id, name, raw = entry
                        yield ToolCallRequest(
                            call_id=call_id,
                            name=name,
                            arguments=parse_arguments(raw, self.name),
                        )
                elif event.type == "message_delta":
                    if event.delta.stop_reason:
                        stop_reason = event.delta.stop_reason
        except anthropic.APIError as e:
            logger.error("claude_provider.stream_failed", error=str(e))
            raise map_anthropic_error(e) from e
        except httpx.TransportError as e:
            logger.error("claude_provider.stream_interrupted", error=str(e))
            raise ProviderConnectionError(str(e), provider=self.name) from e
        finally:
            await events.close()

        yield StreamEnd(stop_reason)

    async def aclose(self) -> None:
        await self._client.close()
