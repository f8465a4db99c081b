"""
OpenAI-compatible backend (OpenAI, Moonshot Kimi).

Chat Completions streams text as ``choices[0].delta.content`` and tool calls
as fragments keyed by ``index``: the first fragment of a call carries its id
and name, later ones append to ``function.arguments``. A call is complete
once a higher index starts or the choice reports a ``finish_reason``; at that
point it is handed over as a ToolCallRequest.
"""

from __future__ import annotations

import json
import uuid
from typing import Any, AsyncIterator, Optional

import httpx
import structlog

from familiar.api.base import (
    Fragment,
    ProviderAdapter,
    StreamEnd,
    TextDelta,
    ToolCallRequest,
    iter_blocks,
    parse_arguments,
    tool_result_text,
)
from familiar.api.sse import iter_sse_json, open_stream
from familiar.config import ProviderTuning
from familiar.harness.retry import RetryConfig

logger = structlog.get_logger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
KIMI_BASE_URL = "https://api.moonshot.ai/v1"


def convert_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Anthropic tool descriptors → OpenAI function tools."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "parameters": tool.get("input_schema", {"type": "object"}),
            },
        }
        for tool in tools
    ]


def convert_messages(system: str, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Neutral (Anthropic-shaped) history → Chat Completions messages."""
    out: list[dict[str, Any]] = []
    if system:
        out.append({"role": "system", "content": system})

    for message in messages:
        blocks = iter_blocks(message.get("content"))
        if message.get("role") == "assistant":
            text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
            calls = [
                {
                    "id": b["id"],
                    "type": "function",
                    "function": {
                        "name": b["name"],
                        "arguments": json.dumps(b.get("input") or {}),
                    },
                }
                for b in blocks
                if b.get("type") == "tool_use"
            ]
            entry: dict[str, Any] = {"role": "assistant", "content": text or None}
            if calls:
                entry["tool_calls"] = calls
            out.append(entry)
            continue

        texts: list[str] = []
        images: list[dict[str, Any]] = []
        for block in blocks:
            if block.get("type") == "tool_result":
                text, block_images = tool_result_text(block)
                if block.get("is_error") and not text.startswith("Error"):
                    text = f"Error: {text}"
                out.append({
                    "role": "tool",
                    "tool_call_id": block["tool_use_id"],
                    "content": text,
                })
                images.extend(block_images)
            elif block.get("type") == "text":
                texts.append(block.get("text", ""))
            elif block.get("type") == "image":
                images.append(block)
        if texts:
            out.append({"role": "user", "content": "\n".join(texts)})
        if images:
            out.append({
                "role": "user",
                "content": [
                    {
                        "type": "image_url",
                        "image_url": {
                            "url": (
                                f"data:{img['source'].get('media_type', 'image/jpeg')};"
                                f"base64,{img['source']['data']}"
                            )
                        },
                    }
                    for img in images
                ],
            })
    return out


class OpenAICompatProvider(ProviderAdapter):
    """Chat Completions over httpx with SSE streaming."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = OPENAI_BASE_URL,
        tuning: Optional[ProviderTuning] = None,
        client: Optional[httpx.AsyncClient] = None,
        name: str = "openai",
    ):
        tuning = tuning or ProviderTuning()
        self.name = name
        self._api_key = api_key
        self._model = model
        self._url = base_url.rstrip("/") + "/chat/completions"
        self._max_tokens = tuning.max_tokens
        self._retry = RetryConfig.from_tuning(tuning)
        self._client = client or httpx.AsyncClient(timeout=tuning.request_timeout_seconds)
        logger.info("openai_compat_provider.initialized", provider=name, model=model)

    async def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
    ) -> AsyncIterator[Fragment]:
        body: dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "messages": convert_messages(system, messages),
            "stream": True,
        }
        if tools:
            body["tools"] = convert_tools(tools)
        headers = {"Authorization": f"Bearer {self._api_key}"}

        response = await open_stream(
            self._client, self.name, self._url, body, headers, self._retry
        )

        # index -> [id, name, argument json]
        calls: dict[int, list[str]] = {}
        current: Optional[int] = None
        finish_reason = ""
        try:
            async for chunk in iter_sse_json(response, self.name):
                choices = chunk.get("choices") or []
                if not choices:
                    continue
                choice = choices[0]
                delta = choice.get("delta") or {}

                content = delta.get("content")
                if content:
                    yield TextDelta(content)

                for tc in delta.get("tool_calls") or []:
                    index = int(tc.get("index", 0))
                    if current is not None and index != current and current in calls:
                        yield self._finish_call(calls.pop(current))
                    current = index
                    entry = calls.setdefault(index, ["", "", ""])
                    if tc.get("id"):
                        entry[0] = tc["id"]
                    function = tc.get("function") or {}
                    if function.get("name"):
                        entry[1] = function["name"]
                    if function.get("arguments"):
                        entry[2] += function["arguments"]

                if choice.get("finish_reason"):
                    finish_reason = choice["finish_reason"]
                    for index in sorted(calls):
                        yield self._finish_call(calls[index])
                    calls.clear()
                    current = None

            for index in sorted(calls):
                yield self._finish_call(calls[index])
        finally:
            await response.aclose()

        yield StreamEnd("tool_use" if finish_reason == "tool_calls" else "end_turn")

    def _finish_call(self, entry: list[str]) -> ToolCallRequest:
        call_id, name, raw = entry
        return ToolCallRequest(
            call_id=call_id or f"call_{uuid.uuid4().hex}",
            name=name,
            arguments=parse_arguments(raw, self.name),
        )

    async def aclose(self) -> None:
        await self._client.aclose()
