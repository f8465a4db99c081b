"""
Gemini backend — ``streamGenerateContent`` with ``alt=sse``.

Gemini returns whole function calls in a single part, so each one is handed
over as soon as its chunk arrives. Tool results go back as
``functionResponse`` parts, which need the function *name* rather than the
call id; the name is recovered from the preceding assistant turn.
"""

from __future__ import annotations

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
    tool_result_text,
)
from familiar.api.sse import iter_sse_json, open_stream
from familiar.config import ProviderTuning
from familiar.harness.retry import RetryConfig

logger = structlog.get_logger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

# Gemini accepts an OpenAPI subset of JSON Schema.
_SCHEMA_KEYS = frozenset({"type", "description", "properties", "required", "enum", "items", "format"})


def _clean_schema(schema: Any) -> Any:
    if not isinstance(schema, dict):
        return schema
    cleaned: dict[str, Any] = {}
    for key, value in schema.items():
        if key not in _SCHEMA_KEYS:
            continue
        if key == "properties" and isinstance(value, dict):
            cleaned[key] = {name: _clean_schema(prop) for name, prop in value.items()}
        elif key == "items":
            cleaned[key] = _clean_schema(value)
        else:
            cleaned[key] = value
    return cleaned


def convert_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [{
        "functionDeclarations": [
            {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "parameters": _clean_schema(tool.get("input_schema", {"type": "object"})),
            }
            for tool in tools
        ]
    }]


def convert_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Neutral history → Gemini ``contents``."""
    contents: list[dict[str, Any]] = []
    call_names: dict[str, str] = {}

    for message in messages:
        parts: list[dict[str, Any]] = []
        for block in iter_blocks(message.get("content")):
            kind = block.get("type")
            if kind == "text":
                if block.get("text"):
                    parts.append({"text": block["text"]})
            elif kind == "tool_use":
                call_names[block["id"]] = block["name"]
                parts.append({"functionCall": {"name": block["name"], "args": block.get("input") or {}}})
            elif kind == "tool_result":
                text, images = tool_result_text(block)
                parts.append({
                    "functionResponse": {
                        "name": call_names.get(block["tool_use_id"], "tool"),
                        "response": {"content": text, "is_error": bool(block.get("is_error"))},
                    }
                })
                parts.extend(_inline_image(img) for img in images)
            elif kind == "image":
                parts.append(_inline_image(block))
        if parts:
            role = "model" if message.get("role") == "assistant" else "user"
            contents.append({"role": role, "parts": parts})
    return contents


def _inline_image(block: dict[str, Any]) -> dict[str, Any]:
    source = block.get("source", {})
    return {"inlineData": {"mimeType": source.get("media_type", "image/jpeg"), "data": source.get("data", "")}}


class GeminiProvider(ProviderAdapter):
    """Google Generative Language API over httpx."""

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = GEMINI_BASE_URL,
        tuning: Optional[ProviderTuning] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        tuning = tuning or ProviderTuning()
        self._api_key = api_key
        self._model = model
        self._url = f"{base_url.rstrip('/')}/models/{model}:streamGenerateContent?alt=sse"
        self._max_tokens = tuning.max_tokens
        self._retry = RetryConfig.from_tuning(tuning)
        self._client = client or httpx.AsyncClient(timeout=tuning.request_timeout_seconds)
        logger.info("gemini_provider.initialized", model=model)

    async def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
    ) -> AsyncIterator[Fragment]:
        body: dict[str, Any] = {
            "contents": convert_messages(messages),
            "generationConfig": {"maxOutputTokens": self._max_tokens},
        }
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        if tools:
            body["tools"] = convert_tools(tools)
        headers = {"x-goog-api-key": self._api_key}

        response = await open_stream(
            self._client, self.name, self._url, body, headers, self._retry
        )

        saw_call = False
        finish_reason = ""
        try:
            async for chunk in iter_sse_json(response, self.name):
                candidates = chunk.get("candidates") or []
                if not candidates:
                    continue
                candidate = candidates[0]
                for part in (candidate.get("content") or {}).get("parts") or []:
                    if part.get("text"):
                        yield TextDelta(part["text"])
                    call = part.get("functionCall")
                    if call:
                        saw_call = True
                        yield ToolCallRequest(
                            call_id=call.get("id") or f"call_{uuid.uuid4().hex}",
                            name=call.get("name", ""),
                            arguments=dict(call.get("args") or {}),
                        )
                if candidate.get("finishReason"):
                    finish_reason = candidate["finishReason"]
        finally:
            await response.aclose()

        if saw_call:
            yield StreamEnd("tool_use")
        elif finish_reason == "MAX_TOKENS":
            yield StreamEnd("max_tokens")
        else:
            yield StreamEnd("end_turn")

    async def aclose(self) -> None:
        await self._client.aclose()
