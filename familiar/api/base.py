"""
Provider Adapter contract.

Every language-model backend is reduced to one capability: given a system
prompt, the conversation so far and the available tools, produce a lazy,
finite, non-restartable sequence of fragments:

    TextDelta        a piece of assistant text
    ToolCallRequest  a complete, structured request to call a tool
    StreamEnd        the backend's stop reason ("end_turn", "tool_use", ...)

Messages use one neutral shape regardless of backend. It is the Anthropic
Messages shape, because it is the richest of the three:

    {"role": "user", "content": "plain text"}
    {"role": "assistant", "content": [
        {"type": "text", "text": "..."},
        {"type": "tool_use", "id": "...", "name": "...", "input": {...}},
    ]}
    {"role": "user", "content": [
        {"type": "tool_result", "tool_use_id": "...", "content": "..." | [blocks],
         "is_error": false},
    ]}

Backends translate this shape to their own wire format and translate their
failures into the ProviderError hierarchy, so the orchestrator never sees an
SDK-specific exception.
"""

from __future__ import annotations

import abc
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional, Union

from familiar.errors import MalformedStreamError


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallRequest:
    call_id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StreamEnd:
    stop_reason: str = "end_turn"


Fragment = Union[TextDelta, ToolCallRequest, StreamEnd]


class ProviderAdapter(abc.ABC):
    """One implementation per backend; the orchestrator only sees this."""

    name: str = "provider"

    @abc.abstractmethod
    def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
    ) -> AsyncIterator[Fragment]:
        """Open a streaming completion. Implementations are async generators."""

    async def aclose(self) -> None:
        """Release network resources held by the adapter."""


# -------------------------------------------------------------------------
# Helpers shared by the HTTP backends
# -------------------------------------------------------------------------


def parse_arguments(raw: str, provider: str) -> dict[str, Any]:
    """Decode accumulated tool-call argument JSON."""
    if not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MalformedStreamError(
            f"Tool-call arguments are not valid JSON: {raw[:120]!r}",
            provider=provider,
        ) from exc
    if not isinstance(value, dict):
        raise MalformedStreamError(
            f"Tool-call arguments must be a JSON object, got {type(value).__name__}",
            provider=provider,
        )
    return value


def iter_blocks(content: Any) -> list[dict[str, Any]]:
    """Normalize message content (string or block list) into blocks."""
    if isinstance(content, str):
        return [{"type": "text", "text": content}] if content else []
    return [block for block in content or [] if isinstance(block, dict)]


def tool_result_text(block: dict[str, Any]) -> tuple[str, list[dict[str, Any]]]:
    """Split a tool_result block into its text and any image blocks."""
    content = block.get("content", "")
    if isinstance(content, str):
        return content, []
    texts: list[str] = []
    images: list[dict[str, Any]] = []
    for part in content:
        if part.get("type") == "text":
            texts.append(part.get("text", ""))
        elif part.get("type") == "image":
            images.append(part)
    return "\n".join(texts), images
