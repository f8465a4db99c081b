"""
Shared fixtures for the familiar test suite.

Provides a scripted provider, a small tool registry and an orchestrator
factory, so individual test modules can focus on behavior rather than setup.
"""

from __future__ import annotations

import asyncio
import copy
from typing import Any, Optional

import pytest

from familiar.api.base import ProviderAdapter, StreamEnd, TextDelta, ToolCallRequest
from familiar.harness.loop import Orchestrator
from familiar.harness.permissions import PermissionGate
from familiar.tools.executor import ToolExecutor
from familiar.tools.registry import ToolDefinition, ToolRegistry


# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------

class ScriptedProvider(ProviderAdapter):
    """
    Plays back one script per ``stream`` call.

    A script is a list of steps: fragments are yielded, exception instances
    are raised, and an ``asyncio.Event`` blocks the stream until it is set.
    """

    name = "scripted"

    def __init__(self, *scripts: list[Any]):
        self._scripts = list(scripts)
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    async def stream(self, system, messages, tools=None):
        self.calls.append({
            "system": system,
            "messages": copy.deepcopy(messages),
            "tools": tools,
        })
        script = self._scripts.pop(0) if self._scripts else [TextDelta("ok"), StreamEnd()]
        for step in script:
            if isinstance(step, BaseException):
                raise step
            if isinstance(step, asyncio.Event):
                await step.wait()
                continue
            yield step
            await asyncio.sleep(0)

    async def aclose(self) -> None:
        self.closed = True


def text_script(*chunks: str) -> list[Any]:
    return [*(TextDelta(c) for c in chunks), StreamEnd()]


def tool_script(name: str, arguments: Optional[dict] = None, call_id: str = "call_1", text: str = "") -> list[Any]:
    steps: list[Any] = [TextDelta(text)] if text else []
    steps.append(ToolCallRequest(call_id=call_id, name=name, arguments=arguments or {}))
    steps.append(StreamEnd("tool_use"))
    return steps


# ---------------------------------------------------------------------------
# Registry fixtures
# ---------------------------------------------------------------------------

def make_registry(**handlers: Any) -> ToolRegistry:
    """
    A registry with one tool per risk tier:

        echo        low
        walk        medium, not interruptible
        write_file  high
        format_disk critical
    """
    registry = ToolRegistry()
    registry.register(ToolDefinition(
        name="echo",
        description="Echo text back",
        input_schema={
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
        handler=handlers.get("echo", lambda text: f"echo:{text}"),
        risk_level="low",
        subject_key="text",
    ))
    registry.register(ToolDefinition(
        name="walk",
        description="Move the body",
        input_schema={
            "type": "object",
            "properties": {"direction": {"type": "string"}},
            "required": ["direction"],
        },
        handler=handlers.get("walk", lambda direction: f"walked {direction}"),
        risk_level="medium",
        interruptible=False,
        subject_key="direction",
    ))
    registry.register(ToolDefinition(
        name="write_file",
        description="Write a file",
        input_schema={
            "type": "object",
            "properties": {"path": {"type": "string"}, "content": {"type": "string"}},
            "required": ["path", "content"],
        },
        handler=handlers.get("write_file", lambda path, content: f"wrote {path}"),
        risk_level="high",
        subject_key="path",
    ))
    registry.register(ToolDefinition(
        name="format_disk",
        description="Wipe the disk",
        input_schema={"type": "object", "properties": {}},
        handler=handlers.get("format_disk", lambda: "formatted"),
        risk_level="critical",
    ))
    return registry


@pytest.fixture()
def registry() -> ToolRegistry:
    return make_registry()


# ---------------------------------------------------------------------------
# Orchestrator factory
# ---------------------------------------------------------------------------

@pytest.fixture()
def build_orchestrator():
    """Factory: build_orchestrator(provider, registry=None, trust_mode=..., rules=..., **kwargs)."""

    def _build(
        provider: ProviderAdapter,
        registry: Optional[ToolRegistry] = None,
        trust_mode: str = "prompt",
        rules=(),
        **kwargs: Any,
    ) -> Orchestrator:
        registry = registry or make_registry()
        gate = PermissionGate(registry, trust_mode=trust_mode, rules=rules)
        executor = ToolExecutor(registry=registry, default_timeout=5.0)
        return Orchestrator(
            provider=provider,
            registry=registry,
            executor=executor,
            gate=gate,
            **kwargs,
        )

    return _build


async def collect_events(stream, on_event=None) -> list:
    """Drain a stream, calling ``on_event(event)`` for each one as it arrives."""
    events = []
    async for event in stream:
        events.append(event)
        if on_event is not None:
            result = on_event(event)
            if asyncio.iscoroutine(result):
                await result
    return events
