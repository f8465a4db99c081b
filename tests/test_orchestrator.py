from __future__ import annotations

import asyncio

import pytest

from conftest import ScriptedProvider, collect_events, make_registry, text_script, tool_script
from familiar.api.base import StreamEnd, TextDelta
from familiar.config import PermRule
from familiar.errors import ConcurrencyError, ProviderError, RecallError
from familiar.events import (
    ActionEvent,
    CancelledEvent,
    DoneEvent,
    ErrorEvent,
    PermRequestEvent,
    TextEvent,
)
from familiar.harness.loop import TurnPhase
from familiar.memory.port import Memory
from familiar.tools.registry import ToolDefinition
from familiar.types import ImageObservation


def _types(events) -> list[str]:
    return [e.type for e in events]


def _last_tool_result(provider: ScriptedProvider, call_index: int = 1) -> dict:
    """The first tool_result block sent to the provider on the given call."""
    messages = provider.calls[call_index]["messages"]
    return messages[-1]["content"][0]


class TestTextTurn:
    @pytest.mark.asyncio
    async def test_text_streams_in_order_then_done(self, build_orchestrator) -> None:
        provider = ScriptedProvider(text_script("Hel", "lo", " there"))
        orch = build_orchestrator(provider)

        events = await orch.start_turn("hi").collect()

        assert _types(events) == ["text", "text", "text", "done"]
        assert "".join(e.chunk for e in events if isinstance(e, TextEvent)) == "Hello there"
        assert orch.is_idle
        assert orch.last_outcome is TurnPhase.DONE

    @pytest.mark.asyncio
    async def test_conversation_and_history_are_committed(self, build_orchestrator) -> None:
        provider = ScriptedProvider(text_script("Hello"))
        orch = build_orchestrator(provider)

        await orch.start_turn("hi").collect()

        messages = orch.conversation.messages
        assert [m.role for m in messages] == ["user", "assistant"]
        assert messages[1].content == "Hello"
        assert messages[1].complete is True
        assert orch.history == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": [{"type": "text", "text": "Hello"}]},
        ]

    @pytest.mark.asyncio
    async def test_second_turn_sees_previous_history(self, build_orchestrator) -> None:
        provider = ScriptedProvider(text_script("one"), text_script("two"))
        orch = build_orchestrator(provider)

        await orch.start_turn("first").collect()
        await orch.start_turn("second").collect()

        sent = provider.calls[1]["messages"]
        assert [m["role"] for m in sent] == ["user", "assistant", "user"]
        assert sent[-1]["content"] == "second"

    @pytest.mark.asyncio
    async def test_system_prompt_is_built_from_recalled_memories(self, build_orchestrator) -> None:
        class _Memory:
            async def recall(self, query, k=5):
                return [Memory(content=f"about {query}")]

            async def remember(self, content, emotion="neutral", image_path=None):
                return "ok"

        seen = []

        def _builder(memories):
            seen.append(memories)
            return "SYSTEM:" + ",".join(m.content for m in memories)

        provider = ScriptedProvider(text_script("ok"))
        orch = build_orchestrator(provider, memory=_Memory(), system_prompt_builder=_builder)

        await orch.start_turn("cats").collect()

        assert [m.content for m in seen[0]] == ["about cats"]
        assert provider.calls[0]["system"] == "SYSTEM:about cats"


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_start_while_active_raises_without_side_effects(self, build_orchestrator) -> None:
        release = asyncio.Event()
        provider = ScriptedProvider([TextDelta("a"), release, StreamEnd()])
        orch = build_orchestrator(provider)

        stream = orch.start_turn("first")
        with pytest.raises(ConcurrencyError):
            orch.start_turn("second")

        assert len(orch.conversation) == 2
        release.set()
        events = await stream.collect()
        assert _types(events) == ["text", "done"]
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_clear_and_set_provider_refuse_while_active(self, build_orchestrator) -> None:
        release = asyncio.Event()
        orch = build_orchestrator(ScriptedProvider([release, StreamEnd()]))

        stream = orch.start_turn("hi")
        with pytest.raises(ConcurrencyError):
            orch.clear()
        with pytest.raises(ConcurrencyError):
            orch.set_provider(ScriptedProvider())

        release.set()
        await stream.collect()
        orch.clear()
        assert len(orch.conversation) == 0
        assert orch.history == []


class TestToolCalls:
    @pytest.mark.asyncio
    async def test_low_risk_tool_runs_and_result_is_fed_back(self, build_orchestrator) -> None:
        provider = ScriptedProvider(
            tool_script("echo", {"text": "hi"}, text="Let me try. "),
            text_script("Done."),
        )
        orch = build_orchestrator(provider)

        events = await orch.start_turn("go").collect()

        assert _types(events) == ["text", "action", "text", "done"]
        action = events[1]
        assert isinstance(action, ActionEvent)
        assert action.name == "echo"
        assert action.label == "⚙️ echo..."

        result = _last_tool_result(provider)
        assert result == {
            "type": "tool_result",
            "tool_use_id": "call_1",
            "content": "echo:hi",
            "is_error": False,
        }
        assistant = provider.calls[1]["messages"][-2]
        assert assistant["content"][0] == {"type": "text", "text": "Let me try. "}
        assert assistant["content"][1]["type"] == "tool_use"

        message = orch.conversation.messages[-1]
        assert message.content == "Let me try. Done."
        assert message.actions == ["⚙️ echo..."]
        assert len(orch.history) == 4

    @pytest.mark.asyncio
    async def test_unknown_tool_ends_turn_with_error(self, build_orchestrator) -> None:
        provider = ScriptedProvider(tool_script("teleport"))
        orch = build_orchestrator(provider)

        events = await orch.start_turn("go").collect()

        assert _types(events) == ["error"]
        assert "teleport" in events[0].message
        assert orch.last_outcome is TurnPhase.ERROR

    @pytest.mark.asyncio
    async def test_tool_failure_is_an_observation_not_a_turn_error(self, build_orchestrator) -> None:
        def _boom(text):
            raise RuntimeError("disk on fire")

        provider = ScriptedProvider(tool_script("echo", {"text": "x"}), text_script("sorry"))
        orch = build_orchestrator(provider, registry=make_registry(echo=_boom))

        events = await orch.start_turn("go").collect()

        assert _types(events) == ["action", "text", "done"]
        result = _last_tool_result(provider)
        assert result["is_error"] is True
        assert result["content"] == "Error: RuntimeError: disk on fire"

    @pytest.mark.asyncio
    async def test_image_observation_becomes_text_and_image_blocks(self, build_orchestrator) -> None:
        provider = ScriptedProvider(tool_script("echo", {"text": "x"}), text_script("nice"))
        registry = make_registry(echo=lambda text: ImageObservation(text="a cat", image_b64="QUJD"))
        orch = build_orchestrator(provider, registry=registry)

        await orch.start_turn("look").collect()

        content = _last_tool_result(provider)["content"]
        assert content[0] == {"type": "text", "text": "a cat"}
        assert content[1]["type"] == "image"
        assert content[1]["source"]["data"] == "QUJD"

    @pytest.mark.asyncio
    async def test_step_limit_ends_with_single_error(self, build_orchestrator) -> None:
        provider = ScriptedProvider(
            tool_script("echo", {"text": "1"}, call_id="c1"),
            tool_script("echo", {"text": "2"}, call_id="c2"),
            tool_script("echo", {"text": "3"}, call_id="c3"),
        )
        orch = build_orchestrator(provider, max_iterations=2)

        events = await orch.start_turn("loop forever").collect()

        assert _types(events) == ["action", "action", "error"]
        assert events[-1].message == "Reached maximum steps (2)."
        assert len(provider.calls) == 2


class TestPermissions:
    @pytest.mark.asyncio
    async def test_custom_deny_rule_skips_prompt_and_reports_reason(self, build_orchestrator) -> None:
        provider = ScriptedProvider(tool_script("walk", {"direction": "forward"}), text_script("ok"))
        orch = build_orchestrator(
            provider, trust_mode="custom", rules=[PermRule.parse("deny:walk")]
        )

        events = await orch.start_turn("walk").collect()

        assert _types(events) == ["text", "done"]
        result = _last_tool_result(provider)
        assert result["is_error"] is True
        assert result["content"] == "Permission denied: denied by rule 'deny:walk'"

    @pytest.mark.asyncio
    async def test_prompt_mode_waits_for_approval_before_acting(self, build_orchestrator) -> None:
        written = []
        registry = make_registry(write_file=lambda path, content: written.append(path) or "ok")
        provider = ScriptedProvider(
            tool_script("write_file", {"path": "notes.txt", "content": "x"}),
            text_script("saved"),
        )
        orch = build_orchestrator(provider, registry=registry)

        seen = []

        def _on_event(event):
            if isinstance(event, PermRequestEvent):
                assert not any(isinstance(e, ActionEvent) for e in seen)
                assert written == []
                assert orch.phase is TurnPhase.AWAITING_PERMISSION
                assert orch.respond_permission(event.id, True) is True
            seen.append(event)

        events = await collect_events(orch.start_turn("save it"), _on_event)

        assert _types(events) == ["perm_request", "action", "text", "done"]
        assert events[0].tool == "write_file"
        assert events[0].detail == "notes.txt"
        assert written == ["notes.txt"]

    @pytest.mark.asyncio
    async def test_user_denial_is_fed_back_without_action(self, build_orchestrator) -> None:
        provider = ScriptedProvider(
            tool_script("write_file", {"path": "a", "content": "b"}),
            text_script("ok then"),
        )
        orch = build_orchestrator(provider)

        def _deny(event):
            if isinstance(event, PermRequestEvent):
                orch.respond_permission(event.id, False)

        events = await collect_events(orch.start_turn("save"), _deny)

        assert _types(events) == ["perm_request", "text", "done"]
        assert _last_tool_result(provider)["content"] == "Permission denied by user"

    @pytest.mark.asyncio
    async def test_critical_tool_is_asked_about_under_prompt_mode(self, build_orchestrator) -> None:
        provider = ScriptedProvider(tool_script("format_disk"), text_script("no"))
        orch = build_orchestrator(provider)

        def _deny(event):
            if isinstance(event, PermRequestEvent):
                orch.respond_permission(event.id, False)

        events = await collect_events(orch.start_turn("wipe"), _deny)

        assert _types(events) == ["perm_request", "text", "done"]
        assert events[0].tool == "format_disk"
        assert _last_tool_result(provider)["content"] == "Permission denied by user"

    @pytest.mark.asyncio
    async def test_unclassified_tool_waits_for_approval(self, build_orchestrator) -> None:
        deleted = []
        registry = make_registry()
        registry.register(ToolDefinition(
            name="delete_all",
            description="Delete everything",
            input_schema={"type": "object", "properties": {}},
            handler=lambda: deleted.append(True) or "deleted",
        ))
        provider = ScriptedProvider(tool_script("delete_all"), text_script("gone"))
        orch = build_orchestrator(provider, registry=registry)

        seen = []

        def _approve(event):
            if isinstance(event, PermRequestEvent):
                assert seen == []
                assert deleted == []
                orch.respond_permission(event.id, True)
            seen.append(event)

        events = await collect_events(orch.start_turn("clean up"), _approve)

        assert _types(events) == ["perm_request", "action", "text", "done"]
        assert events[0].tool == "delete_all"
        assert deleted == [True]

    @pytest.mark.asyncio
    async def test_full_trust_runs_without_asking(self, build_orchestrator) -> None:
        provider = ScriptedProvider(
            tool_script("write_file", {"path": "a", "content": "b"}), text_script("done")
        )
        orch = build_orchestrator(provider, trust_mode="full")

        events = await orch.start_turn("save").collect()

        assert _types(events) == ["action", "text", "done"]


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_stream_keeps_partial_text(self, build_orchestrator) -> None:
        never = asyncio.Event()
        provider = ScriptedProvider([TextDelta("partial"), never, TextDelta("never sent")])
        orch = build_orchestrator(provider)

        stream = orch.start_turn("talk")
        events = []
        async for event in stream:
            events.append(event)
            if isinstance(event, TextEvent):
                assert orch.cancel() is True

        assert _types(events) == ["text", "cancelled"]
        message = orch.conversation.messages[-1]
        assert message.content == "partial"
        assert message.complete is True
        assert orch.history == [
            {"role": "user", "content": "talk"},
            {"role": "assistant", "content": "partial"},
        ]
        assert orch.is_idle
        assert orch.last_outcome is TurnPhase.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_before_first_step(self, build_orchestrator) -> None:
        provider = ScriptedProvider(text_script("hello"))
        orch = build_orchestrator(provider)

        stream = orch.start_turn("hi")
        assert orch.cancel() is True
        assert orch.cancel() is True  # repeated requests are harmless

        events = await stream.collect()
        assert _types(events) == ["cancelled"]
        assert provider.calls == []
        assert orch.history[-1] == {"role": "assistant", "content": "[interrupted]"}

    @pytest.mark.asyncio
    async def test_cancel_when_idle_is_a_noop(self, build_orchestrator) -> None:
        orch = build_orchestrator(ScriptedProvider())
        assert orch.cancel() is False

    @pytest.mark.asyncio
    async def test_cancel_while_awaiting_permission_denies_request(self, build_orchestrator) -> None:
        provider = ScriptedProvider(tool_script("write_file", {"path": "a", "content": "b"}))
        orch = build_orchestrator(provider)
        requests = []

        def _on_event(event):
            if isinstance(event, PermRequestEvent):
                requests.append(event.id)
                orch.cancel()

        events = await collect_events(orch.start_turn("save"), _on_event)

        assert _types(events) == ["perm_request", "cancelled"]
        assert orch.respond_permission(requests[0], True) is False
        assert orch.stats["cancelled"] == 1

    @pytest.mark.asyncio
    async def test_uninterruptible_tool_finishes_before_cancel_lands(self, build_orchestrator) -> None:
        release = asyncio.Event()
        finished = []

        async def _walk(direction):
            await release.wait()
            finished.append(direction)
            return "walked"

        provider = ScriptedProvider(tool_script("walk", {"direction": "left"}), text_script("after"))
        orch = build_orchestrator(provider, registry=make_registry(walk=_walk), trust_mode="full")

        def _on_event(event):
            if isinstance(event, ActionEvent):
                orch.cancel()
                asyncio.get_running_loop().call_later(0.01, release.set)

        events = await collect_events(orch.start_turn("walk"), _on_event)

        assert _types(events) == ["action", "cancelled"]
        assert finished == ["left"]
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_interruptible_tool_is_abandoned(self, build_orchestrator) -> None:
        never = asyncio.Event()
        cancelled = []

        async def _echo(text):
            try:
                await never.wait()
            except asyncio.CancelledError:
                cancelled.append(text)
                raise

        provider = ScriptedProvider(tool_script("echo", {"text": "x"}))
        orch = build_orchestrator(provider, registry=make_registry(echo=_echo))

        def _on_event(event):
            if isinstance(event, ActionEvent):
                asyncio.get_running_loop().call_soon(orch.cancel)

        events = await collect_events(orch.start_turn("go"), _on_event)

        assert _types(events) == ["action", "cancelled"]
        assert cancelled == ["x"]


class TestFailures:
    @pytest.mark.asyncio
    async def test_provider_failure_keeps_and_annotates_partial_text(self, build_orchestrator) -> None:
        provider = ScriptedProvider([TextDelta("par"), ProviderError("boom")])
        orch = build_orchestrator(provider)

        events = await orch.start_turn("hi").collect()

        assert _types(events) == ["text", "error"]
        assert events[-1].message == "boom"
        assert orch.conversation.messages[-1].content == "par\n\n[error: boom]"
        assert orch.history[-1] == {"role": "assistant", "content": "par"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failure", [RecallError("index offline"), RuntimeError("index offline")])
    async def test_recall_failure_still_streams_with_no_memories(self, build_orchestrator, failure) -> None:
        class _BrokenMemory:
            async def recall(self, query, k=5):
                raise failure

            async def remember(self, content, emotion="neutral", image_path=None):
                return "ok"

        seen = []
        provider = ScriptedProvider(text_script("still here"))
        orch = build_orchestrator(
            provider,
            memory=_BrokenMemory(),
            system_prompt_builder=lambda memories: seen.append(memories) or "",
        )

        events = await orch.start_turn("hi").collect()

        assert _types(events) == ["text", "done"]
        assert seen == [[]]

    @pytest.mark.asyncio
    async def test_exactly_one_terminal_event_and_it_is_last(self, build_orchestrator) -> None:
        provider = ScriptedProvider(
            tool_script("echo", {"text": "a"}), text_script("b"),
        )
        orch = build_orchestrator(provider)

        stream = orch.start_turn("go")
        events = await stream.collect()

        terminals = [e for e in events if isinstance(e, (DoneEvent, CancelledEvent, ErrorEvent))]
        assert terminals == [events[-1]]
        assert stream.closed
        assert all(e.turn_id == stream.turn_id for e in events)


class TestAutonomous:
    @pytest.mark.asyncio
    async def test_autonomous_turn_marks_user_message(self, build_orchestrator) -> None:
        orch = build_orchestrator(ScriptedProvider(text_script("looking")))

        await orch.start_turn("(autonomous) look around", autonomous=True).collect()

        assert orch.conversation.messages[0].autonomous is True
