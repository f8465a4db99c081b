"""
The Turn Loop — the familiar's reason/act cycle, streamed.

The pattern is the classic ReAct loop:

    while True:
        fragments = provider.stream(system_prompt, messages, tools)
        for each fragment:
            text      → show it right away
            tool call → ask permission if needed, run it, keep the result
        if no tool was called: done
        messages += assistant blocks + tool results

Three things make it more than a while loop:

1. STREAMING. Every piece of text is forwarded as a ``text`` event the moment
   the provider produces it, and each tool call is handled as soon as it
   arrives, before the next fragment is pulled.

2. PERMISSION. Every tool call goes through the PermissionGate. A call the
   gate cannot decide alone suspends the turn behind a ``perm_request`` event
   until the host answers with ``respond_permission``.

3. CANCELLATION. ``cancel()`` cancels the turn's task, which interrupts
   whatever the turn is waiting on: the provider stream, a permission answer
   or a tool. Tools marked ``interruptible=False`` (moving the body, speaking)
   are allowed to finish first. Pending permission requests are denied.

Every turn ends in exactly one of DONE, CANCELLED or ERROR, and the matching
event is the last one on the stream. The loop is back to IDLE before that
event is emitted, so a host reacting to ``done`` can start the next turn
straight away.

The model history is only committed when a turn finishes. A completed turn
commits everything including the tool exchanges; a cancelled or failed turn
commits just the user's input and whatever text was streamed, so the history
never ends in a tool call without its result.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import structlog

from familiar.api.base import ProviderAdapter, StreamEnd, TextDelta, ToolCallRequest
from familiar.conversation import Conversation
from familiar.errors import (
    ConcurrencyError,
    PermissionDenied,
    ProviderError,
    RecallError,
    StepLimitError,
    UnknownToolError,
)
from familiar.events import (
    ActionEvent,
    CancelledEvent,
    DoneEvent,
    ErrorEvent,
    EventStream,
    PermRequestEvent,
    TextEvent,
    TurnEvent,
)
from familiar.harness.permissions import PermissionGate, Verdict, call_subject
from familiar.memory.port import Memory, MemoryPort
from familiar.tools.executor import ToolExecutionResult, ToolExecutor
from familiar.tools.labels import format_action_label
from familiar.tools.registry import ToolDefinition, ToolRegistry
from familiar.types import ImageObservation

logger = structlog.get_logger(__name__)

SystemPromptBuilder = Callable[[list[Memory]], str]


class TurnPhase(str, Enum):
    IDLE = "idle"
    RECALLING = "recalling"
    STREAMING = "streaming"
    AWAITING_PERMISSION = "awaiting_permission"
    EXECUTING_TOOL = "executing_tool"
    DONE = "done"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class ToolCall:
    call_id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    observation: Optional[str] = None
    error: Optional[str] = None


@dataclass
class TurnState:
    """Everything about the turn in flight. Discarded when it ends."""
    turn_id: str
    input_text: str
    autonomous: bool = False
    phase: TurnPhase = TurnPhase.RECALLING
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    cancel_requested: asyncio.Event = field(default_factory=asyncio.Event)
    started: bool = False
    started_at: float = field(default_factory=time.monotonic)


class Orchestrator:
    """
    Owns the conversation and runs one turn at a time.

    Everything the loop touches is injected, so tests can drive it with a
    scripted provider and an in-memory registry.
    """

    def __init__(
        self,
        provider: ProviderAdapter,
        registry: ToolRegistry,
        executor: ToolExecutor,
        gate: PermissionGate,
        conversation: Optional[Conversation] = None,
        memory: Optional[MemoryPort] = None,
        system_prompt_builder: Optional[SystemPromptBuilder] = None,
        max_iterations: int = 50,
        recall_k: int = 5,
    ):
        self._provider = provider
        self._registry = registry
        self._executor = executor
        self._gate = gate
        self._conversation = conversation or Conversation()
        self._memory = memory
        self._build_system_prompt = system_prompt_builder or (lambda memories: "")
        self._max_iterations = max(1, max_iterations)
        self._recall_k = recall_k

        self._history: list[dict[str, Any]] = []
        self._state: Optional[TurnState] = None
        self._task: Optional[asyncio.Task] = None
        self._last_outcome: Optional[TurnPhase] = None

        # Loop telemetry
        self._total_turns = 0
        self._total_iterations = 0
        self._total_tool_calls = 0
        self._outcomes = {TurnPhase.DONE: 0, TurnPhase.CANCELLED: 0, TurnPhase.ERROR: 0}

        logger.info(
            "orchestrator.initialized",
            provider=provider.name,
            max_iterations=self._max_iterations,
            recall_k=recall_k,
        )

    # ------------------------------------------------------------------
    # Host-facing state
    # ------------------------------------------------------------------

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    @property
    def history(self) -> list[dict[str, Any]]:
        """Copy of the committed model history."""
        return list(self._history)

    @property
    def is_idle(self) -> bool:
        return self._state is None

    @property
    def phase(self) -> TurnPhase:
        return self._state.phase if self._state is not None else TurnPhase.IDLE

    @property
    def active_turn_id(self) -> Optional[str]:
        return self._state.turn_id if self._state is not None else None

    @property
    def provider(self) -> ProviderAdapter:
        return self._provider

    @property
    def last_outcome(self) -> Optional[TurnPhase]:
        return self._last_outcome

    def set_provider(self, provider: ProviderAdapter) -> None:
        if not self.is_idle:
            raise ConcurrencyError("Cannot swap the provider while a turn is active")
        self._provider = provider
        logger.info("orchestrator.provider_replaced", provider=provider.name)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def start_turn(self, text: str, *, autonomous: bool = False) -> EventStream:
        """
        Begin a turn and return its event stream.

        The idle check and the state change happen in the same event-loop
        step, so two callers can never both start a turn.
        """
        if self._state is not None:
            raise ConcurrencyError(
                f"Turn {self._state.turn_id} is still in progress"
            )

        loop = asyncio.get_running_loop()
        turn_id = uuid.uuid4().hex[:12]
        state = TurnState(turn_id=turn_id, input_text=text, autonomous=autonomous)
        stream = EventStream(turn_id)

        self._conversation.add_user(text, autonomous=autonomous)
        self._conversation.open_assistant()
        self._state = state
        self._total_turns += 1
        self._task = loop.create_task(
            self._run_turn(state, stream), name=f"familiar-turn-{turn_id}"
        )
        logger.info(
            "orchestrator.turn_started",
            turn_id=turn_id,
            autonomous=autonomous,
            text=text,
        )
        return stream

    def cancel(self) -> bool:
        """Request cancellation of the active turn. False if idle."""
        state = self._state
        if state is None:
            return False
        if state.cancel_requested.is_set():
            return True
        state.cancel_requested.set()
        logger.info("orchestrator.cancel_requested", turn_id=state.turn_id, phase=state.phase.value)
        # A turn whose task has not run yet notices the flag on its first step.
        if state.started and self._task is not None:
            self._task.cancel()
        return True

    def respond_permission(self, request_id: str, allowed: bool) -> bool:
        return self._gate.respond(request_id, allowed)

    async def wait_idle(self) -> None:
        """Wait for the active turn's task (if any) to finish."""
        task = self._task
        if task is not None and not task.done():
            await asyncio.wait({task})

    def clear(self) -> None:
        """Forget the conversation and the model history."""
        if not self.is_idle:
            raise ConcurrencyError("Cannot clear history while a turn is active")
        self._conversation.clear()
        self._history.clear()
        logger.info("orchestrator.history_cleared")

    # ------------------------------------------------------------------
    # The turn
    # ------------------------------------------------------------------

    async def _run_turn(self, state: TurnState, stream: EventStream) -> None:
        state.started = True
        context = list(self._history)
        context.append({"role": "user", "content": state.input_text})

        try:
            if state.cancel_requested.is_set():
                raise asyncio.CancelledError()
            memories = await self._recall(state)
            system_prompt = self._build_system_prompt(memories)
            await self._react(state, stream, system_prompt, context)
        except asyncio.CancelledError:
            self._commit_partial(state, "[interrupted]")
            self._finish(state, stream, CancelledEvent(), TurnPhase.CANCELLED)
            if not state.cancel_requested.is_set():
                raise
        except (ProviderError, UnknownToolError, StepLimitError) as e:
            logger.warning(
                "orchestrator.turn_failed",
                turn_id=state.turn_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            self._fail(state, stream, str(e))
        except Exception as e:
            logger.error(
                "orchestrator.turn_crashed",
                turn_id=state.turn_id,
                error=str(e),
                exc_info=True,
            )
            self._fail(state, stream, f"{type(e).__name__}: {e}")
        else:
            self._history = context
            self._finish(state, stream, DoneEvent(), TurnPhase.DONE)

    async def _recall(self, state: TurnState) -> list[Memory]:
        if self._memory is None or self._recall_k <= 0:
            return []
        state.phase = TurnPhase.RECALLING
        try:
            memories = await self._memory.recall(state.input_text, k=self._recall_k)
        except RecallError as e:
            logger.warning("orchestrator.recall_failed", turn_id=state.turn_id, error=str(e))
            return []
        except Exception as e:
            logger.error(
                "orchestrator.recall_crashed",
                turn_id=state.turn_id,
                error=str(e),
                exc_info=True,
            )
            return []
        return list(memories or [])[: self._recall_k]

    async def _react(
        self,
        state: TurnState,
        stream: EventStream,
        system_prompt: str,
        context: list[dict[str, Any]],
    ) -> None:
        tools = self._registry.get_api_tools()

        for iteration in range(1, self._max_iterations + 1):
            self._total_iterations += 1
            state.phase = TurnPhase.STREAMING
            assistant_blocks: list[dict[str, Any]] = []
            results: list[dict[str, Any]] = []
            pending_text = ""
            stop_reason = ""

            fragments = self._provider.stream(system_prompt, context, tools)
            try:
                async for fragment in fragments:
                    if isinstance(fragment, TextDelta):
                        if not fragment.text:
                            continue
                        pending_text += fragment.text
                        state.text += fragment.text
                        self._conversation.append_text(fragment.text)
                        stream.emit(TextEvent(chunk=fragment.text))
                    elif isinstance(fragment, ToolCallRequest):
                        if pending_text:
                            assistant_blocks.append({"type": "text", "text": pending_text})
                            pending_text = ""
                        assistant_blocks.append({
                            "type": "tool_use",
                            "id": fragment.call_id,
                            "name": fragment.name,
                            "input": dict(fragment.arguments),
                        })
                        results.append(await self._handle_tool_call(state, stream, fragment))
                        state.phase = TurnPhase.STREAMING
                    elif isinstance(fragment, StreamEnd):
                        stop_reason = fragment.stop_reason
            finally:
                aclose = getattr(fragments, "aclose", None)
                if aclose is not None:
                    await aclose()

            if pending_text:
                assistant_blocks.append({"type": "text", "text": pending_text})
            if assistant_blocks:
                context.append({"role": "assistant", "content": assistant_blocks})

            logger.debug(
                "orchestrator.pass_complete",
                turn_id=state.turn_id,
                iteration=iteration,
                stop_reason=stop_reason,
                tool_calls=len(results),
            )
            if not results:
                return
            context.append({"role": "user", "content": results})

        logger.warning(
            "orchestrator.max_iterations",
            turn_id=state.turn_id,
            max=self._max_iterations,
            tool_calls=len(state.tool_calls),
        )
        raise StepLimitError(self._max_iterations)

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    async def _handle_tool_call(
        self,
        state: TurnState,
        stream: EventStream,
        request: ToolCallRequest,
    ) -> dict[str, Any]:
        call = ToolCall(call_id=request.call_id, name=request.name, arguments=dict(request.arguments))
        state.tool_calls.append(call)
        self._total_tool_calls += 1

        tool = self._registry.get(call.name)
        if tool is None:
            raise UnknownToolError(call.name)

        try:
            await self._check_permission(state, stream, tool, call)
        except PermissionDenied as e:
            return self._failed(call, str(e))

        state.phase = TurnPhase.EXECUTING_TOOL
        label = format_action_label(call.name, call.arguments)
        stream.emit(ActionEvent(name=call.name, label=label))
        self._conversation.add_action(label)

        result = await self._execute(tool, call)
        if not result.success:
            return self._failed(call, f"Error: {result.error}")
        return self._succeeded(call, result.result)

    async def _check_permission(
        self,
        state: TurnState,
        stream: EventStream,
        tool: ToolDefinition,
        call: ToolCall,
    ) -> None:
        """Return once the call may run; raise PermissionDenied otherwise."""
        decision = self._gate.evaluate(call.name, call.arguments)
        if decision.verdict is Verdict.DENIED:
            raise PermissionDenied(f"Permission denied: {decision.reason}")
        if decision.verdict is Verdict.APPROVED:
            return

        state.phase = TurnPhase.AWAITING_PERMISSION
        stream.emit(PermRequestEvent(
            id=decision.request_id,
            tool=call.name,
            detail=call_subject(tool.subject_key, call.arguments),
        ))
        if not await self._gate.wait(decision.request_id):
            raise PermissionDenied("Permission denied by user")

    async def _execute(self, tool: ToolDefinition, call: ToolCall) -> ToolExecutionResult:
        run = self._executor.execute(call.call_id, call.name, call.arguments)
        if tool.interruptible:
            return await run
        task = asyncio.ensure_future(run)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            logger.info("orchestrator.finishing_uninterruptible_tool", tool=call.name)
            await asyncio.gather(task, return_exceptions=True)
            raise

    def _succeeded(self, call: ToolCall, output: Any) -> dict[str, Any]:
        if isinstance(output, ImageObservation):
            call.observation = output.text
            content: Any = [
                {"type": "text", "text": output.text},
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": output.media_type,
                        "data": output.image_b64,
                    },
                },
            ]
        else:
            content = self._serialize_tool_result_content(output)
            call.observation = content
        return {"type": "tool_result", "tool_use_id": call.call_id, "content": content, "is_error": False}

    def _failed(self, call: ToolCall, message: str) -> dict[str, Any]:
        call.error = message
        logger.debug("orchestrator.tool_observation_error", tool=call.name, error=message)
        return {"type": "tool_result", "tool_use_id": call.call_id, "content": message, "is_error": True}

    @staticmethod
    def _serialize_tool_result_content(result: Any) -> str:
        if isinstance(result, str):
            return result
        if isinstance(result, (dict, list, tuple, int, float, bool)) or result is None:
            try:
                return json.dumps(result, ensure_ascii=False, separators=(",", ":"), default=str)
            except (TypeError, ValueError):
                pass
        return str(result)

    # ------------------------------------------------------------------
    # Terminal bookkeeping
    # ------------------------------------------------------------------

    def _commit_partial(self, state: TurnState, placeholder: str) -> None:
        self._history.append({"role": "user", "content": state.input_text})
        self._history.append({"role": "assistant", "content": state.text or placeholder})

    def _fail(self, state: TurnState, stream: EventStream, message: str) -> None:
        self._commit_partial(state, "[error]")
        self._finish(
            state,
            stream,
            ErrorEvent(message=message),
            TurnPhase.ERROR,
            annotation=f"\n\n[error: {message}]",
        )

    def _finish(
        self,
        state: TurnState,
        stream: EventStream,
        event: TurnEvent,
        outcome: TurnPhase,
        annotation: str = "",
    ) -> None:
        denied = self._gate.deny_all()
        self._conversation.close(annotation)
        state.phase = outcome
        self._state = None
        self._last_outcome = outcome
        self._outcomes[outcome] += 1

        logger.info(
            "orchestrator.turn_finished",
            turn_id=state.turn_id,
            outcome=outcome.value,
            tool_calls=len(state.tool_calls),
            denied_pending=denied,
            elapsed=round(time.monotonic() - state.started_at, 2),
        )
        stream.emit(event)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_turns": self._total_turns,
            "total_iterations": self._total_iterations,
            "total_tool_calls": self._total_tool_calls,
            "done": self._outcomes[TurnPhase.DONE],
            "cancelled": self._outcomes[TurnPhase.CANCELLED],
            "errors": self._outcomes[TurnPhase.ERROR],
            "history_messages": len(self._history),
        }
