"""
FamiliarAgent — the assembled familiar, and the only thing a host talks to.

This module wires the pieces together:

    config (AgentConfig + FamiliarSettings)
      → provider adapter          (familiar.api)
      → tool registry + executor  (familiar.tools), with built-in handlers
                                   bound to the device ports, memory and
                                   the working directory
      → permission gate           (familiar.harness.permissions)
      → orchestrator              (familiar.harness.loop)
      → desires + heartbeat       (familiar.cognition.desires, familiar.heartbeat)

and exposes the host commands: send a message, cancel it, answer a
permission request, clear the history, read and save the config and the
persona document, start and stop the heartbeat.

Desire-triggered turns are not requested by the host, so their event streams
are handed over through ``autonomous_streams``; a host drains that queue the
same way it drains the stream returned by ``send_message``. The queue holds at
most ``MAX_UNCLAIMED_AUTONOMOUS_STREAMS``; past that the oldest unclaimed
stream is dropped so a host that never drains it does not keep every turn.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from familiar.api import ProviderAdapter, create_provider
from familiar.cognition.desires import Desire, DesireState
from familiar.config import AgentConfig, FamiliarSettings
from familiar.config_file import load_agent_config, read_me_md, save_agent_config, write_me_md
from familiar.errors import ConcurrencyError, ConfigError
from familiar.events import EventStream
from familiar.harness.loop import Orchestrator
from familiar.harness.permissions import PermissionGate
from familiar.heartbeat import DesireScheduler
from familiar.memory.episodic import EpisodicMemory
from familiar.memory.port import Memory, MemoryPort, format_memories
from familiar.ports import (
    CameraPort,
    LocomotionPort,
    SpeechPort,
    UnconfiguredCamera,
    UnconfiguredLocomotion,
    UnconfiguredSpeech,
)
from familiar.prompt import build_system_prompt
from familiar.tools import ToolExecutor, ToolRegistry
from familiar.tools.builtin import filesystem, register_builtin_tools, shell

logger = structlog.get_logger(__name__)

MAX_UNCLAIMED_AUTONOMOUS_STREAMS = 8


class FamiliarAgent:
    """One familiar: its body, its memory, its conversation and its drives."""

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        settings: Optional[FamiliarSettings] = None,
        *,
        provider: Optional[ProviderAdapter] = None,
        memory: Optional[MemoryPort] = None,
        camera: Optional[CameraPort] = None,
        speech: Optional[SpeechPort] = None,
        locomotion: Optional[LocomotionPort] = None,
        work_dir: Optional[str | Path] = None,
    ):
        self._settings = settings or FamiliarSettings()
        self._config_path = self._settings.paths.config_path
        self._me_md_path = self._settings.paths.me_md_path
        self._config = (
            config.model_copy(deep=True)
            if config is not None
            else load_agent_config(self._config_path)
        )

        self._memory: MemoryPort = memory if memory is not None else EpisodicMemory()
        self._camera: CameraPort = camera or UnconfiguredCamera()
        self._speech: SpeechPort = speech or UnconfiguredSpeech()
        self._locomotion: LocomotionPort = locomotion or UnconfiguredLocomotion()
        self._work_dir = Path(work_dir or os.getcwd()).expanduser()

        # ---- Tools ----
        self.tool_registry = ToolRegistry()
        register_builtin_tools(self.tool_registry)
        self._wire_builtin_tool_handlers()
        self.tool_executor = ToolExecutor(
            registry=self.tool_registry,
            default_timeout=self._settings.loop.tool_default_timeout,
            max_output_length=self._settings.loop.tool_max_output_length,
        )

        # ---- Permissions ----
        self.permission_gate = PermissionGate(
            self.tool_registry,
            trust_mode=self._config.permissions.trust_mode,
            rules=self._config.permissions.rules,
        )

        # ---- Drives ----
        self.desires = DesireState.default(self._settings.desires.threshold)

        # ---- The loop ----
        self._owns_provider = provider is None
        self.orchestrator = Orchestrator(
            provider=provider or create_provider(self._config, self._settings.provider),
            registry=self.tool_registry,
            executor=self.tool_executor,
            gate=self.permission_gate,
            memory=self._memory,
            system_prompt_builder=self._system_prompt,
            max_iterations=self._settings.loop.max_iterations,
            recall_k=self._settings.loop.recall_k,
        )

        self.heartbeat = DesireScheduler(
            desires=self.desires,
            is_idle=lambda: self.orchestrator.is_idle,
            trigger=self._trigger_desire,
            interval=self._settings.desires.interval,
            circuit_max_consecutive=self._settings.desires.circuit_max_consecutive,
            circuit_cooldown_seconds=self._settings.desires.circuit_cooldown_seconds,
        )
        self.autonomous_streams: asyncio.Queue[EventStream] = asyncio.Queue(
            maxsize=MAX_UNCLAIMED_AUTONOMOUS_STREAMS
        )

        logger.info(
            "agent.initialized",
            platform=self._config.platform,
            model=self._config.effective_model(),
            trust_mode=self._config.permissions.trust_mode,
            tools=self.tool_registry.count,
            work_dir=str(self._work_dir),
        )

    # -------------------------------------------------------------------------
    # Conversation commands
    # -------------------------------------------------------------------------

    def send_message(self, text: str) -> EventStream:
        """Start a user turn. Raises ConcurrencyError if one is running."""
        return self.orchestrator.start_turn(text)

    def cancel_message(self) -> bool:
        return self.orchestrator.cancel()

    def respond_permission(self, request_id: str, allowed: bool) -> bool:
        return self.orchestrator.respond_permission(request_id, allowed)

    def clear_history(self) -> None:
        self.orchestrator.clear()

    @property
    def conversation(self):
        return self.orchestrator.conversation

    # -------------------------------------------------------------------------
    # Configuration and persona
    # -------------------------------------------------------------------------

    def get_config(self) -> AgentConfig:
        return self._config.model_copy(deep=True)

    async def save_config(self, config: AgentConfig) -> None:
        """Validate, persist and apply a new agent record."""
        if not self.orchestrator.is_idle:
            raise ConcurrencyError("Cannot change the configuration while a turn is active")
        try:
            validated = AgentConfig.model_validate(config.model_dump())
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

        save_agent_config(self._config_path, validated)
        previous = self._config
        self._config = validated
        self.permission_gate.configure(
            validated.permissions.trust_mode, validated.permissions.rules
        )

        provider_changed = (
            previous.platform != validated.platform
            or previous.api_key != validated.api_key
            or previous.effective_model() != validated.effective_model()
        )
        if self._owns_provider and provider_changed:
            old = self.orchestrator.provider
            self.orchestrator.set_provider(create_provider(validated, self._settings.provider))
            await old.aclose()
        logger.info(
            "agent.config_saved",
            platform=validated.platform,
            trust_mode=validated.permissions.trust_mode,
            provider_rebuilt=self._owns_provider and provider_changed,
        )

    def get_me_md(self) -> str:
        return read_me_md(self._me_md_path)

    def save_me_md(self, content: str) -> None:
        write_me_md(self._me_md_path, content)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the heartbeat (when desires are enabled)."""
        if self._settings.desires.enabled:
            await self.heartbeat.start()
        else:
            logger.info("agent.desires_disabled")

    async def stop(self) -> None:
        """Stop the heartbeat, end any active turn and release the provider."""
        await self.heartbeat.stop()
        if self.orchestrator.cancel():
            await self.orchestrator.wait_idle()
        if self._owns_provider:
            await self.orchestrator.provider.aclose()
        logger.info("agent.stopped")

    def status(self) -> dict[str, Any]:
        last_outcome = self.orchestrator.last_outcome
        return {
            "phase": self.orchestrator.phase.value,
            "active_turn_id": self.orchestrator.active_turn_id,
            "last_outcome": last_outcome.value if last_outcome is not None else None,
            "platform": self._config.platform,
            "model": self._config.effective_model(),
            "trust_mode": self.permission_gate.trust_mode.value,
            "pending_permissions": self.permission_gate.pending_count,
            "desires": self.desires.snapshot(),
            "heartbeat": self.heartbeat.stats,
            "loop": self.orchestrator.stats,
            "tools": self.tool_executor.stats,
            "messages": len(self.orchestrator.conversation),
        }

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _system_prompt(self, memories: list[Memory]) -> str:
        try:
            me_md = self.get_me_md()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("agent.me_md_unreadable", path=str(self._me_md_path), error=str(e))
            me_md = ""
        return build_system_prompt(
            self._config,
            memories,
            desire_context=self.desires.context_string(),
            me_md=me_md,
            max_iterations=self._settings.loop.max_iterations,
        )

    def _trigger_desire(self, desire: Desire, directive: str) -> bool:
        try:
            stream = self.orchestrator.start_turn(directive, autonomous=True)
        except ConcurrencyError:
            return False
        if self.autonomous_streams.full():
            dropped = self.autonomous_streams.get_nowait()
            logger.warning("agent.autonomous_stream_dropped", turn_id=dropped.turn_id)
        self.autonomous_streams.put_nowait(stream)
        logger.info("agent.autonomous_turn", desire=desire.name, turn_id=stream.turn_id)
        return True

    def _wire_builtin_tool_handlers(self) -> None:
        """Connect builtin tool definitions to the ports, memory and workspace.

        Builtin tools are registered with handler=None in tools/builtin; the
        handlers close over this agent's collaborators.
        """
        registry = self.tool_registry

        async def handle_see():
            return await self._camera.capture()

        async def handle_look(direction: str, degrees: int = 30):
            return await self._camera.look(direction, max(1, min(int(degrees), 90)))

        async def handle_say(text: str, speaker: str = "") -> str:
            return await self._speech.say(text, speaker)

        async def handle_walk(direction: str, duration: Optional[float] = None) -> str:
            return await self._locomotion.walk(direction, duration)

        async def handle_remember(
            content: str,
            emotion: str = "neutral",
            image_path: Optional[str] = None,
        ) -> str:
            return await self._memory.remember(content, emotion, image_path)

        async def handle_recall(query: str, n: int = 3) -> str:
            memories = await self._memory.recall(query, k=max(1, min(int(n), 20)))
            return format_memories(memories)

        def handle_read_file(
            path: str,
            start_line: Optional[int] = None,
            end_line: Optional[int] = None,
        ) -> str:
            return filesystem.read_file(self._work_dir, path, start_line, end_line)

        def handle_write_file(path: str, content: str) -> str:
            return filesystem.write_file(self._work_dir, path, content)

        def handle_list_files(path: Optional[str] = None, pattern: str = "**/*") -> str:
            return filesystem.list_files(self._work_dir, path, pattern)

        async def handle_bash(
            command: str,
            timeout_secs: Optional[int] = None,
            cwd: Optional[str] = None,
        ) -> str:
            return await shell.run_bash(self._work_dir, command, timeout_secs, cwd)

        handlers = {
            "see": handle_see,
            "look": handle_look,
            "say": handle_say,
            "walk": handle_walk,
            "remember": handle_remember,
            "recall": handle_recall,
            "read_file": handle_read_file,
            "write_file": handle_write_file,
            "list_files": handle_list_files,
            "bash": handle_bash,
        }
        for name, handler in handlers.items():
            tool = registry.get(name)
            if tool is not None:
                tool.handler = handler
