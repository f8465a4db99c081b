"""
Built-in Tools — the familiar's native capabilities.

Two families ship with the package:

- The body: ``see``, ``look``, ``say`` and ``walk`` drive the camera, speaker
  and wheels through the device ports in ``familiar.ports``.
- The desk: ``remember``/``recall`` for long-term memory, and ``read_file``,
  ``write_file``, ``list_files`` and ``bash`` for working on the companion's
  machine.

Definitions are registered here with ``handler=None``. The agent wires the
handlers afterwards (``FamiliarAgent._wire_builtin_tool_handlers``), because
they close over the agent's configured ports, memory store and working
directory.

Risk levels decide what the ``prompt`` trust mode asks about: looking,
speaking and remembering are safe; moving the body, writing files and
running commands need a yes from the human first.
"""

from __future__ import annotations

from familiar.memory.port import EMOTIONS
from familiar.tools.registry import ToolDefinition, ToolRegistry


def register_builtin_tools(registry: ToolRegistry) -> None:
    """Register all built-in tools with the registry."""
    _register_body_tools(registry)
    _register_memory_tools(registry)
    _register_workspace_tools(registry)


def _register_body_tools(registry: ToolRegistry) -> None:
    registry.register(ToolDefinition(
        name="see",
        description=(
            "Take a photo with your camera (your eyes). Call this after looking "
            "around to actually see what is there."
        ),
        input_schema={"type": "object", "properties": {}, "required": []},
        handler=None,
        risk_level="low",
        category="body",
    ))

    registry.register(ToolDefinition(
        name="look",
        description=(
            "Move your camera neck. direction: left|right|up|down|around. "
            "degrees: how far (default 30)."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "direction": {
                    "type": "string",
                    "enum": ["left", "right", "up", "down", "around"],
                    "description": "Direction to look",
                },
                "degrees": {
                    "type": "integer",
                    "description": "How far in degrees (1-90, default 30)",
                },
            },
            "required": ["direction"],
        },
        handler=None,
        risk_level="low",
        category="body",
        subject_key="direction",
    ))

    registry.register(ToolDefinition(
        name="say",
        description=(
            "Speak aloud. This is the ONLY way to make sound; text output is "
            "silent. Keep it to 1-2 short sentences."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "text": {"type": "string", "description": "What to say aloud"},
                "speaker": {
                    "type": "string",
                    "enum": ["camera", "pc", "both"],
                    "description": (
                        "Which speaker to use. 'camera' = the camera speaker in the room "
                        "(default when available), 'pc' = the local speaker, 'both' = both."
                    ),
                },
            },
            "required": ["text"],
        },
        handler=None,
        risk_level="low",
        category="body",
        interruptible=False,
        subject_key="text",
    ))

    registry.register(ToolDefinition(
        name="walk",
        description=(
            "Move the robot body. direction: forward|backward|left|right|stop. "
            "duration: seconds (optional). Walking does NOT change what the camera sees."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "direction": {
                    "type": "string",
                    "enum": ["forward", "backward", "left", "right", "stop"],
                    "description": "Movement direction",
                },
                "duration": {
                    "type": "number",
                    "description": "Duration in seconds (optional)",
                },
            },
            "required": ["direction"],
        },
        handler=None,
        risk_level="medium",
        category="body",
        interruptible=False,
        subject_key="direction",
    ))


def _register_memory_tools(registry: ToolRegistry) -> None:
    registry.register(ToolDefinition(
        name="remember",
        description=(
            "Save something to long-term memory: what you saw, what happened, how "
            "you felt, conversations. If you just took a photo with see(), pass the "
            "image_path to attach it."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "content": {"type": "string", "description": "What to remember (1-3 sentences)."},
                "emotion": {
                    "type": "string",
                    "enum": list(EMOTIONS),
                    "description": "Emotional tone of this memory.",
                },
                "image_path": {
                    "type": "string",
                    "description": "Optional path to an image file to attach (e.g. from see()).",
                },
            },
            "required": ["content"],
        },
        handler=None,
        risk_level="low",
        category="memory",
    ))

    registry.register(ToolDefinition(
        name="recall",
        description=(
            "Search long-term memory for things related to a topic: past "
            "observations, conversations, or feelings."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "What to search for."},
                "n": {"type": "integer", "description": "Number of memories to return (default 3)."},
            },
            "required": ["query"],
        },
        handler=None,
        risk_level="low",
        category="memory",
        subject_key="query",
    ))


def _register_workspace_tools(registry: ToolRegistry) -> None:
    registry.register(ToolDefinition(
        name="read_file",
        description="Read a text file. Optionally specify a 1-based inclusive line range.",
        input_schema={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path (absolute or relative to the work dir)"},
                "start_line": {"type": "integer", "description": "First line to read (1-based, optional)"},
                "end_line": {"type": "integer", "description": "Last line to read (inclusive, optional)"},
            },
            "required": ["path"],
        },
        handler=None,
        risk_level="low",
        category="workspace",
        subject_key="path",
    ))

    registry.register(ToolDefinition(
        name="write_file",
        description="Write (overwrite) a file with the given content. Parent directories are created.",
        input_schema={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path (absolute or relative to the work dir)"},
                "content": {"type": "string", "description": "Full new file content"},
            },
            "required": ["path", "content"],
        },
        handler=None,
        risk_level="high",
        category="workspace",
        subject_key="path",
    ))

    registry.register(ToolDefinition(
        name="list_files",
        description="List files matching a glob pattern under a directory.",
        input_schema={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory to search (default: the work dir)"},
                "pattern": {"type": "string", "description": "Glob pattern (default: **/*)"},
            },
            "required": [],
        },
        handler=None,
        risk_level="low",
        category="workspace",
        subject_key="path",
    ))

    registry.register(ToolDefinition(
        name="bash",
        description="Run a shell command. Returns the exit code, stdout and stderr. Has a timeout.",
        input_schema={
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Shell command to execute"},
                "timeout_secs": {
                    "type": "integer",
                    "description": "Timeout in seconds (default 30, max 120)",
                },
                "cwd": {
                    "type": "string",
                    "description": "Working directory override (default: the work dir)",
                },
            },
            "required": ["command"],
        },
        handler=None,
        risk_level="high",
        category="workspace",
        # The handler enforces its own (shorter) timeout and reports it as output.
        timeout=130.0,
        subject_key="command",
    ))
