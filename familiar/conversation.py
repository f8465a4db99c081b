"""
Conversation — the display record of what was said and done.

This is the history a host renders: user lines, assistant text, and the
labels of the actions the assistant took along the way. It is deliberately
separate from the model context (which carries raw tool_use/tool_result
blocks and lives inside the orchestrator).

Only the active turn writes to it. Readers get immutable snapshots.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Literal, Optional

Role = Literal["user", "assistant"]


@dataclass
class Message:
    role: Role
    content: str = ""
    actions: list[str] = field(default_factory=list)
    complete: bool = True
    autonomous: bool = False
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: float = field(default_factory=time.time)


class Conversation:
    """
    Append-only sequence of messages with at most one open assistant message.

    The open message is the one the current turn is streaming into. It stays
    open across permission prompts and closes when the turn reaches a
    terminal state.
    """

    def __init__(self) -> None:
        self._messages: list[Message] = []
        self._open: Optional[Message] = None

    def add_user(self, text: str, *, autonomous: bool = False) -> Message:
        message = Message(role="user", content=text, autonomous=autonomous)
        self._messages.append(message)
        return message

    def open_assistant(self) -> Message:
        if self._open is not None:
            raise RuntimeError("An assistant message is already open")
        message = Message(role="assistant", complete=False)
        self._messages.append(message)
        self._open = message
        return message

    @property
    def open_message(self) -> Optional[Message]:
        return self._open

    def append_text(self, chunk: str) -> None:
        self._require_open().content += chunk

    def add_action(self, label: str) -> None:
        self._require_open().actions.append(label)

    def close(self, annotation: str = "") -> Optional[Message]:
        """Mark the open message complete, optionally appending an annotation."""
        message = self._open
        if message is None:
            return None
        if annotation:
            message.content += annotation
        message.complete = True
        self._open = None
        return message

    def clear(self) -> None:
        if self._open is not None:
            raise RuntimeError("Cannot clear while an assistant message is open")
        self._messages.clear()

    @property
    def messages(self) -> tuple[Message, ...]:
        """Snapshot copy; mutating it does not touch the conversation."""
        return tuple(replace(m, actions=list(m.actions)) for m in self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def _require_open(self) -> Message:
        if self._open is None:
            raise RuntimeError("No assistant message is open")
        return self._open
