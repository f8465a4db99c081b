"""
Memory Recall Port — the contract between the turn loop and any memory store.

The orchestrator only ever asks two things of memory: "what do you remember
that is relevant to this?" before a turn, and (through the ``remember`` tool)
"keep this". Anything that implements those two coroutines can sit behind
the port: the in-process keyword store in ``episodic.py``, or an
embedding-backed store living somewhere else entirely.

Recall failures are never fatal. The orchestrator logs them and carries on
with no memories.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable

EMOTIONS = ("neutral", "happy", "sad", "curious", "excited", "moved")


@dataclass
class Memory:
    """One remembered observation."""
    content: str
    emotion: str = "neutral"
    timestamp: float = field(default_factory=time.time)
    image_path: Optional[str] = None
    memory_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    score: Optional[float] = None

    @property
    def when(self) -> str:
        return time.strftime("%Y-%m-%d %H:%M", time.localtime(self.timestamp))


@runtime_checkable
class MemoryPort(Protocol):
    async def recall(self, query: str, k: int = 5) -> list[Memory]:
        """Most similar first, at most ``k``; may be empty.

        Raises RecallError when the store cannot be reached.
        """
        ...

    async def remember(
        self,
        content: str,
        emotion: str = "neutral",
        image_path: Optional[str] = None,
    ) -> str:
        """Store an observation; returns an acknowledgement line."""
        ...


def format_memories(memories: list[Memory], preview: int = 120) -> str:
    """Render recalled memories one per line, the way the model sees them."""
    if not memories:
        return "No relevant memories found."
    lines = []
    for memory in memories:
        score = f" ({memory.score:.2f})" if memory.score is not None else ""
        emotion = f" [{memory.emotion}]" if memory.emotion != "neutral" else ""
        image = " 📷" if memory.image_path else ""
        lines.append(f"- {memory.when}{score}{emotion}{image}: {memory.content[:preview]}")
    return "\n".join(lines)
