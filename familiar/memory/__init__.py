"""Memory — what the familiar has seen and been told before."""
from familiar.memory.episodic import EpisodicMemory
from familiar.memory.port import Memory, MemoryPort, format_memories

__all__ = ["Memory", "MemoryPort", "EpisodicMemory", "format_memories"]
