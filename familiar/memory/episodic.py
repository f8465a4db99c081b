"""
Episodic Memory — the familiar's in-process record of what it has seen.

Observations are stored as they are remembered: a sentence or two of content,
an emotional tone, and optionally the path of a photo taken with ``see``.
Nothing is summarized or rewritten afterwards.

Retrieval blends two signals, after the Generative Agents formula
(Park et al., 2023) minus the importance term:

    score = recency_weight × recency + relevance_weight × relevance

Relevance is keyword overlap between the query and the observation. When no
observation shares a single word with the query the store falls back to the
most recent ones, so the model is never left with nothing when it has, in
fact, remembered things.
"""

from __future__ import annotations

import time
from dataclasses import replace
from typing import Callable, Optional

import structlog

from familiar.memory.port import EMOTIONS, Memory

logger = structlog.get_logger(__name__)


class EpisodicMemory:
    """Keyword + recency store implementing ``MemoryPort``."""

    def __init__(
        self,
        recency_decay: float = 0.995,     # Decay per minute
        recency_weight: float = 0.3,
        relevance_weight: float = 0.7,
        max_entries: int = 5000,
        clock: Callable[[], float] = time.time,
    ):
        self._memories: list[Memory] = []
        self._recency_decay = recency_decay
        self._recency_weight = recency_weight
        self._relevance_weight = relevance_weight
        self._max_entries = max(1, int(max_entries))
        self._clock = clock

        logger.info(
            "episodic_memory.initialized",
            weights=f"rec={recency_weight}, rel={relevance_weight}",
            max_entries=self._max_entries,
        )

    async def remember(
        self,
        content: str,
        emotion: str = "neutral",
        image_path: Optional[str] = None,
    ) -> str:
        content = content.strip()
        if not content:
            raise ValueError("Nothing to remember: content is empty")
        if emotion not in EMOTIONS:
            emotion = "neutral"

        memory = Memory(
            content=content,
            emotion=emotion,
            timestamp=self._clock(),
            image_path=image_path or None,
        )
        self._memories.append(memory)
        if len(self._memories) > self._max_entries:
            dropped = len(self._memories) - self._max_entries
            del self._memories[:dropped]

        logger.info(
            "episodic_memory.encoded",
            memory_id=memory.memory_id,
            emotion=emotion,
            has_image=memory.image_path is not None,
        )
        suffix = " (with image)" if memory.image_path else ""
        return f"Remembered{suffix}: {content[:60]}"

    async def recall(self, query: str, k: int = 5) -> list[Memory]:
        return self.retrieve(query, k)

    def retrieve(self, query: str = "", top_k: int = 5) -> list[Memory]:
        """Score every observation against the query and return the best."""
        top_k = max(1, min(int(top_k), 20))
        if not self._memories:
            return []

        now = self._clock()
        query_words = _words(query)
        scored: list[tuple[Memory, float, float]] = []

        for memory in self._memories:
            relevance = self._keyword_relevance(query_words, memory)
            minutes_ago = max(0.0, now - memory.timestamp) / 60.0
            recency = self._recency_decay ** minutes_ago
            score = self._recency_weight * recency + self._relevance_weight * relevance
            scored.append((memory, relevance, score))

        relevant = [entry for entry in scored if entry[1] > 0]
        if relevant:
            relevant.sort(key=lambda entry: entry[2], reverse=True)
            chosen = relevant
        else:
            chosen = sorted(scored, key=lambda entry: entry[0].timestamp, reverse=True)

        results = [replace(memory, score=round(score, 4)) for memory, _, score in chosen[:top_k]]
        logger.debug("episodic_memory.retrieved", query_words=len(query_words), results=len(results))
        return results

    def retrieve_recent(self, n: int = 10) -> list[Memory]:
        """Get the N most recent observations, newest first."""
        return sorted(self._memories, key=lambda m: m.timestamp, reverse=True)[:n]

    def _keyword_relevance(self, query_words: set[str], memory: Memory) -> float:
        if not query_words:
            return 0.0
        overlap = query_words & _words(memory.content)
        return len(overlap) / len(query_words)

    def clear(self) -> None:
        self._memories.clear()
        logger.info("episodic_memory.cleared")

    @property
    def count(self) -> int:
        return len(self._memories)


def _words(text: str) -> set[str]:
    return {w.strip(".,!?;:\"'()").lower() for w in text.split()} - {""}

