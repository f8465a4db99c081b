from __future__ import annotations

import pytest

from familiar.memory.episodic import EpisodicMemory
from familiar.memory.port import Memory, MemoryPort, format_memories


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, minutes: float) -> None:
        self.now += minutes * 60


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory(clock):
    return EpisodicMemory(clock=clock)


class TestRemember:
    @pytest.mark.asyncio
    async def test_acknowledges_and_stores(self, memory) -> None:
        ack = await memory.remember("A red ball rolled under the sofa.", emotion="curious")
        assert ack == "Remembered: A red ball rolled under the sofa."
        assert memory.count == 1
        assert memory.retrieve_recent(1)[0].emotion == "curious"

    @pytest.mark.asyncio
    async def test_image_suffix_and_unknown_emotion(self, memory) -> None:
        ack = await memory.remember("Sunset", emotion="ecstatic", image_path="/tmp/p.jpg")
        assert ack == "Remembered (with image): Sunset"
        assert memory.retrieve_recent(1)[0].emotion == "neutral"

    @pytest.mark.asyncio
    async def test_empty_content_rejected(self, memory) -> None:
        with pytest.raises(ValueError):
            await memory.remember("   ")

    @pytest.mark.asyncio
    async def test_oldest_entries_are_dropped_past_capacity(self, clock) -> None:
        memory = EpisodicMemory(max_entries=2, clock=clock)
        for text in ("one", "two", "three"):
            await memory.remember(text)
            clock.advance(1)
        assert [m.content for m in memory.retrieve_recent()] == ["three", "two"]


class TestRecall:
    @pytest.mark.asyncio
    async def test_keyword_match_beats_recency(self, memory, clock) -> None:
        await memory.remember("The red ball is under the sofa.")
        clock.advance(30)
        await memory.remember("Made coffee in the kitchen.")

        results = await memory.recall("where is the red ball?", k=5)

        assert [r.content for r in results] == [
            "The red ball is under the sofa.",
            "Made coffee in the kitchen.",
        ]
        assert results[0].score > results[1].score

    @pytest.mark.asyncio
    async def test_falls_back_to_most_recent(self, memory, clock) -> None:
        await memory.remember("first")
        clock.advance(5)
        await memory.remember("second")

        results = await memory.recall("zebra", k=1)
        assert [r.content for r in results] == ["second"]

    @pytest.mark.asyncio
    async def test_empty_store(self, memory) -> None:
        assert await memory.recall("anything") == []

    @pytest.mark.asyncio
    async def test_results_are_copies(self, memory) -> None:
        await memory.remember("cat on the windowsill")
        result = (await memory.recall("cat"))[0]
        result.content = "changed"
        assert memory.retrieve_recent(1)[0].content == "cat on the windowsill"

    def test_satisfies_the_port(self, memory) -> None:
        assert isinstance(memory, MemoryPort)


class TestFormatting:
    def test_no_memories(self) -> None:
        assert format_memories([]) == "No relevant memories found."

    def test_lines_carry_score_emotion_and_image(self) -> None:
        memory = Memory(
            content="x" * 200,
            emotion="happy",
            timestamp=0.0,
            image_path="/tmp/a.jpg",
            score=0.5,
        )
        line = format_memories([memory])
        assert line.startswith(f"- {memory.when} (0.50) [happy] 📷: ")
        assert line.endswith("x" * 120)
        assert "x" * 121 not in line

    def test_neutral_memory_is_plain(self) -> None:
        memory = Memory(content="hello", timestamp=0.0)
        assert format_memories([memory]) == f"- {memory.when}: hello"
