"""
Desires — the familiar's reasons to act without being asked.

Each desire is a single number in [0, 1] that grows while the familiar sits
idle. Looking around gets more tempting the longer it has been since the
familiar last looked; wanting to say hello grows more slowly. When a desire
reaches its threshold the heartbeat turns it into an autonomous turn, and
once that turn has been started the desire drops back to its baseline.

Levels only go up while idle. They come down in exactly one way: the
desire's own action firing (``reset``).

The strongest desire also colors every system prompt through
``context_string``, so even a user-initiated turn knows what the familiar
currently feels like doing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_THRESHOLD = 0.6

AUTONOMOUS_INPUT_TEMPLATE = (
    "(autonomous) You feel like you want to {directive}. Act on it naturally."
)


@dataclass
class Desire:
    """One motivational drive and the words used to describe it to the model."""
    name: str
    level: float = 0.0
    growth_rate: float = 0.0              # Level gained per second while idle
    baseline: float = 0.0                 # Level after the desire's action fires
    threshold: float = DEFAULT_THRESHOLD
    directive: str = ""                   # "look around the room"
    why: str = "I feel an urge to do something."
    suggestion: str = "follow your instinct"

    def __post_init__(self) -> None:
        if self.growth_rate < 0:
            logger.warning(
                "desire.negative_growth_rate",
                name=self.name,
                growth_rate=self.growth_rate,
                coerced_to=0.0,
            )
            self.growth_rate = 0.0
        self.level = _clamp(self.level)
        self.baseline = _clamp(self.baseline)
        if not self.directive:
            self.directive = self.name.replace("_", " ")


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def _default_desires(threshold: float) -> list[Desire]:
    return [
        Desire(
            name="look_around",
            level=0.4,
            growth_rate=0.008,
            baseline=0.4,
            threshold=threshold,
            directive="look around the room",
            why="I haven't observed the environment recently and feel drawn to check it.",
            suggestion="consider using see() or look() to observe the surroundings",
        ),
        Desire(
            name="greet_companion",
            level=0.3,
            growth_rate=0.004,
            baseline=0.3,
            threshold=threshold,
            directive="check on your companion and say hello",
            why="I miss interacting with my companion and want to acknowledge them.",
            suggestion="consider saying hello or checking in with the companion",
        ),
        Desire(
            name="explore_object",
            level=0.2,
            growth_rate=0.002,
            baseline=0.2,
            threshold=threshold,
            directive="take a closer look at something interesting",
            why="Something caught my attention and I want to investigate further.",
            suggestion="consider looking more closely at interesting objects",
        ),
        Desire(
            name="rest",
            level=0.0,
            growth_rate=0.0,
            baseline=0.0,
            threshold=threshold,
            directive="rest quietly",
            why="I feel like being still for a while.",
            suggestion="stay quiet unless spoken to",
        ),
    ]


class DesireState:
    """The set of desires and the arithmetic on their levels."""

    def __init__(self, desires: list[Desire]):
        self._desires: dict[str, Desire] = {}
        for desire in desires:
            if desire.name in self._desires:
                raise ValueError(f"Duplicate desire name: {desire.name!r}")
            self._desires[desire.name] = desire
        self._triggers: dict[str, int] = {name: 0 for name in self._desires}

    @classmethod
    def default(cls, threshold: float = DEFAULT_THRESHOLD) -> DesireState:
        return cls(_default_desires(threshold))

    def get(self, name: str) -> Optional[Desire]:
        return self._desires.get(name)

    def __iter__(self):
        return iter(self._desires.values())

    def accrue(self, elapsed: float) -> None:
        """Grow every desire by ``elapsed`` seconds of idleness."""
        if elapsed <= 0:
            return
        for desire in self._desires.values():
            desire.level = _clamp(desire.level + desire.growth_rate * elapsed)

    def strongest(self) -> Optional[Desire]:
        """The highest desire at or above its threshold; earlier wins ties."""
        best: Optional[Desire] = None
        for desire in self._desires.values():
            if desire.level < desire.threshold:
                continue
            if best is None or desire.level > best.level:
                best = desire
        return best

    def reset(self, name: str) -> None:
        """Drop a desire back to its baseline after its action fired."""
        desire = self._desires.get(name)
        if desire is None:
            return
        desire.level = desire.baseline
        self._triggers[name] += 1
        logger.debug("desires.reset", name=name, level=desire.level)

    def directive_for(self, desire: Desire) -> str:
        """The synthetic user input an autonomous turn starts from."""
        return AUTONOMOUS_INPUT_TEMPLATE.format(directive=desire.directive)

    def context_string(self) -> str:
        """Prompt section describing the strongest desire, or "" if none."""
        desire = self.strongest()
        if desire is None:
            return ""
        if desire.level >= 0.85:
            intensity = "strongly"
        elif desire.level >= 0.7:
            intensity = "moderately"
        else:
            intensity = "slightly"
        return (
            f"Current desire: I {intensity} want to {desire.directive}.\n"
            f"Why: {desire.why}\n"
            f"Suggestion: {desire.suggestion}."
        )

    def snapshot(self) -> dict[str, float]:
        return {name: round(d.level, 4) for name, d in self._desires.items()}

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "levels": self.snapshot(),
            "triggers": dict(self._triggers),
        }
