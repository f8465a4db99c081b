"""
Device ports — the familiar's body, seen from the turn loop.

Camera, speaker and wheels are external devices whose drivers live outside
this package. The built-in ``see``/``look``/``say``/``walk`` tools only talk to
these protocols. When a device is not configured the matching ``Unconfigured*``
stand-in answers instead, so the model learns the body part is missing rather
than the turn failing.
"""

from __future__ import annotations

from typing import Optional, Protocol, Union, runtime_checkable

import structlog

from familiar.types import ImageObservation

logger = structlog.get_logger(__name__)

CameraResult = Union[str, ImageObservation]


@runtime_checkable
class CameraPort(Protocol):
    async def capture(self) -> CameraResult: ...

    async def look(self, direction: str, degrees: int = 30) -> CameraResult: ...


@runtime_checkable
class SpeechPort(Protocol):
    async def say(self, text: str, speaker: str = "") -> str: ...


@runtime_checkable
class LocomotionPort(Protocol):
    async def walk(self, direction: str, duration: Optional[float] = None) -> str: ...


class UnconfiguredCamera:
    async def capture(self) -> CameraResult:
        return "(No camera configured)"

    async def look(self, direction: str, degrees: int = 30) -> CameraResult:
        return f"(No camera configured — cannot look {direction})"


class UnconfiguredSpeech:
    async def say(self, text: str, speaker: str = "") -> str:
        logger.debug("speech.unconfigured", chars=len(text))
        return f"(No TTS configured — would have said: {text})"


class UnconfiguredLocomotion:
    async def walk(self, direction: str, duration: Optional[float] = None) -> str:
        return f"(No robot configured — cannot walk {direction})"
