"""
Turn Events — what a host sees while the agent thinks and acts.

Each turn gets its own EventStream: an ordered, single-producer,
single-consumer channel backed by an asyncio.Queue. The orchestrator is the
only producer; the host that started the turn is the only consumer.

Event vocabulary (a closed, discriminated union of Pydantic models):

    text          a chunk of assistant text, in provider order
    action        the assistant is about to use a tool (with a display label)
    perm_request  a tool call is waiting for the human; NOT terminal
    done          the turn finished normally                 (terminal)
    cancelled     the turn was cancelled                      (terminal)
    error         the turn failed                             (terminal)

Exactly one terminal event is emitted per turn and it is always the last.
Once it has been emitted the stream is closed: further emits raise, and
iteration stops after delivering it.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, ClassVar, Literal

import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)


class TurnEvent(BaseModel):
    """Base class for every event emitted during a turn."""

    terminal: ClassVar[bool] = False

    turn_id: str = ""


class TextEvent(TurnEvent):
    type: Literal["text"] = "text"
    chunk: str


class ActionEvent(TurnEvent):
    type: Literal["action"] = "action"
    name: str
    label: str


class PermRequestEvent(TurnEvent):
    type: Literal["perm_request"] = "perm_request"
    id: str
    tool: str
    detail: str = ""


class DoneEvent(TurnEvent):
    terminal: ClassVar[bool] = True
    type: Literal["done"] = "done"


class CancelledEvent(TurnEvent):
    terminal: ClassVar[bool] = True
    type: Literal["cancelled"] = "cancelled"


class ErrorEvent(TurnEvent):
    terminal: ClassVar[bool] = True
    type: Literal["error"] = "error"
    message: str


class EventStream:
    """Ordered single-consumer stream of the events of one turn."""

    def __init__(self, turn_id: str) -> None:
        self.turn_id = turn_id
        self._queue: asyncio.Queue[TurnEvent] = asyncio.Queue()
        self._closed = False
        self._consumer_attached = False
        self._emitted = 0

    def emit(self, event: TurnEvent) -> None:
        """Enqueue an event. Non-blocking; raises once the stream is closed."""
        if self._closed:
            raise RuntimeError(
                f"Turn {self.turn_id} already ended; cannot emit {event.type!r}"
            )
        if not event.turn_id:
            event.turn_id = self.turn_id
        self._queue.put_nowait(event)
        self._emitted += 1
        if event.terminal:
            self._closed = True
            logger.debug(
                "event_stream.closed",
                turn_id=self.turn_id,
                terminal=event.type,
                events=self._emitted,
            )

    @property
    def closed(self) -> bool:
        """True once the terminal event has been emitted."""
        return self._closed

    def __aiter__(self) -> AsyncIterator[TurnEvent]:
        if self._consumer_attached:
            raise RuntimeError("EventStream supports a single consumer")
        self._consumer_attached = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[TurnEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if event.terminal:
                return

    async def collect(self) -> list[TurnEvent]:
        """Consume the whole stream and return its events."""
        return [event async for event in self]
