from __future__ import annotations

import pytest

from familiar.events import (
    ActionEvent,
    CancelledEvent,
    DoneEvent,
    ErrorEvent,
    EventStream,
    PermRequestEvent,
    TextEvent,
)


@pytest.mark.asyncio
async def test_events_arrive_in_order_and_stop_at_terminal() -> None:
    stream = EventStream("t1")
    stream.emit(TextEvent(chunk="a"))
    stream.emit(ActionEvent(name="see", label="📷 Looking..."))
    stream.emit(DoneEvent())

    events = await stream.collect()

    assert [e.type for e in events] == ["text", "action", "done"]
    assert all(e.turn_id == "t1" for e in events)
    assert stream.closed


def test_emit_after_terminal_raises() -> None:
    stream = EventStream("t2")
    stream.emit(CancelledEvent())
    with pytest.raises(RuntimeError):
        stream.emit(TextEvent(chunk="late"))


def test_perm_request_is_not_terminal() -> None:
    stream = EventStream("t3")
    stream.emit(PermRequestEvent(id="r1", tool="bash", detail="ls"))
    assert not stream.closed


@pytest.mark.asyncio
async def test_single_consumer_only() -> None:
    stream = EventStream("t4")
    stream.emit(DoneEvent())
    stream.__aiter__()
    with pytest.raises(RuntimeError):
        stream.__aiter__()


def test_terminal_flags() -> None:
    assert DoneEvent.terminal and CancelledEvent.terminal and ErrorEvent.terminal
    assert not TextEvent.terminal and not PermRequestEvent.terminal
