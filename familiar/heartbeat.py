"""
Heartbeat — the familiar's autonomous pulse.

Between conversations the familiar is not switched off. A background task
wakes every ``interval`` seconds, lets its desires grow by however long it
has been since the last beat, and, if one of them has crossed its threshold,
starts a turn on its own with a synthetic input such as

    (autonomous) You feel like you want to look around the room. Act on it naturally.

The heartbeat never interrupts. While a turn is running (the user's or its
own) a beat is skipped entirely: no growth is booked and nothing is
triggered. Growth is time based, so the next idle beat books the whole gap at
once and nothing is lost.

The idle check and the start of the turn happen in the same event-loop step
(``trigger`` is synchronous), so a user message cannot slip in between them.

A beat that raises is logged and the loop keeps going. Too many failures in
a row open a circuit breaker and the heartbeat rests for a cool-down period.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

import structlog

from familiar.cognition.desires import Desire, DesireState

logger = structlog.get_logger(__name__)

TriggerFn = Callable[[Desire, str], bool]


class DesireScheduler:
    """Runs desire accrual on a timer and fires autonomous turns."""

    def __init__(
        self,
        desires: DesireState,
        is_idle: Callable[[], bool],
        trigger: TriggerFn,
        interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        circuit_max_consecutive: int = 5,
        circuit_cooldown_seconds: float = 300.0,
    ):
        self._desires = desires
        self._is_idle = is_idle
        self._trigger = trigger
        self._interval = interval
        self._clock = clock
        self._sleep = sleep
        self._circuit_max_consecutive = circuit_max_consecutive
        self._circuit_cooldown_seconds = circuit_cooldown_seconds

        self._last_tick = clock()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._beat_count = 0
        self._skipped = 0
        self._triggered = 0
        self._consecutive_failures = 0
        self._circuit_open_until: Optional[float] = None
        self._last_error: Optional[str] = None

    @property
    def desires(self) -> DesireState:
        return self._desires

    @property
    def running(self) -> bool:
        return self._running

    # -------------------------------------------------------------------------
    # One beat
    # -------------------------------------------------------------------------

    def tick(self) -> Optional[str]:
        """
        Run one beat. Returns the name of the desire that started a turn,
        or None.
        """
        self._beat_count += 1
        if not self._is_idle():
            self._skipped += 1
            logger.debug("heartbeat.skipped_busy", beat_number=self._beat_count)
            return None

        now = self._clock()
        elapsed = max(0.0, now - self._last_tick)
        self._last_tick = now
        self._desires.accrue(elapsed)

        desire = self._desires.strongest()
        if desire is None:
            return None

        directive = self._desires.directive_for(desire)
        if not self._trigger(desire, directive):
            logger.debug("heartbeat.trigger_declined", desire=desire.name)
            return None

        self._desires.reset(desire.name)
        self._triggered += 1
        logger.info(
            "heartbeat.desire_triggered",
            desire=desire.name,
            beat_number=self._beat_count,
        )
        return desire.name

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background loop."""
        if self._running:
            logger.warning("heartbeat.already_running")
            return

        self._consecutive_failures = 0
        self._circuit_open_until = None
        self._last_error = None
        self._last_tick = self._clock()
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("heartbeat.started", interval=self._interval)

    async def stop(self) -> None:
        """Gracefully stop the loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("heartbeat.stopped", total_beats=self._beat_count)

    async def _loop(self) -> None:
        while self._running:
            if self._circuit_open_until is not None:
                remaining = self._circuit_open_until - self._clock()
                if remaining > 0:
                    await self._sleep(min(self._interval, remaining))
                    continue
                self._circuit_open_until = None
                logger.info("heartbeat.circuit_closed")
            try:
                self.tick()
                self._consecutive_failures = 0
                self._last_error = None
            except Exception as e:
                self._consecutive_failures += 1
                self._last_error = str(e)
                logger.error(
                    "heartbeat.beat_failed",
                    error=str(e),
                    consecutive=self._consecutive_failures,
                    exc_info=True,
                )
                if self._consecutive_failures >= self._circuit_max_consecutive:
                    self._circuit_open_until = self._clock() + self._circuit_cooldown_seconds
                    logger.critical(
                        "heartbeat.circuit_open",
                        failures=self._consecutive_failures,
                        cool_down_seconds=self._circuit_cooldown_seconds,
                    )
                    self._consecutive_failures = 0

            await self._sleep(self._interval)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "interval": self._interval,
            "beats": self._beat_count,
            "skipped": self._skipped,
            "triggered": self._triggered,
            "circuit_open": self._circuit_open_until is not None,
            "last_error": self._last_error,
            "desires": self._desires.snapshot(),
        }
