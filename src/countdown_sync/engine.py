"""
Timer engine

Owns one context's live copy of the envelope and runs the countdown. The
remaining time is always derived from the absolute deadline, so a late or
skipped tick never accumulates error.
"""

import asyncio
import logging
from collections.abc import Callable
from enum import StrEnum

from pydantic import BaseModel

from .channel import ReplicationChannel
from .config import TICK_INTERVAL
from .envelope import (
    DEFAULT_MINUTES,
    MAX_LABEL_LENGTH,
    OVERTIME_FLOOR_SECONDS,
    TimerEnvelope,
    coerce_minutes,
    derive_remaining,
    format_time,
    now_ms,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


class TimerState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"


class TimerSnapshot(BaseModel):
    context_id: str
    state: TimerState
    time_left: int
    formatted: str
    configured_minutes: int
    running: bool
    overtime: bool
    label: str | None
    deadline: int | None


Listener = Callable[[TimerSnapshot], None]


class TimerEngine:
    """Countdown timer for a single context, replicated through a channel."""

    def __init__(
        self,
        channel: ReplicationChannel,
        clock: Clock = now_ms,
        tick_interval: float = TICK_INTERVAL,
    ):
        self.channel = channel
        self.context_id = channel.context_id
        self.tick_interval = tick_interval
        self._clock = clock

        self.configured_minutes = DEFAULT_MINUTES
        self.remaining_seconds = DEFAULT_MINUTES * 60
        self.running = False
        self.deadline: int | None = None
        # Stopped mid-run, as opposed to idle at the configured duration
        self.paused = False
        self.label: str | None = None

        # Context that wrote the envelope we are following
        self.origin: str | None = None

        # Task for the countdown loop
        self._task: asyncio.Task | None = None

        self._listeners: set[Listener] = set()
        self._unsubscribe = channel.subscribe(self.adopt)

    # ------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------

    @property
    def time_left(self) -> int:
        if self.running and self.deadline is not None:
            return derive_remaining(self.deadline, self._clock())
        return self.remaining_seconds

    @property
    def state(self) -> TimerState:
        if self.running:
            return TimerState.RUNNING
        if self.paused:
            return TimerState.PAUSED
        return TimerState.IDLE

    @property
    def overtime(self) -> bool:
        return self.time_left < 0

    @property
    def is_scheduled(self) -> bool:
        return self._task is not None and not self._task.done()

    def format(self, seconds: int | None = None) -> str:
        return format_time(self.time_left if seconds is None else seconds)

    def envelope(self, now: int | None = None) -> TimerEnvelope:
        now = self._clock() if now is None else now
        remaining = self.remaining_seconds
        if self.running and self.deadline is not None:
            remaining = derive_remaining(self.deadline, now)
        return TimerEnvelope(
            remaining_seconds=remaining,
            configured_minutes=self.configured_minutes,
            running=self.running,
            deadline=self.deadline if self.running else None,
            written_at=now,
            paused=self.paused,
            label=self.label,
            origin=self.origin,
        )

    def snapshot(self) -> TimerSnapshot:
        time_left = self.time_left
        return TimerSnapshot(
            context_id=self.context_id,
            state=self.state,
            time_left=time_left,
            formatted=format_time(time_left),
            configured_minutes=self.configured_minutes,
            running=self.running,
            overtime=time_left < 0,
            label=self.label,
            deadline=self.deadline,
        )

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Call listener with a fresh snapshot after every state change."""
        self._listeners.add(listener)
        return lambda: self._listeners.discard(listener)

    # ------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------

    def start(self):
        """Start or resume the countdown.

        A non-positive stored value counts as exhausted and restarts the full
        configured duration. Starting a running timer keeps its deadline.
        """
        now = self._clock()
        if not (self.running and self.deadline is not None):
            duration = self.remaining_seconds
            if duration <= 0:
                duration = self.configured_minutes * 60
            self.remaining_seconds = duration
            self.deadline = now + duration * 1000
            self.running = True
            self.paused = False
        self._schedule()
        self._commit(now)

    def pause(self):
        """Freeze the countdown at its current derived value."""
        self._cancel()
        now = self._clock()
        if self.running and self.deadline is not None:
            self.remaining_seconds = derive_remaining(self.deadline, now)
            self.paused = True
        self.running = False
        self.deadline = None
        self._commit(now)

    def reset(self):
        self._cancel()
        self.remaining_seconds = self.configured_minutes * 60
        self.running = False
        self.paused = False
        self.deadline = None
        self._commit()

    def reconfigure(self, minutes):
        """Set a new duration; always stops the timer. Bad input becomes 1 minute."""
        self._cancel()
        minutes = coerce_minutes(minutes)
        self.configured_minutes = minutes
        self.remaining_seconds = minutes * 60
        self.running = False
        self.paused = False
        self.deadline = None
        self._commit()

    def relabel(self, label: str | None):
        """Change the display label without touching the countdown."""
        label = (label or "").strip()[:MAX_LABEL_LENGTH]
        self.label = label or None
        self._commit()

    # ------------------------------------------------------------
    # Replication
    # ------------------------------------------------------------

    def bootstrap(self) -> bool:
        """Pick up the stored envelope, if any. Returns True when one was adopted.

        With nothing stored the defaults stay in place and nothing is written.
        """
        envelope = self.channel.load()
        if envelope is None:
            logger.info("Context %s starting from defaults", self.context_id)
            return False
        self.adopt(envelope)
        return True

    def adopt(self, envelope: TimerEnvelope):
        """Replace local state with an envelope written elsewhere."""
        self.configured_minutes = envelope.configured_minutes
        self.label = envelope.label
        self.origin = envelope.origin

        if envelope.running and envelope.deadline is not None:
            # Follow the deadline; the stored seconds may already be stale
            self.running = True
            self.deadline = envelope.deadline
            self.remaining_seconds = derive_remaining(envelope.deadline, self._clock())
            self.paused = False
            self._schedule()
        else:
            self._cancel()
            self.running = False
            self.deadline = None
            self.remaining_seconds = envelope.remaining_seconds
            if envelope.paused is None:
                # Older payloads carry no phase
                self.paused = envelope.remaining_seconds != envelope.configured_minutes * 60
            else:
                self.paused = envelope.paused

        logger.debug(
            "Context %s adopted envelope from %s (running=%s)",
            self.context_id,
            envelope.origin,
            envelope.running,
        )
        self._notify()

    def _commit(self, now: int | None = None):
        self.origin = self.context_id
        self.channel.publish(self.envelope(now))
        self._notify()

    def _notify(self):
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Listener failed for context %s", self.context_id)

    # ------------------------------------------------------------
    # Countdown
    # ------------------------------------------------------------

    def tick(self) -> bool:
        """Recompute from the deadline. Returns False once the loop should stop."""
        if not self.running or self.deadline is None:
            return False

        now = self._clock()
        remaining = derive_remaining(self.deadline, now)
        if remaining != self.remaining_seconds:
            self.remaining_seconds = remaining
            # Only the writer keeps the stored value fresh; followers derive locally.
            # With the writer gone the stored seconds go stale, the deadline does not.
            if self.origin == self.context_id:
                self.channel.publish(self.envelope(now))
            self._notify()

        return remaining > OVERTIME_FLOOR_SECONDS

    def _schedule(self):
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    def _cancel(self):
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self):
        """Countdown loop."""
        try:
            while self.tick():
                await asyncio.sleep(self.tick_interval)
            if self.running:
                logger.info(
                    "Context %s passed the overtime floor, countdown idle", self.context_id
                )
        except asyncio.CancelledError:
            pass

    def close(self):
        """Tear down this context: stop the local loop and stop listening."""
        self._cancel()
        self._unsubscribe()
        self.channel.close()
        self._listeners.clear()
