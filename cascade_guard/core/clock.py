"""
Cascade Guard - Clock & Scheduler
=================================

Time sources and timer scheduling used by every component.

Production code runs on the asyncio loop (SystemClock + AsyncioScheduler).
Tests drive time by hand (ManualClock + ManualScheduler) so countdowns,
backoff and heartbeats are deterministic without real wall-clock delays.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Set, Union

import structlog

logger = structlog.get_logger()

TimerCallback = Callable[[], Union[None, Awaitable[Any]]]


# ==========================================================================
# Clocks
# ==========================================================================

class Clock(Protocol):
    """Time source."""

    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""
        ...

    def local_now(self) -> datetime:
        """Current wall-clock time in the user's local zone."""
        ...


class SystemClock:
    """Real time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def local_now(self) -> datetime:
        return datetime.now()


class ManualClock:
    """
    Clock that only moves when told to.

    local_now() is the UTC instant shifted by a fixed offset, so off-hours
    checks can be tested independently of the machine's timezone.
    """

    def __init__(self, start: Optional[datetime] = None, local_offset: timedelta = timedelta(0)):
        self._now = start or datetime(2024, 3, 4, 12, 0, 0, tzinfo=timezone.utc)
        self.local_offset = local_offset

    def now(self) -> datetime:
        return self._now

    def local_now(self) -> datetime:
        return (self._now + self.local_offset).replace(tzinfo=None)

    def set(self, when: datetime) -> None:
        self._now = when

    def advance(self, seconds: float) -> datetime:
        self._now = self._now + timedelta(seconds=seconds)
        return self._now


# ==========================================================================
# Timer Handles
# ==========================================================================

class TimerHandle:
    """Cancellable handle returned by a scheduler."""

    def __init__(self) -> None:
        self._cancelled = False
        self._on_cancel: Optional[Callable[[], None]] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._on_cancel is not None:
            self._on_cancel()


class Scheduler(Protocol):
    """Timer source."""

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        ...

    def call_every(self, interval: float, callback: TimerCallback) -> TimerHandle:
        ...


def _repeat(scheduler: "Scheduler", interval: float, callback: TimerCallback) -> TimerHandle:
    """Build a repeating timer out of one-shot call_later timers."""
    handle = TimerHandle()
    current: List[TimerHandle] = []

    def tick() -> Union[None, Awaitable[Any]]:
        if handle.cancelled:
            return None
        current[:] = [scheduler.call_later(interval, tick)]
        return callback()

    def stop() -> None:
        for inner in current:
            inner.cancel()

    handle._on_cancel = stop
    current.append(scheduler.call_later(interval, tick))
    return handle


# ==========================================================================
# Asyncio Scheduler
# ==========================================================================

class AsyncioScheduler:
    """Scheduler backed by the running asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._tasks: Set[asyncio.Task] = set()

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        handle = TimerHandle()

        def fire() -> None:
            if handle.cancelled:
                return
            result = callback()
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

        loop_handle = self._get_loop().call_later(max(0.0, delay), fire)
        handle._on_cancel = loop_handle.cancel
        return handle

    def call_every(self, interval: float, callback: TimerCallback) -> TimerHandle:
        return _repeat(self, interval, callback)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("scheduled_callback_failed", error=str(exc))


# ==========================================================================
# Manual Scheduler
# ==========================================================================

@dataclass(order=True)
class _PendingTimer:
    due: datetime
    seq: int
    callback: TimerCallback = field(compare=False)
    handle: TimerHandle = field(compare=False)


class ManualScheduler:
    """
    Scheduler whose timers fire only inside advance().

    Timers fire in due-time order; the clock is moved to each timer's due
    time before its callback runs. Awaitable callback results are awaited.
    """

    def __init__(self, clock: ManualClock):
        self.clock = clock
        self._pending: List[_PendingTimer] = []
        self._seq = 0

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        handle = TimerHandle()
        self._seq += 1
        timer = _PendingTimer(
            due=self.clock.now() + timedelta(seconds=max(0.0, delay)),
            seq=self._seq,
            callback=callback,
            handle=handle,
        )
        self._pending.append(timer)
        return handle

    def call_every(self, interval: float, callback: TimerCallback) -> TimerHandle:
        return _repeat(self, interval, callback)

    @property
    def pending_count(self) -> int:
        return sum(1 for timer in self._pending if not timer.handle.cancelled)

    async def advance(self, seconds: float) -> None:
        """Move time forward, firing every timer that falls due on the way."""
        target = self.clock.now() + timedelta(seconds=seconds)
        while True:
            self._pending = [t for t in self._pending if not t.handle.cancelled]
            due = [t for t in self._pending if t.due <= target]
            if not due:
                break
            timer = min(due)
            self._pending.remove(timer)
            if timer.due > self.clock.now():
                self.clock.set(timer.due)
            result = timer.callback()
            if inspect.isawaitable(result):
                await result
            await _drain()
        self.clock.set(target)
        await _drain()


async def _drain(rounds: int = 5) -> None:
    """Let tasks spawned by timer callbacks make progress."""
    for _ in range(rounds):
        await asyncio.sleep(0)
