"""Coalescing of change bursts into recompile signals.

The timer logic is a small explicit state machine:

    IDLE --relevant event--> ARMED(deadline)
    ARMED --relevant event--> ARMED(now + quiet)
    ARMED --deadline passed--> FLUSHING        (signal emitted, dirty cleared)
    FLUSHING --relevant event--> FLUSHING      (dirty kept)
    FLUSHING --flush done, dirty--> ARMED(max(now, last event + quiet))
    FLUSHING --flush done, clean--> IDLE

At most one flush is in flight and at most one follow-up is ever pending.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from typing import Awaitable, Callable, Optional

from .logs import _log
from .watcher import ChangeEvent, WatchTarget


class State(enum.Enum):
    IDLE = "idle"
    ARMED = "armed"
    FLUSHING = "flushing"


class Debouncer:
    """Pure debounce state; every method takes the current time explicitly."""

    def __init__(self, target: WatchTarget, quiet: float) -> None:
        self.target = target
        self.quiet = float(quiet)
        self.state = State.IDLE
        self.deadline: Optional[float] = None
        self.dirty = False
        self.last_event_at: Optional[float] = None
        self.signals = 0

    def observe(self, event: ChangeEvent, now: float) -> bool:
        """Feed one event. Returns True when it counted as relevant."""
        if not self.target.is_relevant(event):
            return False
        self.dirty = True
        self.last_event_at = now
        if self.state is not State.FLUSHING:
            self.state = State.ARMED
            self.deadline = now + self.quiet
        return True

    def due(self, now: float) -> bool:
        return self.state is State.ARMED and self.deadline is not None and now >= self.deadline

    def time_left(self, now: float) -> Optional[float]:
        """Seconds until the armed deadline, or None when no timer is running."""
        if self.state is not State.ARMED or self.deadline is None:
            return None
        return max(0.0, self.deadline - now)

    def begin_flush(self) -> int:
        if self.state is not State.ARMED:
            raise RuntimeError(f"cannot flush from state {self.state.value}")
        self.state = State.FLUSHING
        self.deadline = None
        self.dirty = False
        self.signals += 1
        return self.signals

    def end_flush(self, now: float) -> None:
        if self.state is not State.FLUSHING:
            raise RuntimeError(f"no flush in flight (state {self.state.value})")
        if self.dirty:
            self.state = State.ARMED
            last = self.last_event_at if self.last_event_at is not None else now
            self.deadline = max(now, last + self.quiet)
        else:
            self.state = State.IDLE
            self.deadline = None


FlushFn = Callable[[], Awaitable[object]]


class DebounceAggregator:
    """
    Single consumer of the change queue. Timer handling and signal emission
    stay on this task; each flush runs as its own task so a slow compile
    never stalls event consumption.
    """

    def __init__(
        self,
        target: WatchTarget,
        queue: "asyncio.Queue[ChangeEvent]",
        flush: FlushFn,
        *,
        quiet: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.debouncer = Debouncer(target, quiet)
        self._queue = queue
        self._flush = flush
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None

    @property
    def signals(self) -> int:
        return self.debouncer.signals

    @property
    def state(self) -> State:
        return self.debouncer.state

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self.run(), name="debounce-aggregator")

    async def stop(self) -> None:
        tasks = [t for t in (self._task, self._inflight) if t is not None and not t.done()]
        for t in tasks:
            t.cancel()
        for t in tasks:
            try:
                await t
            except asyncio.CancelledError:
                pass
        self._task = None
        self._inflight = None

    async def run(self) -> None:
        deb = self.debouncer
        getter: Optional[asyncio.Task] = None
        try:
            while True:
                if getter is None:
                    getter = asyncio.ensure_future(self._queue.get())
                waiting = {getter}
                if self._inflight is not None:
                    waiting.add(self._inflight)
                done, _ = await asyncio.wait(
                    waiting,
                    timeout=deb.time_left(self._clock()),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if getter in done:
                    event = getter.result()
                    getter = None
                    if not deb.observe(event, self._clock()):
                        _log("watch", f"[watch] ignored path={event.path}", logging.DEBUG)
                if self._inflight is not None and self._inflight in done:
                    self._finish_flush()
                if deb.due(self._clock()):
                    self._start_flush()
        finally:
            if getter is not None:
                getter.cancel()

    def _start_flush(self) -> None:
        n = self.debouncer.begin_flush()
        _log("watch", f"[watch] change detected; recompile signal #{n}")
        self._inflight = asyncio.create_task(self._flush(), name=f"recompile-{n}")

    def _finish_flush(self) -> None:
        task = self._inflight
        self._inflight = None
        if task is not None and not task.cancelled():
            err = task.exception()
            if err is not None:
                _log("compile", f"[compile] recompile task crashed: {err!r}", logging.ERROR)
        self.debouncer.end_flush(self._clock())
