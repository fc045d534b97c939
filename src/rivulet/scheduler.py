"""Schedulers: where time-deferred operators park their callbacks.

Only ``delay`` needs one. Three implementations:

- AsyncioScheduler (default): ``loop.call_later`` on the running event loop.
- VirtualScheduler: manual clock for deterministic tests and simulations.
- TimerScheduler: ``threading.Timer`` with an optional ``dispatch`` that
  marshals the callback back to the owning thread, e.g.
  ``TimerScheduler(dispatch=app.call_from_thread)``.

Call ``set_scheduler()`` once at startup to change the process default.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import threading
import time
from typing import Callable, Protocol, runtime_checkable

Cancel = Callable[[], None]


@runtime_checkable
class Scheduler(Protocol):
    def now(self) -> float: ...

    def call_later(self, delay: float, fn: Callable[[], None]) -> Cancel: ...


class AsyncioScheduler:
    """Schedules on an asyncio loop (the running one unless given)."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        return self._loop if self._loop is not None else asyncio.get_running_loop()

    def now(self) -> float:
        return self._get_loop().time()

    def call_later(self, delay: float, fn: Callable[[], None]) -> Cancel:
        handle = self._get_loop().call_later(delay, fn)
        return handle.cancel


class VirtualScheduler:
    """A scheduler driven by an explicit clock.

    Usage:
        clock = VirtualScheduler()
        delayed = delay(source, 0.1, clock)
        ...
        clock.advance(0.1)  # runs everything due by then, in due order
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._queue: list[tuple[float, int, list]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    @property
    def pending(self) -> int:
        return sum(1 for _, _, entry in self._queue if entry[0] is not None)

    def call_later(self, delay: float, fn: Callable[[], None]) -> Cancel:
        entry: list = [fn]
        heapq.heappush(self._queue, (self._now + max(delay, 0.0), next(self._seq), entry))

        def _cancel() -> None:
            entry[0] = None

        return _cancel

    def advance(self, seconds: float) -> None:
        """Move the clock forward, running callbacks as they come due."""
        self._run_until(self._now + seconds)

    def run_all(self) -> None:
        """Run every pending callback, advancing the clock as needed."""
        while self._queue:
            self._run_until(self._queue[0][0])

    def _run_until(self, target: float) -> None:
        while self._queue and self._queue[0][0] <= target:
            due, _, entry = heapq.heappop(self._queue)
            self._now = due
            fn = entry[0]
            if fn is not None:
                entry[0] = None
                fn()
        self._now = max(self._now, target)


class TimerScheduler:
    """Daemon ``threading.Timer`` per callback.

    Without ``dispatch`` the callback runs on the timer thread; pass a
    marshalling function to keep propagation on one thread.
    """

    def __init__(self, dispatch: Callable[[Callable[[], None]], object] | None = None) -> None:
        self._dispatch = dispatch

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, fn: Callable[[], None]) -> Cancel:
        t = threading.Timer(delay, self._fire, args=[fn])
        t.daemon = True
        t.start()
        return t.cancel

    def _fire(self, fn: Callable[[], None]) -> None:
        if self._dispatch is not None:
            self._dispatch(fn)
        else:
            fn()


_default: Scheduler | None = None


def set_scheduler(scheduler: Scheduler | None) -> None:
    """Set the process-wide default scheduler. None restores asyncio."""
    global _default
    _default = scheduler


def get_scheduler() -> Scheduler:
    return _default if _default is not None else AsyncioScheduler()
