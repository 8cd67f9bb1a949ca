"""
Clock and scheduler abstractions, and trailing-edge throttling.

Production code runs on AsyncioScheduler; tests drive ManualScheduler by
hand so throttling and polling are deterministic without real waits.
"""

import asyncio
import heapq
import itertools
import logging
import time
from typing import Callable, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


class Cancellable(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    """Clock plus deferred callbacks."""

    def now(self) -> float:
        """Monotonic time in seconds."""
        ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> Cancellable:
        """Run callback after delay seconds."""
        ...

    async def sleep(self, delay: float) -> None:
        """Suspend the calling coroutine for delay seconds."""
        ...


class AsyncioScheduler:
    """Scheduler backed by the running asyncio event loop."""

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[[], None]) -> Cancellable:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to defer to from synchronous code: deliver now
            callback()
            return _DoneHandle()
        return loop.call_later(delay, callback)

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)


class _DoneHandle:
    def cancel(self) -> None:
        pass


class _ManualHandle:
    def __init__(self):
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose time only moves when advance() is called."""

    def __init__(self, start: float = 0.0):
        self._now = start
        self._queue: List[Tuple[float, int, _ManualHandle, Callable[[], None]]] = []
        self._counter = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> Cancellable:
        handle = _ManualHandle()
        heapq.heappush(self._queue, (self._now + delay, next(self._counter), handle, callback))
        return handle

    async def sleep(self, delay: float) -> None:
        # Time passes instantly; yield once so other tasks can run
        self.advance(delay)
        await asyncio.sleep(0)

    @property
    def pending(self) -> int:
        return sum(1 for _, _, handle, _ in self._queue if not handle.cancelled)

    def advance(self, seconds: float) -> None:
        """Move time forward, running every callback that falls due in order."""
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, callback = heapq.heappop(self._queue)
            self._now = due
            if not handle.cancelled:
                callback()
        self._now = target


class TrailingThrottle:
    """Collapses bursts of triggers into one call at the end of a window.

    The first trigger opens a window; triggers inside it are absorbed and
    the callback runs once when the window closes. flush() runs a pending
    callback immediately.
    """

    def __init__(self, scheduler: Scheduler, window: float, callback: Callable[[], None]):
        self.scheduler = scheduler
        self.window = window
        self.callback = callback
        self._handle: Optional[Cancellable] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self) -> None:
        if self._handle is not None:
            return
        if self.window <= 0:
            self.callback()
            return
        opening = _DoneHandle()
        self._handle = opening
        try:
            handle = self.scheduler.call_later(self.window, self._fire)
        except Exception:
            self._handle = None
            raise
        # The scheduler may already have fired the callback synchronously
        if self._handle is opening:
            self._handle = handle

    def _fire(self) -> None:
        self._handle = None
        self.callback()

    def flush(self) -> None:
        if self._handle is None:
            return
        self._handle.cancel()
        self._fire()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
