"""
Timer scheduler adapters.

Implements TimerPort for the handoff component.

Key behaviors:
- ThreadTimerScheduler runs every callback on one background thread, so
  callbacks never run concurrently with each other
- ManualTimerScheduler only fires when advanced, for predictable tests and
  local tooling
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(order=True)
class _Entry:
    due: float
    seq: int
    callback: Callable[[], None] = field(compare=False)
    cancelled: bool = field(default=False, compare=False)


class TimerHandleImpl:
    """Cancellation handle for a scheduled callback."""

    def __init__(self, entry: _Entry, on_cancel: Callable[[], None] | None = None) -> None:
        self._entry = entry
        self._on_cancel = on_cancel

    @property
    def cancelled(self) -> bool:
        return self._entry.cancelled

    def cancel(self) -> None:
        if self._entry.cancelled:
            return
        self._entry.cancelled = True
        if self._on_cancel is not None:
            self._on_cancel()


class ManualTimerScheduler:
    """
    Timers that fire only when advance() moves virtual time past them.

    When given a clock with an advance(seconds) method, the clock is moved
    in step so callbacks see a matching wall time.
    """

    def __init__(self, clock: Any = None) -> None:
        self._clock = clock
        self._now = 0.0
        self._seq = itertools.count()
        self._heap: list[_Entry] = []

    @property
    def now(self) -> float:
        return self._now

    @property
    def pending(self) -> int:
        return sum(1 for e in self._heap if not e.cancelled)

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandleImpl:
        entry = _Entry(self._now + max(0.0, delay_seconds), next(self._seq), callback)
        heapq.heappush(self._heap, entry)
        return TimerHandleImpl(entry)

    def advance(self, seconds: float) -> int:
        """Move virtual time forward, firing due callbacks in order. Returns fired count."""
        target = self._now + seconds
        fired = 0
        while self._heap and self._heap[0].due <= target:
            entry = heapq.heappop(self._heap)
            if entry.cancelled:
                continue
            self._move_to(entry.due)
            entry.cancelled = True
            entry.callback()
            fired += 1
        self._move_to(target)
        return fired

    def _move_to(self, when: float) -> None:
        if self._clock is not None and when > self._now:
            self._clock.advance(when - self._now)
        self._now = when

    def run_all(self, limit: int = 1000) -> int:
        """Fire everything pending, including callbacks scheduled on the way."""
        fired = 0
        while fired < limit:
            live = [e for e in self._heap if not e.cancelled]
            if not live:
                break
            fired += self.advance(min(e.due for e in live) - self._now)
        return fired


class ThreadTimerScheduler:
    """
    Real-time timers served by a single daemon thread.

    Callback exceptions are logged and never stop the thread.
    """

    def __init__(self, name: str = "handoff-timers") -> None:
        self._name = name
        self._seq = itertools.count()
        self._heap: list[_Entry] = []
        self._cond = threading.Condition()
        self._thread: threading.Thread | None = None
        self._running = False

    def start(self) -> None:
        with self._cond:
            if self._running:
                return
            self._running = True
            self._thread = threading.Thread(target=self._loop, name=self._name, daemon=True)
            self._thread.start()
        logger.info("Timer thread %s started", self._name)

    def stop(self) -> None:
        with self._cond:
            if not self._running:
                return
            self._running = False
            for entry in self._heap:
                entry.cancelled = True
            self._heap.clear()
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
        logger.info("Timer thread %s stopped", self._name)

    @property
    def is_running(self) -> bool:
        return self._running

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandleImpl:
        if not self._running:
            self.start()
        entry = _Entry(time.monotonic() + max(0.0, delay_seconds), next(self._seq), callback)
        with self._cond:
            heapq.heappush(self._heap, entry)
            self._cond.notify_all()
        return TimerHandleImpl(entry, on_cancel=self._wake)

    def _wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def _loop(self) -> None:
        while True:
            with self._cond:
                while self._running:
                    while self._heap and self._heap[0].cancelled:
                        heapq.heappop(self._heap)
                    if not self._heap:
                        self._cond.wait()
                        continue
                    wait = self._heap[0].due - time.monotonic()
                    if wait <= 0:
                        break
                    self._cond.wait(timeout=wait)
                if not self._running:
                    return
                entry = heapq.heappop(self._heap)
                entry.cancelled = True

            try:
                entry.callback()
            except Exception:
                logger.exception("Error in scheduled handoff callback")
