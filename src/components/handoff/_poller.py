"""
Bounded re-check polling.

Gives the registration gate more chances to open without relying on host
events, while guaranteeing that polling ends.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from .ports import TimePort, TimerHandle, TimerPort

logger = logging.getLogger(__name__)


class BoundedPoller:
    """
    Calls check() every interval until it returns False.

    Stops for good after max_iterations calls or once the absolute deadline
    (start + cutoff) has passed, whichever comes first.
    """

    def __init__(
        self,
        timers: TimerPort,
        time: TimePort,
        check: Callable[[], bool],
        interval_seconds: float = 30.0,
        max_iterations: int = 10,
        cutoff_seconds: float = 600.0,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._timers = timers
        self._time = time
        self._check = check
        self._interval = interval_seconds
        self._max_iterations = max_iterations
        self._cutoff = timedelta(seconds=cutoff_seconds)

        self._iterations = 0
        self._deadline: datetime | None = None
        self._timer: TimerHandle | None = None
        self._halted = False

    @property
    def iterations(self) -> int:
        return self._iterations

    @property
    def deadline(self) -> datetime | None:
        return self._deadline

    @property
    def active(self) -> bool:
        return self._timer is not None

    def start(self) -> None:
        if self.active:
            return
        self._halted = False
        self._iterations = 0
        self._deadline = self._time.now_utc() + self._cutoff
        self._schedule()

    def stop(self) -> None:
        self._halted = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _exhausted(self) -> bool:
        if self._iterations >= self._max_iterations:
            return True
        return self._deadline is not None and self._time.now_utc() >= self._deadline

    def _schedule(self) -> None:
        if self._exhausted():
            logger.debug("Polling finished after %d iterations", self._iterations)
            self._timer = None
            return
        self._timer = self._timers.schedule(self._interval, self._fire)

    def _fire(self) -> None:
        self._timer = None
        if self._exhausted():
            return
        self._iterations += 1
        if self._check() and not self._halted:
            self._schedule()
        else:
            logger.debug("Polling no longer needed")
