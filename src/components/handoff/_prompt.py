"""
Confirmation prompt - cancellable countdown before leaving for the partner site.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from .models import PromptState
from .ports import PromptViewPort, TimerHandle, TimerPort

logger = logging.getLogger(__name__)


class ConfirmationPrompt:
    """
    Countdown that navigates unless the user cancels.

    States: IDLE -> COUNTING -> COMPLETED | CANCELLED. A single timer handle
    is owned at a time and cleared on every exit from COUNTING. Only one
    prompt can count at once; show() while counting is a no-op.
    """

    def __init__(
        self,
        view: PromptViewPort,
        timers: TimerPort,
        on_navigate: Callable[[str], None],
        on_cancel: Callable[[str], None],
        countdown: int = 10,
        tick_seconds: float = 1.0,
    ) -> None:
        if countdown < 1:
            raise ValueError("countdown must be at least 1")
        self._view = view
        self._timers = timers
        self._on_navigate = on_navigate
        self._on_cancel = on_cancel
        self._countdown = countdown
        self._tick_seconds = tick_seconds

        self._state = PromptState.IDLE
        self._url: str | None = None
        self._remaining = 0
        self._timer: TimerHandle | None = None

    @property
    def state(self) -> PromptState:
        return self._state

    @property
    def active(self) -> bool:
        return self._state == PromptState.COUNTING

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def url(self) -> str | None:
        return self._url

    def show(self, url: str, label: str) -> bool:
        """Start the countdown. Returns False if a prompt is already counting."""
        if self.active:
            logger.debug("Prompt already active; ignoring %s", url)
            return False

        self._state = PromptState.COUNTING
        self._url = url
        self._remaining = self._countdown
        self._view.mount(url, label, self._remaining)
        self._schedule_tick()
        logger.info("Prompting redirect to %s (%ds)", url, self._remaining)
        return True

    def proceed(self) -> None:
        """Navigate now."""
        if not self.active:
            return
        self._finish(PromptState.COMPLETED)

    def cancel(self) -> None:
        """Abort the countdown; the engine is told so it can clear state."""
        if not self.active:
            return
        self._finish(PromptState.CANCELLED)

    def teardown(self) -> None:
        """Drop the prompt without navigating or notifying (page unload)."""
        if not self.active:
            return
        self._clear_timer()
        self._view.unmount()
        self._state = PromptState.IDLE

    def _schedule_tick(self) -> None:
        self._timer = self._timers.schedule(self._tick_seconds, self._tick)

    def _tick(self) -> None:
        self._timer = None
        if not self.active:
            return
        self._remaining -= 1
        if self._remaining <= 0:
            self._finish(PromptState.COMPLETED)
            return
        self._view.update(self._remaining)
        self._schedule_tick()

    def _clear_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _finish(self, state: PromptState) -> None:
        url = self._url or ""
        self._clear_timer()
        self._view.unmount()
        self._state = state
        if state == PromptState.COMPLETED:
            self._on_navigate(url)
        else:
            logger.info("Redirect to %s cancelled by user", url)
            self._on_cancel(url)
