"""
Handoff component port definitions.

The browser, the host platform and persistence are all reached through
these protocols; the component never touches them directly.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

from .models import NavigationContext, TriggerKind


class TimePort(Protocol):
    """Time provider interface."""

    def now_utc(self) -> datetime:
        """Get current UTC time."""
        ...


class TimerHandle(Protocol):
    """A scheduled callback that can still be cancelled."""

    def cancel(self) -> None:
        """Cancel the callback if it has not fired yet."""
        ...


class TimerPort(Protocol):
    """Schedules callbacks on the engine's execution context."""

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        """Run callback once after delay_seconds."""
        ...


class SessionStorePort(Protocol):
    """Raw persistence for the redirect session record."""

    def read(self) -> dict[str, Any] | None:
        """Return the stored record, or None if nothing is stored."""
        ...

    def write(self, record: dict[str, Any]) -> None:
        """Replace the stored record."""
        ...

    def delete(self) -> None:
        """Remove the stored record."""
        ...


class NavigatorPort(Protocol):
    """Browser location control."""

    def assign(self, url: str) -> None:
        """Navigate away to url."""
        ...

    def replace(self, url: str) -> None:
        """Rewrite the visible URL without navigating."""
        ...


class PromptViewPort(Protocol):
    """Renders the confirmation prompt element."""

    def mount(self, url: str, label: str, remaining: int) -> None:
        """Insert the prompt."""
        ...

    def update(self, remaining: int) -> None:
        """Show the new countdown value."""
        ...

    def unmount(self) -> None:
        """Remove the prompt."""
        ...


class HostPort(Protocol):
    """Host platform event API and current page provider."""

    def subscribe(
        self,
        kind: TriggerKind,
        handler: Callable[[], None],
    ) -> Callable[[], None]:
        """Register handler for kind; returns an unsubscribe callable."""
        ...

    def current_context(self) -> NavigationContext:
        """Describe the page currently shown."""
        ...
