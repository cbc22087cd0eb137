"""
Browser-side adapters for the handoff host bridge.

The engine runs server side; the effects it would have on the browser are
recorded here and handed to the browser shim, which applies them.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

from src.components.handoff import NavigationContext, TriggerKind


@dataclass(frozen=True)
class BrowserEffect:
    """One thing the browser shim must do."""

    kind: str  # "assign" | "replace" | "prompt_mount" | "prompt_update" | "prompt_unmount"
    url: str | None = None
    label: str | None = None
    remaining: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class RecordingBrowser:
    """NavigatorPort and PromptViewPort that queue effects for the shim."""

    def __init__(self) -> None:
        self._effects: list[BrowserEffect] = []
        self._lock = threading.Lock()
        self.location: str | None = None
        self.prompt_visible = False

    def _record(self, effect: BrowserEffect) -> None:
        with self._lock:
            self._effects.append(effect)

    # NavigatorPort
    def assign(self, url: str) -> None:
        self.location = url
        self._record(BrowserEffect(kind="assign", url=url))

    def replace(self, url: str) -> None:
        self.location = url
        self._record(BrowserEffect(kind="replace", url=url))

    # PromptViewPort
    def mount(self, url: str, label: str, remaining: int) -> None:
        self.prompt_visible = True
        self._record(BrowserEffect(kind="prompt_mount", url=url, label=label, remaining=remaining))

    def update(self, remaining: int) -> None:
        self._record(BrowserEffect(kind="prompt_update", remaining=remaining))

    def unmount(self) -> None:
        self.prompt_visible = False
        self._record(BrowserEffect(kind="prompt_unmount"))

    def drain(self) -> list[BrowserEffect]:
        """Return and forget every effect recorded so far."""
        with self._lock:
            effects, self._effects = self._effects, []
        return effects


class BridgeHost:
    """
    HostPort fed by the browser shim.

    The shim reports the current page with every request; events it forwards
    are dispatched to whatever the engine subscribed.
    """

    def __init__(self, context: NavigationContext) -> None:
        self._context = context
        self._handlers: dict[TriggerKind, list[Callable[[], None]]] = {}
        self._lock = threading.Lock()

    def update(self, context: NavigationContext) -> None:
        with self._lock:
            self._context = context

    def current_context(self) -> NavigationContext:
        with self._lock:
            return self._context

    def subscribe(self, kind: TriggerKind, handler: Callable[[], None]) -> Callable[[], None]:
        with self._lock:
            self._handlers.setdefault(kind, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(kind, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def emit(self, kind: TriggerKind) -> int:
        """Dispatch an event; returns how many handlers received it."""
        with self._lock:
            handlers = list(self._handlers.get(kind, []))
        for handler in handlers:
            handler()
        return len(handlers)

    @property
    def subscription_count(self) -> int:
        with self._lock:
            return sum(len(h) for h in self._handlers.values())
