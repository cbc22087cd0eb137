"""
Handoff host bridge routes.

The browser shim reports page state and host events here; the engine for
that browser profile resolves them and returns the effects (navigation,
prompt updates) the shim must apply.

Key behaviors:
- One engine per browser profile, created on first contact
- Timer driven effects are queued and collected through /effects
- Sessions persist across engine restarts through the session store
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, status

from src.adapters.browser import BridgeHost, RecordingBrowser
from src.adapters.handoff_store import JsonFileHandoffStore, is_valid_profile_id
from src.adapters.timers import ThreadTimerScheduler
from src.api.deps import get_clock, get_rules, get_settings
from src.api.schemas import (
    EffectModel,
    EffectsResponse,
    EventRequest,
    EventResponse,
    SessionModel,
    StatusResponse,
    TriggerRequest,
    TriggerResponse,
)
from src.components.handoff import (
    HandoffConfig,
    NavigationContext,
    RedirectEngine,
    SessionStorePort,
    TimePort,
    TimerPort,
    create_engine,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# --- Registry ---


@dataclass
class HandoffBridge:
    """Engine for one browser profile and the adapters it drives."""

    engine: RedirectEngine
    browser: RecordingBrowser
    host: BridgeHost
    last_used: datetime | None = None

    def drain(self) -> list[EffectModel]:
        return [EffectModel.from_effect(e) for e in self.browser.drain()]


class HandoffRegistry:
    """
    Creates, finds and tears down per-profile bridges.

    At most max_engines bridges are held; the least recently used one is
    stopped to make room. Bridges untouched for idle_seconds are stopped on
    the next registry access. A stopped bridge keeps its persisted session.
    """

    def __init__(
        self,
        *,
        config: HandoffConfig,
        timers: TimerPort,
        time: TimePort,
        store_factory: Callable[[str], SessionStorePort],
        max_engines: int = 1000,
        idle_seconds: float = 1800.0,
    ) -> None:
        if max_engines < 1:
            raise ValueError("max_engines must be at least 1")
        self._config = config
        self._timers = timers
        self._time = time
        self._store_factory = store_factory
        self._max_engines = max_engines
        self._idle = timedelta(seconds=idle_seconds)
        self._bridges: OrderedDict[str, HandoffBridge] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, profile_id: str) -> HandoffBridge | None:
        with self._lock:
            evicted = self._evict_idle()
            bridge = self._bridges.get(profile_id)
            if bridge is not None:
                self._touch(profile_id, bridge)
        self._stop(evicted)
        return bridge

    def get_or_create(self, profile_id: str, context: NavigationContext) -> HandoffBridge:
        created = False
        with self._lock:
            evicted = self._evict_idle()
            bridge = self._bridges.get(profile_id)
            if bridge is not None:
                bridge.host.update(context)
            else:
                browser = RecordingBrowser()
                bridge = HandoffBridge(
                    engine=create_engine(
                        session_store=self._store_factory(profile_id),
                        navigator=browser,
                        view=browser,
                        timers=self._timers,
                        time=self._time,
                        config=self._config,
                    ),
                    browser=browser,
                    host=BridgeHost(context),
                )
                created = True
            self._touch(profile_id, bridge)
            while len(self._bridges) > self._max_engines:
                evicted.append(self._bridges.popitem(last=False))

        self._stop(evicted)
        if created:
            # The shim posts the initial load itself.
            bridge.engine.start(bridge.host, initial_load=False)
            logger.debug("Handoff bridge created for profile %s", profile_id)
        return bridge

    def remove(self, profile_id: str) -> bool:
        with self._lock:
            bridge = self._bridges.pop(profile_id, None)
        if bridge is None:
            return False
        bridge.engine.stop()
        return True

    def shutdown(self) -> None:
        with self._lock:
            bridges = list(self._bridges.values())
            self._bridges.clear()
        for bridge in bridges:
            bridge.engine.stop()
        stop = getattr(self._timers, "stop", None)
        if callable(stop):
            stop()

    def __contains__(self, profile_id: object) -> bool:
        with self._lock:
            return profile_id in self._bridges

    def __len__(self) -> int:
        with self._lock:
            return len(self._bridges)

    # Callers hold self._lock for the helpers below, except _stop.

    def _touch(self, profile_id: str, bridge: HandoffBridge) -> None:
        bridge.last_used = self._time.now_utc()
        self._bridges[profile_id] = bridge
        self._bridges.move_to_end(profile_id)

    def _evict_idle(self) -> list[tuple[str, HandoffBridge]]:
        cutoff = self._time.now_utc() - self._idle
        evicted: list[tuple[str, HandoffBridge]] = []
        # Oldest first, so stop at the first bridge still in use.
        while self._bridges:
            bridge = next(iter(self._bridges.values()))
            if bridge.last_used is not None and bridge.last_used > cutoff:
                break
            evicted.append(self._bridges.popitem(last=False))
        return evicted

    @staticmethod
    def _stop(evicted: list[tuple[str, HandoffBridge]]) -> None:
        for profile_id, bridge in evicted:
            bridge.engine.stop()
            logger.info("Handoff bridge for profile %s evicted", profile_id)


# Shared registry (created lazily from settings and rules)
_registry: HandoffRegistry | None = None
_registry_lock = threading.Lock()


def get_registry() -> HandoffRegistry:
    """Get the handoff registry singleton."""
    global _registry
    with _registry_lock:
        if _registry is None:
            settings = get_settings()
            rules = get_rules(settings)
            _registry = HandoffRegistry(
                config=rules.to_config(),
                timers=ThreadTimerScheduler(),
                time=get_clock(),
                store_factory=lambda profile_id: JsonFileHandoffStore.for_profile(
                    settings.data_dir, profile_id
                ),
                max_engines=rules.bridge.max_engines,
                idle_seconds=rules.bridge.idle_seconds,
            )
        return _registry


def shutdown_registry() -> None:
    global _registry
    with _registry_lock:
        registry, _registry = _registry, None
    if registry is not None:
        registry.shutdown()


# --- Helpers ---


def _check_profile_id(profile_id: str) -> None:
    if not is_valid_profile_id(profile_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid profile id",
        )


def _require_bridge(registry: HandoffRegistry, profile_id: str) -> HandoffBridge:
    _check_profile_id(profile_id)
    bridge = registry.get(profile_id)
    if bridge is None:
        raise HTTPException(status_code=404, detail="No handoff engine for this profile")
    return bridge


# --- Routes ---


@router.post("/{profile_id}/triggers", response_model=TriggerResponse)
def post_trigger(
    profile_id: str,
    request: TriggerRequest,
    registry: HandoffRegistry = Depends(get_registry),
) -> TriggerResponse:
    """Resolve a trigger right away and return what the shim must do."""
    _check_profile_id(profile_id)
    context = request.context.to_context()
    bridge = registry.get_or_create(profile_id, context)
    output = bridge.engine.handle(request.kind, context)
    return TriggerResponse.build(output, bridge.browser.drain())


@router.post("/{profile_id}/events", response_model=EventResponse)
def post_event(
    profile_id: str,
    request: EventRequest,
    registry: HandoffRegistry = Depends(get_registry),
) -> EventResponse:
    """
    Forward a host event.

    The engine reacts after the delay configured for the event kind, so the
    resulting effects usually arrive through /effects.
    """
    _check_profile_id(profile_id)
    bridge = registry.get_or_create(profile_id, request.context.to_context())
    delivered = bridge.host.emit(request.kind)
    return EventResponse(delivered=delivered, effects=bridge.drain())


@router.post("/{profile_id}/prompt/proceed", response_model=EffectsResponse)
def post_proceed(
    profile_id: str,
    registry: HandoffRegistry = Depends(get_registry),
) -> EffectsResponse:
    bridge = _require_bridge(registry, profile_id)
    if not bridge.engine.proceed():
        raise HTTPException(status_code=409, detail="No confirmation prompt is showing")
    return EffectsResponse(effects=bridge.drain())


@router.post("/{profile_id}/prompt/cancel", response_model=EffectsResponse)
def post_cancel(
    profile_id: str,
    registry: HandoffRegistry = Depends(get_registry),
) -> EffectsResponse:
    bridge = _require_bridge(registry, profile_id)
    if not bridge.engine.cancel():
        raise HTTPException(status_code=409, detail="No confirmation prompt is showing")
    return EffectsResponse(effects=bridge.drain())


@router.get("/{profile_id}/effects", response_model=EffectsResponse)
def get_effects(
    profile_id: str,
    registry: HandoffRegistry = Depends(get_registry),
) -> EffectsResponse:
    """Collect effects produced by timers since the last request."""
    bridge = _require_bridge(registry, profile_id)
    return EffectsResponse(effects=bridge.drain())


@router.get("/{profile_id}", response_model=StatusResponse)
def get_status(
    profile_id: str,
    registry: HandoffRegistry = Depends(get_registry),
) -> StatusResponse:
    bridge = _require_bridge(registry, profile_id)
    engine = bridge.engine
    return StatusResponse(
        started=engine.started,
        prompt_state=engine.prompt.state.value if engine.prompt else None,
        session=SessionModel.from_session(engine.session),
        pending_timers=engine.pending_timers,
    )


@router.delete("/{profile_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_engine(
    profile_id: str,
    registry: HandoffRegistry = Depends(get_registry),
) -> None:
    """Stop the profile's engine (page unload). The session is kept."""
    _check_profile_id(profile_id)
    if not registry.remove(profile_id):
        raise HTTPException(status_code=404, detail="No handoff engine for this profile")
