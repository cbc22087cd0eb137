from __future__ import annotations

import pytest

from src.adapters.browser import RecordingBrowser
from src.adapters.clock import ManualClock
from src.adapters.handoff_store import InMemoryHandoffStore
from src.adapters.timers import ManualTimerScheduler
from src.components.handoff import HandoffConfig, RedirectEngine, create_engine


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def timers(clock: ManualClock) -> ManualTimerScheduler:
    """Virtual timers that move the manual clock as they fire."""
    return ManualTimerScheduler(clock)


@pytest.fixture
def browser() -> RecordingBrowser:
    return RecordingBrowser()


@pytest.fixture
def store() -> InMemoryHandoffStore:
    return InMemoryHandoffStore()


@pytest.fixture
def config() -> HandoffConfig:
    return HandoffConfig(
        allowed_domains=("partner.example.com",),
        platform_domain="community.example.com",
        countdown_seconds=10,
        loop_ceiling=3,
        maturity_seconds=900,
    )


@pytest.fixture
def engine(
    config: HandoffConfig,
    store: InMemoryHandoffStore,
    browser: RecordingBrowser,
    timers: ManualTimerScheduler,
    clock: ManualClock,
) -> RedirectEngine:
    return create_engine(
        session_store=store,
        navigator=browser,
        view=browser,
        timers=timers,
        time=clock,
        config=config,
    )
