"""
Tests for the handoff host bridge routes.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import timedelta
from urllib.parse import urlencode

import pytest
from fastapi.testclient import TestClient

from src.adapters.clock import ManualClock
from src.adapters.handoff_store import InMemoryHandoffStore
from src.adapters.timers import ManualTimerScheduler
from src.api.main import app
from src.api.routes.handoff import HandoffRegistry, get_registry
from src.components.handoff import HandoffConfig, NavigationContext

TARGET = "https://partner.example.com/x"
LANDING = "https://community.example.com/latest"


class Harness:
    """Registry wired to virtual time and in-memory stores."""

    def __init__(self, **limits: float) -> None:
        self.clock = ManualClock()
        self.timers = ManualTimerScheduler(self.clock)
        self.stores: dict[str, InMemoryHandoffStore] = {}
        self.registry = HandoffRegistry(
            config=HandoffConfig(
                allowed_domains=("partner.example.com",),
                platform_domain="community.example.com",
                countdown_seconds=3,
            ),
            timers=self.timers,
            time=self.clock,
            store_factory=self.store_for,
            **limits,
        )

    def store_for(self, profile_id: str) -> InMemoryHandoffStore:
        return self.stores.setdefault(profile_id, InMemoryHandoffStore())

    def context(self, url: str, **user) -> dict:
        values = {
            "id": 1,
            "username": "alice",
            "created_at": (self.clock.now_utc() - timedelta(hours=1)).isoformat(),
        }
        values.update(user)
        return {"url": url, "user": values}


@pytest.fixture
def harness() -> Harness:
    return Harness()


@pytest.fixture
def client(harness: Harness) -> Iterator[TestClient]:
    app.dependency_overrides[get_registry] = lambda: harness.registry
    yield TestClient(app)
    app.dependency_overrides.clear()
    harness.registry.shutdown()


def with_return(url: str = TARGET) -> str:
    return f"{LANDING}?{urlencode({'return_url': url})}"


class TestHealth:
    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestTriggers:
    """POST /api/handoff/{profile_id}/triggers"""

    def test_prompted(self, client: TestClient, harness: Harness) -> None:
        response = client.post(
            "/api/handoff/profile-1/triggers",
            json={"kind": "initial_load", "context": harness.context(with_return())},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["outcome"] == "prompted"
        assert data["gate"] == "complete"
        assert data["candidate"]["url"] == TARGET
        assert data["candidate"]["source_channel"] == "query_param"
        assert data["session"]["pending_url"] == TARGET
        assert [e["kind"] for e in data["effects"]] == ["replace", "prompt_mount"]
        assert data["effects"][0]["url"] == LANDING
        assert data["effects"][1]["remaining"] == 3

    def test_no_candidate_lists_rejections(self, client: TestClient, harness: Harness) -> None:
        url = f"{LANDING}?{urlencode({'origin': 'https://evil.test/'})}"
        response = client.post(
            "/api/handoff/p2/triggers",
            json={"kind": "page_changed", "context": harness.context(url)},
        )
        data = response.json()
        assert data["outcome"] == "no_candidate"
        assert data["candidate"] is None
        assert data["rejections"][0]["code"] == "disallowed_destination"
        assert data["rejections"][0]["channel"] == "query_param"
        assert data["effects"] == []

    def test_deferred_for_new_account(self, client: TestClient, harness: Harness) -> None:
        context = harness.context(
            with_return(), created_at=harness.clock.now_utc().isoformat()
        )
        response = client.post(
            "/api/handoff/p3/triggers",
            json={"kind": "user_registered", "context": context},
        )
        data = response.json()
        assert data["outcome"] == "deferred"
        assert data["gate"] == "too_recent"
        assert data["session"]["attempt_count"] == 1

    def test_anonymous_blocked(self, client: TestClient) -> None:
        response = client.post(
            "/api/handoff/p4/triggers",
            json={"kind": "initial_load", "context": {"url": with_return()}},
        )
        assert response.json()["outcome"] == "blocked"
        assert response.json()["gate"] == "unknown"

    def test_epoch_millis_created_at(self, client: TestClient, harness: Harness) -> None:
        created = harness.clock.now_utc() - timedelta(days=2)
        context = harness.context(with_return(), created_at=int(created.timestamp() * 1000))
        response = client.post(
            "/api/handoff/p5/triggers",
            json={"kind": "initial_load", "context": context},
        )
        assert response.json()["gate"] == "complete"

    def test_invalid_profile_id(self, client: TestClient, harness: Harness) -> None:
        response = client.post(
            "/api/handoff/bad.id/triggers",
            json={"kind": "initial_load", "context": harness.context(LANDING)},
        )
        assert response.status_code == 400

    def test_unknown_kind(self, client: TestClient, harness: Harness) -> None:
        response = client.post(
            "/api/handoff/p6/triggers",
            json={"kind": "page_scrolled", "context": harness.context(LANDING)},
        )
        assert response.status_code == 422


class TestEvents:
    """POST /api/handoff/{profile_id}/events"""

    def test_event_runs_after_timer(self, client: TestClient, harness: Harness) -> None:
        response = client.post(
            "/api/handoff/ev1/events",
            json={"kind": "user_logged_in", "context": harness.context(with_return())},
        )
        assert response.status_code == 200
        assert response.json() == {"effects": [], "delivered": 1}

        harness.timers.advance(0)

        effects = client.get("/api/handoff/ev1/effects").json()["effects"]
        assert [e["kind"] for e in effects] == ["replace", "prompt_mount"]

    def test_poll_is_not_a_host_event(self, client: TestClient, harness: Harness) -> None:
        response = client.post(
            "/api/handoff/ev2/events",
            json={"kind": "poll", "context": harness.context(LANDING)},
        )
        assert response.status_code == 422


class TestPromptActions:
    """Proceed and cancel."""

    def _prompt(self, client: TestClient, harness: Harness, profile: str) -> None:
        response = client.post(
            f"/api/handoff/{profile}/triggers",
            json={"kind": "initial_load", "context": harness.context(with_return())},
        )
        assert response.json()["outcome"] == "prompted"

    def test_proceed(self, client: TestClient, harness: Harness) -> None:
        self._prompt(client, harness, "pa1")

        response = client.post("/api/handoff/pa1/prompt/proceed")

        assert response.status_code == 200
        effects = response.json()["effects"]
        assert effects[-1]["kind"] == "assign"
        assert effects[-1]["url"] == TARGET
        assert harness.stores["pa1"].read() is None

    def test_cancel_then_same_page(self, client: TestClient, harness: Harness) -> None:
        self._prompt(client, harness, "pa2")

        response = client.post("/api/handoff/pa2/prompt/cancel")
        assert [e["kind"] for e in response.json()["effects"]] == ["prompt_unmount"]

        again = client.post(
            "/api/handoff/pa2/triggers",
            json={"kind": "page_changed", "context": harness.context(with_return())},
        )
        assert again.json()["outcome"] == "no_candidate"
        assert again.json()["rejections"][0]["code"] == "dismissed"

    def test_countdown_effects_collected(self, client: TestClient, harness: Harness) -> None:
        self._prompt(client, harness, "pa3")

        harness.timers.advance(3)

        effects = client.get("/api/handoff/pa3/effects").json()["effects"]
        assert [e["kind"] for e in effects] == [
            "prompt_update",
            "prompt_update",
            "prompt_unmount",
            "assign",
        ]

    def test_no_prompt_conflict(self, client: TestClient, harness: Harness) -> None:
        client.post(
            "/api/handoff/pa4/triggers",
            json={"kind": "initial_load", "context": harness.context(LANDING)},
        )
        assert client.post("/api/handoff/pa4/prompt/proceed").status_code == 409
        assert client.post("/api/handoff/pa4/prompt/cancel").status_code == 409

    def test_unknown_profile(self, client: TestClient) -> None:
        assert client.post("/api/handoff/nobody/prompt/proceed").status_code == 404
        assert client.get("/api/handoff/nobody/effects").status_code == 404


class TestLifecycleRoutes:
    """Status and teardown."""

    def test_status(self, client: TestClient, harness: Harness) -> None:
        client.post(
            "/api/handoff/st1/triggers",
            json={"kind": "initial_load", "context": harness.context(with_return())},
        )
        data = client.get("/api/handoff/st1").json()
        assert data["started"] is True
        assert data["prompt_state"] == "counting"
        assert data["session"]["pending_url"] == TARGET
        assert data["pending_timers"] == 1

    def test_delete_stops_engine_and_keeps_session(
        self, client: TestClient, harness: Harness
    ) -> None:
        context = harness.context(with_return(), username=None)
        client.post(
            "/api/handoff/st2/triggers",
            json={"kind": "initial_load", "context": context},
        )

        response = client.delete("/api/handoff/st2")

        assert response.status_code == 204
        assert len(harness.registry) == 0
        assert harness.timers.pending == 0
        assert harness.stores["st2"].read()["pending_url"] == TARGET
        assert client.delete("/api/handoff/st2").status_code == 404

    def test_session_survives_new_engine(self, client: TestClient, harness: Harness) -> None:
        client.post(
            "/api/handoff/st3/triggers",
            json={
                "kind": "initial_load",
                "context": harness.context(with_return(), username=None),
            },
        )
        client.delete("/api/handoff/st3")

        response = client.post(
            "/api/handoff/st3/triggers",
            json={"kind": "user_profile_updated", "context": harness.context(LANDING)},
        )

        data = response.json()
        assert data["outcome"] == "prompted"
        assert data["candidate"]["source_channel"] == "persisted_session"


class TestEviction:
    """Registry size and idle limits."""

    def _create(self, harness: Harness, profile_id: str):
        return harness.registry.get_or_create(profile_id, NavigationContext(url=LANDING))

    def test_least_recently_used_is_stopped(self) -> None:
        harness = Harness(max_engines=2)
        first = self._create(harness, "a")
        self._create(harness, "b")
        assert harness.registry.get("a") is first

        self._create(harness, "c")

        assert len(harness.registry) == 2
        assert "b" not in harness.registry
        assert "a" in harness.registry
        harness.registry.shutdown()

    def test_evicted_engine_is_stopped(self) -> None:
        harness = Harness(max_engines=1)
        first = self._create(harness, "a")
        assert first.engine.started

        self._create(harness, "b")

        assert not first.engine.started
        assert first.host.subscription_count == 0
        harness.registry.shutdown()

    def test_idle_bridges_stopped_on_next_access(self) -> None:
        harness = Harness(idle_seconds=60)
        idle = self._create(harness, "a")
        harness.clock.advance(30)
        self._create(harness, "b")
        harness.clock.advance(45)

        assert harness.registry.get("b") is not None

        assert "a" not in harness.registry
        assert not idle.engine.started
        harness.registry.shutdown()

    def test_evicted_profile_resumes_session(self) -> None:
        harness = Harness(max_engines=1)
        harness.stores["a"] = InMemoryHandoffStore({"pending_url": TARGET, "attempt_count": 0})
        self._create(harness, "a")
        self._create(harness, "b")

        bridge = self._create(harness, "a")

        assert bridge.engine.started
        assert bridge.engine.session.pending_url == TARGET
        harness.registry.shutdown()

    def test_evicted_profile_routes_return_not_found(self, harness: Harness) -> None:
        registry = HandoffRegistry(
            config=HandoffConfig(allowed_domains=("partner.example.com",)),
            timers=harness.timers,
            time=harness.clock,
            store_factory=harness.store_for,
            max_engines=1,
        )
        app.dependency_overrides[get_registry] = lambda: registry
        try:
            client = TestClient(app)
            client.post(
                "/api/handoff/e1/triggers",
                json={"kind": "initial_load", "context": harness.context(LANDING)},
            )
            client.post(
                "/api/handoff/e2/triggers",
                json={"kind": "initial_load", "context": harness.context(LANDING)},
            )
            assert client.get("/api/handoff/e1").status_code == 404
            assert client.get("/api/handoff/e2").status_code == 200
        finally:
            app.dependency_overrides.clear()
            registry.shutdown()
