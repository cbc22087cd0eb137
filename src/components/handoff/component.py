"""
Handoff component - send users back to the partner site they came from.

Orchestrates candidate extraction, the registration gate, the loop guard and
the confirmation prompt in response to host triggers.

Invariants:
- I1: Only allowlisted https destinations are ever navigated to
- I2: Registration pages and signup forms block the redirect outright
- I3: Triggers are resolved one at a time, in delivery order
- I4: At most one confirmation prompt is counting at any time
- I5: Every timer is cancelled on navigation, cancellation and stop()
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import replace
from functools import partial

from ._gate import RegistrationGate
from ._impl import (
    DEFAULT_CONFIG,
    Allowlist,
    CandidateExtractor,
    HandoffConfig,
    destination_label,
    parse_query,
    parse_redirect_count,
    strip_params,
)
from ._poller import BoundedPoller
from ._prompt import ConfirmationPrompt
from ._session import LoopGuard, RedirectSessionStore
from .models import (
    HOST_TRIGGERS,
    GateDecision,
    HandoffOutcome,
    NavigationContext,
    RedirectCandidate,
    RedirectSession,
    ResolveInput,
    ResolveOutput,
    SourceChannel,
    TriggerKind,
    TriggerOutput,
)
from .ports import (
    HostPort,
    NavigatorPort,
    PromptViewPort,
    SessionStorePort,
    TimePort,
    TimerHandle,
    TimerPort,
)

logger = logging.getLogger(__name__)


class _SerializedTimers:
    """Runs timer callbacks under the engine lock."""

    def __init__(self, timers: TimerPort, lock: threading.RLock) -> None:
        self._timers = timers
        self._lock = lock

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        def run() -> None:
            with self._lock:
                callback()

        return self._timers.schedule(delay_seconds, run)


class RedirectEngine:
    """
    Resolves and performs the post-signup partner redirect.

    handle() is the single entry point; start() wires it to the host's
    events and stop() undoes everything start() and handle() scheduled.
    """

    def __init__(
        self,
        *,
        session_store: SessionStorePort,
        navigator: NavigatorPort,
        view: PromptViewPort,
        timers: TimerPort,
        time: TimePort,
        config: HandoffConfig | None = None,
    ) -> None:
        self._config = config or DEFAULT_CONFIG
        self._navigator = navigator
        self._time = time

        self._lock = threading.RLock()
        self._resolving = False
        self._queue: deque[tuple[TriggerKind, NavigationContext]] = deque()
        self._timers = _SerializedTimers(timers, self._lock)

        self._allowlist = Allowlist(
            self._config.allowed_domains,
            match_mode=self._config.match_mode,
            require_https=self._config.require_https,
        )
        self._extractor = CandidateExtractor(self._allowlist, self._config)
        self._gate = RegistrationGate(
            maturity_seconds=self._config.maturity_seconds,
            registration_paths=self._config.registration_paths,
            require_display_name=self._config.require_display_name,
        )
        self._guard = LoopGuard(self._config.loop_ceiling)
        self._sessions = RedirectSessionStore(session_store)

        self._prompt: ConfirmationPrompt | None = None
        if self._config.countdown_seconds > 0:
            self._prompt = ConfirmationPrompt(
                view,
                self._timers,
                on_navigate=self._navigate_to,
                on_cancel=self._cancelled,
                countdown=self._config.countdown_seconds,
                tick_seconds=self._config.tick_seconds,
            )

        self._poller = BoundedPoller(
            self._timers,
            time,
            self._poll,
            interval_seconds=self._config.poll_interval_seconds,
            max_iterations=self._config.poll_max_iterations,
            cutoff_seconds=self._config.poll_cutoff_seconds,
        )
        self._polling_started = False

        self._host: HostPort | None = None
        self._subscriptions: list[Callable[[], None]] = []
        self._trigger_timers: set[TimerHandle] = set()
        self._current_url: str | None = None

    # --- Inspection ---

    @property
    def config(self) -> HandoffConfig:
        return self._config

    @property
    def allowlist(self) -> Allowlist:
        return self._allowlist

    @property
    def prompt(self) -> ConfirmationPrompt | None:
        return self._prompt

    @property
    def poller(self) -> BoundedPoller:
        return self._poller

    @property
    def session(self) -> RedirectSession:
        return self._sessions.load()

    @property
    def started(self) -> bool:
        return self._host is not None

    @property
    def pending_timers(self) -> int:
        """Timers this engine still owns, for teardown checks."""
        count = len(self._trigger_timers)
        if self._poller.active:
            count += 1
        if self._prompt is not None and self._prompt.active:
            count += 1
        return count

    # --- Lifecycle ---

    def start(self, host: HostPort, *, initial_load: bool = True) -> None:
        """
        Subscribe to the host's events and schedule the initial check.

        Pass initial_load=False when the host delivers INITIAL_LOAD itself.
        """
        with self._lock:
            if self._host is not None:
                return
            self._host = host
            self._polling_started = False
            for kind in HOST_TRIGGERS:
                unsubscribe = host.subscribe(kind, partial(self._schedule_trigger, kind))
                self._subscriptions.append(unsubscribe)
            if initial_load:
                self._schedule_trigger(TriggerKind.INITIAL_LOAD)
            logger.debug("Handoff engine started with %d subscriptions", len(self._subscriptions))

    def stop(self) -> None:
        """Unsubscribe and cancel every outstanding timer."""
        with self._lock:
            for unsubscribe in self._subscriptions:
                try:
                    unsubscribe()
                except Exception:
                    logger.exception("Failed to unsubscribe from host event")
            self._subscriptions.clear()

            for handle in self._trigger_timers:
                handle.cancel()
            self._trigger_timers.clear()

            self._poller.stop()
            if self._prompt is not None:
                self._prompt.teardown()
            self._queue.clear()
            self._host = None
            logger.debug("Handoff engine stopped")

    # --- User Actions ---

    def proceed(self) -> bool:
        """Skip the countdown. Returns False when no prompt is showing."""
        with self._lock:
            if self._prompt is None or not self._prompt.active:
                return False
            self._prompt.proceed()
            return True

    def cancel(self) -> bool:
        """Abort the countdown. Returns False when no prompt is showing."""
        with self._lock:
            if self._prompt is None or not self._prompt.active:
                return False
            self._prompt.cancel()
            return True

    # --- Orchestration ---

    def handle(self, kind: TriggerKind, context: NavigationContext) -> TriggerOutput:
        """
        Resolve one trigger to completion.

        A trigger that arrives while another is being resolved on the same
        thread is queued and processed right after it; other threads wait.
        """
        with self._lock:
            if self._resolving:
                self._queue.append((kind, context))
                logger.debug("Trigger %s queued behind running resolution", kind.value)
                return TriggerOutput(kind=kind, outcome=HandoffOutcome.BUSY)

            self._resolving = True
            try:
                output = self._safe_resolve(kind, context)
                while self._queue:
                    queued_kind, queued_context = self._queue.popleft()
                    self._safe_resolve(queued_kind, queued_context)
            finally:
                self._resolving = False
            return output

    def _safe_resolve(self, kind: TriggerKind, context: NavigationContext) -> TriggerOutput:
        try:
            return self._resolve(kind, context)
        except Exception:
            logger.exception("Handoff resolution failed for trigger %s", kind.value)
            return TriggerOutput(kind=kind, outcome=HandoffOutcome.FAILED)

    def _resolve(self, kind: TriggerKind, context: NavigationContext) -> TriggerOutput:
        self._current_url = context.url

        if self._prompt is not None and self._prompt.active:
            return TriggerOutput(kind=kind, outcome=HandoffOutcome.PROMPT_ACTIVE)

        session = self._sessions.load()
        extraction = self._extractor.extract(context, session)
        candidate = extraction.candidate
        if candidate is None:
            logger.debug("No redirect candidate for %s", context.url)
            return TriggerOutput(
                kind=kind,
                outcome=HandoffOutcome.NO_CANDIDATE,
                session=session,
                rejections=extraction.rejections,
            )

        session = self._remember(candidate, session, context)

        now = self._time.now_utc()
        gate = self._gate.evaluate(context, now)
        if gate.is_hard_block:
            return TriggerOutput(
                kind=kind,
                outcome=HandoffOutcome.BLOCKED,
                candidate=candidate,
                gate=gate,
                session=session,
                rejections=extraction.rejections,
            )

        admission = self._guard.admit(session, gate == GateDecision.COMPLETE, now)
        session = self._sessions.put(admission.session)

        if not admission.admitted:
            logger.debug(
                "Redirect deferred (%s), attempt %d of %d",
                gate.value,
                session.attempt_count,
                self._guard.ceiling,
            )
            self._ensure_polling()
            return TriggerOutput(
                kind=kind,
                outcome=HandoffOutcome.DEFERRED,
                candidate=candidate,
                gate=gate,
                session=session,
                rejections=extraction.rejections,
            )

        self._strip_params(context.url)

        if admission.forced:
            outcome = HandoffOutcome.FORCED
            self._navigate_to(candidate.url)
        elif self._prompt is None:
            outcome = HandoffOutcome.NAVIGATED
            self._navigate_to(candidate.url)
        else:
            outcome = HandoffOutcome.PROMPTED
            self._poller.stop()
            label = destination_label(candidate.url, self._config.destination_labels)
            self._prompt.show(candidate.url, label)

        return TriggerOutput(
            kind=kind,
            outcome=outcome,
            candidate=candidate,
            gate=gate,
            session=self._sessions.load(),
            rejections=extraction.rejections,
        )

    def _remember(
        self,
        candidate: RedirectCandidate,
        session: RedirectSession,
        context: NavigationContext,
    ) -> RedirectSession:
        """Persist a newly discovered destination and any redirect_count hint."""
        updated = session
        if (
            candidate.source_channel != SourceChannel.PERSISTED_SESSION
            and candidate.url != session.pending_url
        ):
            updated = replace(
                updated,
                pending_url=candidate.url,
                source_channel=candidate.source_label,
                attempt_count=0,
                last_attempt_at=None,
            )
            logger.debug("Stored pending redirect %s", candidate.url)

        seeded = parse_redirect_count(parse_query(context.url))
        if seeded is not None and seeded > updated.attempt_count:
            updated = replace(updated, attempt_count=seeded)

        if updated != session:
            self._sessions.put(updated)
        return updated

    def _strip_params(self, url: str | None) -> None:
        if not url:
            return
        stripped = strip_params(url, self._config.consumed_params)
        if stripped is not None:
            self._navigator.replace(stripped)
            self._current_url = stripped

    def _navigate_to(self, url: str) -> None:
        self._poller.stop()
        self._sessions.clear()
        logger.info("Redirecting to partner site %s", url)
        self._navigator.assign(url)

    def _cancelled(self, url: str) -> None:
        self._poller.stop()
        self._sessions.dismiss(url)
        self._strip_params(self._current_url)

    # --- Scheduling ---

    def _schedule_trigger(self, kind: TriggerKind) -> None:
        with self._lock:
            if self._host is None:
                return
            handle: TimerHandle | None = None

            def fire() -> None:
                self._trigger_timers.discard(handle)  # type: ignore[arg-type]
                if self._host is not None:
                    self.handle(kind, self._host.current_context())

            handle = self._timers.schedule(self._config.delay_for(kind), fire)
            self._trigger_timers.add(handle)

    def _ensure_polling(self) -> None:
        # Polling runs at most once per start() so its bounds stay absolute.
        if self._host is None or self._polling_started:
            return
        self._polling_started = True
        self._poller.start()

    def _poll(self) -> bool:
        if self._host is None:
            return False
        self.handle(TriggerKind.POLL, self._host.current_context())
        still_waiting = self._prompt is None or not self._prompt.active
        return still_waiting and self._sessions.load().is_pending


# --- Factories ---


def create_engine(
    *,
    session_store: SessionStorePort,
    navigator: NavigatorPort,
    view: PromptViewPort,
    timers: TimerPort,
    time: TimePort,
    config: HandoffConfig | None = None,
) -> RedirectEngine:
    """Create a RedirectEngine, applying the debug logging toggle."""
    config = config or DEFAULT_CONFIG
    if config.debug:
        logging.getLogger(__package__).setLevel(logging.DEBUG)
    return RedirectEngine(
        session_store=session_store,
        navigator=navigator,
        view=view,
        timers=timers,
        time=time,
        config=config,
    )


# --- Component Entry Points ---


def run_resolve(
    inp: ResolveInput,
    *,
    time: TimePort,
    config: HandoffConfig | None = None,
) -> ResolveOutput:
    """
    Work out the candidate and gate decision for a context, without effects.

    Args:
        inp: Navigation context plus an optional persisted session.
        time: Time port, used when inp.now is not given.
        config: Handoff configuration.

    Returns:
        ResolveOutput with the candidate, the gate decision and rejections.
    """
    config = config or DEFAULT_CONFIG
    allowlist = Allowlist(
        config.allowed_domains,
        match_mode=config.match_mode,
        require_https=config.require_https,
    )
    extraction = CandidateExtractor(allowlist, config).extract(inp.context, inp.session)
    if extraction.candidate is None:
        return ResolveOutput(candidate=None, gate=None, rejections=extraction.rejections)

    gate = RegistrationGate(
        maturity_seconds=config.maturity_seconds,
        registration_paths=config.registration_paths,
        require_display_name=config.require_display_name,
    ).evaluate(inp.context, inp.now or time.now_utc())
    return ResolveOutput(
        candidate=extraction.candidate,
        gate=gate,
        rejections=extraction.rejections,
    )


def check_url(url: str, *, config: HandoffConfig | None = None) -> bool:
    """Whether url is an allowed partner destination."""
    config = config or DEFAULT_CONFIG
    return Allowlist(
        config.allowed_domains,
        match_mode=config.match_mode,
        require_https=config.require_https,
    ).is_allowed(url)
