"""
Handoff component input/output models.

Covers the partner redirect candidate, the user snapshot supplied by the
host, the persisted redirect session and the per-trigger outputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

# --- Enumerations ---


class SourceChannel(StrEnum):
    """Where a redirect candidate was found."""

    QUERY_PARAM = "query_param"
    ENCODED_STATE = "encoded_state"
    ENCODED_BLOB = "encoded_blob"
    PERSISTED_SESSION = "persisted_session"
    REFERRER = "referrer"


class GateDecision(StrEnum):
    """Registration gate outcome, recomputed on every check."""

    UNKNOWN = "unknown"
    ON_REGISTRATION_PAGE = "on_registration_page"
    FORMS_PRESENT = "forms_present"
    PROFILE_INCOMPLETE = "profile_incomplete"
    TOO_RECENT = "too_recent"
    COMPLETE = "complete"

    @property
    def is_hard_block(self) -> bool:
        """Hard blocks never reach the loop guard."""
        return self in (
            GateDecision.UNKNOWN,
            GateDecision.ON_REGISTRATION_PAGE,
            GateDecision.FORMS_PRESENT,
        )


class TriggerKind(StrEnum):
    """Events that cause the engine to re-evaluate."""

    INITIAL_LOAD = "initial_load"
    PAGE_CHANGED = "page_changed"
    USER_LOGGED_IN = "user_logged_in"
    USER_REGISTERED = "user_registered"
    USER_PROFILE_UPDATED = "user_profile_updated"
    POLL = "poll"


# Triggers the host delivers; POLL is produced internally.
HOST_TRIGGERS = (
    TriggerKind.PAGE_CHANGED,
    TriggerKind.USER_LOGGED_IN,
    TriggerKind.USER_REGISTERED,
    TriggerKind.USER_PROFILE_UPDATED,
)


class HandoffOutcome(StrEnum):
    """What a single trigger did."""

    BUSY = "busy"
    PROMPT_ACTIVE = "prompt_active"
    NO_CANDIDATE = "no_candidate"
    BLOCKED = "blocked"
    DEFERRED = "deferred"
    PROMPTED = "prompted"
    NAVIGATED = "navigated"
    FORCED = "forced"
    FAILED = "failed"


class PromptState(StrEnum):
    """Confirmation prompt lifecycle."""

    IDLE = "idle"
    COUNTING = "counting"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


# --- Rejection Record ---


@dataclass(frozen=True)
class ChannelRejection:
    """A channel value that was looked at and discarded."""

    code: str
    message: str
    channel: SourceChannel | None = None


# --- Host Supplied Values ---


@dataclass(frozen=True)
class UserSnapshot:
    """Read-only view of the current user at decision time."""

    id: str | int
    username: str | None = None
    name: str | None = None
    created_at: datetime | str | int | float | None = None
    on_registration_page: bool = False
    has_signup_forms_present: bool = False


@dataclass(frozen=True)
class NavigationContext:
    """The page the host is showing when a trigger fires."""

    url: str
    referrer: str | None = None
    user: UserSnapshot | None = None
    signup_forms_present: bool = False


# --- Candidate ---


@dataclass(frozen=True)
class RedirectCandidate:
    """A destination proposed by one channel."""

    url: str
    source_channel: SourceChannel
    param_name: str | None = None
    valid: bool = True

    @property
    def source_label(self) -> str:
        """Label persisted in the redirect session."""
        if self.source_channel == SourceChannel.QUERY_PARAM and self.param_name:
            return f"{self.source_channel.value}:{self.param_name}"
        return self.source_channel.value


# --- Persisted Session ---


@dataclass(frozen=True)
class RedirectSession:
    """Pending handoff state that survives page reloads."""

    pending_url: str | None = None
    source_channel: str | None = None
    attempt_count: int = 0
    last_attempt_at: datetime | None = None
    dismissed_url: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.pending_url is not None


# --- Output Models ---


@dataclass(frozen=True)
class ExtractionOutput:
    """Output of the candidate extractor."""

    candidate: RedirectCandidate | None
    rejections: list[ChannelRejection] = field(default_factory=list)


@dataclass(frozen=True)
class Admission:
    """Loop guard verdict plus the session it produced."""

    admitted: bool
    forced: bool
    session: RedirectSession


@dataclass(frozen=True)
class TriggerOutput:
    """Output of one engine trigger."""

    kind: TriggerKind
    outcome: HandoffOutcome
    candidate: RedirectCandidate | None = None
    gate: GateDecision | None = None
    session: RedirectSession | None = None
    rejections: list[ChannelRejection] = field(default_factory=list)


@dataclass(frozen=True)
class ResolveInput:
    """Input for a side-effect free resolution."""

    context: NavigationContext
    session: RedirectSession | None = None
    now: datetime | None = None


@dataclass(frozen=True)
class ResolveOutput:
    """What the engine would do for a context, without doing it."""

    candidate: RedirectCandidate | None
    gate: GateDecision | None
    rejections: list[ChannelRejection] = field(default_factory=list)

    @property
    def would_redirect(self) -> bool:
        return self.candidate is not None and self.gate == GateDecision.COMPLETE
