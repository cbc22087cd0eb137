from datetime import datetime

from pydantic import BaseModel, field_validator

from src.adapters.browser import BrowserEffect
from src.components.handoff import (
    HOST_TRIGGERS,
    ChannelRejection,
    GateDecision,
    HandoffOutcome,
    NavigationContext,
    RedirectCandidate,
    RedirectSession,
    TriggerKind,
    TriggerOutput,
    UserSnapshot,
)


# --- Requests ---
class UserSnapshotModel(BaseModel):
    id: str | int
    username: str | None = None
    name: str | None = None
    created_at: datetime | int | float | str | None = None
    on_registration_page: bool = False
    has_signup_forms_present: bool = False

    def to_snapshot(self) -> UserSnapshot:
        return UserSnapshot(**self.model_dump())


class NavigationContextModel(BaseModel):
    url: str
    referrer: str | None = None
    user: UserSnapshotModel | None = None
    signup_forms_present: bool = False

    def to_context(self) -> NavigationContext:
        return NavigationContext(
            url=self.url,
            referrer=self.referrer,
            user=self.user.to_snapshot() if self.user else None,
            signup_forms_present=self.signup_forms_present,
        )


class TriggerRequest(BaseModel):
    kind: TriggerKind
    context: NavigationContextModel


class EventRequest(BaseModel):
    kind: TriggerKind
    context: NavigationContextModel

    @field_validator("kind")
    @classmethod
    def _host_event(cls, value: TriggerKind) -> TriggerKind:
        if value not in HOST_TRIGGERS:
            raise ValueError(f"'{value}' is not a host event")
        return value


# --- Responses ---
class EffectModel(BaseModel):
    kind: str
    url: str | None = None
    label: str | None = None
    remaining: int | None = None

    @classmethod
    def from_effect(cls, effect: BrowserEffect) -> "EffectModel":
        return cls(**effect.to_dict())


class CandidateModel(BaseModel):
    url: str
    source_channel: str
    param_name: str | None = None

    @classmethod
    def from_candidate(cls, candidate: RedirectCandidate) -> "CandidateModel":
        return cls(
            url=candidate.url,
            source_channel=candidate.source_channel.value,
            param_name=candidate.param_name,
        )


class SessionModel(BaseModel):
    pending_url: str | None = None
    source_channel: str | None = None
    attempt_count: int = 0
    last_attempt_at: datetime | None = None
    dismissed_url: str | None = None

    @classmethod
    def from_session(cls, session: RedirectSession) -> "SessionModel":
        return cls(
            pending_url=session.pending_url,
            source_channel=session.source_channel,
            attempt_count=session.attempt_count,
            last_attempt_at=session.last_attempt_at,
            dismissed_url=session.dismissed_url,
        )


class RejectionModel(BaseModel):
    code: str
    message: str
    channel: str | None = None

    @classmethod
    def from_rejection(cls, rejection: ChannelRejection) -> "RejectionModel":
        return cls(
            code=rejection.code,
            message=rejection.message,
            channel=rejection.channel.value if rejection.channel else None,
        )


class EffectsResponse(BaseModel):
    effects: list[EffectModel] = []


class TriggerResponse(EffectsResponse):
    outcome: HandoffOutcome
    gate: GateDecision | None = None
    candidate: CandidateModel | None = None
    session: SessionModel | None = None
    rejections: list[RejectionModel] = []

    @classmethod
    def build(cls, output: TriggerOutput, effects: list[BrowserEffect]) -> "TriggerResponse":
        return cls(
            outcome=output.outcome,
            gate=output.gate,
            candidate=CandidateModel.from_candidate(output.candidate) if output.candidate else None,
            session=SessionModel.from_session(output.session) if output.session else None,
            rejections=[RejectionModel.from_rejection(r) for r in output.rejections],
            effects=[EffectModel.from_effect(e) for e in effects],
        )


class EventResponse(EffectsResponse):
    delivered: int


class StatusResponse(BaseModel):
    started: bool
    prompt_state: str | None = None
    session: SessionModel
    pending_timers: int
