from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.components.handoff import (
    DEFAULT_CHANNEL_ORDER,
    DEFAULT_QUERY_PARAMS,
    DEFAULT_REGISTRATION_PATHS,
    DEFAULT_STATE_KEYS,
    MATCH_SUBSTRING,
    MATCH_SUFFIX,
    HandoffConfig,
    SourceChannel,
    TriggerKind,
    normalize_entry,
)


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class AllowlistRules(_Section):
    domains: list[str] = Field(default_factory=list)
    match_mode: str = MATCH_SUFFIX
    require_https: bool = True

    @field_validator("domains")
    @classmethod
    def _non_empty_domains(cls, value: list[str]) -> list[str]:
        cleaned = [normalize_entry(d) for d in value]
        if any(not d for d in cleaned):
            raise ValueError("allowlist domains must not be empty")
        return cleaned

    @field_validator("match_mode")
    @classmethod
    def _known_mode(cls, value: str) -> str:
        if value not in (MATCH_SUFFIX, MATCH_SUBSTRING):
            raise ValueError(f"match_mode must be '{MATCH_SUFFIX}' or '{MATCH_SUBSTRING}'")
        return value


class PlatformRules(_Section):
    domain: str | None = None


class ExtractionRules(_Section):
    channel_order: list[SourceChannel] = Field(default_factory=lambda: list(DEFAULT_CHANNEL_ORDER))
    query_params: list[str] = Field(default_factory=lambda: list(DEFAULT_QUERY_PARAMS))
    state_keys: list[str] = Field(default_factory=lambda: list(DEFAULT_STATE_KEYS))

    @field_validator("channel_order")
    @classmethod
    def _no_duplicate_channels(cls, value: list[SourceChannel]) -> list[SourceChannel]:
        if len(set(value)) != len(value):
            raise ValueError("channel_order lists a channel twice")
        return value


class GateRules(_Section):
    maturity_seconds: float = Field(default=900.0, ge=0)
    registration_paths: list[str] = Field(default_factory=lambda: list(DEFAULT_REGISTRATION_PATHS))
    require_display_name: bool = False


class LoopGuardRules(_Section):
    ceiling: int = Field(default=3, ge=0)


class PromptRules(_Section):
    countdown_seconds: int = Field(default=10, ge=0)
    tick_seconds: float = Field(default=1.0, gt=0)
    labels: dict[str, str] = Field(default_factory=dict)


class TriggerRules(_Section):
    initial_load: float = Field(default=1.0, ge=0)
    page_changed: float = Field(default=1.0, ge=0)
    user_logged_in: float = Field(default=2.0, ge=0)
    user_registered: float = Field(default=5.0, ge=0)
    user_profile_updated: float = Field(default=1.0, ge=0)


class PollingRules(_Section):
    interval_seconds: float = Field(default=30.0, gt=0)
    max_iterations: int = Field(default=10, ge=0)
    cutoff_seconds: float = Field(default=600.0, ge=0)


class BridgeRules(_Section):
    """Limits on engines held by the HTTP host bridge."""

    max_engines: int = Field(default=1000, ge=1)
    idle_seconds: float = Field(default=1800.0, gt=0)


class HandoffRules(_Section):
    allowlist: AllowlistRules = Field(default_factory=AllowlistRules)
    platform: PlatformRules = Field(default_factory=PlatformRules)
    extraction: ExtractionRules = Field(default_factory=ExtractionRules)
    gate: GateRules = Field(default_factory=GateRules)
    loop_guard: LoopGuardRules = Field(default_factory=LoopGuardRules)
    prompt: PromptRules = Field(default_factory=PromptRules)
    triggers: TriggerRules = Field(default_factory=TriggerRules)
    polling: PollingRules = Field(default_factory=PollingRules)
    bridge: BridgeRules = Field(default_factory=BridgeRules)
    debug: bool = False

    def to_config(self) -> HandoffConfig:
        """Flatten the rules into the component's frozen config."""
        return HandoffConfig(
            allowed_domains=tuple(self.allowlist.domains),
            match_mode=self.allowlist.match_mode,
            require_https=self.allowlist.require_https,
            platform_domain=self.platform.domain,
            channel_order=tuple(self.extraction.channel_order),
            query_params=tuple(self.extraction.query_params),
            state_keys=tuple(self.extraction.state_keys),
            maturity_seconds=self.gate.maturity_seconds,
            registration_paths=tuple(self.gate.registration_paths),
            require_display_name=self.gate.require_display_name,
            loop_ceiling=self.loop_guard.ceiling,
            countdown_seconds=self.prompt.countdown_seconds,
            tick_seconds=self.prompt.tick_seconds,
            destination_labels=dict(self.prompt.labels),
            trigger_delays={
                TriggerKind(name): delay for name, delay in self.triggers.model_dump().items()
            },
            poll_interval_seconds=self.polling.interval_seconds,
            poll_max_iterations=self.polling.max_iterations,
            poll_cutoff_seconds=self.polling.cutoff_seconds,
            debug=self.debug,
        )
