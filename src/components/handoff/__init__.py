"""
Handoff component - post-signup redirect back to the originating partner site.
"""

from ._gate import RegistrationGate, is_registration_path, parse_created_at
from ._impl import (
    CHANNEL_STRATEGIES,
    DEFAULT_CHANNEL_ORDER,
    DEFAULT_CONFIG,
    DEFAULT_QUERY_PARAMS,
    DEFAULT_REGISTRATION_PATHS,
    DEFAULT_STATE_KEYS,
    MATCH_SUBSTRING,
    MATCH_SUFFIX,
    Allowlist,
    CandidateExtractor,
    ChannelStrategy,
    DecodeFailureError,
    ExtractionRequest,
    HandoffConfig,
    HandoffError,
    MalformedUrlError,
    Probe,
    decode_base64_text,
    decode_encoded_redirect,
    destination_label,
    host_matches,
    normalize_entry,
    parse_query,
    strip_params,
    urls_from_state,
)
from ._poller import BoundedPoller
from ._prompt import ConfirmationPrompt
from ._session import LoopGuard, RedirectSessionStore
from .component import RedirectEngine, check_url, create_engine, run_resolve
from .models import (
    HOST_TRIGGERS,
    Admission,
    ChannelRejection,
    ExtractionOutput,
    GateDecision,
    HandoffOutcome,
    NavigationContext,
    PromptState,
    RedirectCandidate,
    RedirectSession,
    ResolveInput,
    ResolveOutput,
    SourceChannel,
    TriggerKind,
    TriggerOutput,
    UserSnapshot,
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

__all__ = [
    # Entry points
    "RedirectEngine",
    "check_url",
    "create_engine",
    "run_resolve",
    # Building blocks
    "Allowlist",
    "BoundedPoller",
    "CandidateExtractor",
    "ConfirmationPrompt",
    "LoopGuard",
    "RedirectSessionStore",
    "RegistrationGate",
    # Configuration
    "CHANNEL_STRATEGIES",
    "DEFAULT_CHANNEL_ORDER",
    "DEFAULT_CONFIG",
    "DEFAULT_QUERY_PARAMS",
    "DEFAULT_REGISTRATION_PATHS",
    "DEFAULT_STATE_KEYS",
    "MATCH_SUBSTRING",
    "MATCH_SUFFIX",
    "HandoffConfig",
    # Errors
    "DecodeFailureError",
    "HandoffError",
    "MalformedUrlError",
    # Helpers
    "ChannelStrategy",
    "ExtractionRequest",
    "Probe",
    "decode_base64_text",
    "decode_encoded_redirect",
    "destination_label",
    "host_matches",
    "is_registration_path",
    "normalize_entry",
    "parse_created_at",
    "parse_query",
    "strip_params",
    "urls_from_state",
    # Models
    "HOST_TRIGGERS",
    "Admission",
    "ChannelRejection",
    "ExtractionOutput",
    "GateDecision",
    "HandoffOutcome",
    "NavigationContext",
    "PromptState",
    "RedirectCandidate",
    "RedirectSession",
    "ResolveInput",
    "ResolveOutput",
    "SourceChannel",
    "TriggerKind",
    "TriggerOutput",
    "UserSnapshot",
    # Ports
    "HostPort",
    "NavigatorPort",
    "PromptViewPort",
    "SessionStorePort",
    "TimePort",
    "TimerHandle",
    "TimerPort",
]
