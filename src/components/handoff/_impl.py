"""
Partner handoff resolution - allowlist validation and candidate extraction.

Finds the partner site a signup/login flow started from and decides whether
it is a safe place to send the user back to.

Key behaviors:
- Destinations must be https and match an allowlisted hostname
- Channels are consulted in a fixed, configurable priority order
- A decode or parse failure only disqualifies its own channel
- The referrer is validated by hostname alone (browsers control its scheme)
"""

from __future__ import annotations

import base64
import json
import logging
import re
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from urllib.parse import parse_qsl, unquote, urlencode, urlsplit, urlunsplit

from .models import (
    ChannelRejection,
    ExtractionOutput,
    NavigationContext,
    RedirectCandidate,
    RedirectSession,
    SourceChannel,
    TriggerKind,
)

logger = logging.getLogger(__name__)

# --- Constants ---

DEFAULT_QUERY_PARAMS: tuple[str, ...] = (
    "return_url",
    "oauth2_redirect",
    "origin",
    "original_redirect",
    "saml_redirect",
    "return_to",
    "returnTo",
    "original_url",
)

STATE_PARAM = "state"
ENCODED_REDIRECT_PARAM = "encoded_redirect"
REDIRECT_COUNT_PARAM = "redirect_count"

DEFAULT_STATE_KEYS: tuple[str, ...] = (
    "redirect_uri",
    "redirect_url",
    "return_url",
    "returnTo",
    "return_to",
    "original_redirect",
    "oauth2_redirect",
    "origin",
)

DEFAULT_CHANNEL_ORDER: tuple[SourceChannel, ...] = (
    SourceChannel.QUERY_PARAM,
    SourceChannel.ENCODED_STATE,
    SourceChannel.ENCODED_BLOB,
    SourceChannel.PERSISTED_SESSION,
    SourceChannel.REFERRER,
)

DEFAULT_REGISTRATION_PATHS: tuple[str, ...] = ("/signup", "/register", "/create-account")

MATCH_SUFFIX = "suffix"
MATCH_SUBSTRING = "substring"

BLOB_URL_FIELD = "original_redirect_url"

_BARE_URL = re.compile(r"https?://[^\s\"'<>&]+")
_WHOLE_URL = re.compile(r"https?://[^\s\"'<>]+")
_UNSAFE_CHARS = re.compile(r"[\x00-\x20\x7f\\]")


# --- Configuration ---


@dataclass(frozen=True)
class HandoffConfig:
    """Handoff configuration from rules."""

    # Allowlist
    allowed_domains: tuple[str, ...] = ()
    match_mode: str = MATCH_SUFFIX
    require_https: bool = True
    platform_domain: str | None = None

    # Extraction
    channel_order: tuple[SourceChannel, ...] = DEFAULT_CHANNEL_ORDER
    query_params: tuple[str, ...] = DEFAULT_QUERY_PARAMS
    state_keys: tuple[str, ...] = DEFAULT_STATE_KEYS

    # Registration gate
    maturity_seconds: float = 900.0
    registration_paths: tuple[str, ...] = DEFAULT_REGISTRATION_PATHS
    require_display_name: bool = False

    # Loop guard
    loop_ceiling: int = 3

    # Confirmation prompt
    countdown_seconds: int = 10
    tick_seconds: float = 1.0
    destination_labels: Mapping[str, str] = field(default_factory=dict)

    # Scheduling
    trigger_delays: Mapping[TriggerKind, float] = field(default_factory=dict)
    poll_interval_seconds: float = 30.0
    poll_max_iterations: int = 10
    poll_cutoff_seconds: float = 600.0

    debug: bool = False

    @property
    def consumed_params(self) -> tuple[str, ...]:
        """Every query parameter the handoff reads and later strips."""
        return (
            *self.query_params,
            STATE_PARAM,
            ENCODED_REDIRECT_PARAM,
            REDIRECT_COUNT_PARAM,
        )

    def delay_for(self, kind: TriggerKind) -> float:
        return float(self.trigger_delays.get(kind, 0.0))


DEFAULT_CONFIG = HandoffConfig()


# --- Errors ---


class HandoffError(Exception):
    """Base error for a channel value that cannot be used."""

    code = "handoff_error"


class MalformedUrlError(HandoffError):
    """Candidate does not parse as an absolute URL."""

    code = "malformed_url"


class DecodeFailureError(HandoffError):
    """Base64 or JSON decoding of an opaque parameter failed."""

    code = "decode_failure"


# --- Hostname Matching ---


def normalize_entry(entry: str) -> str:
    """Lowercase an allowlist entry and drop wildcard/leading dots."""
    value = entry.strip().lower()
    if value.startswith("*."):
        value = value[2:]
    return value.lstrip(".")


def host_matches(hostname: str, entry: str, mode: str = MATCH_SUFFIX) -> bool:
    """Check a lowercase hostname against a normalized entry."""
    if not hostname or not entry:
        return False
    if mode == MATCH_SUBSTRING:
        return entry in hostname
    return hostname == entry or hostname.endswith("." + entry)


def parse_absolute_url(url: str) -> tuple[str, str]:
    """
    Split an absolute URL into (scheme, hostname).

    Raises:
        MalformedUrlError: If the URL has no scheme or host, carries
            whitespace, control characters or backslashes, or cannot be parsed.
    """
    if not url or _UNSAFE_CHARS.search(url):
        raise MalformedUrlError(f"Unusable URL: {url!r}")
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
    except ValueError as e:
        raise MalformedUrlError(f"Cannot parse URL {url!r}: {e}") from e
    if not parts.scheme or not hostname:
        raise MalformedUrlError(f"URL {url!r} is not absolute")
    return parts.scheme.lower(), hostname.lower()


def _hostname_of(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


# --- Allowlist ---


class Allowlist:
    """
    Trusted partner destinations.

    In suffix mode an entry matches the host itself and its subdomains.
    Substring mode keeps the legacy behavior where any hostname containing
    the entry matches; enable it only for compatibility.
    """

    def __init__(
        self,
        domains: Iterable[str],
        match_mode: str = MATCH_SUFFIX,
        require_https: bool = True,
    ) -> None:
        if match_mode not in (MATCH_SUFFIX, MATCH_SUBSTRING):
            raise ValueError(f"Unknown allowlist match mode: {match_mode}")
        self._entries = tuple(e for e in (normalize_entry(d) for d in domains) if e)
        self._match_mode = match_mode
        self._require_https = require_https

    @property
    def entries(self) -> tuple[str, ...]:
        return self._entries

    def is_host_allowed(self, hostname: str | None) -> bool:
        """Check a hostname without looking at the scheme."""
        if not hostname:
            return False
        host = hostname.lower().rstrip(".")
        return any(host_matches(host, entry, self._match_mode) for entry in self._entries)

    def check(self, url: str) -> ChannelRejection | None:
        """Return why url is refused, or None when it is allowed."""
        try:
            scheme, hostname = parse_absolute_url(url)
        except MalformedUrlError as e:
            return ChannelRejection(code=e.code, message=str(e))

        allowed_schemes = ("https",) if self._require_https else ("http", "https")
        if scheme not in allowed_schemes:
            return ChannelRejection(
                code="disallowed_destination",
                message=f"Scheme '{scheme}' is not allowed for {url}",
            )
        if not self.is_host_allowed(hostname):
            return ChannelRejection(
                code="disallowed_destination",
                message=f"Host '{hostname}' is not allowlisted",
            )
        return None

    def is_allowed(self, url: str) -> bool:
        return self.check(url) is None


# --- Decoders ---


def decode_base64_text(value: str) -> str:
    """
    Decode a base64 (standard or URL-safe) value into text.

    Query parsing turns '+' into spaces, so spaces are mapped back first and
    missing padding is tolerated.
    """
    if not value.strip():
        raise DecodeFailureError("Empty base64 value")
    cleaned = value.replace(" ", "+").strip()

    altchars = b"-_" if ("-" in cleaned or "_" in cleaned) else None
    padded = cleaned + "=" * (-len(cleaned) % 4)
    try:
        text = base64.b64decode(padded, altchars=altchars, validate=True).decode("utf-8")
    except ValueError as e:
        raise DecodeFailureError(f"Invalid base64 value: {e}") from e

    if not text.strip():
        raise DecodeFailureError("Base64 value decoded to nothing")
    return text


def decode_encoded_redirect(value: str) -> str:
    """Read the destination out of a base64 JSON redirect blob."""
    text = decode_base64_text(value)
    try:
        payload = json.loads(text)
    except ValueError as e:
        raise DecodeFailureError(f"Encoded redirect is not JSON: {e}") from e

    if not isinstance(payload, dict):
        raise DecodeFailureError("Encoded redirect payload is not an object")

    url = payload.get(BLOB_URL_FIELD)
    if not isinstance(url, str) or not url.strip():
        raise DecodeFailureError(f"Encoded redirect has no '{BLOB_URL_FIELD}'")
    return url.strip()


def _state_pair_pattern(keys: Iterable[str]) -> re.Pattern[str]:
    alternation = "|".join(re.escape(k) for k in keys)
    return re.compile(
        rf"""(?:^|[?&;,{{\s"'])(?:{alternation})["']?\s*[=:]\s*"""
        rf"""(?:"((?:[^"\\]|\\.)*)"|'([^']*)'|([^&"'\s,;}}]+))"""
    )


def urls_from_state(
    decoded: str,
    keys: Iterable[str] = DEFAULT_STATE_KEYS,
    platform_domain: str | None = None,
) -> list[str]:
    """
    List the URLs a decoded state value may carry, most specific first.

    Order: the whole decoded string when it is itself a URL, values of known
    redirect keys, bare URLs not on the platform's own domain, then the whole
    decoded string. Quoted values run to their closing quote; bare URLs stop
    at '&' because they usually sit inside a query string.
    """
    found: list[str] = []

    def add(url: str) -> None:
        if url and url not in found:
            found.append(url)

    whole = decoded.strip()
    if _WHOLE_URL.fullmatch(whole):
        add(whole)

    for match in _state_pair_pattern(keys).finditer(decoded):
        quoted, single, plain = match.groups()
        if quoted is not None:
            value = quoted.replace("\\/", "/").replace('\\"', '"')
            add(value if "://" in value else unquote(value))
        elif single is not None:
            add(single)
        else:
            add(unquote(plain).replace("\\/", "/"))

    own_domain = normalize_entry(platform_domain) if platform_domain else None
    for match in _BARE_URL.finditer(decoded):
        url = match.group(0)
        if own_domain:
            try:
                hostname = (urlsplit(url).hostname or "").lower()
            except ValueError:
                continue
            if host_matches(hostname, own_domain):
                continue
        add(url)

    add(whole)
    return found


# --- Query Helpers ---


def parse_query(url: str) -> dict[str, str]:
    """First value of each query parameter, as the browser would report it."""
    try:
        query = urlsplit(url).query
    except ValueError:
        return {}
    params: dict[str, str] = {}
    for name, value in parse_qsl(query):
        params.setdefault(name, value)
    return params


def strip_params(url: str, names: Iterable[str]) -> str | None:
    """
    Remove the given query parameters from url.

    Returns the rewritten URL, or None when nothing had to be removed.
    """
    try:
        parts = urlsplit(url)
    except ValueError:
        return None

    drop = set(names)
    pairs = parse_qsl(parts.query, keep_blank_values=True)
    kept = [(k, v) for k, v in pairs if k not in drop]
    if len(kept) == len(pairs):
        return None
    return urlunsplit(parts._replace(query=urlencode(kept)))


def parse_redirect_count(query: Mapping[str, str]) -> int | None:
    raw = query.get(REDIRECT_COUNT_PARAM)
    if raw is None:
        return None
    try:
        count = int(raw.strip())
    except ValueError:
        return None
    return count if count >= 0 else None


def destination_label(url: str, labels: Mapping[str, str] | None = None) -> str:
    """Human readable name for the partner site."""
    try:
        hostname = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return url
    if labels:
        for entry, label in labels.items():
            if host_matches(hostname, normalize_entry(entry)):
                return label
    return hostname or url


# --- Channel Strategies ---


@dataclass(frozen=True)
class Probe:
    """A raw value a channel proposes for validation."""

    url: str
    param_name: str | None = None
    host_only: bool = False


@dataclass(frozen=True)
class ExtractionRequest:
    """Everything a channel strategy may look at."""

    context: NavigationContext
    session: RedirectSession
    query: Mapping[str, str]
    config: HandoffConfig


ChannelStrategy = Callable[[ExtractionRequest], Iterable[Probe]]


def query_param_channel(request: ExtractionRequest) -> Iterator[Probe]:
    for name in request.config.query_params:
        value = request.query.get(name)
        if value and value.strip():
            yield Probe(url=unquote(value.strip()), param_name=name)


def encoded_state_channel(request: ExtractionRequest) -> Iterator[Probe]:
    raw = request.query.get(STATE_PARAM)
    if not raw:
        return
    decoded = decode_base64_text(raw)
    for url in urls_from_state(
        decoded,
        request.config.state_keys,
        request.config.platform_domain,
    ):
        yield Probe(url=url, param_name=STATE_PARAM)


def encoded_blob_channel(request: ExtractionRequest) -> Iterator[Probe]:
    raw = request.query.get(ENCODED_REDIRECT_PARAM)
    if not raw:
        return
    yield Probe(url=decode_encoded_redirect(raw), param_name=ENCODED_REDIRECT_PARAM)


def persisted_session_channel(request: ExtractionRequest) -> Iterator[Probe]:
    if request.session.pending_url:
        yield Probe(url=request.session.pending_url)


def referrer_channel(request: ExtractionRequest) -> Iterator[Probe]:
    referrer = (request.context.referrer or "").strip()
    if not referrer:
        return
    platform = request.config.platform_domain
    if platform and host_matches(_hostname_of(referrer), normalize_entry(platform)):
        return
    yield Probe(url=referrer, host_only=True)


CHANNEL_STRATEGIES: dict[SourceChannel, ChannelStrategy] = {
    SourceChannel.QUERY_PARAM: query_param_channel,
    SourceChannel.ENCODED_STATE: encoded_state_channel,
    SourceChannel.ENCODED_BLOB: encoded_blob_channel,
    SourceChannel.PERSISTED_SESSION: persisted_session_channel,
    SourceChannel.REFERRER: referrer_channel,
}


# --- Candidate Extractor ---


class CandidateExtractor:
    """
    Walks the channels in priority order and returns the first safe URL.

    Strategies are plain functions, so reordering or replacing a channel is a
    configuration change.
    """

    def __init__(
        self,
        allowlist: Allowlist,
        config: HandoffConfig = DEFAULT_CONFIG,
        strategies: Mapping[SourceChannel, ChannelStrategy] | None = None,
    ) -> None:
        self._allowlist = allowlist
        self._config = config
        self._strategies = dict(strategies or CHANNEL_STRATEGIES)

    def extract(
        self,
        context: NavigationContext,
        session: RedirectSession | None = None,
    ) -> ExtractionOutput:
        request = ExtractionRequest(
            context=context,
            session=session or RedirectSession(),
            query=parse_query(context.url),
            config=self._config,
        )
        rejections: list[ChannelRejection] = []

        for channel in self._config.channel_order:
            strategy = self._strategies.get(channel)
            if strategy is None:
                continue
            try:
                for probe in strategy(request):
                    rejection = self._validate(probe, request.session)
                    if rejection is None:
                        candidate = RedirectCandidate(
                            url=probe.url,
                            source_channel=channel,
                            param_name=probe.param_name
                            if channel == SourceChannel.QUERY_PARAM
                            else None,
                        )
                        logger.debug("Candidate %s from %s", candidate.url, candidate.source_label)
                        return ExtractionOutput(candidate=candidate, rejections=rejections)
                    rejections.append(replace(rejection, channel=channel))
            except HandoffError as e:
                logger.debug("Channel %s skipped: %s", channel.value, e)
                rejections.append(ChannelRejection(code=e.code, message=str(e), channel=channel))

        return ExtractionOutput(candidate=None, rejections=rejections)

    def _validate(self, probe: Probe, session: RedirectSession) -> ChannelRejection | None:
        if session.dismissed_url and probe.url == session.dismissed_url:
            return ChannelRejection(
                code="dismissed",
                message=f"{probe.url} was cancelled by the user",
            )

        if not probe.host_only:
            return self._allowlist.check(probe.url)

        # Any scheme is accepted here; the hostname is all that is validated.
        if _UNSAFE_CHARS.search(probe.url):
            return ChannelRejection(code="malformed_url", message=f"Unusable URL: {probe.url!r}")
        try:
            hostname = urlsplit(probe.url).hostname
        except ValueError as e:
            return ChannelRejection(code="malformed_url", message=str(e))
        if not hostname:
            return ChannelRejection(code="malformed_url", message=f"No host in {probe.url!r}")
        if session.dismissed_url and hostname.lower() == _hostname_of(session.dismissed_url):
            return ChannelRejection(
                code="dismissed",
                message=f"Host '{hostname}' was cancelled by the user",
            )
        if not self._allowlist.is_host_allowed(hostname):
            return ChannelRejection(
                code="disallowed_destination",
                message=f"Host '{hostname}' is not allowlisted",
            )
        return None
