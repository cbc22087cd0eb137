"""
Tests for candidate extraction across the source channels.

Covers:
- Query parameter priority and allowlist filtering
- Base64 state and JSON redirect blobs
- Persisted session and referrer fallbacks
- Per-channel failure isolation
"""

from __future__ import annotations

import base64
import json
from urllib.parse import urlencode

import pytest

from src.components.handoff import (
    Allowlist,
    CandidateExtractor,
    DecodeFailureError,
    HandoffConfig,
    NavigationContext,
    Probe,
    RedirectSession,
    SourceChannel,
    decode_base64_text,
    decode_encoded_redirect,
    urls_from_state,
)

LANDING = "https://community.example.com/latest"


def b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def landing(**params: str) -> str:
    return f"{LANDING}?{urlencode(params)}" if params else LANDING


@pytest.fixture
def extraction_config() -> HandoffConfig:
    return HandoffConfig(
        allowed_domains=("partner.example.com",),
        platform_domain="community.example.com",
    )


@pytest.fixture
def extractor(extraction_config: HandoffConfig) -> CandidateExtractor:
    return CandidateExtractor(
        Allowlist(extraction_config.allowed_domains),
        extraction_config,
    )


# --- Decoders ---


class TestDecodeBase64Text:
    """Lenient base64 decoding."""

    def test_standard(self) -> None:
        assert decode_base64_text(b64("hello")) == "hello"

    def test_missing_padding(self) -> None:
        assert decode_base64_text(b64("hello").rstrip("=")) == "hello"

    def test_url_safe_alphabet(self) -> None:
        raw = base64.urlsafe_b64encode(b">>>").decode("ascii")
        assert raw == "Pj4-"
        assert decode_base64_text(raw) == ">>>"

    def test_spaces_from_query_parsing_become_plus(self) -> None:
        assert b64(">>>") == "Pj4+"
        assert decode_base64_text("Pj4 ") == ">>>"

    def test_not_utf8(self) -> None:
        raw = base64.b64encode(b"\xfb\xff\xfe").decode("ascii")
        with pytest.raises(DecodeFailureError):
            decode_base64_text(raw)

    @pytest.mark.parametrize("value", ["", "   ", "!!!not-base64!!!", b64("   ")])
    def test_rejects_garbage(self, value: str) -> None:
        with pytest.raises(DecodeFailureError):
            decode_base64_text(value)


class TestDecodeEncodedRedirect:
    """JSON redirect blob decoding."""

    def test_reads_url_field(self) -> None:
        blob = b64(json.dumps({"original_redirect_url": "https://partner.example.com/b"}))
        assert decode_encoded_redirect(blob) == "https://partner.example.com/b"

    def test_not_json(self) -> None:
        with pytest.raises(DecodeFailureError, match="not JSON"):
            decode_encoded_redirect(b64("plain text"))

    def test_not_an_object(self) -> None:
        with pytest.raises(DecodeFailureError):
            decode_encoded_redirect(b64(json.dumps(["https://partner.example.com/"])))

    def test_missing_field(self) -> None:
        with pytest.raises(DecodeFailureError):
            decode_encoded_redirect(b64(json.dumps({"url": "https://partner.example.com/"})))


class TestUrlsFromState:
    """URL discovery inside decoded state values."""

    def test_key_value_pair_is_unquoted(self) -> None:
        urls = urls_from_state("redirect_uri=https%3A%2F%2Fpartner.example.com%2Fy")
        assert urls[0] == "https://partner.example.com/y"

    def test_json_key(self) -> None:
        decoded = json.dumps({"nonce": "n1", "return_url": "https://partner.example.com/z"})
        assert urls_from_state(decoded)[0] == "https://partner.example.com/z"

    def test_escaped_slashes(self) -> None:
        decoded = '{"redirect_url":"https:\\/\\/partner.example.com\\/e"}'
        assert "https://partner.example.com/e" in urls_from_state(decoded)

    def test_bare_url_skips_platform_domain(self) -> None:
        decoded = "cb=x https://community.example.com/cb https://partner.example.com/w"
        urls = urls_from_state(decoded, platform_domain="community.example.com")
        assert "https://community.example.com/cb" not in urls
        assert "https://partner.example.com/w" in urls

    def test_whole_string_comes_last(self) -> None:
        urls = urls_from_state("https://partner.example.com/only")
        assert urls == ["https://partner.example.com/only"]

    def test_no_duplicates(self) -> None:
        urls = urls_from_state("return_to=https://partner.example.com/d")
        assert urls.count("https://partner.example.com/d") == 1

    def test_bare_url_keeps_all_query_params(self) -> None:
        urls = urls_from_state("https://partner.example.com/c?id=1&lang=en")
        assert urls[0] == "https://partner.example.com/c?id=1&lang=en"

    def test_json_value_read_to_closing_quote(self) -> None:
        decoded = json.dumps(
            {"redirect_uri": "https://partner.example.com/c?id=1&lang=en", "nonce": "n,1"}
        )
        assert urls_from_state(decoded)[0] == "https://partner.example.com/c?id=1&lang=en"

    def test_single_quoted_value(self) -> None:
        decoded = "{'return_to': 'https://partner.example.com/c?a=1&b=2'}"
        assert urls_from_state(decoded)[0] == "https://partner.example.com/c?a=1&b=2"


# --- Extractor ---


class TestQueryParamChannel:
    """Named query parameters."""

    def test_return_url(self, extractor: CandidateExtractor) -> None:
        context = NavigationContext(url=landing(return_url="https://partner.example.com/x"))
        result = extractor.extract(context)

        assert result.candidate is not None
        assert result.candidate.url == "https://partner.example.com/x"
        assert result.candidate.source_channel == SourceChannel.QUERY_PARAM
        assert result.candidate.param_name == "return_url"
        assert result.candidate.source_label == "query_param:return_url"
        assert result.rejections == []

    def test_configured_order_wins(self, extractor: CandidateExtractor) -> None:
        url = landing(
            origin="https://partner.example.com/second",
            return_url="https://partner.example.com/first",
        )
        result = extractor.extract(NavigationContext(url=url))
        assert result.candidate is not None
        assert result.candidate.url == "https://partner.example.com/first"

    def test_double_encoded_value(self, extractor: CandidateExtractor) -> None:
        url = f"{LANDING}?returnTo=https%253A%252F%252Fpartner.example.com%252Fq"
        result = extractor.extract(NavigationContext(url=url))
        assert result.candidate is not None
        assert result.candidate.url == "https://partner.example.com/q"

    def test_disallowed_then_allowed(self, extractor: CandidateExtractor) -> None:
        url = landing(
            return_url="https://evil.test/",
            origin="https://partner.example.com/ok",
        )
        result = extractor.extract(NavigationContext(url=url))
        assert result.candidate is not None
        assert result.candidate.param_name == "origin"
        assert [r.code for r in result.rejections] == ["disallowed_destination"]
        assert result.rejections[0].channel == SourceChannel.QUERY_PARAM


class TestDisallowedOriginFallsThrough:
    """A non-allowlisted origin is discarded and later channels still run."""

    def test_no_candidate(self, extractor: CandidateExtractor) -> None:
        result = extractor.extract(NavigationContext(url=landing(origin="https://evil.test/")))
        assert result.candidate is None
        assert len(result.rejections) == 1
        assert result.rejections[0].code == "disallowed_destination"

    def test_next_channel_used(self, extractor: CandidateExtractor) -> None:
        context = NavigationContext(
            url=landing(origin="https://evil.test/"),
            referrer="https://partner.example.com/courses",
        )
        result = extractor.extract(context)
        assert result.candidate is not None
        assert result.candidate.source_channel == SourceChannel.REFERRER


class TestEncodedStateChannel:
    """Base64 state parameter."""

    def test_redirect_uri_in_state(self, extractor: CandidateExtractor) -> None:
        state = b64("redirect_uri=https%3A%2F%2Fpartner.example.com%2Fy")
        result = extractor.extract(NavigationContext(url=landing(state=state)))

        assert result.candidate is not None
        assert result.candidate.url == "https://partner.example.com/y"
        assert result.candidate.source_channel == SourceChannel.ENCODED_STATE
        assert result.candidate.param_name is None

    @pytest.mark.parametrize(
        "decoded",
        [
            "https://partner.example.com/course?id=1&lang=en",
            json.dumps({"redirect_uri": "https://partner.example.com/course?id=1&lang=en"}),
        ],
    )
    def test_multi_param_destination_not_truncated(
        self, extractor: CandidateExtractor, decoded: str
    ) -> None:
        result = extractor.extract(NavigationContext(url=landing(state=b64(decoded))))
        assert result.candidate is not None
        assert result.candidate.url == "https://partner.example.com/course?id=1&lang=en"

    def test_bad_state_skips_channel_only(self, extractor: CandidateExtractor) -> None:
        blob = b64(json.dumps({"original_redirect_url": "https://partner.example.com/b"}))
        result = extractor.extract(
            NavigationContext(url=landing(state="%%%not base64", encoded_redirect=blob))
        )
        assert result.candidate is not None
        assert result.candidate.source_channel == SourceChannel.ENCODED_BLOB
        assert result.rejections[0].code == "decode_failure"
        assert result.rejections[0].channel == SourceChannel.ENCODED_STATE

    def test_state_without_allowed_url(self, extractor: CandidateExtractor) -> None:
        state = b64("csrf=abc123")
        result = extractor.extract(NavigationContext(url=landing(state=state)))
        assert result.candidate is None
        assert result.rejections


class TestEncodedBlobChannel:
    """Base64 JSON encoded_redirect parameter."""

    def test_blob(self, extractor: CandidateExtractor) -> None:
        blob = b64(json.dumps({"original_redirect_url": "https://partner.example.com/b"}))
        result = extractor.extract(NavigationContext(url=landing(encoded_redirect=blob)))
        assert result.candidate is not None
        assert result.candidate.url == "https://partner.example.com/b"
        assert result.candidate.source_channel == SourceChannel.ENCODED_BLOB

    def test_blob_with_disallowed_url(self, extractor: CandidateExtractor) -> None:
        blob = b64(json.dumps({"original_redirect_url": "https://evil.test/"}))
        result = extractor.extract(NavigationContext(url=landing(encoded_redirect=blob)))
        assert result.candidate is None
        assert result.rejections[0].code == "disallowed_destination"


class TestPersistedSessionChannel:
    """Pending URL from an earlier page."""

    def test_used_without_query(self, extractor: CandidateExtractor) -> None:
        session = RedirectSession(pending_url="https://partner.example.com/p")
        result = extractor.extract(NavigationContext(url=LANDING), session)
        assert result.candidate is not None
        assert result.candidate.source_channel == SourceChannel.PERSISTED_SESSION

    def test_revalidated(self, extractor: CandidateExtractor) -> None:
        session = RedirectSession(pending_url="https://evil.test/p")
        result = extractor.extract(NavigationContext(url=LANDING), session)
        assert result.candidate is None

    def test_query_beats_session(self, extractor: CandidateExtractor) -> None:
        session = RedirectSession(pending_url="https://partner.example.com/old")
        context = NavigationContext(url=landing(return_url="https://partner.example.com/new"))
        result = extractor.extract(context, session)
        assert result.candidate is not None
        assert result.candidate.url == "https://partner.example.com/new"


class TestReferrerChannel:
    """Document referrer, validated by hostname."""

    def test_http_referrer_accepted_by_host(self, extractor: CandidateExtractor) -> None:
        context = NavigationContext(url=LANDING, referrer="http://partner.example.com/page")
        result = extractor.extract(context)
        assert result.candidate is not None
        assert result.candidate.url == "http://partner.example.com/page"

    def test_platform_referrer_ignored(self, extractor: CandidateExtractor) -> None:
        context = NavigationContext(url=LANDING, referrer="https://community.example.com/login")
        result = extractor.extract(context)
        assert result.candidate is None
        assert result.rejections == []

    def test_foreign_referrer_rejected(self, extractor: CandidateExtractor) -> None:
        context = NavigationContext(url=LANDING, referrer="https://search.test/?q=x")
        result = extractor.extract(context)
        assert result.candidate is None
        assert result.rejections[0].channel == SourceChannel.REFERRER

    @pytest.mark.parametrize(
        "referrer",
        [
            "https://partner.example.com\\@evil.test/",
            "https://partner.example.com/\x00page",
            "https://partner.example.com/a page",
        ],
    )
    def test_unsafe_characters_rejected(
        self, extractor: CandidateExtractor, referrer: str
    ) -> None:
        result = extractor.extract(NavigationContext(url=LANDING, referrer=referrer))
        assert result.candidate is None
        assert result.rejections[0].code == "malformed_url"
        assert result.rejections[0].channel == SourceChannel.REFERRER

    def test_dismissed_host_skipped(self, extractor: CandidateExtractor) -> None:
        session = RedirectSession(dismissed_url="https://partner.example.com/x")
        context = NavigationContext(url=LANDING, referrer="https://partner.example.com/")
        result = extractor.extract(context, session)
        assert result.candidate is None
        assert result.rejections[0].code == "dismissed"


class TestDismissedUrl:
    """URLs the user cancelled are not offered again."""

    def test_dismissed_query_value_skipped(self, extractor: CandidateExtractor) -> None:
        session = RedirectSession(dismissed_url="https://partner.example.com/x")
        context = NavigationContext(url=landing(return_url="https://partner.example.com/x"))
        result = extractor.extract(context, session)
        assert result.candidate is None
        assert result.rejections[0].code == "dismissed"

    def test_other_url_still_offered(self, extractor: CandidateExtractor) -> None:
        session = RedirectSession(dismissed_url="https://partner.example.com/x")
        context = NavigationContext(url=landing(return_url="https://partner.example.com/other"))
        assert extractor.extract(context, session).candidate is not None


class TestChannelConfiguration:
    """Channel order and strategies are configuration."""

    def test_reordered_channels(self, extraction_config: HandoffConfig) -> None:
        config = HandoffConfig(
            allowed_domains=extraction_config.allowed_domains,
            channel_order=(SourceChannel.REFERRER, SourceChannel.QUERY_PARAM),
        )
        extractor = CandidateExtractor(Allowlist(config.allowed_domains), config)
        context = NavigationContext(
            url=landing(return_url="https://partner.example.com/query"),
            referrer="https://partner.example.com/ref",
        )
        result = extractor.extract(context)
        assert result.candidate is not None
        assert result.candidate.source_channel == SourceChannel.REFERRER

    def test_channel_left_out(self, extraction_config: HandoffConfig) -> None:
        config = HandoffConfig(
            allowed_domains=extraction_config.allowed_domains,
            channel_order=(SourceChannel.QUERY_PARAM,),
        )
        extractor = CandidateExtractor(Allowlist(config.allowed_domains), config)
        context = NavigationContext(url=LANDING, referrer="https://partner.example.com/ref")
        assert extractor.extract(context).candidate is None

    def test_custom_strategy(self, extraction_config: HandoffConfig) -> None:
        def fixed(request):
            yield Probe(url="https://partner.example.com/fixed")

        extractor = CandidateExtractor(
            Allowlist(extraction_config.allowed_domains),
            extraction_config,
            strategies={SourceChannel.QUERY_PARAM: fixed},
        )
        result = extractor.extract(NavigationContext(url=LANDING))
        assert result.candidate is not None
        assert result.candidate.url == "https://partner.example.com/fixed"
