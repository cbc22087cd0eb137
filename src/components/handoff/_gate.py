"""
Registration gate - has this identity finished onboarding?

The decision is recomputed on every check from the user snapshot and the
page the host is showing; nothing here is persisted.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from urllib.parse import urlsplit

from .models import GateDecision, NavigationContext, UserSnapshot

logger = logging.getLogger(__name__)

# Epoch values above this are taken to be milliseconds.
_EPOCH_MILLIS_THRESHOLD = 10**11


def parse_created_at(value: datetime | str | int | float | None) -> datetime | None:
    """
    Interpret an account creation timestamp as an aware UTC datetime.

    Returns None when the value is missing or cannot be understood.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, int | float):
        seconds = value / 1000 if abs(value) > _EPOCH_MILLIS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def is_registration_path(url: str, patterns: tuple[str, ...]) -> bool:
    try:
        path = urlsplit(url).path.lower()
    except ValueError:
        return False
    return any(pattern.lower() in path for pattern in patterns)


class RegistrationGate:
    """
    Decides whether the redirect may run for the current user.

    Priority: no user, registration page, signup forms, incomplete profile,
    account too young, complete. Only COMPLETE lets the engine proceed; the
    first three block regardless of any other signal.
    """

    def __init__(
        self,
        maturity_seconds: float = 900.0,
        registration_paths: tuple[str, ...] = ("/signup", "/register", "/create-account"),
        require_display_name: bool = False,
    ) -> None:
        if maturity_seconds < 0:
            raise ValueError("maturity_seconds must not be negative")
        self._maturity_seconds = maturity_seconds
        self._registration_paths = registration_paths
        self._require_display_name = require_display_name

    def evaluate(self, context: NavigationContext, now: datetime) -> GateDecision:
        user = context.user
        decision = self._decide(user, context, now)
        logger.debug(
            "Gate %s for user %s",
            decision.value,
            user.username if user else None,
        )
        return decision

    def _decide(
        self,
        user: UserSnapshot | None,
        context: NavigationContext,
        now: datetime,
    ) -> GateDecision:
        if user is None:
            return GateDecision.UNKNOWN

        if user.on_registration_page or is_registration_path(
            context.url, self._registration_paths
        ):
            return GateDecision.ON_REGISTRATION_PAGE

        if user.has_signup_forms_present or context.signup_forms_present:
            return GateDecision.FORMS_PRESENT

        if not (user.username or "").strip():
            return GateDecision.PROFILE_INCOMPLETE

        if self._require_display_name and not (user.name or "").strip():
            return GateDecision.PROFILE_INCOMPLETE

        created_at = parse_created_at(user.created_at)
        if created_at is not None:
            age = (now - created_at).total_seconds()
            if age < self._maturity_seconds:
                return GateDecision.TOO_RECENT

        # Unknown creation time is let through.
        return GateDecision.COMPLETE
