"""
Redirect session persistence and the loop guard.

One logical session exists per browser profile. Writes are last-write-wins;
the engine serializes triggers so no merge is needed.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, replace
from datetime import datetime
from typing import Any

from ._gate import parse_created_at
from .models import Admission, RedirectSession
from .ports import SessionStorePort

logger = logging.getLogger(__name__)


def session_to_record(session: RedirectSession) -> dict[str, Any]:
    record = asdict(session)
    if session.last_attempt_at is not None:
        record["last_attempt_at"] = session.last_attempt_at.isoformat()
    return record


def session_from_record(record: dict[str, Any]) -> RedirectSession:
    """Rebuild a session from stored data, dropping fields that do not fit."""
    pending_url = record.get("pending_url")
    source_channel = record.get("source_channel")
    dismissed_url = record.get("dismissed_url")

    try:
        attempt_count = max(0, int(record.get("attempt_count") or 0))
    except (TypeError, ValueError):
        attempt_count = 0

    raw_attempt = record.get("last_attempt_at")
    last_attempt_at = parse_created_at(raw_attempt) if isinstance(raw_attempt, str) else None

    return RedirectSession(
        pending_url=pending_url if isinstance(pending_url, str) and pending_url else None,
        source_channel=source_channel if isinstance(source_channel, str) else None,
        attempt_count=attempt_count,
        last_attempt_at=last_attempt_at,
        dismissed_url=dismissed_url if isinstance(dismissed_url, str) and dismissed_url else None,
    )


class RedirectSessionStore:
    """Typed access to the persisted redirect session."""

    def __init__(self, store: SessionStorePort) -> None:
        self._store = store

    def load(self) -> RedirectSession:
        try:
            record = self._store.read()
        except Exception:
            logger.warning("Redirect session unreadable; starting empty", exc_info=True)
            return RedirectSession()
        if not record:
            return RedirectSession()
        if not isinstance(record, dict):
            logger.warning("Redirect session has unexpected shape; starting empty")
            return RedirectSession()
        return session_from_record(record)

    def save(self, **changes: Any) -> RedirectSession:
        """Apply changes on top of the stored session and persist it."""
        session = replace(self.load(), **changes)
        self._store.write(session_to_record(session))
        return session

    def put(self, session: RedirectSession) -> RedirectSession:
        self._store.write(session_to_record(session))
        return session

    def clear(self) -> RedirectSession:
        """Forget the pending redirect but remember what the user dismissed."""
        dismissed = self.load().dismissed_url
        if dismissed:
            return self.put(RedirectSession(dismissed_url=dismissed))
        self._store.delete()
        return RedirectSession()

    def dismiss(self, url: str) -> RedirectSession:
        """Clear the session and record url as cancelled by the user."""
        return self.put(RedirectSession(dismissed_url=url))


class LoopGuard:
    """
    Bounds repeated redirect attempts.

    Every admission check counts as an attempt. Once the count passes the
    ceiling the pending redirect goes through even though the gate still
    says no, so the user cannot be held on the landing page forever.
    """

    def __init__(self, ceiling: int = 3) -> None:
        if ceiling < 0:
            raise ValueError("ceiling must not be negative")
        self._ceiling = ceiling

    @property
    def ceiling(self) -> int:
        return self._ceiling

    def admit(
        self,
        session: RedirectSession,
        gate_complete: bool,
        now: datetime,
    ) -> Admission:
        attempts = session.attempt_count + 1

        if gate_complete:
            return Admission(
                admitted=True,
                forced=False,
                session=replace(session, attempt_count=0, last_attempt_at=now),
            )

        if attempts > self._ceiling:
            logger.info(
                "Loop ceiling reached after %d attempts; forcing redirect to %s",
                attempts,
                session.pending_url,
            )
            return Admission(
                admitted=True,
                forced=True,
                session=replace(session, attempt_count=0, last_attempt_at=now),
            )

        return Admission(
            admitted=False,
            forced=False,
            session=replace(session, attempt_count=attempts, last_attempt_at=now),
        )
