"""
Redirect session store adapters.

These implement SessionStorePort for the handoff component: one record per
browser profile, replaced wholesale on every write.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_PROFILE_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def is_valid_profile_id(profile_id: str) -> bool:
    return bool(_PROFILE_ID.match(profile_id))


class InMemoryHandoffStore:
    """In-memory record - suitable for tests and single-process use."""

    def __init__(self, record: dict[str, Any] | None = None) -> None:
        self._record: dict[str, Any] | None = dict(record) if record else None

    def read(self) -> dict[str, Any] | None:
        return dict(self._record) if self._record is not None else None

    def write(self, record: dict[str, Any]) -> None:
        self._record = dict(record)

    def delete(self) -> None:
        self._record = None


class JsonFileHandoffStore:
    """
    Record kept as a JSON document on disk.

    Writes go to a temporary file that is renamed over the target, so a
    crash never leaves a half-written record behind.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    @classmethod
    def for_profile(cls, base_dir: str | Path, profile_id: str) -> JsonFileHandoffStore:
        """Store for one browser profile under base_dir."""
        if not is_valid_profile_id(profile_id):
            raise ValueError(f"Invalid profile id: {profile_id!r}")
        return cls(Path(base_dir) / f"{profile_id}.json")

    def read(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            logger.warning("Ignoring unreadable handoff record at %s", self.path, exc_info=True)
            return None
        if not isinstance(data, dict):
            logger.warning("Ignoring handoff record with unexpected shape at %s", self.path)
            return None
        return data

    def write(self, record: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record, f)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete(self) -> None:
        self.path.unlink(missing_ok=True)
