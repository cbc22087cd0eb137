import os
from functools import lru_cache
from pathlib import Path

from fastapi import Depends

from src.adapters.clock import SystemClock
from src.rules.loader import load_rules_or_default
from src.rules.models import HandoffRules


# --- Settings ---
class Settings:
    def __init__(self) -> None:
        self.base_dir = Path(os.getcwd())
        self.data_dir = Path(os.environ.get("HANDOFF_DATA_DIR", "./data")) / "handoff"
        self.rules_path = Path(
            os.environ.get("HANDOFF_RULES_PATH", str(self.base_dir / "rules.yaml"))
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()


# --- Rules ---
def get_rules(settings: Settings = Depends(get_settings)) -> HandoffRules:
    return _cached_rules(settings.rules_path)


@lru_cache
def _cached_rules(path: Path) -> HandoffRules:
    return load_rules_or_default(path)


# Time adapter for deterministic time operations
_clock_instance: SystemClock | None = None


def get_clock() -> SystemClock:
    """Get clock singleton."""
    global _clock_instance
    if _clock_instance is None:
        _clock_instance = SystemClock()
    return _clock_instance
