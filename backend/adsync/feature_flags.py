"""Feature flags for the hybrid fetch engine.

WHAT:
    Environment toggles (FF_*) that switch engine behaviours on and off
    without code changes.

WHY:
    - Hybrid fetch, queueing and validation are rolled out independently
    - Pre-warm consumes API quota proactively, so it is opt-in

FLAGS:
    FF_HYBRID_FETCH          read cache + backfill gaps (else direct API)
    FF_QUEUE_REFRESH         delegate large backfills to the arq queue
    FF_HIERARCHY_VALIDATION  sampled parent/child drift checks
    FF_DATE_RANGE_ANALYSIS   per-day coverage analysis (else all-or-nothing)
    FF_INLINE_REFRESH        allow inline provider calls inside a read
    FF_WORKER_HEARTBEAT      worker heartbeat logging
    FF_SMART_PREWARM         proactive ad-group backfills (default off)

    "false", "0", "no", "off" and "disabled" disable a flag; anything else enables it.

REFERENCES:
    - adsync/deps.py (Settings, constructed once per process)
"""

from functools import lru_cache
from typing import Any, Dict

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DISABLED_VALUES = frozenset({"false", "0", "no", "off", "disabled"})


class FeatureFlags(BaseSettings):
    """Flags read once from FF_* environment variables."""

    HYBRID_FETCH: bool = True
    QUEUE_REFRESH: bool = True
    HIERARCHY_VALIDATION: bool = True
    DATE_RANGE_ANALYSIS: bool = True
    INLINE_REFRESH: bool = True
    WORKER_HEARTBEAT: bool = True
    SMART_PREWARM: bool = False

    model_config = SettingsConfigDict(
        env_prefix="FF_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("*", mode="before")
    @classmethod
    def _parse_flag(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower() not in DISABLED_VALUES
        return value

    def is_enabled(self, name: str) -> bool:
        """Look up a flag by name, with or without the FF_ prefix."""
        key = name.upper()
        if key.startswith("FF_"):
            key = key[3:]
        if key not in type(self).model_fields:
            raise KeyError(f"Unknown feature flag: {name}")
        return bool(getattr(self, key))

    def all_flags(self) -> Dict[str, bool]:
        return {f"FF_{name}": bool(getattr(self, name)) for name in type(self).model_fields}


@lru_cache()
def get_feature_flags() -> FeatureFlags:
    """Return cached flags instance."""
    return FeatureFlags()
