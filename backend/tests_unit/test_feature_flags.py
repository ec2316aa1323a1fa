"""
Feature Flag Tests (Unit)
=========================

WHAT: FF_* environment parsing and lookup.
WHY: Rollout toggles must disable only on explicit "off"-like values.

REFERENCES:
- backend/adsync/feature_flags.py
"""

import pytest

from adsync.feature_flags import FeatureFlags


def test_defaults(monkeypatch) -> None:
    for name in ("FF_HYBRID_FETCH", "FF_SMART_PREWARM", "FF_QUEUE_REFRESH"):
        monkeypatch.delenv(name, raising=False)

    flags = FeatureFlags(_env_file=None)

    assert flags.HYBRID_FETCH is True
    assert flags.QUEUE_REFRESH is True
    assert flags.SMART_PREWARM is False


@pytest.mark.parametrize("value", ["false", "0", "no", "off", "disabled", " OFF "])
def test_disabled_values(monkeypatch, value) -> None:
    monkeypatch.setenv("FF_HYBRID_FETCH", value)
    assert FeatureFlags(_env_file=None).HYBRID_FETCH is False


@pytest.mark.parametrize("value", ["true", "1", "yes", "on", "enabled"])
def test_enabled_values(monkeypatch, value) -> None:
    monkeypatch.setenv("FF_SMART_PREWARM", value)
    assert FeatureFlags(_env_file=None).SMART_PREWARM is True


def test_is_enabled_and_all_flags(monkeypatch) -> None:
    monkeypatch.setenv("FF_INLINE_REFRESH", "off")
    flags = FeatureFlags(_env_file=None)

    assert flags.is_enabled("FF_INLINE_REFRESH") is False
    assert flags.is_enabled("inline_refresh") is False
    assert flags.all_flags()["FF_INLINE_REFRESH"] is False
    assert set(flags.all_flags()) >= {"FF_HYBRID_FETCH", "FF_SMART_PREWARM", "FF_WORKER_HEARTBEAT"}

    with pytest.raises(KeyError):
        flags.is_enabled("FF_UNKNOWN")
