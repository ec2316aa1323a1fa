"""
Hybrid Merge Tests (Unit)
=========================

WHAT: FreshResultSet folding and merge_results_safe.
WHY: Cached and fetched days are summed per entity; a retried chunk or an
     overlapping date set must never silently double count.

REFERENCES:
- backend/adsync/services/hybrid_fetch.py:FreshResultSet, merge_results_safe
"""

import logging
from datetime import date

from adsync.models import EntityTypeEnum
from adsync.services.date_range_analyzer import Chunk
from adsync.services.hybrid_fetch import (
    CampaignRow,
    FreshResultSet,
    merge_results_safe,
    row_from_aggregate,
    rows_from_api,
)
from adsync.services.metrics_store import FactAggregate


def _api_row(entity_id, day, spend, clicks=1, **extra):
    return {"id": entity_id, "name": f"C{entity_id}", "status": "ENABLED", "date": day,
            "spend": spend, "clicks": clicks, "impressions": 10, **extra}


CHUNK = Chunk(start_date=date(2025, 3, 21), end_date=date(2025, 3, 22), days=2)


def test_rows_from_api_sums_per_entity() -> None:
    rows = rows_from_api(EntityTypeEnum.campaign, [
        _api_row("1", "2025-03-21", 2.5, campaign_type="SEARCH"),
        _api_row("1", "2025-03-22", 1.5),
        _api_row("2", "2025-03-21", 4.0),
    ])

    assert rows["1"].spend == 4.0
    assert rows["1"].clicks == 2
    assert rows["1"].campaign_type == "SEARCH"
    assert rows["1"].source == "api"
    assert rows["2"].spend == 4.0


def test_cached_and_fetched_rows_carry_the_same_attributes() -> None:
    agg = FactAggregate(
        entity_id="kw1", parent_entity_id="11", name="running shoes", status="ENABLED",
        attributes={"match_type": "PHRASE", "quality_score": 6, "campaign_type": "SEARCH"},
        impressions=10, clicks=1, spend=0.5, conversions=0.0, conversion_value=0.0,
        last_synced_at=None, day_count=1,
    )

    cached = row_from_aggregate(EntityTypeEnum.keyword, agg)
    fetched = rows_from_api(EntityTypeEnum.keyword, [
        _api_row("kw1", "2025-03-21", 0.5, match_type="PHRASE", quality_score=6, campaign_type="SEARCH"),
    ])["kw1"]

    assert (cached.match_type, cached.quality_score) == ("PHRASE", 6)
    assert (fetched.match_type, fetched.quality_score) == ("PHRASE", 6)
    assert cached.source == "cache"
    assert not hasattr(cached, "campaign_type")


def test_fold_ignores_repeated_chunk() -> None:
    fresh = FreshResultSet(EntityTypeEnum.campaign)
    api_rows = [_api_row("1", "2025-03-21", 2.0), _api_row("1", "2025-03-22", 3.0)]

    assert fresh.fold(CHUNK, api_rows) is True
    assert fresh.fold(CHUNK, api_rows) is False

    assert fresh.rows["1"].spend == 5.0
    assert fresh.chunk_count == 1
    assert fresh.row_count == 2
    assert fresh.dates == {date(2025, 3, 21), date(2025, 3, 22)}


def test_merge_sums_shared_entities_and_marks_hybrid() -> None:
    cached = [
        CampaignRow(entity_id="1", entity_name="Brand", entity_type="campaign", spend=20.0, clicks=10),
        CampaignRow(entity_id="3", entity_name="Old", entity_type="campaign", spend=1.0),
    ]
    fresh = FreshResultSet(EntityTypeEnum.campaign)
    fresh.fold(CHUNK, [_api_row("1", "2025-03-21", 5.0), _api_row("2", "2025-03-21", 30.0)])

    merged = merge_results_safe(cached, fresh, [date(2025, 3, d) for d in range(1, 21)])

    assert [r.entity_id for r in merged] == ["2", "1", "3"]
    by_id = {r.entity_id: r for r in merged}
    assert by_id["1"].spend == 25.0
    assert by_id["1"].clicks == 11
    assert by_id["1"].source == "hybrid"
    assert by_id["2"].source == "api"
    assert by_id["3"].source == "cache"


def test_overlap_is_logged_critical_and_merge_continues(caplog) -> None:
    cached = [CampaignRow(entity_id="1", entity_type="campaign", spend=10.0)]
    fresh = FreshResultSet(EntityTypeEnum.campaign)
    fresh.fold(CHUNK, [_api_row("1", "2025-03-21", 5.0)])

    with caplog.at_level(logging.CRITICAL, logger="adsync.services.hybrid_fetch"):
        merged = merge_results_safe(cached, fresh, [date(2025, 3, 21)])

    assert any("INTEGRITY" in r.message and r.levelno == logging.CRITICAL for r in caplog.records)
    assert merged[0].spend == 15.0


def test_merge_without_fresh_rows_returns_cached() -> None:
    cached = [CampaignRow(entity_id="1", entity_type="campaign", spend=10.0)]

    merged = merge_results_safe(cached, FreshResultSet(EntityTypeEnum.campaign), [date(2025, 3, 1)])

    assert merged == cached
