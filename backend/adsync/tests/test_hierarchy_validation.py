"""
Hierarchy Validation Tests
==========================

WHAT: Campaign vs. ad-group reconciliation on cached data, event history,
      acknowledgement and retention.
WHY: Drift between levels means a drill-down will not add up; it has to be
     detected and recorded without ever failing a read.

REFERENCES:
- backend/adsync/services/hierarchy_validation.py
"""

from datetime import date, datetime, timedelta, timezone

from adsync.models import EntityTypeEnum, HierarchyMismatchEvent
from adsync.services.hierarchy_validation import (
    acknowledge_mismatch,
    cleanup_old_mismatch_events,
    get_mismatch_history,
    is_hierarchy_healthy,
    validate_campaign_hierarchy,
)
from conftest import CUSTOMER, days, seed_facts

START = date(2025, 3, 1)
END = date(2025, 3, 7)


def _seed_campaign(store, campaign_id, campaign_spend, ad_group_spends, status="ENABLED"):
    window = days(START, 7)
    seed_facts(store, EntityTypeEnum.campaign, campaign_id, window,
               {"spend": campaign_spend, "clicks": 20}, name=f"Campaign {campaign_id}", status=status)
    for i, spend in enumerate(ad_group_spends):
        seed_facts(store, EntityTypeEnum.ad_group, f"{campaign_id}{i}", window,
                   {"spend": spend, "clicks": 20 // len(ad_group_spends)}, parent_entity_id=campaign_id)


def test_consistent_hierarchy_has_no_mismatches(store) -> None:
    _seed_campaign(store, "1", 10.0, [6.0, 4.0])

    result = validate_campaign_hierarchy(store, CUSTOMER, START, END)

    assert result.validated is True
    assert result.campaigns_checked == 1
    assert result.mismatches == []
    assert is_hierarchy_healthy(store, CUSTOMER, START, END) is True


def test_drift_is_detected_and_persisted(store) -> None:
    _seed_campaign(store, "1", 10.0, [6.0, 4.0])
    _seed_campaign(store, "2", 10.0, [6.0, 3.0])

    result = validate_campaign_hierarchy(store, CUSTOMER, START, END, timezone_name="Europe/Amsterdam")

    assert result.campaigns_checked == 2
    assert result.campaigns_with_issues == 1
    assert [(m.entity_id, m.metric, m.severity) for m in result.mismatches] == [("2", "spend", "warning")]
    assert result.persisted_events == 1

    event = store.db.query(HierarchyMismatchEvent).one()
    assert event.parent_entity_id == "2"
    assert event.trigger == "sampled"
    assert event.timezone == "Europe/Amsterdam"
    assert float(event.parent_value) == 70.0
    assert float(event.child_sum) == 63.0


def test_paused_campaigns_are_not_sampled(store) -> None:
    _seed_campaign(store, "1", 10.0, [1.0], status="PAUSED")

    result = validate_campaign_hierarchy(store, CUSTOMER, START, END)

    assert result.validated is False
    assert result.sampled_entities == 0


def test_campaign_without_ad_groups_is_skipped(store) -> None:
    seed_facts(store, EntityTypeEnum.campaign, "1", days(START, 7), {"spend": 10.0})

    result = validate_campaign_hierarchy(store, CUSTOMER, START, END, campaign_ids=["1"])

    assert result.sampled_entities == 1
    assert result.campaigns_checked == 0


def test_manual_check_reports_unhealthy(store) -> None:
    _seed_campaign(store, "1", 10.0, [2.0])

    assert is_hierarchy_healthy(store, CUSTOMER, START, END) is False
    assert store.db.query(HierarchyMismatchEvent).one().trigger == "manual"


def test_history_acknowledge_and_cleanup(store) -> None:
    _seed_campaign(store, "1", 10.0, [2.0])
    validate_campaign_hierarchy(store, CUSTOMER, START, END)
    db = store.db

    history = get_mismatch_history(db, CUSTOMER)
    assert history["summary"]["total_events"] == 1
    assert history["summary"]["by_metric"] == {"spend": 1}
    assert history["summary"]["by_severity"] == {"error": 1}
    event_id = history["events"][0]["id"]

    assert acknowledge_mismatch(db, event_id, acknowledged_by="analyst") is True
    assert acknowledge_mismatch(db, "not-a-uuid") is False
    assert acknowledge_mismatch(db, "00000000-0000-0000-0000-000000000000") is False
    assert get_mismatch_history(db, CUSTOMER)["events"][0]["acknowledged"] is True

    assert cleanup_old_mismatch_events(db, retention_days=90) == 0
    later = datetime.now(timezone.utc) + timedelta(days=91)
    assert cleanup_old_mismatch_events(db, retention_days=90, now=later) == 1
    assert db.query(HierarchyMismatchEvent).count() == 0


def test_cleanup_keeps_unacknowledged_events(store) -> None:
    _seed_campaign(store, "1", 10.0, [2.0])
    validate_campaign_hierarchy(store, CUSTOMER, START, END)

    later = datetime.now(timezone.utc) + timedelta(days=365)

    assert cleanup_old_mismatch_events(store.db, retention_days=90, now=later) == 0
    assert store.db.query(HierarchyMismatchEvent).count() == 1
