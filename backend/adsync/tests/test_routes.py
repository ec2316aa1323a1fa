"""
API Route Tests
===============

WHAT: HTTP surface of the engine (hybrid reads, pre-warm, hierarchy, health).
WHY: Routers only parse and serialize; these tests pin request validation
     and the response shapes the dashboard depends on.

REFERENCES:
- backend/adsync/main.py
- backend/adsync/routers/*.py
"""

from datetime import date

from adsync.deps import get_coordinator
from adsync.models import EntityTypeEnum
from adsync.services.hybrid_fetch import HybridFetchError
from conftest import CUSTOMER, days, seed_facts

WINDOW = {"customer_id": CUSTOMER, "start_date": "2025-03-01", "end_date": "2025-03-07"}


# =============================================================================
# Health
# =============================================================================

def test_health(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "redis": False, "worker_heartbeat": None}


def test_flags(client) -> None:
    flags = client.get("/flags").json()["flags"]

    assert "FF_HYBRID_FETCH" in flags
    assert "FF_SMART_PREWARM" in flags


# =============================================================================
# Hybrid reads
# =============================================================================

def test_campaign_read_fetches_and_reports_provenance(client, fake_provider) -> None:
    response = client.get(
        "/hybrid/campaigns",
        params={**WINDOW, "account_id": "acct-1", "timezone": "Europe/Amsterdam"},
        headers={"x-refresh-token": "rt-123"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["meta"]["source"] == "api"
    assert body["meta"]["fetch_outcome"] == "success"
    assert body["meta"]["api_days"] == 7
    assert body["meta"]["query_context"]["timezone"] == "Europe/Amsterdam"
    assert [row["entity_id"] for row in body["data"]] == ["1", "2"]
    assert body["data"][0]["spend"] == 14.0
    assert fake_provider.calls[0]["credentials"] == {"refresh_token": "rt-123"}


def test_second_read_is_served_from_cache(client, fake_provider) -> None:
    client.get("/hybrid/campaigns", params=WINDOW)
    body = client.get("/hybrid/campaigns", params=WINDOW).json()

    assert body["meta"]["source"] == "cache"
    assert body["meta"]["label"] == "DB Cache"
    assert len(fake_provider.calls) == 1


def test_preset_window_mismatch_is_rejected(client) -> None:
    response = client.get("/hybrid/campaigns", params={**WINDOW, "preset": "last30days"})

    assert response.status_code == 400
    assert "30-day" in response.json()["detail"]


def test_include_today_defaults_to_window_ending_today(client, monkeypatch) -> None:
    monkeypatch.setattr("adsync.services.query_context._utc_today", lambda: date(2025, 3, 7))

    ends_today = client.get("/hybrid/campaigns", params=WINDOW).json()
    ended = client.get("/hybrid/campaigns", params={**WINDOW, "end_date": "2025-03-06"}).json()
    explicit = client.get("/hybrid/campaigns", params={**WINDOW, "include_today": "false"}).json()

    assert ends_today["meta"]["query_context"]["include_today"] is True
    assert ended["meta"]["query_context"]["include_today"] is False
    assert explicit["meta"]["query_context"]["include_today"] is False


def test_ad_group_read_requires_campaign(client) -> None:
    assert client.get("/hybrid/ad-groups", params=WINDOW).status_code == 422


def test_ad_group_read_is_scoped_to_campaign(client, fake_provider) -> None:
    response = client.get("/hybrid/ad-groups", params={**WINDOW, "campaign_id": "1"})

    assert response.status_code == 200
    assert fake_provider.calls[0]["parent_id"] == "1"
    assert fake_provider.calls[0]["entity_type"] == EntityTypeEnum.ad_group


def test_keyword_read(client, fake_provider) -> None:
    response = client.get("/hybrid/keywords", params={**WINDOW, "ad_group_id": "11"})

    assert response.status_code == 200
    assert response.json()["meta"]["source"] == "api"
    assert fake_provider.calls[0]["entity_type"] == EntityTypeEnum.keyword


def test_unservable_read_returns_502(app, client) -> None:
    class _BrokenCoordinator:
        async def fetch_campaigns_hybrid(self, *args, **kwargs):
            raise HybridFetchError("cache and provider down")

    app.dependency_overrides[get_coordinator] = lambda: _BrokenCoordinator()

    response = client.get("/hybrid/campaigns", params=WINDOW)

    assert response.status_code == 502
    assert "provider down" in response.json()["detail"]


# =============================================================================
# Pre-warm
# =============================================================================

def test_prewarm_explicit_campaigns_and_progress(client, prewarm_scheduler) -> None:
    payload = {
        **WINDOW,
        "account_id": "acct-1",
        "campaigns": [{"id": "1", "spend": 10.0}, {"id": "2", "spend": 5.0}, {"id": "3", "status": "REMOVED"}],
    }

    response = client.post("/prewarm/ad-groups", json=payload)

    assert response.status_code == 200
    body = response.json()
    assert body["triggered"] is True
    assert body["campaigns_queued"] == ["1", "2"]
    assert body["progress"]["queued"] == ["1", "2"]
    assert [s.parent_entity_id for s in prewarm_scheduler.queue.enqueued] == ["1", "2"]

    progress = client.get(f"/prewarm/progress/{CUSTOMER}").json()
    assert progress["total_campaigns"] == 2
    assert [p["customer_id"] for p in client.get("/prewarm/progress").json()] == [CUSTOMER]

    status = client.get(
        f"/prewarm/status/{CUSTOMER}",
        params={"start_date": "2025-03-01", "end_date": "2025-03-07", "campaign_ids": ["1", "9"]},
    ).json()
    assert status["statuses"] == {"1": "warming", "9": "cold"}


def test_prewarm_defaults_to_top_cached_campaigns(client, store) -> None:
    seed_facts(store, EntityTypeEnum.campaign, "7", days(date(2025, 3, 1), 7), {"spend": 3.0})

    body = client.post("/prewarm/ad-groups", json=WINDOW).json()

    assert body["campaigns_queued"] == ["7"]


def test_prewarm_progress_unknown_customer_is_null(client) -> None:
    response = client.get("/prewarm/progress/unknown")

    assert response.status_code == 200
    assert response.json() is None


def test_prewarm_rejects_reversed_window(client) -> None:
    payload = {"customer_id": CUSTOMER, "start_date": "2025-03-07", "end_date": "2025-03-01"}

    assert client.post("/prewarm/ad-groups", json=payload).status_code == 422


# =============================================================================
# Hierarchy
# =============================================================================

def test_hierarchy_health_history_and_acknowledge(client, store) -> None:
    window = days(date(2025, 3, 1), 7)
    seed_facts(store, EntityTypeEnum.campaign, "1", window, {"spend": 10.0})
    seed_facts(store, EntityTypeEnum.ad_group, "11", window, {"spend": 2.0}, parent_entity_id="1")

    health = client.get(
        f"/hierarchy/health/{CUSTOMER}", params={"start_date": "2025-03-01", "end_date": "2025-03-07"},
    ).json()
    assert health == {"customer_id": CUSTOMER, "healthy": False}

    history = client.get(f"/hierarchy/mismatches/{CUSTOMER}").json()
    assert history["summary"]["total_events"] == 1
    event_id = history["events"][0]["id"]

    response = client.post(f"/hierarchy/mismatches/{event_id}/acknowledge", json={"acknowledged_by": "analyst"})
    assert response.status_code == 200
    assert response.json() == {"acknowledged": True, "id": event_id}

    missing = client.post("/hierarchy/mismatches/00000000-0000-0000-0000-000000000000/acknowledge")
    assert missing.status_code == 404
