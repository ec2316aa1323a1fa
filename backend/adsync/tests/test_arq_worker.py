"""
ARQ Refresh Worker Tests
========================

WHAT: process_refresh_job against SQLite with a fake provider.
WHY: A queued chunk must leave the same rows as an inline fetch, release its
     lock on every path, and defer (not hammer) on provider rate limits.
     Workers and inline reads share one lock key per chunk.

REFERENCES:
- backend/adsync/workers/arq_worker.py
"""

import asyncio
from contextlib import contextmanager
from datetime import date

import pytest
from arq import Retry

from adsync.models import EntityTypeEnum, MetricsFact
from adsync.services.google_ads_client import ProviderRateLimitError
from adsync.services.job_quota import JobQuota
from adsync.services.query_context import QueryContext
from adsync.services.refresh_lock import build_lock_key
from adsync.services.smart_prewarm import PrewarmProgress, PrewarmProgressStore, SmartPrewarmScheduler
from adsync.workers import arq_worker
from adsync.workers.refresh_queue import JOB_TYPE_AD_GROUPS, JOB_TYPE_CAMPAIGNS, RefreshJobSpec
from conftest import CUSTOMER, FakeProvider, days, seed_facts

START = date(2025, 3, 1)
END = date(2025, 3, 3)


@pytest.fixture(autouse=True)
def worker_session(monkeypatch, test_db_session):
    @contextmanager
    def _session():
        yield test_db_session

    monkeypatch.setattr(arq_worker, "get_sync_session", _session)
    return test_db_session


def _spec_data(job_type=JOB_TYPE_CAMPAIGNS, parent=None, reason="read") -> dict:
    return RefreshJobSpec(
        job_type=job_type,
        account_id="acct-1",
        customer_id=CUSTOMER,
        start_date=START,
        end_date=END,
        query_context=QueryContext(start_date=START, end_date=END),
        parent_entity_id=parent,
        reason=reason,
    ).to_dict()


def _ctx(provider, lock, prewarm=None, job_try=1) -> dict:
    return {"provider": provider, "lock": lock, "prewarm": prewarm, "job_try": job_try}


def _scheduler(settings, flags) -> SmartPrewarmScheduler:
    scheduler = SmartPrewarmScheduler(
        queue=None,
        quota=JobQuota(None),
        progress=PrewarmProgressStore(None),
        settings=settings,
        flags=flags,
    )
    scheduler.progress.save(PrewarmProgress(
        customer_id=CUSTOMER, started_at="2025-03-31T12:00:00+00:00", total_campaigns=2, queued=["1", "2"],
    ))
    return scheduler


def test_job_writes_through_and_releases_lock(worker_session, lock) -> None:
    provider = FakeProvider({"1": {"spend": 2.0}, "2": {"spend": 1.0}})

    result = asyncio.run(arq_worker.process_refresh_job(_ctx(provider, lock), _spec_data()))

    assert result["success"] is True
    assert result["facts_written"] == 6
    assert result["entities_written"] == 2
    assert worker_session.query(MetricsFact).count() == 6
    assert not lock.is_refreshing(build_lock_key(CUSTOMER, "campaign", None, START, END))


def test_duplicate_job_is_idempotent(worker_session, lock) -> None:
    provider = FakeProvider({"1": {"spend": 2.0}})

    asyncio.run(arq_worker.process_refresh_job(_ctx(provider, lock), _spec_data()))
    asyncio.run(arq_worker.process_refresh_job(_ctx(provider, lock), _spec_data()))

    assert worker_session.query(MetricsFact).count() == 3


def test_ad_group_job_passes_parent(worker_session, lock) -> None:
    provider = FakeProvider({"11": {"spend": 1.0, "parent_id": "1"}})

    asyncio.run(arq_worker.process_refresh_job(
        _ctx(provider, lock), _spec_data(job_type=JOB_TYPE_AD_GROUPS, parent="1"),
    ))

    assert provider.calls[0]["entity_type"] == EntityTypeEnum.ad_group
    assert provider.calls[0]["parent_id"] == "1"
    assert {r.parent_entity_id for r in worker_session.query(MetricsFact).all()} == {"1"}


def test_rate_limit_sets_backoff_and_defers(lock) -> None:
    provider = FakeProvider(failures={START: ProviderRateLimitError("quota", retry_seconds=600)})

    with pytest.raises(Retry) as exc_info:
        asyncio.run(arq_worker.process_refresh_job(_ctx(provider, lock), _spec_data()))

    assert exc_info.value.defer_score == 600_000
    key = build_lock_key(CUSTOMER, "campaign", None, START, END)
    assert lock.is_backing_off(key)
    assert not lock.is_refreshing(key)


def test_rate_limit_on_last_try_gives_up(lock) -> None:
    provider = FakeProvider(failures={START: ProviderRateLimitError("quota", retry_seconds=600)})

    result = asyncio.run(arq_worker.process_refresh_job(
        _ctx(provider, lock, job_try=arq_worker.MAX_TRIES), _spec_data(),
    ))

    assert result["success"] is False
    assert result["rate_limited"] is True


def test_other_failures_retry_then_fail(lock) -> None:
    provider = FakeProvider(failures={START: RuntimeError("boom")})

    with pytest.raises(Retry):
        asyncio.run(arq_worker.process_refresh_job(_ctx(provider, lock, job_try=1), _spec_data()))

    result = asyncio.run(arq_worker.process_refresh_job(
        _ctx(provider, lock, job_try=arq_worker.MAX_TRIES), _spec_data(),
    ))
    assert result == {"success": False, "error": "boom"}


def test_backing_off_key_defers_without_fetch(lock) -> None:
    lock.set_backoff(build_lock_key(CUSTOMER, "campaign", None, START, END), 300)
    provider = FakeProvider({"1": {"spend": 1.0}})

    with pytest.raises(Retry):
        asyncio.run(arq_worker.process_refresh_job(_ctx(provider, lock), _spec_data()))

    assert provider.calls == []


def test_backing_off_on_last_try_gives_up_and_fails_prewarm(lock, settings, flags) -> None:
    scheduler = _scheduler(settings, flags)
    lock.set_backoff(build_lock_key(CUSTOMER, "ad_group", "1", START, END), 300)
    provider = FakeProvider({"11": {"spend": 1.0, "parent_id": "1"}})

    result = asyncio.run(arq_worker.process_refresh_job(
        _ctx(provider, lock, prewarm=scheduler, job_try=arq_worker.MAX_TRIES),
        _spec_data(job_type=JOB_TYPE_AD_GROUPS, parent="1", reason="prewarm"),
    ))

    assert result["success"] is False
    assert result["rate_limited"] is True
    assert provider.calls == []
    progress = scheduler.get_progress(CUSTOMER)
    assert progress.failed == ["1"]
    assert progress.running == []
    assert progress.queued == ["2"]


def test_worker_backoff_is_honoured_by_inline_reads(store, make_coordinator, lock) -> None:
    """A chunk the worker was rate limited on is not re-fetched by a read for the same days."""
    worker_provider = FakeProvider(failures={START: ProviderRateLimitError("quota", retry_seconds=600)})
    with pytest.raises(Retry):
        asyncio.run(arq_worker.process_refresh_job(_ctx(worker_provider, lock), _spec_data()))

    seed_facts(store, EntityTypeEnum.campaign, "1", days(date(2025, 2, 26), 3), {"spend": 1.0})
    read_provider = FakeProvider({"1": {"spend": 1.0}})
    coordinator = make_coordinator(read_provider)

    result = asyncio.run(coordinator.fetch_campaigns_hybrid("acct-1", CUSTOMER, {}, date(2025, 2, 26), END))

    assert read_provider.calls == []
    assert result.meta.fetch_outcome == "partial"
    assert result.pending_api_chunks == 1
    assert "backing off after rate limit" in result.meta.error_message
    assert result.data[0].spend == pytest.approx(3.0)


def test_locked_key_is_skipped(lock) -> None:
    lock.try_acquire_lock(build_lock_key(CUSTOMER, "campaign", None, START, END))
    provider = FakeProvider({"1": {"spend": 1.0}})

    result = asyncio.run(arq_worker.process_refresh_job(_ctx(provider, lock), _spec_data()))

    assert result == {"success": True, "skipped": "locked"}
    assert provider.calls == []


def test_prewarm_job_updates_progress(lock, settings, flags) -> None:
    scheduler = _scheduler(settings, flags)
    provider = FakeProvider(
        {"11": {"spend": 1.0, "parent_id": "1"}},
        failures={},
    )

    asyncio.run(arq_worker.process_refresh_job(
        _ctx(provider, lock, prewarm=scheduler),
        _spec_data(job_type=JOB_TYPE_AD_GROUPS, parent="1", reason="prewarm"),
    ))

    progress = scheduler.get_progress(CUSTOMER)
    assert progress.completed == ["1"]
    assert progress.queued == ["2"]
    assert progress.running == []


def test_retry_delay_grows_and_caps() -> None:
    assert arq_worker.retry_delay(1, rng=lambda: 0.0) == 5.0
    assert arq_worker.retry_delay(3, rng=lambda: 0.5) == 30.0
    assert arq_worker.retry_delay(20, rng=lambda: 0.9) == arq_worker.RETRY_MAX_SECONDS


def test_mismatch_cleanup_job(worker_session) -> None:
    result = asyncio.run(arq_worker.scheduled_mismatch_cleanup({}))

    assert result == {"success": True, "deleted": 0}
