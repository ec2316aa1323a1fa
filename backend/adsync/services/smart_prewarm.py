"""Smart Pre-warm Scheduler - warm ad-group cache for visible campaigns.

WHAT:
    Given the campaigns a user is looking at (already filtered and sorted by
    the caller), enqueue ad-group backfill jobs for the top N that are not yet
    freshly cached, so drill-downs are served from cache.

WHY:
    - Drill-down from campaign to ad groups is the most common navigation;
      warming it hides provider latency
    - Keywords are never pre-warmed (always on-demand)
    - Background work must not starve interactive reads: a per-customer
      jobs-per-minute quota (JobQuota) bounds it, and campaigns beyond the
      quota are reported as skipped rather than waited for

PROGRESS:
    A PrewarmProgress record per customer tracks queued -> running ->
    completed/failed. Transitions after enqueue are driven by the worker via
    mark_job_running / mark_job_completed / mark_job_failed. Records live in
    Redis when configured (shared by API and worker processes), otherwise
    in-process, and are dropped PREWARM_PROGRESS_GC_SECONDS after the batch
    drains.

REFERENCES:
    - adsync/services/job_quota.py
    - adsync/workers/refresh_queue.py (enqueue side)
    - adsync/workers/arq_worker.py (lifecycle callbacks)
    - adsync/routers/prewarm.py
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from redis import Redis
from redis.exceptions import RedisError

from adsync.models import EntityTypeEnum
from adsync.services.job_quota import JobQuota
from adsync.services.query_context import QueryContext, build_query_context
from adsync.telemetry import capture_exception
from adsync.workers.refresh_queue import JOB_TYPE_AD_GROUPS, RefreshJobSpec, RefreshQueue

logger = logging.getLogger(__name__)

PROGRESS_KEY_PREFIX = "prewarm:progress:"
# Upper bound for a batch whose worker never reports back
PROGRESS_TTL_SECONDS = 3600


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class PrewarmCampaign:
    id: str
    name: Optional[str] = None
    spend: float = 0.0
    status: Optional[str] = None


@dataclass
class PrewarmParams:
    account_id: Optional[str]
    customer_id: str
    start_date: date
    end_date: date
    credentials: Dict[str, Any] = field(default_factory=dict)
    query_context: Optional[QueryContext] = None


@dataclass
class PrewarmProgress:
    customer_id: str
    started_at: str
    total_campaigns: int
    queued: List[str] = field(default_factory=list)
    running: List[str] = field(default_factory=list)
    completed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    estimated_remaining_ms: int = 0
    last_updated: str = ""
    drained_at: Optional[float] = None

    @property
    def drained(self) -> bool:
        return not self.queued and not self.running

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PrewarmProgress":
        return cls(**data)


@dataclass
class PrewarmResult:
    triggered: bool = False
    campaigns_queued: List[str] = field(default_factory=list)
    campaigns_skipped: List[str] = field(default_factory=list)
    campaigns_already_cached: List[str] = field(default_factory=list)
    quota_limited: bool = False
    reason: Optional[str] = None
    progress: Optional[PrewarmProgress] = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# PROGRESS STORE
# =============================================================================

class PrewarmProgressStore:
    """Per-customer progress records, Redis-backed when available."""

    def __init__(
        self,
        redis_client: Optional[Redis] = None,
        gc_seconds: int = 60,
        time_fn: Callable[[], float] = time.time,
    ):
        self.redis = redis_client
        self.gc_seconds = gc_seconds
        self._now = time_fn
        self._mutex = threading.Lock()
        self._local: Dict[str, PrewarmProgress] = {}

    def _expired(self, progress: PrewarmProgress) -> bool:
        return progress.drained_at is not None and self._now() - progress.drained_at >= self.gc_seconds

    def get(self, customer_id: str) -> Optional[PrewarmProgress]:
        if self.redis:
            try:
                raw = self.redis.get(PROGRESS_KEY_PREFIX + customer_id)
                return PrewarmProgress.from_dict(json.loads(raw)) if raw else None
            except RedisError as e:
                logger.warning(f"[PREWARM] Redis error reading progress for {customer_id}: {e}")

        with self._mutex:
            progress = self._local.get(customer_id)
            if progress is not None and self._expired(progress):
                del self._local[customer_id]
                return None
            return progress

    def save(self, progress: PrewarmProgress) -> None:
        if progress.drained and progress.drained_at is None:
            progress.drained_at = self._now()
        ttl = self.gc_seconds if progress.drained else PROGRESS_TTL_SECONDS

        if self.redis:
            try:
                self.redis.set(
                    PROGRESS_KEY_PREFIX + progress.customer_id,
                    json.dumps(progress.to_dict()),
                    ex=max(1, int(ttl)),
                )
                return
            except RedisError as e:
                logger.warning(f"[PREWARM] Redis error saving progress for {progress.customer_id}: {e}")

        with self._mutex:
            self._local[progress.customer_id] = progress

    def all(self) -> List[PrewarmProgress]:
        if self.redis:
            try:
                out = []
                for key in self.redis.scan_iter(match=PROGRESS_KEY_PREFIX + "*"):
                    raw = self.redis.get(key)
                    if raw:
                        out.append(PrewarmProgress.from_dict(json.loads(raw)))
                return out
            except RedisError as e:
                logger.warning(f"[PREWARM] Redis error listing progress: {e}")

        with self._mutex:
            for customer_id in [c for c, p in self._local.items() if self._expired(p)]:
                del self._local[customer_id]
            return list(self._local.values())


# =============================================================================
# SCHEDULER
# =============================================================================

class SmartPrewarmScheduler:
    """Enqueues ad-group pre-warm jobs under a per-customer quota."""

    def __init__(
        self,
        queue: Optional[RefreshQueue],
        quota: JobQuota,
        progress: PrewarmProgressStore,
        settings,
        flags,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.queue = queue
        self.quota = quota
        self.progress = progress
        self.settings = settings
        self.flags = flags
        self._sleep = sleep

    # --- cache checks ------------------------------------------------------
    def has_ad_group_cache(
        self,
        store,
        customer_id: str,
        campaign_id: str,
        start_date: date,
        end_date: date,
        now: Optional[datetime] = None,
    ) -> bool:
        """Ad groups under the campaign were synced within the fresh window."""
        latest = store.latest_sync_for_parent(
            customer_id, EntityTypeEnum.ad_group, campaign_id, start_date, end_date,
        )
        if latest is None:
            return False
        now = now or datetime.now(timezone.utc)
        return latest >= now - timedelta(minutes=self.settings.PREWARM_CACHE_FRESH_MINUTES)

    # --- progress ----------------------------------------------------------
    def _estimate(self, progress: PrewarmProgress) -> None:
        remaining = len(progress.queued) + len(progress.running)
        progress.estimated_remaining_ms = remaining * self.settings.PREWARM_AVG_FETCH_MS

    def _init_progress(self, customer_id: str, campaign_ids: List[str]) -> PrewarmProgress:
        progress = PrewarmProgress(
            customer_id=customer_id,
            started_at=_now_iso(),
            total_campaigns=len(campaign_ids),
            queued=list(campaign_ids),
            last_updated=_now_iso(),
        )
        self._estimate(progress)
        return progress

    def _transition(self, customer_id: str, campaign_id: str, target: str) -> Optional[PrewarmProgress]:
        progress = self.progress.get(customer_id)
        if progress is None:
            return None

        progress.queued = [c for c in progress.queued if c != campaign_id]
        if target != "running":
            progress.running = [c for c in progress.running if c != campaign_id]
        bucket = getattr(progress, target)
        if campaign_id not in bucket:
            bucket.append(campaign_id)
        progress.last_updated = _now_iso()
        self._estimate(progress)
        self.progress.save(progress)
        return progress

    def mark_job_running(self, customer_id: str, campaign_id: str) -> None:
        self._transition(customer_id, campaign_id, "running")

    def mark_job_completed(self, customer_id: str, campaign_id: str) -> None:
        progress = self._transition(customer_id, campaign_id, "completed")
        if progress is not None and progress.drained:
            logger.info(
                f"[PREWARM] Batch drained for {customer_id}: "
                f"{len(progress.completed)} completed, {len(progress.failed)} failed"
            )

    def mark_job_failed(self, customer_id: str, campaign_id: str) -> None:
        self._transition(customer_id, campaign_id, "failed")

    def get_progress(self, customer_id: str) -> Optional[PrewarmProgress]:
        return self.progress.get(customer_id)

    def get_all_progress(self) -> List[PrewarmProgress]:
        return self.progress.all()

    def get_prewarm_status(
        self,
        store,
        customer_id: str,
        campaign_ids: Sequence[str],
        start_date: date,
        end_date: date,
    ) -> Dict[str, str]:
        """warm | cold | warming per campaign."""
        progress = self.get_progress(customer_id)
        status: Dict[str, str] = {}
        for campaign_id in campaign_ids:
            if progress and (campaign_id in progress.running or campaign_id in progress.queued):
                status[campaign_id] = "warming"
                continue
            cached = self.has_ad_group_cache(store, customer_id, campaign_id, start_date, end_date)
            status[campaign_id] = "warm" if cached else "cold"
        return status

    # --- main entry --------------------------------------------------------
    async def smart_prewarm_ad_groups(
        self,
        store,
        campaigns: Sequence[PrewarmCampaign],
        params: PrewarmParams,
    ) -> PrewarmResult:
        """Enqueue ad-group backfills for the top visible campaigns.

        Returns:
            PrewarmResult listing queued, skipped (quota, duplicate, error) and
            already-cached campaign ids
        """
        result = PrewarmResult()
        customer_id = params.customer_id

        if not self.flags.SMART_PREWARM:
            result.reason = "Smart pre-warm disabled"
            return result
        if self.queue is None:
            result.reason = "Refresh queue unavailable"
            return result
        if not campaigns:
            result.reason = "No campaigns to pre-warm"
            return result

        eligible = [c for c in campaigns if c.status != "REMOVED"][: self.settings.PREWARM_MAX_CAMPAIGNS_PER_BATCH]
        if not eligible:
            result.reason = "No eligible campaigns (all removed)"
            return result

        check = self.quota.check(customer_id)
        if not check.allowed:
            result.quota_limited = True
            result.reason = f"Quota limited. Wait {math.ceil(check.wait_seconds)}s"
            return result

        needs_prewarm: List[PrewarmCampaign] = []
        for campaign in eligible:
            cached = await asyncio.to_thread(
                self.has_ad_group_cache, store, customer_id, campaign.id, params.start_date, params.end_date,
            )
            if cached:
                result.campaigns_already_cached.append(campaign.id)
            else:
                needs_prewarm.append(campaign)

        if not needs_prewarm:
            result.reason = "All visible campaigns already cached"
            return result

        progress = self._init_progress(customer_id, [c.id for c in needs_prewarm])
        self.progress.save(progress)
        result.progress = progress

        ctx = build_query_context(params.start_date, params.end_date, params.query_context)
        delay = self.settings.PREWARM_ENQUEUE_DELAY_MS / 1000.0

        for campaign in needs_prewarm:
            if not self.quota.reserve(customer_id).allowed:
                result.quota_limited = True
                self._skip(result, progress, campaign.id)
                continue

            spec = RefreshJobSpec(
                job_type=JOB_TYPE_AD_GROUPS,
                account_id=params.account_id,
                customer_id=customer_id,
                start_date=params.start_date,
                end_date=params.end_date,
                query_context=ctx,
                parent_entity_id=campaign.id,
                credentials=params.credentials,
                reason="prewarm",
            )
            try:
                enqueued = await self.queue.enqueue(spec, priority="normal")
            except Exception as e:
                logger.warning(f"[PREWARM] Failed to enqueue campaign {campaign.id}: {e}")
                capture_exception(e, extra={"operation": "prewarm_enqueue", "campaign_id": campaign.id})
                self.quota.release(customer_id)
                result.campaigns_skipped.append(campaign.id)
                self.mark_job_failed(customer_id, campaign.id)
                continue

            if enqueued.status == "queued":
                result.campaigns_queued.append(campaign.id)
                result.triggered = True
                if delay > 0:
                    await self._sleep(delay)
            elif enqueued.status == "error":
                self.quota.release(customer_id)
                result.campaigns_skipped.append(campaign.id)
                self.mark_job_failed(customer_id, campaign.id)
            else:
                self.quota.release(customer_id)
                if enqueued.status == "rate_limited":
                    self.quota.backoff(customer_id, self.settings.PREWARM_RATE_LIMIT_BACKOFF_SECONDS)
                self._skip(result, progress, campaign.id)

        # Re-read: failures above were persisted through the store
        result.progress = self.progress.get(customer_id) or progress
        self.progress.save(result.progress)

        if result.campaigns_queued:
            logger.info(
                f"[PREWARM] Queued {len(result.campaigns_queued)}/{len(needs_prewarm)} campaigns for {customer_id}"
            )
        return result

    def _skip(self, result: PrewarmResult, progress: PrewarmProgress, campaign_id: str) -> None:
        result.campaigns_skipped.append(campaign_id)
        current = self.progress.get(progress.customer_id) or progress
        current.queued = [c for c in current.queued if c != campaign_id]
        self._estimate(current)
        self.progress.save(current)
        if current is not progress:
            progress.queued = list(current.queued)
