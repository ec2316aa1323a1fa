"""ARQ async worker - queued backfill processor.

WHAT:
    Executes refresh jobs enqueued by the hybrid fetch coordinator (large gaps,
    overflow chunks) and by the smart pre-warm scheduler (ad groups of visible
    campaigns). Each job is one date chunk of one entity scope.

WHY:
    - Long backfills must not block read requests
    - Same provider call and write-through as the inline path, so a queued
      chunk and an inline chunk leave identical rows behind
    - Delivery is at-least-once; upserts keyed by natural key make duplicate
      execution harmless

FLOW:
    mark pre-warm running -> acquire refresh lock for the chunk ->
    provider.fetch_entities -> store.write_through -> mark completed
    rate limit  -> set backoff on the lock key, arq.Retry(defer=retry_seconds)
    other error -> arq.Retry with jittered exponential backoff until max_tries

USAGE:
    # Start worker
    arq adsync.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m adsync.workers.start_arq_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - adsync/workers/refresh_queue.py (enqueue side)
    - adsync/services/hybrid_fetch.py (inline path)
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import Callable, Dict

from arq import Retry, cron

from adsync.database import get_sync_session
from adsync.deps import get_metrics_provider, get_prewarm_scheduler, get_refresh_lock, get_settings
from adsync.feature_flags import get_feature_flags
from adsync.services.google_ads_client import ProviderRateLimitError
from adsync.services.hierarchy_validation import cleanup_old_mismatch_events
from adsync.services.metrics_store import MetricsStore
from adsync.services.refresh_lock import build_lock_key
from adsync.telemetry import capture_exception
from adsync.workers.refresh_queue import RefreshJobSpec, get_redis_settings

logger = logging.getLogger(__name__)

MAX_TRIES = 5
RETRY_BASE_SECONDS = 5.0
RETRY_MAX_SECONDS = 300.0
HEARTBEAT_KEY = "adsync:worker:heartbeat"
HEARTBEAT_TTL_SECONDS = 120


def retry_delay(job_try: int, rng: Callable[[], float] = random.random) -> float:
    """Exponential backoff with jitter: base * 2^(try-1) * (1 + U[0,1)), capped."""
    attempt = max(1, job_try)
    return min(RETRY_BASE_SECONDS * (2 ** (attempt - 1)) * (1 + rng()), RETRY_MAX_SECONDS)


# =============================================================================
# REFRESH JOB
# =============================================================================

async def process_refresh_job(ctx: Dict, spec_data: Dict) -> Dict:
    """Backfill one chunk for one entity scope.

    Args:
        ctx: ARQ context (job_try, plus provider/lock/prewarm set on startup)
        spec_data: RefreshJobSpec.to_dict()

    Returns:
        Dict with success status and write counts

    Raises:
        arq.Retry: on rate limits and failures while tries remain
    """
    spec = RefreshJobSpec.from_dict(spec_data)
    job_try = ctx.get("job_try", 1)
    provider = ctx.get("provider") or get_metrics_provider()
    lock = ctx.get("lock") or get_refresh_lock()
    prewarm = ctx.get("prewarm") or (get_prewarm_scheduler() if spec.reason == "prewarm" else None)
    is_prewarm = spec.reason == "prewarm" and prewarm is not None and spec.parent_entity_id

    logger.info(
        "[ARQ] Refresh %s %s parent=%s %s..%s (try %d, reason=%s)",
        spec.job_type, spec.customer_id, spec.parent_entity_id or "root",
        spec.start_date, spec.end_date, job_try, spec.reason,
    )

    if is_prewarm:
        prewarm.mark_job_running(spec.customer_id, spec.parent_entity_id)

    key = build_lock_key(
        spec.customer_id, spec.entity_type.value, spec.parent_entity_id, spec.start_date, spec.end_date,
    )
    settings = get_settings()
    if not lock.try_acquire_lock(key, settings.REFRESH_LOCK_TTL_SECONDS):
        if lock.is_backing_off(key):
            if job_try < MAX_TRIES:
                logger.info("[ARQ] %s is backing off, deferring", key)
                raise Retry(defer=retry_delay(job_try))
            logger.error("[ARQ] %s still backing off after %d tries, giving up", key, job_try)
            if is_prewarm:
                prewarm.mark_job_failed(spec.customer_id, spec.parent_entity_id)
            return {"success": False, "error": "backing off after rate limit", "rate_limited": True}
        # Another process holds the chunk; its write lands the same rows
        logger.info("[ARQ] %s already refreshing elsewhere, skipping", key)
        if is_prewarm:
            prewarm.mark_job_completed(spec.customer_id, spec.parent_entity_id)
        return {"success": True, "skipped": "locked"}

    try:
        rows = await asyncio.to_thread(
            provider.fetch_entities,
            spec.credentials,
            spec.customer_id,
            spec.entity_type,
            spec.parent_entity_id,
            spec.start_date,
            spec.end_date,
            spec.query_context.conversion_mode,
        )
        with get_sync_session() as db:
            written = await asyncio.to_thread(
                MetricsStore(db).write_through,
                spec.account_id,
                spec.customer_id,
                spec.entity_type,
                rows,
                spec.start_date,
                spec.end_date,
                spec.parent_entity_id,
            )
    except ProviderRateLimitError as e:
        lock.set_backoff(key, e.retry_seconds)
        if job_try < MAX_TRIES:
            logger.warning("[ARQ] Rate limited on %s, retry in %ds", key, e.retry_seconds)
            raise Retry(defer=e.retry_seconds)
        logger.error("[ARQ] Rate limited on %s, giving up after %d tries", key, job_try)
        if is_prewarm:
            prewarm.mark_job_failed(spec.customer_id, spec.parent_entity_id)
        return {"success": False, "error": str(e), "rate_limited": True}
    except Exception as e:
        logger.exception("[ARQ] Refresh failed for %s: %s", key, e)
        capture_exception(e, extra={
            "operation": "process_refresh_job",
            "job_type": spec.job_type,
            "customer_id": spec.customer_id,
            "lock_key": key,
            "job_try": job_try,
        })
        if job_try < MAX_TRIES:
            raise Retry(defer=retry_delay(job_try))
        if is_prewarm:
            prewarm.mark_job_failed(spec.customer_id, spec.parent_entity_id)
        return {"success": False, "error": str(e)}
    finally:
        lock.release_lock(key)

    if is_prewarm:
        prewarm.mark_job_completed(spec.customer_id, spec.parent_entity_id)

    logger.info(
        "[ARQ] Refresh complete for %s: facts=%d entities=%d skipped_undated=%d",
        key, written.facts_written, written.entities_written, written.skipped_undated,
    )
    return {
        "success": True,
        "facts_written": written.facts_written,
        "entities_written": written.entities_written,
        "skipped_undated": written.skipped_undated,
    }


# =============================================================================
# SCHEDULED JOBS
# =============================================================================

async def scheduled_mismatch_cleanup(ctx: Dict) -> Dict:
    """Daily retention sweep of acknowledged hierarchy mismatch events."""
    settings = get_settings()
    try:
        with get_sync_session() as db:
            deleted = await asyncio.to_thread(
                cleanup_old_mismatch_events, db, settings.MISMATCH_RETENTION_DAYS,
            )
        return {"success": True, "deleted": deleted}
    except Exception as e:
        logger.exception("[ARQ] Mismatch cleanup failed: %s", e)
        capture_exception(e, extra={"operation": "scheduled_mismatch_cleanup"})
        return {"success": False, "error": str(e)}


def write_heartbeat(ctx: Dict) -> None:
    """Record worker liveness in Redis for /health (FF_WORKER_HEARTBEAT)."""
    if not get_feature_flags().WORKER_HEARTBEAT:
        return
    from adsync import state

    if state.redis_client is None:
        return
    try:
        state.redis_client.set(
            HEARTBEAT_KEY,
            datetime.now(timezone.utc).isoformat(),
            ex=HEARTBEAT_TTL_SECONDS,
        )
    except Exception as e:
        logger.warning("[ARQ] Heartbeat write failed: %s", e)


async def scheduled_heartbeat(ctx: Dict) -> None:
    write_heartbeat(ctx)


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - initialize shared components and log config."""
    import platform

    settings = get_settings()
    logger.info("=" * 60)
    logger.info("[ARQ] Refresh worker starting up")
    logger.info("=" * 60)
    logger.info(f"[ARQ] Python: {platform.python_version()}")
    logger.info(f"[ARQ] Host: {platform.node()}")
    logger.info(f"[ARQ] Queue: {settings.ARQ_QUEUE_NAME}")
    logger.info(f"[ARQ] Max tries: {MAX_TRIES}")
    logger.info("=" * 60)

    ctx["startup_time"] = datetime.now(timezone.utc)
    ctx["jobs_processed"] = 0
    ctx["provider"] = get_metrics_provider()
    ctx["lock"] = get_refresh_lock()
    ctx["prewarm"] = get_prewarm_scheduler()
    write_heartbeat(ctx)


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - log stats."""
    jobs = ctx.get("jobs_processed", 0)
    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))

    logger.info("=" * 60)
    logger.info("[ARQ] Worker shutting down")
    logger.info(f"[ARQ] Jobs processed: {jobs}")
    logger.info(f"[ARQ] Uptime: {uptime}")
    logger.info("=" * 60)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1
    write_heartbeat(ctx)


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    - max_jobs=10: chunks from different customers run concurrently; the
      refresh lock keeps two workers off the same chunk
    - job_timeout=300: one chunk is at most MAX_CHUNK_DAYS of one scope
    - max_tries=5: rate-limit retries are deferred by the provider's hint
    """

    functions = [
        process_refresh_job,
        scheduled_mismatch_cleanup,
    ]

    cron_jobs = [
        cron(scheduled_mismatch_cleanup, hour={3}, minute={30}),
        cron(scheduled_heartbeat, second={0}),
    ]

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    # Redis connection
    redis_settings = get_redis_settings()

    max_jobs = 10
    job_timeout = 300
    keep_result = 3600
    retry_jobs = True
    max_tries = MAX_TRIES
    health_check_interval = 30

    queue_name = get_settings().ARQ_QUEUE_NAME
