"""Hybrid Fetch Coordinator - cache-first reads with transparent backfill.

WHAT:
    Serves campaign and ad-group metrics for a date window from the local
    cache, backfilling missing days either inline (small gaps) or through the
    arq refresh queue (large gaps). Keyword reads are always on-demand.

WHY:
    - Reports over long windows should cost a handful of API calls, not one
      per day, and never block on a 90-day backfill
    - Every requested date must be accounted for exactly once: cached dates
      and fetched dates come from the analyzer's partition and are merged
      additively per entity
    - Partial failures are folded into SourceMetadata instead of raised, so
      callers always get a best-effort result plus a diagnosis

FLOW:
    analyze coverage -> read cached facts -> decide inline vs queued ->
    inline chunks (sequential, under the refresh lock, write-through) ->
    merge (non-overlap check) -> sampled hierarchy validation -> metadata

DECISION:
    must_queue = missing days > MAX_INLINE_MISSING_DAYS
                 or chunks > MAX_INLINE_CHUNKS
    queue all chunks (priority high)   if queue ready and (must_queue or PREFER_QUEUE)
    otherwise inline the first MAX_INLINE_CHUNKS chunks and queue the rest
    (priority normal) when a queue is ready, else report them as pending

REFERENCES:
    - adsync/services/date_range_analyzer.py
    - adsync/services/refresh_lock.py
    - adsync/services/hierarchy_validation.py
    - adsync/workers/refresh_queue.py
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field, fields
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from adsync.deps import Settings
from adsync.feature_flags import FeatureFlags
from adsync.models import EntityTypeEnum
from adsync.services.date_range_analyzer import (
    Chunk,
    CoverageAnalysisError,
    DateRangeAnalysis,
    analyze_all_or_nothing,
    analyze_date_range,
    chunk_missing_dates,
    enumerate_dates,
    format_range,
    get_source_details,
    get_source_label,
)
from adsync.services.google_ads_client import MetricsProvider, ProviderRateLimitError
from adsync.services.hierarchy_validation import (
    HierarchyValidationSummary,
    run_sampled_hierarchy_validation,
)
from adsync.services.metrics_store import TYPE_ATTRIBUTES, FactAggregate, MetricsStore
from adsync.services.query_context import QueryContext, build_query_context
from adsync.services.refresh_lock import RefreshLock, build_lock_key
from adsync.telemetry import capture_exception, capture_message
from adsync.workers.refresh_queue import (
    JOB_TYPES,
    RefreshJobSpec,
    RefreshQueue,
)

logger = logging.getLogger(__name__)


class HybridFetchError(Exception):
    """Raised only when neither the cache nor the provider can serve a read."""


# =============================================================================
# ROW TYPES
# =============================================================================

@dataclass
class BaseMetricsRow:
    entity_id: str
    entity_name: Optional[str] = None
    entity_type: str = ""
    parent_entity_id: Optional[str] = None
    status: Optional[str] = None
    spend: float = 0.0
    clicks: int = 0
    impressions: int = 0
    conversions: float = 0.0
    conversion_value: float = 0.0
    source: str = "cache"  # cache | api | hybrid

    def add_metrics(self, other: "BaseMetricsRow") -> None:
        self.spend += other.spend
        self.clicks += other.clicks
        self.impressions += other.impressions
        self.conversions += other.conversions
        self.conversion_value += other.conversion_value

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["spend"] = round(self.spend, 6)
        return data


@dataclass
class CampaignRow(BaseMetricsRow):
    campaign_type: Optional[str] = None


@dataclass
class AdGroupRow(BaseMetricsRow):
    pass


@dataclass
class KeywordRow(BaseMetricsRow):
    match_type: Optional[str] = None
    quality_score: Optional[int] = None


ROW_TYPES = {
    EntityTypeEnum.campaign: CampaignRow,
    EntityTypeEnum.ad_group: AdGroupRow,
    EntityTypeEnum.keyword: KeywordRow,
}

def row_from_aggregate(entity_type: EntityTypeEnum, agg: FactAggregate) -> BaseMetricsRow:
    """Cached summary row for one entity."""
    row = ROW_TYPES[entity_type](
        entity_id=agg.entity_id,
        entity_name=agg.name,
        entity_type=entity_type.value,
        parent_entity_id=agg.parent_entity_id,
        status=agg.status,
        spend=agg.spend,
        clicks=agg.clicks,
        impressions=agg.impressions,
        conversions=agg.conversions,
        conversion_value=agg.conversion_value,
        source="cache",
    )
    for name in TYPE_ATTRIBUTES[entity_type]:
        setattr(row, name, agg.attributes.get(name))
    return row


def rows_from_api(entity_type: EntityTypeEnum, api_rows: Iterable[Dict[str, Any]]) -> Dict[str, BaseMetricsRow]:
    """Collapse per-day provider rows into one row per entity."""
    out: Dict[str, BaseMetricsRow] = {}
    for raw in api_rows:
        entity_id = str(raw["id"])
        row = out.get(entity_id)
        if row is None:
            row = ROW_TYPES[entity_type](entity_id=entity_id, entity_type=entity_type.value, source="api")
            out[entity_id] = row
        row.entity_name = raw.get("name") or row.entity_name
        row.status = raw.get("status") or row.status
        row.parent_entity_id = raw.get("parent_id") or row.parent_entity_id
        for name in TYPE_ATTRIBUTES[entity_type]:
            if raw.get(name) is not None:
                setattr(row, name, raw[name])
        row.spend += float(raw.get("spend") or 0)
        row.clicks += int(raw.get("clicks") or 0)
        row.impressions += int(raw.get("impressions") or 0)
        row.conversions += float(raw.get("conversions") or 0)
        row.conversion_value += float(raw.get("conversion_value") or 0)
    return out


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class SourceMetadata:
    source: str
    label: str
    db_range: Optional[str] = None
    api_range: Optional[str] = None
    db_days: int = 0
    api_days: int = 0
    db_row_count: int = 0
    api_row_count: int = 0
    last_synced_at: Optional[datetime] = None
    analysis: Optional[Dict[str, Any]] = None
    query_context: Optional[QueryContext] = None
    fetch_outcome: str = "success"  # success | partial | queued | error
    error_message: Optional[str] = None
    hierarchy_validation: Optional[HierarchyValidationSummary] = None
    queued_job_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "label": self.label,
            "db_range": self.db_range,
            "api_range": self.api_range,
            "db_days": self.db_days,
            "api_days": self.api_days,
            "db_row_count": self.db_row_count,
            "api_row_count": self.api_row_count,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "analysis": self.analysis,
            "query_context": self.query_context.to_dict() if self.query_context else None,
            "fetch_outcome": self.fetch_outcome,
            "error_message": self.error_message,
            "hierarchy_validation": self.hierarchy_validation.to_dict() if self.hierarchy_validation else None,
            "queued_job_ids": list(self.queued_job_ids),
        }


@dataclass
class HybridFetchResult:
    data: List[BaseMetricsRow]
    meta: SourceMetadata
    pending_api_chunks: int = 0
    queued_for_backfill: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": [r.to_dict() for r in self.data],
            "meta": self.meta.to_dict(),
            "pending_api_chunks": self.pending_api_chunks,
            "queued_for_backfill": self.queued_for_backfill,
        }


class FreshResultSet:
    """Fresh provider rows folded in once per chunk.

    A retried chunk (same start/end) is ignored the second time, so a
    duplicated success can never double count an entity.
    """

    def __init__(self, entity_type: EntityTypeEnum):
        self.entity_type = entity_type
        self.rows: Dict[str, BaseMetricsRow] = {}
        self.dates: set = set()
        self.row_count = 0
        self._folded: set = set()

    def fold(self, chunk: Chunk, api_rows: List[Dict[str, Any]]) -> bool:
        if chunk.key in self._folded:
            logger.warning("[HYBRID_FETCH] Chunk %s already merged, ignoring duplicate", chunk.key)
            return False
        self._folded.add(chunk.key)

        self.dates.update(chunk.dates())
        for raw in api_rows:
            if raw.get("date"):
                self.dates.add(date.fromisoformat(str(raw["date"])[:10]))

        for entity_id, row in rows_from_api(self.entity_type, api_rows).items():
            existing = self.rows.get(entity_id)
            if existing is None:
                self.rows[entity_id] = row
            else:
                existing.add_metrics(row)
        self.row_count += len(api_rows)
        return True

    @property
    def chunk_count(self) -> int:
        return len(self._folded)


def merge_results_safe(
    cached_rows: Sequence[BaseMetricsRow],
    fresh: FreshResultSet,
    cached_dates: Iterable[date],
) -> List[BaseMetricsRow]:
    """Merge cached and fresh rows by entity id.

    The date sets backing the two sources must be disjoint. An overlap is an
    integrity error: it is logged at CRITICAL and reported, and the merge
    still proceeds.
    """
    overlap = sorted(set(cached_dates) & fresh.dates)
    if overlap:
        message = (
            f"[HYBRID_FETCH] INTEGRITY: cached and fetched date sets overlap on "
            f"{len(overlap)} day(s) ({overlap[0].isoformat()}..{overlap[-1].isoformat()}); "
            f"metrics for those days may be double counted"
        )
        logger.critical(message)
        capture_message(message, level="fatal", extra={
            "operation": "merge_results_safe",
            "overlap_dates": [d.isoformat() for d in overlap],
        })

    merged: Dict[str, BaseMetricsRow] = {}
    for row in cached_rows:
        merged[row.entity_id] = row

    for entity_id, row in fresh.rows.items():
        existing = merged.get(entity_id)
        if existing is None:
            merged[entity_id] = row
            continue
        existing.add_metrics(row)
        existing.source = "hybrid"
        existing.entity_name = row.entity_name or existing.entity_name
        existing.status = row.status or existing.status
        existing.parent_entity_id = row.parent_entity_id or existing.parent_entity_id

    return sorted(merged.values(), key=lambda r: r.spend, reverse=True)


@dataclass
class _InlineOutcome:
    errors: List[str] = field(default_factory=list)
    failed: List[Chunk] = field(default_factory=list)
    not_attempted: List[Chunk] = field(default_factory=list)


def chunk_lock_key(
    customer_id: str, entity_type: EntityTypeEnum, parent_entity_id: Optional[str], chunk: Chunk,
) -> str:
    """Refresh lock key for one chunk, identical to the key a queued worker builds for it."""
    return build_lock_key(customer_id, entity_type.value, parent_entity_id, chunk.start_date, chunk.end_date)


# =============================================================================
# COORDINATOR
# =============================================================================

class HybridFetchCoordinator:
    """Cache-first reads for one request scope.

    One coordinator wraps one DB session; lock, queue and provider are shared.
    """

    def __init__(
        self,
        store: MetricsStore,
        provider: MetricsProvider,
        settings: Settings,
        flags: FeatureFlags,
        queue: Optional[RefreshQueue] = None,
        lock: Optional[RefreshLock] = None,
        rng: Callable[[], float] = random.random,
        now_fn: Optional[Callable[[], datetime]] = None,
        provider_name: str = "Google Ads API",
    ):
        self.store = store
        self.provider = provider
        self.settings = settings
        self.flags = flags
        self.queue = queue
        self.lock = lock or RefreshLock(None, default_ttl_seconds=settings.REFRESH_LOCK_TTL_SECONDS)
        self.rng = rng
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))
        self.provider_name = provider_name

    # --- entry points ----------------------------------------------------
    async def fetch_campaigns_hybrid(
        self,
        account_id: Optional[str],
        customer_id: str,
        credentials: Dict[str, Any],
        start_date: date,
        end_date: date,
        query_context: Optional[QueryContext] = None,
    ) -> HybridFetchResult:
        return await self.fetch_hybrid(
            EntityTypeEnum.campaign, account_id, customer_id, credentials,
            start_date, end_date, query_context=query_context,
        )

    async def fetch_ad_groups_hybrid(
        self,
        account_id: Optional[str],
        customer_id: str,
        credentials: Dict[str, Any],
        campaign_id: str,
        start_date: date,
        end_date: date,
        query_context: Optional[QueryContext] = None,
    ) -> HybridFetchResult:
        return await self.fetch_hybrid(
            EntityTypeEnum.ad_group, account_id, customer_id, credentials,
            start_date, end_date, parent_entity_id=campaign_id, query_context=query_context,
        )

    async def fetch_keywords_on_demand(
        self,
        account_id: Optional[str],
        customer_id: str,
        credentials: Dict[str, Any],
        ad_group_id: str,
        start_date: date,
        end_date: date,
        query_context: Optional[QueryContext] = None,
    ) -> HybridFetchResult:
        return await self.fetch_hybrid(
            EntityTypeEnum.keyword, account_id, customer_id, credentials,
            start_date, end_date, parent_entity_id=ad_group_id, query_context=query_context,
        )

    async def fetch_hybrid(
        self,
        entity_type: EntityTypeEnum,
        account_id: Optional[str],
        customer_id: str,
        credentials: Dict[str, Any],
        start_date: date,
        end_date: date,
        parent_entity_id: Optional[str] = None,
        query_context: Optional[QueryContext] = None,
    ) -> HybridFetchResult:
        """Serve one read. See module docstring for the decision table.

        Raises:
            HybridFetchError: only when the cache is unreachable and the
                provider fails for every chunk.
        """
        now = self._now_fn()
        ctx = build_query_context(start_date, end_date, query_context, today=now.date())

        if entity_type == EntityTypeEnum.keyword:
            return await self._fetch_on_demand(
                entity_type, customer_id, credentials, ctx, parent_entity_id,
            )

        if not self.flags.HYBRID_FETCH:
            logger.info("[HYBRID_FETCH] Disabled by flag, fetching %s directly", entity_type.value)
            return await self._fetch_on_demand(
                entity_type, customer_id, credentials, ctx, parent_entity_id,
            )

        try:
            analysis = await asyncio.to_thread(
                self._analyze, entity_type, customer_id, start_date, end_date, parent_entity_id, now,
            )
            cached_aggs = await asyncio.to_thread(
                self.store.query_facts,
                customer_id, entity_type, analysis.cached_range.dates, parent_entity_id,
            )
        except (CoverageAnalysisError, SQLAlchemyError) as e:
            return await self._serve_without_cache(
                e, entity_type, customer_id, credentials, ctx, parent_entity_id,
            )

        cached_rows = [row_from_aggregate(entity_type, a) for a in cached_aggs]
        fresh = FreshResultSet(entity_type)
        errors: List[str] = []
        pending_chunks = 0
        queued = False
        queued_job_ids: List[str] = []
        outcome = "success"

        if analysis.summary.requires_api_fetch:
            (outcome, pending_chunks, queued, queued_job_ids, errors) = await self._backfill(
                analysis, entity_type, account_id, customer_id, credentials, ctx,
                parent_entity_id, fresh, now,
            )

        data = merge_results_safe(cached_rows, fresh, analysis.cached_range.dates)

        meta = self._build_meta(analysis, ctx, cached_rows, fresh)
        meta.fetch_outcome = outcome
        meta.error_message = "; ".join(errors) if errors else None
        meta.queued_job_ids = queued_job_ids
        meta.hierarchy_validation = await self._maybe_validate(
            entity_type, customer_id, start_date, end_date, parent_entity_id, cached_rows, ctx,
        )

        logger.info(
            "[HYBRID_FETCH] %s/%s %s..%s source=%s outcome=%s rows=%d (db=%d api=%d) pending=%d",
            customer_id, entity_type.value, start_date, end_date, meta.source, outcome,
            len(data), meta.db_row_count, meta.api_row_count, pending_chunks,
        )
        return HybridFetchResult(
            data=data,
            meta=meta,
            pending_api_chunks=pending_chunks,
            queued_for_backfill=queued,
        )

    # --- analysis ----------------------------------------------------------
    def _analyze(
        self,
        entity_type: EntityTypeEnum,
        customer_id: str,
        start_date: date,
        end_date: date,
        parent_entity_id: Optional[str],
        now: datetime,
    ) -> DateRangeAnalysis:
        analyze = analyze_date_range if self.flags.DATE_RANGE_ANALYSIS else analyze_all_or_nothing
        return analyze(
            self.store, customer_id, entity_type, start_date, end_date,
            parent_entity_id=parent_entity_id,
            now=now,
            fresh_ttl_minutes=self.settings.FRESH_TTL_MINUTES,
            stale_ttl_minutes=self.settings.STALE_TTL_MINUTES,
            max_chunk_days=self.settings.MAX_CHUNK_DAYS,
        )

    async def _serve_without_cache(
        self,
        error: Exception,
        entity_type: EntityTypeEnum,
        customer_id: str,
        credentials: Dict[str, Any],
        ctx: QueryContext,
        parent_entity_id: Optional[str],
    ) -> HybridFetchResult:
        """Cache unreachable: fall back to the provider, fail only if it fails too."""
        logger.error("[HYBRID_FETCH] Cache unavailable for %s/%s: %s", customer_id, entity_type.value, error)
        capture_exception(error, extra={
            "operation": "hybrid_fetch_analysis",
            "customer_id": customer_id,
            "entity_type": entity_type.value,
        })
        result = await self._fetch_on_demand(entity_type, customer_id, credentials, ctx, parent_entity_id)
        if result.meta.fetch_outcome == "error":
            raise HybridFetchError(
                f"Cache unavailable ({error}) and provider fetch failed ({result.meta.error_message})"
            ) from error
        note = f"Coverage analysis failed: {error}"
        result.meta.error_message = f"{note}; {result.meta.error_message}" if result.meta.error_message else note
        if result.meta.fetch_outcome == "success":
            result.meta.fetch_outcome = "partial"
        return result

    # --- backfill ----------------------------------------------------------
    async def _queue_ready(self) -> bool:
        if self.queue is None or not self.flags.QUEUE_REFRESH:
            return False
        try:
            return await self.queue.is_ready()
        except Exception as e:
            logger.warning("[HYBRID_FETCH] Queue readiness check failed: %s", e)
            return False

    async def _backfill(
        self,
        analysis: DateRangeAnalysis,
        entity_type: EntityTypeEnum,
        account_id: Optional[str],
        customer_id: str,
        credentials: Dict[str, Any],
        ctx: QueryContext,
        parent_entity_id: Optional[str],
        fresh: FreshResultSet,
        now: datetime,
    ):
        chunks = analysis.missing_range.chunks
        must_queue = (
            analysis.missing_range.count > self.settings.MAX_INLINE_MISSING_DAYS
            or len(chunks) > self.settings.MAX_INLINE_CHUNKS
        )
        queue_ready = await self._queue_ready()
        errors: List[str] = []
        job_ids: List[str] = []

        if queue_ready and (must_queue or self.settings.PREFER_QUEUE or not self.flags.INLINE_REFRESH):
            queued_ok, enqueue_errors, job_ids = await self._enqueue_chunks(
                chunks, "high", "read", entity_type, account_id, customer_id, credentials, ctx, parent_entity_id,
            )
            errors.extend(enqueue_errors)
            outcome = "queued" if queued_ok else "partial"
            return outcome, len(chunks), queued_ok > 0, job_ids, errors

        if must_queue:
            logger.warning(
                "[HYBRID_FETCH] %d missing days / %d chunks exceed inline limits but queue is unavailable; "
                "fetching first %d chunks inline",
                analysis.missing_range.count, len(chunks), self.settings.MAX_INLINE_CHUNKS,
            )

        inline = chunks[: self.settings.MAX_INLINE_CHUNKS] if self.flags.INLINE_REFRESH else []
        overflow = list(chunks[len(inline):])
        if not inline and not queue_ready:
            errors.append("Inline refresh disabled and refresh queue unavailable")

        result = await self._fetch_inline(
            inline, entity_type, account_id, customer_id, credentials, ctx, parent_entity_id, fresh, now,
        )
        errors.extend(result.errors)
        overflow.extend(result.not_attempted)

        queued_ok = 0
        if overflow and queue_ready:
            queued_ok, enqueue_errors, job_ids = await self._enqueue_chunks(
                overflow, "normal", "overflow", entity_type, account_id, customer_id, credentials, ctx, parent_entity_id,
            )
            errors.extend(enqueue_errors)

        pending = len(overflow) + len(result.failed)
        outcome = "partial" if (errors or pending) else "success"
        return outcome, pending, queued_ok > 0, job_ids, errors

    async def _fetch_inline(
        self,
        chunks: List[Chunk],
        entity_type: EntityTypeEnum,
        account_id: Optional[str],
        customer_id: str,
        credentials: Dict[str, Any],
        ctx: QueryContext,
        parent_entity_id: Optional[str],
        fresh: FreshResultSet,
        now: datetime,
    ) -> _InlineOutcome:
        """Fetch chunks sequentially, each under its own refresh lock, writing each through.

        Chunk lock keys match the ones queued workers build, so a backoff or
        in-flight refresh on either side is honoured by the other.
        """
        outcome = _InlineOutcome()
        for index, chunk in enumerate(chunks):
            lock_key = chunk_lock_key(customer_id, entity_type, parent_entity_id, chunk)
            if not self.lock.try_acquire_lock(lock_key, self.settings.REFRESH_LOCK_TTL_SECONDS):
                reason = "backing off after rate limit" if self.lock.is_backing_off(lock_key) else "refresh already in progress"
                outcome.errors.append(f"Inline refresh skipped for {lock_key}: {reason}")
                outcome.not_attempted.append(chunk)
                continue

            try:
                try:
                    api_rows = await asyncio.to_thread(
                        self.provider.fetch_entities,
                        credentials, customer_id, entity_type, parent_entity_id,
                        chunk.start_date, chunk.end_date, ctx.conversion_mode,
                    )
                except ProviderRateLimitError as e:
                    self._back_off(chunks[index:], customer_id, entity_type, parent_entity_id, e.retry_seconds)
                    outcome.errors.append(f"Rate limited on {chunk.key}, retry in {e.retry_seconds}s")
                    outcome.not_attempted.extend(chunks[index:])
                    break
                except Exception as e:
                    logger.error("[HYBRID_FETCH] Chunk %s failed: %s", chunk.key, e)
                    capture_exception(e, extra={
                        "operation": "inline_chunk_fetch",
                        "customer_id": customer_id,
                        "entity_type": entity_type.value,
                        "chunk": chunk.key,
                    })
                    outcome.errors.append(f"Chunk {chunk.key} failed: {e}")
                    outcome.failed.append(chunk)
                    continue

                try:
                    await asyncio.to_thread(
                        self.store.write_through,
                        account_id, customer_id, entity_type, api_rows,
                        chunk.start_date, chunk.end_date,
                        parent_entity_id=parent_entity_id, now=now,
                    )
                except Exception as e:
                    logger.error("[HYBRID_FETCH] Write-through failed for %s: %s", chunk.key, e)
                    capture_exception(e, extra={"operation": "write_through", "chunk": chunk.key})
                    outcome.errors.append(f"Write-through failed for {chunk.key}: {e}")

                fresh.fold(chunk, api_rows)
            finally:
                self.lock.release_lock(lock_key)

        return outcome

    async def _enqueue_chunks(
        self,
        chunks: Sequence[Chunk],
        priority: str,
        reason: str,
        entity_type: EntityTypeEnum,
        account_id: Optional[str],
        customer_id: str,
        credentials: Dict[str, Any],
        ctx: QueryContext,
        parent_entity_id: Optional[str],
    ):
        """Enqueue one job per chunk. Returns (accepted, errors, job_ids)."""
        accepted = 0
        errors: List[str] = []
        job_ids: List[str] = []
        for chunk in chunks:
            spec = RefreshJobSpec(
                job_type=JOB_TYPES[entity_type],
                account_id=account_id,
                customer_id=customer_id,
                start_date=chunk.start_date,
                end_date=chunk.end_date,
                query_context=ctx,
                parent_entity_id=parent_entity_id,
                credentials=credentials,
                reason=reason,
            )
            result = await self.queue.enqueue(spec, priority=priority)
            if result.status in ("queued", "duplicate"):
                accepted += 1
                if result.job_id:
                    job_ids.append(result.job_id)
            else:
                errors.append(f"Chunk {chunk.key} not queued: {result.error or result.status}")
        return accepted, errors, job_ids

    def _back_off(
        self,
        chunks: Sequence[Chunk],
        customer_id: str,
        entity_type: EntityTypeEnum,
        parent_entity_id: Optional[str],
        seconds: int,
    ) -> None:
        # Rate limits are per customer; every chunk left unfetched waits out the same cooldown
        for chunk in chunks:
            self.lock.set_backoff(chunk_lock_key(customer_id, entity_type, parent_entity_id, chunk), seconds)

    # --- on-demand -----------------------------------------------------------
    async def _fetch_on_demand(
        self,
        entity_type: EntityTypeEnum,
        customer_id: str,
        credentials: Dict[str, Any],
        ctx: QueryContext,
        parent_entity_id: Optional[str],
    ) -> HybridFetchResult:
        """Provider-only read: no cache read, no write-through."""
        days = enumerate_dates(ctx.start_date, ctx.end_date)
        chunks = chunk_missing_dates(days, self.settings.MAX_CHUNK_DAYS)
        fresh = FreshResultSet(entity_type)
        errors: List[str] = []
        failed = 0

        for index, chunk in enumerate(chunks):
            try:
                api_rows = await asyncio.to_thread(
                    self.provider.fetch_entities,
                    credentials, customer_id, entity_type, parent_entity_id,
                    chunk.start_date, chunk.end_date, ctx.conversion_mode,
                )
            except ProviderRateLimitError as e:
                self._back_off(chunks[index:], customer_id, entity_type, parent_entity_id, e.retry_seconds)
                errors.append(f"Rate limited on {chunk.key}, retry in {e.retry_seconds}s")
                failed += len(chunks) - index
                break
            except Exception as e:
                logger.error("[HYBRID_FETCH] On-demand chunk %s failed: %s", chunk.key, e)
                capture_exception(e, extra={"operation": "on_demand_fetch", "chunk": chunk.key})
                errors.append(f"Chunk {chunk.key} failed: {e}")
                failed += 1
                continue
            fresh.fold(chunk, api_rows)

        if chunks and failed == len(chunks):
            outcome = "error"
        elif errors:
            outcome = "partial"
        else:
            outcome = "success"

        meta = SourceMetadata(
            source="api",
            label=self.provider_name,
            api_range=format_range(days),
            api_days=len(days),
            api_row_count=fresh.row_count,
            query_context=ctx,
            fetch_outcome=outcome,
            error_message="; ".join(errors) if errors else None,
        )
        data = sorted(fresh.rows.values(), key=lambda r: r.spend, reverse=True)
        return HybridFetchResult(data=data, meta=meta, pending_api_chunks=failed, queued_for_backfill=False)

    # --- metadata & validation ---------------------------------------------
    def _build_meta(
        self,
        analysis: DateRangeAnalysis,
        ctx: QueryContext,
        cached_rows: List[BaseMetricsRow],
        fresh: FreshResultSet,
    ) -> SourceMetadata:
        details = get_source_details(analysis)
        return SourceMetadata(
            source=analysis.source,
            label=get_source_label(analysis, self.provider_name),
            db_range=details["db_range"],
            api_range=details["api_range"],
            db_days=details["db_days"],
            api_days=details["api_days"],
            db_row_count=len(cached_rows),
            api_row_count=fresh.row_count,
            last_synced_at=analysis.cached_range.newest_sync,
            analysis={
                "percent_cached": analysis.summary.percent_cached,
                "percent_missing": analysis.summary.percent_missing,
                "estimated_api_calls": analysis.summary.estimated_api_calls,
                "chunks": [c.to_dict() for c in analysis.missing_range.chunks],
            },
            query_context=ctx,
        )

    async def _maybe_validate(
        self,
        entity_type: EntityTypeEnum,
        customer_id: str,
        start_date: date,
        end_date: date,
        parent_entity_id: Optional[str],
        cached_rows: List[BaseMetricsRow],
        ctx: QueryContext,
    ) -> Optional[HierarchyValidationSummary]:
        if not self.flags.HIERARCHY_VALIDATION or not cached_rows:
            return None

        if entity_type == EntityTypeEnum.campaign:
            campaign_ids = None
        elif entity_type == EntityTypeEnum.ad_group and parent_entity_id:
            campaign_ids = [parent_entity_id]
        else:
            return None

        try:
            return await asyncio.to_thread(
                run_sampled_hierarchy_validation,
                self.store, customer_id, start_date, end_date,
                settings=self.settings,
                rng=self.rng,
                campaign_ids=campaign_ids,
                timezone_name=ctx.timezone,
            )
        except Exception as e:
            logger.warning("[HYBRID_FETCH] Hierarchy validation failed: %s", e)
            capture_exception(e, extra={"operation": "hierarchy_validation", "customer_id": customer_id})
            return None
