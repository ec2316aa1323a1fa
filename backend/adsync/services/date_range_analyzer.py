"""Date Range Analyzer - per-day cache coverage for a requested window.

WHAT:
    Classifies every day of a requested window as cached (with a freshness
    tag) or missing, and groups missing days into contiguous backfill chunks.

WHY:
    - A 30-day report with 3 missing days should cost 1 API call, not 30
    - Coverage is a snapshot: freshness is computed once per analysis from
      now - synced_at and never mutated afterwards
    - cached and missing dates partition the window exactly, which is what
      lets the coordinator account for every day once

FRESHNESS:
    fresh    age < FRESH_TTL_MINUTES (5)
    stale    FRESH_TTL_MINUTES <= age < STALE_TTL_MINUTES (60)
    expired  age >= STALE_TTL_MINUTES

REFERENCES:
    - adsync/services/metrics_store.py:MetricsStore.query_coverage
    - adsync/services/hybrid_fetch.py (consumer)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from adsync.models import EntityTypeEnum
from adsync.services.metrics_store import MetricsStore, as_utc

logger = logging.getLogger(__name__)

FRESH_TTL_MINUTES = 5
STALE_TTL_MINUTES = 60
MAX_CHUNK_DAYS = 30


class CoverageAnalysisError(Exception):
    """Raised when coverage cannot be computed (store unreachable)."""


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class DateCoverage:
    date: date
    has_cached_data: bool
    synced_at: Optional[datetime] = None
    age_minutes: Optional[float] = None
    freshness: Optional[str] = None  # fresh | stale | expired

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "has_cached_data": self.has_cached_data,
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
            "age_minutes": self.age_minutes,
            "freshness": self.freshness,
        }


@dataclass
class Chunk:
    start_date: date
    end_date: date
    days: int

    @property
    def key(self) -> str:
        return f"{self.start_date.isoformat()}_{self.end_date.isoformat()}"

    def dates(self) -> List[date]:
        return [self.start_date + timedelta(days=i) for i in range(self.days)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "days": self.days,
        }


@dataclass
class RequestedRange:
    start: date
    end: date
    total_days: int


@dataclass
class CachedRange:
    dates: List[date] = field(default_factory=list)
    count: int = 0
    oldest_sync: Optional[datetime] = None
    newest_sync: Optional[datetime] = None


@dataclass
class MissingRange:
    dates: List[date] = field(default_factory=list)
    count: int = 0
    chunks: List[Chunk] = field(default_factory=list)


@dataclass
class AnalysisSummary:
    percent_cached: int
    percent_missing: int
    requires_api_fetch: bool
    estimated_api_calls: int


@dataclass
class DateRangeAnalysis:
    requested_range: RequestedRange
    cached_range: CachedRange
    missing_range: MissingRange
    coverage: List[DateCoverage]
    summary: AnalysisSummary
    source: str  # cache | api | hybrid

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requested_range": {
                "start": self.requested_range.start.isoformat(),
                "end": self.requested_range.end.isoformat(),
                "total_days": self.requested_range.total_days,
            },
            "cached_range": {
                "dates": [d.isoformat() for d in self.cached_range.dates],
                "count": self.cached_range.count,
                "oldest_sync": self.cached_range.oldest_sync.isoformat() if self.cached_range.oldest_sync else None,
                "newest_sync": self.cached_range.newest_sync.isoformat() if self.cached_range.newest_sync else None,
            },
            "missing_range": {
                "dates": [d.isoformat() for d in self.missing_range.dates],
                "count": self.missing_range.count,
                "chunks": [c.to_dict() for c in self.missing_range.chunks],
            },
            "summary": {
                "percent_cached": self.summary.percent_cached,
                "percent_missing": self.summary.percent_missing,
                "requires_api_fetch": self.summary.requires_api_fetch,
                "estimated_api_calls": self.summary.estimated_api_calls,
            },
            "source": self.source,
        }


# =============================================================================
# PURE HELPERS
# =============================================================================

def enumerate_dates(start: date, end: date) -> List[date]:
    """Every calendar day from start to end inclusive (empty if end < start)."""
    if end < start:
        return []
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


def classify_freshness(
    age_minutes: float,
    fresh_ttl_minutes: int = FRESH_TTL_MINUTES,
    stale_ttl_minutes: int = STALE_TTL_MINUTES,
) -> str:
    if age_minutes < fresh_ttl_minutes:
        return "fresh"
    if age_minutes < stale_ttl_minutes:
        return "stale"
    return "expired"


def chunk_missing_dates(dates: List[date], max_chunk_days: int = MAX_CHUNK_DAYS) -> List[Chunk]:
    """Group missing dates into maximal contiguous runs of at most max_chunk_days.

    Example:
        [d1..d10], cap 5  -> [d1..d5], [d6..d10]
        {d1, d2, d5}      -> [d1..d2], [d5..d5]
    """
    if not dates:
        return []

    ordered = sorted(set(dates))
    chunks: List[Chunk] = []
    start = prev = ordered[0]
    days = 1

    for current in ordered[1:]:
        if (current - prev).days == 1 and days < max_chunk_days:
            days += 1
        else:
            chunks.append(Chunk(start_date=start, end_date=prev, days=days))
            start = current
            days = 1
        prev = current

    chunks.append(Chunk(start_date=start, end_date=prev, days=days))
    return chunks


def classify_source(total_days: int, missing_count: int) -> str:
    """cache if nothing is missing, api if everything is, else hybrid.

    An empty window has nothing to fetch and is served from cache.
    """
    if missing_count == 0:
        return "cache"
    if missing_count == total_days:
        return "api"
    return "hybrid"


# =============================================================================
# ANALYSIS
# =============================================================================

def analyze_date_range(
    store: MetricsStore,
    customer_id: str,
    entity_type: EntityTypeEnum,
    start_date: date,
    end_date: date,
    parent_entity_id: Optional[str] = None,
    now: Optional[datetime] = None,
    fresh_ttl_minutes: int = FRESH_TTL_MINUTES,
    stale_ttl_minutes: int = STALE_TTL_MINUTES,
    max_chunk_days: int = MAX_CHUNK_DAYS,
) -> DateRangeAnalysis:
    """Compute coverage for one scope and window. Pure read.

    Raises:
        CoverageAnalysisError: If the store cannot be queried.
    """
    now = as_utc(now) or datetime.now(timezone.utc)
    all_dates = enumerate_dates(start_date, end_date)

    try:
        by_day = store.query_coverage(
            customer_id, entity_type, start_date, end_date, parent_entity_id
        ) if all_dates else {}
    except SQLAlchemyError as e:
        logger.error(
            "[DATE_RANGE] Coverage query failed for %s/%s %s..%s: %s",
            customer_id, entity_type.value, start_date, end_date, e,
        )
        raise CoverageAnalysisError(f"Coverage query failed: {e}") from e

    coverage: List[DateCoverage] = []
    cached = CachedRange()
    missing_dates: List[date] = []

    for day in all_dates:
        row = by_day.get(day)
        if row is not None and row.count > 0:
            age_minutes = max(0.0, (now - row.synced_at).total_seconds() / 60.0)
            coverage.append(DateCoverage(
                date=day,
                has_cached_data=True,
                synced_at=row.synced_at,
                age_minutes=round(age_minutes, 2),
                freshness=classify_freshness(age_minutes, fresh_ttl_minutes, stale_ttl_minutes),
            ))
            cached.dates.append(day)
            if cached.oldest_sync is None or row.synced_at < cached.oldest_sync:
                cached.oldest_sync = row.synced_at
            if cached.newest_sync is None or row.synced_at > cached.newest_sync:
                cached.newest_sync = row.synced_at
        else:
            coverage.append(DateCoverage(date=day, has_cached_data=False))
            missing_dates.append(day)

    cached.count = len(cached.dates)
    chunks = chunk_missing_dates(missing_dates, max_chunk_days)
    missing = MissingRange(dates=missing_dates, count=len(missing_dates), chunks=chunks)

    total = len(all_dates)
    percent_cached = round(cached.count / total * 100) if total else 0
    percent_missing = round(missing.count / total * 100) if total else 0

    analysis = DateRangeAnalysis(
        requested_range=RequestedRange(start=start_date, end=end_date, total_days=total),
        cached_range=cached,
        missing_range=missing,
        coverage=coverage,
        summary=AnalysisSummary(
            percent_cached=percent_cached,
            percent_missing=percent_missing,
            requires_api_fetch=missing.count > 0,
            estimated_api_calls=len(chunks),
        ),
        source=classify_source(total, missing.count),
    )

    logger.info(
        "[DATE_RANGE] %s/%s %s..%s: %d/%d cached, %d chunks, source=%s",
        customer_id, entity_type.value, start_date, end_date,
        cached.count, total, len(chunks), analysis.source,
    )
    return analysis


def analyze_all_or_nothing(
    store: MetricsStore,
    customer_id: str,
    entity_type: EntityTypeEnum,
    start_date: date,
    end_date: date,
    parent_entity_id: Optional[str] = None,
    now: Optional[datetime] = None,
    max_chunk_days: int = MAX_CHUNK_DAYS,
    **kwargs: Any,
) -> DateRangeAnalysis:
    """Coarse analysis used when per-day analysis is switched off.

    The window is served from cache only when every day is covered;
    otherwise every day is treated as missing.
    """
    analysis = analyze_date_range(
        store, customer_id, entity_type, start_date, end_date,
        parent_entity_id=parent_entity_id, now=now, max_chunk_days=max_chunk_days, **kwargs,
    )
    if analysis.source in ("cache", "api"):
        return analysis

    all_dates = enumerate_dates(start_date, end_date)
    chunks = chunk_missing_dates(all_dates, max_chunk_days)
    return DateRangeAnalysis(
        requested_range=analysis.requested_range,
        cached_range=CachedRange(),
        missing_range=MissingRange(dates=all_dates, count=len(all_dates), chunks=chunks),
        coverage=[DateCoverage(date=d, has_cached_data=False) for d in all_dates],
        summary=AnalysisSummary(
            percent_cached=0,
            percent_missing=100,
            requires_api_fetch=True,
            estimated_api_calls=len(chunks),
        ),
        source="api",
    )


# =============================================================================
# PRESENTATION HELPERS
# =============================================================================

def format_range(dates: List[date]) -> Optional[str]:
    if not dates:
        return None
    if len(dates) == 1:
        return dates[0].isoformat()
    return f"{dates[0].isoformat()} to {dates[-1].isoformat()}"


def get_source_label(analysis: DateRangeAnalysis, provider_name: str = "Google Ads API") -> str:
    """Human-readable data source, e.g. "Hybrid (67% DB, 33% API)"."""
    if analysis.source == "cache":
        return "DB Cache"
    if analysis.source == "api":
        return provider_name
    return f"Hybrid ({analysis.summary.percent_cached}% DB, {analysis.summary.percent_missing}% API)"


def get_source_details(analysis: DateRangeAnalysis) -> Dict[str, Any]:
    """Which dates came from where, for SourceMetadata."""
    chunks = analysis.missing_range.chunks
    if not chunks:
        api_range = None
    elif len(chunks) == 1:
        api_range = format_range([chunks[0].start_date, chunks[0].end_date]) \
            if chunks[0].days > 1 else chunks[0].start_date.isoformat()
    else:
        api_range = f"{len(chunks)} chunks"

    return {
        "db_range": format_range(analysis.cached_range.dates),
        "api_range": api_range,
        "db_days": analysis.cached_range.count,
        "api_days": analysis.missing_range.count,
    }
