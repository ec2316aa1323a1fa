"""Hierarchy validation sampler.

WHAT: Compares each sampled campaign's cached totals with the sum of its ad
      groups' cached totals for the same window and reports drift
WHY: A campaign row and its ad-group rows are fetched by different jobs; a
     regression in either path shows up as parent != sum(children)
REFERENCES:
  - adsync/services/hybrid_fetch.py: runs the sampler on cached reads
  - adsync/models.py:HierarchyMismatchEvent: persisted drift events
  - adsync/routers/hierarchy.py: mismatch history endpoint

Rules:
  - parent values below MIN_PARENT_VALUES are ignored (noise on tiny numbers)
  - absolute differences below MIN_ABSOLUTE_DIFF are ignored (rounding)
  - variance = |parent - child| / max(parent, child, 0.001)
  - flagged when variance > tolerance; severity "error" above 20%, else "warning"

Validation is observability only. It never mutates metrics and never raises
into the read path.
"""

import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from adsync.models import EntityTypeEnum, HierarchyMismatchEvent, MismatchSeverityEnum

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 0.05
DEFAULT_SAMPLE_SIZE = 10
ERROR_VARIANCE = 0.2
TOP_MISMATCHES = 3

MIN_PARENT_VALUES = {
    "spend": 1.0,
    "clicks": 10,
    "impressions": 100,
    "conversions": 0.5,
}

MIN_ABSOLUTE_DIFF = {
    "spend": 0.5,
    "clicks": 2,
    "impressions": 10,
    "conversions": 0.1,
}

METRICS = ("spend", "clicks", "impressions", "conversions")


@dataclass
class HierarchyMismatch:
    entity_id: str
    entity_name: str
    metric: str
    parent_value: float
    child_sum: float
    absolute_diff: float
    variance_pct: float
    severity: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "entity_name": self.entity_name,
            "metric": self.metric,
            "parent_value": self.parent_value,
            "child_sum": self.child_sum,
            "absolute_diff": round(self.absolute_diff, 4),
            "variance_pct": round(self.variance_pct, 2),
            "severity": self.severity,
        }


@dataclass
class HierarchyValidationResult:
    validated: bool
    sampled_entities: int
    campaigns_checked: int
    campaigns_with_issues: int
    mismatches: List[HierarchyMismatch]
    trigger: str
    start_date: date
    end_date: date
    timezone: str = "UTC"
    persisted_events: int = 0


@dataclass
class HierarchyValidationSummary:
    """UI-facing digest of one validation run."""
    validated: bool
    has_issues: bool
    sampled_entities: int
    issue_count: int
    worst_variance: float
    severity: str  # ok | warning | error
    top_mismatches: List[HierarchyMismatch] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "validated": self.validated,
            "has_issues": self.has_issues,
            "sampled_entities": self.sampled_entities,
            "issue_count": self.issue_count,
            "worst_variance": round(self.worst_variance, 2),
            "severity": self.severity,
            "top_mismatches": [m.to_dict() for m in self.top_mismatches],
        }


def check_metric(
    entity_id: str,
    entity_name: Optional[str],
    metric: str,
    parent_value: float,
    child_sum: float,
    tolerance: float = DEFAULT_TOLERANCE,
) -> Optional[HierarchyMismatch]:
    """Return a mismatch when the parent/child difference is significant."""
    if parent_value < MIN_PARENT_VALUES[metric]:
        return None

    absolute_diff = abs(parent_value - child_sum)
    if absolute_diff < MIN_ABSOLUTE_DIFF[metric]:
        return None

    variance = absolute_diff / max(parent_value, child_sum, 0.001)
    if variance <= tolerance:
        return None

    return HierarchyMismatch(
        entity_id=entity_id,
        entity_name=entity_name or entity_id,
        metric=metric,
        parent_value=parent_value,
        child_sum=child_sum,
        absolute_diff=absolute_diff,
        variance_pct=variance * 100,
        severity="error" if variance > ERROR_VARIANCE else "warning",
    )


def validate_campaign_hierarchy(
    store,
    customer_id: str,
    start_date: date,
    end_date: date,
    tolerance: float = DEFAULT_TOLERANCE,
    sample_size: int = DEFAULT_SAMPLE_SIZE,
    trigger: str = "sampled",
    timezone_name: str = "UTC",
    campaign_ids: Optional[Sequence[str]] = None,
    persist: bool = True,
) -> HierarchyValidationResult:
    """Check campaign totals against the sum of their ad groups.

    Args:
        store: MetricsStore bound to the current session
        campaign_ids: Restrict the check to these campaigns; defaults to the
            most recently updated ENABLED campaigns (up to sample_size)
        persist: Record mismatches as HierarchyMismatchEvent rows

    Campaigns without any cached ad-group rows in the window are skipped.
    """
    if campaign_ids is None:
        sampled = [
            (e.entity_id, e.name)
            for e in store.sample_entities(customer_id, EntityTypeEnum.campaign, "ENABLED", sample_size)
        ]
    else:
        known = store.get_hierarchy(customer_id, EntityTypeEnum.campaign, campaign_ids)
        sampled = [(cid, known[cid].name if cid in known else None) for cid in campaign_ids]

    result = HierarchyValidationResult(
        validated=bool(sampled),
        sampled_entities=len(sampled),
        campaigns_checked=0,
        campaigns_with_issues=0,
        mismatches=[],
        trigger=trigger,
        start_date=start_date,
        end_date=end_date,
        timezone=timezone_name,
    )
    if not sampled:
        return result

    ids = [cid for cid, _ in sampled]
    parent_totals = store.entity_totals(customer_id, EntityTypeEnum.campaign, start_date, end_date, entity_ids=ids)
    child_totals = store.entity_totals(
        customer_id, EntityTypeEnum.ad_group, start_date, end_date, entity_ids=ids, group_by_parent=True,
    )

    for campaign_id, name in sampled:
        children = child_totals.get(campaign_id)
        if children is None:
            continue
        parent = parent_totals.get(campaign_id, {})
        result.campaigns_checked += 1

        found = [
            m for m in (
                check_metric(campaign_id, name, metric, parent.get(metric, 0.0), children.get(metric, 0.0), tolerance)
                for metric in METRICS
            )
            if m is not None
        ]
        if found:
            result.campaigns_with_issues += 1
            result.mismatches.extend(found)

    if result.mismatches:
        logger.warning(
            "[HIERARCHY] %d mismatches across %d/%d campaigns for %s (%s..%s)",
            len(result.mismatches), result.campaigns_with_issues, result.campaigns_checked,
            customer_id, start_date, end_date,
        )
        if persist:
            result.persisted_events = persist_mismatch_events(store.db, customer_id, result)

    return result


def summarize(result: HierarchyValidationResult) -> HierarchyValidationSummary:
    """Reduce a validation result to the digest attached to read metadata."""
    mismatches = sorted(result.mismatches, key=lambda m: m.variance_pct, reverse=True)
    if any(m.severity == "error" for m in mismatches):
        severity = "error"
    elif mismatches:
        severity = "warning"
    else:
        severity = "ok"

    return HierarchyValidationSummary(
        validated=result.validated,
        has_issues=bool(mismatches),
        sampled_entities=result.sampled_entities,
        issue_count=len(mismatches),
        worst_variance=mismatches[0].variance_pct if mismatches else 0.0,
        severity=severity,
        top_mismatches=mismatches[:TOP_MISMATCHES],
    )


def run_sampled_hierarchy_validation(
    store,
    customer_id: str,
    start_date: date,
    end_date: date,
    settings,
    rng: Callable[[], float] = random.random,
    campaign_ids: Optional[Sequence[str]] = None,
    timezone_name: str = "UTC",
) -> Optional[HierarchyValidationSummary]:
    """Validate on a sample of reads. Returns None when this read is not sampled."""
    if rng() >= settings.HIERARCHY_VALIDATION_SAMPLE_RATE:
        return None

    result = validate_campaign_hierarchy(
        store,
        customer_id,
        start_date,
        end_date,
        tolerance=settings.HIERARCHY_VARIANCE_TOLERANCE,
        sample_size=settings.HIERARCHY_SAMPLE_SIZE,
        trigger="sampled",
        timezone_name=timezone_name,
        campaign_ids=campaign_ids,
    )
    return summarize(result)


def is_hierarchy_healthy(
    store,
    customer_id: str,
    start_date: date,
    end_date: date,
    tolerance: float = DEFAULT_TOLERANCE,
) -> bool:
    """True when a manual check finds no mismatches."""
    result = validate_campaign_hierarchy(
        store, customer_id, start_date, end_date, tolerance=tolerance, trigger="manual",
    )
    return not result.mismatches


# =============================================================================
# PERSISTENCE
# =============================================================================

def persist_mismatch_events(db: Session, customer_id: str, result: HierarchyValidationResult) -> int:
    """Insert one event per mismatch. Failures are logged, never raised."""
    try:
        for m in result.mismatches:
            db.add(HierarchyMismatchEvent(
                customer_id=customer_id,
                parent_entity_type=EntityTypeEnum.campaign,
                parent_entity_id=m.entity_id,
                child_entity_type=EntityTypeEnum.ad_group,
                metric=m.metric,
                parent_value=Decimal(str(round(m.parent_value, 4))),
                child_sum=Decimal(str(round(m.child_sum, 4))),
                variance_pct=Decimal(str(round(m.variance_pct, 4))),
                severity=MismatchSeverityEnum(m.severity),
                start_date=result.start_date,
                end_date=result.end_date,
                trigger=result.trigger,
                timezone=result.timezone,
                details=f"{m.entity_name}: sampled={result.sampled_entities}",
            ))
        db.commit()
        logger.info("[HIERARCHY] Persisted %d mismatch events for %s", len(result.mismatches), customer_id)
        return len(result.mismatches)
    except Exception as e:
        db.rollback()
        logger.error("[HIERARCHY] Failed to persist mismatch events: %s", e)
        return 0


def get_mismatch_history(
    db: Session,
    customer_id: str,
    days: int = 30,
    limit: int = 100,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Recent mismatch events plus counts by metric and severity."""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
    events = (
        db.query(HierarchyMismatchEvent)
        .filter(
            HierarchyMismatchEvent.customer_id == customer_id,
            HierarchyMismatchEvent.detected_at >= cutoff,
        )
        .order_by(HierarchyMismatchEvent.detected_at.desc())
        .limit(limit)
        .all()
    )

    by_metric: Dict[str, int] = {}
    by_severity: Dict[str, int] = {}
    total_variance = 0.0
    for e in events:
        by_metric[e.metric] = by_metric.get(e.metric, 0) + 1
        by_severity[e.severity.value] = by_severity.get(e.severity.value, 0) + 1
        total_variance += float(e.variance_pct)

    return {
        "events": [
            {
                "id": str(e.id),
                "detected_at": e.detected_at.isoformat() if e.detected_at else None,
                "trigger": e.trigger,
                "entity_id": e.parent_entity_id,
                "metric": e.metric,
                "parent_value": float(e.parent_value),
                "child_sum": float(e.child_sum),
                "variance_pct": float(e.variance_pct),
                "severity": e.severity.value,
                "start_date": e.start_date.isoformat(),
                "end_date": e.end_date.isoformat(),
                "acknowledged": e.acknowledged,
            }
            for e in events
        ],
        "summary": {
            "total_events": len(events),
            "by_metric": by_metric,
            "by_severity": by_severity,
            "avg_variance": total_variance / len(events) if events else 0.0,
        },
    }


def acknowledge_mismatch(
    db: Session,
    event_id: str,
    acknowledged_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Dismiss one event. Returns False when it does not exist."""
    try:
        key = uuid.UUID(str(event_id))
    except ValueError:
        return False

    event = db.query(HierarchyMismatchEvent).filter(HierarchyMismatchEvent.id == key).first()
    if event is None:
        return False
    event.acknowledged = True
    event.acknowledged_at = now or datetime.now(timezone.utc)
    event.acknowledged_by = acknowledged_by
    db.commit()
    return True


def cleanup_old_mismatch_events(
    db: Session,
    retention_days: int = 90,
    now: Optional[datetime] = None,
) -> int:
    """Delete acknowledged events older than the retention window."""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)
    deleted = (
        db.query(HierarchyMismatchEvent)
        .filter(
            HierarchyMismatchEvent.acknowledged.is_(True),
            HierarchyMismatchEvent.detected_at < cutoff,
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted:
        logger.info("[HIERARCHY] Removed %d acknowledged mismatch events older than %d days", deleted, retention_days)
    return deleted
