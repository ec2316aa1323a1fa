"""Metrics Store - relational persistence for cached metrics.

WHAT:
    Thin service over MetricsFact / EntityHierarchy:
    - coverage query (per-day max(synced_at) and row count, one grouped query)
    - fact query (daily rows aggregated per entity, names resolved via hierarchy)
    - idempotent upserts keyed by natural key
    - write-through of one fetched chunk inside a single transaction

WHY:
    - Every read goes through the coverage query, so it must be a single
      round trip regardless of window length
    - Upserts keyed by (customer, type, entity, date) make retried and
      duplicate background jobs harmless

REFERENCES:
    - Model: adsync/models.py:MetricsFact, EntityHierarchy
    - Consumers: adsync/services/date_range_analyzer.py,
      adsync/services/hybrid_fetch.py, adsync/workers/arq_worker.py
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from adsync.models import (
    DataFreshnessEnum,
    EntityHierarchy,
    EntityTypeEnum,
    MetricsFact,
)

logger = logging.getLogger(__name__)

MICROS_PER_UNIT = 1_000_000

# Attributes persisted into EntityHierarchy.attributes per entity type
TYPE_ATTRIBUTES = {
    EntityTypeEnum.campaign: ("campaign_type",),
    EntityTypeEnum.ad_group: (),
    EntityTypeEnum.keyword: ("match_type", "quality_score"),
}


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize DB timestamps (SQLite drops tzinfo) to aware UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class DayCoverage:
    """Per-day coverage row returned by query_coverage."""
    synced_at: datetime
    count: int


@dataclass
class FactAggregate:
    """Daily facts of one entity summed over the requested dates."""
    entity_id: str
    parent_entity_id: Optional[str]
    name: Optional[str]
    status: Optional[str]
    attributes: Dict[str, Any]
    impressions: int
    clicks: int
    spend: float
    conversions: float
    conversion_value: float
    last_synced_at: Optional[datetime]
    day_count: int


class WriteThroughResult:
    """Result of persisting one fetched chunk."""

    def __init__(self):
        self.facts_written = 0
        self.entities_written = 0
        self.skipped_undated = 0

    def __repr__(self):
        return (
            f"WriteThroughResult(facts={self.facts_written}, entities={self.entities_written}, "
            f"skipped_undated={self.skipped_undated})"
        )


# =============================================================================
# STORE
# =============================================================================

class MetricsStore:
    """Relational store contract used by the engine."""

    def __init__(self, db: Session):
        self.db = db

    # --- dialect -------------------------------------------------------
    def _insert(self, model):
        """INSERT construct supporting ON CONFLICT for the bound dialect."""
        dialect = self.db.get_bind().dialect.name
        if dialect == "sqlite":
            return sqlite.insert(model)
        return postgresql.insert(model)

    # --- reads ---------------------------------------------------------
    def query_coverage(
        self,
        customer_id: str,
        entity_type: EntityTypeEnum,
        start_date: date,
        end_date: date,
        parent_entity_id: Optional[str] = None,
    ) -> Dict[date, DayCoverage]:
        """Per-day max(synced_at) and row count within the window."""
        q = (
            self.db.query(
                MetricsFact.date,
                func.max(MetricsFact.synced_at),
                func.count(MetricsFact.id),
            )
            .filter(
                MetricsFact.customer_id == customer_id,
                MetricsFact.entity_type == entity_type,
                MetricsFact.date >= start_date,
                MetricsFact.date <= end_date,
            )
        )
        if parent_entity_id:
            q = q.filter(MetricsFact.parent_entity_id == parent_entity_id)

        coverage: Dict[date, DayCoverage] = {}
        for day, synced_at, count in q.group_by(MetricsFact.date).all():
            coverage[_as_date(day)] = DayCoverage(synced_at=as_utc(synced_at), count=int(count))
        return coverage

    def query_facts(
        self,
        customer_id: str,
        entity_type: EntityTypeEnum,
        dates: Sequence[date],
        parent_entity_id: Optional[str] = None,
    ) -> List[FactAggregate]:
        """Facts for the given dates only, summed per entity."""
        if not dates:
            return []

        q = (
            self.db.query(
                MetricsFact.entity_id,
                func.max(MetricsFact.parent_entity_id),
                func.sum(MetricsFact.impressions),
                func.sum(MetricsFact.clicks),
                func.sum(MetricsFact.cost_micros),
                func.sum(MetricsFact.conversions),
                func.sum(MetricsFact.conversion_value),
                func.max(MetricsFact.synced_at),
                func.count(MetricsFact.id),
            )
            .filter(
                MetricsFact.customer_id == customer_id,
                MetricsFact.entity_type == entity_type,
                MetricsFact.date.in_(list(dates)),
            )
        )
        if parent_entity_id:
            q = q.filter(MetricsFact.parent_entity_id == parent_entity_id)
        rows = q.group_by(MetricsFact.entity_id).all()

        hierarchy = self.get_hierarchy(customer_id, entity_type, [r[0] for r in rows])

        out: List[FactAggregate] = []
        for (entity_id, parent_id, impressions, clicks, cost_micros,
             conversions, conversion_value, synced_at, day_count) in rows:
            entity = hierarchy.get(entity_id)
            out.append(FactAggregate(
                entity_id=entity_id,
                parent_entity_id=(entity.parent_entity_id if entity and entity.parent_entity_id else parent_id),
                name=entity.name if entity else None,
                status=entity.status if entity else None,
                attributes=dict(entity.attributes or {}) if entity else {},
                impressions=int(impressions or 0),
                clicks=int(clicks or 0),
                spend=int(cost_micros or 0) / MICROS_PER_UNIT,
                conversions=float(conversions or 0),
                conversion_value=float(conversion_value or 0),
                last_synced_at=as_utc(synced_at),
                day_count=int(day_count),
            ))
        return out

    def get_hierarchy(
        self,
        customer_id: str,
        entity_type: EntityTypeEnum,
        entity_ids: Iterable[str],
    ) -> Dict[str, EntityHierarchy]:
        ids = list(entity_ids)
        if not ids:
            return {}
        rows = (
            self.db.query(EntityHierarchy)
            .filter(
                EntityHierarchy.customer_id == customer_id,
                EntityHierarchy.entity_type == entity_type,
                EntityHierarchy.entity_id.in_(ids),
            )
            .all()
        )
        return {r.entity_id: r for r in rows}

    def latest_sync_for_parent(
        self,
        customer_id: str,
        entity_type: EntityTypeEnum,
        parent_entity_id: str,
        start_date: date,
        end_date: date,
    ) -> Optional[datetime]:
        """Most recent sync of any child row under a parent in the window."""
        latest = (
            self.db.query(func.max(MetricsFact.synced_at))
            .filter(
                MetricsFact.customer_id == customer_id,
                MetricsFact.entity_type == entity_type,
                MetricsFact.parent_entity_id == parent_entity_id,
                MetricsFact.date >= start_date,
                MetricsFact.date <= end_date,
            )
            .scalar()
        )
        return as_utc(latest)

    def sample_entities(
        self,
        customer_id: str,
        entity_type: EntityTypeEnum,
        status: str,
        limit: int,
    ) -> List[EntityHierarchy]:
        """Most recently updated entities with the given status."""
        return (
            self.db.query(EntityHierarchy)
            .filter(
                EntityHierarchy.customer_id == customer_id,
                EntityHierarchy.entity_type == entity_type,
                EntityHierarchy.status == status,
            )
            .order_by(EntityHierarchy.last_updated.desc())
            .limit(limit)
            .all()
        )

    def entity_totals(
        self,
        customer_id: str,
        entity_type: EntityTypeEnum,
        start_date: date,
        end_date: date,
        entity_ids: Optional[Sequence[str]] = None,
        group_by_parent: bool = False,
    ) -> Dict[str, Dict[str, float]]:
        """Summed spend/clicks/impressions/conversions per entity (or per parent)."""
        key_col = MetricsFact.parent_entity_id if group_by_parent else MetricsFact.entity_id
        q = (
            self.db.query(
                key_col,
                func.sum(MetricsFact.cost_micros),
                func.sum(MetricsFact.clicks),
                func.sum(MetricsFact.impressions),
                func.sum(MetricsFact.conversions),
            )
            .filter(
                MetricsFact.customer_id == customer_id,
                MetricsFact.entity_type == entity_type,
                MetricsFact.date >= start_date,
                MetricsFact.date <= end_date,
            )
        )
        if entity_ids is not None:
            q = q.filter(key_col.in_(list(entity_ids)))

        totals: Dict[str, Dict[str, float]] = {}
        for key, cost_micros, clicks, impressions, conversions in q.group_by(key_col).all():
            if key is None:
                continue
            totals[key] = {
                "spend": int(cost_micros or 0) / MICROS_PER_UNIT,
                "clicks": float(clicks or 0),
                "impressions": float(impressions or 0),
                "conversions": float(conversions or 0),
            }
        return totals

    def top_campaigns_by_spend(
        self,
        customer_id: str,
        start_date: date,
        end_date: date,
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        """Campaigns ranked by spend in the window, for pre-warm candidates."""
        spend = func.sum(MetricsFact.cost_micros)
        rows = (
            self.db.query(MetricsFact.entity_id, spend)
            .filter(
                MetricsFact.customer_id == customer_id,
                MetricsFact.entity_type == EntityTypeEnum.campaign,
                MetricsFact.date >= start_date,
                MetricsFact.date <= end_date,
            )
            .group_by(MetricsFact.entity_id)
            .order_by(spend.desc())
            .limit(limit)
            .all()
        )
        hierarchy = self.get_hierarchy(customer_id, EntityTypeEnum.campaign, [r[0] for r in rows])
        out = []
        for entity_id, cost_micros in rows:
            entity = hierarchy.get(entity_id)
            out.append({
                "id": entity_id,
                "name": entity.name if entity and entity.name else f"Campaign {entity_id}",
                "status": entity.status if entity and entity.status else "ENABLED",
                "spend": int(cost_micros or 0) / MICROS_PER_UNIT,
            })
        return out

    # --- writes --------------------------------------------------------
    def upsert_metrics_fact(
        self,
        account_id: Optional[str],
        customer_id: str,
        entity_type: EntityTypeEnum,
        entity_id: str,
        fact_date: date,
        metrics: Dict[str, Any],
        parent_entity_id: Optional[str] = None,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Insert or update one day of metrics. Does not commit."""
        now = now or datetime.now(timezone.utc)
        today = today or now.date()
        freshness = DataFreshnessEnum.partial if fact_date == today else DataFreshnessEnum.final

        values = {
            "account_id": account_id,
            "customer_id": customer_id,
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "parent_entity_id": parent_entity_id,
            "date": fact_date,
            "impressions": int(metrics.get("impressions") or 0),
            "clicks": int(metrics.get("clicks") or 0),
            "cost_micros": int(round(float(metrics.get("spend") or 0) * MICROS_PER_UNIT)),
            "conversions": Decimal(str(metrics.get("conversions") or 0)),
            "conversion_value": Decimal(str(metrics.get("conversion_value") or 0)),
            "data_freshness": freshness,
            "synced_at": now,
        }
        stmt = self._insert(MetricsFact).values(id=uuid.uuid4(), **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["customer_id", "entity_type", "entity_id", "date"],
            set_={
                "account_id": stmt.excluded.account_id,
                "parent_entity_id": stmt.excluded.parent_entity_id,
                "impressions": stmt.excluded.impressions,
                "clicks": stmt.excluded.clicks,
                "cost_micros": stmt.excluded.cost_micros,
                "conversions": stmt.excluded.conversions,
                "conversion_value": stmt.excluded.conversion_value,
                "data_freshness": stmt.excluded.data_freshness,
                "synced_at": stmt.excluded.synced_at,
            },
        )
        self.db.execute(stmt)

    def upsert_entity_hierarchy(
        self,
        account_id: Optional[str],
        customer_id: str,
        entity_type: EntityTypeEnum,
        entity_id: str,
        attrs: Dict[str, Any],
        parent_entity_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Insert or update name/status/parent of one entity. Does not commit."""
        now = now or datetime.now(timezone.utc)
        extra = {
            name: attrs[name]
            for name in TYPE_ATTRIBUTES.get(entity_type, ())
            if attrs.get(name) is not None
        }
        values = {
            "account_id": account_id,
            "customer_id": customer_id,
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "parent_entity_id": parent_entity_id,
            "name": attrs.get("name"),
            "status": attrs.get("status"),
            "attributes": extra or None,
            "last_updated": now,
        }
        stmt = self._insert(EntityHierarchy).values(id=uuid.uuid4(), **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["customer_id", "entity_type", "entity_id"],
            set_={
                "account_id": stmt.excluded.account_id,
                "parent_entity_id": stmt.excluded.parent_entity_id,
                "name": stmt.excluded.name,
                "status": stmt.excluded.status,
                "attributes": stmt.excluded.attributes,
                "last_updated": stmt.excluded.last_updated,
            },
        )
        self.db.execute(stmt)

    def write_through(
        self,
        account_id: Optional[str],
        customer_id: str,
        entity_type: EntityTypeEnum,
        rows: List[Dict[str, Any]],
        chunk_start: date,
        chunk_end: date,
        parent_entity_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> WriteThroughResult:
        """Persist one fetched chunk (facts + hierarchy) in one transaction.

        Rows carry a per-day `date`. A row without one is only persistable when
        the chunk covers a single day; otherwise it is counted as skipped.

        Raises:
            Any database error, after rolling back the whole chunk.
        """
        now = now or datetime.now(timezone.utc)
        today = now.date()
        result = WriteThroughResult()
        seen_entities = set()

        try:
            for row in rows:
                entity_id = str(row["id"])
                parent_id = row.get("parent_id") or parent_entity_id

                if row.get("date"):
                    fact_date = _as_date(row["date"])
                elif chunk_start == chunk_end:
                    fact_date = chunk_start
                else:
                    result.skipped_undated += 1
                    fact_date = None

                if fact_date is not None:
                    self.upsert_metrics_fact(
                        account_id, customer_id, entity_type, entity_id, fact_date, row,
                        parent_entity_id=parent_id, today=today, now=now,
                    )
                    result.facts_written += 1

                if entity_id not in seen_entities:
                    self.upsert_entity_hierarchy(
                        account_id, customer_id, entity_type, entity_id, row,
                        parent_entity_id=parent_id, now=now,
                    )
                    seen_entities.add(entity_id)
                    result.entities_written += 1

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if result.skipped_undated:
            logger.warning(
                "[METRICS_STORE] %d undated rows for %s %s..%s not persisted (multi-day chunk)",
                result.skipped_undated, entity_type.value, chunk_start, chunk_end,
            )
        logger.debug("[METRICS_STORE] %s", result)
        return result
