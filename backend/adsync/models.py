"""SQLAlchemy ORM models and enums.

This module defines the cache schema for synced ad metrics. Every row is keyed
by the natural key of the remote entity (customer + entity type + entity id
[+ date]) so upserts stay idempotent when the same chunk is fetched twice.
"""

import uuid
from datetime import datetime, timezone
import enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Index,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base


# Single Base used by the entire application
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Enums ---------------------------------------------------------

class EntityTypeEnum(str, enum.Enum):
    campaign = "campaign"
    ad_group = "ad_group"
    keyword = "keyword"


class DataFreshnessEnum(str, enum.Enum):
    """Freshness tag of a persisted day.

    - partial: same-day data, the provider is still accumulating it
    - final: any completed day
    """
    partial = "partial"
    final = "final"


class MismatchSeverityEnum(str, enum.Enum):
    warning = "warning"
    error = "error"


# Models --------------------------------------------------------

class MetricsFact(Base):
    """One day of metrics for one remote entity.

    Written only through the hybrid fetch engine (write-through) and the
    background refresh worker. Upsert-only.
    """
    __tablename__ = "metrics_facts"
    __table_args__ = (
        UniqueConstraint(
            "customer_id", "entity_type", "entity_id", "date",
            name="uq_metrics_facts_customer_type_entity_date",
        ),
        Index("ix_metrics_facts_coverage", "customer_id", "entity_type", "date"),
        Index("ix_metrics_facts_parent", "customer_id", "entity_type", "parent_entity_id", "date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(String, nullable=True)
    customer_id = Column(String, nullable=False)
    entity_type = Column(Enum(EntityTypeEnum), nullable=False)
    entity_id = Column(String, nullable=False)
    parent_entity_id = Column(String, nullable=True)
    date = Column(Date, nullable=False)

    impressions = Column(BigInteger, nullable=False, default=0)
    clicks = Column(BigInteger, nullable=False, default=0)
    cost_micros = Column(BigInteger, nullable=False, default=0)
    conversions = Column(Numeric(18, 4), nullable=False, default=0)
    conversion_value = Column(Numeric(18, 4), nullable=False, default=0)

    data_freshness = Column(Enum(DataFreshnessEnum), nullable=False, default=DataFreshnessEnum.final)
    synced_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __str__(self):
        return f"{self.entity_type}:{self.entity_id}@{self.date}"


class EntityHierarchy(Base):
    """Name, status and parent of a remote entity.

    Updated in the same transaction as the MetricsFact rows of a chunk.
    """
    __tablename__ = "entity_hierarchy"
    __table_args__ = (
        UniqueConstraint(
            "customer_id", "entity_type", "entity_id",
            name="uq_entity_hierarchy_customer_type_entity",
        ),
        Index("ix_entity_hierarchy_parent", "customer_id", "entity_type", "parent_entity_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(String, nullable=True)
    customer_id = Column(String, nullable=False)
    entity_type = Column(Enum(EntityTypeEnum), nullable=False)
    entity_id = Column(String, nullable=False)
    parent_entity_id = Column(String, nullable=True)
    name = Column(String, nullable=True)
    status = Column(String, nullable=True)
    # campaign_type for campaigns, match_type/quality_score for keywords
    attributes = Column(JSON, nullable=True)
    last_updated = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __str__(self):
        return f"{self.name or self.entity_id} ({self.entity_type})"


class HierarchyMismatchEvent(Base):
    """Recorded parent/child drift found by the validation sampler."""
    __tablename__ = "hierarchy_mismatch_events"
    __table_args__ = (
        Index("ix_hierarchy_mismatch_customer_detected", "customer_id", "detected_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id = Column(String, nullable=False)
    parent_entity_type = Column(Enum(EntityTypeEnum), nullable=False)
    parent_entity_id = Column(String, nullable=False)
    child_entity_type = Column(Enum(EntityTypeEnum), nullable=False)
    metric = Column(String, nullable=False)
    parent_value = Column(Numeric(18, 4), nullable=False)
    child_sum = Column(Numeric(18, 4), nullable=False)
    # Stored as a percentage (12.5 == 12.5%)
    variance_pct = Column(Numeric(10, 4), nullable=False)
    severity = Column(Enum(MismatchSeverityEnum), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    trigger = Column(String, nullable=False, default="sampled")
    timezone = Column(String, nullable=False, default="UTC")
    details = Column(Text, nullable=True)
    acknowledged = Column(Boolean, nullable=False, default=False)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    acknowledged_by = Column(String, nullable=True)
    detected_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
