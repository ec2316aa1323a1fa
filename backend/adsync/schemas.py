"""Pydantic schemas for request/response payloads."""

from datetime import date
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])
    redis: bool = Field(default=False, description="Shared Redis reachable")
    worker_heartbeat: Optional[str] = Field(
        default=None,
        description="Last refresh worker heartbeat (ISO timestamp), if reported",
    )


class FlagsResponse(BaseModel):
    flags: Dict[str, bool]


# =============================================================================
# HYBRID FETCH
# =============================================================================

class MetricsRowOut(BaseModel):
    """One entity summed over the requested window."""

    entity_id: str
    entity_name: Optional[str] = None
    entity_type: str
    parent_entity_id: Optional[str] = None
    status: Optional[str] = None
    spend: float = 0.0
    clicks: int = 0
    impressions: int = 0
    conversions: float = 0.0
    conversion_value: float = 0.0
    source: Literal["cache", "api", "hybrid"] = "cache"
    # Type-specific attributes
    campaign_type: Optional[str] = None
    match_type: Optional[str] = None
    quality_score: Optional[int] = None


class HierarchyMismatchOut(BaseModel):
    entity_id: str
    entity_name: str
    metric: str
    parent_value: float
    child_sum: float
    absolute_diff: float
    variance_pct: float
    severity: Literal["warning", "error"]


class HierarchyValidationOut(BaseModel):
    validated: bool
    has_issues: bool
    sampled_entities: int
    issue_count: int
    worst_variance: float
    severity: Literal["ok", "warning", "error"]
    top_mismatches: List[HierarchyMismatchOut] = Field(default_factory=list)


class SourceMetadataOut(BaseModel):
    """Provenance of a hybrid read."""

    source: Literal["cache", "api", "hybrid"]
    label: str = Field(description="Human readable source, e.g. 'Hybrid (67% DB, 33% API)'")
    db_range: Optional[str] = None
    api_range: Optional[str] = None
    db_days: int = 0
    api_days: int = 0
    db_row_count: int = 0
    api_row_count: int = 0
    last_synced_at: Optional[str] = None
    analysis: Optional[Dict[str, Any]] = None
    query_context: Optional[Dict[str, Any]] = None
    fetch_outcome: Literal["success", "partial", "queued", "error"]
    error_message: Optional[str] = None
    hierarchy_validation: Optional[HierarchyValidationOut] = None
    queued_job_ids: List[str] = Field(default_factory=list)


class HybridFetchResponse(BaseModel):
    data: List[MetricsRowOut]
    meta: SourceMetadataOut
    pending_api_chunks: int = 0
    queued_for_backfill: bool = False


# =============================================================================
# PRE-WARM
# =============================================================================

class PrewarmCampaignIn(BaseModel):
    id: str
    name: Optional[str] = None
    spend: float = 0.0
    status: Optional[str] = None


class PrewarmRequest(BaseModel):
    """Pre-warm ad groups for the campaigns a user is looking at.

    When `campaigns` is omitted, the top campaigns by cached spend in the
    window are used.
    """

    customer_id: str
    account_id: Optional[str] = None
    start_date: date
    end_date: date
    campaigns: Optional[List[PrewarmCampaignIn]] = None
    credentials: Dict[str, Any] = Field(default_factory=dict)
    timezone: str = "UTC"
    conversion_mode: str = "conversions"

    @model_validator(mode="after")
    def check_dates(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class PrewarmProgressOut(BaseModel):
    customer_id: str
    started_at: str
    total_campaigns: int
    queued: List[str]
    running: List[str]
    completed: List[str]
    failed: List[str]
    estimated_remaining_ms: int
    last_updated: str


class PrewarmResponse(BaseModel):
    triggered: bool
    campaigns_queued: List[str]
    campaigns_skipped: List[str]
    campaigns_already_cached: List[str]
    quota_limited: bool
    reason: Optional[str] = None
    progress: Optional[PrewarmProgressOut] = None


class PrewarmStatusResponse(BaseModel):
    statuses: Dict[str, Literal["warm", "cold", "warming"]]


# =============================================================================
# HIERARCHY
# =============================================================================

class MismatchEventOut(BaseModel):
    id: str
    detected_at: Optional[str] = None
    trigger: str
    entity_id: str
    metric: str
    parent_value: float
    child_sum: float
    variance_pct: float
    severity: str
    start_date: str
    end_date: str
    acknowledged: bool


class MismatchSummaryOut(BaseModel):
    total_events: int
    by_metric: Dict[str, int]
    by_severity: Dict[str, int]
    avg_variance: float


class MismatchHistoryResponse(BaseModel):
    events: List[MismatchEventOut]
    summary: MismatchSummaryOut


class AcknowledgeRequest(BaseModel):
    acknowledged_by: Optional[str] = None


class HierarchyHealthResponse(BaseModel):
    customer_id: str
    healthy: bool
