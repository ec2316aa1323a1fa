"""Hierarchy drift endpoints (observability only)."""

from __future__ import annotations

import logging
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from adsync.database import get_db
from adsync.deps import Settings, get_settings
from adsync.schemas import (
    AcknowledgeRequest,
    HierarchyHealthResponse,
    MismatchHistoryResponse,
)
from adsync.services.hierarchy_validation import (
    acknowledge_mismatch,
    get_mismatch_history,
    is_hierarchy_healthy,
)
from adsync.services.metrics_store import MetricsStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/hierarchy", tags=["Hierarchy Validation"])


@router.get("/mismatches/{customer_id}", response_model=MismatchHistoryResponse)
def mismatch_history(
    customer_id: str,
    days: int = Query(30, ge=1, le=365),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> MismatchHistoryResponse:
    return MismatchHistoryResponse.model_validate(get_mismatch_history(db, customer_id, days=days, limit=limit))


@router.post("/mismatches/{event_id}/acknowledge")
def acknowledge(
    event_id: str,
    request: AcknowledgeRequest | None = None,
    db: Session = Depends(get_db),
) -> dict:
    if not acknowledge_mismatch(db, event_id, acknowledged_by=request.acknowledged_by if request else None):
        raise HTTPException(status_code=404, detail="Mismatch event not found")
    return {"acknowledged": True, "id": event_id}


@router.get("/health/{customer_id}", response_model=HierarchyHealthResponse)
def hierarchy_health(
    customer_id: str,
    start_date: date = Query(...),
    end_date: date = Query(...),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> HierarchyHealthResponse:
    """Run a manual validation over the window."""
    healthy = is_hierarchy_healthy(
        MetricsStore(db), customer_id, start_date, end_date,
        tolerance=settings.HIERARCHY_VARIANCE_TOLERANCE,
    )
    return HierarchyHealthResponse(customer_id=customer_id, healthy=healthy)
