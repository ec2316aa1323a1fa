"""Smart pre-warm endpoints.

WHAT:
    Trigger ad-group pre-warm for visible campaigns and expose progress /
    warm-cold status for the UI.

REFERENCES:
    - adsync/services/smart_prewarm.py
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from adsync.database import get_db
from adsync.deps import get_prewarm_scheduler
from adsync.schemas import (
    PrewarmProgressOut,
    PrewarmRequest,
    PrewarmResponse,
    PrewarmStatusResponse,
)
from adsync.services.metrics_store import MetricsStore
from adsync.services.query_context import QueryContext
from adsync.services.smart_prewarm import (
    PrewarmCampaign,
    PrewarmParams,
    SmartPrewarmScheduler,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/prewarm", tags=["Pre-warm"])


@router.post("/ad-groups", response_model=PrewarmResponse)
async def prewarm_ad_groups(
    request: PrewarmRequest,
    db: Session = Depends(get_db),
    scheduler: SmartPrewarmScheduler = Depends(get_prewarm_scheduler),
) -> PrewarmResponse:
    """Enqueue ad-group backfills for the top visible campaigns."""
    store = MetricsStore(db)

    if request.campaigns is not None:
        campaigns = [PrewarmCampaign(**c.model_dump()) for c in request.campaigns]
    else:
        top = await asyncio.to_thread(
            store.top_campaigns_by_spend,
            request.customer_id, request.start_date, request.end_date,
            limit=scheduler.settings.PREWARM_MAX_CAMPAIGNS_PER_BATCH,
        )
        campaigns = [PrewarmCampaign(**c) for c in top]

    params = PrewarmParams(
        account_id=request.account_id,
        customer_id=request.customer_id,
        start_date=request.start_date,
        end_date=request.end_date,
        credentials=request.credentials,
        query_context=QueryContext(
            start_date=request.start_date,
            end_date=request.end_date,
            timezone=request.timezone,
            conversion_mode=request.conversion_mode,
        ),
    )
    result = await scheduler.smart_prewarm_ad_groups(store, campaigns, params)
    logger.info(
        "[PREWARM_API] %s: queued=%d skipped=%d cached=%d reason=%s",
        request.customer_id, len(result.campaigns_queued), len(result.campaigns_skipped),
        len(result.campaigns_already_cached), result.reason,
    )

    return PrewarmResponse(
        triggered=result.triggered,
        campaigns_queued=result.campaigns_queued,
        campaigns_skipped=result.campaigns_skipped,
        campaigns_already_cached=result.campaigns_already_cached,
        quota_limited=result.quota_limited,
        reason=result.reason,
        progress=PrewarmProgressOut(**result.progress.to_dict()) if result.progress else None,
    )


@router.get("/progress", response_model=List[PrewarmProgressOut])
def all_progress(
    scheduler: SmartPrewarmScheduler = Depends(get_prewarm_scheduler),
) -> List[PrewarmProgressOut]:
    return [PrewarmProgressOut(**p.to_dict()) for p in scheduler.get_all_progress()]


@router.get("/progress/{customer_id}", response_model=PrewarmProgressOut | None)
def customer_progress(
    customer_id: str,
    scheduler: SmartPrewarmScheduler = Depends(get_prewarm_scheduler),
) -> PrewarmProgressOut | None:
    """Current batch progress, or null when nothing is in flight."""
    progress = scheduler.get_progress(customer_id)
    return PrewarmProgressOut(**progress.to_dict()) if progress else None


@router.get("/status/{customer_id}", response_model=PrewarmStatusResponse)
def prewarm_status(
    customer_id: str,
    start_date: date = Query(...),
    end_date: date = Query(...),
    campaign_ids: List[str] = Query(...),
    db: Session = Depends(get_db),
    scheduler: SmartPrewarmScheduler = Depends(get_prewarm_scheduler),
) -> PrewarmStatusResponse:
    """warm / cold / warming per campaign."""
    statuses = scheduler.get_prewarm_status(
        MetricsStore(db), customer_id, campaign_ids, start_date, end_date,
    )
    return PrewarmStatusResponse(statuses=statuses)
