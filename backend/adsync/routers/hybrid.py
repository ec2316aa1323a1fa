"""Hybrid read endpoints.

WHAT:
    Thin HTTP wrappers around HybridFetchCoordinator for the three entity
    levels (campaigns, ad groups, keywords).

WHY:
    - Routers only parse the request and build the QueryContext
    - Every level of one report must be requested with the same context
      (timezone, conversion mode, filters, columns) or drill-down totals will
      not reconcile; the context is built here the same way for all three

REFERENCES:
    - adsync/services/hybrid_fetch.py
    - adsync/services/query_context.py
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from adsync.deps import get_coordinator
from adsync.schemas import HybridFetchResponse
from adsync.services.hybrid_fetch import HybridFetchCoordinator, HybridFetchError, HybridFetchResult
from adsync.services.query_context import (
    QueryContext,
    build_query_context,
    hash_columns,
    validate_query_context,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/hybrid", tags=["Hybrid Fetch"])


@dataclass
class ReadParams:
    customer_id: str
    account_id: Optional[str]
    start_date: date
    end_date: date
    context: QueryContext
    credentials: Dict[str, Any]


def read_params(
    customer_id: str = Query(..., description="Provider customer id"),
    start_date: date = Query(...),
    end_date: date = Query(...),
    account_id: Optional[str] = Query(None, description="Internal account id stored on cached rows"),
    timezone: str = Query("UTC"),
    conversion_mode: str = Query("conversions", description="conversions | by_conversion_date"),
    include_today: Optional[bool] = Query(None, description="Defaults to whether the window ends today"),
    preset: Optional[str] = Query(None, description="Named preset the window was resolved from"),
    filters_hash: Optional[str] = Query(None),
    columns: Optional[List[str]] = Query(None),
    x_refresh_token: Optional[str] = Header(None),
    x_login_customer_id: Optional[str] = Header(None),
) -> ReadParams:
    """Parse the shared query parameters of every hybrid read."""
    if include_today is None:
        include_today = build_query_context(start_date, end_date).include_today
    context = QueryContext(
        start_date=start_date,
        end_date=end_date,
        timezone=timezone,
        include_today=include_today,
        conversion_mode=conversion_mode,
        filters_hash=filters_hash,
        columns_hash=hash_columns(columns),
        requested_preset=preset,
    )
    valid, error = validate_query_context(context)
    if not valid:
        raise HTTPException(status_code=400, detail=error)

    credentials: Dict[str, Any] = {}
    if x_refresh_token:
        credentials["refresh_token"] = x_refresh_token
    if x_login_customer_id:
        credentials["login_customer_id"] = x_login_customer_id

    return ReadParams(
        customer_id=customer_id,
        account_id=account_id,
        start_date=start_date,
        end_date=end_date,
        context=context,
        credentials=credentials,
    )


def _to_response(result: HybridFetchResult) -> HybridFetchResponse:
    return HybridFetchResponse.model_validate(result.to_dict())


@router.get("/campaigns", response_model=HybridFetchResponse)
async def get_campaigns(
    params: ReadParams = Depends(read_params),
    coordinator: HybridFetchCoordinator = Depends(get_coordinator),
) -> HybridFetchResponse:
    """Campaign metrics for the window, cache first."""
    try:
        result = await coordinator.fetch_campaigns_hybrid(
            params.account_id, params.customer_id, params.credentials,
            params.start_date, params.end_date, query_context=params.context,
        )
    except HybridFetchError as e:
        logger.error("[HYBRID_API] Campaign read failed for %s: %s", params.customer_id, e)
        raise HTTPException(status_code=502, detail=str(e))
    return _to_response(result)


@router.get("/ad-groups", response_model=HybridFetchResponse)
async def get_ad_groups(
    campaign_id: str = Query(...),
    params: ReadParams = Depends(read_params),
    coordinator: HybridFetchCoordinator = Depends(get_coordinator),
) -> HybridFetchResponse:
    """Ad-group metrics under one campaign, cache first."""
    try:
        result = await coordinator.fetch_ad_groups_hybrid(
            params.account_id, params.customer_id, params.credentials, campaign_id,
            params.start_date, params.end_date, query_context=params.context,
        )
    except HybridFetchError as e:
        logger.error("[HYBRID_API] Ad group read failed for %s/%s: %s", params.customer_id, campaign_id, e)
        raise HTTPException(status_code=502, detail=str(e))
    return _to_response(result)


@router.get("/keywords", response_model=HybridFetchResponse)
async def get_keywords(
    ad_group_id: str = Query(...),
    params: ReadParams = Depends(read_params),
    coordinator: HybridFetchCoordinator = Depends(get_coordinator),
) -> HybridFetchResponse:
    """Keyword metrics under one ad group. Always fetched from the provider."""
    result = await coordinator.fetch_keywords_on_demand(
        params.account_id, params.customer_id, params.credentials, ad_group_id,
        params.start_date, params.end_date, query_context=params.context,
    )
    return _to_response(result)
