"""Google Ads metrics provider.

WHAT:
    Implements the remote metrics provider contract the hybrid fetch engine
    consumes: `fetch_entities(credentials, customer_id, entity_type, parent_id,
    start, end)` returning one row per entity per day. Wraps GAQL search with
    a token bucket limiter, transient retries, and quota detection.

WHY:
    - Keep SDK details out of the coordinator and worker
    - Quota exhaustion must surface as ProviderRateLimitError so the engine can
      back off the refresh key instead of retrying immediately
    - Rows are segmented by date so every fetched day can be persisted

REFERENCES:
    adsync/services/hybrid_fetch.py (inline backfill)
    adsync/workers/arq_worker.py (queued backfill)
"""

from __future__ import annotations

import logging
import os
import random
import re
import time
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Protocol

from adsync.models import EntityTypeEnum

logger = logging.getLogger(__name__)

try:
    # SDK is optional at import time; only live fetches need it
    from google.ads.googleads.client import GoogleAdsClient as _SdkClient
except ImportError:  # pragma: no cover - tests inject a fake client
    _SdkClient = None  # type: ignore


# =============================================================================
# CONTRACT
# =============================================================================

class ProviderRateLimitError(Exception):
    """Raised when the provider signals quota exhaustion.

    WHAT:
        Carries the provider's retry hint so callers can set a backoff on the
        refresh key (and arq can defer the job).
    """

    def __init__(self, message: str, retry_seconds: int = 600):
        super().__init__(message)
        self.retry_seconds = retry_seconds


class MetricsProvider(Protocol):
    """Remote metrics provider contract.

    Must only be asked for bounded windows (<= the chunk cap). Returns rows
    shaped like:
        {"id", "name", "status", "parent_id", "date", "spend", "clicks",
         "impressions", "conversions", "conversion_value", ...type attributes}
    """

    def fetch_entities(
        self,
        credentials: Dict[str, Any],
        customer_id: str,
        entity_type: EntityTypeEnum,
        parent_id: Optional[str],
        start: date,
        end: date,
        conversion_mode: str = "conversions",
    ) -> List[Dict[str, Any]]:
        ...


def _extract_retry_seconds(error_str: str) -> Optional[int]:
    """Parse "Retry in 723 seconds" style hints from provider errors."""
    match = re.search(r'[Rr]etry in (\d+) seconds', error_str)
    if match:
        return int(match.group(1))
    return None


class GoogleAdsRateLimiter:
    """Simple token bucket rate limiter.

    WHAT:
        Guard outgoing requests to honor QPS/quota. Defaults are conservative.
    WHY:
        Avoid RESOURCE_EXHAUSTED errors and smooth out bursts.
    """

    def __init__(self, capacity: int = 15, refill_per_sec: float = 5.0) -> None:
        self.capacity = capacity
        self.tokens = capacity
        self.refill_per_sec = refill_per_sec
        self.last = time.monotonic()

    def acquire(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last
        self.last = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_per_sec)
        if self.tokens < 1:
            missing = 1 - self.tokens
            time.sleep(max(0.0, missing / self.refill_per_sec))
            self.tokens = 0
        self.tokens = max(0.0, self.tokens - 1)


def _is_quota_error(error_str: str) -> bool:
    return (
        'RESOURCE_EXHAUSTED' in error_str
        or '429' in error_str
        or 'Too many requests' in error_str
        or 'quota' in error_str.lower()
    )


def _with_retries(func):
    """Retry transient errors with jittered exponential backoff.

    Quota exhaustion is never retried here: it is raised as
    ProviderRateLimitError so the engine's backoff takes over.
    """

    def wrapper(self, *args, **kwargs):  # type: ignore
        max_attempts = 3
        base = 1.0
        for attempt in range(1, max_attempts + 1):
            try:
                return func(self, *args, **kwargs)
            except ProviderRateLimitError:
                raise
            except Exception as e:  # noqa: BLE001
                error_str = str(e)

                if _is_quota_error(error_str):
                    retry_seconds = _extract_retry_seconds(error_str) or 600
                    logger.warning(
                        "[GOOGLE_ADS] Quota exhausted, retry hint %ds", retry_seconds
                    )
                    raise ProviderRateLimitError(
                        f"Google Ads quota exhausted: {error_str[:200]}",
                        retry_seconds=retry_seconds,
                    )

                transient = any(k in error_str for k in ('UNAVAILABLE', 'INTERNAL', 'RST_STREAM', 'deadline exceeded'))
                if not transient or attempt == max_attempts:
                    raise

                sleep_s = min(base * (2 ** (attempt - 1)) * (1 + random.random()), 30.0)
                logger.info(
                    "[GOOGLE_ADS] Transient error (attempt %d/%d), retrying in %.1fs: %s",
                    attempt, max_attempts, sleep_s, error_str[:100]
                )
                time.sleep(sleep_s)
    return wrapper


def _enum_name(value: Any) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "name", None) or str(value)


def _digits(value: Optional[str]) -> str:
    return "".join(ch for ch in str(value or "") if ch.isdigit())


# =============================================================================
# GAQL
# =============================================================================

def _metrics_fields(conversion_mode: str) -> str:
    if conversion_mode == "by_conversion_date":
        conv = "metrics.conversions_by_conversion_date, metrics.conversions_value_by_conversion_date"
    else:
        conv = "metrics.conversions, metrics.conversions_value"
    return f"metrics.impressions, metrics.clicks, metrics.cost_micros, {conv}, segments.date"


def build_query(
    entity_type: EntityTypeEnum,
    parent_id: Optional[str],
    start: date,
    end: date,
    conversion_mode: str = "conversions",
) -> str:
    """GAQL for one entity level, segmented by day."""
    where = [f"segments.date BETWEEN '{start.isoformat()}' AND '{end.isoformat()}'"]

    if entity_type == EntityTypeEnum.campaign:
        select = "campaign.id, campaign.name, campaign.status, campaign.advertising_channel_type"
        resource = "campaign"
        where.append("campaign.status != 'REMOVED'")
    elif entity_type == EntityTypeEnum.ad_group:
        select = "ad_group.id, ad_group.name, ad_group.status, campaign.id"
        resource = "ad_group"
        where.append("ad_group.status != 'REMOVED'")
        if parent_id:
            where.append(f"campaign.id = {_digits(parent_id)}")
    else:
        select = (
            "ad_group_criterion.criterion_id, ad_group_criterion.keyword.text, "
            "ad_group_criterion.keyword.match_type, ad_group_criterion.status, "
            "ad_group_criterion.quality_info.quality_score, ad_group.id"
        )
        resource = "keyword_view"
        where.append("ad_group_criterion.status != 'REMOVED'")
        if parent_id:
            where.append(f"ad_group.id = {_digits(parent_id)}")

    return f"SELECT {select}, {_metrics_fields(conversion_mode)} FROM {resource} WHERE {' AND '.join(where)}"


class GAdsClient:
    """Testable wrapper around the Google Ads SDK implementing MetricsProvider."""

    def __init__(self, client: Optional[Any] = None, rate_limiter: Optional[GoogleAdsRateLimiter] = None) -> None:
        self._client = client
        self._rate = rate_limiter or GoogleAdsRateLimiter()

    @staticmethod
    def _build_client_from_tokens(refresh_token: str, login_customer_id: Optional[str] = None) -> Any:
        """Build an SDK client from a connection's OAuth refresh token."""
        if _SdkClient is None:  # pragma: no cover
            raise RuntimeError("google-ads SDK not installed")

        developer_token = os.getenv("GOOGLE_DEVELOPER_TOKEN")
        client_id = os.getenv("GOOGLE_CLIENT_ID")
        client_secret = os.getenv("GOOGLE_CLIENT_SECRET")
        if not developer_token or not client_id or not client_secret:
            raise ValueError("Missing required Google Ads env vars: GOOGLE_DEVELOPER_TOKEN, GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET")

        config = {
            "developer_token": developer_token,
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
            "use_proto_plus": True,
        }
        login_customer_id = _digits(login_customer_id)
        if len(login_customer_id) == 10:
            config["login_customer_id"] = login_customer_id
        return _SdkClient.load_from_dict(config)

    def _client_for(self, credentials: Dict[str, Any]) -> Any:
        if self._client is not None:
            return self._client
        refresh_token = (credentials or {}).get("refresh_token")
        if not refresh_token:
            raise ValueError("Missing refresh_token in credentials")
        return self._build_client_from_tokens(refresh_token, credentials.get("login_customer_id"))

    @_with_retries
    def search(self, client: Any, customer_id: str, query: str) -> Iterable[Any]:
        """GAQL search with rate limit + retries."""
        self._rate.acquire()
        service = client.get_service("GoogleAdsService")
        return list(service.search(customer_id=customer_id, query=query))

    def fetch_entities(
        self,
        credentials: Dict[str, Any],
        customer_id: str,
        entity_type: EntityTypeEnum,
        parent_id: Optional[str],
        start: date,
        end: date,
        conversion_mode: str = "conversions",
    ) -> List[Dict[str, Any]]:
        """One row per entity per day for the window."""
        query = build_query(entity_type, parent_id, start, end, conversion_mode)
        rows = self.search(self._client_for(credentials), _digits(customer_id), query)

        out: List[Dict[str, Any]] = []
        for r in rows:
            m = r.metrics
            if conversion_mode == "by_conversion_date":
                conversions = getattr(m, "conversions_by_conversion_date", 0.0)
                conversion_value = getattr(m, "conversions_value_by_conversion_date", 0.0)
            else:
                conversions = getattr(m, "conversions", 0.0)
                conversion_value = getattr(m, "conversions_value", 0.0)

            row: Dict[str, Any] = {
                "date": str(r.segments.date),
                "impressions": int(m.impressions or 0),
                "clicks": int(m.clicks or 0),
                "spend": (m.cost_micros or 0) / 1_000_000.0,
                "conversions": float(conversions or 0.0),
                "conversion_value": float(conversion_value or 0.0),
            }
            if entity_type == EntityTypeEnum.campaign:
                row.update({
                    "id": str(r.campaign.id),
                    "name": r.campaign.name,
                    "status": _enum_name(r.campaign.status),
                    "parent_id": None,
                    "campaign_type": _enum_name(r.campaign.advertising_channel_type),
                })
            elif entity_type == EntityTypeEnum.ad_group:
                row.update({
                    "id": str(r.ad_group.id),
                    "name": r.ad_group.name,
                    "status": _enum_name(r.ad_group.status),
                    "parent_id": str(r.campaign.id),
                })
            else:
                criterion = r.ad_group_criterion
                quality = getattr(getattr(criterion, "quality_info", None), "quality_score", None)
                row.update({
                    "id": str(criterion.criterion_id),
                    "name": criterion.keyword.text,
                    "status": _enum_name(criterion.status),
                    "parent_id": str(r.ad_group.id),
                    "match_type": _enum_name(criterion.keyword.match_type),
                    "quality_score": int(quality) if quality else None,
                })
            out.append(row)

        logger.info(
            "[GOOGLE_ADS] %s rows for %s %s %s..%s",
            len(out), customer_id, entity_type.value, start, end,
        )
        return out
