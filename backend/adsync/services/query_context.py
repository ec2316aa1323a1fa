"""Query context - the semantics shared by every query in one report.

WHAT:
    QueryContext pins the timezone, conversion accounting mode and the
    filter/column fingerprints used for a report. Helpers build, fingerprint
    and validate contexts.

WHY:
    A campaign table and its ad-group drill-down only reconcile when both
    levels were fetched with the same context. The refresh queue embeds the
    context in each job so background backfills reproduce inline semantics.

REFERENCES:
    - adsync/services/hybrid_fetch.py (attaches the context to SourceMetadata)
    - adsync/workers/refresh_queue.py (job ids include the fingerprints)
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, asdict, replace
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple


DEFAULT_TIMEZONE = "UTC"
DEFAULT_CONVERSION_MODE = "conversions"

# preset -> required window length in days
PRESET_WINDOW_DAYS = {
    "today": 1,
    "yesterday": 1,
    "last7days": 7,
    "last30days": 30,
}


@dataclass(frozen=True)
class QueryContext:
    start_date: date
    end_date: date
    timezone: str = DEFAULT_TIMEZONE
    include_today: bool = False
    conversion_mode: str = DEFAULT_CONVERSION_MODE
    filters_hash: Optional[str] = None
    columns_hash: Optional[str] = None
    requested_preset: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["start_date"] = self.start_date.isoformat()
        data["end_date"] = self.end_date.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueryContext":
        return cls(
            start_date=_as_date(data["start_date"]),
            end_date=_as_date(data["end_date"]),
            timezone=data.get("timezone") or DEFAULT_TIMEZONE,
            include_today=bool(data.get("include_today", False)),
            conversion_mode=data.get("conversion_mode") or DEFAULT_CONVERSION_MODE,
            filters_hash=data.get("filters_hash"),
            columns_hash=data.get("columns_hash"),
            requested_preset=data.get("requested_preset"),
        )


def _as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


def hash_filters(filters: Optional[Dict[str, Any]]) -> Optional[str]:
    """Deterministic fingerprint of a filter dict (key order independent)."""
    if not filters:
        return None
    payload = json.dumps(filters, sort_keys=True, default=str)
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def hash_columns(columns: Optional[Iterable[str]]) -> Optional[str]:
    """Deterministic fingerprint of a column list (order independent)."""
    cols = sorted(columns or [])
    if not cols:
        return None
    return hashlib.md5(",".join(cols).encode("utf-8")).hexdigest()


def build_query_context(
    start_date: date,
    end_date: date,
    overrides: Optional[QueryContext] = None,
    today: Optional[date] = None,
) -> QueryContext:
    """Merge caller overrides over defaults for the requested window.

    The window always comes from the request; everything else from the
    caller's context when given. include_today defaults to whether the window
    ends today.
    """
    today = today or _utc_today()
    base = QueryContext(
        start_date=start_date,
        end_date=end_date,
        include_today=end_date == today,
    )
    if overrides is None:
        return base
    return replace(overrides, start_date=start_date, end_date=end_date)


def create_query_cache_key(
    customer_id: str,
    entity_type: str,
    context: QueryContext,
    parent_entity_id: Optional[str] = None,
) -> str:
    """Cache key covering every parameter that changes query results."""
    parts = [
        customer_id,
        entity_type,
        f"{context.start_date.isoformat()}_{context.end_date.isoformat()}",
        f"tz:{context.timezone}",
        f"conv:{context.conversion_mode}",
        f"today:{str(context.include_today).lower()}",
    ]
    if parent_entity_id:
        parts.append(f"parent:{parent_entity_id}")
    parts.append(f"f:{context.filters_hash or 'none'}")
    parts.append(f"c:{context.columns_hash or 'default'}")
    return "|".join(parts)


def validate_query_context(context: QueryContext) -> Tuple[bool, Optional[str]]:
    """Check that a named preset matches the window it was resolved to.

    Returns:
        (valid, error_message)
    """
    if context.end_date < context.start_date:
        return False, f"end_date {context.end_date} is before start_date {context.start_date}"

    expected = PRESET_WINDOW_DAYS.get(context.requested_preset or "")
    if expected is None:
        return True, None

    days = (context.end_date - context.start_date).days + 1
    if days != expected:
        return False, (
            f'Preset "{context.requested_preset}" requires a {expected}-day window, '
            f"got {days} days ({context.start_date} to {context.end_date})"
        )
    return True, None


def contexts_match(contexts: List[QueryContext]) -> bool:
    """True when every context shares timezone, conversion mode and fingerprints."""
    keys = {
        (c.timezone, c.conversion_mode, c.filters_hash, c.columns_hash, c.include_today)
        for c in contexts
    }
    return len(keys) <= 1
