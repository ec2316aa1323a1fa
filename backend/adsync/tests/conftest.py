"""Pytest configuration for adsync integration tests

WHAT: Shared fixtures for store, coordinator, worker and HTTP tests
WHY: Every test gets an isolated in-memory SQLite database and fake
     provider/queue doubles, so no Redis, Postgres or Google Ads is needed
REFERENCES:
    - adsync/models.py: Schema created with Base.metadata.create_all
    - adsync/services/hybrid_fetch.py: Coordinator under test
    - adsync/main.py: FastAPI application
"""

import os
import sys
import threading
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")

from adsync.deps import Settings  # noqa: E402
from adsync.feature_flags import FeatureFlags  # noqa: E402
from adsync.models import Base, EntityTypeEnum  # noqa: E402
from adsync.services.metrics_store import MetricsStore  # noqa: E402
from adsync.services.refresh_lock import RefreshLock  # noqa: E402
from adsync.workers.refresh_queue import EnqueueResult, RefreshJobSpec, generate_job_id  # noqa: E402

NOW = datetime(2025, 3, 31, 12, 0, tzinfo=timezone.utc)
CUSTOMER = "1234567890"


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite shared across threads (asyncio.to_thread)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def store(test_db_session) -> MetricsStore:
    return MetricsStore(test_db_session)


def days(start: date, count: int) -> List[date]:
    return [start + timedelta(days=i) for i in range(count)]


def seed_facts(
    store: MetricsStore,
    entity_type: EntityTypeEnum,
    entity_id: str,
    dates: List[date],
    metrics: Dict[str, Any],
    synced_at: datetime = NOW,
    parent_entity_id: Optional[str] = None,
    name: Optional[str] = None,
    status: str = "ENABLED",
    customer_id: str = CUSTOMER,
) -> None:
    """Write one row per date with the same metrics, plus the hierarchy row."""
    for d in dates:
        store.upsert_metrics_fact(
            "acct-1", customer_id, entity_type, entity_id, d, metrics,
            parent_entity_id=parent_entity_id, now=synced_at,
        )
    store.upsert_entity_hierarchy(
        "acct-1", customer_id, entity_type, entity_id,
        {"name": name or f"{entity_type.value} {entity_id}", "status": status},
        parent_entity_id=parent_entity_id, now=synced_at,
    )
    store.db.commit()


# ============================================================================
# Doubles
# ============================================================================

class FakeProvider:
    """MetricsProvider double returning one row per entity per day.

    `entities` maps entity id -> per-day metrics dict (plus optional name,
    parent_id, status). `failures` maps a chunk start date -> exception.
    """

    def __init__(self, entities: Optional[Dict[str, Dict[str, Any]]] = None, failures=None):
        self.entities = entities or {}
        self.failures: Dict[date, Exception] = failures or {}
        self.calls: List[Dict[str, Any]] = []
        self._mutex = threading.Lock()

    def fetch_entities(self, credentials, customer_id, entity_type, parent_id, start, end, conversion_mode="conversions"):
        with self._mutex:
            self.calls.append({
                "credentials": credentials,
                "customer_id": customer_id,
                "entity_type": entity_type,
                "parent_id": parent_id,
                "start": start,
                "end": end,
                "conversion_mode": conversion_mode,
            })
        if start in self.failures:
            raise self.failures[start]

        rows = []
        current = start
        while current <= end:
            for entity_id, spec in self.entities.items():
                if parent_id and spec.get("parent_id") not in (None, parent_id):
                    continue
                rows.append({
                    "id": entity_id,
                    "name": spec.get("name", f"Entity {entity_id}"),
                    "status": spec.get("status", "ENABLED"),
                    "parent_id": spec.get("parent_id"),
                    "date": current.isoformat(),
                    "spend": spec.get("spend", 0.0),
                    "clicks": spec.get("clicks", 0),
                    "impressions": spec.get("impressions", 0),
                    "conversions": spec.get("conversions", 0.0),
                    "conversion_value": spec.get("conversion_value", 0.0),
                    **{k: spec[k] for k in ("campaign_type", "match_type", "quality_score") if k in spec},
                })
            current += timedelta(days=1)
        return rows


class FakeQueue:
    """RefreshQueue double recording enqueued specs."""

    def __init__(self, ready: bool = True, status_for: Optional[Callable[[RefreshJobSpec], str]] = None):
        self.ready = ready
        self.status_for = status_for or (lambda spec: "queued")
        self.enqueued: List[RefreshJobSpec] = []

    async def is_ready(self) -> bool:
        return self.ready

    async def enqueue(self, spec: RefreshJobSpec, priority: str = "normal") -> EnqueueResult:
        spec.priority = priority
        status = self.status_for(spec)
        if status == "queued":
            self.enqueued.append(spec)
        return EnqueueResult(status=status, job_id=generate_job_id(spec))


@pytest.fixture
def settings() -> Settings:
    return Settings(HIERARCHY_VALIDATION_SAMPLE_RATE=0.0)


@pytest.fixture
def flags() -> FeatureFlags:
    return FeatureFlags(
        HYBRID_FETCH=True,
        QUEUE_REFRESH=True,
        HIERARCHY_VALIDATION=True,
        DATE_RANGE_ANALYSIS=True,
        INLINE_REFRESH=True,
        SMART_PREWARM=True,
    )


@pytest.fixture
def lock() -> RefreshLock:
    return RefreshLock(None)


@pytest.fixture
def make_coordinator(store, settings, flags, lock):
    """Factory: coordinator wired to the test store and the given doubles."""
    from adsync.services.hybrid_fetch import HybridFetchCoordinator

    def _make(provider, queue=None, **overrides):
        kwargs = dict(
            store=store,
            provider=provider,
            settings=overrides.pop("settings", settings),
            flags=overrides.pop("flags", flags),
            queue=queue,
            lock=overrides.pop("lock", lock),
            now_fn=lambda: NOW,
        )
        kwargs.update(overrides)
        return HybridFetchCoordinator(**kwargs)

    return _make


# ============================================================================
# API Fixtures
# ============================================================================

async def _no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider({
        "1": {"name": "Brand", "spend": 2.0, "clicks": 3},
        "2": {"name": "Generic", "spend": 1.0, "clicks": 1},
    })


@pytest.fixture
def prewarm_scheduler(settings, flags):
    from adsync.services.job_quota import JobQuota
    from adsync.services.smart_prewarm import PrewarmProgressStore, SmartPrewarmScheduler

    return SmartPrewarmScheduler(
        queue=FakeQueue(),
        quota=JobQuota(None, limit=settings.PREWARM_MAX_JOBS_PER_MINUTE),
        progress=PrewarmProgressStore(None),
        settings=settings,
        flags=flags,
        sleep=_no_sleep,
    )


@pytest.fixture
def app(test_db_session, make_coordinator, fake_provider, prewarm_scheduler, monkeypatch):
    """FastAPI app wired to the test session and doubles."""
    from adsync import main
    from adsync.database import get_db
    from adsync.deps import get_coordinator, get_prewarm_scheduler

    monkeypatch.setattr(main, "_redis_status", lambda: (False, None))
    application = main.create_app()

    def override_get_db():
        yield test_db_session

    application.dependency_overrides[get_db] = override_get_db
    application.dependency_overrides[get_coordinator] = lambda: make_coordinator(fake_provider)
    application.dependency_overrides[get_prewarm_scheduler] = lambda: prewarm_scheduler
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    return TestClient(app)
