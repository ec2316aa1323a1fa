"""Dependency providers and settings management."""

from functools import lru_cache

from fastapi import Depends
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import get_db
from .feature_flags import FeatureFlags, get_feature_flags


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    ENVIRONMENT: str = "development"

    # Redis Configuration (locks, quota counters, pre-warm progress, arq)
    REDIS_URL: str = "redis://localhost:6379/0"
    ARQ_QUEUE_NAME: str = "arq:queue"

    # Coverage analysis
    FRESH_TTL_MINUTES: int = 5
    STALE_TTL_MINUTES: int = 60
    MAX_CHUNK_DAYS: int = 30

    # Inline vs queued backfill guardrails
    MAX_INLINE_MISSING_DAYS: int = 7
    MAX_INLINE_CHUNKS: int = 2
    REFRESH_LOCK_TTL_SECONDS: int = 120
    QUEUE_ENQUEUE_INTERVAL_SECONDS: float = 2.0
    # Queue every gap when a queue is ready; False keeps small gaps inline
    PREFER_QUEUE: bool = True

    # Hierarchy validation
    HIERARCHY_VALIDATION_SAMPLE_RATE: float = 0.05
    HIERARCHY_VARIANCE_TOLERANCE: float = 0.05
    HIERARCHY_SAMPLE_SIZE: int = 10
    MISMATCH_RETENTION_DAYS: int = 90

    # Smart pre-warm
    PREWARM_MAX_CAMPAIGNS_PER_BATCH: int = 10
    PREWARM_MAX_JOBS_PER_MINUTE: int = 5
    PREWARM_CACHE_FRESH_MINUTES: int = 30
    PREWARM_ENQUEUE_DELAY_MS: int = 200
    PREWARM_RATE_LIMIT_BACKOFF_SECONDS: int = 60
    PREWARM_AVG_FETCH_MS: int = 2000
    PREWARM_PROGRESS_GC_SECONDS: int = 60

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


# =============================================================================
# ENGINE COMPONENTS
# =============================================================================
# Lock, quota and progress are process-wide; they share the Redis client from
# adsync.state when one is configured.

@lru_cache()
def get_refresh_lock():
    from .services.refresh_lock import RefreshLock
    from . import state
    return RefreshLock(state.redis_client)


@lru_cache()
def get_prewarm_scheduler():
    from .services.smart_prewarm import SmartPrewarmScheduler, PrewarmProgressStore
    from .services.job_quota import JobQuota
    from .workers.refresh_queue import get_refresh_queue
    from . import state

    settings = get_settings()
    return SmartPrewarmScheduler(
        queue=get_refresh_queue(),
        quota=JobQuota(
            state.redis_client,
            limit=settings.PREWARM_MAX_JOBS_PER_MINUTE,
            window_seconds=60,
        ),
        progress=PrewarmProgressStore(
            state.redis_client,
            gc_seconds=settings.PREWARM_PROGRESS_GC_SECONDS,
        ),
        settings=settings,
        flags=get_feature_flags(),
    )


def get_metrics_provider():
    from .services.google_ads_client import GAdsClient
    return GAdsClient()


def get_coordinator(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    flags: FeatureFlags = Depends(get_feature_flags),
):
    """Build a per-request coordinator around the request's DB session."""
    from .services.hybrid_fetch import HybridFetchCoordinator
    from .services.metrics_store import MetricsStore
    from .workers.refresh_queue import get_refresh_queue

    return HybridFetchCoordinator(
        store=MetricsStore(db),
        provider=get_metrics_provider(),
        queue=get_refresh_queue(),
        lock=get_refresh_lock(),
        settings=settings,
        flags=flags,
    )
