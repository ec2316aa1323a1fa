"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine and session factory for the metrics cache.
    Exposes a FastAPI dependency and a context manager for workers.

WHY:
    - API requests and the arq worker share one session factory
    - Engine is created lazily so importing models (tests, tooling) does not
      require DATABASE_URL

USAGE:
    from adsync.database import get_db, get_sync_session

    with get_sync_session() as db:
        store = MetricsStore(db)

REFERENCES:
    - adsync/models.py (single declarative Base)
    - adsync/workers/arq_worker.py (consumer outside FastAPI)
"""

import os
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def normalize_database_url(url: str) -> str:
    """Map Heroku-style postgres:// URLs to the scheme SQLAlchemy 2 accepts."""
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


def _get_database_url() -> str:
    """DATABASE_URL from the environment, falling back to a local .env.

    Raises:
        RuntimeError: when neither provides it
    """
    if not os.getenv("DATABASE_URL"):
        from adsync.utils.env import load_env_file
        load_env_file()

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL is not set (export it or add it to backend/.env)")
    return normalize_database_url(database_url)


# =============================================================================
# ENGINE
# =============================================================================

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def build_engine(database_url: str) -> Engine:
    """Engine for the metrics cache.

    SQLite (tests, local dev) gets a thread-tolerant connection and no pool
    sizing; Postgres is sized for API requests plus worker jobs.
    """
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(
        database_url,
        pool_size=10,
        max_overflow=20,       # arq max_jobs=10 plus API bursts
        pool_recycle=3600,
        pool_pre_ping=True,
    )


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = build_engine(_get_database_url())
    return _engine


def SessionLocal() -> Session:
    """Open a new session bound to the shared engine."""
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(bind=get_engine(), autoflush=False, autocommit=False)
    return _session_factory()


# Single declarative registry lives in adsync.models
from .models import Base  # noqa: E402,F401


def init_db() -> None:
    """Create missing tables. Local development only; deployed schemas are managed outside the app."""
    Base.metadata.create_all(bind=get_engine())


# =============================================================================
# SESSIONS
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency: one session per request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Session for code outside FastAPI (the arq worker).

    Rolls back on error so a failed job never leaves a half-written chunk
    pending in the session.

    Example:
        with get_sync_session() as db:
            store = MetricsStore(db)
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
