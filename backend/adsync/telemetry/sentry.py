"""
Sentry Error Tracking
=====================

Error tracking for the hybrid fetch engine and the refresh worker.

Most failures in the engine are caught and folded into read metadata
(a failed chunk makes a read "partial", a failed enqueue leaves a gap for the
next read). They never reach FastAPI's error handler, so they are reported
here explicitly with the operation and customer attached as tags.

Related files:
- adsync/main.py: init on API startup
- adsync/workers/start_arq_worker.py: init on worker startup
- adsync/services/hybrid_fetch.py, smart_prewarm.py, workers/*.py: capture points

Environment Variables:
- SENTRY_DSN: project DSN; without it every call here only logs
- ENVIRONMENT: environment name (production, staging, development)
- RELEASE_VERSION: optional release tag
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

_initialized = False

# extra keys promoted to searchable tags
TAG_KEYS = ("operation", "customer_id", "entity_type", "job_type", "priority")

# Handled by backoff + retry; reporting them would flood the project
IGNORED_EXCEPTIONS = ("ProviderRateLimitError",)


def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    exc_info = hint.get("exc_info")
    if exc_info and type(exc_info[1]).__name__ in IGNORED_EXCEPTIONS:
        return None
    return event


def init_sentry() -> bool:
    """Initialize the SDK once per process. Returns True when reporting is active."""
    global _initialized

    if _initialized:
        return True

    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        logger.info("[SENTRY] SENTRY_DSN not set, errors are logged only")
        return False

    environment = os.environ.get("ENVIRONMENT", "development")
    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            release=os.environ.get("RELEASE_VERSION"),
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                RedisIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,
            before_send=_before_send,
        )
    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False

    _initialized = True
    logger.info(f"[SENTRY] Initialized for {environment}")
    return True


@contextmanager
def _scope(extra: Optional[dict]) -> Iterator[Any]:
    with sentry_sdk.push_scope() as scope:
        for key, value in (extra or {}).items():
            if key in TAG_KEYS and value is not None:
                scope.set_tag(key, str(value))
            scope.set_extra(key, value)
        yield scope


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """Report a caught exception with its operation context.

    Example:
        except Exception as e:
            capture_exception(e, extra={"operation": "inline_chunk_fetch", "customer_id": cid})
    """
    if not _initialized:
        operation = (extra or {}).get("operation", "unknown")
        logger.error(f"[SENTRY] ({operation}) {type(exception).__name__}: {exception}")
        return

    try:
        with _scope(extra):
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture exception: {e}")


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """Report a non-exception condition, e.g. a cache/API date overlap."""
    if not _initialized:
        # callers log the message themselves at the right level
        logger.debug(f"[SENTRY] Disabled, dropping {level} message: {message}")
        return

    try:
        with _scope(extra):
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture message: {e}")
