"""
Shared Redis State
==================

One Redis client per process for the engine's coordination state:
refresh locks and rate-limit backoffs, pre-warm job quotas, pre-warm
progress and the worker heartbeat.

`redis_client` is None when REDIS_URL is unreachable at import time; every
consumer then falls back to process-local state, which is only correct for a
single API instance. The arq queue opens its own connection (see
workers/refresh_queue.py).

USED BY:
- adsync/deps.py: RefreshLock, JobQuota, PrewarmProgressStore factories
- adsync/workers/arq_worker.py: worker heartbeat
- adsync/main.py: /health
"""

import logging
from typing import Optional

from redis import ConnectionPool, Redis

from adsync.deps import get_settings

logger = logging.getLogger(__name__)

MAX_CONNECTIONS = 20


def connect_redis(url: str, max_connections: int = MAX_CONNECTIONS) -> Optional[Redis]:
    """Return a pinged client on a fresh pool, or None when Redis is unreachable."""
    try:
        pool = ConnectionPool.from_url(url, max_connections=max_connections, decode_responses=True)
        client = Redis(connection_pool=pool)
        client.ping()
    except Exception as e:
        logger.error(f"[STATE] Redis unreachable at startup: {e}")
        logger.warning("[STATE] Locks, quotas and pre-warm progress fall back to process-local state")
        return None

    logger.info(f"[STATE] Shared Redis client ready (max_connections={max_connections})")
    return client


redis_client: Optional[Redis] = connect_redis(get_settings().REDIS_URL)
