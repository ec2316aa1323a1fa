"""
Refresh Lock
============

Per-key mutual exclusion for backfills, with TTL auto-expiry and rate-limit
backoff.

WHY THIS FILE EXISTS
--------------------
Two dashboard tabs opening the same report would otherwise fetch the same
missing chunk twice, burning provider quota. After the provider signals a
rate limit, every request for that key would retry immediately.

KEY FORMAT
----------
    {customer_id}:{entity_type}[:{parent_entity_id}][:{start}_{end}]

SEMANTICS
---------
- try_acquire_lock fails while a live backoff or an unexpired lock exists
- expired locks/backoffs are swept lazily on every acquisition attempt
- a crashed holder's lock simply expires after its TTL (default 120 s)

STORAGE
-------
Redis (SET NX EX) when a client is configured, so every API instance and
worker sees the same locks. Without Redis, process-local maps guarded by a
threading lock (single-instance deployments only).

RELATED FILES
-------------
- adsync/services/hybrid_fetch.py: guards inline backfills
- adsync/workers/arq_worker.py: sets backoff on provider rate limits
- adsync/state.py: Shared Redis client
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, Optional

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 120

LOCK_PREFIX = "refresh_lock:"
BACKOFF_PREFIX = "refresh_backoff:"


@dataclass
class LockEntry:
    key: str
    started_at: float
    expires_at: float


@dataclass
class BackoffEntry:
    key: str
    until: float


def build_lock_key(
    customer_id: str,
    entity_type: str,
    parent_entity_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> str:
    """Build the lock key for a refresh scope."""
    parts = [str(customer_id), str(getattr(entity_type, "value", entity_type))]
    if parent_entity_id:
        parts.append(str(parent_entity_id))
    if start_date and end_date:
        parts.append(f"{start_date.isoformat()}_{end_date.isoformat()}")
    return ":".join(parts)


class RefreshLock:
    """
    Refresh lock with backoff, Redis-backed when available.

    USAGE:
        lock = RefreshLock(redis_client)
        key = build_lock_key(customer_id, "campaign", None, start, end)

        if lock.try_acquire_lock(key):
            try:
                ...fetch...
            except ProviderRateLimitError as e:
                lock.set_backoff(key, e.retry_seconds)
            finally:
                lock.release_lock(key)
    """

    def __init__(
        self,
        redis_client: Optional[Redis] = None,
        default_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        time_fn: Callable[[], float] = time.time,
    ):
        self.redis = redis_client
        self.default_ttl_seconds = default_ttl_seconds
        self._now = time_fn
        self._mutex = threading.Lock()
        self._locks: Dict[str, LockEntry] = {}
        self._backoffs: Dict[str, BackoffEntry] = {}

        if not self.redis:
            logger.warning("[REFRESH_LOCK] No Redis client - using process-local locks")

    # --- process-local ---------------------------------------------------
    def _sweep(self, now: float) -> None:
        """Drop expired locks and backoffs. Caller holds the mutex."""
        for key in [k for k, e in self._locks.items() if e.expires_at <= now]:
            del self._locks[key]
        for key in [k for k, b in self._backoffs.items() if b.until <= now]:
            del self._backoffs[key]

    def _local_try_acquire(self, key: str, ttl: int) -> bool:
        with self._mutex:
            now = self._now()
            self._sweep(now)
            if key in self._backoffs or key in self._locks:
                return False
            self._locks[key] = LockEntry(key=key, started_at=now, expires_at=now + ttl)
            return True

    # --- public API ------------------------------------------------------
    def try_acquire_lock(self, key: str, ttl_seconds: Optional[int] = None) -> bool:
        """
        Try to take the lock for a key.

        RETURNS:
            True if acquired; False if a live lock or backoff exists
        """
        ttl = int(ttl_seconds or self.default_ttl_seconds)

        if self.redis:
            try:
                if self.redis.exists(BACKOFF_PREFIX + key):
                    logger.info(f"[REFRESH_LOCK] {key} is backing off")
                    return False
                acquired = bool(self.redis.set(LOCK_PREFIX + key, str(self._now()), nx=True, ex=ttl))
                if not acquired:
                    logger.debug(f"[REFRESH_LOCK] {key} already held")
                return acquired
            except RedisError as e:
                logger.warning(f"[REFRESH_LOCK] Redis error, falling back to local lock for {key}: {e}")

        acquired = self._local_try_acquire(key, ttl)
        if not acquired:
            logger.debug(f"[REFRESH_LOCK] {key} held or backing off (local)")
        return acquired

    def release_lock(self, key: str) -> None:
        if self.redis:
            try:
                self.redis.delete(LOCK_PREFIX + key)
            except RedisError as e:
                logger.warning(f"[REFRESH_LOCK] Failed to release {key}: {e}")
        with self._mutex:
            self._locks.pop(key, None)

    def set_backoff(self, key: str, seconds: int) -> None:
        """Suppress acquisition of key for the given number of seconds."""
        seconds = max(1, int(seconds))
        until = self._now() + seconds

        if self.redis:
            try:
                self.redis.set(BACKOFF_PREFIX + key, str(until), ex=seconds)
                logger.warning(f"[REFRESH_LOCK] Backoff {seconds}s for {key}")
                return
            except RedisError as e:
                logger.warning(f"[REFRESH_LOCK] Redis error, backoff kept locally for {key}: {e}")

        with self._mutex:
            self._backoffs[key] = BackoffEntry(key=key, until=until)
        logger.warning(f"[REFRESH_LOCK] Backoff {seconds}s for {key} (local)")

    def is_refreshing(self, key: str) -> bool:
        if self.redis:
            try:
                return bool(self.redis.exists(LOCK_PREFIX + key))
            except RedisError as e:
                logger.warning(f"[REFRESH_LOCK] Redis error checking {key}: {e}")

        with self._mutex:
            entry = self._locks.get(key)
            return entry is not None and entry.expires_at > self._now()

    def is_backing_off(self, key: str) -> bool:
        if self.redis:
            try:
                return bool(self.redis.exists(BACKOFF_PREFIX + key))
            except RedisError as e:
                logger.warning(f"[REFRESH_LOCK] Redis error checking backoff {key}: {e}")

        with self._mutex:
            entry = self._backoffs.get(key)
            return entry is not None and entry.until > self._now()
