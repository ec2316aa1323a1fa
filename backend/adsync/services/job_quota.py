"""
Job Quota
=========

Per-customer jobs-per-minute counter for proactive backfills.

WHY THIS FILE EXISTS
--------------------
Pre-warm jobs spend the same provider quota as user-facing reads. A fixed
per-customer quota (default 5 jobs/minute) keeps background warming from
starving interactive requests.

HOW
---
Fixed window counter reset every `window_seconds`. `reserve()` checks and
counts in one step so concurrent batches cannot both pass the same check:
- Redis: SET NX EX opens the window, INCR claims a slot, both in one
  MULTI/EXEC; an INCR past the limit is undone; remaining TTL is the wait time
- No Redis: process-local {customer_id: (count, reset_at)} map under a mutex

A slot reserved for a job that was never queued goes back via `release()`.

A rate-limit signal from the queue can block a customer for a cooldown via
`backoff()`.

RELATED FILES
-------------
- adsync/services/smart_prewarm.py: reserves before every enqueue
- adsync/state.py: Shared Redis client
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

COUNTER_PREFIX = "prewarm_quota:"
BACKOFF_PREFIX = "prewarm_quota_backoff:"


@dataclass
class QuotaCheck:
    allowed: bool
    wait_seconds: float = 0.0
    used: int = 0


class JobQuota:
    """Fixed-window job counter per customer."""

    def __init__(
        self,
        redis_client: Optional[Redis] = None,
        limit: int = 5,
        window_seconds: int = 60,
        time_fn: Callable[[], float] = time.time,
    ):
        self.redis = redis_client
        self.limit = limit
        self.window_seconds = window_seconds
        self._now = time_fn
        self._mutex = threading.Lock()
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._backoffs: Dict[str, float] = {}

    def check(self, customer_id: str) -> QuotaCheck:
        """Can another job be enqueued for this customer right now?"""
        if self.redis:
            try:
                return self._redis_check(customer_id)
            except RedisError as e:
                logger.warning(f"[JOB_QUOTA] Redis error, using local counter for {customer_id}: {e}")

        with self._mutex:
            now = self._now()
            blocked_until = self._backoffs.get(customer_id)
            if blocked_until is not None:
                if blocked_until > now:
                    return QuotaCheck(allowed=False, wait_seconds=blocked_until - now)
                del self._backoffs[customer_id]

            count, reset_at = self._counters.get(customer_id, (0, 0.0))
            if now >= reset_at:
                self._counters[customer_id] = (0, now + self.window_seconds)
                return QuotaCheck(allowed=True, used=0)
            if count >= self.limit:
                return QuotaCheck(allowed=False, wait_seconds=reset_at - now, used=count)
            return QuotaCheck(allowed=True, used=count)

    def _redis_check(self, customer_id: str) -> QuotaCheck:
        backoff_ttl = self.redis.ttl(BACKOFF_PREFIX + customer_id)
        if backoff_ttl and backoff_ttl > 0:
            return QuotaCheck(allowed=False, wait_seconds=float(backoff_ttl))

        key = COUNTER_PREFIX + customer_id
        count = int(self.redis.get(key) or 0)
        if count >= self.limit:
            ttl = self.redis.ttl(key)
            return QuotaCheck(allowed=False, wait_seconds=float(max(ttl, 0)), used=count)
        return QuotaCheck(allowed=True, used=count)

    def reserve(self, customer_id: str) -> QuotaCheck:
        """Atomically claim one job slot; `allowed` is False when none is left.

        A granted slot that ends up unused must be handed back with `release()`.
        """
        if self.redis:
            try:
                return self._redis_reserve(customer_id)
            except RedisError as e:
                logger.warning(f"[JOB_QUOTA] Redis error, reserving locally for {customer_id}: {e}")

        with self._mutex:
            now = self._now()
            blocked_until = self._backoffs.get(customer_id)
            if blocked_until is not None:
                if blocked_until > now:
                    return QuotaCheck(allowed=False, wait_seconds=blocked_until - now)
                del self._backoffs[customer_id]

            count, reset_at = self._counters.get(customer_id, (0, 0.0))
            if now >= reset_at:
                count, reset_at = 0, now + self.window_seconds
            if count >= self.limit:
                return QuotaCheck(allowed=False, wait_seconds=reset_at - now, used=count)
            self._counters[customer_id] = (count + 1, reset_at)
            return QuotaCheck(allowed=True, used=count + 1)

    def _redis_reserve(self, customer_id: str) -> QuotaCheck:
        backoff_ttl = self.redis.ttl(BACKOFF_PREFIX + customer_id)
        if backoff_ttl and backoff_ttl > 0:
            return QuotaCheck(allowed=False, wait_seconds=float(backoff_ttl))

        # MULTI/EXEC: open the window with its TTL, then count in one round trip
        key = COUNTER_PREFIX + customer_id
        pipe = self.redis.pipeline(transaction=True)
        pipe.set(key, 0, ex=self.window_seconds, nx=True)
        pipe.incr(key)
        pipe.ttl(key)
        _, count, ttl = pipe.execute()

        if count > self.limit:
            self.redis.decr(key)
            return QuotaCheck(allowed=False, wait_seconds=float(max(ttl, 0)), used=self.limit)
        return QuotaCheck(allowed=True, used=count)

    def release(self, customer_id: str) -> None:
        """Hand back a reserved slot whose job was never queued."""
        if self.redis:
            try:
                key = COUNTER_PREFIX + customer_id
                if self.redis.decr(key) < 0:
                    # Window expired in between; DECR recreated the key without a TTL
                    self.redis.delete(key)
                return
            except RedisError as e:
                logger.warning(f"[JOB_QUOTA] Redis error, releasing locally for {customer_id}: {e}")

        with self._mutex:
            count, reset_at = self._counters.get(customer_id, (0, 0.0))
            if count > 0 and self._now() < reset_at:
                self._counters[customer_id] = (count - 1, reset_at)

    def backoff(self, customer_id: str, seconds: int) -> None:
        """Block all jobs for a customer for a cooldown."""
        seconds = max(1, int(seconds))
        logger.warning(f"[JOB_QUOTA] Backing off {customer_id} for {seconds}s")
        if self.redis:
            try:
                self.redis.set(BACKOFF_PREFIX + customer_id, "1", ex=seconds)
                return
            except RedisError as e:
                logger.warning(f"[JOB_QUOTA] Redis error, backoff kept locally for {customer_id}: {e}")

        with self._mutex:
            self._backoffs[customer_id] = self._now() + seconds
