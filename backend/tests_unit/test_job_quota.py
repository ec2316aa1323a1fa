"""
Job Quota Tests (Unit)
======================

WHAT: Fixed-window per-customer counter (process-local and Redis pipeline).
WHY: Pre-warm must never exceed PREWARM_MAX_JOBS_PER_MINUTE per customer,
     so a slot is claimed in the same step that checks for it.

REFERENCES:
- backend/adsync/services/job_quota.py
"""

import threading

from adsync.services.job_quota import COUNTER_PREFIX, JobQuota


class _Clock:
    def __init__(self, now: float = 500.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class _FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    def set(self, key, value, ex=None, nx=False):
        self.ops.append(lambda: self.redis.set(key, value, ex=ex, nx=nx))

    def incr(self, key):
        self.ops.append(lambda: self.redis.incr(key))

    def ttl(self, key):
        self.ops.append(lambda: self.redis.ttl(key))

    def execute(self):
        return [op() for op in self.ops]


class _FakeRedis:
    """Just enough of redis.Redis for the quota counter (TTLs do not tick)."""

    def __init__(self):
        self.values = {}
        self.ttls = {}
        self.transactions = 0

    def pipeline(self, transaction=True):
        self.transactions += int(transaction)
        return _FakePipeline(self)

    def set(self, key, value, ex=None, nx=False):
        if nx and key in self.values:
            return None
        self.values[key] = int(value)
        if ex:
            self.ttls[key] = ex
        return True

    def get(self, key):
        return self.values.get(key)

    def incr(self, key):
        self.values[key] = self.values.get(key, 0) + 1
        return self.values[key]

    def decr(self, key):
        self.values[key] = self.values.get(key, 0) - 1
        return self.values[key]

    def delete(self, key):
        self.values.pop(key, None)
        self.ttls.pop(key, None)

    def ttl(self, key):
        if key not in self.values:
            return -2
        return self.ttls.get(key, -1)


def test_limit_reached_within_window() -> None:
    clock = _Clock()
    quota = JobQuota(None, limit=3, window_seconds=60, time_fn=clock)

    for used in range(1, 4):
        reserved = quota.reserve("c1")
        assert reserved.allowed
        assert reserved.used == used

    refused = quota.reserve("c1")
    assert refused.allowed is False
    assert refused.used == 3
    assert refused.wait_seconds == 60
    assert quota.check("c1").allowed is False


def test_window_resets() -> None:
    clock = _Clock()
    quota = JobQuota(None, limit=1, window_seconds=60, time_fn=clock)

    quota.reserve("c1")
    assert quota.reserve("c1").allowed is False

    clock.now += 60
    assert quota.check("c1").allowed is True
    assert quota.reserve("c1").allowed is True


def test_customers_are_independent() -> None:
    quota = JobQuota(None, limit=1, window_seconds=60, time_fn=_Clock())

    quota.reserve("c1")

    assert quota.check("c1").allowed is False
    assert quota.reserve("c2").allowed is True


def test_release_hands_slot_back() -> None:
    quota = JobQuota(None, limit=1, window_seconds=60, time_fn=_Clock())

    quota.reserve("c1")
    quota.release("c1")
    quota.release("c1")

    assert quota.check("c1").used == 0
    assert quota.reserve("c1").allowed is True
    assert quota.reserve("c1").allowed is False


def test_parallel_reservations_never_exceed_limit() -> None:
    quota = JobQuota(None, limit=5, window_seconds=60, time_fn=_Clock())
    granted = []

    def claim():
        granted.append(quota.reserve("c1").allowed)

    threads = [threading.Thread(target=claim) for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert granted.count(True) == 5


def test_backoff_blocks_then_clears() -> None:
    clock = _Clock()
    quota = JobQuota(None, limit=5, window_seconds=60, time_fn=clock)

    quota.backoff("c1", 30)
    check = quota.reserve("c1")
    assert check.allowed is False
    assert check.wait_seconds == 30

    clock.now += 30
    assert quota.reserve("c1").allowed is True


def test_redis_reserve_opens_window_and_undoes_overshoot() -> None:
    redis = _FakeRedis()
    quota = JobQuota(redis, limit=2, window_seconds=60)
    key = COUNTER_PREFIX + "c1"

    assert quota.reserve("c1").allowed is True
    assert quota.reserve("c1").allowed is True
    refused = quota.reserve("c1")

    assert refused.allowed is False
    assert refused.wait_seconds == 60
    assert redis.values[key] == 2
    assert redis.ttls[key] == 60
    assert redis.transactions == 3


def test_redis_release_drops_key_recreated_without_ttl() -> None:
    redis = _FakeRedis()
    quota = JobQuota(redis, limit=2, window_seconds=60)
    key = COUNTER_PREFIX + "c1"

    quota.reserve("c1")
    quota.release("c1")
    assert redis.values[key] == 0

    redis.delete(key)
    quota.release("c1")
    assert key not in redis.values
