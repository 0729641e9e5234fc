import threading

import pytest

from src.ingestion.errors import RunTimeoutError
from src.ingestion.runtime import Deadline, RateLimiter, RetryPolicy


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestDeadline:
    def test_not_expired(self):
        clock = FakeClock()
        deadline = Deadline(10, clock=clock)
        clock.now += 5
        assert not deadline.expired()
        assert deadline.remaining_s == 5
        deadline.check("normalize")

    def test_expired_raises(self):
        clock = FakeClock()
        deadline = Deadline(10, clock=clock)
        clock.now += 10
        with pytest.raises(RunTimeoutError, match="during persist"):
            deadline.check("persist")
        assert deadline.remaining_s == 0.0

    def test_no_budget_never_expires(self):
        clock = FakeClock()
        deadline = Deadline(None, clock=clock)
        clock.now += 1e9
        assert not deadline.expired()
        assert deadline.remaining_s is None

    def test_from_ms(self):
        assert Deadline.from_ms(2500).timeout_s == 2.5
        assert Deadline.from_ms(None).timeout_s is None
        assert Deadline.from_ms(0).timeout_s is None


class TestRetryPolicy:
    def test_exponential(self):
        policy = RetryPolicy(base_delay_s=1.0, jitter=0)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_capped(self):
        policy = RetryPolicy(base_delay_s=1.0, max_delay_s=3.0, jitter=0)
        assert policy.delay_for(10) == 3.0

    def test_fixed_and_none(self):
        assert RetryPolicy(backoff_mode="fixed", base_delay_s=2, jitter=0).delay_for(5) == 2
        assert RetryPolicy(backoff_mode="none").delay_for(3) == 0.0

    def test_jitter_bounds(self):
        policy = RetryPolicy(base_delay_s=1.0, jitter=0.25)
        for _ in range(50):
            assert 0.75 <= policy.delay_for(1) <= 1.25

    def test_retry_after_seconds(self):
        policy = RetryPolicy(base_delay_s=1.0, max_delay_s=10.0, jitter=0)
        assert policy.delay_for(1, retry_after="4") == 4.0
        assert policy.delay_for(1, retry_after="120") == 10.0

    def test_retry_after_http_date_ignored(self):
        policy = RetryPolicy(base_delay_s=1.0, jitter=0)
        assert policy.delay_for(2, retry_after="Wed, 21 Oct 2026 07:28:00 GMT") == 2.0

    def test_retry_status(self):
        policy = RetryPolicy()
        assert policy.should_retry_status(503)
        assert not policy.should_retry_status(404)

    def test_from_options(self):
        policy = RetryPolicy.from_options(
            {"max_retries": 5, "backoff_s": 0.1, "backoff_mode": "fixed", "url": "x"}
        )
        assert policy.max_retries == 5
        assert policy.base_delay_s == 0.1
        assert policy.backoff_mode == "fixed"
        assert policy.max_delay_s == 30.0


class SteppingClock:
    """Fake monotonic clock; ``sleep`` advances it."""

    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class TestRateLimiter:
    def test_disabled_never_waits(self):
        clock = SteppingClock()
        limiter = RateLimiter(clock=clock, sleep=clock.sleep)
        assert not limiter.enabled
        assert [limiter.acquire() for _ in range(3)] == [0.0, 0.0, 0.0]
        assert clock.sleeps == []

    def test_token_bucket(self):
        clock = SteppingClock()
        limiter = RateLimiter(4.0, clock=clock, sleep=clock.sleep)
        waits = [limiter.acquire() for _ in range(4)]
        assert waits == [0.0, 0.25, 0.25, 0.25]
        assert clock.now == 100.75

    def test_burst_then_throttle(self):
        clock = SteppingClock()
        limiter = RateLimiter(1.0, burst=3, clock=clock, sleep=clock.sleep)
        assert [limiter.acquire() for _ in range(4)] == [0.0, 0.0, 0.0, 1.0]

    def test_tokens_refill_while_idle(self):
        clock = SteppingClock()
        limiter = RateLimiter(2.0, clock=clock, sleep=clock.sleep)
        limiter.acquire()
        clock.now += 5
        assert limiter.acquire() == 0.0

    def test_min_delay_spacing(self):
        clock = SteppingClock()
        limiter = RateLimiter(min_delay_s=2.0, clock=clock, sleep=clock.sleep)
        limiter.acquire()
        clock.now += 0.5
        assert limiter.acquire() == pytest.approx(1.5)

    def test_concurrent_callers_get_distinct_slots(self):
        sleeps = []
        limiter = RateLimiter(2.0, clock=lambda: 0.0, sleep=sleeps.append)
        threads = [threading.Thread(target=limiter.acquire) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)
        assert sorted(sleeps) == [0.5, 1.0, 1.5]

    def test_from_options(self):
        limiter = RateLimiter.from_options({"rate_limit_per_min": 30, "rate_limit_burst": 2})
        assert limiter.rate_per_s == 0.5
        assert limiter.burst == 2
        assert not RateLimiter.from_options({}).enabled

    def test_rate_must_be_positive(self):
        with pytest.raises(ValueError):
            RateLimiter(0)
