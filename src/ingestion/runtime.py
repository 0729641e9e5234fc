"""
Shared runtime utilities: run deadlines, request retries and throttling.
"""

from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass
from typing import Callable

from src.ingestion.errors import RunTimeoutError


class Deadline:
    """
    Cooperative wall-clock budget for one run.

    The pipeline calls ``check()`` between records and at every stage
    boundary; nothing is interrupted mid-operation.
    """

    def __init__(
        self,
        timeout_s: float | None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout_s = timeout_s
        self._clock = clock
        self._started = clock()

    @classmethod
    def from_ms(cls, timeout_ms: int | None, **kwargs) -> "Deadline":
        return cls(timeout_ms / 1000.0 if timeout_ms else None, **kwargs)

    @property
    def elapsed_s(self) -> float:
        return self._clock() - self._started

    @property
    def remaining_s(self) -> float | None:
        if self.timeout_s is None:
            return None
        return max(0.0, self.timeout_s - self.elapsed_s)

    def expired(self) -> bool:
        return self.timeout_s is not None and self.elapsed_s >= self.timeout_s

    def check(self, where: str = "") -> None:
        """Raise ``RunTimeoutError`` once the budget is spent."""
        if self.expired():
            suffix = f" during {where}" if where else ""
            raise RunTimeoutError(
                f"Run exceeded its {self.timeout_s:.1f}s budget{suffix}"
            )


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retries for feed requests.

    ``delay_for(attempt)`` grows as ``base_delay_s * 2**(attempt-1)`` in
    ``exp`` mode, stays at ``base_delay_s`` in ``fixed`` mode and is zero in
    ``none`` mode; always capped at ``max_delay_s``. A server ``Retry-After``
    (seconds) replaces the computed delay, under the same cap.
    """

    max_retries: int = 3
    backoff_mode: str = "exp"
    base_delay_s: float = 0.5
    max_delay_s: float = 30.0
    jitter: float = 0.25
    retry_on_status: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})

    @classmethod
    def from_options(cls, options: dict) -> "RetryPolicy":
        """Read ``max_retries``, ``backoff_s``, ``backoff_mode`` and ``max_backoff_s``."""
        return cls(
            max_retries=int(options.get("max_retries", cls.max_retries)),
            backoff_mode=str(options.get("backoff_mode", cls.backoff_mode)),
            base_delay_s=float(options.get("backoff_s", cls.base_delay_s)),
            max_delay_s=float(options.get("max_backoff_s", cls.max_delay_s)),
        )

    def should_retry_status(self, status_code: int) -> bool:
        return status_code in self.retry_on_status

    def delay_for(self, attempt: int, retry_after: str | None = None) -> float:
        if retry_after is not None:
            try:
                return min(max(0.0, float(retry_after)), self.max_delay_s)
            except ValueError:
                pass  # HTTP-date form; fall back to the computed delay

        if self.backoff_mode == "none":
            return 0.0
        steps = 0 if self.backoff_mode == "fixed" else max(0, attempt - 1)
        delay = min(self.base_delay_s * 2**steps, self.max_delay_s)
        if self.jitter > 0:
            delay *= random.uniform(1.0 - self.jitter, 1.0 + self.jitter)
        return max(0.0, delay)


class RateLimiter:
    """
    Token bucket shared by every request of one source.

    ``rate_per_s`` tokens refill per second up to ``burst``; each request
    takes one. ``min_delay_s`` additionally spaces consecutive requests.
    Slots are reserved under a lock, so concurrent page workers are
    serialized onto the same schedule rather than racing for tokens.
    """

    def __init__(
        self,
        rate_per_s: float | None = None,
        *,
        burst: int = 1,
        min_delay_s: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if rate_per_s is not None and rate_per_s <= 0:
            raise ValueError("rate_per_s must be positive")
        self.rate_per_s = rate_per_s
        self.burst = max(1, burst)
        self.min_delay_s = max(0.0, min_delay_s)
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(self.burst)
        self._refilled_at = clock()
        self._last_slot: float | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_options(cls, options: dict, **kwargs) -> "RateLimiter":
        """
        Read ``rate_limit_per_second`` (or ``rate_limit_per_min``),
        ``rate_limit_burst`` and ``min_request_delay_s``.
        """
        rate = options.get("rate_limit_per_second")
        if rate is None and options.get("rate_limit_per_min") is not None:
            rate = float(options["rate_limit_per_min"]) / 60.0
        return cls(
            float(rate) if rate is not None else None,
            burst=int(options.get("rate_limit_burst", 1)),
            min_delay_s=float(options.get("min_request_delay_s", 0.0)),
            **kwargs,
        )

    @property
    def enabled(self) -> bool:
        return self.rate_per_s is not None or self.min_delay_s > 0

    def acquire(self) -> float:
        """Block until the next request may go out; returns the seconds waited."""
        if not self.enabled:
            return 0.0

        with self._lock:
            now = self._clock()
            wait = 0.0
            if self.rate_per_s is not None:
                elapsed = now - self._refilled_at
                self._tokens = min(
                    float(self.burst), self._tokens + elapsed * self.rate_per_s
                )
                self._refilled_at = now
                if self._tokens < 1.0:
                    wait = (1.0 - self._tokens) / self.rate_per_s
                # may go negative: later callers queue behind this reservation
                self._tokens -= 1.0
            if self._last_slot is not None:
                wait = max(wait, self._last_slot + self.min_delay_s - now)
            self._last_slot = now + wait

        if wait > 0:
            self._sleep(wait)
        return wait
